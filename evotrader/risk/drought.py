"""
Drought Resolver - signal-starvation detection, safety blocks and the kill switch.

Outputs per cycle:
    detected  hold-heavy / order-light telemetry in the short or long window
    active    relaxed drought thresholds may be used this cycle
    blocked   drought was a candidate but is suppressed (override, cooldown,
              cash, hourly cap); normal thresholds apply
    killed    hard stop: drawdown from peak equity or a volatility spike;
              writes a cooldown and freezes the tuner

Equity is always cash plus marked-to-market positions, and the peak watermark
only moves through the store's atomic ``raise_peak_equity``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from loguru import logger

from evotrader.config.runtime_config import RuntimeConfig
from evotrader.core.types import DroughtOverride, Position
from evotrader.core.utils import to_iso, utc_now
from evotrader.database.ledger_store import LedgerStore
from evotrader.market.snapshots import MarketSnapshot

SHORT_WINDOW_HOURS = 6
LONG_WINDOW_HOURS = 48
MIN_HOLDS_SHORT_WINDOW = 20
MAX_ORDERS_SHORT_WINDOW = 3
MIN_HOLDS_LONG_WINDOW = 80
MAX_ORDERS_LONG_WINDOW = 10


@dataclass
class DroughtWindows:
    holds_short: int = 0
    orders_short: int = 0
    holds_long: int = 0
    orders_long: int = 0

    @property
    def short_drought(self) -> bool:
        return self.holds_short >= MIN_HOLDS_SHORT_WINDOW and self.orders_short <= MAX_ORDERS_SHORT_WINDOW

    @property
    def long_drought(self) -> bool:
        return self.holds_long >= MIN_HOLDS_LONG_WINDOW and self.orders_long <= MAX_ORDERS_LONG_WINDOW

    @property
    def reason(self) -> Optional[str]:
        if self.short_drought and self.long_drought:
            return f"sustained_drought_{LONG_WINDOW_HOURS}h"
        if self.short_drought:
            return f"short_drought_{SHORT_WINDOW_HOURS}h"
        if self.long_drought:
            return f"long_drought_{LONG_WINDOW_HOURS}h"
        return None


@dataclass
class DroughtState:
    phase: str = "inactive"  # inactive | active | blocked | killed
    detected: bool = False
    active: bool = False
    blocked: bool = False
    block_reason: Optional[str] = None
    killed: bool = False
    kill_reason: Optional[str] = None
    reason: Optional[str] = None
    override: str = DroughtOverride.AUTO.value
    cooldown_until: Optional[datetime] = None
    windows: DroughtWindows = field(default_factory=DroughtWindows)
    equity: float = 0.0
    peak_equity: float = 0.0
    peak_equity_drawdown_pct: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "detected": self.detected,
            "active": self.active,
            "blocked": self.blocked,
            "block_reason": self.block_reason,
            "killed": self.killed,
            "kill_reason": self.kill_reason,
            "reason": self.reason,
            "override": self.override,
            "cooldown_until": to_iso(self.cooldown_until),
            "holds_6h": self.windows.holds_short,
            "orders_6h": self.windows.orders_short,
            "holds_48h": self.windows.holds_long,
            "orders_48h": self.windows.orders_long,
            "equity": round(self.equity, 4),
            "peak_equity": round(self.peak_equity, 4),
            "peak_equity_drawdown_pct": round(self.peak_equity_drawdown_pct, 4),
        }


def mark_to_market(
    cash: float,
    positions: Iterable[Position],
    prices: Mapping[str, float],
) -> float:
    """cash + sum(qty * mark). Positions without a mark fall back to their entry price."""
    equity = cash
    for position in positions:
        mark = prices.get(position.symbol)
        if mark is None or mark <= 0:
            mark = position.avg_entry_price
        equity += position.qty * mark
    return equity


def drawdown_from_peak(equity: float, peak: float) -> float:
    """Percent drawdown against the watermark, clamped to [0, 100]."""
    if peak <= 0:
        return 0.0
    return max(0.0, min(100.0, (peak - equity) / peak * 100.0))


class PeakEquityTracker:
    """Pure watermark used by tests and the dry-run path"""

    def __init__(self, initial: float = 0.0):
        self.peak = initial

    def observe(self, equity: float) -> float:
        if equity > self.peak:
            self.peak = equity
        return drawdown_from_peak(equity, self.peak)


class DroughtResolver:
    def __init__(self, store: LedgerStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    async def _windows(self, now: datetime) -> DroughtWindows:
        short_start = now - timedelta(hours=SHORT_WINDOW_HOURS)
        long_start = now - timedelta(hours=LONG_WINDOW_HOURS)
        return DroughtWindows(
            holds_short=await self.store.count_decisions("hold", short_start),
            orders_short=await self.store.count_filled_orders(since=short_start),
            holds_long=await self.store.count_decisions("hold", long_start),
            orders_long=await self.store.count_filled_orders(since=long_start),
        )

    async def _equity(self, snapshots: List[MarketSnapshot]) -> Dict[str, float]:
        account = await self.store.get_paper_account()
        if account is None:
            return {"cash": 0.0, "starting_cash": 0.0, "equity": 0.0, "peak": 0.0}
        positions = await self.store.list_positions(account.id)
        prices = {s.symbol: s.price for s in snapshots}
        missing = [p.symbol for p in positions if p.symbol not in prices]
        if missing:
            for row in await self.store.list_market_data(missing):
                prices[row["symbol"]] = float(row.get("price") or 0)
        equity = mark_to_market(account.cash, positions, prices)
        peak = await self.store.raise_peak_equity(account.id, equity)
        return {
            "cash": account.cash,
            "starting_cash": account.starting_cash,
            "equity": equity,
            "peak": peak,
        }

    def _kill_reason(
        self,
        config: RuntimeConfig,
        drawdown_pct: float,
        snapshots: List[MarketSnapshot],
    ) -> Optional[str]:
        safety = config.drought_safety
        if drawdown_pct > safety.max_drawdown_pct:
            return f"peak_drawdown_{drawdown_pct:.2f}pct"
        for snapshot in snapshots:
            if snapshot.volatility_ratio > safety.vol_spike_ratio:
                return f"vol_spike_{snapshot.symbol}"
        return None

    async def _block_reason(self, config: RuntimeConfig, cash: float, starting_cash: float, now: datetime) -> Optional[str]:
        safety = config.drought_safety
        if starting_cash > 0:
            cash_pct = cash / starting_cash * 100.0
            if cash_pct < safety.min_cash_pct:
                return f"low_cash_{cash_pct:.0f}pct"
        recent = await self.store.count_filled_orders(since=now - timedelta(hours=1), tag="drought_mode")
        if recent >= safety.max_trades_per_hour:
            return f"hourly_cap_{recent}"
        return None

    async def _kill(self, config: RuntimeConfig, state: DroughtState, now: datetime) -> None:
        cooldown_until = now + timedelta(hours=config.drought_safety.kill_cooldown_hours)
        frozen_until = now + timedelta(hours=config.adaptive_tuning.freeze_after_kill_hours)
        await self.store.merge_config({
            "drought_cooldown_until": to_iso(cooldown_until),
            "adaptive_tuning": {
                "frozen_until": to_iso(frozen_until),
                "frozen_reason": state.kill_reason,
            },
        })
        await self.store.log_event("drought_kill", {
            "kill_reason": state.kill_reason,
            "equity": state.equity,
            "peak_equity": state.peak_equity,
            "peak_equity_drawdown_pct": state.peak_equity_drawdown_pct,
            "cooldown_until": to_iso(cooldown_until),
        })
        state.cooldown_until = cooldown_until
        logger.critical(
            f"Drought kill switch fired: {state.kill_reason} "
            f"(equity ${state.equity:.2f}, peak ${state.peak_equity:.2f}); cooldown until {to_iso(cooldown_until)}"
        )

    async def resolve(self, config: RuntimeConfig, snapshots: Optional[List[MarketSnapshot]] = None) -> DroughtState:
        """
        Resolve this cycle's drought state.

        Args:
            config: Runtime config snapshot for this invocation
            snapshots: The fresh snapshots being evaluated (marks and vol-spike check)
        """
        snapshots = list(snapshots or [])
        now = self.clock()
        windows = await self._windows(now)
        money = await self._equity(snapshots)

        state = DroughtState(
            override=config.drought_override.value,
            cooldown_until=config.drought_cooldown_until,
            windows=windows,
            reason=windows.reason,
            detected=windows.reason is not None,
            equity=money["equity"],
            peak_equity=money["peak"],
            peak_equity_drawdown_pct=drawdown_from_peak(money["equity"], money["peak"]),
        )

        forced_on = config.drought_override is DroughtOverride.FORCE_ON
        if forced_on and state.reason is None:
            state.reason = "force_on"
        if not (state.detected or forced_on):
            return state

        if config.drought_override is DroughtOverride.FORCE_OFF:
            state.blocked, state.block_reason = True, "force_off"
        elif config.in_drought_cooldown(now):
            state.blocked, state.block_reason = True, "cooldown"
        else:
            kill_reason = self._kill_reason(config, state.peak_equity_drawdown_pct, snapshots)
            if kill_reason:
                state.killed, state.kill_reason = True, kill_reason
                await self._kill(config, state, now)
            else:
                block = await self._block_reason(config, money["cash"], money["starting_cash"], now)
                if block:
                    state.blocked, state.block_reason = True, block
                else:
                    state.active = True

        if state.killed:
            state.phase = "killed"
        elif state.blocked:
            state.phase = "blocked"
            logger.warning(f"Drought mode blocked: {state.block_reason}")
        else:
            state.phase = "active"
            logger.info(
                f"Drought mode active: {state.reason} "
                f"(holds_6h={windows.holds_short}, orders_6h={windows.orders_short})"
            )
        return state
