"""
Shadow outcome calculator - marks counterfactual (not executed) entries to market
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from loguru import logger

from evotrader.config.runtime_config import RuntimeConfig
from evotrader.core.types import ShadowTrade
from evotrader.core.utils import utc_now
from evotrader.database.ledger_store import LedgerStore
from evotrader.market.snapshots import MarketSnapshotProvider

MAX_MARK_AGE_SECONDS = 300


@dataclass
class ShadowOutcome:
    should_close: bool
    exit_price: float
    pnl: float
    pnl_pct: float
    reason: str


def mark_outcome(trade: ShadowTrade, price: float, elapsed_minutes: float, max_hold_hours: float) -> ShadowOutcome:
    is_buy = trade.side == "BUY"
    delta = price - trade.entry_price if is_buy else trade.entry_price - price
    pnl = trade.intended_qty * delta
    pnl_pct = delta / trade.entry_price * 100 if trade.entry_price else 0.0
    if elapsed_minutes >= max_hold_hours * 60:
        return ShadowOutcome(True, price, pnl, pnl_pct, "expired_mtm")
    return ShadowOutcome(False, price, pnl, pnl_pct, "pending")


@dataclass
class ShadowRunResult:
    ok: bool = True
    processed: int = 0
    calculated: int = 0
    marked: int = 0
    expired: int = 0
    skipped: int = 0
    by_reason: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "processed": self.processed,
            "calculated": self.calculated,
            "marked": self.marked,
            "expired": self.expired,
            "skipped": self.skipped,
            "by_reason": dict(self.by_reason),
        }


class ShadowOutcomeCalculator:
    def __init__(self, store: LedgerStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock
        self.market = MarketSnapshotProvider(store)

    async def run(self, config: Optional[RuntimeConfig] = None) -> ShadowRunResult:
        if config is None:
            config = RuntimeConfig.from_document(await self.store.get_config())
        shadow_cfg = config.shadow_trading
        now = self.clock()
        min_entry_time = now - timedelta(minutes=shadow_cfg.min_hold_minutes)

        pending = [
            t for t in await self.store.list_shadow_trades(status="pending")
            if t.entry_time is not None and t.entry_time <= min_entry_time
        ]
        result = ShadowRunResult(processed=len(pending))
        if not pending:
            return result

        snapshots = {s.symbol: s for s in await self.market.get_snapshots(sorted({t.symbol for t in pending}))}
        for trade in pending:
            elapsed = (now - trade.entry_time).total_seconds() / 60
            snapshot = snapshots.get(trade.symbol)
            if snapshot is None or snapshot.age_seconds(now) > MAX_MARK_AGE_SECONDS:
                if elapsed >= shadow_cfg.max_hold_hours * 60:
                    # past max hold with no usable mark: close without an outcome
                    await self.store.update_shadow_trade(trade.id, {
                        "outcome_status": "expired",
                        "outcome_calculated_at": now,
                    })
                    result.expired += 1
                else:
                    result.skipped += 1
                continue

            outcome = mark_outcome(trade, snapshot.price, elapsed, shadow_cfg.max_hold_hours)
            fields = {
                "exit_price": outcome.exit_price,
                "simulated_pnl": outcome.pnl,
                "simulated_pnl_pct": outcome.pnl_pct,
            }
            if outcome.should_close:
                fields.update({"exit_time": now, "outcome_calculated_at": now, "outcome_status": "calculated"})
                result.calculated += 1
                result.by_reason[outcome.reason] = result.by_reason.get(outcome.reason, 0) + 1
                logger.info(f"Shadow {trade.symbol} {trade.side}: {outcome.reason} | PnL {outcome.pnl_pct:.2f}%")
            else:
                result.marked += 1
            await self.store.update_shadow_trade(trade.id, fields)

        await self.store.log_event("shadow_outcomes_calculated", result.to_dict())
        return result
