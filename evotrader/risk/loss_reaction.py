"""
Loss Reaction - same-day brakes after realized losses.

    loss       streak += 1, entries pause for ``cooldown_minutes_after_loss``;
               the streak reaching ``max_consecutive_losses`` stops the day
    win        streak, cooldown and size cut reset
    day PnL    below -halve_size_drawdown_pct: entries at half size
               below -day_stop_pct: no entries until the next UTC day

Only new entries are gated. Exits always go through, so a stopped day can
still flatten. The session is kept in ``system_config.loss_reaction.session``
and only written through ``merge_config``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from loguru import logger

from evotrader.config.runtime_config import LossReactionConfig, LossReactionSession, RuntimeConfig
from evotrader.core.utils import to_iso, utc_now
from evotrader.database.ledger_store import LedgerStore

BLOCKED_DAY_STOPPED = "BLOCKED_DAY_STOPPED"
BLOCKED_LOSS_COOLDOWN = "BLOCKED_LOSS_COOLDOWN"
BLOCKED_CONSECUTIVE_LOSSES = "BLOCKED_CONSECUTIVE_LOSSES"
HALVED_SIZE_MULTIPLIER = 0.5


@dataclass
class LossReactionCheck:
    blocked: bool = False
    reason: Optional[str] = None
    size_multiplier: float = 1.0
    consecutive_losses: int = 0
    cooldown_until: Optional[datetime] = None
    day_pnl_pct: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "blocked": self.blocked,
            "reason": self.reason,
            "size_multiplier": self.size_multiplier,
            "consecutive_losses": self.consecutive_losses,
            "cooldown_until": to_iso(self.cooldown_until),
            "day_pnl_pct": round(self.day_pnl_pct, 4),
        }


def session_for(config: LossReactionConfig, now: datetime) -> LossReactionSession:
    """The stored session, or a fresh one once the UTC day has rolled over"""
    today = now.date().isoformat()
    if config.session.day != today:
        return LossReactionSession(day=today)
    return config.session


def day_pnl_pct(session: LossReactionSession) -> float:
    if not session.day_start_equity:
        return 0.0
    return session.day_realized_pnl / session.day_start_equity * 100.0


def evaluate(config: LossReactionConfig, now: datetime) -> LossReactionCheck:
    """Gate order: day stop, loss cooldown, losing streak; otherwise the size multiplier applies."""
    if not config.enabled:
        return LossReactionCheck()
    session = session_for(config, now)
    check = LossReactionCheck(
        size_multiplier=session.size_multiplier,
        consecutive_losses=session.consecutive_losses,
        cooldown_until=session.cooldown_until,
        day_pnl_pct=day_pnl_pct(session),
    )
    if session.day_stopped:
        check.blocked, check.reason = True, BLOCKED_DAY_STOPPED
    elif session.cooldown_until is not None and now < session.cooldown_until:
        check.blocked, check.reason = True, BLOCKED_LOSS_COOLDOWN
    elif session.consecutive_losses >= config.max_consecutive_losses:
        check.blocked, check.reason = True, BLOCKED_CONSECUTIVE_LOSSES
    return check


def react(
    config: LossReactionConfig,
    session: LossReactionSession,
    pnl: float,
    equity: float,
    now: datetime,
) -> LossReactionSession:
    """Session after one closed trade with realized ``pnl``; ``equity`` is the account after it."""
    update: Dict[str, Any] = {
        "day_realized_pnl": session.day_realized_pnl + pnl,
        "day_start_equity": session.day_start_equity if session.day_start_equity else equity - pnl,
    }
    if pnl < 0:
        streak = session.consecutive_losses + 1
        update.update({
            "consecutive_losses": streak,
            "last_loss_at": now,
            "cooldown_until": now + timedelta(minutes=config.cooldown_minutes_after_loss),
        })
        if streak >= config.max_consecutive_losses:
            update.update({"day_stopped": True, "day_stopped_reason": f"{streak} consecutive losses"})
    else:
        update.update({"consecutive_losses": 0, "cooldown_until": None, "size_multiplier": 1.0})

    updated = session.model_copy(update=update)
    pct = day_pnl_pct(updated)
    if pct <= -config.day_stop_pct and not updated.day_stopped:
        updated = updated.model_copy(update={
            "day_stopped": True,
            "day_stopped_reason": f"day pnl {pct:.2f}% beyond -{config.day_stop_pct}%",
        })
    elif pct <= -config.halve_size_drawdown_pct and updated.size_multiplier >= 1.0:
        updated = updated.model_copy(update={"size_multiplier": HALVED_SIZE_MULTIPLIER})
    return updated


def session_document(session: LossReactionSession) -> Dict[str, Any]:
    return {
        "day": session.day,
        "consecutive_losses": session.consecutive_losses,
        "last_loss_at": to_iso(session.last_loss_at),
        "cooldown_until": to_iso(session.cooldown_until),
        "size_multiplier": session.size_multiplier,
        "day_stopped": session.day_stopped,
        "day_stopped_reason": session.day_stopped_reason,
        "day_realized_pnl": session.day_realized_pnl,
        "day_start_equity": session.day_start_equity,
    }


class LossReactionGuard:
    def __init__(self, store: LedgerStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def check(self, config: RuntimeConfig, now: Optional[datetime] = None) -> LossReactionCheck:
        return evaluate(config.loss_reaction, now or self.clock())

    async def _equity_at_cost(self) -> float:
        account = await self.store.get_paper_account()
        if account is None:
            return 0.0
        positions = await self.store.list_positions(account.id)
        return account.cash + sum(p.qty * p.avg_entry_price for p in positions)

    async def record_trade(
        self,
        realized_pnl: float,
        symbol: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> Optional[LossReactionSession]:
        """Fold one closed trade into today's session. Returns None when loss reaction is off."""
        # re-read so a cycle that started before a reset does not write the old session back
        config = RuntimeConfig.from_document(await self.store.get_config()).loss_reaction
        if not config.enabled:
            return None
        now = self.clock()
        session = react(config, session_for(config, now), realized_pnl, await self._equity_at_cost(), now)
        await self.store.merge_config({"loss_reaction": {"session": session_document(session)}})
        await self.store.log_event("loss_reaction_updated", {
            "symbol": symbol,
            "order_id": order_id,
            "pnl": realized_pnl,
            "session": session_document(session),
        })
        if session.day_stopped:
            logger.warning(f"Loss reaction stopped new entries for {session.day}: {session.day_stopped_reason}")
        elif realized_pnl < 0:
            logger.warning(
                f"Loss of ${-realized_pnl:.4f} on {symbol}; streak {session.consecutive_losses}, "
                f"entries paused until {to_iso(session.cooldown_until)}"
            )
        return session

    async def reset(self, reason: str = "manual") -> LossReactionSession:
        session = LossReactionSession(day=self.clock().date().isoformat())
        await self.store.merge_config({"loss_reaction": {"session": session_document(session)}})
        await self.store.log_event("loss_reaction_reset", {"reason": reason})
        logger.info(f"Loss reaction session reset ({reason})")
        return session

    async def clear_cooldown(self) -> None:
        await self.store.merge_config({"loss_reaction": {"session": {"cooldown_until": None}}})
        await self.store.log_event("loss_reaction_cooldown_cleared", {})
        logger.info("Loss reaction cooldown cleared")
