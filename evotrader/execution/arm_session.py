"""
Arm / disarm of the live path.

Arming creates a single-use arm session (the canary token spent by the live
safety chain) and stamps ``system_state.live_armed_until``.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from loguru import logger

from evotrader.config.runtime_config import RuntimeConfig
from evotrader.core.types import ArmSession, TradeMode
from evotrader.core.utils import clamp, to_iso, utc_midnight, utc_now
from evotrader.database.ledger_store import LedgerStore

DEFAULT_ARM_MINUTES = 30
MIN_ARM_MINUTES = 1
MAX_ARM_MINUTES = 60


@dataclass
class ArmResult:
    ok: bool
    action: str
    reason: Optional[str] = None
    session_id: Optional[str] = None
    armed_until: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    max_orders: Optional[int] = None
    trades_today: int = 0
    daily_limit: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "action": self.action,
            "reason": self.reason,
            "session_id": self.session_id,
            "armed_until": to_iso(self.armed_until),
            "duration_minutes": self.duration_minutes,
            "max_orders": self.max_orders,
            "trades_today": self.trades_today,
            "daily_limit": self.daily_limit,
        }


def clamp_duration(duration_minutes: Optional[float]) -> int:
    if not duration_minutes:
        return DEFAULT_ARM_MINUTES
    return int(clamp(float(duration_minutes), MIN_ARM_MINUTES, MAX_ARM_MINUTES))


class ArmController:
    def __init__(self, store: LedgerStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    async def arm(self, duration_minutes: Optional[float] = None) -> ArmResult:
        state = await self.store.get_system_state()
        if state.trade_mode != TradeMode.LIVE:
            logger.warning(f"Arm refused: trade mode is {state.trade_mode.value}")
            await self.store.log_event("live_arm_refused", {"reason": "NOT_LIVE_MODE"})
            return ArmResult(ok=False, action="arm", reason="NOT_LIVE_MODE")

        config = RuntimeConfig.from_document(await self.store.get_config())
        limits = config.canary_limits
        now = self.clock()

        trades_today = await self.store.count_events("live_trade_executed", since=utc_midnight(now))
        if trades_today >= limits.max_trades_per_day:
            logger.warning(f"Arm refused: daily limit {trades_today}/{limits.max_trades_per_day}")
            await self.store.log_event("live_arm_refused", {
                "reason": "DAILY_LIMIT_REACHED",
                "trades_today": trades_today,
                "daily_limit": limits.max_trades_per_day,
            })
            return ArmResult(
                ok=False,
                action="arm",
                reason="DAILY_LIMIT_REACHED",
                trades_today=trades_today,
                daily_limit=limits.max_trades_per_day,
            )

        duration = clamp_duration(duration_minutes)
        armed_until = now + timedelta(minutes=duration)
        session = await self.store.create_arm_session(ArmSession(
            id=str(uuid.uuid4()),
            expires_at=armed_until,
            mode="live",
            created_at=now,
            max_live_orders=limits.max_trades_per_session,
        ))
        await self.store.update_system_state({"live_armed_until": armed_until})
        await self.store.log_event("live_armed", {
            "armed_until": to_iso(armed_until),
            "duration_minutes": duration,
            "session_id": session.id,
            "max_orders": session.max_live_orders,
            "daily_limit": limits.max_trades_per_day,
            "trades_today": trades_today,
        })
        logger.warning(f"LIVE ARMED until {to_iso(armed_until)} (session {session.id})")
        return ArmResult(
            ok=True,
            action="arm",
            session_id=session.id,
            armed_until=armed_until,
            duration_minutes=duration,
            max_orders=session.max_live_orders,
            trades_today=trades_today,
            daily_limit=limits.max_trades_per_day,
        )

    async def disarm(self, reason: str = "manual") -> ArmResult:
        await self.store.update_system_state({"live_armed_until": None})
        await self.store.log_event("live_disarmed", {"reason": reason})
        logger.info(f"Live path disarmed ({reason})")
        return ArmResult(ok=True, action="disarm", reason=reason)
