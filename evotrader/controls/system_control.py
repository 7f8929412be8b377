"""
System Controls - start, pause, stop of the whole population

The status lives in ``system_state`` so every short-lived invocation (CLI tick,
API request) sees the same switch. Transitions are a single conditional update
on the store, never read-then-write.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from loguru import logger

from evotrader.core.types import SystemStatus
from evotrader.core.utils import utc_now
from evotrader.database.ledger_store import LedgerStore

# action -> (allowed source states, target state)
CONTROL_ACTIONS = {
    "start": ({SystemStatus.STOPPED, SystemStatus.PAUSED, SystemStatus.ERROR}, SystemStatus.RUNNING),
    "pause": ({SystemStatus.RUNNING}, SystemStatus.PAUSED),
    "stop": ({SystemStatus.RUNNING, SystemStatus.PAUSED, SystemStatus.ERROR}, SystemStatus.STOPPED),
}


@dataclass
class ControlResult:
    ok: bool
    action: str
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    generation_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "action": self.action,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "generation_id": self.generation_id,
            "reason": self.reason,
        }


class SystemControls:
    """Operator switch for the trading loop."""

    def __init__(self, store: LedgerStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    async def apply(self, action: str, reason: Optional[str] = None) -> ControlResult:
        """
        Apply a control action.

        Args:
            action: ``start``, ``pause`` or ``stop``
            reason: Operator note stored on the event row
        """
        if action not in CONTROL_ACTIONS:
            return ControlResult(ok=False, action=action, reason="unknown_action")

        allowed_from, target = CONTROL_ACTIONS[action]
        previous = await self.store.transition_system_status(allowed_from, target)
        if previous is None:
            current = (await self.store.get_system_state()).status
            logger.warning(f"Control '{action}' rejected: system is {current.value}")
            return ControlResult(
                ok=False,
                action=action,
                previous_status=current.value,
                new_status=current.value,
                reason=f"invalid_transition_from_{current.value}",
            )

        result = ControlResult(ok=True, action=action, previous_status=previous.value, new_status=target.value)

        if action == "start":
            generation = await self.store.get_active_generation()
            if generation is None:
                generation = await self.store.start_generation()
                logger.info(f"Started generation {generation.generation_number} with the system")
            result.generation_id = generation.id

        await self.store.log_event(
            f"system_{action}",
            {"reason": reason, "generation_id": result.generation_id},
            previous_status=previous.value,
            new_status=target.value,
        )
        logger.info(f"System {previous.value} -> {target.value} ({action})")
        return result

    async def start(self, reason: Optional[str] = None) -> ControlResult:
        return await self.apply("start", reason)

    async def pause(self, reason: Optional[str] = None) -> ControlResult:
        return await self.apply("pause", reason)

    async def stop(self, reason: Optional[str] = None) -> ControlResult:
        return await self.apply("stop", reason)
