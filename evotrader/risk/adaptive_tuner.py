"""
Adaptive Threshold Tuner.

Runs once per cycle after the decision event is written. At most one gate
offset changes per invocation: either the nearest-miss gate is relaxed by one
step (drought active) or the largest offset decays one step toward zero
(drought inactive, ``drought_only`` mode). Offsets are signed fractions where
positive means relaxed; ``strategies.gates.relaxed_value`` turns them into
thresholds according to each gate's min/max class.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from evotrader.config.runtime_config import RuntimeConfig
from evotrader.core.types import DecisionEvent, DroughtOverride
from evotrader.core.utils import clamp, to_iso, utc_now
from evotrader.database.ledger_store import LedgerStore
from evotrader.risk.drought import DroughtState
from evotrader.strategies.gates import GATES

NEGLIGIBLE_OFFSET = 1e-4


@dataclass
class TuningOutcome:
    action: str = "none"  # none | relax | decay | skipped
    reason: str = ""
    gate: Optional[str] = None
    direction: Optional[str] = None
    old_offset: float = 0.0
    new_offset: float = 0.0
    offsets: Dict[str, float] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.action in ("relax", "decay")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "reason": self.reason,
            "gate": self.gate,
            "direction": self.direction,
            "old_offset": round(self.old_offset, 6),
            "new_offset": round(self.new_offset, 6),
            "offsets": {k: round(v, 6) for k, v in self.offsets.items()},
        }


def pick_gate(events: List[DecisionEvent]) -> Optional[str]:
    """Most frequent nearest-pass gate, else most frequent outright failure.

    Ties resolve in gate declaration order so the choice is reproducible.
    """
    order = list(GATES)
    nearest = Counter(
        e.nearest_pass.gate for e in events if e.nearest_pass is not None and e.nearest_pass.gate in GATES
    )
    if not nearest:
        failures: Counter = Counter()
        for e in events:
            for gate, tally in e.gate_failures.items():
                if gate in GATES:
                    failures[gate] += int(tally.get("count", 1) or 0)
        nearest = failures
    if not nearest:
        return None
    best = max(nearest.values())
    for gate in order:
        if nearest.get(gate) == best:
            return gate
    return None


def decay_one(offsets: Dict[str, float], step: float, max_relax: float) -> Optional[tuple]:
    """Decay the largest-magnitude offset one step toward zero. Returns (gate, old, new)."""
    live = {g: o for g, o in offsets.items() if abs(o) >= NEGLIGIBLE_OFFSET}
    if not live:
        return None
    gate = max(sorted(live), key=lambda g: abs(live[g]))
    old = live[gate]
    magnitude = max(0.0, abs(old) - step)
    new = clamp(magnitude if old > 0 else -magnitude, -max_relax, max_relax)
    if abs(new) < NEGLIGIBLE_OFFSET:
        new = 0.0
    return gate, old, new


class AdaptiveThresholdTuner:
    def __init__(self, store: LedgerStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    async def _recent_decisions(self, window: int) -> List[DecisionEvent]:
        rows = await self.store.list_events("trade_decision", limit=window)
        return [DecisionEvent.from_metadata(r.get("metadata") or {}) for r in rows]

    async def _persist(self, gate: str, new_offset: float, now: datetime) -> None:
        # null removes the key from the parsed offsets
        value = None if new_offset == 0.0 else new_offset
        await self.store.merge_config({
            "adaptive_tuning": {
                "offsets": {gate: value},
                "last_adjusted_at": to_iso(now),
            }
        })

    async def run(self, config: RuntimeConfig, drought: DroughtState) -> TuningOutcome:
        cfg = config.adaptive_tuning
        now = self.clock()
        offsets = {g: o for g, o in cfg.offsets.items() if abs(o) >= NEGLIGIBLE_OFFSET}
        outcome = TuningOutcome(offsets=dict(offsets))

        if not cfg.enabled:
            outcome.action, outcome.reason = "skipped", "disabled"
            return outcome
        if config.tuning_frozen(now):
            outcome.action, outcome.reason = "skipped", f"frozen:{cfg.frozen_reason or 'kill'}"
            return outcome
        if config.drought_override is DroughtOverride.FORCE_OFF:
            outcome.action, outcome.reason = "skipped", "force_off"
            return outcome

        relax_allowed = drought.active or cfg.mode == "always"

        if not relax_allowed:
            decayed = decay_one(offsets, cfg.decay_step_pct, cfg.max_relax_pct)
            if decayed is None:
                outcome.reason = "no_offsets"
                return outcome
            gate, old, new = decayed
            await self._persist(gate, new, now)
            if new == 0.0:
                offsets.pop(gate, None)
            else:
                offsets[gate] = new
            logger.info(f"Adaptive tuning decay: {gate} {old:+.4f} -> {new:+.4f}")
            return TuningOutcome(
                action="decay",
                reason="drought_inactive",
                gate=gate,
                direction=GATES[gate].direction.value if gate in GATES else None,
                old_offset=old,
                new_offset=new,
                offsets=offsets,
            )

        if cfg.last_adjusted_at is not None and now - cfg.last_adjusted_at < timedelta(minutes=cfg.cooldown_minutes):
            outcome.reason = "cooldown"
            return outcome

        events = await self._recent_decisions(cfg.window_decisions)
        gate = pick_gate(events)
        if gate is None:
            outcome.reason = "no_near_misses"
            return outcome

        old = offsets.get(gate, 0.0)
        new = clamp(old + cfg.step_pct, -cfg.max_relax_pct, cfg.max_relax_pct)
        if new <= old:
            outcome.gate, outcome.reason = gate, "max_relax_reached"
            return outcome

        await self._persist(gate, new, now)
        offsets[gate] = new
        await self.store.log_event("threshold_relaxed", {
            "gate": gate,
            "direction": GATES[gate].direction.value,
            "old_offset": old,
            "new_offset": new,
            "window_decisions": len(events),
            "drought_reason": drought.reason,
        })
        logger.info(f"Adaptive tuning relax: {gate} ({GATES[gate].direction.value}) {old:+.4f} -> {new:+.4f}")
        return TuningOutcome(
            action="relax",
            reason=drought.reason or "always",
            gate=gate,
            direction=GATES[gate].direction.value,
            old_offset=old,
            new_offset=new,
            offsets=offsets,
        )
