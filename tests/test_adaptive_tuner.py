"""
Tests for the adaptive threshold tuner.
"""
from datetime import timedelta

import pytest

from evotrader.config.runtime_config import RuntimeConfig
from evotrader.core.utils import to_iso
from evotrader.risk.adaptive_tuner import AdaptiveThresholdTuner, decay_one, pick_gate
from evotrader.risk.drought import DroughtState
from evotrader.core.types import Decision, DecisionEvent, GateFailure
from evotrader.strategies.gates import BASELINE_THRESHOLDS, apply_offsets

pytestmark = pytest.mark.asyncio

ACTIVE = DroughtState(phase="active", detected=True, active=True, reason="short_drought_6h")
INACTIVE = DroughtState()


async def log_near_misses(store, gates):
    for gate in gates:
        event = DecisionEvent(
            cycle_id="c",
            agent_id="a",
            generation_id="g",
            decision=Decision.HOLD,
            nearest_pass=GateFailure(gate, 0.0, 1.0, -0.1),
            gate_failures={gate: {"count": 1, "avg_margin": -0.1}},
        )
        await store.log_event("trade_decision", event.to_metadata())


async def stored_offsets(store):
    return RuntimeConfig.from_document(await store.get_config()).adaptive_tuning.offsets


async def test_relaxes_only_the_most_frequent_near_miss(store):
    await log_near_misses(store, ["trend", "trend", "pullback", "trend", "rsi"])
    tuner = AdaptiveThresholdTuner(store, clock=store.clock)

    outcome = await tuner.run(RuntimeConfig(), ACTIVE)

    assert outcome.action == "relax"
    assert outcome.gate == "trend"
    assert outcome.direction == "min"
    assert outcome.new_offset == pytest.approx(0.05)
    assert await stored_offsets(store) == {"trend": pytest.approx(0.05)}
    assert len(await store.list_events("threshold_relaxed")) == 1


async def test_relaxed_thresholds_move_in_the_gate_direction(store):
    await log_near_misses(store, ["pullback"])
    outcome = await AdaptiveThresholdTuner(store, clock=store.clock).run(RuntimeConfig(), ACTIVE)
    assert outcome.gate == "pullback"

    relaxed = apply_offsets(BASELINE_THRESHOLDS, await stored_offsets(store))
    assert relaxed.pullback_pct > BASELINE_THRESHOLDS.pullback_pct
    assert relaxed.trend_threshold == BASELINE_THRESHOLDS.trend_threshold

    relaxed = apply_offsets(BASELINE_THRESHOLDS, {"trend": outcome.new_offset})
    assert relaxed.trend_threshold < BASELINE_THRESHOLDS.trend_threshold


async def test_cooldown_blocks_back_to_back_relaxation(store, clock):
    await log_near_misses(store, ["trend"])
    config = RuntimeConfig.from_document({
        "adaptive_tuning": {"last_adjusted_at": to_iso(clock() - timedelta(minutes=10))},
    })

    outcome = await AdaptiveThresholdTuner(store, clock=clock).run(config, ACTIVE)

    assert outcome.action == "none"
    assert outcome.reason == "cooldown"
    assert await stored_offsets(store) == {}


async def test_relaxation_is_capped(store):
    await log_near_misses(store, ["trend"])
    config = RuntimeConfig.from_document({"adaptive_tuning": {"offsets": {"trend": 0.30}}})

    outcome = await AdaptiveThresholdTuner(store, clock=store.clock).run(config, ACTIVE)

    assert outcome.action == "none"
    assert outcome.reason == "max_relax_reached"


async def test_decay_touches_one_gate_when_drought_inactive(store):
    config = RuntimeConfig.from_document({"adaptive_tuning": {"offsets": {"trend": 0.10, "pullback": 0.03}}})

    outcome = await AdaptiveThresholdTuner(store, clock=store.clock).run(config, INACTIVE)

    assert outcome.action == "decay"
    assert outcome.gate == "trend"
    assert outcome.new_offset == pytest.approx(0.08)
    assert outcome.offsets == {"trend": pytest.approx(0.08), "pullback": pytest.approx(0.03)}
    assert await stored_offsets(store) == {"trend": pytest.approx(0.08)}


async def test_decay_to_zero_drops_the_offset(store):
    await store.merge_config({"adaptive_tuning": {"offsets": {"rsi": 0.01}}})
    config = RuntimeConfig.from_document(await store.get_config())

    outcome = await AdaptiveThresholdTuner(store, clock=store.clock).run(config, INACTIVE)

    assert outcome.new_offset == 0.0
    assert outcome.offsets == {}
    assert await stored_offsets(store) == {}


async def test_frozen_and_disabled_skip(store, clock):
    await log_near_misses(store, ["trend"])
    tuner = AdaptiveThresholdTuner(store, clock=clock)

    frozen = RuntimeConfig.from_document({
        "adaptive_tuning": {"frozen_until": to_iso(clock() + timedelta(hours=1)), "frozen_reason": "vol_spike_BTC-USD"},
    })
    outcome = await tuner.run(frozen, ACTIVE)
    assert outcome.action == "skipped"
    assert outcome.reason == "frozen:vol_spike_BTC-USD"

    disabled = RuntimeConfig.from_document({"adaptive_tuning": {"enabled": False}})
    assert (await tuner.run(disabled, ACTIVE)).reason == "disabled"
    assert await stored_offsets(store) == {}


def test_pick_gate_falls_back_to_failure_counts():
    events = [
        DecisionEvent("c", "a", "g", Decision.HOLD, gate_failures={"vol_contraction": {"count": 3}}),
        DecisionEvent("c", "a", "g", Decision.HOLD, gate_failures={"rsi": {"count": 2}}),
    ]
    assert pick_gate(events) == "vol_contraction"
    assert pick_gate([]) is None


def test_decay_one_preserves_sign():
    assert decay_one({"trend": -0.05}, 0.02, 0.3) == ("trend", -0.05, pytest.approx(-0.03))
    assert decay_one({}, 0.02, 0.3) is None
