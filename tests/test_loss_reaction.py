"""
Tests for the same-day loss brakes.
"""
from datetime import timedelta

import pytest

from conftest import T0
from evotrader.config.runtime_config import LossReactionConfig, LossReactionSession, RuntimeConfig
from evotrader.risk.loss_reaction import (
    BLOCKED_CONSECUTIVE_LOSSES,
    BLOCKED_DAY_STOPPED,
    BLOCKED_LOSS_COOLDOWN,
    LossReactionGuard,
    evaluate,
    react,
    session_for,
)

pytestmark = pytest.mark.asyncio

TODAY = T0.date().isoformat()


def config_with(**session):
    return LossReactionConfig(session=LossReactionSession(day=TODAY, **session))


def test_fresh_session_allows_full_size():
    check = evaluate(LossReactionConfig(), T0)
    assert not check.blocked
    assert check.size_multiplier == 1.0


def test_gates_apply_in_order():
    stopped = config_with(day_stopped=True, cooldown_until=T0 + timedelta(minutes=5), consecutive_losses=3)
    assert evaluate(stopped, T0).reason == BLOCKED_DAY_STOPPED

    cooling = config_with(cooldown_until=T0 + timedelta(minutes=5), consecutive_losses=3)
    assert evaluate(cooling, T0).reason == BLOCKED_LOSS_COOLDOWN
    assert evaluate(cooling, T0 + timedelta(minutes=5)).reason == BLOCKED_CONSECUTIVE_LOSSES

    assert not evaluate(config_with(consecutive_losses=2), T0).blocked


def test_disabled_never_blocks():
    config = LossReactionConfig(enabled=False, session=LossReactionSession(day=TODAY, day_stopped=True))
    assert not evaluate(config, T0).blocked


def test_yesterdays_stop_does_not_carry_over():
    config = config_with(day_stopped=True, consecutive_losses=3)
    tomorrow = T0 + timedelta(days=1)
    assert session_for(config, tomorrow).day == tomorrow.date().isoformat()
    assert not evaluate(config, tomorrow).blocked


def test_losing_streak_stops_the_day():
    config = LossReactionConfig()
    session = session_for(config, T0)
    for _ in range(3):
        session = react(config, session, -1.0, 1000.0, T0)

    assert session.consecutive_losses == 3
    assert session.last_loss_at == T0
    assert session.cooldown_until == T0 + timedelta(minutes=15)
    assert session.day_stopped
    assert session.day_stopped_reason == "3 consecutive losses"


def test_win_resets_streak_and_cooldown():
    config = LossReactionConfig()
    session = react(config, session_for(config, T0), -1.0, 999.0, T0)
    session = react(config, session, 2.0, 1001.0, T0 + timedelta(minutes=20))

    assert session.consecutive_losses == 0
    assert session.cooldown_until is None
    assert session.size_multiplier == 1.0
    assert session.day_realized_pnl == pytest.approx(1.0)
    assert session.day_start_equity == pytest.approx(1000.0)


def test_day_drawdown_halves_then_stops():
    config = LossReactionConfig(max_consecutive_losses=10)
    session = react(config, session_for(config, T0), -25.0, 975.0, T0)
    assert session.size_multiplier == 0.5
    assert not session.day_stopped

    session = react(config, session, -30.0, 945.0, T0)
    assert session.day_stopped
    assert session.day_stopped_reason.startswith("day pnl -5.50%")


async def test_record_trade_persists_the_session(store, clock):
    guard = LossReactionGuard(store, clock=clock)

    session = await guard.record_trade(-3.0, "ETH-USD", "order-1")

    document = (await store.get_config())["loss_reaction"]["session"]
    assert document["consecutive_losses"] == 1 == session.consecutive_losses
    assert document["day"] == TODAY
    assert document["day_start_equity"] == pytest.approx(1003.0)
    [event] = await store.list_events("loss_reaction_updated")
    assert event["metadata"]["symbol"] == "ETH-USD"
    assert event["metadata"]["pnl"] == -3.0

    check = guard.check(RuntimeConfig.from_document(await store.get_config()))
    assert check.reason == BLOCKED_LOSS_COOLDOWN


async def test_record_trade_is_a_no_op_when_disabled(store, clock):
    await store.merge_config({"loss_reaction": {"enabled": False}})

    assert await LossReactionGuard(store, clock=clock).record_trade(-3.0) is None
    assert "session" not in (await store.get_config())["loss_reaction"]
    assert await store.list_events("loss_reaction_updated") == []


async def test_reset_and_clear_cooldown(store, clock):
    guard = LossReactionGuard(store, clock=clock)
    for _ in range(3):
        await guard.record_trade(-1.0)

    await guard.clear_cooldown()
    config = RuntimeConfig.from_document(await store.get_config())
    assert config.loss_reaction.session.cooldown_until is None
    assert guard.check(config).reason == BLOCKED_DAY_STOPPED
    assert len(await store.list_events("loss_reaction_cooldown_cleared")) == 1

    await guard.reset("operator")
    config = RuntimeConfig.from_document(await store.get_config())
    assert not guard.check(config).blocked
    [event] = await store.list_events("loss_reaction_reset")
    assert event["metadata"]["reason"] == "operator"
