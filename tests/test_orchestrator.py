"""
Tests for one decision cycle end to end against the in-memory ledger.
"""
import asyncio
from datetime import timedelta

import pytest

from conftest import T0, make_agent, market_row
from config.settings import CycleSettings
from evotrader.core.types import AgentRole, Position, StrategyTemplate, SystemStatus, TradeMode
from evotrader.core.utils import to_iso
from evotrader.database.memory_store import InMemoryLedgerStore
from evotrader.errors import CollaboratorError
from evotrader.cycle.orchestrator import DecisionCycleOrchestrator, pick_agent, pick_symbols
from evotrader.execution.paper_execution import ExecutionResult

pytestmark = pytest.mark.asyncio

SYMBOLS = ("BTC-USD", "ETH-USD", "SOL-USD", "AVAX-USD")
PRICES = {"BTC-USD": 50000.0, "ETH-USD": 3000.0, "SOL-USD": 150.0, "AVAX-USD": 35.0}


def seed_market(store, **fields):
    for symbol in SYMBOLS:
        store.put_market_row(market_row(symbol, PRICES[symbol], updated_at=store.clock(), **fields))


async def add_agent(store, role=AgentRole.CORE, template=StrategyTemplate.TREND_PULLBACK):
    generation = await store.get_active_generation()
    agent = make_agent(generation.id, template=template, role=role)
    store.put_agent(agent)
    return agent


class RejectingExecutor:
    def __init__(self):
        self.calls = 0

    async def submit_order(self, **kwargs):
        self.calls += 1
        return ExecutionResult(ok=False, error="insufficient_cash")


class StalledExecutor:
    async def submit_order(self, **kwargs):
        await asyncio.sleep(5)
        return ExecutionResult(ok=True, order_id="never")


class StalledMarketStore(InMemoryLedgerStore):
    async def list_market_data(self, symbols=None):
        await asyncio.sleep(5)
        return await super().list_market_data(symbols)


class UnreachableLedger(InMemoryLedgerStore):
    async def get_system_state(self):
        raise CollaboratorError("ledger", "system_state read failed")

    async def log_event(self, action, metadata=None, previous_status=None, new_status=None):
        raise CollaboratorError("ledger", "event insert failed")


def tight_deadline():
    return CycleSettings(_env_file=None, collaborator_deadline_seconds=0.05)


async def hold_losing_positions(store):
    account = await store.get_paper_account()
    for symbol in SYMBOLS:
        qty = 0.0001 if symbol == "BTC-USD" else 0.001
        await store.save_position(Position(account.id, symbol, qty=qty, avg_entry_price=PRICES[symbol] * 1.1))


async def test_skips_when_not_running(store, cycle_settings):
    result = await DecisionCycleOrchestrator(store, cycle_settings, clock=store.clock).run()
    assert result.ok and result.skipped
    assert result.reason == "system_not_running"
    assert await store.list_events("trade_decision") == []


async def test_skips_in_live_mode(running_store, cycle_settings):
    await running_store.update_system_state({"trade_mode": TradeMode.LIVE.value})
    result = await DecisionCycleOrchestrator(running_store, cycle_settings, clock=running_store.clock).run()
    assert result.reason == "not_paper_mode"


async def test_skips_without_generation(store, cycle_settings):
    await store.update_system_state({"status": SystemStatus.RUNNING.value})
    result = await DecisionCycleOrchestrator(store, cycle_settings, clock=store.clock).run()
    assert result.reason == "no_active_generation"


async def test_stale_market_data_skips(running_store, cycle_settings, clock):
    seed_market(running_store)
    await add_agent(running_store)
    clock.advance(seconds=cycle_settings.max_market_age_seconds + 1)

    result = await DecisionCycleOrchestrator(running_store, cycle_settings, clock=clock).run()

    assert result.skipped and result.reason == "no_market_data"


async def test_skips_without_agents(running_store, cycle_settings):
    seed_market(running_store)
    result = await DecisionCycleOrchestrator(running_store, cycle_settings, clock=running_store.clock).run()
    assert result.reason == "no_agents"


async def test_all_hold_writes_one_decision_event(running_store, cycle_settings):
    seed_market(running_store, trend_slope=0.001, change_24h=8.0)
    agent = await add_agent(running_store)

    result = await DecisionCycleOrchestrator(running_store, cycle_settings, clock=running_store.clock).run()

    assert result.ok and not result.skipped
    assert result.decision == "hold"
    assert result.agent_id == agent.id
    assert len(result.symbols_evaluated) == 3
    [event] = await running_store.list_events("trade_decision")
    metadata = event["metadata"]
    assert metadata["decision"] == "hold"
    assert metadata["reasons"] == ["all_hold"]
    assert metadata["thresholds_used"] == "baseline"
    assert metadata["gate_failures"]["trend"]["count"] == 3
    assert metadata["gate_failures"]["pullback"]["count"] == 3
    assert metadata["nearest_pass"]["gate"] == "trend"
    assert metadata["top_hold_reasons"] == ["no_signal:3"]
    assert result.tuning["action"] in ("none", "skipped")
    assert await running_store.count_filled_orders() == 0


async def test_test_mode_dispatches_a_paper_buy(running_store, cycle_settings):
    await running_store.merge_config({"strategy_test_mode": True})
    seed_market(running_store, trend_slope=0.02, change_24h=1.0)
    agent = await add_agent(running_store)

    result = await DecisionCycleOrchestrator(running_store, cycle_settings, clock=running_store.clock).run()

    assert result.ok
    assert result.decision == "buy"
    assert result.execution["ok"] is True
    assert result.qty == (0.0001 if result.symbol == "BTC-USD" else 0.001)
    [event] = await running_store.list_events("trade_decision")
    assert event["metadata"]["thresholds_used"] == "test_mode"
    assert event["metadata"]["tags"]["test_mode"] is True
    assert "test_mode" in event["metadata"]["reasons"]

    fills = await running_store.list_fills(agent_id=agent.id)
    assert len(fills) == 1
    assert not fills[0].learnable


async def test_failed_dispatch_is_recorded_as_shadow(running_store, cycle_settings):
    await running_store.merge_config({"strategy_test_mode": True})
    seed_market(running_store, trend_slope=0.02, change_24h=1.0)
    await add_agent(running_store)
    executor = RejectingExecutor()

    result = await DecisionCycleOrchestrator(
        running_store, cycle_settings, executor=executor, clock=running_store.clock
    ).run()

    assert executor.calls == 1
    assert not result.ok
    assert result.error == "insufficient_cash"
    assert len(await running_store.list_shadow_trades(status="pending")) == 1
    [event] = await running_store.list_events("trade_decision")
    assert event["metadata"]["execution"]["error"] == "insufficient_cash"


async def test_drought_routes_to_explorers_with_stricter_limits(running_store, cycle_settings):
    await running_store.merge_config({"drought_override": "force_on"})
    seed_market(running_store, trend_slope=0.02, change_24h=1.0)
    await add_agent(running_store, role=AgentRole.CORE)
    explorer = await add_agent(running_store, role=AgentRole.EXPLORER)

    result = await DecisionCycleOrchestrator(running_store, cycle_settings, clock=running_store.clock).run()

    assert result.agent_id == explorer.id
    assert result.drought["active"] is True
    # a cold-start explorer never clears the confidence floor
    assert result.decision == "hold"
    assert result.reason == "explorer_low_confidence_0.00"
    [event] = await running_store.list_events("trade_decision")
    assert event["metadata"]["thresholds_used"] == "drought_mode"
    assert event["metadata"]["execution"] == {"skipped": True, "reason": "explorer_low_confidence_0.00"}
    [shadow] = await running_store.list_shadow_trades()
    assert shadow.agent_id == explorer.id
    assert await running_store.count_filled_orders() == 0


def test_agent_pick_is_stable_within_a_bucket():
    agents = [make_agent("g", agent_id=f"agent-{i}") for i in range(5)]
    first = pick_agent(agents, T0)
    assert pick_agent(list(reversed(agents)), T0 + timedelta(seconds=30)) is first
    picks = {pick_agent(agents, T0 + timedelta(minutes=m)).id for m in range(5)}
    assert len(picks) == 5


def test_symbol_pick_rotates_without_duplicates():
    picked = pick_symbols("agent-1", list(SYMBOLS), T0, per_agent=3, bucket_minutes=5)
    assert len(picked) == len(set(picked)) == 3
    assert pick_symbols("agent-1", list(SYMBOLS), T0 + timedelta(minutes=1)) == picked
    assert pick_symbols("agent-1", list(SYMBOLS), T0 + timedelta(minutes=5)) != picked
    assert pick_symbols("agent-1", ["BTC-USD", "ETH-USD"], T0, per_agent=3) in (["BTC-USD", "ETH-USD"], ["ETH-USD", "BTC-USD"])
    assert pick_symbols("agent-1", [], T0) == []


async def test_market_read_past_deadline_fails_closed(clock):
    store = StalledMarketStore(clock=clock)
    await store.start_generation()
    await store.update_system_state({"status": SystemStatus.RUNNING.value})

    result = await DecisionCycleOrchestrator(store, tight_deadline(), clock=clock).run()

    assert not result.ok and not result.skipped
    assert result.error.startswith("market_data:")
    [event] = await store.list_events("cycle_error")
    assert event["metadata"]["cycle_id"] == result.cycle_id
    assert await store.list_events("trade_decision") == []


async def test_execution_past_deadline_is_one_failed_decision(running_store):
    await running_store.merge_config({"strategy_test_mode": True})
    seed_market(running_store, trend_slope=0.02, change_24h=1.0)
    await add_agent(running_store)

    result = await DecisionCycleOrchestrator(
        running_store, tight_deadline(), executor=StalledExecutor(), clock=running_store.clock
    ).run()

    assert not result.ok
    assert result.error == "execution_timeout"
    assert result.execution == {"ok": False, "error": "execution_timeout"}
    [event] = await running_store.list_events("trade_decision")
    assert event["metadata"]["execution"]["error"] == "execution_timeout"
    assert len(await running_store.list_shadow_trades(status="pending")) == 1
    assert await running_store.list_events("cycle_error") == []


async def test_ledger_outage_still_returns_a_result(clock, cycle_settings):
    store = UnreachableLedger(clock=clock)

    result = await DecisionCycleOrchestrator(store, cycle_settings, clock=clock).run()

    assert not result.ok
    assert result.error == "ledger: system_state read failed"
    assert result.to_dict()["cycle_id"] == result.cycle_id


async def test_loss_cooldown_holds_new_entries(running_store, cycle_settings, clock):
    await running_store.merge_config({
        "strategy_test_mode": True,
        "loss_reaction": {"session": {
            "day": clock().date().isoformat(),
            "consecutive_losses": 1,
            "cooldown_until": to_iso(clock() + timedelta(minutes=10)),
        }},
    })
    seed_market(running_store, trend_slope=0.02, change_24h=1.0)
    await add_agent(running_store)

    result = await DecisionCycleOrchestrator(running_store, cycle_settings, clock=clock).run()

    assert result.decision == "hold"
    assert result.reason == "BLOCKED_LOSS_COOLDOWN"
    assert await running_store.count_filled_orders() == 0
    [blocked] = await running_store.list_events("trade_blocked")
    assert blocked["metadata"]["reason"] == "BLOCKED_LOSS_COOLDOWN"
    [event] = await running_store.list_events("trade_decision")
    assert event["metadata"]["execution"] == {"skipped": True, "reason": "BLOCKED_LOSS_COOLDOWN"}
    assert event["metadata"]["extra"]["loss_reaction"]["consecutive_losses"] == 1
    assert len(await running_store.list_shadow_trades(status="pending")) == 1

    clock.advance(minutes=11)
    seed_market(running_store, trend_slope=0.02, change_24h=1.0)
    result = await DecisionCycleOrchestrator(running_store, cycle_settings, clock=clock).run()
    assert result.decision == "buy" and result.execution["ok"] is True


async def test_halved_session_halves_entry_size(running_store, cycle_settings, clock):
    await running_store.merge_config({
        "strategy_test_mode": True,
        "loss_reaction": {"session": {"day": clock().date().isoformat(), "size_multiplier": 0.5}},
    })
    seed_market(running_store, trend_slope=0.02, change_24h=1.0)
    await add_agent(running_store)

    result = await DecisionCycleOrchestrator(running_store, cycle_settings, clock=clock).run()

    assert result.decision == "buy"
    base = 0.0001 if result.symbol == "BTC-USD" else 0.001
    assert result.qty == pytest.approx(base * 0.5)


async def test_losing_exit_starts_a_cooldown_but_exits_are_never_blocked(running_store, cycle_settings, clock):
    await running_store.merge_config({
        "loss_reaction": {"session": {"day": clock().date().isoformat(), "day_stopped": True}},
    })
    seed_market(running_store, trend_slope=-0.02)
    await hold_losing_positions(running_store)
    await add_agent(running_store)

    result = await DecisionCycleOrchestrator(running_store, cycle_settings, clock=clock).run()

    assert result.decision == "sell"
    assert result.execution["ok"] is True
    assert result.execution["realized_pnl"] < 0
    assert await running_store.list_events("trade_blocked") == []
    [update] = await running_store.list_events("loss_reaction_updated")
    assert update["metadata"]["pnl"] == pytest.approx(result.execution["realized_pnl"])
    session = (await running_store.get_config())["loss_reaction"]["session"]
    assert session["consecutive_losses"] == 1
    assert session["cooldown_until"] == to_iso(clock() + timedelta(minutes=15))
