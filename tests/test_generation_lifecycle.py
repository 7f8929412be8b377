"""
Tests for generation end conditions, liquidation and rollover.
"""
import pytest

from conftest import make_agent, market_row
from evotrader.agents.breeding import BreedingClient, BreedingResult
from evotrader.config.runtime_config import GenerationLimits, RuntimeConfig
from evotrader.controls.generation_lifecycle import GenerationLifecycleManager, evaluate_end
from evotrader.core.types import TerminationReason
from evotrader.execution.paper_execution import ExecutionResult, PaperExecutor

pytestmark = pytest.mark.asyncio

LIMITS = GenerationLimits()


class FakeBreeder:
    def __init__(self, result=None):
        self.result = result or BreedingResult(ok=True, agents_created=4)
        self.calls = []

    async def breed(self, ended_generation_id, new_generation_id, ranked_agents):
        self.calls.append((ended_generation_id, new_generation_id, ranked_agents))
        return self.result


class FailingLiquidator:
    async def liquidate(self, position, mark_price, generation_id, reason="generation_end"):
        return ExecutionResult(ok=False, error="venue_down")


def test_drawdown_limit_is_inclusive():
    check = evaluate_end(LIMITS, elapsed_days=1.0, learnable_trades=20, account_drawdown=0.15)
    assert check.should_end
    assert check.reason is TerminationReason.DRAWDOWN

    check = evaluate_end(LIMITS, elapsed_days=1.0, learnable_trades=20, account_drawdown=0.1499)
    assert not check.should_end
    assert check.reason is None


def test_end_conditions_in_priority_order():
    assert evaluate_end(LIMITS, 7.0, 0, 0.0).reason is TerminationReason.TIME
    assert evaluate_end(LIMITS, 7.0, 100, 0.5).reason is TerminationReason.TIME
    assert evaluate_end(LIMITS, 2.0, 100, 0.5).reason is TerminationReason.TRADES
    assert evaluate_end(LIMITS, 6.9, 99, 0.0).reason is None


def test_drought_stagnation_counts_shadow_outcomes():
    assert evaluate_end(LIMITS, 3.5, 4, 0.0, calculated_shadows=5).reason is TerminationReason.DROUGHT
    assert evaluate_end(LIMITS, 3.5, 6, 0.0, calculated_shadows=5).reason is None
    assert evaluate_end(LIMITS, 3.0, 0, 0.0).reason is None


async def seed_cohort(store):
    generation = await store.get_active_generation()
    agents = [make_agent(generation.id, agent_id=f"agent-{i}") for i in range(2)]
    for agent in agents:
        store.put_agent(agent)
    store.put_market_row(market_row("BTC-USD", 50000.0))
    executor = PaperExecutor(store, clock=store.clock)
    await executor.submit_order("BTC-USD", "buy", 0.01, agent_id=agents[0].id, generation_id=generation.id,
                                slippage_pct=0.0)
    return generation, agents


async def test_generation_continues_inside_limits(running_store):
    generation, _ = await seed_cohort(running_store)
    breeder = FakeBreeder()

    result = await GenerationLifecycleManager(running_store, breeder=breeder, clock=running_store.clock).run()

    assert result.ok and not result.ended
    assert not result.check.should_end
    assert breeder.calls == []
    assert (await running_store.get_active_generation()).id == generation.id


async def test_time_limit_liquidates_then_finalizes_then_rolls_over(running_store, clock):
    store = running_store
    generation, agents = await seed_cohort(store)
    clock.advance(days=7)
    store.put_market_row(market_row("BTC-USD", 51000.0, updated_at=clock()))
    breeder = FakeBreeder()

    result = await GenerationLifecycleManager(store, breeder=breeder, clock=clock).run()

    assert result.ok and result.ended
    assert result.check.reason is TerminationReason.TIME
    assert [(row["symbol"], row["mark"]) for row in result.liquidated] == [("BTC-USD", 51000.0)]
    account = await store.get_paper_account()
    assert await store.list_positions(account.id) == []

    ended = await store.get_generation(generation.id)
    assert not ended.is_active
    assert ended.termination_reason is TerminationReason.TIME
    assert ended.total_trades == 1
    active = await store.get_active_generation()
    assert active.id == result.new_generation_id != generation.id
    assert active.starting_equity == pytest.approx(account.cash)

    [(ended_id, new_id, ranked)] = breeder.calls
    assert (ended_id, new_id) == (generation.id, active.id)
    assert {r["agent_id"] for r in ranked} == {a.id for a in agents}
    assert [r["rank"] for r in ranked] == [1, 2]

    actions = [e["action"] for e in store.events]
    assert actions.index("generation_ending") < actions.index("generation_ended")
    assert actions.index("generation_ended") < actions.index("generation_rollover")
    # the forced sell belongs to the ended generation and never counts as learnable
    fills = await store.list_fills(generation_id=generation.id)
    assert [f.learnable for f in fills] == [True, False]


async def test_fresh_claim_blocks_a_second_ender(running_store, clock):
    generation, _ = await seed_cohort(running_store)
    clock.advance(days=8)
    assert await running_store.begin_generation_end(generation.id)

    manager = GenerationLifecycleManager(running_store, breeder=FakeBreeder(), clock=clock)
    result = await manager.run()
    assert result.skipped and result.reason == "end_in_progress"

    clock.advance(minutes=11)
    result = await manager.run()
    assert result.ended


async def test_liquidation_failure_leaves_generation_active(running_store, clock):
    generation, _ = await seed_cohort(running_store)
    clock.advance(days=8)
    breeder = FakeBreeder()

    result = await GenerationLifecycleManager(
        running_store, breeder=breeder, executor=FailingLiquidator(), clock=clock
    ).run()

    assert not result.ok
    assert result.error == "liquidation_failed"
    assert (await running_store.get_active_generation()).id == generation.id
    assert breeder.calls == []
    assert len(await running_store.list_events("liquidation_failed")) == 1


async def test_breeding_failure_is_logged_after_rollover(running_store, clock):
    generation, _ = await seed_cohort(running_store)
    clock.advance(days=8)

    result = await GenerationLifecycleManager(
        running_store, breeder=BreedingClient(None), clock=clock
    ).run()

    assert result.ended
    assert not result.ok
    assert result.error == "breeding_not_configured"
    assert (await running_store.get_active_generation()).id == result.new_generation_id
    [event] = await running_store.list_events("rollover_failed")
    assert event["metadata"]["ended_generation_id"] == generation.id


async def test_no_active_generation_skips(store):
    result = await GenerationLifecycleManager(store, breeder=FakeBreeder(), clock=store.clock).run()
    assert result.skipped and result.reason == "no_active_generation"


class CrashingBreeder:
    async def breed(self, ended_generation_id, new_generation_id, ranked_agents):
        raise RuntimeError("worker killed")


async def test_loss_carried_from_earlier_generation_is_not_drawdown(store, clock):
    account = await store.get_paper_account()
    await store.set_account_cash(account.id, 800.0)
    generation = await store.start_generation()
    store.put_agent(make_agent(generation.id))
    clock.advance(minutes=1)
    breeder = FakeBreeder()

    result = await GenerationLifecycleManager(store, breeder=breeder, clock=clock).run()

    assert generation.starting_equity == 800.0
    assert result.ok and not result.ended
    assert result.check.account_drawdown == 0.0
    assert breeder.calls == []
    assert (await store.get_active_generation()).id == generation.id


async def test_drawdown_is_measured_from_generation_start(store, clock):
    account = await store.get_paper_account()
    await store.set_account_cash(account.id, 800.0)
    generation = await store.start_generation()
    store.put_market_row(market_row("SOL-USD", 100.0))
    executor = PaperExecutor(store, clock=clock)
    await executor.submit_order("SOL-USD", "buy", 4.0, agent_id="agent-0", generation_id=generation.id,
                                slippage_pct=0.0)
    clock.advance(minutes=5)
    store.put_market_row(market_row("SOL-USD", 60.0, updated_at=clock()))

    check = await GenerationLifecycleManager(store, breeder=FakeBreeder(), clock=clock).should_end(
        generation, RuntimeConfig()
    )

    # 160 marked down on 800 of starting equity; the fee moves it a little further
    assert check.account_drawdown == pytest.approx(0.2 + 400 * 0.006 / 800, rel=1e-3)
    assert check.reason is TerminationReason.DRAWDOWN


async def test_rollover_is_a_single_compare_and_swap(running_store):
    store = running_store
    generation = await store.get_active_generation()

    successor = await store.rollover_generation(generation.id, TerminationReason.TIME)
    assert successor.generation_number == generation.generation_number + 1
    assert successor.is_active

    assert await store.rollover_generation(generation.id, TerminationReason.TIME) is None
    assert not await store.end_generation(generation.id, TerminationReason.TRADES)
    assert len(store.generations) == 2
    assert (await store.get_system_state()).current_generation_id == successor.id
    assert len(await store.list_events("generation_ended")) == 1
    assert len(await store.list_events("generation_started")) == 2
    assert (await store.get_generation(generation.id)).termination_reason is TerminationReason.TIME


async def test_crash_after_rollover_still_leaves_an_active_generation(running_store, clock):
    generation, _ = await seed_cohort(running_store)
    clock.advance(days=8)
    manager = GenerationLifecycleManager(running_store, breeder=CrashingBreeder(), clock=clock)

    with pytest.raises(RuntimeError):
        await manager.run()

    active = await running_store.get_active_generation()
    assert active is not None and active.id != generation.id
    assert not (await running_store.get_generation(generation.id)).is_active

    result = await GenerationLifecycleManager(running_store, breeder=FakeBreeder(), clock=clock).run()
    assert result.reason != "no_active_generation"
    assert result.generation_id == active.id
    assert not result.ended
