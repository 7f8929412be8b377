"""
Tests for the fitness engine: cost-basis replay, components and the composite.
"""
from collections import OrderedDict
from datetime import date, timedelta

import pytest

from conftest import T0, make_agent
from evotrader.analytics.fitness import (
    FitnessEngine,
    compute_fitness,
    daily_returns,
    diversity_penalty,
    max_drawdown,
    overtrading_penalty,
    real_weight,
    replay,
    sample_factor,
    sharpe_ratio,
)
from evotrader.core.types import Fill, OrderSide, ShadowTrade
from evotrader.execution.paper_execution import PaperExecutor

pytestmark = pytest.mark.asyncio


def fill(side, qty, price, fee, at=T0, symbol="BTC-USD", tags=None):
    return Fill("o", symbol, OrderSide(side), qty, price, fee, at, agent_id="a", tags=dict(tags or {}))


def btc_round_trip():
    return [
        fill("buy", 0.01, 50000.0, 5.0),
        fill("sell", 0.01, 51000.0, 5.10, at=T0 + timedelta(hours=1)),
    ]


def test_btc_round_trip_accounting():
    """Buy fee is an immediate cost; the sell realizes (51000 - 50000) * 0.01 - 5.10."""
    ledger = replay(btc_round_trip(), 1000.0)
    assert ledger.realized_pnl == pytest.approx(4.90)
    assert ledger.equity_curve == [1000.0, pytest.approx(995.0), pytest.approx(999.90)]
    assert ledger.gross_profit == pytest.approx(4.90)
    assert ledger.total_fees == pytest.approx(10.10)

    components = compute_fitness(btc_round_trip(), 1000.0)
    assert components.realized_pnl == pytest.approx(4.90)
    assert components.final_equity == pytest.approx(999.90)
    assert components.net_pnl == pytest.approx(-0.10)
    assert components.sample_factor == pytest.approx(0.6)


def test_sell_only_realizes_against_held_quantity():
    fills = [
        fill("buy", 1.0, 100.0, 0.0),
        fill("buy", 1.0, 200.0, 0.0),
        fill("sell", 5.0, 160.0, 0.0),
    ]
    ledger = replay(fills, 1000.0)
    # avg entry 150, only 2 units held
    assert ledger.realized_pnl == pytest.approx(20.0)
    assert ledger.realized_pnl <= (160.0 - 150.0) * 5.0


def test_zero_learnable_trades_scores_exactly_zero():
    assert compute_fitness([], 1000.0).fitness_score == 0.0
    forced = [fill("sell", 0.01, 50000.0, 1.0, tags={"liquidation": True})]
    test_mode = [fill("buy", 0.01, 50000.0, 1.0, tags={"test_mode": True})]
    assert compute_fitness(forced + test_mode, 1000.0).fitness_score == 0.0
    assert compute_fitness(forced + test_mode, 1000.0).total_trades == 0


def test_max_drawdown_over_curve():
    assert max_drawdown([1000.0, 900.0, 1100.0, 550.0]) == pytest.approx(0.5)
    assert max_drawdown([1000.0, 1010.0]) == 0.0


def test_daily_returns_use_start_of_day_equity():
    daily = OrderedDict([(date(2026, 1, 5), 10.0), (date(2026, 1, 6), -20.0)])
    assert daily_returns(daily, 1000.0) == [pytest.approx(0.01), pytest.approx(-20.0 / 1010.0)]


def test_sharpe_is_clamped():
    assert sharpe_ratio([0.01]) == 0.0
    assert sharpe_ratio([0.01, 0.01]) == 0.0
    assert sharpe_ratio([0.01, 0.011]) == 3.0
    assert sharpe_ratio([-0.01, -0.011]) == -3.0


def test_overtrading_penalty_thresholds():
    assert overtrading_penalty(3.0, 10.0, 1.0) == 0.0
    assert overtrading_penalty(4.0, 10.0, 1.0) == pytest.approx(0.05)
    assert overtrading_penalty(0.0, 0.0, 10.0) == pytest.approx(0.3)


def test_diversity_penalty_needs_a_minimum_sample():
    assert diversity_penalty(["BTC-USD"] * 9, 9, 3) == 0.0
    assert diversity_penalty(["BTC-USD"] * 12, 12, 3) == pytest.approx(0.1)
    assert diversity_penalty(["BTC-USD", "ETH-USD", "SOL-USD"] * 4, 12, 3) == 0.0
    assert diversity_penalty(["BTC-USD"] * 12, 12, 1) == 0.0


def test_small_samples_are_scaled_down():
    assert sample_factor(0) == 0.5
    assert sample_factor(5) == 0.75
    assert sample_factor(50) == 1.0


def test_shadow_blend_shifts_toward_real_trades():
    assert real_weight(0) == pytest.approx(0.3)
    assert real_weight(5) == pytest.approx(0.5)
    assert real_weight(10) == pytest.approx(0.7)

    shadows = [
        ShadowTrade(
            id=f"s{i}",
            agent_id="a",
            generation_id="g",
            symbol="ETH-USD",
            side="BUY",
            entry_time=T0 + timedelta(hours=i),
            entry_price=3000.0,
            intended_qty=0.1,
            outcome_status="calculated",
            exit_time=T0 + timedelta(hours=i, minutes=30),
            exit_price=3030.0,
        )
        for i in range(3)
    ]
    real_only = compute_fitness(btc_round_trip(), 1000.0)
    blended = compute_fitness(btc_round_trip(), 1000.0, shadows=shadows)

    weight = real_weight(2)
    assert blended.shadow_weight == pytest.approx(1 - weight)
    assert blended.fitness_score == pytest.approx(weight * real_only.fitness_score + (1 - weight) * blended.shadow_score)
    assert blended.shadow_score > real_only.fitness_score


def test_too_few_shadows_are_not_blended():
    shadow = ShadowTrade("s", "a", "g", "ETH-USD", "BUY", T0, 3000.0, 0.1, outcome_status="calculated",
                         exit_time=T0 + timedelta(hours=1), exit_price=3100.0)
    assert compute_fitness(btc_round_trip(), 1000.0, shadows=[shadow]).shadow_weight == 0.0


async def test_engine_scores_every_agent_of_the_generation(running_store):
    store = running_store
    generation = await store.get_active_generation()
    trader = make_agent(generation.id, agent_id="agent-trader")
    idle = make_agent(generation.id, agent_id="agent-idle")
    store.put_agent(trader)
    store.put_agent(idle)

    executor = PaperExecutor(store, clock=store.clock)
    await executor.submit_order("BTC-USD", "buy", 0.01, agent_id=trader.id, generation_id=generation.id,
                                price=50000.0, slippage_pct=0.0)
    store.clock.advance(hours=2)
    await executor.submit_order("BTC-USD", "sell", 0.01, agent_id=trader.id, generation_id=generation.id,
                                price=52000.0, slippage_pct=0.0)

    result = await FitnessEngine(store, clock=store.clock).run()

    assert result.agents_processed == 2
    assert result.trades_analyzed == 2
    assert result.scores[idle.id].fitness_score == 0.0
    assert result.scores[trader.id].realized_pnl > 0
    performance = {p["agent_id"]: p for p in await store.list_performance(generation.id)}
    assert set(performance) == {trader.id, idle.id}
    assert len(await store.list_events("fitness_calculated")) == 1


async def test_engine_skips_without_generation(store):
    result = await FitnessEngine(store, clock=store.clock).run()
    assert result.skipped
    assert result.reason == "no_generation"
