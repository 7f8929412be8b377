"""
Tests for marking counterfactual entries to market.
"""
import pytest

from conftest import T0, market_row
from evotrader.analytics.shadow_outcomes import ShadowOutcomeCalculator, mark_outcome
from evotrader.core.types import ShadowTrade

pytestmark = pytest.mark.asyncio


def shadow(trade_id="s-1", symbol="BTC-USD", entry_price=50000.0, qty=0.001, side="BUY"):
    return ShadowTrade(
        id=trade_id,
        agent_id="agent-1",
        generation_id="gen-1",
        symbol=symbol,
        side=side,
        entry_time=T0,
        entry_price=entry_price,
        intended_qty=qty,
        confidence=0.4,
    )


def test_mark_outcome_direction():
    buy = mark_outcome(shadow(), 51000.0, elapsed_minutes=60, max_hold_hours=24)
    assert not buy.should_close
    assert buy.pnl == pytest.approx(1.0)
    assert buy.pnl_pct == pytest.approx(2.0)

    sell = mark_outcome(shadow(side="SELL"), 51000.0, elapsed_minutes=60, max_hold_hours=24)
    assert sell.pnl == pytest.approx(-1.0)

    closed = mark_outcome(shadow(), 49000.0, elapsed_minutes=24 * 60, max_hold_hours=24)
    assert closed.should_close and closed.reason == "expired_mtm"


async def test_young_entries_are_left_alone(store, clock):
    await store.insert_shadow_trade(shadow())
    clock.advance(minutes=10)

    result = await ShadowOutcomeCalculator(store, clock=clock).run()

    assert result.processed == 0
    assert len(await store.list_shadow_trades(status="pending")) == 1


async def test_pending_entry_is_marked_then_closed(store, clock):
    await store.insert_shadow_trade(shadow())
    calculator = ShadowOutcomeCalculator(store, clock=clock)

    clock.advance(hours=2)
    store.put_market_row(market_row("BTC-USD", 52000.0, updated_at=clock()))
    result = await calculator.run()
    assert (result.marked, result.calculated) == (1, 0)
    [trade] = await store.list_shadow_trades(status="pending")
    assert trade.simulated_pnl == pytest.approx(2.0)

    clock.advance(hours=23)
    store.put_market_row(market_row("BTC-USD", 49000.0, updated_at=clock()))
    result = await calculator.run()
    assert result.calculated == 1
    assert result.by_reason == {"expired_mtm": 1}
    [trade] = await store.list_shadow_trades(status="calculated")
    assert trade.exit_price == 49000.0
    assert trade.simulated_pnl == pytest.approx(-1.0)
    assert len(await store.list_events("shadow_outcomes_calculated")) == 2


async def test_no_mark_skips_until_max_hold_then_expires(store, clock):
    await store.insert_shadow_trade(shadow(symbol="DOGE-USD", entry_price=0.1, qty=10))
    calculator = ShadowOutcomeCalculator(store, clock=clock)

    clock.advance(hours=1)
    result = await calculator.run()
    assert result.skipped == 1
    assert len(await store.list_shadow_trades(status="pending")) == 1

    clock.advance(hours=24)
    result = await calculator.run()
    assert result.expired == 1
    [trade] = await store.list_shadow_trades(status="expired")
    assert trade.simulated_pnl is None


async def test_stale_mark_counts_as_missing(store, clock):
    await store.insert_shadow_trade(shadow())
    store.put_market_row(market_row("BTC-USD", 51000.0, updated_at=clock()))
    clock.advance(hours=1)

    result = await ShadowOutcomeCalculator(store, clock=clock).run()

    assert result.skipped == 1 and result.marked == 0
