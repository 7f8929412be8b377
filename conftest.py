import uuid
from datetime import datetime, timedelta, timezone

import pytest

from config.settings import CycleSettings
from evotrader.core.types import Agent, AgentRole, StrategyTemplate, SystemStatus
from evotrader.core.utils import to_iso
from evotrader.database.memory_store import InMemoryLedgerStore
from evotrader.market.snapshots import MarketSnapshot

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock shared by the store and the component under test"""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_agent(generation_id, template=StrategyTemplate.TREND_PULLBACK, role=AgentRole.CORE, genes=None, agent_id=None):
    return Agent(
        id=agent_id or str(uuid.uuid4()),
        generation_id=generation_id,
        strategy_template=template,
        genes=dict(genes or {}),
        role=role,
        created_at=T0,
    )


def market_row(symbol="BTC-USD", price=50000.0, updated_at=T0, **fields):
    row = {
        "symbol": symbol,
        "price": price,
        "change_24h": 0.0,
        "volume_24h": 1e9,
        "trend_slope": 0.0,
        "volatility_ratio": 1.0,
        "regime": "unknown",
        "updated_at": to_iso(updated_at),
    }
    row.update(fields)
    return row


def make_snapshot(symbol="BTC-USD", price=50000.0, **fields) -> MarketSnapshot:
    return MarketSnapshot.from_row(market_row(symbol, price, **fields))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryLedgerStore(clock=clock)


@pytest.fixture
def cycle_settings():
    return CycleSettings(_env_file=None)


@pytest.fixture
async def running_store(store):
    """Running paper system with one active generation and no agents yet"""
    await store.start_generation()
    await store.update_system_state({"status": SystemStatus.RUNNING.value})
    return store
