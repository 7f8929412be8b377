"""
Wiring shared by the CLI and the API server: store selection, component
construction and the demo cohort used by ``--dry-run``.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from config.settings import Settings
from evotrader.agents.breeding import BreedingClient
from evotrader.analytics.fitness import FitnessEngine
from evotrader.analytics.shadow_outcomes import ShadowOutcomeCalculator
from evotrader.controls.generation_lifecycle import GenerationLifecycleManager
from evotrader.controls.system_control import SystemControls
from evotrader.core.types import Agent, AgentRole, StrategyTemplate, SystemStatus
from evotrader.core.utils import to_iso, utc_now
from evotrader.cycle.orchestrator import DecisionCycleOrchestrator
from evotrader.database.ledger_store import LedgerStore
from evotrader.database.memory_store import InMemoryLedgerStore
from evotrader.database.supabase_store import SupabaseLedgerStore
from evotrader.errors import EvoTraderError
from evotrader.exchange.coinbase_client import CoinbaseClient
from evotrader.execution.arm_session import ArmController
from evotrader.execution.live_safety import LiveSafetyChain
from evotrader.risk.loss_reaction import LossReactionGuard, session_document

DEMO_MARKET = [
    {"symbol": "BTC-USD", "price": 64250.0, "change_24h": 1.8, "volume_24h": 2.1e9, "trend_slope": 0.012, "volatility_ratio": 0.9},
    {"symbol": "ETH-USD", "price": 3120.0, "change_24h": -4.2, "volume_24h": 1.2e9, "trend_slope": 0.004, "volatility_ratio": 0.8},
    {"symbol": "SOL-USD", "price": 148.5, "change_24h": 0.6, "volume_24h": 4.0e8, "trend_slope": 0.009, "volatility_ratio": 0.7},
    {"symbol": "AVAX-USD", "price": 34.1, "change_24h": -1.1, "volume_24h": 1.5e8, "trend_slope": -0.003, "volatility_ratio": 1.1},
]

DEMO_COHORT = [
    (StrategyTemplate.TREND_PULLBACK, AgentRole.CORE, {"trend_threshold": 0.004, "pullback_pct": 4.0}),
    (StrategyTemplate.TREND_PULLBACK, AgentRole.CORE, {"trend_threshold": 0.006, "pullback_pct": 3.0}),
    (StrategyTemplate.MEAN_REVERSION, AgentRole.CORE, {"rsi_threshold": 0.8}),
    (StrategyTemplate.MEAN_REVERSION, AgentRole.EXPLORER, {"rsi_threshold": 0.5}),
    (StrategyTemplate.BREAKOUT, AgentRole.CORE, {"vol_contraction": 1.2}),
    (StrategyTemplate.BREAKOUT, AgentRole.EXPLORER, {"vol_contraction": 1.4}),
]


async def seed_demo(store: InMemoryLedgerStore) -> None:
    """Running system, one generation, a small mixed cohort and fresh snapshots."""
    generation = await store.start_generation()
    await store.update_system_state({"status": SystemStatus.RUNNING.value})
    now = store.clock()
    for row in DEMO_MARKET:
        store.put_market_row({**row, "regime": "unknown", "updated_at": to_iso(now)})
    for template, role, genes in DEMO_COHORT:
        store.put_agent(Agent(
            id=str(uuid.uuid4()),
            generation_id=generation.id,
            strategy_template=template,
            genes=dict(genes),
            role=role,
            created_at=now,
        ))
    logger.info(f"Dry-run store seeded: generation {generation.generation_number}, {len(DEMO_COHORT)} agents")


def build_store(settings: Settings, dry_run: bool = False, clock: Callable[[], datetime] = utc_now) -> LedgerStore:
    if dry_run:
        return InMemoryLedgerStore(clock=clock, starting_cash=settings.cycle.default_starting_cash)
    if not settings.supabase.configured:
        raise EvoTraderError("Supabase is not configured (SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY); use --dry-run")
    return SupabaseLedgerStore(settings.supabase.url, settings.supabase.service_role_key.get_secret_value())


@dataclass
class Services:
    """Everything one scheduler tick might call, bound to one store"""
    store: LedgerStore
    settings: Settings
    clock: Callable[[], datetime] = utc_now
    exchange: Optional[CoinbaseClient] = None

    def orchestrator(self) -> DecisionCycleOrchestrator:
        return DecisionCycleOrchestrator(self.store, self.settings.cycle, clock=self.clock)

    def fitness(self) -> FitnessEngine:
        return FitnessEngine(self.store, clock=self.clock)

    def shadow(self) -> ShadowOutcomeCalculator:
        return ShadowOutcomeCalculator(self.store, clock=self.clock)

    def lifecycle(self) -> GenerationLifecycleManager:
        breeder = BreedingClient(
            self.settings.cycle.breeding_url,
            timeout_seconds=self.settings.cycle.collaborator_deadline_seconds,
        )
        return GenerationLifecycleManager(self.store, breeder=breeder, clock=self.clock)

    def arm(self) -> ArmController:
        return ArmController(self.store, clock=self.clock)

    def controls(self) -> SystemControls:
        return SystemControls(self.store, clock=self.clock)

    def loss_reaction(self) -> LossReactionGuard:
        return LossReactionGuard(self.store, clock=self.clock)

    async def loss_reaction_action(self, action: str, reason: str = "manual") -> dict:
        guard = self.loss_reaction()
        if action == "reset":
            session = await guard.reset(reason)
            return {"ok": True, "action": action, "session": session_document(session)}
        if action == "clear-cooldown":
            await guard.clear_cooldown()
            return {"ok": True, "action": action}
        return {"ok": False, "action": action, "reason": "unknown_action"}

    def live_chain(self) -> LiveSafetyChain:
        exchange = self.exchange or CoinbaseClient.from_settings(self.settings.coinbase)
        return LiveSafetyChain(
            self.store,
            exchange,
            clock=self.clock,
            deadline_seconds=self.settings.cycle.collaborator_deadline_seconds,
        )

    async def status(self) -> dict:
        state = await self.store.get_system_state()
        generation = await self.store.get_active_generation()
        account = await self.store.get_paper_account()
        now = self.clock()
        return {
            "status": state.status.value,
            "trade_mode": state.trade_mode.value,
            "armed": state.is_armed(now),
            "live_armed_until": to_iso(state.live_armed_until),
            "generation": {
                "id": generation.id,
                "number": generation.generation_number,
                "phase": generation.phase.value,
                "start_time": to_iso(generation.start_time),
                "starting_equity": generation.starting_equity,
            } if generation else None,
            "paper_account": {
                "cash": account.cash,
                "starting_cash": account.starting_cash,
                "peak_equity": account.peak_equity,
            } if account else None,
            "config": await self.store.get_config(),
        }
