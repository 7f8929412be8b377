"""
Generation Lifecycle Manager.

    active --(end condition)--> ending --(liquidated, stats)--> rollover --> breed
                                                      (ended + next started, one step)

``begin_generation_end`` is the claim: only one overlapping invocation gets to
liquidate. Liquidation is durably written before the generation row is
finalized. ``rollover_generation`` ends the generation and opens its successor
in a single store operation, so a crash can never leave the system without an
active generation; breeding into the new generation follows.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from evotrader.agents.breeding import BreedingClient, BreedingResult
from evotrader.analytics.fitness import FitnessEngine, replay
from evotrader.config.runtime_config import GenerationLimits, RuntimeConfig
from evotrader.core.types import Generation, GenerationPhase, TerminationReason, is_learnable
from evotrader.core.utils import utc_now
from evotrader.database.ledger_store import LedgerStore
from evotrader.execution.paper_execution import PaperExecutor
from evotrader.market.snapshots import MarketSnapshotProvider
from evotrader.risk.drought import mark_to_market

ENDING_CLAIM_STALE_SECONDS = 600


@dataclass
class EndCheck:
    should_end: bool
    reason: Optional[TerminationReason] = None
    elapsed_days: float = 0.0
    learnable_trades: int = 0
    account_drawdown: float = 0.0
    calculated_shadows: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "should_end": self.should_end,
            "reason": self.reason.value if self.reason else None,
            "elapsed_days": round(self.elapsed_days, 4),
            "learnable_trades": self.learnable_trades,
            "account_drawdown": round(self.account_drawdown, 6),
            "calculated_shadows": self.calculated_shadows,
        }


def evaluate_end(
    limits: GenerationLimits,
    elapsed_days: float,
    learnable_trades: int,
    account_drawdown: float,
    calculated_shadows: int = 0,
) -> EndCheck:
    """First matching condition wins: time, trades, drawdown, drought stagnation."""
    check = EndCheck(
        should_end=False,
        elapsed_days=elapsed_days,
        learnable_trades=learnable_trades,
        account_drawdown=account_drawdown,
        calculated_shadows=calculated_shadows,
    )
    if elapsed_days >= limits.max_days:
        check.reason = TerminationReason.TIME
    elif learnable_trades >= limits.max_trades:
        check.reason = TerminationReason.TRADES
    elif account_drawdown >= limits.max_drawdown_pct:
        check.reason = TerminationReason.DRAWDOWN
    elif (
        elapsed_days > limits.drought_stagnation_days
        and learnable_trades + calculated_shadows < limits.min_sample_floor
    ):
        check.reason = TerminationReason.DROUGHT
    check.should_end = check.reason is not None
    return check


@dataclass
class LifecycleResult:
    ok: bool = True
    skipped: bool = False
    reason: Optional[str] = None
    generation_id: Optional[str] = None
    check: Optional[EndCheck] = None
    liquidated: List[Dict[str, Any]] = field(default_factory=list)
    ended: bool = False
    new_generation_id: Optional[str] = None
    breeding: Optional[BreedingResult] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "skipped": self.skipped,
            "reason": self.reason,
            "generation_id": self.generation_id,
            "check": self.check.to_dict() if self.check else None,
            "liquidated": list(self.liquidated),
            "ended": self.ended,
            "new_generation_id": self.new_generation_id,
            "breeding": self.breeding.to_dict() if self.breeding else None,
            "error": self.error,
        }


class GenerationLifecycleManager:
    def __init__(
        self,
        store: LedgerStore,
        breeder: Optional[BreedingClient] = None,
        executor: Optional[PaperExecutor] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.breeder = breeder or BreedingClient(None)
        self.executor = executor
        self.clock = clock
        self.fitness = FitnessEngine(store, clock=clock)
        self.market = MarketSnapshotProvider(store)

    async def _marks(self) -> Dict[str, float]:
        return {s.symbol: s.price for s in await self.market.get_snapshots()}

    async def _current_equity(self, marks: Dict[str, float]) -> Optional[float]:
        account = await self.store.get_paper_account()
        if account is None:
            return None
        return mark_to_market(account.cash, await self.store.list_positions(account.id), marks)

    async def should_end(self, generation: Generation, config: RuntimeConfig) -> EndCheck:
        now = self.clock()
        elapsed_days = max(0.0, (now - generation.start_time).total_seconds() / 86400)
        orders = await self.store.list_filled_orders(generation_id=generation.id)
        learnable = sum(1 for o in orders if is_learnable(o.tags))
        equity = await self._current_equity(await self._marks())
        drawdown = await self.fitness.account_drawdown(generation.id, current_equity=equity)
        shadows = await self.store.list_shadow_trades(status="calculated", generation_id=generation.id)
        return evaluate_end(config.generation, elapsed_days, learnable, drawdown, len(shadows))

    async def _liquidate(self, generation: Generation, config: RuntimeConfig, result: LifecycleResult) -> bool:
        account = await self.store.get_paper_account()
        if account is None:
            return True
        executor = self.executor or PaperExecutor(self.store, config.paper, clock=self.clock)
        marks = await self._marks()
        for position in await self.store.list_positions(account.id):
            mark = marks.get(position.symbol) or position.avg_entry_price
            outcome = await executor.liquidate(position, mark, generation.id)
            result.liquidated.append({"symbol": position.symbol, "qty": position.qty, "mark": mark, **outcome.to_dict()})
            if not outcome.ok:
                logger.error(f"Liquidation of {position.symbol} failed: {outcome.error}")
                return False
        return True

    async def _finalize_stats(self, generation: Generation, check: EndCheck) -> Dict[str, float]:
        starting = await self.fitness.starting_equity(generation.id)
        fills = await self.store.list_fills(generation_id=generation.id)
        total_pnl = replay(fills, starting).equity_curve[-1] - starting
        scores = await self.fitness.run(generation.id)
        avg_fitness = None
        if scores.scores:
            avg_fitness = sum(c.fitness_score for c in scores.scores.values()) / len(scores.scores)
        drawdown = await self.fitness.account_drawdown(generation.id)
        await self.store.update_generation_stats(
            generation.id,
            total_pnl=total_pnl,
            total_trades=check.learnable_trades,
            max_drawdown=max(drawdown, check.account_drawdown),
            avg_fitness=avg_fitness,
        )
        return {"total_pnl": total_pnl, "avg_fitness": avg_fitness or 0.0}

    async def _ranked_cohort(self, generation_id: str) -> List[Dict[str, Any]]:
        performance = {p["agent_id"]: p for p in await self.store.list_performance(generation_id)}
        agents = await self.store.list_agents(generation_id)
        ranked = sorted(
            agents,
            key=lambda a: (performance.get(a.id, {}).get("fitness_score") or 0.0, a.id),
            reverse=True,
        )
        return [
            {
                "agent_id": a.id,
                "rank": i + 1,
                "fitness_score": performance.get(a.id, {}).get("fitness_score") or 0.0,
                "strategy_template": a.strategy_template.value,
                "role": a.role.value,
                "genes": dict(a.genes),
            }
            for i, a in enumerate(ranked)
        ]

    async def run(self) -> LifecycleResult:
        generation = await self.store.get_active_generation()
        if generation is None:
            return LifecycleResult(skipped=True, reason="no_active_generation")
        config = RuntimeConfig.from_document(await self.store.get_config())
        result = LifecycleResult(generation_id=generation.id)

        check = await self.should_end(generation, config)
        result.check = check
        if not check.should_end:
            logger.debug(f"Generation {generation.generation_number} continues ({check.to_dict()})")
            return result

        if not await self.store.begin_generation_end(generation.id, ENDING_CLAIM_STALE_SECONDS):
            logger.info(f"Generation {generation.generation_number} end already claimed")
            result.skipped, result.reason = True, "end_in_progress"
            return result
        if generation.phase == GenerationPhase.ACTIVE:
            generation = generation.transition(GenerationPhase.ENDING)

        logger.warning(f"Ending generation {generation.generation_number}: {check.reason.value}")
        await self.store.log_event("generation_ending", {"generation_id": generation.id, **check.to_dict()})

        if not await self._liquidate(generation, config, result):
            result.ok, result.error = False, "liquidation_failed"
            await self.store.log_event("liquidation_failed", {
                "generation_id": generation.id,
                "liquidated": result.liquidated,
            })
            return result

        stats = await self._finalize_stats(generation, check)

        new_generation = await self.store.rollover_generation(generation.id, check.reason)
        if new_generation is None:
            result.skipped, result.reason = True, "already_ended"
            return result
        result.ended = True
        result.new_generation_id = new_generation.id
        logger.info(
            f"Generation {generation.generation_number} ended ({check.reason.value}), "
            f"pnl ${stats['total_pnl']:.2f}, avg fitness {stats['avg_fitness']:.4f}; "
            f"generation {new_generation.generation_number} opened at ${new_generation.starting_equity or 0.0:.2f}"
        )

        ranked = await self._ranked_cohort(generation.id)
        breeding = await self.breeder.breed(generation.id, new_generation.id, ranked)
        result.breeding = breeding
        if not breeding.ok:
            result.ok, result.error = False, breeding.error
            await self.store.log_event("rollover_failed", {
                "ended_generation_id": generation.id,
                "new_generation_id": new_generation.id,
                "error": breeding.error,
            })
        else:
            await self.store.log_event("generation_rollover", {
                "ended_generation_id": generation.id,
                "new_generation_id": new_generation.id,
                "reason": check.reason.value,
                "agents_created": breeding.agents_created,
            })
        return result
