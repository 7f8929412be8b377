"""
Decision Cycle Orchestrator.

One invocation per scheduler tick:

    preconditions -> fresh snapshots -> drought state -> agent + symbol pick
    -> gate evaluation -> best candidate -> explorer guard -> loss reaction
    -> sizing -> dispatch (bounded) -> decision event -> threshold tuner
    -> loss reaction session update (closed trades only)

Agent and symbol choice are pure functions of (agent ids, clock bucket), so
repeated invocations inside one bucket evaluate the same work. The decision
event is written exactly once per cycle, after dispatch, whatever the outcome.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from loguru import logger

from evotrader.config.runtime_config import RuntimeConfig
from evotrader.core.types import (
    Agent,
    AgentRole,
    AgentStatus,
    Decision,
    DecisionEvent,
    GateFailure,
    ShadowTrade,
    SystemStatus,
    TradeMode,
)
from evotrader.core.utils import utc_now
from evotrader.database.ledger_store import LedgerStore
from evotrader.errors import CollaboratorError
from evotrader.execution.paper_execution import PaperExecutor
from evotrader.market.snapshots import MarketSnapshot, MarketSnapshotProvider
from evotrader.risk.adaptive_tuner import AdaptiveThresholdTuner
from evotrader.risk.drought import DroughtResolver, DroughtState
from evotrader.risk.loss_reaction import LossReactionGuard
from evotrader.strategies.evaluator import Evaluation, GateEvaluator, pattern_id
from evotrader.strategies.gates import nearest_pass

BTC_BASE_QTY = 0.0001
DEFAULT_BASE_QTY = 0.001
TOP_HOLD_REASONS = 3
TOP_EVALUATIONS = 5
ELIGIBLE_STATUSES = (AgentStatus.ACTIVE, AgentStatus.ELITE)


@dataclass
class CycleResult:
    ok: bool = True
    skipped: bool = False
    reason: Optional[str] = None
    cycle_id: Optional[str] = None
    decision: Optional[str] = None
    agent_id: Optional[str] = None
    symbol: Optional[str] = None
    qty: float = 0.0
    symbols_evaluated: List[str] = field(default_factory=list)
    drought: Dict[str, Any] = field(default_factory=dict)
    execution: Dict[str, Any] = field(default_factory=dict)
    tuning: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "skipped": self.skipped,
            "reason": self.reason,
            "cycle_id": self.cycle_id,
            "decision": self.decision,
            "agent_id": self.agent_id,
            "symbol": self.symbol,
            "qty": self.qty,
            "symbols_evaluated": list(self.symbols_evaluated),
            "drought": dict(self.drought),
            "execution": dict(self.execution),
            "tuning": dict(self.tuning),
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


def agent_hash(agent_id: str) -> int:
    return sum(ord(c) for c in agent_id)


def pick_agent(agents: Sequence[Agent], now: datetime, bucket_minutes: int = 1) -> Agent:
    """Same agent for every invocation in one time bucket"""
    bucket = int(now.timestamp() // (bucket_minutes * 60))
    ordered = sorted(agents, key=lambda a: a.id)
    return ordered[bucket % len(ordered)]


def pick_symbols(
    agent_id: str,
    available: Sequence[str],
    now: datetime,
    per_agent: int = 3,
    bucket_minutes: int = 5,
) -> List[str]:
    """Rotating, evenly spread subset of symbols keyed on agent identity and time bucket"""
    if not available:
        return []
    n = len(available)
    bucket = int(now.timestamp() // (bucket_minutes * 60))
    base = agent_hash(agent_id) + bucket
    step = max(1, n // per_agent)
    picked: List[str] = []
    for i in range(min(per_agent, n)):
        offset = step * i
        symbol = available[(base + offset) % n]
        if symbol not in picked:
            picked.append(symbol)
    return picked


def base_qty(symbol: str) -> float:
    return BTC_BASE_QTY if symbol == "BTC-USD" else DEFAULT_BASE_QTY


def tally_gate_failures(evaluations: Sequence[Evaluation]) -> Dict[str, Dict[str, float]]:
    """Per-gate running count and average margin across all evaluated symbols"""
    tallies: Dict[str, Dict[str, float]] = {}
    for evaluation in evaluations:
        for failure in evaluation.gate_failures:
            entry = tallies.setdefault(failure.gate, {"count": 0, "avg_margin": 0.0})
            entry["count"] += 1
            entry["avg_margin"] += (failure.margin - entry["avg_margin"]) / entry["count"]
    return tallies


def top_hold_reasons(evaluations: Sequence[Evaluation], limit: int = TOP_HOLD_REASONS) -> List[str]:
    counts = Counter(r for e in evaluations for r in e.signal.reasons)
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [f"{reason}:{count}" for reason, count in ranked[:limit]]


class DecisionCycleOrchestrator:
    """Runs one decision cycle against the ledger store"""

    def __init__(
        self,
        store: LedgerStore,
        cycle_settings,
        executor=None,
        evaluator: Optional[GateEvaluator] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.cycle_settings = cycle_settings
        self.executor = executor
        self.evaluator = evaluator or GateEvaluator()
        self.clock = clock
        self.market = MarketSnapshotProvider(store)
        self.drought = DroughtResolver(store, clock=clock)
        self.tuner = AdaptiveThresholdTuner(store, clock=clock)
        self.loss_reaction = LossReactionGuard(store, clock=clock)

    @property
    def deadline(self) -> float:
        return float(self.cycle_settings.collaborator_deadline_seconds)

    async def _fresh_snapshots(self, now: datetime) -> List[MarketSnapshot]:
        try:
            snapshots = await asyncio.wait_for(self.market.get_snapshots(), timeout=self.deadline)
        except asyncio.TimeoutError as e:
            raise CollaboratorError("market_data", f"snapshot read exceeded {self.deadline}s") from e
        max_age = self.cycle_settings.max_market_age_seconds
        fresh = []
        for snapshot in snapshots:
            if snapshot.is_fresh(now, max_age):
                fresh.append(snapshot)
            else:
                logger.debug(f"{snapshot.symbol} data stale ({snapshot.age_seconds(now):.0f}s), skipping")
        fresh.sort(key=lambda s: (-s.volume_24h, s.symbol))
        return fresh

    async def _select_agent(self, generation_id: str, drought: DroughtState, now: datetime) -> Optional[Agent]:
        agents = await self.store.list_agents(generation_id, ELIGIBLE_STATUSES)
        if not agents:
            return None
        explorers = [a for a in agents if a.role is AgentRole.EXPLORER]
        core = [a for a in agents if a.role is AgentRole.CORE]
        if drought.active and explorers:
            pool = explorers
        else:
            pool = core or agents
        return pick_agent(pool, now, self.cycle_settings.agent_bucket_minutes)

    async def _explorer_block(self, config: RuntimeConfig, agent: Agent, best: Evaluation, now: datetime) -> Optional[str]:
        """Stricter hourly cap and confidence floor for explorers. Fails closed."""
        limits = config.explorer
        if best.confidence < limits.min_confidence:
            return f"explorer_low_confidence_{best.confidence:.2f}"
        try:
            recent = await self.store.count_filled_orders(
                since=now - timedelta(hours=1), agent_id=agent.id, tag="explorer"
            )
        except CollaboratorError as e:
            logger.error(f"Explorer cap check failed, holding: {e}")
            return "explorer_check_failed"
        if recent >= limits.max_trades_per_hour:
            return f"explorer_hourly_cap_{recent}"
        return None

    async def _record_shadow(
        self,
        config: RuntimeConfig,
        agent: Agent,
        best: Evaluation,
        qty: float,
        now: datetime,
    ) -> None:
        if not config.shadow_trading.enabled or best.decision is not Decision.BUY:
            return
        await self.store.insert_shadow_trade(ShadowTrade(
            id=str(uuid.uuid4()),
            agent_id=agent.id,
            generation_id=agent.generation_id,
            symbol=best.symbol,
            side="BUY",
            entry_time=now,
            entry_price=best.snapshot.price,
            intended_qty=qty,
            confidence=best.confidence,
        ))

    async def _dispatch(self, config: RuntimeConfig, symbol: str, side: str, qty: float, agent: Agent, tags) -> Dict[str, Any]:
        executor = self.executor or PaperExecutor(self.store, config.paper, clock=self.clock)
        try:
            result = await asyncio.wait_for(
                executor.submit_order(
                    symbol=symbol,
                    side=side,
                    qty=qty,
                    agent_id=agent.id,
                    generation_id=agent.generation_id,
                    tags=tags,
                ),
                timeout=self.deadline,
            )
        except asyncio.TimeoutError:
            logger.error(f"Execution of {side} {qty} {symbol} exceeded {self.deadline}s")
            return {"ok": False, "error": "execution_timeout"}
        except CollaboratorError as e:
            logger.error(f"Execution collaborator failed: {e}")
            return {"ok": False, "error": str(e)}
        return result.to_dict() if hasattr(result, "to_dict") else dict(result)

    async def run(self) -> CycleResult:
        started = time.monotonic()
        cycle_id = str(uuid.uuid4())
        result = CycleResult(cycle_id=cycle_id)
        try:
            await self._run(cycle_id, result)
        except CollaboratorError as e:
            logger.error(f"Cycle {cycle_id} failed closed: {e}")
            result.ok, result.error = False, str(e)
            try:
                await self.store.log_event("cycle_error", {"cycle_id": cycle_id, "error": str(e)})
            except CollaboratorError as log_error:
                logger.error(f"Cycle {cycle_id} error could not be recorded: {log_error}")
        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

    def _skip(self, result: CycleResult, reason: str) -> CycleResult:
        logger.info(f"Cycle {result.cycle_id} skipped: {reason}")
        result.skipped, result.reason = True, reason
        return result

    async def _run(self, cycle_id: str, result: CycleResult) -> CycleResult:
        now = self.clock()
        state = await self.store.get_system_state()
        if state.status is not SystemStatus.RUNNING:
            return self._skip(result, "system_not_running")
        if state.trade_mode is not TradeMode.PAPER:
            return self._skip(result, "not_paper_mode")

        config = RuntimeConfig.from_document(await self.store.get_config())

        generation = await self.store.get_active_generation()
        if generation is None:
            return self._skip(result, "no_active_generation")

        snapshots = await self._fresh_snapshots(now)
        if not snapshots:
            return self._skip(result, "no_market_data")
        by_symbol = {s.symbol: s for s in snapshots}

        account = await self.store.get_paper_account()
        if account is None:
            return self._skip(result, "no_account")

        drought = await self.drought.resolve(config, snapshots)
        result.drought = drought.to_dict()

        agent = await self._select_agent(generation.id, drought, now)
        if agent is None:
            return self._skip(result, "no_agents")
        result.agent_id = agent.id

        symbols = pick_symbols(
            agent.id,
            [s.symbol for s in snapshots],
            now,
            per_agent=self.cycle_settings.symbols_per_agent,
            bucket_minutes=self.cycle_settings.symbol_bucket_minutes,
        )
        result.symbols_evaluated = symbols
        logger.info(f"Agent {agent.id[:8]} ({agent.role.value}) evaluating {len(symbols)} symbols: {', '.join(symbols)}")

        test_mode = config.strategy_test_mode
        drought_mode = drought.active
        offsets = config.adaptive_tuning.offsets if config.adaptive_tuning.enabled else {}
        thresholds, thresholds_used = self.evaluator.thresholds_for(agent, test_mode, drought_mode, offsets)

        trade_count = await self.store.count_filled_orders(agent_id=agent.id)
        positions = {p.symbol: p.qty for p in await self.store.list_positions(account.id)}

        evaluations: List[Evaluation] = []
        for symbol in symbols:
            evaluation = self.evaluator.evaluate(
                agent,
                by_symbol[symbol],
                positions.get(symbol, 0.0),
                thresholds,
                trade_count,
                test_mode=test_mode,
                drought_mode=drought_mode,
            )
            evaluations.append(evaluation)
            logger.debug(
                f"{symbol}: {evaluation.decision.value} (conf={evaluation.confidence:.2f}, "
                f"reasons={','.join(evaluation.signal.reasons)})"
            )

        all_failures: List[GateFailure] = [f for e in evaluations for f in e.gate_failures]
        ranked = sorted(evaluations, key=lambda e: e.confidence, reverse=True)
        actionable = [e for e in ranked if e.decision is not Decision.HOLD]
        best = actionable[0] if actionable else None

        event_fields: Dict[str, Any] = {
            "cycle_id": cycle_id,
            "agent_id": agent.id,
            "generation_id": generation.id,
            "strategy_template": agent.strategy_template.value,
            "role": agent.role.value,
            "thresholds_used": thresholds_used,
            "symbols_evaluated": len(symbols),
            "drought_state": drought.to_dict(),
            "gate_failures": tally_gate_failures(evaluations),
            "nearest_pass": nearest_pass(all_failures),
            "evaluations": [e.to_dict() for e in ranked[:TOP_EVALUATIONS]],
            "adaptive_tuning": {"offsets": dict(offsets), "enabled": config.adaptive_tuning.enabled},
        }

        if best is None:
            event_fields["top_hold_reasons"] = top_hold_reasons(evaluations)
            logger.info(f"All {len(symbols)} symbols HOLD")
            await self._finish(config, drought, result, DecisionEvent(decision=Decision.HOLD, reasons=["all_hold"], **event_fields))
            result.decision = Decision.HOLD.value
            return result

        result.symbol = best.symbol
        snapshot = best.snapshot
        hold_reason = None
        if agent.role is AgentRole.EXPLORER:
            hold_reason = await self._explorer_block(config, agent, best, now)

        loss_multiplier = 1.0
        if hold_reason is None and best.decision is Decision.BUY:
            loss_check = self.loss_reaction.check(config, now)
            event_fields["extra"] = {"loss_reaction": loss_check.to_dict()}
            if loss_check.blocked:
                hold_reason = loss_check.reason
                await self.store.log_event("trade_blocked", {
                    "cycle_id": cycle_id,
                    "agent_id": agent.id,
                    "symbol": best.symbol,
                    "reason": loss_check.reason,
                    "loss_reaction": loss_check.to_dict(),
                })
            else:
                loss_multiplier = loss_check.size_multiplier

        multiplier = config.drought_safety.size_multiplier if drought_mode else 1.0
        qty = base_qty(best.symbol) * multiplier * loss_multiplier
        if best.decision is Decision.SELL:
            qty = min(qty, best.position_qty)

        tags = {
            "strategy_template": agent.strategy_template.value,
            "regime_at_entry": snapshot.regime,
            "entry_reason": list(best.signal.reasons),
            "exit_reason": best.signal.exit_reason,
            "confidence": best.confidence,
            "pattern_id": pattern_id(agent.strategy_template.value, best.symbol, snapshot.regime, best.signal.reasons),
            "test_mode": test_mode,
            "drought_mode": drought_mode,
            "role": agent.role.value,
            "explorer": agent.role is AgentRole.EXPLORER,
            "market_snapshot": snapshot.summary(now),
        }

        if hold_reason is not None:
            logger.warning(f"Agent {agent.id[:8]} ({agent.role.value}) held {best.symbol}: {hold_reason}")
            await self._record_shadow(config, agent, best, qty, now)
            await self._finish(config, drought, result, DecisionEvent(
                decision=Decision.HOLD,
                symbol=best.symbol,
                confidence=best.confidence,
                reasons=[hold_reason],
                tags=tags,
                execution={"skipped": True, "reason": hold_reason},
                **event_fields,
            ))
            result.decision, result.reason = Decision.HOLD.value, hold_reason
            return result

        if qty <= 0:
            logger.info(f"Decision {best.decision.value.upper()} {best.symbol} but qty=0, skipping")
            await self._record_shadow(config, agent, best, base_qty(best.symbol) * multiplier, now)
            execution = {"skipped": True, "reason": "zero_qty"}
            result.skipped, result.reason = True, "zero_qty"
        else:
            logger.info(
                f"BEST: {best.decision.value.upper()} {qty} {best.symbol} | conf={best.confidence:.2f} | "
                f"drought={drought_mode} | reasons={','.join(best.signal.reasons)}"
            )
            execution = await self._dispatch(config, best.symbol, best.decision.value, qty, agent, tags)
            if not execution.get("ok"):
                result.ok = False
                result.error = execution.get("error")
                await self._record_shadow(config, agent, best, qty, now)

        result.decision, result.qty, result.execution = best.decision.value, qty, execution
        await self._finish(config, drought, result, DecisionEvent(
            decision=best.decision,
            symbol=best.symbol,
            qty=qty,
            confidence=best.confidence,
            reasons=list(best.signal.reasons),
            exit_reason=best.signal.exit_reason,
            tags=tags,
            execution=execution,
            **event_fields,
        ))
        if execution.get("ok") and execution.get("realized_pnl") is not None:
            await self.loss_reaction.record_trade(execution["realized_pnl"], best.symbol, execution.get("order_id"))
        return result

    async def _finish(self, config: RuntimeConfig, drought: DroughtState, result: CycleResult, event: DecisionEvent) -> None:
        await self.store.log_event("trade_decision", event.to_metadata())
        outcome = await self.tuner.run(config, drought)
        result.tuning = outcome.to_dict()
