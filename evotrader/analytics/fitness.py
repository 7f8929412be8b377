"""
Fitness Engine - reproducible composite score from an agent's fills.

Score = 0.35 * tanh(net_pnl / 100)
      + 0.25 * (sharpe + 3) / 6
      + 0.15 * profitable_days_ratio
      - 0.15 * max_drawdown
      - 0.10 * overtrading_penalty
      - diversity_penalty

then scaled by 0.5 + 0.5 * min(1, trades / 10) and, for agents with few real
trades, blended with the same score computed over calculated shadow outcomes.

Accounting is average-entry: a buy moves the weighted average entry and
charges its fee immediately; a sell realizes (price - avg_entry) * qty - fee
against the held quantity only.
"""

from __future__ import annotations

import math
import statistics
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from loguru import logger

from evotrader.core.types import Fill, OrderSide, ShadowTrade
from evotrader.core.utils import clamp, utc_now
from evotrader.database.ledger_store import LedgerStore

PNL_SCALE = 100.0
SHARPE_CLAMP = 3.0
ANNUALIZATION_DAYS = 365
FEE_RATIO_LIMIT = 0.3
MAX_TRADES_PER_DAY = 5
DIVERSITY_CAP = 0.1
DIVERSITY_MIN_TRADES = 10
DIVERSITY_TARGET_SYMBOLS = 3
MIN_TRADES_FULL_WEIGHT = 10
SHADOW_FLOOR = 10
SHADOW_MIN_OUTCOMES = 3

WEIGHTS = {
    "pnl": 0.35,
    "sharpe": 0.25,
    "profitable_days": 0.15,
    "drawdown": 0.15,
    "overtrading": 0.10,
}


@dataclass
class FitnessComponents:
    fitness_score: float = 0.0
    net_pnl: float = 0.0
    realized_pnl: float = 0.0
    normalized_pnl: float = 0.0
    sharpe_ratio: float = 0.0
    profitable_days_ratio: float = 0.0
    max_drawdown: float = 0.0
    overtrading_penalty: float = 0.0
    diversity_penalty: float = 0.0
    sample_factor: float = 0.0
    total_trades: int = 0
    gross_profit: float = 0.0
    total_fees: float = 0.0
    final_equity: float = 0.0
    shadow_weight: float = 0.0
    shadow_score: Optional[float] = None
    equity_curve: List[float] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fitness_score": round(self.fitness_score, 6),
            "net_pnl": round(self.net_pnl, 6),
            "realized_pnl": round(self.realized_pnl, 6),
            "normalized_pnl": round(self.normalized_pnl, 6),
            "sharpe_ratio": round(self.sharpe_ratio, 6),
            "profitable_days_ratio": round(self.profitable_days_ratio, 6),
            "max_drawdown": round(self.max_drawdown, 6),
            "overtrading_penalty": round(self.overtrading_penalty, 6),
            "diversity_penalty": round(self.diversity_penalty, 6),
            "sample_factor": round(self.sample_factor, 6),
            "total_trades": self.total_trades,
            "gross_profit": round(self.gross_profit, 6),
            "total_fees": round(self.total_fees, 6),
            "final_equity": round(self.final_equity, 6),
            "shadow_weight": round(self.shadow_weight, 6),
            "shadow_score": round(self.shadow_score, 6) if self.shadow_score is not None else None,
        }


@dataclass
class _Book:
    qty: float = 0.0
    avg_entry: float = 0.0
    cost_basis: float = 0.0


@dataclass
class Ledger:
    """Result of replaying fills through average-entry accounting"""
    equity_curve: List[float]
    daily_pnl: "OrderedDict[date, float]"
    realized_pnl: float
    gross_profit: float
    total_fees: float
    trade_pnls: List[float]


def replay(fills: Sequence[Fill], starting_capital: float) -> Ledger:
    """Apply fills in order. Fills must already be sorted (ties keep insertion order)."""
    books: Dict[str, _Book] = {}
    equity = starting_capital
    curve = [equity]
    daily: "OrderedDict[date, float]" = OrderedDict()
    realized_total = 0.0
    gross_profit = 0.0
    total_fees = 0.0
    trade_pnls: List[float] = []

    for fill in fills:
        book = books.setdefault(fill.symbol, _Book())
        total_fees += fill.fee
        if fill.side is OrderSide.BUY:
            new_qty = book.qty + fill.qty
            if new_qty > 0:
                book.avg_entry = (book.qty * book.avg_entry + fill.qty * fill.price) / new_qty
            book.qty = new_qty
            book.cost_basis = book.qty * book.avg_entry
            delta = -fill.fee
        else:
            matched = min(fill.qty, book.qty)
            realized = (fill.price - book.avg_entry) * matched - fill.fee
            realized_total += realized
            trade_pnls.append(realized)
            if realized > 0:
                gross_profit += realized
            book.qty = max(0.0, book.qty - matched)
            book.cost_basis = book.qty * book.avg_entry
            if book.qty == 0:
                book.avg_entry = 0.0
            delta = realized
        equity += delta
        curve.append(equity)
        day = fill.timestamp.date()
        daily[day] = daily.get(day, 0.0) + delta

    return Ledger(
        equity_curve=curve,
        daily_pnl=daily,
        realized_pnl=realized_total,
        gross_profit=gross_profit,
        total_fees=total_fees,
        trade_pnls=trade_pnls,
    )


def max_drawdown(curve: Sequence[float]) -> float:
    """Peak-to-trough fraction over an equity curve, in [0, 1]"""
    worst = 0.0
    peak = None
    for equity in curve:
        if peak is None or equity > peak:
            peak = equity
        if peak and peak > 0:
            worst = max(worst, (peak - equity) / peak)
    return clamp(worst, 0.0, 1.0)


def daily_returns(daily_pnl: "OrderedDict[date, float]", starting_capital: float) -> List[float]:
    """Day PnL divided by the equity at the start of that day"""
    returns = []
    equity = starting_capital
    for day in sorted(daily_pnl):
        pnl = daily_pnl[day]
        returns.append(pnl / equity if equity > 0 else 0.0)
        equity += pnl
    return returns


def sharpe_ratio(returns: Sequence[float]) -> float:
    if len(returns) < 2:
        return 0.0
    std = statistics.pstdev(returns)
    if std == 0:
        return 0.0
    sharpe = statistics.fmean(returns) / std * math.sqrt(ANNUALIZATION_DAYS)
    return clamp(sharpe, -SHARPE_CLAMP, SHARPE_CLAMP)


def overtrading_penalty(total_fees: float, gross_profit: float, trades_per_day: float) -> float:
    penalty = 0.0
    if gross_profit > 0 and total_fees / gross_profit > FEE_RATIO_LIMIT:
        penalty += 0.5 * (total_fees / gross_profit - FEE_RATIO_LIMIT)
    if trades_per_day > MAX_TRADES_PER_DAY:
        penalty += 0.3 * (trades_per_day / MAX_TRADES_PER_DAY - 1)
    return min(1.0, penalty)


def diversity_penalty(symbols: Iterable[str], trade_count: int, available_symbols: int) -> float:
    if trade_count < DIVERSITY_MIN_TRADES:
        return 0.0
    target = min(available_symbols, DIVERSITY_TARGET_SYMBOLS)
    if target <= 1:
        return 0.0
    distinct = min(len(set(symbols)), target)
    return clamp(DIVERSITY_CAP * (1 - (distinct - 1) / (target - 1)), 0.0, DIVERSITY_CAP)


def sample_factor(trade_count: int) -> float:
    return 0.5 + 0.5 * min(1.0, trade_count / MIN_TRADES_FULL_WEIGHT)


def real_weight(real_trades: int) -> float:
    """Maturity weight of real trades when blending with shadow outcomes"""
    return 0.3 + 0.4 * min(1.0, real_trades / SHADOW_FLOOR)


def _score_fills(fills: Sequence[Fill], starting_capital: float, available_symbols: int) -> FitnessComponents:
    if not fills:
        return FitnessComponents(final_equity=starting_capital, equity_curve=[starting_capital])

    ledger = replay(fills, starting_capital)
    net_pnl = ledger.equity_curve[-1] - starting_capital
    days = ledger.daily_pnl
    profitable_days = sum(1 for pnl in days.values() if pnl > 0)
    span_days = max(1.0, (fills[-1].timestamp - fills[0].timestamp).total_seconds() / 86400)

    components = FitnessComponents(
        net_pnl=net_pnl,
        realized_pnl=ledger.realized_pnl,
        normalized_pnl=math.tanh(net_pnl / PNL_SCALE),
        sharpe_ratio=sharpe_ratio(daily_returns(days, starting_capital)),
        profitable_days_ratio=profitable_days / len(days) if days else 0.0,
        max_drawdown=max_drawdown(ledger.equity_curve),
        overtrading_penalty=overtrading_penalty(ledger.total_fees, ledger.gross_profit, len(fills) / span_days),
        diversity_penalty=diversity_penalty((f.symbol for f in fills), len(fills), available_symbols),
        sample_factor=sample_factor(len(fills)),
        total_trades=len(fills),
        gross_profit=ledger.gross_profit,
        total_fees=ledger.total_fees,
        final_equity=ledger.equity_curve[-1],
        equity_curve=ledger.equity_curve,
    )
    raw = (
        WEIGHTS["pnl"] * components.normalized_pnl
        + WEIGHTS["sharpe"] * (components.sharpe_ratio + SHARPE_CLAMP) / (2 * SHARPE_CLAMP)
        + WEIGHTS["profitable_days"] * components.profitable_days_ratio
        - WEIGHTS["drawdown"] * components.max_drawdown
        - WEIGHTS["overtrading"] * components.overtrading_penalty
        - components.diversity_penalty
    )
    components.fitness_score = raw * components.sample_factor
    return components


def shadow_fills(shadows: Iterable[ShadowTrade]) -> List[Fill]:
    """Synthetic fee-free entry/exit fills for calculated shadow outcomes"""
    fills: List[Fill] = []
    for shadow in shadows:
        if shadow.exit_price is None or shadow.exit_time is None:
            continue
        entry_side = OrderSide.BUY if shadow.side == "BUY" else OrderSide.SELL
        exit_side = OrderSide.SELL if entry_side is OrderSide.BUY else OrderSide.BUY
        if entry_side is OrderSide.SELL:
            # a short shadow scores as the mirrored long
            entry_price, exit_price = shadow.exit_price, shadow.entry_price
            entry_side, exit_side = OrderSide.BUY, OrderSide.SELL
        else:
            entry_price, exit_price = shadow.entry_price, shadow.exit_price
        fills.append(Fill(shadow.id, shadow.symbol, entry_side, shadow.intended_qty, entry_price, 0.0, shadow.entry_time))
        fills.append(Fill(shadow.id, shadow.symbol, exit_side, shadow.intended_qty, exit_price, 0.0, shadow.exit_time))
    fills.sort(key=lambda f: f.timestamp)
    return fills


def compute_fitness(
    fills: Sequence[Fill],
    starting_capital: float = 1000.0,
    available_symbols: int = 1,
    shadows: Optional[Sequence[ShadowTrade]] = None,
) -> FitnessComponents:
    """
    Score one agent.

    Args:
        fills: The agent's fills; non-learnable ones are dropped here
        starting_capital: Equity curve origin
        available_symbols: Symbols the agent could have traded (diversity target)
        shadows: Calculated shadow outcomes for the blend

    Returns:
        FitnessComponents; zero learnable trades scores exactly 0
    """
    learnable = sorted((f for f in fills if f.learnable), key=lambda f: f.timestamp)
    real = _score_fills(learnable, starting_capital, available_symbols)

    usable = [s for s in (shadows or []) if s.exit_price is not None and s.outcome_status in ("calculated", "expired")]
    if not 0 < real.total_trades < SHADOW_FLOOR or len(usable) < SHADOW_MIN_OUTCOMES:
        return real

    shadow = _score_fills(shadow_fills(usable), starting_capital, available_symbols)
    weight = real_weight(real.total_trades)
    real.shadow_weight = 1 - weight
    real.shadow_score = shadow.fitness_score
    real.fitness_score = weight * real.fitness_score + (1 - weight) * shadow.fitness_score
    return real


@dataclass
class FitnessRunResult:
    ok: bool = True
    skipped: bool = False
    reason: Optional[str] = None
    generation_id: Optional[str] = None
    agents_processed: int = 0
    trades_analyzed: int = 0
    account_drawdown: float = 0.0
    scores: Dict[str, FitnessComponents] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        ranked = sorted(self.scores.items(), key=lambda kv: kv[1].fitness_score, reverse=True)
        return {
            "ok": self.ok,
            "skipped": self.skipped,
            "reason": self.reason,
            "generation_id": self.generation_id,
            "agents_processed": self.agents_processed,
            "trades_analyzed": self.trades_analyzed,
            "account_drawdown": round(self.account_drawdown, 6),
            "top_agents": [
                {"agent_id": agent_id, "score": round(c.fitness_score, 4), "pnl": round(c.net_pnl, 2), "trades": c.total_trades}
                for agent_id, c in ranked[:5]
            ],
        }


class FitnessEngine:
    """Scores every agent of a generation and upserts ``performance`` rows"""

    def __init__(self, store: LedgerStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    async def starting_equity(self, generation_id: str) -> float:
        """Equity the generation opened with; older rows without one fall back to the account's seed cash."""
        generation = await self.store.get_generation(generation_id)
        if generation is not None and generation.starting_equity is not None:
            return generation.starting_equity
        account = await self.store.get_paper_account()
        return account.starting_cash if account else 0.0

    async def account_drawdown(self, generation_id: str, current_equity: Optional[float] = None) -> float:
        """Account-level (not per-agent) drawdown over every fill of the generation.

        The curve opens at the generation's starting equity, so losses carried
        over from earlier generations do not count against this one.
        Liquidation fills count here; the current marked equity, when given,
        closes the curve.
        """
        starting = await self.starting_equity(generation_id)
        fills = await self.store.list_fills(generation_id=generation_id)
        curve = replay(fills, starting).equity_curve
        if current_equity is not None:
            curve.append(current_equity)
        return max_drawdown(curve)

    async def run(self, generation_id: Optional[str] = None) -> FitnessRunResult:
        if generation_id is None:
            generation = await self.store.get_active_generation()
            if generation is None:
                logger.info("Fitness: no active generation")
                return FitnessRunResult(skipped=True, reason="no_generation")
            generation_id = generation.id

        agents = await self.store.list_agents(generation_id)
        if not agents:
            return FitnessRunResult(skipped=True, reason="no_agents", generation_id=generation_id)

        account = await self.store.get_paper_account()
        starting = account.starting_cash if account else 1000.0
        available = max(1, len(await self.store.list_market_data()))
        fills = await self.store.list_fills(generation_id=generation_id)
        shadows = await self.store.list_shadow_trades(generation_id=generation_id)

        by_agent: Dict[str, List[Fill]] = {}
        for fill in fills:
            if fill.agent_id:
                by_agent.setdefault(fill.agent_id, []).append(fill)

        result = FitnessRunResult(generation_id=generation_id, trades_analyzed=sum(1 for f in fills if f.learnable))
        for agent in agents:
            agent_shadows = [s for s in shadows if s.agent_id == agent.id]
            components = compute_fitness(by_agent.get(agent.id, []), starting, available, agent_shadows)
            result.scores[agent.id] = components
            await self.store.save_performance({
                "agent_id": agent.id,
                "generation_id": generation_id,
                "fitness_score": components.fitness_score,
                "net_pnl": components.net_pnl,
                "sharpe_ratio": components.sharpe_ratio,
                "max_drawdown": components.max_drawdown,
                "profitable_days_ratio": components.profitable_days_ratio,
                "total_trades": components.total_trades,
                "components": components.to_dict(),
            })

        result.agents_processed = len(agents)
        result.account_drawdown = await self.account_drawdown(generation_id)
        await self.store.log_event("fitness_calculated", result.to_dict())
        logger.info(
            f"Fitness calculated for {len(agents)} agents ({result.trades_analyzed} learnable fills), "
            f"account drawdown {result.account_drawdown:.2%}"
        )
        return result
