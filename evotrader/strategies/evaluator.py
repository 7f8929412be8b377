"""
Gate Evaluator - pure mapping from (agent, snapshot, position, mode) to a decision
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from evotrader.core.types import Agent, Decision, GateFailure, StrategyTemplate
from evotrader.market.snapshots import MarketSnapshot
from .base_strategy import BaseStrategy, StrategySignal
from .breakout_strategy import BreakoutStrategy
from .gates import Thresholds, apply_offsets, select_thresholds
from .mean_reversion import MeanReversionStrategy
from .trend_pullback import TrendPullbackStrategy

PATTERN_ID_MAX_LEN = 50

STRATEGIES: Dict[StrategyTemplate, BaseStrategy] = {
    StrategyTemplate.TREND_PULLBACK: TrendPullbackStrategy(),
    StrategyTemplate.MEAN_REVERSION: MeanReversionStrategy(),
    StrategyTemplate.BREAKOUT: BreakoutStrategy(),
}


def pattern_id(template: str, symbol: str, regime: str, reasons: List[str]) -> str:
    key = f"{template}_{symbol}_{regime}_{'_'.join(reasons[:2])}"
    return key[:PATTERN_ID_MAX_LEN]


@dataclass
class Evaluation:
    """One agent evaluated against one symbol"""
    symbol: str
    snapshot: MarketSnapshot
    position_qty: float
    signal: StrategySignal

    @property
    def decision(self) -> Decision:
        return self.signal.decision

    @property
    def confidence(self) -> float:
        return self.signal.confidence

    @property
    def gate_failures(self) -> List[GateFailure]:
        return self.signal.gate_failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "decision": self.signal.decision.value,
            "reasons": list(self.signal.reasons),
            "confidence": self.signal.confidence,
            "gate_failures": [f.to_dict() for f in self.signal.gate_failures],
            "market": self.snapshot.summary(),
        }


class GateEvaluator:
    """Resolves the thresholds for an agent and runs only its own template."""

    def __init__(self, strategies: Optional[Mapping[StrategyTemplate, BaseStrategy]] = None):
        self.strategies = dict(strategies or STRATEGIES)

    def thresholds_for(
        self,
        agent: Agent,
        test_mode: bool,
        drought_mode: bool,
        offsets: Optional[Mapping[str, float]] = None,
    ) -> Tuple[Thresholds, str]:
        thresholds, label = select_thresholds(agent.genes, test_mode, drought_mode)
        return apply_offsets(thresholds, offsets), label

    def evaluate(
        self,
        agent: Agent,
        snapshot: MarketSnapshot,
        position_qty: float,
        thresholds: Thresholds,
        trade_count: int,
        test_mode: bool = False,
        drought_mode: bool = False,
    ) -> Evaluation:
        strategy = self.strategies[agent.strategy_template]
        signal = strategy.analyze(
            snapshot,
            thresholds,
            position_qty=position_qty,
            trade_count=trade_count,
            test_mode=test_mode,
            drought_mode=drought_mode,
        )
        return Evaluation(
            symbol=snapshot.symbol,
            snapshot=snapshot,
            position_qty=position_qty,
            signal=signal,
        )
