from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from evotrader.core.types import Decision, GateFailure, StrategyTemplate
from evotrader.core.utils import clamp
from evotrader.market.snapshots import MarketSnapshot
from .gates import Thresholds, nearest_pass

MIN_TRADES_FOR_FULL_CONFIDENCE = 30


def calibrate_confidence(raw: float, trade_count: int, max_confidence: float = 1.0) -> float:
    """Cold-start agents never emit high confidence regardless of raw edge."""
    experience = min(1.0, max(0, trade_count) / MIN_TRADES_FOR_FULL_CONFIDENCE)
    return clamp(raw * experience, 0.0, min(1.0, max_confidence))


@dataclass
class StrategySignal:
    """Standardized output of one template evaluated against one snapshot"""
    decision: Decision
    confidence: float
    raw_confidence: float = 0.0
    reasons: List[str] = field(default_factory=list)
    exit_reason: Optional[str] = None
    gate_failures: List[GateFailure] = field(default_factory=list)
    nearest_pass: Optional[GateFailure] = None


@dataclass
class SignalCheck:
    fired: bool
    raw_confidence: float = 0.0
    reasons: List[str] = field(default_factory=list)
    exit_reason: Optional[str] = None


class BaseStrategy(ABC):
    """Abstract base class for the gene-parameterized strategy templates"""

    template: StrategyTemplate

    def __init__(self, name: str, description: str):
        self.name = name
        self.description = description

    @abstractmethod
    def check_entry(self, snapshot: MarketSnapshot, thresholds: Thresholds) -> SignalCheck:
        """Evaluate the single entry condition while flat."""

    @abstractmethod
    def check_exit(self, snapshot: MarketSnapshot, thresholds: Thresholds) -> SignalCheck:
        """Evaluate the single exit condition while holding."""

    @abstractmethod
    def gate_failures(self, snapshot: MarketSnapshot, thresholds: Thresholds) -> List[GateFailure]:
        """Numeric entry gates that did not clear, with signed margins."""

    def analyze(
        self,
        snapshot: MarketSnapshot,
        thresholds: Thresholds,
        position_qty: float,
        trade_count: int,
        test_mode: bool = False,
        drought_mode: bool = False,
    ) -> StrategySignal:
        holding = position_qty > 0
        failures: List[GateFailure] = []

        if holding:
            check = self.check_exit(snapshot, thresholds)
            if check.fired:
                return StrategySignal(
                    decision=Decision.SELL,
                    confidence=calibrate_confidence(check.raw_confidence, trade_count, thresholds.max_confidence),
                    raw_confidence=check.raw_confidence,
                    reasons=list(check.reasons),
                    exit_reason=check.exit_reason,
                )
        else:
            check = self.check_entry(snapshot, thresholds)
            if check.fired:
                reasons = list(check.reasons)
                if test_mode:
                    reasons.append("test_mode")
                if drought_mode:
                    reasons.append("drought_mode")
                return StrategySignal(
                    decision=Decision.BUY,
                    confidence=calibrate_confidence(check.raw_confidence, trade_count, thresholds.max_confidence),
                    raw_confidence=check.raw_confidence,
                    reasons=reasons,
                )
            failures = self.gate_failures(snapshot, thresholds)

        return StrategySignal(
            decision=Decision.HOLD,
            confidence=0.0,
            reasons=["no_signal"],
            gate_failures=failures,
            nearest_pass=nearest_pass(failures),
        )

    @staticmethod
    def _min_gate(gate: str, actual: float, threshold: float) -> Optional[GateFailure]:
        if actual < threshold:
            return GateFailure(gate=gate, actual=actual, threshold=threshold, margin=actual - threshold)
        return None

    @staticmethod
    def _max_gate(gate: str, actual: float, threshold: float, inclusive: bool = False) -> Optional[GateFailure]:
        failed = actual >= threshold if inclusive else actual > threshold
        if failed:
            return GateFailure(gate=gate, actual=actual, threshold=threshold, margin=threshold - actual)
        return None

    @staticmethod
    def _collect(*results: Optional[GateFailure]) -> List[GateFailure]:
        return [r for r in results if r is not None]
