from typing import List

from evotrader.core.types import GateFailure, StrategyTemplate
from evotrader.market.snapshots import MarketSnapshot
from .base_strategy import BaseStrategy, SignalCheck
from .gates import Thresholds


class BreakoutStrategy(BaseStrategy):
    template = StrategyTemplate.BREAKOUT

    def __init__(self):
        super().__init__(
            name="Breakout",
            description="Enters on volatility contraction with positive slope, exits on volatility expansion."
        )

    def check_entry(self, snapshot: MarketSnapshot, thresholds: Thresholds) -> SignalCheck:
        ratio = snapshot.volatility_ratio
        if ratio < thresholds.vol_contraction and snapshot.trend_slope > 0:
            raw = 0.5 + min(0.15, (1 - ratio) * 0.5)
            return SignalCheck(True, raw, ["vol_contraction", "positive_slope"])
        return SignalCheck(False)

    def check_exit(self, snapshot: MarketSnapshot, thresholds: Thresholds) -> SignalCheck:
        if snapshot.volatility_ratio > thresholds.vol_expansion_exit:
            return SignalCheck(True, 0.55, ["vol_expansion"], exit_reason="exit_breakout")
        return SignalCheck(False)

    def gate_failures(self, snapshot: MarketSnapshot, thresholds: Thresholds) -> List[GateFailure]:
        return self._collect(
            self._max_gate("vol_contraction", snapshot.volatility_ratio, thresholds.vol_contraction, inclusive=True),
        )
