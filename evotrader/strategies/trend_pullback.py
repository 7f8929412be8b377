from typing import List

from evotrader.core.types import GateFailure, StrategyTemplate
from evotrader.market.snapshots import MarketSnapshot
from .base_strategy import BaseStrategy, SignalCheck
from .gates import Thresholds


class TrendPullbackStrategy(BaseStrategy):
    template = StrategyTemplate.TREND_PULLBACK

    def __init__(self):
        super().__init__(
            name="TrendPullback",
            description="Buys shallow pullbacks inside an established up-trend, exits on trend reversal."
        )

    def check_entry(self, snapshot: MarketSnapshot, thresholds: Thresholds) -> SignalCheck:
        slope = snapshot.trend_slope
        trending = abs(slope) >= thresholds.trend_threshold
        pullback = abs(snapshot.change_24h) <= thresholds.pullback_pct
        if trending and slope > 0 and pullback:
            raw = 0.6 + min(0.2, abs(slope) * 5)
            return SignalCheck(True, raw, ["ema_trending_up", "pullback_detected"])
        return SignalCheck(False)

    def check_exit(self, snapshot: MarketSnapshot, thresholds: Thresholds) -> SignalCheck:
        if snapshot.trend_slope < 0:
            return SignalCheck(True, 0.65, ["trend_reversal"], exit_reason="trend_reversal")
        return SignalCheck(False)

    def gate_failures(self, snapshot: MarketSnapshot, thresholds: Thresholds) -> List[GateFailure]:
        return self._collect(
            self._min_gate("trend", abs(snapshot.trend_slope), thresholds.trend_threshold),
            self._max_gate("pullback", abs(snapshot.change_24h), thresholds.pullback_pct),
        )
