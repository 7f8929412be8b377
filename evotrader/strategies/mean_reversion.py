from typing import List

from evotrader.core.types import GateFailure, StrategyTemplate
from evotrader.market.snapshots import MarketSnapshot
from .base_strategy import BaseStrategy, SignalCheck
from .gates import Thresholds


class MeanReversionStrategy(BaseStrategy):
    template = StrategyTemplate.MEAN_REVERSION

    def __init__(self):
        super().__init__(
            name="MeanReversion",
            description="Counter-trend entries on oversold 24h moves in ranging markets."
        )

    def check_entry(self, snapshot: MarketSnapshot, thresholds: Thresholds) -> SignalCheck:
        change = snapshot.change_24h
        if change < -thresholds.rsi_threshold and snapshot.regime == "ranging":
            raw = 0.55 + min(0.2, abs(change) / 20)
            return SignalCheck(True, raw, ["oversold", "ranging_regime"])
        return SignalCheck(False)

    def check_exit(self, snapshot: MarketSnapshot, thresholds: Thresholds) -> SignalCheck:
        if snapshot.change_24h > thresholds.rsi_threshold:
            return SignalCheck(True, 0.6, ["overbought"], exit_reason="take_profit")
        return SignalCheck(False)

    def gate_failures(self, snapshot: MarketSnapshot, thresholds: Thresholds) -> List[GateFailure]:
        # 24h change stands in for an RSI extreme
        return self._collect(
            self._min_gate("rsi", abs(snapshot.change_24h), thresholds.rsi_threshold),
        )
