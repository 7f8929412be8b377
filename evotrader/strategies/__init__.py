from .base_strategy import BaseStrategy, StrategySignal
from .trend_pullback import TrendPullbackStrategy
from .mean_reversion import MeanReversionStrategy
from .breakout_strategy import BreakoutStrategy
