"""
Market Snapshot Provider - typed view over the polled market_data rows
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from evotrader.core.utils import parse_utc, to_float

HIGH_VOLATILITY_RATIO = 1.5
LOW_VOLATILITY_RATIO = 0.75
TRENDING_SLOPE = 0.02
RANGING_SLOPE = 0.01


def classify_regime(trend_slope: float, volatility_ratio: float) -> str:
    """Volatility first, then trend strength."""
    if volatility_ratio > HIGH_VOLATILITY_RATIO:
        return "high_volatility"
    if volatility_ratio < LOW_VOLATILITY_RATIO:
        return "low_volatility"
    if abs(trend_slope) > TRENDING_SLOPE:
        return "trending"
    if abs(trend_slope) < RANGING_SLOPE:
        return "ranging"
    return "unknown"


@dataclass
class MarketSnapshot:
    """Market data structure"""
    symbol: str
    price: float
    change_24h: float
    volume_24h: float
    trend_slope: float
    volatility_ratio: float
    regime: str
    updated_at: datetime

    def age_seconds(self, now: datetime) -> float:
        return max(0.0, (now - self.updated_at).total_seconds())

    def is_fresh(self, now: datetime, max_age_seconds: float) -> bool:
        return self.age_seconds(now) <= max_age_seconds

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MarketSnapshot":
        slope = to_float(row.get("trend_slope", row.get("ema_50_slope")))
        ratio = to_float(row.get("volatility_ratio", row.get("atr_ratio")), 1.0)
        regime = str(row.get("regime") or "").lower()
        if not regime or regime == "unknown":
            regime = classify_regime(slope, ratio)
        return cls(
            symbol=str(row["symbol"]),
            price=to_float(row.get("price")),
            change_24h=to_float(row.get("change_24h")),
            volume_24h=to_float(row.get("volume_24h")),
            trend_slope=slope,
            volatility_ratio=ratio,
            regime=regime,
            updated_at=parse_utc(row.get("updated_at")),
        )

    def summary(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        data = {
            "price": self.price,
            "change_24h": self.change_24h,
            "trend_slope": self.trend_slope,
            "volatility_ratio": self.volatility_ratio,
            "regime": self.regime,
        }
        if now is not None:
            data["age_seconds"] = round(self.age_seconds(now), 1)
        return data


class MarketSnapshotProvider:
    """Reads snapshots from the ledger store's market_data table.

    Polling/ingestion happens elsewhere; this only adapts rows and drops the
    malformed ones.
    """

    def __init__(self, store):
        self.store = store

    async def get_snapshots(self, symbols: Optional[Sequence[str]] = None) -> List[MarketSnapshot]:
        rows = await self.store.list_market_data(symbols)
        snapshots: List[MarketSnapshot] = []
        for row in rows:
            try:
                snapshot = MarketSnapshot.from_row(row)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed market row {row.get('symbol')}: {e}")
                continue
            if snapshot.updated_at is None or snapshot.price <= 0:
                logger.warning(f"Skipping market row without price/timestamp: {snapshot.symbol}")
                continue
            snapshots.append(snapshot)
        return snapshots

    async def get_price(self, symbol: str) -> Optional[float]:
        snapshots = await self.get_snapshots([symbol])
        for snapshot in snapshots:
            if snapshot.symbol == symbol:
                return snapshot.price
        return None
