"""Price observation and oracle data models"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from ..decimals import ZERO


@dataclass(frozen=True)
class PriceObservation:
    """
    A single timestamped price sample.

    Attributes:
        price: Observed market price (must be > 0)
        timestamp: Unix timestamp in seconds
        volume: Traded volume behind the sample
        confidence: Trust score in [0, 1]
        source: "sampler", "manual" or "shock"
    """
    price: Decimal
    timestamp: float
    volume: Decimal = ZERO
    confidence: float = 1.0
    source: str = "sampler"

    def to_dict(self) -> dict:
        return {
            "price": str(self.price),
            "timestamp": self.timestamp,
            "volume": str(self.volume),
            "confidence": self.confidence,
            "source": self.source,
        }


@dataclass(frozen=True)
class PriceStats:
    """
    Rolling statistics over the observations inside a time window.

    volatility is the coefficient of variation (stdev / mean) so it is
    comparable across pegs. change_pct is relative to the first observation
    in the window, in percent.
    """
    current: Decimal
    high: Decimal
    low: Decimal
    average: Decimal
    weighted_average: Decimal
    volatility: float
    change_pct: float
    confidence: float
    count: int
    window_seconds: float
    timestamp: float

    def to_dict(self) -> dict:
        return {
            "current": str(self.current),
            "high": str(self.high),
            "low": str(self.low),
            "average": str(self.average),
            "weighted_average": str(self.weighted_average),
            "volatility": self.volatility,
            "change_pct": self.change_pct,
            "confidence": self.confidence,
            "count": self.count,
            "window_seconds": self.window_seconds,
            "timestamp": self.timestamp,
        }


@dataclass
class OracleHealth:
    """
    Derived oracle health verdict.

    healthy is False when data is missing, stale, or the latest observation
    is below the confidence floor. High volatility and feed degradation are
    reported as issues without flipping the verdict.
    """
    healthy: bool
    last_update: Optional[float]
    confidence: float
    issues: List[str] = field(default_factory=list)
    degraded: bool = False
    observation_count: int = 0

    def to_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "last_update": self.last_update,
            "confidence": self.confidence,
            "issues": list(self.issues),
            "degraded": self.degraded,
            "observation_count": self.observation_count,
        }
