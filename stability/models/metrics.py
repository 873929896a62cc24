"""Stability metrics snapshot model"""

import time
from dataclasses import dataclass, field
from decimal import Decimal


def compute_stability_score(
    deviation: float,
    tolerance_band: float,
    volatility: float,
    volatility_ceiling: float = 0.1,
) -> float:
    """
    Score price stability from 0 (unstable) to 100 (on peg, calm).

    Half the score comes from deviation relative to the tolerance band,
    half from volatility relative to a 10% ceiling.
    """
    deviation_score = 0.0
    if tolerance_band > 0:
        deviation_score = max(0.0, 1.0 - abs(deviation) / tolerance_band) * 50
    volatility_score = max(0.0, 1.0 - volatility / volatility_ceiling) * 50
    return deviation_score + volatility_score


@dataclass(frozen=True)
class StabilityMetricsSnapshot:
    """
    Point-in-time record written once per epoch.

    deviation is the absolute fractional distance from target.
    """
    total_supply: Decimal
    reserve_pool: Decimal
    current_price: Decimal
    target_price: Decimal
    deviation: Decimal
    volatility: float
    stability_score: float
    epoch: int = 0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "epoch": self.epoch,
            "total_supply": str(self.total_supply),
            "reserve_pool": str(self.reserve_pool),
            "current_price": str(self.current_price),
            "target_price": str(self.target_price),
            "deviation": str(self.deviation),
            "volatility": self.volatility,
            "stability_score": self.stability_score,
        }
