"""
Simulated price sampler.

Random walk with mean reversion toward the peg. Used in development,
tests and the bundled runner; a real feed would subclass PriceSampler
the same way.
"""

import time
from collections import deque
from decimal import Decimal
from typing import Callable, Optional

import numpy as np

from ..config import SamplerConfig
from ..decimals import to_decimal, quantize
from ..models.price import PriceObservation
from .base import PriceSampler, score_confidence

PRICE_DECIMALS = 8


class SimulatedPriceSampler(PriceSampler):
    """
    Simulated market for the stablecoin.

    Each sample moves the price by a uniform shock of +/- volatility plus a
    pull of mean_reversion * (target - price), floored at min_price.
    """

    def __init__(
        self,
        config: Optional[SamplerConfig] = None,
        target_price: Decimal = Decimal("1.00"),
        confidence_lookback: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or SamplerConfig()
        super().__init__(
            name="simulated",
            clock=clock,
            stale_after=self.config.update_interval_seconds * 2,
        )

        self.target_price = to_decimal(target_price)
        self.confidence_lookback = confidence_lookback

        self._rng = np.random.default_rng(self.config.seed)
        self._price = float(self.config.initial_price)
        self._recent: deque = deque(maxlen=confidence_lookback * 2)

    @property
    def price(self) -> float:
        """Current simulated price"""
        return self._price

    async def _sample(self) -> PriceObservation:
        target = float(self.target_price)

        random_factor = self._rng.uniform(-1.0, 1.0) * self.config.volatility
        mean_reversion_factor = (target - self._price) * self.config.mean_reversion

        self._price = max(self.config.min_price, self._price + random_factor + mean_reversion_factor)

        return self._observe(to_decimal(self._simulate_volume()))

    def set_price(self, price: Decimal, volume: Decimal = Decimal(0)) -> PriceObservation:
        """
        Force the simulated market to a price.

        Manual prices are operator-asserted, so they carry full confidence.
        """
        price = to_decimal(price)
        self._price = max(self.config.min_price, float(price))
        return self._observe(to_decimal(volume), price=price, source="manual", confidence=1.0)

    def apply_shock(self, severity: float) -> PriceObservation:
        """Move the price by a uniform factor in [-severity, +severity], with 3x volume"""
        shock_factor = self._rng.uniform(-1.0, 1.0) * severity
        self._price = max(self.config.min_price, self._price * (1 + shock_factor))
        return self._observe(to_decimal(self._simulate_volume() * 3), source="shock")

    def _simulate_volume(self) -> float:
        """Volume grows with distance from the peg"""
        distance = abs(self._price - float(self.target_price))
        volatility_multiplier = distance * 5 + 1
        random_multiplier = 0.5 + self._rng.random()
        return self.config.base_volume * volatility_multiplier * random_multiplier

    def _observe(
        self,
        volume: Decimal,
        price: Optional[Decimal] = None,
        source: str = "sampler",
        confidence: Optional[float] = None,
    ) -> PriceObservation:
        if price is None:
            price = quantize(self._price, PRICE_DECIMALS)

        if confidence is None:
            confidence = score_confidence(
                float(price),
                float(self.target_price),
                self._recent,
                self.confidence_lookback,
            )
        self._recent.append(float(price))

        return PriceObservation(
            price=price,
            timestamp=self.clock(),
            volume=quantize(volume, 2),
            confidence=confidence,
            source=source,
        )
