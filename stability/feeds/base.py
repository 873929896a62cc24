"""
Base classes for price samplers.

All samplers inherit from PriceSampler and implement an async _sample
method. Includes error counting, latency tracking and health reporting.
"""

import time
from abc import ABC, abstractmethod
from collections import deque
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Sequence
import logging

from scipy import stats

from ..errors import SamplerError
from ..models.price import PriceObservation

logger = logging.getLogger(__name__)


def score_confidence(
    price: float,
    target_price: float,
    recent_prices: Sequence[float] = (),
    lookback: int = 10,
) -> float:
    """
    Score how trustworthy a price sample is.

    Starts at 1.0 and is reduced multiplicatively:
    - distance from the peg (floor 0.3)
    - realized volatility (stdev / mean) over the last `lookback` samples,
      once more than `lookback` samples exist (floor 0.5)

    Result is clamped to [0.1, 1.0].
    """
    confidence = 1.0

    if target_price > 0:
        deviation = abs(price - target_price) / target_price
        confidence *= max(0.3, 1 - deviation * 2)

    if len(recent_prices) > lookback:
        window = list(recent_prices)[-lookback:]
        volatility = float(stats.variation(window))
        confidence *= max(0.5, 1 - volatility * 10)

    return max(0.1, min(1.0, confidence))


class PriceSampler(ABC):
    """
    Abstract base class for price sources.

    Provides:
    - Async sample with error accounting
    - Latency tracking
    - Health monitoring

    Implementations that support operator overrides also implement
    set_price() and apply_shock().
    """

    def __init__(
        self,
        name: str,
        clock: Callable[[], float] = time.time,
        stale_after: float = 60.0,
    ):
        self.name = name
        self.clock = clock
        self.stale_after = stale_after

        self._error_count = 0
        self._last_success: Optional[float] = None
        self._last_error: Optional[str] = None
        self._request_times: deque = deque(maxlen=100)

    @property
    def is_healthy(self) -> bool:
        """Check if sampler is healthy (recent successful sample)"""
        if self._last_success is None:
            return False
        return self.clock() - self._last_success < self.stale_after

    @property
    def avg_latency_ms(self) -> float:
        """Average sample latency in milliseconds"""
        if not self._request_times:
            return 0
        return sum(self._request_times) / len(self._request_times) * 1000

    async def sample(self) -> PriceObservation:
        """
        Produce one observation.

        Raises:
            SamplerError: if the underlying source fails
        """
        start = time.monotonic()
        try:
            observation = await self._sample()
        except SamplerError as e:
            self.record_failure(str(e))
            raise
        except Exception as e:
            self.record_failure(str(e))
            raise SamplerError(f"{self.name}: sample failed: {e}") from e

        self._request_times.append(time.monotonic() - start)
        self._last_success = self.clock()
        self._error_count = 0
        self._last_error = None
        return observation

    def record_failure(self, reason: str):
        """Count a failed or timed-out sample"""
        self._error_count += 1
        self._last_error = reason
        logger.warning(f"{self.name}: sample failed ({self._error_count} consecutive): {reason}")

    @abstractmethod
    async def _sample(self) -> PriceObservation:
        """
        Implement actual sampling logic.

        Subclasses must implement this method.
        """
        pass

    def set_price(self, price: Decimal, volume: Decimal = Decimal(0)) -> PriceObservation:
        """Force the source to a price (emergency override)"""
        raise NotImplementedError(f"{self.name} does not support manual prices")

    def apply_shock(self, severity: float) -> PriceObservation:
        """Perturb the source price by up to +/- severity"""
        raise NotImplementedError(f"{self.name} does not support market shocks")

    async def close(self):
        """Release any resources held by the sampler"""
        pass

    def get_status(self) -> Dict[str, Any]:
        """Get sampler status for monitoring"""
        return {
            "name": self.name,
            "healthy": self.is_healthy,
            "error_count": self._error_count,
            "last_error": self._last_error,
            "avg_latency_ms": self.avg_latency_ms,
            "last_success": self._last_success,
        }
