"""
Price Aggregator (Oracle)

Keeps a bounded ring of price observations and derives rolling
statistics and a health verdict from it. Never raises on noisy input
beyond basic validation: out-of-range confidence is clamped, so a flaky
sampler can only degrade health.
"""

import math
import threading
import time
from collections import deque
from decimal import Decimal
from typing import Callable, List, Optional
import logging

import numpy as np
from scipy import stats

from .config import OracleConfig
from .decimals import ZERO, to_decimal, quantize
from .errors import InvalidObservation
from .feeds.base import score_confidence
from .models.price import PriceObservation, PriceStats, OracleHealth

logger = logging.getLogger(__name__)

STATS_DECIMALS = 8

PriceListener = Callable[[PriceObservation], None]


class PriceAggregator:
    """
    Aggregates price observations over time.

    Features:
    - Bounded history (oldest evicted beyond history_size)
    - Windowed statistics: high, low, average, confidence-weighted average,
      volatility and change
    - Health verdict from staleness, confidence and volatility thresholds
    - Listener callbacks on every accepted observation
    """

    def __init__(
        self,
        config: Optional[OracleConfig] = None,
        target_price: Decimal = Decimal("1.00"),
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize price aggregator.

        Args:
            config: Oracle thresholds and windows
            target_price: Peg used when scoring confidence of raw prices
            clock: Time source (Unix seconds)
        """
        self.config = config or OracleConfig()
        self.target_price = to_decimal(target_price)
        self.clock = clock

        self._history: deque = deque(maxlen=self.config.history_size)
        self._lock = threading.RLock()
        self._listeners: List[PriceListener] = []
        self._feed_issue: Optional[str] = None

    # ============ Ingestion ============

    def add_observation(self, observation: PriceObservation) -> PriceObservation:
        """
        Append an observation to the ring.

        Raises:
            InvalidObservation: if price is not a positive finite number
        """
        price = observation.price
        if not isinstance(price, Decimal) or not price.is_finite() or price <= 0:
            raise InvalidObservation(f"price must be positive, got {price!r}")

        confidence = observation.confidence
        if not isinstance(confidence, (int, float)) or math.isnan(confidence):
            confidence = 0.0
        clamped = max(0.0, min(1.0, float(confidence)))
        if clamped != observation.confidence:
            logger.debug(f"Clamped observation confidence {observation.confidence} -> {clamped}")
            observation = PriceObservation(
                price=observation.price,
                timestamp=observation.timestamp,
                volume=observation.volume,
                confidence=clamped,
                source=observation.source,
            )

        with self._lock:
            self._history.append(observation)
            if observation.source == "sampler":
                self._feed_issue = None

        self._notify_listeners(observation)
        return observation

    def ingest(
        self,
        price,
        volume=ZERO,
        timestamp: Optional[float] = None,
        confidence: Optional[float] = None,
        source: str = "sampler",
    ) -> PriceObservation:
        """
        Build an observation from raw values and add it.

        Confidence is scored against the peg and recent history when not given.
        """
        try:
            price = to_decimal(price)
        except (TypeError, ValueError) as e:
            raise InvalidObservation(str(e)) from e

        if confidence is None and price > 0:
            with self._lock:
                recent = [float(o.price) for o in self._history]
            confidence = score_confidence(
                float(price),
                float(self.target_price),
                recent,
                self.config.confidence_lookback,
            )

        return self.add_observation(PriceObservation(
            price=price,
            timestamp=self.clock() if timestamp is None else timestamp,
            volume=to_decimal(volume),
            confidence=1.0 if confidence is None else confidence,
            source=source,
        ))

    def mark_degraded(self, reason: str):
        """Record a feed failure; kept until the next sampled observation"""
        with self._lock:
            self._feed_issue = reason

    def update_config(self, config: OracleConfig):
        """Swap thresholds; resizes the ring if history_size changed"""
        with self._lock:
            if config.history_size != self._history.maxlen:
                self._history = deque(self._history, maxlen=config.history_size)
            self.config = config

    # ============ Queries ============

    def current_price(self) -> Optional[PriceObservation]:
        """Latest observation, or None if the ring is empty"""
        with self._lock:
            if not self._history:
                return None
            return self._history[-1]

    def history(self, limit: int = 100) -> List[PriceObservation]:
        """Most recent observations, oldest first"""
        with self._lock:
            items = list(self._history)
        return items[-limit:] if limit > 0 else []

    def __len__(self) -> int:
        with self._lock:
            return len(self._history)

    def _window(self, window_seconds: float) -> List[PriceObservation]:
        cutoff = self.clock() - window_seconds
        with self._lock:
            return [o for o in self._history if o.timestamp >= cutoff]

    def volatility(self, window_seconds: float) -> float:
        """Coefficient of variation of prices inside the window"""
        prices = [float(o.price) for o in self._window(window_seconds)]
        if len(prices) < 2:
            return 0.0
        return float(stats.variation(np.array(prices)))

    def price_stats(self, window_seconds: Optional[float] = None) -> Optional[PriceStats]:
        """
        Statistics over observations within the window.

        Returns None if no observation exists at all. If the window is empty
        the latest observation stands in for every figure and count is 0.
        """
        if window_seconds is None:
            window_seconds = self.config.stats_window_seconds

        latest = self.current_price()
        if latest is None:
            return None

        observations = self._window(window_seconds)
        now = self.clock()

        if not observations:
            return PriceStats(
                current=latest.price,
                high=latest.price,
                low=latest.price,
                average=latest.price,
                weighted_average=latest.price,
                volatility=0.0,
                change_pct=0.0,
                confidence=latest.confidence,
                count=0,
                window_seconds=window_seconds,
                timestamp=now,
            )

        prices = [o.price for o in observations]
        average = sum(prices, ZERO) / len(prices)

        weights = [to_decimal(o.confidence) for o in observations]
        weight_sum = sum(weights, ZERO)
        if weight_sum > 0:
            weighted_average = sum((p * w for p, w in zip(prices, weights)), ZERO) / weight_sum
        else:
            weighted_average = average

        first = prices[0]
        change_pct = float((latest.price - first) / first * 100)

        volatility = 0.0
        if len(prices) > 1:
            volatility = float(stats.variation(np.array([float(p) for p in prices])))

        return PriceStats(
            current=latest.price,
            high=max(prices),
            low=min(prices),
            average=quantize(average, STATS_DECIMALS),
            weighted_average=quantize(weighted_average, STATS_DECIMALS),
            volatility=volatility,
            change_pct=change_pct,
            confidence=latest.confidence,
            count=len(prices),
            window_seconds=window_seconds,
            timestamp=now,
        )

    def health(self) -> OracleHealth:
        """
        Derive the oracle health verdict.

        Unhealthy when empty, stale beyond max_price_age_seconds, or the
        latest confidence is under min_confidence. Volatility above
        volatility_threshold (over volatility_window_seconds) and feed
        degradation are flagged without failing the verdict.
        """
        with self._lock:
            latest = self._history[-1] if self._history else None
            count = len(self._history)
            feed_issue = self._feed_issue

        if latest is None:
            issues = ["No price data available"]
            if feed_issue:
                issues.append(f"Price feed degraded: {feed_issue}")
            return OracleHealth(
                healthy=False,
                last_update=None,
                confidence=0.0,
                issues=issues,
                degraded=feed_issue is not None,
                observation_count=0,
            )

        issues = []
        healthy = True

        age = self.clock() - latest.timestamp
        if age > self.config.max_price_age_seconds:
            issues.append(f"Price data is stale ({age:.0f}s old)")
            healthy = False

        if latest.confidence < self.config.min_confidence:
            issues.append(
                f"Low price confidence ({latest.confidence:.2f} < {self.config.min_confidence:.2f})"
            )
            healthy = False

        volatility = self.volatility(self.config.volatility_window_seconds)
        if volatility > self.config.volatility_threshold:
            issues.append(f"High volatility detected ({volatility:.2%})")

        if feed_issue:
            issues.append(f"Price feed degraded: {feed_issue}")

        return OracleHealth(
            healthy=healthy,
            last_update=latest.timestamp,
            confidence=latest.confidence,
            issues=issues,
            degraded=feed_issue is not None,
            observation_count=count,
        )

    # ============ Listeners ============

    def add_listener(self, callback: PriceListener):
        self._listeners.append(callback)

    def remove_listener(self, callback: PriceListener):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify_listeners(self, observation: PriceObservation):
        for listener in list(self._listeners):
            try:
                listener(observation)
            except Exception as e:
                logger.error(f"Error in price listener: {e}", exc_info=True)
