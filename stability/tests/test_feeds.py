"""
Tests for the price samplers.
"""

from decimal import Decimal

import pytest

from stability.config import SamplerConfig
from stability.errors import SamplerError
from stability.feeds import PriceSampler, SimulatedPriceSampler, score_confidence


class TestImports:
    """Verify all imports work correctly"""

    def test_feed_imports(self):
        from stability.feeds import PriceSampler, SimulatedPriceSampler
        assert PriceSampler is not None
        assert SimulatedPriceSampler is not None

    def test_package_imports(self):
        from stability import StabilityService, PriceAggregator, SupplyController
        assert StabilityService is not None
        assert PriceAggregator is not None
        assert SupplyController is not None


class TestScoreConfidence:
    def test_on_peg_full_confidence(self):
        assert score_confidence(1.0, 1.0) == 1.0

    def test_deviation_penalty(self):
        assert score_confidence(0.9, 1.0) == pytest.approx(0.8)

    def test_deviation_floor(self):
        # 50% off peg hits the 0.3 floor
        assert score_confidence(0.5, 1.0) == pytest.approx(0.3)

    def test_volatility_penalty_needs_history(self):
        choppy = [1.0, 1.1, 0.9] * 3
        assert score_confidence(1.0, 1.0, choppy, lookback=10) == 1.0

        choppy = [1.0, 1.1, 0.9] * 5
        assert score_confidence(1.0, 1.0, choppy, lookback=10) < 1.0

    def test_never_below_minimum(self):
        wild = [0.1, 5.0] * 20
        assert score_confidence(0.01, 1.0, wild, lookback=10) >= 0.1


class TestSimulatedSampler:
    def test_initialization(self):
        sampler = SimulatedPriceSampler()
        assert sampler.name == "simulated"
        assert sampler.price == 1.0
        assert sampler.is_healthy is False

    def test_set_price_is_manual_full_confidence(self, clock):
        sampler = SimulatedPriceSampler(clock=clock)
        observation = sampler.set_price(Decimal("0.5"))
        assert observation.price == Decimal("0.5")
        assert observation.confidence == 1.0
        assert observation.source == "manual"
        assert observation.timestamp == clock()
        assert sampler.price == 0.5

    def test_shock_bounded(self):
        sampler = SimulatedPriceSampler(SamplerConfig(seed=1))
        observation = sampler.apply_shock(0.2)
        assert Decimal("0.8") <= observation.price <= Decimal("1.2")
        assert observation.source == "shock"

    def test_volume_grows_off_peg(self):
        sampler = SimulatedPriceSampler(SamplerConfig(seed=3, base_volume=1000))
        sampler._price = 2.0
        # distance 1.0 => 6x multiplier, random factor at least 0.5
        assert sampler._simulate_volume() >= 3000

    def test_price_floor(self):
        sampler = SimulatedPriceSampler(SamplerConfig(min_price=0.01))
        sampler.set_price(Decimal("0.001"))
        assert sampler.price == 0.01


@pytest.mark.asyncio
class TestAsyncSampling:
    async def test_sample(self, clock):
        sampler = SimulatedPriceSampler(SamplerConfig(seed=42), clock=clock)
        observation = await sampler.sample()
        assert observation.price > 0
        assert observation.source == "sampler"
        assert 0.1 <= observation.confidence <= 1.0
        assert sampler.is_healthy is True

    async def test_seeded_walk_reproducible(self, clock):
        a = SimulatedPriceSampler(SamplerConfig(seed=7), clock=clock)
        b = SimulatedPriceSampler(SamplerConfig(seed=7), clock=clock)
        for _ in range(5):
            assert (await a.sample()).price == (await b.sample()).price

    async def test_mean_reversion(self):
        config = SamplerConfig(seed=5, initial_price=1.5, volatility=0.0, mean_reversion=0.5)
        sampler = SimulatedPriceSampler(config)
        await sampler.sample()
        assert sampler.price == pytest.approx(1.25)

    async def test_failure_wrapped(self):
        class BrokenSampler(PriceSampler):
            async def _sample(self):
                raise ConnectionError("feed offline")

        sampler = BrokenSampler("broken")
        with pytest.raises(SamplerError):
            await sampler.sample()

        status = sampler.get_status()
        assert status["error_count"] == 1
        assert "feed offline" in status["last_error"]
        assert status["healthy"] is False
