"""
Price samplers for the Stability Engine

Usage:
    from stability.feeds import SimulatedPriceSampler

    async def main():
        sampler = SimulatedPriceSampler(target_price=Decimal("1.00"))
        observation = await sampler.sample()
        # observation is ready for PriceAggregator.add_observation()
"""

from .base import PriceSampler, score_confidence
from .simulated import SimulatedPriceSampler

__all__ = [
    "PriceSampler",
    "score_confidence",
    "SimulatedPriceSampler",
]
