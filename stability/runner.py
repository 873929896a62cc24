"""
Stability Engine Runner

Runs the stability engine against the configured ledger with the
simulated price sampler.

Usage:
    python -m stability.runner
    python -m stability.runner --seed-holders 100 --shock 0.1 --once
    python -m stability.runner --config stability.yaml --status-interval 60
"""

import asyncio
import argparse
import logging
import signal
import sys
from datetime import datetime
from typing import Optional

import numpy as np

from .config import EngineConfig, load_config
from .errors import ConfigurationError
from .service import StabilityService

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(name)s | %(message)s'

logger = logging.getLogger(__name__)


def setup_logging(config: EngineConfig):
    """Configure root logging from the engine config"""
    handlers = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file))

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt='%H:%M:%S',
        handlers=handlers,
        force=True,
    )


class StabilityRunner:
    """
    Runs the stability service and periodically logs its state.
    """

    def __init__(
        self,
        config: EngineConfig,
        seed_holders: int = 0,
        shock: float = 0.0,
        status_interval: float = 60.0,
    ):
        self.config = config
        self.seed_holders = seed_holders
        self.shock = shock
        self.status_interval = status_interval

        self.service = StabilityService(config)

        self._running = False
        self._report_count = 0

    async def start(self):
        """Start the engine and report until stopped"""
        stability = self.config.stability
        logger.info(f"Starting stability engine, target {stability.target_price}")
        logger.info(
            f"Band: {stability.tolerance_band:.2%} | "
            f"Max change: {stability.max_supply_change_per_epoch:.2%} | "
            f"Epoch: {stability.rebalance_interval_seconds:.0f}s"
        )
        logger.info(f"Storage: {self.config.storage.backend}")
        logger.info("-" * 60)

        await seed_ledger(self.service, self.seed_holders, self.config.sampler.seed)
        await self.service.start()
        self._running = True

        if self.shock:
            await self.service.simulate_market_shock(self.shock)

        try:
            while self._running:
                await asyncio.sleep(self.status_interval)
                await self._report()
        except asyncio.CancelledError:
            logger.info("Stability runner cancelled")
        finally:
            await self.stop()

    async def stop(self):
        """Stop the engine and release storage"""
        self._running = False
        await self.service.close()
        logger.info("Stability runner stopped")

    async def _report(self):
        """Log a status line"""
        self._report_count += 1

        try:
            status = await self.service.get_status()
            metrics = await self.service.get_metrics()
            self._log_report(status, metrics)
        except Exception as e:
            logger.error(f"Status report failed: {e}", exc_info=True)

    def _log_report(self, status, metrics):
        price = metrics["price"]
        supply = metrics["supply"]
        stability = metrics["stability"]
        oracle = status["oracle_health"]

        logger.info(f"[{self._report_count}] epoch {status['epoch']}")
        if price:
            logger.info(
                f"  Price: {float(price['current']):.4f} | "
                f"Avg: {float(price['average']):.4f} | "
                f"Vol: {price['volatility']:.2%} | "
                f"Conf: {price['confidence']:.0%}"
            )
        logger.info(
            f"  Supply: {float(supply['total_supply']):,.2f} | "
            f"Reserve: {float(supply['reserve_pool']):,.8f} | "
            f"Holders: {supply['holder_count']}"
        )
        if stability:
            logger.info(f"  Stability score: {stability['stability_score']:.1f}")
        if not oracle["healthy"] or oracle["issues"]:
            logger.warning(f"  Oracle: {'; '.join(oracle['issues'])}")
        if status["last_error"]:
            logger.warning(f"  Last error: {status['last_error']}")
        logger.info("-" * 60)


async def seed_ledger(service: StabilityService, holders: int, seed: Optional[int] = None):
    """Mint a log-normal spread of balances to demo accounts if the ledger is empty"""
    if holders <= 0:
        return

    existing = await service.get_metrics()
    if existing["supply"]["holder_count"] > 0:
        logger.info("Ledger already has holders, skipping seed")
        return

    rng = np.random.default_rng(seed)
    balances = rng.lognormal(mean=8.0, sigma=1.5, size=holders)
    for i, balance in enumerate(balances):
        await service.mint(f"holder-{i:04d}", round(float(balance), 2))

    logger.info(f"Seeded {holders} holders")


async def run_once(config: EngineConfig, seed_holders: int = 0, shock: float = 0.0):
    """
    Sample once, run a single epoch and return the result.

    Returns:
        Tuple of (adjustment, metrics)
    """
    service = StabilityService(config)

    try:
        await seed_ledger(service, seed_holders, config.sampler.seed)
        await service.scheduler.sample_once()
        if shock:
            await service.simulate_market_shock(shock)

        adjustment = await service.perform_rebalance()
        metrics = await service.get_metrics()
        return adjustment, metrics

    finally:
        await service.close()


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Stability Engine Runner")
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to YAML/JSON config file"
    )
    parser.add_argument(
        "--seed-holders",
        type=int,
        default=0,
        help="Mint demo balances to N holders when the ledger is empty"
    )
    parser.add_argument(
        "--shock",
        type=float,
        default=0.0,
        help="Apply a market shock of this severity (0-1) after start"
    )
    parser.add_argument(
        "--status-interval",
        type=float,
        default=60.0,
        help="Seconds between status reports (default: 60)"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one epoch and exit"
    )

    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    try:
        if args.once:
            adjustment, metrics = loop.run_until_complete(
                run_once(config, args.seed_holders, args.shock)
            )
            now = datetime.now().strftime("%H:%M:%S")
            if adjustment is None:
                print(f"\n[{now}] No price observed, nothing to do")
            else:
                print(f"\n[{now}] Epoch {adjustment.epoch}: {adjustment.status.value}")
                print(f"Action: {adjustment.action.value} {adjustment.amount}")
                print(f"Reason: {adjustment.reason}")
                print(f"Price: {adjustment.current_price} (target {adjustment.target_price})")
            print(f"Total supply: {metrics['supply']['total_supply']}")
            print(f"Reserve pool: {metrics['supply']['reserve_pool']}")
        else:
            runner = StabilityRunner(
                config,
                seed_holders=args.seed_holders,
                shock=args.shock,
                status_interval=args.status_interval,
            )

            # Handle Ctrl+C gracefully
            def signal_handler(sig, frame):
                logger.info("Shutting down...")
                runner._running = False

            signal.signal(signal.SIGINT, signal_handler)
            loop.run_until_complete(runner.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.close()


if __name__ == "__main__":
    main()
