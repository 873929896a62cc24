"""
Stability Service

Facade the surrounding application talks to. Wires the sampler,
aggregator, controller, distributor and scheduler around an injected
ledger store and audit sink.

Example:
    service = StabilityService(store=InMemoryLedgerStore({"alice": 600_000}))
    await service.start()
    status = await service.get_status()
    await service.set_price("0.95")
    adjustment = await service.perform_rebalance()
    await service.stop()
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
import logging

from .aggregator import PriceAggregator
from .config import EngineConfig, StorageConfig
from .controller import SupplyController
from .decimals import ZERO, to_decimal
from .distributor import LedgerDistributor
from .errors import ConfigurationError, EngineError
from .feeds.base import PriceSampler
from .feeds.simulated import SimulatedPriceSampler
from .models.ledger import HolderBalance, StablecoinTransaction
from .models.metrics import StabilityMetricsSnapshot
from .models.price import PriceObservation
from .models.supply import SupplyAdjustment
from .scheduler import RebalanceScheduler
from .storage import AuditSink, InMemoryAuditSink, InMemoryLedgerStore, LedgerStore, SQLiteStore

logger = logging.getLogger(__name__)

MAX_TRANSACTIONS_LIMIT = 100
MAX_SUPPLY_HISTORY_LIMIT = 50
MAX_METRICS_HISTORY_LIMIT = 100


def _clamp_limit(limit: int, maximum: int) -> int:
    return max(1, min(int(limit), maximum))


def create_stores(config: StorageConfig) -> Tuple[LedgerStore, AuditSink]:
    """Build the ledger store and audit sink for the configured backend"""
    if config.backend == "sqlite":
        store = SQLiteStore(config.sqlite_path)
        return store, store
    if config.backend == "memory":
        return InMemoryLedgerStore(), InMemoryAuditSink()
    raise ConfigurationError(f"Unsupported storage backend: {config.backend}")


class StabilityService:
    """
    Public API of the stability engine.

    All collaborators are optional; missing ones are built from config.
    Query methods read committed state and may run alongside epochs.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[LedgerStore] = None,
        audit_sink: Optional[AuditSink] = None,
        sampler: Optional[PriceSampler] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or EngineConfig()
        errors = self.config.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))

        if store is None and audit_sink is None:
            store, audit_sink = create_stores(self.config.storage)
        elif store is None:
            store = InMemoryLedgerStore()
        elif audit_sink is None:
            audit_sink = store if isinstance(store, AuditSink) else InMemoryAuditSink()

        stability = self.config.stability
        storage = self.config.storage

        if sampler is None:
            sampler = SimulatedPriceSampler(
                config=self.config.sampler,
                target_price=stability.target_price,
                confidence_lookback=self.config.oracle.confidence_lookback,
                clock=clock,
            )

        self.store = store
        self.audit_sink = audit_sink
        self.sampler = sampler
        self.aggregator = PriceAggregator(self.config.oracle, stability.target_price, clock)
        self.controller = SupplyController(stability, storage.ledger_decimals, clock)
        self.distributor = LedgerDistributor(
            store,
            reserve_account_id=storage.reserve_account_id,
            ledger_decimals=storage.ledger_decimals,
            clock=clock,
        )
        self.scheduler = RebalanceScheduler(
            self.aggregator,
            self.controller,
            self.distributor,
            audit_sink,
            sampler=sampler,
            sampler_config=self.config.sampler,
            clock=clock,
        )
        self.clock = clock

    # ============ Lifecycle ============

    async def start(self):
        """
        Load ledger state and start the epoch timer.

        Raises:
            EngineError: if already running
        """
        await self.scheduler.start()
        logger.info("Stability service started")

    async def stop(self):
        """Stop the epoch timer; an in-flight epoch is allowed to finish"""
        await self.scheduler.stop()
        logger.info("Stability service stopped")

    async def close(self):
        """Stop and release the sampler and storage"""
        await self.stop()
        if self.sampler is not None:
            await self.sampler.close()
        self.store.close()
        if self.audit_sink is not self.store:
            self.audit_sink.close()

    # ============ Queries ============

    async def get_status(self) -> Dict[str, Any]:
        scheduler = self.scheduler.get_status()
        pending = self.scheduler.pending_config
        return {
            "running": scheduler["running"],
            "config": _stability_dict(self.controller.config),
            "pending_config": _stability_dict(pending) if pending else None,
            "oracle_health": self.aggregator.health().to_dict(),
            "last_rebalance_at": scheduler["last_rebalance_at"],
            "epoch": scheduler["epoch"],
            "rebalance_in_progress": scheduler["in_progress"],
            "degraded": scheduler["degraded"],
            "last_error": scheduler["last_error"],
            "sampler": self.sampler.get_status() if self.sampler else None,
        }

    async def get_metrics(self) -> Dict[str, Any]:
        """
        Latest committed metrics.

        stability is the last successfully recorded snapshot, so a failed
        epoch leaves the previous (timestamped) figures in place.
        """
        balances = await asyncio.to_thread(self.store.balances)
        reserve_id = self.distributor.reserve_account_id

        total_supply = self.scheduler.total_supply
        if total_supply is None:
            total_supply = sum(balances.values(), ZERO)

        snapshot = self.scheduler.last_snapshot
        stats = self.aggregator.price_stats()

        return {
            "stability": snapshot.to_dict() if snapshot else None,
            "supply": {
                "total_supply": str(total_supply),
                "reserve_pool": str(balances.get(reserve_id, ZERO)),
                "holder_count": sum(
                    1 for account, balance in balances.items()
                    if account != reserve_id and balance > 0
                ),
            },
            "price": stats.to_dict() if stats else None,
            "oracle": self.aggregator.health().to_dict(),
        }

    async def get_user_balance(self, account_id: str) -> Optional[HolderBalance]:
        """Balance of an account, or None if the ledger does not know it"""
        return await asyncio.to_thread(self.store.holder, account_id)

    async def get_user_transactions(self, account_id: str, limit: int = 50) -> List[StablecoinTransaction]:
        limit = _clamp_limit(limit, MAX_TRANSACTIONS_LIMIT)
        return await asyncio.to_thread(self.store.transactions_for, account_id, limit)

    async def get_supply_history(self, limit: int = 20) -> List[SupplyAdjustment]:
        limit = _clamp_limit(limit, MAX_SUPPLY_HISTORY_LIMIT)
        return await asyncio.to_thread(self.audit_sink.supply_history, limit)

    async def get_metrics_history(self, limit: int = 20) -> List[StabilityMetricsSnapshot]:
        limit = _clamp_limit(limit, MAX_METRICS_HISTORY_LIMIT)
        return await asyncio.to_thread(self.audit_sink.snapshots, limit)

    async def get_price_history(self, limit: int = 100) -> List[PriceObservation]:
        return self.aggregator.history(_clamp_limit(limit, self.aggregator.config.history_size))

    # ============ Operations ============

    async def perform_rebalance(self) -> Optional[SupplyAdjustment]:
        """
        Run one epoch now, through the same path as the timer.

        Raises:
            ConcurrentRebalanceRejected: if an epoch is already in flight
        """
        return await self.scheduler.run_epoch(wait=False)

    async def set_price(self, price, volume=ZERO) -> PriceObservation:
        """
        Emergency price override. Bypasses the sampler but not the controller.

        Raises:
            ConfigurationError: if price is not a positive number
        """
        try:
            price = to_decimal(price)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid price: {price!r}") from e
        if price <= 0:
            raise ConfigurationError(f"Price must be positive, got {price}")

        observation = None
        if self.sampler is not None:
            try:
                observation = self.sampler.set_price(price, to_decimal(volume))
            except NotImplementedError:
                logger.debug(f"{self.sampler.name} has no price override, recording directly")

        if observation is None:
            observation = PriceObservation(
                price=price,
                timestamp=self.clock(),
                volume=to_decimal(volume),
                confidence=1.0,
                source="manual",
            )

        observation = self.aggregator.add_observation(observation)
        logger.warning(f"Manual price override: {price}")
        return observation

    async def simulate_market_shock(self, severity: float) -> PriceObservation:
        """
        Perturb the sampler price by up to +/- severity.

        Raises:
            ConfigurationError: if severity is outside [0, 1]
            EngineError: if the sampler cannot simulate shocks
        """
        try:
            severity = float(severity)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid severity: {severity!r}") from e
        if not 0 <= severity <= 1:
            raise ConfigurationError(f"Severity must be in [0, 1], got {severity}")

        if self.sampler is None:
            raise EngineError("No price sampler configured")
        try:
            observation = self.sampler.apply_shock(severity)
        except NotImplementedError as e:
            raise EngineError(str(e)) from e

        observation = self.aggregator.add_observation(observation)
        logger.info(f"Market shock {severity:.0%}: price now {observation.price}")
        return observation

    async def update_config(self, partial: Mapping[str, Any]):
        """
        Validate and stage new peg parameters for the next epoch.

        Raises:
            ConfigurationError: on unknown fields or invalid values
        """
        base = self.scheduler.pending_config or self.controller.config
        config = base.merged(dict(partial))
        self.scheduler.stage_config(config)
        return config

    async def update_oracle_config(self, partial: Mapping[str, Any]):
        """Apply new oracle thresholds immediately"""
        config = self.aggregator.config.merged(dict(partial))
        self.aggregator.update_config(config)
        logger.info(f"Oracle config updated: {config}")
        return config

    async def mint(self, account_id: str, amount) -> StablecoinTransaction:
        return await self.scheduler.mint(account_id, amount)

    async def burn(self, account_id: str, amount) -> StablecoinTransaction:
        return await self.scheduler.burn(account_id, amount)

    async def transfer(self, from_account: str, to_account: str, amount) -> List[StablecoinTransaction]:
        return await self.scheduler.transfer(from_account, to_account, amount)

    async def add_reserves(self, amount) -> StablecoinTransaction:
        """Deposit backing into the reserve account"""
        return await self.scheduler.add_reserves(amount)

    async def remove_reserves(self, amount) -> StablecoinTransaction:
        """
        Withdraw backing from the reserve account.

        Raises:
            InsufficientBalance: if the reserve holds less than amount
            ReserveRatioViolation: if the withdrawal breaks the minimum reserve ratio
        """
        return await self.scheduler.remove_reserves(amount)

    async def get_reserve_info(self) -> Dict[str, str]:
        info = await self.scheduler.reserve_info()
        return {key: str(value) for key, value in info.items()}

    async def reconcile(self) -> Dict[str, str]:
        result = await self.scheduler.reconcile()
        return {key: str(value) for key, value in result.items()}


def _stability_dict(config) -> Dict[str, Any]:
    return {
        "target_price": str(config.target_price),
        "tolerance_band": config.tolerance_band,
        "max_supply_change_per_epoch": config.max_supply_change_per_epoch,
        "correction_gain": config.correction_gain,
        "rebalance_interval_seconds": config.rebalance_interval_seconds,
        "reserve_ratio": config.reserve_ratio,
    }
