"""
Rebalance Scheduler

Drives the epoch loop:
    pull price -> SupplyController.decide -> LedgerDistributor.apply
    -> record adjustment and metrics snapshot in one audit write

Timer-driven and manual epochs share run_epoch() and one asyncio.Lock, so
at most one decide/apply/audit sequence is in flight. Ledger mutations
(mint, burn, transfer, reserve deposits and withdrawals) take the same
lock. Blocking store calls run in worker threads via asyncio.to_thread.
"""

import asyncio
import time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
import logging

from .aggregator import PriceAggregator
from .config import SamplerConfig, StabilityConfig
from .controller import SupplyController
from .decimals import ZERO, quantize, to_decimal
from .distributor import LedgerDistributor
from .errors import (
    AuditWriteFailure,
    ConcurrentRebalanceRejected,
    ConfigurationError,
    EngineError,
    InsufficientBalance,
    InvalidObservation,
    LedgerError,
    ReserveRatioViolation,
    SamplerError,
)
from .feeds.base import PriceSampler
from .models.ledger import LedgerBatch, StablecoinTransaction, TransactionKind
from .models.metrics import StabilityMetricsSnapshot, compute_stability_score
from .models.price import PriceObservation, PriceStats
from .models.supply import AdjustmentStatus, SupplyAction, SupplyAdjustment
from .storage.base import AuditSink

logger = logging.getLogger(__name__)


class RebalanceScheduler:
    """
    Runs stability epochs on a timer and on demand.

    State machine: stopped -> running -> stopped. Total supply is read
    from the ledger once and tracked incrementally afterwards.
    """

    def __init__(
        self,
        aggregator: PriceAggregator,
        controller: SupplyController,
        distributor: LedgerDistributor,
        audit_sink: AuditSink,
        sampler: Optional[PriceSampler] = None,
        sampler_config: Optional[SamplerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.aggregator = aggregator
        self.controller = controller
        self.distributor = distributor
        self.store = distributor.store
        self.audit_sink = audit_sink
        self.sampler = sampler
        self.sampler_config = sampler_config or SamplerConfig()
        self.clock = clock

        self._lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []
        self._running = False

        self._total_supply: Optional[Decimal] = None
        self._epoch = 0
        self._pending_config: Optional[StabilityConfig] = None
        self._last_snapshot: Optional[StabilityMetricsSnapshot] = None
        self._last_rebalance_at: Optional[float] = None
        self._last_error: Optional[str] = None
        self._degraded = False

    # ============ Lifecycle ============

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_progress(self) -> bool:
        """True while an epoch or ledger mutation holds the lock"""
        return self._lock.locked()

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def total_supply(self) -> Optional[Decimal]:
        """Tracked total supply, None until ledger state is loaded"""
        return self._total_supply

    @property
    def last_snapshot(self) -> Optional[StabilityMetricsSnapshot]:
        return self._last_snapshot

    async def start(self):
        """Load ledger state and start the sampler and epoch loops"""
        if self._running:
            raise EngineError("Scheduler already running")

        async with self._lock:
            await self._load_state(force=True)

        self._stop_event = asyncio.Event()
        self._running = True

        if self.sampler is not None:
            await self.sample_once()
            self._tasks.append(asyncio.create_task(self._sample_loop(), name="stability-sampler"))
        self._tasks.append(asyncio.create_task(self._epoch_loop(), name="stability-epochs"))

        logger.info(
            f"Scheduler started: supply {self._total_supply}, epoch {self._epoch}, "
            f"interval {self.controller.config.rebalance_interval_seconds}s"
        )

    async def stop(self):
        """
        Stop scheduling epochs.

        Safe to call mid-epoch: the loops exit at their next wait and any
        in-flight epoch finishes its ledger write first.
        """
        if not self._running:
            return

        self._running = False
        self._stop_event.set()

        tasks, self._tasks = self._tasks, []
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Scheduler task ended with error: {result}")

        # Wait out manual epochs still holding the lock
        async with self._lock:
            pass

        logger.info(f"Scheduler stopped at epoch {self._epoch}")

    async def _wait(self, timeout: float):
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def _sample_loop(self):
        while not self._stop_event.is_set():
            await self._wait(self.sampler_config.update_interval_seconds)
            if self._stop_event.is_set():
                break
            try:
                await self.sample_once()
            except Exception as e:
                logger.error(f"Sampling error: {e}", exc_info=True)

    async def _epoch_loop(self):
        while not self._stop_event.is_set():
            await self._wait(self.controller.config.rebalance_interval_seconds)
            if self._stop_event.is_set():
                break
            try:
                await self.run_epoch(wait=True)
            except Exception as e:
                self._last_error = str(e)
                self._degraded = True
                logger.error(f"Epoch failed: {e}", exc_info=True)

    # ============ Sampling ============

    async def sample_once(self) -> Optional[PriceObservation]:
        """
        Fetch one observation from the sampler into the aggregator.

        A timeout or sampler failure keeps the last known price and marks
        the oracle feed degraded.
        """
        if self.sampler is None:
            return None

        timeout = self.sampler_config.timeout_seconds
        try:
            observation = await asyncio.wait_for(self.sampler.sample(), timeout=timeout)
        except asyncio.TimeoutError:
            reason = f"{self.sampler.name} timed out after {timeout}s"
            self.sampler.record_failure(reason)
            self.aggregator.mark_degraded(reason)
            return None
        except SamplerError as e:
            self.aggregator.mark_degraded(str(e))
            return None

        try:
            return self.aggregator.add_observation(observation)
        except InvalidObservation as e:
            logger.warning(f"Discarded sample from {self.sampler.name}: {e}")
            self.aggregator.mark_degraded(f"invalid sample: {e}")
            return None

    # ============ Epochs ============

    def stage_config(self, config: StabilityConfig):
        """Queue a validated config; it takes effect at the next epoch boundary"""
        self._pending_config = config
        logger.info(f"Staged stability config for next epoch: {config}")

    @property
    def pending_config(self) -> Optional[StabilityConfig]:
        return self._pending_config

    async def run_epoch(self, wait: bool = True) -> Optional[SupplyAdjustment]:
        """
        Run one decide -> apply -> audit cycle.

        Args:
            wait: Block until a running epoch finishes. When False, raise
                  ConcurrentRebalanceRejected instead.

        Returns:
            The recorded adjustment, or None if no price has been observed
        """
        if not wait and self._lock.locked():
            raise ConcurrentRebalanceRejected("Rebalance already in progress")

        async with self._lock:
            return await self._run_epoch_locked()

    async def _run_epoch_locked(self) -> Optional[SupplyAdjustment]:
        self._apply_pending_config()

        stats = self.aggregator.price_stats()
        if stats is None:
            logger.info("No price observations yet, skipping epoch")
            return None

        await self._load_state()
        health = self.aggregator.health()
        supply = self._total_supply
        reserve = await asyncio.to_thread(
            self.store.get_balance, self.distributor.reserve_account_id
        )

        adjustment = self.controller.decide(supply, stats, health, reserve_balance=reserve or ZERO)

        self._epoch += 1
        epoch = self._epoch

        if adjustment.action == SupplyAction.NONE:
            recorded = adjustment.with_status(AdjustmentStatus.NOOP, epoch=epoch)
        else:
            snapshot = await asyncio.to_thread(self.store.balances)
            try:
                await asyncio.to_thread(self.distributor.apply, adjustment, snapshot, epoch)
            except LedgerError as e:
                recorded = adjustment.with_status(AdjustmentStatus.FAILED, epoch=epoch, error=str(e))
                self._last_error = f"Epoch {epoch} ledger write failed: {e}"
                logger.error(self._last_error)
            else:
                recorded = adjustment.with_status(AdjustmentStatus.APPLIED, epoch=epoch)
                self._total_supply = supply + adjustment.signed_amount

        metrics = await self._build_snapshot(epoch, stats)
        await self._persist(recorded, metrics)

        self._last_rebalance_at = self.clock()
        logger.info(
            f"Epoch {epoch}: {recorded.action.value} {recorded.amount} "
            f"[{recorded.status.value}] {recorded.reason}"
        )
        return recorded

    def _apply_pending_config(self):
        config, self._pending_config = self._pending_config, None
        if config is None:
            return
        self.controller.config = config
        self.aggregator.target_price = config.target_price
        if self.sampler is not None and hasattr(self.sampler, "target_price"):
            self.sampler.target_price = config.target_price
        logger.info(f"Applied stability config: {config}")

    async def _load_state(self, force: bool = False):
        if self._total_supply is not None and not force:
            return

        self._total_supply = await asyncio.to_thread(self.store.total_supply)

        history = await asyncio.to_thread(self.audit_sink.supply_history, 1)
        if history:
            self._epoch = max(self._epoch, history[0].epoch)
        if self._last_snapshot is None:
            self._last_snapshot = await asyncio.to_thread(self.audit_sink.latest_snapshot)

    async def _build_snapshot(self, epoch: int, stats: PriceStats) -> StabilityMetricsSnapshot:
        config = self.controller.config
        reserve = await asyncio.to_thread(
            self.store.get_balance, self.distributor.reserve_account_id
        )

        deviation = abs(stats.current - config.target_price) / config.target_price
        volatility = self.aggregator.volatility(self.aggregator.config.metrics_window_seconds)

        return StabilityMetricsSnapshot(
            total_supply=self._total_supply,
            reserve_pool=reserve or ZERO,
            current_price=stats.current,
            target_price=config.target_price,
            deviation=quantize(deviation, 8),
            volatility=volatility,
            stability_score=compute_stability_score(
                float(deviation), config.tolerance_band, volatility
            ),
            epoch=epoch,
            timestamp=self.clock(),
        )

    async def _persist(self, adjustment: SupplyAdjustment, snapshot: StabilityMetricsSnapshot):
        try:
            await asyncio.to_thread(self.audit_sink.record_epoch, adjustment, snapshot)
        except AuditWriteFailure as e:
            self._last_error = str(e)
            self._degraded = True
            logger.error(f"Audit persistence unavailable: {e}")
            return

        self._last_snapshot = snapshot
        if adjustment.status != AdjustmentStatus.FAILED:
            self._degraded = False
        else:
            self._degraded = True

    async def reconcile(self) -> Dict[str, Decimal]:
        """Re-sum the ledger and resynchronise tracked supply"""
        async with self._lock:
            ledger_total = await asyncio.to_thread(self.store.total_supply)
            tracked = self._total_supply
            drift = ZERO if tracked is None else ledger_total - tracked
            if drift != 0:
                logger.warning(f"Supply drift {drift}: tracked {tracked}, ledger {ledger_total}")
            self._total_supply = ledger_total

        return {
            "tracked": tracked if tracked is not None else ledger_total,
            "ledger": ledger_total,
            "drift": drift,
        }

    # ============ Ledger mutations ============

    async def mint(self, account_id: str, amount) -> StablecoinTransaction:
        """Credit new supply to an account"""
        amount = self._validate_amount(amount)
        async with self._lock:
            await self._load_state()
            balance = await asyncio.to_thread(self.store.get_balance, account_id)
            tx = self._transaction(account_id, TransactionKind.MINT, amount)
            batch = LedgerBatch(
                balances={account_id: (balance or ZERO) + amount},
                transactions=[tx],
            )
            await asyncio.to_thread(self.store.apply_batch, batch)
            self._total_supply += amount

        logger.info(f"Minted {amount} to {account_id}")
        return tx

    async def burn(self, account_id: str, amount) -> StablecoinTransaction:
        """
        Destroy supply held by an account.

        Raises:
            InsufficientBalance: if the account holds less than amount
        """
        amount = self._validate_amount(amount)
        async with self._lock:
            await self._load_state()
            balance = await asyncio.to_thread(self.store.get_balance, account_id) or ZERO
            if balance < amount:
                raise InsufficientBalance(f"{account_id} holds {balance}, cannot burn {amount}")

            tx = self._transaction(account_id, TransactionKind.BURN, -amount)
            batch = LedgerBatch(balances={account_id: balance - amount}, transactions=[tx])
            await asyncio.to_thread(self.store.apply_batch, batch)
            self._total_supply -= amount

        logger.info(f"Burned {amount} from {account_id}")
        return tx

    async def transfer(self, from_account: str, to_account: str, amount) -> List[StablecoinTransaction]:
        """Move balance between two accounts; total supply is unchanged"""
        amount = self._validate_amount(amount)
        if from_account == to_account:
            raise ConfigurationError("Cannot transfer to the same account")

        async with self._lock:
            balances = await asyncio.to_thread(self.store.balances)
            source = balances.get(from_account, ZERO)
            if source < amount:
                raise InsufficientBalance(f"{from_account} holds {source}, cannot transfer {amount}")

            debit = self._transaction(from_account, TransactionKind.TRANSFER, -amount)
            credit = self._transaction(to_account, TransactionKind.TRANSFER, amount)
            batch = LedgerBatch(
                balances={
                    from_account: source - amount,
                    to_account: balances.get(to_account, ZERO) + amount,
                },
                transactions=[debit, credit],
            )
            await asyncio.to_thread(self.store.apply_batch, batch)

        logger.info(f"Transferred {amount} from {from_account} to {to_account}")
        return [debit, credit]

    async def add_reserves(self, amount) -> StablecoinTransaction:
        """Credit backing to the reserve account"""
        amount = self._validate_amount(amount)
        reserve_id = self.distributor.reserve_account_id
        async with self._lock:
            await self._load_state()
            balance = await asyncio.to_thread(self.store.get_balance, reserve_id) or ZERO
            tx = self._transaction(reserve_id, TransactionKind.RESERVE_DEPOSIT, amount)
            batch = LedgerBatch(balances={reserve_id: balance + amount}, transactions=[tx])
            await asyncio.to_thread(self.store.apply_batch, batch)
            self._total_supply += amount

        logger.info(f"Added {amount} to reserves")
        return tx

    async def remove_reserves(self, amount) -> StablecoinTransaction:
        """
        Withdraw backing from the reserve account.

        Raises:
            InsufficientBalance: if the reserve holds less than amount
            ReserveRatioViolation: if the withdrawal leaves reserve / supply
                                   below the configured reserve_ratio
        """
        amount = self._validate_amount(amount)
        reserve_id = self.distributor.reserve_account_id
        async with self._lock:
            await self._load_state()
            balance = await asyncio.to_thread(self.store.get_balance, reserve_id) or ZERO
            if balance < amount:
                raise InsufficientBalance(f"Reserve holds {balance}, cannot withdraw {amount}")

            minimum = to_decimal(self.controller.config.reserve_ratio)
            remaining_supply = self._total_supply - amount
            if minimum > 0 and remaining_supply > 0:
                ratio = (balance - amount) / remaining_supply
                if ratio < minimum:
                    raise ReserveRatioViolation(
                        f"Withdrawing {amount} leaves reserve ratio {ratio:.4f} "
                        f"below minimum {minimum}"
                    )

            tx = self._transaction(reserve_id, TransactionKind.RESERVE_WITHDRAWAL, -amount)
            batch = LedgerBatch(balances={reserve_id: balance - amount}, transactions=[tx])
            await asyncio.to_thread(self.store.apply_batch, batch)
            self._total_supply -= amount

        logger.info(f"Removed {amount} from reserves")
        return tx

    async def reserve_info(self) -> Dict[str, Decimal]:
        """Reserve balance and its ratio to total supply"""
        await self._load_state()
        reserve = await asyncio.to_thread(
            self.store.get_balance, self.distributor.reserve_account_id
        ) or ZERO
        supply = self._total_supply
        return {
            "reserve_pool": reserve,
            "reserve_ratio": quantize(reserve / supply, 8) if supply > 0 else ZERO,
            "minimum_reserve_ratio": to_decimal(self.controller.config.reserve_ratio),
        }

    def _validate_amount(self, amount) -> Decimal:
        try:
            amount = quantize(to_decimal(amount), self.distributor.ledger_decimals)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid amount: {amount!r}") from e
        if amount <= 0:
            raise ConfigurationError(f"Amount must be positive, got {amount}")
        return amount

    def _transaction(self, account_id: str, kind: TransactionKind, amount: Decimal) -> StablecoinTransaction:
        latest = self.aggregator.current_price()
        price = latest.price if latest is not None else self.controller.config.target_price
        return StablecoinTransaction(
            account_id=account_id,
            kind=kind,
            amount=amount,
            price_at_time=price,
            created_at=self.clock(),
        )

    # ============ Status ============

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "in_progress": self.in_progress,
            "epoch": self._epoch,
            "last_rebalance_at": self._last_rebalance_at,
            "last_error": self._last_error,
            "degraded": self._degraded,
            "config_pending": self._pending_config is not None,
        }
