"""Tests for the rebalance scheduler"""

import asyncio
import time
from decimal import Decimal

import pytest

from stability.aggregator import PriceAggregator
from stability.config import SamplerConfig, StabilityConfig
from stability.controller import SupplyController
from stability.distributor import LedgerDistributor
from stability.errors import EngineError, SamplerError
from stability.feeds import PriceSampler
from stability.models import AdjustmentStatus, PriceObservation, SupplyAction
from stability.scheduler import RebalanceScheduler
from stability.storage import InMemoryAuditSink, InMemoryLedgerStore


class SlowSampler(PriceSampler):
    def __init__(self, delay, clock):
        super().__init__("slow", clock=clock)
        self.delay = delay

    async def _sample(self):
        await asyncio.sleep(self.delay)
        return PriceObservation(price=Decimal("1.00"), timestamp=self.clock())


class BrokenSampler(PriceSampler):
    async def _sample(self):
        raise SamplerError("exchange returned 503")


class SlowLedgerStore(InMemoryLedgerStore):
    """Holds each batch for a while so epochs overlap with other calls"""

    def _write_balance(self, staged, account_id, balance):
        time.sleep(0.01)
        super()._write_balance(staged, account_id, balance)


def make_scheduler(clock, balances, sampler=None, store_class=InMemoryLedgerStore, stability=None, sampler_config=None):
    store = store_class(balances)
    aggregator = PriceAggregator(clock=clock)
    controller = SupplyController(stability or StabilityConfig(), clock=clock)
    distributor = LedgerDistributor(store, clock=clock)
    return RebalanceScheduler(
        aggregator,
        controller,
        distributor,
        InMemoryAuditSink(),
        sampler=sampler,
        sampler_config=sampler_config,
        clock=clock,
    )


@pytest.mark.asyncio
class TestSampling:
    async def test_timeout_keeps_last_price(self, clock, three_holders):
        sampler = SlowSampler(delay=1.0, clock=clock)
        scheduler = make_scheduler(
            clock, three_holders, sampler,
            sampler_config=SamplerConfig(timeout_seconds=0.05),
        )
        scheduler.aggregator.ingest("1.01", confidence=1.0, source="sampler")

        assert await scheduler.sample_once() is None

        health = scheduler.aggregator.health()
        assert health.degraded is True
        assert any("timed out" in issue for issue in health.issues)
        assert scheduler.aggregator.current_price().price == Decimal("1.01")
        assert sampler.get_status()["error_count"] == 1

    async def test_sampler_error_marks_degraded(self, clock, three_holders):
        scheduler = make_scheduler(clock, three_holders, BrokenSampler("broken", clock=clock))
        assert await scheduler.sample_once() is None
        health = scheduler.aggregator.health()
        assert health.degraded is True
        assert any("503" in issue for issue in health.issues)

    async def test_successful_sample_recorded(self, clock, three_holders):
        scheduler = make_scheduler(clock, three_holders, SlowSampler(delay=0, clock=clock))
        observation = await scheduler.sample_once()
        assert observation.price == Decimal("1.00")
        assert len(scheduler.aggregator) == 1

    async def test_no_sampler(self, clock, three_holders):
        scheduler = make_scheduler(clock, three_holders)
        assert await scheduler.sample_once() is None


@pytest.mark.asyncio
class TestEpochs:
    async def test_waiting_epochs_serialize(self, clock, three_holders):
        scheduler = make_scheduler(clock, three_holders, store_class=SlowLedgerStore)
        scheduler.aggregator.ingest("1.05", confidence=1.0, source="manual")

        first, second = await asyncio.gather(
            scheduler.run_epoch(wait=True),
            scheduler.run_epoch(wait=True),
        )

        assert (first.epoch, second.epoch) == (1, 2)
        assert first.current_supply == Decimal("1000000")
        # Second epoch sees the first one's result
        assert second.current_supply == Decimal("1050000")
        assert scheduler.store.total_supply() == second.new_supply

    async def test_tracked_supply_follows_ledger(self, clock, three_holders):
        scheduler = make_scheduler(clock, three_holders)
        for price in ["1.05", "0.95", "1.10", "0.80"]:
            scheduler.aggregator.ingest(price, confidence=1.0, source="manual")
            await scheduler.run_epoch()
            assert scheduler.total_supply == scheduler.store.total_supply()

    async def test_pending_config_applied_at_boundary(self, clock, three_holders):
        scheduler = make_scheduler(clock, three_holders)
        scheduler.aggregator.ingest("1.05", confidence=1.0, source="manual")
        scheduler.stage_config(StabilityConfig(max_supply_change_per_epoch=0.01))

        assert scheduler.controller.config.max_supply_change_per_epoch == 0.05
        adjustment = await scheduler.run_epoch()
        assert adjustment.amount == Decimal("10000")
        assert scheduler.pending_config is None

    async def test_noop_epoch_leaves_ledger(self, clock, three_holders):
        scheduler = make_scheduler(clock, three_holders)
        scheduler.aggregator.ingest("1.00", confidence=1.0, source="manual")
        adjustment = await scheduler.run_epoch()
        assert adjustment.action == SupplyAction.NONE
        assert adjustment.status == AdjustmentStatus.NOOP
        assert scheduler.store.transaction_count() == 0
        assert scheduler.last_snapshot.epoch == 1


@pytest.mark.asyncio
class TestLoops:
    async def test_timer_runs_epochs(self, three_holders):
        scheduler = make_scheduler(
            time.time,
            three_holders,
            SlowSampler(delay=0, clock=time.time),
            stability=StabilityConfig(rebalance_interval_seconds=0.02),
            sampler_config=SamplerConfig(update_interval_seconds=0.01),
        )
        await scheduler.start()
        assert scheduler.running is True

        await asyncio.sleep(0.2)
        await scheduler.stop()

        assert scheduler.running is False
        assert scheduler.epoch >= 2
        assert len(scheduler.aggregator) >= 2

    async def test_double_start_rejected(self, clock, three_holders):
        scheduler = make_scheduler(clock, three_holders)
        await scheduler.start()
        with pytest.raises(EngineError):
            await scheduler.start()
        await scheduler.stop()

    async def test_stop_lets_epoch_finish(self, clock, three_holders):
        scheduler = make_scheduler(clock, three_holders, store_class=SlowLedgerStore)
        scheduler.aggregator.ingest("1.05", confidence=1.0, source="manual")
        await scheduler.start()

        epoch = asyncio.create_task(scheduler.run_epoch(wait=False))
        await asyncio.sleep(0)
        assert scheduler.in_progress is True

        await scheduler.stop()
        adjustment = epoch.result()
        assert adjustment.status == AdjustmentStatus.APPLIED
        assert scheduler.store.total_supply() == Decimal("1050000")
