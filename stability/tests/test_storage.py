"""Tests for ledger stores and audit sinks"""

import sqlite3
from decimal import Decimal

import pytest

from stability.errors import AuditWriteFailure, LedgerWriteFailure
from stability.models import (
    AdjustmentStatus,
    LedgerBatch,
    StabilityMetricsSnapshot,
    StablecoinTransaction,
    SupplyAction,
    SupplyAdjustment,
    TransactionKind,
)
from stability.storage import InMemoryAuditSink, InMemoryLedgerStore, SQLiteStore


class FlakyMemoryStore(InMemoryLedgerStore):
    """Fails once fail_after balance writes have gone through"""

    fail_after = None

    def _write_balance(self, staged, account_id, balance):
        if self.fail_after is not None:
            if self.fail_after == 0:
                raise OSError("disk full")
            self.fail_after -= 1
        super()._write_balance(staged, account_id, balance)


class FlakySQLiteStore(SQLiteStore):
    """Fails once fail_after balance writes have gone through"""

    fail_after = None

    def _write_balance(self, conn, account_id, balance, now):
        if self.fail_after is not None:
            if self.fail_after == 0:
                raise OSError("disk full")
            self.fail_after -= 1
        super()._write_balance(conn, account_id, balance, now)


def seeded_batch(balances, kind=TransactionKind.MINT):
    return LedgerBatch(
        balances={k: Decimal(v) for k, v in balances.items()},
        transactions=[
            StablecoinTransaction(
                account_id=k,
                kind=kind,
                amount=Decimal(v),
                price_at_time=Decimal("1.00"),
            )
            for k, v in balances.items()
        ],
    )


@pytest.fixture(params=["memory", "sqlite"])
def ledger(request, tmp_path):
    if request.param == "memory":
        store = InMemoryLedgerStore()
    else:
        store = SQLiteStore(tmp_path / "ledger.db")
    yield store
    store.close()


class TestLedgerStore:
    def test_apply_and_read(self, ledger):
        ledger.apply_batch(seeded_batch({"alice": "600000", "bob": "300000"}))
        assert ledger.get_balance("alice") == Decimal("600000")
        assert ledger.get_balance("nobody") is None
        assert ledger.total_supply() == Decimal("900000")
        assert ledger.transaction_count() == 2

    def test_holder(self, ledger):
        ledger.apply_batch(seeded_batch({"alice": "12.5"}))
        holder = ledger.holder("alice")
        assert holder.account_id == "alice"
        assert holder.balance == Decimal("12.5")
        assert ledger.holder("nobody") is None

    def test_decimal_precision_preserved(self, ledger):
        ledger.apply_batch(seeded_batch({"alice": "0.00000001"}))
        assert ledger.get_balance("alice") == Decimal("0.00000001")

    def test_transactions_newest_first(self, ledger):
        for amount in ["1", "2", "3"]:
            ledger.apply_batch(seeded_batch({"alice": amount}))
        txs = ledger.transactions_for("alice", limit=2)
        assert [tx.amount for tx in txs] == [Decimal("3"), Decimal("2")]
        assert txs[0].kind == TransactionKind.MINT

    def test_rejects_negative_balance(self, ledger):
        with pytest.raises(LedgerWriteFailure):
            ledger.apply_batch(seeded_batch({"alice": "-1"}))
        assert ledger.transaction_count() == 0

    def test_rejects_balance_without_transaction(self, ledger):
        batch = LedgerBatch(balances={"alice": Decimal("5")})
        with pytest.raises(LedgerWriteFailure):
            ledger.apply_batch(batch)


class TestAtomicity:
    def test_memory_rollback(self):
        store = FlakyMemoryStore({"alice": "100", "bob": "100"})
        store.fail_after = 1
        with pytest.raises(LedgerWriteFailure):
            store.apply_batch(seeded_batch({"alice": "110", "bob": "110"}, TransactionKind.REBALANCE))

        assert store.get_balance("alice") == Decimal("100")
        assert store.get_balance("bob") == Decimal("100")
        assert store.transaction_count() == 0

    def test_sqlite_rollback(self, tmp_path):
        store = FlakySQLiteStore(tmp_path / "ledger.db")
        store.apply_batch(seeded_batch({"alice": "100", "bob": "100"}))

        store.fail_after = 1
        with pytest.raises(LedgerWriteFailure):
            store.apply_batch(seeded_batch({"alice": "110", "bob": "110"}, TransactionKind.REBALANCE))

        assert store.get_balance("alice") == Decimal("100")
        assert store.get_balance("bob") == Decimal("100")
        assert store.transaction_count() == 2

        # Store is usable after rollback
        store.fail_after = None
        store.apply_batch(seeded_batch({"alice": "110", "bob": "110"}, TransactionKind.REBALANCE))
        assert store.total_supply() == Decimal("220")
        store.close()

    def test_sqlite_persists_across_connections(self, tmp_path):
        path = tmp_path / "ledger.db"
        store = SQLiteStore(path)
        store.apply_batch(seeded_batch({"alice": "42"}))
        store.close()

        reopened = SQLiteStore(path)
        assert reopened.get_balance("alice") == Decimal("42")
        assert reopened.transaction_count() == 1
        reopened.close()


def make_adjustment(epoch, status=AdjustmentStatus.APPLIED):
    return SupplyAdjustment(
        action=SupplyAction.EXPAND,
        amount=Decimal("50000"),
        reason="Price 1.0500 above target 1.00, expanding supply",
        target_price=Decimal("1.00"),
        current_price=Decimal("1.05"),
        current_supply=Decimal("1000000"),
        new_supply=Decimal("1050000"),
        timestamp=1_700_000_000.0 + epoch,
        epoch=epoch,
        status=status,
    )


def make_snapshot(epoch):
    return StabilityMetricsSnapshot(
        total_supply=Decimal("1050000"),
        reserve_pool=Decimal("0"),
        current_price=Decimal("1.05"),
        target_price=Decimal("1.00"),
        deviation=Decimal("0.05"),
        volatility=0.01,
        stability_score=45.0,
        epoch=epoch,
        timestamp=1_700_000_000.0 + epoch,
    )


@pytest.fixture(params=["memory", "sqlite"])
def sink(request, tmp_path):
    if request.param == "memory":
        audit = InMemoryAuditSink()
    else:
        audit = SQLiteStore(tmp_path / "audit.db")
    yield audit
    audit.close()


class TestAuditSink:
    def test_adjustment_round_trip(self, sink):
        original = make_adjustment(1)
        sink.record_adjustment(original)
        (loaded,) = sink.supply_history(limit=5)
        assert loaded == original

    def test_history_newest_first_and_limited(self, sink):
        for epoch in range(1, 6):
            sink.record_adjustment(make_adjustment(epoch))
        history = sink.supply_history(limit=3)
        assert [a.epoch for a in history] == [5, 4, 3]

    def test_failed_status_recorded(self, sink):
        failed = make_adjustment(1, AdjustmentStatus.FAILED).with_status(
            AdjustmentStatus.FAILED, error="disk full"
        )
        sink.record_adjustment(failed)
        (loaded,) = sink.supply_history()
        assert loaded.status == AdjustmentStatus.FAILED
        assert loaded.error == "disk full"

    def test_snapshots(self, sink):
        assert sink.latest_snapshot() is None
        for epoch in range(1, 4):
            sink.record_snapshot(make_snapshot(epoch))
        assert sink.latest_snapshot().epoch == 3
        assert [s.epoch for s in sink.snapshots(limit=2)] == [3, 2]
        assert sink.latest_snapshot() == make_snapshot(3)

    def test_epoch_pair_recorded_together(self, sink):
        sink.record_epoch(make_adjustment(1), make_snapshot(1))
        assert [a.epoch for a in sink.supply_history()] == [1]
        assert [s.epoch for s in sink.snapshots()] == [1]


class SnapshotFailingSink(InMemoryAuditSink):
    def record_snapshot(self, snapshot):
        raise AuditWriteFailure("metrics table unavailable")


class SnapshotFailingSQLiteStore(SQLiteStore):
    def _insert_snapshot(self, conn, snapshot):
        raise sqlite3.OperationalError("disk I/O error")


class TestEpochRecordAtomicity:
    def test_memory_keeps_neither(self):
        sink = SnapshotFailingSink()
        with pytest.raises(AuditWriteFailure):
            sink.record_epoch(make_adjustment(2), make_snapshot(2))
        assert sink.supply_history() == []
        assert sink.snapshots() == []

    def test_sqlite_rolls_back_adjustment(self, tmp_path):
        store = SnapshotFailingSQLiteStore(tmp_path / "audit.db")
        with pytest.raises(AuditWriteFailure):
            store.record_epoch(make_adjustment(1), make_snapshot(1))
        assert store.supply_history() == []
        assert store.snapshots() == []
        store.close()

    def test_sqlite_usable_after_rollback(self, tmp_path):
        path = tmp_path / "audit.db"
        failing = SnapshotFailingSQLiteStore(path)
        with pytest.raises(AuditWriteFailure):
            failing.record_epoch(make_adjustment(1), make_snapshot(1))
        failing.close()

        store = SQLiteStore(path)
        store.record_epoch(make_adjustment(1), make_snapshot(1))
        assert len(store.supply_history()) == len(store.snapshots()) == 1
        store.close()
