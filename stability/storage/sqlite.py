"""
SQLite ledger store and audit sink.

One database file holds the four tables needed to reconstruct why supply
changed at any point in time:
    holder_balances          balance per account
    stablecoin_transactions  append-only per-account balance changes
    supply_adjustments       append-only epoch decisions
    stability_metrics        append-only per-epoch snapshots

Amounts are stored as TEXT so Decimals round-trip exactly. A ledger batch
is written inside one BEGIN IMMEDIATE transaction and rolled back on any
error.
"""

import sqlite3
import threading
import time
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Union
import logging

from ..decimals import ZERO
from ..errors import AuditWriteFailure, LedgerWriteFailure
from ..models.ledger import (
    LedgerBatch,
    StablecoinTransaction,
    TransactionKind,
    TransactionStatus,
)
from ..models.metrics import StabilityMetricsSnapshot
from ..models.supply import AdjustmentStatus, SupplyAction, SupplyAdjustment
from .base import AuditSink, LedgerStore

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS holder_balances (
    account_id  TEXT PRIMARY KEY,
    balance     TEXT NOT NULL CHECK (CAST(balance AS REAL) >= 0),
    updated_at  REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS stablecoin_transactions (
    seq            INTEGER PRIMARY KEY AUTOINCREMENT,
    id             TEXT NOT NULL UNIQUE,
    account_id     TEXT NOT NULL,
    kind           TEXT NOT NULL,
    amount         TEXT NOT NULL,
    price_at_time  TEXT NOT NULL,
    status         TEXT NOT NULL,
    epoch          INTEGER,
    created_at     REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tx_account ON stablecoin_transactions(account_id, seq);

CREATE TABLE IF NOT EXISTS supply_adjustments (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    id              TEXT NOT NULL UNIQUE,
    epoch           INTEGER NOT NULL,
    action          TEXT NOT NULL,
    amount          TEXT NOT NULL,
    reason          TEXT NOT NULL,
    target_price    TEXT NOT NULL,
    current_price   TEXT NOT NULL,
    current_supply  TEXT NOT NULL,
    new_supply      TEXT NOT NULL,
    confidence      REAL NOT NULL,
    status          TEXT NOT NULL,
    error           TEXT,
    timestamp       REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS stability_metrics (
    seq              INTEGER PRIMARY KEY AUTOINCREMENT,
    epoch            INTEGER NOT NULL,
    timestamp        REAL NOT NULL,
    total_supply     TEXT NOT NULL,
    reserve_pool     TEXT NOT NULL,
    current_price    TEXT NOT NULL,
    target_price     TEXT NOT NULL,
    deviation        TEXT NOT NULL,
    volatility       REAL NOT NULL,
    stability_score  REAL NOT NULL
);
"""


class SQLiteStore(LedgerStore, AuditSink):
    """
    Durable single-file ledger and audit trail.

    One shared connection guarded by a process lock; safe to call from the
    worker threads used by asyncio.to_thread.
    """

    def __init__(self, path: Union[str, Path] = "stability.db"):
        self._path = str(path)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            self._path,
            timeout=30.0,
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout=30000")
        if self._path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        with self._lock:
            self._conn.executescript(_SCHEMA)
        logger.info(f"SQLite store ready at {self._path}")

    @property
    def path(self) -> str:
        return self._path

    @contextmanager
    def _txn(self):
        with self._lock:
            conn = self._conn
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ============ LedgerStore ============

    def balances(self) -> Dict[str, Decimal]:
        with self._lock:
            rows = self._conn.execute("SELECT account_id, balance FROM holder_balances").fetchall()
        return {row["account_id"]: Decimal(row["balance"]) for row in rows}

    def get_balance(self, account_id: str) -> Optional[Decimal]:
        with self._lock:
            row = self._conn.execute(
                "SELECT balance FROM holder_balances WHERE account_id=?",
                (account_id,),
            ).fetchone()
        return Decimal(row["balance"]) if row else None

    def apply_batch(self, batch: LedgerBatch) -> None:
        self.validate_batch(batch)
        now = time.time()

        try:
            with self._txn() as conn:
                for account, balance in batch.balances.items():
                    self._write_balance(conn, account, balance, now)
                conn.executemany(
                    "INSERT INTO stablecoin_transactions "
                    "(id, account_id, kind, amount, price_at_time, status, epoch, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    [
                        (
                            tx.id,
                            tx.account_id,
                            tx.kind.value,
                            str(tx.amount),
                            str(tx.price_at_time),
                            tx.status.value,
                            tx.epoch,
                            tx.created_at,
                        )
                        for tx in batch.transactions
                    ],
                )
        except LedgerWriteFailure:
            raise
        except Exception as e:
            raise LedgerWriteFailure(f"Ledger batch rolled back: {e}") from e

    def _write_balance(self, conn: sqlite3.Connection, account_id: str, balance: Decimal, now: float) -> None:
        conn.execute(
            "INSERT INTO holder_balances (account_id, balance, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(account_id) DO UPDATE SET balance=excluded.balance, updated_at=excluded.updated_at",
            (account_id, str(balance), now),
        )

    def transactions_for(self, account_id: str, limit: int = 50) -> List[StablecoinTransaction]:
        if limit <= 0:
            return []
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM stablecoin_transactions WHERE account_id=? ORDER BY seq DESC LIMIT ?",
                (account_id, limit),
            ).fetchall()
        return [self._row_to_transaction(row) for row in rows]

    def transaction_count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM stablecoin_transactions").fetchone()[0]

    def total_supply(self) -> Decimal:
        with self._lock:
            rows = self._conn.execute("SELECT balance FROM holder_balances").fetchall()
        return sum((Decimal(row["balance"]) for row in rows), ZERO)

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> StablecoinTransaction:
        return StablecoinTransaction(
            id=row["id"],
            account_id=row["account_id"],
            kind=TransactionKind(row["kind"]),
            amount=Decimal(row["amount"]),
            price_at_time=Decimal(row["price_at_time"]),
            status=TransactionStatus(row["status"]),
            epoch=row["epoch"],
            created_at=row["created_at"],
        )

    # ============ AuditSink ============

    def record_adjustment(self, adjustment: SupplyAdjustment) -> None:
        try:
            with self._txn() as conn:
                self._insert_adjustment(conn, adjustment)
        except sqlite3.Error as e:
            raise AuditWriteFailure(f"Could not record adjustment {adjustment.id}: {e}") from e

    def record_snapshot(self, snapshot: StabilityMetricsSnapshot) -> None:
        try:
            with self._txn() as conn:
                self._insert_snapshot(conn, snapshot)
        except sqlite3.Error as e:
            raise AuditWriteFailure(f"Could not record metrics snapshot: {e}") from e

    def record_epoch(self, adjustment: SupplyAdjustment, snapshot: StabilityMetricsSnapshot) -> None:
        try:
            with self._txn() as conn:
                self._insert_adjustment(conn, adjustment)
                self._insert_snapshot(conn, snapshot)
        except sqlite3.Error as e:
            raise AuditWriteFailure(f"Could not record epoch {adjustment.epoch}: {e}") from e

    def _insert_adjustment(self, conn: sqlite3.Connection, adjustment: SupplyAdjustment) -> None:
        conn.execute(
            "INSERT INTO supply_adjustments "
            "(id, epoch, action, amount, reason, target_price, current_price, "
            "current_supply, new_supply, confidence, status, error, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                adjustment.id,
                adjustment.epoch,
                adjustment.action.value,
                str(adjustment.amount),
                adjustment.reason,
                str(adjustment.target_price),
                str(adjustment.current_price),
                str(adjustment.current_supply),
                str(adjustment.new_supply),
                adjustment.confidence,
                adjustment.status.value,
                adjustment.error,
                adjustment.timestamp,
            ),
        )

    def _insert_snapshot(self, conn: sqlite3.Connection, snapshot: StabilityMetricsSnapshot) -> None:
        conn.execute(
            "INSERT INTO stability_metrics "
            "(epoch, timestamp, total_supply, reserve_pool, current_price, target_price, "
            "deviation, volatility, stability_score) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                snapshot.epoch,
                snapshot.timestamp,
                str(snapshot.total_supply),
                str(snapshot.reserve_pool),
                str(snapshot.current_price),
                str(snapshot.target_price),
                str(snapshot.deviation),
                snapshot.volatility,
                snapshot.stability_score,
            ),
        )

    def supply_history(self, limit: int = 20) -> List[SupplyAdjustment]:
        if limit <= 0:
            return []
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM supply_adjustments ORDER BY seq DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            SupplyAdjustment(
                id=row["id"],
                epoch=row["epoch"],
                action=SupplyAction(row["action"]),
                amount=Decimal(row["amount"]),
                reason=row["reason"],
                target_price=Decimal(row["target_price"]),
                current_price=Decimal(row["current_price"]),
                current_supply=Decimal(row["current_supply"]),
                new_supply=Decimal(row["new_supply"]),
                confidence=row["confidence"],
                status=AdjustmentStatus(row["status"]),
                error=row["error"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]

    def snapshots(self, limit: int = 20) -> List[StabilityMetricsSnapshot]:
        if limit <= 0:
            return []
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM stability_metrics ORDER BY seq DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            StabilityMetricsSnapshot(
                epoch=row["epoch"],
                timestamp=row["timestamp"],
                total_supply=Decimal(row["total_supply"]),
                reserve_pool=Decimal(row["reserve_pool"]),
                current_price=Decimal(row["current_price"]),
                target_price=Decimal(row["target_price"]),
                deviation=Decimal(row["deviation"]),
                volatility=row["volatility"],
                stability_score=row["stability_score"],
            )
            for row in rows
        ]
