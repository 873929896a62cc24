"""
In-memory ledger store and audit sink (tests / dev).

Batches are staged on a copy of the balance map and swapped in under one
lock, so readers see either the pre-batch or the post-batch state.
"""

import threading
from decimal import Decimal
from typing import Dict, List, Mapping, Optional

from ..decimals import to_decimal
from ..errors import LedgerWriteFailure
from ..models.ledger import LedgerBatch, StablecoinTransaction
from ..models.metrics import StabilityMetricsSnapshot
from ..models.supply import SupplyAdjustment
from .base import AuditSink, LedgerStore


class InMemoryLedgerStore(LedgerStore):
    def __init__(self, initial_balances: Optional[Mapping[str, object]] = None):
        self._balances: Dict[str, Decimal] = {
            account: to_decimal(balance)
            for account, balance in (initial_balances or {}).items()
        }
        self._transactions: List[StablecoinTransaction] = []
        self._by_account: Dict[str, List[StablecoinTransaction]] = {}
        self._lock = threading.RLock()

    def balances(self) -> Dict[str, Decimal]:
        with self._lock:
            return dict(self._balances)

    def get_balance(self, account_id: str) -> Optional[Decimal]:
        with self._lock:
            return self._balances.get(account_id)

    def apply_batch(self, batch: LedgerBatch) -> None:
        self.validate_batch(batch)

        with self._lock:
            staged = dict(self._balances)
            try:
                for account, balance in batch.balances.items():
                    self._write_balance(staged, account, balance)
            except LedgerWriteFailure:
                raise
            except Exception as e:
                raise LedgerWriteFailure(f"Ledger batch failed: {e}") from e

            self._balances = staged
            self._transactions.extend(batch.transactions)
            for tx in batch.transactions:
                self._by_account.setdefault(tx.account_id, []).append(tx)

    def _write_balance(self, staged: Dict[str, Decimal], account_id: str, balance: Decimal) -> None:
        staged[account_id] = balance

    def transactions_for(self, account_id: str, limit: int = 50) -> List[StablecoinTransaction]:
        with self._lock:
            history = self._by_account.get(account_id, [])
            return list(reversed(history[-limit:])) if limit > 0 else []

    def transaction_count(self) -> int:
        with self._lock:
            return len(self._transactions)


class InMemoryAuditSink(AuditSink):
    def __init__(self):
        self._adjustments: List[SupplyAdjustment] = []
        self._snapshots: List[StabilityMetricsSnapshot] = []
        self._lock = threading.RLock()

    def record_adjustment(self, adjustment: SupplyAdjustment) -> None:
        with self._lock:
            self._adjustments.append(adjustment)

    def record_snapshot(self, snapshot: StabilityMetricsSnapshot) -> None:
        with self._lock:
            self._snapshots.append(snapshot)

    def record_epoch(self, adjustment: SupplyAdjustment, snapshot: StabilityMetricsSnapshot) -> None:
        with self._lock:
            self.record_adjustment(adjustment)
            try:
                self.record_snapshot(snapshot)
            except Exception:
                self._adjustments.remove(adjustment)
                raise

    def supply_history(self, limit: int = 20) -> List[SupplyAdjustment]:
        with self._lock:
            return list(reversed(self._adjustments[-limit:])) if limit > 0 else []

    def snapshots(self, limit: int = 20) -> List[StabilityMetricsSnapshot]:
        with self._lock:
            return list(reversed(self._snapshots[-limit:])) if limit > 0 else []
