"""
Storage interfaces for the stability engine.

LedgerStore owns holder balances and their transactions; AuditSink owns
the append-only supply-adjustment and metrics-snapshot records. Both are
injected into the engine so tests can run without a database.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, List, Optional

from ..decimals import ZERO
from ..errors import LedgerWriteFailure
from ..models.ledger import HolderBalance, LedgerBatch, StablecoinTransaction
from ..models.metrics import StabilityMetricsSnapshot
from ..models.supply import SupplyAdjustment


class LedgerStore(ABC):
    """Holder balances keyed by account id, plus their transaction log"""

    @abstractmethod
    def balances(self) -> Dict[str, Decimal]:
        """Snapshot of every account balance"""
        raise NotImplementedError

    @abstractmethod
    def get_balance(self, account_id: str) -> Optional[Decimal]:
        """Balance of one account, or None if unknown"""
        raise NotImplementedError

    @abstractmethod
    def apply_batch(self, batch: LedgerBatch) -> None:
        """
        Commit all balance writes and transactions in the batch, or none.

        Raises:
            LedgerWriteFailure: if the batch cannot be committed
        """
        raise NotImplementedError

    @abstractmethod
    def transactions_for(self, account_id: str, limit: int = 50) -> List[StablecoinTransaction]:
        """Most recent transactions for an account, newest first"""
        raise NotImplementedError

    @abstractmethod
    def transaction_count(self) -> int:
        raise NotImplementedError

    def total_supply(self) -> Decimal:
        """Sum of all balances (O(n) scan)"""
        return sum(self.balances().values(), ZERO)

    def holder(self, account_id: str) -> Optional[HolderBalance]:
        balance = self.get_balance(account_id)
        if balance is None:
            return None
        return HolderBalance(account_id=account_id, balance=balance)

    def close(self) -> None:
        pass

    @staticmethod
    def validate_batch(batch: LedgerBatch) -> None:
        """Reject batches that would break ledger invariants"""
        negative = [a for a, b in batch.balances.items() if b < 0]
        if negative:
            raise LedgerWriteFailure(f"Negative balance for accounts: {', '.join(sorted(negative))}")

        recorded = {tx.account_id for tx in batch.transactions}
        missing = sorted(set(batch.balances) - recorded)
        if missing:
            raise LedgerWriteFailure(f"Balance change without transaction for: {', '.join(missing)}")


class AuditSink(ABC):
    """Append-only record of supply adjustments and metrics snapshots"""

    @abstractmethod
    def record_adjustment(self, adjustment: SupplyAdjustment) -> None:
        raise NotImplementedError

    @abstractmethod
    def record_snapshot(self, snapshot: StabilityMetricsSnapshot) -> None:
        raise NotImplementedError

    @abstractmethod
    def record_epoch(self, adjustment: SupplyAdjustment, snapshot: StabilityMetricsSnapshot) -> None:
        """
        Record an epoch's adjustment and its metrics snapshot together.

        Readers never see one without the other.

        Raises:
            AuditWriteFailure: if the pair cannot be persisted; neither is kept
        """
        raise NotImplementedError

    @abstractmethod
    def supply_history(self, limit: int = 20) -> List[SupplyAdjustment]:
        """Most recent adjustments, newest first"""
        raise NotImplementedError

    @abstractmethod
    def snapshots(self, limit: int = 20) -> List[StabilityMetricsSnapshot]:
        """Most recent metrics snapshots, newest first"""
        raise NotImplementedError

    def latest_snapshot(self) -> Optional[StabilityMetricsSnapshot]:
        latest = self.snapshots(limit=1)
        return latest[0] if latest else None

    def close(self) -> None:
        pass
