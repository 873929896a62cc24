"""Ledger data models: holder balances, transactions and atomic batches"""

import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Mapping, Optional

from ..decimals import ZERO


class TransactionKind(Enum):
    REBALANCE = "rebalance"
    MINT = "mint"
    BURN = "burn"
    TRANSFER = "transfer"
    RESERVE_DEPOSIT = "reserve_deposit"
    RESERVE_WITHDRAWAL = "reserve_withdrawal"


class TransactionStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class HolderBalance:
    """Balance of one ledger account"""
    account_id: str
    balance: Decimal

    def to_dict(self) -> dict:
        return {"account_id": self.account_id, "balance": str(self.balance)}


@dataclass(frozen=True)
class StablecoinTransaction:
    """
    Append-only record of a balance change.

    amount is signed: positive credits the account, negative debits it.
    epoch links rebalance transactions to their SupplyAdjustment.
    """
    account_id: str
    kind: TransactionKind
    amount: Decimal
    price_at_time: Decimal
    status: TransactionStatus = TransactionStatus.COMPLETED
    created_at: float = field(default_factory=time.time)
    epoch: Optional[int] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "kind": self.kind.value,
            "amount": str(self.amount),
            "price_at_time": str(self.price_at_time),
            "status": self.status.value,
            "created_at": self.created_at,
            "epoch": self.epoch,
        }


@dataclass
class LedgerBatch:
    """
    Pending balance writes committed as one unit.

    balances maps account id to the new absolute balance. Every account in
    balances must have at least one matching transaction.
    """
    balances: Dict[str, Decimal] = field(default_factory=dict)
    transactions: List[StablecoinTransaction] = field(default_factory=list)
    residual: Decimal = ZERO

    @property
    def is_empty(self) -> bool:
        return not self.balances and not self.transactions

    def net_change(self, previous: Mapping[str, Decimal]) -> Decimal:
        """Sum of balance deltas against a pre-batch snapshot"""
        return sum(
            (new - previous.get(account, ZERO) for account, new in self.balances.items()),
            ZERO,
        )
