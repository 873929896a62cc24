"""Supply adjustment data models"""

import uuid
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Optional

from ..decimals import ZERO


class SupplyAction(Enum):
    """
    Direction of a supply adjustment.

    Convention: price above target => EXPAND, price below target => CONTRACT.
    """
    EXPAND = "expand"
    CONTRACT = "contract"
    NONE = "none"


class AdjustmentStatus(Enum):
    """Outcome of an epoch's adjustment in the audit trail"""
    PENDING = "pending"    # Decided, not yet applied
    APPLIED = "applied"    # Ledger batch committed
    NOOP = "noop"          # Action NONE, ledger untouched
    FAILED = "failed"      # Ledger batch rolled back


@dataclass(frozen=True)
class SupplyAdjustment:
    """
    One epoch's supply decision.

    Attributes:
        action: EXPAND, CONTRACT or NONE
        amount: Unsigned magnitude, quantized to the ledger unit
        reason: Human-readable explanation
        target_price: Peg in force when the decision was made
        current_price: Price the decision acted on
        current_supply: Total supply before the adjustment
        new_supply: Total supply after the adjustment
        timestamp: Unix timestamp of the decision
        confidence: Confidence of the price observation
        epoch: Epoch sequence number
        status: Audit status (see AdjustmentStatus)
        error: Failure description for FAILED epochs
    """
    action: SupplyAction
    amount: Decimal
    reason: str
    target_price: Decimal
    current_price: Decimal
    current_supply: Decimal
    new_supply: Decimal
    timestamp: float
    confidence: float = 1.0
    epoch: int = 0
    status: AdjustmentStatus = AdjustmentStatus.PENDING
    error: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def no_action(
        cls,
        reason: str,
        target_price: Decimal,
        current_price: Decimal,
        current_supply: Decimal,
        timestamp: float,
        confidence: float = 1.0,
    ) -> "SupplyAdjustment":
        """Create a NONE decision that leaves supply untouched"""
        return cls(
            action=SupplyAction.NONE,
            amount=ZERO,
            reason=reason,
            target_price=target_price,
            current_price=current_price,
            current_supply=current_supply,
            new_supply=current_supply,
            timestamp=timestamp,
            confidence=confidence,
        )

    @property
    def signed_amount(self) -> Decimal:
        """Positive for expansion, negative for contraction, zero otherwise"""
        if self.action == SupplyAction.EXPAND:
            return self.amount
        if self.action == SupplyAction.CONTRACT:
            return -self.amount
        return ZERO

    @property
    def deviation(self) -> Decimal:
        """Signed fractional deviation of current price from target"""
        if self.target_price == 0:
            return ZERO
        return (self.current_price - self.target_price) / self.target_price

    def with_status(
        self,
        status: AdjustmentStatus,
        epoch: Optional[int] = None,
        error: Optional[str] = None,
    ) -> "SupplyAdjustment":
        """Return a copy stamped with an audit status"""
        return replace(
            self,
            status=status,
            epoch=self.epoch if epoch is None else epoch,
            error=error,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        return {
            "id": self.id,
            "epoch": self.epoch,
            "action": self.action.value,
            "amount": str(self.amount),
            "reason": self.reason,
            "target_price": str(self.target_price),
            "current_price": str(self.current_price),
            "current_supply": str(self.current_supply),
            "new_supply": str(self.new_supply),
            "timestamp": self.timestamp,
            "confidence": self.confidence,
            "status": self.status.value,
            "error": self.error,
        }
