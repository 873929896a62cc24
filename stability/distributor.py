"""
Ledger Distributor

Spreads a supply adjustment across every holder in proportion to their
balance and commits the result as one atomic ledger batch.

Rounding: each holder's share is quantized to the ledger unit with
ROUND_HALF_EVEN. The difference between the requested amount and the sum
of quantized shares goes to the reserve account. A negative residual is
taken from the reserve first, then from the largest holders, so no
balance is ever driven below zero and
    sum(new balances) - sum(old balances) == adjustment.signed_amount
holds exactly.
"""

import time
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional
import logging

from .decimals import ZERO, DEFAULT_LEDGER_DECIMALS, quantize
from .errors import LedgerError
from .models.ledger import (
    LedgerBatch,
    StablecoinTransaction,
    TransactionKind,
    TransactionStatus,
)
from .models.supply import SupplyAction, SupplyAdjustment
from .storage.base import LedgerStore

logger = logging.getLogger(__name__)


class LedgerDistributor:
    """
    Applies supply adjustments proportionally to holder balances.
    """

    def __init__(
        self,
        store: LedgerStore,
        reserve_account_id: str = "__reserve__",
        ledger_decimals: int = DEFAULT_LEDGER_DECIMALS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.reserve_account_id = reserve_account_id
        self.ledger_decimals = ledger_decimals
        self.clock = clock

    def plan(
        self,
        adjustment: SupplyAdjustment,
        snapshot: Mapping[str, Decimal],
        epoch: Optional[int] = None,
    ) -> LedgerBatch:
        """
        Compute the balance writes for an adjustment without touching the store.

        Args:
            adjustment: Decided adjustment
            snapshot: Pre-epoch balances for every account (reserve included)
            epoch: Epoch number stamped on the transactions

        Returns:
            LedgerBatch (empty for NONE adjustments)
        """
        if adjustment.action == SupplyAction.NONE or adjustment.amount == 0:
            return LedgerBatch()

        reserve = self.reserve_account_id
        eligible = {
            account: balance
            for account, balance in snapshot.items()
            if account != reserve and balance > 0
        }
        total_eligible = sum(eligible.values(), ZERO)
        target = adjustment.signed_amount

        deltas: Dict[str, Decimal] = {}
        if total_eligible > 0:
            for account in sorted(eligible):
                balance = eligible[account]
                delta = quantize(target * balance / total_eligible, self.ledger_decimals)
                if balance + delta < 0:
                    delta = -balance
                deltas[account] = delta

        residual = target - sum(deltas.values(), ZERO)
        reserve_balance = snapshot.get(reserve, ZERO)
        reserve_delta = ZERO

        if residual > 0:
            reserve_delta = residual
        elif residual < 0:
            shortfall = -residual
            taken = min(shortfall, reserve_balance)
            reserve_delta = -taken
            remaining = shortfall - taken

            # Largest post-adjustment balances absorb what the reserve cannot
            by_size = sorted(deltas, key=lambda a: (-(eligible[a] + deltas[a]), a))
            for account in by_size:
                if remaining <= 0:
                    break
                cut = min(remaining, eligible[account] + deltas[account])
                deltas[account] -= cut
                remaining -= cut

            if remaining > 0:
                raise LedgerError(
                    f"Adjustment of {adjustment.amount} exceeds distributable supply "
                    f"(short by {remaining})"
                )

        if reserve_delta != 0:
            logger.debug(f"Rounding residual {reserve_delta} assigned to {reserve}")

        return self._build_batch(adjustment, snapshot, deltas, reserve_delta, epoch)

    def apply(
        self,
        adjustment: SupplyAdjustment,
        snapshot: Mapping[str, Decimal],
        epoch: Optional[int] = None,
    ) -> List[StablecoinTransaction]:
        """
        Plan and commit an adjustment as one atomic batch.

        Raises:
            LedgerWriteFailure: if the store rejects the batch (nothing is written)
        """
        batch = self.plan(adjustment, snapshot, epoch)
        if batch.is_empty:
            return []

        self.store.apply_batch(batch)
        logger.info(
            f"Distributed {adjustment.action.value} of {adjustment.amount} across "
            f"{len(batch.transactions)} accounts (residual {batch.residual})"
        )
        return batch.transactions

    def _build_batch(
        self,
        adjustment: SupplyAdjustment,
        snapshot: Mapping[str, Decimal],
        deltas: Dict[str, Decimal],
        reserve_delta: Decimal,
        epoch: Optional[int],
    ) -> LedgerBatch:
        now = self.clock()
        batch = LedgerBatch(residual=reserve_delta)

        touched = {account: delta for account, delta in deltas.items() if delta != 0}
        if reserve_delta != 0:
            touched[self.reserve_account_id] = reserve_delta

        for account, delta in touched.items():
            new_balance = snapshot.get(account, ZERO) + delta
            batch.balances[account] = new_balance
            batch.transactions.append(StablecoinTransaction(
                account_id=account,
                kind=TransactionKind.REBALANCE,
                amount=delta,
                price_at_time=adjustment.current_price,
                status=TransactionStatus.COMPLETED,
                created_at=now,
                epoch=epoch,
            ))

        return batch
