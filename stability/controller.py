"""
Supply Controller

Turns the oracle's view of the price into a supply decision for one epoch.

Convention:
    deviation = (current - target) / target
    deviation > +band  => EXPAND   (token overvalued, mint pro rata)
    deviation < -band  => CONTRACT (token undervalued, burn pro rata)
    otherwise          => NONE

Magnitude:
    raw = supply * min(|deviation|, 1) * correction_gain
    amount = min(raw, supply * max_supply_change_per_epoch)

Reserve ratio:
    With reserve_ratio > 0, supply may not grow past reserve / reserve_ratio.
    Expansions that would cross that ceiling are cut to the headroom. A
    contraction only raises the ratio and is never limited.
"""

import time
from decimal import Decimal, ROUND_DOWN
from typing import Callable, Optional
import logging

from .config import StabilityConfig
from .decimals import ZERO, ONE, DEFAULT_LEDGER_DECIMALS, ledger_unit, quantize, to_decimal
from .models.price import PriceStats, OracleHealth
from .models.supply import SupplyAction, SupplyAdjustment

logger = logging.getLogger(__name__)


class SupplyController:
    """
    Decides whether, and by how much, to expand or contract supply.

    Pure with respect to the ledger: decide() only reads its inputs and the
    current StabilityConfig.
    """

    def __init__(
        self,
        config: Optional[StabilityConfig] = None,
        ledger_decimals: int = DEFAULT_LEDGER_DECIMALS,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or StabilityConfig()
        self.ledger_decimals = ledger_decimals
        self.clock = clock

    def decide(
        self,
        current_total_supply: Decimal,
        price_stats: PriceStats,
        health: Optional[OracleHealth] = None,
        reserve_balance: Optional[Decimal] = None,
    ) -> SupplyAdjustment:
        """
        Compute this epoch's adjustment.

        Args:
            current_total_supply: Sum of all ledger balances
            price_stats: Oracle statistics; acts on price_stats.current
            health: Oracle health; an unhealthy oracle yields NONE
            reserve_balance: Reserve account balance, used by the
                             reserve ratio guard when reserve_ratio > 0

        Returns:
            SupplyAdjustment with status PENDING
        """
        config = self.config
        target = config.target_price
        current = price_stats.current
        supply = to_decimal(current_total_supply)
        now = self.clock()

        def no_action(reason: str) -> SupplyAdjustment:
            return SupplyAdjustment.no_action(
                reason=reason,
                target_price=target,
                current_price=current,
                current_supply=supply,
                timestamp=now,
                confidence=price_stats.confidence,
            )

        if supply <= 0:
            return no_action("No supply to adjust")

        if health is not None and not health.healthy:
            reason = "Oracle degraded, skipping adjustment: " + "; ".join(health.issues)
            logger.warning(reason)
            return no_action(reason)

        deviation = (current - target) / target
        band = to_decimal(config.tolerance_band)

        if abs(deviation) <= band:
            return no_action("Price within tolerance band")

        raw_amount = supply * min(abs(deviation), ONE) * to_decimal(config.correction_gain)
        cap = supply * to_decimal(config.max_supply_change_per_epoch)

        clamped = raw_amount > cap
        amount = quantize(min(raw_amount, cap), self.ledger_decimals)
        if amount > cap:
            # Half-even rounding must not push the amount past the cap
            amount = cap.quantize(ledger_unit(self.ledger_decimals), rounding=ROUND_DOWN)

        if amount <= 0:
            return no_action("Correction smaller than one ledger unit")

        if deviation > 0:
            action = SupplyAction.EXPAND
            reason = f"Price {current:.4f} above target {target}, expanding supply"
            ceiling = self._reserve_ceiling(reserve_balance)
            if ceiling is not None and supply + amount > ceiling:
                headroom = max(ZERO, ceiling - supply)
                if headroom <= 0:
                    return no_action(
                        f"Price {current:.4f} above target {target}, expansion blocked: "
                        f"reserve {reserve_balance} backs at most {ceiling} at ratio "
                        f"{config.reserve_ratio:.2%}"
                    )
                amount = headroom
                clamped = False
                reason += " (limited by reserve ratio)"
            new_supply = supply + amount
        else:
            action = SupplyAction.CONTRACT
            amount = min(amount, supply)
            new_supply = max(ZERO, supply - amount)
            reason = f"Price {current:.4f} below target {target}, contracting supply"

        if clamped:
            reason += f" (clamped to {config.max_supply_change_per_epoch:.2%} of supply)"

        return SupplyAdjustment(
            action=action,
            amount=amount,
            reason=reason,
            target_price=target,
            current_price=current,
            current_supply=supply,
            new_supply=new_supply,
            timestamp=now,
            confidence=price_stats.confidence,
        )

    def _reserve_ceiling(self, reserve_balance: Optional[Decimal]) -> Optional[Decimal]:
        """Largest supply the reserve backs at the configured ratio, or None if unguarded"""
        ratio = to_decimal(self.config.reserve_ratio)
        if ratio <= 0 or reserve_balance is None:
            return None
        ceiling = to_decimal(reserve_balance) / ratio
        return ceiling.quantize(ledger_unit(self.ledger_decimals), rounding=ROUND_DOWN)
