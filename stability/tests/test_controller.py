"""Tests for the supply controller"""

from decimal import Decimal

import numpy as np
import pytest

from stability.config import StabilityConfig
from stability.controller import SupplyController
from stability.models import OracleHealth, PriceStats, SupplyAction


def stats_at(price, confidence=1.0):
    price = Decimal(str(price))
    return PriceStats(
        current=price,
        high=price,
        low=price,
        average=price,
        weighted_average=price,
        volatility=0.0,
        change_pct=0.0,
        confidence=confidence,
        count=1,
        window_seconds=300.0,
        timestamp=0.0,
    )


SUPPLY = Decimal("1000000")


class TestScenarios:
    def test_expand_clamped_to_max_change(self, stability_config, clock):
        controller = SupplyController(stability_config, clock=clock)
        adjustment = controller.decide(SUPPLY, stats_at("1.05"))

        assert adjustment.action == SupplyAction.EXPAND
        assert adjustment.amount == Decimal("50000")
        assert adjustment.new_supply == Decimal("1050000")
        assert adjustment.timestamp == clock()

    def test_expand_clamped_with_high_gain(self, clock):
        config = StabilityConfig(correction_gain=2.0)
        adjustment = SupplyController(config, clock=clock).decide(SUPPLY, stats_at("1.05"))
        assert adjustment.amount == Decimal("50000")
        assert "clamped" in adjustment.reason

    def test_unclamped_correction(self, stability_config):
        controller = SupplyController(stability_config)
        adjustment = controller.decide(SUPPLY, stats_at("1.03"))
        assert adjustment.action == SupplyAction.EXPAND
        assert adjustment.amount == Decimal("30000")
        assert "clamped" not in adjustment.reason

    def test_on_peg_is_none(self):
        for band in [0.0001, 0.02, 0.5, 1.0]:
            controller = SupplyController(StabilityConfig(tolerance_band=band))
            adjustment = controller.decide(SUPPLY, stats_at("1.00"))
            assert adjustment.action == SupplyAction.NONE
            assert adjustment.amount == 0
            assert adjustment.new_supply == SUPPLY

    def test_contract_below_target(self, stability_config):
        controller = SupplyController(stability_config)
        adjustment = controller.decide(SUPPLY, stats_at("0.5"))
        assert adjustment.action == SupplyAction.CONTRACT
        assert adjustment.amount == Decimal("50000")
        assert adjustment.new_supply == Decimal("950000")
        assert "below target" in adjustment.reason


class TestSignConvention:
    @pytest.mark.parametrize("price", ["1.021", "1.05", "1.5", "3.0", "100"])
    def test_above_band_expands(self, stability_config, price):
        adjustment = SupplyController(stability_config).decide(SUPPLY, stats_at(price))
        assert adjustment.action == SupplyAction.EXPAND
        assert adjustment.signed_amount > 0

    @pytest.mark.parametrize("price", ["0.979", "0.95", "0.5", "0.01"])
    def test_below_band_contracts(self, stability_config, price):
        adjustment = SupplyController(stability_config).decide(SUPPLY, stats_at(price))
        assert adjustment.action == SupplyAction.CONTRACT
        assert adjustment.signed_amount < 0

    @pytest.mark.parametrize("price", ["0.98", "0.99", "1.00", "1.01", "1.02"])
    def test_band_edges_inclusive(self, stability_config, price):
        adjustment = SupplyController(stability_config).decide(SUPPLY, stats_at(price))
        assert adjustment.action == SupplyAction.NONE


class TestProperties:
    def test_bounded_magnitude(self):
        rng = np.random.default_rng(11)
        for _ in range(300):
            config = StabilityConfig(
                tolerance_band=float(rng.uniform(0.001, 0.2)),
                max_supply_change_per_epoch=float(rng.uniform(0.001, 1.0)),
                correction_gain=float(rng.uniform(0.1, 5.0)),
            )
            supply = Decimal(str(round(float(rng.uniform(0.01, 1e9)), 8)))
            price = Decimal(str(round(float(rng.uniform(0.01, 5.0)), 6)))

            adjustment = SupplyController(config).decide(supply, stats_at(price))
            cap = supply * Decimal(str(config.max_supply_change_per_epoch))
            assert adjustment.amount <= cap
            assert adjustment.amount >= 0
            assert adjustment.new_supply >= 0

    def test_none_idempotent(self):
        rng = np.random.default_rng(12)
        for _ in range(200):
            band = float(rng.uniform(0.001, 0.3))
            config = StabilityConfig(tolerance_band=band)
            deviation = float(rng.uniform(-band, band)) * 0.999
            price = Decimal("1.00") * (1 + Decimal(str(deviation)))
            supply = Decimal(int(rng.integers(0, 10**9)))

            adjustment = SupplyController(config).decide(supply, stats_at(price))
            assert adjustment.action == SupplyAction.NONE
            assert adjustment.amount == 0

    def test_amount_quantized_to_ledger_unit(self, stability_config):
        controller = SupplyController(stability_config, ledger_decimals=2)
        adjustment = controller.decide(Decimal("333.333"), stats_at("1.03"))
        assert adjustment.amount == Decimal("10.00")
        assert adjustment.amount.as_tuple().exponent == -2

    def test_zero_supply(self, stability_config):
        adjustment = SupplyController(stability_config).decide(Decimal(0), stats_at("1.50"))
        assert adjustment.action == SupplyAction.NONE
        assert "No supply" in adjustment.reason


class TestOracleGating:
    def test_unhealthy_oracle_skips(self, stability_config):
        health = OracleHealth(
            healthy=False,
            last_update=0.0,
            confidence=0.4,
            issues=["Low price confidence (0.40 < 0.70)"],
        )
        adjustment = SupplyController(stability_config).decide(SUPPLY, stats_at("1.50", 0.4), health)
        assert adjustment.action == SupplyAction.NONE
        assert "Oracle degraded" in adjustment.reason
        assert "Low price confidence" in adjustment.reason

    def test_healthy_with_issues_still_acts(self, stability_config):
        health = OracleHealth(
            healthy=True,
            last_update=0.0,
            confidence=1.0,
            issues=["High volatility detected (8.00%)"],
        )
        adjustment = SupplyController(stability_config).decide(SUPPLY, stats_at("1.10"), health)
        assert adjustment.action == SupplyAction.EXPAND


class TestReserveRatio:
    def test_disabled_by_default(self, stability_config):
        adjustment = SupplyController(stability_config).decide(
            SUPPLY, stats_at("1.05"), reserve_balance=Decimal("0")
        )
        assert adjustment.amount == Decimal("50000")
        assert "reserve ratio" not in adjustment.reason

    def test_expansion_limited_to_reserve_headroom(self):
        config = StabilityConfig(reserve_ratio=0.1)
        # 102,000 of reserve backs at most 1,020,000 of supply
        adjustment = SupplyController(config).decide(
            SUPPLY, stats_at("1.05"), reserve_balance=Decimal("102000")
        )
        assert adjustment.action == SupplyAction.EXPAND
        assert adjustment.amount == Decimal("20000")
        assert adjustment.new_supply == Decimal("1020000")
        assert adjustment.reason.endswith("(limited by reserve ratio)")
        assert "clamped" not in adjustment.reason

    def test_expansion_within_headroom_untouched(self):
        config = StabilityConfig(reserve_ratio=0.1)
        adjustment = SupplyController(config).decide(
            SUPPLY, stats_at("1.05"), reserve_balance=Decimal("200000")
        )
        assert adjustment.amount == Decimal("50000")
        assert "reserve ratio" not in adjustment.reason

    def test_expansion_blocked_without_headroom(self):
        config = StabilityConfig(reserve_ratio=0.2)
        adjustment = SupplyController(config).decide(
            SUPPLY, stats_at("1.05"), reserve_balance=Decimal("100000")
        )
        assert adjustment.action == SupplyAction.NONE
        assert adjustment.new_supply == SUPPLY
        assert "expansion blocked" in adjustment.reason

    def test_contraction_never_limited(self):
        config = StabilityConfig(reserve_ratio=0.5)
        adjustment = SupplyController(config).decide(
            SUPPLY, stats_at("0.90"), reserve_balance=Decimal("0")
        )
        assert adjustment.action == SupplyAction.CONTRACT
        assert adjustment.amount == Decimal("50000")
        assert "reserve ratio" not in adjustment.reason
