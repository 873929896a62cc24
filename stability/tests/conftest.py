"""Shared fixtures for stability engine tests"""

from decimal import Decimal

import pytest

from stability.config import OracleConfig, StabilityConfig
from stability.storage import InMemoryAuditSink, InMemoryLedgerStore


class FakeClock:
    """Manually advanced time source"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stability_config():
    return StabilityConfig(
        target_price=Decimal("1.00"),
        tolerance_band=0.02,
        max_supply_change_per_epoch=0.05,
    )


@pytest.fixture
def oracle_config():
    return OracleConfig()


@pytest.fixture
def three_holders():
    return {
        "alice": Decimal("600000"),
        "bob": Decimal("300000"),
        "carol": Decimal("100000"),
    }


@pytest.fixture
def store(three_holders):
    return InMemoryLedgerStore(three_holders)


@pytest.fixture
def audit_sink():
    return InMemoryAuditSink()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep host environment overrides out of config tests"""
    for var in [
        "STABILITY_TARGET_PRICE",
        "STABILITY_TOLERANCE_BAND",
        "STABILITY_MAX_SUPPLY_CHANGE",
        "STABILITY_REBALANCE_INTERVAL",
        "STABILITY_STORAGE_BACKEND",
        "STABILITY_DB_PATH",
        "STABILITY_CONFIG_PATH",
        "LOG_LEVEL",
    ]:
        monkeypatch.delenv(var, raising=False)
