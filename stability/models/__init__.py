"""Data models for the stability engine"""

from .price import PriceObservation, PriceStats, OracleHealth
from .supply import SupplyAction, AdjustmentStatus, SupplyAdjustment
from .ledger import (
    HolderBalance,
    TransactionKind,
    TransactionStatus,
    StablecoinTransaction,
    LedgerBatch,
)
from .metrics import StabilityMetricsSnapshot, compute_stability_score

__all__ = [
    "PriceObservation",
    "PriceStats",
    "OracleHealth",
    "SupplyAction",
    "AdjustmentStatus",
    "SupplyAdjustment",
    "HolderBalance",
    "TransactionKind",
    "TransactionStatus",
    "StablecoinTransaction",
    "LedgerBatch",
    "StabilityMetricsSnapshot",
    "compute_stability_score",
]
