"""
Crowds Token Stability Engine

Algorithmic stablecoin controller: aggregates confidence-weighted price
samples, decides per-epoch supply expansion or contraction, and applies
it pro rata across holder balances as one atomic ledger batch with a
full audit trail.
"""

__version__ = "1.0.0"

from .aggregator import PriceAggregator
from .config import EngineConfig, StabilityConfig, OracleConfig, load_config
from .controller import SupplyController
from .distributor import LedgerDistributor
from .errors import (
    StabilityError,
    ConfigurationError,
    LedgerWriteFailure,
    ConcurrentRebalanceRejected,
    ReserveRatioViolation,
)
from .models import (
    PriceObservation,
    PriceStats,
    OracleHealth,
    SupplyAction,
    SupplyAdjustment,
    AdjustmentStatus,
    HolderBalance,
    StablecoinTransaction,
    StabilityMetricsSnapshot,
)
from .scheduler import RebalanceScheduler
from .service import StabilityService

__all__ = [
    # Engine
    "StabilityService",
    "RebalanceScheduler",
    "PriceAggregator",
    "SupplyController",
    "LedgerDistributor",
    # Config
    "EngineConfig",
    "StabilityConfig",
    "OracleConfig",
    "load_config",
    # Errors
    "StabilityError",
    "ConfigurationError",
    "LedgerWriteFailure",
    "ConcurrentRebalanceRejected",
    "ReserveRatioViolation",
    # Models
    "PriceObservation",
    "PriceStats",
    "OracleHealth",
    "SupplyAction",
    "SupplyAdjustment",
    "AdjustmentStatus",
    "HolderBalance",
    "StablecoinTransaction",
    "StabilityMetricsSnapshot",
]
