"""
Configuration for the Stability Engine

Supports:
- YAML/JSON file loading
- Environment variable overrides
- Validation with sensible defaults
- Partial updates of the peg parameters (effective next epoch)
"""

from dataclasses import dataclass, field, asdict, fields, replace
from decimal import Decimal
from typing import Dict, List, Optional, Any, Union
from pathlib import Path
import math
import os
import json
import logging

import yaml
from dotenv import load_dotenv

from .decimals import DEFAULT_LEDGER_DECIMALS, to_decimal
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Load .env file if present
load_dotenv()


# ============ Sub-Configurations ============

_ORACLE_FLOAT_FIELDS = [
    'max_price_age_seconds', 'min_confidence', 'volatility_threshold',
    'stats_window_seconds', 'volatility_window_seconds', 'metrics_window_seconds',
]

_SAMPLER_FLOAT_FIELDS = [
    'update_interval_seconds', 'timeout_seconds', 'initial_price',
    'volatility', 'mean_reversion', 'base_volume', 'min_price',
]


def _non_finite(config: Any, names: List[str]) -> List[str]:
    """Errors for fields holding NaN or inf"""
    return [f"{name} must be finite" for name in names if not math.isfinite(getattr(config, name))]


@dataclass
class StabilityConfig:
    """Peg parameters read by the supply controller each epoch"""
    target_price: Decimal = Decimal("1.00")

    # Allowed fractional deviation before any supply action
    tolerance_band: float = 0.02

    # Cap on a single adjustment, as a fraction of total supply
    max_supply_change_per_epoch: float = 0.05

    # raw correction = supply * min(|deviation|, 1) * correction_gain
    correction_gain: float = 1.0

    rebalance_interval_seconds: float = 300.0

    # Minimum reserve account balance / total supply; 0 disables the guard
    reserve_ratio: float = 0.0

    def __post_init__(self):
        self.target_price = to_decimal(self.target_price)
        self.tolerance_band = float(self.tolerance_band)
        self.max_supply_change_per_epoch = float(self.max_supply_change_per_epoch)
        self.correction_gain = float(self.correction_gain)
        self.rebalance_interval_seconds = float(self.rebalance_interval_seconds)
        self.reserve_ratio = float(self.reserve_ratio)

    def validate(self) -> List[str]:
        """Validate configuration, return list of errors"""
        errors = _non_finite(self, [
            'tolerance_band', 'max_supply_change_per_epoch', 'correction_gain',
            'rebalance_interval_seconds', 'reserve_ratio',
        ])
        if errors:
            return errors
        if self.target_price <= 0:
            errors.append("target_price must be positive")
        if not 0 < self.tolerance_band <= 1:
            errors.append("tolerance_band must be in (0, 1]")
        if not 0 < self.max_supply_change_per_epoch <= 1:
            errors.append("max_supply_change_per_epoch must be in (0, 1]")
        if self.correction_gain <= 0:
            errors.append("correction_gain must be positive")
        if self.rebalance_interval_seconds <= 0:
            errors.append("rebalance_interval_seconds must be positive")
        if not 0 <= self.reserve_ratio < 1:
            errors.append("reserve_ratio must be in [0, 1)")
        return errors

    def merged(self, partial: Dict[str, Any]) -> "StabilityConfig":
        """
        Return a validated copy with the given fields replaced.

        Raises:
            ConfigurationError: on unknown fields or invalid values
        """
        known = {f.name for f in fields(self)}
        unknown = sorted(set(partial) - known)
        if unknown:
            raise ConfigurationError(f"Unknown stability config fields: {', '.join(unknown)}")

        try:
            updated = replace(self, **partial)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid stability config: {e}") from e

        errors = updated.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))
        return updated


@dataclass
class OracleConfig:
    """Price aggregator configuration"""
    # Ring buffer capacity
    history_size: int = 1000

    # Health thresholds
    max_price_age_seconds: float = 300.0
    min_confidence: float = 0.7
    volatility_threshold: float = 0.05

    # Windows
    stats_window_seconds: float = 300.0
    volatility_window_seconds: float = 3600.0
    metrics_window_seconds: float = 86400.0

    # Samples used for the realized-volatility confidence penalty
    confidence_lookback: int = 10

    def __post_init__(self):
        self.history_size = int(self.history_size)
        self.confidence_lookback = int(self.confidence_lookback)
        for name in _ORACLE_FLOAT_FIELDS:
            setattr(self, name, float(getattr(self, name)))

    def validate(self) -> List[str]:
        errors = _non_finite(self, _ORACLE_FLOAT_FIELDS)
        if errors:
            return errors
        if self.history_size <= 0:
            errors.append("history_size must be positive")
        if self.max_price_age_seconds <= 0:
            errors.append("max_price_age_seconds must be positive")
        if not 0 <= self.min_confidence <= 1:
            errors.append("min_confidence must be in [0, 1]")
        if self.volatility_threshold <= 0:
            errors.append("volatility_threshold must be positive")
        for name in ['stats_window_seconds', 'volatility_window_seconds', 'metrics_window_seconds']:
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")
        if self.confidence_lookback < 2:
            errors.append("confidence_lookback must be >= 2")
        return errors

    def merged(self, partial: Dict[str, Any]) -> "OracleConfig":
        known = {f.name for f in fields(self)}
        unknown = sorted(set(partial) - known)
        if unknown:
            raise ConfigurationError(f"Unknown oracle config fields: {', '.join(unknown)}")
        try:
            updated = replace(self, **partial)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid oracle config: {e}") from e
        errors = updated.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))
        return updated


@dataclass
class SamplerConfig:
    """Price sampler configuration"""
    kind: str = "simulated"

    update_interval_seconds: float = 30.0
    timeout_seconds: float = 5.0

    # Random walk with mean reversion
    initial_price: float = 1.0
    volatility: float = 0.001       # 0.1% per update
    mean_reversion: float = 0.02    # 2% pull toward target per update
    base_volume: float = 10_000.0
    min_price: float = 0.01

    # Fixed seed for reproducible simulations
    seed: Optional[int] = None

    def __post_init__(self):
        for name in _SAMPLER_FLOAT_FIELDS:
            setattr(self, name, float(getattr(self, name)))

    def validate(self) -> List[str]:
        errors = _non_finite(self, _SAMPLER_FLOAT_FIELDS)
        if errors:
            return errors
        if self.kind != "simulated":
            errors.append(f"unsupported sampler kind: {self.kind}")
        if self.update_interval_seconds <= 0:
            errors.append("update_interval_seconds must be positive")
        if self.timeout_seconds <= 0:
            errors.append("timeout_seconds must be positive")
        if self.initial_price <= 0:
            errors.append("initial_price must be positive")
        if self.volatility < 0:
            errors.append("volatility must be non-negative")
        if not 0 <= self.mean_reversion <= 1:
            errors.append("mean_reversion must be in [0, 1]")
        if self.min_price <= 0:
            errors.append("min_price must be positive")
        return errors


@dataclass
class StorageConfig:
    """Ledger store / audit sink configuration"""
    backend: str = "memory"  # "memory" or "sqlite"
    sqlite_path: str = field(default_factory=lambda: os.getenv("STABILITY_DB_PATH", "stability.db"))

    # Receives rounding residuals from proportional distribution
    reserve_account_id: str = "__reserve__"

    ledger_decimals: int = DEFAULT_LEDGER_DECIMALS

    def validate(self) -> List[str]:
        errors = []
        if self.backend not in ("memory", "sqlite"):
            errors.append(f"unsupported storage backend: {self.backend}")
        if self.backend == "sqlite" and not self.sqlite_path:
            errors.append("sqlite_path is required for the sqlite backend")
        if not self.reserve_account_id:
            errors.append("reserve_account_id is required")
        if not 0 <= self.ledger_decimals <= 18:
            errors.append("ledger_decimals must be in [0, 18]")
        return errors


# ============ Main Configuration ============

@dataclass
class EngineConfig:
    """Main engine configuration"""
    stability: StabilityConfig = field(default_factory=StabilityConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    sampler: SamplerConfig = field(default_factory=SamplerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    # Logging
    log_level: str = "INFO"
    log_file: str = ""

    def validate(self) -> List[str]:
        """Validate entire configuration"""
        errors = []

        errors.extend(self.stability.validate())
        errors.extend(self.oracle.validate())
        errors.extend(self.sampler.validate())
        errors.extend(self.storage.validate())

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"invalid log_level: {self.log_level}")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (for serialization)"""
        return _plain(asdict(self))


# ============ Configuration Loading ============

def _plain(value: Any) -> Any:
    """Replace Decimals with strings so YAML/JSON can encode the dict"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _apply_env_overrides(config_dict: Dict) -> Dict:
    """Apply environment variable overrides to config"""
    env_mappings = {
        "STABILITY_TARGET_PRICE": ("stability", "target_price", str),
        "STABILITY_TOLERANCE_BAND": ("stability", "tolerance_band", float),
        "STABILITY_MAX_SUPPLY_CHANGE": ("stability", "max_supply_change_per_epoch", float),
        "STABILITY_REBALANCE_INTERVAL": ("stability", "rebalance_interval_seconds", float),
        "STABILITY_RESERVE_RATIO": ("stability", "reserve_ratio", float),
        "STABILITY_STORAGE_BACKEND": ("storage", "backend", str),
        "STABILITY_DB_PATH": ("storage", "sqlite_path", str),
        "LOG_LEVEL": ("log_level", str),
    }

    for env_var, mapping in env_mappings.items():
        value = os.getenv(env_var)
        if value is None:
            continue

        *path, cast = mapping
        try:
            value = cast(value)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {env_var}: {value!r}") from e

        current = config_dict
        for key in path[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[path[-1]] = value

    return config_dict


def _dict_to_config(d: Dict) -> EngineConfig:
    """Convert dictionary to EngineConfig"""
    try:
        stability = StabilityConfig(**d.get("stability", {}))
        oracle = OracleConfig(**d.get("oracle", {}))
        sampler = SamplerConfig(**d.get("sampler", {}))
        storage = StorageConfig(**d.get("storage", {}))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    return EngineConfig(
        stability=stability,
        oracle=oracle,
        sampler=sampler,
        storage=storage,
        log_level=d.get("log_level", "INFO"),
        log_file=d.get("log_file", ""),
    )


def load_config(config_path: Optional[Union[str, Path]] = None) -> EngineConfig:
    """
    Load configuration from file or environment.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (YAML/JSON)
    3. Default values

    Args:
        config_path: Path to config file. If None, looks for:
            - STABILITY_CONFIG_PATH env var
            - ./stability.yaml
            - ./stability.json
            - ./config/stability.yaml
            - ./config/stability.json

    Returns:
        EngineConfig instance
    """
    config_dict: Dict[str, Any] = {}

    if config_path is None:
        config_path = os.getenv("STABILITY_CONFIG_PATH")

    if config_path is None:
        search_paths = [
            Path("stability.yaml"),
            Path("stability.json"),
            Path("config/stability.yaml"),
            Path("config/stability.json"),
        ]
        for path in search_paths:
            if path.exists():
                config_path = path
                break

    if config_path is not None:
        config_path = Path(config_path)
        if config_path.exists():
            logger.info(f"Loading config from {config_path}")

            with open(config_path, 'r') as f:
                if config_path.suffix in ['.yaml', '.yml']:
                    config_dict = yaml.safe_load(f) or {}
                elif config_path.suffix == '.json':
                    config_dict = json.load(f)
                else:
                    raise ConfigurationError(f"Unsupported config file format: {config_path.suffix}")
        else:
            logger.warning(f"Config file not found: {config_path}")

    config_dict = _apply_env_overrides(config_dict)

    config = _dict_to_config(config_dict)

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Config validation error: {error}")
        raise ConfigurationError(f"Configuration validation failed with {len(errors)} errors")

    return config


def save_config(config: EngineConfig, path: Union[str, Path], format: str = "yaml") -> None:
    """
    Save configuration to file.

    Args:
        config: EngineConfig to save
        path: Output file path
        format: "yaml" or "json"
    """
    path = Path(path)
    config_dict = config.to_dict()

    with open(path, 'w') as f:
        if format == "yaml":
            yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)
        elif format == "json":
            json.dump(config_dict, f, indent=2)
        else:
            raise ConfigurationError(f"Unsupported format: {format}")

    logger.info(f"Config saved to {path}")


def generate_default_config(path: Union[str, Path], format: str = "yaml") -> None:
    """Generate a default configuration file"""
    save_config(EngineConfig(), path, format)
