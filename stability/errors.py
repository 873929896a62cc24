"""
Exceptions for the stability engine.

Oracle degradation is not an exception: it is reported through
OracleHealth and handled by the controller.
"""


class StabilityError(Exception):
    """Base exception for stability engine errors"""
    pass


class ConfigurationError(StabilityError, ValueError):
    """Raised when a configuration value or manual input is invalid"""
    pass


class InvalidObservation(StabilityError, ValueError):
    """Raised when a price observation fails basic validation"""
    pass


class SamplerError(StabilityError):
    """Raised when a price sampler cannot produce an observation"""
    pass


class LedgerError(StabilityError):
    """Base exception for ledger store errors"""
    pass


class LedgerWriteFailure(LedgerError):
    """Raised when an atomic ledger batch fails to commit"""
    pass


class InsufficientBalance(LedgerError):
    """Raised when a burn or transfer exceeds the account balance"""
    pass


class EngineError(StabilityError):
    """Base exception for scheduler/service errors"""
    pass


class ConcurrentRebalanceRejected(EngineError):
    """Raised when a manual rebalance is requested while one is in flight"""
    retryable = True


class AuditWriteFailure(StabilityError):
    """Raised when an audit record cannot be persisted"""
    pass


class ReserveRatioViolation(LedgerError):
    """Raised when a reserve withdrawal would leave the pool below the minimum ratio"""
    pass
