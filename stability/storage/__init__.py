"""Ledger store and audit sink backends"""

from .base import LedgerStore, AuditSink
from .memory import InMemoryLedgerStore, InMemoryAuditSink
from .sqlite import SQLiteStore

__all__ = [
    "LedgerStore",
    "AuditSink",
    "InMemoryLedgerStore",
    "InMemoryAuditSink",
    "SQLiteStore",
]
