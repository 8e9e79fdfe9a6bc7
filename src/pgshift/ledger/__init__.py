"""
Operation ledger for pgshift.
"""

from .model import (
    TERMINAL_STATUSES,
    ErrorSummary,
    EventType,
    OperationEvent,
    OperationRecord,
    OperationStatus,
    OperationType,
    PerformanceSummary,
    TargetKind,
)
from .store import InMemoryLedgerStore, LedgerStore, PostgresLedgerStore
from .ledger import OperationLedger
from .schema import LedgerSchema

__all__ = [
    "TERMINAL_STATUSES",
    "ErrorSummary",
    "EventType",
    "OperationEvent",
    "OperationRecord",
    "OperationStatus",
    "OperationType",
    "PerformanceSummary",
    "TargetKind",
    "InMemoryLedgerStore",
    "LedgerStore",
    "PostgresLedgerStore",
    "OperationLedger",
    "LedgerSchema",
]
