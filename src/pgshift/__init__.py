"""
pgshift: declarative PostgreSQL DDL synthesis and online table evolution.

pgshift renders table descriptors into PostgreSQL DDL and changes live
tables (moves, migrations, column removal, subpartitioning) through
resumable workflows recorded in a durable operation ledger.
"""

__version__ = "0.1.0"
__author__ = "pgshift Contributors"

from .config import PgshiftConfig
from .exceptions import (
    ConfigurationError,
    DatabaseError,
    LedgerError,
    PgshiftError,
    SynthesisError,
    ValidationError,
    WorkflowError,
)

__all__ = [
    "__version__",
    "PgshiftConfig",
    "PgshiftError",
    "ConfigurationError",
    "DatabaseError",
    "LedgerError",
    "SynthesisError",
    "ValidationError",
    "WorkflowError",
]
