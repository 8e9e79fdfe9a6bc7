"""
Database integration package for pgshift.

This package provides:
- Async PostgreSQL connection pooling
- Schema introspection and table reflection
- Data-plane operations used by evolution workflows
- Script execution with syntax validation
"""

from .connection import ConnectionConfig, ConnectionPool, RuntimePools
from .introspection import ColumnInfo, ConstraintInfo, PartitionSizeInfo, SchemaIntrospector, TableInfo
from .operations import TableOperations
from .executor import StatementExecutor

__all__ = [
    "ConnectionConfig",
    "ConnectionPool",
    "RuntimePools",
    "ColumnInfo",
    "ConstraintInfo",
    "PartitionSizeInfo",
    "SchemaIntrospector",
    "TableInfo",
    "TableOperations",
    "StatementExecutor",
]
