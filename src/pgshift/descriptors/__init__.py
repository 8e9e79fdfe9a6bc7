"""
Table descriptors for pgshift.

This package provides:
- Immutable column, constraint, partition and table descriptors
- Descriptor validation that reports every violation at once
- YAML loading and dumping of table definitions
"""

from .model import (
    BaseType,
    BoundSentinel,
    ColumnDescriptor,
    Compression,
    ConstraintDescriptor,
    ConstraintKind,
    IdentityMode,
    LoggingMode,
    PartitionDescriptor,
    PartitionScheme,
    PartitionStrategy,
    Placement,
    ReferentialAction,
    SqlExpression,
    SubpartitionDescriptor,
    SubpartitionSpec,
    TableDefinition,
    TableKind,
    TableProperties,
    TemporaryScope,
)
from .validator import DescriptorValidator, Violation, validate_definition
from .loader import load_definitions, parse_definitions, dump_definitions

__all__ = [
    "BaseType",
    "BoundSentinel",
    "ColumnDescriptor",
    "Compression",
    "ConstraintDescriptor",
    "ConstraintKind",
    "IdentityMode",
    "LoggingMode",
    "PartitionDescriptor",
    "PartitionScheme",
    "PartitionStrategy",
    "Placement",
    "ReferentialAction",
    "SqlExpression",
    "SubpartitionDescriptor",
    "SubpartitionSpec",
    "TableDefinition",
    "TableKind",
    "TableProperties",
    "TemporaryScope",
    "DescriptorValidator",
    "Violation",
    "validate_definition",
    "load_definitions",
    "parse_definitions",
    "dump_definitions",
]
