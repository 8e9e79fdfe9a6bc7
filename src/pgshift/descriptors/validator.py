"""
Descriptor validation for pgshift.

Checks a ``TableDefinition`` for internal consistency before any
statement text is produced. All violations are collected; nothing is
mutated.
"""

import logging
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .model import (
    BaseType,
    BoundSentinel,
    ConstraintKind,
    LoggingMode,
    PartitionStrategy,
    Placement,
    SqlExpression,
    SubpartitionSpec,
    TableDefinition,
    TableKind,
    effective_subpartitions,
)
from .sanitize import IDENTIFIER_PATTERN, RESERVED_WORDS, Sanitizer, default_sanitizer
from ..exceptions import UnsafeExpressionError, ValidationError


logger = logging.getLogger(__name__)

MAX_IDENTIFIER_LENGTH = 63


@dataclass(frozen=True)
class Violation:
    """A single descriptor problem."""

    path: str
    code: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


class DescriptorValidator:
    """Validates table definitions.

    ``known`` maps table names to definitions seen earlier (for example
    earlier entries of a bulk list); it is used to resolve foreign key
    targets and reference-partitioning parents.
    """

    def __init__(
        self,
        max_identifier_length: int = MAX_IDENTIFIER_LENGTH,
        sanitizer: Optional[Sanitizer] = None,
    ):
        self.max_identifier_length = max_identifier_length
        self.sanitizer = sanitizer or default_sanitizer

    def validate(
        self,
        definition: TableDefinition,
        known: Optional[Mapping[str, TableDefinition]] = None,
    ) -> List[Violation]:
        """Return every violation found in ``definition``."""
        collector = _Collector()
        known = {k.lower(): v for k, v in (known or {}).items()}

        self._check_names(definition, collector)
        self._check_columns(definition, collector)
        self._check_constraints(definition, known, collector)
        self._check_partitioning(definition, known, collector)
        self._check_kind(definition, collector)

        if collector.violations:
            logger.debug(
                f"Definition {definition.qualified_name} has "
                f"{len(collector.violations)} violation(s)"
            )
        return collector.violations

    def check(
        self,
        definition: TableDefinition,
        known: Optional[Mapping[str, TableDefinition]] = None,
    ) -> TableDefinition:
        """Raise ``ValidationError`` carrying all violations, or return the definition."""
        violations = self.validate(definition, known)
        if violations:
            raise ValidationError(violations)
        return definition

    def is_valid(self, definition: TableDefinition) -> bool:
        return not self.validate(definition)

    # ------------------------------------------------------------------
    # names

    def check_identifier(self, name: str, path: str, collector: "_Collector") -> None:
        if not name:
            collector.add(path, "identifier.empty", "identifier is empty")
            return
        if not IDENTIFIER_PATTERN.match(name):
            collector.add(path, "identifier.charset", f"'{name}' is not a valid identifier")
        if name.lower() in RESERVED_WORDS:
            collector.add(path, "identifier.reserved", f"'{name}' is a reserved word")
        self._check_length(name, path, collector)

    def _check_length(self, name: str, path: str, collector: "_Collector") -> None:
        size = len(name.encode("utf-8"))
        if size > self.max_identifier_length:
            collector.add(
                path,
                "identifier.length",
                f"'{name}' is {size} bytes, limit is {self.max_identifier_length}",
            )

    def _check_names(self, definition: TableDefinition, collector: "_Collector") -> None:
        self.check_identifier(definition.name, "name", collector)
        if definition.schema_name is not None:
            self.check_identifier(definition.schema_name, "schema", collector)

        _check_duplicates(
            [c.name for c in definition.columns], "columns", "column", collector
        )
        _check_duplicates(
            [c.name for c in definition.constraints], "constraints", "constraint", collector
        )
        _check_duplicates(
            [p.name for p in definition.partitions], "partitions", "partition", collector
        )

        for i, column in enumerate(definition.columns):
            self.check_identifier(column.name, f"columns[{i}].name", collector)
        for i, constraint in enumerate(definition.constraints):
            self.check_identifier(constraint.name, f"constraints[{i}].name", collector)

        for i, partition in enumerate(definition.effective_partitions()):
            path = f"partitions[{i}]"
            self.check_identifier(partition.name, f"{path}.name", collector)
            self._check_length(
                definition.partition_table_name(partition.name), f"{path}.name", collector
            )
            if partition.tablespace:
                self.check_identifier(partition.tablespace, f"{path}.tablespace", collector)
            spec = definition.subpartitioning_for(partition)
            if spec is None:
                continue
            subs = effective_subpartitions(spec)
            _check_duplicates(
                [s.name for s in subs], f"{path}.subpartitions", "subpartition", collector
            )
            for j, sub in enumerate(subs):
                sub_path = f"{path}.subpartitions[{j}]"
                self.check_identifier(sub.name, f"{sub_path}.name", collector)
                self._check_length(
                    definition.subpartition_table_name(partition.name, sub.name),
                    f"{sub_path}.name",
                    collector,
                )
                if sub.tablespace:
                    self.check_identifier(sub.tablespace, f"{sub_path}.tablespace", collector)

        props = definition.properties
        if props.tablespace:
            self.check_identifier(props.tablespace, "properties.tablespace", collector)
        if definition.partitioning:
            for i, ts in enumerate(definition.partitioning.tablespaces):
                self.check_identifier(ts, f"partitioning.tablespaces[{i}]", collector)

    # ------------------------------------------------------------------
    # columns

    def _check_columns(self, definition: TableDefinition, collector: "_Collector") -> None:
        if not definition.columns:
            collector.add("columns", "columns.empty", "a table needs at least one column")

        for i, column in enumerate(definition.columns):
            path = f"columns[{i}]"
            data_type = column.data_type

            if column.length is not None and data_type not in (BaseType.VARCHAR, BaseType.CHAR):
                collector.add(
                    path, "type.length", f"{column.name}: length is not valid for {data_type.value}"
                )
            if column.scale is not None:
                if data_type != BaseType.NUMERIC:
                    collector.add(
                        path, "type.scale", f"{column.name}: scale is only valid for numeric"
                    )
                elif column.precision is None:
                    collector.add(path, "type.scale", f"{column.name}: scale needs a precision")
                elif column.scale > column.precision:
                    collector.add(
                        path, "type.scale", f"{column.name}: scale exceeds precision"
                    )
            if column.precision is not None and data_type not in (
                BaseType.NUMERIC,
                BaseType.TIMESTAMP,
                BaseType.TIMESTAMPTZ,
            ):
                collector.add(
                    path,
                    "type.precision",
                    f"{column.name}: precision is not valid for {data_type.value}",
                )

            if column.identity is not None:
                if not data_type.is_integer:
                    collector.add(
                        path,
                        "identity.type",
                        f"{column.name}: identity columns must be smallint, integer or bigint",
                    )
                if column.default is not None:
                    collector.add(
                        path,
                        "identity.default",
                        f"{column.name}: identity columns cannot have a default",
                    )

            if column.default is not None:
                self._check_value(column.default, f"{path}.default", collector)

    def _check_value(self, value: Any, path: str, collector: "_Collector") -> None:
        if isinstance(value, SqlExpression):
            self._check_expression(value.expression, path, collector)
        elif isinstance(value, str) and "\x00" in value:
            collector.add(path, "literal.nul", "string literal contains a NUL character")
        elif isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            collector.add(path, "literal.non_finite", f"non-finite number {value}")
        elif isinstance(value, Decimal) and not value.is_finite():
            collector.add(path, "literal.non_finite", f"non-finite number {value}")

    def _check_expression(self, expression: str, path: str, collector: "_Collector") -> None:
        try:
            self.sanitizer(expression)
        except UnsafeExpressionError as e:
            collector.add(path, "expression.unsafe", e.message)

    # ------------------------------------------------------------------
    # constraints

    def _check_constraints(
        self,
        definition: TableDefinition,
        known: Dict[str, TableDefinition],
        collector: "_Collector",
    ) -> None:
        primary_keys = [c for c in definition.constraints if c.kind == ConstraintKind.PRIMARY_KEY]
        if len(primary_keys) > 1:
            collector.add("constraints", "constraint.primary_key", "more than one primary key")

        for i, constraint in enumerate(definition.constraints):
            path = f"constraints[{i}]"
            if constraint.kind == ConstraintKind.CHECK:
                if not constraint.check_expression:
                    collector.add(path, "constraint.check", f"{constraint.name}: missing check expression")
                else:
                    self._check_expression(constraint.check_expression, f"{path}.check_expression", collector)
                continue

            if not constraint.columns:
                collector.add(path, "constraint.columns", f"{constraint.name}: no columns")
            _check_duplicates(list(constraint.columns), f"{path}.columns", "column", collector)
            for column in constraint.columns:
                if definition.column(column) is None:
                    collector.add(
                        path,
                        "constraint.unknown_column",
                        f"{constraint.name}: column '{column}' is not declared",
                    )

            if constraint.kind != ConstraintKind.FOREIGN_KEY:
                continue

            if not constraint.references_table:
                collector.add(path, "foreign_key.target", f"{constraint.name}: missing referenced table")
                continue
            if len(constraint.references_columns) != len(constraint.columns):
                collector.add(
                    path,
                    "foreign_key.arity",
                    f"{constraint.name}: {len(constraint.columns)} column(s) reference "
                    f"{len(constraint.references_columns)} column(s)",
                )

            target = _resolve(definition, constraint.references_table, known)
            if target is None:
                continue
            for column in constraint.references_columns:
                if target.column(column) is None:
                    collector.add(
                        path,
                        "foreign_key.unknown_column",
                        f"{constraint.name}: referenced column "
                        f"'{constraint.references_table}.{column}' is not declared",
                    )

    # ------------------------------------------------------------------
    # partitioning

    def _check_partitioning(
        self,
        definition: TableDefinition,
        known: Dict[str, TableDefinition],
        collector: "_Collector",
    ) -> None:
        scheme = definition.partitioning
        if scheme is None:
            if definition.partitions:
                collector.add("partitions", "partition.scheme", "partitions declared without a partitioning scheme")
            return

        if scheme.strategy == PartitionStrategy.REFERENCE:
            self._check_reference_scheme(definition, known, collector)
            return

        self._check_key(definition, scheme.key, "partitioning.key", scheme.strategy, collector)
        self._check_placement(scheme.count, scheme.tablespaces, scheme.placement, "partitioning", collector)

        partitions = definition.effective_partitions()
        if not partitions:
            collector.add("partitions", "partition.empty", "a partitioned table needs partitions")
        if scheme.count and definition.partitions:
            if scheme.strategy != PartitionStrategy.HASH:
                collector.add("partitioning.count", "partition.count", "count is only valid for hash partitioning")
            elif scheme.count != len(definition.partitions):
                collector.add(
                    "partitioning.count",
                    "partition.count",
                    f"count {scheme.count} does not match {len(definition.partitions)} declared partitions",
                )

        self._check_bounds(
            partitions, scheme.strategy, len(scheme.key), "partitions", collector
        )

        for i, partition in enumerate(partitions):
            spec = definition.subpartitioning_for(partition)
            if spec is not None:
                self._check_subpartitioning(definition, spec, f"partitions[{i}].subpartition", collector)

        self._check_unique_keys_cover(definition, scheme.key, collector)

    def _check_reference_scheme(
        self,
        definition: TableDefinition,
        known: Dict[str, TableDefinition],
        collector: "_Collector",
    ) -> None:
        scheme = definition.partitioning
        if definition.partitions:
            collector.add("partitions", "reference.partitions", "reference-partitioned tables inherit their partitions")
        if not scheme.reference_constraint:
            collector.add("partitioning.reference_constraint", "reference.constraint", "reference partitioning needs a foreign key")
            return
        fk = definition.constraint(scheme.reference_constraint)
        if fk is None or fk.kind != ConstraintKind.FOREIGN_KEY:
            collector.add(
                "partitioning.reference_constraint",
                "reference.constraint",
                f"'{scheme.reference_constraint}' is not a foreign key of this table",
            )
            return
        for column in fk.columns:
            col = definition.column(column)
            if col is not None and col.nullable:
                collector.add(
                    "partitioning.reference_constraint",
                    "reference.nullable",
                    f"foreign key column '{column}' must be NOT NULL",
                )
        parent = _resolve(definition, fk.references_table, known)
        if parent is not None and parent.partitioning is None:
            collector.add(
                "partitioning.reference_constraint",
                "reference.parent",
                f"parent table '{fk.references_table}' is not partitioned",
            )

    def _check_key(
        self,
        definition: TableDefinition,
        key: Sequence[str],
        path: str,
        strategy: PartitionStrategy,
        collector: "_Collector",
    ) -> None:
        if not key:
            collector.add(path, "partition.key", "partition key is empty")
        for column in key:
            if definition.column(column) is None:
                collector.add(path, "partition.unknown_column", f"partition key column '{column}' is not declared")
        if strategy == PartitionStrategy.LIST and len(key) > 1:
            collector.add(path, "partition.key", "list partitioning takes a single key column")

    def _check_placement(
        self,
        count: Optional[int],
        tablespaces: Sequence[str],
        placement: Placement,
        path: str,
        collector: "_Collector",
    ) -> None:
        if not tablespaces or not count:
            return
        if placement == Placement.EXPLICIT and len(tablespaces) != count:
            collector.add(
                f"{path}.tablespaces",
                "placement.explicit",
                f"explicit placement needs {count} tablespaces, got {len(tablespaces)}",
            )
        if placement == Placement.ROUND_ROBIN and len(tablespaces) != count:
            collector.add(
                f"{path}.tablespaces",
                "placement.round_robin",
                f"round-robin placement needs one tablespace per partition: "
                f"{count} partitions, {len(tablespaces)} tablespaces",
            )

    def _check_bounds(
        self,
        partitions: Sequence[Any],
        strategy: PartitionStrategy,
        key_arity: int,
        path: str,
        collector: "_Collector",
    ) -> None:
        defaults = [p for p in partitions if p.is_default]
        if len(defaults) > 1:
            collector.add(path, "partition.default", "more than one DEFAULT partition")

        if strategy == PartitionStrategy.HASH:
            for i, partition in enumerate(partitions):
                if partition.values or partition.is_default:
                    collector.add(f"{path}[{i}]", "partition.bound", f"{partition.name}: hash partitions take no bounds")
            return

        previous: Optional[Tuple[Any, ...]] = None
        previous_name = None
        seen_values: Dict[Any, str] = {}
        for i, partition in enumerate(partitions):
            item = f"{path}[{i}]"
            if partition.is_default:
                if partition.values:
                    collector.add(item, "partition.bound", f"{partition.name}: DEFAULT partitions take no values")
                continue
            if not partition.values:
                collector.add(item, "partition.bound", f"{partition.name}: missing bound")
                continue
            for value in partition.values:
                self._check_value(value, f"{item}.values", collector)

            if strategy == PartitionStrategy.LIST:
                for value in partition.values:
                    if isinstance(value, BoundSentinel):
                        collector.add(item, "partition.bound", f"{partition.name}: {value.value} is not a list value")
                        continue
                    marker = _hashable(value)
                    if marker in seen_values:
                        collector.add(
                            item,
                            "partition.overlap",
                            f"{partition.name}: value {value!r} already belongs to {seen_values[marker]}",
                        )
                    else:
                        seen_values[marker] = partition.name
                continue

            # range
            if len(partition.values) != key_arity:
                collector.add(
                    item,
                    "partition.bound",
                    f"{partition.name}: bound has {len(partition.values)} value(s), key has {key_arity}",
                )
                continue
            current = tuple(partition.values)
            if previous is not None:
                try:
                    increasing = _compare_bounds(current, previous) > 0
                except TypeError:
                    collector.add(
                        item,
                        "partition.bound_type",
                        f"{partition.name}: bound is not comparable with {previous_name}",
                    )
                    increasing = True
                if not increasing:
                    collector.add(
                        item,
                        "partition.order",
                        f"{partition.name}: bound must be greater than the bound of {previous_name}",
                    )
            previous = current
            previous_name = partition.name

    def _check_subpartitioning(
        self,
        definition: TableDefinition,
        spec: SubpartitionSpec,
        path: str,
        collector: "_Collector",
    ) -> None:
        if spec.strategy == PartitionStrategy.REFERENCE:
            collector.add(path, "subpartition.strategy", "reference subpartitioning is not supported")
            return
        self._check_key(definition, spec.key, f"{path}.key", spec.strategy, collector)

        if spec.strategy == PartitionStrategy.HASH:
            if not spec.count and not spec.subpartitions:
                collector.add(path, "subpartition.count", "hash subpartitioning needs a count")
            if spec.count and spec.subpartitions and spec.count != len(spec.subpartitions):
                collector.add(path, "subpartition.count", "count does not match declared subpartitions")
            self._check_placement(
                spec.count or len(spec.subpartitions), spec.tablespaces, spec.placement, path, collector
            )
        else:
            if spec.count:
                collector.add(path, "subpartition.count", "count is only valid for hash subpartitioning")
            if not spec.subpartitions:
                collector.add(path, "subpartition.empty", f"{spec.strategy.value} subpartitioning needs subpartitions")
            if spec.tablespaces:
                collector.add(
                    f"{path}.tablespaces",
                    "placement.explicit",
                    "list and range subpartitions name their own tablespaces",
                )

        self._check_bounds(
            effective_subpartitions(spec), spec.strategy, len(spec.key), f"{path}.subpartitions", collector
        )

    def _check_unique_keys_cover(
        self,
        definition: TableDefinition,
        key: Sequence[str],
        collector: "_Collector",
    ) -> None:
        required = {k.lower() for k in key}
        for partition in definition.effective_partitions():
            spec = definition.subpartitioning_for(partition)
            if spec is not None:
                required |= {k.lower() for k in spec.key}
        for i, constraint in enumerate(definition.constraints):
            if not constraint.is_index_backed:
                continue
            missing = required - {c.lower() for c in constraint.columns}
            if missing:
                collector.add(
                    f"constraints[{i}]",
                    "partition.unique_key",
                    f"{constraint.name}: unique keys of partitioned tables must include "
                    f"partition key column(s) {', '.join(sorted(missing))}",
                )

    # ------------------------------------------------------------------
    # kind / property legality

    def _check_kind(self, definition: TableDefinition, collector: "_Collector") -> None:
        kind = definition.kind
        props = definition.properties

        if kind == TableKind.PARTITIONED and definition.partitioning is None:
            collector.add("partitioning", "kind.partitioning", "partitioned tables need a partitioning scheme")
        if kind != TableKind.PARTITIONED and definition.partitioning is not None:
            collector.add("partitioning", "kind.partitioning", f"{kind.value} tables cannot be partitioned")

        if kind == TableKind.PARTITIONED and props.logging == LoggingMode.UNLOGGED:
            collector.add("properties.logging", "kind.logging", "partitioned tables cannot be unlogged")

        if kind == TableKind.INDEX_ORGANIZED:
            if definition.primary_key is None:
                collector.add("constraints", "kind.primary_key", "index-organized tables need a primary key")
            if props.in_memory:
                collector.add("properties.in_memory", "kind.storage", "index-organized tables cannot use columnar storage")
            if props.compression is not None:
                collector.add("properties.compression", "kind.storage", "index-organized tables cannot be compressed")

        if kind == TableKind.TEMPORARY:
            if props.logging == LoggingMode.UNLOGGED:
                collector.add("properties.logging", "kind.logging", "temporary tables are never logged")
            if definition.foreign_keys:
                collector.add("constraints", "kind.foreign_key", "temporary tables cannot declare foreign keys")
            if props.in_memory:
                collector.add("properties.in_memory", "kind.storage", "temporary tables cannot use columnar storage")

        if kind == TableKind.APPEND_ONLY and props.logging == LoggingMode.UNLOGGED:
            collector.add("properties.logging", "kind.logging", "append-only tables must be logged")

        if kind == TableKind.COLUMNAR or props.in_memory:
            if props.fill_factor is not None:
                collector.add("properties.fill_factor", "kind.storage", "columnar storage has no fill factor")

        if kind == TableKind.SEMI_STRUCTURED:
            self._check_feature_columns(
                definition,
                props.semi_structured_columns,
                "properties.semi_structured_columns",
                (BaseType.JSON, BaseType.JSONB, BaseType.TEXT),
                lambda c: c.data_type.is_document,
                "semi-structured",
                collector,
            )
        if kind == TableKind.SPATIAL:
            self._check_feature_columns(
                definition,
                props.spatial_columns,
                "properties.spatial_columns",
                (BaseType.GEOMETRY,),
                lambda c: c.data_type == BaseType.GEOMETRY,
                "spatial",
                collector,
            )

        for name in definition.auxiliary_names():
            self._check_length(name, "name", collector)

    def _check_feature_columns(
        self,
        definition: TableDefinition,
        listed: Iterable[str],
        path: str,
        allowed: Tuple[BaseType, ...],
        implicit,
        label: str,
        collector: "_Collector",
    ) -> None:
        listed = list(listed)
        for name in listed:
            column = definition.column(name)
            if column is None:
                collector.add(path, "kind.unknown_column", f"{label} column '{name}' is not declared")
            elif column.data_type not in allowed:
                collector.add(path, "kind.column_type", f"{label} column '{name}' has type {column.data_type.value}")
        if not listed and not any(implicit(c) for c in definition.columns):
            collector.add(path, "kind.columns", f"{label} tables need at least one {label} column")


class _Collector:
    def __init__(self):
        self.violations: List[Violation] = []

    def add(self, path: str, code: str, message: str) -> None:
        self.violations.append(Violation(path, code, message))


def _check_duplicates(names: List[str], path: str, label: str, collector: _Collector) -> None:
    seen = set()
    for name in names:
        key = name.lower()
        if key in seen:
            collector.add(path, f"{label}.duplicate", f"duplicate {label} name '{name}'")
        seen.add(key)


def _resolve(
    definition: TableDefinition,
    table: Optional[str],
    known: Dict[str, TableDefinition],
) -> Optional[TableDefinition]:
    if not table:
        return None
    if table.lower() == definition.name.lower():
        return definition
    return known.get(table.lower())


def _hashable(value: Any) -> Any:
    return (type(value).__name__, value) if value is not None else ("null", None)


def _bound_key(value: Any) -> Tuple[int, Any]:
    if value == BoundSentinel.MINVALUE:
        return (-1, 0)
    if value == BoundSentinel.MAXVALUE:
        return (1, 0)
    return (0, value)


def _compare_bounds(left: Tuple[Any, ...], right: Tuple[Any, ...]) -> int:
    """Lexicographic comparison with MINVALUE/MAXVALUE as open ends."""
    for a, b in zip(left, right):
        ka, kb = _bound_key(a), _bound_key(b)
        if ka[0] != kb[0]:
            return -1 if ka[0] < kb[0] else 1
        if ka[0] != 0:
            continue
        if ka[1] < kb[1]:
            return -1
        if ka[1] > kb[1]:
            return 1
    return 0


def validate_definition(definition: TableDefinition) -> List[Violation]:
    """Validate with default settings."""
    return DescriptorValidator().validate(definition)
