"""
Clause renderers shared by all table kinds.
"""

from typing import Any, List, Optional, Sequence

from ..descriptors.model import (
    BaseType,
    BoundSentinel,
    ColumnDescriptor,
    Compression,
    ConstraintDescriptor,
    ConstraintKind,
    IdentityMode,
    PartitionStrategy,
    ReferentialAction,
    TableDefinition,
)
from ..descriptors.sanitize import Sanitizer
from ..exceptions import SynthesisError
from .literals import column_list, qualify, quote_ident, quote_string, render_literal


_SIMPLE_TYPES = {
    BaseType.SMALLINT: "smallint",
    BaseType.INTEGER: "integer",
    BaseType.BIGINT: "bigint",
    BaseType.REAL: "real",
    BaseType.DOUBLE: "double precision",
    BaseType.TEXT: "text",
    BaseType.DATE: "date",
    BaseType.INTERVAL: "interval",
    BaseType.BOOLEAN: "boolean",
    BaseType.BYTEA: "bytea",
    BaseType.UUID: "uuid",
    BaseType.JSON: "json",
    BaseType.JSONB: "jsonb",
}

_ON_DELETE = {
    ReferentialAction.NO_ACTION: "NO ACTION",
    ReferentialAction.RESTRICT: "RESTRICT",
    ReferentialAction.CASCADE: "CASCADE",
    ReferentialAction.SET_NULL: "SET NULL",
    ReferentialAction.SET_DEFAULT: "SET DEFAULT",
}


def render_type(
    column: ColumnDescriptor,
    srid: int = 4326,
    override: Optional[BaseType] = None,
) -> str:
    """Type clause from the base type tag and its parameters."""
    data_type = override or column.data_type

    if data_type in _SIMPLE_TYPES:
        return _SIMPLE_TYPES[data_type]
    if data_type == BaseType.NUMERIC:
        if column.precision is None:
            return "numeric"
        if column.scale is None:
            return f"numeric({column.precision})"
        return f"numeric({column.precision},{column.scale})"
    if data_type == BaseType.VARCHAR:
        return f"varchar({column.length})" if column.length else "varchar"
    if data_type == BaseType.CHAR:
        return f"char({column.length or 1})"
    if data_type in (BaseType.TIMESTAMP, BaseType.TIMESTAMPTZ):
        base = "timestamp"
        if column.precision is not None:
            base += f"({column.precision})"
        if data_type == BaseType.TIMESTAMPTZ:
            base += " with time zone"
        return base
    if data_type == BaseType.GEOMETRY:
        return f"geometry(Geometry,{int(srid)})"
    raise SynthesisError(f"No type rendering for {data_type!r}", {"column": column.name})


def render_column(
    column: ColumnDescriptor,
    sanitizer: Sanitizer,
    *,
    srid: int = 4326,
    compression: Optional[Compression] = None,
    type_override: Optional[BaseType] = None,
) -> str:
    data_type = type_override or column.data_type
    parts = [quote_ident(column.name), render_type(column, srid, type_override)]

    if compression is not None and data_type.is_varlena:
        parts.append(f"COMPRESSION {compression.value}")
    if column.identity == IdentityMode.ALWAYS:
        parts.append("GENERATED ALWAYS AS IDENTITY")
    elif column.identity == IdentityMode.BY_DEFAULT:
        parts.append("GENERATED BY DEFAULT AS IDENTITY")
    if column.default is not None:
        parts.append(f"DEFAULT {render_literal(column.default, sanitizer)}")
    if not column.nullable:
        parts.append("NOT NULL")

    return " ".join(parts)


def render_constraint(
    constraint: ConstraintDescriptor,
    sanitizer: Sanitizer,
    default_schema: Optional[str] = None,
) -> str:
    head = f"CONSTRAINT {quote_ident(constraint.name)}"

    if constraint.kind == ConstraintKind.PRIMARY_KEY:
        body = f"PRIMARY KEY ({column_list(constraint.columns)})"
    elif constraint.kind == ConstraintKind.UNIQUE:
        body = f"UNIQUE ({column_list(constraint.columns)})"
    elif constraint.kind == ConstraintKind.CHECK:
        body = f"CHECK ({sanitizer(constraint.check_expression or '')})"
    elif constraint.kind == ConstraintKind.FOREIGN_KEY:
        target = qualify(
            constraint.references_table or "",
            constraint.references_schema or default_schema,
        )
        body = (
            f"FOREIGN KEY ({column_list(constraint.columns)}) "
            f"REFERENCES {target} ({column_list(constraint.references_columns)})"
        )
        if constraint.on_delete is not None:
            body += f" ON DELETE {_ON_DELETE[constraint.on_delete]}"
    else:
        raise SynthesisError(f"Unknown constraint kind {constraint.kind!r}")

    if constraint.deferrable:
        body += " DEFERRABLE"
        if constraint.initially_deferred:
            body += " INITIALLY DEFERRED"

    return f"{head} {body}"


def render_partition_by(strategy: PartitionStrategy, key: Sequence[str]) -> str:
    if strategy == PartitionStrategy.REFERENCE:
        raise SynthesisError("Reference partitioning must be resolved before rendering")
    return f"PARTITION BY {strategy.value.upper()} ({column_list(key)})"


def render_bound_values(values: Sequence[Any], sanitizer: Sanitizer) -> str:
    return ", ".join(render_literal(v, sanitizer) for v in values)


def render_range_bound(
    lower: Optional[Sequence[Any]],
    upper: Sequence[Any],
    sanitizer: Sanitizer,
) -> str:
    if lower is None:
        lower = [BoundSentinel.MINVALUE] * len(upper)
    return (
        f"FOR VALUES FROM ({render_bound_values(lower, sanitizer)}) "
        f"TO ({render_bound_values(upper, sanitizer)})"
    )


def render_list_bound(values: Sequence[Any], sanitizer: Sanitizer) -> str:
    return f"FOR VALUES IN ({render_bound_values(values, sanitizer)})"


def render_hash_bound(modulus: int, remainder: int) -> str:
    return f"FOR VALUES WITH (MODULUS {modulus}, REMAINDER {remainder})"


def render_storage(
    fill_factor: Optional[int] = None,
    parallel_degree: Optional[int] = None,
) -> Optional[str]:
    options = []
    if fill_factor is not None:
        options.append(f"fillfactor={int(fill_factor)}")
    if parallel_degree is not None:
        options.append(f"parallel_workers={int(parallel_degree)}")
    if not options:
        return None
    return f"WITH ({', '.join(options)})"


def render_comments(definition: TableDefinition, table_name: str) -> List[str]:
    statements = []
    if definition.properties.comment:
        statements.append(
            f"COMMENT ON TABLE {table_name} IS {quote_string(definition.properties.comment)}"
        )
    for column in definition.columns:
        if column.comment:
            statements.append(
                f"COMMENT ON COLUMN {table_name}.{quote_ident(column.name)} "
                f"IS {quote_string(column.comment)}"
            )
    return statements
