"""
Database schema introspection for pgshift.

Reads the PostgreSQL catalogs for the facts workflows check before they
touch a table (existence, columns, constraints, indexes, partition
layout, sizes, server version) and reflects a live table back into a
``TableDefinition``.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from .connection import ConnectionPool
from ..descriptors.model import (
    TYPE_ALIASES,
    BaseType,
    BoundSentinel,
    ColumnDescriptor,
    ConstraintDescriptor,
    ConstraintKind,
    IdentityMode,
    LoggingMode,
    PartitionDescriptor,
    PartitionScheme,
    PartitionStrategy,
    ReferentialAction,
    SqlExpression,
    SubpartitionDescriptor,
    SubpartitionSpec,
    TableDefinition,
    TableKind,
    TableProperties,
)
from ..exceptions import DatabaseError, SchemaError


logger = logging.getLogger(__name__)


_STRATEGIES = {
    "r": PartitionStrategy.RANGE,
    "l": PartitionStrategy.LIST,
    "h": PartitionStrategy.HASH,
}

_CONSTRAINT_KINDS = {
    "p": ConstraintKind.PRIMARY_KEY,
    "u": ConstraintKind.UNIQUE,
    "f": ConstraintKind.FOREIGN_KEY,
    "c": ConstraintKind.CHECK,
}

_ON_DELETE = {
    "a": None,
    "r": ReferentialAction.RESTRICT,
    "c": ReferentialAction.CASCADE,
    "n": ReferentialAction.SET_NULL,
    "d": ReferentialAction.SET_DEFAULT,
}

DEFAULT_LARGE_PARTITION_MB = 1000
DEFAULT_MOVE_THROUGHPUT_MB = 100.0
# index rebuild and catalog work on top of the copy
_MOVE_OVERHEAD = 1.2


@dataclass
class ColumnInfo:
    """Information about a table column."""

    name: str
    data_type: str
    is_nullable: bool
    default_value: Optional[str] = None
    identity: str = ""
    ordinal_position: int = 0
    comment: Optional[str] = None


@dataclass
class ConstraintInfo:
    """Information about a table constraint."""

    name: str
    kind: str
    columns: List[str]
    definition: str
    table_schema: str = ""
    table_name: str = ""
    referenced_schema: Optional[str] = None
    referenced_table: Optional[str] = None
    referenced_columns: List[str] = field(default_factory=list)
    on_delete: Optional[str] = None
    validated: bool = True
    deferrable: bool = False
    initially_deferred: bool = False

    @property
    def is_foreign_key(self) -> bool:
        return self.kind == "f"

    @property
    def is_index_backed(self) -> bool:
        return self.kind in ("p", "u")

    @property
    def table_full_name(self) -> str:
        return f"{self.table_schema}.{self.table_name}"


@dataclass
class IndexInfo:
    """Information about an index."""

    name: str
    columns: List[str]
    is_unique: bool
    is_primary: bool
    index_type: str
    definition: str
    tablespace: Optional[str] = None
    constraint_name: Optional[str] = None
    is_clustered: bool = False


@dataclass
class PartitionBound:
    """A parsed ``FOR VALUES`` clause."""

    is_default: bool = False
    lower: Tuple[Any, ...] = ()
    upper: Tuple[Any, ...] = ()
    values: Tuple[Any, ...] = ()
    modulus: Optional[int] = None
    remainder: Optional[int] = None


@dataclass
class PartitionChild:
    """A direct partition of a partitioned table."""

    schema: str
    name: str
    bound: PartitionBound
    raw_bound: str
    tablespace: Optional[str] = None
    is_partitioned: bool = False


@dataclass
class PartitionInfo:
    """Partitioning of one table level."""

    strategy: PartitionStrategy
    key: List[str]
    key_definition: str
    children: List[PartitionChild] = field(default_factory=list)


@dataclass
class PartitionSizeInfo:
    """Storage and row statistics of one leaf partition."""

    schema: str
    name: str
    parent: str
    bound: str
    tablespace: Optional[str] = None
    size_bytes: int = 0
    heap_bytes: int = 0
    row_estimate: int = 0
    live_rows: int = 0
    last_analyzed: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.name}"

    @property
    def size_mb(self) -> float:
        return self.size_bytes / (1024 * 1024)

    @property
    def is_empty(self) -> bool:
        return self.heap_bytes == 0 or self.live_rows == 0


@dataclass
class TableInfo:
    """Relation-level facts."""

    schema: str
    name: str
    relkind: str
    persistence: str
    access_method: Optional[str] = None
    tablespace: Optional[str] = None
    options: Dict[str, str] = field(default_factory=dict)
    comment: Optional[str] = None
    is_partition: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.name}"

    @property
    def is_partitioned(self) -> bool:
        return self.relkind == "p"


def estimate_move_minutes(
    size_bytes: int,
    parallel_degree: Optional[int] = 1,
    throughput_mb_per_minute: float = DEFAULT_MOVE_THROUGHPUT_MB,
) -> int:
    """Whole minutes to rewrite ``size_bytes``, never less than one."""
    size_mb = size_bytes / (1024 * 1024)
    rate = throughput_mb_per_minute * max(1, parallel_degree or 1)
    return max(1, math.ceil(size_mb / rate * _MOVE_OVERHEAD))


# ----------------------------------------------------------------------
# parsing helpers


def _scan_quoted(text: str, start: int) -> int:
    """Index just past the single-quoted literal starting at ``start``."""
    i = start + 1
    while i < len(text):
        if text[i] == "'":
            if i + 1 < len(text) and text[i + 1] == "'":
                i += 2
                continue
            return i + 1
        i += 1
    raise SchemaError(f"Unterminated literal in {text!r}")


def _paren_group(text: str, start: int) -> Tuple[str, int]:
    """Contents of the parenthesized group opening at ``start``."""
    if start >= len(text) or text[start] != "(":
        raise SchemaError(f"Expected '(' at position {start} in {text!r}")
    depth = 0
    i = start
    while i < len(text):
        ch = text[i]
        if ch == "'":
            i = _scan_quoted(text, i)
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return text[start + 1:i], i + 1
        i += 1
    raise SchemaError(f"Unbalanced parentheses in {text!r}")


def _split_values(text: str) -> List[str]:
    items = []
    current = []
    depth = 0
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "'":
            end = _scan_quoted(text, i)
            current.append(text[i:end])
            i = end
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            items.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
        i += 1
    tail = "".join(current).strip()
    if tail:
        items.append(tail)
    return items


def parse_bound_value(token: str) -> Any:
    """Python value of one literal as rendered by ``pg_get_expr``."""
    text = token.strip()
    upper = text.upper()
    if upper in ("MINVALUE", "MAXVALUE"):
        return BoundSentinel(upper)
    if upper == "NULL":
        return None
    if upper in ("TRUE", "FALSE"):
        return upper == "TRUE"
    if text.startswith("'"):
        end = _scan_quoted(text, 0)
        return text[1:end - 1].replace("''", "'")
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return Decimal(text)
    except InvalidOperation:
        raise SchemaError(f"Cannot parse partition bound value {token!r}")


def parse_partition_bound(expression: str) -> PartitionBound:
    """Parse a partition bound such as ``FOR VALUES FROM ('2024-01-01') TO ('2025-01-01')``."""
    text = expression.strip()
    upper = text.upper()

    if upper == "DEFAULT":
        return PartitionBound(is_default=True)
    if not upper.startswith("FOR VALUES"):
        raise SchemaError(f"Unrecognized partition bound: {expression!r}")

    rest = text[len("FOR VALUES"):].lstrip()
    keyword = rest.split("(", 1)[0].strip().upper()
    position = len(text) - len(rest) + rest.index("(")

    if keyword == "FROM":
        lower, end = _paren_group(text, position)
        tail = text[end:].lstrip()
        if not tail.upper().startswith("TO"):
            raise SchemaError(f"Range bound without TO: {expression!r}")
        upper_text, _ = _paren_group(text, len(text) - len(tail) + tail.index("("))
        return PartitionBound(
            lower=tuple(parse_bound_value(v) for v in _split_values(lower)),
            upper=tuple(parse_bound_value(v) for v in _split_values(upper_text)),
        )
    if keyword == "IN":
        values, _ = _paren_group(text, position)
        return PartitionBound(values=tuple(parse_bound_value(v) for v in _split_values(values)))
    if keyword == "WITH":
        options, _ = _paren_group(text, position)
        parsed = {}
        for item in _split_values(options):
            name, _, value = item.strip().partition(" ")
            parsed[name.lower()] = int(value.strip())
        if "modulus" not in parsed or "remainder" not in parsed:
            raise SchemaError(f"Hash bound without modulus/remainder: {expression!r}")
        return PartitionBound(modulus=parsed["modulus"], remainder=parsed["remainder"])

    raise SchemaError(f"Unrecognized partition bound: {expression!r}")


_TYPE_PATTERN = re.compile(
    r"^(?P<base>[a-z ]+?)(?:\((?P<args>[^)]*)\))?(?P<zone> with(?:out)? time zone)?$"
)


def parse_type(formatted: str) -> Tuple[BaseType, Dict[str, Optional[int]], Optional[int]]:
    """Base type, type parameters and SRID from ``format_type`` output."""
    match = _TYPE_PATTERN.match(formatted.strip().lower())
    if not match:
        raise SchemaError(f"Unsupported column type: {formatted}")
    base = match.group("base").strip()
    args = [a.strip() for a in (match.group("args") or "").split(",") if a.strip()]
    zone = (match.group("zone") or "").strip()
    params: Dict[str, Optional[int]] = {"length": None, "precision": None, "scale": None}
    srid = None

    if base == "timestamp":
        data_type = BaseType.TIMESTAMPTZ if zone == "with time zone" else BaseType.TIMESTAMP
        if args:
            params["precision"] = int(args[0])
    elif base in ("character varying", "character", "varchar", "char"):
        data_type = BaseType.VARCHAR if base in ("character varying", "varchar") else BaseType.CHAR
        if args:
            params["length"] = int(args[0])
    elif base == "numeric":
        data_type = BaseType.NUMERIC
        if args:
            params["precision"] = int(args[0])
        if len(args) > 1:
            params["scale"] = int(args[1])
    elif base == "geometry":
        data_type = BaseType.GEOMETRY
        if len(args) > 1:
            srid = int(args[1])
    elif base in TYPE_ALIASES:
        data_type = TYPE_ALIASES[base]
    else:
        try:
            data_type = BaseType(base)
        except ValueError:
            raise SchemaError(f"Unsupported column type: {formatted}")
    return data_type, params, srid


def _parse_options(options: Optional[List[str]]) -> Dict[str, str]:
    parsed = {}
    for option in options or []:
        name, _, value = option.partition("=")
        parsed[name] = value
    return parsed


def _strip_prefix(name: str, prefix: str) -> str:
    return name[len(prefix):] if name.startswith(prefix) and len(name) > len(prefix) else name


def _bound_sort_key(bound: PartitionBound) -> Tuple:
    def key(value):
        if value == BoundSentinel.MINVALUE:
            return (-1, "")
        if value == BoundSentinel.MAXVALUE:
            return (1, "")
        return (0, value)

    return tuple(key(v) for v in bound.upper)


_CONSTRAINT_SELECT = """
    SELECT
        con.conname AS name,
        con.contype::text AS kind,
        ARRAY(
            SELECT a.attname
            FROM unnest(con.conkey) WITH ORDINALITY AS k(attnum, ord)
            JOIN pg_attribute a ON a.attrelid = con.conrelid AND a.attnum = k.attnum
            ORDER BY k.ord
        )::text[] AS columns,
        pg_get_constraintdef(con.oid) AS definition,
        n.nspname AS table_schema,
        c.relname AS table_name,
        rn.nspname AS referenced_schema,
        rc.relname AS referenced_table,
        ARRAY(
            SELECT a.attname
            FROM unnest(con.confkey) WITH ORDINALITY AS k(attnum, ord)
            JOIN pg_attribute a ON a.attrelid = con.confrelid AND a.attnum = k.attnum
            ORDER BY k.ord
        )::text[] AS referenced_columns,
        con.confdeltype::text AS on_delete,
        con.convalidated AS validated,
        con.condeferrable AS deferrable,
        con.condeferred AS initially_deferred
    FROM pg_constraint con
    JOIN pg_class c ON c.oid = con.conrelid
    JOIN pg_namespace n ON n.oid = c.relnamespace
    LEFT JOIN pg_class rc ON rc.oid = con.confrelid
    LEFT JOIN pg_namespace rn ON rn.oid = rc.relnamespace
"""


class SchemaIntrospector:
    """Database schema introspection utilities."""

    def __init__(self, pool: ConnectionPool):
        self.pool = pool

    async def table_exists(self, schema: str, table: str) -> bool:
        """Check if a table (plain or partitioned) exists."""
        query = """
            SELECT EXISTS (
                SELECT 1 FROM pg_class c
                JOIN pg_namespace n ON n.oid = c.relnamespace
                WHERE n.nspname = $1 AND c.relname = $2 AND c.relkind IN ('r', 'p')
            )
        """
        try:
            return bool(await self.pool.fetchval(query, schema, table))
        except Exception as e:
            logger.error(f"Error checking table existence for {schema}.{table}: {e}")
            raise DatabaseError(f"Failed to check table existence: {e}") from e

    async def tablespace_exists(self, tablespace: str) -> bool:
        query = "SELECT EXISTS (SELECT 1 FROM pg_tablespace WHERE spcname = $1)"
        try:
            return bool(await self.pool.fetchval(query, tablespace))
        except Exception as e:
            logger.error(f"Error checking tablespace {tablespace}: {e}")
            raise DatabaseError(f"Failed to check tablespace existence: {e}") from e

    async def get_table_info(self, schema: str, table: str) -> Optional[TableInfo]:
        """Relation-level facts, or None when the table does not exist."""
        query = """
            SELECT
                c.relkind::text AS relkind,
                c.relpersistence::text AS persistence,
                am.amname AS access_method,
                ts.spcname AS tablespace,
                c.reloptions AS options,
                obj_description(c.oid, 'pg_class') AS comment,
                c.relispartition AS is_partition
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            LEFT JOIN pg_am am ON am.oid = c.relam
            LEFT JOIN pg_tablespace ts ON ts.oid = c.reltablespace
            WHERE n.nspname = $1 AND c.relname = $2 AND c.relkind IN ('r', 'p')
        """
        try:
            row = await self.pool.fetchrow(query, schema, table)
        except Exception as e:
            logger.error(f"Error getting table info for {schema}.{table}: {e}")
            raise SchemaError(f"Failed to get table info: {e}") from e
        if row is None:
            return None
        return TableInfo(
            schema=schema,
            name=table,
            relkind=row["relkind"],
            persistence=row["persistence"],
            access_method=row["access_method"],
            tablespace=row["tablespace"],
            options=_parse_options(row["options"]),
            comment=row["comment"],
            is_partition=row["is_partition"],
        )

    async def get_columns(self, schema: str, table: str) -> List[ColumnInfo]:
        """Columns in ordinal order."""
        query = """
            SELECT
                a.attname AS name,
                format_type(a.atttypid, a.atttypmod) AS data_type,
                NOT a.attnotnull AS is_nullable,
                pg_get_expr(d.adbin, d.adrelid) AS default_value,
                a.attidentity::text AS identity,
                a.attnum AS ordinal_position,
                col_description(c.oid, a.attnum) AS comment
            FROM pg_attribute a
            JOIN pg_class c ON c.oid = a.attrelid
            JOIN pg_namespace n ON n.oid = c.relnamespace
            LEFT JOIN pg_attrdef d ON d.adrelid = a.attrelid AND d.adnum = a.attnum
            WHERE n.nspname = $1 AND c.relname = $2
              AND a.attnum > 0 AND NOT a.attisdropped
            ORDER BY a.attnum
        """
        try:
            rows = await self.pool.fetch(query, schema, table)
        except Exception as e:
            logger.error(f"Error getting columns for {schema}.{table}: {e}")
            raise SchemaError(f"Failed to get columns: {e}") from e
        return [
            ColumnInfo(
                name=row["name"],
                data_type=row["data_type"],
                is_nullable=row["is_nullable"],
                default_value=row["default_value"],
                identity=row["identity"] or "",
                ordinal_position=row["ordinal_position"],
                comment=row["comment"],
            )
            for row in rows
        ]

    async def get_column_type(self, schema: str, table: str, column: str) -> Optional[str]:
        """``format_type`` of one column, or None if it does not exist."""
        for info in await self.get_columns(schema, table):
            if info.name == column:
                return info.data_type
        return None

    async def get_constraints(self, schema: str, table: str) -> List[ConstraintInfo]:
        """Constraints declared on the table, primary key first."""
        query = _CONSTRAINT_SELECT + """
            WHERE n.nspname = $1 AND c.relname = $2
              AND con.contype IN ('p', 'u', 'f', 'c')
              AND con.conparentid = 0
            ORDER BY array_position(ARRAY['p', 'u', 'f', 'c'], con.contype::text), con.conname
        """
        try:
            rows = await self.pool.fetch(query, schema, table)
        except Exception as e:
            logger.error(f"Error getting constraints for {schema}.{table}: {e}")
            raise SchemaError(f"Failed to get constraints: {e}") from e
        return [self._constraint_from_row(row) for row in rows]

    async def get_inbound_foreign_keys(self, schema: str, table: str) -> List[ConstraintInfo]:
        """Foreign keys in other tables that reference this one."""
        query = _CONSTRAINT_SELECT + """
            WHERE rn.nspname = $1 AND rc.relname = $2
              AND con.contype = 'f'
              AND con.conparentid = 0
              AND con.conrelid <> con.confrelid
            ORDER BY n.nspname, c.relname, con.conname
        """
        try:
            rows = await self.pool.fetch(query, schema, table)
        except Exception as e:
            logger.error(f"Error getting inbound foreign keys for {schema}.{table}: {e}")
            raise SchemaError(f"Failed to get inbound foreign keys: {e}") from e
        return [self._constraint_from_row(row) for row in rows]

    @staticmethod
    def _constraint_from_row(row) -> ConstraintInfo:
        return ConstraintInfo(
            name=row["name"],
            kind=row["kind"],
            columns=list(row["columns"] or []),
            definition=row["definition"],
            table_schema=row["table_schema"],
            table_name=row["table_name"],
            referenced_schema=row["referenced_schema"],
            referenced_table=row["referenced_table"],
            referenced_columns=list(row["referenced_columns"] or []),
            on_delete=row["on_delete"],
            validated=row["validated"],
            deferrable=row["deferrable"],
            initially_deferred=row["initially_deferred"],
        )

    async def get_indexes(self, schema: str, table: str) -> List[IndexInfo]:
        """Indexes on the table."""
        query = """
            SELECT
                i.relname AS name,
                ARRAY(
                    SELECT a.attname
                    FROM unnest(ix.indkey::int2[]) WITH ORDINALITY AS k(attnum, ord)
                    JOIN pg_attribute a ON a.attrelid = ix.indrelid AND a.attnum = k.attnum
                    ORDER BY k.ord
                )::text[] AS columns,
                ix.indisunique AS is_unique,
                ix.indisprimary AS is_primary,
                ix.indisclustered AS is_clustered,
                am.amname AS index_type,
                pg_get_indexdef(ix.indexrelid) AS definition,
                ts.spcname AS tablespace,
                con.conname AS constraint_name
            FROM pg_index ix
            JOIN pg_class i ON i.oid = ix.indexrelid
            JOIN pg_class c ON c.oid = ix.indrelid
            JOIN pg_namespace n ON n.oid = c.relnamespace
            JOIN pg_am am ON am.oid = i.relam
            LEFT JOIN pg_tablespace ts ON ts.oid = i.reltablespace
            LEFT JOIN pg_constraint con
                ON con.conindid = ix.indexrelid AND con.conrelid = ix.indrelid
            WHERE n.nspname = $1 AND c.relname = $2
            ORDER BY i.relname
        """
        try:
            rows = await self.pool.fetch(query, schema, table)
        except Exception as e:
            logger.error(f"Error getting indexes for {schema}.{table}: {e}")
            raise SchemaError(f"Failed to get indexes: {e}") from e
        return [
            IndexInfo(
                name=row["name"],
                columns=list(row["columns"] or []),
                is_unique=row["is_unique"],
                is_primary=row["is_primary"],
                index_type=row["index_type"],
                definition=row["definition"],
                tablespace=row["tablespace"],
                constraint_name=row["constraint_name"],
                is_clustered=row["is_clustered"],
            )
            for row in rows
        ]

    async def get_partition_info(self, schema: str, table: str) -> Optional[PartitionInfo]:
        """Partitioning of the table and its direct children, or None."""
        key_query = """
            SELECT
                pt.partstrat::text AS strategy,
                ARRAY(
                    SELECT a.attname
                    FROM unnest(pt.partattrs::int2[]) WITH ORDINALITY AS k(attnum, ord)
                    JOIN pg_attribute a ON a.attrelid = pt.partrelid AND a.attnum = k.attnum
                    ORDER BY k.ord
                )::text[] AS key,
                pg_get_partkeydef(pt.partrelid) AS key_definition,
                0 = ANY(pt.partattrs::int2[]) AS has_expressions
            FROM pg_partitioned_table pt
            JOIN pg_class c ON c.oid = pt.partrelid
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = $1 AND c.relname = $2
        """
        children_query = """
            SELECT
                cn.nspname AS schema,
                c.relname AS name,
                pg_get_expr(c.relpartbound, c.oid) AS bound,
                ts.spcname AS tablespace,
                c.relkind = 'p' AS is_partitioned
            FROM pg_inherits inh
            JOIN pg_class c ON c.oid = inh.inhrelid
            JOIN pg_namespace cn ON cn.oid = c.relnamespace
            JOIN pg_class p ON p.oid = inh.inhparent
            JOIN pg_namespace pn ON pn.oid = p.relnamespace
            LEFT JOIN pg_tablespace ts ON ts.oid = c.reltablespace
            WHERE pn.nspname = $1 AND p.relname = $2
            ORDER BY c.relname
        """
        try:
            row = await self.pool.fetchrow(key_query, schema, table)
            if row is None:
                return None
            children = await self.pool.fetch(children_query, schema, table)
        except Exception as e:
            logger.error(f"Error getting partitions for {schema}.{table}: {e}")
            raise SchemaError(f"Failed to get partition info: {e}") from e

        if row["has_expressions"]:
            raise SchemaError(
                f"{schema}.{table} is partitioned by an expression ({row['key_definition']})"
            )
        return PartitionInfo(
            strategy=_STRATEGIES[row["strategy"]],
            key=list(row["key"]),
            key_definition=row["key_definition"],
            children=[
                PartitionChild(
                    schema=child["schema"],
                    name=child["name"],
                    bound=parse_partition_bound(child["bound"]),
                    raw_bound=child["bound"],
                    tablespace=child["tablespace"],
                    is_partitioned=child["is_partitioned"],
                )
                for child in children
            ],
        )

    async def leaf_partitions(self, schema: str, table: str) -> List[Tuple[str, str]]:
        """``(schema, name)`` of every leaf relation holding the table's rows."""
        query = """
            SELECT n.nspname AS schema, c.relname AS name
            FROM pg_partition_tree(format('%I.%I', $1::text, $2::text)::regclass) t
            JOIN pg_class c ON c.oid = t.relid
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE t.isleaf
            ORDER BY t.level, c.relname
        """
        try:
            rows = await self.pool.fetch(query, schema, table)
        except Exception as e:
            logger.error(f"Error listing leaf partitions of {schema}.{table}: {e}")
            raise SchemaError(f"Failed to list leaf partitions: {e}") from e
        leaves = [(row["schema"], row["name"]) for row in rows]
        return leaves or [(schema, table)]

    async def relation_size(self, schema: str, table: str) -> int:
        """Total bytes of the table, its partitions, indexes and TOAST."""
        query = """
            SELECT coalesce(sum(pg_total_relation_size(t.relid)), 0)::bigint
            FROM pg_partition_tree(format('%I.%I', $1::text, $2::text)::regclass) t
        """
        try:
            return int(await self.pool.fetchval(query, schema, table) or 0)
        except Exception as e:
            logger.error(f"Error getting size of {schema}.{table}: {e}")
            raise SchemaError(f"Failed to get relation size: {e}") from e

    async def get_partition_size_info(self, schema: str, table: str) -> List[PartitionSizeInfo]:
        """Size and row statistics of every leaf partition below the table."""
        query = """
            SELECT
                n.nspname AS schema,
                c.relname AS name,
                format('%I.%I', pn.nspname, p.relname) AS parent,
                coalesce(pg_get_expr(c.relpartbound, c.oid), '') AS bound,
                ts.spcname AS tablespace,
                pg_total_relation_size(c.oid) AS size_bytes,
                pg_relation_size(c.oid) AS heap_bytes,
                greatest(c.reltuples, 0)::bigint AS row_estimate,
                coalesce(s.n_live_tup, 0) AS live_rows,
                greatest(s.last_analyze, s.last_autoanalyze) AS last_analyzed
            FROM pg_partition_tree(format('%I.%I', $1::text, $2::text)::regclass) t
            JOIN pg_class c ON c.oid = t.relid
            JOIN pg_namespace n ON n.oid = c.relnamespace
            JOIN pg_class p ON p.oid = t.parentrelid
            JOIN pg_namespace pn ON pn.oid = p.relnamespace
            LEFT JOIN pg_tablespace ts ON ts.oid = c.reltablespace
            LEFT JOIN pg_stat_user_tables s ON s.relid = c.oid
            WHERE t.isleaf AND t.level > 0
            ORDER BY t.level, c.relname
        """
        try:
            rows = await self.pool.fetch(query, schema, table)
        except Exception as e:
            logger.error(f"Error getting partition sizes of {schema}.{table}: {e}")
            raise SchemaError(f"Failed to get partition sizes: {e}") from e
        return [
            PartitionSizeInfo(
                schema=row["schema"],
                name=row["name"],
                parent=row["parent"],
                bound=row["bound"],
                tablespace=row["tablespace"],
                size_bytes=int(row["size_bytes"] or 0),
                heap_bytes=int(row["heap_bytes"] or 0),
                row_estimate=int(row["row_estimate"] or 0),
                live_rows=int(row["live_rows"] or 0),
                last_analyzed=row["last_analyzed"],
            )
            for row in rows
        ]

    async def find_empty_partitions(self, schema: str, table: str) -> List[PartitionSizeInfo]:
        """Leaf partitions without rows or without heap pages."""
        return [p for p in await self.get_partition_size_info(schema, table) if p.is_empty]

    async def find_large_partitions(
        self, schema: str, table: str, threshold_mb: float = DEFAULT_LARGE_PARTITION_MB
    ) -> List[PartitionSizeInfo]:
        """Leaf partitions larger than ``threshold_mb``, largest first."""
        large = [p for p in await self.get_partition_size_info(schema, table) if p.size_mb > threshold_mb]
        return sorted(large, key=lambda p: p.size_bytes, reverse=True)

    async def estimate_move_time(
        self,
        schema: str,
        table: str,
        parallel_degree: int = 4,
        throughput_mb_per_minute: float = DEFAULT_MOVE_THROUGHPUT_MB,
    ) -> int:
        """Rough minutes needed to relocate the table or partition."""
        size = await self.relation_size(schema, table)
        return estimate_move_minutes(size, parallel_degree, throughput_mb_per_minute)

    async def tablespace_size(self, tablespace: str) -> int:
        try:
            return int(await self.pool.fetchval("SELECT pg_tablespace_size($1::name)", tablespace) or 0)
        except Exception as e:
            logger.error(f"Error getting size of tablespace {tablespace}: {e}")
            raise SchemaError(f"Failed to get tablespace size: {e}") from e

    async def server_version(self) -> int:
        """``server_version_num``, e.g. 160002."""
        try:
            return int(await self.pool.fetchval("SELECT current_setting('server_version_num')::int"))
        except Exception as e:
            logger.error(f"Error getting server version: {e}")
            raise DatabaseError(f"Failed to get server version: {e}") from e

    # ------------------------------------------------------------------
    # reflection

    async def reflect_definition(self, schema: str, table: str) -> TableDefinition:
        """Build a ``TableDefinition`` describing a live table."""
        info = await self.get_table_info(schema, table)
        if info is None:
            raise SchemaError(f"Table {schema}.{table} does not exist")

        columns = await self.get_columns(schema, table)
        constraints = await self.get_constraints(schema, table)
        indexes = await self.get_indexes(schema, table)

        srid = None
        column_descriptors = []
        for column in columns:
            data_type, params, column_srid = parse_type(column.data_type)
            srid = srid or column_srid
            identity = None
            if column.identity == "a":
                identity = IdentityMode.ALWAYS
            elif column.identity == "d":
                identity = IdentityMode.BY_DEFAULT
            default = None
            if column.default_value is not None and identity is None:
                default = SqlExpression(expression=column.default_value)
            column_descriptors.append(
                ColumnDescriptor(
                    name=column.name,
                    data_type=data_type,
                    nullable=column.is_nullable,
                    default=default,
                    identity=identity,
                    comment=column.comment,
                    **params,
                )
            )

        kind = TableKind.HEAP
        if info.persistence == "t":
            kind = TableKind.TEMPORARY
        elif info.is_partitioned:
            kind = TableKind.PARTITIONED
        elif info.access_method == "columnar":
            kind = TableKind.COLUMNAR
        elif any(i.is_primary and i.is_clustered for i in indexes):
            kind = TableKind.INDEX_ORGANIZED

        fill_factor = info.options.get("fillfactor")
        parallel = info.options.get("parallel_workers")
        properties = TableProperties(
            tablespace=info.tablespace,
            logging=LoggingMode.UNLOGGED if info.persistence == "u" else LoggingMode.LOGGED,
            parallel_degree=int(parallel) if parallel else None,
            fill_factor=int(fill_factor) if fill_factor and kind != TableKind.INDEX_ORGANIZED else None,
            comment=info.comment,
            srid=srid or 4326,
        )

        partitioning = None
        partitions: Tuple[PartitionDescriptor, ...] = ()
        if info.is_partitioned:
            partitioning, partitions = await self._reflect_partitions(schema, table)

        definition = TableDefinition(
            name=table,
            schema_name=schema,
            kind=kind,
            columns=tuple(column_descriptors),
            constraints=tuple(self._reflect_constraint(c) for c in constraints),
            partitioning=partitioning,
            partitions=partitions,
            properties=properties,
        )
        logger.debug(f"Reflected {schema}.{table} as a {kind.value} table")
        return definition

    @staticmethod
    def _reflect_constraint(info: ConstraintInfo) -> ConstraintDescriptor:
        kind = _CONSTRAINT_KINDS[info.kind]
        check_expression = None
        if kind == ConstraintKind.CHECK:
            definition = re.sub(r"\s+NOT VALID$", "", info.definition.strip())
            match = re.match(r"^CHECK\s*\((.*)\)$", definition, re.DOTALL)
            check_expression = match.group(1) if match else definition
        return ConstraintDescriptor(
            name=info.name,
            kind=kind,
            columns=tuple(info.columns) if kind != ConstraintKind.CHECK else (),
            references_table=info.referenced_table,
            references_schema=info.referenced_schema if info.referenced_schema != info.table_schema else None,
            references_columns=tuple(info.referenced_columns),
            on_delete=_ON_DELETE.get(info.on_delete or "a"),
            check_expression=check_expression,
            deferrable=info.deferrable,
            initially_deferred=info.initially_deferred,
        )

    async def _reflect_partitions(
        self, schema: str, table: str
    ) -> Tuple[PartitionScheme, Tuple[PartitionDescriptor, ...]]:
        info = await self.get_partition_info(schema, table)
        if info is None:
            raise SchemaError(f"{schema}.{table} is not partitioned")

        partitions = []
        for child in self._ordered(info):
            subpartition = None
            if child.is_partitioned:
                subpartition = await self._reflect_subpartitioning(child)
            bound = child.bound
            partitions.append(
                PartitionDescriptor(
                    name=_strip_prefix(child.name, f"{table}_"),
                    values=bound.upper or bound.values,
                    is_default=bound.is_default,
                    tablespace=child.tablespace,
                    subpartition=subpartition,
                )
            )
        scheme = PartitionScheme(strategy=info.strategy, key=tuple(info.key))
        return scheme, tuple(partitions)

    async def _reflect_subpartitioning(self, child: PartitionChild) -> SubpartitionSpec:
        info = await self.get_partition_info(child.schema, child.name)
        if info is None:
            raise SchemaError(f"{child.schema}.{child.name} is not partitioned")
        if any(c.is_partitioned for c in info.children):
            raise SchemaError(f"{child.schema}.{child.name} has more than two partitioning levels")
        subpartitions = tuple(
            SubpartitionDescriptor(
                name=_strip_prefix(sub.name, f"{child.name}_"),
                values=sub.bound.upper or sub.bound.values,
                is_default=sub.bound.is_default,
                tablespace=sub.tablespace,
            )
            for sub in self._ordered(info)
        )
        return SubpartitionSpec(
            strategy=info.strategy,
            key=tuple(info.key),
            count=len(subpartitions) if info.strategy == PartitionStrategy.HASH else None,
            subpartitions=subpartitions,
        )

    @staticmethod
    def _ordered(info: PartitionInfo) -> List[PartitionChild]:
        """Children in bound order; DEFAULT last."""
        children = list(info.children)
        defaults = [c for c in children if c.bound.is_default]
        others = [c for c in children if not c.bound.is_default]
        if info.strategy == PartitionStrategy.HASH:
            others.sort(key=lambda c: c.bound.remainder or 0)
        elif info.strategy == PartitionStrategy.RANGE:
            try:
                others.sort(key=lambda c: _bound_sort_key(c.bound))
            except TypeError:
                logger.warning(f"Range bounds of {info.key_definition} are not comparable; keeping catalog order")
        return others + defaults
