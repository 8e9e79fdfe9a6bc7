"""
Descriptor model for pgshift.

Immutable value objects describing columns, constraints, partitions and
table-level properties. A ``TableDefinition`` is built by a caller (or
loaded from YAML, or reflected from a live schema), validated, and then
consumed by the synthesis engine. Nothing mutates it afterwards.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BaseType(str, Enum):
    """Column base types."""

    SMALLINT = "smallint"
    INTEGER = "integer"
    BIGINT = "bigint"
    NUMERIC = "numeric"
    REAL = "real"
    DOUBLE = "double"
    VARCHAR = "varchar"
    CHAR = "char"
    TEXT = "text"
    DATE = "date"
    TIMESTAMP = "timestamp"
    TIMESTAMPTZ = "timestamptz"
    INTERVAL = "interval"
    BOOLEAN = "boolean"
    BYTEA = "bytea"
    UUID = "uuid"
    JSON = "json"
    JSONB = "jsonb"
    GEOMETRY = "geometry"

    @property
    def is_integer(self) -> bool:
        return self in (BaseType.SMALLINT, BaseType.INTEGER, BaseType.BIGINT)

    @property
    def is_varlena(self) -> bool:
        """Types stored out of line and eligible for column compression."""
        return self in (
            BaseType.VARCHAR,
            BaseType.TEXT,
            BaseType.BYTEA,
            BaseType.JSON,
            BaseType.JSONB,
            BaseType.GEOMETRY,
        )

    @property
    def is_document(self) -> bool:
        return self in (BaseType.JSON, BaseType.JSONB)


# Accepted spellings from other dialects and common shorthands
TYPE_ALIASES: Dict[str, BaseType] = {
    "number": BaseType.NUMERIC,
    "decimal": BaseType.NUMERIC,
    "int": BaseType.INTEGER,
    "int4": BaseType.INTEGER,
    "int8": BaseType.BIGINT,
    "int2": BaseType.SMALLINT,
    "float": BaseType.DOUBLE,
    "float8": BaseType.DOUBLE,
    "float4": BaseType.REAL,
    "double precision": BaseType.DOUBLE,
    "binary_double": BaseType.DOUBLE,
    "binary_float": BaseType.REAL,
    "varchar2": BaseType.VARCHAR,
    "nvarchar2": BaseType.VARCHAR,
    "character varying": BaseType.VARCHAR,
    "character": BaseType.CHAR,
    "nchar": BaseType.CHAR,
    "clob": BaseType.TEXT,
    "nclob": BaseType.TEXT,
    "blob": BaseType.BYTEA,
    "raw": BaseType.BYTEA,
    "bool": BaseType.BOOLEAN,
    "timestamp with time zone": BaseType.TIMESTAMPTZ,
    "timestamp without time zone": BaseType.TIMESTAMP,
    "sdo_geometry": BaseType.GEOMETRY,
}


class IdentityMode(str, Enum):
    """Identity column generation modes."""

    ALWAYS = "always"
    BY_DEFAULT = "by_default"


class ConstraintKind(str, Enum):
    """Constraint kinds."""

    PRIMARY_KEY = "primary"
    UNIQUE = "unique"
    FOREIGN_KEY = "foreign"
    CHECK = "check"


class ReferentialAction(str, Enum):
    """Foreign key ON DELETE actions."""

    NO_ACTION = "no_action"
    RESTRICT = "restrict"
    CASCADE = "cascade"
    SET_NULL = "set_null"
    SET_DEFAULT = "set_default"


class PartitionStrategy(str, Enum):
    """Partitioning strategies.

    ``REFERENCE`` derives the scheme from the parent table named by a
    foreign key. Composite partitioning is expressed by attaching a
    ``SubpartitionSpec`` to a range, list or hash scheme.
    """

    RANGE = "range"
    LIST = "list"
    HASH = "hash"
    REFERENCE = "reference"


class Placement(str, Enum):
    """How tablespaces are assigned to generated (sub)partitions."""

    ROUND_ROBIN = "round_robin"
    EXPLICIT = "explicit"


class BoundSentinel(str, Enum):
    """Open range bounds."""

    MINVALUE = "MINVALUE"
    MAXVALUE = "MAXVALUE"


class TableKind(str, Enum):
    """Closed set of table shapes the engine can render."""

    HEAP = "heap"
    PARTITIONED = "partitioned"
    INDEX_ORGANIZED = "index_organized"
    TEMPORARY = "temporary"
    APPEND_ONLY = "append_only"
    COLUMNAR = "columnar"
    SEMI_STRUCTURED = "semi_structured"
    SPATIAL = "spatial"


class LoggingMode(str, Enum):
    LOGGED = "logged"
    UNLOGGED = "unlogged"


class Compression(str, Enum):
    PGLZ = "pglz"
    LZ4 = "lz4"


class TemporaryScope(str, Enum):
    """Lifetime of rows in a temporary table."""

    SESSION = "session"          # ON COMMIT PRESERVE ROWS
    TRANSACTION = "transaction"  # ON COMMIT DELETE ROWS


class SqlExpression(BaseModel):
    """A raw SQL expression supplied by the caller.

    Expressions are rendered verbatim after passing the engine's sanitizer;
    plain Python values are rendered as escaped literals instead.
    """

    model_config = ConfigDict(frozen=True)

    expression: str

    def __str__(self) -> str:
        return self.expression


LiteralValue = Union[SqlExpression, bool, int, Decimal, float, datetime, date, str]
BoundValue = Union[BoundSentinel, bool, int, Decimal, float, datetime, date, str, None]


def _coerce_sentinels(values: Any) -> Any:
    if isinstance(values, (list, tuple)):
        return tuple(
            BoundSentinel(v.upper())
            if isinstance(v, str) and v.upper() in BoundSentinel.__members__
            else v
            for v in values
        )
    return values


class _Descriptor(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)


class ColumnDescriptor(_Descriptor):
    """A single column."""

    name: str
    data_type: BaseType = Field(..., alias="type")
    length: Optional[int] = Field(None, ge=1)
    precision: Optional[int] = Field(None, ge=1)
    scale: Optional[int] = Field(None, ge=0)
    nullable: bool = True
    default: Optional[LiteralValue] = None
    identity: Optional[IdentityMode] = None
    comment: Optional[str] = None

    @field_validator("data_type", mode="before")
    @classmethod
    def normalize_type(cls, v):
        if isinstance(v, str):
            key = v.strip().lower()
            return TYPE_ALIASES.get(key, key)
        return v


class ConstraintDescriptor(_Descriptor):
    """A table constraint."""

    name: str
    kind: ConstraintKind
    columns: Tuple[str, ...] = ()
    references_table: Optional[str] = None
    references_schema: Optional[str] = None
    references_columns: Tuple[str, ...] = ()
    on_delete: Optional[ReferentialAction] = None
    check_expression: Optional[str] = None
    deferrable: bool = False
    initially_deferred: bool = False

    @property
    def is_index_backed(self) -> bool:
        return self.kind in (ConstraintKind.PRIMARY_KEY, ConstraintKind.UNIQUE)


class SubpartitionDescriptor(_Descriptor):
    """An explicit list or range subpartition."""

    name: str
    values: Tuple[BoundValue, ...] = ()
    is_default: bool = False
    tablespace: Optional[str] = None

    @field_validator("values", mode="before")
    @classmethod
    def coerce_sentinels(cls, v):
        return _coerce_sentinels(v)


class SubpartitionSpec(_Descriptor):
    """Second-level partitioning applied inside each partition.

    Hash subpartitioning is declared with ``count``; list and range
    subpartitioning with explicit ``subpartitions``. Tablespaces are
    spread over hash subpartitions either round-robin
    (``tablespaces[i % len(tablespaces)]``) or positionally.
    """

    strategy: PartitionStrategy
    key: Tuple[str, ...]
    count: Optional[int] = Field(None, ge=1)
    tablespaces: Tuple[str, ...] = ()
    placement: Placement = Placement.ROUND_ROBIN
    subpartitions: Tuple[SubpartitionDescriptor, ...] = ()

    def tablespace_for(self, index: int) -> Optional[str]:
        """Tablespace of the ``index``-th generated hash subpartition."""
        if not self.tablespaces:
            return None
        if self.placement == Placement.EXPLICIT:
            return self.tablespaces[index] if index < len(self.tablespaces) else None
        return self.tablespaces[index % len(self.tablespaces)]


class PartitionDescriptor(_Descriptor):
    """A first-level partition.

    For range partitions ``values`` is the exclusive upper bound (one
    value per key column); for list partitions it is the value list.
    Hash partitions carry no values.
    """

    name: str
    values: Tuple[BoundValue, ...] = ()
    is_default: bool = False
    tablespace: Optional[str] = None
    subpartition: Optional[SubpartitionSpec] = None

    @field_validator("values", mode="before")
    @classmethod
    def coerce_sentinels(cls, v):
        return _coerce_sentinels(v)


class PartitionScheme(_Descriptor):
    """Table-level partitioning declaration."""

    strategy: PartitionStrategy
    key: Tuple[str, ...] = ()
    reference_constraint: Optional[str] = None
    count: Optional[int] = Field(None, ge=1)
    tablespaces: Tuple[str, ...] = ()
    placement: Placement = Placement.ROUND_ROBIN
    subpartition: Optional[SubpartitionSpec] = None

    @property
    def is_composite(self) -> bool:
        return self.subpartition is not None

    def tablespace_for(self, index: int) -> Optional[str]:
        """Tablespace of the ``index``-th generated hash partition."""
        if not self.tablespaces:
            return None
        if self.placement == Placement.EXPLICIT:
            return self.tablespaces[index] if index < len(self.tablespaces) else None
        return self.tablespaces[index % len(self.tablespaces)]


class TableProperties(_Descriptor):
    """Storage and organization options."""

    tablespace: Optional[str] = None
    logging: LoggingMode = LoggingMode.LOGGED
    compression: Optional[Compression] = None
    parallel_degree: Optional[int] = Field(None, ge=1)
    in_memory: bool = False
    fill_factor: Optional[int] = Field(None, ge=10, le=100)
    comment: Optional[str] = None
    temporary_scope: TemporaryScope = TemporaryScope.TRANSACTION
    semi_structured_columns: Tuple[str, ...] = ()
    spatial_columns: Tuple[str, ...] = ()
    srid: int = 4326


class TableDefinition(_Descriptor):
    """Aggregate describing one table."""

    name: str
    schema_name: Optional[str] = Field(None, alias="schema")
    kind: TableKind = TableKind.HEAP
    columns: Tuple[ColumnDescriptor, ...] = ()
    constraints: Tuple[ConstraintDescriptor, ...] = ()
    partitioning: Optional[PartitionScheme] = None
    partitions: Tuple[PartitionDescriptor, ...] = ()
    properties: TableProperties = Field(default_factory=TableProperties)

    @property
    def qualified_name(self) -> str:
        if self.schema_name and self.kind != TableKind.TEMPORARY:
            return f"{self.schema_name}.{self.name}"
        return self.name

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> Optional[ColumnDescriptor]:
        """Find a column by name, ignoring case."""
        lowered = name.lower()
        for col in self.columns:
            if col.name.lower() == lowered:
                return col
        return None

    def constraint(self, name: str) -> Optional[ConstraintDescriptor]:
        lowered = name.lower()
        for constraint in self.constraints:
            if constraint.name.lower() == lowered:
                return constraint
        return None

    @property
    def primary_key(self) -> Optional[ConstraintDescriptor]:
        for constraint in self.constraints:
            if constraint.kind == ConstraintKind.PRIMARY_KEY:
                return constraint
        return None

    @property
    def foreign_keys(self) -> List[ConstraintDescriptor]:
        return [c for c in self.constraints if c.kind == ConstraintKind.FOREIGN_KEY]

    @property
    def is_partitioned(self) -> bool:
        return self.partitioning is not None

    def partition_table_name(self, partition: str) -> str:
        """Relation name of a partition; partition names are table-scoped."""
        return f"{self.name}_{partition}"

    def subpartition_table_name(self, partition: str, subpartition: str) -> str:
        return f"{self.name}_{partition}_{subpartition}"

    def index_name(self, column: str, suffix: str) -> str:
        return f"{self.name}_{column}_{suffix}"

    @property
    def guard_function_name(self) -> str:
        return f"{self.name}_append_only_guard"

    def semi_structured_column_names(self) -> List[str]:
        listed = list(self.properties.semi_structured_columns)
        return listed or [c.name for c in self.columns if c.data_type.is_document]

    def spatial_column_names(self) -> List[str]:
        listed = list(self.properties.spatial_columns)
        return listed or [c.name for c in self.columns if c.data_type == BaseType.GEOMETRY]

    def auxiliary_names(self) -> List[str]:
        """Names of indexes, checks, functions and triggers a kind adds."""
        names: List[str] = []
        if self.kind == TableKind.APPEND_ONLY:
            names += [self.guard_function_name, f"{self.name}_append_only", f"{self.name}_no_truncate"]
        elif self.kind == TableKind.SEMI_STRUCTURED:
            for column in self.semi_structured_column_names():
                names += [self.index_name(column, "json"), self.index_name(column, "gin")]
        elif self.kind == TableKind.SPATIAL:
            for column in self.spatial_column_names():
                names.append(self.index_name(column, "gist"))
        return names

    def effective_partitions(self) -> Tuple[PartitionDescriptor, ...]:
        """Declared partitions, or generated ones for a counted hash scheme."""
        scheme = self.partitioning
        if scheme is None:
            return ()
        if self.partitions or scheme.strategy != PartitionStrategy.HASH or not scheme.count:
            return self.partitions
        return tuple(
            PartitionDescriptor(name=f"p{i}", tablespace=scheme.tablespace_for(i))
            for i in range(scheme.count)
        )

    def subpartitioning_for(self, partition: PartitionDescriptor) -> Optional[SubpartitionSpec]:
        if partition.subpartition is not None:
            return partition.subpartition
        return self.partitioning.subpartition if self.partitioning else None


def effective_subpartitions(spec: SubpartitionSpec) -> Tuple[SubpartitionDescriptor, ...]:
    """Explicit subpartitions, or generated ones for hash subpartitioning."""
    if spec.strategy == PartitionStrategy.HASH and spec.count and not spec.subpartitions:
        return tuple(
            SubpartitionDescriptor(name=f"sp{i}", tablespace=spec.tablespace_for(i))
            for i in range(spec.count)
        )
    return spec.subpartitions
