"""
DDL synthesis engine for pgshift.

Turns validated table definitions into PostgreSQL statement text. Every
``TableKind`` has exactly one renderer; the registry is checked when the
engine is built, so a kind without a renderer fails fast instead of
falling through to a default.

Rendering is pure: the same definition always produces the same text.
"""

import logging
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from ..descriptors.model import (
    BaseType,
    ConstraintKind,
    IdentityMode,
    LoggingMode,
    PartitionDescriptor,
    PartitionScheme,
    PartitionStrategy,
    SubpartitionSpec,
    TableDefinition,
    TableKind,
    TemporaryScope,
    effective_subpartitions,
)
from ..descriptors.sanitize import Sanitizer, default_sanitizer
from ..descriptors.validator import DescriptorValidator, Violation
from ..exceptions import SynthesisError, ValidationError
from .clauses import (
    render_column,
    render_comments,
    render_constraint,
    render_hash_bound,
    render_list_bound,
    render_partition_by,
    render_range_bound,
    render_storage,
)
from .literals import column_list, qualify, quote_ident
from .steps import DDLScript, ScriptBuilder, StatementText


logger = logging.getLogger(__name__)

Known = Dict[str, TableDefinition]
KnownInput = Union[None, Mapping[str, TableDefinition], Iterable[TableDefinition]]


class ConversionMode(str, Enum):
    """How existing partitions are turned into subpartitioned ones."""

    REBUILD = "rebuild"  # composite copy of the whole table, then swap names
    ONLINE = "online"    # per-partition replacement swapped with DETACH/ATTACH


def join_statements(statements: Sequence[str]) -> str:
    if not statements:
        return ""
    return ";\n\n".join(statements) + ";\n"


def _known_map(known: KnownInput) -> Known:
    if known is None:
        return {}
    if isinstance(known, Mapping):
        return {name.lower(): d for name, d in known.items()}
    return {d.name.lower(): d for d in known}


def key_types(definition: TableDefinition, key: Sequence[str]) -> List[Optional[BaseType]]:
    types = []
    for name in key:
        column = definition.column(name)
        types.append(column.data_type if column else None)
    return types


def typed_bound(value, base_type: Optional[BaseType]):
    """Bound value as the key column's type.

    Dates and timestamps arrive as ISO strings when a definition was
    stored as JSON; they are parsed back so they render as typed literals.
    """
    if not isinstance(value, str):
        return value
    try:
        if base_type == BaseType.DATE:
            return date.fromisoformat(value)
        if base_type in (BaseType.TIMESTAMP, BaseType.TIMESTAMPTZ):
            return datetime.fromisoformat(value)
    except ValueError:
        return value
    return value


class SynthesisEngine:
    """Renders table definitions into statement text."""

    def __init__(
        self,
        validator: Optional[DescriptorValidator] = None,
        sanitizer: Optional[Sanitizer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.sanitizer = sanitizer or default_sanitizer
        self.validator = validator or DescriptorValidator(sanitizer=self.sanitizer)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._renderers: Dict[TableKind, Callable[[TableDefinition, Known], List[str]]] = {
            TableKind.HEAP: self._render_heap,
            TableKind.PARTITIONED: self._render_partitioned,
            TableKind.INDEX_ORGANIZED: self._render_index_organized,
            TableKind.TEMPORARY: self._render_temporary,
            TableKind.APPEND_ONLY: self._render_append_only,
            TableKind.COLUMNAR: self._render_columnar,
            TableKind.SEMI_STRUCTURED: self._render_semi_structured,
            TableKind.SPATIAL: self._render_spatial,
        }
        missing = [kind.value for kind in TableKind if kind not in self._renderers]
        if missing:
            raise SynthesisError(f"No renderer registered for table kind(s): {', '.join(missing)}")

    # ------------------------------------------------------------------
    # public API

    def synthesize(self, definition: TableDefinition, known: KnownInput = None) -> StatementText:
        """Validate ``definition`` and render it.

        ``known`` holds other definitions (a mapping by name or a list)
        used to resolve foreign key targets and reference-partitioning
        parents.
        """
        known_map = _known_map(known)
        self.validator.check(definition, known_map)
        statements = self.render_statements(definition, known_map)
        return self._to_text(definition, statements)

    def render_statements(self, definition: TableDefinition, known: KnownInput = None) -> List[str]:
        """Render without validating. Callers must validate first."""
        renderer = self._renderers.get(definition.kind)
        if renderer is None:
            raise SynthesisError(f"No renderer for table kind {definition.kind!r}")
        statements = renderer(definition, _known_map(known))
        logger.debug(
            f"Rendered {len(statements)} statement(s) for {definition.qualified_name} "
            f"({definition.kind.value})"
        )
        return statements

    def synthesize_heap_ddl(self, definition: TableDefinition, known: KnownInput = None) -> StatementText:
        return self._synthesize_as(TableKind.HEAP, definition, known)

    def synthesize_partitioned_ddl(self, definition: TableDefinition, known: KnownInput = None) -> StatementText:
        return self._synthesize_as(TableKind.PARTITIONED, definition, known)

    def synthesize_index_organized_ddl(self, definition: TableDefinition, known: KnownInput = None) -> StatementText:
        return self._synthesize_as(TableKind.INDEX_ORGANIZED, definition, known)

    def synthesize_temporary_ddl(self, definition: TableDefinition, known: KnownInput = None) -> StatementText:
        return self._synthesize_as(TableKind.TEMPORARY, definition, known)

    def synthesize_append_only_ddl(self, definition: TableDefinition, known: KnownInput = None) -> StatementText:
        return self._synthesize_as(TableKind.APPEND_ONLY, definition, known)

    def synthesize_columnar_ddl(self, definition: TableDefinition, known: KnownInput = None) -> StatementText:
        return self._synthesize_as(TableKind.COLUMNAR, definition, known)

    def synthesize_semi_structured_ddl(self, definition: TableDefinition, known: KnownInput = None) -> StatementText:
        return self._synthesize_as(TableKind.SEMI_STRUCTURED, definition, known)

    def synthesize_spatial_ddl(self, definition: TableDefinition, known: KnownInput = None) -> StatementText:
        return self._synthesize_as(TableKind.SPATIAL, definition, known)

    def generate_bulk_ddl(self, definitions: Sequence[TableDefinition]) -> StatementText:
        """Render several tables into one script, in the order given.

        Tables are not reordered by foreign key dependency: callers list
        referenced tables before the tables that reference them. Each
        definition can resolve reference-partitioning parents among the
        definitions listed before it.
        """
        definitions = list(definitions)
        if not definitions:
            raise SynthesisError("No definitions to generate")

        violations: List[Violation] = []
        known: Known = {}
        for definition in definitions:
            key = definition.name.lower()
            if key in known and known[key].schema_name == definition.schema_name:
                violations.append(
                    Violation(definition.name, "table.duplicate", f"table '{definition.name}' is listed twice")
                )
            for violation in self.validator.validate(definition, known):
                violations.append(
                    Violation(f"{definition.name}.{violation.path}", violation.code, violation.message)
                )
            known[key] = definition
        if violations:
            raise ValidationError(violations)

        known = {}
        blocks = []
        all_statements: List[str] = []
        for definition in definitions:
            statements = self.render_statements(definition, known)
            known[definition.name.lower()] = definition
            all_statements.extend(statements)
            blocks.append(
                f"-- Table: {definition.qualified_name} ({definition.kind.value})\n"
                + join_statements(statements)
            )

        names = [d.qualified_name for d in definitions]
        header = (
            f"-- Generated DDL: {len(definitions)} table(s)\n"
            f"-- Tables: {', '.join(names)}\n"
        )
        logger.info(f"Generated bulk DDL for {len(definitions)} table(s)")
        return StatementText(
            text=header + "\n" + "\n".join(blocks),
            target=", ".join(names),
            kind="bulk",
            generated_at=self._clock(),
            statements=tuple(all_statements),
        )

    def clone_definition(
        self,
        source: TableDefinition,
        new_name: str,
        new_schema: Optional[str] = None,
    ) -> TableDefinition:
        """Same structure under ``new_name`` with constraint names re-derived.

        Partition tables follow automatically since their names are built
        from the table name.
        """
        schema = new_schema if new_schema is not None else source.schema_name

        def rename(name: str) -> str:
            if name.lower().startswith(source.name.lower()):
                return new_name + name[len(source.name):]
            return f"{new_name}_{name}"

        constraints = []
        for constraint in source.constraints:
            update = {"name": rename(constraint.name)}
            if (
                constraint.kind == ConstraintKind.FOREIGN_KEY
                and (constraint.references_table or "").lower() == source.name.lower()
                and constraint.references_schema in (None, source.schema_name)
            ):
                update["references_table"] = new_name
                if constraint.references_schema is not None:
                    update["references_schema"] = schema
            constraints.append(constraint.model_copy(update=update))

        scheme = source.partitioning
        if scheme is not None and scheme.reference_constraint:
            scheme = scheme.model_copy(update={"reference_constraint": rename(scheme.reference_constraint)})

        return source.model_copy(
            update={
                "name": new_name,
                "schema_name": schema,
                "constraints": tuple(constraints),
                "partitioning": scheme,
            }
        )

    def generate_clone_ddl(
        self,
        source: TableDefinition,
        new_name: str,
        include_data: bool = False,
        new_schema: Optional[str] = None,
        known: KnownInput = None,
    ) -> StatementText:
        """Statement text for a structural copy of ``source``.

        With ``include_data`` an ``INSERT ... SELECT`` from the source
        follows the create statements.
        """
        clone = self.clone_definition(source, new_name, new_schema)
        known_map = _known_map(known)
        self.validator.check(clone, known_map)
        statements = self.render_statements(clone, known_map)
        if include_data:
            statements.append(self.copy_data_statement(source, clone))
        return self._to_text(clone, statements)

    def copy_data_statement(self, source: TableDefinition, target: TableDefinition) -> str:
        columns = column_list(source.column_names)
        overriding = ""
        if any(c.identity == IdentityMode.ALWAYS for c in target.columns):
            overriding = " OVERRIDING SYSTEM VALUE"
        return (
            f"INSERT INTO {self.table_name(target)} ({columns}){overriding}\n"
            f"SELECT {columns} FROM {self.table_name(source)}"
        )

    def composite_definition(
        self,
        definition: TableDefinition,
        subpartitioning: SubpartitionSpec,
    ) -> TableDefinition:
        """``definition`` with ``subpartitioning`` added to every partition."""
        scheme = definition.partitioning
        if definition.kind != TableKind.PARTITIONED or scheme is None:
            raise SynthesisError(f"{definition.qualified_name} is not partitioned")
        if scheme.strategy == PartitionStrategy.REFERENCE:
            raise SynthesisError(
                f"{definition.qualified_name} inherits its partitioning and cannot be subpartitioned directly"
            )
        if scheme.is_composite or any(p.subpartition is not None for p in definition.partitions):
            raise SynthesisError(f"{definition.qualified_name} is already subpartitioned")
        return definition.model_copy(
            update={"partitioning": scheme.model_copy(update={"subpartition": subpartitioning})}
        )

    def generate_subpartition_script(
        self,
        definition: TableDefinition,
        subpartitioning: SubpartitionSpec,
        mode: ConversionMode,
        *,
        target_suffix: str = "_new",
        retired_suffix: str = "_old",
        drop_retired: bool = False,
        parallel_degree: Optional[int] = None,
        known: KnownInput = None,
    ) -> DDLScript:
        """Steps that add subpartitioning to an existing partitioned table.

        ``mode`` is required: ``REBUILD`` builds a composite copy of the
        table and swaps names, ``ONLINE`` replaces one partition at a time
        so the table stays available.
        """
        mode = ConversionMode(mode)
        known_map = _known_map(known)
        self.validator.check(definition, known_map)
        target = self.composite_definition(definition, subpartitioning)
        self.validator.check(target, known_map)

        if mode == ConversionMode.REBUILD:
            script = self._rebuild_script(
                definition, target, target_suffix, retired_suffix, drop_retired, parallel_degree, known_map
            )
        else:
            script = self._online_script(
                definition, subpartitioning, target_suffix, retired_suffix, drop_retired, parallel_degree
            )
        logger.info(
            f"Planned {mode.value} subpartition conversion of {definition.qualified_name} "
            f"in {len(script)} step(s)"
        )
        return script

    def partition_bounds(self, definition: TableDefinition) -> List[Tuple[PartitionDescriptor, str]]:
        """Each partition paired with its ``FOR VALUES`` (or ``DEFAULT``) clause."""
        if definition.partitioning is None:
            return []
        return self._bounds(
            definition.partitioning.strategy,
            definition.effective_partitions(),
            key_types(definition, definition.partitioning.key),
        )

    # ------------------------------------------------------------------
    # partitioning an existing table

    def partitioned_definition(
        self,
        definition: TableDefinition,
        partitioning: PartitionScheme,
        partitions: Sequence[PartitionDescriptor] = (),
    ) -> TableDefinition:
        """``definition`` as a partitioned table with the given layout.

        Primary keys and unique constraints must contain every partition
        key column, as PostgreSQL enforces them per partition.
        """
        if definition.is_partitioned or definition.kind == TableKind.PARTITIONED:
            raise SynthesisError(f"{definition.qualified_name} is already partitioned")
        if definition.kind != TableKind.HEAP:
            raise SynthesisError(
                f"{definition.qualified_name} is a {definition.kind.value} table; only heap tables can be partitioned"
            )
        if partitioning.strategy == PartitionStrategy.REFERENCE:
            raise SynthesisError("Reference partitioning needs a partitioned parent table")
        key = {c.lower() for c in partitioning.key}
        for constraint in definition.constraints:
            if not constraint.is_index_backed:
                continue
            missing = key - {c.lower() for c in constraint.columns}
            if missing:
                raise SynthesisError(
                    f"{constraint.name} must include the partition key column(s) {', '.join(sorted(missing))}"
                )
        return definition.model_copy(
            update={
                "kind": TableKind.PARTITIONED,
                "partitioning": partitioning,
                "partitions": tuple(partitions),
            }
        )

    def generate_convert_to_partitioned_ddl(
        self,
        definition: TableDefinition,
        partitioning: PartitionScheme,
        partitions: Sequence[PartitionDescriptor] = (),
        *,
        target_suffix: str = "_new",
        retired_suffix: str = "_old",
        drop_retired: bool = False,
        parallel_degree: Optional[int] = None,
        known: KnownInput = None,
    ) -> DDLScript:
        """Steps that rebuild a heap table as a partitioned one and swap names."""
        known_map = _known_map(known)
        target = self.partitioned_definition(definition, partitioning, partitions)
        self.validator.check(target, known_map)
        script = self._rebuild_script(
            definition,
            target,
            target_suffix,
            retired_suffix,
            drop_retired,
            parallel_degree,
            known_map,
            title=f"Convert {definition.qualified_name} to {partitioning.strategy.value} partitioning",
        )
        logger.info(f"Planned partitioning of {definition.qualified_name} in {len(script)} step(s)")
        return script

    # ------------------------------------------------------------------
    # partition maintenance

    def with_partition(self, definition: TableDefinition, partition: PartitionDescriptor) -> TableDefinition:
        """``definition`` with ``partition`` appended after its declared partitions.

        Bound values of every partition are parsed to the key's types so
        JSON-supplied dates compare with reflected ones.
        """
        scheme = definition.partitioning
        if definition.kind != TableKind.PARTITIONED or scheme is None:
            raise SynthesisError(f"{definition.qualified_name} is not partitioned")
        if scheme.strategy in (PartitionStrategy.HASH, PartitionStrategy.REFERENCE):
            raise SynthesisError(
                f"{definition.qualified_name} uses {scheme.strategy.value} partitioning; "
                "partitions cannot be added one at a time"
            )
        types = key_types(definition, scheme.key)

        def typed(p: PartitionDescriptor) -> PartitionDescriptor:
            if scheme.strategy == PartitionStrategy.LIST:
                values = tuple(typed_bound(v, types[0] if types else None) for v in p.values)
            else:
                values = tuple(typed_bound(v, types[i] if i < len(types) else None) for i, v in enumerate(p.values))
            return p.model_copy(update={"values": values})

        existing = [typed(p) for p in definition.partitions]
        ordered = [p for p in existing if not p.is_default] + [typed(partition)]
        ordered += [p for p in existing if p.is_default]
        extended = definition.model_copy(update={"partitions": tuple(ordered)})
        self.validator.check(extended)
        return extended

    def partition_bound(self, definition: TableDefinition, partition: PartitionDescriptor) -> str:
        """``FOR VALUES`` clause ``partition`` gets when added to ``definition``."""
        extended = self.with_partition(definition, partition)
        for candidate, bound in self.partition_bounds(extended):
            if candidate.name == partition.name:
                return bound
        raise SynthesisError(f"Partition {partition.name} not found in {definition.qualified_name}")

    def generate_partition_ddl(self, definition: TableDefinition, partition: PartitionDescriptor) -> StatementText:
        """``CREATE TABLE ... PARTITION OF`` for one new partition (and its subpartitions)."""
        extended = self.with_partition(definition, partition)
        bound = self.partition_bound(definition, partition)
        added = next(p for p in extended.partitions if p.name == partition.name)
        statements = self._render_partition(extended, self.table_name(extended), added, bound)
        return StatementText(
            text=join_statements(statements),
            target=qualify(definition.partition_table_name(partition.name), definition.schema_name),
            kind="partition",
            generated_at=self._clock(),
            statements=tuple(statements),
        )

    def table_name(self, definition: TableDefinition) -> str:
        if definition.kind == TableKind.TEMPORARY:
            return quote_ident(definition.name)
        return qualify(definition.name, definition.schema_name)

    def resolve_reference(
        self,
        definition: TableDefinition,
        known: KnownInput,
        _seen: Optional[frozenset] = None,
    ) -> TableDefinition:
        """Replay the parent's partitioning on the foreign key columns.

        The parent's partition (and subpartition) key must be among the
        columns the foreign key references; the child gets one partition
        per parent partition with the same bounds.
        """
        known_map = _known_map(known)
        scheme = definition.partitioning
        fk = definition.constraint(scheme.reference_constraint or "") if scheme else None
        if fk is None or fk.kind != ConstraintKind.FOREIGN_KEY:
            raise SynthesisError(f"{definition.qualified_name} has no reference foreign key")

        parent_name = (fk.references_table or "").lower()
        seen = (_seen or frozenset()) | {definition.name.lower()}
        if parent_name in seen:
            raise SynthesisError(f"Reference partitioning cycle through {fk.references_table}")
        parent = known_map.get(parent_name)
        if parent is None:
            raise SynthesisError(
                f"Reference partitioning of {definition.qualified_name} needs the definition "
                f"of parent table {fk.references_table}",
                {"constraint": fk.name},
            )
        if parent.partitioning is None:
            raise SynthesisError(f"Parent table {parent.qualified_name} is not partitioned")
        if parent.partitioning.strategy == PartitionStrategy.REFERENCE:
            parent = self.resolve_reference(parent, known_map, seen)

        mapping = {ref.lower(): col for ref, col in zip(fk.references_columns, fk.columns)}

        def map_key(key: Sequence[str]) -> Tuple[str, ...]:
            mapped = []
            for column in key:
                if column.lower() not in mapping:
                    raise SynthesisError(
                        f"Partition key column {parent.name}.{column} is not referenced by "
                        f"foreign key {fk.name}",
                        {"table": definition.qualified_name},
                    )
                mapped.append(mapping[column.lower()])
            return tuple(mapped)

        def map_spec(spec: Optional[SubpartitionSpec]) -> Optional[SubpartitionSpec]:
            if spec is None:
                return None
            return spec.model_copy(update={"key": map_key(spec.key)})

        parent_scheme = parent.partitioning
        partitions = tuple(
            p.model_copy(update={"tablespace": None, "subpartition": map_spec(p.subpartition)})
            for p in parent.effective_partitions()
        )
        resolved = definition.model_copy(
            update={
                "partitioning": PartitionScheme(
                    strategy=parent_scheme.strategy,
                    key=map_key(parent_scheme.key),
                    subpartition=map_spec(parent_scheme.subpartition),
                ),
                "partitions": partitions,
            }
        )

        required = {k.lower() for k in resolved.partitioning.key}
        for partition in partitions:
            spec = resolved.subpartitioning_for(partition)
            if spec is not None:
                required |= {k.lower() for k in spec.key}
        for constraint in definition.constraints:
            missing = required - {c.lower() for c in constraint.columns}
            if constraint.is_index_backed and missing:
                raise SynthesisError(
                    f"{constraint.name} must include inherited partition key column(s) "
                    f"{', '.join(sorted(missing))}",
                    {"table": definition.qualified_name},
                )
        return resolved

    # ------------------------------------------------------------------
    # kind renderers

    def _render_heap(self, definition: TableDefinition, known: Known) -> List[str]:
        table = self.table_name(definition)
        return [self._create_table(definition, table)] + render_comments(definition, table)

    def _render_partitioned(self, definition: TableDefinition, known: Known) -> List[str]:
        if definition.partitioning.strategy == PartitionStrategy.REFERENCE:
            definition = self.resolve_reference(definition, known)
        scheme = definition.partitioning
        table = self.table_name(definition)

        statements = [
            self._create_table(
                definition,
                table,
                partition_by=render_partition_by(scheme.strategy, scheme.key),
                leaf=False,
            )
        ]
        for partition, bound in self.partition_bounds(definition):
            statements.extend(self._render_partition(definition, table, partition, bound))
        return statements + render_comments(definition, table)

    def _render_index_organized(self, definition: TableDefinition, known: Known) -> List[str]:
        pk = definition.primary_key
        if pk is None:
            raise SynthesisError(f"{definition.qualified_name} has no primary key to organize by")
        table = self.table_name(definition)
        fill_factor = definition.properties.fill_factor or 100
        return [
            self._create_table(definition, table, fill_factor=fill_factor),
            f"ALTER TABLE {table} CLUSTER ON {quote_ident(pk.name)}",
        ] + render_comments(definition, table)

    def _render_temporary(self, definition: TableDefinition, known: Known) -> List[str]:
        table = self.table_name(definition)
        if definition.properties.temporary_scope == TemporaryScope.SESSION:
            on_commit = "ON COMMIT PRESERVE ROWS"
        else:
            on_commit = "ON COMMIT DELETE ROWS"
        return [
            self._create_table(definition, table, modifier="TEMPORARY ", on_commit=on_commit)
        ] + render_comments(definition, table)

    def _render_append_only(self, definition: TableDefinition, known: Known) -> List[str]:
        table = self.table_name(definition)
        guard = qualify(definition.guard_function_name, definition.schema_name)
        return [
            self._create_table(definition, table),
            (
                f"CREATE FUNCTION {guard}() RETURNS trigger\n"
                f"LANGUAGE plpgsql AS $guard$\n"
                f"BEGIN\n"
                f"    RAISE EXCEPTION '%.% is append-only: % is not allowed',\n"
                f"        TG_TABLE_SCHEMA, TG_TABLE_NAME, TG_OP;\n"
                f"END\n"
                f"$guard$"
            ),
            (
                f"CREATE TRIGGER {quote_ident(definition.name + '_append_only')}\n"
                f"BEFORE UPDATE OR DELETE ON {table}\n"
                f"FOR EACH ROW EXECUTE FUNCTION {guard}()"
            ),
            (
                f"CREATE TRIGGER {quote_ident(definition.name + '_no_truncate')}\n"
                f"BEFORE TRUNCATE ON {table}\n"
                f"FOR EACH STATEMENT EXECUTE FUNCTION {guard}()"
            ),
        ] + render_comments(definition, table)

    def _render_columnar(self, definition: TableDefinition, known: Known) -> List[str]:
        table = self.table_name(definition)
        return [self._create_table(definition, table, columnar=True)] + render_comments(definition, table)

    def _render_semi_structured(self, definition: TableDefinition, known: Known) -> List[str]:
        table = self.table_name(definition)
        columns = [self._declared(definition, name) for name in definition.semi_structured_column_names()]
        checks = [
            f"CONSTRAINT {quote_ident(definition.index_name(c, 'json'))} "
            f"CHECK (jsonb_typeof({quote_ident(c)}) IN ('object', 'array'))"
            for c in columns
        ]
        statements = [
            self._create_table(
                definition,
                table,
                type_overrides={c.lower(): BaseType.JSONB for c in columns},
                extra_constraints=checks,
            )
        ]
        for column in columns:
            statements.append(
                f"CREATE INDEX {quote_ident(definition.index_name(column, 'gin'))} "
                f"ON {table} USING gin ({quote_ident(column)} jsonb_path_ops)"
            )
        return statements + render_comments(definition, table)

    def _render_spatial(self, definition: TableDefinition, known: Known) -> List[str]:
        table = self.table_name(definition)
        statements = [self._create_table(definition, table)]
        for name in definition.spatial_column_names():
            column = self._declared(definition, name)
            statements.append(
                f"CREATE INDEX {quote_ident(definition.index_name(column, 'gist'))} "
                f"ON {table} USING gist ({quote_ident(column)})"
            )
        return statements + render_comments(definition, table)

    # ------------------------------------------------------------------
    # building blocks

    def _synthesize_as(self, kind: TableKind, definition: TableDefinition, known: KnownInput) -> StatementText:
        if definition.kind != kind:
            raise SynthesisError(
                f"{definition.qualified_name} is a {definition.kind.value} table, not {kind.value}"
            )
        return self.synthesize(definition, known)

    def _to_text(self, definition: TableDefinition, statements: List[str]) -> StatementText:
        return StatementText(
            text=join_statements(statements),
            target=definition.qualified_name,
            kind=definition.kind.value,
            generated_at=self._clock(),
            statements=tuple(statements),
        )

    @staticmethod
    def _declared(definition: TableDefinition, name: str) -> str:
        column = definition.column(name)
        return column.name if column is not None else name

    def _table_body(
        self,
        definition: TableDefinition,
        type_overrides: Optional[Dict[str, BaseType]] = None,
        extra_constraints: Sequence[str] = (),
    ) -> str:
        props = definition.properties
        overrides = type_overrides or {}
        lines = [
            render_column(
                column,
                self.sanitizer,
                srid=props.srid,
                compression=props.compression,
                type_override=overrides.get(column.name.lower()),
            )
            for column in definition.columns
        ]
        lines.extend(
            render_constraint(c, self.sanitizer, definition.schema_name) for c in definition.constraints
        )
        lines.extend(extra_constraints)
        return "(\n    " + ",\n    ".join(lines) + "\n)"

    def _leaf_options(
        self,
        definition: TableDefinition,
        fill_factor: Optional[int] = None,
        columnar: bool = False,
    ) -> List[str]:
        props = definition.properties
        options = []
        if columnar or props.in_memory or definition.kind == TableKind.COLUMNAR:
            options.append("USING columnar")
        storage = render_storage(fill_factor or props.fill_factor, props.parallel_degree)
        if storage:
            options.append(storage)
        return options

    def _create_table(
        self,
        definition: TableDefinition,
        table: str,
        *,
        modifier: Optional[str] = None,
        partition_by: Optional[str] = None,
        leaf: bool = True,
        on_commit: Optional[str] = None,
        fill_factor: Optional[int] = None,
        columnar: bool = False,
        type_overrides: Optional[Dict[str, BaseType]] = None,
        extra_constraints: Sequence[str] = (),
    ) -> str:
        props = definition.properties
        if modifier is None:
            modifier = "UNLOGGED " if props.logging == LoggingMode.UNLOGGED else ""

        lines = [
            f"CREATE {modifier}TABLE {table} "
            + self._table_body(definition, type_overrides, extra_constraints)
        ]
        if partition_by:
            lines.append(partition_by)
        if leaf:
            lines.extend(self._leaf_options(definition, fill_factor, columnar))
        if on_commit:
            lines.append(on_commit)
        if props.tablespace:
            lines.append(f"TABLESPACE {quote_ident(props.tablespace)}")
        return "\n".join(lines)

    def _partition_of(
        self,
        definition: TableDefinition,
        table: str,
        parent: str,
        bound: str,
        partition_by: Optional[str] = None,
        tablespace: Optional[str] = None,
    ) -> str:
        lines = [f"CREATE TABLE {table} PARTITION OF {parent}", bound]
        if partition_by:
            lines.append(partition_by)
        else:
            lines.extend(self._leaf_options(definition))
        if tablespace:
            lines.append(f"TABLESPACE {quote_ident(tablespace)}")
        return "\n".join(lines)

    def _render_partition(
        self,
        definition: TableDefinition,
        parent: str,
        partition: PartitionDescriptor,
        bound: str,
    ) -> List[str]:
        schema = definition.schema_name
        child = qualify(definition.partition_table_name(partition.name), schema)
        spec = definition.subpartitioning_for(partition)
        if spec is None:
            return [self._partition_of(definition, child, parent, bound, tablespace=partition.tablespace)]

        statements = [
            self._partition_of(
                definition,
                child,
                parent,
                bound,
                partition_by=render_partition_by(spec.strategy, spec.key),
                tablespace=partition.tablespace,
            )
        ]
        subpartitions = self._bounds(spec.strategy, effective_subpartitions(spec), key_types(definition, spec.key))
        for sub, sub_bound in subpartitions:
            statements.append(
                self._partition_of(
                    definition,
                    qualify(definition.subpartition_table_name(partition.name, sub.name), schema),
                    child,
                    sub_bound,
                    tablespace=sub.tablespace or partition.tablespace,
                )
            )
        return statements

    def _bounds(
        self,
        strategy: PartitionStrategy,
        partitions: Sequence,
        types: Sequence[Optional[BaseType]] = (),
    ) -> List[Tuple]:
        if strategy == PartitionStrategy.HASH:
            modulus = len(partitions)
            return [(p, render_hash_bound(modulus, i)) for i, p in enumerate(partitions)]

        result = []
        lower = None
        for partition in partitions:
            if partition.is_default:
                bound = "DEFAULT"
            elif strategy == PartitionStrategy.LIST:
                values = [typed_bound(v, types[0] if types else None) for v in partition.values]
                bound = render_list_bound(values, self.sanitizer)
            else:
                values = [
                    typed_bound(v, types[i] if i < len(types) else None) for i, v in enumerate(partition.values)
                ]
                bound = render_range_bound(lower, values, self.sanitizer)
                lower = values
            result.append((partition, bound))
        return result

    def _derived(self, name: str) -> str:
        limit = self.validator.max_identifier_length
        if len(name.encode("utf-8")) > limit:
            raise SynthesisError(f"Derived name '{name}' exceeds {limit} bytes")
        return name

    # ------------------------------------------------------------------
    # subpartition conversion scripts

    def _rebuild_script(
        self,
        definition: TableDefinition,
        target: TableDefinition,
        target_suffix: str,
        retired_suffix: str,
        drop_retired: bool,
        parallel_degree: Optional[int],
        known: Known,
        title: Optional[str] = None,
    ) -> DDLScript:
        staging = self.clone_definition(target, self._derived(definition.name + target_suffix))
        self.validator.check(staging, known)
        retired = self._derived(definition.name + retired_suffix)
        source = self.table_name(definition)
        staging_table = self.table_name(staging)

        builder = ScriptBuilder(
            title or f"Convert {definition.qualified_name} to composite partitioning (rebuild)",
            definition.qualified_name,
        )
        builder.add(
            "create_target",
            *self.render_statements(staging, known),
            description=f"create {staging.qualified_name}",
        )
        builder.add(
            "copy_data",
            self.copy_data_statement(definition, staging),
            description="copy rows",
            parallel_degree=parallel_degree,
        )
        builder.add("analyze_target", f"ANALYZE {staging_table}", transactional=False)
        builder.add(
            "swap_names",
            f"LOCK TABLE {source} IN ACCESS EXCLUSIVE MODE",
            f"ALTER TABLE {source} RENAME TO {quote_ident(retired)}",
            f"ALTER TABLE {staging_table} RENAME TO {quote_ident(definition.name)}",
            description="swap names in one transaction",
        )
        if drop_retired:
            builder.add("drop_retired", f"DROP TABLE {qualify(retired, definition.schema_name)}")
        return builder.build()

    def _online_script(
        self,
        definition: TableDefinition,
        spec: SubpartitionSpec,
        target_suffix: str,
        retired_suffix: str,
        drop_retired: bool,
        parallel_degree: Optional[int],
    ) -> DDLScript:
        schema = definition.schema_name
        parent = self.table_name(definition)
        columns = column_list(definition.column_names)
        builder = ScriptBuilder(
            f"Convert {definition.qualified_name} to composite partitioning (online)",
            definition.qualified_name,
        )

        for partition, bound in self.partition_bounds(definition):
            child_name = definition.partition_table_name(partition.name)
            child = qualify(child_name, schema)
            replacement = qualify(self._derived(child_name + target_suffix), schema)
            retired_name = self._derived(child_name + retired_suffix)

            lines = [
                f"CREATE TABLE {replacement} "
                f"(LIKE {parent} INCLUDING DEFAULTS INCLUDING CONSTRAINTS)",
                render_partition_by(spec.strategy, spec.key),
            ]
            if partition.tablespace:
                lines.append(f"TABLESPACE {quote_ident(partition.tablespace)}")
            statements = ["\n".join(lines)]
            subpartitions = self._bounds(spec.strategy, effective_subpartitions(spec), key_types(definition, spec.key))
            for sub, sub_bound in subpartitions:
                statements.append(
                    self._partition_of(
                        definition,
                        qualify(definition.subpartition_table_name(partition.name, sub.name), schema),
                        replacement,
                        sub_bound,
                        tablespace=sub.tablespace or partition.tablespace,
                    )
                )
            builder.add(
                f"build_{partition.name}",
                *statements,
                description=f"subpartitioned replacement for {child_name}",
            )
            builder.add(
                f"swap_{partition.name}",
                f"LOCK TABLE {child} IN EXCLUSIVE MODE",
                f"INSERT INTO {replacement} ({columns})\nSELECT {columns} FROM {child}",
                f"ALTER TABLE {parent} DETACH PARTITION {child}",
                f"ALTER TABLE {child} RENAME TO {quote_ident(retired_name)}",
                f"ALTER TABLE {replacement} RENAME TO {quote_ident(child_name)}",
                f"ALTER TABLE {parent} ATTACH PARTITION {child} {bound}",
                description=f"copy and swap {child_name}",
                parallel_degree=parallel_degree,
            )
            if drop_retired:
                builder.add(f"drop_{partition.name}", f"DROP TABLE {qualify(retired_name, schema)}")

        builder.add("analyze", f"ANALYZE {parent}", transactional=False)
        return builder.build()
