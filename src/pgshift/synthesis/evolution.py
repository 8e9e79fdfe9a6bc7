"""
Statement builders for structural changes on live tables.

The workflows run these through ``TableOperations``; the ``plan_*``
functions assemble the same statements into ``DDLScript``s so a change
can be reviewed before it is run.

Key-range statements compare the batching key against text parameters
cast to the key's type (``CAST($1::text AS <type>)``), so watermarks of any
orderable type can be stored and passed around as text.

While a table is copied, a row trigger logs the key of every row written
to the source into ``migration_changes``. Replaying the log deletes the
copied version of each logged key and copies the current one again, so
updates and deletes that hit already-copied ranges reach the target.
"""

import re
from typing import Iterable, List, Optional, Sequence, Tuple

from ..descriptors.model import ConstraintKind, IdentityMode, TableDefinition
from .engine import SynthesisEngine
from .literals import column_list, qualify, quote_ident
from .steps import DDLScript, ScriptBuilder


CHECKPOINT_TABLE = "migration_checkpoints"
CHANGE_LOG_TABLE = "migration_changes"
CAPTURE_FUNCTION = "capture_change"


# ----------------------------------------------------------------------
# session settings


def lock_timeout_statement(seconds: float) -> str:
    return f"SET LOCAL lock_timeout = '{int(seconds * 1000)}ms'"


def statement_timeout_statement(seconds: float) -> str:
    return f"SET LOCAL statement_timeout = '{int(seconds * 1000)}ms'"


def parallel_statements(degree: Optional[int]) -> List[str]:
    if not degree or degree < 1:
        return []
    return [
        f"SET LOCAL max_parallel_workers_per_gather = {int(degree)}",
        f"SET LOCAL max_parallel_maintenance_workers = {int(degree)}",
    ]


# ----------------------------------------------------------------------
# relocation and maintenance


def relocate_statement(table: str, tablespace: str) -> str:
    return f"ALTER TABLE {table} SET TABLESPACE {quote_ident(tablespace)}"


def reindex_statement(table: str, tablespace: Optional[str] = None, concurrently: bool = True) -> str:
    options = f"(TABLESPACE {quote_ident(tablespace)}) " if tablespace else ""
    mode = " CONCURRENTLY" if concurrently else ""
    return f"REINDEX {options}TABLE{mode} {table}"


def analyze_statement(table: str) -> str:
    return f"ANALYZE {table}"


def vacuum_statement(table: str) -> str:
    return f"VACUUM (ANALYZE) {table}"


def drop_table_statement(table: str, if_exists: bool = True) -> str:
    return f"DROP TABLE {'IF EXISTS ' if if_exists else ''}{table}"


def rename_statement(table: str, new_name: str) -> str:
    return f"ALTER TABLE {table} RENAME TO {quote_ident(new_name)}"


def rename_constraint_statement(table: str, old: str, new: str) -> str:
    return f"ALTER TABLE {table} RENAME CONSTRAINT {quote_ident(old)} TO {quote_ident(new)}"


def lock_statement(table: str, mode: str = "EXCLUSIVE") -> str:
    return f"LOCK TABLE {table} IN {mode} MODE"


def truncate_statement(table: str) -> str:
    return f"TRUNCATE TABLE {table}"


# ----------------------------------------------------------------------
# partition maintenance


def attach_partition_statement(parent: str, child: str, bound: str) -> str:
    """``bound`` is a rendered ``FOR VALUES`` clause or ``DEFAULT``."""
    return f"ALTER TABLE {parent} ATTACH PARTITION {child} {bound}"


def detach_partition_statement(parent: str, child: str, concurrently: bool = False) -> str:
    """Detach ``child``; the concurrent form cannot run inside a transaction."""
    mode = " CONCURRENTLY" if concurrently else ""
    return f"ALTER TABLE {parent} DETACH PARTITION {child}{mode}"


_INDEX_HEAD = re.compile(r"^CREATE\s+(UNIQUE\s+)?INDEX\s+(CONCURRENTLY\s+)?", re.IGNORECASE)
_INDEX_WHERE = re.compile(r"\sWHERE\s", re.IGNORECASE)
_INDEX_TABLESPACE = re.compile(r"\sTABLESPACE\s+\S+", re.IGNORECASE)


def index_statement(definition: str, concurrently: bool = True, tablespace: Optional[str] = None) -> str:
    """Rewrite a ``pg_get_indexdef`` text for rebuilding the index elsewhere.

    ``TABLESPACE`` goes before a partial index's ``WHERE`` clause.
    """
    match = _INDEX_HEAD.match(definition)
    if match is None:
        raise ValueError(f"Not an index definition: {definition}")
    unique = "UNIQUE " if match.group(1) else ""
    mode = "CONCURRENTLY " if concurrently else ""
    rest = definition[match.end():]
    if tablespace:
        rest = _INDEX_TABLESPACE.sub("", rest)
        clause = f" TABLESPACE {quote_ident(tablespace)}"
        where = _INDEX_WHERE.search(rest)
        if where is None:
            rest += clause
        else:
            rest = rest[: where.start()] + clause + rest[where.start():]
    return f"CREATE {unique}INDEX {mode}{rest}"


# ----------------------------------------------------------------------
# key-range batching


def checkpoint_table_ddl(schema: str) -> List[str]:
    table = qualify(CHECKPOINT_TABLE, schema)
    return [
        f"CREATE SCHEMA IF NOT EXISTS {quote_ident(schema)}",
        f"CREATE TABLE IF NOT EXISTS {table} (\n"
        f"    operation_id bigint PRIMARY KEY,\n"
        f"    source_table text NOT NULL,\n"
        f"    target_table text NOT NULL,\n"
        f"    watermark text,\n"
        f"    rows_copied bigint NOT NULL DEFAULT 0,\n"
        f"    updated_at timestamptz NOT NULL DEFAULT now()\n"
        f")",
    ] + change_log_ddl(schema)


def change_log_ddl(schema: str) -> List[str]:
    """Change log and the trigger function that fills it.

    The function takes the operation id and the key column name as
    trigger arguments and logs the old and new key of each written row.
    """
    log = qualify(CHANGE_LOG_TABLE, schema)
    function = qualify(CAPTURE_FUNCTION, schema)
    return [
        f"CREATE TABLE IF NOT EXISTS {log} (\n"
        f"    change_id bigserial PRIMARY KEY,\n"
        f"    operation_id bigint NOT NULL,\n"
        f"    key_value text NOT NULL,\n"
        f"    captured_at timestamptz NOT NULL DEFAULT now()\n"
        f")",
        f"CREATE INDEX IF NOT EXISTS {quote_ident(CHANGE_LOG_TABLE + '_operation_idx')} "
        f"ON {log} (operation_id, change_id)",
        f"CREATE OR REPLACE FUNCTION {function}() RETURNS trigger\n"
        f"LANGUAGE plpgsql AS $capture$\n"
        f"BEGIN\n"
        f"    IF TG_OP <> 'INSERT' THEN\n"
        f"        INSERT INTO {log} (operation_id, key_value)\n"
        f"        VALUES (TG_ARGV[0]::bigint, to_jsonb(OLD) ->> TG_ARGV[1]);\n"
        f"    END IF;\n"
        f"    IF TG_OP <> 'DELETE' THEN\n"
        f"        INSERT INTO {log} (operation_id, key_value)\n"
        f"        VALUES (TG_ARGV[0]::bigint, to_jsonb(NEW) ->> TG_ARGV[1]);\n"
        f"    END IF;\n"
        f"    RETURN NULL;\n"
        f"END\n"
        f"$capture$",
    ]


def capture_trigger_name(operation_id: int) -> str:
    return f"pgshift_capture_{int(operation_id)}"


def start_capture_statements(table: str, schema: str, operation_id: int, key: str) -> List[str]:
    """(Re)install the change capture trigger of one operation on ``table``."""
    trigger = quote_ident(capture_trigger_name(operation_id))
    key_literal = key.replace("'", "''")
    return [
        f"DROP TRIGGER IF EXISTS {trigger} ON {table}",
        f"CREATE TRIGGER {trigger}\n"
        f"AFTER INSERT OR UPDATE OR DELETE ON {table}\n"
        f"FOR EACH ROW EXECUTE FUNCTION {qualify(CAPTURE_FUNCTION, schema)}"
        f"('{int(operation_id)}', '{key_literal}')",
    ]


def stop_capture_statement(table: str, operation_id: int) -> str:
    return f"DROP TRIGGER IF EXISTS {quote_ident(capture_trigger_name(operation_id))} ON {table}"


def last_change_query(schema: str) -> str:
    """Highest logged change id of operation ``$1``."""
    return f"SELECT max(change_id) FROM {qualify(CHANGE_LOG_TABLE, schema)} WHERE operation_id = $1"


def _changed_keys(schema: str, key_type: str) -> str:
    return (
        f"SELECT CAST(key_value AS {key_type}) FROM {qualify(CHANGE_LOG_TABLE, schema)} "
        f"WHERE operation_id = $1 AND change_id <= $2"
    )


def purge_changes_statement(schema: str, through_change: bool = True) -> str:
    """Forget the changes of operation ``$1``, up to change ``$2`` when ``through_change``."""
    bound = " AND change_id <= $2" if through_change else ""
    return f"DELETE FROM {qualify(CHANGE_LOG_TABLE, schema)} WHERE operation_id = $1{bound}"


def replay_delete_statement(target: str, key: str, key_type: str, schema: str) -> str:
    """Remove copied rows whose keys changed. Parameters: ``$1`` operation, ``$2`` last change, ``$3`` watermark."""
    column = quote_ident(key)
    return (
        f"DELETE FROM {target} WHERE {column} IN ({_changed_keys(schema, key_type)}) "
        f"AND {column} <= {_cast('$3', key_type)}"
    )


def replay_insert_statement(
    source: str,
    target: str,
    columns: Sequence[str],
    key: str,
    key_type: str,
    schema: str,
    overriding: bool = False,
) -> str:
    """Copy the current version of changed keys at or below the watermark ``$3``."""
    cols = column_list(columns)
    column = quote_ident(key)
    override = " OVERRIDING SYSTEM VALUE" if overriding else ""
    return (
        f"INSERT INTO {target} ({cols}){override}\n"
        f"SELECT {cols} FROM {source} WHERE {column} IN ({_changed_keys(schema, key_type)}) "
        f"AND {column} <= {_cast('$3', key_type)}"
    )


def _cast(param: str, key_type: str) -> str:
    return f"CAST({param}::text AS {key_type})"


def next_watermark_query(table: str, key: str, key_type: str, bounded: bool) -> str:
    """Upper key of the next batch.

    Parameters: ``$1`` batch size, and ``$2`` the previous watermark
    when ``bounded``.
    """
    column = quote_ident(key)
    where = f"WHERE {column} > {_cast('$2', key_type)} " if bounded else ""
    return (
        f"SELECT max({column})::text FROM ("
        f"SELECT {column} FROM {table} {where}ORDER BY {column} LIMIT $1) AS batch"
    )


def range_predicate(key: str, key_type: str, bounded: bool, lower: str = "$1", upper: str = "$2") -> str:
    column = quote_ident(key)
    upper_clause = f"{column} <= {_cast(upper, key_type)}"
    if not bounded:
        return upper_clause
    return f"{column} > {_cast(lower, key_type)} AND {upper_clause}"


def copy_range_statement(
    source: str,
    target: str,
    columns: Sequence[str],
    key: str,
    key_type: str,
    bounded: bool,
    overriding: bool = False,
) -> str:
    """Copy one key range. Parameters: ``$1`` lower (when ``bounded``) and ``$2`` upper."""
    cols = column_list(columns)
    override = " OVERRIDING SYSTEM VALUE" if overriding else ""
    if bounded:
        predicate = range_predicate(key, key_type, True)
    else:
        predicate = range_predicate(key, key_type, False, upper="$1")
    return (
        f"INSERT INTO {target} ({cols}){override}\n"
        f"SELECT {cols} FROM {source} WHERE {predicate}"
    )


def copy_after_statement(
    source: str,
    target: str,
    columns: Sequence[str],
    key: str,
    key_type: str,
    overriding: bool = False,
) -> str:
    """Copy every row above the watermark ``$1``."""
    cols = column_list(columns)
    override = " OVERRIDING SYSTEM VALUE" if overriding else ""
    return (
        f"INSERT INTO {target} ({cols}){override}\n"
        f"SELECT {cols} FROM {source} WHERE {quote_ident(key)} > {_cast('$1', key_type)}"
    )


def copy_all_statement(source: str, target: str, columns: Sequence[str], overriding: bool = False) -> str:
    cols = column_list(columns)
    override = " OVERRIDING SYSTEM VALUE" if overriding else ""
    return f"INSERT INTO {target} ({cols}){override}\nSELECT {cols} FROM {source}"


def count_statement(table: str, key: Optional[str] = None, key_type: Optional[str] = None) -> str:
    """Row count, optionally limited to keys at or below ``$1``."""
    if key is None:
        return f"SELECT count(*) FROM {table}"
    return f"SELECT count(*) FROM {table} WHERE {quote_ident(key)} <= {_cast('$1', key_type or 'text')}"


def rewrite_range_statement(
    table: str,
    key: str,
    key_type: str,
    bounded: bool,
    set_column: Optional[str] = None,
) -> str:
    """Rewrite the tuples of one key range so dropped column data is discarded.

    ``set_column`` is assigned to itself; it defaults to the key and must
    not be a GENERATED ALWAYS column.
    """
    column = quote_ident(set_column or key)
    if bounded:
        predicate = range_predicate(key, key_type, True)
    else:
        predicate = range_predicate(key, key_type, False, upper="$1")
    return f"UPDATE {table} SET {column} = {column} WHERE {predicate}"


# ----------------------------------------------------------------------
# column removal


def drop_constraint_statement(table: str, constraint: str) -> str:
    return f"ALTER TABLE {table} DROP CONSTRAINT IF EXISTS {quote_ident(constraint)}"


def drop_columns_statement(table: str, columns: Iterable[str]) -> str:
    clauses = ", ".join(f"DROP COLUMN IF EXISTS {quote_ident(c)}" for c in columns)
    return f"ALTER TABLE {table} {clauses}"


def validate_constraint_statement(table: str, constraint: str) -> str:
    return f"ALTER TABLE {table} VALIDATE CONSTRAINT {quote_ident(constraint)}"


_WORD = re.compile(r'"((?:[^"]|"")+)"|([A-Za-z_][A-Za-z0-9_$]*)')


def expression_columns(expression: str) -> List[str]:
    """Identifiers mentioned in an expression, lower-cased unless quoted."""
    names = []
    for quoted, bare in _WORD.findall(_strip_strings(expression)):
        names.append(quoted.replace('""', '"') if quoted else bare.lower())
    return names


def _strip_strings(expression: str) -> str:
    return re.sub(r"'(?:[^']|'')*'", "''", expression)


def dependent_constraints(definition: TableDefinition, columns: Iterable[str]) -> List[str]:
    """Constraints of ``definition`` that involve any of ``columns``."""
    removed = {c.lower() for c in columns}
    names = []
    for constraint in definition.constraints:
        involved = {c.lower() for c in constraint.columns}
        if constraint.kind == ConstraintKind.CHECK and constraint.check_expression:
            involved |= {c.lower() for c in expression_columns(constraint.check_expression)}
        if involved & removed:
            names.append(constraint.name)
    return names


# ----------------------------------------------------------------------
# dry-run plans


def plan_move(
    table: str,
    tablespace: str,
    *,
    leaves: Optional[Sequence[str]] = None,
    rebuild_indexes: bool = True,
    index_tablespace: Optional[str] = None,
    lock_timeout_seconds: float = 10,
    parallel_degree: Optional[int] = None,
) -> DDLScript:
    """Relocate a table (or each leaf of a partitioned table) to ``tablespace``."""
    builder = ScriptBuilder(f"Move {table} to tablespace {tablespace}", table)
    settings = [lock_timeout_statement(lock_timeout_seconds)] + parallel_statements(parallel_degree)
    for leaf in leaves or [table]:
        builder.add(
            f"relocate {leaf}",
            *settings,
            relocate_statement(leaf, tablespace),
            description="rewrites the relation under an exclusive lock",
        )
    if rebuild_indexes:
        for leaf in leaves or [table]:
            builder.add(
                f"reindex {leaf}",
                reindex_statement(leaf, index_tablespace or tablespace),
                transactional=False,
            )
    builder.add("refresh statistics", analyze_statement(table), transactional=False)
    return builder.build()


def plan_index_ddl(
    table: str,
    indexes: Sequence[Tuple[str, str]],
    *,
    tablespace: Optional[str] = None,
    parallel_degree: Optional[int] = None,
    concurrently: bool = True,
) -> DDLScript:
    """Statements that recreate ``indexes``, given as ``(name, pg_get_indexdef text)``.

    Indexes backing constraints should be left out by the caller; they
    come back with their constraint.
    """
    builder = ScriptBuilder(f"Index definitions of {table}", table)
    if parallel_degree and parallel_degree > 1:
        builder.add(
            "session settings",
            f"SET max_parallel_maintenance_workers = {int(parallel_degree)}",
            transactional=False,
            parallel_degree=parallel_degree,
        )
    for name, definition in indexes:
        builder.add(
            f"create {name}",
            index_statement(definition, concurrently=concurrently, tablespace=tablespace),
            transactional=not concurrently,
        )
    return builder.build()


def plan_migrate(
    engine: SynthesisEngine,
    source: TableDefinition,
    target: TableDefinition,
    key: str,
    key_type: str = "bigint",
    *,
    retired_suffix: str = "_old",
    drop_retired: bool = False,
    batch_size: int = 10000,
    ledger_schema: str = "pgshift",
) -> DDLScript:
    """Copy ``source`` into a new table built from ``target`` and swap names.

    Batched statements are shown with their ``$n`` placeholders; the
    workflow runs them once per key range.
    """
    source_table = engine.table_name(source)
    target_table = engine.table_name(target)
    retired = source.name + retired_suffix
    columns = source.column_names
    overriding = any(c.identity == IdentityMode.ALWAYS for c in target.columns)

    builder = ScriptBuilder(f"Migrate {source.qualified_name} via {target.qualified_name}", source.qualified_name)
    builder.add("create target", *engine.synthesize(target).statements)
    builder.add(
        "capture changes",
        *change_log_ddl(ledger_schema),
        *start_capture_statements(source_table, ledger_schema, 0, key),
        description="logs keys written to the source while it is copied; 0 stands for the operation id",
    )
    replay = [
        last_change_query(ledger_schema),
        replay_delete_statement(target_table, key, key_type, ledger_schema),
        replay_insert_statement(source_table, target_table, columns, key, key_type, ledger_schema, overriding),
        purge_changes_statement(ledger_schema),
    ]
    builder.add(
        "copy batches",
        next_watermark_query(source_table, key, key_type, bounded=True),
        copy_range_statement(source_table, target_table, columns, key, key_type, True, overriding),
        description=f"repeated per {batch_size} keys, each batch with its checkpoint",
    )
    builder.add(
        "validate row counts",
        lock_statement(source_table, "SHARE"),
        *replay,
        count_statement(source_table, key, key_type),
        count_statement(target_table),
        description="captured changes are applied before counting",
    )
    builder.add(
        "rename atomically",
        lock_statement(source_table),
        *replay,
        copy_after_statement(source_table, target_table, columns, key, key_type, overriding),
        count_statement(source_table),
        count_statement(target_table),
        stop_capture_statement(source_table, 0),
        rename_statement(source_table, retired),
        rename_statement(target_table, source.name),
        description="last changes, final delta, full count check and name swap in one transaction",
    )
    if drop_retired:
        builder.add("cleanup", drop_table_statement(qualify(retired, source.schema_name)))
    return builder.build()


def rewrite_column(definition: TableDefinition, removed: Iterable[str]) -> Optional[str]:
    """First remaining column that can be assigned to itself."""
    dropped = {c.lower() for c in removed}
    for column in definition.columns:
        if column.name.lower() not in dropped and column.identity != IdentityMode.ALWAYS:
            return column.name
    return None


def plan_remove_columns(
    definition: TableDefinition,
    columns: Sequence[str],
    key: str,
    key_type: str = "bigint",
    *,
    inbound: Sequence[Sequence[str]] = (),
    batch_size: int = 10000,
) -> DDLScript:
    """Drop ``columns`` and reclaim their space in batches.

    ``inbound`` lists ``(table, constraint)`` pairs of foreign keys in
    other tables that reference the removed columns.
    """
    table = qualify(definition.name, definition.schema_name)
    builder = ScriptBuilder(f"Remove {', '.join(columns)} from {definition.qualified_name}", definition.qualified_name)

    drops = [drop_constraint_statement(t, c) for t, c in inbound]
    drops += [drop_constraint_statement(table, c) for c in dependent_constraints(definition, columns)]
    if drops:
        builder.add("disable dependent constraints", *drops)
    builder.add("mark columns unused", drop_columns_statement(table, columns))
    set_column = rewrite_column(definition, columns)
    builder.add(
        "physical drop",
        next_watermark_query(table, key, key_type, bounded=True),
        rewrite_range_statement(table, key, key_type, bounded=True, set_column=set_column),
        description=f"repeated per {batch_size} keys",
    )
    builder.add("reclaim space", vacuum_statement(table), transactional=False)
    builder.add("rebuild dependent indexes", reindex_statement(table), transactional=False)
    return builder.build()
