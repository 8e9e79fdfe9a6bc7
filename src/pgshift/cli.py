"""
Command-line interface for pgshift.
"""

import asyncio
import sys
from datetime import datetime
from functools import wraps
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import click
import yaml
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import PgshiftConfig
from .descriptors import load_definitions
from .descriptors.model import PartitionDescriptor, PartitionScheme, SubpartitionSpec, TableDefinition
from .exceptions import ConfigurationError, PartialFailure, PgshiftError, ValidationError
from .ledger.model import OperationRecord, OperationType
from .runtime import Runtime, build_engine
from .synthesis import ConversionMode, print_script, save_to_file, summarize
from .synthesis.steps import DDLScript, StatementText


console = Console()


def handle_errors(func):
    """Decorator to handle errors gracefully in CLI commands."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ValidationError as e:
            console.print(f"[red]Invalid definition:[/red] {e.message.split(':')[0]}")
            for violation in e.violations:
                console.print(f"  • {violation}")
            sys.exit(1)
        except PgshiftError as e:
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(1)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted by user[/yellow]")
            sys.exit(130)
        except Exception as e:
            console.print(f"[red]Unexpected error:[/red] {e}")
            if "--debug" in sys.argv:
                import traceback
                traceback.print_exc()
            sys.exit(1)
    return wrapper


config_option = click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    help="Configuration file path (defaults to PGSHIFT_* environment variables)",
)
schema_option = click.option(
    "--schema",
    "-s",
    default=None,
    help="Schema of the table (defaults to synthesis.default_schema)",
)
output_option = click.option(
    "--output",
    "-o",
    type=click.Path(),
    help="Write the statements to this file instead of printing them",
)
parallel_option = click.option(
    "--parallel", type=int, help="Intra-statement parallel workers (overrides config)"
)
timeout_option = click.option(
    "--timeout", type=float, help="Fail the operation after this many seconds"
)
dry_run_option = click.option(
    "--dry-run", is_flag=True, help="Show the planned statements without making changes"
)


def _load_config(ctx: click.Context, path: Optional[str]) -> PgshiftConfig:
    config = PgshiftConfig.from_yaml(path) if path else PgshiftConfig()
    debug = ctx.obj.get("debug", False) if ctx.obj else False
    config.logging.apply(debug or config.debug)
    return config


def _run(config: PgshiftConfig, action: Callable[[Runtime], Awaitable[Any]]) -> Any:
    """Run ``action`` against a connected runtime."""
    async def runner():
        async with Runtime(config) as runtime:
            return await action(runtime)

    return asyncio.run(runner())


def _table_name(name: str, schema: Optional[str], config: PgshiftConfig) -> Tuple[str, str]:
    if schema is None and "." in name:
        schema, name = name.split(".", 1)
    return schema or config.synthesis.default_schema, name


def _emit(script, output: Optional[str], config: PgshiftConfig, default_name: str) -> None:
    """Print statement text, or save it to ``output`` (or the configured directory)."""
    if output is None and config.synthesis.output_dir:
        output = str(Path(config.synthesis.output_dir) / default_name)
    if output:
        path = save_to_file(script, output)
        console.print(f"[green]✓[/green] Written to {path}")
    else:
        print_script(script, console)


def _options(**values: Any) -> dict:
    """Workflow options given on the command line; unset ones fall back to config."""
    return {k: v for k, v in values.items() if v is not None}


def _report(result) -> None:
    colour = "green" if result.succeeded else "yellow"
    console.print(
        f"[{colour}]Operation {result.operation_id} {result.status.value}[/{colour}] "
        f"in {result.phase}: {result.rows_processed:,} rows, {result.objects_affected} objects"
    )


@click.group()
@click.version_option(__version__)
@click.option(
    "--debug", is_flag=True, help="Enable debug mode"
)
@click.pass_context
def main(ctx, debug):
    """pgshift: PostgreSQL DDL synthesis and online table evolution."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


# ----------------------------------------------------------------------
# synthesis


@main.command()
@click.argument("descriptors", type=click.Path(exists=True))
@config_option
@output_option
@click.pass_context
@handle_errors
def synthesize(ctx, descriptors: str, config: Optional[str], output: Optional[str]):
    """Render each table in a descriptor file to DDL."""
    pgshift_config = _load_config(ctx, config)
    engine = build_engine(pgshift_config)
    definitions = load_definitions(descriptors)
    if not definitions:
        console.print("[yellow]No tables in descriptor file[/yellow]")
        return

    known: List[TableDefinition] = []
    texts: List[str] = []
    for definition in definitions:
        texts.append(engine.synthesize(definition, known).text)
        known.append(definition)

    text = "\n".join(texts)
    _emit(text, output, pgshift_config, f"{Path(descriptors).stem}.sql")


@main.command()
@click.argument("descriptors", type=click.Path(exists=True))
@config_option
@output_option
@click.option("--summary", is_flag=True, help="Print statement counts after the script")
@click.pass_context
@handle_errors
def bulk(ctx, descriptors: str, config: Optional[str], output: Optional[str], summary: bool):
    """Render every table of a descriptor file into one script, in file order."""
    pgshift_config = _load_config(ctx, config)
    engine = build_engine(pgshift_config)
    text = engine.generate_bulk_ddl(load_definitions(descriptors))
    _emit(text, output, pgshift_config, f"{Path(descriptors).stem}.sql")
    if summary:
        _print_summary(summarize(text))


@main.command()
@click.argument("descriptors", type=click.Path(exists=True))
@config_option
@click.pass_context
@handle_errors
def validate(ctx, descriptors: str, config: Optional[str]):
    """Check a descriptor file without generating anything."""
    pgshift_config = _load_config(ctx, config)
    engine = build_engine(pgshift_config)
    definitions = load_definitions(descriptors)

    table = Table(title="Descriptor violations")
    table.add_column("Table", style="cyan")
    table.add_column("Path")
    table.add_column("Code", style="yellow")
    table.add_column("Message")

    known: List[TableDefinition] = []
    count = 0
    for definition in definitions:
        for violation in engine.validator.validate(definition, {d.name: d for d in known}):
            table.add_row(definition.qualified_name, violation.path, violation.code, violation.message)
            count += 1
        known.append(definition)

    if count:
        console.print(table)
        console.print(f"[red]✗[/red] {count} violation(s) in {len(definitions)} table(s)")
        sys.exit(1)
    console.print(f"[green]✓[/green] {len(definitions)} table(s) valid")


@main.command()
@click.argument("source")
@click.argument("new_name")
@config_option
@schema_option
@click.option("--target-schema", help="Schema for the copy (defaults to the source schema)")
@click.option("--include-data", is_flag=True, help="Append an INSERT ... SELECT copying the rows")
@output_option
@click.pass_context
@handle_errors
def clone(
    ctx,
    source: str,
    new_name: str,
    config: Optional[str],
    schema: Optional[str],
    target_schema: Optional[str],
    include_data: bool,
    output: Optional[str],
):
    """Generate DDL for a structural copy of an existing table."""
    pgshift_config = _load_config(ctx, config)
    schema, table = _table_name(source, schema, pgshift_config)

    async def action(runtime: Runtime) -> StatementText:
        definition = await runtime.introspector.reflect_definition(schema, table)
        return runtime.engine.generate_clone_ddl(
            definition, new_name, include_data=include_data, new_schema=target_schema
        )

    text = _run(pgshift_config, action)
    _emit(text, output, pgshift_config, f"{new_name}.sql")


# ----------------------------------------------------------------------
# script execution


@main.command("validate-sql")
@click.argument("script", type=click.Path(exists=True))
@config_option
@click.pass_context
@handle_errors
def validate_sql(ctx, script: str, config: Optional[str]):
    """Run a script in a transaction that is always rolled back."""
    pgshift_config = _load_config(ctx, config)
    text = Path(script).read_text(encoding="utf-8")

    error = _run(pgshift_config, lambda runtime: runtime.executor.find_errors(text))
    if error:
        console.print(f"[red]✗[/red] {error}")
        sys.exit(1)
    console.print(f"[green]✓[/green] {script} is valid")


@main.command()
@click.argument("script", type=click.Path(exists=True))
@config_option
@click.option("--target", help="Object name recorded in the ledger (defaults to the file name)")
@click.pass_context
@handle_errors
def execute(ctx, script: str, config: Optional[str], target: Optional[str]):
    """Execute a script, recording it in the ledger."""
    pgshift_config = _load_config(ctx, config)
    text = Path(script).read_text(encoding="utf-8")

    operation_id = _run(
        pgshift_config, lambda runtime: runtime.executor.execute(text, target or Path(script).name)
    )
    console.print(f"[green]✓[/green] Executed {script} as operation {operation_id}")


@main.command("init-ledger")
@config_option
@click.pass_context
@handle_errors
def init_ledger(ctx, config: Optional[str]):
    """Create the ledger schema, tables and views."""
    pgshift_config = _load_config(ctx, config)

    async def action(runtime: Runtime):
        results = await runtime.ledger_schema.setup()
        await runtime.operations.ensure_checkpoint_table()
        return results

    results = _run(pgshift_config, action)
    for name in results["tables_created"] + results["views_created"]:
        console.print(f"[green]✓[/green] {name}")
    for error in results["errors"]:
        console.print(f"[red]✗[/red] {error}")
    if results["errors"]:
        sys.exit(1)


# ----------------------------------------------------------------------
# workflows


def _show_plan(script: DDLScript) -> None:
    console.print("[yellow]Dry run mode - no changes will be made[/yellow]")
    print_script(script, console)


@main.command()
@click.argument("table")
@click.argument("tablespace")
@config_option
@schema_option
@click.option("--partition", help="Move only this partition")
@click.option("--subpartition", help="Move only this subpartition of --partition")
@click.option("--index-tablespace", help="Tablespace for rebuilt indexes (defaults to TABLESPACE)")
@click.option("--no-rebuild-indexes", is_flag=True, help="Leave indexes where they are")
@parallel_option
@timeout_option
@dry_run_option
@click.pass_context
@handle_errors
def move(
    ctx,
    table: str,
    tablespace: str,
    config: Optional[str],
    schema: Optional[str],
    partition: Optional[str],
    subpartition: Optional[str],
    index_tablespace: Optional[str],
    no_rebuild_indexes: bool,
    parallel: Optional[int],
    timeout: Optional[float],
    dry_run: bool,
):
    """Move a table, one of its partitions or a subpartition to another tablespace."""
    pgshift_config = _load_config(ctx, config)
    schema, table = _table_name(table, schema, pgshift_config)
    if subpartition and not partition:
        raise ConfigurationError("--subpartition requires --partition")
    options = _options(
        rebuild_indexes=not no_rebuild_indexes,
        index_tablespace=index_tablespace,
        parallel_degree=parallel,
        timeout_seconds=timeout,
    )

    async def action(runtime: Runtime):
        orchestrator = runtime.orchestrator
        if dry_run:
            return await orchestrator.plan_move(schema, subpartition or partition or table, tablespace, **options)
        if subpartition:
            return await orchestrator.move_subpartition(
                schema, table, partition, subpartition, tablespace, **options
            )
        if partition:
            return await orchestrator.move_partition(schema, table, partition, tablespace, **options)
        return await orchestrator.move_table(schema, table, tablespace, **options)

    _finish(_run_workflow(pgshift_config, action), dry_run)


@main.command()
@click.argument("table")
@config_option
@schema_option
@click.option("--target", "target_file", type=click.Path(exists=True), help="Descriptor file with the new shape")
@click.option("--key", help="Batching key column (defaults to the first primary key column)")
@click.option("--tablespace", help="Tablespace for the new table")
@click.option("--batch-size", type=int, help="Rows per copy batch (overrides config)")
@click.option("--drop-retired/--keep-retired", default=None, help="Drop the old table after the swap")
@parallel_option
@timeout_option
@dry_run_option
@click.pass_context
@handle_errors
def migrate(
    ctx,
    table: str,
    config: Optional[str],
    schema: Optional[str],
    target_file: Optional[str],
    key: Optional[str],
    tablespace: Optional[str],
    batch_size: Optional[int],
    drop_retired: Optional[bool],
    parallel: Optional[int],
    timeout: Optional[float],
    dry_run: bool,
):
    """Copy a table into a new definition in batches, then swap names."""
    pgshift_config = _load_config(ctx, config)
    schema, table = _table_name(table, schema, pgshift_config)
    target = None
    if target_file:
        definitions = load_definitions(target_file)
        if len(definitions) != 1:
            raise ConfigurationError(f"{target_file} must describe exactly one table")
        target = definitions[0]
    options = _options(
        key=key,
        tablespace=tablespace,
        batch_size=batch_size,
        drop_retired=drop_retired,
        parallel_degree=parallel,
        timeout_seconds=timeout,
    )

    async def action(runtime: Runtime):
        orchestrator = runtime.orchestrator
        if dry_run:
            return await orchestrator.plan_migrate(schema, table, target, **options)
        return await orchestrator.migrate_table(schema, table, target, **options)

    _finish(_run_workflow(pgshift_config, action), dry_run)


@main.command()
@click.argument("table")
@click.argument("subpartitioning", type=click.Path(exists=True))
@click.option(
    "--mode",
    type=click.Choice([m.value for m in ConversionMode]),
    required=True,
    help="rebuild: composite copy and swap; online: replace one partition at a time",
)
@config_option
@schema_option
@click.option("--key", help="Batching key column for rebuild mode")
@click.option("--batch-size", type=int, help="Rows per copy batch (overrides config)")
@click.option("--drop-retired/--keep-retired", default=None, help="Drop replaced tables")
@parallel_option
@timeout_option
@dry_run_option
@click.pass_context
@handle_errors
def convert(
    ctx,
    table: str,
    subpartitioning: str,
    mode: str,
    config: Optional[str],
    schema: Optional[str],
    key: Optional[str],
    batch_size: Optional[int],
    drop_retired: Optional[bool],
    parallel: Optional[int],
    timeout: Optional[float],
    dry_run: bool,
):
    """Add subpartitioning to a partitioned table.

    SUBPARTITIONING is a YAML file describing the subpartition scheme.
    """
    pgshift_config = _load_config(ctx, config)
    schema, table = _table_name(table, schema, pgshift_config)
    spec = _load_subpartitioning(subpartitioning)
    conversion = ConversionMode(mode)
    options = _options(
        key=key,
        batch_size=batch_size,
        drop_retired=drop_retired,
        parallel_degree=parallel,
        timeout_seconds=timeout,
    )

    async def action(runtime: Runtime):
        orchestrator = runtime.orchestrator
        if dry_run:
            return await orchestrator.plan_convert(schema, table, spec, conversion, **options)
        return await orchestrator.convert_subpartitions(schema, table, spec, conversion, **options)

    _finish(_run_workflow(pgshift_config, action), dry_run)


@main.command("remove-columns")
@click.argument("table")
@click.argument("columns", nargs=-1, required=True)
@config_option
@schema_option
@click.option("--key", help="Batching key column (defaults to the first primary key column)")
@click.option("--batch-size", type=int, help="Rows per rewrite batch (overrides config)")
@parallel_option
@timeout_option
@dry_run_option
@click.pass_context
@handle_errors
def remove_columns(
    ctx,
    table: str,
    columns: Tuple[str, ...],
    config: Optional[str],
    schema: Optional[str],
    key: Optional[str],
    batch_size: Optional[int],
    parallel: Optional[int],
    timeout: Optional[float],
    dry_run: bool,
):
    """Drop columns and reclaim their space in batches."""
    pgshift_config = _load_config(ctx, config)
    schema, table = _table_name(table, schema, pgshift_config)
    options = _options(key=key, batch_size=batch_size, parallel_degree=parallel, timeout_seconds=timeout)

    async def action(runtime: Runtime):
        orchestrator = runtime.orchestrator
        if dry_run:
            return await orchestrator.plan_remove_columns(schema, table, columns, **options)
        return await orchestrator.remove_columns(schema, table, columns, **options)

    _finish(_run_workflow(pgshift_config, action), dry_run)


@main.command("convert-to-partitioned")
@click.argument("table")
@click.argument("layout", type=click.Path(exists=True))
@config_option
@schema_option
@click.option("--key", help="Batching key column (defaults to the first primary key column)")
@click.option("--tablespace", help="Tablespace for the partitioned table")
@click.option("--batch-size", type=int, help="Rows per copy batch (overrides config)")
@click.option("--drop-retired/--keep-retired", default=None, help="Drop the old table after the swap")
@parallel_option
@timeout_option
@dry_run_option
@click.pass_context
@handle_errors
def convert_to_partitioned(
    ctx,
    table: str,
    layout: str,
    config: Optional[str],
    schema: Optional[str],
    key: Optional[str],
    tablespace: Optional[str],
    batch_size: Optional[int],
    drop_retired: Optional[bool],
    parallel: Optional[int],
    timeout: Optional[float],
    dry_run: bool,
):
    """Copy a plain table into a partitioned table of the same name.

    LAYOUT is a YAML file with a ``partitioning`` scheme and, for range
    and list partitioning, its ``partitions``.
    """
    pgshift_config = _load_config(ctx, config)
    schema, table = _table_name(table, schema, pgshift_config)
    partitioning, partitions = _load_layout(layout)
    options = _options(
        key=key,
        tablespace=tablespace,
        batch_size=batch_size,
        drop_retired=drop_retired,
        parallel_degree=parallel,
        timeout_seconds=timeout,
    )

    async def action(runtime: Runtime):
        orchestrator = runtime.orchestrator
        if dry_run:
            return await orchestrator.plan_convert_to_partitioned(
                schema, table, partitioning, partitions, **options
            )
        return await orchestrator.convert_to_partitioned(schema, table, partitioning, partitions, **options)

    _finish(_run_workflow(pgshift_config, action), dry_run)


@main.command("index-ddl")
@click.argument("table")
@config_option
@schema_option
@click.option("--tablespace", help="Tablespace for the recreated indexes")
@click.option("--blocking", is_flag=True, help="Build without CONCURRENTLY, inside transactions")
@parallel_option
@output_option
@click.pass_context
@handle_errors
def index_ddl(
    ctx,
    table: str,
    config: Optional[str],
    schema: Optional[str],
    tablespace: Optional[str],
    blocking: bool,
    parallel: Optional[int],
    output: Optional[str],
):
    """Generate statements recreating the indexes of a table."""
    pgshift_config = _load_config(ctx, config)
    schema, table = _table_name(table, schema, pgshift_config)
    script = _run(
        pgshift_config,
        lambda runtime: runtime.orchestrator.generate_index_ddl(
            schema, table, tablespace=tablespace, parallel_degree=parallel, concurrently=not blocking
        ),
    )
    _emit(script, output, pgshift_config, f"{table}_indexes.sql")


@main.command("estimate-move")
@click.argument("table")
@config_option
@schema_option
@parallel_option
@click.pass_context
@handle_errors
def estimate_move(ctx, table: str, config: Optional[str], schema: Optional[str], parallel: Optional[int]):
    """Estimate how long moving a table or partition would take."""
    pgshift_config = _load_config(ctx, config)
    schema, table = _table_name(table, schema, pgshift_config)
    minutes = _run(
        pgshift_config, lambda runtime: runtime.orchestrator.estimate_move_time(schema, table, parallel)
    )
    console.print(f"Moving {schema}.{table} takes about {minutes} minute(s)")


# ----------------------------------------------------------------------
# partition maintenance


@main.group()
def partitions():
    """Add, attach, detach, drop and report on partitions."""


def _partition_bound(name: str, values: Tuple[str, ...], default: bool, tablespace: Optional[str]) -> dict:
    if not values and not default:
        raise ConfigurationError("Give the partition bound with --value, or --default")
    descriptor = {"name": name, "values": list(values), "is_default": default}
    if tablespace:
        descriptor["tablespace"] = tablespace
    return descriptor


value_option = click.option(
    "--value",
    "values",
    multiple=True,
    help="Range upper bound (one per key column) or list value; repeatable",
)
default_option = click.option("--default", "default", is_flag=True, help="The DEFAULT partition")


@partitions.command("add")
@click.argument("table")
@click.argument("name")
@config_option
@schema_option
@value_option
@default_option
@click.option("--tablespace", help="Tablespace for the new partition")
@timeout_option
@click.pass_context
@handle_errors
def partitions_add(
    ctx,
    table: str,
    name: str,
    config: Optional[str],
    schema: Optional[str],
    values: Tuple[str, ...],
    default: bool,
    tablespace: Optional[str],
    timeout: Optional[float],
):
    """Create partition NAME of a range or list partitioned table.

    A range partition starts where the last one ends; --value is its
    exclusive upper bound.
    """
    pgshift_config = _load_config(ctx, config)
    schema, table = _table_name(table, schema, pgshift_config)
    descriptor = _partition_bound(name, values, default, tablespace)
    options = _options(timeout_seconds=timeout)
    _report(
        _run_workflow(
            pgshift_config,
            lambda runtime: runtime.orchestrator.add_partition(schema, table, descriptor, **options),
        )
    )


@partitions.command("attach")
@click.argument("table")
@click.argument("partition")
@config_option
@schema_option
@value_option
@default_option
@timeout_option
@click.pass_context
@handle_errors
def partitions_attach(
    ctx,
    table: str,
    partition: str,
    config: Optional[str],
    schema: Optional[str],
    values: Tuple[str, ...],
    default: bool,
    timeout: Optional[float],
):
    """Attach the existing table PARTITION as the next partition."""
    pgshift_config = _load_config(ctx, config)
    schema, table = _table_name(table, schema, pgshift_config)
    descriptor = _partition_bound(partition, values, default, None)
    descriptor.pop("name")
    options = _options(timeout_seconds=timeout)
    _report(
        _run_workflow(
            pgshift_config,
            lambda runtime: runtime.orchestrator.attach_partition(
                schema, table, partition, descriptor, **options
            ),
        )
    )


@partitions.command("detach")
@click.argument("table")
@click.argument("partition")
@config_option
@schema_option
@click.option("--concurrently", is_flag=True, help="Detach without blocking queries on the table")
@timeout_option
@click.pass_context
@handle_errors
def partitions_detach(
    ctx,
    table: str,
    partition: str,
    config: Optional[str],
    schema: Optional[str],
    concurrently: bool,
    timeout: Optional[float],
):
    """Detach PARTITION, keeping it as a standalone table."""
    pgshift_config = _load_config(ctx, config)
    schema, table = _table_name(table, schema, pgshift_config)
    options = _options(timeout_seconds=timeout)
    _report(
        _run_workflow(
            pgshift_config,
            lambda runtime: runtime.orchestrator.detach_partition(
                schema, table, partition, concurrently, **options
            ),
        )
    )


@partitions.command("drop")
@click.argument("table")
@click.argument("partition")
@config_option
@schema_option
@click.option("--concurrently", is_flag=True, help="Detach concurrently before dropping")
@timeout_option
@click.pass_context
@handle_errors
def partitions_drop(
    ctx,
    table: str,
    partition: str,
    config: Optional[str],
    schema: Optional[str],
    concurrently: bool,
    timeout: Optional[float],
):
    """Detach and drop PARTITION with its rows."""
    pgshift_config = _load_config(ctx, config)
    schema, table = _table_name(table, schema, pgshift_config)
    options = _options(concurrently=concurrently or None, timeout_seconds=timeout)
    _report(
        _run_workflow(
            pgshift_config,
            lambda runtime: runtime.orchestrator.drop_partition(schema, table, partition, **options),
        )
    )


@partitions.command("truncate")
@click.argument("table")
@click.argument("partition")
@config_option
@schema_option
@timeout_option
@click.pass_context
@handle_errors
def partitions_truncate(
    ctx, table: str, partition: str, config: Optional[str], schema: Optional[str], timeout: Optional[float]
):
    """Delete every row of PARTITION."""
    pgshift_config = _load_config(ctx, config)
    schema, table = _table_name(table, schema, pgshift_config)
    options = _options(timeout_seconds=timeout)
    _report(
        _run_workflow(
            pgshift_config,
            lambda runtime: runtime.orchestrator.truncate_partition(schema, table, partition, **options),
        )
    )


@partitions.command("drop-old")
@click.argument("table")
@click.option("--retention-days", type=click.IntRange(min=1), required=True, help="Keep this many days of rows")
@click.option(
    "--as-of",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="Count the retention back from this day instead of today",
)
@config_option
@schema_option
@click.option("--concurrently", is_flag=True, help="Detach concurrently before dropping")
@timeout_option
@click.pass_context
@handle_errors
def partitions_drop_old(
    ctx,
    table: str,
    retention_days: int,
    as_of: Optional[datetime],
    config: Optional[str],
    schema: Optional[str],
    concurrently: bool,
    timeout: Optional[float],
):
    """Drop every range partition whose rows are all older than the retention period."""
    pgshift_config = _load_config(ctx, config)
    schema, table = _table_name(table, schema, pgshift_config)
    options = _options(
        as_of=as_of.date() if as_of else None,
        concurrently=concurrently or None,
        timeout_seconds=timeout,
    )
    _report(
        _run_workflow(
            pgshift_config,
            lambda runtime: runtime.orchestrator.drop_old_partitions(schema, table, retention_days, **options),
        )
    )


@partitions.command("report")
@click.argument("table")
@config_option
@schema_option
@click.option("--empty", "only_empty", is_flag=True, help="Only partitions without rows")
@click.option("--large", "only_large", is_flag=True, help="Only partitions above the size threshold")
@click.option("--threshold-mb", type=float, help="Size threshold for --large (overrides config)")
@click.pass_context
@handle_errors
def partitions_report(
    ctx,
    table: str,
    config: Optional[str],
    schema: Optional[str],
    only_empty: bool,
    only_large: bool,
    threshold_mb: Optional[float],
):
    """Show the size, rows and tablespace of each partition."""
    if only_empty and only_large:
        raise ConfigurationError("--empty and --large cannot be combined")
    pgshift_config = _load_config(ctx, config)
    schema, table = _table_name(table, schema, pgshift_config)

    async def action(runtime: Runtime):
        orchestrator = runtime.orchestrator
        if only_empty:
            return await orchestrator.find_empty_partitions(schema, table)
        if only_large:
            return await orchestrator.find_large_partitions(schema, table, threshold_mb)
        return await orchestrator.partition_sizes(schema, table)

    rows = _run(pgshift_config, action)
    if not rows:
        console.print(f"[yellow]No matching partitions of {schema}.{table}[/yellow]")
        return

    report = Table(title=f"Partitions of {schema}.{table}")
    report.add_column("Partition", style="cyan")
    report.add_column("Bound")
    report.add_column("Tablespace")
    report.add_column("Size (MB)", justify="right")
    report.add_column("Rows", justify="right")
    report.add_column("Last analyzed")
    for info in rows:
        report.add_row(
            info.name,
            info.bound,
            info.tablespace or "pg_default",
            f"{info.size_mb:,.1f}",
            f"{info.live_rows:,}",
            info.last_analyzed.isoformat(timespec="seconds") if info.last_analyzed else "-",
        )
    console.print(report)
    total = sum(info.size_mb for info in rows)
    console.print(f"{len(rows)} partition(s), {total:,.1f} MB")


@main.command()
@click.argument("operation_id", type=int)
@config_option
@click.pass_context
@handle_errors
def resume(ctx, operation_id: int, config: Optional[str]):
    """Continue an interrupted operation from its last recorded phase."""
    pgshift_config = _load_config(ctx, config)
    _finish(
        _run_workflow(pgshift_config, lambda runtime: runtime.orchestrator.resume(operation_id)),
        False,
    )


def _run_workflow(config: PgshiftConfig, action):
    """Like ``_run`` but reports a partial success instead of failing."""
    try:
        return _run(config, action)
    except PartialFailure as e:
        console.print(f"[yellow]Operation {e.operation_id} partially succeeded:[/yellow] {e.message}")
        sys.exit(2)


def _finish(outcome, dry_run: bool) -> None:
    if dry_run:
        _show_plan(outcome)
    else:
        _report(outcome)


def _load_subpartitioning(path: str) -> SubpartitionSpec:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in subpartitioning file: {e}")
    if isinstance(data, dict) and "subpartitioning" in data:
        data = data["subpartitioning"]
    try:
        return SubpartitionSpec.model_validate(data)
    except ValueError as e:
        raise ConfigurationError(f"Invalid subpartitioning in {path}: {e}")


def _load_layout(path: str) -> Tuple[PartitionScheme, List[PartitionDescriptor]]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in layout file: {e}")
    if not isinstance(data, dict) or "partitioning" not in data:
        raise ConfigurationError(f"{path} must have a partitioning section")
    try:
        scheme = PartitionScheme.model_validate(data["partitioning"])
        partitions = [PartitionDescriptor.model_validate(p) for p in data.get("partitions") or []]
    except ValueError as e:
        raise ConfigurationError(f"Invalid partition layout in {path}: {e}")
    return scheme, partitions


# ----------------------------------------------------------------------
# monitoring


@main.command()
@click.argument("operation_id", type=int)
@config_option
@click.option("--events", is_flag=True, help="Show the event journal")
@click.pass_context
@handle_errors
def status(ctx, operation_id: int, config: Optional[str], events: bool):
    """Show one operation from the ledger."""
    pgshift_config = _load_config(ctx, config)

    async def action(runtime: Runtime):
        record = await runtime.orchestrator.get_status(operation_id)
        journal = await runtime.orchestrator.get_events(operation_id) if events and record else []
        return record, journal

    record, journal = _run(pgshift_config, action)
    if record is None:
        console.print(f"[red]✗[/red] Operation {operation_id} not found")
        sys.exit(1)
    _display_record(record)

    if journal:
        table = Table(title="Events")
        table.add_column("At")
        table.add_column("Event", style="cyan")
        table.add_column("Phase")
        table.add_column("Status")
        table.add_column("Message")
        for event in journal:
            table.add_row(
                event.created_at.isoformat(timespec="seconds"),
                event.event_type.value,
                event.phase or "",
                event.status.value if event.status else "",
                event.message or "",
            )
        console.print(table)


@main.command()
@config_option
@click.option("--target", help="Only operations on this object (schema.table)")
@click.option(
    "--type",
    "operation_type",
    type=click.Choice([t.value for t in OperationType]),
    help="Only operations of this type",
)
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--days", type=int, help="Only operations started in the last N days")
@click.pass_context
@handle_errors
def history(
    ctx,
    config: Optional[str],
    target: Optional[str],
    operation_type: Optional[str],
    limit: int,
    days: Optional[int],
):
    """List recent operations, newest first."""
    pgshift_config = _load_config(ctx, config)
    kind = OperationType(operation_type) if operation_type else None
    records = _run(
        pgshift_config, lambda runtime: runtime.orchestrator.get_history(target, kind, limit, days)
    )
    if not records:
        console.print("[yellow]No operations recorded[/yellow]")
        return

    table = Table(title="Operation history")
    table.add_column("ID", justify="right")
    table.add_column("Type", style="cyan")
    table.add_column("Target")
    table.add_column("Status")
    table.add_column("Phase")
    table.add_column("Started")
    table.add_column("Duration", justify="right")
    table.add_column("Rows", justify="right")
    for record in records:
        table.add_row(
            str(record.operation_id),
            record.operation_type.value,
            record.target_object,
            _status_text(record),
            record.phase or "",
            record.started_at.isoformat(timespec="seconds"),
            _duration(record.duration_ms),
            f"{record.rows_processed:,}",
        )
    console.print(table)


@main.command()
@config_option
@click.option("--target", help="Only this object (schema.table)")
@click.option("--days", type=int, help="Only operations started in the last N days")
@click.option(
    "--type",
    "operation_type",
    type=click.Choice([t.value for t in OperationType]),
    help="Only operations of this type",
)
@click.pass_context
@handle_errors
def performance(
    ctx, config: Optional[str], target: Optional[str], days: Optional[int], operation_type: Optional[str]
):
    """Aggregate durations and throughput per target and operation type."""
    pgshift_config = _load_config(ctx, config)
    kind = OperationType(operation_type) if operation_type else None
    summaries = _run(
        pgshift_config, lambda runtime: runtime.orchestrator.get_performance_summary(target, days, kind)
    )
    if not summaries:
        console.print("[yellow]No operations recorded[/yellow]")
        return

    table = Table(title="Performance")
    table.add_column("Target", style="cyan")
    table.add_column("Type")
    table.add_column("Runs", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Avg duration", justify="right")
    table.add_column("Max duration", justify="right")
    table.add_column("Rows", justify="right")
    table.add_column("Rows/s", justify="right")
    for summary in summaries:
        table.add_row(
            summary.target_object,
            summary.operation_type.value,
            str(summary.total),
            f"{summary.success_rate:.0%}",
            _duration(summary.avg_duration_ms),
            _duration(summary.max_duration_ms),
            f"{summary.total_rows:,}",
            f"{summary.avg_rows_per_second:,.0f}" if summary.avg_rows_per_second else "-",
        )
    console.print(table)


@main.command()
@config_option
@click.option("--days", type=int, help="Only failures in the last N days")
@click.pass_context
@handle_errors
def errors(ctx, config: Optional[str], days: Optional[int]):
    """Group failures by error code."""
    pgshift_config = _load_config(ctx, config)
    summaries = _run(pgshift_config, lambda runtime: runtime.orchestrator.get_error_summary(days))
    if not summaries:
        console.print("[green]✓[/green] No failures recorded")
        return

    table = Table(title="Errors")
    table.add_column("Code", style="red")
    table.add_column("Type")
    table.add_column("Count", justify="right")
    table.add_column("Last seen")
    table.add_column("Targets")
    table.add_column("Last message")
    for summary in summaries:
        table.add_row(
            summary.error_code,
            summary.operation_type.value,
            str(summary.occurrences),
            summary.last_seen_at.isoformat(timespec="seconds") if summary.last_seen_at else "",
            ", ".join(summary.targets),
            summary.last_message or "",
        )
    console.print(table)


@main.command()
@click.argument("operation_id", type=int)
@config_option
@click.pass_context
@handle_errors
def cancel(ctx, operation_id: int, config: Optional[str]):
    """Request cancellation; the operation stops at its next checkpoint."""
    pgshift_config = _load_config(ctx, config)
    flagged = _run(pgshift_config, lambda runtime: runtime.orchestrator.cancel(operation_id))
    if not flagged:
        console.print(f"[yellow]Operation {operation_id} is not active[/yellow]")
        sys.exit(1)
    console.print(f"[green]✓[/green] Cancellation requested for operation {operation_id}")


@main.command()
@config_option
@click.option("--days", type=int, help="Retention in days (defaults to ledger.retention_days)")
@click.pass_context
@handle_errors
def sweep(ctx, config: Optional[str], days: Optional[int]):
    """Delete terminal ledger records older than the retention period."""
    pgshift_config = _load_config(ctx, config)
    removed = _run(pgshift_config, lambda runtime: runtime.ledger.sweep(days))
    console.print(f"[green]✓[/green] Removed {removed} operation record(s)")


# ----------------------------------------------------------------------
# display helpers


def _status_text(record: OperationRecord) -> str:
    colours = {
        "completed": "green",
        "partial_success": "yellow",
        "failed": "red",
        "cancelled": "magenta",
    }
    colour = colours.get(record.status.value, "blue")
    return f"[{colour}]{record.status.value}[/{colour}]"


def _duration(ms: Optional[float]) -> str:
    if ms is None:
        return "-"
    if ms < 1000:
        return f"{ms:.0f}ms"
    return f"{ms / 1000:.1f}s"


def _display_record(record: OperationRecord) -> None:
    console.print(f"\n[bold cyan]Operation {record.operation_id}[/bold cyan]")
    console.print(f"  Type: {record.operation_type.value}")
    console.print(f"  Target: {record.target_object} ({record.target_kind.value})")
    console.print(f"  Status: {_status_text(record)}")
    console.print(f"  Phase: {record.phase or '-'}")
    console.print(f"  Started: {record.started_at.isoformat(timespec='seconds')}")
    if record.ended_at:
        console.print(f"  Ended: {record.ended_at.isoformat(timespec='seconds')}")
    console.print(f"  Duration: {_duration(record.duration_ms)}")
    console.print(f"  Rows processed: {record.rows_processed:,}")
    console.print(f"  Objects affected: {record.objects_affected}")
    if record.cancel_requested and not record.is_terminal:
        console.print("  [yellow]Cancellation requested[/yellow]")
    if record.error_code:
        console.print(f"  Error: [red]{record.error_code}[/red] {record.error_message or ''}")


def _print_summary(summary: dict) -> None:
    table = Table(title="Summary")
    table.add_column("Statement", style="cyan")
    table.add_column("Count", justify="right")
    for kind, count in summary["by_kind"].items():
        table.add_row(kind, str(count))
    table.add_row("[bold]total[/bold]", f"[bold]{summary['statements']}[/bold]")
    console.print(table)
    console.print(f"{summary['lines']} lines, {summary['characters']} characters")


if __name__ == "__main__":
    main()
