"""
Parallel migrate-and-rename.

Rows are copied into a new table in key-range batches. Each batch commits
together with the checkpoint row that records its upper key, so a
restarted copy continues after the last committed batch and never copies
a row twice.

Before the first batch a trigger starts logging the key of every row
written to the source. Row count validation, delta sync and the swap
replay that log: each logged key at or below the watermark is deleted
from the target and copied again from the source, so updates and deletes
to already-copied rows are not lost. TRUNCATE is not captured. The last
replay, the final delta copy, the full row count comparison and the name
swap share one transaction holding a write lock on the source.

A run that fails, is cancelled or times out before the swap drops the
capture trigger and the partially filled target; resuming is only
possible after a crash, which leaves both in place.
"""

import logging
from typing import Any, Dict, Optional

from pydantic import Field

from .base import Workflow, WorkflowParams
from .state_machine import MIGRATE_MACHINE, WorkflowState
from ..descriptors.loader import definition_to_dict
from ..descriptors.model import IdentityMode, TableDefinition
from ..exceptions import ExecutionError, PgshiftError, PreflightError, SchemaError
from ..ledger.model import OperationType
from ..synthesis.literals import qualify


logger = logging.getLogger(__name__)

# phases after which a half-built target may be left behind
_TARGET_PHASES = frozenset(
    {
        WorkflowState.CREATE_TARGET,
        WorkflowState.COPY_DATA,
        WorkflowState.VALIDATE_ROWCOUNTS,
        WorkflowState.SYNC_DELTA,
        WorkflowState.RENAME_ATOMIC,
    }
)


class MigrateParams(WorkflowParams):
    key: Optional[str] = Field(None, description="Batching key; defaults to the first primary key column")
    target_definition: Optional[Dict[str, Any]] = Field(
        None, description="New shape of the table; defaults to its current shape"
    )
    tablespace: Optional[str] = None
    batch_size: int = Field(10000, ge=1)
    target_suffix: str = "_new"
    retired_suffix: str = "_old"
    drop_retired: bool = False


class MigrateWorkflow(Workflow):
    """Re-populates a table into a new definition and swaps names."""

    operation_type = OperationType.MIGRATE_TABLE
    machine = MIGRATE_MACHINE
    params_model = MigrateParams

    def prepare(self) -> None:
        if self.params.target_definition is not None:
            self.context.engine.validator.check(self._declared_target())

    def _declared_target(self) -> TableDefinition:
        return TableDefinition.model_validate(self.params.target_definition)

    async def _target_definition(self, source: TableDefinition) -> TableDefinition:
        """Shape the copied rows land in, under the source's name."""
        target = source
        if self.params.target_definition is not None:
            target = self._declared_target().model_copy(
                update={"name": source.name, "schema_name": source.schema_name}
            )
        return await self._placed(target)

    async def _placed(self, target: TableDefinition) -> TableDefinition:
        """``target`` moved to the requested tablespace, if any."""
        if self.params.tablespace:
            if not await self.introspector.tablespace_exists(self.params.tablespace):
                raise PreflightError(f"Tablespace {self.params.tablespace} does not exist", self.operation_id)
            target = target.model_copy(
                update={
                    "properties": target.properties.model_copy(
                        update={"tablespace": self.params.tablespace}
                    )
                }
            )
        return target

    @property
    def staging_relation(self) -> str:
        return qualify(self.state["target_table"], self.params.schema_name)

    # ------------------------------------------------------------------
    # phases

    async def _preflight(self) -> None:
        schema, table = self.params.schema_name, self.params.table
        engine = self.context.engine
        await self.require_table(schema, table)

        inbound = await self.introspector.get_inbound_foreign_keys(schema, table)
        if inbound:
            names = ", ".join(f"{fk.table_full_name}.{fk.name}" for fk in inbound)
            raise PreflightError(
                f"{schema}.{table} is referenced by foreign keys ({names}); "
                "they would follow the retired table",
                self.operation_id,
            )

        key = await self.key_column(schema, table, self.params.key)
        try:
            source = await self.introspector.reflect_definition(schema, table)
        except SchemaError as e:
            raise PreflightError(f"Cannot reflect {schema}.{table}: {e}", self.operation_id, cause=e) from e

        target = await self._target_definition(source)
        staging = engine.clone_definition(target, table + self.params.target_suffix)
        engine.validator.check(staging)

        target_columns = set(staging.column_names)
        columns = [c for c in source.column_names if c in target_columns]
        if key["key"] not in columns:
            raise PreflightError(f"Key column {key['key']} is missing from the target", self.operation_id)

        retired = table + self.params.retired_suffix
        for name in (staging.name, retired):
            if await self.introspector.table_exists(schema, name):
                raise PreflightError(f"Table {schema}.{name} already exists", self.operation_id)

        size = await self.introspector.relation_size(schema, table)
        await self.check_space(staging.properties.tablespace, size)

        await self.checkpoint(
            key=key["key"],
            key_type=key["key_type"],
            columns=columns,
            target_table=staging.name,
            retired_table=retired,
            overriding=any(c.identity == IdentityMode.ALWAYS for c in staging.columns),
            target_definition=definition_to_dict(staging),
            constraint_names={
                staged.name: original.name
                for staged, original in zip(staging.constraints, target.constraints)
            },
            size_bytes=size,
        )

    async def _create_target(self) -> None:
        staging = TableDefinition.model_validate(self.state["target_definition"])
        if await self.introspector.table_exists(self.params.schema_name, staging.name):
            logger.info(f"Target {staging.qualified_name} already exists, continuing")
        else:
            text = self.context.engine.synthesize(staging)
            await self.operations.create_table(text.statements)
            self.objects_affected += 1
        await self.operations.ensure_checkpoint_table()
        await self.operations.init_checkpoint(self.operation_id, self.relation, self.staging_relation)
        await self.operations.start_capture(self.relation, self.operation_id, self.state["key"])
        await self.checkpoint(f"created {staging.qualified_name}")

    async def _copy_batches(self) -> Optional[str]:
        """Copy batches after the committed watermark until none remain."""
        checkpoint = await self.operations.read_checkpoint(self.operation_id) or {}
        watermark = checkpoint.get("watermark")
        self.rows_processed = int(checkpoint.get("rows_copied") or 0)
        batches = int(self.state.get("batches", 0))

        while True:
            await self.check_cancel()
            upper = await self.operations.next_watermark(
                self.relation,
                self.state["key"],
                self.state["key_type"],
                watermark,
                self.params.batch_size,
            )
            if upper is None:
                break
            copied = await self.operations.copy_batch(
                self.operation_id,
                self.relation,
                self.staging_relation,
                self.state["columns"],
                self.state["key"],
                self.state["key_type"],
                watermark,
                upper,
                self.state.get("overriding", False),
                self.parallel_degree,
            )
            watermark = upper
            batches += 1
            self.rows_processed += copied
            await self.checkpoint(f"copied {copied} rows through {upper}", watermark=watermark, batches=batches)
        return watermark

    async def _copy_data(self) -> None:
        watermark = await self._copy_batches()
        logger.info(f"Copied {self.rows_processed} rows of {self.target} through {watermark}")

    def _copy_args(self) -> tuple:
        return (
            self.operation_id,
            self.relation,
            self.staging_relation,
            self.state["columns"],
            self.state["key"],
            self.state["key_type"],
            self.state.get("watermark"),
            self.state.get("overriding", False),
        )

    def _count_replayed(self, result: Dict[str, int]) -> Dict[str, int]:
        """Running totals of rows removed from and copied again into the target."""
        return {
            "rows_removed": int(self.state.get("rows_removed", 0)) + result.get("rows_removed", 0),
            "rows_recopied": int(self.state.get("rows_recopied", 0)) + result.get("rows_recopied", 0),
        }

    async def _validate_rowcounts(self) -> None:
        watermark = self.state.get("watermark")
        result = await self.operations.reconcile_counts(*self._copy_args())
        source_rows, target_rows = result["source_rows"], result["target_rows"]
        if source_rows != target_rows:
            raise ExecutionError(
                f"Row count mismatch through {watermark}: source {source_rows}, target {target_rows}",
                self.operation_id,
                {"source_rows": source_rows, "target_rows": target_rows},
            )
        await self.checkpoint(source_rows=source_rows, target_rows=target_rows, **self._count_replayed(result))

    async def _sync_delta(self) -> None:
        before = self.rows_processed
        await self._copy_batches()
        replayed = await self.operations.sync_changes(*self._copy_args())
        logger.info(
            f"Synchronized {self.rows_processed - before} new rows and "
            f"{replayed['rows_recopied']} changed rows written during the copy"
        )
        await self.checkpoint(**self._count_replayed(replayed))

    async def _rename_atomic(self) -> None:
        schema = self.params.schema_name
        staging, retired = self.state["target_table"], self.state["retired_table"]
        if self.resumed and not await self.introspector.table_exists(schema, staging):
            if await self.introspector.table_exists(schema, retired):
                logger.info(f"Names of {self.target} were already swapped")
                return

        result = await self.operations.swap_tables(
            self.operation_id,
            self.relation,
            self.staging_relation,
            retired,
            self.params.table,
            self.state["columns"],
            self.state["key"],
            self.state["key_type"],
            self.state.get("watermark"),
            self.state.get("overriding", False),
        )
        self.rows_processed += result["delta_rows"]
        self.objects_affected += 1
        replayed = self._count_replayed(result)
        await self.checkpoint("names swapped", swapped=True, **dict(result, **replayed))

    async def _cleanup(self) -> None:
        if not self.params.drop_retired:
            return
        schema = self.params.schema_name
        await self.operations.drop_table(qualify(self.state["retired_table"], schema))
        for staged, original in self.state.get("constraint_names", {}).items():
            if staged != original:
                await self.operations.rename_constraint(self.relation, staged, original)
        await self.checkpoint("retired table dropped", retired_dropped=True)

    async def _abort(self, error: PgshiftError) -> None:
        staging = self.state.get("target_table")
        if self.current not in _TARGET_PHASES or not staging:
            return
        try:
            await self.operations.stop_capture(self.relation, self.operation_id)
        except Exception as e:
            logger.warning(f"Could not stop change capture on {self.target}: {e}")
        try:
            await self.operations.drop_table(self.staging_relation)
            logger.info(f"Dropped partial target {staging} after {type(error).__name__}")
        except Exception as e:
            logger.warning(f"Could not drop partial target {staging}: {e}")
