"""
Entry points for online evolution workflows.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Type, Union

from .base import CancelToken, Workflow, WorkflowContext, WorkflowResult
from .column_removal import ColumnRemovalWorkflow, RemoveColumnsParams
from .maintenance import MAINTENANCE_OPERATIONS, PartitionAction, PartitionMaintenanceWorkflow, PartitionParams
from .migrate import MigrateParams, MigrateWorkflow
from .move import MoveParams, MoveWorkflow
from .partitioning import PartitionConversionParams, PartitionConversionWorkflow
from .statistics import AnalyzeAdvisor, StatisticsAdvisor
from .subpartition import ConvertParams, OnlineConversionWorkflow, RebuildConversionWorkflow
from ..config import WorkflowConfig
from ..database.introspection import PartitionSizeInfo, SchemaIntrospector
from ..database.operations import TableOperations
from ..descriptors.loader import definition_to_dict
from ..descriptors.model import PartitionDescriptor, PartitionScheme, SubpartitionSpec, TableDefinition
from ..exceptions import PreflightError, WorkflowError
from ..ledger.ledger import OperationLedger
from ..ledger.model import (
    ErrorSummary,
    OperationEvent,
    OperationRecord,
    OperationType,
    PerformanceSummary,
)
from ..synthesis import evolution
from ..synthesis.engine import ConversionMode, SynthesisEngine
from ..synthesis.literals import qualify
from ..synthesis.steps import DDLScript


logger = logging.getLogger(__name__)

_RESUMABLE: Dict[OperationType, Type[Workflow]] = {
    OperationType.MOVE_TABLE: MoveWorkflow,
    OperationType.MOVE_PARTITION: MoveWorkflow,
    OperationType.MOVE_SUBPARTITION: MoveWorkflow,
    OperationType.MIGRATE_TABLE: MigrateWorkflow,
    OperationType.CONVERT_TO_PARTITIONED: PartitionConversionWorkflow,
    OperationType.REMOVE_COLUMNS: ColumnRemovalWorkflow,
}
_RESUMABLE.update({operation_type: PartitionMaintenanceWorkflow for operation_type in MAINTENANCE_OPERATIONS})


class EvolutionOrchestrator:
    """Runs evolution workflows and answers questions about them.

    The awaitable methods (``move_table``, ``migrate_table``, ...) run a
    workflow to completion and return its ``WorkflowResult``. The
    ``submit_*`` variants return the operation id as soon as the ledger
    record exists and run the workflow as a task; ``wait`` collects it.
    """

    def __init__(
        self,
        ledger: OperationLedger,
        operations: TableOperations,
        introspector: SchemaIntrospector,
        engine: Optional[SynthesisEngine] = None,
        advisor: Optional[StatisticsAdvisor] = None,
        settings: Optional[WorkflowConfig] = None,
    ):
        self.ledger = ledger
        self.context = WorkflowContext(
            ledger=ledger,
            operations=operations,
            introspector=introspector,
            engine=engine or SynthesisEngine(),
            advisor=advisor or AnalyzeAdvisor(operations),
            settings=settings or WorkflowConfig(),
        )
        self._tokens: Dict[int, CancelToken] = {}
        self._tasks: Dict[int, asyncio.Task] = {}

    @property
    def settings(self) -> WorkflowConfig:
        return self.context.settings

    # ------------------------------------------------------------------
    # workflow construction

    def _move(self, schema: str, table: str, tablespace: str, partition: Optional[str], options: Dict[str, Any]) -> MoveWorkflow:
        params = MoveParams(schema_name=schema, table=table, tablespace=tablespace, partition=partition, **options)
        return MoveWorkflow(self.context, params)

    def _migrate(
        self,
        schema: str,
        table: str,
        target: Optional[TableDefinition],
        options: Dict[str, Any],
    ) -> MigrateWorkflow:
        params = MigrateParams(
            schema_name=schema,
            table=table,
            target_definition=definition_to_dict(target) if target is not None else None,
            **self._copy_defaults(options),
        )
        return MigrateWorkflow(self.context, params)

    def _convert(
        self,
        schema: str,
        table: str,
        subpartitioning: Union[SubpartitionSpec, Dict[str, Any]],
        mode: ConversionMode,
        options: Dict[str, Any],
    ) -> Workflow:
        if mode is None:
            raise WorkflowError("A conversion mode (rebuild or online) is required")
        mode = ConversionMode(mode)
        if isinstance(subpartitioning, dict):
            subpartitioning = SubpartitionSpec.model_validate(subpartitioning)
        params = ConvertParams(
            schema_name=schema,
            table=table,
            subpartitioning=subpartitioning.model_dump(mode="json", exclude_defaults=True),
            mode=mode,
            **self._copy_defaults(options),
        )
        cls = RebuildConversionWorkflow if mode == ConversionMode.REBUILD else OnlineConversionWorkflow
        return cls(self.context, params)

    def _remove(self, schema: str, table: str, columns: Sequence[str], options: Dict[str, Any]) -> ColumnRemovalWorkflow:
        options = dict(options)
        options.setdefault("batch_size", self.settings.batch_size)
        params = RemoveColumnsParams(schema_name=schema, table=table, columns=list(columns), **options)
        return ColumnRemovalWorkflow(self.context, params)

    def _partition(
        self,
        schema: str,
        table: str,
        partitioning: Union[PartitionScheme, Dict[str, Any]],
        partitions: Sequence[Union[PartitionDescriptor, Dict[str, Any]]],
        options: Dict[str, Any],
    ) -> PartitionConversionWorkflow:
        if isinstance(partitioning, dict):
            partitioning = PartitionScheme.model_validate(partitioning)
        params = PartitionConversionParams(
            schema_name=schema,
            table=table,
            partitioning=partitioning.model_dump(mode="json", exclude_defaults=True),
            partitions=[_descriptor_dict(p) for p in partitions],
            **self._copy_defaults(options),
        )
        return PartitionConversionWorkflow(self.context, params)

    def _maintain(
        self, schema: str, table: str, action: PartitionAction, options: Dict[str, Any]
    ) -> PartitionMaintenanceWorkflow:
        options = dict(options)
        if options.get("descriptor") is not None:
            options["descriptor"] = _descriptor_dict(options["descriptor"])
        params = PartitionParams(schema_name=schema, table=table, action=PartitionAction(action), **options)
        return PartitionMaintenanceWorkflow(self.context, params)

    def _copy_defaults(self, options: Dict[str, Any]) -> Dict[str, Any]:
        """Fill copy tuning from settings so the ledger holds concrete values."""
        options = dict(options)
        options.setdefault("batch_size", self.settings.batch_size)
        options.setdefault("target_suffix", self.settings.target_suffix)
        options.setdefault("retired_suffix", self.settings.retired_suffix)
        options.setdefault("drop_retired", self.settings.drop_retired)
        return options

    # ------------------------------------------------------------------
    # running

    async def _run(self, workflow: Workflow) -> WorkflowResult:
        if workflow.operation_id is None:
            workflow.prepare()
            await workflow.register()
        self._tokens[workflow.operation_id] = workflow.token
        try:
            return await workflow.run()
        finally:
            self._tokens.pop(workflow.operation_id, None)

    async def _submit(self, workflow: Workflow) -> int:
        if workflow.operation_id is None:
            workflow.prepare()
            await workflow.register()
        operation_id = workflow.operation_id
        self._tokens[operation_id] = workflow.token
        task = asyncio.create_task(self._run(workflow))
        task.add_done_callback(lambda t: self._reap(operation_id, t))
        self._tasks[operation_id] = task
        return operation_id

    def _reap(self, operation_id: int, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning(f"Operation {operation_id} task was cancelled; the operation can be resumed")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Operation {operation_id} ended with {type(error).__name__}: {error}")

    async def wait(self, operation_id: int) -> WorkflowResult:
        """Wait for a submitted operation and return its result.

        Re-raises the workflow's error. For operations not running in this
        process, returns the result recorded in the ledger once terminal.
        """
        task = self._tasks.get(operation_id)
        if task is not None:
            try:
                return await task
            finally:
                self._tasks.pop(operation_id, None)

        record = await self.ledger.get_status(operation_id)
        if record is None:
            raise WorkflowError(f"Unknown operation {operation_id}", operation_id)
        if not record.is_terminal:
            raise WorkflowError(
                f"Operation {operation_id} is {record.status.value} and not running in this process; "
                "resume it to continue",
                operation_id,
            )
        return WorkflowResult.from_record(record)

    async def cancel(self, operation_id: int) -> bool:
        """Request cooperative cancellation; honored at the next checkpoint."""
        token = self._tokens.get(operation_id)
        if token is not None:
            token.cancel()
        flagged = await self.ledger.request_cancel(operation_id)
        return flagged or token is not None

    def _resumable(self, record: OperationRecord) -> Workflow:
        if record.is_terminal:
            raise WorkflowError(
                f"Operation {record.operation_id} already ended as {record.status.value}",
                record.operation_id,
            )
        if record.operation_type == OperationType.CONVERT_SUBPARTITIONS:
            mode = ConversionMode(record.context.get("params", {}).get("mode"))
            cls = RebuildConversionWorkflow if mode == ConversionMode.REBUILD else OnlineConversionWorkflow
        else:
            cls = _RESUMABLE.get(record.operation_type)
        if cls is None:
            raise WorkflowError(
                f"Operations of type {record.operation_type.value} cannot be resumed",
                record.operation_id,
            )
        return cls.from_record(self.context, record)

    async def _load(self, operation_id: int) -> Workflow:
        if operation_id in self._tasks and not self._tasks[operation_id].done():
            raise WorkflowError(f"Operation {operation_id} is still running in this process", operation_id)
        record = await self.ledger.get_status(operation_id)
        if record is None:
            raise WorkflowError(f"Unknown operation {operation_id}", operation_id)
        workflow = self._resumable(record)
        logger.info(f"Resuming operation {operation_id} from {workflow.current.value}")
        return workflow

    async def resume(self, operation_id: int) -> WorkflowResult:
        """Continue an interrupted operation from its last recorded phase."""
        return await self._run(await self._load(operation_id))

    async def submit_resume(self, operation_id: int) -> int:
        return await self._submit(await self._load(operation_id))

    # ------------------------------------------------------------------
    # workflow entry points

    async def move_table(self, schema: str, table: str, tablespace: str, **options: Any) -> WorkflowResult:
        return await self._run(self._move(schema, table, tablespace, None, options))

    async def submit_move_table(self, schema: str, table: str, tablespace: str, **options: Any) -> int:
        return await self._submit(self._move(schema, table, tablespace, None, options))

    async def move_partition(
        self, schema: str, table: str, partition: str, tablespace: str, **options: Any
    ) -> WorkflowResult:
        return await self._run(self._move(schema, table, tablespace, partition, options))

    async def submit_move_partition(
        self, schema: str, table: str, partition: str, tablespace: str, **options: Any
    ) -> int:
        return await self._submit(self._move(schema, table, tablespace, partition, options))

    async def migrate_table(
        self, schema: str, table: str, target: Optional[TableDefinition] = None, **options: Any
    ) -> WorkflowResult:
        return await self._run(self._migrate(schema, table, target, options))

    async def submit_migrate_table(
        self, schema: str, table: str, target: Optional[TableDefinition] = None, **options: Any
    ) -> int:
        return await self._submit(self._migrate(schema, table, target, options))

    async def convert_subpartitions(
        self,
        schema: str,
        table: str,
        subpartitioning: Union[SubpartitionSpec, Dict[str, Any]],
        mode: ConversionMode,
        **options: Any,
    ) -> WorkflowResult:
        return await self._run(self._convert(schema, table, subpartitioning, mode, options))

    async def submit_convert_subpartitions(
        self,
        schema: str,
        table: str,
        subpartitioning: Union[SubpartitionSpec, Dict[str, Any]],
        mode: ConversionMode,
        **options: Any,
    ) -> int:
        return await self._submit(self._convert(schema, table, subpartitioning, mode, options))

    async def remove_columns(self, schema: str, table: str, columns: Sequence[str], **options: Any) -> WorkflowResult:
        return await self._run(self._remove(schema, table, columns, options))

    async def submit_remove_columns(self, schema: str, table: str, columns: Sequence[str], **options: Any) -> int:
        return await self._submit(self._remove(schema, table, columns, options))

    async def move_subpartition(
        self, schema: str, table: str, partition: str, subpartition: str, tablespace: str, **options: Any
    ) -> WorkflowResult:
        options["subpartition"] = subpartition
        return await self._run(self._move(schema, table, tablespace, partition, options))

    async def submit_move_subpartition(
        self, schema: str, table: str, partition: str, subpartition: str, tablespace: str, **options: Any
    ) -> int:
        options["subpartition"] = subpartition
        return await self._submit(self._move(schema, table, tablespace, partition, options))

    async def convert_to_partitioned(
        self,
        schema: str,
        table: str,
        partitioning: Union[PartitionScheme, Dict[str, Any]],
        partitions: Sequence[Union[PartitionDescriptor, Dict[str, Any]]] = (),
        **options: Any,
    ) -> WorkflowResult:
        return await self._run(self._partition(schema, table, partitioning, partitions, options))

    async def submit_convert_to_partitioned(
        self,
        schema: str,
        table: str,
        partitioning: Union[PartitionScheme, Dict[str, Any]],
        partitions: Sequence[Union[PartitionDescriptor, Dict[str, Any]]] = (),
        **options: Any,
    ) -> int:
        return await self._submit(self._partition(schema, table, partitioning, partitions, options))

    # partition maintenance

    async def maintain_partitions(
        self, schema: str, table: str, action: PartitionAction, **options: Any
    ) -> WorkflowResult:
        """Run one ``PartitionAction``; ``options`` are ``PartitionParams`` fields."""
        return await self._run(self._maintain(schema, table, action, options))

    async def submit_maintain_partitions(
        self, schema: str, table: str, action: PartitionAction, **options: Any
    ) -> int:
        return await self._submit(self._maintain(schema, table, action, options))

    async def add_partition(
        self, schema: str, table: str, partition: Union[PartitionDescriptor, Dict[str, Any]], **options: Any
    ) -> WorkflowResult:
        return await self.maintain_partitions(schema, table, PartitionAction.ADD, descriptor=partition, **options)

    async def attach_partition(
        self,
        schema: str,
        table: str,
        partition: str,
        bound: Union[PartitionDescriptor, Dict[str, Any]],
        **options: Any,
    ) -> WorkflowResult:
        """Attach the existing table ``partition`` with the bound described by ``bound``."""
        return await self.maintain_partitions(
            schema, table, PartitionAction.ATTACH, partition=partition, descriptor=bound, **options
        )

    async def detach_partition(
        self, schema: str, table: str, partition: str, concurrently: bool = False, **options: Any
    ) -> WorkflowResult:
        return await self.maintain_partitions(
            schema, table, PartitionAction.DETACH, partition=partition, concurrently=concurrently, **options
        )

    async def drop_partition(self, schema: str, table: str, partition: str, **options: Any) -> WorkflowResult:
        return await self.maintain_partitions(schema, table, PartitionAction.DROP, partition=partition, **options)

    async def truncate_partition(self, schema: str, table: str, partition: str, **options: Any) -> WorkflowResult:
        return await self.maintain_partitions(schema, table, PartitionAction.TRUNCATE, partition=partition, **options)

    async def drop_old_partitions(
        self, schema: str, table: str, retention_days: int, **options: Any
    ) -> WorkflowResult:
        """Drop the range partitions whose upper bound is ``retention_days`` or more in the past."""
        return await self.maintain_partitions(
            schema, table, PartitionAction.DROP_OLD, retention_days=retention_days, **options
        )

    # ------------------------------------------------------------------
    # dry runs

    async def plan_move(self, schema: str, table: str, tablespace: str, **options: Any) -> DDLScript:
        leaves = await self.context.introspector.leaf_partitions(schema, table)
        return evolution.plan_move(
            qualify(table, schema),
            tablespace,
            leaves=[qualify(name, leaf_schema) for leaf_schema, name in leaves],
            rebuild_indexes=options.get("rebuild_indexes", True),
            index_tablespace=options.get("index_tablespace"),
            lock_timeout_seconds=self.settings.lock_timeout_seconds,
            parallel_degree=options.get("parallel_degree") or self.settings.parallel_degree,
        )

    async def _key(self, schema: str, table: str, key: Optional[str]) -> Dict[str, str]:
        introspector = self.context.introspector
        if key is None:
            for constraint in await introspector.get_constraints(schema, table):
                if constraint.kind == "p" and constraint.columns:
                    key = constraint.columns[0]
                    break
        if key is None:
            raise PreflightError(f"{schema}.{table} has no primary key; a batching key is required")
        key_type = await introspector.get_column_type(schema, table, key)
        if key_type is None:
            raise PreflightError(f"Key column {key} does not exist in {schema}.{table}")
        return {"key": key, "key_type": key_type}

    async def plan_migrate(
        self, schema: str, table: str, target: Optional[TableDefinition] = None, **options: Any
    ) -> DDLScript:
        options = self._copy_defaults(options)
        engine = self.context.engine
        source = await self.context.introspector.reflect_definition(schema, table)
        shaped = source
        if target is not None:
            shaped = target.model_copy(update={"name": source.name, "schema_name": source.schema_name})
        if options.get("tablespace"):
            shaped = shaped.model_copy(
                update={"properties": shaped.properties.model_copy(update={"tablespace": options["tablespace"]})}
            )
        staging = engine.clone_definition(shaped, table + options["target_suffix"])
        key = await self._key(schema, table, options.get("key"))
        return evolution.plan_migrate(
            engine,
            source,
            staging,
            key["key"],
            key["key_type"],
            retired_suffix=options["retired_suffix"],
            drop_retired=options["drop_retired"],
            batch_size=options["batch_size"],
            ledger_schema=self.context.operations.checkpoint_schema,
        )

    async def plan_convert(
        self,
        schema: str,
        table: str,
        subpartitioning: Union[SubpartitionSpec, Dict[str, Any]],
        mode: ConversionMode,
        **options: Any,
    ) -> DDLScript:
        if isinstance(subpartitioning, dict):
            subpartitioning = SubpartitionSpec.model_validate(subpartitioning)
        options = self._copy_defaults(options)
        definition = await self.context.introspector.reflect_definition(schema, table)
        return self.context.engine.generate_subpartition_script(
            definition,
            subpartitioning,
            ConversionMode(mode),
            target_suffix=options["target_suffix"],
            retired_suffix=options["retired_suffix"],
            drop_retired=options["drop_retired"],
            parallel_degree=options.get("parallel_degree") or self.settings.parallel_degree,
        )

    async def plan_remove_columns(
        self, schema: str, table: str, columns: Sequence[str], **options: Any
    ) -> DDLScript:
        introspector = self.context.introspector
        definition = await introspector.reflect_definition(schema, table)
        key = await self._key(schema, table, options.get("key"))
        removed = {c.lower() for c in columns}
        inbound = [
            (qualify(fk.table_name, fk.table_schema), fk.name)
            for fk in await introspector.get_inbound_foreign_keys(schema, table)
            if {c.lower() for c in fk.referenced_columns} & removed
        ]
        return evolution.plan_remove_columns(
            definition,
            columns,
            key["key"],
            key["key_type"],
            inbound=inbound,
            batch_size=options.get("batch_size") or self.settings.batch_size,
        )

    async def plan_convert_to_partitioned(
        self,
        schema: str,
        table: str,
        partitioning: Union[PartitionScheme, Dict[str, Any]],
        partitions: Sequence[Union[PartitionDescriptor, Dict[str, Any]]] = (),
        **options: Any,
    ) -> DDLScript:
        if isinstance(partitioning, dict):
            partitioning = PartitionScheme.model_validate(partitioning)
        layout = [PartitionDescriptor.model_validate(_descriptor_dict(p)) for p in partitions]
        options = self._copy_defaults(options)
        definition = await self.context.introspector.reflect_definition(schema, table)
        return self.context.engine.generate_convert_to_partitioned_ddl(
            definition,
            partitioning,
            layout,
            target_suffix=options["target_suffix"],
            retired_suffix=options["retired_suffix"],
            drop_retired=options["drop_retired"],
            parallel_degree=options.get("parallel_degree") or self.settings.parallel_degree,
        )

    async def generate_index_ddl(
        self,
        schema: str,
        table: str,
        tablespace: Optional[str] = None,
        parallel_degree: Optional[int] = None,
        concurrently: bool = True,
    ) -> DDLScript:
        """Statements recreating the table's indexes; constraint indexes are left out."""
        indexes = await self.context.introspector.get_indexes(schema, table)
        return evolution.plan_index_ddl(
            qualify(table, schema),
            [(index.name, index.definition) for index in indexes if index.constraint_name is None],
            tablespace=tablespace,
            parallel_degree=parallel_degree or self.settings.parallel_degree,
            concurrently=concurrently,
        )

    # ------------------------------------------------------------------
    # partition analysis

    async def partition_sizes(self, schema: str, table: str) -> List[PartitionSizeInfo]:
        return await self.context.introspector.get_partition_size_info(schema, table)

    async def find_empty_partitions(self, schema: str, table: str) -> List[PartitionSizeInfo]:
        return await self.context.introspector.find_empty_partitions(schema, table)

    async def find_large_partitions(
        self, schema: str, table: str, threshold_mb: Optional[float] = None
    ) -> List[PartitionSizeInfo]:
        threshold = threshold_mb if threshold_mb is not None else self.settings.large_partition_mb
        return await self.context.introspector.find_large_partitions(schema, table, threshold)

    async def estimate_move_time(
        self, schema: str, table: str, parallel_degree: Optional[int] = None
    ) -> int:
        """Estimated minutes to move the table or partition ``table``."""
        return await self.context.introspector.estimate_move_time(
            schema,
            table,
            parallel_degree or self.settings.parallel_degree,
            self.settings.move_throughput_mb_per_minute,
        )

    # ------------------------------------------------------------------
    # monitoring

    async def get_status(self, operation_id: int) -> Optional[OperationRecord]:
        return await self.ledger.get_status(operation_id)

    async def get_history(
        self,
        target: Optional[str] = None,
        operation_type: Optional[OperationType] = None,
        limit: int = 50,
        days: Optional[int] = None,
    ) -> List[OperationRecord]:
        return await self.ledger.get_history(target, operation_type, limit, days)

    async def get_events(self, operation_id: int) -> List[OperationEvent]:
        return await self.ledger.get_events(operation_id)

    async def get_performance_summary(
        self,
        target: Optional[str] = None,
        days: Optional[int] = None,
        operation_type: Optional[OperationType] = None,
    ) -> List[PerformanceSummary]:
        return await self.ledger.get_performance_summary(target, days, operation_type)

    async def get_error_summary(self, days: Optional[int] = None) -> List[ErrorSummary]:
        return await self.ledger.get_error_summary(days)


def _descriptor_dict(partition: Union[PartitionDescriptor, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(partition, PartitionDescriptor):
        return partition.model_dump(mode="json", exclude_defaults=True)
    return dict(partition)
