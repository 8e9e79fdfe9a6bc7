"""
Table, partition and subpartition relocation.
"""

import logging
from typing import Optional

from pydantic import Field, model_validator

from .base import Workflow, WorkflowParams
from .state_machine import MOVE_MACHINE
from ..exceptions import PreflightError
from ..ledger.model import OperationType, TargetKind
from ..synthesis.literals import qualify


logger = logging.getLogger(__name__)

# REINDEX ... CONCURRENTLY
_MIN_CONCURRENT_REINDEX = 120000
# REINDEX (TABLESPACE ...)
_MIN_REINDEX_TABLESPACE = 140000


class MoveParams(WorkflowParams):
    tablespace: str
    partition: Optional[str] = Field(None, description="Partition relation name when moving one partition")
    subpartition: Optional[str] = Field(None, description="Subpartition of ``partition`` to move on its own")
    rebuild_indexes: bool = True
    index_tablespace: Optional[str] = None

    @model_validator(mode="after")
    def _subpartition_needs_partition(self) -> "MoveParams":
        if self.subpartition and not self.partition:
            raise ValueError("subpartition requires partition")
        return self


class MoveWorkflow(Workflow):
    """Relocates a table, one partition or one subpartition to another tablespace.

    Each leaf relation is rewritten with ``ALTER TABLE ... SET
    TABLESPACE`` under the configured lock timeout; its indexes are then
    rebuilt concurrently into the index tablespace and statistics are
    refreshed. Once the rows have moved, a failure in the later steps
    leaves the operation ``partial_success``.
    """

    operation_type = OperationType.MOVE_TABLE
    machine = MOVE_MACHINE
    params_model = MoveParams

    @property
    def moved_relation(self) -> str:
        return self.params.subpartition or self.params.partition or self.params.table

    @property
    def target(self) -> str:
        return f"{self.params.schema_name}.{self.moved_relation}"

    @property
    def target_kind(self) -> TargetKind:
        return TargetKind.PARTITION if self.params.partition else TargetKind.TABLE

    def __init__(self, context, params, token=None):
        super().__init__(context, params, token)
        if params.subpartition:
            self.operation_type = OperationType.MOVE_SUBPARTITION
        elif params.partition:
            self.operation_type = OperationType.MOVE_PARTITION

    async def _require_child(self, parent: str, child: str, noun: str) -> None:
        schema = self.params.schema_name
        info = await self.introspector.get_partition_info(schema, parent)
        children = {c.name for c in info.children} if info else set()
        if child not in children:
            raise PreflightError(f"{child} is not a {noun} of {schema}.{parent}", self.operation_id)

    async def _preflight(self) -> None:
        schema = self.params.schema_name
        await self.require_table(schema, self.params.table)

        if self.params.partition:
            await self._require_child(self.params.table, self.params.partition, "partition")
        if self.params.subpartition:
            await self._require_child(self.params.partition, self.params.subpartition, "subpartition")

        for tablespace in {self.params.tablespace, self.params.index_tablespace} - {None}:
            if not await self.introspector.tablespace_exists(tablespace):
                raise PreflightError(f"Tablespace {tablespace} does not exist", self.operation_id)

        if self.params.rebuild_indexes:
            version = await self.introspector.server_version()
            if version < _MIN_CONCURRENT_REINDEX:
                raise PreflightError(
                    "Concurrent index rebuild needs PostgreSQL 12 or later", self.operation_id
                )
            if version < _MIN_REINDEX_TABLESPACE:
                raise PreflightError(
                    "Rebuilding indexes into a tablespace needs PostgreSQL 14 or later",
                    self.operation_id,
                )

        size = await self.introspector.relation_size(schema, self.moved_relation)
        await self.check_space(self.params.tablespace, size)

        leaves = await self.introspector.leaf_partitions(schema, self.moved_relation)
        info = await self.introspector.get_table_info(schema, self.moved_relation)
        await self.checkpoint(
            size_bytes=size,
            leaves=[f"{s}.{n}" for s, n in leaves],
            partitioned=bool(info and info.is_partitioned),
            moved=[],
        )

    def _leaves(self):
        for name in self.state.get("leaves", []):
            schema, _, table = name.partition(".")
            yield name, qualify(table, schema)

    async def _executing(self) -> None:
        moved = list(self.state.get("moved", []))
        for name, relation in self._leaves():
            if name in moved:
                continue
            await self.check_cancel()
            await self.operations.relocate(relation, self.params.tablespace, self.parallel_degree)
            moved.append(name)
            self.objects_affected += 1
            await self.checkpoint(f"moved {name}", moved=moved)

        if self.state.get("partitioned"):
            # sets the tablespace for partitions created later; moves no data
            relation = qualify(self.moved_relation, self.params.schema_name)
            await self.operations.relocate(relation, self.params.tablespace)

    async def _index_rebuild(self) -> None:
        if not self.params.rebuild_indexes:
            return
        tablespace = self.params.index_tablespace or self.params.tablespace
        for name, relation in self._leaves():
            await self.check_cancel()
            await self.operations.rebuild_indexes(relation, tablespace)
        await self.checkpoint(indexes_rebuilt=True)

    async def _stats_refresh(self) -> None:
        await self.context.advisor.refresh(
            self.params.schema_name, self.moved_relation, self.parallel_degree
        )
