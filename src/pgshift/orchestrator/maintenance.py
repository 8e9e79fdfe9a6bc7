"""
Partition maintenance.

Adds, attaches, detaches, drops and truncates single partitions of a
partitioned table, and drops every range partition whose rows are all
older than a retention period. Each action is planned into script steps
that are checkpointed one by one, so a crashed run resumes at the first
step that did not finish.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field, model_validator

from .base import Workflow, WorkflowParams
from .state_machine import PARTITION_MAINTENANCE_MACHINE
from ..database.introspection import PartitionBound, PartitionInfo
from ..descriptors.model import BoundSentinel, PartitionDescriptor, PartitionStrategy, TableDefinition
from ..exceptions import PreflightError, SchemaError, SynthesisError, ValidationError
from ..ledger.model import OperationType, TargetKind
from ..synthesis import evolution
from ..synthesis.literals import qualify
from ..synthesis.steps import DDLStep, ScriptBuilder


logger = logging.getLogger(__name__)


class PartitionAction(str, Enum):
    ADD = "add"
    ATTACH = "attach"
    DETACH = "detach"
    DROP = "drop"
    TRUNCATE = "truncate"
    DROP_OLD = "drop_old"


_OPERATION_TYPES = {
    PartitionAction.ADD: OperationType.ADD_PARTITION,
    PartitionAction.ATTACH: OperationType.ATTACH_PARTITION,
    PartitionAction.DETACH: OperationType.DETACH_PARTITION,
    PartitionAction.DROP: OperationType.DROP_PARTITION,
    PartitionAction.TRUNCATE: OperationType.TRUNCATE_PARTITION,
    PartitionAction.DROP_OLD: OperationType.DROP_OLD_PARTITIONS,
}

MAINTENANCE_OPERATIONS = frozenset(_OPERATION_TYPES.values())

_REQUIRED = {
    PartitionAction.ADD: ("descriptor",),
    PartitionAction.ATTACH: ("partition", "descriptor"),
    PartitionAction.DETACH: ("partition",),
    PartitionAction.DROP: ("partition",),
    PartitionAction.TRUNCATE: ("partition",),
    PartitionAction.DROP_OLD: ("retention_days",),
}


class PartitionParams(WorkflowParams):
    action: PartitionAction
    partition: Optional[str] = Field(None, description="Relation name of the partition, or of the table to attach")
    descriptor: Optional[Dict[str, Any]] = Field(None, description="Partition name and bound for add and attach")
    concurrently: bool = Field(False, description="Detach without blocking queries on the parent")
    retention_days: Optional[int] = Field(None, ge=1)
    as_of: Optional[date] = Field(None, description="Day the retention period counts back from; defaults to today")

    @model_validator(mode="after")
    def _action_arguments(self) -> "PartitionParams":
        missing = [name for name in _REQUIRED[self.action] if getattr(self, name) is None]
        if missing:
            raise ValueError(f"{self.action.value} requires {', '.join(missing)}")
        return self


def upper_day(bound: PartitionBound) -> Optional[date]:
    """First day whose rows a single-column range partition cannot hold.

    None for DEFAULT and MAXVALUE bounds and for values that are not
    dates. An upper bound later than midnight rounds up to the next day.
    """
    if bound.is_default or len(bound.upper) != 1:
        return None
    value = bound.upper[0]
    if value is None or isinstance(value, BoundSentinel):
        return None
    if isinstance(value, datetime):
        day, rest = value.date(), value.time().isoformat()
    elif isinstance(value, date):
        return value
    else:
        text = str(value).strip()
        try:
            day = date.fromisoformat(text[:10])
        except ValueError:
            return None
        rest = text[10:].strip()
    if rest and not rest.startswith("00:00:00"):
        day += timedelta(days=1)
    return day


class PartitionMaintenanceWorkflow(Workflow):
    """One maintenance action on the partitions of ``schema.table``.

    The ledger target is the parent table, so a maintenance action never
    runs alongside another operation on the same table.
    """

    machine = PARTITION_MAINTENANCE_MACHINE
    params_model = PartitionParams
    target_kind = TargetKind.PARTITION

    def __init__(self, context, params, token=None):
        super().__init__(context, params, token)
        self.operation_type = _OPERATION_TYPES[params.action]

    def partition_descriptor(self) -> PartitionDescriptor:
        """The descriptor of an added or attached partition, named after the table when unnamed."""
        data = dict(self.params.descriptor or {})
        if "name" not in data and self.params.partition:
            prefix = self.params.table + "_"
            name = self.params.partition
            data["name"] = name[len(prefix):] if name.startswith(prefix) else name
        return PartitionDescriptor.model_validate(data)

    def prepare(self) -> None:
        if self.params.descriptor is not None:
            self.partition_descriptor()

    def child(self, name: str) -> str:
        return qualify(name, self.params.schema_name)

    # ------------------------------------------------------------------
    # phases

    async def _preflight(self) -> None:
        schema, table = self.params.schema_name, self.params.table
        await self.require_table(schema, table)
        info = await self.introspector.get_partition_info(schema, table)
        if info is None:
            raise PreflightError(f"{schema}.{table} is not partitioned", self.operation_id)

        action = self.params.action
        if action in (PartitionAction.ADD, PartitionAction.ATTACH):
            await self._check_new_partition(info)
        elif action == PartitionAction.DROP_OLD:
            await self._select_expired(info)
        elif self.params.partition not in {c.name for c in info.children}:
            raise PreflightError(
                f"{self.params.partition} is not a partition of {schema}.{table}", self.operation_id
            )

    async def _reflect(self) -> TableDefinition:
        schema, table = self.params.schema_name, self.params.table
        try:
            return await self.introspector.reflect_definition(schema, table)
        except SchemaError as e:
            raise PreflightError(f"Cannot reflect {schema}.{table}: {e}", self.operation_id, cause=e) from e

    async def _check_new_partition(self, info: PartitionInfo) -> None:
        schema, table = self.params.schema_name, self.params.table
        definition = await self._reflect()
        descriptor = self.partition_descriptor()
        engine = self.context.engine
        try:
            bound = engine.partition_bound(definition, descriptor)
            statements: List[str] = []
            if self.params.action == PartitionAction.ADD:
                statements = list(engine.generate_partition_ddl(definition, descriptor).statements)
        except (SynthesisError, ValidationError) as e:
            raise PreflightError(
                f"Partition {descriptor.name} cannot be added to {schema}.{table}: {e.message}",
                self.operation_id,
                cause=e,
            ) from e

        if self.params.action == PartitionAction.ADD:
            relation = definition.partition_table_name(descriptor.name)
            if await self.introspector.table_exists(schema, relation):
                raise PreflightError(f"Table {schema}.{relation} already exists", self.operation_id)
            if descriptor.tablespace and not await self.introspector.tablespace_exists(descriptor.tablespace):
                raise PreflightError(f"Tablespace {descriptor.tablespace} does not exist", self.operation_id)
        else:
            relation = self.params.partition
            if relation in {c.name for c in info.children}:
                raise PreflightError(f"{relation} is already a partition of {schema}.{table}", self.operation_id)
            await self.require_table(schema, relation)
            candidate = await self.introspector.get_table_info(schema, relation)
            if candidate.is_partition:
                raise PreflightError(f"{schema}.{relation} is a partition of another table", self.operation_id)
            expected = {c.name for c in await self.introspector.get_columns(schema, table)}
            actual = {c.name for c in await self.introspector.get_columns(schema, relation)}
            if expected != actual:
                differing = sorted(expected ^ actual)
                raise PreflightError(
                    f"Columns of {schema}.{relation} do not match {schema}.{table}: {', '.join(differing)}",
                    self.operation_id,
                )

        await self.checkpoint(relation=relation, bound=bound, statements=statements)

    async def _select_expired(self, info: PartitionInfo) -> None:
        schema, table = self.params.schema_name, self.params.table
        if info.strategy != PartitionStrategy.RANGE or len(info.key) != 1:
            raise PreflightError(
                f"{schema}.{table} must be range partitioned on one date or timestamp column "
                "to drop partitions by age",
                self.operation_id,
            )
        key_type = await self.introspector.get_column_type(schema, table, info.key[0]) or ""
        if not key_type.startswith(("date", "timestamp")):
            raise PreflightError(
                f"Partition key {info.key[0]} of {schema}.{table} is {key_type or 'unknown'}, "
                "not a date or timestamp",
                self.operation_id,
            )

        as_of = self.params.as_of or datetime.now(timezone.utc).date()
        cutoff = as_of - timedelta(days=self.params.retention_days)
        expired = []
        for child in info.children:
            day = upper_day(child.bound)
            if day is not None and day <= cutoff:
                expired.append(child.name)
        if expired:
            logger.info(f"{len(expired)} partition(s) of {schema}.{table} end on or before {cutoff}: {', '.join(expired)}")
        else:
            logger.info(f"No partitions of {schema}.{table} end on or before {cutoff}")
        await self.checkpoint(cutoff=cutoff.isoformat(), expired=expired)

    async def _plan(self) -> None:
        action = self.params.action
        parent = self.relation
        builder = ScriptBuilder(f"Partition maintenance ({action.value}) on {self.target}", self.target)
        relations: List[str] = []

        if action == PartitionAction.ADD:
            builder.add(f"create {self.state['relation']}", *self.state["statements"])
            relations.append(self.state["relation"])
        elif action == PartitionAction.ATTACH:
            name = self.state["relation"]
            builder.add(
                f"attach {name}",
                evolution.attach_partition_statement(parent, self.child(name), self.state["bound"]),
                description="scans the table to check its rows fit the bound",
            )
            relations.append(name)
        elif action == PartitionAction.DETACH:
            name = self.params.partition
            builder.add(
                f"detach {name}",
                evolution.detach_partition_statement(parent, self.child(name), self.params.concurrently),
                transactional=not self.params.concurrently,
            )
            relations.append(name)
        elif action == PartitionAction.TRUNCATE:
            name = self.params.partition
            builder.add(f"truncate {name}", evolution.truncate_statement(self.child(name)))
            relations.append(name)
        else:
            names = [self.params.partition] if action == PartitionAction.DROP else self.state.get("expired", [])
            for name in names:
                relations.extend([name] * self._add_drop(builder, name))

        steps = [step.to_dict() for step in builder.build()]
        await self.checkpoint(
            f"planned {len(steps)} step(s)", steps=steps, step_relations=relations, step_index=0, affected=[]
        )

    def _add_drop(self, builder: ScriptBuilder, name: str) -> int:
        """Detach and drop ``name``; returns the number of steps added."""
        child = self.child(name)
        detach = evolution.detach_partition_statement(self.relation, child, self.params.concurrently)
        drop = evolution.drop_table_statement(child, if_exists=False)
        if self.params.concurrently:
            builder.add(f"detach {name}", detach, transactional=False)
            builder.add(f"drop {name}", drop)
            return 2
        builder.add(f"drop {name}", detach, drop)
        return 1

    async def _execute_steps(self) -> None:
        steps = self.state.get("steps", [])
        relations = self.state.get("step_relations", [])
        affected = list(self.state.get("affected", []))
        for index in range(int(self.state.get("step_index", 0)), len(steps)):
            await self.check_cancel()
            step = DDLStep.from_dict(steps[index])
            logger.info(f"Operation {self.operation_id}: step {step.step_number}/{len(steps)} {step.name}")
            await self.operations.execute_step(step)
            name = relations[index]
            if name not in affected:
                affected.append(name)
                self.objects_affected += 1
            await self.checkpoint(f"step {step.step_number} {step.name}", step_index=index + 1, affected=affected)

    async def _stats_refresh(self) -> None:
        await self.context.advisor.refresh(
            self.params.schema_name, self.params.table, self.parallel_degree
        )
