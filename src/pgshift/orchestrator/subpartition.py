"""
Subpartition conversion.

``REBUILD`` runs the migrate-and-rename workflow with a composite copy
of the table as its target. ``ONLINE`` replaces one partition at a time
with a subpartitioned copy, detaching and attaching inside a single
transaction per partition; every step is checkpointed in the ledger.
"""

import logging
from typing import Any, Dict, Optional

from pydantic import Field

from .base import Workflow, WorkflowParams
from .migrate import MigrateWorkflow
from .state_machine import ONLINE_CONVERSION_MACHINE
from ..descriptors.model import SubpartitionSpec, TableDefinition
from ..exceptions import PreflightError, SchemaError, SynthesisError, ValidationError
from ..ledger.model import OperationType
from ..synthesis.engine import ConversionMode
from ..synthesis.steps import DDLStep


logger = logging.getLogger(__name__)


class ConvertParams(WorkflowParams):
    subpartitioning: Dict[str, Any]
    mode: ConversionMode
    key: Optional[str] = Field(None, description="Batching key for REBUILD")
    batch_size: int = Field(10000, ge=1)
    target_suffix: str = "_new"
    retired_suffix: str = "_old"
    drop_retired: bool = False


class _ConversionMixin:
    params: ConvertParams

    @property
    def spec(self) -> SubpartitionSpec:
        return SubpartitionSpec.model_validate(self.params.subpartitioning)

    def prepare(self) -> None:
        # malformed subpartitioning is rejected before the operation is registered
        SubpartitionSpec.model_validate(self.params.subpartitioning)


class RebuildConversionWorkflow(_ConversionMixin, MigrateWorkflow):
    """Composite copy of the table, filled in batches, then swapped in."""

    operation_type = OperationType.CONVERT_SUBPARTITIONS
    params_model = ConvertParams

    async def _target_definition(self, source: TableDefinition) -> TableDefinition:
        try:
            return self.context.engine.composite_definition(source, self.spec)
        except SynthesisError as e:
            raise PreflightError(str(e.message), self.operation_id, cause=e) from e


class OnlineConversionWorkflow(_ConversionMixin, Workflow):
    """Per-partition replacement while the table stays available."""

    operation_type = OperationType.CONVERT_SUBPARTITIONS
    machine = ONLINE_CONVERSION_MACHINE
    params_model = ConvertParams

    async def _reflect(self) -> TableDefinition:
        schema, table = self.params.schema_name, self.params.table
        try:
            return await self.introspector.reflect_definition(schema, table)
        except SchemaError as e:
            raise PreflightError(f"Cannot reflect {schema}.{table}: {e}", self.operation_id, cause=e) from e

    async def _preflight(self) -> None:
        schema, table = self.params.schema_name, self.params.table
        await self.require_table(schema, table)
        info = await self.introspector.get_table_info(schema, table)
        if info is None or not info.is_partitioned:
            raise PreflightError(f"{schema}.{table} is not partitioned", self.operation_id)

        definition = await self._reflect()
        engine = self.context.engine
        try:
            engine.validator.check(engine.composite_definition(definition, self.spec))
        except SynthesisError as e:
            raise PreflightError(str(e.message), self.operation_id, cause=e) from e
        except ValidationError as e:
            raise PreflightError(
                f"Subpartitioned {schema}.{table} would be invalid: {e.message}",
                self.operation_id,
                cause=e,
            ) from e

        size = await self.introspector.relation_size(schema, table)
        await self.check_space(definition.properties.tablespace, size)
        await self.checkpoint(size_bytes=size)

    async def _plan(self) -> None:
        definition = await self._reflect()
        script = self.context.engine.generate_subpartition_script(
            definition,
            self.spec,
            ConversionMode.ONLINE,
            target_suffix=self.params.target_suffix,
            retired_suffix=self.params.retired_suffix,
            drop_retired=self.params.drop_retired,
            parallel_degree=self.parallel_degree,
        )
        # statistics are refreshed by the advisor afterwards
        steps = [step.to_dict() for step in script if step.name != "analyze"]
        await self.checkpoint(f"planned {len(steps)} step(s)", steps=steps, step_index=0)

    async def _execute_steps(self) -> None:
        steps = self.state.get("steps", [])
        for index in range(int(self.state.get("step_index", 0)), len(steps)):
            await self.check_cancel()
            step = DDLStep.from_dict(steps[index])
            logger.info(f"Operation {self.operation_id}: step {step.step_number}/{len(steps)} {step.name}")
            await self.operations.execute_step(step)
            self.objects_affected += 1
            await self.checkpoint(f"step {step.step_number} {step.name}", step_index=index + 1)

    async def _stats_refresh(self) -> None:
        await self.context.advisor.refresh(
            self.params.schema_name, self.params.table, self.parallel_degree
        )
