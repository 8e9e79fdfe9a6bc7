"""
Conversion of a plain table into a partitioned one.

Runs the migrate-and-rename workflow with a partitioned copy of the
table as its target: rows are copied in key-range batches with change
capture, validated, and swapped in under the original name.
"""

import logging
from typing import Any, Dict, List, Tuple

from pydantic import Field

from .migrate import MigrateParams, MigrateWorkflow
from ..descriptors.model import PartitionDescriptor, PartitionScheme, TableDefinition
from ..exceptions import PreflightError, SynthesisError
from ..ledger.model import OperationType


logger = logging.getLogger(__name__)


class PartitionConversionParams(MigrateParams):
    partitioning: Dict[str, Any]
    partitions: List[Dict[str, Any]] = Field(default_factory=list)


class PartitionConversionWorkflow(MigrateWorkflow):
    """Copies a heap table into a partitioned table of the same name."""

    operation_type = OperationType.CONVERT_TO_PARTITIONED
    params_model = PartitionConversionParams

    def layout(self) -> Tuple[PartitionScheme, Tuple[PartitionDescriptor, ...]]:
        scheme = PartitionScheme.model_validate(self.params.partitioning)
        partitions = tuple(PartitionDescriptor.model_validate(p) for p in self.params.partitions)
        return scheme, partitions

    def prepare(self) -> None:
        self.layout()

    async def _target_definition(self, source: TableDefinition) -> TableDefinition:
        scheme, partitions = self.layout()
        try:
            target = self.context.engine.partitioned_definition(source, scheme, partitions)
        except SynthesisError as e:
            raise PreflightError(str(e.message), self.operation_id, cause=e) from e
        logger.info(
            f"Operation {self.operation_id}: {source.qualified_name} becomes {scheme.strategy.value} "
            f"partitioned with {len(target.effective_partitions())} partition(s)"
        )
        return await self._placed(target)
