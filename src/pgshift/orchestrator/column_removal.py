"""
Safe column removal.

The columns are dropped from the catalog first, which is instant and
hides them from every reader and writer. Their data is then discarded by
rewriting the table in key-range batches, each its own short
transaction, followed by ``VACUUM``.
"""

import logging
from typing import Any, Dict, List, Optional, Set

from pydantic import Field, field_validator

from .base import Workflow, WorkflowParams
from .state_machine import COLUMN_REMOVAL_MACHINE
from ..exceptions import ExecutionError, PreflightError
from ..ledger.model import OperationType
from ..synthesis.evolution import expression_columns
from ..synthesis.literals import qualify


logger = logging.getLogger(__name__)


class RemoveColumnsParams(WorkflowParams):
    columns: List[str]
    key: Optional[str] = Field(None, description="Batching key; defaults to the first primary key column")
    batch_size: int = Field(10000, ge=1)

    @field_validator("columns")
    @classmethod
    def validate_columns(cls, v):
        if not v:
            raise ValueError("at least one column is required")
        if len(set(v)) != len(v):
            raise ValueError("columns must be unique")
        return v


def _mentions(definition: str, removed: Set[str]) -> bool:
    body = definition.split(" USING ", 1)[-1]
    return bool({c.lower() for c in expression_columns(body)} & removed)


class ColumnRemovalWorkflow(Workflow):
    """Drops columns and reclaims their space without a long table lock."""

    operation_type = OperationType.REMOVE_COLUMNS
    machine = COLUMN_REMOVAL_MACHINE
    params_model = RemoveColumnsParams

    @property
    def removed(self) -> Set[str]:
        return {c.lower() for c in self.params.columns}

    async def _preflight(self) -> None:
        schema, table = self.params.schema_name, self.params.table
        await self.require_table(schema, table)

        columns = await self.introspector.get_columns(schema, table)
        names = {c.name for c in columns}
        missing = [c for c in self.params.columns if c not in names]
        if missing:
            raise PreflightError(f"Column(s) {', '.join(missing)} not found in {schema}.{table}", self.operation_id)
        if names <= set(self.params.columns):
            raise PreflightError(f"Cannot remove every column of {schema}.{table}", self.operation_id)

        key = await self.key_column(schema, table, self.params.key)
        if key["key"].lower() in self.removed:
            raise PreflightError(f"Batching key {key['key']} cannot be removed; pass another key", self.operation_id)

        partitioning = await self.introspector.get_partition_info(schema, table)
        if partitioning and {k.lower() for k in partitioning.key} & self.removed:
            raise PreflightError("Partition key columns cannot be removed", self.operation_id)

        rewrite = next(
            (c.name for c in columns if c.name.lower() not in self.removed and c.identity != "a"),
            None,
        )
        await self.checkpoint(key=key["key"], key_type=key["key_type"], rewrite_column=rewrite)

    async def _snapshot_metadata(self) -> None:
        schema, table = self.params.schema_name, self.params.table
        removed = self.removed

        dependent: List[Dict[str, Any]] = []
        retained: List[str] = []
        not_valid: List[str] = []
        for constraint in await self.introspector.get_constraints(schema, table):
            involved = {c.lower() for c in constraint.columns}
            if constraint.kind == "c":
                involved |= {c.lower() for c in expression_columns(constraint.definition)}
            if involved & removed:
                dependent.append(
                    {"schema": schema, "table": table, "name": constraint.name, "definition": constraint.definition}
                )
            else:
                retained.append(constraint.name)
                if not constraint.validated:
                    not_valid.append(constraint.name)

        for fk in await self.introspector.get_inbound_foreign_keys(schema, table):
            if {c.lower() for c in fk.referenced_columns} & removed:
                dependent.append(
                    {
                        "schema": fk.table_schema,
                        "table": fk.table_name,
                        "name": fk.name,
                        "definition": fk.definition,
                    }
                )

        dropped_indexes, retained_indexes = [], []
        for index in await self.introspector.get_indexes(schema, table):
            if index.constraint_name:
                continue
            if {c.lower() for c in index.columns} & removed or _mentions(index.definition, removed):
                dropped_indexes.append(index.name)
            else:
                retained_indexes.append(index.name)

        logger.info(
            f"{self.target}: {len(dependent)} dependent constraint(s), "
            f"{len(dropped_indexes)} dependent index(es)"
        )
        await self.checkpoint(
            dependent_constraints=dependent,
            retained_constraints=retained,
            not_valid_constraints=not_valid,
            dropped_indexes=dropped_indexes,
            retained_indexes=retained_indexes,
        )

    async def _disable_dependent_constraints(self) -> None:
        for constraint in self.state.get("dependent_constraints", []):
            await self.check_cancel()
            relation = qualify(constraint["table"], constraint["schema"])
            await self.operations.drop_constraint(relation, constraint["name"])
            self.objects_affected += 1
        await self.checkpoint(constraints_dropped=True)

    async def _mark_column_unused(self) -> None:
        await self.operations.drop_columns(self.relation, self.params.columns)
        await self.checkpoint(columns_dropped=list(self.params.columns))

    async def _batched_physical_drop(self) -> None:
        watermark = self.state.get("rewrite_watermark")
        while True:
            await self.check_cancel()
            upper = await self.operations.next_watermark(
                self.relation, self.state["key"], self.state["key_type"], watermark, self.params.batch_size
            )
            if upper is None:
                break
            rewritten = await self.operations.rewrite_batch(
                self.relation,
                self.state["key"],
                self.state["key_type"],
                watermark,
                upper,
                self.state.get("rewrite_column"),
                self.parallel_degree,
            )
            watermark = upper
            self.rows_processed += rewritten
            await self.checkpoint(f"rewrote {rewritten} rows through {upper}", rewrite_watermark=watermark)

        await self.operations.vacuum(self.relation)
        await self.checkpoint(vacuumed=True)

    async def _rebuild_dependent_indexes(self) -> None:
        """Rebuild the surviving indexes and confirm the dependent ones went with the columns."""
        schema, table = self.params.schema_name, self.params.table
        for leaf_schema, leaf in await self.introspector.leaf_partitions(schema, table):
            await self.operations.rebuild_indexes(qualify(leaf, leaf_schema))

        present = {index.name for index in await self.introspector.get_indexes(schema, table)}
        dropped = self.state.get("dropped_indexes", [])
        lingering = [name for name in dropped if name in present]
        if lingering:
            raise ExecutionError(f"Dependent index(es) still present: {', '.join(lingering)}", self.operation_id)
        lost = [name for name in self.state.get("retained_indexes", []) if name not in present]
        if lost:
            raise ExecutionError(f"Index(es) lost during removal: {', '.join(lost)}", self.operation_id)
        if dropped:
            logger.info(f"Removed {len(dropped)} dependent index(es) of {self.target}: {', '.join(dropped)}")
        await self.checkpoint(indexes_rebuilt=True, indexes_removed=len(dropped))

    async def _re_enable_constraints(self) -> None:
        schema, table = self.params.schema_name, self.params.table
        for name in self.state.get("not_valid_constraints", []):
            await self.operations.validate_constraint(self.relation, name)

        present = {c.name for c in await self.introspector.get_constraints(schema, table)}
        present |= {
            fk.name
            for fk in await self.introspector.get_inbound_foreign_keys(schema, table)
        }
        lingering = [c["name"] for c in self.state.get("dependent_constraints", []) if c["name"] in present]
        if lingering:
            raise ExecutionError(
                f"Dependent constraint(s) still present: {', '.join(lingering)}", self.operation_id
            )
        lost = [name for name in self.state.get("retained_constraints", []) if name not in present]
        if lost:
            raise ExecutionError(f"Constraint(s) lost during removal: {', '.join(lost)}", self.operation_id)
        await self.checkpoint(constraints_verified=True)
