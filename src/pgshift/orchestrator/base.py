"""
Workflow runtime shared by every evolution workflow.

A workflow registers itself in the ledger, then walks its machine's path
calling one handler per state (``_preflight``, ``_copy_data``, ...).
Parameters and progress live in the ledger context as
``{"params": ..., "state": ...}`` so an interrupted operation can be
rebuilt from its record and continued from its last phase.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, Field

from .state_machine import WorkflowMachine, WorkflowState
from .statistics import StatisticsAdvisor
from ..config import WorkflowConfig
from ..database.introspection import SchemaIntrospector
from ..database.operations import TableOperations
from ..exceptions import (
    CancellationError,
    ExecutionError,
    OperationTimeoutError,
    PartialFailure,
    PgshiftError,
    PreflightError,
    ValidationError,
    WorkflowError,
)
from ..ledger.ledger import OperationLedger
from ..ledger.model import OperationRecord, OperationStatus, OperationType, TargetKind
from ..synthesis.engine import SynthesisEngine
from ..synthesis.literals import qualify


logger = logging.getLogger(__name__)


class WorkflowParams(BaseModel):
    """Parameters common to every workflow."""

    model_config = ConfigDict(extra="forbid")

    schema_name: str
    table: str
    parallel_degree: Optional[int] = Field(None, ge=1)
    timeout_seconds: Optional[float] = Field(None, gt=0)


class CancelToken:
    """In-process cancellation flag."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class WorkflowContext:
    """Collaborators a workflow runs against."""

    ledger: OperationLedger
    operations: TableOperations
    introspector: SchemaIntrospector
    engine: SynthesisEngine
    advisor: StatisticsAdvisor
    settings: WorkflowConfig = field(default_factory=WorkflowConfig)


@dataclass
class WorkflowResult:
    """Outcome of a finished workflow."""

    operation_id: int
    status: OperationStatus
    phase: Optional[str] = None
    rows_processed: int = 0
    objects_affected: int = 0
    duration_ms: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == OperationStatus.COMPLETED

    @classmethod
    def from_record(cls, record: OperationRecord) -> "WorkflowResult":
        return cls(
            operation_id=record.operation_id,
            status=record.status,
            phase=record.phase,
            rows_processed=record.rows_processed,
            objects_affected=record.objects_affected,
            duration_ms=record.duration_ms,
            details=dict(record.context.get("state", {})),
        )


class Workflow(ABC):
    """Base class of the evolution workflows."""

    operation_type: OperationType
    machine: WorkflowMachine
    params_model: Type[WorkflowParams] = WorkflowParams
    target_kind: TargetKind = TargetKind.TABLE

    def __init__(
        self,
        context: WorkflowContext,
        params: WorkflowParams,
        token: Optional[CancelToken] = None,
    ):
        self.context = context
        self.params = params
        self.token = token or CancelToken()
        self.operation_id: Optional[int] = None
        self.current: WorkflowState = self.machine.initial
        self.state: Dict[str, Any] = {}
        self.rows_processed = 0
        self.objects_affected = 0
        self.resumed = False

    @classmethod
    def from_record(
        cls,
        context: WorkflowContext,
        record: OperationRecord,
        token: Optional[CancelToken] = None,
    ) -> "Workflow":
        """Rebuild an interrupted workflow from its ledger record."""
        params = cls.params_model.model_validate(record.context.get("params", {}))
        workflow = cls(context, params, token)
        workflow.operation_id = record.operation_id
        workflow.state = dict(record.context.get("state", {}))
        workflow.rows_processed = record.rows_processed
        workflow.objects_affected = record.objects_affected
        workflow.current = WorkflowState(record.phase or workflow.machine.initial.value)
        workflow.resumed = True
        return workflow

    # ------------------------------------------------------------------
    # convenience

    @property
    def ledger(self) -> OperationLedger:
        return self.context.ledger

    @property
    def operations(self) -> TableOperations:
        return self.context.operations

    @property
    def introspector(self) -> SchemaIntrospector:
        return self.context.introspector

    @property
    def settings(self) -> WorkflowConfig:
        return self.context.settings

    @property
    def relation(self) -> str:
        """Quoted, qualified name of the table the workflow works on."""
        return qualify(self.params.table, self.params.schema_name)

    @property
    def target(self) -> str:
        """Ledger target object; one active operation per target."""
        return f"{self.params.schema_name}.{self.params.table}"

    @property
    def parallel_degree(self) -> Optional[int]:
        return self.params.parallel_degree or self.settings.parallel_degree

    # ------------------------------------------------------------------
    # lifecycle

    def prepare(self) -> None:
        """Checks that need no database access; run before registration."""

    async def register(self) -> int:
        """Create the ledger record. Raises if another operation holds the target."""
        self.operation_id = await self.ledger.start(
            self.operation_type,
            self.target,
            self.target_kind,
            phase=self.current.value,
            context=self._ledger_context(),
        )
        return self.operation_id

    async def run(self) -> WorkflowResult:
        """Run the workflow to a terminal state."""
        if self.operation_id is None:
            self.prepare()
            await self.register()

        start = time.time()
        timeout = self.params.timeout_seconds or self.settings.operation_timeout_seconds
        try:
            if timeout:
                await asyncio.wait_for(self._walk(), timeout)
            else:
                await self._walk()
        except asyncio.TimeoutError:
            error = OperationTimeoutError(timeout, self.operation_id, self.current.value)
            logger.error(f"Operation {self.operation_id} timed out in {self.current.value}")
            await self._abort(error)
            await self._terminate(WorkflowState.FAILED, error)
            raise error
        except CancellationError as e:
            await self._abort(e)
            await self._terminate(WorkflowState.CANCELLED, e)
            raise
        except PgshiftError as e:
            await self._fail(self._classify(e))
        except Exception as e:
            logger.exception(f"Operation {self.operation_id} raised an unexpected error in {self.current.value}")
            error = ExecutionError(
                f"{self.current.value} failed: {e}",
                self.operation_id,
                {"phase": self.current.value, "error_type": type(e).__name__},
                e,
            )
            await self._fail(error)

        await self._terminate(WorkflowState.COMPLETED)
        logger.info(
            f"Operation {self.operation_id} ({self.operation_type.value} {self.target}) "
            f"completed in {time.time() - start:.1f}s"
        )
        return self.result(OperationStatus.COMPLETED)

    async def _fail(self, error: PgshiftError) -> None:
        """Close the record in the failure state of the current phase and raise."""
        terminal = self.machine.failure[self.current]
        if terminal == WorkflowState.PARTIAL_SUCCESS and not isinstance(error, PartialFailure):
            error = PartialFailure(
                f"{self.current.value} failed after the structural change succeeded: {error}",
                self.operation_id,
                self.current.value,
                error,
            )
        if terminal == WorkflowState.FAILED:
            await self._abort(error)
        await self._terminate(terminal, error)
        raise error

    def _classify(self, error: PgshiftError) -> PgshiftError:
        """Attach the operation id; wrap database errors as execution errors."""
        if isinstance(error, WorkflowError):
            if error.operation_id is None and self.operation_id is not None:
                error.with_operation(self.operation_id)
            return error
        if isinstance(error, ValidationError):
            return error
        return ExecutionError(
            f"{self.current.value} failed: {error.message}",
            self.operation_id,
            {"phase": self.current.value},
            error,
        )

    async def _walk(self) -> None:
        for state in self.machine.remaining(self.current):
            if state != self.current:
                self.machine.validate(self.current, state, self.operation_id)
                await self._enter(state)
            handler = getattr(self, f"_{state.value.lower()}", None)
            if handler is not None:
                await handler()

    async def _enter(self, state: WorkflowState) -> None:
        self.current = state
        logger.info(f"Operation {self.operation_id}: {state.value}")
        await self.ledger.advance(
            self.operation_id,
            phase=state.value,
            status=self.machine.ledger_status(state),
        )

    async def _terminate(self, terminal: WorkflowState, error: Optional[PgshiftError] = None) -> None:
        self.machine.validate(self.current, terminal, self.operation_id)
        failed_phase = self.current.value
        self.current = terminal
        error_code = None
        error_message = None
        if error is not None:
            error_code = getattr(error, "error_code", None) or type(error).__name__.upper()
            error_message = str(error)
            self.state["failed_phase"] = failed_phase
        await self.ledger.finish(
            self.operation_id,
            self.machine.ledger_status(terminal),
            rows_processed=self.rows_processed,
            objects_affected=self.objects_affected,
            error_code=error_code,
            error_message=error_message,
            phase=failed_phase if error is not None else terminal.value,
            context={"state": self.state},
        )

    async def _abort(self, error: PgshiftError) -> None:
        """Best-effort cleanup after a failure. Must not raise."""

    def result(self, status: OperationStatus) -> WorkflowResult:
        return WorkflowResult(
            operation_id=self.operation_id,
            status=status,
            phase=self.current.value,
            rows_processed=self.rows_processed,
            objects_affected=self.objects_affected,
            details=dict(self.state),
        )

    # ------------------------------------------------------------------
    # progress

    def _ledger_context(self) -> Dict[str, Any]:
        return {"params": self.params.model_dump(mode="json"), "state": self.state}

    async def checkpoint(self, message: Optional[str] = None, **state: Any) -> None:
        """Persist progress and state under the current phase."""
        self.state.update(state)
        await self.ledger.advance(
            self.operation_id,
            rows_processed=self.rows_processed,
            objects_affected=self.objects_affected,
            context={"state": self.state},
            message=message,
        )

    async def check_cancel(self) -> None:
        """Raise ``CancellationError`` if cancellation was requested."""
        requested = self.token.is_cancelled
        if not requested and self.settings.cancel_poll_ledger:
            requested = await self.ledger.is_cancel_requested(self.operation_id)
        if requested:
            logger.info(
                f"Operation {self.operation_id} cancelled in {self.current.value} "
                f"after {self.rows_processed} rows"
            )
            raise CancellationError(self.operation_id, self.rows_processed, self.current.value)

    async def require_table(self, schema: str, table: str) -> None:
        if not await self.introspector.table_exists(schema, table):
            raise PreflightError(f"Table {schema}.{table} does not exist", self.operation_id)

    async def key_column(self, schema: str, table: str, key: Optional[str]) -> Dict[str, str]:
        """Batching key and its type; defaults to the first primary key column."""
        columns = {c.name: c for c in await self.introspector.get_columns(schema, table)}
        if key is None:
            for constraint in await self.introspector.get_constraints(schema, table):
                if constraint.kind == "p" and constraint.columns:
                    key = constraint.columns[0]
                    break
        if key is None:
            raise PreflightError(
                f"{schema}.{table} has no primary key; a batching key is required",
                self.operation_id,
            )
        info = columns.get(key)
        if info is None:
            raise PreflightError(f"Key column {key} does not exist in {schema}.{table}", self.operation_id)
        if info.is_nullable:
            raise PreflightError(f"Key column {key} must be NOT NULL", self.operation_id)
        return {"key": key, "key_type": info.data_type}

    async def check_space(self, tablespace: Optional[str], needed_bytes: int) -> None:
        """Advisory space check against the configured quota."""
        quota = self.settings.tablespace_quota_bytes
        if not quota or not tablespace:
            return
        used = await self.introspector.tablespace_size(tablespace)
        if used + needed_bytes > quota:
            raise PreflightError(
                f"Tablespace {tablespace} needs {needed_bytes} more bytes; "
                f"{used} of {quota} already used",
                self.operation_id,
                {"tablespace": tablespace, "needed_bytes": needed_bytes, "used_bytes": used},
            )

    @abstractmethod
    async def _preflight(self) -> None:
        """Feasibility checks. Runs while the operation is still pending."""
