"""
Operation ledger.

Every workflow registers itself here before touching the database and
reports its phases, progress and outcome as it goes. Registration must
succeed; progress and completion writes are best effort and never
interrupt the workflow they describe.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .model import (
    EventType,
    OperationEvent,
    OperationRecord,
    OperationStatus,
    OperationType,
    TargetKind,
    ErrorSummary,
    PerformanceSummary,
    summarize_errors,
    summarize_performance,
)
from .store import LedgerStore
from ..exceptions import ConcurrentOperationError, LedgerError, LedgerUnavailableError


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OperationLedger:
    """Durable record of evolution operations."""

    def __init__(
        self,
        store: LedgerStore,
        record_events: bool = True,
        retention_days: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.record_events = record_events
        self.retention_days = retention_days
        self._clock = clock or _utcnow

    @classmethod
    def from_config(cls, store: LedgerStore, config: Any) -> "OperationLedger":
        """Build from a ledger config section (``record_events``, ``retention_days``)."""
        return cls(
            store,
            record_events=config.record_events,
            retention_days=config.retention_days,
        )

    async def start(
        self,
        operation_type: OperationType,
        target_object: str,
        target_kind: TargetKind = TargetKind.TABLE,
        phase: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        status: OperationStatus = OperationStatus.PENDING,
    ) -> int:
        """Register an operation and return its id.

        Raises:
            ConcurrentOperationError: another operation holds the target
            LedgerUnavailableError: no id could be allocated
        """
        started_at = self._clock()
        try:
            record = await self.store.insert(
                operation_type,
                target_object,
                target_kind,
                status,
                started_at,
                phase=phase,
                context=context,
            )
        except (ConcurrentOperationError, LedgerUnavailableError):
            raise
        except Exception as e:
            raise LedgerUnavailableError(f"Ledger unavailable: {e}", cause=e) from e

        logger.info(
            f"Operation {record.operation_id} started: {operation_type.value} on {target_object}"
        )
        await self._event(record.operation_id, EventType.START, status, phase, context=context)
        return record.operation_id

    async def advance(
        self,
        operation_id: int,
        phase: Optional[str] = None,
        status: Optional[OperationStatus] = None,
        rows_processed: Optional[int] = None,
        objects_affected: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
        message: Optional[str] = None,
    ) -> bool:
        """Record progress. Returns False when the write was lost."""
        if status is not None and status.is_terminal:
            raise ValueError("advance() cannot set a terminal status; use finish()")
        try:
            record = await self.store.update(
                operation_id,
                status=status,
                phase=phase,
                context=context,
                rows_processed=rows_processed,
                objects_affected=objects_affected,
            )
        except Exception as e:
            logger.warning(f"Ledger progress write for operation {operation_id} failed: {e}")
            return False
        if record is None:
            logger.warning(f"Operation {operation_id} is unknown or already finished")
            return False
        await self._event(
            operation_id, EventType.ADVANCE, record.status, phase, rows_processed, message, context
        )
        return True

    async def finish(
        self,
        operation_id: int,
        status: OperationStatus,
        rows_processed: Optional[int] = None,
        objects_affected: Optional[int] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        phase: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record the outcome. Returns False when the write was lost."""
        if not status.is_terminal:
            raise ValueError(f"finish() requires a terminal status, got {status.value}")
        try:
            record = await self.store.update(
                operation_id,
                status=status,
                phase=phase,
                context=context,
                rows_processed=rows_processed,
                objects_affected=objects_affected,
                error_code=error_code,
                error_message=error_message,
                ended_at=self._clock(),
            )
        except Exception as e:
            logger.warning(f"Ledger completion write for operation {operation_id} failed: {e}")
            return False
        if record is None:
            logger.warning(f"Operation {operation_id} is unknown or already finished")
            return False

        log = logger.info if status == OperationStatus.COMPLETED else logger.warning
        log(f"Operation {operation_id} finished: {status.value}" + (f" ({error_code})" if error_code else ""))
        await self._event(
            operation_id, EventType.FINISH, status, phase, rows_processed, error_message, context
        )
        return True

    async def request_cancel(self, operation_id: int) -> bool:
        """Flag an operation for cancellation; True when it was still active."""
        try:
            flagged = await self.store.set_cancel_requested(operation_id)
        except Exception as e:
            raise LedgerError(f"Could not request cancellation: {e}", cause=e) from e
        if flagged:
            logger.info(f"Cancellation requested for operation {operation_id}")
        return flagged

    async def is_cancel_requested(self, operation_id: int) -> bool:
        try:
            record = await self.store.get(operation_id)
        except Exception as e:
            logger.debug(f"Could not poll cancellation flag of {operation_id}: {e}")
            return False
        return bool(record and record.cancel_requested)

    async def _event(
        self,
        operation_id: int,
        event_type: EventType,
        status: OperationStatus,
        phase: Optional[str] = None,
        rows_processed: Optional[int] = None,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self.record_events:
            return
        event = OperationEvent(
            operation_id=operation_id,
            event_type=event_type,
            status=status,
            created_at=self._clock(),
            phase=phase,
            rows_processed=rows_processed,
            message=message,
            context=context or {},
        )
        try:
            await self.store.append_event(event)
        except Exception as e:
            logger.debug(f"Event write for operation {operation_id} failed: {e}")

    # ------------------------------------------------------------------
    # monitoring

    async def get_status(self, operation_id: int) -> Optional[OperationRecord]:
        return await self.store.get(operation_id)

    async def get_active(self, target_object: str) -> Optional[OperationRecord]:
        return await self.store.active_for(target_object)

    async def get_history(
        self,
        target_object: Optional[str] = None,
        operation_type: Optional[OperationType] = None,
        limit: int = 50,
        days: Optional[int] = None,
    ) -> List[OperationRecord]:
        return await self.store.list(target_object, operation_type, since=self._since(days), limit=limit)

    async def get_events(self, operation_id: int) -> List[OperationEvent]:
        return await self.store.events(operation_id)

    async def get_performance_summary(
        self,
        target_object: Optional[str] = None,
        days: Optional[int] = None,
        operation_type: Optional[OperationType] = None,
    ) -> List[PerformanceSummary]:
        records = await self.store.list(target_object, operation_type, since=self._since(days))
        return summarize_performance(records)

    async def get_error_summary(self, days: Optional[int] = None) -> List[ErrorSummary]:
        records = await self.store.list(since=self._since(days))
        return summarize_errors(records)

    def _since(self, days: Optional[int]) -> Optional[datetime]:
        return self._clock() - timedelta(days=days) if days else None

    async def sweep(self, retention_days: Optional[int] = None) -> int:
        """Delete finished operations older than the retention period."""
        days = self.retention_days if retention_days is None else retention_days
        cutoff = self._clock() - timedelta(days=days)
        deleted = await self.store.delete_terminal_before(cutoff)
        if deleted:
            logger.info(f"Swept {deleted} finished operation(s) older than {days} days")
        return deleted
