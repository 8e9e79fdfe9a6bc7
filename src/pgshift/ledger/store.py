"""
Ledger storage backends.

``PostgresLedgerStore`` writes through a pool of its own, so every
record commits on its own connection regardless of what the workflow's
connections are doing. ``InMemoryLedgerStore`` keeps the same rules in
process, for tests and dry runs.
"""

import asyncio
import itertools
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import asyncpg

from .model import (
    TERMINAL_STATUSES,
    EventType,
    OperationEvent,
    OperationRecord,
    OperationStatus,
    OperationType,
    TargetKind,
)
from ..database.connection import ConnectionPool
from ..exceptions import ConcurrentOperationError, LedgerUnavailableError, LedgerWriteError
from ..synthesis.literals import qualify


logger = logging.getLogger(__name__)

_TERMINAL_VALUES = sorted(s.value for s in TERMINAL_STATUSES)


class LedgerStore(ABC):
    """Persistence for operation records and their events."""

    @abstractmethod
    async def insert(
        self,
        operation_type: OperationType,
        target_object: str,
        target_kind: TargetKind,
        status: OperationStatus,
        started_at: datetime,
        phase: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> OperationRecord:
        """Allocate an id and store a new record.

        Raises ``ConcurrentOperationError`` when a non-terminal record
        already holds ``target_object`` and ``LedgerUnavailableError``
        when no id could be allocated.
        """

    @abstractmethod
    async def update(
        self,
        operation_id: int,
        *,
        status: Optional[OperationStatus] = None,
        phase: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        rows_processed: Optional[int] = None,
        objects_affected: Optional[int] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        ended_at: Optional[datetime] = None,
    ) -> Optional[OperationRecord]:
        """Update a non-terminal record.

        ``context`` is merged key by key. Setting ``ended_at`` also sets
        ``duration_ms``. Returns None when the record is missing or
        already terminal.
        """

    @abstractmethod
    async def set_cancel_requested(self, operation_id: int) -> bool:
        """Flag a non-terminal record for cancellation."""

    @abstractmethod
    async def get(self, operation_id: int) -> Optional[OperationRecord]:
        pass

    @abstractmethod
    async def active_for(self, target_object: str) -> Optional[OperationRecord]:
        """The non-terminal record holding ``target_object``, if any."""

    @abstractmethod
    async def list(
        self,
        target_object: Optional[str] = None,
        operation_type: Optional[OperationType] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[OperationRecord]:
        """Records newest first."""

    @abstractmethod
    async def append_event(self, event: OperationEvent) -> None:
        pass

    @abstractmethod
    async def events(self, operation_id: int) -> List[OperationEvent]:
        pass

    @abstractmethod
    async def delete_terminal_before(self, cutoff: datetime) -> int:
        """Delete terminal records that ended before ``cutoff``."""


class InMemoryLedgerStore(LedgerStore):
    """Process-local ledger store."""

    def __init__(self):
        self._records: Dict[int, OperationRecord] = {}
        self._events: List[OperationEvent] = []
        self._ids = itertools.count(1)
        self._event_ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def insert(
        self,
        operation_type: OperationType,
        target_object: str,
        target_kind: TargetKind,
        status: OperationStatus,
        started_at: datetime,
        phase: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> OperationRecord:
        async with self._lock:
            active = self._active(target_object)
            if active is not None:
                raise ConcurrentOperationError(target_object, active.operation_id)
            record = OperationRecord(
                operation_id=next(self._ids),
                operation_type=operation_type,
                target_object=target_object,
                target_kind=target_kind,
                status=status,
                started_at=started_at,
                phase=phase,
                context=json.loads(json.dumps(context or {}, default=str)),
                updated_at=started_at,
            )
            self._records[record.operation_id] = record
            return self._copy(record)

    async def update(
        self,
        operation_id: int,
        *,
        status: Optional[OperationStatus] = None,
        phase: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        rows_processed: Optional[int] = None,
        objects_affected: Optional[int] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        ended_at: Optional[datetime] = None,
    ) -> Optional[OperationRecord]:
        async with self._lock:
            record = self._records.get(operation_id)
            if record is None or record.is_terminal:
                return None
            if status is not None:
                record.status = status
            if phase is not None:
                record.phase = phase
            if context:
                record.context.update(json.loads(json.dumps(context, default=str)))
            if rows_processed is not None:
                record.rows_processed = rows_processed
            if objects_affected is not None:
                record.objects_affected = objects_affected
            if error_code is not None:
                record.error_code = error_code
            if error_message is not None:
                record.error_message = error_message
            if ended_at is not None:
                record.ended_at = ended_at
                record.duration_ms = (ended_at - record.started_at).total_seconds() * 1000
            record.updated_at = ended_at or datetime.now(timezone.utc)
            return self._copy(record)

    async def set_cancel_requested(self, operation_id: int) -> bool:
        async with self._lock:
            record = self._records.get(operation_id)
            if record is None or record.is_terminal:
                return False
            record.cancel_requested = True
            return True

    async def get(self, operation_id: int) -> Optional[OperationRecord]:
        record = self._records.get(operation_id)
        return self._copy(record) if record else None

    async def active_for(self, target_object: str) -> Optional[OperationRecord]:
        record = self._active(target_object)
        return self._copy(record) if record else None

    async def list(
        self,
        target_object: Optional[str] = None,
        operation_type: Optional[OperationType] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[OperationRecord]:
        records = [
            r
            for r in self._records.values()
            if (target_object is None or r.target_object == target_object)
            and (operation_type is None or r.operation_type == operation_type)
            and (since is None or r.started_at >= since)
        ]
        records.sort(key=lambda r: r.operation_id, reverse=True)
        if limit is not None:
            records = records[:limit]
        return [self._copy(r) for r in records]

    async def append_event(self, event: OperationEvent) -> None:
        async with self._lock:
            event.event_id = next(self._event_ids)
            self._events.append(event)

    async def events(self, operation_id: int) -> List[OperationEvent]:
        return [e for e in self._events if e.operation_id == operation_id]

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        async with self._lock:
            doomed = [
                r.operation_id
                for r in self._records.values()
                if r.is_terminal and (r.ended_at or r.started_at) < cutoff
            ]
            for operation_id in doomed:
                del self._records[operation_id]
            self._events = [e for e in self._events if e.operation_id not in doomed]
            return len(doomed)

    def _active(self, target_object: str) -> Optional[OperationRecord]:
        for record in self._records.values():
            if record.target_object == target_object and not record.is_terminal:
                return record
        return None

    @staticmethod
    def _copy(record: OperationRecord) -> OperationRecord:
        return OperationRecord(**{**record.__dict__, "context": dict(record.context)})


class PostgresLedgerStore(LedgerStore):
    """Ledger tables in PostgreSQL, written on a dedicated pool."""

    def __init__(self, pool: ConnectionPool, schema_name: str = "pgshift"):
        self.pool = pool
        self.schema_name = schema_name
        self.operations = qualify("operations", schema_name)
        self.events_table = qualify("operation_events", schema_name)

    async def insert(
        self,
        operation_type: OperationType,
        target_object: str,
        target_kind: TargetKind,
        status: OperationStatus,
        started_at: datetime,
        phase: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> OperationRecord:
        query = f"""
            INSERT INTO {self.operations}
                (operation_type, target_object, target_kind, status, phase,
                 context, started_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $7)
            RETURNING *
        """
        try:
            row = await self.pool.fetchrow(
                query,
                operation_type.value,
                target_object,
                target_kind.value,
                status.value,
                phase,
                json.dumps(context or {}, default=str),
                started_at,
            )
        except asyncpg.UniqueViolationError:
            active = await self._active_id(target_object)
            raise ConcurrentOperationError(target_object, active)
        except Exception as e:
            logger.error(f"Ledger could not allocate an operation id for {target_object}: {e}")
            raise LedgerUnavailableError(f"Ledger unavailable: {e}", cause=e) from e
        return OperationRecord.from_record(row)

    async def _active_id(self, target_object: str) -> Optional[int]:
        try:
            record = await self.active_for(target_object)
        except LedgerWriteError:
            return None
        return record.operation_id if record else None

    async def update(
        self,
        operation_id: int,
        *,
        status: Optional[OperationStatus] = None,
        phase: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        rows_processed: Optional[int] = None,
        objects_affected: Optional[int] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        ended_at: Optional[datetime] = None,
    ) -> Optional[OperationRecord]:
        query = f"""
            UPDATE {self.operations} SET
                status = COALESCE($2, status),
                phase = COALESCE($3, phase),
                context = context || COALESCE($4::jsonb, '{{}}'::jsonb),
                rows_processed = COALESCE($5, rows_processed),
                objects_affected = COALESCE($6, objects_affected),
                error_code = COALESCE($7, error_code),
                error_message = COALESCE($8, error_message),
                ended_at = COALESCE($9::timestamptz, ended_at),
                duration_ms = CASE
                    WHEN $9::timestamptz IS NULL THEN duration_ms
                    ELSE EXTRACT(EPOCH FROM ($9::timestamptz - started_at)) * 1000
                END,
                updated_at = now()
            WHERE operation_id = $1
              AND status <> ALL($10::text[])
            RETURNING *
        """
        try:
            row = await self.pool.fetchrow(
                query,
                operation_id,
                status.value if status else None,
                phase,
                json.dumps(context, default=str) if context else None,
                rows_processed,
                objects_affected,
                error_code,
                error_message,
                ended_at,
                _TERMINAL_VALUES,
            )
        except Exception as e:
            raise LedgerWriteError(f"Failed to update operation {operation_id}: {e}", cause=e) from e
        return OperationRecord.from_record(row) if row else None

    async def set_cancel_requested(self, operation_id: int) -> bool:
        query = f"""
            UPDATE {self.operations}
            SET cancel_requested = TRUE, updated_at = now()
            WHERE operation_id = $1 AND status <> ALL($2::text[])
            RETURNING operation_id
        """
        try:
            return await self.pool.fetchval(query, operation_id, _TERMINAL_VALUES) is not None
        except Exception as e:
            raise LedgerWriteError(f"Failed to flag operation {operation_id}: {e}", cause=e) from e

    async def get(self, operation_id: int) -> Optional[OperationRecord]:
        query = f"SELECT * FROM {self.operations} WHERE operation_id = $1"
        try:
            row = await self.pool.fetchrow(query, operation_id)
        except Exception as e:
            raise LedgerWriteError(f"Failed to read operation {operation_id}: {e}", cause=e) from e
        return OperationRecord.from_record(row) if row else None

    async def active_for(self, target_object: str) -> Optional[OperationRecord]:
        query = f"""
            SELECT * FROM {self.operations}
            WHERE target_object = $1 AND status <> ALL($2::text[])
        """
        try:
            row = await self.pool.fetchrow(query, target_object, _TERMINAL_VALUES)
        except Exception as e:
            raise LedgerWriteError(f"Failed to read active operation: {e}", cause=e) from e
        return OperationRecord.from_record(row) if row else None

    async def list(
        self,
        target_object: Optional[str] = None,
        operation_type: Optional[OperationType] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[OperationRecord]:
        query = f"""
            SELECT * FROM {self.operations}
            WHERE ($1::text IS NULL OR target_object = $1)
              AND ($2::text IS NULL OR operation_type = $2)
              AND ($3::timestamptz IS NULL OR started_at >= $3)
            ORDER BY operation_id DESC
            LIMIT $4
        """
        try:
            rows = await self.pool.fetch(
                query,
                target_object,
                operation_type.value if operation_type else None,
                since,
                limit,
            )
        except Exception as e:
            raise LedgerWriteError(f"Failed to list operations: {e}", cause=e) from e
        return [OperationRecord.from_record(row) for row in rows]

    async def append_event(self, event: OperationEvent) -> None:
        query = f"""
            INSERT INTO {self.events_table}
                (operation_id, event_type, status, phase, rows_processed,
                 message, context, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8)
        """
        try:
            await self.pool.execute(
                query,
                event.operation_id,
                event.event_type.value,
                event.status.value,
                event.phase,
                event.rows_processed,
                event.message,
                json.dumps(event.context or {}, default=str),
                event.created_at,
            )
        except Exception as e:
            raise LedgerWriteError(f"Failed to record event: {e}", cause=e) from e

    async def events(self, operation_id: int) -> List[OperationEvent]:
        query = f"""
            SELECT * FROM {self.events_table}
            WHERE operation_id = $1
            ORDER BY event_id
        """
        try:
            rows = await self.pool.fetch(query, operation_id)
        except Exception as e:
            raise LedgerWriteError(f"Failed to read events: {e}", cause=e) from e
        return [OperationEvent.from_record(row) for row in rows]

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        query = f"""
            DELETE FROM {self.operations}
            WHERE status = ANY($1::text[])
              AND COALESCE(ended_at, started_at) < $2
        """
        try:
            status = await self.pool.execute(query, _TERMINAL_VALUES, cutoff)
        except Exception as e:
            raise LedgerWriteError(f"Failed to sweep operations: {e}", cause=e) from e
        return int(status.split()[-1]) if status else 0
