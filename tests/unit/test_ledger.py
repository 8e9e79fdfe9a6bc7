"""
Tests for the operation ledger, its stores and its schema.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from pgshift.database.connection import ConnectionPool
from pgshift.exceptions import (
    ConcurrentOperationError,
    LedgerError,
    LedgerUnavailableError,
    LedgerWriteError,
)
from pgshift.ledger import (
    EventType,
    LedgerSchema,
    OperationLedger,
    OperationRecord,
    OperationStatus,
    OperationType,
    PostgresLedgerStore,
    TargetKind,
)


STARTED = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def record_row(**overrides):
    row = {
        "operation_id": 7,
        "operation_type": "move_table",
        "target_object": "public.orders",
        "target_kind": "table",
        "status": "running",
        "phase": "EXECUTING",
        "started_at": STARTED,
        "ended_at": None,
        "duration_ms": None,
        "rows_processed": 0,
        "objects_affected": 0,
        "error_code": None,
        "error_message": None,
        "context": '{"params": {"tablespace": "fast_ts"}}',
        "cancel_requested": False,
        "updated_at": STARTED,
    }
    row.update(overrides)
    return row


# ============================================================================
# Lifecycle
# ============================================================================

class TestLifecycle:
    """start, advance, finish."""

    @pytest.mark.asyncio
    async def test_start_registers_pending_record(self, ledger, clock):
        operation_id = await ledger.start(
            OperationType.MOVE_TABLE, "public.orders", context={"params": {"tablespace": "fast_ts"}}
        )

        record = await ledger.get_status(operation_id)
        assert record.status == OperationStatus.PENDING
        assert record.started_at == clock.now
        assert record.context == {"params": {"tablespace": "fast_ts"}}

        events = await ledger.get_events(operation_id)
        assert [e.event_type for e in events] == [EventType.START]

    @pytest.mark.asyncio
    async def test_one_active_operation_per_target(self, ledger):
        first = await ledger.start(OperationType.MOVE_TABLE, "public.orders")

        with pytest.raises(ConcurrentOperationError) as exc_info:
            await ledger.start(OperationType.REMOVE_COLUMNS, "public.orders")
        assert exc_info.value.active_operation_id == first

        await ledger.finish(first, OperationStatus.COMPLETED)
        assert await ledger.start(OperationType.REMOVE_COLUMNS, "public.orders") == first + 1

    @pytest.mark.asyncio
    async def test_advance_merges_context(self, ledger):
        operation_id = await ledger.start(OperationType.MIGRATE_TABLE, "public.orders", context={"a": 1})

        assert await ledger.advance(
            operation_id, phase="COPYING", status=OperationStatus.RUNNING, rows_processed=10, context={"b": 2}
        )

        record = await ledger.get_status(operation_id)
        assert record.phase == "COPYING"
        assert record.status == OperationStatus.RUNNING
        assert record.rows_processed == 10
        assert record.context == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_advance_rejects_terminal_status(self, ledger):
        operation_id = await ledger.start(OperationType.MOVE_TABLE, "public.orders")
        with pytest.raises(ValueError):
            await ledger.advance(operation_id, status=OperationStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_finish_requires_terminal_status(self, ledger):
        operation_id = await ledger.start(OperationType.MOVE_TABLE, "public.orders")
        with pytest.raises(ValueError):
            await ledger.finish(operation_id, OperationStatus.RUNNING)

    @pytest.mark.asyncio
    async def test_finish_records_duration(self, ledger, clock):
        operation_id = await ledger.start(OperationType.MOVE_TABLE, "public.orders")
        clock.tick(seconds=2)

        assert await ledger.finish(operation_id, OperationStatus.COMPLETED, rows_processed=100)

        record = await ledger.get_status(operation_id)
        assert record.ended_at == clock.now
        assert record.duration_ms == pytest.approx(2000)
        assert record.rows_per_second == pytest.approx(50)

    @pytest.mark.asyncio
    async def test_terminal_records_are_final(self, ledger):
        operation_id = await ledger.start(OperationType.MOVE_TABLE, "public.orders")
        await ledger.finish(operation_id, OperationStatus.FAILED, error_code="EXECUTION_ERROR")

        assert await ledger.advance(operation_id, phase="EXECUTING") is False
        assert await ledger.finish(operation_id, OperationStatus.COMPLETED) is False
        assert (await ledger.get_status(operation_id)).status == OperationStatus.FAILED

    @pytest.mark.asyncio
    async def test_unknown_operation(self, ledger):
        assert await ledger.advance(404, phase="EXECUTING") is False
        assert await ledger.get_status(404) is None

    @pytest.mark.asyncio
    async def test_events_can_be_disabled(self, ledger_store, clock):
        ledger = OperationLedger(ledger_store, record_events=False, clock=clock)

        operation_id = await ledger.start(OperationType.MOVE_TABLE, "public.orders")
        await ledger.finish(operation_id, OperationStatus.COMPLETED)

        assert await ledger.get_events(operation_id) == []

    def test_from_config(self, ledger_store):
        ledger = OperationLedger.from_config(
            ledger_store, SimpleNamespace(record_events=False, retention_days=7)
        )
        assert ledger.record_events is False
        assert ledger.retention_days == 7


class TestStoreFailures:
    """Registration must succeed; the rest is best effort."""

    @pytest.fixture
    def broken_store(self):
        store = MagicMock()
        store.insert = AsyncMock(side_effect=RuntimeError("connection refused"))
        store.update = AsyncMock(side_effect=LedgerWriteError("write failed"))
        store.set_cancel_requested = AsyncMock(side_effect=LedgerWriteError("write failed"))
        store.get = AsyncMock(side_effect=LedgerWriteError("read failed"))
        store.append_event = AsyncMock(side_effect=LedgerWriteError("write failed"))
        return store

    @pytest.mark.asyncio
    async def test_start_raises_unavailable(self, broken_store):
        ledger = OperationLedger(broken_store)
        with pytest.raises(LedgerUnavailableError, match="connection refused"):
            await ledger.start(OperationType.MOVE_TABLE, "public.orders")

    @pytest.mark.asyncio
    async def test_progress_writes_are_lost_quietly(self, broken_store):
        ledger = OperationLedger(broken_store)

        assert await ledger.advance(1, phase="EXECUTING") is False
        assert await ledger.finish(1, OperationStatus.COMPLETED) is False
        assert await ledger.is_cancel_requested(1) is False

    @pytest.mark.asyncio
    async def test_cancel_request_failure_is_reported(self, broken_store):
        ledger = OperationLedger(broken_store)
        with pytest.raises(LedgerError, match="Could not request cancellation"):
            await ledger.request_cancel(1)

    @pytest.mark.asyncio
    async def test_event_failure_does_not_fail_start(self, ledger_store):
        ledger_store.append_event = AsyncMock(side_effect=LedgerWriteError("events table missing"))
        ledger = OperationLedger(ledger_store)

        operation_id = await ledger.start(OperationType.MOVE_TABLE, "public.orders")

        assert (await ledger.get_status(operation_id)).status == OperationStatus.PENDING


# ============================================================================
# Cancellation and retention
# ============================================================================

class TestCancelAndSweep:
    """Durable cancel flags and the retention sweep."""

    @pytest.mark.asyncio
    async def test_request_cancel(self, ledger):
        operation_id = await ledger.start(OperationType.MOVE_TABLE, "public.orders")

        assert await ledger.request_cancel(operation_id) is True
        assert await ledger.is_cancel_requested(operation_id) is True

    @pytest.mark.asyncio
    async def test_cannot_cancel_finished_operation(self, ledger):
        operation_id = await ledger.start(OperationType.MOVE_TABLE, "public.orders")
        await ledger.finish(operation_id, OperationStatus.COMPLETED)

        assert await ledger.request_cancel(operation_id) is False
        assert await ledger.is_cancel_requested(operation_id) is False

    @pytest.mark.asyncio
    async def test_sweep_deletes_old_finished_operations(self, ledger, clock):
        finished = await ledger.start(OperationType.MOVE_TABLE, "public.a")
        await ledger.finish(finished, OperationStatus.COMPLETED)
        active = await ledger.start(OperationType.MOVE_TABLE, "public.b")

        clock.tick(days=31)

        assert await ledger.sweep() == 1
        assert await ledger.get_status(finished) is None
        assert await ledger.get_events(finished) == []
        assert await ledger.get_status(active) is not None

    @pytest.mark.asyncio
    async def test_sweep_respects_retention(self, ledger, clock):
        operation_id = await ledger.start(OperationType.MOVE_TABLE, "public.a")
        await ledger.finish(operation_id, OperationStatus.COMPLETED)
        clock.tick(days=31)

        assert await ledger.sweep(retention_days=100) == 0
        assert await ledger.get_status(operation_id) is not None


# ============================================================================
# Monitoring
# ============================================================================

class TestSummaries:
    """History, performance and error summaries."""

    @staticmethod
    async def two_runs(ledger, clock):
        ok = await ledger.start(OperationType.MOVE_TABLE, "public.orders")
        clock.tick(seconds=2)
        await ledger.finish(ok, OperationStatus.COMPLETED, rows_processed=100)

        bad = await ledger.start(OperationType.MOVE_TABLE, "public.orders")
        clock.tick(seconds=4)
        await ledger.finish(bad, OperationStatus.FAILED, error_code="EXECUTION_ERROR", error_message="boom")
        return ok, bad

    @pytest.mark.asyncio
    async def test_history_filters(self, ledger, clock):
        two_runs = await self.two_runs(ledger, clock)
        other = await ledger.start(OperationType.REMOVE_COLUMNS, "public.sales")

        assert [r.operation_id for r in await ledger.get_history()] == [other, two_runs[1], two_runs[0]]
        assert [r.operation_id for r in await ledger.get_history(limit=1)] == [other]
        moves = await ledger.get_history(operation_type=OperationType.MOVE_TABLE)
        assert [r.operation_id for r in moves] == [two_runs[1], two_runs[0]]

    @pytest.mark.asyncio
    async def test_performance_summary(self, ledger, clock):
        await self.two_runs(ledger, clock)
        summaries = await ledger.get_performance_summary("public.orders")

        assert len(summaries) == 1
        summary = summaries[0]
        assert summary.total == 2
        assert summary.completed == 1
        assert summary.failed == 1
        assert summary.avg_duration_ms == pytest.approx(3000)
        assert summary.max_duration_ms == pytest.approx(4000)
        assert summary.total_rows == 100
        assert summary.avg_rows_per_second == pytest.approx(50)
        assert summary.success_rate == 0.5

    @pytest.mark.asyncio
    async def test_summary_window(self, ledger, clock):
        await self.two_runs(ledger, clock)
        clock.tick(days=10)
        assert await ledger.get_performance_summary(days=7) == []
        assert len(await ledger.get_performance_summary(days=30)) == 1

    @pytest.mark.asyncio
    async def test_history_window(self, ledger, clock):
        await self.two_runs(ledger, clock)
        clock.tick(days=10)
        recent = await ledger.start(OperationType.REMOVE_COLUMNS, "public.sales")

        assert [r.operation_id for r in await ledger.get_history(days=7)] == [recent]
        assert len(await ledger.get_history(days=30)) == 3

    @pytest.mark.asyncio
    async def test_performance_by_type(self, ledger, clock):
        await self.two_runs(ledger, clock)
        other = await ledger.start(OperationType.REMOVE_COLUMNS, "public.orders")
        await ledger.finish(other, OperationStatus.COMPLETED)

        summaries = await ledger.get_performance_summary(operation_type=OperationType.REMOVE_COLUMNS)

        assert [(s.operation_type, s.total) for s in summaries] == [(OperationType.REMOVE_COLUMNS, 1)]

    @pytest.mark.asyncio
    async def test_error_summary(self, ledger, clock):
        await self.two_runs(ledger, clock)
        for table in ("public.a", "public.b"):
            operation_id = await ledger.start(OperationType.MIGRATE_TABLE, table)
            await ledger.finish(
                operation_id, OperationStatus.FAILED, error_code="PREFLIGHT_FAILED", error_message=f"{table} full"
            )

        errors = await ledger.get_error_summary()

        assert [(e.error_code, e.occurrences) for e in errors] == [
            ("PREFLIGHT_FAILED", 2),
            ("EXECUTION_ERROR", 1),
        ]
        assert errors[0].targets == ["public.a", "public.b"]
        assert errors[0].operation_type == OperationType.MIGRATE_TABLE
        assert errors[1].last_message == "boom"


class TestRecords:
    """Record conversion."""

    def test_from_row(self):
        record = OperationRecord.from_record(record_row(duration_ms=Decimal(1500)))

        assert record.operation_type == OperationType.MOVE_TABLE
        assert record.target_kind == TargetKind.TABLE
        assert record.context == {"params": {"tablespace": "fast_ts"}}
        assert record.duration_ms == 1500.0
        assert not record.is_terminal

    def test_to_dict(self):
        data = OperationRecord.from_record(record_row(status="completed", ended_at=STARTED)).to_dict()

        assert data["status"] == "completed"
        assert data["started_at"] == "2025-03-01T12:00:00+00:00"
        assert data["ended_at"] == "2025-03-01T12:00:00+00:00"


# ============================================================================
# PostgreSQL store
# ============================================================================

class TestPostgresLedgerStore:
    """SQL store against a mocked pool."""

    @pytest.fixture
    def pool(self):
        pool = MagicMock(spec=ConnectionPool)
        pool.fetchrow = AsyncMock(return_value=record_row())
        pool.fetch = AsyncMock(return_value=[record_row()])
        pool.fetchval = AsyncMock(return_value=7)
        pool.execute = AsyncMock(return_value="DELETE 3")
        return pool

    @pytest.fixture
    def store(self, pool):
        return PostgresLedgerStore(pool, schema_name="evolution")

    def test_table_names(self, store):
        assert store.operations == "evolution.operations"
        assert store.events_table == "evolution.operation_events"

    @pytest.mark.asyncio
    async def test_insert(self, store, pool):
        record = await store.insert(
            OperationType.MOVE_TABLE, "public.orders", TargetKind.TABLE, OperationStatus.PENDING, STARTED,
            context={"params": {"tablespace": "fast_ts"}},
        )

        assert record.operation_id == 7
        args = pool.fetchrow.await_args.args
        assert "INSERT INTO evolution.operations" in args[0]
        assert args[1:5] == ("move_table", "public.orders", "table", "pending")
        assert args[6] == '{"params": {"tablespace": "fast_ts"}}'

    @pytest.mark.asyncio
    async def test_insert_conflict(self, store, pool):
        pool.fetchrow = AsyncMock(side_effect=[asyncpg.UniqueViolationError("duplicate key"), record_row()])

        with pytest.raises(ConcurrentOperationError) as exc_info:
            await store.insert(
                OperationType.MOVE_TABLE, "public.orders", TargetKind.TABLE, OperationStatus.PENDING, STARTED
            )
        assert exc_info.value.active_operation_id == 7

    @pytest.mark.asyncio
    async def test_insert_failure(self, store, pool):
        pool.fetchrow = AsyncMock(side_effect=OSError("connection refused"))

        with pytest.raises(LedgerUnavailableError):
            await store.insert(
                OperationType.MOVE_TABLE, "public.orders", TargetKind.TABLE, OperationStatus.PENDING, STARTED
            )

    @pytest.mark.asyncio
    async def test_update(self, store, pool):
        record = await store.update(7, status=OperationStatus.RUNNING, context={"state": {"watermark": "10"}})

        assert record.status == OperationStatus.RUNNING
        args = pool.fetchrow.await_args.args
        assert args[1:4] == (7, "running", None)
        assert args[4] == '{"state": {"watermark": "10"}}'
        assert args[10] == ["cancelled", "completed", "failed", "partial_success"]

    @pytest.mark.asyncio
    async def test_update_of_terminal_record(self, store, pool):
        pool.fetchrow = AsyncMock(return_value=None)
        assert await store.update(7, phase="EXECUTING") is None

    @pytest.mark.asyncio
    async def test_update_failure(self, store, pool):
        pool.fetchrow = AsyncMock(side_effect=OSError("gone"))
        with pytest.raises(LedgerWriteError):
            await store.update(7, phase="EXECUTING")

    @pytest.mark.asyncio
    async def test_cancel_flag(self, store, pool):
        assert await store.set_cancel_requested(7) is True
        pool.fetchval = AsyncMock(return_value=None)
        assert await store.set_cancel_requested(7) is False

    @pytest.mark.asyncio
    async def test_list(self, store, pool):
        records = await store.list("public.orders", OperationType.MOVE_TABLE, limit=5)

        assert [r.operation_id for r in records] == [7]
        assert pool.fetch.await_args.args[1:] == ("public.orders", "move_table", None, 5)

    @pytest.mark.asyncio
    async def test_events(self, store, pool):
        pool.fetch = AsyncMock(
            return_value=[
                {
                    "event_id": 1,
                    "operation_id": 7,
                    "event_type": "start",
                    "status": "pending",
                    "created_at": STARTED,
                    "phase": "INITIATED",
                    "rows_processed": None,
                    "message": None,
                    "context": "{}",
                }
            ]
        )

        events = await store.events(7)

        assert events[0].event_type == EventType.START
        assert events[0].phase == "INITIATED"

    @pytest.mark.asyncio
    async def test_sweep_parses_command_status(self, store, pool):
        assert await store.delete_terminal_before(STARTED - timedelta(days=30)) == 3


# ============================================================================
# Schema
# ============================================================================

class TestLedgerSchema:
    """Ledger tables and views."""

    @pytest.fixture
    def connection(self):
        conn = MagicMock()
        conn.execute = AsyncMock()

        @asynccontextmanager
        async def transaction():
            yield

        conn.transaction = transaction
        return conn

    @pytest.fixture
    def pool(self, connection):
        pool = MagicMock(spec=ConnectionPool)
        pool.execute = AsyncMock()

        @asynccontextmanager
        async def acquire():
            yield connection

        pool.acquire = acquire
        return pool

    @pytest.mark.asyncio
    async def test_setup(self, pool, connection):
        schema = LedgerSchema(pool, "evolution")

        result = await schema.setup()

        pool.execute.assert_awaited_once_with("CREATE SCHEMA IF NOT EXISTS evolution")
        assert result["tables_created"] == [
            "evolution.operations",
            "evolution.operation_events",
            "evolution.migration_checkpoints",
            "evolution.migration_changes",
        ]
        assert result["views_created"] == ["evolution.active_operations", "evolution.operation_performance"]
        assert result["errors"] == []
        statements = [c.args[0] for c in connection.execute.await_args_list]
        assert any("operations_active_target_idx" in s for s in statements)

    @pytest.mark.asyncio
    async def test_setup_collects_errors(self, pool, connection):
        connection.execute = AsyncMock(side_effect=Exception("permission denied"))

        result = await LedgerSchema(pool, "evolution").setup()

        assert len(result["errors"]) == 6
        assert result["tables_created"] == []

    @pytest.mark.asyncio
    async def test_check(self, pool):
        pool.fetch = AsyncMock(
            return_value=[
                {"relname": n}
                for n in ("operations", "operation_events", "migration_checkpoints", "migration_changes")
            ]
        )

        result = await LedgerSchema(pool).check()

        assert result["is_healthy"] is True
        assert result["missing_components"] == ["view:active_operations", "view:operation_performance"]

    @pytest.mark.asyncio
    async def test_check_failure(self, pool):
        pool.fetch = AsyncMock(side_effect=Exception("no such schema"))
        assert (await LedgerSchema(pool).check())["is_healthy"] is False
