"""
Tests for script execution and dry-run validation.
"""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from pgshift.database.connection import ConnectionPool
from pgshift.database.executor import StatementExecutor, requires_autocommit
from pgshift.exceptions import DatabaseConnectionError, ExecutionError
from pgshift.ledger import OperationStatus, OperationType, TargetKind


SCRIPT = """
-- build the archive table
CREATE TABLE public.orders_archive (id bigint NOT NULL);
INSERT INTO public.orders_archive SELECT id FROM public.orders;
CREATE INDEX CONCURRENTLY orders_archive_id_idx ON public.orders_archive (id);
"""


@pytest.fixture
def connection():
    conn = MagicMock()
    conn.execute = AsyncMock(return_value="OK")
    conn.rolled_back = False

    @asynccontextmanager
    async def transaction():
        try:
            yield
        except Exception:
            conn.rolled_back = True
            raise

    conn.transaction = transaction
    return conn


@pytest.fixture
def pool(connection):
    pool = MagicMock(spec=ConnectionPool)

    @asynccontextmanager
    async def acquire():
        yield connection

    pool.acquire = acquire
    return pool


@pytest.fixture
def executor(pool, ledger):
    return StatementExecutor(pool, ledger)


def executed(connection):
    return [c.args[0] for c in connection.execute.await_args_list]


class TestRequiresAutocommit:
    """Statements that cannot run in a transaction block."""

    @pytest.mark.parametrize(
        "statement",
        [
            "VACUUM ANALYZE public.orders",
            "CREATE INDEX CONCURRENTLY i ON t (a)",
            "create unique index concurrently i on t (a)",
            "DROP INDEX CONCURRENTLY i",
            "REINDEX TABLE CONCURRENTLY t",
            "ALTER TABLE s DETACH PARTITION s_p1 CONCURRENTLY",
            "ALTER SYSTEM SET work_mem = '64MB'",
        ],
    )
    def test_autocommit_only(self, statement):
        assert requires_autocommit(statement)

    @pytest.mark.parametrize(
        "statement",
        [
            "CREATE INDEX i ON t (a)",
            "ALTER TABLE s DETACH PARTITION s_p1",
            "INSERT INTO t SELECT * FROM u",
        ],
    )
    def test_transactional(self, statement):
        assert not requires_autocommit(statement)


class TestExecute:
    """Running scripts for real."""

    @pytest.mark.asyncio
    async def test_runs_statements_in_order(self, executor, connection, ledger):
        operation_id = await executor.execute(SCRIPT, target="public.orders_archive")

        assert executed(connection) == [
            "CREATE TABLE public.orders_archive (id bigint NOT NULL)",
            "INSERT INTO public.orders_archive SELECT id FROM public.orders",
            "CREATE INDEX CONCURRENTLY orders_archive_id_idx ON public.orders_archive (id)",
        ]
        record = await ledger.get_status(operation_id)
        assert record.operation_type == OperationType.EXECUTE_SCRIPT
        assert record.target_kind == TargetKind.SCRIPT
        assert record.status == OperationStatus.COMPLETED
        assert record.objects_affected == 3
        assert record.context == {"statements": 3}

    @pytest.mark.asyncio
    async def test_failure_is_recorded(self, executor, connection, ledger):
        connection.execute = AsyncMock(
            side_effect=["OK", asyncpg.UndefinedTableError('relation "public.orders" does not exist')]
        )

        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute(SCRIPT)

        error = exc_info.value
        assert error.operation_id is not None
        assert error.details["sqlstate"] == "42P01"
        assert "Statement 2 failed" in error.message

        record = await ledger.get_status(error.operation_id)
        assert record.status == OperationStatus.FAILED
        assert record.error_code == "EXECUTION_ERROR"
        assert record.objects_affected == 1
        assert record.context["failed_statement"].startswith("INSERT INTO public.orders_archive")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [ConnectionResetError("connection reset"), asyncpg.InterfaceError("connection is closed")],
    )
    async def test_lost_connection_is_recorded(self, executor, connection, ledger, error):
        connection.execute = AsyncMock(side_effect=["OK", error])

        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute(SCRIPT)

        assert exc_info.value.details["sqlstate"] is None
        assert exc_info.value.cause is error
        record = await ledger.get_status(exc_info.value.operation_id)
        assert record.status == OperationStatus.FAILED
        assert record.objects_affected == 1

    @pytest.mark.asyncio
    async def test_disconnected_pool_is_recorded(self, executor, pool, ledger):
        @asynccontextmanager
        async def acquire():
            raise DatabaseConnectionError("The target pool is not connected")
            yield

        pool.acquire = acquire

        with pytest.raises(ExecutionError, match="not connected") as exc_info:
            await executor.execute(SCRIPT)

        record = await ledger.get_status(exc_info.value.operation_id)
        assert record.status == OperationStatus.FAILED
        assert record.context["failed_statement"].startswith("CREATE TABLE public.orders_archive")

    def test_statements(self):
        assert len(StatementExecutor.statements(SCRIPT)) == 3


class TestFindErrors:
    """Dry runs inside a rolled-back transaction."""

    @pytest.mark.asyncio
    async def test_clean_script(self, executor, connection):
        assert await executor.find_errors(SCRIPT) is None

        assert connection.rolled_back
        statements = executed(connection)
        assert len(statements) == 2
        assert not any("CONCURRENTLY" in s for s in statements)

    @pytest.mark.asyncio
    async def test_reports_first_error(self, executor, connection):
        connection.execute = AsyncMock(side_effect=asyncpg.PostgresSyntaxError('syntax error at or near "TABEL"'))

        error = await executor.find_errors("CREATE TABEL x (id int); SELECT 1;")

        assert "TABEL" in error
        assert connection.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_validate_syntax(self, executor, connection):
        assert await executor.validate_syntax(SCRIPT) is True

        connection.execute = AsyncMock(side_effect=asyncpg.PostgresSyntaxError("syntax error"))
        assert await executor.validate_syntax(SCRIPT) is False

    @pytest.mark.asyncio
    async def test_dry_run_writes_no_ledger_records(self, executor, ledger):
        await executor.find_errors(SCRIPT)
        assert await ledger.get_history() == []
