"""
Tests for data-plane operations against a mocked connection.
"""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from pgshift.database.connection import ConnectionPool
from pgshift.database.operations import TableOperations, affected_rows
from pgshift.exceptions import DatabaseError


COLUMNS = ["id", "status"]


def status_of(statement, *args):
    if statement.startswith("DELETE"):
        return "DELETE 2"
    if statement.startswith("INSERT"):
        return "INSERT 0 3"
    if statement.startswith("UPDATE"):
        return "UPDATE 10"
    return "OK"


@pytest.fixture
def connection():
    conn = MagicMock()
    conn.execute = AsyncMock(side_effect=status_of)
    conn.fetchval = AsyncMock(return_value=None)
    conn.rolled_back = False

    @asynccontextmanager
    async def transaction():
        try:
            yield
        except BaseException:
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
def operations(pool):
    return TableOperations(pool, lock_timeout_seconds=5, checkpoint_schema="evolution")


def executed(connection):
    return [c.args[0] for c in connection.execute.await_args_list]


def test_affected_rows():
    assert affected_rows("INSERT 0 42") == 42
    assert affected_rows("ALTER TABLE") == 0
    assert affected_rows(None) == 0


class TestChangeCapture:
    """Trigger install and replay of logged keys."""

    @pytest.mark.asyncio
    async def test_start_capture(self, operations, connection):
        await operations.start_capture("public.orders", 7, "id")

        statements = executed(connection)
        assert statements[0] == "SET LOCAL lock_timeout = '5000ms'"
        assert statements[-2:] == [
            "DROP TRIGGER IF EXISTS pgshift_capture_7 ON public.orders",
            "CREATE TRIGGER pgshift_capture_7\n"
            "AFTER INSERT OR UPDATE OR DELETE ON public.orders\n"
            "FOR EACH ROW EXECUTE FUNCTION evolution.capture_change('7', 'id')",
        ]

    @pytest.mark.asyncio
    async def test_stop_capture_forgets_all_changes(self, operations, connection):
        await operations.stop_capture("public.orders", 7)

        assert connection.execute.await_args_list[-2].args == (
            "DROP TRIGGER IF EXISTS pgshift_capture_7 ON public.orders",
        )
        assert connection.execute.await_args_list[-1].args == (
            "DELETE FROM evolution.migration_changes WHERE operation_id = $1",
            7,
        )

    @pytest.mark.asyncio
    async def test_sync_replays_changed_keys(self, operations, connection):
        connection.fetchval = AsyncMock(return_value=41)

        result = await operations.sync_changes(
            7, "public.orders", "public.orders_new", COLUMNS, "id", "bigint", "20"
        )

        assert result == {"rows_removed": 2, "rows_recopied": 3}
        calls = [c.args for c in connection.execute.await_args_list][-3:]
        assert calls[0][0].startswith("DELETE FROM public.orders_new WHERE id IN (")
        assert calls[0][1:] == (7, 41, "20")
        assert calls[1][0].startswith("INSERT INTO public.orders_new (id, status)\nSELECT id, status FROM public.orders")
        assert calls[1][1:] == (7, 41, "20")
        assert calls[2] == (
            "DELETE FROM evolution.migration_changes WHERE operation_id = $1 AND change_id <= $2",
            7,
            41,
        )

    @pytest.mark.asyncio
    async def test_sync_without_changes(self, operations, connection):
        result = await operations.sync_changes(
            7, "public.orders", "public.orders_new", COLUMNS, "id", "bigint", "20"
        )

        assert result == {"rows_removed": 0, "rows_recopied": 0}
        assert not any(s.startswith(("DELETE", "INSERT")) for s in executed(connection))

    @pytest.mark.asyncio
    async def test_reconcile_locks_and_counts(self, operations, connection):
        connection.fetchval = AsyncMock(side_effect=[12, 20, 20])

        result = await operations.reconcile_counts(
            7, "public.orders", "public.orders_new", COLUMNS, "id", "bigint", "20"
        )

        assert result == {"rows_removed": 2, "rows_recopied": 3, "source_rows": 20, "target_rows": 20}
        statements = executed(connection)
        lock = statements.index("LOCK TABLE public.orders IN SHARE MODE")
        assert lock < next(i for i, s in enumerate(statements) if s.startswith("DELETE FROM public.orders_new"))
        assert connection.fetchval.await_args_list[1].args == (
            "SELECT count(*) FROM public.orders WHERE id <= CAST($1::text AS bigint)",
            "20",
        )

    @pytest.mark.asyncio
    async def test_reconcile_before_first_batch(self, operations, connection):
        connection.fetchval = AsyncMock(side_effect=[3, 0])

        result = await operations.reconcile_counts(
            7, "public.orders", "public.orders_new", COLUMNS, "id", "bigint", None
        )

        assert result["source_rows"] == 0
        assert result["target_rows"] == 0
        assert result["rows_recopied"] == 0


class TestSwapTables:
    """Last replay, delta, count check and renames in one transaction."""

    @pytest.mark.asyncio
    async def test_swap(self, operations, connection):
        connection.fetchval = AsyncMock(side_effect=[41, 25, 25])

        result = await operations.swap_tables(
            7, "public.orders", "public.orders_new", "orders_old", "orders", COLUMNS, "id", "bigint", "20"
        )

        assert result == {
            "delta_rows": 3,
            "source_rows": 25,
            "target_rows": 25,
            "rows_removed": 2,
            "rows_recopied": 3,
        }
        statements = executed(connection)
        order = [
            "LOCK TABLE public.orders IN EXCLUSIVE MODE",
            "DROP TRIGGER IF EXISTS pgshift_capture_7 ON public.orders",
            "ALTER TABLE public.orders RENAME TO orders_old",
            "ALTER TABLE public.orders_new RENAME TO orders",
        ]
        assert [statements.index(s) for s in order] == sorted(statements.index(s) for s in order)
        delta = next(s for s in statements if "WHERE id > CAST($1::text AS bigint)" in s)
        assert statements.index(delta) < statements.index(order[1])

    @pytest.mark.asyncio
    async def test_mismatch_rolls_back(self, operations, connection):
        connection.fetchval = AsyncMock(side_effect=[None, 25, 24])

        with pytest.raises(DatabaseError, match="Row count mismatch") as exc_info:
            await operations.swap_tables(
                7, "public.orders", "public.orders_new", "orders_old", "orders", COLUMNS, "id", "bigint", "20"
            )

        assert exc_info.value.details == {"source_rows": 25, "target_rows": 24}
        assert connection.rolled_back
        assert not any("RENAME" in s for s in executed(connection))


class TestDriverErrors:
    """Server, client and socket failures all surface as DatabaseError."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error, sqlstate",
        [
            (asyncpg.LockNotAvailableError("lock timeout"), "55P03"),
            (asyncpg.InterfaceError("connection is closed"), None),
            (ConnectionResetError("connection reset by peer"), None),
        ],
    )
    async def test_relocate(self, operations, connection, error, sqlstate):
        connection.execute = AsyncMock(side_effect=error)

        with pytest.raises(DatabaseError) as exc_info:
            await operations.relocate("public.orders", "fast_ts")

        assert exc_info.value.details["sqlstate"] == sqlstate
        assert exc_info.value.cause is error

    @pytest.mark.asyncio
    async def test_copy_batch_socket_failure(self, operations, connection):
        connection.execute = AsyncMock(side_effect=["OK", "OK", OSError("broken pipe")])

        with pytest.raises(DatabaseError, match="Batch copy failed"):
            await operations.copy_batch(
                7, "public.orders", "public.orders_new", COLUMNS, "id", "bigint", None, "10"
            )


class TestRewriteBatch:
    """Batched tuple rewrites after a column drop."""

    @pytest.mark.asyncio
    async def test_parallel_settings_apply_to_the_batch(self, operations, connection):
        rows = await operations.rewrite_batch(
            "public.orders", "id", "bigint", "10", "20", "status", parallel_degree=4
        )

        assert rows == 10
        statements = executed(connection)
        assert "SET LOCAL max_parallel_workers_per_gather = 4" in statements
        assert statements[-1] == (
            "UPDATE public.orders SET status = status "
            "WHERE id > CAST($1::text AS bigint) AND id <= CAST($2::text AS bigint)"
        )
