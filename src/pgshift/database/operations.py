"""
Data-plane operations used by evolution workflows.

Each method is one unit of work against the target database: it runs on
a pooled connection, sets its own lock and statement timeouts, and
either commits completely or not at all. Table arguments are already
rendered (quoted and qualified) relation names.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import asyncpg

from .connection import DRIVER_ERRORS, ConnectionPool, sqlstate
from ..exceptions import DatabaseError
from ..synthesis import evolution
from ..synthesis.literals import qualify
from ..synthesis.steps import DDLStep


logger = logging.getLogger(__name__)


def affected_rows(status: Optional[str]) -> int:
    """Row count from a command status such as ``INSERT 0 42``."""
    if not status:
        return 0
    last = status.split()[-1]
    return int(last) if last.isdigit() else 0


class TableOperations:
    """Statements that change live tables."""

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        lock_timeout_seconds: float = 10.0,
        statement_timeout_seconds: float = 3600.0,
        checkpoint_schema: str = "pgshift",
    ):
        self.pool = pool
        self.lock_timeout_seconds = lock_timeout_seconds
        self.statement_timeout_seconds = statement_timeout_seconds
        self.checkpoint_table = qualify(evolution.CHECKPOINT_TABLE, checkpoint_schema)
        self.checkpoint_schema = checkpoint_schema

    @staticmethod
    def relation(schema: Optional[str], table: str) -> str:
        return qualify(table, schema)

    @asynccontextmanager
    async def _transaction(self, parallel_degree: Optional[int] = None) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(evolution.lock_timeout_statement(self.lock_timeout_seconds))
                await conn.execute(evolution.statement_timeout_statement(self.statement_timeout_seconds))
                for statement in evolution.parallel_statements(parallel_degree):
                    await conn.execute(statement)
                yield conn

    async def _run(self, description: str, statements: Sequence[str], parallel_degree: Optional[int] = None) -> None:
        start = time.time()
        try:
            async with self._transaction(parallel_degree) as conn:
                for statement in statements:
                    await conn.execute(statement)
        except DRIVER_ERRORS as e:
            logger.error(f"Failed to {description}: {e}")
            raise DatabaseError(f"Failed to {description}: {e}", {"sqlstate": sqlstate(e)}, e) from e
        logger.debug(f"{description} took {(time.time() - start) * 1000:.1f}ms")

    async def _run_outside_transaction(self, description: str, statement: str) -> None:
        """Run a statement that cannot run inside a transaction block."""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    f"SET statement_timeout = '{int(self.statement_timeout_seconds * 1000)}ms'"
                )
                try:
                    await conn.execute(statement)
                finally:
                    await conn.execute("RESET statement_timeout")
        except DRIVER_ERRORS as e:
            logger.error(f"Failed to {description}: {e}")
            raise DatabaseError(f"Failed to {description}: {e}", {"sqlstate": sqlstate(e)}, e) from e

    # ------------------------------------------------------------------
    # relocation and maintenance

    async def relocate(self, table: str, tablespace: str, parallel_degree: Optional[int] = None) -> None:
        """Rewrite ``table`` into ``tablespace``."""
        logger.info(f"Moving {table} to tablespace {tablespace}")
        await self._run(
            f"move {table} to {tablespace}",
            [evolution.relocate_statement(table, tablespace)],
            parallel_degree,
        )

    async def rebuild_indexes(self, table: str, tablespace: Optional[str] = None) -> None:
        logger.info(f"Rebuilding indexes of {table}")
        await self._run_outside_transaction(
            f"rebuild indexes of {table}", evolution.reindex_statement(table, tablespace)
        )

    async def analyze(self, table: str) -> None:
        await self._run_outside_transaction(f"analyze {table}", evolution.analyze_statement(table))

    async def vacuum(self, table: str) -> None:
        await self._run_outside_transaction(f"vacuum {table}", evolution.vacuum_statement(table))

    async def create_table(self, statements: Sequence[str]) -> None:
        """Run generated create statements in one transaction."""
        await self._run("create table", statements)

    async def drop_table(self, table: str) -> None:
        logger.info(f"Dropping {table}")
        await self._run(f"drop {table}", [evolution.drop_table_statement(table)])

    async def rename_constraint(self, table: str, old: str, new: str) -> None:
        await self._run(
            f"rename constraint {old} on {table}",
            [evolution.rename_constraint_statement(table, old, new)],
        )

    # ------------------------------------------------------------------
    # checkpointed copy

    async def ensure_checkpoint_table(self) -> None:
        await self._run("create checkpoint table", evolution.checkpoint_table_ddl(self.checkpoint_schema))

    async def init_checkpoint(self, operation_id: int, source: str, target: str) -> None:
        query = f"""
            INSERT INTO {self.checkpoint_table} (operation_id, source_table, target_table)
            VALUES ($1, $2, $3)
            ON CONFLICT (operation_id) DO NOTHING
        """
        try:
            await self.pool.execute(query, operation_id, source, target)
        except DRIVER_ERRORS as e:
            raise DatabaseError(f"Failed to initialize checkpoint: {e}", cause=e) from e

    async def read_checkpoint(self, operation_id: int) -> Optional[Dict[str, Any]]:
        """Committed watermark and row count of a copy, or None."""
        query = f"""
            SELECT watermark, rows_copied, updated_at
            FROM {self.checkpoint_table}
            WHERE operation_id = $1
        """
        try:
            row = await self.pool.fetchrow(query, operation_id)
        except DRIVER_ERRORS as e:
            raise DatabaseError(f"Failed to read checkpoint: {e}", cause=e) from e
        return dict(row) if row else None

    async def next_watermark(
        self,
        table: str,
        key: str,
        key_type: str,
        after: Optional[str],
        batch_size: int,
    ) -> Optional[str]:
        """Upper key of the next batch after ``after``; None when no rows remain."""
        query = evolution.next_watermark_query(table, key, key_type, bounded=after is not None)
        args = [batch_size] if after is None else [batch_size, after]
        try:
            return await self.pool.fetchval(query, *args)
        except DRIVER_ERRORS as e:
            raise DatabaseError(f"Failed to find next batch of {table}: {e}", cause=e) from e

    async def copy_batch(
        self,
        operation_id: int,
        source: str,
        target: str,
        columns: Sequence[str],
        key: str,
        key_type: str,
        lower: Optional[str],
        upper: str,
        overriding: bool = False,
        parallel_degree: Optional[int] = None,
    ) -> int:
        """Copy keys in ``(lower, upper]`` and advance the checkpoint atomically."""
        bounded = lower is not None
        insert = evolution.copy_range_statement(source, target, columns, key, key_type, bounded, overriding)
        args = [lower, upper] if bounded else [upper]
        advance = f"""
            UPDATE {self.checkpoint_table}
            SET watermark = $2, rows_copied = rows_copied + $3, updated_at = now()
            WHERE operation_id = $1
        """
        try:
            async with self._transaction(parallel_degree) as conn:
                rows = affected_rows(await conn.execute(insert, *args))
                await conn.execute(advance, operation_id, upper, rows)
        except DRIVER_ERRORS as e:
            logger.error(f"Batch copy {source} -> {target} up to {upper} failed: {e}")
            raise DatabaseError(f"Batch copy failed: {e}", {"sqlstate": sqlstate(e)}, e) from e
        return rows

    async def count_rows(
        self,
        table: str,
        key: Optional[str] = None,
        key_type: Optional[str] = None,
        upper: Optional[str] = None,
    ) -> int:
        """Rows in ``table``, or only those with keys at or below ``upper``."""
        try:
            if key is None or upper is None:
                return int(await self.pool.fetchval(evolution.count_statement(table)))
            return int(await self.pool.fetchval(evolution.count_statement(table, key, key_type), upper))
        except DRIVER_ERRORS as e:
            raise DatabaseError(f"Failed to count rows of {table}: {e}", cause=e) from e

    # ------------------------------------------------------------------
    # change capture

    async def start_capture(self, table: str, operation_id: int, key: str) -> None:
        """Log the key of every row written to ``table`` from now on."""
        logger.info(f"Capturing changes to {table} for operation {operation_id}")
        await self._run(
            f"start change capture on {table}",
            evolution.start_capture_statements(table, self.checkpoint_schema, operation_id, key),
        )

    async def stop_capture(self, table: str, operation_id: int) -> None:
        """Remove the capture trigger and forget the logged changes."""
        purge = evolution.purge_changes_statement(self.checkpoint_schema, through_change=False)
        try:
            async with self._transaction() as conn:
                await conn.execute(evolution.stop_capture_statement(table, operation_id))
                await conn.execute(purge, operation_id)
        except DRIVER_ERRORS as e:
            raise DatabaseError(f"Failed to stop change capture on {table}: {e}", {"sqlstate": sqlstate(e)}, e) from e

    async def _replay(
        self,
        conn: asyncpg.Connection,
        operation_id: int,
        source: str,
        target: str,
        columns: Sequence[str],
        key: str,
        key_type: str,
        watermark: Optional[str],
        overriding: bool,
    ) -> Dict[str, int]:
        """Re-copy logged keys at or below ``watermark`` and purge them from the log.

        Keys above the watermark are left to the remaining batches.
        """
        schema = self.checkpoint_schema
        result = {"rows_removed": 0, "rows_recopied": 0}
        last = await conn.fetchval(evolution.last_change_query(schema), operation_id)
        if last is None:
            return result
        if watermark is not None:
            removed = await conn.execute(
                evolution.replay_delete_statement(target, key, key_type, schema), operation_id, last, watermark
            )
            recopied = await conn.execute(
                evolution.replay_insert_statement(source, target, columns, key, key_type, schema, overriding),
                operation_id,
                last,
                watermark,
            )
            result = {"rows_removed": affected_rows(removed), "rows_recopied": affected_rows(recopied)}
        await conn.execute(evolution.purge_changes_statement(schema), operation_id, last)
        return result

    async def sync_changes(
        self,
        operation_id: int,
        source: str,
        target: str,
        columns: Sequence[str],
        key: str,
        key_type: str,
        watermark: Optional[str],
        overriding: bool = False,
    ) -> Dict[str, int]:
        """Apply the changes captured so far, without blocking writers."""
        try:
            async with self._transaction() as conn:
                return await self._replay(
                    conn, operation_id, source, target, columns, key, key_type, watermark, overriding
                )
        except DRIVER_ERRORS as e:
            logger.error(f"Applying captured changes of {source} failed: {e}")
            raise DatabaseError(f"Change replay failed: {e}", {"sqlstate": sqlstate(e)}, e) from e

    async def reconcile_counts(
        self,
        operation_id: int,
        source: str,
        target: str,
        columns: Sequence[str],
        key: str,
        key_type: str,
        watermark: Optional[str],
        overriding: bool = False,
    ) -> Dict[str, int]:
        """Apply captured changes, then count both sides through ``watermark``.

        ``source`` is held in SHARE mode meanwhile, so writers wait and the
        two counts describe the same instant.
        """
        try:
            async with self._transaction() as conn:
                await conn.execute(evolution.lock_statement(source, "SHARE"))
                result = await self._replay(
                    conn, operation_id, source, target, columns, key, key_type, watermark, overriding
                )
                if watermark is None:
                    result["source_rows"] = 0
                else:
                    result["source_rows"] = int(
                        await conn.fetchval(evolution.count_statement(source, key, key_type), watermark)
                    )
                result["target_rows"] = int(await conn.fetchval(evolution.count_statement(target)))
        except DRIVER_ERRORS as e:
            raise DatabaseError(f"Failed to reconcile {source} and {target}: {e}", {"sqlstate": sqlstate(e)}, e) from e
        return result

    async def swap_tables(
        self,
        operation_id: int,
        source: str,
        target: str,
        retired_name: str,
        final_name: str,
        columns: Sequence[str],
        key: str,
        key_type: str,
        watermark: Optional[str],
        overriding: bool = False,
    ) -> Dict[str, int]:
        """Apply the last changes, copy the final delta and exchange names in one transaction.

        ``source`` is locked against writes first, so the counts compared
        here are exact. A mismatch rolls everything back. The capture
        trigger is dropped with the swap.
        """
        if watermark is None:
            delta = evolution.copy_all_statement(source, target, columns, overriding)
            args: List[Any] = []
        else:
            delta = evolution.copy_after_statement(source, target, columns, key, key_type, overriding)
            args = [watermark]
        purge = evolution.purge_changes_statement(self.checkpoint_schema, through_change=False)

        try:
            async with self._transaction() as conn:
                await conn.execute(evolution.lock_statement(source))
                replayed = await self._replay(
                    conn, operation_id, source, target, columns, key, key_type, watermark, overriding
                )
                delta_rows = affected_rows(await conn.execute(delta, *args))
                source_rows = int(await conn.fetchval(evolution.count_statement(source)))
                target_rows = int(await conn.fetchval(evolution.count_statement(target)))
                if source_rows != target_rows:
                    raise DatabaseError(
                        f"Row count mismatch: {source} has {source_rows}, {target} has {target_rows}",
                        {"source_rows": source_rows, "target_rows": target_rows},
                    )
                await conn.execute(evolution.stop_capture_statement(source, operation_id))
                await conn.execute(purge, operation_id)
                await conn.execute(evolution.rename_statement(source, retired_name))
                await conn.execute(evolution.rename_statement(target, final_name))
        except DRIVER_ERRORS as e:
            logger.error(f"Swapping {source} and {target} failed: {e}")
            raise DatabaseError(f"Rename swap failed: {e}", {"sqlstate": sqlstate(e)}, e) from e

        logger.info(f"Swapped {source} -> {retired_name} and {target} -> {final_name}")
        return {
            "delta_rows": delta_rows,
            "source_rows": source_rows,
            "target_rows": target_rows,
            **replayed,
        }

    # ------------------------------------------------------------------
    # column removal

    async def drop_constraint(self, table: str, constraint: str) -> None:
        await self._run(
            f"drop constraint {constraint} on {table}",
            [evolution.drop_constraint_statement(table, constraint)],
        )

    async def drop_columns(self, table: str, columns: Sequence[str]) -> None:
        logger.info(f"Dropping column(s) {', '.join(columns)} from {table}")
        await self._run(
            f"drop columns from {table}", [evolution.drop_columns_statement(table, columns)]
        )

    async def rewrite_batch(
        self,
        table: str,
        key: str,
        key_type: str,
        lower: Optional[str],
        upper: str,
        set_column: Optional[str] = None,
        parallel_degree: Optional[int] = None,
    ) -> int:
        """Rewrite the tuples with keys in ``(lower, upper]``."""
        bounded = lower is not None
        statement = evolution.rewrite_range_statement(table, key, key_type, bounded, set_column)
        args = [lower, upper] if bounded else [upper]
        try:
            async with self._transaction(parallel_degree) as conn:
                return affected_rows(await conn.execute(statement, *args))
        except DRIVER_ERRORS as e:
            raise DatabaseError(f"Rewrite of {table} up to {upper} failed: {e}", cause=e) from e

    async def validate_constraint(self, table: str, constraint: str) -> None:
        await self._run(
            f"validate constraint {constraint} on {table}",
            [evolution.validate_constraint_statement(table, constraint)],
        )

    # ------------------------------------------------------------------
    # scripted steps

    async def execute_step(self, step: DDLStep) -> None:
        """Run one script step, in a transaction when the step asks for one."""
        if step.transactional:
            await self._run(f"run step {step.step_number} ({step.name})", step.statements, step.parallel_degree)
            return
        for statement in step.statements:
            await self._run_outside_transaction(f"run step {step.step_number} ({step.name})", statement)
