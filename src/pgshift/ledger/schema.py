"""
Ledger schema management.

Creates the tables, indexes and views backing ``PostgresLedgerStore``.
Every statement is idempotent, so ``setup`` can run on every start.
"""

import logging
from typing import Any, Dict, List

from ..database.connection import ConnectionPool
from ..exceptions import SchemaError
from ..synthesis import evolution
from ..synthesis.literals import qualify, quote_ident


logger = logging.getLogger(__name__)


class LedgerSchema:
    """Manages the ledger schema and its tables."""

    def __init__(self, pool: ConnectionPool, schema_name: str = "pgshift"):
        self.pool = pool
        self.schema_name = schema_name

        self.required_tables = {
            "operations": self._get_operations_ddl(),
            "operation_events": self._get_operation_events_ddl(),
            evolution.CHECKPOINT_TABLE: evolution.checkpoint_table_ddl(schema_name)[1:2],
            evolution.CHANGE_LOG_TABLE: evolution.change_log_ddl(schema_name),
        }

        self.views = {
            "active_operations": self._get_active_operations_view_ddl(),
            "operation_performance": self._get_operation_performance_view_ddl(),
        }

    def _name(self, table: str) -> str:
        return qualify(table, self.schema_name)

    async def setup(self) -> Dict[str, Any]:
        """Create the ledger schema, tables and views."""
        results: Dict[str, Any] = {
            "schema": self.schema_name,
            "tables_created": [],
            "views_created": [],
            "errors": [],
        }

        try:
            await self.pool.execute(f"CREATE SCHEMA IF NOT EXISTS {quote_ident(self.schema_name)}")
        except Exception as e:
            logger.error(f"Failed to create ledger schema {self.schema_name}: {e}")
            raise SchemaError(f"Failed to create ledger schema: {e}", cause=e) from e

        for table_name, statements in self.required_tables.items():
            try:
                await self._run(statements)
                results["tables_created"].append(f"{self.schema_name}.{table_name}")
            except Exception as e:
                error_msg = f"Failed to create table {table_name}: {e}"
                logger.error(error_msg)
                results["errors"].append(error_msg)

        for view_name, statements in self.views.items():
            try:
                await self._run(statements)
                results["views_created"].append(f"{self.schema_name}.{view_name}")
            except Exception as e:
                error_msg = f"Failed to create view {view_name}: {e}"
                logger.error(error_msg)
                results["errors"].append(error_msg)

        logger.info(f"Ledger schema setup completed: {len(results['errors'])} errors")
        return results

    async def check(self) -> Dict[str, Any]:
        """Report which ledger tables exist."""
        query = """
            SELECT c.relname
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = $1 AND c.relkind IN ('r', 'p', 'v')
        """
        try:
            rows = await self.pool.fetch(query, self.schema_name)
        except Exception as e:
            logger.error(f"Ledger schema check failed: {e}")
            return {"error": str(e), "is_healthy": False}

        present = {row["relname"] for row in rows}
        tables = {name: name in present for name in self.required_tables}
        views = {name: name in present for name in self.views}
        return {
            "tables_exist": tables,
            "views_exist": views,
            "missing_components": [f"table:{n}" for n, ok in tables.items() if not ok]
            + [f"view:{n}" for n, ok in views.items() if not ok],
            "is_healthy": all(tables.values()),
        }

    async def _run(self, statements: List[str]) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for statement in statements:
                    await conn.execute(statement)

    def _get_operations_ddl(self) -> List[str]:
        table = self._name("operations")
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                operation_id BIGSERIAL PRIMARY KEY,
                operation_type VARCHAR(64) NOT NULL,
                target_object TEXT NOT NULL,
                target_kind VARCHAR(32) NOT NULL,
                status VARCHAR(32) NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'running', 'completed',
                                      'partial_success', 'failed', 'cancelled')),
                phase VARCHAR(64),
                started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                ended_at TIMESTAMPTZ,
                duration_ms DOUBLE PRECISION,
                rows_processed BIGINT NOT NULL DEFAULT 0,
                objects_affected INTEGER NOT NULL DEFAULT 0,
                error_code VARCHAR(64),
                error_message TEXT,
                context JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS operations_active_target_idx
            ON {table} (target_object)
            WHERE status IN ('pending', 'running')
            """,
            f"CREATE INDEX IF NOT EXISTS operations_started_at_idx ON {table} (started_at)",
            f"CREATE INDEX IF NOT EXISTS operations_type_status_idx ON {table} (operation_type, status)",
        ]

    def _get_operation_events_ddl(self) -> List[str]:
        table = self._name("operation_events")
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                event_id BIGSERIAL PRIMARY KEY,
                operation_id BIGINT NOT NULL
                    REFERENCES {self._name("operations")} (operation_id) ON DELETE CASCADE,
                event_type VARCHAR(16) NOT NULL,
                status VARCHAR(32) NOT NULL,
                phase VARCHAR(64),
                rows_processed BIGINT,
                message TEXT,
                context JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,
            f"CREATE INDEX IF NOT EXISTS operation_events_operation_idx ON {table} (operation_id, event_id)",
        ]

    def _get_active_operations_view_ddl(self) -> List[str]:
        return [
            f"""
            CREATE OR REPLACE VIEW {self._name("active_operations")} AS
            SELECT operation_id, operation_type, target_object, status, phase,
                   rows_processed, started_at, updated_at, cancel_requested,
                   EXTRACT(EPOCH FROM (NOW() - started_at)) AS running_seconds
            FROM {self._name("operations")}
            WHERE status IN ('pending', 'running')
            """
        ]

    def _get_operation_performance_view_ddl(self) -> List[str]:
        return [
            f"""
            CREATE OR REPLACE VIEW {self._name("operation_performance")} AS
            SELECT target_object, operation_type,
                   COUNT(*) AS total,
                   COUNT(*) FILTER (WHERE status = 'completed') AS completed,
                   COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                   AVG(duration_ms) AS avg_duration_ms,
                   MAX(duration_ms) AS max_duration_ms,
                   SUM(rows_processed) AS total_rows,
                   MAX(started_at) AS last_run_at
            FROM {self._name("operations")}
            GROUP BY target_object, operation_type
            """
        ]
