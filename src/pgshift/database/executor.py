"""
Script execution against the target database.
"""

import logging
import re
import time
from typing import Any, List, Optional

from .connection import DRIVER_ERRORS, ConnectionPool, sqlstate
from ..exceptions import DatabaseConnectionError, ExecutionError
from ..ledger.model import OperationStatus, OperationType, TargetKind
from ..synthesis.steps import split_statements


logger = logging.getLogger(__name__)

_AUTOCOMMIT_ONLY = re.compile(
    r"^\s*(VACUUM\b"
    r"|REINDEX\b.*\bCONCURRENTLY\b"
    r"|CREATE\s+(UNIQUE\s+)?INDEX\s+CONCURRENTLY\b"
    r"|DROP\s+INDEX\s+CONCURRENTLY\b"
    r"|ALTER\s+TABLE\b.*\bDETACH\s+PARTITION\b.*\bCONCURRENTLY\b"
    r"|CREATE\s+DATABASE\b|DROP\s+DATABASE\b|ALTER\s+SYSTEM\b)",
    re.IGNORECASE | re.DOTALL,
)


def requires_autocommit(statement: str) -> bool:
    """True for statements PostgreSQL refuses inside a transaction block."""
    return bool(_AUTOCOMMIT_ONLY.match(statement))


class _Rollback(Exception):
    pass


class StatementExecutor:
    """Runs generated statement text and records it in the ledger."""

    def __init__(self, pool: ConnectionPool, ledger: Any):
        self.pool = pool
        self.ledger = ledger

    async def execute(self, text: str, target: str = "script") -> int:
        """Run every statement in ``text`` in order.

        Each statement commits on its own. Returns the id of the
        ``execute_script`` ledger operation; on failure the operation is
        recorded ``failed`` and ``ExecutionError`` carries its id.
        """
        statements = split_statements(text)
        operation_id = await self.ledger.start(
            OperationType.EXECUTE_SCRIPT,
            target,
            TargetKind.SCRIPT,
            phase="EXECUTING",
            context={"statements": len(statements)},
            status=OperationStatus.RUNNING,
        )

        start = time.time()
        executed = 0
        try:
            async with self.pool.acquire() as conn:
                for statement in statements:
                    await conn.execute(statement)
                    executed += 1
        except DRIVER_ERRORS + (DatabaseConnectionError,) as e:
            logger.error(f"Statement {executed + 1} of {len(statements)} failed: {e}")
            await self.ledger.finish(
                operation_id,
                OperationStatus.FAILED,
                objects_affected=executed,
                error_code=ExecutionError.error_code,
                error_message=str(e),
                context={"failed_statement": statements[executed][:500] if executed < len(statements) else None},
            )
            raise ExecutionError(
                f"Statement {executed + 1} failed: {e}",
                operation_id,
                {"sqlstate": sqlstate(e)},
                e,
            ) from e

        logger.info(
            f"Executed {executed} statement(s) in {(time.time() - start) * 1000:.1f}ms"
        )
        await self.ledger.finish(operation_id, OperationStatus.COMPLETED, objects_affected=executed)
        return operation_id

    async def find_errors(self, text: str) -> Optional[str]:
        """Run ``text`` in a transaction that is always rolled back.

        Returns the first error message, or None when every statement
        ran. Statements that cannot run in a transaction block are
        skipped.
        """
        statements = split_statements(text)
        error: Optional[str] = None
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    for statement in statements:
                        if requires_autocommit(statement):
                            logger.debug(f"Skipping non-transactional statement: {statement[:60]}")
                            continue
                        await conn.execute(statement)
                    raise _Rollback()
        except _Rollback:
            pass
        except DRIVER_ERRORS as e:
            error = str(e)
        return error

    async def validate_syntax(self, text: str) -> bool:
        error = await self.find_errors(text)
        if error:
            logger.warning(f"Script failed validation: {error}")
            return False
        return True

    @staticmethod
    def statements(text: str) -> List[str]:
        return split_statements(text)
