"""
Exception classes for pgshift.
"""

from typing import Any, Dict, List, Optional, Sequence


class PgshiftError(Exception):
    """Base exception for all pgshift errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        result = self.message
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            result += f" [{details_str}]"
        if self.cause:
            result += f" (caused by: {self.cause})"
        return result


class ConfigurationError(PgshiftError):
    """Raised when there's an error in configuration."""

    pass


class ValidationError(PgshiftError):
    """Raised when a table descriptor is inconsistent.

    Carries every violation found, not just the first one.
    """

    def __init__(
        self,
        violations: Sequence[Any],
        message: Optional[str] = None,
    ) -> None:
        self.violations: List[Any] = list(violations)
        if message is None:
            count = len(self.violations)
            message = f"{count} descriptor violation{'s' if count != 1 else ''}"
            if self.violations:
                message += ": " + "; ".join(str(v) for v in self.violations)
        super().__init__(message)


class SynthesisError(PgshiftError):
    """Raised when statement text cannot be produced for a definition."""

    pass


class UnsafeExpressionError(SynthesisError):
    """Raised when a caller-supplied expression fails sanitization."""

    def __init__(self, expression: str, reason: str) -> None:
        super().__init__(f"Unsafe expression rejected: {reason}", {"expression": expression})
        self.expression = expression
        self.reason = reason


class DatabaseError(PgshiftError):
    """Raised when there's an error with database operations."""

    pass


class DatabaseConnectionError(DatabaseError):
    """Raised when there's an error establishing or maintaining database connections."""

    pass


class DatabaseConfigurationError(DatabaseError):
    """Raised when there's an error in database configuration."""

    pass


class SchemaError(DatabaseError):
    """Raised when schema introspection fails."""

    pass


class WorkflowError(PgshiftError):
    """Base class for errors raised by evolution workflows.

    ``operation_id`` names the ledger record under which the failure is
    recorded. It is ``None`` only when the failure happened before the
    ledger allocated an id.
    """

    error_code = "WORKFLOW_ERROR"

    def __init__(
        self,
        message: str,
        operation_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        details = dict(details or {})
        if operation_id is not None:
            details.setdefault("operation_id", operation_id)
        super().__init__(message, details, cause)
        self.operation_id = operation_id

    def with_operation(self, operation_id: int) -> "WorkflowError":
        """Attach the ledger operation id after the fact."""
        self.operation_id = operation_id
        self.details["operation_id"] = operation_id
        return self


class PreflightError(WorkflowError):
    """Raised when a feasibility check (space, capability) fails."""

    error_code = "PREFLIGHT_FAILED"


class ConcurrentOperationError(PreflightError):
    """Raised when another non-terminal operation already holds the target."""

    error_code = "CONCURRENT_OPERATION"

    def __init__(self, target: str, active_operation_id: Optional[int] = None) -> None:
        message = f"Target {target} already has an active operation"
        if active_operation_id is not None:
            message += f" ({active_operation_id})"
        super().__init__(message, details={"target": target})
        self.target = target
        self.active_operation_id = active_operation_id


class StateTransitionError(WorkflowError):
    """Raised when a workflow attempts a transition its machine does not allow."""

    error_code = "INVALID_TRANSITION"


class ExecutionError(WorkflowError):
    """Raised when a generated statement fails when run."""

    error_code = "EXECUTION_ERROR"


class OperationTimeoutError(ExecutionError):
    """Raised when an operation exceeds its configured timeout."""

    error_code = "TIMEOUT"

    def __init__(
        self,
        timeout_seconds: float,
        operation_id: Optional[int] = None,
        phase: Optional[str] = None,
    ) -> None:
        message = f"Operation timed out after {timeout_seconds}s"
        if phase:
            message += f" during {phase}"
        super().__init__(message, operation_id)
        self.timeout_seconds = timeout_seconds
        self.phase = phase


class PartialFailure(WorkflowError):
    """Raised when the structural change succeeded but a dependent step failed."""

    error_code = "PARTIAL_FAILURE"

    def __init__(
        self,
        message: str,
        operation_id: Optional[int] = None,
        failed_phase: Optional[str] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message, operation_id, {"failed_phase": failed_phase}, cause)
        self.failed_phase = failed_phase


class CancellationError(WorkflowError):
    """Raised when a cooperative cancellation request was honored."""

    error_code = "CANCELLED"

    def __init__(
        self,
        operation_id: Optional[int] = None,
        rows_processed: int = 0,
        phase: Optional[str] = None,
    ) -> None:
        message = "Operation cancelled"
        if phase:
            message += f" during {phase}"
        super().__init__(message, operation_id, {"rows_processed": rows_processed})
        self.rows_processed = rows_processed
        self.phase = phase


class LedgerError(PgshiftError):
    """Raised when the operation ledger cannot serve a request."""

    pass


class LedgerWriteError(LedgerError):
    """Raised by ledger stores when a write fails.

    The ledger itself swallows these for progress and completion writes.
    """

    pass


class LedgerUnavailableError(LedgerError):
    """Raised when the ledger cannot allocate an operation id."""

    pass
