"""
Operation ledger records.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


class OperationStatus(str, Enum):
    """Lifecycle status of an operation."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        OperationStatus.COMPLETED,
        OperationStatus.PARTIAL_SUCCESS,
        OperationStatus.FAILED,
        OperationStatus.CANCELLED,
    }
)


class OperationType(str, Enum):
    """Kinds of recorded operations."""

    MOVE_TABLE = "move_table"
    MOVE_PARTITION = "move_partition"
    MOVE_SUBPARTITION = "move_subpartition"
    MIGRATE_TABLE = "migrate_table"
    CONVERT_SUBPARTITIONS = "convert_subpartitions"
    CONVERT_TO_PARTITIONED = "convert_to_partitioned"
    ADD_PARTITION = "add_partition"
    ATTACH_PARTITION = "attach_partition"
    DETACH_PARTITION = "detach_partition"
    DROP_PARTITION = "drop_partition"
    TRUNCATE_PARTITION = "truncate_partition"
    DROP_OLD_PARTITIONS = "drop_old_partitions"
    REMOVE_COLUMNS = "remove_columns"
    EXECUTE_SCRIPT = "execute_script"


class TargetKind(str, Enum):
    TABLE = "table"
    PARTITION = "partition"
    SCRIPT = "script"


class EventType(str, Enum):
    START = "start"
    ADVANCE = "advance"
    FINISH = "finish"


def _decode_context(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value) if value else {}
    return dict(value)


@dataclass
class OperationRecord:
    """One operation as stored in the ledger."""

    operation_id: int
    operation_type: OperationType
    target_object: str
    target_kind: TargetKind
    status: OperationStatus
    started_at: datetime
    phase: Optional[str] = None
    ended_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    rows_processed: int = 0
    objects_affected: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    cancel_requested: bool = False
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "OperationRecord":
        """Build from a database row or a plain mapping."""
        duration = row.get("duration_ms")
        return cls(
            operation_id=int(row["operation_id"]),
            operation_type=OperationType(row["operation_type"]),
            target_object=row["target_object"],
            target_kind=TargetKind(row["target_kind"]),
            status=OperationStatus(row["status"]),
            started_at=row["started_at"],
            phase=row.get("phase"),
            ended_at=row.get("ended_at"),
            duration_ms=float(duration) if duration is not None else None,
            rows_processed=int(row.get("rows_processed") or 0),
            objects_affected=int(row.get("objects_affected") or 0),
            error_code=row.get("error_code"),
            error_message=row.get("error_message"),
            context=_decode_context(row.get("context")),
            cancel_requested=bool(row.get("cancel_requested")),
            updated_at=row.get("updated_at"),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def rows_per_second(self) -> Optional[float]:
        if not self.duration_ms or not self.rows_processed:
            return None
        return self.rows_processed / (self.duration_ms / 1000)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["operation_type"] = self.operation_type.value
        data["target_kind"] = self.target_kind.value
        data["status"] = self.status.value
        for key in ("started_at", "ended_at", "updated_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class OperationEvent:
    """Journal entry written for every ledger write."""

    operation_id: int
    event_type: EventType
    status: OperationStatus
    created_at: datetime
    phase: Optional[str] = None
    rows_processed: Optional[int] = None
    message: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    event_id: Optional[int] = None

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "OperationEvent":
        return cls(
            event_id=row.get("event_id"),
            operation_id=int(row["operation_id"]),
            event_type=EventType(row["event_type"]),
            status=OperationStatus(row["status"]),
            created_at=row["created_at"],
            phase=row.get("phase"),
            rows_processed=row.get("rows_processed"),
            message=row.get("message"),
            context=_decode_context(row.get("context")),
        )


@dataclass
class PerformanceSummary:
    """Aggregates over the operations of one target and type."""

    target_object: str
    operation_type: OperationType
    total: int = 0
    completed: int = 0
    partial: int = 0
    failed: int = 0
    cancelled: int = 0
    avg_duration_ms: Optional[float] = None
    max_duration_ms: Optional[float] = None
    total_rows: int = 0
    avg_rows_per_second: Optional[float] = None
    last_run_at: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        finished = self.completed + self.partial + self.failed + self.cancelled
        return self.completed / finished if finished else 0.0


@dataclass
class ErrorSummary:
    """Failures grouped by error code and operation type."""

    error_code: str
    operation_type: OperationType
    occurrences: int
    last_seen_at: Optional[datetime]
    last_message: Optional[str]
    targets: List[str] = field(default_factory=list)


def summarize_performance(records: List[OperationRecord]) -> List[PerformanceSummary]:
    """Group records by (target, type) and aggregate them."""
    groups: Dict[tuple, List[OperationRecord]] = {}
    for record in records:
        groups.setdefault((record.target_object, record.operation_type), []).append(record)

    summaries = []
    for (target, operation_type), items in sorted(groups.items(), key=lambda g: (g[0][0], g[0][1].value)):
        durations = [r.duration_ms for r in items if r.duration_ms is not None]
        rates = [r.rows_per_second for r in items if r.rows_per_second is not None]
        summaries.append(
            PerformanceSummary(
                target_object=target,
                operation_type=operation_type,
                total=len(items),
                completed=sum(1 for r in items if r.status == OperationStatus.COMPLETED),
                partial=sum(1 for r in items if r.status == OperationStatus.PARTIAL_SUCCESS),
                failed=sum(1 for r in items if r.status == OperationStatus.FAILED),
                cancelled=sum(1 for r in items if r.status == OperationStatus.CANCELLED),
                avg_duration_ms=sum(durations) / len(durations) if durations else None,
                max_duration_ms=max(durations) if durations else None,
                total_rows=sum(r.rows_processed for r in items),
                avg_rows_per_second=sum(rates) / len(rates) if rates else None,
                last_run_at=max(r.started_at for r in items),
            )
        )
    return summaries


def summarize_errors(records: List[OperationRecord]) -> List[ErrorSummary]:
    """Group failed and partially failed records by error code."""
    groups: Dict[tuple, List[OperationRecord]] = {}
    for record in records:
        if record.status not in (OperationStatus.FAILED, OperationStatus.PARTIAL_SUCCESS):
            continue
        code = record.error_code or "UNKNOWN"
        groups.setdefault((code, record.operation_type), []).append(record)

    summaries = []
    for (code, operation_type), items in groups.items():
        latest = max(items, key=lambda r: r.ended_at or r.started_at)
        targets = sorted({r.target_object for r in items})
        summaries.append(
            ErrorSummary(
                error_code=code,
                operation_type=operation_type,
                occurrences=len(items),
                last_seen_at=latest.ended_at or latest.started_at,
                last_message=latest.error_message,
                targets=targets,
            )
        )
    summaries.sort(key=lambda s: (-s.occurrences, s.error_code))
    return summaries
