"""
Workflow state machines.

Each workflow walks a fixed path of states. Every non-terminal state has
one success transition (the next state on the path, or ``COMPLETED``)
and one failure transition (``FAILED``, or ``PARTIAL_SUCCESS`` for
states that run after the structural change is already in place).
``FAILED`` and ``CANCELLED`` are also reachable from any non-terminal
state as interrupts, for timeouts and cooperative cancellation.
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set

from ..exceptions import StateTransitionError
from ..ledger.model import OperationStatus


class WorkflowState(str, Enum):
    """States used by evolution workflows."""

    INITIATED = "INITIATED"
    PREFLIGHT = "PREFLIGHT"

    # move
    EXECUTING = "EXECUTING"
    INDEX_REBUILD = "INDEX_REBUILD"
    STATS_REFRESH = "STATS_REFRESH"

    # migrate-and-rename
    CREATE_TARGET = "CREATE_TARGET"
    COPY_DATA = "COPY_DATA"
    VALIDATE_ROWCOUNTS = "VALIDATE_ROWCOUNTS"
    SYNC_DELTA = "SYNC_DELTA"
    RENAME_ATOMIC = "RENAME_ATOMIC"
    CLEANUP = "CLEANUP"

    # column removal
    SNAPSHOT_METADATA = "SNAPSHOT_METADATA"
    DISABLE_DEPENDENT_CONSTRAINTS = "DISABLE_DEPENDENT_CONSTRAINTS"
    MARK_COLUMN_UNUSED = "MARK_COLUMN_UNUSED"
    BATCHED_PHYSICAL_DROP = "BATCHED_PHYSICAL_DROP"
    REBUILD_DEPENDENT_INDEXES = "REBUILD_DEPENDENT_INDEXES"
    RE_ENABLE_CONSTRAINTS = "RE_ENABLE_CONSTRAINTS"

    # online subpartition conversion
    PLAN = "PLAN"
    EXECUTE_STEPS = "EXECUTE_STEPS"

    COMPLETED = "COMPLETED"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[WorkflowState] = frozenset(
    {
        WorkflowState.COMPLETED,
        WorkflowState.PARTIAL_SUCCESS,
        WorkflowState.FAILED,
        WorkflowState.CANCELLED,
    }
)

INTERRUPTS: FrozenSet[WorkflowState] = frozenset({WorkflowState.FAILED, WorkflowState.CANCELLED})

_PENDING_STATES = frozenset({WorkflowState.INITIATED, WorkflowState.PREFLIGHT})

_TERMINAL_STATUS = {
    WorkflowState.COMPLETED: OperationStatus.COMPLETED,
    WorkflowState.PARTIAL_SUCCESS: OperationStatus.PARTIAL_SUCCESS,
    WorkflowState.FAILED: OperationStatus.FAILED,
    WorkflowState.CANCELLED: OperationStatus.CANCELLED,
}


class WorkflowMachine:
    """Transition table of one workflow type."""

    def __init__(
        self,
        name: str,
        path: Sequence[WorkflowState],
        partial_states: Iterable[WorkflowState] = (),
    ):
        self.name = name
        self.path: List[WorkflowState] = list(path)
        self.partial_states: Set[WorkflowState] = set(partial_states)
        self.success: Dict[WorkflowState, WorkflowState] = {}
        self.failure: Dict[WorkflowState, WorkflowState] = {}

        for i, state in enumerate(self.path):
            nxt = self.path[i + 1] if i + 1 < len(self.path) else WorkflowState.COMPLETED
            self.success[state] = nxt
            self.failure[state] = (
                WorkflowState.PARTIAL_SUCCESS if state in self.partial_states else WorkflowState.FAILED
            )
        self._check()

    def _check(self) -> None:
        if len(set(self.path)) != len(self.path):
            raise ValueError(f"{self.name}: a state appears twice on the path")
        if any(state.is_terminal for state in self.path):
            raise ValueError(f"{self.name}: terminal states cannot be on the path")
        if not self.partial_states <= set(self.path):
            raise ValueError(f"{self.name}: partial states must be on the path")

        targets = set(self.success.values())
        initial = [s for s in self.path if s not in targets]
        if len(initial) != 1:
            raise ValueError(f"{self.name}: expected exactly one initial state, found {len(initial)}")
        for state in self.path:
            if state not in self.success or state not in self.failure:
                raise ValueError(f"{self.name}: {state.value} lacks a success or failure transition")
        if self.path[0] in self.partial_states:
            raise ValueError(f"{self.name}: the initial state cannot end in partial success")

    @property
    def initial(self) -> WorkflowState:
        return self.path[0]

    @property
    def states(self) -> List[WorkflowState]:
        return self.path + sorted(TERMINAL_STATES, key=lambda s: s.value)

    def can_transition(self, current: WorkflowState, new: WorkflowState) -> bool:
        if current.is_terminal:
            return False
        if new in INTERRUPTS:
            return True
        return new in (self.success.get(current), self.failure.get(current))

    def validate(self, current: WorkflowState, new: WorkflowState, operation_id: Optional[int] = None) -> None:
        if not self.can_transition(current, new):
            raise StateTransitionError(
                f"{self.name}: {current.value} -> {new.value} is not a valid transition",
                operation_id,
            )

    def remaining(self, current: WorkflowState) -> List[WorkflowState]:
        """Path states after ``current``, or from ``current`` when it must be re-run."""
        if current not in self.path:
            raise StateTransitionError(f"{self.name}: {current.value} is not a state of this workflow")
        return self.path[self.path.index(current):]

    @staticmethod
    def ledger_status(state: WorkflowState) -> OperationStatus:
        """Ledger status recorded while in ``state``."""
        if state in _TERMINAL_STATUS:
            return _TERMINAL_STATUS[state]
        if state in _PENDING_STATES:
            return OperationStatus.PENDING
        return OperationStatus.RUNNING


MOVE_MACHINE = WorkflowMachine(
    "move",
    [
        WorkflowState.INITIATED,
        WorkflowState.PREFLIGHT,
        WorkflowState.EXECUTING,
        WorkflowState.INDEX_REBUILD,
        WorkflowState.STATS_REFRESH,
    ],
    partial_states=[WorkflowState.INDEX_REBUILD, WorkflowState.STATS_REFRESH],
)

MIGRATE_MACHINE = WorkflowMachine(
    "migrate",
    [
        WorkflowState.INITIATED,
        WorkflowState.PREFLIGHT,
        WorkflowState.CREATE_TARGET,
        WorkflowState.COPY_DATA,
        WorkflowState.VALIDATE_ROWCOUNTS,
        WorkflowState.SYNC_DELTA,
        WorkflowState.RENAME_ATOMIC,
        WorkflowState.CLEANUP,
    ],
    partial_states=[WorkflowState.CLEANUP],
)

COLUMN_REMOVAL_MACHINE = WorkflowMachine(
    "remove-columns",
    [
        WorkflowState.INITIATED,
        WorkflowState.PREFLIGHT,
        WorkflowState.SNAPSHOT_METADATA,
        WorkflowState.DISABLE_DEPENDENT_CONSTRAINTS,
        WorkflowState.MARK_COLUMN_UNUSED,
        WorkflowState.BATCHED_PHYSICAL_DROP,
        WorkflowState.REBUILD_DEPENDENT_INDEXES,
        WorkflowState.RE_ENABLE_CONSTRAINTS,
    ],
    partial_states=[
        WorkflowState.BATCHED_PHYSICAL_DROP,
        WorkflowState.REBUILD_DEPENDENT_INDEXES,
        WorkflowState.RE_ENABLE_CONSTRAINTS,
    ],
)

ONLINE_CONVERSION_MACHINE = WorkflowMachine(
    "convert-online",
    [
        WorkflowState.INITIATED,
        WorkflowState.PREFLIGHT,
        WorkflowState.PLAN,
        WorkflowState.EXECUTE_STEPS,
        WorkflowState.STATS_REFRESH,
    ],
    partial_states=[WorkflowState.STATS_REFRESH],
)

PARTITION_MAINTENANCE_MACHINE = WorkflowMachine(
    "partition-maintenance",
    [
        WorkflowState.INITIATED,
        WorkflowState.PREFLIGHT,
        WorkflowState.PLAN,
        WorkflowState.EXECUTE_STEPS,
        WorkflowState.STATS_REFRESH,
    ],
    partial_states=[WorkflowState.STATS_REFRESH],
)
