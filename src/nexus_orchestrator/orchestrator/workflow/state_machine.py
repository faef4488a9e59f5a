from __future__ import annotations

from enum import Enum


class RunStatus(str, Enum):
    INITIALIZING = "initializing"
    EXECUTING = "executing"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    ROLLBACK = "rollback"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_resumable(self) -> bool:
        return self in RESUMABLE_STATUSES


TERMINAL_STATUSES: frozenset[RunStatus] = frozenset({RunStatus.COMPLETED, RunStatus.ROLLBACK})
RESUMABLE_STATUSES: frozenset[RunStatus] = frozenset({RunStatus.PAUSED, RunStatus.ERROR})

# PAUSED -> PAUSED and ERROR -> PAUSED happen when rolling back to a checkpoint.
ALLOWED_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.INITIALIZING: {RunStatus.EXECUTING, RunStatus.ERROR, RunStatus.ROLLBACK},
    RunStatus.EXECUTING: {
        RunStatus.PAUSED,
        RunStatus.COMPLETED,
        RunStatus.ERROR,
        RunStatus.ROLLBACK,
    },
    RunStatus.PAUSED: {RunStatus.EXECUTING, RunStatus.PAUSED, RunStatus.ROLLBACK},
    RunStatus.ERROR: {RunStatus.EXECUTING, RunStatus.PAUSED, RunStatus.ROLLBACK},
    RunStatus.COMPLETED: set(),
    RunStatus.ROLLBACK: set(),
}


class IllegalTransitionError(ValueError):
    pass


def check_transition(current: RunStatus, to: RunStatus) -> RunStatus:
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal transition: {current.value} -> {to.value}")
    return to
