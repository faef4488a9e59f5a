"""Engine error kinds and exceptions.

Every failure the engine reports carries an :class:`ErrorKind` so callers (CLI,
REST server, embedding code) can branch on the kind instead of parsing messages.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum


class ErrorKind(str, Enum):
    INVALID_DEFINITION = "INVALID_DEFINITION"
    CIRCULAR_DEPENDENCY = "CIRCULAR_DEPENDENCY"
    MISSING_PHASE_DEPENDENCY = "MISSING_PHASE_DEPENDENCY"
    NO_WORKFLOW_MATCH = "NO_WORKFLOW_MATCH"
    PREREQUISITES_NOT_MET = "PREREQUISITES_NOT_MET"
    CAPABILITY_UNAVAILABLE = "CAPABILITY_UNAVAILABLE"
    PHASE_TIMEOUT = "PHASE_TIMEOUT"
    PHASE_ERROR = "PHASE_ERROR"
    STATE_IO_ERROR = "STATE_IO_ERROR"
    STATE_CORRUPTION = "STATE_CORRUPTION"
    INVALID_RESUME_STATE = "INVALID_RESUME_STATE"
    RUN_ALREADY_ACTIVE = "RUN_ALREADY_ACTIVE"
    NO_ACTIVE_RUN = "NO_ACTIVE_RUN"
    UNKNOWN_WORKFLOW = "UNKNOWN_WORKFLOW"
    RUN_CANCELLED = "RUN_CANCELLED"


class EngineError(Exception):
    """Base class for every error raised by the engine."""

    kind: ErrorKind = ErrorKind.PHASE_ERROR

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, object] = details or {}

    def to_json(self) -> dict[str, object]:
        return {"kind": self.kind.value, "message": self.message, "details": self.details}


class InvalidDefinitionError(EngineError):
    """A workflow document failed validation.

    ``violations`` holds every problem found, not just the first one.
    """

    kind = ErrorKind.INVALID_DEFINITION

    def __init__(self, source: str, violations: Sequence[str]) -> None:
        self.source = source
        self.violations = list(violations)
        summary = "; ".join(self.violations)
        super().__init__(
            f"Invalid workflow definition {source}: {summary}",
            details={"source": source, "violations": self.violations},
        )


class CircularDependencyError(EngineError):
    kind = ErrorKind.CIRCULAR_DEPENDENCY

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(
            f"Circular phase dependency: {' -> '.join(self.cycle)}",
            details={"cycle": self.cycle},
        )


class MissingPhaseDependencyError(EngineError):
    kind = ErrorKind.MISSING_PHASE_DEPENDENCY

    def __init__(self, phase_id: str, missing: str) -> None:
        self.phase_id = phase_id
        self.missing = missing
        super().__init__(
            f"Phase {phase_id!r} depends on unknown phase {missing!r}",
            details={"phase": phase_id, "missing": missing},
        )


class NoWorkflowMatchError(EngineError):
    kind = ErrorKind.NO_WORKFLOW_MATCH


class PrerequisitesNotMetError(EngineError):
    kind = ErrorKind.PREREQUISITES_NOT_MET

    def __init__(self, workflow_name: str, missing: Sequence[str]) -> None:
        self.missing = list(missing)
        super().__init__(
            f"Workflow {workflow_name!r} prerequisites not met: {', '.join(self.missing)}",
            details={"workflow": workflow_name, "missing": self.missing},
        )


class CapabilityUnavailableError(EngineError):
    kind = ErrorKind.CAPABILITY_UNAVAILABLE


class StateIOError(EngineError):
    kind = ErrorKind.STATE_IO_ERROR


class StateCorruptionError(EngineError):
    kind = ErrorKind.STATE_CORRUPTION


class InvalidResumeStateError(EngineError):
    kind = ErrorKind.INVALID_RESUME_STATE


class RunAlreadyActiveError(EngineError):
    kind = ErrorKind.RUN_ALREADY_ACTIVE


class NoActiveRunError(EngineError):
    kind = ErrorKind.NO_ACTIVE_RUN


class UnknownWorkflowError(EngineError):
    kind = ErrorKind.UNKNOWN_WORKFLOW
