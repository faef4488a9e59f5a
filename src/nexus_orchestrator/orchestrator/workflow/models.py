"""Persisted run state models.

These models are the on-disk schema of the state store: loading a document that
fails validation here (including the run invariants) is treated as corruption.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from nexus_orchestrator.core.errors import ErrorKind
from nexus_orchestrator.orchestrator.workflow.state_machine import RunStatus, check_transition


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class ResumeStrategy(str, Enum):
    RETRY_CURRENT = "retry-current"
    RETRY_PREVIOUS = "retry-previous"
    SKIP_CURRENT = "skip-current"
    FROM_CHECKPOINT = "from-checkpoint"


class Checkpoint(BaseModel):
    """Immutable snapshot used for rollback."""

    model_config = ConfigDict(frozen=True)

    id: str
    phase_id: str
    timestamp: datetime
    resource_snapshot: dict[str, Any] = Field(default_factory=dict)
    # Phases settled when the checkpoint was taken.
    completed_phases: list[str] = Field(default_factory=list)
    skipped_phases: list[str] = Field(default_factory=list)


class RunError(BaseModel):
    kind: ErrorKind
    message: str
    phase: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    recoverable: bool = True


class DecisionRequest(BaseModel):
    """A suspension point waiting for an explicit resume decision."""

    phase_id: str
    reason: str
    message: str
    options: list[ResumeStrategy] = Field(default_factory=list)


class RunMetadata(BaseModel):
    providers_used: list[str] = Field(default_factory=list)
    external_services_used: list[str] = Field(default_factory=list)
    total_phases: int = 0

    def record_provider(self, provider_id: str) -> None:
        if provider_id not in self.providers_used:
            self.providers_used.append(provider_id)

    def record_service(self, service_id: str) -> None:
        if service_id not in self.external_services_used:
            self.external_services_used.append(service_id)


class WorkflowRun(BaseModel):
    """The single active run of a workflow.

    Mutated only by the execution orchestrator. Status changes go through
    :meth:`transition` so illegal moves fail loudly.
    """

    id: str
    workflow_name: str
    workflow_file: str | None = None
    task_description: str = ""
    status: RunStatus = RunStatus.INITIALIZING
    current_phase_id: str | None = None
    start_time: datetime = Field(default_factory=utc_now)
    end_time: datetime | None = None

    completed_phases: list[str] = Field(default_factory=list)
    skipped_phases: list[str] = Field(default_factory=list)
    failed_phases: list[str] = Field(default_factory=list)
    results: dict[str, Any] = Field(default_factory=dict)
    error: RunError | None = None
    retry_counts: dict[str, int] = Field(default_factory=dict)
    checkpoints: list[Checkpoint] = Field(default_factory=list)
    pending_decision: DecisionRequest | None = None
    metadata: RunMetadata = Field(default_factory=RunMetadata)

    @model_validator(mode="after")
    def _check_invariants(self) -> WorkflowRun:
        problems = self.invariant_violations()
        if problems:
            raise ValueError("; ".join(problems))
        return self

    def invariant_violations(self) -> list[str]:
        problems: list[str] = []
        overlap = set(self.completed_phases) & set(self.failed_phases)
        if overlap:
            problems.append(f"phases both completed and failed: {sorted(overlap)}")
        if self.status == RunStatus.COMPLETED and self.end_time is None:
            problems.append("completed run has no end_time")
        if self.status == RunStatus.ERROR and self.error is None:
            problems.append("errored run has no error")
        if self.status == RunStatus.EXECUTING and not self.current_phase_id:
            problems.append("executing run has no current_phase_id")
        return problems

    def transition(self, to: RunStatus) -> None:
        self.status = check_transition(self.status, to)

    def mark_completed(self, phase_id: str, result: Any) -> None:
        if phase_id in self.failed_phases:
            self.failed_phases.remove(phase_id)
        if phase_id not in self.completed_phases:
            self.completed_phases.append(phase_id)
        self.results[phase_id] = result

    def mark_skipped(self, phase_id: str, result: Any) -> None:
        if phase_id in self.failed_phases:
            self.failed_phases.remove(phase_id)
        if phase_id not in self.skipped_phases:
            self.skipped_phases.append(phase_id)
        self.results[phase_id] = result

    def mark_failed(self, phase_id: str) -> None:
        if phase_id not in self.failed_phases and phase_id not in self.completed_phases:
            self.failed_phases.append(phase_id)

    def is_settled(self, phase_id: str) -> bool:
        return phase_id in self.completed_phases or phase_id in self.skipped_phases

    def duration_ms(self) -> int:
        end = self.end_time or utc_now()
        return max(0, int((end - self.start_time).total_seconds() * 1000))


class HistoryEntry(BaseModel):
    """One compact, append-only record per terminal outcome."""

    model_config = ConfigDict(frozen=True)

    id: str
    workflow_name: str
    task_description: str
    status: RunStatus
    duration_ms: int
    phases_completed: int
    phases_failed: int
    phases_skipped: int
    capabilities_used: list[str] = Field(default_factory=list)
    external_services_used: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)
    error: RunError | None = None

    @classmethod
    def from_run(cls, run: WorkflowRun) -> HistoryEntry:
        return cls(
            id=run.id,
            workflow_name=run.workflow_name,
            task_description=run.task_description,
            status=run.status,
            duration_ms=run.duration_ms(),
            phases_completed=len(run.completed_phases),
            phases_failed=len(run.failed_phases),
            phases_skipped=len(run.skipped_phases),
            capabilities_used=list(run.metadata.providers_used),
            external_services_used=list(run.metadata.external_services_used),
            error=run.error,
        )
