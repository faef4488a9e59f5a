"""Pydantic models for the REST server."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from nexus_orchestrator.orchestrator.workflow.definitions import ComplexityTier
from nexus_orchestrator.orchestrator.workflow.matcher import ClassifiedTask
from nexus_orchestrator.orchestrator.workflow.models import (
    DecisionRequest,
    ResumeStrategy,
    WorkflowRun,
)
from nexus_orchestrator.orchestrator.workflow.results import RunSummary


class ApiWorkflow(BaseModel):
    name: str
    description: str
    version: str
    intended_for: list[str]
    complexity_tier: ComplexityTier
    estimated_duration_minutes: float
    phases: list[str]
    required_capabilities: list[str]
    required_external_services: list[str]


class StartRunRequest(BaseModel):
    task_description: str = Field(min_length=1)
    workflow_name: str | None = None
    task: ClassifiedTask | None = None


class ResumeRequest(BaseModel):
    strategy: ResumeStrategy
    checkpoint_id: str | None = None


class RunResponse(BaseModel):
    run: WorkflowRun
    summary: RunSummary
    decision: DecisionRequest | None = None


class ErrorResponse(BaseModel):
    kind: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
