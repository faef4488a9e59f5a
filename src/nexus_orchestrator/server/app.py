"""FastAPI app factory.

Endpoints are intentionally thin wrappers over :class:`WorkflowEngine`.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from nexus_orchestrator import __version__
from nexus_orchestrator.core.engine import WorkflowEngine
from nexus_orchestrator.core.errors import EngineError, ErrorKind, NoActiveRunError
from nexus_orchestrator.orchestrator.workflow.definitions import WorkflowDefinition
from nexus_orchestrator.orchestrator.workflow.executor import ExecutionOutcome
from nexus_orchestrator.orchestrator.workflow.matcher import ClassifiedTask, MatchResult
from nexus_orchestrator.orchestrator.workflow.models import HistoryEntry, WorkflowRun
from nexus_orchestrator.orchestrator.workflow.state_machine import RunStatus
from nexus_orchestrator.server.config import ServerSettings
from nexus_orchestrator.server.models import (
    ApiWorkflow,
    ResumeRequest,
    RunResponse,
    StartRunRequest,
)

logger = logging.getLogger(__name__)

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.INVALID_DEFINITION: 422,
    ErrorKind.CIRCULAR_DEPENDENCY: 422,
    ErrorKind.MISSING_PHASE_DEPENDENCY: 422,
    ErrorKind.NO_WORKFLOW_MATCH: 422,
    ErrorKind.UNKNOWN_WORKFLOW: 404,
    ErrorKind.NO_ACTIVE_RUN: 404,
    ErrorKind.RUN_ALREADY_ACTIVE: 409,
    ErrorKind.INVALID_RESUME_STATE: 409,
    ErrorKind.PREREQUISITES_NOT_MET: 409,
    ErrorKind.CAPABILITY_UNAVAILABLE: 409,
    ErrorKind.STATE_IO_ERROR: 500,
    ErrorKind.STATE_CORRUPTION: 500,
}


def _to_api_workflow(definition: WorkflowDefinition) -> ApiWorkflow:
    return ApiWorkflow(
        name=definition.name,
        description=definition.description,
        version=definition.version,
        intended_for=sorted(definition.intended_for),
        complexity_tier=definition.complexity_tier,
        estimated_duration_minutes=definition.estimated_duration_minutes,
        phases=[p.id for p in definition.all_phases],
        required_capabilities=sorted(definition.required_capabilities),
        required_external_services=sorted(definition.required_external_services),
    )


def _to_run_response(outcome: ExecutionOutcome) -> RunResponse:
    return RunResponse(run=outcome.run, summary=outcome.summary, decision=outcome.decision)


def create_app(engine: WorkflowEngine | None = None) -> FastAPI:
    settings = ServerSettings()
    engine = engine or WorkflowEngine()

    app = FastAPI(
        title="Nexus Orchestrator",
        version=__version__,
        description="REST API over the nexus-orchestrator workflow engine.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    # Expose settings and the engine for request handlers that want to read them.
    app.state.settings = settings
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EngineError)
    def engine_error(_request: Request, exc: EngineError) -> JSONResponse:
        status_code = STATUS_BY_KIND.get(exc.kind, 400)
        if status_code >= 500:
            logger.error("Engine error", extra={"kind": exc.kind.value, "error": exc.message})
        return JSONResponse(status_code=status_code, content=exc.to_json())

    @app.get("/api/v1/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.get("/api/v1/workflows", response_model=list[ApiWorkflow])
    def list_workflows() -> list[ApiWorkflow]:
        return [_to_api_workflow(d) for d in engine.workflows()]

    @app.post("/api/v1/match", response_model=MatchResult)
    def match(task: ClassifiedTask) -> MatchResult:
        return engine.recommend(task)

    @app.post("/api/v1/runs", response_model=RunResponse)
    def start_run(req: StartRunRequest) -> RunResponse:
        if req.workflow_name is None and req.task is None:
            raise HTTPException(status_code=422, detail="Either workflow_name or task is required")
        outcome = engine.start(req.task_description, task=req.task, workflow_name=req.workflow_name)
        return _to_run_response(outcome)

    @app.get("/api/v1/runs/current", response_model=WorkflowRun)
    def current_run() -> WorkflowRun:
        run = engine.status()
        if run is None:
            raise NoActiveRunError("There is no active run")
        return run

    @app.post("/api/v1/runs/current/resume", response_model=RunResponse)
    def resume_run(req: ResumeRequest) -> RunResponse:
        outcome = engine.resume(req.strategy, checkpoint_id=req.checkpoint_id)
        return _to_run_response(outcome)

    @app.post("/api/v1/runs/current/rollback", response_model=WorkflowRun)
    def rollback_run() -> WorkflowRun:
        return engine.rollback()

    @app.post("/api/v1/runs/current/cancel")
    def cancel_run() -> dict[str, Any]:
        run = engine.status()
        if run is None:
            raise NoActiveRunError("There is no active run")
        engine.cancel()
        return {"run_id": run.id, "cancel_requested": True}

    @app.get("/api/v1/history", response_model=list[HistoryEntry])
    def history(
        workflow: str | None = None,
        status: RunStatus | None = None,
        limit: int | None = None,
    ) -> list[HistoryEntry]:
        return engine.history(workflow_name=workflow, status=status, limit=limit)

    return app
