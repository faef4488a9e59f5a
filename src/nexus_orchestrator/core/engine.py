"""Main engine implementation."""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from nexus_orchestrator.core.config import EngineConfig
from nexus_orchestrator.core.errors import InvalidResumeStateError, UnknownWorkflowError
from nexus_orchestrator.orchestrator.workflow.catalog import WorkflowCatalog
from nexus_orchestrator.orchestrator.workflow.definitions import WorkflowDefinition
from nexus_orchestrator.orchestrator.workflow.executor import (
    ExecutionOrchestrator,
    ExecutionOutcome,
)
from nexus_orchestrator.orchestrator.workflow.matcher import (
    ClassifiedTask,
    MatchResult,
    TaskClassifier,
    WorkflowMatcher,
)
from nexus_orchestrator.orchestrator.workflow.models import (
    HistoryEntry,
    ResumeStrategy,
    WorkflowRun,
)
from nexus_orchestrator.orchestrator.workflow.providers import ProviderRegistry
from nexus_orchestrator.orchestrator.workflow.state_machine import RunStatus
from nexus_orchestrator.state.store import FileStateStore, StateStore

logger = logging.getLogger(__name__)


def load_provider_factory(spec: str) -> ProviderRegistry:
    """Build a registry from a ``"package.module:callable"`` reference."""

    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Provider factory must look like 'module:callable', got {spec!r}")
    factory: Callable[[], ProviderRegistry] = getattr(importlib.import_module(module_name), attr)
    registry = factory()
    if not isinstance(registry, ProviderRegistry):
        raise TypeError(f"Provider factory {spec!r} did not return a ProviderRegistry")
    return registry


class WorkflowEngine:
    """Facade tying the catalog, matcher, state store and orchestrator together.

    The engine resolves providers once at construction and owns exactly one
    state store, so at most one run is current per engine.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        providers: ProviderRegistry | None = None,
        store: StateStore | None = None,
        classifier: TaskClassifier | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Configuration object. If None, loads from environment.
            providers: Capability providers. If None, built from
                ``config.execution.provider_factory`` (or left empty).
            store: State store. If None, a file store under ``config.state.storage_path``.
            classifier: Optional task classifier used by :meth:`recommend_text`.
        """
        self.config = config or EngineConfig()

        if providers is None:
            factory = self.config.execution.provider_factory
            providers = load_provider_factory(factory) if factory else ProviderRegistry()
        self.providers = providers

        self.store: StateStore = store or FileStateStore(
            self.config.state.storage_path, backup_count=self.config.state.backup_count
        )
        self.catalog = WorkflowCatalog(self.config.catalog.workflows_path)
        self.matcher = WorkflowMatcher(config=self.config.matcher, providers=self.providers)
        self.orchestrator = ExecutionOrchestrator(
            store=self.store, providers=self.providers, config=self.config.execution
        )
        self.classifier = classifier

        logger.info(
            "Workflow engine initialized",
            extra={
                "workflows_path": str(self.config.catalog.workflows_path),
                "providers": self.providers.provider_ids,
            },
        )

    def workflows(self) -> list[WorkflowDefinition]:
        return self.catalog.load_all()

    def workflow(self, name: str) -> WorkflowDefinition:
        return self.catalog.get(name)

    def recommend(self, task: ClassifiedTask) -> MatchResult:
        return self.matcher.match(task, self.catalog.load_all(), self.store.read_history())

    def recommend_text(self, task_text: str) -> MatchResult:
        if self.classifier is None:
            raise RuntimeError("No task classifier configured; pass a ClassifiedTask instead")
        return self.recommend(self.classifier.classify(task_text))

    def start(
        self,
        task_description: str,
        *,
        task: ClassifiedTask | None = None,
        workflow_name: str | None = None,
    ) -> ExecutionOutcome:
        """Start a run, either of a named workflow or of the best match for ``task``.

        Args:
            task_description: Free-form task the run works on.
            task: Pre-classified task used for matching when no name is given.
            workflow_name: Workflow to run; skips matching.

        Returns:
            The execution outcome of the new run.

        Raises:
            ValueError: Neither a workflow name, a task nor a classifier is available.
            NoWorkflowMatchError: No workflow reaches the confidence threshold.
        """

        if workflow_name is None:
            if task is None:
                if self.classifier is None:
                    raise ValueError("Either workflow_name or a classified task is required")
                task = self.classifier.classify(task_description)
            workflow_name = self.recommend(task).recommendation.workflow_name

        definition = self.catalog.get(workflow_name)
        return self.orchestrator.start(definition, task_description=task_description)

    def resume(
        self, strategy: ResumeStrategy, *, checkpoint_id: str | None = None
    ) -> ExecutionOutcome:
        """Resume the current run with its workflow's current definition.

        Args:
            strategy: Resume strategy.
            checkpoint_id: Checkpoint for ``FROM_CHECKPOINT``.

        Returns:
            The execution outcome.
        """
        run = self.store.load()
        if run is None:
            raise InvalidResumeStateError("There is no run to resume")
        definition = self._definition_for(run)
        return self.orchestrator.resume(definition, strategy, checkpoint_id=checkpoint_id, run=run)

    def rollback(self) -> WorkflowRun:
        return self.orchestrator.rollback()

    def cancel(self) -> None:
        self.orchestrator.cancel()

    def status(self) -> WorkflowRun | None:
        return self.orchestrator.current_run()

    def history(
        self,
        *,
        workflow_name: str | None = None,
        status: RunStatus | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[HistoryEntry]:
        return self.store.query_history(
            workflow_name=workflow_name, status=status, since=since, until=until, limit=limit
        )

    def prune_history(self, days: int | None = None) -> int:
        """Drop history older than ``days`` (the configured retention by default).

        Returns:
            Number of entries removed.
        """
        retention = days if days is not None else self.config.state.history_retention_days
        return self.store.prune_history(timedelta(days=retention))

    def _definition_for(self, run: WorkflowRun) -> WorkflowDefinition:
        try:
            return self.catalog.get(run.workflow_name)
        except UnknownWorkflowError:
            logger.error(
                "Workflow of the current run is no longer in the catalog",
                extra={"run_id": run.id, "workflow": run.workflow_name},
            )
            raise
