"""Unit tests for the engine facade."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from conftest import workflow_doc
from nexus_orchestrator.core.config import EngineConfig, ExecutionConfig
from nexus_orchestrator.core.engine import WorkflowEngine, load_provider_factory
from nexus_orchestrator.core.errors import (
    InvalidResumeStateError,
    NoWorkflowMatchError,
    UnknownWorkflowError,
)
from nexus_orchestrator.orchestrator.workflow.matcher import ClassifiedTask
from nexus_orchestrator.orchestrator.workflow.models import HistoryEntry, ResumeStrategy
from nexus_orchestrator.orchestrator.workflow.providers import (
    CallableProvider,
    InvocationResult,
    ProviderRegistry,
)
from nexus_orchestrator.orchestrator.workflow.state_machine import RunStatus
from nexus_orchestrator.state.store import FileStateStore


class KeywordClassifier:
    def classify(self, task_description: str) -> ClassifiedTask:
        words = task_description.lower().split()
        intent = "bugfix" if "fix" in words else "feature"
        return ClassifiedTask(intent_label=intent, complexity_tier="small", keywords=words)


@pytest.fixture
def catalog(write_workflow):
    write_workflow(
        "bugfix.yaml",
        workflow_doc("bugfix", intended_for=["bugfix"], keywords=["fix", "bug"]),
    )
    write_workflow(
        "feature.yaml",
        workflow_doc("feature", intended_for=["feature"], complexity="large", duration=240),
    )


@pytest.fixture
def engine(engine_config: EngineConfig, registry: ProviderRegistry, catalog) -> WorkflowEngine:
    return WorkflowEngine(engine_config, providers=registry)


def test_engine_builds_file_store_from_config(engine: WorkflowEngine, engine_config) -> None:
    assert isinstance(engine.store, FileStateStore)
    assert engine.store.storage_path == engine_config.state.storage_path
    assert [w.name for w in engine.workflows()] == ["bugfix", "feature"]
    assert engine.workflow("feature").complexity_tier.value == "large"


def test_start_named_workflow_completes(engine: WorkflowEngine) -> None:
    outcome = engine.start("Write release notes", workflow_name="feature")

    assert outcome.status == RunStatus.COMPLETED
    assert outcome.summary.totals == {"count": 1}
    assert engine.status() is None
    history = engine.history()
    assert [(e.workflow_name, e.status) for e in history] == [("feature", RunStatus.COMPLETED)]


def test_start_matches_classified_task(engine: WorkflowEngine) -> None:
    task = ClassifiedTask(intent_label="bugfix", complexity_tier="small", keywords=["fix"])

    outcome = engine.start("Fix login crash", task=task)

    assert outcome.run.workflow_name == "bugfix"


def test_start_needs_a_workflow_or_a_task(engine: WorkflowEngine) -> None:
    with pytest.raises(ValueError):
        engine.start("Something")


def test_start_unknown_workflow(engine: WorkflowEngine) -> None:
    with pytest.raises(UnknownWorkflowError):
        engine.start("t", workflow_name="migration")


def test_classifier_is_used_for_free_text(engine_config, registry, catalog) -> None:
    engine = WorkflowEngine(engine_config, providers=registry, classifier=KeywordClassifier())

    assert engine.recommend_text("fix the bug").recommendation.workflow_name == "bugfix"
    assert engine.start("fix the bug").run.workflow_name == "bugfix"


def test_recommend_text_requires_classifier(engine: WorkflowEngine) -> None:
    with pytest.raises(RuntimeError):
        engine.recommend_text("fix the bug")


def test_recommend_reports_no_match(engine: WorkflowEngine) -> None:
    with pytest.raises(NoWorkflowMatchError):
        engine.recommend(ClassifiedTask(intent_label="migration", complexity_tier="medium"))


def test_resume_without_run(engine: WorkflowEngine) -> None:
    with pytest.raises(InvalidResumeStateError):
        engine.resume(ResumeStrategy.RETRY_CURRENT)


def test_pause_and_resume_through_engine(engine_config, write_workflow, catalog) -> None:
    attempts = {"n": 0}

    def flaky(ctx):
        attempts["n"] += 1
        if attempts["n"] == 1:
            return InvocationResult.failure("first try fails")
        return {"count": 1}

    write_workflow(
        "review.yaml",
        workflow_doc("review", phases=[
            {"id": "check", "on_failure": "prompt", "hooks": [{"provider": "tool", "action": "do"}]}
        ]),
    )
    providers = ProviderRegistry().register("tool", CallableProvider({"do": flaky}))
    engine = WorkflowEngine(engine_config, providers=providers)

    paused = engine.start("Review", workflow_name="review")
    assert paused.status == RunStatus.PAUSED
    assert engine.status().id == paused.run.id

    # A fresh engine over the same state directory picks the run up.
    restarted = WorkflowEngine(engine_config, providers=providers)
    resumed = restarted.resume(ResumeStrategy.RETRY_CURRENT)

    assert resumed.status == RunStatus.COMPLETED
    assert resumed.run.id == paused.run.id
    assert restarted.status() is None


def test_resume_fails_when_workflow_left_catalog(engine_config, write_workflow) -> None:
    path = write_workflow(
        "gone.yaml",
        workflow_doc("gone", phases=[
            {"id": "work", "on_failure": "prompt", "hooks": [{"provider": "tool", "action": "do"}]}
        ]),
    )
    providers = ProviderRegistry().register(
        "tool", CallableProvider({"do": lambda ctx: InvocationResult.failure("no")})
    )
    engine = WorkflowEngine(engine_config, providers=providers)
    engine.start("t", workflow_name="gone")
    path.unlink()

    with pytest.raises(UnknownWorkflowError):
        engine.resume(ResumeStrategy.RETRY_CURRENT)


def test_rollback_through_engine(engine_config, write_workflow) -> None:
    write_workflow(
        "deploy.yaml",
        workflow_doc("deploy", phases=[
            {"id": "build", "hooks": [{"provider": "tool", "action": "ok"}]},
            {
                "id": "ship",
                "dependencies": ["build"],
                "hooks": [{"provider": "tool", "action": "fail"}],
            },
        ]),
    )
    providers = ProviderRegistry().register(
        "tool",
        CallableProvider({"ok": lambda ctx: {}, "fail": lambda ctx: InvocationResult.failure("x")}),
    )
    engine = WorkflowEngine(engine_config, providers=providers)
    assert engine.start("t", workflow_name="deploy").status == RunStatus.ERROR

    run = engine.rollback()

    assert run.status == RunStatus.ROLLBACK
    assert engine.status() is None
    assert [e.status for e in engine.history(workflow_name="deploy")] == [
        RunStatus.ERROR,
        RunStatus.ROLLBACK,
    ]
    assert [e.status for e in engine.history(status=RunStatus.ROLLBACK)] == [RunStatus.ROLLBACK]


def test_prune_history_uses_configured_retention(engine: WorkflowEngine) -> None:
    now = datetime.now(tz=UTC)
    for run_id, age in (("old", 200), ("mid", 60), ("new", 1)):
        engine.store.append_history(
            HistoryEntry(
                id=run_id,
                workflow_name="bugfix",
                task_description="t",
                status=RunStatus.COMPLETED,
                duration_ms=1,
                phases_completed=1,
                phases_failed=0,
                phases_skipped=0,
                timestamp=now - timedelta(days=age),
            )
        )

    assert engine.prune_history() == 1
    assert engine.prune_history(days=30) == 1
    assert [e.id for e in engine.history()] == ["new"]


def _write_factory_module(directory: Path) -> None:
    (directory / "engine_test_providers.py").write_text(
        "from nexus_orchestrator.orchestrator.workflow.providers import (\n"
        "    CallableProvider,\n"
        "    ProviderRegistry,\n"
        ")\n"
        "\n"
        "def build():\n"
        "    return ProviderRegistry().register('tool', CallableProvider({'do': lambda c: {}}))\n"
        "\n"
        "def not_a_registry():\n"
        "    return {}\n",
        encoding="utf-8",
    )


def test_load_provider_factory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_factory_module(tmp_path)
    monkeypatch.syspath_prepend(str(tmp_path))

    registry = load_provider_factory("engine_test_providers:build")
    assert registry.provider_ids == ["tool"]

    with pytest.raises(TypeError):
        load_provider_factory("engine_test_providers:not_a_registry")
    with pytest.raises(ValueError):
        load_provider_factory("engine_test_providers")
    with pytest.raises(AttributeError):
        load_provider_factory("engine_test_providers:missing")


def test_engine_uses_configured_provider_factory(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, engine_config: EngineConfig, catalog
) -> None:
    _write_factory_module(tmp_path)
    monkeypatch.syspath_prepend(str(tmp_path))
    config = engine_config.model_copy(
        update={"execution": ExecutionConfig(provider_factory="engine_test_providers:build")}
    )

    engine = WorkflowEngine(config)

    assert engine.providers.is_available("tool")
    assert engine.start("t", workflow_name="bugfix").status == RunStatus.COMPLETED
