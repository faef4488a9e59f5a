"""Unit tests for workflow matching and scoring."""

from __future__ import annotations

import pytest

from nexus_orchestrator.core.config import MatcherConfig
from nexus_orchestrator.core.errors import NoWorkflowMatchError
from nexus_orchestrator.orchestrator.workflow.definitions import ComplexityTier
from nexus_orchestrator.orchestrator.workflow.matcher import (
    ClassifiedTask,
    WorkflowMatcher,
    keyword_overlap,
    similar_history,
)
from nexus_orchestrator.orchestrator.workflow.models import HistoryEntry
from nexus_orchestrator.orchestrator.workflow.providers import CallableProvider, ProviderRegistry
from nexus_orchestrator.orchestrator.workflow.state_machine import RunStatus


def _history(workflow_name: str, task: str) -> HistoryEntry:
    return HistoryEntry(
        id=f"{workflow_name}-{task}",
        workflow_name=workflow_name,
        task_description=task,
        status=RunStatus.COMPLETED,
        duration_ms=10,
        phases_completed=1,
        phases_failed=0,
        phases_skipped=0,
    )


@pytest.fixture
def catalog(make_definition):
    return [
        make_definition(
            "hotfix", intended_for=["hotfix"], complexity="small", keywords=["hotfix", "urgent"]
        ),
        make_definition(
            "bugfix", intended_for=["bugfix"], complexity="small", keywords=["fix", "bug"]
        ),
        make_definition(
            "feature", intended_for=["feature"], complexity="large", keywords=["feature"]
        ),
    ]


def test_bugfix_task_picks_bugfix_workflow(catalog) -> None:
    task = ClassifiedTask(intent_label="bugfix", complexity_tier="small", keywords=["fix", "bug"])

    result = WorkflowMatcher().match(task, catalog)

    assert result.recommendation.workflow_name == "bugfix"
    assert result.recommendation.score >= 0.75
    assert [s.workflow_name for s in result.alternatives] == ["hotfix", "feature"]
    hotfix = result.alternatives[0]
    assert hotfix.breakdown.intent == 0.0
    assert hotfix.score < result.recommendation.score


def test_score_breakdown_adds_up(make_definition) -> None:
    workflow = make_definition(
        "bugfix", intended_for=["bugfix"], complexity="medium", keywords=["fix", "bug"], duration=60
    )
    task = ClassifiedTask(
        intent_label="BugFix",
        complexity_tier=ComplexityTier.SMALL,
        keywords=["fix", "crash", "login", "bug"],
        estimated_duration_minutes=150,
    )

    score = WorkflowMatcher().score(task, workflow)

    assert score.breakdown.intent == pytest.approx(0.40)
    assert score.breakdown.complexity == pytest.approx(0.10)  # adjacent tier
    assert score.breakdown.keywords == pytest.approx(0.15 * 2 / 4)
    assert score.breakdown.duration == pytest.approx(0.10 * (1 - 90 / 180))
    assert score.breakdown.history == pytest.approx(0.10 * 0.5)
    assert score.breakdown.availability == pytest.approx(0.05)
    assert score.score == pytest.approx(0.40 + 0.10 + 0.075 + 0.05 + 0.05 + 0.05)


def test_distant_complexity_and_duration_score_zero(make_definition) -> None:
    workflow = make_definition("feature", complexity="large", duration=400)
    task = ClassifiedTask(
        intent_label="feature", complexity_tier="small", estimated_duration_minutes=10
    )

    score = WorkflowMatcher().score(task, workflow)

    assert score.breakdown.complexity == 0.0
    assert score.breakdown.duration == 0.0


def test_score_is_capped_at_one(make_definition) -> None:
    config = MatcherConfig(intent_weight=1.0, complexity_weight=1.0)
    workflow = make_definition("bugfix", complexity="small")
    task = ClassifiedTask(intent_label="bugfix", complexity_tier="small")

    assert WorkflowMatcher(config=config).score(task, workflow).score == 1.0


def test_history_preference_counts_similar_runs(make_definition) -> None:
    bugfix = make_definition("bugfix")
    hotfix = make_definition("hotfix")
    history = [
        _history("hotfix", "Fix login crash"),
        _history("hotfix", "crash in checkout"),
        _history("bugfix", "login page typo"),
        _history("bugfix", "unrelated docs update"),
    ]
    task = ClassifiedTask(intent_label="bugfix", keywords=["crash", "login"])

    assert len(similar_history(task, history)) == 3
    matcher = WorkflowMatcher()
    assert matcher.score(task, hotfix, history).breakdown.history == pytest.approx(0.10 * 2 / 3)
    assert matcher.score(task, bugfix, history).breakdown.history == pytest.approx(0.10 * 1 / 3)


def test_history_preference_counts_each_run_once(make_definition) -> None:
    hotfix = make_definition("hotfix")
    resumed_run = _history("hotfix", "Fix login crash")
    history = [
        resumed_run.model_copy(update={"status": RunStatus.ERROR}),
        resumed_run.model_copy(update={"status": RunStatus.ERROR}),
        resumed_run,
        _history("bugfix", "login page typo"),
    ]
    task = ClassifiedTask(intent_label="bugfix", keywords=["crash", "login"])

    similar = similar_history(task, history)

    assert [(e.id, e.status) for e in similar] == [
        ("hotfix-Fix login crash", RunStatus.COMPLETED),
        ("bugfix-login page typo", RunStatus.COMPLETED),
    ]
    score = WorkflowMatcher().score(task, hotfix, history)
    assert score.breakdown.history == pytest.approx(0.10 * 1 / 2)


def test_availability_is_scaled_by_fraction_available(make_definition) -> None:
    registry = (
        ProviderRegistry()
        .register("tester", CallableProvider({}))
        .register("editor", CallableProvider({}, available=False))
        .register_service("tracker", True)
    )
    workflow = make_definition(
        "bugfix",
        required={
            "capabilities": ["tester", "editor", "reviewer"],
            "externalServices": ["tracker"],
        },
    )
    task = ClassifiedTask(intent_label="bugfix")

    score = WorkflowMatcher(providers=registry).score(task, workflow)

    assert score.breakdown.availability == pytest.approx(0.05 * 2 / 4)


def test_ties_are_broken_by_catalog_order(make_definition) -> None:
    catalog = [make_definition("first"), make_definition("second"), make_definition("third")]
    task = ClassifiedTask(intent_label="other")

    ranked = WorkflowMatcher(config=MatcherConfig(confidence_threshold=0.0)).rank(task, catalog)

    assert [s.workflow_name for s in ranked] == ["first", "second", "third"]
    assert len({s.score for s in ranked}) == 1


def test_matching_is_deterministic(catalog) -> None:
    task = ClassifiedTask(intent_label="bugfix", complexity_tier="small", keywords=["bug"])
    history = [_history("bugfix", "bug in parser"), _history("hotfix", "bug in api")]
    matcher = WorkflowMatcher()

    first = matcher.match(task, catalog, history)
    second = matcher.match(task, list(catalog), list(history))

    assert first.model_dump() == second.model_dump()


def test_alternatives_are_limited(make_definition) -> None:
    catalog = [make_definition(f"wf-{i}", intended_for=["bugfix"]) for i in range(6)]
    task = ClassifiedTask(intent_label="bugfix", complexity_tier="small")

    result = WorkflowMatcher().match(task, catalog)

    assert result.recommendation.workflow_name == "wf-0"
    assert [s.workflow_name for s in result.alternatives] == ["wf-1", "wf-2", "wf-3"]


def test_low_confidence_is_no_match(catalog) -> None:
    task = ClassifiedTask(intent_label="migration", complexity_tier="medium")

    with pytest.raises(NoWorkflowMatchError) as excinfo:
        WorkflowMatcher().match(task, catalog)

    assert excinfo.value.details["threshold"] == 0.5
    assert excinfo.value.details["candidates"]


def test_empty_catalog_is_no_match() -> None:
    with pytest.raises(NoWorkflowMatchError):
        WorkflowMatcher().match(ClassifiedTask(intent_label="bugfix"), [])


def test_keyword_overlap_edge_cases() -> None:
    assert keyword_overlap([], ["fix"]) == 0.0
    assert keyword_overlap(["fix"], []) == 0.0
    assert keyword_overlap(["Fix", "bug"], ["fix"]) == pytest.approx(0.5)


def test_classified_task_normalises_input() -> None:
    task = ClassifiedTask(intent_label=" BugFix ", keywords=["Fix", "fix", " ", "BUG"])

    assert task.intent_label == "bugfix"
    assert task.keywords == ["fix", "bug"]
