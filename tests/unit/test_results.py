from __future__ import annotations

from datetime import timedelta

from nexus_orchestrator.orchestrator.workflow.models import WorkflowRun
from nexus_orchestrator.orchestrator.workflow.results import merge_outputs, summarize_run


def test_merge_outputs_sums_numbers_and_concatenates_lists() -> None:
    merged = merge_outputs(
        [
            {"filesChanged": 2, "notes": ["a"], "status": "draft", "ok": True},
            None,
            "plain text",
            {"filesChanged": 1.5, "notes": ["b"], "status": "final", "ok": True},
        ]
    )

    assert merged == {
        "filesChanged": 3.5,
        "notes": ["a", "b"],
        "status": "final",
        "ok": True,
        "values": ["plain text"],
    }


def test_merge_outputs_of_nothing_is_empty() -> None:
    assert merge_outputs([]) == {}


def test_summarize_run_aggregates_in_phase_order() -> None:
    run = WorkflowRun(id="r", workflow_name="bugfix", task_description="t")
    run.metadata.total_phases = 3
    run.mark_completed(
        "fix",
        {
            "output": {"filesChanged": 2, "recommendations": ["rerun lint"], "label": "x"},
            "warnings": ["editor.apply skipped: external service 'tracker' unavailable"],
        },
    )
    run.mark_completed(
        "reproduce", {"output": {"testsRun": 4, "filesChanged": 1, "nextSteps": ["deploy"]}}
    )
    run.mark_skipped("docs", {"output": {}, "skipped": True, "warnings": ["docs skipped"]})
    run.end_time = run.start_time + timedelta(milliseconds=1500)

    summary = summarize_run(run, ["reproduce", "fix", "docs"])

    assert summary.phases_completed == 2
    assert summary.phases_skipped == 1
    assert summary.total_phases == 3
    assert summary.duration_ms == 1500
    assert summary.totals == {"testsRun": 4, "filesChanged": 3}
    assert summary.recommendations == ["rerun lint"]
    assert summary.next_steps == ["deploy"]
    assert summary.warnings == [
        "editor.apply skipped: external service 'tracker' unavailable",
        "docs skipped",
    ]


def test_summarize_run_defaults_to_result_order() -> None:
    run = WorkflowRun(id="r", workflow_name="bugfix")
    run.mark_completed("a", {"output": {"recommendations": ["first"]}})
    run.mark_completed("b", {"output": {"recommendations": ["second"]}})

    assert summarize_run(run).recommendations == ["first", "second"]
