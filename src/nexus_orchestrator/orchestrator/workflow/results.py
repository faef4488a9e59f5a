"""Phase output merging and run result aggregation."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel, Field

from nexus_orchestrator.orchestrator.workflow.models import WorkflowRun

LIST_KEYS = ("recommendations", "nextSteps", "next_steps")


def _is_number(value: object) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def merge_outputs(outputs: Iterable[Any]) -> dict[str, Any]:
    """Merge invocation outputs of one phase into a single payload.

    Dict outputs are merged key by key: numbers are summed, lists concatenated,
    anything else is overwritten by the later invocation. Non-dict outputs are
    collected under ``values``.
    """

    merged: dict[str, Any] = {}
    values: list[Any] = []
    for output in outputs:
        if output is None:
            continue
        if not isinstance(output, Mapping):
            values.append(output)
            continue
        for key, value in output.items():
            existing = merged.get(key)
            if _is_number(existing) and _is_number(value):
                merged[key] = existing + value
            elif isinstance(existing, list) and isinstance(value, list):
                merged[key] = existing + value
            else:
                merged[key] = value
    if values:
        merged.setdefault("values", []).extend(values)
    return merged


class RunSummary(BaseModel):
    run_id: str
    workflow_name: str
    status: str
    phases_completed: int
    phases_skipped: int
    phases_failed: int
    total_phases: int
    duration_ms: int
    totals: dict[str, float] = Field(default_factory=dict)
    recommendations: list[Any] = Field(default_factory=list)
    next_steps: list[Any] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


def summarize_run(run: WorkflowRun, phase_order: Iterable[str] | None = None) -> RunSummary:
    """Aggregate phase outputs into one summary.

    Numeric top-level output fields are summed across phases; ``recommendations``
    and ``nextSteps`` lists are concatenated in phase order.
    """

    order = list(phase_order) if phase_order is not None else list(run.results)
    totals: dict[str, float] = {}
    recommendations: list[Any] = []
    next_steps: list[Any] = []
    warnings: list[str] = []

    for phase_id in order:
        result = run.results.get(phase_id)
        if not isinstance(result, Mapping):
            continue
        warnings.extend(str(w) for w in result.get("warnings", []))
        output = result.get("output")
        if not isinstance(output, Mapping):
            continue
        for key, value in output.items():
            if key in LIST_KEYS:
                if isinstance(value, list):
                    target = recommendations if key == "recommendations" else next_steps
                    target.extend(value)
                continue
            if _is_number(value):
                totals[key] = totals.get(key, 0) + value

    return RunSummary(
        run_id=run.id,
        workflow_name=run.workflow_name,
        status=run.status.value,
        phases_completed=len(run.completed_phases),
        phases_skipped=len(run.skipped_phases),
        phases_failed=len(run.failed_phases),
        total_phases=run.metadata.total_phases,
        duration_ms=run.duration_ms(),
        totals=totals,
        recommendations=recommendations,
        next_steps=next_steps,
        warnings=warnings,
    )
