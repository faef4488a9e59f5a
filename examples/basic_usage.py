#!/usr/bin/env python3
"""Programmatic workflow run example.

This demonstrates using the engine components directly:

* build a provider registry from plain callables
* recommend a workflow for a pre-classified task
* run it and print the aggregated summary

The same ``build_providers`` function can back the CLI by setting
``ORCHESTRATOR_EXECUTION_PROVIDER_FACTORY=basic_usage:build_providers`` with
``examples`` on ``PYTHONPATH``.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Sequence

from nexus_orchestrator.core.config import CatalogConfig, EngineConfig, StateConfig
from nexus_orchestrator.core.engine import WorkflowEngine
from nexus_orchestrator.orchestrator.workflow.matcher import ClassifiedTask
from nexus_orchestrator.orchestrator.workflow.providers import (
    CallableProvider,
    InvocationContext,
    ProviderRegistry,
)


def _tests_run(context: InvocationContext) -> dict[str, object]:
    return {"testsRun": 12, "recommendations": [f"add coverage for {context.phase_id}"]}


def build_providers() -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(
        "tester",
        CallableProvider({"reproduce": _tests_run, "run-suite": _tests_run}),
    )
    registry.register(
        "editor",
        CallableProvider(
            {
                "apply-fix": lambda ctx: {"filesChanged": 2},
                "implement": lambda ctx: {"filesChanged": 5},
                "refactor": lambda ctx: {"filesChanged": 3},
            }
        ),
    )
    registry.register(
        "planner", CallableProvider({"outline": lambda ctx: {"nextSteps": ["build"]}})
    )
    return registry


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a workflow (programmatic example).")
    parser.add_argument("--task", default="Fix crash on login", help="Task description")
    parser.add_argument("--intent", default="bugfix", help="Intent label")
    parser.add_argument("--keywords", default="crash,login", help="Comma-separated keywords")
    parser.add_argument(
        "--workflows",
        type=Path,
        default=Path(__file__).parent / "workflows",
        help="Workflow catalog directory",
    )
    parser.add_argument("--state", type=Path, default=Path(".state"), help="State directory")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    config = EngineConfig(
        catalog=CatalogConfig(workflows_path=args.workflows),
        state=StateConfig(storage_path=args.state),
    )
    config.setup_logging()

    engine = WorkflowEngine(config, providers=build_providers())
    task = ClassifiedTask(
        intent_label=args.intent,
        keywords=[k for k in args.keywords.split(",") if k.strip()],
        estimated_duration_minutes=45,
    )

    match = engine.recommend(task)
    print(f"Recommended: {match.recommendation.workflow_name} ({match.recommendation.score})")

    outcome = engine.start(args.task, task=task)
    print(f"Run {outcome.run.id}: {outcome.status.value}")
    print(outcome.summary.model_dump_json(indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
