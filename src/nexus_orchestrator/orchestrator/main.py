"""CLI entrypoint for the workflow engine.

Exit codes: 0 success, 1 unexpected failure, 2 configuration or usage error,
3 engine error, 4 run ended in ERROR, 5 run paused awaiting a decision.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from nexus_orchestrator import __version__
from nexus_orchestrator.core.config import EngineConfig
from nexus_orchestrator.core.engine import WorkflowEngine
from nexus_orchestrator.core.errors import EngineError, InvalidDefinitionError
from nexus_orchestrator.orchestrator.workflow.definitions import ComplexityTier
from nexus_orchestrator.orchestrator.workflow.executor import ExecutionOutcome
from nexus_orchestrator.orchestrator.workflow.matcher import ClassifiedTask
from nexus_orchestrator.orchestrator.workflow.models import ResumeStrategy
from nexus_orchestrator.orchestrator.workflow.state_machine import RunStatus

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_CONFIG = 2
EXIT_ENGINE_ERROR = 3
EXIT_RUN_ERROR = 4
EXIT_RUN_PAUSED = 5


def _parse_keywords(value: str | None) -> list[str]:
    if value is None:
        return []
    return [p.strip() for p in value.split(",") if p.strip()]


def _parse_datetime(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {value!r}") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _add_task_arguments(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument("--intent", required=required, help="Intent label, e.g. 'bugfix'")
    parser.add_argument(
        "--complexity",
        choices=[t.value for t in ComplexityTier],
        default=ComplexityTier.MEDIUM.value,
        help="Complexity tier of the task",
    )
    parser.add_argument(
        "--keywords",
        default=None,
        help="Comma-separated task keywords, e.g. 'login,crash'",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Estimated duration in minutes",
    )


def _task_from_args(args: argparse.Namespace) -> ClassifiedTask:
    return ClassifiedTask(
        intent_label=args.intent,
        complexity_tier=ComplexityTier(args.complexity),
        keywords=_parse_keywords(args.keywords),
        estimated_duration_minutes=args.duration,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nexus",
        description="Declarative workflow engine for AI-assisted development tasks",
    )
    parser.add_argument("--version", action="version", version=f"nexus-orchestrator {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("workflows", help="List cataloged workflows")
    subparsers.add_parser("validate", help="Validate every workflow document in the catalog")

    match = subparsers.add_parser("match", help="Recommend a workflow for a classified task")
    _add_task_arguments(match, required=True)

    run = subparsers.add_parser("run", help="Start a workflow run")
    run.add_argument("--task", required=True, help="Task description")
    run.add_argument(
        "--workflow",
        default=None,
        help="Workflow name (when omitted the best match for --intent is used)",
    )
    _add_task_arguments(run, required=False)

    resume = subparsers.add_parser("resume", help="Resume a paused or failed run")
    resume.add_argument(
        "--strategy",
        required=True,
        choices=[s.value for s in ResumeStrategy],
        help="How to continue the run",
    )
    resume.add_argument(
        "--checkpoint",
        default=None,
        help="Checkpoint id (required for from-checkpoint)",
    )

    subparsers.add_parser("rollback", help="Roll the current run back to its earliest checkpoint")
    subparsers.add_parser("status", help="Show the current run")

    history = subparsers.add_parser("history", help="Query the execution history")
    history.add_argument("--workflow", default=None, help="Only runs of this workflow")
    history.add_argument(
        "--status",
        choices=[s.value for s in RunStatus],
        default=None,
        help="Only runs that ended in this status",
    )
    history.add_argument("--since", type=_parse_datetime, default=None, help="ISO-8601 lower bound")
    history.add_argument("--until", type=_parse_datetime, default=None, help="ISO-8601 upper bound")
    history.add_argument("--limit", type=int, default=None, help="Newest N entries only")

    prune = subparsers.add_parser("prune-history", help="Drop history entries past retention")
    prune.add_argument(
        "--days",
        type=int,
        default=None,
        help="Retention in days (defaults to ORCHESTRATOR_STATE_HISTORY_RETENTION_DAYS)",
    )

    return parser


def _outcome_exit_code(outcome: ExecutionOutcome) -> int:
    if outcome.status == RunStatus.PAUSED:
        return EXIT_RUN_PAUSED
    if outcome.status == RunStatus.ERROR:
        return EXIT_RUN_ERROR
    return EXIT_OK


def _report_outcome(outcome: ExecutionOutcome) -> int:
    run = outcome.run
    print(f"Run {run.id} of {run.workflow_name!r}: {run.status.value}")
    if run.error is not None:
        print(f"Error [{run.error.kind.value}] in phase {run.error.phase}: {run.error.message}")
    if outcome.decision is not None:
        options = ", ".join(o.value for o in outcome.decision.options)
        print(
            f"Decision needed for phase {outcome.decision.phase_id} "
            f"({outcome.decision.reason}): {options}"
        )
    _print_json(outcome.summary.model_dump(mode="json"))
    return _outcome_exit_code(outcome)


def _dispatch(engine: WorkflowEngine, args: argparse.Namespace) -> int:
    if args.command == "workflows":
        for definition in engine.workflows():
            print(
                f"{definition.name}\t{definition.complexity_tier.value}\t"
                f"{definition.estimated_duration_minutes:g}m\t{definition.description}"
            )
        return EXIT_OK

    if args.command == "validate":
        report = engine.catalog.validate_all()
        invalid = 0
        for file_name, violations in report.items():
            if not violations:
                print(f"OK       {file_name}")
                continue
            invalid += 1
            print(f"INVALID  {file_name}")
            for violation in violations:
                print(f"  - {violation}")
        if invalid:
            print(f"{invalid} of {len(report)} workflow documents are invalid", file=sys.stderr)
            return EXIT_ENGINE_ERROR
        return EXIT_OK

    if args.command == "match":
        result = engine.recommend(_task_from_args(args))
        _print_json(result.model_dump(mode="json"))
        return EXIT_OK

    if args.command == "run":
        if args.workflow is None and args.intent is None:
            print("run needs either --workflow or --intent", file=sys.stderr)
            return EXIT_CONFIG
        task = _task_from_args(args) if args.workflow is None else None
        outcome = engine.start(args.task, task=task, workflow_name=args.workflow)
        return _report_outcome(outcome)

    if args.command == "resume":
        strategy = ResumeStrategy(args.strategy)
        if strategy == ResumeStrategy.FROM_CHECKPOINT and not args.checkpoint:
            print("--checkpoint is required with --strategy from-checkpoint", file=sys.stderr)
            return EXIT_CONFIG
        outcome = engine.resume(strategy, checkpoint_id=args.checkpoint)
        return _report_outcome(outcome)

    if args.command == "rollback":
        run = engine.rollback()
        print(f"Run {run.id} of {run.workflow_name!r} rolled back")
        return EXIT_OK

    if args.command == "status":
        current = engine.status()
        if current is None:
            print("No active run")
            return EXIT_OK
        _print_json(current.model_dump(mode="json"))
        return EXIT_OK

    if args.command == "history":
        entries = engine.history(
            workflow_name=args.workflow,
            status=RunStatus(args.status) if args.status else None,
            since=args.since,
            until=args.until,
            limit=args.limit,
        )
        _print_json([e.model_dump(mode="json") for e in entries])
        return EXIT_OK

    if args.command == "prune-history":
        removed = engine.prune_history(args.days)
        print(f"Removed {removed} history entries")
        return EXIT_OK

    raise AssertionError(f"Unhandled command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = EngineConfig()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_CONFIG

    config.setup_logging()

    try:
        engine = WorkflowEngine(config)
    except (ImportError, AttributeError, TypeError, ValueError) as e:
        print(f"Provider factory error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    try:
        return _dispatch(engine, args)
    except InvalidDefinitionError as e:
        print(f"{e.kind.value}: {e.source}", file=sys.stderr)
        for violation in e.violations:
            print(f"  - {violation}", file=sys.stderr)
        return EXIT_ENGINE_ERROR
    except EngineError as e:
        print(f"{e.kind.value}: {e.message}", file=sys.stderr)
        return EXIT_ENGINE_ERROR
    except Exception:
        logger.exception("Command failed", extra={"command": args.command})
        return EXIT_UNEXPECTED


if __name__ == "__main__":
    raise SystemExit(main())
