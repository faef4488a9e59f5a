"""Phase-by-phase execution of a workflow run.

The orchestrator owns the run state machine::

    INITIALIZING -> EXECUTING <-> PAUSED -> COMPLETED
                    EXECUTING -> ERROR -> ROLLBACK

Phases run strictly one at a time in dependency order. Each attempt runs the
phase's invocation sequence on a worker thread and races it against the phase
timeout; a result that arrives after the orchestrator stopped waiting is never
applied to the run. Every phase outcome is persisted before the next phase
starts, so a crash loses at most the phase that was in flight.

Human decision points (``prompt`` policies) are not blocking prompts: the run is
PAUSED with a :class:`DecisionRequest` and control returns to the caller, who
answers through :meth:`ExecutionOrchestrator.resume`.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from nexus_orchestrator.core.config import ExecutionConfig
from nexus_orchestrator.core.errors import (
    EngineError,
    ErrorKind,
    InvalidResumeStateError,
    NoActiveRunError,
    PrerequisitesNotMetError,
    RunAlreadyActiveError,
    StateIOError,
)
from nexus_orchestrator.orchestrator.logging import run_extra
from nexus_orchestrator.orchestrator.workflow.definitions import (
    CapabilityInvocation,
    FailurePolicy,
    Phase,
    TimeoutPolicy,
    WorkflowDefinition,
)
from nexus_orchestrator.orchestrator.workflow.models import (
    DecisionRequest,
    HistoryEntry,
    ResumeStrategy,
    RunError,
    RunMetadata,
    WorkflowRun,
    utc_now,
)
from nexus_orchestrator.orchestrator.workflow.providers import (
    InvocationContext,
    InvocationResult,
    ProviderRegistry,
)
from nexus_orchestrator.orchestrator.workflow.resolver import resolve_phase_order
from nexus_orchestrator.orchestrator.workflow.results import (
    RunSummary,
    merge_outputs,
    summarize_run,
)
from nexus_orchestrator.orchestrator.workflow.state_machine import RunStatus
from nexus_orchestrator.state.store import StateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    """What :meth:`start` and :meth:`resume` hand back to the caller."""

    run: WorkflowRun
    summary: RunSummary
    decision: DecisionRequest | None = None

    @property
    def status(self) -> RunStatus:
        return self.run.status


@dataclass(slots=True)
class _Attempt:
    ok: bool
    payload: dict[str, Any] | None = None
    kind: ErrorKind | None = None
    message: str = ""
    timed_out: bool = False
    skip_phase: bool = False
    providers_used: list[str] = field(default_factory=list)
    services_used: list[str] = field(default_factory=list)
    abandoned: Future[_Attempt] | None = None


class ExecutionOrchestrator:
    """Drives a single workflow run against the capability providers."""

    def __init__(
        self,
        *,
        store: StateStore,
        providers: ProviderRegistry,
        config: ExecutionConfig | None = None,
    ) -> None:
        self.store = store
        self.providers = providers
        self.config = config or ExecutionConfig()
        self._cancel_requested = threading.Event()

    # ------------------------------------------------------------------ public API

    def current_run(self) -> WorkflowRun | None:
        run = self.store.load()
        if run is not None and run.status.is_terminal:
            return None
        return run

    def missing_prerequisites(self, definition: WorkflowDefinition) -> list[str]:
        missing = [
            cap
            for cap in sorted(definition.required_capabilities)
            if not self.providers.is_available(cap)
        ]
        missing.extend(
            svc
            for svc in sorted(definition.required_external_services)
            if not self.providers.is_available(svc)
        )
        return missing

    def start(
        self,
        definition: WorkflowDefinition,
        *,
        task_description: str,
        workflow_file: str | None = None,
    ) -> ExecutionOutcome:
        """Start a new run of ``definition`` and drive it as far as it goes.

        Args:
            definition: Validated workflow definition.
            task_description: Free-form task the run works on.
            workflow_file: Source file recorded on the run; defaults to the
                definition's source.

        Returns:
            The outcome; ``decision`` is set when the run paused for a prompt.

        Raises:
            RunAlreadyActiveError: Another run is still PAUSED, EXECUTING or in ERROR.
            PrerequisitesNotMetError: A required capability or service is unavailable.
        """
        active = self.current_run()
        if active is not None:
            raise RunAlreadyActiveError(
                f"Run {active.id} of {active.workflow_name!r} is still {active.status.value}",
                details={"run_id": active.id, "status": active.status.value},
            )

        missing = self.missing_prerequisites(definition)
        if missing:
            logger.warning(
                "Prerequisites not met", extra={"workflow": definition.name, "missing": missing}
            )
            raise PrerequisitesNotMetError(definition.name, missing)

        order = resolve_phase_order(definition.all_phases)
        run = WorkflowRun(
            id=uuid.uuid4().hex,
            workflow_name=definition.name,
            workflow_file=workflow_file or definition.source,
            task_description=task_description,
            metadata=RunMetadata(total_phases=len(order)),
        )
        self.store.save(run)
        logger.info(
            "Workflow run started",
            extra=run_extra(run.id, workflow=definition.name, phases=[p.id for p in order]),
        )

        self._cancel_requested.clear()
        return self._drive(run, definition, order)

    def resume(
        self,
        definition: WorkflowDefinition,
        strategy: ResumeStrategy,
        *,
        checkpoint_id: str | None = None,
        run: WorkflowRun | None = None,
    ) -> ExecutionOutcome:
        """Continue a PAUSED or ERROR run according to ``strategy``.

        Args:
            definition: Definition of the run's workflow.
            strategy: How to treat the phase the run stopped at.
            checkpoint_id: Required for ``FROM_CHECKPOINT``.
            run: Run to resume; defaults to the stored current run.

        Returns:
            The outcome after driving the run forward again.

        Raises:
            InvalidResumeStateError: No resumable run, a missing checkpoint id,
                or a strategy that does not apply to the run.
        """
        if run is None:
            run = self.store.load()
        if run is None:
            raise InvalidResumeStateError("There is no run to resume")
        if not run.status.is_resumable:
            raise InvalidResumeStateError(
                f"Cannot resume a run in status {run.status.value}",
                details={"run_id": run.id, "status": run.status.value},
            )

        order = resolve_phase_order(definition.all_phases)
        target = (run.error.phase if run.error else None) or run.current_phase_id

        if strategy == ResumeStrategy.RETRY_CURRENT:
            if target is not None:
                # An explicit retry starts the phase's retry budget afresh.
                run.retry_counts.pop(target, None)
                if target in run.failed_phases:
                    run.failed_phases.remove(target)

        elif strategy == ResumeStrategy.RETRY_PREVIOUS:
            if not run.completed_phases:
                raise InvalidResumeStateError(
                    "No completed phase to retry", details={"run_id": run.id}
                )
            previous = run.completed_phases.pop()
            run.results.pop(previous, None)
            run.retry_counts.pop(previous, None)
            if target is not None:
                run.retry_counts.pop(target, None)
                if target in run.failed_phases:
                    run.failed_phases.remove(target)

        elif strategy == ResumeStrategy.SKIP_CURRENT:
            if target is None:
                raise InvalidResumeStateError(
                    "No current phase to skip", details={"run_id": run.id}
                )
            if run.is_settled(target):
                raise InvalidResumeStateError(
                    f"Phase {target!r} has already finished",
                    details={"run_id": run.id, "phase": target},
                )
            run.mark_skipped(
                target,
                {
                    "output": {},
                    "invocations": [],
                    "warnings": [f"phase {target} skipped on resume"],
                    "skipped": True,
                },
            )

        elif strategy == ResumeStrategy.FROM_CHECKPOINT:
            if not checkpoint_id:
                raise InvalidResumeStateError(
                    "A checkpoint id is required to resume from a checkpoint",
                    details={"run_id": run.id},
                )
            self.store.rollback_to_checkpoint(run, checkpoint_id, restore=self.providers.restore)

        run.error = None
        run.pending_decision = None
        next_phase = next((p for p in order if not run.is_settled(p.id)), None)
        run.current_phase_id = next_phase.id if next_phase else target
        run.transition(RunStatus.EXECUTING)
        if run.current_phase_id is not None:
            self._persist(run)

        logger.info(
            "Workflow run resumed",
            extra=run_extra(
                run.id,
                workflow=run.workflow_name,
                phase=run.current_phase_id,
                strategy=strategy.value,
            ),
        )
        self._cancel_requested.clear()
        return self._drive(run, definition, order)

    def rollback(self, run: WorkflowRun | None = None) -> WorkflowRun:
        """Revert to the earliest checkpoint and retire the run for good.

        Args:
            run: Run to roll back; defaults to the stored current run.

        Returns:
            The run in ROLLBACK status. It is logged to history and leaves the
            current slot.

        Raises:
            NoActiveRunError: There is no run.
            InvalidResumeStateError: The run already finished.
        """

        if run is None:
            run = self.store.load()
        if run is None:
            raise NoActiveRunError("There is no run to roll back")
        if run.status.is_terminal:
            raise InvalidResumeStateError(
                f"Cannot roll back a run in status {run.status.value}",
                details={"run_id": run.id, "status": run.status.value},
            )

        if run.checkpoints:
            earliest = run.checkpoints[0]
            self.providers.restore(earliest.resource_snapshot)
            since = earliest.timestamp
        else:
            since = run.start_time
        self.providers.discard_artifacts(since)

        run.current_phase_id = None
        run.pending_decision = None
        run.end_time = self._end_time(run)
        run.transition(RunStatus.ROLLBACK)
        self._persist(run)
        self._record_history(run)
        self.store.clear()

        logger.warning(
            "Workflow run rolled back",
            extra=run_extra(run.id, workflow=run.workflow_name, checkpoints=len(run.checkpoints)),
        )
        return run

    def cancel(self) -> None:
        """Request a user abort; honoured before the next phase starts."""

        self._cancel_requested.set()
        logger.info("Run cancellation requested")

    # ------------------------------------------------------------------ run loop

    def _drive(
        self, run: WorkflowRun, definition: WorkflowDefinition, order: list[Phase]
    ) -> ExecutionOutcome:
        for phase in order:
            if run.is_settled(phase.id):
                continue

            if self._cancel_requested.is_set():
                self._cancel_requested.clear()
                run.current_phase_id = phase.id
                return self._fail(
                    run,
                    order,
                    kind=ErrorKind.RUN_CANCELLED,
                    message="Run cancelled by user",
                    phase_id=phase.id,
                    phase_failed=False,
                )

            run.current_phase_id = phase.id
            if run.status != RunStatus.EXECUTING:
                run.transition(RunStatus.EXECUTING)
            self._persist(run)

            stopped = self._execute_phase(run, definition, phase, order)
            if stopped is not None:
                return stopped

        return self._complete(run, order)

    def _execute_phase(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        phase: Phase,
        order: list[Phase],
    ) -> ExecutionOutcome | None:
        policy = definition.policy_for(phase)
        timeout_ms = policy.timeout_ms
        extended = False
        log_ctx = run_extra(run.id, workflow=run.workflow_name, phase=phase.id)

        while True:
            attempt = self._attempt(run, phase, timeout_ms)
            self._record_usage(run, attempt)

            if attempt.ok:
                run.mark_completed(phase.id, attempt.payload)
                self._persist(run)
                logger.info("Phase completed", extra=log_ctx)
                self._maybe_checkpoint(run, phase)
                return None

            if attempt.skip_phase:
                run.mark_skipped(phase.id, attempt.payload)
                self._persist(run)
                logger.warning(
                    "Optional phase skipped", extra={**log_ctx, "reason": attempt.message}
                )
                return None

            if attempt.timed_out:
                if policy.on_timeout == TimeoutPolicy.EXTEND and not extended:
                    extended = True
                    timeout_ms = int(timeout_ms * self.config.timeout_extension_factor)
                    if self._await_abandoned(attempt):
                        logger.warning(
                            "Phase timed out; extending timeout",
                            extra={**log_ctx, "timeout_ms": timeout_ms},
                        )
                        continue
                    return self._fail(
                        run,
                        order,
                        kind=ErrorKind.PHASE_TIMEOUT,
                        message=f"{attempt.message}; abandoned attempt did not stop, not extending",
                        phase_id=phase.id,
                    )
                if policy.on_timeout == TimeoutPolicy.SKIP:
                    self._skip_after_problem(run, phase, attempt)
                    return None
                if policy.on_timeout == TimeoutPolicy.PROMPT:
                    return self._pause(run, order, phase, reason="timeout", message=attempt.message)
                return self._fail(
                    run,
                    order,
                    kind=ErrorKind.PHASE_TIMEOUT,
                    message=attempt.message,
                    phase_id=phase.id,
                )

            kind = attempt.kind or ErrorKind.PHASE_ERROR
            if policy.on_failure == FailurePolicy.RETRY:
                count = run.retry_counts.get(phase.id, 0)
                if count < policy.max_retries:
                    run.retry_counts[phase.id] = count + 1
                    self._persist(run)
                    logger.warning(
                        "Phase failed; retrying",
                        extra={
                            **log_ctx,
                            "attempt": count + 1,
                            "max_retries": policy.max_retries,
                            "error": attempt.message,
                        },
                    )
                    continue
                return self._fail(
                    run,
                    order,
                    kind=kind,
                    message=f"{attempt.message} (retries exhausted after {count})",
                    phase_id=phase.id,
                )
            if policy.on_failure == FailurePolicy.SKIP:
                self._skip_after_problem(run, phase, attempt)
                return None
            if policy.on_failure == FailurePolicy.PROMPT:
                run.mark_failed(phase.id)
                return self._pause(run, order, phase, reason="failure", message=attempt.message)
            return self._fail(run, order, kind=kind, message=attempt.message, phase_id=phase.id)

    # ------------------------------------------------------------------ phase attempts

    def _attempt(self, run: WorkflowRun, phase: Phase, timeout_ms: int) -> _Attempt:
        context = InvocationContext(
            run_id=run.id,
            workflow_name=run.workflow_name,
            phase_id=phase.id,
            task_description=run.task_description,
            previous_results=copy.deepcopy(run.results),
            cancel_event=threading.Event(),
        )
        started = time.monotonic()
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"phase-{phase.id}")
        future = pool.submit(self._invoke_phase, phase, context)
        try:
            attempt = future.result(timeout=timeout_ms / 1000)
        except FutureTimeoutError:
            # Best-effort: providers may watch the cancel event, but we stop waiting regardless.
            context.cancel_event.set()
            future.cancel()
            for invocation in phase.invocations:
                self.providers.compensate(invocation.provider_id, invocation.action_id, context)
            logger.warning(
                "Phase attempt timed out",
                extra=run_extra(
                    run.id, workflow=run.workflow_name, phase=phase.id, timeout_ms=timeout_ms
                ),
            )
            return _Attempt(
                ok=False,
                timed_out=True,
                kind=ErrorKind.PHASE_TIMEOUT,
                message=f"Phase {phase.id!r} exceeded its {timeout_ms} ms timeout",
                abandoned=future,
            )
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        if attempt.payload is not None:
            attempt.payload["durationMs"] = int((time.monotonic() - started) * 1000)
        return attempt

    def _invoke_phase(self, phase: Phase, context: InvocationContext) -> _Attempt:
        """Run a phase's invocations in order. Runs on a worker thread; never raises."""

        records: list[dict[str, Any]] = []
        outputs: list[Any] = []
        warnings: list[str] = []
        providers_used: list[str] = []
        services_used: list[str] = []

        for invocation in phase.invocations:
            if context.cancelled:
                return _Attempt(ok=False, kind=ErrorKind.PHASE_TIMEOUT, message="attempt abandoned")

            reason = self._unavailable_reason(invocation)
            if reason is not None:
                if self._may_skip_invocation(invocation, reason):
                    warnings.append(f"{invocation.key} skipped: {reason}")
                    records.append(_record(invocation, "skipped"))
                    continue
                if phase.optional or phase.skip_if_unavailable:
                    warnings.append(f"phase {phase.id} skipped: {reason}")
                    return _Attempt(
                        ok=False,
                        skip_phase=True,
                        kind=ErrorKind.CAPABILITY_UNAVAILABLE,
                        message=reason,
                        payload={
                            "output": {},
                            "invocations": records,
                            "warnings": warnings,
                            "skipped": True,
                        },
                        providers_used=providers_used,
                        services_used=services_used,
                    )
                return _Attempt(
                    ok=False,
                    kind=ErrorKind.CAPABILITY_UNAVAILABLE,
                    message=f"{invocation.key}: {reason}",
                    providers_used=providers_used,
                    services_used=services_used,
                )

            result = self._invoke(invocation, context)
            providers_used.append(invocation.provider_id)
            if invocation.external_service_id:
                services_used.append(invocation.external_service_id)

            if not result.ok:
                if not invocation.required:
                    warnings.append(f"{invocation.key} failed: {result.error}")
                    records.append(_record(invocation, "error", result.error))
                    continue
                return _Attempt(
                    ok=False,
                    kind=ErrorKind.PHASE_ERROR,
                    message=f"{invocation.key} failed: {result.error}",
                    providers_used=providers_used,
                    services_used=services_used,
                )

            records.append(_record(invocation, "success"))
            outputs.append(result.output)

        return _Attempt(
            ok=True,
            payload={
                "output": merge_outputs(outputs),
                "invocations": records,
                "warnings": warnings,
            },
            providers_used=providers_used,
            services_used=services_used,
        )

    def _invoke(
        self, invocation: CapabilityInvocation, context: InvocationContext
    ) -> InvocationResult:
        try:
            return self.providers.invoke(invocation.provider_id, invocation.action_id, context)
        except EngineError as e:
            return InvocationResult.failure(e.message)
        except Exception as e:
            logger.exception(
                "Capability provider raised",
                extra=run_extra(
                    context.run_id,
                    phase=context.phase_id,
                    provider=invocation.provider_id,
                    action=invocation.action_id,
                ),
            )
            return InvocationResult.failure(f"{type(e).__name__}: {e}")

    def _unavailable_reason(self, invocation: CapabilityInvocation) -> str | None:
        if not self.providers.is_available(invocation.provider_id):
            return f"capability {invocation.provider_id!r} unavailable"
        service = invocation.external_service_id
        if service and not self.providers.is_available(service):
            return f"external service {service!r} unavailable"
        return None

    @staticmethod
    def _may_skip_invocation(invocation: CapabilityInvocation, reason: str) -> bool:
        if not invocation.required:
            return True
        # A non-mandatory external service only degrades the invocation.
        return reason.startswith("external service") and not invocation.mandatory

    def _await_abandoned(self, attempt: _Attempt) -> bool:
        """Wait for an abandoned attempt so a phase never runs alongside itself."""

        if attempt.abandoned is None:
            return True
        try:
            attempt.abandoned.result(timeout=self.config.abandoned_attempt_grace_seconds)
        except FutureTimeoutError:
            return False
        except Exception:
            return True
        return True

    # ------------------------------------------------------------------ outcomes

    def _skip_after_problem(self, run: WorkflowRun, phase: Phase, attempt: _Attempt) -> None:
        run.mark_skipped(
            phase.id,
            {
                "output": {},
                "invocations": [],
                "warnings": [f"phase {phase.id} skipped: {attempt.message}"],
                "skipped": True,
            },
        )
        self._persist(run)
        logger.warning(
            "Phase skipped by policy",
            extra=run_extra(
                run.id, workflow=run.workflow_name, phase=phase.id, reason=attempt.message
            ),
        )

    def _pause(
        self,
        run: WorkflowRun,
        order: list[Phase],
        phase: Phase,
        *,
        reason: str,
        message: str,
    ) -> ExecutionOutcome:
        options = [ResumeStrategy.RETRY_CURRENT, ResumeStrategy.SKIP_CURRENT]
        if run.completed_phases:
            options.append(ResumeStrategy.RETRY_PREVIOUS)
        if run.checkpoints:
            options.append(ResumeStrategy.FROM_CHECKPOINT)

        decision = DecisionRequest(
            phase_id=phase.id, reason=reason, message=message, options=options
        )
        run.pending_decision = decision
        run.transition(RunStatus.PAUSED)
        self._persist(run)

        logger.warning(
            "Run paused awaiting decision",
            extra=run_extra(run.id, workflow=run.workflow_name, phase=phase.id, reason=reason),
        )
        return ExecutionOutcome(run=run, summary=self._summary(run, order), decision=decision)

    def _fail(
        self,
        run: WorkflowRun,
        order: list[Phase],
        *,
        kind: ErrorKind,
        message: str,
        phase_id: str | None,
        phase_failed: bool = True,
    ) -> ExecutionOutcome:
        if phase_id is not None and phase_failed:
            run.mark_failed(phase_id)
        run.error = RunError(kind=kind, message=message, phase=phase_id, recoverable=True)
        run.transition(RunStatus.ERROR)
        self._persist(run)
        self._record_history(run)

        logger.error(
            "Workflow run failed",
            extra=run_extra(
                run.id,
                workflow=run.workflow_name,
                phase=phase_id,
                kind=kind.value,
                error=message,
            ),
        )
        return ExecutionOutcome(run=run, summary=self._summary(run, order))

    def _complete(self, run: WorkflowRun, order: list[Phase]) -> ExecutionOutcome:
        run.current_phase_id = None
        run.pending_decision = None
        run.end_time = self._end_time(run)
        run.transition(RunStatus.COMPLETED)
        self._persist(run)
        self._record_history(run)
        self.store.clear()

        summary = self._summary(run, order)
        logger.info(
            "Workflow run completed",
            extra=run_extra(
                run.id,
                workflow=run.workflow_name,
                completed=summary.phases_completed,
                skipped=summary.phases_skipped,
                duration_ms=summary.duration_ms,
            ),
        )
        return ExecutionOutcome(run=run, summary=summary)

    # ------------------------------------------------------------------ helpers

    def _maybe_checkpoint(self, run: WorkflowRun, phase: Phase) -> None:
        interval = self.config.checkpoint_interval
        if interval <= 0 or len(run.completed_phases) % interval != 0:
            return
        context = InvocationContext(
            run_id=run.id,
            workflow_name=run.workflow_name,
            phase_id=phase.id,
            task_description=run.task_description,
            previous_results=copy.deepcopy(run.results),
        )
        try:
            snapshot = self.providers.snapshot(context)
            self.store.create_checkpoint(run, phase.id, snapshot)
        except StateIOError:
            logger.exception(
                "Checkpoint could not be persisted", extra=run_extra(run.id, phase=phase.id)
            )
        except Exception:
            logger.exception("Checkpoint snapshot failed", extra=run_extra(run.id, phase=phase.id))

    def _record_usage(self, run: WorkflowRun, attempt: _Attempt) -> None:
        for provider_id in attempt.providers_used:
            run.metadata.record_provider(provider_id)
        for service_id in attempt.services_used:
            run.metadata.record_service(service_id)

    def _persist(self, run: WorkflowRun) -> None:
        try:
            self.store.save(run)
        except StateIOError:
            # The next natural save point writes the full run again.
            logger.exception(
                "Run state not persisted", extra=run_extra(run.id, status=run.status.value)
            )

    def _record_history(self, run: WorkflowRun) -> None:
        try:
            self.store.append_history(HistoryEntry.from_run(run))
        except StateIOError:
            logger.exception(
                "History entry not persisted", extra=run_extra(run.id, status=run.status.value)
            )

    @staticmethod
    def _end_time(run: WorkflowRun) -> datetime:
        end = utc_now()
        if end <= run.start_time:
            end = run.start_time + timedelta(microseconds=1)
        return end

    @staticmethod
    def _summary(run: WorkflowRun, order: list[Phase]) -> RunSummary:
        return summarize_run(run, [p.id for p in order])


def _record(
    invocation: CapabilityInvocation, status: str, error: str | None = None
) -> dict[str, Any]:
    record: dict[str, Any] = {
        "provider": invocation.provider_id,
        "action": invocation.action_id,
        "status": status,
    }
    if invocation.external_service_id:
        record["externalService"] = invocation.external_service_id
    if error is not None:
        record["error"] = error
    return record
