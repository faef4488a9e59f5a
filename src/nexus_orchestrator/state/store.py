"""Durable state for the single active workflow run.

The store owns three things:

- the *current run* slot (at most one run at a time),
- an append-only execution history,
- rollback checkpoints, which live inside the run document.

:class:`FileStateStore` is the production implementation; :class:`InMemoryStateStore`
implements the same contract for tests and embedding.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from nexus_orchestrator.core.errors import (
    InvalidResumeStateError,
    StateCorruptionError,
    StateIOError,
)
from nexus_orchestrator.orchestrator.workflow.models import (
    Checkpoint,
    HistoryEntry,
    WorkflowRun,
    utc_now,
)
from nexus_orchestrator.orchestrator.workflow.state_machine import RunStatus
from nexus_orchestrator.state.atomic import atomic_write_text
from nexus_orchestrator.state.history import HistoryLog

logger = logging.getLogger(__name__)

CURRENT_RUN_FILE = "current-workflow.json"
HISTORY_FILE = "history.jsonl"
BACKUP_DIR = "backups"

SnapshotRestorer = Callable[[dict[str, Any]], None]


class StateStore(ABC):
    """Single-slot run store with history and checkpoint support."""

    @abstractmethod
    def save(self, run: WorkflowRun) -> None:
        """Persist ``run`` as the current run.

        Args:
            run: Run to store; replaces whatever occupied the slot.

        Raises:
            StateIOError: the write failed; the previously saved state is intact.
        """

    @abstractmethod
    def load(self) -> WorkflowRun | None:
        """Return the current run, or ``None`` when the slot is empty.

        Raises:
            StateCorruptionError: the stored run is invalid and no backup could be
                recovered. The slot has been cleared.
        """

    @abstractmethod
    def clear(self) -> None:
        """Empty the current run slot."""

    @abstractmethod
    def append_history(self, entry: HistoryEntry) -> None: ...

    @abstractmethod
    def read_history(self) -> list[HistoryEntry]: ...

    @abstractmethod
    def rewrite_history(self, entries: Iterable[HistoryEntry]) -> None: ...

    def query_history(
        self,
        *,
        workflow_name: str | None = None,
        status: RunStatus | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[HistoryEntry]:
        """Filter history entries; newest entries come last.

        Args:
            workflow_name: Only entries of this workflow.
            status: Only entries with this terminal status.
            since: Only entries at or after this time.
            until: Only entries at or before this time.
            limit: Keep the newest ``limit`` matching entries.

        Returns:
            Matching entries in append order.
        """

        entries = [
            e
            for e in self.read_history()
            if (workflow_name is None or e.workflow_name == workflow_name)
            and (status is None or e.status == status)
            and (since is None or e.timestamp >= since)
            and (until is None or e.timestamp <= until)
        ]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def prune_history(self, retention: timedelta, *, now: datetime | None = None) -> int:
        """Drop entries older than ``retention``. Returns the number removed."""

        cutoff = (now or utc_now()) - retention
        entries = self.read_history()
        kept = [e for e in entries if e.timestamp >= cutoff]
        removed = len(entries) - len(kept)
        if removed:
            self.rewrite_history(kept)
            logger.info("History pruned", extra={"removed": removed, "kept": len(kept)})
        return removed

    def create_checkpoint(
        self, run: WorkflowRun, phase_id: str, snapshot: dict[str, Any] | None = None
    ) -> Checkpoint:
        """Record a checkpoint after ``phase_id`` and persist the run.

        Args:
            run: Run to checkpoint; the checkpoint is appended to ``run.checkpoints``.
            phase_id: Phase the checkpoint follows.
            snapshot: Provider resource snapshot, keyed by provider id.

        Returns:
            The new checkpoint.
        """
        checkpoint = Checkpoint(
            id=uuid.uuid4().hex,
            phase_id=phase_id,
            timestamp=utc_now(),
            resource_snapshot=dict(snapshot or {}),
            completed_phases=list(run.completed_phases),
            skipped_phases=list(run.skipped_phases),
        )
        run.checkpoints.append(checkpoint)
        self.save(run)
        logger.info(
            "Checkpoint created",
            extra={"run_id": run.id, "phase": phase_id, "checkpoint_id": checkpoint.id},
        )
        return checkpoint

    def rollback_to_checkpoint(
        self,
        run: WorkflowRun,
        checkpoint_id: str,
        restore: SnapshotRestorer | None = None,
    ) -> WorkflowRun:
        """Rewind ``run`` to ``checkpoint_id`` and leave it PAUSED.

        Phases completed or skipped after the checkpoint are forgotten together
        with their results and retry counts, so they run again on resume.

        Args:
            run: A resumable (PAUSED or ERROR) run.
            checkpoint_id: Id of one of ``run.checkpoints``.
            restore: Called with the checkpoint's resource snapshot.

        Returns:
            The rewound run, already saved.

        Raises:
            InvalidResumeStateError: The run is not resumable or the checkpoint
                is unknown.
        """

        if not run.status.is_resumable:
            raise InvalidResumeStateError(
                f"Cannot roll back a run in status {run.status.value}",
                details={"run_id": run.id, "status": run.status.value},
            )

        position = next((i for i, c in enumerate(run.checkpoints) if c.id == checkpoint_id), None)
        if position is None:
            raise InvalidResumeStateError(
                f"Unknown checkpoint: {checkpoint_id!r}",
                details={"run_id": run.id, "checkpoint_id": checkpoint_id},
            )
        checkpoint = run.checkpoints[position]

        if restore is not None:
            restore(dict(checkpoint.resource_snapshot))

        settled = set(checkpoint.completed_phases) | set(checkpoint.skipped_phases)
        dropped = [
            p for p in run.completed_phases + run.skipped_phases if p not in settled
        ]

        run.checkpoints = run.checkpoints[: position + 1]
        run.completed_phases = [p for p in run.completed_phases if p in settled]
        run.skipped_phases = [p for p in run.skipped_phases if p in settled]
        for phase_id in dropped:
            run.results.pop(phase_id, None)
            run.retry_counts.pop(phase_id, None)
        for phase_id in run.failed_phases:
            run.retry_counts.pop(phase_id, None)
        run.failed_phases = []
        run.error = None
        run.pending_decision = None
        run.current_phase_id = None
        run.transition(RunStatus.PAUSED)
        self.save(run)

        logger.info(
            "Rolled back to checkpoint",
            extra={
                "run_id": run.id,
                "checkpoint_id": checkpoint_id,
                "phase": checkpoint.phase_id,
                "dropped_phases": dropped,
            },
        )
        return run


def _parse_run(text: str) -> WorkflowRun | None:
    try:
        return WorkflowRun.model_validate(json.loads(text))
    except (json.JSONDecodeError, ValidationError, TypeError):
        return None


def _serialise_run(run: WorkflowRun) -> str:
    return json.dumps(run.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"


class FileStateStore(StateStore):
    """JSON-file backed store.

    Layout under ``storage_path``::

        current-workflow.json     the current run (atomic replace on every save)
        backups/run-<ns>.json     timestamped copies used for corruption recovery
        history.jsonl             append-only execution history
    """

    def __init__(self, storage_path: Path, *, backup_count: int = 5) -> None:
        self.storage_path = storage_path
        self.current_file = storage_path / CURRENT_RUN_FILE
        self.backup_dir = storage_path / BACKUP_DIR
        self.backup_count = backup_count
        self.history = HistoryLog(storage_path / HISTORY_FILE)
        self._lock = threading.RLock()

    def save(self, run: WorkflowRun) -> None:
        payload = _serialise_run(run)
        with self._lock:
            try:
                atomic_write_text(self.current_file, payload)
                self._write_backup(payload)
            except OSError as e:
                logger.error(
                    "Failed to save run state",
                    extra={"run_id": run.id, "path": str(self.current_file), "error": str(e)},
                )
                raise StateIOError(
                    f"Failed to save run state: {e}", details={"path": str(self.current_file)}
                ) from e
        logger.debug("Run state saved", extra={"run_id": run.id, "status": run.status.value})

    def load(self) -> WorkflowRun | None:
        with self._lock:
            if not self.current_file.exists():
                return None
            try:
                text = self.current_file.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                text = ""
            except OSError as e:
                raise StateIOError(
                    f"Failed to read run state: {e}", details={"path": str(self.current_file)}
                ) from e

            run = _parse_run(text)
            if run is not None:
                return run

            logger.warning(
                "Run state failed validation; scanning backups",
                extra={"path": str(self.current_file)},
            )
            recovered = self._recover_from_backups()
            if recovered is not None:
                try:
                    atomic_write_text(self.current_file, _serialise_run(recovered))
                except OSError as e:
                    raise StateIOError(
                        f"Failed to restore recovered run state: {e}",
                        details={"path": str(self.current_file)},
                    ) from e
                logger.warning("Run state recovered from backup", extra={"run_id": recovered.id})
                return recovered

            self.clear()
            logger.error(
                "Run state is corrupt and no valid backup exists; state cleared",
                extra={"path": str(self.current_file)},
            )
            raise StateCorruptionError(
                "Run state is corrupt and no valid backup exists; current state was cleared",
                details={"path": str(self.current_file)},
            )

    def clear(self) -> None:
        with self._lock:
            try:
                self.current_file.unlink(missing_ok=True)
                for backup in self._backups():
                    backup.unlink(missing_ok=True)
            except OSError as e:
                raise StateIOError(
                    f"Failed to clear run state: {e}", details={"path": str(self.current_file)}
                ) from e

    def append_history(self, entry: HistoryEntry) -> None:
        self.history.append(entry)

    def read_history(self) -> list[HistoryEntry]:
        return self.history.read()

    def rewrite_history(self, entries: Iterable[HistoryEntry]) -> None:
        self.history.rewrite(entries)

    def _backups(self) -> list[Path]:
        """Backup files, newest first."""

        if not self.backup_dir.exists():
            return []
        return sorted(self.backup_dir.glob("run-*.json"), key=lambda p: p.name, reverse=True)

    def _write_backup(self, payload: str) -> None:
        backup = self.backup_dir / f"run-{time.time_ns():020d}.json"
        atomic_write_text(backup, payload)
        for stale in self._backups()[self.backup_count :]:
            stale.unlink(missing_ok=True)

    def _recover_from_backups(self) -> WorkflowRun | None:
        for backup in self._backups():
            try:
                text = backup.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            run = _parse_run(text)
            if run is not None:
                logger.info("Valid backup found", extra={"backup": backup.name})
                return run
        return None


class InMemoryStateStore(StateStore):
    """Process-local store with the same contract as :class:`FileStateStore`.

    Runs are stored as serialised JSON so callers never share mutable objects
    with the store, mirroring what a round-trip through disk does.
    """

    def __init__(self) -> None:
        self._current: str | None = None
        self._history: list[HistoryEntry] = []
        self._lock = threading.Lock()

    def save(self, run: WorkflowRun) -> None:
        with self._lock:
            self._current = _serialise_run(run)

    def load(self) -> WorkflowRun | None:
        with self._lock:
            if self._current is None:
                return None
            run = _parse_run(self._current)
            if run is None:
                self._current = None
                raise StateCorruptionError("Run state is corrupt; current state was cleared")
            return run

    def clear(self) -> None:
        with self._lock:
            self._current = None

    def append_history(self, entry: HistoryEntry) -> None:
        with self._lock:
            self._history.append(entry)

    def read_history(self) -> list[HistoryEntry]:
        with self._lock:
            return copy.copy(self._history)

    def rewrite_history(self, entries: Iterable[HistoryEntry]) -> None:
        with self._lock:
            self._history = list(entries)
