"""Append-only execution history log (newline-delimited JSON)."""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Iterable
from pathlib import Path

from pydantic import ValidationError

from nexus_orchestrator.core.errors import StateIOError
from nexus_orchestrator.orchestrator.workflow.models import HistoryEntry
from nexus_orchestrator.state.atomic import atomic_write_text

logger = logging.getLogger(__name__)


class HistoryLog:
    """One compact JSON record per line; lines are only ever appended.

    The file is rewritten as a whole only by retention pruning.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def append(self, entry: HistoryEntry) -> None:
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False, separators=(",", ":"))
        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with open(self._path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise StateIOError(
                    f"Failed to append history entry: {e}", details={"path": str(self._path)}
                ) from e

    def read(self) -> list[HistoryEntry]:
        with self._lock:
            if not self._path.exists():
                return []
            try:
                lines = self._path.read_text(encoding="utf-8").splitlines()
            except OSError as e:
                raise StateIOError(
                    f"Failed to read history: {e}", details={"path": str(self._path)}
                ) from e

        entries: list[HistoryEntry] = []
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                entries.append(HistoryEntry.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError):
                logger.warning(
                    "Skipping malformed history line",
                    extra={"path": str(self._path), "line": lineno},
                )
        return entries

    def rewrite(self, entries: Iterable[HistoryEntry]) -> None:
        payload = "".join(
            json.dumps(e.model_dump(mode="json"), ensure_ascii=False, separators=(",", ":")) + "\n"
            for e in entries
        )
        with self._lock:
            try:
                atomic_write_text(self._path, payload)
            except OSError as e:
                raise StateIOError(
                    f"Failed to rewrite history: {e}", details={"path": str(self._path)}
                ) from e
