"""Workflow catalog: load, validate and cache workflow definition documents.

Documents are YAML (or JSON) files, one workflow per file. The catalog keeps
parsed definitions keyed by file path and re-parses a file only when its
fingerprint (mtime + size) changes.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml
from pydantic import ValidationError

from nexus_orchestrator.core.errors import (
    CircularDependencyError,
    InvalidDefinitionError,
    MissingPhaseDependencyError,
    UnknownWorkflowError,
)
from nexus_orchestrator.orchestrator.workflow.definitions import WorkflowDefinition
from nexus_orchestrator.orchestrator.workflow.resolver import resolve_phase_order

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")


def _format_location(loc: tuple[int | str, ...]) -> str:
    parts: list[str] = []
    for item in loc:
        if isinstance(item, int):
            parts.append(f"[{item}]")
        else:
            parts.append(f".{item}" if parts else str(item))
    return "".join(parts) or "<document>"


def parse_definition(raw: object, source: str = "<memory>") -> WorkflowDefinition:
    """Validate a raw document and return an immutable definition.

    Every structural violation is collected before raising so a user can fix the
    whole document in one pass. Dependency problems are reported by the resolver
    once the structure is valid.
    """

    if not isinstance(raw, Mapping):
        raise InvalidDefinitionError(source, ["<document>: expected a mapping at top level"])

    try:
        definition = WorkflowDefinition.model_validate({**raw, "source": source})
    except ValidationError as e:
        violations = [
            f"{_format_location(tuple(err['loc']))}: {err['msg']}" for err in e.errors()
        ]
        raise InvalidDefinitionError(source, violations) from e

    # Rejects cycles and unknown dependencies at load time, not at run time.
    resolve_phase_order(definition.all_phases)
    return definition


def read_document(path: Path) -> object:
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise InvalidDefinitionError(str(path), [f"<document>: invalid JSON: {e}"]) from e
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise InvalidDefinitionError(str(path), [f"<document>: invalid YAML: {e}"]) from e


@dataclass(frozen=True, slots=True)
class _CacheEntry:
    fingerprint: tuple[int, int]
    definition: WorkflowDefinition


class WorkflowCatalog:
    """File-backed catalog of workflow definitions.

    Declaration order (used for deterministic tie-breaks) is the filename sort
    order of the documents in the catalog directory.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self._cache: dict[Path, _CacheEntry] = {}
        self._lock = threading.Lock()

    def discover(self) -> list[Path]:
        """Return definition files in a stable order."""

        if not self.directory.exists():
            return []

        candidates = [
            p for p in self.directory.iterdir() if p.is_file() and p.suffix in DEFINITION_SUFFIXES
        ]
        return sorted(candidates, key=lambda p: p.name)

    def load_file(self, path: Path) -> WorkflowDefinition:
        """Load and validate one definition file.

        Parsed definitions are cached until the file's mtime or size changes.

        Args:
            path: YAML or JSON definition file.

        Returns:
            The validated workflow definition.

        Raises:
            InvalidDefinitionError: The document is unreadable or fails validation.
            CircularDependencyError: Phase dependencies form a cycle.
            MissingPhaseDependencyError: A phase depends on an unknown phase.
        """
        resolved = path.resolve()
        stat = resolved.stat()
        fingerprint = (stat.st_mtime_ns, stat.st_size)

        with self._lock:
            entry = self._cache.get(resolved)
            if entry is not None and entry.fingerprint == fingerprint:
                return entry.definition

        definition = parse_definition(read_document(resolved), source=str(path))
        with self._lock:
            self._cache[resolved] = _CacheEntry(fingerprint=fingerprint, definition=definition)

        logger.debug(
            "Workflow definition loaded",
            extra={"workflow": definition.name, "path": str(path)},
        )
        return definition

    def load_all(self) -> list[WorkflowDefinition]:
        """Load every definition, failing closed if any document is invalid."""

        definitions: list[WorkflowDefinition] = []
        violations: list[str] = []
        for path in self.discover():
            try:
                definitions.append(self.load_file(path))
            except InvalidDefinitionError as e:
                violations.extend(f"{path.name}: {v}" for v in e.violations)
            except (CircularDependencyError, MissingPhaseDependencyError) as e:
                violations.append(f"{path.name}: {e.message}")

        if violations:
            raise InvalidDefinitionError(str(self.directory), violations)

        self._prune_missing()
        return definitions

    def validate_all(self) -> dict[str, list[str]]:
        """Return ``{file name: violations}`` for every document (empty list when valid)."""

        report: dict[str, list[str]] = {}
        for path in self.discover():
            try:
                self.load_file(path)
                report[path.name] = []
            except InvalidDefinitionError as e:
                report[path.name] = list(e.violations)
            except (CircularDependencyError, MissingPhaseDependencyError) as e:
                report[path.name] = [f"{e.kind.value}: {e.message}"]
        return report

    def get(self, name: str) -> WorkflowDefinition:
        for definition in self.load_all():
            if definition.name == name:
                return definition
        raise UnknownWorkflowError(f"Unknown workflow: {name!r}", details={"workflow": name})

    def names(self) -> list[str]:
        return [d.name for d in self.load_all()]

    def invalidate(self, path: Path | None = None) -> None:
        with self._lock:
            if path is None:
                self._cache.clear()
            else:
                self._cache.pop(path.resolve(), None)

    def _prune_missing(self) -> None:
        with self._lock:
            for cached in [p for p in self._cache if not p.exists()]:
                del self._cache[cached]
