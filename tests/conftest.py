"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import yaml

from nexus_orchestrator.core.config import (
    CatalogConfig,
    EngineConfig,
    ExecutionConfig,
    MatcherConfig,
    StateConfig,
)
from nexus_orchestrator.orchestrator.workflow.catalog import parse_definition
from nexus_orchestrator.orchestrator.workflow.definitions import WorkflowDefinition
from nexus_orchestrator.orchestrator.workflow.providers import CallableProvider, ProviderRegistry
from nexus_orchestrator.state.store import FileStateStore, InMemoryStateStore


def workflow_doc(
    name: str = "bugfix",
    *,
    phases: list[dict[str, Any]] | None = None,
    intended_for: list[str] | None = None,
    complexity: str = "small",
    duration: float = 45,
    keywords: list[str] | None = None,
    defaults: dict[str, Any] | None = None,
    required: dict[str, Any] | None = None,
    optional_phases: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Build a raw workflow document in the on-disk shape."""
    doc: dict[str, Any] = {
        "metadata": {
            "name": name,
            "description": f"{name} workflow",
            "intendedFor": intended_for if intended_for is not None else [name],
            "complexityTier": complexity,
            "estimatedDurationMinutes": duration,
            "keywords": keywords if keywords is not None else [],
        },
        "phases": phases
        if phases is not None
        else [{"id": "work", "hooks": [{"provider": "tool", "action": "do"}]}],
    }
    if defaults is not None:
        doc["defaults"] = defaults
    if required is not None:
        doc["required"] = required
    if optional_phases is not None:
        doc["optionalPhases"] = optional_phases
    return doc


@pytest.fixture
def make_definition() -> Callable[..., WorkflowDefinition]:
    """Build a validated definition from :func:`workflow_doc` arguments."""

    def _make(name: str = "bugfix", **kwargs: Any) -> WorkflowDefinition:
        return parse_definition(workflow_doc(name, **kwargs), source=f"<{name}>")

    return _make


@pytest.fixture
def write_workflow(tmp_path: Path) -> Callable[..., Path]:
    """Write a workflow document into the temporary catalog directory."""

    catalog_dir = tmp_path / "workflows"
    catalog_dir.mkdir(exist_ok=True)

    def _write(file_name: str, doc: dict[str, Any]) -> Path:
        path = catalog_dir / file_name
        path.write_text(yaml.safe_dump(doc, sort_keys=False), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    state_dir = tmp_path / ".state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def file_store(temp_state_dir: Path) -> FileStateStore:
    return FileStateStore(temp_state_dir, backup_count=3)


@pytest.fixture
def memory_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def registry() -> ProviderRegistry:
    """A registry with one always-succeeding ``tool.do`` action."""
    return ProviderRegistry().register("tool", CallableProvider({"do": lambda ctx: {"count": 1}}))


@pytest.fixture
def engine_config(tmp_path: Path, temp_state_dir: Path) -> EngineConfig:
    """Provide a test engine configuration."""
    return EngineConfig(
        log_level="DEBUG",
        debug=True,
        catalog=CatalogConfig(workflows_path=tmp_path / "workflows"),
        state=StateConfig(storage_path=temp_state_dir, backup_count=3),
        matcher=MatcherConfig(),
        execution=ExecutionConfig(abandoned_attempt_grace_seconds=2.0),
    )
