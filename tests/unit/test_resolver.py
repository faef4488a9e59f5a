"""Unit tests for phase dependency resolution."""

from __future__ import annotations

import pytest

from nexus_orchestrator.core.errors import (
    CircularDependencyError,
    ErrorKind,
    MissingPhaseDependencyError,
)
from nexus_orchestrator.orchestrator.workflow.definitions import Phase
from nexus_orchestrator.orchestrator.workflow.resolver import resolve_phase_order


def _phases(*specs: tuple[str, list[str]]) -> list[Phase]:
    return [Phase(id=pid, dependencies=tuple(deps)) for pid, deps in specs]


def _ids(phases: list[Phase]) -> list[str]:
    return [p.id for p in phases]


def test_dependents_follow_in_declaration_order() -> None:
    order = resolve_phase_order(_phases(("a", []), ("b", ["a"]), ("c", ["a"])))

    assert _ids(order) == ["a", "b", "c"]


def test_declaration_order_breaks_ties_between_ready_phases() -> None:
    order = resolve_phase_order(
        _phases(("c", ["a"]), ("a", []), ("b", []), ("d", ["b", "c"]))
    )

    assert _ids(order) == ["a", "c", "b", "d"]


def test_order_is_a_valid_topological_order() -> None:
    phases = _phases(
        ("deploy", ["test", "docs"]),
        ("docs", ["build"]),
        ("test", ["build"]),
        ("build", ["fetch"]),
        ("fetch", []),
        ("lint", []),
    )

    order = _ids(resolve_phase_order(phases))

    assert sorted(order) == sorted(p.id for p in phases)
    for phase in phases:
        for dep in phase.dependencies:
            assert order.index(dep) < order.index(phase.id)


def test_duplicate_dependency_entries_are_harmless() -> None:
    order = resolve_phase_order(_phases(("a", []), ("b", ["a", "a"])))

    assert _ids(order) == ["a", "b"]


def test_missing_dependency_is_reported_before_sorting() -> None:
    # The cycle would also be an error; the unknown id is reported first.
    phases = _phases(("a", ["b"]), ("b", ["a"]), ("c", ["ghost"]))

    with pytest.raises(MissingPhaseDependencyError) as excinfo:
        resolve_phase_order(phases)

    assert excinfo.value.kind == ErrorKind.MISSING_PHASE_DEPENDENCY
    assert "ghost" in excinfo.value.message


def test_cycle_names_its_members() -> None:
    phases = _phases(("start", []), ("a", ["start", "c"]), ("b", ["a"]), ("c", ["b"]))

    with pytest.raises(CircularDependencyError) as excinfo:
        resolve_phase_order(phases)

    cycle = excinfo.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert "start" not in cycle


def test_self_dependency_is_a_cycle() -> None:
    with pytest.raises(CircularDependencyError) as excinfo:
        resolve_phase_order(_phases(("a", ["a"])))

    assert excinfo.value.cycle == ["a", "a"]
