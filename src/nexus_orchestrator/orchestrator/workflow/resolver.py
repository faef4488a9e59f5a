"""Dependency resolution for workflow phases.

Produces a deterministic execution order: a phase always comes after every phase
it depends on, and among phases that are ready at the same time the one declared
first wins.
"""

from __future__ import annotations

import heapq
from collections.abc import Sequence

from nexus_orchestrator.core.errors import CircularDependencyError, MissingPhaseDependencyError
from nexus_orchestrator.orchestrator.workflow.definitions import Phase


def resolve_phase_order(phases: Sequence[Phase]) -> list[Phase]:
    """Return ``phases`` in dependency order.

    Raises:
        MissingPhaseDependencyError: a phase depends on an id that is not declared.
        CircularDependencyError: the dependency graph has a cycle.
    """

    index = {phase.id: i for i, phase in enumerate(phases)}

    for phase in phases:
        for dep in phase.dependencies:
            if dep not in index:
                raise MissingPhaseDependencyError(phase.id, dep)

    # Edges point phase -> dependency; a phase is ready once all its dependencies ran.
    pending = {phase.id: len(set(phase.dependencies)) for phase in phases}
    dependents: dict[str, list[str]] = {phase.id: [] for phase in phases}
    for phase in phases:
        for dep in set(phase.dependencies):
            dependents[dep].append(phase.id)

    ready = [index[pid] for pid, count in pending.items() if count == 0]
    heapq.heapify(ready)

    order: list[Phase] = []
    while ready:
        phase = phases[heapq.heappop(ready)]
        order.append(phase)
        for dependent in dependents[phase.id]:
            pending[dependent] -= 1
            if pending[dependent] == 0:
                heapq.heappush(ready, index[dependent])

    if len(order) < len(phases):
        resolved = {p.id for p in order}
        remaining = [p for p in phases if p.id not in resolved]
        raise CircularDependencyError(_find_cycle(remaining))

    return order


def _find_cycle(remaining: Sequence[Phase]) -> list[str]:
    """Return one concrete cycle among the unresolved phases (first node repeated last)."""

    deps = {p.id: list(p.dependencies) for p in remaining}
    visiting: list[str] = []
    on_stack: set[str] = set()
    done: set[str] = set()

    def dfs(node: str) -> list[str] | None:
        visiting.append(node)
        on_stack.add(node)
        for dep in deps.get(node, []):
            if dep not in deps or dep in done:
                continue
            if dep in on_stack:
                start = visiting.index(dep)
                return visiting[start:] + [dep]
            found = dfs(dep)
            if found:
                return found
        visiting.pop()
        on_stack.discard(node)
        done.add(node)
        return None

    for phase in remaining:
        if phase.id not in done:
            cycle = dfs(phase.id)
            if cycle:
                return cycle

    # Unreachable for a real cycle, but never report an empty list.
    return [p.id for p in remaining]
