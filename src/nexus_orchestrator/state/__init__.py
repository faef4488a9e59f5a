"""Run state persistence."""

from nexus_orchestrator.state.store import FileStateStore, InMemoryStateStore, StateStore

__all__ = ["FileStateStore", "InMemoryStateStore", "StateStore"]
