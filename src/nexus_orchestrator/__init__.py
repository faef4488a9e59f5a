"""Nexus Orchestrator.

A declarative workflow engine for AI-assisted development tasks:
- workflow definitions loaded from YAML or JSON documents
- task-to-workflow matching with explainable scores
- dependency-ordered phase execution with timeouts, retries and checkpoints
- crash-safe run state with an append-only history
"""

__version__ = "0.1.0"

from nexus_orchestrator.core.config import EngineConfig

__all__ = ["__version__", "EngineConfig"]
