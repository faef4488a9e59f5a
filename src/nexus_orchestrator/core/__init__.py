"""Core package initialization."""

from nexus_orchestrator.core.config import EngineConfig
from nexus_orchestrator.core.engine import WorkflowEngine
from nexus_orchestrator.core.errors import EngineError, ErrorKind

__all__ = [
    "EngineConfig",
    "EngineError",
    "ErrorKind",
    "WorkflowEngine",
]
