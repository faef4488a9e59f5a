"""FastAPI server adapter for nexus-orchestrator.

This module exposes a REST API over the workflow engine.

Design intent:
- Keep business logic in `nexus_orchestrator.core` and `nexus_orchestrator.orchestrator.*`
- Keep server-specific concerns (routing, CORS, error mapping) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from nexus_orchestrator.server.app import create_app
