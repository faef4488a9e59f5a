"""Thin module entrypoint; the CLI lives in `nexus_orchestrator.orchestrator.main`."""

from __future__ import annotations

from nexus_orchestrator.orchestrator.main import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
