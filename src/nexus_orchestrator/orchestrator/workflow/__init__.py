"""Workflow domain concepts.

This package holds first-class types for:
- Workflow definitions and their phase policies
- Dependency resolution and task matching
- Capability providers invoked by phases
- A persisted run state machine

The intent is to make long-running workflows restartable, inspectable, and
deterministic in their control flow.
"""

__all__: list[str] = []
