"""Workflow orchestration components: definitions, matching and execution."""
