"""Capability providers: the interface, a callable-backed provider and the registry.

Providers are the external actors that perform a phase's actual work. The engine
only sees them through :class:`CapabilityProvider` and resolves them by id through
a :class:`ProviderRegistry` built once at startup.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from nexus_orchestrator.core.errors import CapabilityUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InvocationContext:
    """Fully materialised inputs for a single capability invocation.

    ``previous_results`` is a copy; providers cannot reach the live run.
    """

    run_id: str
    workflow_name: str
    phase_id: str
    task_description: str
    previous_results: Mapping[str, Any] = field(default_factory=dict)
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass(frozen=True, slots=True)
class InvocationResult:
    status: Literal["success", "error"]
    output: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @classmethod
    def success(cls, output: Any = None) -> InvocationResult:
        return cls(status="success", output=output)

    @classmethod
    def failure(cls, error: str) -> InvocationResult:
        return cls(status="error", error=error)


class CapabilityProvider(ABC):
    """Abstract base class for capability providers.

    Only :meth:`invoke` is required. The remaining hooks default to no-ops and
    exist for providers that own resources worth snapshotting or reverting.
    """

    @abstractmethod
    def invoke(self, action_id: str, context: InvocationContext) -> InvocationResult:
        """Perform ``action_id`` for the phase described by ``context``."""

    def is_available(self) -> bool:
        return True

    def snapshot(self, context: InvocationContext) -> Any:
        """Return an opaque, JSON-serialisable snapshot of provider-owned resources."""
        return None

    def restore(self, snapshot: Any) -> None:
        """Revert provider-owned resources to ``snapshot``."""

    def discard_artifacts(self, since: datetime) -> None:
        """Drop artifacts created after ``since``."""

    def compensate(self, action_id: str, context: InvocationContext) -> None:
        """Called when an invocation of ``action_id`` was abandoned at a timeout."""


class CallableProvider(CapabilityProvider):
    """Provider backed by plain callables, one per action.

    A callable's return value becomes the success output; an exception becomes an
    error result. Returning an :class:`InvocationResult` passes it through as-is.
    """

    def __init__(
        self,
        actions: Mapping[str, Callable[[InvocationContext], Any]],
        *,
        available: bool | Callable[[], bool] = True,
    ) -> None:
        self._actions = dict(actions)
        self._available = available

    def invoke(self, action_id: str, context: InvocationContext) -> InvocationResult:
        func = self._actions.get(action_id)
        if func is None:
            return InvocationResult.failure(f"Unknown action {action_id!r}")
        try:
            result = func(context)
        except Exception as e:
            return InvocationResult.failure(f"{type(e).__name__}: {e}")
        if isinstance(result, InvocationResult):
            return result
        return InvocationResult.success(result)

    def is_available(self) -> bool:
        if callable(self._available):
            return bool(self._available())
        return self._available


class ProviderRegistry:
    """Maps provider ids to implementations and external service ids to probes."""

    def __init__(self) -> None:
        self._providers: dict[str, CapabilityProvider] = {}
        self._services: dict[str, Callable[[], bool]] = {}

    def register(self, provider_id: str, provider: CapabilityProvider) -> ProviderRegistry:
        self._providers[provider_id] = provider
        return self

    def register_service(
        self, service_id: str, probe: Callable[[], bool] | bool = True
    ) -> ProviderRegistry:
        self._services[service_id] = probe if callable(probe) else (lambda: bool(probe))
        return self

    @property
    def provider_ids(self) -> list[str]:
        return list(self._providers)

    def get(self, provider_id: str) -> CapabilityProvider:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise CapabilityUnavailableError(
                f"Unknown capability provider: {provider_id!r}",
                details={"provider": provider_id},
            )
        return provider

    def is_available(self, identifier: str) -> bool:
        """Probe a provider id or an external service id."""

        provider = self._providers.get(identifier)
        if provider is not None:
            return _probe(provider.is_available, identifier)
        probe = self._services.get(identifier)
        if probe is not None:
            return _probe(probe, identifier)
        return False

    def invoke(
        self, provider_id: str, action_id: str, context: InvocationContext
    ) -> InvocationResult:
        return self.get(provider_id).invoke(action_id, context)

    def snapshot(self, context: InvocationContext) -> dict[str, Any]:
        snapshots: dict[str, Any] = {}
        for provider_id, provider in self._providers.items():
            value = provider.snapshot(context)
            if value is not None:
                snapshots[provider_id] = value
        return snapshots

    def restore(self, snapshot: Mapping[str, Any]) -> None:
        for provider_id, value in snapshot.items():
            provider = self._providers.get(provider_id)
            if provider is None:
                logger.warning(
                    "Snapshot references unknown provider; skipping restore",
                    extra={"provider": provider_id},
                )
                continue
            provider.restore(value)

    def discard_artifacts(self, since: datetime) -> None:
        for provider in self._providers.values():
            provider.discard_artifacts(since)

    def compensate(self, provider_id: str, action_id: str, context: InvocationContext) -> None:
        provider = self._providers.get(provider_id)
        if provider is None:
            return
        try:
            provider.compensate(action_id, context)
        except Exception:
            logger.exception(
                "Compensation hook failed",
                extra={"provider": provider_id, "action": action_id, "phase": context.phase_id},
            )


def _probe(func: Callable[[], bool], identifier: str) -> bool:
    try:
        return bool(func())
    except Exception:
        logger.warning("Availability probe failed", extra={"id": identifier}, exc_info=True)
        return False

