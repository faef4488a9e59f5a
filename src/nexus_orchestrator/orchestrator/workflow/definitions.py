"""Immutable workflow definition models.

A workflow document on disk looks like::

    metadata:
      name: bugfix
      description: Reproduce, fix and verify a defect
      intendedFor: [bugfix]
      complexityTier: small
      estimatedDurationMinutes: 45
      keywords: [fix, bug]
    defaults:
      timeoutMs: 300000
      on_failure: abort
      on_timeout: prompt
      max_retries: 2
    required:
      capabilities: [tester]
      externalServices: []
    phases:
      - id: reproduce
        name: Reproduce
        hooks:
          - {provider: tester, action: reproduce}
      - id: fix
        dependencies: [reproduce]
        hooks:
          - {provider: editor, action: apply-fix}

Both the camelCase keys shown above and their snake_case spelling are accepted.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PHASE_ID_PATTERN = r"^[a-z0-9-]+$"


class ComplexityTier(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK: dict[ComplexityTier, int] = {
    ComplexityTier.SMALL: 0,
    ComplexityTier.MEDIUM: 1,
    ComplexityTier.LARGE: 2,
}


class FailurePolicy(str, Enum):
    ABORT = "abort"
    RETRY = "retry"
    SKIP = "skip"
    PROMPT = "prompt"


class TimeoutPolicy(str, Enum):
    ABORT = "abort"
    EXTEND = "extend"
    SKIP = "skip"
    PROMPT = "prompt"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class CapabilityInvocation(_Frozen):
    """One call a phase makes to a capability provider."""

    provider_id: str = Field(alias="provider", min_length=1)
    action_id: str = Field(alias="action", min_length=1)
    required: bool = True
    external_service_id: str | None = Field(default=None, alias="external_service")
    mandatory: bool = False

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_keys(cls, data: object) -> object:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "provider" not in data and "provider_id" not in data and "skill" in data:
            data["provider"] = data.pop("skill")
        if "action" not in data and "action_id" not in data and "command" in data:
            data["action"] = data.pop("command")
        for key in ("externalService", "mcp"):
            if key in data and "external_service" not in data:
                data["external_service"] = data.pop(key)
        return data

    @property
    def key(self) -> str:
        return f"{self.provider_id}.{self.action_id}"


class Phase(_Frozen):
    """A unit of work within a workflow."""

    id: str = Field(pattern=PHASE_ID_PATTERN)
    name: str = ""
    description: str = ""
    timeout_ms: int | None = Field(default=None, alias="timeoutMs", gt=0)
    dependencies: tuple[str, ...] = ()
    on_failure: FailurePolicy | None = None
    on_timeout: TimeoutPolicy | None = None
    max_retries: int | None = Field(default=None, ge=0)
    optional: bool = False
    skip_if_unavailable: bool = False
    invocations: tuple[CapabilityInvocation, ...] = Field(default=(), alias="hooks")


class WorkflowMetadata(_Frozen):
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    version: str = "1.0.0"
    intended_for: frozenset[str] = Field(alias="intendedFor", min_length=1)
    complexity_tier: ComplexityTier = Field(default=ComplexityTier.MEDIUM, alias="complexityTier")
    estimated_duration_minutes: float = Field(
        default=60.0, alias="estimatedDurationMinutes", ge=0
    )
    keywords: frozenset[str] = frozenset()

    @field_validator("keywords", "intended_for", mode="after")
    @classmethod
    def _normalise_labels(cls, value: frozenset[str]) -> frozenset[str]:
        return frozenset(v.strip().lower() for v in value if v.strip())


class WorkflowDefaults(_Frozen):
    timeout_ms: int = Field(default=300_000, alias="timeoutMs", gt=0)
    on_failure: FailurePolicy = FailurePolicy.ABORT
    on_timeout: TimeoutPolicy = TimeoutPolicy.PROMPT
    max_retries: int = Field(default=2, ge=0)


class WorkflowRequirements(_Frozen):
    capabilities: frozenset[str] = frozenset()
    external_services: frozenset[str] = Field(default=frozenset(), alias="externalServices")


class PhasePolicy(_Frozen):
    """Effective per-phase policy after applying the workflow defaults."""

    timeout_ms: int
    on_failure: FailurePolicy
    on_timeout: TimeoutPolicy
    max_retries: int


class WorkflowDefinition(_Frozen):
    """A validated workflow document.

    Instances are immutable; the catalog replaces them wholesale when the
    backing file changes.
    """

    metadata: WorkflowMetadata
    defaults: WorkflowDefaults = Field(default_factory=WorkflowDefaults)
    required: WorkflowRequirements = Field(default_factory=WorkflowRequirements)
    phases: tuple[Phase, ...] = Field(min_length=1)
    optional_phases: tuple[Phase, ...] = Field(default=(), alias="optionalPhases")
    source: str | None = None

    @field_validator("optional_phases", mode="after")
    @classmethod
    def _mark_optional(cls, value: tuple[Phase, ...]) -> tuple[Phase, ...]:
        return tuple(p if p.optional else p.model_copy(update={"optional": True}) for p in value)

    @model_validator(mode="after")
    def _unique_phase_ids(self) -> WorkflowDefinition:
        seen: set[str] = set()
        duplicates: list[str] = []
        for phase in self.all_phases:
            if phase.id in seen:
                duplicates.append(phase.id)
            seen.add(phase.id)
        if duplicates:
            raise ValueError(f"duplicate phase ids: {', '.join(sorted(set(duplicates)))}")
        return self

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def description(self) -> str:
        return self.metadata.description

    @property
    def version(self) -> str:
        return self.metadata.version

    @property
    def intended_for(self) -> frozenset[str]:
        return self.metadata.intended_for

    @property
    def complexity_tier(self) -> ComplexityTier:
        return self.metadata.complexity_tier

    @property
    def estimated_duration_minutes(self) -> float:
        return self.metadata.estimated_duration_minutes

    @property
    def keywords(self) -> frozenset[str]:
        return self.metadata.keywords

    @property
    def required_capabilities(self) -> frozenset[str]:
        return self.required.capabilities

    @property
    def required_external_services(self) -> frozenset[str]:
        return self.required.external_services

    @property
    def all_phases(self) -> tuple[Phase, ...]:
        """Main phases followed by optional phases, in declaration order."""
        return self.phases + self.optional_phases

    def policy_for(self, phase: Phase) -> PhasePolicy:
        return PhasePolicy(
            timeout_ms=phase.timeout_ms or self.defaults.timeout_ms,
            on_failure=phase.on_failure or self.defaults.on_failure,
            on_timeout=phase.on_timeout or self.defaults.on_timeout,
            max_retries=(
                phase.max_retries if phase.max_retries is not None else self.defaults.max_retries
            ),
        )
