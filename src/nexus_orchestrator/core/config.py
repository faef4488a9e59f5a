"""Core configuration for the workflow engine."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from nexus_orchestrator.orchestrator.logging import configure_logging


class CatalogConfig(BaseSettings):
    """Configuration for the workflow catalog."""

    workflows_path: Path = Field(
        default=Path("workflows"),
        description="Directory holding workflow definition documents (YAML or JSON)",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_CATALOG_",
        env_file=".env",
        extra="ignore",
    )


class StateConfig(BaseSettings):
    """Configuration for run state persistence."""

    storage_path: Path = Field(
        default=Path(".state"),
        description="Directory for the current run, its backups and the history log",
    )
    backup_count: int = Field(
        default=5,
        ge=1,
        description="Number of timestamped run backups kept for corruption recovery",
    )
    history_retention_days: int = Field(
        default=90,
        ge=1,
        description="History entries older than this are dropped by prune-history",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_STATE_",
        env_file=".env",
        extra="ignore",
    )


class MatcherConfig(BaseSettings):
    """Scoring weights and thresholds for workflow matching."""

    intent_weight: float = Field(default=0.40, ge=0.0, le=1.0)
    complexity_weight: float = Field(default=0.20, ge=0.0, le=1.0)
    adjacent_complexity_weight: float = Field(default=0.10, ge=0.0, le=1.0)
    keyword_weight: float = Field(default=0.15, ge=0.0, le=1.0)
    duration_weight: float = Field(default=0.10, ge=0.0, le=1.0)
    duration_window_minutes: float = Field(
        default=180.0,
        gt=0.0,
        description="Duration difference at which the duration term reaches zero",
    )
    history_weight: float = Field(default=0.10, ge=0.0, le=1.0)
    history_default: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="History preference used when no similar history exists",
    )
    availability_weight: float = Field(default=0.05, ge=0.0, le=1.0)

    confidence_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Top scores below this yield NO_WORKFLOW_MATCH",
    )
    max_alternatives: int = Field(default=3, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_MATCHER_",
        env_file=".env",
        extra="ignore",
    )


class ExecutionConfig(BaseSettings):
    """Configuration for phase execution."""

    checkpoint_interval: int = Field(
        default=1,
        ge=0,
        description="Create a checkpoint every N completed phases (0 disables)",
    )
    timeout_extension_factor: float = Field(
        default=1.5,
        gt=1.0,
        description="Multiplier applied to a phase timeout by the 'extend' policy",
    )
    abandoned_attempt_grace_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description=(
            "How long an 'extend' re-attempt waits for the timed-out attempt to stop. "
            "If it is still running the phase is not re-attempted and the run errors."
        ),
    )
    provider_factory: str | None = Field(
        default=None,
        description="'module:callable' returning a ProviderRegistry (CLI and server)",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_EXECUTION_",
        env_file=".env",
        extra="ignore",
    )


class EngineConfig(BaseSettings):
    """Main configuration for the engine."""

    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    catalog: CatalogConfig = Field(
        default_factory=CatalogConfig,
        description="Workflow catalog configuration",
    )
    state: StateConfig = Field(
        default_factory=StateConfig,
        description="State configuration",
    )
    matcher: MatcherConfig = Field(
        default_factory=MatcherConfig,
        description="Matcher configuration",
    )
    execution: ExecutionConfig = Field(
        default_factory=ExecutionConfig,
        description="Execution configuration",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
        env_file=".env",
        extra="ignore",
    )

    def setup_logging(self) -> None:
        """Configure logging based on settings."""
        configure_logging(self.log_level)

        if self.debug:
            logging.getLogger("nexus_orchestrator").setLevel(logging.DEBUG)
