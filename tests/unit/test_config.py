"""Unit tests for configuration."""

import logging
import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from nexus_orchestrator.core.config import (
    CatalogConfig,
    EngineConfig,
    ExecutionConfig,
    MatcherConfig,
    StateConfig,
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Run each test in an empty directory without ORCHESTRATOR_* variables."""
    monkeypatch.chdir(tmp_path)
    for key in [k for k in os.environ if k.startswith("ORCHESTRATOR_")]:
        monkeypatch.delenv(key)


def test_state_config_defaults() -> None:
    """Test state config default values."""
    config = StateConfig()

    assert config.storage_path == Path(".state")
    assert config.backup_count == 5
    assert config.history_retention_days == 90


def test_matcher_config_defaults() -> None:
    """Test matcher weights default values."""
    config = MatcherConfig()

    assert config.intent_weight == 0.40
    assert config.complexity_weight == 0.20
    assert config.confidence_threshold == 0.5
    assert config.max_alternatives == 3


def test_execution_config_defaults() -> None:
    config = ExecutionConfig()

    assert config.checkpoint_interval == 1
    assert config.timeout_extension_factor == 1.5
    assert config.provider_factory is None


def test_engine_config_composition() -> None:
    """Test engine config with nested configs."""
    config = EngineConfig(
        log_level="DEBUG",
        debug=True,
    )

    assert config.log_level == "DEBUG"
    assert config.debug is True
    assert isinstance(config.catalog, CatalogConfig)
    assert isinstance(config.state, StateConfig)
    assert isinstance(config.matcher, MatcherConfig)
    assert isinstance(config.execution, ExecutionConfig)


def test_nested_configs_read_their_own_env_prefix(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ORCHESTRATOR_CATALOG_WORKFLOWS_PATH", "/srv/workflows")
    monkeypatch.setenv("ORCHESTRATOR_STATE_BACKUP_COUNT", "9")
    monkeypatch.setenv("ORCHESTRATOR_MATCHER_CONFIDENCE_THRESHOLD", "0.7")
    monkeypatch.setenv("ORCHESTRATOR_EXECUTION_CHECKPOINT_INTERVAL", "3")

    config = EngineConfig()

    assert config.catalog.workflows_path == Path("/srv/workflows")
    assert config.state.backup_count == 9
    assert config.matcher.confidence_threshold == 0.7
    assert config.execution.checkpoint_interval == 3


def test_dotenv_file_is_read(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text(
        "ORCHESTRATOR_LOG_LEVEL=WARNING\nORCHESTRATOR_STATE_HISTORY_RETENTION_DAYS=7\n",
        encoding="utf-8",
    )

    config = EngineConfig()

    assert config.log_level == "WARNING"
    assert config.state.history_retention_days == 7


def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    with pytest.raises(ValidationError):
        ExecutionConfig(timeout_extension_factor=1.0)

    monkeypatch.setenv("ORCHESTRATOR_STATE_BACKUP_COUNT", "0")
    with pytest.raises(ValidationError):
        StateConfig()


def test_setup_logging_honours_debug() -> None:
    root = logging.getLogger()
    package_logger = logging.getLogger("nexus_orchestrator")
    saved = (list(root.handlers), root.level, package_logger.level)
    try:
        EngineConfig(log_level="warning", debug=True).setup_logging()

        assert root.level == logging.WARNING
        assert package_logger.level == logging.DEBUG
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
        package_logger.setLevel(saved[2])
