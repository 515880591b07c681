"""
Tests for configuration models, settings and the YAML loader.
"""

import pytest
import yaml
from pydantic import ValidationError

from keel.config import (
    CompactionConfig,
    ExecutionConfig,
    KeelConfig,
    KeelSettings,
    QueueMode,
    load_config,
    resolve_env_vars,
)
from keel.errors import ConfigError


@pytest.fixture
def write_yaml(tmp_path):
    """Write a mapping (or raw text) to a YAML file and return its path."""

    def _write(data, name="keel.yaml"):
        path = tmp_path / name
        if isinstance(data, str):
            path.write_text(data)
        else:
            with open(path, "w") as f:
                yaml.dump(data, f)
        return path

    return _write


class TestDefaults:
    """Test configuration defaults."""

    def test_compaction_defaults(self):
        config = CompactionConfig()
        assert config.enabled is True
        assert config.reserve_tokens == 16_384
        assert config.keep_recent_tokens == 20_000
        assert config.fallback_user_chars == 200
        assert config.disclosure_threshold == 0.5
        assert config.threshold == config.context_window - config.reserve_tokens

    def test_execution_defaults(self):
        config = ExecutionConfig()
        assert config.steering_mode == QueueMode.ONE_AT_A_TIME
        assert config.follow_up_mode == QueueMode.ONE_AT_A_TIME
        assert config.tool_timeout is None

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            ExecutionConfig(max_parallel_tools=0)
        with pytest.raises(ValidationError):
            CompactionConfig(disclosure_threshold=1.5)


class TestLoadConfig:
    """Test load_config."""

    def test_load_full_document(self, write_yaml):
        path = write_yaml(
            {
                "execution": {"max_turns": 7, "steering_mode": "all", "tool_timeout": 30},
                "compaction": {"context_window": 32000, "reserve_tokens": 4000, "write_tools": ["edit"]},
            }
        )

        config = load_config(path)

        assert config.execution.max_turns == 7
        assert config.execution.steering_mode == QueueMode.ALL
        assert config.execution.tool_timeout == 30
        assert config.compaction.threshold == 28000
        assert config.compaction.write_tools == ["edit"]

    def test_missing_sections_use_defaults(self, write_yaml):
        config = load_config(write_yaml({"execution": {"max_turns": 3}}))
        assert config.compaction == CompactionConfig()

    def test_empty_file(self, write_yaml):
        assert load_config(write_yaml("")) == KeelConfig()

    def test_env_substitution(self, write_yaml, monkeypatch):
        monkeypatch.setenv("KEEL_TEST_WINDOW", "64000")
        path = write_yaml("compaction:\n  context_window: ${KEEL_TEST_WINDOW}\n  reserve_tokens: ${KEEL_TEST_RESERVE:8000}\n")

        config = load_config(path)

        assert config.compaction.context_window == 64000
        assert config.compaction.reserve_tokens == 8000

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Failed to read"):
            load_config(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, write_yaml):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(write_yaml("execution: [unclosed"))

    def test_validation_error(self, write_yaml):
        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config(write_yaml({"compaction": {"context_window": 100, "reserve_tokens": 200}}))

    def test_root_must_be_mapping(self, write_yaml):
        with pytest.raises(ConfigError, match="mapping"):
            load_config(write_yaml("- a\n- b\n"))


class TestResolveEnvVars:
    """Test resolve_env_vars."""

    def test_nested_structures(self, monkeypatch):
        monkeypatch.setenv("KEEL_TEST_NAME", "gpt")
        monkeypatch.delenv("KEEL_TEST_UNSET", raising=False)

        resolved = resolve_env_vars(
            {"a": "${KEEL_TEST_NAME}-4", "b": ["${KEEL_TEST_UNSET}", "${KEEL_TEST_UNSET:x}"], "c": 5}
        )

        assert resolved == {"a": "gpt-4", "b": ["", "x"], "c": 5}


class TestSettings:
    """Test KeelSettings."""

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("KEEL_SESSIONS_DIR", "/tmp/keel-sessions")
        monkeypatch.setenv("KEEL_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("KEEL_OPENAI_API_KEY", "sk-test")

        settings = KeelSettings(_env_file=None)

        assert settings.sessions_dir == "/tmp/keel-sessions"
        assert settings.log_level == "DEBUG"
        assert settings.openai_api_key.get_secret_value() == "sk-test"
        assert "sk-test" not in repr(settings)
