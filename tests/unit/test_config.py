"""Tests for configuration loading and validation."""

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from agent_orchestrator.core.config import (
    AgentsConfig,
    OrchestratorConfig,
    ProbeConfig,
    TaskRunConfig,
    clear_config_cache,
    load_config,
)


@pytest.fixture(autouse=True)
def _fresh_cache():
    clear_config_cache()
    yield
    clear_config_cache()


def _write_config(path: Path, text: str) -> Path:
    path.write_text(text)
    return path


class TestLoadConfig:
    def test_missing_file_uses_defaults(self, tmp_path):
        """No config file is not an error."""
        config = load_config(tmp_path / "absent.yaml")

        assert config.agents.default_agent == "claude-code"
        assert config.probe.timeout_seconds == 30.0
        assert config.tasks.max_duration_seconds == 0

    def test_yaml_values(self, tmp_path):
        """Nested sections are parsed into their models."""
        path = _write_config(tmp_path / "agent-orchestrator.yaml", """
agents:
  default_agent: gemini
  claude_code:
    custom_path: /opt/claude
    default_model: opus
  gemini:
    extra_env:
      FOO: bar
probe:
  timeout_seconds: 5
tasks:
  max_duration_seconds: 600
commit_message:
  model: sonnet
""")

        config = load_config(path)

        assert config.agents.default_agent == "gemini"
        assert config.agents.for_agent("claude-code").custom_path == "/opt/claude"
        assert config.agents.for_agent("gemini").extra_env == {"FOO": "bar"}
        assert config.probe.timeout_seconds == 5
        assert config.tasks.max_duration_seconds == 600
        assert config.commit_message.model == "sonnet"

    def test_empty_file(self, tmp_path):
        """An empty YAML document yields defaults."""
        config = load_config(_write_config(tmp_path / "c.yaml", ""))

        assert config.agents.default_agent == "claude-code"

    def test_env_var_expansion(self, tmp_path, monkeypatch):
        """"${VAR}" values are replaced from the environment."""
        monkeypatch.setenv("TEST_GEMINI_KEY", "secret")
        path = _write_config(tmp_path / "c.yaml", "agents:\n  gemini:\n    api_key: ${TEST_GEMINI_KEY}\n")

        config = load_config(path)

        assert config.agents.gemini.api_key == "secret"

    def test_unset_env_var_kept_literal(self, tmp_path, monkeypatch):
        """Unset variables keep the placeholder text."""
        monkeypatch.delenv("TEST_UNSET_VAR", raising=False)
        path = _write_config(tmp_path / "c.yaml", "agents:\n  gemini:\n    api_key: ${TEST_UNSET_VAR}\n")

        config = load_config(path)

        assert config.agents.gemini.api_key == "${TEST_UNSET_VAR}"

    def test_cached_until_mtime_changes(self, tmp_path):
        """Reloading an unchanged file returns the cached object."""
        path = _write_config(tmp_path / "c.yaml", "log_level: DEBUG\n")

        first = load_config(path)
        assert load_config(path) is first

        _write_config(path, "log_level: WARNING\n")
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 10))

        reloaded = load_config(path)
        assert reloaded is not first
        assert reloaded.log_level == "WARNING"

    def test_invalid_yaml_value_raises(self, tmp_path):
        """Validation errors propagate to the caller."""
        path = _write_config(tmp_path / "c.yaml", "agents:\n  default_agent: copilot\n")

        with pytest.raises(ValidationError):
            load_config(path)


class TestValidators:
    def test_unknown_default_agent(self):
        with pytest.raises(ValidationError, match="default_agent must be one of"):
            AgentsConfig(default_agent="copilot")

    @pytest.mark.parametrize("timeout", [0, -1])
    def test_probe_timeout_must_be_positive(self, timeout):
        with pytest.raises(ValidationError):
            ProbeConfig(timeout_seconds=timeout)

    def test_negative_max_duration(self):
        with pytest.raises(ValidationError):
            TaskRunConfig(max_duration_seconds=-5)

    @pytest.mark.parametrize("grace", [0, -1.5])
    def test_kill_grace_must_be_positive(self, grace):
        with pytest.raises(ValidationError, match="kill_grace_seconds must be positive"):
            TaskRunConfig(kill_grace_seconds=grace)

    def test_gemini_tier_normalized(self):
        assert AgentsConfig(gemini={"tier": "tier_3"}).gemini.tier == "TIER_3"

    def test_unknown_gemini_tier(self):
        with pytest.raises(ValidationError, match="tier must be one of"):
            AgentsConfig(gemini={"tier": "platinum"})

    def test_usage_state_file_default(self):
        assert TaskRunConfig().usage_state_file == Path(".agent-orchestrator/usage_limits.json")

    def test_commit_message_agent_must_be_known(self):
        with pytest.raises(ValidationError, match="not a known agent"):
            OrchestratorConfig(commit_message={"agent": "copilot"})

    def test_env_prefix(self, monkeypatch):
        """AGENT_ORCH_* environment variables override defaults."""
        monkeypatch.setenv("AGENT_ORCH_LOG_LEVEL", "DEBUG")

        assert OrchestratorConfig().log_level == "DEBUG"
