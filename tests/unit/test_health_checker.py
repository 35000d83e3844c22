"""Tests for HealthChecker."""

import pytest

from agent_orchestrator.agents import base as agent_base
from agent_orchestrator.agents.claude_code import ClaudeCodeAdapter
from agent_orchestrator.agents.registry import AgentRegistry
from agent_orchestrator.core.config import OrchestratorConfig
from agent_orchestrator.health.checker import CheckStatus, HealthChecker

VERSION_AND_OK = """
if "--version" in sys.argv:
    print("claude 1.2.3")
    sys.exit(0)
print(json.dumps({"type": "result", "result": "ok"}))
"""


def _checker(tmp_path, *adapters, config_name="agent-orchestrator.yaml"):
    registry = AgentRegistry()
    for adapter in adapters:
        registry.register(adapter)
    config = OrchestratorConfig(workspace=tmp_path)
    return HealthChecker(registry, config, tmp_path / config_name)


def _by_name(results):
    return {r.name: r for r in results}


class TestSetupChecks:
    def test_missing_config_is_warning(self, tmp_path):
        result = _checker(tmp_path).check_config_file()

        assert result.status == CheckStatus.WARNING
        assert result.fix_action

    def test_config_present(self, tmp_path):
        (tmp_path / "agent-orchestrator.yaml").write_text("log_level: INFO\n")

        result = _checker(tmp_path).check_config_file()

        assert result.status == CheckStatus.PASSED
        assert "claude-code" in result.message

    def test_store_directory(self, tmp_path):
        checker = _checker(tmp_path)
        assert checker.check_store_directory().status == CheckStatus.WARNING

        (tmp_path / ".agent-orchestrator" / "projects").mkdir(parents=True)
        assert checker.check_store_directory().status == CheckStatus.PASSED


class TestAgentChecks:
    @pytest.mark.asyncio
    async def test_probes_skipped_by_default(self, tmp_path, fake_cli):
        """Without --probe no prompt is sent to the agent."""
        checker = _checker(tmp_path, ClaudeCodeAdapter(custom_path=fake_cli(VERSION_AND_OK)))

        results = _by_name(await checker.run_all_checks())

        assert results["Claude Code CLI"].status == CheckStatus.PASSED
        assert "1.2.3" in results["Claude Code CLI"].message
        assert results["Claude Code Auth & Usage"].status == CheckStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_probes(self, tmp_path, fake_cli):
        checker = _checker(tmp_path, ClaudeCodeAdapter(custom_path=fake_cli(VERSION_AND_OK)))

        results = _by_name(await checker.run_all_checks(probe=True))

        assert results["Claude Code Auth"].status == CheckStatus.PASSED
        assert results["Claude Code Usage"].status == CheckStatus.PASSED

    @pytest.mark.asyncio
    async def test_missing_cli_skips_probes(self, tmp_path, monkeypatch):
        """A failed CLI check stops further checks for that agent."""
        monkeypatch.setattr(agent_base, "resolve_cli_path", lambda *args, **kwargs: None)
        checker = _checker(tmp_path, ClaudeCodeAdapter())

        results = _by_name(await checker.run_all_checks(probe=True))

        assert results["Claude Code CLI"].status == CheckStatus.FAILED
        assert "Claude Code Auth" not in results

    @pytest.mark.asyncio
    async def test_usage_limit_fails(self, tmp_path, fake_cli):
        script = fake_cli("""
print(json.dumps({"type": "result", "is_error": True,
                  "result": "usage limit reached, resets 2030-01-01T00:00:00Z"}))
""")
        checker = _checker(tmp_path)

        result = await checker.check_usage(ClaudeCodeAdapter(custom_path=script))

        assert result.status == CheckStatus.FAILED
        assert result.message == "Usage limit reached, resets at 2030-01-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_auth_failure_suggests_reauth(self, tmp_path, fake_cli):
        script = fake_cli('print("401 Unauthorized", file=sys.stderr); sys.exit(1)')
        checker = _checker(tmp_path)

        result = await checker.check_auth(ClaudeCodeAdapter(custom_path=script))

        assert result.status == CheckStatus.FAILED
        assert result.fix_action == "agent-orchestrator reauth claude-code"
