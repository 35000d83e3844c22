"""Tests for the agent-orchestrator command line."""

import json
import logging
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from agent_orchestrator.agents.anthropic_api import UsagePercentage, UsageWindow
from agent_orchestrator.cli.main import cli
from agent_orchestrator.core.config import clear_config_cache
from agent_orchestrator.llm.model_aliases import ModelInfo
from agent_orchestrator.utils.rich_logging import ROOT_LOGGER

AGENT_CLI = """
print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "Done."}]}}))
print(json.dumps({"type": "result", "result": "ok"}))
"""


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture(autouse=True)
def _detach_log_handlers():
    """The CLI binds handlers to CliRunner's streams; drop them afterwards."""
    yield
    root = logging.getLogger(ROOT_LOGGER)
    for handler in root.handlers[:]:
        handler.close()
        root.removeHandler(handler)


@pytest.fixture
def workspace(tmp_path, fake_cli):
    """Workspace whose config points Claude Code at a fake CLI."""
    script = fake_cli(AGENT_CLI)
    (tmp_path / "agent-orchestrator.yaml").write_text(
        f"agents:\n  claude_code:\n    custom_path: {script}\n"
    )
    return tmp_path


def _invoke(workspace, *args):
    return CliRunner().invoke(cli, ["-w", str(workspace), *args])


def _task_ids(workspace, project="proj"):
    tasks_dir = workspace / ".agent-orchestrator" / "projects" / project / "tasks"
    return [json.loads(p.read_text())["id"] for p in sorted(tasks_dir.glob("*.json"))]


class TestModelsCommand:
    def test_resolve_alias(self, tmp_path):
        result = _invoke(tmp_path, "models", "--agent", "claude-code", "--resolve", "opus")

        assert result.exit_code == 0
        assert "claude-opus-4-5" in result.output

    def test_lists_catalog_and_commit_model(self, tmp_path):
        result = _invoke(tmp_path, "models", "--agent", "gemini")

        assert result.exit_code == 0
        assert "gemini-2.5-flash" in result.output
        assert "Commit messages" in result.output

    def test_unknown_agent(self, tmp_path):
        result = _invoke(tmp_path, "models", "--agent", "copilot")

        assert result.exit_code == 1


    def test_refresh_fetches_from_api(self, tmp_path):
        fetched = [ModelInfo(id="claude-opus-5", name="Claude Opus 5", is_default=True)]
        with patch(
            "agent_orchestrator.agents.claude_code.AnthropicApiClient.fetch_available_models",
            return_value=fetched,
        ):
            result = _invoke(tmp_path, "models", "--agent", "claude-code", "--refresh")

        assert result.exit_code == 0
        assert "claude-opus-5" in result.output
        assert "claude-haiku-4-5" not in result.output

class TestTaskLifecycleCommands:
    def test_run_then_accept(self, workspace):
        """run creates and executes a task; review accepts it."""
        result = _invoke(workspace, "run", "Write the docs", "--project", "proj")

        assert result.exit_code == 0, result.output
        assert "needs_review" in result.output
        (task_id,) = _task_ids(workspace)

        listing = _invoke(workspace, "tasks", "--project", "proj")
        assert task_id in listing.output

        review = _invoke(workspace, "review", task_id, "--project", "proj", "--accept")
        assert review.exit_code == 0
        assert "completed" in review.output

    def test_review_requires_needs_review(self, workspace):
        _invoke(workspace, "run", "Write the docs", "--project", "proj")
        (task_id,) = _task_ids(workspace)
        _invoke(workspace, "review", task_id, "--project", "proj", "--reject")

        again = _invoke(workspace, "review", task_id, "--project", "proj", "--accept")

        assert again.exit_code == 1

    def test_retry_prompt_requeue_from_review(self, workspace):
        """A reviewed task can be re-prompted from its log."""
        _invoke(workspace, "run", "Write the docs", "--project", "proj")
        (task_id,) = _task_ids(workspace)

        result = _invoke(workspace, "retry-prompt", task_id, "--project", "proj", "--requeue")

        assert result.exit_code == 0, result.output
        assert "Requeued as iteration 2" in result.output

    def test_run_without_prompt(self, tmp_path):
        result = _invoke(tmp_path, "run")

        assert result.exit_code == 1

    def test_retry_prompt_unknown_task(self, tmp_path):
        result = _invoke(tmp_path, "retry-prompt", "task-nope")

        assert result.exit_code == 1

    def test_empty_task_list(self, tmp_path):
        result = _invoke(tmp_path, "tasks")

        assert result.exit_code == 0
        assert "No tasks" in result.output


class TestConfigErrors:
    def test_invalid_config_is_translated(self, tmp_path):
        (tmp_path / "agent-orchestrator.yaml").write_text("agents:\n  default_agent: copilot\n")

        result = _invoke(tmp_path, "tasks")

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestReauthCommand:
    def test_gemini_reports_key_instructions(self, tmp_path):
        result = _invoke(tmp_path, "reauth", "gemini")

        assert result.exit_code == 1
        assert "API key" in result.output

    def test_unknown_agent(self, tmp_path):
        assert _invoke(tmp_path, "reauth", "copilot").exit_code == 1


class TestLogging:
    def test_log_file_in_configured_dir(self, workspace):
        _invoke(workspace, "run", "Write the docs", "--project", "proj")

        assert (workspace / ".agent-orchestrator" / "logs" / "orchestrator.log").exists()


LIMIT_CLI = """
print(json.dumps({"type": "error", "error": "Claude usage limit reached, resets 2099-01-01T00:00:00Z"}))
sys.exit(1)
"""


@pytest.fixture
def limited_workspace(tmp_path, fake_cli):
    """Workspace whose Claude Code CLI always reports an exhausted quota."""
    script = fake_cli(LIMIT_CLI, name="limited-agent")
    (tmp_path / "agent-orchestrator.yaml").write_text(
        f"agents:\n  claude_code:\n    custom_path: {script}\n"
    )
    return tmp_path


class TestUsageLimits:
    def test_limit_pauses_later_runs_until_cleared(self, limited_workspace):
        """A usage limit persists across invocations and keeps new tasks queued."""
        first = _invoke(limited_workspace, "run", "Write the docs", "--project", "proj")

        assert first.exit_code == 1
        assert "2099-01-01" in first.output
        assert (limited_workspace / ".agent-orchestrator" / "usage_limits.json").exists()

        second = _invoke(limited_workspace, "run", "Fix the tests", "--project", "proj")

        assert second.exit_code == 1
        assert "queued" in second.output
        statuses = sorted(
            json.loads(p.read_text())["status"]
            for p in (limited_workspace / ".agent-orchestrator" / "projects" / "proj" / "tasks").glob("*.json")
        )
        assert statuses == ["failed", "queued"]

        listing = _invoke(limited_workspace, "limits")
        assert "claude-code" in listing.output

        cleared = _invoke(limited_workspace, "limits", "--clear", "claude-code")
        assert "Scheduling resumed for claude-code" in cleared.output
        assert "No agent is blocked" in _invoke(limited_workspace, "limits").output

    def test_clear_when_nothing_blocked(self, tmp_path):
        result = _invoke(tmp_path, "limits", "--clear-all")

        assert result.exit_code == 0
        assert "Nothing to clear" in result.output


class TestUsageCommand:
    def test_claude_usage_percentages(self, tmp_path):
        report = UsagePercentage(five_hour=UsageWindow(utilization=42.0), seven_day=UsageWindow(utilization=7.0))
        with patch(
            "agent_orchestrator.agents.claude_code.AnthropicApiClient.fetch_usage_percentage",
            return_value=report,
        ):
            result = _invoke(tmp_path, "usage")

        assert result.exit_code == 0
        assert "42%" in result.output
        assert "7%" in result.output

    def test_claude_usage_unavailable(self, tmp_path):
        with patch(
            "agent_orchestrator.agents.claude_code.AnthropicApiClient.fetch_usage_percentage",
            return_value=UsagePercentage(),
        ):
            result = _invoke(tmp_path, "usage")

        assert "unavailable" in result.output

    def test_gemini_tier_counts(self, tmp_path):
        (tmp_path / "agent-orchestrator.yaml").write_text("agents:\n  gemini:\n    tier: tier_1\n")

        result = _invoke(tmp_path, "usage", "--agent", "gemini")

        assert result.exit_code == 0
        assert "TIER_1" in result.output
        assert "0/500" in result.output
