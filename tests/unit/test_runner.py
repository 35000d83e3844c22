"""Tests for TaskRunner driving fake agent CLIs end to end."""

import asyncio
import json
import os
import sys
from datetime import datetime, timezone

import pytest

from agent_orchestrator.agents import base as agent_base
from agent_orchestrator.agents.claude_code import ClaudeCodeAdapter
from agent_orchestrator.agents.registry import AgentRegistry
from agent_orchestrator.core.runner import TaskRunner
from agent_orchestrator.core.task import TaskStatus, create_task
from agent_orchestrator.core.usage_gate import UsageLimitGate
from agent_orchestrator.errors.classifier import FailureKind
from agent_orchestrator.errors.exceptions import InvalidTransitionError

PROJECT = "proj"

SUCCESS_CLI = """
print(json.dumps({"type": "system", "subtype": "init", "session_id": "s1"}))
print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "Added the endpoint."}]}}))
print(json.dumps({"type": "result", "result": "done", "usage": {"input_tokens": 5, "output_tokens": 42}}))
"""


def _make_task(**overrides):
    defaults = dict(id="task-1")
    defaults.update(overrides)
    return create_task(PROJECT, "Add a /health endpoint", **defaults)


@pytest.fixture
def make_runner(machine, tmp_path):
    """Factory building a runner whose default agent is a fake Claude CLI."""

    def _build(cli_path=None, **kwargs):
        registry = AgentRegistry()
        registry.register(ClaudeCodeAdapter(custom_path=cli_path, probe_timeout=5))
        return TaskRunner(machine, registry, workspace=tmp_path, **kwargs)

    return _build


async def _seed(store, **overrides):
    task = _make_task(**overrides)
    await store.save_task(task)
    return task


class TestRunTaskSuccess:
    @pytest.mark.asyncio
    async def test_clean_exit_goes_to_review(self, make_runner, fake_cli, store):
        """Exit 0 -> needs_review with every output line logged."""
        await _seed(store)
        runner = make_runner(fake_cli(SUCCESS_CLI))

        outcome = await runner.run_task(PROJECT, "task-1")

        assert outcome.succeeded
        assert outcome.exit_code == 0
        assert outcome.event_count == 3
        assert outcome.classification.kind == FailureKind.NONE
        assert outcome.task.status == TaskStatus.NEEDS_REVIEW
        assert len(outcome.task.iterations) == 1

        log = await store.read_iteration_log(PROJECT, "task-1", 1)
        assert [json.loads(line)["type"] for line in log.splitlines()] == ["system", "assistant", "result"]

    @pytest.mark.asyncio
    async def test_prompt_and_workspace_reach_the_agent(self, make_runner, fake_cli, store, tmp_path):
        """The agent runs in the workspace with the prompt as last argument."""
        script = fake_cli("""
print(json.dumps({"type": "result", "result": sys.argv[-1], "cwd": os.getcwd()}))
""")
        await _seed(store)

        await make_runner(script).run_task(PROJECT, "task-1")

        log = await store.read_iteration_log(PROJECT, "task-1", 1)
        record = json.loads(log.splitlines()[0])
        assert record["result"] == "Add a /health endpoint"
        assert os.path.samefile(record["cwd"], tmp_path)

    @pytest.mark.asyncio
    async def test_incomplete_work_flagged(self, make_runner, fake_cli, store):
        """A clean exit announcing more phases sets the continuation fields."""
        script = fake_cli("""
print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "Completed phase 1 of 3."}]}}))
""")
        await _seed(store)

        outcome = await make_runner(script).run_task(PROJECT, "task-1")

        assert outcome.task.status == TaskStatus.NEEDS_REVIEW
        assert outcome.task.needs_continuation
        assert outcome.task.continuation_reason == "multi-phase"

    @pytest.mark.asyncio
    async def test_run_next(self, make_runner, fake_cli, store):
        """run_next picks the first queued task and returns None when idle."""
        runner = make_runner(fake_cli(SUCCESS_CLI))
        await _seed(store, id="task-b", queue_position=2)
        await _seed(store, id="task-a", queue_position=1)

        first = await runner.run_next(PROJECT)
        assert first.task.id == "task-a"
        assert (await runner.run_next(PROJECT)).task.id == "task-b"
        assert await runner.run_next(PROJECT) is None


class TestRunTaskFailure:
    @pytest.mark.asyncio
    async def test_usage_limit(self, make_runner, fake_cli, store):
        """A usage-limit error line is classified and the reset time reported."""
        script = fake_cli("""
print(json.dumps({"type": "error", "error": "Claude usage limit reached, try again in 2 hours"}))
sys.exit(1)
""")
        await _seed(store)

        outcome = await make_runner(script).run_task(PROJECT, "task-1")

        assert outcome.task.status == TaskStatus.FAILED
        assert outcome.classification.kind == FailureKind.USAGE_LIMIT
        assert outcome.classification.reset_at is not None
        assert outcome.task.error_message.startswith("Usage limit reached, resets at ")

    @pytest.mark.asyncio
    async def test_auth_error_from_stderr(self, make_runner, fake_cli, store):
        """Auth failures are not retriable."""
        script = fake_cli('print("Error: 401 Unauthorized", file=sys.stderr); sys.exit(1)')
        await _seed(store)

        outcome = await make_runner(script).run_task(PROJECT, "task-1")

        assert outcome.classification.kind == FailureKind.AUTH
        assert not outcome.classification.retriable
        assert outcome.task.error_message.startswith("Authentication required")

    @pytest.mark.asyncio
    async def test_plain_failure_uses_stderr(self, make_runner, fake_cli, store):
        script = fake_cli('print("segfault in tool", file=sys.stderr); sys.exit(3)')
        await _seed(store)

        outcome = await make_runner(script).run_task(PROJECT, "task-1")

        assert outcome.exit_code == 3
        assert outcome.task.error_message == "segfault in tool"
        assert outcome.task.iterations[0].exit_code == 3

    @pytest.mark.asyncio
    async def test_silent_failure(self, make_runner, fake_cli, store):
        outcome_script = fake_cli("sys.exit(7)")
        await _seed(store)

        outcome = await make_runner(outcome_script).run_task(PROJECT, "task-1")

        assert outcome.task.error_message == "Process exited with code 7"

    @pytest.mark.asyncio
    async def test_timeout_kills_agent(self, make_runner, fake_cli, store):
        """Exceeding the maximum duration fails the task with a timeout message."""
        script = fake_cli("""
import time
print(json.dumps({"type": "system", "subtype": "init"}), flush=True)
time.sleep(30)
""")
        await _seed(store)

        outcome = await make_runner(script, max_duration_seconds=1).run_task(PROJECT, "task-1")

        assert outcome.timed_out
        assert outcome.task.status == TaskStatus.FAILED
        assert outcome.task.error_message == "Task timed out after maximum duration of 1s"
        assert outcome.event_count == 1

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    async def test_timeout_force_kills_agent_ignoring_sigterm(self, make_runner, fake_cli, store):
        """An agent that ignores SIGTERM is force-killed so the run still ends."""
        script = fake_cli("""
import signal, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print(json.dumps({"type": "system", "subtype": "init"}), flush=True)
time.sleep(30)
""")
        await _seed(store)
        runner = make_runner(script, max_duration_seconds=1, kill_grace_seconds=0.5)

        outcome = await asyncio.wait_for(runner.run_task(PROJECT, "task-1"), timeout=15)

        assert outcome.timed_out
        assert outcome.task.status == TaskStatus.FAILED
        assert outcome.task.error_message == "Task timed out after maximum duration of 1s"

    @pytest.mark.asyncio
    async def test_cli_not_found(self, make_runner, store, monkeypatch):
        """A missing CLI fails the claimed task without spawning anything."""
        monkeypatch.setattr(agent_base, "resolve_cli_path", lambda *args, **kwargs: None)
        await _seed(store)

        outcome = await make_runner().run_task(PROJECT, "task-1")

        assert outcome.task.status == TaskStatus.FAILED
        assert outcome.task.error_message == "Claude Code CLI not found"

    @pytest.mark.asyncio
    async def test_unknown_agent(self, make_runner, fake_cli, store):
        await _seed(store, agent_id="copilot")

        outcome = await make_runner(fake_cli(SUCCESS_CLI)).run_task(PROJECT, "task-1")

        assert outcome.task.status == TaskStatus.FAILED
        assert outcome.task.error_message == "Unknown agent 'copilot'"

    @pytest.mark.asyncio
    async def test_spawn_error(self, make_runner, store, tmp_path):
        """A file that cannot be executed fails the task with the spawn error."""
        not_executable = tmp_path / "claude"
        not_executable.write_text("not a program")
        not_executable.chmod(0o644)
        await _seed(store)

        outcome = await make_runner(str(not_executable)).run_task(PROJECT, "task-1")

        assert outcome.task.status == TaskStatus.FAILED
        assert "Failed to spawn agent process" in outcome.task.error_message

    @pytest.mark.asyncio
    async def test_task_must_be_queued(self, make_runner, fake_cli, store):
        """Running a task that is not queued is a caller error."""
        await _seed(store, status=TaskStatus.NEEDS_REVIEW)

        with pytest.raises(InvalidTransitionError):
            await make_runner(fake_cli(SUCCESS_CLI)).run_task(PROJECT, "task-1")


class TestUsagePrecheck:
    @pytest.mark.asyncio
    async def test_blocked_task_is_requeued(self, make_runner, fake_cli, store):
        """A blocking usage probe puts the task back in the queue untouched."""
        script = fake_cli("""
print(json.dumps({"type": "result", "is_error": True, "result": "Usage limit reached, try again in 1 hour"}))
""")
        await _seed(store)

        outcome = await make_runner(script, check_usage_first=True).run_task(PROJECT, "task-1")

        assert outcome.classification.kind == FailureKind.USAGE_LIMIT
        assert outcome.classification.reset_at is not None
        assert outcome.task.status == TaskStatus.QUEUED
        assert outcome.task.iterations == []
        assert await store.read_iteration_log(PROJECT, "task-1", 1) is None

    @pytest.mark.asyncio
    async def test_available_quota_runs(self, make_runner, fake_cli, store):
        await _seed(store)

        outcome = await make_runner(fake_cli(SUCCESS_CLI), check_usage_first=True).run_task(PROJECT, "task-1")

        assert outcome.succeeded

    @pytest.mark.asyncio
    async def test_blocking_precheck_blocks_the_agent(self, make_runner, fake_cli, store):
        """A failed pre-flight check also pauses the agent for later tasks."""
        script = fake_cli("""
print(json.dumps({"type": "result", "is_error": True, "result": "Usage limit reached, try again in 1 hour"}))
""")
        await _seed(store, id="task-1", queue_position=1)
        await _seed(store, id="task-2", queue_position=2)
        runner = make_runner(script, check_usage_first=True)

        outcome = await runner.run_next(PROJECT)

        assert outcome.task.id == "task-1"
        assert outcome.blocked_by.agent_id == "claude-code"
        assert runner.usage_gate.is_blocked("claude-code")
        assert await runner.run_next(PROJECT) is None


LIMIT_CLI = """
print(json.dumps({"type": "error", "error": "Claude usage limit reached, resets 2025-01-15T14:00:00Z"}))
sys.exit(1)
"""
RESET_AT = datetime(2025, 1, 15, 14, 0, tzinfo=timezone.utc)


class TestUsageLimitBlocking:
    @pytest.mark.asyncio
    async def test_limit_hit_stops_scheduling_until_reset(self, make_runner, fake_cli, store, clock):
        """After a usage-limit failure no further task of that agent is spawned before the reset."""
        await _seed(store, id="task-1", queue_position=1)
        await _seed(store, id="task-2", queue_position=2)
        runner = make_runner(fake_cli(LIMIT_CLI))

        first = await runner.run_next(PROJECT)

        assert first.task.id == "task-1"
        assert first.task.status == TaskStatus.FAILED
        assert first.classification.kind == FailureKind.USAGE_LIMIT
        assert first.blocked_by.resume_at == RESET_AT
        assert first.blocked_by.triggered_by_task_id == "task-1"

        assert await runner.run_next(PROJECT) is None
        waiting = await store.load_task(PROJECT, "task-2")
        assert waiting.status == TaskStatus.QUEUED
        assert await store.read_iteration_log(PROJECT, "task-2", 1) is None

        clock.advance(hours=2, seconds=1)
        resumed = await runner.run_next(PROJECT)

        assert resumed.task.id == "task-2"
        assert resumed.task.status == TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_run_task_leaves_blocked_task_queued(self, make_runner, fake_cli, store, clock):
        """Running a task directly while its agent is blocked does not claim it."""
        gate = UsageLimitGate(clock=clock)
        gate.block("claude-code", RESET_AT, message="usage limit")
        await _seed(store)
        runner = make_runner(fake_cli(SUCCESS_CLI), usage_gate=gate)

        outcome = await runner.run_task(PROJECT, "task-1")

        assert outcome.task.status == TaskStatus.QUEUED
        assert outcome.task.iterations == []
        assert outcome.blocked_by.resume_at == RESET_AT
        assert outcome.classification.kind == FailureKind.USAGE_LIMIT
        assert outcome.classification.reset_at == RESET_AT
        assert outcome.exit_code is None

    @pytest.mark.asyncio
    async def test_block_without_reset_time_holds(self, make_runner, fake_cli, store, clock):
        """A limit with no stated reset keeps the agent paused until cleared."""
        script = fake_cli("""
print(json.dumps({"type": "error", "error": "You are out of credits"}))
sys.exit(1)
""")
        await _seed(store, id="task-1", queue_position=1)
        await _seed(store, id="task-2", queue_position=2)
        runner = make_runner(script)

        first = await runner.run_next(PROJECT)
        clock.advance(days=7)

        assert first.blocked_by.resume_at is None
        assert await runner.run_next(PROJECT) is None

        runner.usage_gate.clear("claude-code")
        assert (await runner.run_next(PROJECT)).task.id == "task-2"

    @pytest.mark.asyncio
    async def test_block_persists_across_runners(self, make_runner, fake_cli, store, clock, tmp_path):
        """A block recorded by one run is honored by a later runner using the same file."""
        path = tmp_path / "usage_limits.json"
        await _seed(store, id="task-1", queue_position=1)
        await _seed(store, id="task-2", queue_position=2)
        await make_runner(fake_cli(LIMIT_CLI), usage_gate=UsageLimitGate(path, clock=clock)).run_next(PROJECT)

        later = make_runner(fake_cli(SUCCESS_CLI), usage_gate=UsageLimitGate(path, clock=clock))

        assert await later.run_next(PROJECT) is None

    @pytest.mark.asyncio
    async def test_other_failures_do_not_block(self, make_runner, fake_cli, store):
        await _seed(store, id="task-1", queue_position=1)
        await _seed(store, id="task-2", queue_position=2)
        runner = make_runner(fake_cli("sys.exit(7)"))

        first = await runner.run_next(PROJECT)

        assert first.blocked_by is None
        assert (await runner.run_next(PROJECT)).task.id == "task-2"
