"""Drive one task iteration from claim to review.

    claim -> resolve CLI -> (optional usage probe) -> invoke -> running
          -> stream + log + classify -> exit -> incomplete-work check
          -> complete_iteration (needs_review / failed)

Spawn and store errors raised along the way are converted into a ``failed``
task with an error message; they never escape ``run_task``.

A usage-limit hit blocks the agent in the ``UsageLimitGate``: while the block
holds, ``run_next`` skips that agent's tasks and ``run_task`` leaves them
queued.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from ..agents.base import AgentAdapter, AgentInvokeOptions
from ..agents.process import KILL_GRACE_SECONDS
from ..agents.registry import AgentRegistry
from ..errors.classifier import FailureClassification, FailureKind, classify_failure
from ..errors.exceptions import OrchestratorError
from ..utils.output_parser import OutputEvent, OutputEventType
from ..utils.rich_logging import ContextLogger
from .incomplete_work import IncompleteWorkResult
from .task import Task, TaskStatus
from .task_state import TaskStateMachine
from .usage_gate import AgentBlock, UsageLimitGate

logger = logging.getLogger(__name__)

# Events that carry failure information worth classifying
_PROBLEM_EVENTS = (OutputEventType.ERROR, OutputEventType.RATE_LIMIT, OutputEventType.USAGE_LIMIT)
_STDERR_TAIL = 2000


@dataclass
class RunOutcome:
    """What happened to a task during one ``run_task`` call."""
    task: Optional[Task]
    exit_code: Optional[int] = None
    classification: FailureClassification = field(
        default_factory=lambda: FailureClassification(kind=FailureKind.NONE, retriable=True)
    )
    event_count: int = 0
    timed_out: bool = False
    incompletion: Optional[IncompleteWorkResult] = None
    blocked_by: Optional[AgentBlock] = None  # usage-limit block hit or set by this run

    @property
    def succeeded(self) -> bool:
        return self.task is not None and self.task.status == TaskStatus.NEEDS_REVIEW


class TaskRunner:
    """Runs queued tasks through the agent their task names (or the default)."""

    def __init__(
        self,
        state_machine: TaskStateMachine,
        registry: AgentRegistry,
        workspace: Optional[Path] = None,
        max_duration_seconds: int = 0,
        check_usage_first: bool = False,
        context_logger: Optional[ContextLogger] = None,
        usage_gate: Optional[UsageLimitGate] = None,
        kill_grace_seconds: float = KILL_GRACE_SECONDS,
    ):
        self.state = state_machine
        self.store = state_machine.store
        self.registry = registry
        self.workspace = workspace
        self.max_duration_seconds = max_duration_seconds
        self.check_usage_first = check_usage_first
        self.log = context_logger or ContextLogger(logger, "runner")
        self.usage_gate = usage_gate or UsageLimitGate(clock=state_machine.clock)
        self.kill_grace_seconds = kill_grace_seconds

    async def run_next(self, project_id: str) -> Optional[RunOutcome]:
        """Run the first queued task whose agent is not blocked, if any."""
        for task in await self.store.list_tasks(project_id):
            if task.status != TaskStatus.QUEUED:
                continue
            block = self.usage_gate.active_block(self._agent_id_for(task))
            if block is not None:
                logger.debug(f"Skipping {task.id}: {block.agent_id} blocked by usage limit")
                continue
            return await self.run_task(project_id, task.id)
        return None

    async def run_task(self, project_id: str, task_id: str) -> RunOutcome:
        """Run the current iteration of a queued task.

        A task whose agent is blocked by a usage limit stays queued and the
        outcome carries the block.

        Raises:
            InvalidTransitionError: If the task is not queued
        """
        task = await self.store.load_task(project_id, task_id)
        if task is not None and task.status == TaskStatus.QUEUED:
            block = self.usage_gate.active_block(self._agent_id_for(task))
            if block is not None:
                self.log.usage_limited(block.resume_at)
                return RunOutcome(
                    task=task,
                    classification=FailureClassification(
                        kind=FailureKind.USAGE_LIMIT, retriable=True, reset_at=block.resume_at
                    ),
                    blocked_by=block,
                )

        claimed = self.state.require(
            await self.state.claim_task(project_id, task_id), TaskStatus.AWAITING_AGENT
        )
        self.log.task_started(claimed.id, claimed.title or claimed.prompt[:60], claimed.current_iteration)

        try:
            return await self._run_claimed(claimed)
        except (OSError, OrchestratorError) as e:
            logger.exception(f"Task {task_id} aborted")
            failed = await self.state.fail_task(project_id, task_id, f"Orchestration error: {e}")
            self.log.task_failed(str(e))
            return RunOutcome(task=failed.task)

    def _agent_id_for(self, task: Task) -> str:
        return task.agent_id or self.registry.default.id

    def _adapter_for(self, task: Task) -> Optional[AgentAdapter]:
        if task.agent_id:
            return self.registry.get(task.agent_id)
        return self.registry.default

    async def _fail(self, task: Task, message: str) -> RunOutcome:
        result = await self.state.fail_task(task.project_id, task.id, message)
        self.log.task_failed(message)
        return RunOutcome(task=result.task)

    async def _run_claimed(self, task: Task) -> RunOutcome:
        self.log.phase_change("resolving")
        adapter = self._adapter_for(task)
        if adapter is None:
            return await self._fail(task, f"Unknown agent '{task.agent_id}'")
        if not await adapter.resolve_executable():
            return await self._fail(task, f"{adapter.name} CLI not found")

        if self.check_usage_first:
            usage = await adapter.check_usage_limits()
            if not usage.can_proceed:
                self.log.usage_limited(usage.reset_at)
                block = self.usage_gate.block(adapter.id, usage.reset_at, task.id, usage.message)
                requeued = await self.state.update_status(task.project_id, task.id, TaskStatus.QUEUED)
                return RunOutcome(
                    task=requeued.task,
                    classification=FailureClassification(
                        kind=FailureKind.USAGE_LIMIT, retriable=True, reset_at=usage.reset_at
                    ),
                    blocked_by=block,
                )

        options = AgentInvokeOptions(
            working_directory=str(self.workspace) if self.workspace else None,
            model=task.model,
            context_files=list(task.context_files),
            thinking=task.thinking,
        )

        self.log.phase_change("invoking")
        process = await adapter.invoke(task.prompt, options)
        if process.spawn_error is not None:
            return await self._fail(task, str(process.spawn_error))

        self.state.require(await self.state.start_task(task.project_id, task.id), TaskStatus.RUNNING)

        self.log.phase_change("streaming")
        events: List[OutputEvent] = []
        block: Optional[AgentBlock] = None

        async def consume_stdout() -> None:
            nonlocal block
            async for event in adapter.parse_output(process.stdout):
                events.append(event)
                await self.store.append_iteration_log(
                    task.project_id, task.id, task.current_iteration, event.message + "\n"
                )
                if event.type == OutputEventType.RATE_LIMIT:
                    self.log.rate_limited(event.message[:200])
                elif event.type == OutputEventType.USAGE_LIMIT:
                    self.log.usage_limited(event.reset_at)
                    block = self.usage_gate.block(adapter.id, event.reset_at, task.id, event.message[:500])

        timed_out = False
        stderr_bytes = b""
        streams = asyncio.gather(consume_stdout(), process.stderr.read())
        try:
            if self.max_duration_seconds > 0:
                _, stderr_bytes = await asyncio.wait_for(streams, timeout=self.max_duration_seconds)
            else:
                _, stderr_bytes = await streams
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"Task {task.id} exceeded {self.max_duration_seconds}s, killing agent")
            await process.stop(self.kill_grace_seconds)
        except (OSError, OrchestratorError):
            await process.stop(self.kill_grace_seconds)
            raise

        exit_code = await process.wait()
        stderr_text = stderr_bytes.decode("utf-8", errors="replace").strip()

        self.log.phase_change("classifying")
        classification = FailureClassification(kind=FailureKind.NONE, retriable=True)
        error_message: Optional[str] = None
        if timed_out:
            error_message = f"Task timed out after maximum duration of {self.max_duration_seconds}s"
        elif process.terminated_by_signal:
            error_message = f"Agent process interrupted by signal {process.terminated_by_signal}"
        elif exit_code != 0:
            classification, error_message = self._explain_failure(events, stderr_text, exit_code)
            if classification.kind == FailureKind.USAGE_LIMIT:
                block = self.usage_gate.block(adapter.id, classification.reset_at, task.id, error_message)

        incompletion = None
        if exit_code == 0 and not timed_out:
            incompletion = adapter.detect_incomplete_work(events)
            if incompletion.is_incomplete:
                logger.info(f"Task {task.id} looks incomplete: {incompletion.reason}")

        result = await self.state.complete_iteration(
            task.project_id,
            task.id,
            exit_code=exit_code,
            error_message=error_message,
            incompletion=incompletion,
        )
        finished = self.state.require(result, TaskStatus.NEEDS_REVIEW if exit_code == 0 else TaskStatus.FAILED)

        if finished.status == TaskStatus.FAILED:
            self.log.task_failed(error_message or f"exit code {exit_code}")
        else:
            output_tokens = next(
                (e.usage.output_tokens for e in reversed(events) if e.usage is not None), None
            )
            self.log.iteration_completed(
                finished.status, finished.iterations[-1].runtime_ms, output_tokens
            )

        return RunOutcome(
            task=finished,
            exit_code=exit_code,
            classification=classification,
            event_count=len(events),
            timed_out=timed_out,
            incompletion=incompletion,
            blocked_by=block,
        )

    @staticmethod
    def _explain_failure(
        events: List[OutputEvent], stderr_text: str, exit_code: int
    ) -> Tuple[FailureClassification, str]:
        """Classify a non-zero exit and build the task's error message."""
        problem_lines = [e.message for e in events if e.type in _PROBLEM_EVENTS]
        text = "\n".join([*problem_lines, stderr_text[-_STDERR_TAIL:]]).strip()
        classification = classify_failure(text)

        if classification.kind == FailureKind.USAGE_LIMIT:
            message = "Usage limit reached"
            if classification.reset_at is not None:
                message += f", resets at {classification.reset_at.isoformat()}"
        elif classification.kind == FailureKind.AUTH:
            message = "Authentication required. Reauthenticate the agent CLI and retry."
        elif classification.kind == FailureKind.RATE_LIMIT:
            message = f"Rate limited: {(problem_lines or [stderr_text])[-1][:300]}"
        elif problem_lines:
            message = problem_lines[-1][:500]
        elif stderr_text:
            message = stderr_text[-500:]
        else:
            message = f"Process exited with code {exit_code}"
        return classification, message
