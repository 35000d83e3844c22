"""Task lifecycle state machine.

Owns status, iteration counter and runtime bookkeeping. Every public entry
point loads the task, decides the full update, and writes it in one store
call, so two transitions for the same task never interleave.

Runtime accounting:
    - entering ``running`` or ``awaiting_agent`` opens a session
      (``running_session_started_at``) if none is open and stamps
      ``started_at`` if unset;
    - leaving an active status flushes ``now - running_session_started_at``
      into ``runtime_ms`` and clears the session marker in the same update;
    - reaching a terminal status stamps ``completed_at``.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Optional

from ..errors.exceptions import InvalidTransitionError
from ..utils.retry_context import RetryContext, build_retry_context
from .incomplete_work import IncompleteWorkResult
from .task import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Iteration,
    IterationStatus,
    Task,
    TaskStatus,
)
from .task_store import TaskStore

logger = logging.getLogger(__name__)

# Transitions allowed through update_status(). needs_review/failed -> queued is
# reserved for start_new_iteration() so the iteration counter always advances.
ALLOWED_TRANSITIONS: Dict[TaskStatus, tuple] = {
    TaskStatus.BACKLOG: (TaskStatus.QUEUED, TaskStatus.CANCELLED),
    TaskStatus.QUEUED: (
        TaskStatus.BACKLOG,
        TaskStatus.AWAITING_AGENT,
        TaskStatus.RUNNING,
        TaskStatus.PAUSED,
        TaskStatus.CANCELLED,
    ),
    TaskStatus.AWAITING_AGENT: (
        TaskStatus.QUEUED,
        TaskStatus.RUNNING,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    ),
    TaskStatus.RUNNING: (
        TaskStatus.QUEUED,
        TaskStatus.PAUSED,
        TaskStatus.NEEDS_REVIEW,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    ),
    TaskStatus.PAUSED: (TaskStatus.QUEUED, TaskStatus.RUNNING, TaskStatus.CANCELLED),
    TaskStatus.NEEDS_REVIEW: (TaskStatus.COMPLETED, TaskStatus.REJECTED),
    TaskStatus.FAILED: (TaskStatus.BACKLOG, TaskStatus.CANCELLED),
    TaskStatus.REJECTED: (),
    TaskStatus.COMPLETED: (),
    TaskStatus.CANCELLED: (),
}

# Statuses from which an iteration may be closed
ITERATION_OPEN_STATUSES = (TaskStatus.RUNNING, TaskStatus.AWAITING_AGENT, TaskStatus.PAUSED)

REPROMPTABLE_STATUSES = (TaskStatus.NEEDS_REVIEW, TaskStatus.FAILED)

StatusListener = Callable[[Task, str], None]


@dataclass
class TransitionResult:
    """Outcome of a state machine entry point.

    On rejection ``task`` is the unchanged stored task (or None if unknown).
    """
    ok: bool
    task: Optional[Task] = None
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.ok


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return max(int((end - start).total_seconds() * 1000), 0)


class TaskStateMachine:
    """Applies lifecycle transitions to tasks held in a TaskStore."""

    def __init__(
        self,
        store: TaskStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self._clock = clock or (lambda: datetime.now(UTC))
        self._listeners: List[StatusListener] = []

    @property
    def clock(self) -> Callable[[], datetime]:
        return self._clock

    def subscribe(self, listener: StatusListener) -> None:
        """Register ``listener(task, previous_status)`` for every status change."""
        self._listeners.append(listener)

    def _notify(self, task: Task, previous: str) -> None:
        if task.status == previous:
            return
        logger.info(f"Task {task.id}: {previous} -> {task.status}")
        for listener in self._listeners:
            try:
                listener(task, previous)
            except Exception as e:
                logger.warning(f"Status listener failed for task {task.id}: {e}")

    def _rejected(self, task: Optional[Task], reason: str) -> TransitionResult:
        logger.debug(f"Transition rejected: {reason}")
        return TransitionResult(ok=False, task=task, reason=reason)

    async def _commit(self, task: Task, updates: Dict[str, Any]) -> TransitionResult:
        previous = task.status
        updated = await self.store.update_task(task.project_id, task.id, updates)
        self._notify(updated, previous)
        return TransitionResult(ok=True, task=updated)

    def _runtime_updates(self, task: Task, new_status: TaskStatus, now: datetime) -> Dict[str, Any]:
        """Field updates implied by moving ``task`` to ``new_status``."""
        updates: Dict[str, Any] = {"status": new_status}

        if new_status in ACTIVE_STATUSES:
            if task.running_session_started_at is None:
                updates["running_session_started_at"] = now
            if task.started_at is None:
                updates["started_at"] = now
            return updates

        if task.running_session_started_at is not None:
            updates["runtime_ms"] = task.runtime_ms + _elapsed_ms(task.running_session_started_at, now)
            updates["running_session_started_at"] = None

        if new_status in TERMINAL_STATUSES:
            updates["completed_at"] = now
        return updates

    async def update_status(self, project_id: str, task_id: str, status: TaskStatus) -> TransitionResult:
        """Move a task to ``status`` applying the runtime accounting rules."""
        task = await self.store.load_task(project_id, task_id)
        if task is None:
            return self._rejected(None, f"task {task_id} not found")

        status = TaskStatus(status)
        current = TaskStatus(task.status)
        if status == current:
            return TransitionResult(ok=True, task=task)
        if status not in ALLOWED_TRANSITIONS[current]:
            return self._rejected(task, f"cannot move from '{current.value}' to '{status.value}'")

        return await self._commit(task, self._runtime_updates(task, status, self._clock()))

    async def claim_task(self, project_id: str, task_id: str) -> TransitionResult:
        """queued -> awaiting_agent. A second claim of the same task is rejected."""
        task = await self.store.load_task(project_id, task_id)
        if task is None:
            return self._rejected(None, f"task {task_id} not found")
        if task.status != TaskStatus.QUEUED:
            return self._rejected(task, f"task is {task.status}, not queued")
        return await self._commit(task, self._runtime_updates(task, TaskStatus.AWAITING_AGENT, self._clock()))

    async def start_task(self, project_id: str, task_id: str) -> TransitionResult:
        """Mark the agent process as running."""
        return await self.update_status(project_id, task_id, TaskStatus.RUNNING)

    async def complete_iteration(
        self,
        project_id: str,
        task_id: str,
        exit_code: int,
        error_message: Optional[str] = None,
        incompletion: Optional[IncompleteWorkResult] = None,
        cancelled: bool = False,
    ) -> TransitionResult:
        """Close the current iteration: append its record, then apply the outcome.

        Exit code 0 -> needs_review, anything else -> failed, ``cancelled`` ->
        cancelled. Continuation fields come from ``incompletion`` on success
        and are cleared otherwise.
        """
        task = await self.store.load_task(project_id, task_id)
        if task is None:
            return self._rejected(None, f"task {task_id} not found")
        if task.status not in ITERATION_OPEN_STATUSES:
            return self._rejected(task, f"no iteration in progress (task is {task.status})")

        now = self._clock()
        runtime_ms = task.runtime_ms
        if task.running_session_started_at is not None:
            runtime_ms += _elapsed_ms(task.running_session_started_at, now)

        if cancelled:
            final_status = IterationStatus.CANCELLED
        elif exit_code == 0:
            final_status = IterationStatus.NEEDS_REVIEW
        else:
            final_status = IterationStatus.FAILED

        iteration = Iteration(
            iteration=task.current_iteration,
            prompt=task.prompt,
            started_at=task.started_at or now,
            completed_at=now,
            exit_code=exit_code,
            runtime_ms=runtime_ms - task.iteration_runtime_base_ms,
            error_message=error_message or task.error_message,
            final_status=final_status,
        )

        updates: Dict[str, Any] = {
            "iterations": [*task.iterations, iteration],
            "status": TaskStatus(final_status.value),
            "exit_code": exit_code,
            "completed_at": now,
            "runtime_ms": runtime_ms,
            "running_session_started_at": None,
            "error_message": error_message,
        }

        if exit_code == 0 and not cancelled and incompletion is not None:
            updates.update(
                needs_continuation=incompletion.is_incomplete,
                continuation_reason=incompletion.reason,
                continuation_details=incompletion.details,
                suggested_next_steps=list(incompletion.suggested_next_steps),
            )
        else:
            updates.update(
                needs_continuation=False,
                continuation_reason=None,
                continuation_details=None,
                suggested_next_steps=[],
            )

        return await self._commit(task, updates)

    async def start_new_iteration(self, project_id: str, task_id: str, new_prompt: str) -> TransitionResult:
        """Re-prompt a reviewed or failed task: back to queued with the next iteration number.

        History and accumulated runtime are kept; per-run fields are cleared.
        Any other source status is rejected and the task left untouched.
        """
        task = await self.store.load_task(project_id, task_id)
        if task is None:
            return self._rejected(None, f"task {task_id} not found")
        if task.status not in REPROMPTABLE_STATUSES:
            return self._rejected(task, f"cannot start a new iteration from '{task.status}'")

        return await self._commit(task, {
            "prompt": new_prompt,
            "status": TaskStatus.QUEUED,
            "current_iteration": task.current_iteration + 1,
            "iteration_runtime_base_ms": task.runtime_ms,
            "started_at": None,
            "completed_at": None,
            "exit_code": None,
            "error_message": None,
            "running_session_started_at": None,
            "needs_continuation": False,
            "continuation_reason": None,
            "continuation_details": None,
            "suggested_next_steps": [],
        })

    async def _review(self, project_id: str, task_id: str, status: TaskStatus) -> TransitionResult:
        task = await self.store.load_task(project_id, task_id)
        if task is None:
            return self._rejected(None, f"task {task_id} not found")
        if task.status != TaskStatus.NEEDS_REVIEW:
            return self._rejected(task, f"task is {task.status}, not awaiting review")
        return await self._commit(task, {"status": status, "completed_at": self._clock()})

    async def accept_task(self, project_id: str, task_id: str) -> TransitionResult:
        """needs_review -> completed."""
        return await self._review(project_id, task_id, TaskStatus.COMPLETED)

    async def reject_task(self, project_id: str, task_id: str) -> TransitionResult:
        """needs_review -> rejected."""
        return await self._review(project_id, task_id, TaskStatus.REJECTED)

    async def fail_task(self, project_id: str, task_id: str, error_message: str) -> TransitionResult:
        """Record an orchestration error without an agent exit code."""
        task = await self.store.load_task(project_id, task_id)
        if task is None:
            return self._rejected(None, f"task {task_id} not found")
        if task.status in ITERATION_OPEN_STATUSES:
            return await self.complete_iteration(project_id, task_id, exit_code=1, error_message=error_message)
        if TaskStatus.FAILED not in ALLOWED_TRANSITIONS[TaskStatus(task.status)]:
            return self._rejected(task, f"cannot fail a task that is {task.status}")
        updates = self._runtime_updates(task, TaskStatus.FAILED, self._clock())
        updates["error_message"] = error_message
        return await self._commit(task, updates)

    @staticmethod
    def require(result: TransitionResult, target: TaskStatus) -> Task:
        """Unwrap a result, raising InvalidTransitionError on rejection."""
        if not result.ok:
            current = result.task.status if result.task is not None else "missing"
            task_id = result.task.id if result.task is not None else "?"
            raise InvalidTransitionError(task_id, str(current), TaskStatus(target).value, result.reason)
        return result.task

    async def generate_retry_context(
        self, project_id: str, task_id: str, iteration: Optional[int] = None
    ) -> Optional[RetryContext]:
        """Continuation prompt built from an iteration's log (default: the current one)."""
        task = await self.store.load_task(project_id, task_id)
        if task is None:
            return None
        log_text = await self.store.read_iteration_log(
            project_id, task_id, iteration or task.current_iteration
        )
        return build_retry_context(task, log_text)
