"""Task and iteration models."""

import time
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class TaskStatus(str, Enum):
    """Task status values."""
    BACKLOG = "backlog"
    QUEUED = "queued"
    # Selected by the scheduler but the agent process has not started yet.
    # Keeps a second scheduling pass from picking the same task.
    AWAITING_AGENT = "awaiting_agent"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    NEEDS_REVIEW = "needs_review"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"


class IterationStatus(str, Enum):
    """Outcome recorded on a finished iteration."""
    NEEDS_REVIEW = "needs_review"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Statuses with an open runtime session
ACTIVE_STATUSES = (TaskStatus.RUNNING, TaskStatus.AWAITING_AGENT)

# Reaching any of these stamps completed_at
TERMINAL_STATUSES = (
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
    TaskStatus.NEEDS_REVIEW,
    TaskStatus.REJECTED,
)


class Iteration(BaseModel):
    """One finished run attempt. Never modified after it is appended."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    iteration: int
    prompt: str
    started_at: datetime
    completed_at: datetime
    exit_code: Optional[int] = None
    runtime_ms: int = 0
    error_message: Optional[str] = None
    final_status: IterationStatus

    @field_serializer("started_at", "completed_at")
    def serialize_datetime(self, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None


class Task(BaseModel):
    """A unit of agent work and its lifecycle bookkeeping.

    Mutated only through TaskStateMachine; stores persist it verbatim.
    """

    model_config = ConfigDict(use_enum_values=True)

    # Identity
    id: str
    project_id: str
    prompt: str
    title: Optional[str] = None

    status: TaskStatus = TaskStatus.QUEUED
    queue_position: int = 0
    current_iteration: int = Field(default=1, ge=1)
    iterations: List[Iteration] = Field(default_factory=list)

    # Runtime accounting: runtime_ms only grows
    runtime_ms: int = Field(default=0, ge=0)
    running_session_started_at: Optional[datetime] = None
    iteration_runtime_base_ms: int = 0  # runtime_ms when the current iteration began

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Per-task overrides
    agent_id: Optional[str] = None
    model: Optional[str] = None
    context_files: List[str] = Field(default_factory=list)
    thinking: bool = False

    # Outcome of the last run
    exit_code: Optional[int] = None
    error_message: Optional[str] = None

    # Incomplete-work detection
    needs_continuation: bool = False
    continuation_reason: Optional[str] = None
    continuation_details: Optional[str] = None
    suggested_next_steps: List[str] = Field(default_factory=list)

    @field_serializer("created_at", "started_at", "completed_at", "running_session_started_at")
    def serialize_datetime(self, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def live_runtime_ms(self, now: Optional[datetime] = None) -> int:
        """Accumulated runtime plus the open session, without touching stored state."""
        if self.running_session_started_at is None:
            return self.runtime_ms
        now = now or datetime.now(UTC)
        elapsed = int((now - self.running_session_started_at).total_seconds() * 1000)
        return self.runtime_ms + max(elapsed, 0)


def create_task(project_id: str, prompt: str, **overrides) -> Task:
    """Create a queued task at the back of the queue."""
    defaults = dict(
        id=f"task-{uuid.uuid4().hex[:12]}",
        project_id=project_id,
        prompt=prompt,
        status=TaskStatus.QUEUED,
        queue_position=int(time.time() * 1000),
        current_iteration=1,
    )
    defaults.update(overrides)
    return Task(**defaults)
