"""Core models, task lifecycle and configuration."""

from .task import Iteration, IterationStatus, Task, TaskStatus, create_task
from .config import OrchestratorConfig, load_config
from .task_state import TaskStateMachine, TransitionResult
from .task_store import FileTaskStore, InMemoryTaskStore, TaskStore
from .incomplete_work import IncompleteWorkResult, detect_incomplete_work
from .usage_gate import AgentBlock, UsageLimitGate

# TaskRunner lives in .runner; it depends on the agents package, which imports from core

__all__ = [
    "Iteration",
    "IterationStatus",
    "Task",
    "TaskStatus",
    "create_task",
    "OrchestratorConfig",
    "load_config",
    "TaskStateMachine",
    "TransitionResult",
    "FileTaskStore",
    "InMemoryTaskStore",
    "TaskStore",
    "IncompleteWorkResult",
    "detect_incomplete_work",
    "AgentBlock",
    "UsageLimitGate",
]
