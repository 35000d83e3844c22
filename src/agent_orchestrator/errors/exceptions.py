"""Exception hierarchy for the orchestrator.

Classifiers and parsers never raise; these are reserved for discovery,
process spawning, store access and explicitly checked transitions.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class AgentNotResolvedError(OrchestratorError):
    """Raised when an adapter is asked to run before its executable was resolved."""

    def __init__(self, agent_name: str, operation: str = "invoke"):
        self.agent_name = agent_name
        self.operation = operation
        super().__init__(
            f"{agent_name} CLI not found. Ensure resolve_executable() is called before {operation}()."
        )


class AgentSpawnError(OrchestratorError):
    """Raised when the OS refuses to start the agent process."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to spawn agent process '{command}': {reason}")


class TaskNotFoundError(OrchestratorError):
    """Raised by task stores when a task id is unknown."""

    def __init__(self, project_id: str, task_id: str):
        self.project_id = project_id
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found in project {project_id}")


class InvalidTransitionError(OrchestratorError):
    """Raised by ``TaskStateMachine.require`` when a status transition is not allowed."""

    def __init__(self, task_id: str, current: str, target: str, reason: Optional[str] = None):
        self.task_id = task_id
        self.current = current
        self.target = target
        message = f"Task {task_id} cannot move from '{current}' to '{target}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class CapabilityNotSupportedError(OrchestratorError):
    """Raised when an adapter is asked for an operation its CLI cannot perform."""

    def __init__(self, agent_name: str, capability: str):
        self.agent_name = agent_name
        self.capability = capability
        super().__init__(f"{agent_name} does not support {capability}")
