"""Translate technical errors to user-friendly messages."""

import re
from dataclasses import dataclass
from typing import List, Optional

from .classifier import FailureKind


@dataclass
class UserFriendlyError:
    """User-friendly error representation."""
    original_error: Exception
    title: str
    explanation: str
    actions: List[str]
    documentation: Optional[str] = None
    show_technical: bool = False


class ErrorTranslator:
    """Translate technical errors to user-friendly messages."""

    ERROR_PATTERNS = {
        # Discovery failure
        r"AgentNotResolvedError|CLI not found": {
            "title": "Agent CLI not found",
            "explanation": "The agent executable could not be located on PATH, in your login shell, or in any known install location.",
            "actions": [
                "Install the agent CLI (e.g. npm install -g @anthropic-ai/claude-code)",
                "Or point to it explicitly: agents.<id>.custom_path in agent-orchestrator.yaml",
                "Verify discovery: agent-orchestrator doctor",
            ],
        },

        # Spawn failure
        r"AgentSpawnError|Failed to spawn": {
            "title": "Agent process could not start",
            "explanation": "The operating system refused to start the agent executable.",
            "actions": [
                "Check the executable is runnable: <path> --version",
                "Check the working directory exists and is readable",
            ],
        },

        # Quota exhaustion
        r"usage limit|quota exceeded|out of credits|limit exceeded|daily limit|resource.exhausted": {
            "title": "Usage limit reached",
            "explanation": "The agent's quota is exhausted. Scheduling for this agent pauses until the quota resets.",
            "actions": [
                "Wait for the reset time shown above",
                "Or switch agents: --agent gemini",
            ],
        },

        # Authentication
        r"Authentication required|unauthorized|401|token expired|please log in": {
            "title": "Agent authentication required",
            "explanation": "The agent CLI rejected its credentials. Automatic retries are disabled until you sign in again.",
            "actions": [
                "Re-authenticate: agent-orchestrator reauth <agent-id>",
                "Or run the agent CLI once in a terminal and complete the login flow",
            ],
        },

        # Transient rate limit
        r"rate limit|too many requests|429|overloaded": {
            "title": "Rate limited",
            "explanation": "The agent's API is throttling requests. This is temporary.",
            "actions": [
                "Retry the task in a few minutes",
            ],
        },

        r"CapabilityNotSupportedError|does not support": {
            "title": "Operation not supported by this agent",
            "explanation": "The selected agent CLI has no way to perform this operation.",
            "actions": [
                "Check capabilities: agent-orchestrator doctor",
                "Or switch agents: --agent claude-code",
            ],
        },

        # State machine
        r"InvalidTransitionError|cannot move from": {
            "title": "Task is not in the right state",
            "explanation": "That operation is not allowed from the task's current status.",
            "actions": [
                "Inspect the task: agent-orchestrator tasks --project <project>",
            ],
        },

        r"TaskNotFoundError": {
            "title": "Task not found",
            "explanation": "No task with that id exists in the given project.",
            "actions": [
                "List tasks: agent-orchestrator tasks --project <project>",
            ],
        },

        # Configuration
        r"yaml\.|YAMLError|ScannerError|ParserError|ValidationError": {
            "title": "Invalid configuration",
            "explanation": "agent-orchestrator.yaml could not be parsed or failed validation.",
            "actions": [
                "Fix the reported field in agent-orchestrator.yaml",
                "Environment variables referenced as ${VAR} must be set",
            ],
        },
    }

    KIND_MESSAGES = {
        FailureKind.USAGE_LIMIT: "usage limit reached",
        FailureKind.RATE_LIMIT: "too many requests",
        FailureKind.AUTH: "Authentication required",
    }

    def translate(self, error: Exception) -> UserFriendlyError:
        """Convert exception to user-friendly format."""
        error_str = str(error)
        error_type = type(error).__name__
        full_error = f"{error_type}: {error_str}"

        for pattern, translation in self.ERROR_PATTERNS.items():
            if re.search(pattern, full_error, re.IGNORECASE):
                return UserFriendlyError(
                    original_error=error,
                    title=translation["title"],
                    explanation=translation["explanation"],
                    actions=translation["actions"],
                    documentation=translation.get("documentation"),
                    show_technical=False
                )

        return UserFriendlyError(
            original_error=error,
            title="Unexpected error",
            explanation=str(error),
            actions=[
                "Run health check: agent-orchestrator doctor",
                "Re-run with --verbose and check the logs",
            ],
            show_technical=True
        )

    def translate_kind(self, kind: FailureKind, detail: str = "") -> Optional[UserFriendlyError]:
        """Translate a classifier verdict; returns None for unclassified failures."""
        message = self.KIND_MESSAGES.get(FailureKind(kind))
        if message is None:
            return None
        friendly = self.translate(RuntimeError(message))
        if detail:
            friendly.explanation = f"{friendly.explanation}\n{detail}"
        return friendly

    def format_for_cli(self, friendly_error: UserFriendlyError) -> str:
        """Format error for CLI display."""
        output = f"[bold red]{friendly_error.title}[/]\n\n"
        output += f"{friendly_error.explanation}\n\n"

        output += "[bold]How to fix:[/]\n"
        for i, action in enumerate(friendly_error.actions, 1):
            output += f"  {i}. {action}\n"

        if friendly_error.documentation:
            output += f"\n[dim]Learn more: {friendly_error.documentation}[/]"

        if friendly_error.show_technical:
            output += f"\n\n[dim]Technical details:[/]\n[dim]{friendly_error.original_error}[/]"

        return output
