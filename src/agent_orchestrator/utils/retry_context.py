"""Build continuation prompts from a previous iteration's raw log.

The log is the agent's stream-json output. Tool calls become a bullet list of
what was already done, the last substantial assistant message becomes a
progress snapshot, and the task's error message decides between
"interrupted" and "failed" framing.
"""

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, List, Optional

from .output_parser import message_content

if TYPE_CHECKING:
    from ..core.task import Task

logger = logging.getLogger(__name__)

MAX_LISTED_ACTIONS = 15
MIN_PROGRESS_LENGTH = 50
MAX_PROGRESS_LENGTH = 500
BOILERPLATE_OPENERS = ("I'll use", "Let me")

INTERRUPTION_MARKERS = (
    "timed out",
    "timeout",
    "maximum duration",
    "Process reference lost",
    "interrupted",
    "signal",
)


@dataclass
class LogEntry:
    """One structured entry mined from an iteration log."""
    kind: str  # assistant | tool | result | system
    content: str = ""
    tool_name: Optional[str] = None
    tool_input: Optional[str] = None
    is_error: bool = False


@dataclass
class RetryContext:
    prompt: str
    summary: str
    action_count: int
    has_progress: bool


def format_tool_input(tool_input: Any) -> str:
    """Reduce a tool_use input payload to one identifying string."""
    if not tool_input:
        return ""
    if isinstance(tool_input, str):
        return tool_input
    if not isinstance(tool_input, dict):
        return json.dumps(tool_input)[:100]

    if tool_input.get("file_path"):
        return str(tool_input["file_path"])
    if tool_input.get("command"):
        return str(tool_input["command"])
    if tool_input.get("pattern") and tool_input.get("path"):
        return f"{tool_input['pattern']} in {tool_input['path']}"
    for key in ("pattern", "query", "url"):
        if tool_input.get(key):
            return str(tool_input[key])

    return json.dumps(tool_input)[:100]


def _parse_record(record: dict) -> Optional[LogEntry]:
    record_type = record.get("type")

    if record_type == "assistant":
        text_parts = []
        tool_uses = []
        for block in message_content(record):
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                text_parts.append(str(block["text"]))
            elif block.get("type") == "tool_use" and block.get("name"):
                tool_uses.append((block["name"], format_tool_input(block.get("input"))))

        # Only the first tool call of a message is recorded
        if tool_uses:
            name, formatted = tool_uses[0]
            return LogEntry("tool", "\n".join(text_parts), tool_name=name, tool_input=formatted)
        if text_parts:
            return LogEntry("assistant", "\n".join(text_parts))
        return None

    if record_type == "result":
        return LogEntry("result", record.get("result") or "", is_error=record.get("is_error") is True)

    if record_type == "system":
        return LogEntry("system")

    return None


def parse_log(log_text: str) -> List[LogEntry]:
    """Parse raw JSON-lines log text; non-JSON lines are skipped."""
    entries = []
    for line in log_text.split("\n"):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except (json.JSONDecodeError, ValueError):
            continue
        if not isinstance(record, dict):
            continue
        entry = _parse_record(record)
        if entry is not None:
            entries.append(entry)
    return entries


def format_action(tool_name: str, tool_input: Optional[str] = None) -> str:
    """One human-readable line describing a tool call."""
    name = tool_name.lower()
    if name == "read":
        return f"Read file: {tool_input}" if tool_input else "Read a file"
    if name == "edit":
        return f"Edited file: {tool_input}" if tool_input else "Edited a file"
    if name == "write":
        return f"Wrote file: {tool_input}" if tool_input else "Wrote a file"
    if name == "bash":
        if not tool_input:
            return "Ran a command"
        suffix = "..." if len(tool_input) > 60 else ""
        return f"Ran command: {tool_input[:60]}{suffix}"
    if name == "grep":
        return f"Searched for: {tool_input}" if tool_input else "Searched code"
    if name == "glob":
        return f"Found files matching: {tool_input}" if tool_input else "Found files"
    if name in ("webfetch", "websearch"):
        return f"Fetched: {tool_input}" if tool_input else "Fetched web content"
    if name == "todowrite":
        return "Updated task list"
    if name == "task":
        return "Launched a sub-task"
    return f"Used {tool_name}: {tool_input[:40]}" if tool_input else f"Used {tool_name}"


def summarize_actions(entries: List[LogEntry]) -> List[str]:
    return [
        format_action(entry.tool_name, entry.tool_input)
        for entry in entries
        if entry.kind == "tool" and entry.tool_name
    ]


def last_progress_snapshot(entries: List[LogEntry]) -> Optional[str]:
    """Most recent assistant message long enough to describe real progress."""
    for entry in reversed(entries):
        if entry.kind != "assistant" or not entry.content:
            continue
        content = entry.content.strip()
        if len(content) > MIN_PROGRESS_LENGTH and not content.startswith(BOILERPLATE_OPENERS):
            return content[:MAX_PROGRESS_LENGTH]
    return None


def is_interruption(error_message: str) -> bool:
    """True when the failure reads like a timeout or signal rather than a real error."""
    return any(marker in error_message for marker in INTERRUPTION_MARKERS)


def build_retry_context(task: "Task", log_text: Optional[str]) -> RetryContext:
    """Synthesize the next iteration's prompt from a previous iteration's log."""
    if not log_text or not log_text.strip():
        return RetryContext(
            prompt=task.prompt,
            summary="No execution logs available",
            action_count=0,
            has_progress=False,
        )

    entries = parse_log(log_text)
    actions = summarize_actions(entries)
    progress = last_progress_snapshot(entries)

    failure_reason = task.error_message or "Unknown error"
    interrupted = is_interruption(failure_reason)

    sections = []
    if interrupted:
        sections.append("# Continuation of Interrupted Task")
        sections.append("")
        sections.append(
            "This task was interrupted before completion (likely due to timeout, system sleep, "
            "or network issues). Please continue from where you left off."
        )
    else:
        sections.append("# Retry with Context")
        sections.append("")
        sections.append(f"This task previously failed with error: {failure_reason}")
        sections.append("")
        sections.append("Please review what was attempted and try again, addressing any issues.")

    if actions:
        sections.append("")
        sections.append("## What Was Already Done")
        sections.append("")
        if len(actions) > MAX_LISTED_ACTIONS:
            sections.append(f"(Showing last {MAX_LISTED_ACTIONS} of {len(actions)} actions)")
        for action in actions[-MAX_LISTED_ACTIONS:]:
            sections.append(f"- {action}")

    if progress:
        sections.append("")
        sections.append("## Last Known Progress")
        sections.append("")
        sections.append(progress)

    sections.append("")
    sections.append("## Original Task")
    sections.append("")
    sections.append(task.prompt)

    sections.append("")
    sections.append("---")
    sections.append("")
    if interrupted:
        sections.append(
            "Please continue this task from where it left off. Do not repeat work that was "
            "already completed successfully. Focus on completing the remaining work."
        )
    else:
        sections.append(
            "Please attempt this task again, taking into account what was previously tried. "
            "If the same approach keeps failing, consider an alternative approach."
        )

    if actions:
        framing = "interruption" if interrupted else "failure"
        summary = f"{len(actions)} actions were taken before {framing}"
    else:
        summary = "Task failed before any significant progress"

    logger.debug(f"Retry context for task {task.id}: {summary}")
    return RetryContext(
        prompt="\n".join(sections),
        summary=summary,
        action_count=len(actions),
        has_progress=bool(actions),
    )
