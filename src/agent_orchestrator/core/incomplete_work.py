"""Detect output that ends before the agent finished the job.

A clean exit does not mean the work is done: agents announce further phases,
leave TODO lists, or stop to ask for approval. Pattern groups are checked in
priority order and the first hit decides the reason.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from ..utils.output_parser import OutputEvent

RECENT_EVENTS = 100
FINAL_EVENTS = 20
MAX_SUGGESTED_STEPS = 5

_PHASE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"phase\s+(\d+)\s+of\s+(\d+)",
        r"step\s+(\d+)\s+of\s+(\d+)",
        r"(\d+)\s+(?:phases?|steps?)\s+(?:remaining|left)",
        r"completed?\s+(?:phase|step)\s+(\d+)",
        r"next\s+(?:phase|step)\s+(?:will be|is)",
        r"in\s+the\s+next\s+iteration",
        r"continuing\s+in\s+next",
    )
]

_TODO_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"TODO:",
        r"FIXME:",
        r"still\s+need\s+to",
        r"next\s+steps?:",
        r"remaining\s+work:",
        r"additional\s+tasks?:",
        r"follow-?up\s+required:",
    )
]
_TODO_LINE = re.compile(r"TODO:|FIXME:|^\s*[-*]\s+", re.IGNORECASE)

_CONTINUATION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"(?:i'll|i will)\s+continue",
        r"let'?s\s+continue\s+with",
        r"moving\s+on\s+to",
        r"proceeding\s+to\s+(?:the\s+)?next",
        r"will\s+implement\s+next",
        r"(?:should|shall)\s+(?:we|i)\s+proceed",
    )
]

_APPROVAL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"should\s+i\s+continue\s*\?",
        r"would\s+you\s+like\s+me\s+to",
        r"shall\s+i\s+proceed\s+with",
        r"do\s+you\s+want\s+me\s+to",
        r"waiting\s+for\s+approval",
        r"please\s+(?:confirm|approve)",
    )
]

_TOKEN_LIMIT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"due\s+to\s+(?:response|output|token)\s+length",
        r"to\s+avoid\s+(?:token|output)\s+limits?",
        r"splitting\s+into\s+multiple",
        r"breaking\s+(?:this|it)\s+into\s+parts",
        r"reached\s+(?:output|token)\s+limit",
    )
]


@dataclass
class IncompleteWorkResult:
    is_incomplete: bool
    reason: Optional[str] = None  # multi-phase | todo-items | continuation-signal | approval-needed | token-limit
    details: Optional[str] = None
    suggested_next_steps: List[str] = field(default_factory=list)


def _first_search(patterns, text: str) -> Optional["re.Match[str]"]:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match
    return None


def detect_incomplete_work(events: Sequence[OutputEvent]) -> IncompleteWorkResult:
    """Inspect the tail of an iteration's output for signs of unfinished work."""
    recent = list(events)[-RECENT_EVENTS:]
    full_text = "\n".join(e.message for e in recent)
    final_output = "\n".join(e.message for e in recent[-FINAL_EVENTS:])

    match = _first_search(_PHASE_PATTERNS, full_text)
    if match:
        return IncompleteWorkResult(
            is_incomplete=True,
            reason="multi-phase",
            details=match.group(0),
            suggested_next_steps=[
                "Review the completed phase",
                "Continue with the next phase by re-prompting the task",
            ],
        )

    if _first_search(_TODO_PATTERNS, final_output):
        todo_lines = [line for line in final_output.split("\n") if _TODO_LINE.search(line)]
        return IncompleteWorkResult(
            is_incomplete=True,
            reason="todo-items",
            details="Agent indicated remaining tasks or TODO items",
            suggested_next_steps=todo_lines[:MAX_SUGGESTED_STEPS],
        )

    if _first_search(_CONTINUATION_PATTERNS, full_text):
        return IncompleteWorkResult(
            is_incomplete=True,
            reason="continuation-signal",
            details="Agent indicated intention to continue work",
            suggested_next_steps=[
                "Confirm completion or re-prompt to continue",
                "Review what was completed so far",
            ],
        )

    if _first_search(_APPROVAL_PATTERNS, final_output):
        return IncompleteWorkResult(
            is_incomplete=True,
            reason="approval-needed",
            details="Agent is asking for approval to continue",
            suggested_next_steps=[
                "Review the work completed so far",
                "Decide whether to approve continuation or modify the approach",
            ],
        )

    if _first_search(_TOKEN_LIMIT_PATTERNS, full_text):
        return IncompleteWorkResult(
            is_incomplete=True,
            reason="token-limit",
            details="Agent hit output limits and may have more to say",
            suggested_next_steps=["Re-prompt to continue the work"],
        )

    return IncompleteWorkResult(is_incomplete=False)
