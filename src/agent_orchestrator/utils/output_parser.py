"""Streaming parser for agent JSON-lines output.

Agents write newline-delimited JSON on stdout, but arbitrary diagnostic text
can be interleaved. Each line is parsed structurally first; anything that is
not JSON falls through to keyword heuristics. Parsing never raises.
"""

import asyncio
import codecs
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

from ..errors.classifier import detect_rate_limit, detect_usage_limit

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096


class OutputEventType(str, Enum):
    LOG = "log"
    ERROR = "error"
    RATE_LIMIT = "rate-limit"
    USAGE_LIMIT = "usage-limit"
    COMPLETE = "complete"


@dataclass
class TokenUsage:
    """Token accounting reported on a ``result`` record."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    cost_usd: Optional[float] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> Optional["TokenUsage"]:
        usage = record.get("usage")
        if not isinstance(usage, dict):
            return None
        return cls(
            input_tokens=usage.get("input_tokens") or 0,
            output_tokens=usage.get("output_tokens") or 0,
            cache_creation_input_tokens=usage.get("cache_creation_input_tokens") or 0,
            cache_read_input_tokens=usage.get("cache_read_input_tokens") or 0,
            cost_usd=record.get("total_cost_usd"),
        )


@dataclass
class OutputEvent:
    """One classified output line.

    ``message`` is the raw line (surrounding whitespace trimmed) so log viewers
    can show exactly what the agent wrote.
    """
    type: OutputEventType
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    reset_at: Optional[datetime] = None
    session_id: Optional[str] = None
    usage: Optional[TokenUsage] = None


# Maps a decoded JSON object (plus its raw line) to an event.
RecordClassifier = Callable[[Dict[str, Any], str], OutputEvent]


def message_content(record: Dict[str, Any]) -> List[Any]:
    """Content blocks of an assistant record; empty when ``message`` is not an object."""
    message = record.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    return content if isinstance(content, list) else []


def _error_text(record: Dict[str, Any], line: str) -> str:
    error = record.get("error") or record.get("message")
    if isinstance(error, dict):
        error = error.get("message") or json.dumps(error)
    return str(error) if error else line


def _classify_error_text(text: str, line: str, session_id: Optional[str] = None) -> OutputEvent:
    usage_limit = detect_usage_limit(text)
    if usage_limit.is_usage_limit:
        return OutputEvent(
            OutputEventType.USAGE_LIMIT, line, reset_at=usage_limit.reset_at, session_id=session_id
        )
    if detect_rate_limit(text):
        return OutputEvent(OutputEventType.RATE_LIMIT, line, session_id=session_id)
    return OutputEvent(OutputEventType.ERROR, line, session_id=session_id)


def classify_claude_record(record: Dict[str, Any], line: str) -> OutputEvent:
    """Classify a Claude Code stream-json record by its ``type`` field."""
    session_id = record.get("session_id") or None
    record_type = record.get("type")

    if record_type == "error":
        return _classify_error_text(_error_text(record, line), line, session_id)
    if record_type == "result":
        return OutputEvent(
            OutputEventType.COMPLETE,
            line,
            session_id=session_id,
            usage=TokenUsage.from_record(record),
        )
    return OutputEvent(OutputEventType.LOG, line, session_id=session_id)


def classify_gemini_record(record: Dict[str, Any], line: str) -> OutputEvent:
    """Classify a Gemini CLI record: any ``error`` field is an error, ``done`` completes."""
    if record.get("error"):
        return _classify_error_text(_error_text(record, line), line)
    if record.get("done") or record.get("type") == "result":
        return OutputEvent(OutputEventType.COMPLETE, line, usage=TokenUsage.from_record(record))
    return OutputEvent(OutputEventType.LOG, line)


def classify_text_line(line: str) -> OutputEvent:
    """Heuristic classification for a line that is not JSON."""
    usage_limit = detect_usage_limit(line)
    if usage_limit.is_usage_limit:
        return OutputEvent(OutputEventType.USAGE_LIMIT, line, reset_at=usage_limit.reset_at)
    if detect_rate_limit(line):
        return OutputEvent(OutputEventType.RATE_LIMIT, line)
    if "error" in line.lower():
        return OutputEvent(OutputEventType.ERROR, line)
    return OutputEvent(OutputEventType.LOG, line)


def parse_line(
    line: str,
    record_classifier: RecordClassifier = classify_claude_record,
) -> Optional[OutputEvent]:
    """Classify one line of output. Returns None for blank lines."""
    line = line.strip()
    if not line:
        return None

    try:
        record = json.loads(line)
    except (json.JSONDecodeError, ValueError):
        return classify_text_line(line)

    if not isinstance(record, dict):
        return OutputEvent(OutputEventType.LOG, line)
    return record_classifier(record, line)


ByteStream = Union[asyncio.StreamReader, AsyncIterator[bytes]]


async def _iter_chunks(stream: ByteStream) -> AsyncIterator[bytes]:
    read = getattr(stream, "read", None)
    if read is not None:
        while True:
            chunk = await read(CHUNK_SIZE)
            if not chunk:
                return
            yield chunk
    else:
        async for chunk in stream:
            yield chunk


async def iter_lines(stream: ByteStream) -> AsyncIterator[str]:
    """Yield complete, non-blank lines from a byte stream.

    The trailing partial line is held back until more bytes arrive and is
    flushed at end of stream.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    async for chunk in _iter_chunks(stream):
        logger.debug(f"stdout chunk received, size: {len(chunk)}")
        buffer += decoder.decode(chunk)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            if line.strip():
                yield line

    buffer += decoder.decode(b"", final=True)
    if buffer.strip():
        yield buffer


async def parse_output(
    stream: ByteStream,
    record_classifier: RecordClassifier = classify_claude_record,
) -> AsyncIterator[OutputEvent]:
    """Lazily turn an agent's stdout into OutputEvents.

    Single pass and not restartable. Stop early with ``aclose()``; the
    underlying stream is left for the process owner to close.
    """
    async for line in iter_lines(stream):
        event = parse_line(line, record_classifier)
        if event is not None:
            yield event


class ChatEventType(str, Enum):
    TEXT = "text"
    TOOL_USE = "tool_use"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class ChatEvent:
    """Event surfaced by multi-turn chat sessions."""
    type: ChatEventType
    content: Optional[str] = None
    tool: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    conversation_id: Optional[str] = None


async def parse_chat_output(stream: ByteStream) -> AsyncIterator[ChatEvent]:
    """Turn stream-json output into chat events, tracking the conversation id.

    The first ``session_id`` seen becomes the conversation id and is attached
    to every later event. Non-JSON lines are ignored in chat mode.
    """
    conversation_id: Optional[str] = None

    async for line in iter_lines(stream):
        try:
            record = json.loads(line)
        except (json.JSONDecodeError, ValueError):
            continue
        if not isinstance(record, dict):
            continue

        if record.get("session_id") and not conversation_id:
            conversation_id = record["session_id"]
            logger.debug(f"Got conversation ID: {conversation_id}")

        record_type = record.get("type")
        if record_type == "assistant":
            for block in message_content(record):
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text" and block.get("text"):
                    yield ChatEvent(ChatEventType.TEXT, content=str(block["text"]), conversation_id=conversation_id)
                elif block.get("type") == "tool_use":
                    yield ChatEvent(
                        ChatEventType.TOOL_USE,
                        tool=block.get("name"),
                        tool_input=block.get("input") if isinstance(block.get("input"), dict) else None,
                        conversation_id=conversation_id,
                    )
        elif record_type == "result":
            yield ChatEvent(ChatEventType.COMPLETE, conversation_id=conversation_id)
        elif record_type == "error":
            yield ChatEvent(
                ChatEventType.ERROR,
                error=_error_text(record, "Unknown error"),
                conversation_id=conversation_id,
            )
