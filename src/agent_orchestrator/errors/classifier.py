"""Heuristic classification of agent output text.

One table drives every call site (stream parser, probes, task runner) so the
keyword sets cannot drift apart. All functions here are pure: they never
raise and return the same answer for the same input (reset times derived
from relative phrases are anchored on the ``now`` argument).
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class FailureKind(str, Enum):
    """Taxonomy of classifiable agent failures."""
    USAGE_LIMIT = "usage_limit"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    NONE = "none"


# Lowercase substrings; a single hit classifies the text.
CLASSIFICATION_TABLE: Dict[FailureKind, Tuple[str, ...]] = {
    FailureKind.RATE_LIMIT: (
        "rate limit",
        "rate_limit",
        "429",
        "too many requests",
        "overloaded",
        "resource exhausted",
        "resource_exhausted",
        "requests per minute",
        "rpm limit",
        "tpm limit",
        "rpd limit",
    ),
    FailureKind.USAGE_LIMIT: (
        "usage limit",
        "usage_limit",
        "quota exceeded",
        "quota_exceeded",
        "limit exceeded",
        "daily limit",
        "daily_limit",
        "monthly limit",
        "exceeded your",
        "api limit",
        "request limit reached",
        "token limit",
        "out of credits",
        "billing",
        "resource exhausted",
        "resource_exhausted",
        "free tier",
        "upgrade your plan",
    ),
    FailureKind.AUTH: (
        "unauthorized",
        "401",
        "403",
        "authentication failed",
        "not authenticated",
        "invalid token",
        "token expired",
        "please log in",
        "please authenticate",
        "login required",
        "access denied",
        "invalid api key",
        "api_key_invalid",
    ),
}

# (subject, qualifiers): matches when the subject and any qualifier both appear.
_AUTH_COMPOUND_PATTERNS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("oauth", ("error", "failed")),
    ("credential", ("invalid", "expired")),
)

_RESET_PREFIX = r"(?:resets?|available|try again)"
_CLOCK_TIME_RE = re.compile(
    _RESET_PREFIX + r"(?:\s+at)?\s+(\d{1,2}):(\d{2})(?::(\d{2}))?(?:\s*(am|pm))?",
    re.IGNORECASE,
)
_DURATION_RE = re.compile(
    _RESET_PREFIX + r"\s+in\s+(\d+)\s*(hour|minute|min|second|sec|hr|h|m|s)s?",
    re.IGNORECASE,
)
_ISO_TIMESTAMP_RE = re.compile(
    r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?)"
)

_DURATION_UNITS = {
    "hour": "hours",
    "hr": "hours",
    "h": "hours",
    "minute": "minutes",
    "min": "minutes",
    "m": "minutes",
    "second": "seconds",
    "sec": "seconds",
    "s": "seconds",
}


@dataclass(frozen=True)
class UsageLimitResult:
    """Outcome of :func:`detect_usage_limit`."""
    is_usage_limit: bool
    reset_at: Optional[datetime] = None


@dataclass(frozen=True)
class FailureClassification:
    """Outcome of :func:`classify_failure`."""
    kind: FailureKind
    retriable: bool
    matched_pattern: Optional[str] = None
    reset_at: Optional[datetime] = None


def _first_match(haystack: str, patterns: Tuple[str, ...]) -> Optional[str]:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


def _match_auth(haystack: str) -> Optional[str]:
    pattern = _first_match(haystack, CLASSIFICATION_TABLE[FailureKind.AUTH])
    if pattern is not None:
        return pattern
    for subject, qualifiers in _AUTH_COMPOUND_PATTERNS:
        if subject in haystack:
            qualifier = _first_match(haystack, qualifiers)
            if qualifier is not None:
                return f"{subject}+{qualifier}"
    return None


def detect_rate_limit(text: str) -> bool:
    """Return True when the text signals a transient, retry-soon rate limit."""
    if not text:
        return False
    return _first_match(text.lower(), CLASSIFICATION_TABLE[FailureKind.RATE_LIMIT]) is not None


def detect_auth_error(text: str) -> bool:
    """Return True when the text signals that reauthentication is required."""
    if not text:
        return False
    return _match_auth(text.lower()) is not None


def detect_usage_limit(text: str, now: Optional[datetime] = None) -> UsageLimitResult:
    """Detect quota exhaustion and, when stated, when the quota resets."""
    if not text:
        return UsageLimitResult(is_usage_limit=False)
    if _first_match(text.lower(), CLASSIFICATION_TABLE[FailureKind.USAGE_LIMIT]) is None:
        return UsageLimitResult(is_usage_limit=False)
    return UsageLimitResult(is_usage_limit=True, reset_at=extract_reset_time(text, now=now))


def _reset_from_clock_time(match: "re.Match[str]", now: datetime) -> Optional[datetime]:
    hours = int(match.group(1))
    minutes = int(match.group(2))
    seconds = int(match.group(3) or 0)
    meridiem = (match.group(4) or "").lower()
    if meridiem == "pm" and hours < 12:
        hours += 12
    elif meridiem == "am" and hours == 12:
        hours = 0
    if hours > 23 or minutes > 59 or seconds > 59:
        return None

    local_now = now.astimezone()
    reset = local_now.replace(hour=hours, minute=minutes, second=seconds, microsecond=0)
    if reset <= local_now:
        reset += timedelta(days=1)
    return reset.astimezone(timezone.utc)


def _reset_from_duration(match: "re.Match[str]", now: datetime) -> datetime:
    amount = int(match.group(1))
    unit = _DURATION_UNITS[match.group(2).lower()]
    return (now + timedelta(**{unit: amount})).astimezone(timezone.utc)


def _reset_from_iso(value: str) -> Optional[datetime]:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.debug(f"Unparseable reset timestamp: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def next_utc_midnight(now: datetime) -> datetime:
    """Start of the next UTC day after ``now``."""
    today = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return today + timedelta(days=1)


def extract_reset_time(text: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Extract a quota reset time from free text.

    Strategies are tried in order and the first that matches wins:

    1. clock time ("resets at 3:00 PM"), assumed today and rolled to
       tomorrow when already past;
    2. relative duration ("try again in 2 hours");
    3. absolute ISO-8601 timestamp;
    4. any mention of "daily", taken as the next UTC midnight.

    Returns an aware UTC datetime, or None.
    """
    if not text:
        return None
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    match = _CLOCK_TIME_RE.search(text)
    if match:
        reset = _reset_from_clock_time(match, now)
        if reset is not None:
            return reset

    match = _DURATION_RE.search(text)
    if match:
        return _reset_from_duration(match, now)

    match = _ISO_TIMESTAMP_RE.search(text)
    if match:
        reset = _reset_from_iso(match.group(1))
        if reset is not None:
            return reset

    if "daily" in text.lower():
        return next_utc_midnight(now)

    return None


def classify_failure(text: str, now: Optional[datetime] = None) -> FailureClassification:
    """Classify output text into the failure taxonomy.

    Precedence: usage limit, then auth, then rate limit. Auth failures are
    never retriable.
    """
    haystack = (text or "").lower()

    pattern = _first_match(haystack, CLASSIFICATION_TABLE[FailureKind.USAGE_LIMIT])
    if pattern is not None:
        return FailureClassification(
            kind=FailureKind.USAGE_LIMIT,
            retriable=True,
            matched_pattern=pattern,
            reset_at=extract_reset_time(text, now=now),
        )

    pattern = _match_auth(haystack)
    if pattern is not None:
        return FailureClassification(kind=FailureKind.AUTH, retriable=False, matched_pattern=pattern)

    pattern = _first_match(haystack, CLASSIFICATION_TABLE[FailureKind.RATE_LIMIT])
    if pattern is not None:
        return FailureClassification(kind=FailureKind.RATE_LIMIT, retriable=True, matched_pattern=pattern)

    return FailureClassification(kind=FailureKind.NONE, retriable=True)
