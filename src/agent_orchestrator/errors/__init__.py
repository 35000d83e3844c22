"""Failure classification, exceptions and user-friendly error translation."""

from .classifier import (
    CLASSIFICATION_TABLE,
    FailureClassification,
    FailureKind,
    UsageLimitResult,
    classify_failure,
    detect_auth_error,
    detect_rate_limit,
    detect_usage_limit,
    extract_reset_time,
    next_utc_midnight,
)
from .exceptions import (
    AgentNotResolvedError,
    AgentSpawnError,
    CapabilityNotSupportedError,
    InvalidTransitionError,
    OrchestratorError,
    TaskNotFoundError,
)
from .translator import ErrorTranslator, UserFriendlyError

__all__ = [
    "CLASSIFICATION_TABLE",
    "FailureClassification",
    "FailureKind",
    "UsageLimitResult",
    "classify_failure",
    "detect_auth_error",
    "detect_rate_limit",
    "detect_usage_limit",
    "extract_reset_time",
    "next_utc_midnight",
    "AgentNotResolvedError",
    "AgentSpawnError",
    "CapabilityNotSupportedError",
    "InvalidTransitionError",
    "OrchestratorError",
    "TaskNotFoundError",
    "ErrorTranslator",
    "UserFriendlyError",
]
