"""Agent CLI adapters."""

from .anthropic_api import AnthropicApiClient, UsagePercentage
from .base import (
    AgentAdapter,
    AgentCapabilities,
    AgentInvokeOptions,
    AuthValidation,
    ChatSession,
    UsageLimitCheck,
)
from .claude_code import ClaudeCodeAdapter
from .gemini import GEMINI_RATE_LIMITS, GeminiAdapter, RateLimitStatus
from .process import AgentProcess, spawn_agent_process
from .registry import AgentRegistry

__all__ = [
    "AnthropicApiClient",
    "UsagePercentage",
    "AgentAdapter",
    "AgentCapabilities",
    "AgentInvokeOptions",
    "AuthValidation",
    "ChatSession",
    "UsageLimitCheck",
    "ClaudeCodeAdapter",
    "GeminiAdapter",
    "GEMINI_RATE_LIMITS",
    "RateLimitStatus",
    "AgentProcess",
    "spawn_agent_process",
    "AgentRegistry",
]
