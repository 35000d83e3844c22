"""Explicitly constructed set of agent adapters.

Build one registry per process (``AgentRegistry.from_config``) and pass it to
whoever needs adapters; cached executable paths and model lists live on the
adapter instances it owns.
"""

import logging
from typing import Dict, List, Optional

from ..core.config import OrchestratorConfig
from .base import AgentAdapter
from .claude_code import ClaudeCodeAdapter
from .gemini import GeminiAdapter

logger = logging.getLogger(__name__)


class AgentRegistry:
    """Adapters by id plus the default used when a task names none."""

    def __init__(self, default_agent: str = "claude-code"):
        self._adapters: Dict[str, AgentAdapter] = {}
        self._default_id = default_agent

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> "AgentRegistry":
        registry = cls(default_agent=config.agents.default_agent)
        for adapter_cls in (ClaudeCodeAdapter, GeminiAdapter):
            agent_config = config.agents.for_agent(adapter_cls.id)
            kwargs = dict(
                custom_path=agent_config.custom_path,
                default_model=agent_config.default_model,
                extra_env=agent_config.extra_env,
                probe_timeout=config.probe.timeout_seconds,
                probe_prompt=config.probe.prompt,
            )
            if adapter_cls is GeminiAdapter:
                kwargs["api_key"] = agent_config.api_key
                kwargs["tier"] = agent_config.tier
            registry.register(adapter_cls(**kwargs))
        return registry

    def register(self, adapter: AgentAdapter) -> None:
        self._adapters[adapter.id] = adapter

    def get(self, agent_id: str) -> Optional[AgentAdapter]:
        return self._adapters.get(agent_id)

    def all(self) -> List[AgentAdapter]:
        return list(self._adapters.values())

    async def available(self) -> List[AgentAdapter]:
        """Adapters whose CLI is installed."""
        return [adapter for adapter in self._adapters.values() if await adapter.is_available()]

    @property
    def default(self) -> AgentAdapter:
        adapter = self._adapters.get(self._default_id)
        if adapter is None:
            raise KeyError(f"Default adapter '{self._default_id}' not registered")
        return adapter

    def set_default(self, agent_id: str) -> None:
        if agent_id not in self._adapters:
            raise KeyError(f"Cannot set default: adapter '{agent_id}' not registered")
        self._default_id = agent_id
