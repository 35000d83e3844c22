"""Configuration loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

KNOWN_AGENTS = ("claude-code", "gemini")
GEMINI_TIERS = ("FREE", "TIER_1", "TIER_2", "TIER_3")


class AgentCliConfig(BaseModel):
    """Per-agent CLI settings."""
    custom_path: Optional[str] = None  # tried before PATH discovery when it exists
    default_model: Optional[str] = None  # alias ("opus") or literal id
    extra_env: Dict[str, str] = Field(default_factory=dict)
    api_key: Optional[str] = None  # Gemini only
    tier: str = "FREE"  # Gemini rate-limit tier: FREE, TIER_1, TIER_2, TIER_3

    @field_validator('tier')
    @classmethod
    def validate_tier(cls, v: str) -> str:
        tier = v.upper()
        if tier not in GEMINI_TIERS:
            raise ValueError(f"tier must be one of {', '.join(GEMINI_TIERS)}, got '{v}'")
        return tier


class AgentsConfig(BaseModel):
    """Which agents exist and which one runs tasks by default."""
    default_agent: str = "claude-code"
    claude_code: AgentCliConfig = Field(default_factory=AgentCliConfig)
    gemini: AgentCliConfig = Field(default_factory=AgentCliConfig)

    @field_validator('default_agent')
    @classmethod
    def validate_default_agent(cls, v: str) -> str:
        if v not in KNOWN_AGENTS:
            raise ValueError(
                f"default_agent must be one of {', '.join(KNOWN_AGENTS)}, got '{v}'"
            )
        return v

    def for_agent(self, agent_id: str) -> AgentCliConfig:
        return self.claude_code if agent_id == "claude-code" else self.gemini


class ProbeConfig(BaseModel):
    """Usage and auth probe settings."""
    timeout_seconds: float = 30.0
    prompt: str = "Reply with only the word: ok"

    @field_validator('timeout_seconds')
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {v}")
        return v


class TaskRunConfig(BaseModel):
    """Task execution settings."""
    max_duration_seconds: int = 0  # wall-clock ceiling per iteration; 0 = none
    store_dir: Path = Field(default=Path(".agent-orchestrator/projects"))
    log_dir: Path = Field(default=Path(".agent-orchestrator/logs"))
    usage_state_file: Path = Field(default=Path(".agent-orchestrator/usage_limits.json"))
    kill_grace_seconds: float = 5.0  # SIGTERM -> SIGKILL delay when stopping an agent

    @field_validator('max_duration_seconds')
    @classmethod
    def validate_max_duration(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"max_duration_seconds must be 0 (no limit) or positive, got {v}")
        return v

    @field_validator('kill_grace_seconds')
    @classmethod
    def validate_kill_grace(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"kill_grace_seconds must be positive, got {v}")
        return v


class CommitMessageConfig(BaseModel):
    """Model used for generated commit messages, resolved through model aliases."""
    agent: str = "claude-code"
    model: str = "haiku"


class OrchestratorConfig(BaseSettings):
    """Main orchestrator configuration."""
    workspace: Path = Field(default=Path("."))
    log_level: str = "INFO"

    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    tasks: TaskRunConfig = Field(default_factory=TaskRunConfig)
    commit_message: CommitMessageConfig = Field(default_factory=CommitMessageConfig)

    @model_validator(mode='after')
    def validate_commit_message_agent(self) -> 'OrchestratorConfig':
        if self.commit_message.agent not in KNOWN_AGENTS:
            raise ValueError(f"commit_message.agent '{self.commit_message.agent}' is not a known agent")
        return self

    class Config:
        env_prefix = "AGENT_ORCH_"
        env_file = ".env"
        extra = "allow"


# path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def clear_config_cache() -> None:
    _config_cache.clear()


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def _load_config_from_file(config_path: Path) -> OrchestratorConfig:
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    return OrchestratorConfig(**_expand_env_vars(data))


def load_config(config_path: Path = Path("agent-orchestrator.yaml")) -> OrchestratorConfig:
    """Load orchestrator configuration from a YAML file.

    Returns the cached config while the file's mtime is unchanged.
    """
    if not config_path.exists():
        logger.warning(f"Config file not found: {config_path}. Using default configuration.")
        return OrchestratorConfig()

    result = _get_cached_or_load(config_path.resolve(), _load_config_from_file)
    return result if result is not None else OrchestratorConfig()


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively replace ``"${VAR}"`` strings with environment values.

    Args:
        data: Config data to process
        _path: Dotted location, used in warnings (e.g. "agents.gemini.api_key")
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"Keeping the literal '{data}'."
            )
            return data
        return value
    return data
