"""Per-agent scheduling blocks after quota exhaustion.

A usage-limit hit (from the pre-flight probe or from an agent's output)
blocks the agent until its reset time. Blocks without a known reset time
hold until cleared. Expired blocks are dropped the next time they are read.
"""

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_serializer

from ..utils.atomic_io import atomic_write_model

logger = logging.getLogger(__name__)


class AgentBlock(BaseModel):
    """Why and until when an agent must not be scheduled."""
    agent_id: str
    blocked_at: datetime
    resume_at: Optional[datetime] = None  # None: until cleared
    triggered_by_task_id: Optional[str] = None
    message: Optional[str] = None

    @field_serializer("blocked_at", "resume_at")
    def serialize_datetime(self, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None


class UsageLimitState(BaseModel):
    blocks: Dict[str, AgentBlock] = Field(default_factory=dict)


class UsageLimitGate:
    """Tracks which agents are blocked, optionally persisted to a JSON file."""

    def __init__(
        self,
        path: Optional[Path] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.path = Path(path) if path is not None else None
        self._clock = clock or (lambda: datetime.now(UTC))
        self._state = self._load()

    def _load(self) -> UsageLimitState:
        if self.path is None or not self.path.exists():
            return UsageLimitState()
        try:
            return UsageLimitState.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable usage limit state {self.path}: {e}")
            return UsageLimitState()

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_model(self.path, self._state)

    def block(
        self,
        agent_id: str,
        resume_at: Optional[datetime] = None,
        task_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> AgentBlock:
        """Block ``agent_id`` until ``resume_at``.

        An existing block keeps its later reset time; a block with an
        unknown reset time is never shortened to a known one.
        """
        existing = self.active_block(agent_id)
        if existing is not None:
            if existing.resume_at is None:
                resume_at = None
            elif resume_at is not None:
                resume_at = max(resume_at, existing.resume_at)

        block = AgentBlock(
            agent_id=agent_id,
            blocked_at=self._clock(),
            resume_at=resume_at,
            triggered_by_task_id=task_id,
            message=message,
        )
        self._state.blocks[agent_id] = block
        self._save()
        until = resume_at.isoformat() if resume_at else "cleared manually"
        logger.warning(f"Scheduling paused for {agent_id} until {until}")
        return block

    def active_block(self, agent_id: str) -> Optional[AgentBlock]:
        """The agent's block, or None when there is none or it has expired."""
        block = self._state.blocks.get(agent_id)
        if block is None:
            return None
        if block.resume_at is not None and block.resume_at <= self._clock():
            logger.info(f"Usage limit for {agent_id} expired at {block.resume_at.isoformat()}")
            del self._state.blocks[agent_id]
            self._save()
            return None
        return block

    def is_blocked(self, agent_id: str) -> bool:
        return self.active_block(agent_id) is not None

    def clear(self, agent_id: Optional[str] = None) -> List[str]:
        """Lift the block on one agent, or on all agents. Returns the cleared ids."""
        if agent_id is None:
            cleared = list(self._state.blocks)
            self._state.blocks.clear()
        elif agent_id in self._state.blocks:
            del self._state.blocks[agent_id]
            cleared = [agent_id]
        else:
            cleared = []
        if cleared:
            self._save()
        return cleared

    def blocks(self) -> List[AgentBlock]:
        """Active blocks, expired ones dropped."""
        return [b for b in (self.active_block(a) for a in list(self._state.blocks)) if b is not None]
