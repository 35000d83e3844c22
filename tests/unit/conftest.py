"""Shared test fixtures for unit tests."""

import os
import stat
import sys
import textwrap
from datetime import datetime, timedelta, timezone

import pytest

from agent_orchestrator.core.task_state import TaskStateMachine
from agent_orchestrator.core.task_store import InMemoryTaskStore

T0 = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock for runtime accounting tests."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryTaskStore()


@pytest.fixture
def machine(store, clock):
    return TaskStateMachine(store, clock=clock)


@pytest.fixture
def fake_cli(tmp_path):
    """Factory writing an executable Python script that stands in for an agent CLI.

    The script body sees ``json``, ``os`` and ``sys`` already imported.
    """
    if sys.platform == "win32":
        pytest.skip("fake CLIs rely on shebang scripts")

    def _write(body: str, name: str = "fake-agent") -> str:
        script = tmp_path / name
        script.write_text(f"#!{sys.executable}\nimport json, os, sys\n" + textwrap.dedent(body), encoding="utf-8")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return os.fspath(script)

    return _write
