"""Spawn agent processes and wrap them in a small handle.

The handle is owned by whoever invoked the agent until ``wait()`` returns or
``kill()`` is called, and must not be reused afterwards.
"""

import asyncio
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Dict, Optional, Sequence, Union

from ..errors.exceptions import AgentSpawnError
from ..utils.process_utils import kill_process_tree
from .cli_resolution import CliExecution

logger = logging.getLogger(__name__)

# Forced on every agent: no TTY prompts, no interactive UI
NON_INTERACTIVE_ENV = {"CI": "true", "TERM": "dumb"}

IS_WINDOWS = sys.platform == "win32"

# Seconds between SIGTERM and SIGKILL when stopping an agent
KILL_GRACE_SECONDS = 5.0


def build_agent_env(overrides: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    env = os.environ.copy()
    env.update(NON_INTERACTIVE_ENV)
    if overrides:
        env.update(overrides)
    return env


def _closed_stream() -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_eof()
    return reader


class AgentProcess:
    """Handle over a running agent: pid, raw output streams, kill and wait.

    ``wait()`` resolves exactly once, either when the OS reports the exit or
    immediately when the spawn itself failed (exit code 1).
    """

    def __init__(
        self,
        process: Optional[asyncio.subprocess.Process],
        name: str = "agent",
        spawn_error: Optional[AgentSpawnError] = None,
    ):
        self._process = process
        self.name = name
        self.spawn_error = spawn_error
        self._exit_code: Optional[int] = None
        self.terminated_by_signal: Optional[int] = None
        if process is None:
            self._stdout = _closed_stream()
            self._stderr = _closed_stream()
        else:
            self._stdout = process.stdout
            self._stderr = process.stderr

    @property
    def pid(self) -> int:
        return self._process.pid if self._process is not None else -1

    @property
    def stdout(self) -> asyncio.StreamReader:
        return self._stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        return self._stderr

    @property
    def exited(self) -> bool:
        return self._exit_code is not None

    def kill(self, force: bool = False) -> None:
        """Signal the agent and its children: SIGTERM, or SIGKILL when ``force``."""
        if self._process is None or self._process.returncode is not None:
            return
        sig_name = "SIGKILL" if force else "SIGTERM"
        logger.debug(f"[{self.name}] Sending {sig_name} to pid {self.pid}")
        if IS_WINDOWS:
            try:
                if force:
                    self._process.kill()
                else:
                    self._process.terminate()
            except ProcessLookupError:
                pass
        else:
            kill_process_tree(self._process.pid, signal.SIGKILL if force else signal.SIGTERM)

    async def stop(self, grace_seconds: float = KILL_GRACE_SECONDS) -> int:
        """Terminate the agent and return its exit code.

        Sends SIGTERM, waits up to ``grace_seconds``, then escalates to
        SIGKILL. Returns once the process is gone.
        """
        self.kill()
        try:
            return await asyncio.wait_for(self.wait(), timeout=grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                f"[{self.name}] pid {self.pid} ignored SIGTERM for {grace_seconds}s, sending SIGKILL"
            )
        self.kill(force=True)
        return await self.wait()

    async def wait(self) -> int:
        """Exit code of the agent. Signal deaths and spawn failures report 1."""
        if self._exit_code is not None:
            return self._exit_code
        if self._process is None:
            self._exit_code = 1
            return self._exit_code

        returncode = await self._process.wait()
        if self._exit_code is None:
            if returncode < 0:
                self.terminated_by_signal = -returncode
                self._exit_code = 1
            else:
                self._exit_code = returncode
            logger.debug(f"[{self.name}] wait() resolved, code={returncode}, pid={self.pid}")
        return self._exit_code


async def spawn_agent_process(
    execution: CliExecution,
    args: Sequence[str],
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[Dict[str, str]] = None,
    stdin_payload: Optional[str] = None,
    name: str = "agent",
) -> AgentProcess:
    """Start an agent and return its handle.

    stdin is closed right away, after writing ``stdin_payload`` when one is
    given. OS-level spawn errors do not raise: the returned handle carries
    ``spawn_error`` and its ``wait()`` reports exit code 1.
    """
    argv = execution.argv(args)
    full_env = build_agent_env(env)
    logger.debug(f"[{name}] Spawning: {' '.join(argv[:8])}{' ...' if len(argv) > 8 else ''}")
    logger.debug(f"[{name}] Working directory: {cwd}")

    try:
        if IS_WINDOWS:
            process = await asyncio.create_subprocess_shell(
                subprocess.list2cmdline(argv),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=full_env,
            )
        else:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=full_env,
                start_new_session=True,
            )
    except OSError as e:
        error = AgentSpawnError(execution.command, str(e))
        logger.error(f"[{name}] {error}")
        return AgentProcess(None, name=name, spawn_error=error)

    logger.debug(f"[{name}] Process spawned with PID: {process.pid}")

    if process.stdin is not None:
        try:
            if stdin_payload is not None:
                process.stdin.write(stdin_payload.encode("utf-8"))
                await process.stdin.drain()
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"[{name}] stdin closed early: {e}")

    return AgentProcess(process, name=name)
