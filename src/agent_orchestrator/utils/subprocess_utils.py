"""Blocking helper commands used during executable discovery."""

import logging
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Union

logger = logging.getLogger(__name__)


class SubprocessError(Exception):
    """Exception raised when a subprocess command fails."""

    def __init__(
        self,
        cmd: str,
        returncode: int,
        stderr: str,
        stdout: str = "",
        timed_out: bool = False,
    ):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        self.timed_out = timed_out
        if timed_out:
            message = f"Command timed out: {cmd}"
        else:
            message = f"Command failed with exit code {returncode}: {cmd}\nstderr: {stderr}"
        super().__init__(message)


def run_command(
    cmd: Union[str, List[str]],
    *,
    cwd: Optional[Path] = None,
    check: bool = True,
    timeout: Optional[float] = None,
    env: Optional[dict] = None,
) -> subprocess.CompletedProcess:
    """
    Run a command with standardized error handling.

    Args:
        cmd: Command to run (string or list)
        cwd: Working directory
        check: Raise exception on non-zero exit
        timeout: Timeout in seconds
        env: Environment variables

    Returns:
        CompletedProcess with stdout, stderr, returncode

    Raises:
        SubprocessError: If the command times out, or check=True and it fails
    """
    cmd_str = cmd if isinstance(cmd, str) else " ".join(cmd)
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        logger.debug(f"Command timed out after {timeout}s: {cmd_str}")
        raise SubprocessError(cmd=cmd_str, returncode=-1, stderr=str(e), timed_out=True) from e

    if check and result.returncode != 0:
        raise SubprocessError(
            cmd=cmd_str,
            returncode=result.returncode,
            stderr=result.stderr,
            stdout=result.stdout,
        )
    return result


def get_command_output(
    cmd: Union[str, List[str]],
    *,
    cwd: Optional[Path] = None,
    timeout: float = 30,
) -> str:
    """Run a command and return its stripped stdout.

    Raises:
        SubprocessError: If command fails or times out
    """
    result = run_command(cmd, cwd=cwd, check=True, timeout=timeout)
    return result.stdout.strip()


def which(command: str, timeout: float = 5) -> Optional[str]:
    """First path reported by ``which`` (``where`` on Windows), or None."""
    lookup = "where" if sys.platform == "win32" else "which"
    try:
        output = get_command_output([lookup, command], timeout=timeout)
    except (SubprocessError, OSError):
        return None
    first = output.splitlines()[0].strip() if output else ""
    return first or None


def login_shell_which(command: str, shell: str, timeout: float = 5) -> Optional[str]:
    """Look ``command`` up through a login shell so profile-managed PATH entries apply."""
    try:
        output = get_command_output([shell, "-l", "-c", f"which {command}"], timeout=timeout)
    except (SubprocessError, OSError):
        return None
    # Profiles may print banners; the path is the last line
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if lines and lines[-1].startswith("/"):
        return lines[-1]
    return None
