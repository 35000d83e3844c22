"""Open a command in a new interactive terminal window.

Used for reauthentication flows, which need a real TTY the orchestrator
cannot provide.
"""

import logging
import shlex
import shutil
import subprocess
import sys
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

LINUX_TERMINALS = (
    ("gnome-terminal", ["--"], "--title"),
    ("konsole", ["-e"], "--title"),
    ("xterm", ["-e"], "-T"),
    ("x-terminal-emulator", ["-e"], "-T"),
)


class TerminalLaunchError(RuntimeError):
    """No terminal emulator could be started."""


def _shell_script(command: Sequence[str], cwd: Optional[str], keep_open: bool) -> str:
    script = " ".join(shlex.quote(part) for part in command)
    if cwd:
        script = f"cd {shlex.quote(cwd)} && {script}"
    if keep_open:
        script += "; exec $SHELL"
    return script


def _detach(argv: List[str]) -> None:
    subprocess.Popen(
        argv,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=sys.platform != "win32",
    )


def launch_in_terminal(
    command: Sequence[str],
    cwd: Optional[str] = None,
    title: Optional[str] = None,
    keep_open: bool = True,
    platform: Optional[str] = None,
) -> str:
    """Start ``command`` in a new terminal window and return the launcher used.

    Raises:
        TerminalLaunchError: If no supported terminal is available
    """
    platform = platform or sys.platform
    script = _shell_script(command, cwd, keep_open)

    if platform == "darwin":
        escaped = script.replace("\\", "\\\\").replace('"', '\\"')
        osascript = f'tell application "Terminal"\n  activate\n  do script "{escaped}"\nend tell'
        try:
            _detach(["osascript", "-e", osascript])
        except OSError as e:
            raise TerminalLaunchError(f"Failed to launch Terminal.app: {e}") from e
        return "osascript"

    if platform == "win32":
        cmdline = subprocess.list2cmdline(list(command))
        window_title = title or "agent-orchestrator"
        try:
            _detach(["cmd", "/c", "start", window_title, "/D", cwd or ".", "cmd", "/k", cmdline])
        except OSError as e:
            raise TerminalLaunchError(f"Failed to launch cmd.exe: {e}") from e
        return "cmd"

    for name, exec_args, title_flag in LINUX_TERMINALS:
        if shutil.which(name) is None:
            continue
        argv = [name]
        if title:
            argv += [title_flag, title]
        argv += [*exec_args, "bash", "-c", script]
        try:
            _detach(argv)
        except OSError as e:
            logger.debug(f"Terminal {name} failed to start: {e}")
            continue
        return name

    raise TerminalLaunchError("No supported terminal emulator found")
