"""Signal delivery to agent processes and their children."""

import logging
import os
import signal
import sys

logger = logging.getLogger(__name__)


def kill_process_tree(pid: int, sig: int = signal.SIGTERM) -> bool:
    """Send ``sig`` to the process group of ``pid``, falling back to the process alone.

    Agents are spawned in their own session, so the group reaches the node
    runtime and any tool subprocesses the CLI started. Returns False when the
    process is already gone.
    """
    if sys.platform == "win32":
        try:
            os.kill(pid, sig)
            return True
        except (ProcessLookupError, PermissionError, OSError):
            return False

    try:
        os.killpg(os.getpgid(pid), sig)
        return True
    except (ProcessLookupError, PermissionError):
        return False
    except OSError:
        # Not a group leader
        try:
            os.kill(pid, sig)
            return True
        except (ProcessLookupError, PermissionError):
            return False
