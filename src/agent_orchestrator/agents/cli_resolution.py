"""Locate agent CLI executables.

Lookup order, first hit wins:

1. ``which`` / ``where`` on the current PATH
2. ``which`` inside a login shell (bash, plus zsh on macOS), for PATH entries
   that only interactive profiles set up
3. well-known install locations, including glob patterns for node version
   managers; multiple matches are sorted descending and the first is taken

A missing CLI is an expected condition: resolution returns None, never raises.
"""

import glob
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..utils.subprocess_utils import login_shell_which, which

logger = logging.getLogger(__name__)

NODE_MANAGER_MARKERS = (".nvm", ".fnm", ".volta", ".asdf", "nvm")

# <manager root>/<version dir>/lib/node_modules/... -> <version dir>
_NODE_LIB_RE = re.compile(
    r"(.+[/\\](?:\.nvm|\.fnm|\.volta|\.asdf)[/\\]"
    r"(?:versions[/\\]node[/\\]|node-versions[/\\]|installs[/\\]nodejs[/\\])?"
    r"v?[\d.]+(?:[/\\]installation)?)[/\\]lib[/\\]node_modules[/\\]",
    re.IGNORECASE,
)
_VOLTA_ROOT_RE = re.compile(r"(.+[/\\]\.volta)[/\\]", re.IGNORECASE)


@dataclass
class CliExecution:
    """How to launch a resolved CLI: ``[command, *prepend_args, *args]``."""
    command: str
    prepend_args: List[str] = field(default_factory=list)

    def argv(self, args: Sequence[str]) -> List[str]:
        return [self.command, *self.prepend_args, *args]


def known_install_paths(
    command: str,
    platform: Optional[str] = None,
    home: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
) -> List[str]:
    """Well-known install locations for an npm-distributed CLI."""
    platform = platform or sys.platform
    home = Path(home) if home is not None else Path.home()
    env = os.environ if env is None else env

    if platform == "win32":
        appdata = env.get("APPDATA")
        local_appdata = env.get("LOCALAPPDATA")
        program_files = env.get("PROGRAMFILES")
        nvm_home = env.get("NVM_HOME") or str(home / "AppData" / "Roaming" / "nvm")
        choco = env.get("ChocolateyInstall") or "C:\\ProgramData\\chocolatey"
        paths = []
        for base in (appdata and os.path.join(appdata, "npm"),
                     program_files and os.path.join(program_files, "nodejs"),
                     local_appdata and os.path.join(local_appdata, "npm"),
                     str(home / "AppData" / "Roaming" / "npm")):
            if base:
                paths.append(os.path.join(base, f"{command}.cmd"))
                paths.append(os.path.join(base, command))
        paths.append(os.path.join(nvm_home, "*", f"{command}.cmd"))
        paths.append(str(home / "scoop" / "shims" / f"{command}.cmd"))
        paths.append(os.path.join(choco, "bin", f"{command}.cmd"))
        return paths

    return [
        f"/usr/local/bin/{command}",
        f"/usr/bin/{command}",
        f"/opt/homebrew/bin/{command}",
        f"/usr/local/Homebrew/bin/{command}",
        str(home / ".local/bin" / command),
        str(home / ".npm-global/bin" / command),
        str(home / ".npm/bin" / command),
        str(home / ".yarn/bin" / command),
        str(home / ".pnpm/bin" / command),
        str(home / ".local/share/pnpm" / command),
        str(home / ".nvm/versions/node/*/bin" / command),
        str(home / ".volta/bin" / command),
        str(home / ".fnm/node-versions/*/installation/bin" / command),
        str(home / ".asdf/installs/nodejs/*/bin" / command),
    ]


def _check_candidate(candidate: str) -> Optional[str]:
    if "*" in candidate:
        matches = sorted(
            (m for m in glob.glob(candidate.replace("\\", "/")) if os.path.isfile(m)),
            reverse=True,
        )
        if matches:
            logger.debug(f"Found CLI via glob pattern: {matches[0]}")
            return matches[0]
        return None
    if os.path.isfile(candidate):
        logger.debug(f"Found CLI at known path: {candidate}")
        return candidate
    return None


def resolve_cli_path(
    command: str,
    extra_paths: Sequence[str] = (),
    custom_path: Optional[str] = None,
    platform: Optional[str] = None,
) -> Optional[str]:
    """Find ``command`` on this machine. Blocking; run it off the event loop."""
    platform = platform or sys.platform

    if custom_path:
        if os.path.isfile(custom_path):
            logger.debug(f"Using custom CLI path: {custom_path}")
            return custom_path
        logger.warning(f"Custom CLI path does not exist: {custom_path}, falling back to discovery")

    path = which(command)
    if path and os.path.exists(path):
        logger.debug(f"Found {command} via PATH: {path}")
        return path

    if platform != "win32":
        shells = ["bash", "zsh"] if platform == "darwin" else ["bash"]
        for shell in shells:
            path = login_shell_which(command, shell)
            if path and os.path.exists(path):
                logger.debug(f"Found {command} via {shell} login shell: {path}")
                return path

    for candidate in [*extra_paths, *known_install_paths(command, platform=platform)]:
        found = _check_candidate(candidate)
        if found:
            return found

    logger.debug(f"Could not find {command} executable")
    return None


def is_node_manager_path(path: str) -> bool:
    return any(marker in path for marker in NODE_MANAGER_MARKERS)


def find_node_binary(cli_path: str) -> Optional[str]:
    """Locate the node interpreter that owns a version-managed CLI script."""
    # <version>/lib/node_modules/<pkg>/cli.js -> <version>/bin/node
    match = _NODE_LIB_RE.match(cli_path)
    if match:
        node_path = os.path.join(match.group(1), "bin", "node")
        if os.path.exists(node_path):
            logger.debug(f"Found node via lib path: {node_path}")
            return node_path

    # <version>/bin/<cli> -> <version>/bin/node
    bin_dir = os.path.dirname(cli_path)
    if bin_dir.endswith("bin") and is_node_manager_path(cli_path):
        node_path = os.path.join(bin_dir, "node")
        if os.path.exists(node_path):
            logger.debug(f"Found node in same bin dir: {node_path}")
            return node_path

    # Volta resolves node through its own shim
    if ".volta" in cli_path:
        match = _VOLTA_ROOT_RE.match(cli_path)
        if match:
            node_path = os.path.join(match.group(1), "bin", "node")
            if os.path.exists(node_path):
                logger.debug(f"Found volta node shim: {node_path}")
                return node_path

    logger.debug(f"Could not find node binary for: {cli_path}")
    return None


def resolve_execution(cli_path: str) -> CliExecution:
    """Run version-managed ``.js`` entry points through an explicit node binary."""
    if cli_path.endswith(".js") and is_node_manager_path(cli_path):
        node_path = find_node_binary(cli_path)
        if node_path:
            logger.debug(f"Using explicit node execution: {node_path} {cli_path}")
            return CliExecution(command=node_path, prepend_args=[cli_path])
        logger.debug("Could not find node, attempting direct execution")
    return CliExecution(command=cli_path)
