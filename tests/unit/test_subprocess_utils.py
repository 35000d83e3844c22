"""Tests for subprocess_utils."""

import sys

import pytest

from agent_orchestrator.utils import subprocess_utils
from agent_orchestrator.utils.subprocess_utils import (
    SubprocessError,
    get_command_output,
    login_shell_which,
    run_command,
    which,
)

PY = sys.executable


def test_subprocess_error_message():
    error = SubprocessError(cmd="which claude", returncode=1, stderr="not found")

    assert error.returncode == 1
    assert "exit code 1" in str(error)
    assert "not found" in str(error)


def test_run_command_success():
    result = run_command([PY, "-c", "print('hello')"])

    assert result.returncode == 0
    assert "hello" in result.stdout


def test_run_command_failure_raises():
    with pytest.raises(SubprocessError) as exc_info:
        run_command([PY, "-c", "import sys; sys.exit(3)"])

    assert exc_info.value.returncode == 3


def test_run_command_failure_no_check():
    result = run_command([PY, "-c", "import sys; sys.exit(3)"], check=False)

    assert result.returncode == 3


def test_run_command_timeout():
    with pytest.raises(SubprocessError) as exc_info:
        run_command([PY, "-c", "import time; time.sleep(10)"], timeout=0.5)

    assert exc_info.value.timed_out is True


def test_get_command_output_strips():
    assert get_command_output([PY, "-c", "print('  /usr/bin/claude  ')"]) == "/usr/bin/claude"


class TestWhich:
    def test_first_line_wins(self, monkeypatch):
        """``where`` on Windows may list several matches."""
        monkeypatch.setattr(
            subprocess_utils, "get_command_output", lambda cmd, timeout: "C:\\a\\claude.cmd\nC:\\b\\claude.cmd"
        )

        assert which("claude") == "C:\\a\\claude.cmd"

    def test_lookup_failure(self, monkeypatch):
        def fail(cmd, timeout):
            raise SubprocessError(cmd=" ".join(cmd), returncode=1, stderr="")

        monkeypatch.setattr(subprocess_utils, "get_command_output", fail)

        assert which("claude") is None

    def test_missing_lookup_tool(self, monkeypatch):
        def fail(cmd, timeout):
            raise FileNotFoundError(cmd[0])

        monkeypatch.setattr(subprocess_utils, "get_command_output", fail)

        assert which("claude") is None


class TestLoginShellWhich:
    def test_skips_profile_banner(self, monkeypatch):
        monkeypatch.setattr(
            subprocess_utils,
            "get_command_output",
            lambda cmd, timeout: "Welcome back!\n/home/me/.nvm/bin/claude",
        )

        assert login_shell_which("claude", "bash") == "/home/me/.nvm/bin/claude"

    def test_non_path_output(self, monkeypatch):
        monkeypatch.setattr(subprocess_utils, "get_command_output", lambda cmd, timeout: "claude not found")

        assert login_shell_which("claude", "zsh") is None

    def test_invokes_login_shell(self, monkeypatch):
        calls = []

        def record(cmd, timeout):
            calls.append(cmd)
            return "/usr/local/bin/claude"

        monkeypatch.setattr(subprocess_utils, "get_command_output", record)
        login_shell_which("claude", "zsh")

        assert calls == [["zsh", "-l", "-c", "which claude"]]
