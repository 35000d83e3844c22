"""Shared utility functions for the agent orchestrator."""

from .atomic_io import atomic_write_model, atomic_write_text
from .output_parser import OutputEvent, OutputEventType, parse_line, parse_output
from .process_utils import kill_process_tree
from .subprocess_utils import (
    SubprocessError,
    get_command_output,
    login_shell_which,
    run_command,
    which,
)

__all__ = [
    # Atomic I/O
    "atomic_write_model",
    "atomic_write_text",
    # Output parsing
    "OutputEvent",
    "OutputEventType",
    "parse_line",
    "parse_output",
    # Process management
    "kill_process_tree",
    # Subprocess utilities
    "SubprocessError",
    "get_command_output",
    "login_shell_which",
    "run_command",
    "which",
]
