"""Rich logging with task context and colored console output."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "agent_orchestrator"

LEVEL_COLORS = {
    "DEBUG": "\033[36m",      # Cyan
    "INFO": "\033[32m",       # Green
    "WARNING": "\033[33m",    # Yellow
    "ERROR": "\033[31m",      # Red
    "CRITICAL": "\033[35m",   # Magenta
}


class AgentLogFormatter(logging.Formatter):
    """Formatter that prefixes agent id, phase and task/iteration context."""

    def __init__(self, agent_id: str, use_colors: bool = True):
        super().__init__()
        self.agent_id = agent_id
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        task_context = ""
        if hasattr(record, "task_id"):
            task_context = f"[{record.task_id}"
            if hasattr(record, "iteration"):
                task_context += f"#{record.iteration}"
            task_context += "] "

        phase_context = ""
        if hasattr(record, "phase"):
            phase_context = f"[{record.phase}] "

        if self.use_colors:
            level_color = LEVEL_COLORS.get(record.levelname, "")
            reset = "\033[0m"
        else:
            level_color = ""
            reset = ""

        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        return (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"[{self.agent_id}] {phase_context}{task_context}{message}"
        )


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that stamps the current task, iteration and phase on every record."""

    def __init__(self, logger: logging.Logger, agent_id: str):
        super().__init__(logger, {})
        self.agent_id = agent_id
        self.current_task_id: Optional[str] = None
        self.current_iteration: Optional[int] = None
        self.current_phase: Optional[str] = None

    def set_task_context(
        self,
        task_id: Optional[str] = None,
        iteration: Optional[int] = None,
        phase: Optional[str] = None,
    ):
        if task_id:
            self.current_task_id = task_id
        if iteration is not None:
            self.current_iteration = iteration
        if phase is not None:
            self.current_phase = phase

    def clear_context(self):
        self.current_task_id = None
        self.current_iteration = None
        self.current_phase = None

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})

        if self.current_task_id:
            extra["task_id"] = self.current_task_id
        if self.current_iteration is not None:
            extra["iteration"] = self.current_iteration
        if self.current_phase:
            extra["phase"] = self.current_phase

        kwargs["extra"] = extra
        return msg, kwargs

    def task_started(self, task_id: str, title: str, iteration: int = 1):
        self.set_task_context(task_id=task_id, iteration=iteration)
        self.info(f"📋 Starting task: {title}")

    def phase_change(self, phase: str):
        self.set_task_context(phase=phase)
        self.info(f"▶️ Phase: {phase}")

    def iteration_completed(self, status: str, runtime_ms: int, output_tokens: Optional[int] = None):
        msg = f"✅ Iteration finished as {status} in {runtime_ms / 1000:.1f}s"
        if output_tokens:
            msg += f" ({output_tokens:,} output tokens)"
        self.info(msg)
        self.clear_context()

    def task_failed(self, error: str):
        self.error(f"❌ Task failed (iteration {self.current_iteration or 1}): {error}")
        self.clear_context()

    def rate_limited(self, message: str):
        self.warning(f"⏳ Rate limited: {message}")

    def usage_limited(self, reset_at: Optional[datetime] = None):
        if reset_at is not None:
            self.warning(f"🛑 Usage limit reached, resets at {reset_at.isoformat()}")
        else:
            self.warning("🛑 Usage limit reached, reset time unknown")


def setup_rich_logging(
    agent_id: str,
    workspace: Path,
    log_level: str = "INFO",
    use_file: bool = True,
    log_dir: Optional[Path] = None,
) -> ContextLogger:
    """
    Configure package logging and return a context logger for ``agent_id``.

    Handlers are attached to the ``agent_orchestrator`` logger so every
    module logger propagates into them.

    Args:
        agent_id: Agent identifier shown on every line
        workspace: Workspace path
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        use_file: Also write ``<log_dir>/<agent_id>.log``
        log_dir: Log file directory (default ``<workspace>/logs``)

    Returns:
        ContextLogger instance
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(getattr(logging, log_level.upper()))

    # Close existing handlers before clearing (prevents file descriptor leak)
    for handler in root.handlers[:]:
        handler.close()
        root.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    use_colors = hasattr(sys.stderr, "isatty") and sys.stderr.isatty()
    console_handler.setFormatter(AgentLogFormatter(agent_id, use_colors=use_colors))
    root.addHandler(console_handler)

    if use_file:
        log_dir = Path(log_dir) if log_dir is not None else Path(workspace) / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{agent_id}.log", encoding="utf-8")
        file_handler.setFormatter(AgentLogFormatter(agent_id, use_colors=False))
        root.addHandler(file_handler)

    return ContextLogger(logging.getLogger(f"{ROOT_LOGGER}.runner.{agent_id}"), agent_id)
