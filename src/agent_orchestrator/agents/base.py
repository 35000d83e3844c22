"""Base agent adapter interface.

An adapter knows how to find one vendor's CLI, build its argument list and
read its output. Everything else (process handling, output parsing, error
classification, model aliases) is shared and composed in here.

Executable discovery is asynchronous and explicit: callers await
``resolve_executable()`` once, and ``invoke()`` / ``chat()`` then fail fast
with AgentNotResolvedError if no path is cached.
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Sequence

from ..core.incomplete_work import IncompleteWorkResult, detect_incomplete_work
from ..errors.classifier import detect_auth_error, detect_usage_limit
from ..errors.exceptions import AgentNotResolvedError, CapabilityNotSupportedError
from ..llm.model_aliases import (
    ModelInfo,
    default_model_id,
    enrich_models_with_aliases,
    resolve_model_alias,
)
from ..utils.output_parser import (
    ByteStream,
    ChatEvent,
    OutputEvent,
    classify_claude_record,
    parse_output,
)
from .cli_resolution import CliExecution, resolve_cli_path, resolve_execution
from .process import IS_WINDOWS, AgentProcess, spawn_agent_process

logger = logging.getLogger(__name__)

PROBE_PROMPT = "Reply with only the word: ok"
PROBE_TIMEOUT_SECONDS = 30.0

_VERSION_RE = re.compile(r"(\d+\.\d+\.\d+(?:-[a-zA-Z0-9.]+)?)")


@dataclass
class AgentInvokeOptions:
    """Per-invocation settings."""
    working_directory: Optional[str] = None
    model: Optional[str] = None  # alias or literal id; None = adapter default
    conversation_id: Optional[str] = None  # resume a previous session
    context_files: List[str] = field(default_factory=list)
    thinking: bool = False
    api_key: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class AgentCapabilities:
    supports_streaming: bool = True
    supports_tool_use: bool = True
    supports_file_access: bool = True
    supports_multi_turn: bool = False
    supports_thinking: bool = False
    supports_skills: bool = False
    supports_project_config: bool = False
    supports_context_files: bool = False
    supports_non_interactive_mode: bool = True
    supports_pause_resume: bool = False
    project_config_files: List[str] = field(default_factory=list)


@dataclass
class UsageLimitCheck:
    can_proceed: bool
    reset_at: Optional[datetime] = None
    message: Optional[str] = None


@dataclass
class AuthValidation:
    is_valid: bool
    requires_reauth: bool = False
    error: Optional[str] = None


@dataclass
class ReauthResult:
    success: bool
    error: Optional[str] = None


@dataclass
class CliTestResult:
    success: bool
    version: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ChatSession:
    """A running chat turn: the process handle plus its lazily parsed events."""
    process: AgentProcess
    events: AsyncIterator[ChatEvent]


@dataclass
class ProbeResult:
    exit_code: int
    stdout: str
    stderr: str


class AgentAdapter(ABC):
    """Abstract base class for vendor CLI adapters."""

    id: str = ""
    name: str = ""
    command: str = ""
    auth_error_message = "Authentication required."
    record_classifier = staticmethod(classify_claude_record)
    available_models: Sequence[ModelInfo] = ()

    def __init__(
        self,
        custom_path: Optional[str] = None,
        extra_paths: Sequence[str] = (),
        default_model: Optional[str] = None,
        extra_env: Optional[Dict[str, str]] = None,
        probe_timeout: float = PROBE_TIMEOUT_SECONDS,
        probe_prompt: str = PROBE_PROMPT,
    ):
        self._custom_path = custom_path
        self._extra_paths = list(extra_paths)
        self.default_model = default_model
        self.extra_env = dict(extra_env or {})
        self.probe_timeout = probe_timeout
        self.probe_prompt = probe_prompt
        self._cached_path: Optional[str] = None
        self._models: Optional[List[ModelInfo]] = None

    # -- executable discovery --------------------------------------------

    async def resolve_executable(self) -> Optional[str]:
        """Locate the CLI (blocking lookups run in a worker thread) and cache it."""
        if self._cached_path:
            return self._cached_path
        path = await asyncio.to_thread(
            resolve_cli_path, self.command, self._extra_paths, self._custom_path
        )
        if path:
            logger.debug(f"[{self.id}] Resolved CLI: {path}")
        else:
            logger.warning(f"[{self.id}] {self.command} CLI not found")
        self._cached_path = path
        return path

    @property
    def cached_path(self) -> Optional[str]:
        return self._cached_path

    def set_custom_path(self, path: Optional[str]) -> None:
        """Use ``path`` first on the next resolution and drop the cached one."""
        self._custom_path = path or None
        self._cached_path = None

    def _require_execution(self, operation: str) -> CliExecution:
        if not self._cached_path:
            raise AgentNotResolvedError(self.name, operation)
        return resolve_execution(self._cached_path)

    async def is_available(self) -> bool:
        return await self.resolve_executable() is not None

    # -- invocation --------------------------------------------------------

    @abstractmethod
    def build_invoke_args(self, options: AgentInvokeOptions) -> List[str]:
        """Vendor flags for a non-interactive run, without the prompt."""

    def build_env(self, options: AgentInvokeOptions) -> Dict[str, str]:
        return {**self.extra_env, **options.env}

    async def invoke(self, prompt: str, options: Optional[AgentInvokeOptions] = None) -> AgentProcess:
        """Start the agent on ``prompt``.

        On Windows the prompt goes through stdin since the shell mangles
        multi-line arguments; everywhere else it is the last argument.

        Raises:
            AgentNotResolvedError: If resolve_executable() has not found the CLI
        """
        options = options or AgentInvokeOptions()
        execution = self._require_execution("invoke")
        args = self.build_invoke_args(options)
        logger.debug(f"[{self.id}] Invoking with args: {' '.join(args)}")
        if not IS_WINDOWS:
            args.append(prompt)
        return await spawn_agent_process(
            execution,
            args,
            cwd=options.working_directory,
            env=self.build_env(options),
            stdin_payload=prompt if IS_WINDOWS else None,
            name=self.id,
        )

    def parse_output(self, stream: ByteStream) -> AsyncIterator[OutputEvent]:
        return parse_output(stream, self.record_classifier)

    async def chat(self, message: str, conversation_id: Optional[str] = None,
                   options: Optional[AgentInvokeOptions] = None) -> ChatSession:
        """Send one chat turn. Adapters whose CLI supports multi-turn override this.

        Raises:
            CapabilityNotSupportedError: If the agent has no multi-turn support
        """
        if not self.get_capabilities().supports_multi_turn:
            raise CapabilityNotSupportedError(self.name, "multi-turn chat")
        raise NotImplementedError(f"{type(self).__name__} declares multi-turn support but does not implement chat()")

    # -- probes ------------------------------------------------------------

    def build_probe_args(self) -> List[str]:
        return ["-p", "--output-format", "json", self.probe_prompt]

    def build_probe_env(self) -> Dict[str, str]:
        return dict(self.extra_env)

    async def _probe(self) -> Optional[ProbeResult]:
        """Run the short probe prompt. None on timeout, spawn error or missing CLI."""
        path = await self.resolve_executable()
        if not path:
            return None

        process = await spawn_agent_process(
            resolve_execution(path),
            self.build_probe_args(),
            env=self.build_probe_env(),
            name=f"{self.id}-probe",
        )
        if process.spawn_error is not None:
            logger.warning(f"[{self.id}] Probe spawn error: {process.spawn_error}")
            return None

        try:
            stdout, stderr, exit_code = await asyncio.wait_for(
                asyncio.gather(process.stdout.read(), process.stderr.read(), process.wait()),
                timeout=self.probe_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{self.id}] Probe timed out after {self.probe_timeout}s, killing process")
            await process.stop()
            return None

        return ProbeResult(
            exit_code=exit_code,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
        )

    @staticmethod
    def _probe_error_text(text: str) -> Optional[str]:
        """Error text carried by a successful-exit probe, if any.

        JSON output only counts as an error when it says so; non-JSON output
        is inspected as a whole.
        """
        try:
            record = json.loads(text)
        except (json.JSONDecodeError, ValueError):
            return text
        if not isinstance(record, dict):
            return None
        if record.get("type") == "error":
            return str(record.get("error") or record.get("message") or "")
        if record.get("is_error"):
            return str(record.get("result") or "")
        return None

    def _blocking_usage(self, text: str) -> Optional[UsageLimitCheck]:
        usage = detect_usage_limit(text)
        if usage.is_usage_limit:
            return UsageLimitCheck(can_proceed=False, reset_at=usage.reset_at, message=text[:500])
        return None

    async def check_usage_limits(self) -> UsageLimitCheck:
        """Ask the agent a trivial question and see whether quota allows it."""
        if not await self.resolve_executable():
            return UsageLimitCheck(can_proceed=False, message=f"{self.name} CLI not found")

        result = await self._probe()
        if result is None:
            return UsageLimitCheck(can_proceed=True, message="Usage check inconclusive")

        if result.exit_code == 0:
            error_text = self._probe_error_text(result.stdout or result.stderr)
            blocked = self._blocking_usage(error_text) if error_text else None
            return blocked or UsageLimitCheck(can_proceed=True)

        text = result.stderr or result.stdout or f"Process exited with code {result.exit_code}"
        blocked = self._blocking_usage(text)
        if blocked:
            return blocked
        logger.warning(f"[{self.id}] Usage probe exited with code {result.exit_code}: {text[:200]}")
        return UsageLimitCheck(can_proceed=True, message=text[:500])

    async def validate_auth(self) -> AuthValidation:
        """Probe the CLI and report whether the user must reauthenticate."""
        if not await self.resolve_executable():
            return AuthValidation(is_valid=False, error=f"{self.name} CLI not found")

        result = await self._probe()
        if result is None:
            return AuthValidation(is_valid=True, error="Could not validate auth")

        if result.exit_code == 0:
            error_text = self._probe_error_text(result.stdout or result.stderr)
            if error_text and detect_auth_error(error_text):
                return AuthValidation(is_valid=False, requires_reauth=True, error=self.auth_error_message)
            return AuthValidation(is_valid=True)

        text = result.stderr or result.stdout
        if detect_auth_error(text):
            return AuthValidation(is_valid=False, requires_reauth=True, error=self.auth_error_message)
        logger.warning(f"[{self.id}] Auth probe exited with code {result.exit_code}, assuming auth is valid")
        return AuthValidation(is_valid=True, error=f"Probe exited with code {result.exit_code}")

    @abstractmethod
    async def trigger_reauth(self, project_path: Optional[str] = None) -> ReauthResult:
        """Start the vendor's interactive reauthentication flow."""

    async def test_cli(self) -> CliTestResult:
        """Run ``<cli> --version`` and extract the version number."""
        path = await self.resolve_executable()
        if not path:
            return CliTestResult(success=False, error=f"{self.name} CLI not found")

        process = await spawn_agent_process(resolve_execution(path), ["--version"], name=f"{self.id}-version")
        if process.spawn_error is not None:
            return CliTestResult(success=False, error=str(process.spawn_error))
        try:
            stdout, stderr, exit_code = await asyncio.wait_for(
                asyncio.gather(process.stdout.read(), process.stderr.read(), process.wait()),
                timeout=10,
            )
        except asyncio.TimeoutError:
            await process.stop()
            return CliTestResult(success=False, error="Version check timed out")

        output = stdout.decode("utf-8", errors="replace").strip()
        if exit_code != 0:
            error = stderr.decode("utf-8", errors="replace").strip() or f"Exited with code {exit_code}"
            return CliTestResult(success=False, error=error)
        match = _VERSION_RE.search(output)
        return CliTestResult(success=True, version=match.group(1) if match else output or None)

    # -- metadata ----------------------------------------------------------

    @abstractmethod
    def get_capabilities(self) -> AgentCapabilities:
        ...

    def get_available_models(self) -> List[ModelInfo]:
        """Models for this agent with tier aliases assigned; computed once."""
        if self._models is None:
            self._models = enrich_models_with_aliases(self.available_models)
        return self._models

    async def refresh_models(self) -> List[ModelInfo]:
        """Re-read the model list from its source. Static lists just re-derive aliases."""
        self._models = None
        return self.get_available_models()

    def clear_models_cache(self) -> None:
        self._models = None

    def resolve_model_alias(self, value: str) -> str:
        return resolve_model_alias(value, self.get_available_models())

    def resolve_model(self, options: AgentInvokeOptions) -> Optional[str]:
        """Concrete model for a run: the option, else the configured default."""
        requested = options.model or self.default_model
        if not requested:
            return None
        return self.resolve_model_alias(requested)

    def default_model_id(self) -> Optional[str]:
        return default_model_id(self.get_available_models())

    def detect_incomplete_work(self, events: Sequence[OutputEvent]) -> IncompleteWorkResult:
        return detect_incomplete_work(events)
