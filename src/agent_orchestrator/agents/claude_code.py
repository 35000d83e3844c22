"""Claude Code CLI adapter."""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from ..llm.model_aliases import CLAUDE_CODE_MODELS, ModelInfo
from ..utils.output_parser import classify_claude_record, parse_chat_output
from ..utils.terminal import TerminalLaunchError, launch_in_terminal
from .anthropic_api import AnthropicApiClient, UsagePercentage
from .base import (
    AgentAdapter,
    AgentCapabilities,
    AgentInvokeOptions,
    ChatSession,
    ReauthResult,
)
from .process import IS_WINDOWS, spawn_agent_process

logger = logging.getLogger(__name__)

CLAUDE_CONFIG_FILES = ["CLAUDE.md", ".claude/settings.json", ".claude/commands"]

# Non-interactive streaming run with permission prompts disabled
BASE_ARGS = ["-p", "--verbose", "--output-format", "stream-json", "--dangerously-skip-permissions"]


class ClaudeCodeAdapter(AgentAdapter):
    """Runs tasks through the ``claude`` CLI in stream-json mode."""

    id = "claude-code"
    name = "Claude Code"
    command = "claude"
    auth_error_message = "Authentication required. Please run Claude Code in a terminal to authenticate."
    record_classifier = staticmethod(classify_claude_record)
    available_models = CLAUDE_CODE_MODELS

    def __init__(self, *args, api_client: Optional[AnthropicApiClient] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.api_client = api_client or AnthropicApiClient()

    def build_invoke_args(self, options: AgentInvokeOptions) -> List[str]:
        args = list(BASE_ARGS)

        model = self.resolve_model(options)
        if model:
            args += ["--model", model]
        if options.thinking:
            args.append("--thinking")
        if options.conversation_id:
            args += ["--resume", options.conversation_id]
        for context_file in options.context_files:
            args += ["--add-dir", context_file]
        return args

    async def chat(
        self,
        message: str,
        conversation_id: Optional[str] = None,
        options: Optional[AgentInvokeOptions] = None,
    ) -> ChatSession:
        """Send one chat turn, resuming ``conversation_id`` when given.

        Raises:
            AgentNotResolvedError: If resolve_executable() has not found the CLI
        """
        options = options or AgentInvokeOptions()
        execution = self._require_execution("chat")

        args = list(BASE_ARGS)
        if conversation_id:
            args += ["--resume", conversation_id]
            logger.debug(f"[{self.id}] Resuming conversation: {conversation_id}")
        if not IS_WINDOWS:
            args.append(message)

        process = await spawn_agent_process(
            execution,
            args,
            cwd=options.working_directory,
            env=self.build_env(options),
            stdin_payload=message if IS_WINDOWS else None,
            name=f"{self.id}-chat",
        )
        return ChatSession(process=process, events=parse_chat_output(process.stdout))

    async def trigger_reauth(self, project_path: Optional[str] = None) -> ReauthResult:
        """Open Claude Code interactively in a terminal so the user can log in."""
        path = await self.resolve_executable()
        if not path:
            return ReauthResult(success=False, error=f"{self.name} CLI not found")

        working_dir = project_path or str(Path.home())
        title = f"Claude Code - {project_path}" if project_path else "Claude Code Authentication"
        logger.info(f"[{self.id}] Launching terminal for re-authentication (cwd: {working_dir})")
        try:
            launcher = launch_in_terminal([path], cwd=working_dir, title=title, keep_open=True)
        except TerminalLaunchError as e:
            logger.error(f"[{self.id}] Failed to launch terminal: {e}")
            return ReauthResult(success=False, error=f"Failed to launch terminal: {e}")

        logger.debug(f"[{self.id}] Terminal launched via {launcher}")
        return ReauthResult(success=True)

    async def refresh_models(self) -> List[ModelInfo]:
        """Replace the built-in model list with the one the API reports."""
        self.available_models = await asyncio.to_thread(self.api_client.fetch_available_models)
        return await super().refresh_models()

    def clear_models_cache(self) -> None:
        """Forget fetched models; the next refresh asks the API again."""
        self.api_client.clear_models_cache()
        self.available_models = CLAUDE_CODE_MODELS
        super().clear_models_cache()

    async def get_usage_percentage(self) -> UsagePercentage:
        return await asyncio.to_thread(self.api_client.fetch_usage_percentage)

    def get_capabilities(self) -> AgentCapabilities:
        return AgentCapabilities(
            supports_multi_turn=True,
            supports_thinking=True,
            supports_skills=True,
            supports_project_config=True,
            supports_context_files=True,
            project_config_files=list(CLAUDE_CONFIG_FILES),
        )
