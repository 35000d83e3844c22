"""Health checks for agent CLIs and orchestrator setup."""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional

from ..agents.base import AgentAdapter
from ..agents.registry import AgentRegistry
from ..core.config import OrchestratorConfig

logger = logging.getLogger(__name__)


class CheckStatus(Enum):
    """Health check status."""
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"
    SKIPPED = "skipped"


@dataclass
class CheckResult:
    """Result of a health check."""
    name: str
    status: CheckStatus
    message: str
    fix_action: Optional[str] = None


class HealthChecker:
    """Validate agent CLIs, their auth and quota, and the local setup.

    Auth and usage checks each send a real (tiny) prompt to the agent, so
    they only run when ``probe`` is set.
    """

    def __init__(self, registry: AgentRegistry, config: OrchestratorConfig, config_path: Path):
        self.registry = registry
        self.config = config
        self.config_path = config_path

    async def run_all_checks(self, probe: bool = False) -> List[CheckResult]:
        results = [self.check_config_file(), self.check_store_directory()]
        for adapter in self.registry.all():
            cli_result = await self.check_cli(adapter)
            results.append(cli_result)
            if cli_result.status != CheckStatus.PASSED:
                continue
            if probe:
                results.append(await self.check_auth(adapter))
                results.append(await self.check_usage(adapter))
            else:
                results.append(CheckResult(
                    name=f"{adapter.name} Auth & Usage",
                    status=CheckStatus.SKIPPED,
                    message="Probes disabled (use --probe)",
                ))
        return results

    def check_config_file(self) -> CheckResult:
        if not self.config_path.exists():
            return CheckResult(
                name="Config File",
                status=CheckStatus.WARNING,
                message=f"{self.config_path} not found, using defaults",
                fix_action=f"Create {self.config_path} to customize agents and timeouts",
            )
        return CheckResult(
            name="Config File",
            status=CheckStatus.PASSED,
            message=f"Loaded {self.config_path} (default agent: {self.config.agents.default_agent})",
        )

    def check_store_directory(self) -> CheckResult:
        store_dir = self.config.workspace / self.config.tasks.store_dir
        if not store_dir.exists():
            return CheckResult(
                name="Task Store",
                status=CheckStatus.WARNING,
                message=f"Missing directory: {store_dir}",
                fix_action="Directories will be created automatically on first run",
            )
        return CheckResult(name="Task Store", status=CheckStatus.PASSED, message=f"{store_dir} present")

    async def check_cli(self, adapter: AgentAdapter) -> CheckResult:
        name = f"{adapter.name} CLI"
        result = await adapter.test_cli()
        if not result.success:
            return CheckResult(
                name=name,
                status=CheckStatus.FAILED,
                message=result.error or "CLI check failed",
                fix_action=f"Install the {adapter.command} CLI or set agents.*.custom_path",
            )
        return CheckResult(
            name=name,
            status=CheckStatus.PASSED,
            message=f"{adapter.cached_path} (version {result.version or 'unknown'})",
        )

    async def check_auth(self, adapter: AgentAdapter) -> CheckResult:
        name = f"{adapter.name} Auth"
        auth = await adapter.validate_auth()
        if not auth.is_valid:
            return CheckResult(
                name=name,
                status=CheckStatus.FAILED,
                message=auth.error or "Authentication invalid",
                fix_action=f"agent-orchestrator reauth {adapter.id}" if auth.requires_reauth else None,
            )
        if auth.error:
            return CheckResult(name=name, status=CheckStatus.WARNING, message=auth.error)
        return CheckResult(name=name, status=CheckStatus.PASSED, message="Authenticated")

    async def check_usage(self, adapter: AgentAdapter) -> CheckResult:
        name = f"{adapter.name} Usage"
        usage = await adapter.check_usage_limits()
        if not usage.can_proceed:
            reset = f", resets at {usage.reset_at.isoformat()}" if usage.reset_at else ""
            return CheckResult(
                name=name,
                status=CheckStatus.FAILED,
                message=f"Usage limit reached{reset}",
                fix_action="Wait for the reset or switch the default agent",
            )
        if usage.message:
            return CheckResult(name=name, status=CheckStatus.WARNING, message=usage.message[:100])
        return CheckResult(name=name, status=CheckStatus.PASSED, message="Quota available")
