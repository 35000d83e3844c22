"""Health checks for agent CLIs and orchestrator setup."""

from .checker import HealthChecker, CheckResult, CheckStatus

__all__ = ["HealthChecker", "CheckResult", "CheckStatus"]
