"""Gemini CLI adapter.

Gemini authenticates with an API key rather than an interactive login, so
reauthentication only tells the user where to update the key.

Requests started through the adapter are counted against the configured
rate-limit tier. Once the per-minute or per-day count reaches 95% of the
tier limit the usage check refuses further runs until that window resets.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from ..errors.classifier import detect_rate_limit, detect_usage_limit, next_utc_midnight
from ..llm.model_aliases import GEMINI_MODELS
from ..utils.output_parser import classify_gemini_record
from .base import (
    AgentAdapter,
    AgentCapabilities,
    AgentInvokeOptions,
    AuthValidation,
    ReauthResult,
    UsageLimitCheck,
)
from .process import AgentProcess

logger = logging.getLogger(__name__)

DEFAULT_GEMINI_MODEL = "gemini-2.5-pro"
API_KEY_ENV_VARS = ("GOOGLE_AI_API_KEY", "GEMINI_API_KEY")
GEMINI_CONFIG_FILES = ["GEMINI.md", ".gemini/config.json", ".gemini/settings.json"]

REAUTH_MESSAGE = (
    "Please update your Gemini API key in Settings > Agents > Gemini. "
    "Get a new key at https://aistudio.google.com/apikey"
)


@dataclass(frozen=True)
class GeminiRateLimits:
    rpm: int  # requests per minute
    tpm: int  # tokens per minute
    rpd: int  # requests per day


GEMINI_RATE_LIMITS: Dict[str, GeminiRateLimits] = {
    "FREE": GeminiRateLimits(rpm=15, tpm=32_000, rpd=1_500),
    "TIER_1": GeminiRateLimits(rpm=500, tpm=1_000_000, rpd=10_000),
    "TIER_2": GeminiRateLimits(rpm=1_000, tpm=2_000_000, rpd=50_000),
    "TIER_3": GeminiRateLimits(rpm=2_000, tpm=4_000_000, rpd=100_000),
}

NEAR_LIMIT_PERCENT = 80.0
BLOCKING_PERCENT = 95.0


@dataclass
class RateLimitStatus:
    """Requests made in the current minute and UTC day against the tier's limits."""
    tier: str
    requests_this_minute: int
    requests_today: int
    rpm_limit: int
    rpd_limit: int
    minute_resets_at: datetime
    day_resets_at: datetime

    @property
    def rpm_percentage(self) -> float:
        return self.requests_this_minute * 100 / self.rpm_limit

    @property
    def rpd_percentage(self) -> float:
        return self.requests_today * 100 / self.rpd_limit

    @property
    def is_near_limit(self) -> bool:
        return max(self.rpm_percentage, self.rpd_percentage) >= NEAR_LIMIT_PERCENT

    @property
    def can_proceed(self) -> bool:
        return self.rpm_percentage < BLOCKING_PERCENT and self.rpd_percentage < BLOCKING_PERCENT


class RequestCounter:
    """Counts requests in a rolling one-minute window and in the current UTC day."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        now = self._clock()
        self.minute_started = now
        self.day_resets_at = next_utc_midnight(now)
        self.minute_count = 0
        self.day_count = 0

    def _roll(self, now: datetime) -> None:
        if now - self.minute_started >= timedelta(minutes=1):
            self.minute_started = now
            self.minute_count = 0
        if now >= self.day_resets_at:
            self.day_resets_at = next_utc_midnight(now)
            self.day_count = 0

    def record(self) -> None:
        self._roll(self._clock())
        self.minute_count += 1
        self.day_count += 1

    def snapshot(self, tier: str) -> RateLimitStatus:
        self._roll(self._clock())
        limits = GEMINI_RATE_LIMITS[tier]
        return RateLimitStatus(
            tier=tier,
            requests_this_minute=self.minute_count,
            requests_today=self.day_count,
            rpm_limit=limits.rpm,
            rpd_limit=limits.rpd,
            minute_resets_at=self.minute_started + timedelta(minutes=1),
            day_resets_at=self.day_resets_at,
        )


def include_directories(context_files: List[str]) -> List[str]:
    """Parent directories of the context files, deduplicated in order."""
    directories: List[str] = []
    for path in context_files:
        slash = path.rfind("/")
        directory = path[:slash] if slash > 0 else path
        if directory not in directories:
            directories.append(directory)
    return directories


class GeminiAdapter(AgentAdapter):
    """Runs tasks through the ``gemini`` CLI in stream-json mode."""

    id = "gemini"
    name = "Gemini"
    command = "gemini"
    auth_error_message = "Authentication failed. Please check your Gemini API key."
    record_classifier = staticmethod(classify_gemini_record)
    available_models = GEMINI_MODELS

    def __init__(
        self,
        *args,
        api_key: Optional[str] = None,
        tier: str = "FREE",
        clock: Optional[Callable[[], datetime]] = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self._api_key = api_key
        self._requests = RequestCounter(clock)
        self._tier = "FREE"
        self.set_tier(tier)

    def set_tier(self, tier: str) -> None:
        """Select the rate-limit tier (FREE, TIER_1, TIER_2, TIER_3)."""
        tier = tier.upper()
        if tier not in GEMINI_RATE_LIMITS:
            raise ValueError(f"Unknown Gemini tier '{tier}', expected one of {', '.join(GEMINI_RATE_LIMITS)}")
        self._tier = tier

    def get_tier(self) -> str:
        return self._tier

    def get_rate_limit_status(self) -> RateLimitStatus:
        return self._requests.snapshot(self._tier)

    def get_api_key(self) -> Optional[str]:
        if self._api_key:
            return self._api_key
        for var in API_KEY_ENV_VARS:
            if os.environ.get(var):
                return os.environ[var]
        return None

    def _with_api_key(self, env: Dict[str, str], api_key: Optional[str]) -> Dict[str, str]:
        if api_key:
            env["GEMINI_API_KEY"] = api_key
        return env

    def build_invoke_args(self, options: AgentInvokeOptions) -> List[str]:
        args = ["--model", self.resolve_model(options) or DEFAULT_GEMINI_MODEL]
        args += ["--output-format", "stream-json"]
        args.append("-y")
        for directory in include_directories(options.context_files):
            args += ["--include-directories", directory]
        return args

    def build_env(self, options: AgentInvokeOptions) -> Dict[str, str]:
        return self._with_api_key(super().build_env(options), options.api_key or self.get_api_key())

    async def invoke(self, prompt: str, options: Optional[AgentInvokeOptions] = None) -> AgentProcess:
        process = await super().invoke(prompt, options)
        if process.spawn_error is None:
            self._requests.record()
            status = self.get_rate_limit_status()
            if status.is_near_limit:
                logger.warning(
                    f"[{self.id}] Near {status.tier} tier limits: "
                    f"{status.requests_this_minute}/{status.rpm_limit} per minute, "
                    f"{status.requests_today}/{status.rpd_limit} per day"
                )
        return process

    def build_probe_args(self) -> List[str]:
        return ["--output-format", "json", self.probe_prompt]

    def build_probe_env(self) -> Dict[str, str]:
        return self._with_api_key(super().build_probe_env(), self.get_api_key())

    def _blocking_usage(self, text: str) -> Optional[UsageLimitCheck]:
        # Free-tier keys hit per-minute limits often enough to treat them as blocking
        usage = detect_usage_limit(text)
        if usage.is_usage_limit or detect_rate_limit(text):
            return UsageLimitCheck(can_proceed=False, reset_at=usage.reset_at, message=text[:500])
        return None

    async def check_usage_limits(self) -> UsageLimitCheck:
        """Check locally tracked request counts first, then probe the CLI."""
        status = self.get_rate_limit_status()
        if status.rpm_percentage >= BLOCKING_PERCENT:
            return UsageLimitCheck(
                can_proceed=False,
                reset_at=status.minute_resets_at,
                message=(
                    f"Approaching rate limit: {status.requests_this_minute}/{status.rpm_limit} "
                    f"requests per minute ({status.tier} tier)"
                ),
            )
        if status.rpd_percentage >= BLOCKING_PERCENT:
            return UsageLimitCheck(
                can_proceed=False,
                reset_at=status.day_resets_at,
                message=(
                    f"Approaching daily limit: {status.requests_today}/{status.rpd_limit} "
                    f"requests per day ({status.tier} tier)"
                ),
            )
        return await super().check_usage_limits()

    async def validate_auth(self) -> AuthValidation:
        if not self.get_api_key():
            return AuthValidation(
                is_valid=False,
                requires_reauth=True,
                error="No API key found. Please configure your Gemini API key.",
            )
        return await super().validate_auth()

    async def trigger_reauth(self, project_path: Optional[str] = None) -> ReauthResult:
        return ReauthResult(success=False, error=REAUTH_MESSAGE)

    def get_capabilities(self) -> AgentCapabilities:
        return AgentCapabilities(
            supports_project_config=True,
            supports_context_files=True,
            project_config_files=list(GEMINI_CONFIG_FILES),
        )
