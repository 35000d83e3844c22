"""Anthropic API calls used by the Claude Code adapter.

Both endpoints authenticate with the OAuth token the Claude Code CLI stores
after login. Nothing here raises: without a token, or on any HTTP or payload
problem, usage reads as unavailable and the model list falls back to the
built-in one.
"""

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from ..llm.model_aliases import CLAUDE_CODE_MODELS, ModelInfo, extract_version
from ..utils.subprocess_utils import SubprocessError, get_command_output

logger = logging.getLogger(__name__)

USAGE_API_URL = "https://api.anthropic.com/api/oauth/usage"
MODELS_API_URL = "https://api.anthropic.com/v1/models"
ANTHROPIC_BETA = "oauth-2025-04-20"
ANTHROPIC_VERSION = "2023-06-01"
USER_AGENT = "claude-code/2.0.32"
REQUEST_TIMEOUT_SECONDS = 10
MODELS_CACHE_SECONDS = 24 * 60 * 60

KEYCHAIN_SERVICE = "Claude Code-credentials"
CODING_MODEL_FAMILIES = ("claude-sonnet", "claude-opus", "claude-haiku")
# opus > sonnet > haiku
_MODEL_RANKS = (("opus", 3), ("sonnet", 2), ("haiku", 1))


@dataclass
class UsageWindow:
    """Share of one quota window used so far, in percent."""
    utilization: float
    resets_at: Optional[datetime] = None


@dataclass
class UsagePercentage:
    five_hour: Optional[UsageWindow] = None
    seven_day: Optional[UsageWindow] = None

    @property
    def available(self) -> bool:
        return self.five_hour is not None or self.seven_day is not None


def credential_file_candidates(platform: Optional[str] = None) -> List[Path]:
    """Files the Claude Code CLI may keep its OAuth credentials in."""
    platform = platform or sys.platform
    if platform == "win32":
        candidates = []
        for env_var in ("LOCALAPPDATA", "APPDATA"):
            base = os.environ.get(env_var)
            if base:
                candidates += [Path(base) / name / "credentials.json" for name in ("claude-code", "Claude Code")]
        return candidates
    return [Path.home() / ".config" / "claude-code" / "credentials.json"]


def token_from_credentials(raw: str) -> Optional[str]:
    """``claudeAiOauth.accessToken`` from a credentials JSON document."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return None
    oauth = data.get("claudeAiOauth") if isinstance(data, dict) else None
    token = oauth.get("accessToken") if isinstance(oauth, dict) else None
    return token if isinstance(token, str) and token else None


def read_oauth_token(platform: Optional[str] = None) -> Optional[str]:
    """The stored OAuth access token, or None when the CLI never logged in.

    macOS keeps it in the login keychain; elsewhere it is a JSON file.
    """
    platform = platform or sys.platform
    if platform == "darwin":
        try:
            raw = get_command_output(
                ["security", "find-generic-password", "-s", KEYCHAIN_SERVICE, "-w"], timeout=5
            )
        except (SubprocessError, FileNotFoundError) as e:
            logger.debug(f"No Claude Code credentials in keychain: {e}")
            return None
        return token_from_credentials(raw)

    for path in credential_file_candidates(platform):
        if not path.is_file():
            continue
        try:
            token = token_from_credentials(path.read_text(encoding="utf-8"))
        except OSError as e:
            logger.debug(f"Could not read {path}: {e}")
            continue
        if token:
            return token
    return None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _usage_window(data: Any) -> Optional[UsageWindow]:
    if not isinstance(data, dict) or not isinstance(data.get("utilization"), (int, float)):
        return None
    return UsageWindow(utilization=float(data["utilization"]), resets_at=_parse_timestamp(data.get("resets_at")))


def _is_date_suffix(part: str) -> bool:
    return len(part) == 8 and part.isdigit()


def format_model_name(model_id: str) -> str:
    """Display name from an id: "claude-3-5-sonnet-20241022" -> "Claude 3.5 Sonnet"."""
    name = ""
    previous_numeric = False
    for part in model_id.split("-"):
        if _is_date_suffix(part):
            continue
        if part.isdigit():
            name = name + f".{part}" if previous_numeric else name + f" {part}"
            previous_numeric = True
        else:
            name += f" {part[:1].upper()}{part[1:]}"
            previous_numeric = False
    return name.strip()


def _model_rank(model_id: str) -> int:
    for keyword, rank in _MODEL_RANKS:
        if keyword in model_id.lower():
            return rank
    return 0


def _sort_key(model: ModelInfo):
    major, _, minor = extract_version(model.id).partition(".")
    return (-_model_rank(model.id), -int(major or 0), -int(minor or 0))


def models_from_response(entries: List[Any]) -> List[ModelInfo]:
    """Coding-capable Claude models, best tier first and newest first within a tier.

    The newest Sonnet is the default (else the first model).
    """
    models = []
    for entry in entries:
        if not isinstance(entry, dict) or not isinstance(entry.get("id"), str):
            continue
        model_id = entry["id"]
        lower = model_id.lower()
        if not any(family in lower for family in CODING_MODEL_FAMILIES) or "embedding" in lower:
            continue
        models.append(ModelInfo(
            id=model_id,
            name=entry.get("display_name") or format_model_name(model_id),
            description="Claude model",
        ))

    models.sort(key=_sort_key)
    default = next((m for m in models if "sonnet" in m.id.lower()), models[0] if models else None)
    if default is not None:
        default.is_default = True
    return models


class AnthropicApiClient:
    """Fetches usage and the model list; the model list is cached for a day."""

    def __init__(
        self,
        token_provider: Callable[[], Optional[str]] = read_oauth_token,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        cache_seconds: float = MODELS_CACHE_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._token_provider = token_provider
        self.timeout = timeout
        self._cache_ttl = timedelta(seconds=cache_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._models_cache: Optional[List[ModelInfo]] = None
        self._cache_time: Optional[datetime] = None

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "anthropic-beta": ANTHROPIC_BETA,
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
        }

    def fetch_usage_percentage(self) -> UsagePercentage:
        """Five-hour and seven-day utilization; empty when unavailable."""
        token = self._token_provider()
        if not token:
            return UsagePercentage()

        try:
            response = requests.get(USAGE_API_URL, headers=self._headers(token), timeout=self.timeout)
            if response.status_code != 200:
                logger.debug(f"Usage API returned {response.status_code}")
                return UsagePercentage()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.debug(f"Usage API request failed: {e}")
            return UsagePercentage()

        if not isinstance(data, dict):
            return UsagePercentage()
        return UsagePercentage(
            five_hour=_usage_window(data.get("five_hour")),
            seven_day=_usage_window(data.get("seven_day")),
        )

    def fetch_available_models(self) -> List[ModelInfo]:
        """Models from the API, served from cache while it is fresh.

        Falls back to the built-in list (without caching it) when there is no
        token or the request fails.
        """
        now = self._clock()
        if self._models_cache is not None and self._cache_time is not None:
            if now - self._cache_time < self._cache_ttl:
                return [m.model_copy() for m in self._models_cache]

        token = self._token_provider()
        if not token:
            logger.warning("No Claude Code OAuth token available, using built-in model list")
            return _builtin_models()

        headers = self._headers(token)
        headers["anthropic-version"] = ANTHROPIC_VERSION
        try:
            response = requests.get(MODELS_API_URL, headers=headers, timeout=self.timeout)
            if response.status_code != 200:
                logger.warning(f"Models API returned {response.status_code}, using built-in model list")
                return _builtin_models()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Failed to fetch models: {e}")
            return _builtin_models()

        entries = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            logger.warning("Unexpected models API response format, using built-in model list")
            return _builtin_models()

        models = models_from_response(entries) or _builtin_models()
        logger.debug(f"Fetched {len(models)} models from the API")
        self._models_cache = models
        self._cache_time = now
        return [m.model_copy() for m in models]

    def clear_models_cache(self) -> None:
        self._models_cache = None
        self._cache_time = None


def _builtin_models() -> List[ModelInfo]:
    return [m.model_copy() for m in CLAUDE_CODE_MODELS]
