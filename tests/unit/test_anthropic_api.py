"""Tests for the Anthropic usage and model-listing client."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from agent_orchestrator.agents import anthropic_api
from agent_orchestrator.agents.anthropic_api import (
    ANTHROPIC_BETA,
    ANTHROPIC_VERSION,
    MODELS_API_URL,
    USAGE_API_URL,
    AnthropicApiClient,
    credential_file_candidates,
    format_model_name,
    models_from_response,
    read_oauth_token,
    token_from_credentials,
)
from agent_orchestrator.agents.claude_code import ClaudeCodeAdapter
from agent_orchestrator.llm.model_aliases import CLAUDE_CODE_MODELS
from agent_orchestrator.utils.subprocess_utils import SubprocessError

CREDENTIALS = json.dumps({"claudeAiOauth": {"accessToken": "tok-123", "refreshToken": "r"}})

API_MODELS = {"data": [
    {"id": "claude-3-5-haiku-20241022", "display_name": "Claude Haiku 3.5"},
    {"id": "claude-sonnet-4-20250514", "display_name": "Claude Sonnet 4"},
    {"id": "claude-opus-4-1-20250805"},
    {"id": "claude-sonnet-4-5-20250929", "display_name": "Claude Sonnet 4.5"},
    {"id": "claude-3-haiku-embedding"},
    {"id": "text-embedding-3"},
]}


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def _response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    return response


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(clock):
    return AnthropicApiClient(token_provider=lambda: "tok-123", clock=clock)


class TestOAuthToken:
    def test_token_from_credentials(self):
        assert token_from_credentials(CREDENTIALS) == "tok-123"

    @pytest.mark.parametrize("raw", ["not json", "[]", '{"claudeAiOauth": "x"}', '{"claudeAiOauth": {}}'])
    def test_malformed_credentials(self, raw):
        assert token_from_credentials(raw) is None

    def test_linux_reads_config_file(self, tmp_path, monkeypatch):
        monkeypatch.setattr(anthropic_api.Path, "home", lambda: tmp_path)
        path = tmp_path / ".config" / "claude-code" / "credentials.json"
        path.parent.mkdir(parents=True)
        path.write_text(CREDENTIALS)

        assert read_oauth_token(platform="linux") == "tok-123"

    def test_missing_file(self, tmp_path, monkeypatch):
        monkeypatch.setattr(anthropic_api.Path, "home", lambda: tmp_path)

        assert read_oauth_token(platform="linux") is None

    def test_windows_candidates(self, tmp_path, monkeypatch):
        """LOCALAPPDATA is searched before APPDATA, both directory spellings."""
        monkeypatch.setenv("LOCALAPPDATA", str(tmp_path / "local"))
        monkeypatch.setenv("APPDATA", str(tmp_path / "roaming"))

        candidates = credential_file_candidates(platform="win32")

        assert candidates == [
            tmp_path / "local" / "claude-code" / "credentials.json",
            tmp_path / "local" / "Claude Code" / "credentials.json",
            tmp_path / "roaming" / "claude-code" / "credentials.json",
            tmp_path / "roaming" / "Claude Code" / "credentials.json",
        ]

    def test_macos_keychain(self, monkeypatch):
        calls = []

        def fake_output(cmd, timeout):
            calls.append(cmd)
            return CREDENTIALS

        monkeypatch.setattr(anthropic_api, "get_command_output", fake_output)

        assert read_oauth_token(platform="darwin") == "tok-123"
        assert calls == [["security", "find-generic-password", "-s", "Claude Code-credentials", "-w"]]

    def test_macos_keychain_entry_missing(self, monkeypatch):
        def fail(cmd, timeout):
            raise SubprocessError(cmd=" ".join(cmd), returncode=44, stderr="not found")

        monkeypatch.setattr(anthropic_api, "get_command_output", fail)

        assert read_oauth_token(platform="darwin") is None


class TestUsagePercentage:
    def test_usage_windows(self, client):
        payload = {
            "five_hour": {"utilization": 42.5, "resets_at": "2025-01-15T15:00:00Z"},
            "seven_day": {"utilization": 10, "resets_at": "2025-01-20T00:00:00+00:00"},
        }
        with patch("agent_orchestrator.agents.anthropic_api.requests.get", return_value=_response(200, payload)) as get:
            usage = client.fetch_usage_percentage()

        assert usage.available
        assert usage.five_hour.utilization == 42.5
        assert usage.five_hour.resets_at == datetime(2025, 1, 15, 15, 0, tzinfo=timezone.utc)
        assert usage.seven_day.utilization == 10.0
        url = get.call_args.args[0]
        headers = get.call_args.kwargs["headers"]
        assert url == USAGE_API_URL
        assert headers["Authorization"] == "Bearer tok-123"
        assert headers["anthropic-beta"] == ANTHROPIC_BETA
        assert get.call_args.kwargs["timeout"] == 10

    def test_missing_window(self, client):
        with patch("agent_orchestrator.agents.anthropic_api.requests.get", return_value=_response(200, {"five_hour": None})):
            usage = client.fetch_usage_percentage()

        assert usage.five_hour is None
        assert not usage.available

    def test_no_token_skips_request(self, clock):
        client = AnthropicApiClient(token_provider=lambda: None, clock=clock)

        with patch("agent_orchestrator.agents.anthropic_api.requests.get") as get:
            usage = client.fetch_usage_percentage()

        assert not usage.available
        get.assert_not_called()

    def test_http_error_is_unavailable(self, client):
        with patch("agent_orchestrator.agents.anthropic_api.requests.get", return_value=_response(401)):
            assert not client.fetch_usage_percentage().available

    def test_network_error_is_unavailable(self, client):
        with patch(
            "agent_orchestrator.agents.anthropic_api.requests.get",
            side_effect=requests.exceptions.Timeout("slow"),
        ):
            assert not client.fetch_usage_percentage().available


class TestModelListing:
    def test_filters_sorts_and_marks_default(self, client):
        """Opus first, newest first within a tier, newest Sonnet is the default."""
        with patch("agent_orchestrator.agents.anthropic_api.requests.get", return_value=_response(200, API_MODELS)) as get:
            models = client.fetch_available_models()

        assert [m.id for m in models] == [
            "claude-opus-4-1-20250805",
            "claude-sonnet-4-5-20250929",
            "claude-sonnet-4-20250514",
            "claude-3-5-haiku-20241022",
        ]
        assert [m.id for m in models if m.is_default] == ["claude-sonnet-4-5-20250929"]
        assert models[0].name == "Claude Opus 4.1"
        assert get.call_args.args[0] == MODELS_API_URL
        assert get.call_args.kwargs["headers"]["anthropic-version"] == ANTHROPIC_VERSION

    def test_cached_for_a_day(self, client, clock):
        with patch("agent_orchestrator.agents.anthropic_api.requests.get", return_value=_response(200, API_MODELS)) as get:
            client.fetch_available_models()
            clock.now = clock.now.replace(hour=23)
            client.fetch_available_models()
            assert get.call_count == 1

            clock.now = clock.now.replace(day=16, hour=13)
            client.fetch_available_models()
            assert get.call_count == 2

    def test_clear_cache_refetches(self, client):
        with patch("agent_orchestrator.agents.anthropic_api.requests.get", return_value=_response(200, API_MODELS)) as get:
            client.fetch_available_models()
            client.clear_models_cache()
            client.fetch_available_models()

        assert get.call_count == 2

    def test_cached_models_are_copies(self, client):
        with patch("agent_orchestrator.agents.anthropic_api.requests.get", return_value=_response(200, API_MODELS)):
            first = client.fetch_available_models()
            first[0].is_default = True
            second = client.fetch_available_models()

        assert not second[0].is_default

    @pytest.mark.parametrize("response", [
        _response(500),
        _response(200, {"models": []}),
        _response(200, ["claude-sonnet-4-5"]),
    ])
    def test_bad_responses_fall_back(self, client, response):
        with patch("agent_orchestrator.agents.anthropic_api.requests.get", return_value=response):
            models = client.fetch_available_models()

        assert [m.id for m in models] == [m.id for m in CLAUDE_CODE_MODELS]

    def test_failure_is_not_cached(self, client):
        with patch("agent_orchestrator.agents.anthropic_api.requests.get", side_effect=requests.exceptions.ConnectionError("down")):
            client.fetch_available_models()
        with patch("agent_orchestrator.agents.anthropic_api.requests.get", return_value=_response(200, API_MODELS)) as get:
            models = client.fetch_available_models()

        get.assert_called_once()
        assert models[0].id == "claude-opus-4-1-20250805"

    def test_no_token_falls_back(self, clock):
        client = AnthropicApiClient(token_provider=lambda: None, clock=clock)

        with patch("agent_orchestrator.agents.anthropic_api.requests.get") as get:
            models = client.fetch_available_models()

        get.assert_not_called()
        assert [m.id for m in models] == [m.id for m in CLAUDE_CODE_MODELS]

    def test_no_sonnet_defaults_to_first(self):
        models = models_from_response([{"id": "claude-haiku-4-5"}, {"id": "claude-opus-4-5"}])

        assert [m.id for m in models] == ["claude-opus-4-5", "claude-haiku-4-5"]
        assert models[0].is_default

    @pytest.mark.parametrize("model_id,name", [
        ("claude-sonnet-4-20250514", "Claude Sonnet 4"),
        ("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet"),
        ("claude-opus-4-1-20250805", "Claude Opus 4.1"),
    ])
    def test_format_model_name(self, model_id, name):
        assert format_model_name(model_id) == name


class TestClaudeCodeAdapterApi:
    @pytest.mark.asyncio
    async def test_refresh_models_uses_api_list(self, client):
        """Fetched models replace the built-in list and get tier aliases."""
        adapter = ClaudeCodeAdapter(api_client=client)

        with patch("agent_orchestrator.agents.anthropic_api.requests.get", return_value=_response(200, API_MODELS)):
            models = await adapter.refresh_models()

        assert models[0].id == "claude-opus-4-1-20250805"
        assert adapter.resolve_model_alias("sonnet") == "claude-sonnet-4-5-20250929"
        assert adapter.default_model_id() == "claude-sonnet-4-5-20250929"

    @pytest.mark.asyncio
    async def test_clear_models_cache_restores_builtin_list(self, client):
        adapter = ClaudeCodeAdapter(api_client=client)
        with patch("agent_orchestrator.agents.anthropic_api.requests.get", return_value=_response(200, API_MODELS)):
            await adapter.refresh_models()

        adapter.clear_models_cache()

        assert [m.id for m in adapter.get_available_models()] == [m.id for m in CLAUDE_CODE_MODELS]

    @pytest.mark.asyncio
    async def test_usage_percentage(self, client):
        adapter = ClaudeCodeAdapter(api_client=client)
        payload = {"five_hour": {"utilization": 80, "resets_at": "2025-01-15T15:00:00Z"}}

        with patch("agent_orchestrator.agents.anthropic_api.requests.get", return_value=_response(200, payload)):
            usage = await adapter.get_usage_percentage()

        assert usage.five_hour.utilization == 80.0
