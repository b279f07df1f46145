"""Tests for src/security/auth.py — authentication-mode resolution."""

from urllib.parse import parse_qs, urlparse

import pytest

from src.config.settings import Settings
from src.proxy.errors import AuthError, AuthReason
from src.proxy.models import AuthMethod, Mode
from src.security.auth import parse_mode, resolve_auth


def _settings(**overrides) -> Settings:
    values = {"azure_resource_name": "contoso-voice", "api_version": "2025-10-01"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _query_of(url: str) -> dict[str, list[str]]:
    return parse_qs(urlparse(url).query)


class TestParseMode:

    def test_default_is_standard(self):
        assert parse_mode(None) is Mode.STANDARD
        assert parse_mode("") is Mode.STANDARD

    def test_known_modes(self):
        assert parse_mode("standard") is Mode.STANDARD
        assert parse_mode("AGENT") is Mode.AGENT

    def test_unknown_mode(self):
        with pytest.raises(AuthError) as exc_info:
            parse_mode("avatar")
        assert exc_info.value.reason is AuthReason.INVALID_MODE
        assert exc_info.value.http_status == 400


class TestStandardMode:

    def test_static_key_with_model(self):
        resolved = resolve_auth("standard", {"model": "gpt-realtime"}, _settings(azure_api_key="sk-static"))
        assert resolved.auth_method is AuthMethod.API_KEY
        assert resolved.headers == {"api-key": "sk-static"}
        assert "model=gpt-realtime" in resolved.url
        assert resolved.url.startswith("wss://contoso-voice.services.ai.azure.com/voice-live/realtime?")

    def test_default_model_used(self):
        resolved = resolve_auth(None, {}, _settings(azure_api_key="sk-static", default_model="gpt-4o-realtime"))
        assert _query_of(resolved.url)["model"] == ["gpt-4o-realtime"]
        assert resolved.mode is Mode.STANDARD

    def test_token_takes_priority_over_static_key(self):
        resolved = resolve_auth("standard", {"token": "user-jwt"}, _settings(azure_api_key="sk-static"))
        assert resolved.auth_method is AuthMethod.BEARER_TOKEN
        assert resolved.headers == {"Authorization": "Bearer user-jwt"}
        assert "api-key" not in resolved.headers

    def test_token_without_static_key(self):
        resolved = resolve_auth("standard", {"token": "user-jwt"}, _settings())
        assert resolved.headers == {"Authorization": "Bearer user-jwt"}

    def test_missing_credential(self):
        with pytest.raises(AuthError) as exc_info:
            resolve_auth("standard", {}, _settings(azure_api_key=""))
        assert exc_info.value.reason is AuthReason.MISSING_CREDENTIAL

    def test_blank_token_is_absent(self):
        with pytest.raises(AuthError) as exc_info:
            resolve_auth("standard", {"token": "  "}, _settings())
        assert exc_info.value.reason is AuthReason.MISSING_CREDENTIAL

    def test_api_version_from_config_only(self):
        resolved = resolve_auth(
            "standard",
            {"api-version": "1999-01-01", "model": "gpt-realtime"},
            _settings(azure_api_key="sk-static", api_version="2025-10-01"),
        )
        assert _query_of(resolved.url)["api-version"] == ["2025-10-01"]

    def test_endpoint_override(self):
        resolved = resolve_auth(
            None, {}, _settings(azure_api_key="k", voicelive_endpoint="ws://localhost:9000"),
        )
        assert resolved.url.startswith("ws://localhost:9000/voice-live/realtime?")

    def test_credential_not_in_repr(self):
        resolved = resolve_auth(None, {}, _settings(azure_api_key="sk-very-secret"))
        assert "sk-very-secret" not in repr(resolved)


class TestAgentMode:

    def test_missing_token(self):
        with pytest.raises(AuthError) as exc_info:
            resolve_auth("agent", {}, _settings(azure_api_key="sk-static", agent_id="a", agent_project_name="p"))
        assert exc_info.value.reason is AuthReason.MISSING_TOKEN
        assert exc_info.value.http_status == 401

    def test_missing_agent_config(self):
        with pytest.raises(AuthError) as exc_info:
            resolve_auth("agent", {"token": "T"}, _settings())
        assert exc_info.value.reason is AuthReason.MISSING_AGENT_CONFIG

    def test_agent_id_without_project(self):
        with pytest.raises(AuthError) as exc_info:
            resolve_auth("agent", {"token": "T", "agentId": "agent-1"}, _settings())
        assert exc_info.value.reason is AuthReason.MISSING_AGENT_CONFIG

    def test_config_defaults(self):
        resolved = resolve_auth(
            "agent", {"token": "T"}, _settings(agent_id="agent-1", agent_project_name="proj-1"),
        )
        query = _query_of(resolved.url)
        assert query["agent-id"] == ["agent-1"]
        assert query["agent-project-name"] == ["proj-1"]
        assert "model" not in query
        assert resolved.headers == {"Authorization": "Bearer T"}
        assert resolved.mode is Mode.AGENT
        assert resolved.auth_method is AuthMethod.BEARER_TOKEN

    def test_query_overrides_config(self):
        resolved = resolve_auth(
            "agent",
            {"token": "T", "agentId": "agent-2", "projectName": "proj-2"},
            _settings(agent_id="agent-1", agent_project_name="proj-1"),
        )
        query = _query_of(resolved.url)
        assert query["agent-id"] == ["agent-2"]
        assert query["agent-project-name"] == ["proj-2"]

    def test_static_key_never_used(self):
        resolved = resolve_auth(
            "agent", {"token": "T"},
            _settings(azure_api_key="sk-static", agent_id="a", agent_project_name="p"),
        )
        assert "api-key" not in resolved.headers
