"""Tests for src/proxy/handler.py — rejection and client IP helpers."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.config.settings import Settings
from src.proxy.errors import AdmissionError, AdmissionReason, AuthError, AuthReason
from src.proxy.handler import deny, resolve_client_ip


def _websocket(headers=None, client_host="203.0.113.7", extensions=None) -> MagicMock:
    ws = MagicMock()
    ws.headers = headers or {}
    ws.client.host = client_host
    ws.scope = {"type": "websocket", "extensions": extensions}
    ws.close = AsyncMock()
    ws.send_denial_response = AsyncMock()
    return ws


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, azure_resource_name="test-resource", **overrides)


class TestResolveClientIp:

    def test_socket_peer_by_default(self):
        ws = _websocket(headers={"x-forwarded-for": "198.51.100.1"})
        assert resolve_client_ip(ws, _settings()) == "203.0.113.7"

    def test_forwarded_for_when_trusted(self):
        ws = _websocket(headers={"x-forwarded-for": "198.51.100.1, 10.0.0.2"})
        assert resolve_client_ip(ws, _settings(trust_forwarded_for=True)) == "198.51.100.1"

    def test_trusted_but_header_missing(self):
        ws = _websocket()
        assert resolve_client_ip(ws, _settings(trust_forwarded_for=True)) == "203.0.113.7"

    def test_no_client(self):
        ws = _websocket()
        ws.client = None
        assert resolve_client_ip(ws, _settings()) == "unknown"


class TestDeny:

    async def test_denial_response_when_supported(self):
        ws = _websocket(extensions={"websocket.http.response": {}})
        await deny(ws, AdmissionError(AdmissionReason.RATE_LIMITED, "slow down", retry_after=12.4))

        response = ws.send_denial_response.call_args.args[0]
        assert response.status_code == 429
        assert response.headers["retry-after"] == "12"
        ws.close.assert_not_awaited()

    async def test_close_before_accept_fallback(self):
        ws = _websocket(extensions=None)
        await deny(ws, AuthError(AuthReason.MISSING_TOKEN))

        ws.close.assert_awaited_once_with(code=1008, reason="missing_token")
        ws.send_denial_response.assert_not_awaited()

    @pytest.mark.parametrize("reason, code", [
        (AdmissionReason.ORIGIN_NOT_ALLOWED, 1008),
        (AdmissionReason.RATE_LIMITED, 1013),
        (AdmissionReason.CONNECTION_LIMIT_REACHED, 1013),
    ])
    async def test_admission_close_codes(self, reason, code):
        ws = _websocket()
        await deny(ws, AdmissionError(reason))
        ws.close.assert_awaited_once_with(code=code, reason=reason.value)
