"""Error taxonomy for the relay gateway.

Every failure in the connection lifecycle is raised as a GatewayError
subclass carrying a machine-readable reason. The connection handler is the
only place these are translated into wire responses:

- Admission / Auth errors happen before the upgrade and become an HTTP
  denial response (or a close before accept).
- Upstream / Relay errors happen after the client socket is accepted and
  become a WebSocket close code on the client leg.
"""

from enum import Enum


class AdmissionReason(str, Enum):
    ORIGIN_NOT_ALLOWED = "origin_not_allowed"
    RATE_LIMITED = "rate_limited"
    CONNECTION_LIMIT_REACHED = "connection_limit_reached"


class AuthReason(str, Enum):
    INVALID_MODE = "invalid_mode"
    MISSING_TOKEN = "missing_token"
    MISSING_CREDENTIAL = "missing_credential"
    MISSING_AGENT_CONFIG = "missing_agent_config"


class UpstreamReason(str, Enum):
    CONNECT_FAILED = "connect_failed"
    HANDSHAKE_REJECTED = "handshake_rejected"


class RelayReason(str, Enum):
    CLIENT_CLOSED_ABNORMALLY = "client_closed_abnormally"
    UPSTREAM_CLOSED_ABNORMALLY = "upstream_closed_abnormally"
    FRAME_FORWARD_FAILED = "frame_forward_failed"


class GatewayError(Exception):
    """Base class. Subclasses map each reason to an HTTP status and close code."""

    http_statuses: dict = {}
    close_codes: dict = {}
    default_http_status = 500
    default_close_code = 1011

    def __init__(self, reason: Enum, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(detail or reason.value)

    @property
    def http_status(self) -> int:
        return self.http_statuses.get(self.reason, self.default_http_status)

    @property
    def close_code(self) -> int:
        return self.close_codes.get(self.reason, self.default_close_code)


class AdmissionError(GatewayError):
    http_statuses = {
        AdmissionReason.ORIGIN_NOT_ALLOWED: 403,
        AdmissionReason.RATE_LIMITED: 429,
        AdmissionReason.CONNECTION_LIMIT_REACHED: 503,
    }
    close_codes = {
        AdmissionReason.ORIGIN_NOT_ALLOWED: 1008,  # Policy violation
        AdmissionReason.RATE_LIMITED: 1013,  # Try again later
        AdmissionReason.CONNECTION_LIMIT_REACHED: 1013,
    }

    def __init__(self, reason: AdmissionReason, detail: str = "", retry_after: float | None = None):
        super().__init__(reason, detail)
        self.retry_after = retry_after  # Seconds until the rate-limit window frees a slot


class AuthError(GatewayError):
    http_statuses = {
        AuthReason.INVALID_MODE: 400,
        AuthReason.MISSING_TOKEN: 401,
        AuthReason.MISSING_CREDENTIAL: 401,
        AuthReason.MISSING_AGENT_CONFIG: 400,
    }
    default_close_code = 1008


class UpstreamError(GatewayError):
    default_http_status = 502
    close_codes = {
        UpstreamReason.CONNECT_FAILED: 4502,
        UpstreamReason.HANDSHAKE_REJECTED: 4403,
    }

    def __init__(self, reason: UpstreamReason, detail: str = "", status_code: int | None = None):
        super().__init__(reason, detail)
        self.status_code = status_code  # Upstream HTTP status, when the handshake got that far


class RelayError(GatewayError):
    pass
