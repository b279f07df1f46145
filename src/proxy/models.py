"""Connection-scoped data model."""

import time
from dataclasses import dataclass, field
from enum import Enum


class Mode(str, Enum):
    STANDARD = "standard"  # Voice / avatar scenario
    AGENT = "agent"  # Agent service scenario, bearer token mandatory


class AuthMethod(str, Enum):
    API_KEY = "apiKey"
    BEARER_TOKEN = "bearerToken"


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True)
class ResolvedAuth:
    """Upstream target and credential, consumed once by the connector."""

    url: str
    headers: dict[str, str] = field(repr=False)  # credential-bearing, never logged
    mode: Mode = Mode.STANDARD
    auth_method: AuthMethod = AuthMethod.API_KEY


@dataclass
class ConnectionContext:
    session_id: str
    mode: Mode
    auth_method: AuthMethod
    client_ip: str
    origin: str | None = None
    created_at: float = field(default_factory=time.time)
    state: SessionState = SessionState.CONNECTING
