"""Authentication-mode resolution for upstream connections.

Maps the connection's query parameters and server settings to the upstream
URL and credential headers. Pure: no I/O, no sockets, no logging.

Standard mode prefers a client-supplied bearer token over the shared API
key so usage can be audited per user; the shared key is the fallback.
Agent mode always requires a bearer token.
"""

from collections.abc import Mapping
from urllib.parse import urlencode

from src.config.settings import Settings
from src.proxy.errors import AuthError, AuthReason
from src.proxy.models import AuthMethod, Mode, ResolvedAuth

REALTIME_PATH = "/voice-live/realtime"


def parse_mode(raw: str | None) -> Mode:
    if not raw:
        return Mode.STANDARD
    try:
        return Mode(raw.strip().lower())
    except ValueError:
        raise AuthError(AuthReason.INVALID_MODE, f"Unsupported mode '{raw}'") from None


def resolve_auth(mode: str | None, query: Mapping[str, str], settings: Settings) -> ResolvedAuth:
    """Resolve the upstream target and credential for one connection.

    Args:
        mode: Raw `mode` query value (None/empty = standard).
        query: Remaining query parameters (token, model, agentId, projectName).
        settings: Server configuration.

    Raises:
        AuthError: if the mode is unknown or the credential/agent config is incomplete.
    """
    resolved_mode = parse_mode(mode)
    token = _param(query, "token")

    if resolved_mode is Mode.AGENT:
        if token is None:
            raise AuthError(AuthReason.MISSING_TOKEN, "Agent mode requires a bearer token")

        agent_id = _param(query, "agentId") or settings.agent_id
        project_name = _param(query, "projectName") or settings.agent_project_name
        if not agent_id or not project_name:
            raise AuthError(
                AuthReason.MISSING_AGENT_CONFIG,
                "Agent id and project name must be configured or supplied",
            )

        url = _build_url(settings, {"agent-id": agent_id, "agent-project-name": project_name})
        return ResolvedAuth(
            url=url,
            headers={"Authorization": f"Bearer {token}"},
            mode=resolved_mode,
            auth_method=AuthMethod.BEARER_TOKEN,
        )

    model = _param(query, "model") or settings.default_model
    url = _build_url(settings, {"model": model})

    if token is not None:
        return ResolvedAuth(
            url=url,
            headers={"Authorization": f"Bearer {token}"},
            mode=resolved_mode,
            auth_method=AuthMethod.BEARER_TOKEN,
        )

    if settings.azure_api_key:
        return ResolvedAuth(
            url=url,
            headers={"api-key": settings.azure_api_key},
            mode=resolved_mode,
            auth_method=AuthMethod.API_KEY,
        )

    raise AuthError(AuthReason.MISSING_CREDENTIAL, "No API key configured and no token supplied")


def _build_url(settings: Settings, params: dict[str, str]) -> str:
    # api-version always comes from config, never from the client
    query = urlencode({"api-version": settings.api_version, **params})
    return f"{settings.upstream_base_url}{REALTIME_PATH}?{query}"


def _param(query: Mapping[str, str], name: str) -> str | None:
    """Query value with blanks treated as absent."""
    value = query.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None
