"""Connection handler — runs one WebSocket upgrade through the pipeline.

Pipeline: Admission -> Auth -> Accept -> Upstream connect -> Relay -> Teardown

Admission and auth failures are answered before the upgrade, so no session
or socket resource exists for them. From admission onwards the connection
holds a counter slot, released exactly once on every exit path.
"""

from functools import partial

from fastapi import WebSocket
from fastapi.responses import JSONResponse

from src.config.settings import Settings, get_settings
from src.logging.audit import generate_session_id, get_audit_logger, session_id_var
from src.proxy.channels import ClientChannel
from src.proxy.errors import AdmissionError, AuthError, GatewayError
from src.proxy.manager import get_session_manager
from src.proxy.models import ConnectionContext
from src.proxy.session import RelaySession
from src.security.admission import admit, get_connection_counter
from src.security.auth import resolve_auth
from src.upstream.connector import connect_upstream

DENIAL_EXTENSION = "websocket.http.response"


async def handle_connection(websocket: WebSocket) -> None:
    settings = get_settings()
    logger = get_audit_logger()
    session_id = generate_session_id()
    session_id_var.set(session_id)

    client_ip = resolve_client_ip(websocket, settings)
    origin = websocket.headers.get("origin")

    # 1. Admission (origin, rate limit, connection cap)
    try:
        ticket = admit(origin, client_ip, settings, get_connection_counter())
    except AdmissionError as e:
        logger.warning(
            "Connection rejected",
            extra={"audit_data": {
                "client_ip": client_ip,
                "origin": origin,
                "reason": e.reason.value,
                "detail": e.detail,
            }},
        )
        await deny(websocket, e)
        return

    try:
        # 2. Auth resolution
        try:
            resolved = resolve_auth(websocket.query_params.get("mode"), websocket.query_params, settings)
        except AuthError as e:
            logger.warning(
                "Authentication failed",
                extra={"audit_data": {
                    "client_ip": client_ip,
                    "origin": origin,
                    "reason": e.reason.value,
                    "detail": e.detail,
                }},
            )
            await deny(websocket, e)
            return

        context = ConnectionContext(
            session_id=session_id,
            mode=resolved.mode,
            auth_method=resolved.auth_method,
            client_ip=client_ip,
            origin=origin,
        )
        connect = partial(
            connect_upstream,
            resolved,
            timeout=settings.upstream_connect_timeout,
            max_frame_bytes=settings.upstream_max_frame_bytes,
            request_id=session_id,
        )

        # 3. Accept, then connect upstream and relay
        await websocket.accept()
        session = RelaySession(
            context,
            ClientChannel(websocket),
            connect,
            ticket,
            close_grace=settings.close_grace_seconds,
        )
        with get_session_manager().track(session):
            await session.run()
    finally:
        ticket.release()


async def deny(websocket: WebSocket, error: GatewayError) -> None:
    """Reject an upgrade before it is accepted.

    Uses an HTTP denial response when the server supports the extension,
    otherwise closes the handshake with the mapped close code.
    """
    if DENIAL_EXTENSION in (websocket.scope.get("extensions") or {}):
        headers = {}
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            headers["Retry-After"] = str(max(1, int(retry_after)))
        response = JSONResponse(
            status_code=error.http_status,
            content={"error": error.reason.value, "detail": error.detail},
            headers=headers,
        )
        await websocket.send_denial_response(response)
        return
    await websocket.close(code=error.close_code, reason=error.reason.value)


def resolve_client_ip(websocket: WebSocket, settings: Settings) -> str:
    """Remote address, or the first X-Forwarded-For hop when trusted."""
    if settings.trust_forwarded_for:
        forwarded = websocket.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return websocket.client.host if websocket.client else "unknown"
