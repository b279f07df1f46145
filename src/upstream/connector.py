"""Upstream connector — opens the outbound realtime WebSocket.

One attempt, bounded by the connect timeout. A realtime session carries
non-replayable state, so failures are reported and never retried.
"""

import websockets
from websockets.exceptions import InvalidHandshake, InvalidProxy, InvalidStatus, InvalidURI

from src.proxy.channels import UpstreamChannel
from src.proxy.errors import UpstreamError, UpstreamReason
from src.proxy.models import ResolvedAuth


async def connect_upstream(
    resolved: ResolvedAuth,
    *,
    timeout: float,
    max_frame_bytes: int | None = None,
    request_id: str = "",
) -> UpstreamChannel:
    """Open the upstream connection described by `resolved`.

    Args:
        resolved: Target URL and credential headers.
        timeout: Seconds allowed for TCP + TLS + WebSocket handshake.
        max_frame_bytes: Largest incoming message accepted (None = unlimited).
        request_id: Correlation id forwarded as x-ms-client-request-id.

    Raises:
        UpstreamError: CONNECT_FAILED for network/DNS/timeout problems,
            HANDSHAKE_REJECTED when the upstream refuses the upgrade.
            A bad proxy configuration counts as CONNECT_FAILED.
    """
    headers = dict(resolved.headers)
    if request_id:
        headers["x-ms-client-request-id"] = request_id

    try:
        connection = await websockets.connect(
            resolved.url,
            additional_headers=headers,
            open_timeout=timeout,
            max_size=max_frame_bytes,
        )
    except InvalidStatus as e:
        status = e.response.status_code
        raise UpstreamError(
            UpstreamReason.HANDSHAKE_REJECTED,
            f"Upstream rejected handshake with HTTP {status}",
            status_code=status,
        ) from e
    except InvalidURI as e:
        raise UpstreamError(UpstreamReason.CONNECT_FAILED, f"Invalid upstream URL: {e}") from e
    except InvalidProxy as e:
        raise UpstreamError(UpstreamReason.CONNECT_FAILED, f"Invalid proxy configuration: {e}") from e
    except InvalidHandshake as e:
        raise UpstreamError(UpstreamReason.HANDSHAKE_REJECTED, f"Upstream handshake failed: {e}") from e
    except TimeoutError as e:
        raise UpstreamError(UpstreamReason.CONNECT_FAILED, "Upstream connect timed out") from e
    except OSError as e:
        raise UpstreamError(UpstreamReason.CONNECT_FAILED, f"Cannot reach upstream: {e}") from e

    return UpstreamChannel(connection)
