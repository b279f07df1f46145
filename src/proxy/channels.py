"""Duplex channel adapters for the two legs of a relay session.

The relay only needs three operations per socket: receive the next frame,
send a frame, and close with a code/reason. Each adapter hides its library
(starlette for the browser leg, websockets for the upstream leg) behind
that interface and converts library exceptions into ChannelClosed.

Frames are passed through as-is: str for text frames, bytes for binary.
"""

import logging
from abc import ABC, abstractmethod

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger("gateway.audit")

Frame = str | bytes

NORMAL_CLOSURE = 1000
GOING_AWAY = 1001
NO_STATUS_RCVD = 1005
ABNORMAL_CLOSURE = 1006
INTERNAL_ERROR = 1011

# Codes an endpoint may put in a close frame (RFC 6455 §7.4 + IANA registry)
_SENDABLE_CLOSE_CODES = {1000, 1001, 1002, 1003, 1007, 1008, 1009, 1010, 1011, 1012, 1013, 1014}

MAX_REASON_BYTES = 123


def is_sendable_close_code(code: int | None) -> bool:
    if code is None:
        return False
    return code in _SENDABLE_CLOSE_CODES or 3000 <= code <= 4999


def truncate_reason(reason: str) -> str:
    """Trim a close reason to the 123-byte control frame limit."""
    encoded = reason.encode("utf-8")
    if len(encoded) <= MAX_REASON_BYTES:
        return reason
    return encoded[:MAX_REASON_BYTES].decode("utf-8", errors="ignore")


class ChannelClosed(Exception):
    """The channel can no longer carry frames."""

    def __init__(self, code: int, reason: str = ""):
        self.code = code
        self.reason = reason
        super().__init__(f"closed with code {code}: {reason}" if reason else f"closed with code {code}")


class Channel(ABC):
    """One leg of a relay session."""

    name: str = "channel"

    @abstractmethod
    async def receive(self) -> Frame:
        """Wait for the next frame. Raises ChannelClosed when the peer closes."""
        ...

    @abstractmethod
    async def send(self, frame: Frame) -> None:
        """Send a frame unchanged. Raises ChannelClosed if the socket is gone."""
        ...

    @abstractmethod
    async def close(self, code: int, reason: str = "") -> None:
        """Start (or complete) the close handshake. No-op if already closed."""
        ...


class ClientChannel(Channel):
    """Browser leg, backed by a starlette WebSocket that was already accepted."""

    name = "client"

    def __init__(self, websocket: WebSocket):
        self._ws = websocket

    async def receive(self) -> Frame:
        message = await self._ws.receive()
        if message["type"] == "websocket.disconnect":
            raise ChannelClosed(message.get("code", NO_STATUS_RCVD), message.get("reason") or "")
        text = message.get("text")
        if text is not None:
            return text
        return message.get("bytes") or b""

    async def send(self, frame: Frame) -> None:
        try:
            if isinstance(frame, bytes):
                await self._ws.send_bytes(frame)
            else:
                await self._ws.send_text(frame)
        except WebSocketDisconnect as e:
            raise ChannelClosed(e.code, e.reason or "") from e
        except (RuntimeError, OSError) as e:
            raise ChannelClosed(ABNORMAL_CLOSURE, str(e)) from e

    async def close(self, code: int, reason: str = "") -> None:
        if (
            self._ws.application_state != WebSocketState.CONNECTED
            or self._ws.client_state != WebSocketState.CONNECTED
        ):
            return
        try:
            await self._ws.close(code=code, reason=truncate_reason(reason))
        except (RuntimeError, OSError) as e:
            # Peer vanished between the state check and the close frame
            logger.debug("Client close failed: %s", e)


class UpstreamChannel(Channel):
    """Realtime API leg, backed by a websockets client connection."""

    name = "upstream"

    def __init__(self, connection: ClientConnection):
        self._conn = connection

    async def receive(self) -> Frame:
        try:
            return await self._conn.recv()
        except ConnectionClosed as e:
            raise ChannelClosed(*_close_details(e)) from e

    async def send(self, frame: Frame) -> None:
        try:
            await self._conn.send(frame)
        except ConnectionClosed as e:
            raise ChannelClosed(*_close_details(e)) from e

    async def close(self, code: int, reason: str = "") -> None:
        await self._conn.close(code=code, reason=truncate_reason(reason))


def _close_details(exc: ConnectionClosed) -> tuple[int, str]:
    """Close code/reason the peer sent, or 1006 if no close frame arrived."""
    if exc.rcvd is not None:
        return exc.rcvd.code, exc.rcvd.reason
    return ABNORMAL_CLOSURE, ""
