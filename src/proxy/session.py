"""Relay session — pairs one client socket with one upstream socket.

Lifecycle: connecting -> active -> closing -> closed (linear).

While active, two forwarding tasks run concurrently, one per direction.
Each reads a frame from its source and writes it unchanged to its
destination, so ordering is FIFO within a direction and unrelated across
directions. The first task to finish (peer close, send failure) or a
shutdown request ends the session. When both directions finish together,
a close frame sent by a peer wins over a forwarding failure:

- the counterpart leg gets the original close code/reason when it can be
  sent on the wire, 1000 for "no status", otherwise 1011
- a shutdown closes both legs with 1001
- each close is bounded by the grace period

Teardown is idempotent: the admission ticket is released exactly once and
one terminal "Session closed" event is emitted with duration and traffic
counts.
"""

import asyncio
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from src.logging.audit import RequestTimer, get_audit_logger
from src.proxy.channels import (
    ABNORMAL_CLOSURE,
    GOING_AWAY,
    INTERNAL_ERROR,
    NO_STATUS_RCVD,
    NORMAL_CLOSURE,
    Channel,
    ChannelClosed,
    Frame,
    is_sendable_close_code,
)
from src.proxy.errors import GatewayError, RelayError, RelayReason, UpstreamError, UpstreamReason
from src.proxy.models import ConnectionContext, SessionState
from src.security.admission import AdmissionTicket

CLIENT_TO_UPSTREAM = "client->upstream"
UPSTREAM_TO_CLIENT = "upstream->client"

# Close codes that count as an orderly end of the session
_CLEAN_CLOSE_CODES = {NORMAL_CLOSURE, GOING_AWAY, NO_STATUS_RCVD}

# Only the head of a text frame is inspected to find the event type
_EVENT_TYPE_RE = re.compile(r'"type"\s*:\s*"([^"]{1,128})"')
_EVENT_TYPE_SCAN_CHARS = 256


def frame_size(frame: Frame) -> int:
    """Payload size in bytes (text frames are counted as UTF-8)."""
    return len(frame) if isinstance(frame, bytes) else len(frame.encode("utf-8"))


def classify_frame(frame: Frame) -> tuple[str, bool]:
    """Return (event_type, is_bulk) for logging.

    Bulk frames (binary audio, audio buffer appends, *.delta events) are
    only logged at DEBUG.
    """
    if isinstance(frame, bytes):
        return "binary", True
    match = _EVENT_TYPE_RE.search(frame[:_EVENT_TYPE_SCAN_CHARS])
    if match is None:
        return "text", False
    event_type = match.group(1)
    bulk = event_type.endswith(".delta") or "audio_buffer.append" in event_type
    return event_type, bulk


@dataclass
class DirectionStats:
    frames: int = 0
    bytes: int = 0

    def record(self, frame: Frame) -> None:
        self.frames += 1
        self.bytes += frame_size(frame)


@dataclass
class Termination:
    """Why the active phase ended."""

    origin: str  # "client", "upstream" or "shutdown"
    code: int
    reason: str
    error: GatewayError | None = None


def _termination_rank(termination: Termination) -> int:
    """Lower wins: a peer's own close frame, then a dropped peer, then a forwarding failure."""
    error = termination.error
    if error is not None and error.reason is RelayReason.FRAME_FORWARD_FAILED:
        return 2
    return 1 if termination.code == ABNORMAL_CLOSURE else 0


class RelaySession:
    """Runs one client/upstream pairing from upstream connect to teardown."""

    def __init__(
        self,
        context: ConnectionContext,
        client: Channel,
        connect: Callable[[], Awaitable[Channel]],
        ticket: AdmissionTicket,
        *,
        close_grace: float = 5.0,
    ):
        self.context = context
        self._client = client
        self._connect = connect
        self._ticket = ticket
        self._close_grace = close_grace
        self._upstream: Channel | None = None
        self._stop_requested = asyncio.Event()
        self._closed = asyncio.Event()
        self._shutdown_code = GOING_AWAY
        self._shutdown_reason = "server shutting down"
        self._started = time.monotonic()
        self.termination: Termination | None = None
        self.stats = {CLIENT_TO_UPSTREAM: DirectionStats(), UPSTREAM_TO_CLIENT: DirectionStats()}
        self._logger = get_audit_logger()

    @property
    def session_id(self) -> str:
        return self.context.session_id

    @property
    def state(self) -> SessionState:
        return self.context.state

    async def run(self) -> None:
        """Connect upstream, relay until either side closes, then tear down."""
        try:
            if await self._open_upstream():
                self.context.state = SessionState.ACTIVE
                self._logger.info(
                    "Session active",
                    extra={"audit_data": {
                        "mode": self.context.mode.value,
                        "auth_method": self.context.auth_method.value,
                        "client_ip": self.context.client_ip,
                    }},
                )
                self.termination = await self._relay()
                await self._close_legs(self.termination)
        finally:
            try:
                if self.termination is None and self._upstream is not None:
                    # Cancelled mid-relay: don't leave the upstream socket open
                    await self._close_with_grace(self._upstream, GOING_AWAY, "session cancelled")
            finally:
                await self.close()

    def request_close(self, code: int = GOING_AWAY, reason: str = "server shutting down") -> None:
        """Ask the session to close both legs (process shutdown)."""
        self._shutdown_code = code
        self._shutdown_reason = reason
        self._stop_requested.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def close(self) -> None:
        """Terminal teardown. Safe to call more than once."""
        if self.context.state is SessionState.CLOSED:
            return
        self.context.state = SessionState.CLOSED
        self._ticket.release()
        self._upstream = None
        self._closed.set()

        termination = self.termination
        self._logger.info(
            "Session closed",
            extra={"audit_data": {
                "mode": self.context.mode.value,
                "client_ip": self.context.client_ip,
                "duration_ms": round((time.monotonic() - self._started) * 1000, 2),
                "closed_by": termination.origin if termination else None,
                "close_code": termination.code if termination else None,
                "close_reason": termination.reason if termination else None,
                "error": termination.error.reason.value if termination and termination.error else None,
                "frames_client_to_upstream": self.stats[CLIENT_TO_UPSTREAM].frames,
                "bytes_client_to_upstream": self.stats[CLIENT_TO_UPSTREAM].bytes,
                "frames_upstream_to_client": self.stats[UPSTREAM_TO_CLIENT].frames,
                "bytes_upstream_to_client": self.stats[UPSTREAM_TO_CLIENT].bytes,
            }},
        )

    # --- Connecting ---

    async def _open_upstream(self) -> bool:
        connect_task = asyncio.create_task(self._connect(), name=f"{self.session_id}:connect")
        stop_task = asyncio.create_task(self._stop_requested.wait())
        # Drop our reference to the credential-bearing connect callable
        self._connect = None

        try:
            with RequestTimer() as timer:
                await asyncio.wait({connect_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            connect_task.cancel()
            raise
        finally:
            stop_task.cancel()

        if not connect_task.done():
            connect_task.cancel()
            await asyncio.gather(connect_task, return_exceptions=True)
            self.termination = Termination("shutdown", self._shutdown_code, self._shutdown_reason)
            await self._close_with_grace(self._client, self._shutdown_code, self._shutdown_reason)
            return False

        try:
            self._upstream = connect_task.result()
        except UpstreamError as e:
            await self._upstream_failed(e, timer.elapsed_ms)
            return False
        except Exception as e:
            self._logger.error("Unexpected upstream connect error", exc_info=e)
            await self._upstream_failed(UpstreamError(UpstreamReason.CONNECT_FAILED, str(e)), timer.elapsed_ms)
            return False

        self._logger.info("Upstream connected", extra={"audit_data": {"connect_ms": timer.elapsed_ms}})
        return True

    async def _upstream_failed(self, e: UpstreamError, connect_ms: float) -> None:
        self._logger.error(
            "Upstream connection failed",
            extra={"audit_data": {
                "reason": e.reason.value,
                "detail": e.detail,
                "upstream_status": e.status_code,
                "connect_ms": connect_ms,
            }},
        )
        self.termination = Termination("upstream", e.close_code, e.reason.value, e)
        await self._close_with_grace(self._client, e.close_code, e.reason.value)

    # --- Active ---

    async def _relay(self) -> Termination:
        upstream = self._upstream
        pumps = [
            asyncio.create_task(
                self._pump(self._client, upstream, CLIENT_TO_UPSTREAM),
                name=f"{self.session_id}:{CLIENT_TO_UPSTREAM}",
            ),
            asyncio.create_task(
                self._pump(upstream, self._client, UPSTREAM_TO_CLIENT),
                name=f"{self.session_id}:{UPSTREAM_TO_CLIENT}",
            ),
        ]
        stop_task = asyncio.create_task(self._stop_requested.wait())

        try:
            await asyncio.wait([*pumps, stop_task], return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (*pumps, stop_task):
                task.cancel()
            await asyncio.gather(*pumps, stop_task, return_exceptions=True)

        self.context.state = SessionState.CLOSING

        outcomes = []
        for task in pumps:
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is None:
                outcomes.append(task.result())
                continue
            self._logger.error(
                "Relay task failed",
                exc_info=exc,
                extra={"audit_data": {"task": task.get_name()}},
            )
            error = RelayError(RelayReason.FRAME_FORWARD_FAILED, str(exc))
            outcomes.append(Termination("relay", INTERNAL_ERROR, "relay error", error))

        if not outcomes:
            return Termination("shutdown", self._shutdown_code, self._shutdown_reason)
        # Both directions often end in the same loop step when a peer closes
        return min(outcomes, key=_termination_rank)

    async def _pump(self, source: Channel, dest: Channel, direction: str) -> Termination:
        stats = self.stats[direction]
        while True:
            try:
                frame = await source.receive()
            except ChannelClosed as e:
                return self._peer_closed(source, e)

            self._log_frame(direction, frame)

            try:
                await dest.send(frame)
            except ChannelClosed as e:
                if e.code != ABNORMAL_CLOSURE:
                    # Destination already sent its close frame
                    return self._peer_closed(dest, e)
                error = RelayError(RelayReason.FRAME_FORWARD_FAILED, f"{dest.name} send failed: {e}")
                return Termination(dest.name, e.code, e.reason, error)
            stats.record(frame)

    def _peer_closed(self, source: Channel, closed: ChannelClosed) -> Termination:
        error = None
        if closed.code not in _CLEAN_CLOSE_CODES:
            reason = (
                RelayReason.CLIENT_CLOSED_ABNORMALLY
                if source is self._client
                else RelayReason.UPSTREAM_CLOSED_ABNORMALLY
            )
            error = RelayError(reason, f"{source.name} closed with code {closed.code}")
        return Termination(source.name, closed.code, closed.reason, error)

    def _log_frame(self, direction: str, frame: Frame) -> None:
        event_type, bulk = classify_frame(frame)
        if bulk:
            self._logger.debug(
                "Frame relayed",
                extra={"audit_data": {"direction": direction, "event_type": event_type, "size": frame_size(frame)}},
            )
        else:
            self._logger.info(
                "Event relayed",
                extra={"audit_data": {"direction": direction, "event_type": event_type}},
            )

    # --- Closing ---

    async def _close_legs(self, termination: Termination) -> None:
        if termination.error is not None:
            self._logger.warning(
                "Session terminated with error",
                extra={"audit_data": {
                    "reason": termination.error.reason.value,
                    "detail": termination.error.detail,
                    "close_code": termination.code,
                }},
            )

        if termination.origin == "shutdown":
            code, reason = termination.code, termination.reason
        else:
            code, reason = self._forwarded_close(termination)

        legs = [self._client]
        if self._upstream is not None:
            legs.append(self._upstream)
        await asyncio.gather(*(self._close_with_grace(leg, code, reason) for leg in legs))

    @staticmethod
    def _forwarded_close(termination: Termination) -> tuple[int, str]:
        """Close code/reason to hand to the counterpart leg."""
        if termination.error is not None and termination.error.reason is RelayReason.FRAME_FORWARD_FAILED:
            return INTERNAL_ERROR, "relay error"
        if is_sendable_close_code(termination.code):
            return termination.code, termination.reason
        if termination.code == NO_STATUS_RCVD:
            return NORMAL_CLOSURE, ""
        if termination.code == ABNORMAL_CLOSURE:
            return INTERNAL_ERROR, f"{termination.origin} connection lost"
        return INTERNAL_ERROR, "relay error"

    async def _close_with_grace(self, channel: Channel, code: int, reason: str) -> None:
        try:
            await asyncio.wait_for(channel.close(code, reason), timeout=self._close_grace)
        except TimeoutError:
            self._logger.warning(
                "Close handshake timed out",
                extra={"audit_data": {"leg": channel.name, "grace_seconds": self._close_grace}},
            )
        except (ChannelClosed, OSError) as e:
            self._logger.debug("Close on %s leg failed: %s", channel.name, e)
