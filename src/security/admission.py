"""Connection admission for incoming WebSocket upgrades.

Runs before any session or socket resource exists. Checks, in order:
1. Origin allowlist (only when ALLOWED_ORIGINS is configured)
2. Per-IP rate limit (every attempt counts toward the window)
3. Global connection cap

A successful admission increments the connection counter and hands back an
AdmissionTicket. Whoever holds the ticket must release it once the session
ends; release() is idempotent so every teardown path may call it.
"""

from collections import defaultdict

from src.config.settings import Settings, get_settings
from src.proxy.errors import AdmissionError, AdmissionReason
from src.security.ratelimit import check_rate_limit


class ConnectionCounter:
    """Global and per-IP active connection counts.

    Mutated only from synchronous methods on the event loop, so
    try_acquire() reads and increments without interleaving.
    """

    def __init__(self, max_connections: int):
        self.max_connections = max_connections
        self._active = 0
        self._per_ip: dict[str, int] = defaultdict(int)

    @property
    def active(self) -> int:
        return self._active

    def active_for(self, client_ip: str) -> int:
        return self._per_ip.get(client_ip, 0)

    def try_acquire(self, client_ip: str) -> "AdmissionTicket | None":
        if self._active >= self.max_connections:
            return None
        self._active += 1
        self._per_ip[client_ip] += 1
        return AdmissionTicket(self, client_ip)

    def _release(self, client_ip: str) -> None:
        self._active = max(0, self._active - 1)
        remaining = self._per_ip.get(client_ip, 0) - 1
        if remaining > 0:
            self._per_ip[client_ip] = remaining
        else:
            self._per_ip.pop(client_ip, None)


class AdmissionTicket:
    """One slot in the connection counter, released exactly once."""

    def __init__(self, counter: ConnectionCounter, client_ip: str):
        self._counter = counter
        self.client_ip = client_ip
        self.released = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self._counter._release(self.client_ip)


_counter: ConnectionCounter | None = None


def get_connection_counter() -> ConnectionCounter:
    """Get the process-wide counter, sized from settings on first use."""
    global _counter
    if _counter is None:
        _counter = ConnectionCounter(get_settings().max_connections)
    return _counter


def is_origin_allowed(origin: str | None, allowed: list[str]) -> bool:
    """Exact-match the Origin header. An empty allowlist allows everything."""
    if not allowed:
        return True
    return origin is not None and origin in allowed


def admit(
    origin: str | None,
    client_ip: str,
    settings: Settings,
    counter: ConnectionCounter,
) -> AdmissionTicket:
    """Accept or reject an upgrade attempt.

    Raises:
        AdmissionError: on the first failing check.
    """
    if not is_origin_allowed(origin, settings.allowed_origins_list):
        raise AdmissionError(AdmissionReason.ORIGIN_NOT_ALLOWED, f"Origin '{origin}' not allowed")

    rate = check_rate_limit(
        client_ip,
        settings.rate_limit_max_requests,
        settings.rate_limit_window_seconds,
    )
    if not rate.allowed:
        raise AdmissionError(
            AdmissionReason.RATE_LIMITED,
            f"Rate limit exceeded, retry in {rate.reset_seconds}s",
            retry_after=rate.reset_seconds,
        )

    ticket = counter.try_acquire(client_ip)
    if ticket is None:
        raise AdmissionError(
            AdmissionReason.CONNECTION_LIMIT_REACHED,
            f"Connection limit of {counter.max_connections} reached",
        )
    return ticket
