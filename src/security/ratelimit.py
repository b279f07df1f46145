"""Rate limiting module using in-memory sliding window counters.

Enforces per-IP limits on WebSocket upgrade attempts. Uses a sliding
window algorithm: timestamps of recent attempts are stored in a deque,
and expired entries are pruned on each check.

Every attempt is recorded, including rejected ones, so a client that keeps
hammering the endpoint stays limited until it backs off for a full window.

All mutation happens in synchronous code with no await between reading and
writing a window, so checks are serialized by the event loop.
"""

import time
from collections import defaultdict, deque
from dataclasses import dataclass

# Per-IP attempt timestamp deques
# Key: client IP, Value: deque of attempt timestamps
_ip_windows: dict[str, deque[float]] = defaultdict(deque)


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: float


def check_rate_limit(client_ip: str, limit: int, window_seconds: float) -> RateLimitResult:
    """Record an upgrade attempt and decide whether it is within the limit.

    Args:
        client_ip: Remote address the attempt came from.
        limit: Max attempts per window for one IP.
        window_seconds: Length of the sliding window.
    """
    now = time.monotonic()
    window_start = now - window_seconds

    window = _ip_windows[client_ip]

    # Prune expired timestamps from the left
    while window and window[0] <= window_start:
        window.popleft()

    seen = len(window)
    window.append(now)

    # Reset = time until the oldest entry in window expires
    reset = round(window[0] + window_seconds - now, 1)

    if seen >= limit:
        return RateLimitResult(allowed=False, limit=limit, remaining=0, reset_seconds=reset)

    return RateLimitResult(
        allowed=True,
        limit=limit,
        remaining=max(0, limit - len(window)),
        reset_seconds=reset,
    )


def sweep_expired(window_seconds: float) -> int:
    """Drop buckets whose newest attempt has left the window.

    Returns the number of buckets removed.
    """
    cutoff = time.monotonic() - window_seconds
    stale = [ip for ip, window in _ip_windows.items() if not window or window[-1] <= cutoff]
    for ip in stale:
        del _ip_windows[ip]
    return len(stale)


def reset_ip(client_ip: str) -> None:
    """Clear rate limit state for an IP. Useful for testing."""
    _ip_windows.pop(client_ip, None)
