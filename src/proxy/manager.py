"""Session registry — live relay sessions keyed by session id.

Used for process shutdown and as the read-only view behind /health.
"""

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager

from src.config.settings import get_settings
from src.logging.audit import get_audit_logger
from src.proxy.channels import GOING_AWAY
from src.proxy.session import RelaySession


class SessionManager:

    def __init__(self):
        self._sessions: dict[str, RelaySession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    @contextmanager
    def track(self, session: RelaySession) -> Iterator[RelaySession]:
        """Register a session for as long as the block runs."""
        self._sessions[session.session_id] = session
        try:
            yield session
        finally:
            self._sessions.pop(session.session_id, None)

    async def shutdown(self, grace: float) -> None:
        """Close every live session with 1001 and wait up to `grace` seconds."""
        sessions = list(self._sessions.values())
        if not sessions:
            return

        logger = get_audit_logger()
        logger.info("Closing sessions for shutdown", extra={"audit_data": {"sessions": len(sessions)}})

        for session in sessions:
            session.request_close(GOING_AWAY, "server shutting down")

        waiters = [asyncio.create_task(s.wait_closed()) for s in sessions]
        _, pending = await asyncio.wait(waiters, timeout=grace)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(
                "Sessions still open after shutdown grace period",
                extra={"audit_data": {"sessions": len(pending), "grace_seconds": grace}},
            )


_manager: SessionManager | None = None


def get_session_manager() -> SessionManager:
    global _manager
    if _manager is None:
        _manager = SessionManager()
    return _manager


async def shutdown_sessions() -> None:
    """Gracefully close all sessions on process shutdown."""
    await get_session_manager().shutdown(get_settings().shutdown_grace_seconds)
