"""Realtime Relay Gateway — FastAPI application entry point.

A WebSocket relay that sits between browser clients and the Azure Voice
Live realtime API, keeping credentials server-side while enforcing origin
policy, rate limits and a connection cap.
"""

import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, WebSocket

from src.config.settings import get_settings
from src.logging.audit import get_audit_logger, setup_logging
from src.proxy.handler import handle_connection
from src.proxy.manager import get_session_manager, shutdown_sessions
from src.security.admission import get_connection_counter
from src.security.ratelimit import sweep_expired

VERSION = "1.0.0"


async def _sweep_rate_limits(interval: float) -> None:
    """Periodically drop rate-limit buckets for IPs that went quiet."""
    while True:
        await asyncio.sleep(interval)
        removed = sweep_expired(interval)
        if removed:
            get_audit_logger().debug("Rate limit buckets swept", extra={"audit_data": {"removed": removed}})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle hooks."""
    setup_logging()
    settings = get_settings()
    get_audit_logger().info(
        "Gateway started",
        extra={"audit_data": {
            "upstream": settings.upstream_base_url,
            "api_version": settings.api_version,
            "max_connections": settings.max_connections,
            "origin_restricted": bool(settings.allowed_origins_list),
        }},
    )
    sweeper = asyncio.create_task(_sweep_rate_limits(settings.rate_limit_window_seconds))
    yield
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    await shutdown_sessions()
    get_audit_logger().info("Gateway stopped")


app = FastAPI(
    title="Realtime Relay Gateway",
    description="WebSocket relay for realtime voice and agent sessions",
    version=VERSION,
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    counter = get_connection_counter()
    return {
        "status": "healthy",
        "version": VERSION,
        "active_connections": counter.active,
        "max_connections": counter.max_connections,
        "sessions": len(get_session_manager()),
    }


@app.websocket("/ws")
async def realtime_relay(websocket: WebSocket):
    """Relay endpoint.

    Query: mode (standard|agent), model, token, agentId, projectName
    """
    await handle_connection(websocket)
