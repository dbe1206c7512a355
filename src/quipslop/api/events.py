"""SSE endpoint streaming the live game state to spectators."""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from quipslop.core.event_bus import LIVE_STATE, EventBus

router = APIRouter(prefix="/api/events", tags=["events"])
logger = logging.getLogger(__name__)

_HEARTBEAT_INTERVAL = 15  # seconds

# Anonymous spectators can hold streams open indefinitely.
_MAX_SSE_CONNECTIONS = 100
_connection_semaphore = asyncio.Semaphore(_MAX_SSE_CONNECTIONS)


def _get_bus(request: Request) -> EventBus:
    return request.app.state.event_bus


def format_sse(envelope: dict) -> str:
    data = json.dumps(envelope["data"], default=str)
    return f"event: {envelope['type']}\ndata: {data}\n\n"


@router.get("/stream")
async def sse_stream(request: Request) -> StreamingResponse:
    """Stream ``live.state`` snapshots.

    The latest snapshot is sent as soon as the stream opens, then every new
    one as the broadcaster publishes it. A comment line goes out every 15
    seconds without events to keep proxies from closing the connection.

    Errors:
        429: global connection limit reached
    """
    if _connection_semaphore.locked():
        raise HTTPException(
            status_code=429,
            detail=(
                f"Too many concurrent SSE connections "
                f"(limit: {_MAX_SSE_CONNECTIONS}). Try again later."
            ),
        )

    bus = _get_bus(request)

    async def generate():
        async with _connection_semaphore:
            yield ": connected\n\n"
            async with bus.subscribe(LIVE_STATE) as sub:
                latest = bus.latest(LIVE_STATE)
                if latest is not None:
                    yield format_sse(latest)
                while True:
                    if await request.is_disconnected():
                        break
                    event = await sub.get(timeout=_HEARTBEAT_INTERVAL)
                    if event is None:
                        yield ": heartbeat\n\n"
                        continue
                    yield format_sse(event)

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/health")
async def events_health(request: Request) -> dict:
    """Subscriber count and SSE connection stats."""
    bus = _get_bus(request)
    return {
        "status": "ok",
        "subscribers": bus.subscriber_count,
        "active_sse_connections": _MAX_SSE_CONNECTIONS - _connection_semaphore._value,  # noqa: SLF001
        "max_sse_connections": _MAX_SSE_CONNECTIONS,
    }
