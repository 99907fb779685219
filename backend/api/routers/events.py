"""Server-Sent Events (SSE) router: live lock and submission updates."""
import asyncio
import json
import logging
import threading
from typing import AsyncGenerator
from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

_logger = logging.getLogger('ofpapi.events')

router = APIRouter(prefix="/api/events", tags=["Events"])

EVENT_TYPES = frozenset({
    "session_started",
    "session_ended",
    "schedule_submitted",
    "sessions_force_ended",
    "config_changed",
})

# ── In-memory subscriber registry ──────────────────────────────
# List of (loop, queue) tuples, one per SSE connection.
_lock = threading.Lock()
_subscribers: list[tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = []


def subscriber_count() -> int:
    with _lock:
        return len(_subscribers)


def broadcast(event_type: str, data: dict | None = None) -> int:
    """Push an event to every connected client; returns how many were reached.

    Thread-safe, so sync endpoints running in the worker pool can call it.
    """
    if event_type not in EVENT_TYPES:
        _logger.warning("SSE broadcast of unknown event type %r", event_type)
    payload = {"type": event_type, "data": data or {}}
    delivered = 0
    with _lock:
        dead = []
        for loop, q in _subscribers:
            try:
                loop.call_soon_threadsafe(q.put_nowait, payload)
                delivered += 1
            except RuntimeError:
                # Loop already closed: the client is gone
                dead.append((loop, q))
        for item in dead:
            _subscribers.remove(item)
    if delivered:
        _logger.debug("SSE broadcast: %s → %d clients", event_type, delivered)
    return delivered


async def _event_generator(request: Request, queue: asyncio.Queue) -> AsyncGenerator[str, None]:
    """Yield SSE-formatted strings from the queue until the client disconnects."""
    try:
        yield "event: connected\ndata: {}\n\n"
        while True:
            if await request.is_disconnected():
                break
            try:
                payload = await asyncio.wait_for(queue.get(), timeout=25.0)
                data_str = json.dumps(payload["data"], ensure_ascii=False)
                yield f"event: {payload['type']}\ndata: {data_str}\n\n"
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
    finally:
        loop = asyncio.get_running_loop()
        with _lock:
            if (loop, queue) in _subscribers:
                _subscribers.remove((loop, queue))
        _logger.debug("SSE client disconnected. Remaining: %d", subscriber_count())


@router.get("", summary="SSE event stream", description=(
    "Connect to receive live updates about the scheduling lock.\n\n"
    "Events: `connected`, `session_started`, `session_ended`, `schedule_submitted`, "
    "`sessions_force_ended`, `config_changed`"
))
async def sse_stream(request: Request):
    """Stream real-time events to a connected client."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue(maxsize=50)
    with _lock:
        _subscribers.append((loop, queue))
    _logger.debug("SSE client connected. Total: %d", subscriber_count())

    return StreamingResponse(
        _event_generator(request, queue),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )
