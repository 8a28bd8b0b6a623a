"""Server-Sent Events endpoint for import progress and cache invalidation."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from libmirror.core.logging import get_logger
from libmirror.services.events import Event, EventType, get_event_broadcaster

logger = get_logger(__name__)

router = APIRouter(prefix="/events", tags=["events"])

HEARTBEAT_INTERVAL = 30  # seconds


@router.get("/")
async def sse_events():
    """Subscribe to Server-Sent Events stream.

    Event types:
    - library_will_change: Active library is about to switch
    - folder_sort_changed: A folder's sort preference changed
    - import_progress_changed: Import progress for a library
    - folder_cache_invalidated: Folder covers should be reloaded
    - heartbeat: Keep-alive ping
    """
    broadcaster = get_event_broadcaster()

    async def event_generator():
        async with broadcaster.subscribe() as queue:
            yield Event(
                type=EventType.HEARTBEAT,
                payload={"message": "connected"},
            ).to_sse()

            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_INTERVAL)
                    yield event.to_sse()
                except asyncio.TimeoutError:
                    yield Event(type=EventType.HEARTBEAT, payload={"message": "ping"}).to_sse()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/status")
async def get_events_status():
    """Get the number of event subscribers."""
    broadcaster = get_event_broadcaster()
    return {
        "subscribers": broadcaster.subscriber_count,
        "status": "active",
    }
