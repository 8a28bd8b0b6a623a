"""Event broadcast service.

Delivers application events to in-process subscribers (the derived-value
cache) and to Server-Sent Events clients. Events are broadcast for:
- Library switches (caches must be dropped)
- Folder and global sort changes
- Import progress
- Folder cache invalidation (views should reload folder covers)
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncGenerator

from pydantic import BaseModel, Field

from libmirror.core.logging import get_logger

logger = get_logger(__name__)

SUBSCRIBER_QUEUE_SIZE = 1000


class EventType(str, Enum):
    """Types of events that can be broadcast."""

    LIBRARY_WILL_CHANGE = "library_will_change"
    FOLDER_SORT_CHANGED = "folder_sort_changed"
    GLOBAL_SORT_CHANGED = "global_sort_changed"
    IMPORT_PROGRESS_CHANGED = "import_progress_changed"
    FOLDER_CACHE_INVALIDATED = "folder_cache_invalidated"

    # System events
    HEARTBEAT = "heartbeat"


class Event(BaseModel):
    """Event payload."""

    type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_sse(self) -> str:
        """Format event for SSE transmission."""
        data = {
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }
        return f"data: {json.dumps(data)}\n\n"


class EventBroadcaster:
    """Fans events out to every subscriber queue."""

    def __init__(self):
        self._subscribers: list[asyncio.Queue[Event]] = []
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def subscribe(self) -> AsyncGenerator[asyncio.Queue[Event], None]:
        """Subscribe to events.

        The subscription is removed when the context exits.

        Usage:
            async with broadcaster.subscribe() as queue:
                while True:
                    event = await queue.get()
        """
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        async with self._lock:
            self._subscribers.append(queue)
            count = len(self._subscribers)

        logger.debug("event_subscriber_added", subscriber_count=count)

        try:
            yield queue
        finally:
            async with self._lock:
                self._subscribers.remove(queue)
                count = len(self._subscribers)
            logger.debug("event_subscriber_removed", subscriber_count=count)

    async def broadcast(self, event: Event) -> None:
        """Broadcast an event to all subscribers.

        Args:
            event: The event to broadcast.
        """
        async with self._lock:
            subscribers = list(self._subscribers)

        for queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("event_subscriber_queue_full", event_type=event.type.value)

        logger.debug(
            "event_broadcast",
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    async def broadcast_library_will_change(self, library_id: int | None) -> None:
        """Broadcast that the active library is about to change."""
        await self.broadcast(Event(
            type=EventType.LIBRARY_WILL_CHANGE,
            payload={"library_id": library_id},
        ))

    async def broadcast_folder_sort_changed(self, library_id: int, folder_id: str) -> None:
        """Broadcast a folder's sort preference change."""
        await self.broadcast(Event(
            type=EventType.FOLDER_SORT_CHANGED,
            payload={"library_id": library_id, "folder_id": folder_id},
        ))

    async def broadcast_global_sort_changed(self) -> None:
        """Broadcast a change of the application-wide sort preference."""
        await self.broadcast(Event(type=EventType.GLOBAL_SORT_CHANGED))

    async def broadcast_import_progress(
        self,
        library_id: int,
        progress: float,
        is_importing: bool = True,
    ) -> None:
        """Broadcast import progress for a library."""
        await self.broadcast(Event(
            type=EventType.IMPORT_PROGRESS_CHANGED,
            payload={
                "library_id": library_id,
                "progress": round(progress, 4),
                "is_importing": is_importing,
            },
        ))

    async def broadcast_folder_cache_invalidated(self, folder_id: str | None = None) -> None:
        """Broadcast that cached folder values were invalidated."""
        await self.broadcast(Event(
            type=EventType.FOLDER_CACHE_INVALIDATED,
            payload={"folder_id": folder_id},
        ))

    @property
    def subscriber_count(self) -> int:
        """Get the number of subscribers."""
        return len(self._subscribers)


# Global singleton instance
event_broadcaster = EventBroadcaster()


def get_event_broadcaster() -> EventBroadcaster:
    """Get the global event broadcaster instance."""
    return event_broadcaster
