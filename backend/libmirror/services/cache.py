"""Derived-value cache with Fresh/Stale entries.

Values that are expensive to derive (a folder's cover image, for example)
are memoized per key. Guarantees:
- at most one computation runs per key; concurrent callers share it
- a key expired while its computation runs still answers the waiting
  callers, but the result is not stored
- computation errors reach every waiting caller and are never stored

Entries are kept serialized, so a value type change between releases
shows up as a decode failure and the entry is dropped.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from libmirror.core.logging import get_logger
from libmirror.services.events import Event, EventBroadcaster, EventType, get_event_broadcaster

logger = get_logger(__name__)

T = TypeVar("T")

FOLDER_COVER_PREFIX = "folderCoverItem/"


class EntryState(str, Enum):
    """Freshness of a cached value."""

    FRESH = "fresh"
    STALE = "stale"


class CacheEntry(BaseModel, Generic[T]):
    """A cached value and its freshness."""

    state: EntryState
    value: T


class CoverImageState(BaseModel):
    """Cover of a folder: empty, or an item and its thumbnail path."""

    item_id: str | None = None
    thumbnail_path: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.item_id is None


def folder_cover_key(library_id: int, folder_id: str) -> str:
    """Get the cache key of a folder's cover."""
    return f"{FOLDER_COVER_PREFIX}{library_id}/{folder_id}"


class _Computation:
    """An in-flight computation and whether its result may be stored."""

    def __init__(self, task: asyncio.Task):
        self.task = task
        self.cacheable = True


class DerivedValueCache:
    """Memoizing cache with single-flight computation per key.

    All state changes happen under one lock. Computations run outside it.
    """

    def __init__(self, broadcaster: EventBroadcaster | None = None):
        self.broadcaster = broadcaster or get_event_broadcaster()
        self._entries: dict[str, str] = {}
        self._in_flight: dict[str, _Computation] = {}
        self._lock = asyncio.Lock()
        self._listener: asyncio.Task | None = None

        # Metrics
        self.hits = 0
        self.computations = 0

    # ========== Encoding ==========

    @staticmethod
    def _encode(entry: CacheEntry[Any]) -> str:
        return entry.model_dump_json()

    def _decode(self, key: str, value_type: type[T]) -> CacheEntry[T] | None:
        """Decode an entry; undecodable entries are dropped."""
        raw = self._entries.get(key)
        if raw is None:
            return None
        try:
            return CacheEntry[value_type].model_validate_json(raw)
        except ValidationError:
            del self._entries[key]
            logger.warning("cache_entry_undecodable", key=key)
            return None

    # ========== Lookup ==========

    async def find(self, key: str, value_type: type[T]) -> CacheEntry[T] | None:
        """Get the current entry for a key without computing anything."""
        async with self._lock:
            return self._decode(key, value_type)

    async def find_or_create(
        self,
        key: str,
        value_type: type[T],
        compute: Callable[[], Awaitable[T]],
    ) -> CacheEntry[T]:
        """Get a fresh entry, computing it if missing or stale.

        Callers arriving while a computation for the key is running wait
        for that computation instead of starting another.

        Args:
            key: Cache key.
            value_type: Type of the value, used to decode the stored entry.
            compute: Coroutine function producing the value.

        Returns:
            A Fresh entry holding the cached or newly computed value. A value
            computed for a key expired meanwhile is returned but not stored.
        """
        async with self._lock:
            entry = self._decode(key, value_type)
            if entry is not None and entry.state == EntryState.FRESH:
                self.hits += 1
                return entry

            computation = self._in_flight.get(key)
            if computation is None:
                self.computations += 1
                computation = _Computation(
                    asyncio.create_task(self._compute(key, value_type, compute))
                )
                self._in_flight[key] = computation

        # A cancelled caller must not cancel the computation other callers share
        return await asyncio.shield(computation.task)

    async def _compute(
        self,
        key: str,
        value_type: type[T],
        compute: Callable[[], Awaitable[T]],
    ) -> CacheEntry[T]:
        try:
            value = await compute()
        except BaseException:
            async with self._lock:
                self._finish(key)
            raise

        entry = CacheEntry[value_type](state=EntryState.FRESH, value=value)
        async with self._lock:
            computation = self._finish(key)
            if computation is not None and computation.cacheable:
                self._entries[key] = self._encode(entry)
            else:
                logger.debug("cache_result_discarded", key=key)
        return entry

    def _finish(self, key: str) -> _Computation | None:
        """Unregister the computation owned by the current task."""
        computation = self._in_flight.get(key)
        if computation is not None and computation.task is asyncio.current_task():
            del self._in_flight[key]
            return computation
        return None

    # ========== Expiry ==========

    def _detach(self, key: str) -> None:
        computation = self._in_flight.pop(key, None)
        if computation is not None:
            computation.cacheable = False

    async def expire(self, key: str) -> None:
        """Remove a key; a running computation for it will not be stored."""
        async with self._lock:
            self._entries.pop(key, None)
            self._detach(key)

    async def expire_prefix(self, prefix: str) -> None:
        """Remove every key starting with ``prefix``."""
        async with self._lock:
            for key in [key for key in self._entries if key.startswith(prefix)]:
                del self._entries[key]
            for key in [key for key in self._in_flight if key.startswith(prefix)]:
                self._detach(key)

    async def expire_all(self) -> None:
        """Remove every key."""
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
            for key in list(self._in_flight):
                self._detach(key)
        logger.debug("cache_cleared", entries_cleared=count)

    async def mark_stale(self, key: str, value_type: type[T]) -> None:
        """Mark a fresh entry stale so the next lookup recomputes it."""
        async with self._lock:
            self._mark_stale_locked(key, value_type)

    async def mark_stale_prefix(self, prefix: str, value_type: type[T]) -> None:
        """Mark every entry whose key starts with ``prefix`` stale."""
        async with self._lock:
            for key in [key for key in self._entries if key.startswith(prefix)]:
                self._mark_stale_locked(key, value_type)

    def _mark_stale_locked(self, key: str, value_type: type[T]) -> None:
        entry = self._decode(key, value_type)
        if entry is None or entry.state == EntryState.STALE:
            return
        entry.state = EntryState.STALE
        self._entries[key] = self._encode(entry)

    def __len__(self) -> int:
        return len(self._entries)

    # ========== Event Handling ==========

    async def handle_event(self, event: Event) -> None:
        """Apply invalidation rules for an application event."""
        if event.type == EventType.LIBRARY_WILL_CHANGE:
            await self.expire_all()

        elif event.type in (EventType.GLOBAL_SORT_CHANGED, EventType.IMPORT_PROGRESS_CHANGED):
            await self.mark_stale_prefix(FOLDER_COVER_PREFIX, CoverImageState)
            await self.broadcaster.broadcast_folder_cache_invalidated()

        elif event.type == EventType.FOLDER_SORT_CHANGED:
            library_id = event.payload.get("library_id")
            folder_id = event.payload.get("folder_id")
            if library_id is None or folder_id is None:
                logger.warning("folder_sort_event_incomplete", payload=event.payload)
                return
            await self.mark_stale(folder_cover_key(library_id, folder_id), CoverImageState)
            await self.broadcaster.broadcast_folder_cache_invalidated(folder_id)

    async def run_event_listener(self) -> None:
        """Consume broadcaster events until cancelled."""
        async with self.broadcaster.subscribe() as queue:
            logger.info("cache_event_listener_started")
            while True:
                event = await queue.get()
                try:
                    await self.handle_event(event)
                except Exception as e:
                    logger.error(
                        "cache_event_handling_failed",
                        event_type=event.type.value,
                        error=str(e),
                    )

    def start_listener(self) -> None:
        """Start consuming events in a background task."""
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self.run_event_listener())

    async def stop_listener(self) -> None:
        """Stop the background event consumer."""
        if self._listener is None:
            return
        self._listener.cancel()
        try:
            await self._listener
        except asyncio.CancelledError:
            pass
        self._listener = None


_cache: DerivedValueCache | None = None


def get_derived_value_cache() -> DerivedValueCache:
    """Get or create the global derived-value cache."""
    global _cache
    if _cache is None:
        _cache = DerivedValueCache()
    return _cache
