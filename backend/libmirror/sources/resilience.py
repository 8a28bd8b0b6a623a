"""Resilience layer for remote storage backends.

Provides:
- RequestLimiter: caps in-flight requests and spaces out slot hand-offs
- ResilientExecutor: exponential-backoff retry with credential refresh
- PathResolutionCache: memoized (parent, child name) -> child id lookups
"""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncGenerator, Awaitable, Callable, TypeVar

from libmirror.core.config import settings
from libmirror.core.exceptions import SourceError, UnauthorizedError, is_retryable
from libmirror.core.logging import get_logger

if TYPE_CHECKING:
    from libmirror.sources.credentials import CredentialProvider

T = TypeVar("T")

logger = get_logger(__name__)


class RequestLimiter:
    """Bounds concurrent requests to a backend.

    Waiters are served first-in first-out. A released slot is not handed on
    immediately: the hand-off happens ``release_spacing`` seconds later, so
    a burst of finishing requests does not turn into a burst of new ones.

    Usage:
        async with limiter.slot():
            # make request
    """

    def __init__(self, max_concurrent: int = 2, release_spacing: float = 0.2):
        """Initialize the limiter.

        Args:
            max_concurrent: Maximum requests holding a slot at once.
            release_spacing: Seconds between a release and the next hand-off.
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.release_spacing = release_spacing
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

        # Metrics
        self.peak_active = 0
        self.requests_total = 0
        self.queued_total = 0

    @property
    def active(self) -> int:
        """Number of slots currently held (including slots pending hand-off)."""
        return self._active

    @property
    def waiting(self) -> int:
        """Number of callers queued for a slot."""
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        """Wait for a free slot."""
        self.requests_total += 1
        if self._active < self.max_concurrent and not self._waiters:
            self._active += 1
            self.peak_active = max(self.peak_active, self._active)
            return

        self.queued_total += 1
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before cancellation
                self._hand_off()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        """Give back a slot; the next waiter receives it after the spacing delay."""
        if self.release_spacing > 0:
            asyncio.get_running_loop().call_later(self.release_spacing, self._hand_off)
        else:
            self._hand_off()

    def _hand_off(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Slot moves to the waiter; the active count is unchanged
                waiter.set_result(None)
                return
        self._active -= 1

    @asynccontextmanager
    async def slot(self) -> AsyncGenerator[None, None]:
        """Hold a slot for the duration of the block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def get_stats(self) -> dict[str, int]:
        """Get limiter statistics."""
        return {
            "active": self._active,
            "waiting": self.waiting,
            "peak_active": self.peak_active,
            "requests_total": self.requests_total,
            "queued_total": self.queued_total,
        }


class ResilientExecutor:
    """Runs backend operations with limiting and retry.

    Retryable failures (expired credential, rate limit, server error,
    transient transport error) are retried with ``base_delay * 2**attempt``
    backoff. The limiter slot is released before sleeping. An expired
    credential is refreshed through the provider before the next attempt.
    Terminal failures and the last retryable failure propagate unchanged.
    """

    def __init__(
        self,
        limiter: RequestLimiter | None = None,
        credentials: CredentialProvider | None = None,
        max_retries: int | None = None,
        base_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.limiter = limiter
        self.credentials = credentials
        self.max_retries = settings.retry_max_retries if max_retries is None else max_retries
        self.base_delay = settings.retry_base_delay if base_delay is None else base_delay
        self._sleep = sleep

    async def run(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        """Execute ``func`` with retry.

        Args:
            operation: Description of the operation for logging.
            func: Zero-argument coroutine function performing one attempt.

        Returns:
            Result of the first successful attempt.

        Raises:
            SourceError: The terminal error, or the last retryable error
                once retries are exhausted.
        """
        for attempt in range(self.max_retries + 1):
            try:
                return await self._attempt(func)
            except SourceError as e:
                if not is_retryable(e):
                    raise

                if attempt >= self.max_retries:
                    logger.error(
                        "remote_retries_exhausted",
                        operation=operation,
                        attempts=attempt + 1,
                        error=str(e),
                    )
                    raise

                if isinstance(e, UnauthorizedError) and self.credentials is not None:
                    logger.info("credential_refresh_on_unauthorized", operation=operation)
                    await self.credentials.refresh()

                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    "remote_request_retry",
                    operation=operation,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay_seconds=round(delay, 1),
                    error_code=e.code,
                    error=str(e),
                )
                await self._sleep(delay)

        # range() above always returns or raises
        raise AssertionError("unreachable")

    async def _attempt(self, func: Callable[[], Awaitable[T]]) -> T:
        if self.limiter is None:
            return await func()
        async with self.limiter.slot():
            return await func()


class PathResolutionCache:
    """Memoizes child lookups for a backend account.

    The same subpath (``images`` for instance) is resolved once per
    processed item, so without this every item costs extra listing calls.
    """

    def __init__(self):
        self._entries: dict[tuple[str, str, bool], str] = {}
        self.hits = 0
        self.misses = 0

    def get(self, parent_id: str, name: str, is_folder: bool) -> str | None:
        """Get a cached child id."""
        child_id = self._entries.get((parent_id, name, is_folder))
        if child_id is None:
            self.misses += 1
        else:
            self.hits += 1
        return child_id

    def set(self, parent_id: str, name: str, is_folder: bool, child_id: str) -> None:
        """Remember a child id."""
        self._entries[(parent_id, name, is_folder)] = child_id

    def invalidate(self, parent_id: str, name: str) -> None:
        """Forget a child, whatever its type."""
        self._entries.pop((parent_id, name, True), None)
        self._entries.pop((parent_id, name, False), None)

    def invalidate_parent(self, parent_id: str) -> None:
        """Forget every cached child of a folder."""
        for key in [key for key in self._entries if key[0] == parent_id]:
            del self._entries[key]

    def clear(self) -> None:
        """Clear all cached entries."""
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# Shared Google Drive limiter and path cache (initialized lazily with settings)
_gdrive_limiter: RequestLimiter | None = None
_gdrive_path_cache: PathResolutionCache | None = None


def get_gdrive_limiter() -> RequestLimiter:
    """Get or create the global Google Drive request limiter."""
    global _gdrive_limiter
    if _gdrive_limiter is None:
        _gdrive_limiter = RequestLimiter(
            max_concurrent=settings.gdrive_max_concurrent_requests,
            release_spacing=settings.gdrive_release_spacing,
        )
    return _gdrive_limiter


def get_gdrive_path_cache() -> PathResolutionCache:
    """Get or create the global Google Drive path cache."""
    global _gdrive_path_cache
    if _gdrive_path_cache is None:
        _gdrive_path_cache = PathResolutionCache()
    return _gdrive_path_cache
