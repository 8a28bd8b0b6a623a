"""Sync controller: runs one import session per library.

Starting a sync for a library that is already syncing cancels the running
session and supersedes it. The new session waits for the old one to stop
at its next checkpoint before it writes anything. The outcome of every
session is persisted on the library row.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from libmirror.core.exceptions import SyncCancelledError
from libmirror.core.logging import get_logger
from libmirror.db.models import ImportStatus, Library
from libmirror.db.session import async_session_maker
from libmirror.services.asset_downloader import AssetDownloader
from libmirror.services.cancellation import CancellationToken
from libmirror.services.events import EventBroadcaster, get_event_broadcaster
from libmirror.services.importer import ImportStats, MetadataImporter
from libmirror.services.library import LibraryNotFound, LibraryService
from libmirror.services.local_storage import LocalAssetStorage
from libmirror.sources.base import SourceEntity
from libmirror.sources.factory import SourceContext, create_source_entity, default_source_context

logger = get_logger(__name__)


@dataclass
class SyncState:
    """Live state of one library's most recent sync session."""

    library_id: int
    token: CancellationToken = field(default_factory=CancellationToken)
    task: asyncio.Task | None = None
    full: bool = False
    progress: float = 0.0
    is_importing: bool = False
    status: ImportStatus = ImportStatus.NONE
    error: str | None = None
    stats: ImportStats | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass
class LibrarySession:
    """The library currently being browsed."""

    library_id: int
    name: str
    root: SourceEntity
    use_local_storage: bool


class SyncController:
    """Owns the active library and its sync sessions."""

    _instance: SyncController | None = None

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        source_context: SourceContext | None = None,
        storage: LocalAssetStorage | None = None,
        broadcaster: EventBroadcaster | None = None,
    ) -> None:
        self.session_maker = session_maker or async_session_maker
        self.source_context = source_context or default_source_context()
        self.storage = storage or LocalAssetStorage()
        self.broadcaster = broadcaster or get_event_broadcaster()
        self.libraries = LibraryService(self.session_maker, self.storage, self.broadcaster)
        self.downloader = AssetDownloader(self.storage)
        self.active: LibrarySession | None = None
        self._syncs: dict[int, SyncState] = {}

    @classmethod
    def get_instance(cls) -> SyncController:
        """Get the singleton instance of SyncController."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        cls._instance = None

    # ========== Active Library ==========

    def open_root(self, library: Library) -> SourceEntity:
        """Open the root entity of a library's source."""
        return create_source_entity(library.source, self.source_context)

    async def activate(self, library_id: int) -> LibrarySession:
        """Switch the active library.

        Subscribers (the derived-value cache in particular) are told before
        the switch so nothing derived from the old library survives it.
        """
        library = await self.libraries.get(library_id)
        await self.broadcaster.broadcast_library_will_change(library_id)
        self.active = LibrarySession(
            library_id=library.id,
            name=library.name,
            root=self.open_root(library),
            use_local_storage=library.use_local_storage,
        )
        logger.info("library_activated", library_id=library_id)
        return self.active

    # ========== Sync Sessions ==========

    async def start_sync(self, library_id: int, full: bool = False) -> SyncState:
        """Start a sync session, superseding any running one for the library.

        Args:
            library_id: Library to import.
            full: Zero both cursors first, forcing complete reprocessing.

        Returns:
            State of the new session.
        """
        # Fail before cancelling anything if the library is gone
        await self.libraries.get(library_id)

        previous = self._syncs.get(library_id)
        previous_task = None
        if previous is not None and previous.task is not None and not previous.task.done():
            previous.token.cancel()
            previous_task = previous.task
            logger.info("sync_superseded", library_id=library_id)

        state = SyncState(
            library_id=library_id,
            full=full,
            is_importing=True,
            started_at=datetime.now(timezone.utc),
        )
        self._syncs[library_id] = state
        state.task = asyncio.create_task(self._run(state, previous_task))
        return state

    async def _run(self, state: SyncState, previous_task: asyncio.Task | None) -> None:
        if previous_task is not None:
            await asyncio.gather(previous_task, return_exceptions=True)

        library_id = state.library_id
        logger.info("sync_started", library_id=library_id, full=state.full)

        try:
            state.token.raise_if_cancelled()
            if state.full:
                await self.libraries.reset_cursors(library_id)
            library = await self.libraries.get(library_id)

            importer = MetadataImporter(
                library_id=library_id,
                root=self.open_root(library),
                session_maker=self.session_maker,
                asset_storage=self.storage if library.use_local_storage else None,
                token=state.token,
                on_progress=lambda progress: self._on_progress(state, progress),
            )
            state.stats = await importer.import_all()
            state.status = ImportStatus.SUCCESS
            logger.info("sync_completed", library_id=library_id, stats=vars(state.stats))

        except SyncCancelledError:
            state.status = ImportStatus.CANCELLED
            logger.info("sync_cancelled", library_id=library_id)

        except asyncio.CancelledError:
            state.status = ImportStatus.CANCELLED
            await self._finish(state)
            raise

        except Exception as e:
            state.status = ImportStatus.FAILED
            state.error = str(e)
            logger.error("sync_failed", library_id=library_id, error=str(e), exc_info=True)

        await self._finish(state)

    async def _finish(self, state: SyncState) -> None:
        state.is_importing = False
        state.finished_at = datetime.now(timezone.utc)
        try:
            await self.libraries.set_import_status(state.library_id, state.status)
        except LibraryNotFound:
            logger.info("sync_status_not_saved_library_deleted", library_id=state.library_id)
        await self.broadcaster.broadcast_import_progress(
            state.library_id, state.progress, is_importing=False
        )

    async def _on_progress(self, state: SyncState, progress: float) -> None:
        state.progress = progress
        await self.broadcaster.broadcast_import_progress(state.library_id, progress)

    async def cancel_sync(self, library_id: int) -> bool:
        """Request cancellation of a library's running sync.

        Returns:
            True if a running session was asked to stop.
        """
        state = self._syncs.get(library_id)
        if state is None or not state.is_importing:
            return False
        state.token.cancel()
        logger.info("sync_cancel_requested", library_id=library_id)
        return True

    def get_state(self, library_id: int) -> SyncState | None:
        """Get the state of a library's most recent session."""
        return self._syncs.get(library_id)

    async def wait(self, library_id: int) -> SyncState | None:
        """Wait for a library's current session to finish."""
        state = self._syncs.get(library_id)
        if state is not None and state.task is not None:
            await asyncio.gather(state.task, return_exceptions=True)
        return state

    async def shutdown(self) -> None:
        """Cancel every running session and wait for them to stop."""
        tasks = []
        for state in self._syncs.values():
            if state.task is not None and not state.task.done():
                state.token.cancel()
                tasks.append(state.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.source_context.close()
        logger.info("sync_controller_stopped", sessions_stopped=len(tasks))
