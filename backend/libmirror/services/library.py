"""Library management service.

Uses a session-per-operation pattern: each method opens its own session
so callers never hold a connection across awaits on the network.
"""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from libmirror.core.exceptions import LibMirrorError
from libmirror.core.logging import get_logger
from libmirror.db.models import Folder, FolderItemSortType, ImportStatus, Library
from libmirror.services.events import EventBroadcaster, get_event_broadcaster
from libmirror.services.local_storage import LocalAssetStorage
from libmirror.sources.descriptors import SourceDescriptor

logger = get_logger(__name__)


class LibraryError(LibMirrorError):
    """Base exception for library management errors."""

    def __init__(self, message: str, code: str = "LIBRARY_ERROR"):
        super().__init__(message, code)


class LibraryNotFound(LibraryError):
    """Raised when a library does not exist."""

    def __init__(self, library_id: int):
        super().__init__(f"Library {library_id} not found", "LIBRARY_NOT_FOUND")


class FolderNotFound(LibraryError):
    """Raised when a folder does not exist in a library."""

    def __init__(self, library_id: int, folder_id: str):
        super().__init__(f"Folder {folder_id} not found in library {library_id}", "FOLDER_NOT_FOUND")


class LibraryService:
    """Creates, updates and deletes libraries."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        storage: LocalAssetStorage | None = None,
        broadcaster: EventBroadcaster | None = None,
    ):
        self.session_maker = session_maker
        self.storage = storage or LocalAssetStorage()
        self.broadcaster = broadcaster or get_event_broadcaster()

    async def create(
        self,
        name: str,
        source: SourceDescriptor,
        use_local_storage: bool = False,
    ) -> Library:
        """Create a library placed after the existing ones."""
        async with self.session_maker() as session:
            max_order = await session.scalar(select(func.max(Library.sort_order)))
            library = Library(
                name=name,
                sort_order=(max_order or 0) + 1,
                use_local_storage=use_local_storage,
                last_imported_folder_mtime=0,
                last_imported_item_mtime=0,
                last_import_status=ImportStatus.NONE,
            )
            library.source = source
            session.add(library)
            await session.commit()
            await session.refresh(library)

        logger.info("library_created", library_id=library.id, name=name, source=source.kind)
        return library

    async def get(self, library_id: int) -> Library:
        """Get a library.

        Raises:
            LibraryNotFound: If it does not exist.
        """
        async with self.session_maker() as session:
            library = await session.get(Library, library_id)
            if library is None:
                raise LibraryNotFound(library_id)
            return library

    async def list(self) -> list[Library]:
        """List libraries in display order."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(Library).order_by(Library.sort_order, Library.id)
            )
            return list(result.scalars())

    async def delete(self, library_id: int) -> None:
        """Delete a library, its rows and its local asset copies."""
        async with self.session_maker() as session:
            library = await session.get(Library, library_id)
            if library is None:
                raise LibraryNotFound(library_id)
            await session.delete(library)
            await session.commit()

        await self.storage.remove_library(library_id)
        logger.info("library_deleted", library_id=library_id)

    async def update_source(
        self,
        library_id: int,
        source: SourceDescriptor | None = None,
        name: str | None = None,
        use_local_storage: bool | None = None,
    ) -> Library:
        """Update a library's settings.

        Pointing a library at a different location resets both cursors so
        the next import starts from scratch.
        """
        async with self.session_maker() as session:
            library = await session.get(Library, library_id)
            if library is None:
                raise LibraryNotFound(library_id)

            if name is not None:
                library.name = name
            if use_local_storage is not None:
                library.use_local_storage = use_local_storage
            if source is not None and source != library.source:
                library.source = source
                library.last_imported_folder_mtime = 0
                library.last_imported_item_mtime = 0
                logger.info("library_source_changed", library_id=library_id, source=source.kind)

            await session.commit()
            return library

    async def reset_cursors(self, library_id: int) -> None:
        """Zero both cursors, forcing a full re-import."""
        async with self.session_maker() as session:
            library = await session.get(Library, library_id)
            if library is None:
                raise LibraryNotFound(library_id)
            library.last_imported_folder_mtime = 0
            library.last_imported_item_mtime = 0
            await session.commit()

    async def set_import_status(self, library_id: int, status: ImportStatus) -> None:
        """Persist the outcome of an import."""
        async with self.session_maker() as session:
            library = await session.get(Library, library_id)
            if library is None:
                raise LibraryNotFound(library_id)
            library.last_import_status = status
            await session.commit()

    async def update_folder_sort(
        self,
        library_id: int,
        folder_id: str,
        sort_type: FolderItemSortType,
        ascending: bool,
    ) -> Folder:
        """Set a folder's sort preference as a user override.

        The folder is flagged so later imports keep this preference.
        """
        async with self.session_maker() as session:
            folder = await session.get(Folder, (library_id, folder_id))
            if folder is None:
                raise FolderNotFound(library_id, folder_id)
            folder.sort_type = sort_type
            folder.sort_ascending = ascending
            folder.sort_modified = True
            await session.commit()

        await self.broadcaster.broadcast_folder_sort_changed(library_id, folder_id)
        logger.info(
            "folder_sort_updated",
            library_id=library_id,
            folder_id=folder_id,
            sort_type=sort_type.value,
            ascending=ascending,
        )
        return folder
