"""Folder cover lookup backed by the derived-value cache."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from libmirror.core.logging import get_logger
from libmirror.db.models import Folder, FolderItem, FolderItemSortType, Item
from libmirror.services.cache import (
    CoverImageState,
    DerivedValueCache,
    folder_cover_key,
    get_derived_value_cache,
)
from libmirror.services.preferences import GlobalSortOption, load_global_sort
from libmirror.services.sorting import effective_sort, folder_item_order_by

logger = get_logger(__name__)

# Child folders, then grandchildren
DESCENDANT_DEPTH = 2


class FolderCoverService:
    """Resolves which item represents a folder.

    A folder's explicit cover wins when that item still exists and is not
    deleted. Otherwise the first live item of the folder in the folder's
    own sort order is used. A folder without live items borrows one from
    its child folders, then from its grandchildren.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        cache: DerivedValueCache | None = None,
    ):
        self.session_maker = session_maker
        self.cache = cache or get_derived_value_cache()

    async def get_cover(self, library_id: int, folder_id: str) -> CoverImageState:
        """Get a folder's cover, computing it at most once per cache lifetime."""
        entry = await self.cache.find_or_create(
            folder_cover_key(library_id, folder_id),
            CoverImageState,
            lambda: self.compute_cover(library_id, folder_id),
        )
        return entry.value

    async def compute_cover(self, library_id: int, folder_id: str) -> CoverImageState:
        """Query the database for a folder's cover item."""
        async with self.session_maker() as session:
            folder = await session.get(Folder, (library_id, folder_id))
            if folder is None:
                return CoverImageState()

            item = None
            if folder.cover_item_id:
                item = await session.get(Item, (library_id, folder.cover_item_id))
                if item is not None and item.is_deleted:
                    item = None

            global_sort = await load_global_sort(session)
            if item is None:
                item = await self._first_item(
                    session,
                    library_id,
                    [folder_id],
                    folder_item_order_by(*effective_sort(folder, global_sort)),
                )
            if item is None:
                item = await self._first_descendant_item(session, library_id, folder_id, global_sort)

            if item is None:
                return CoverImageState()

            logger.debug("folder_cover_computed", library_id=library_id, folder_id=folder_id, item_id=item.item_id)
            return CoverImageState(item_id=item.item_id, thumbnail_path=item.thumbnail_path)

    async def _first_descendant_item(
        self,
        session: AsyncSession,
        library_id: int,
        folder_id: str,
        global_sort: GlobalSortOption,
    ) -> Item | None:
        order_by = folder_item_order_by(FolderItemSortType(global_sort.type.value), global_sort.ascending)
        parent_ids = [folder_id]
        for _ in range(DESCENDANT_DEPTH):
            result = await session.execute(
                select(Folder.folder_id).where(
                    Folder.library_id == library_id, Folder.parent_id.in_(parent_ids)
                )
            )
            parent_ids = list(result.scalars())
            if not parent_ids:
                return None
            item = await self._first_item(session, library_id, parent_ids, order_by)
            if item is not None:
                return item
        return None

    @staticmethod
    async def _first_item(
        session: AsyncSession,
        library_id: int,
        folder_ids: list[str],
        order_by: list,
    ) -> Item | None:
        result = await session.execute(
            select(Item)
            .join(
                FolderItem,
                (FolderItem.library_id == Item.library_id) & (FolderItem.item_id == Item.item_id),
            )
            .where(
                FolderItem.library_id == library_id,
                FolderItem.folder_id.in_(folder_ids),
                Item.is_deleted.is_(False),
            )
            .order_by(*order_by)
            .limit(1)
        )
        return result.scalars().first()
