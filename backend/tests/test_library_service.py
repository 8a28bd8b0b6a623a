"""Tests for LibraryService and FolderCoverService."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from libmirror.db.models import (
    Folder,
    FolderItem,
    FolderItemSortType,
    GlobalSortType,
    ImportStatus,
    Item,
    Library,
)
from libmirror.services.cache import FOLDER_COVER_PREFIX, CoverImageState, DerivedValueCache
from libmirror.services.events import EventBroadcaster, EventType
from libmirror.services.folder_cover import FolderCoverService
from libmirror.services.library import FolderNotFound, LibraryNotFound, LibraryService
from libmirror.services.preferences import GlobalSortOption, PreferencesService
from libmirror.services.local_storage import LocalAssetStorage
from libmirror.sources.descriptors import GoogleDriveSourceDescriptor, LocalSourceDescriptor


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def broadcaster():
    return EventBroadcaster()


@pytest.fixture
def storage(tmp_path):
    return LocalAssetStorage(tmp_path / "storage")


@pytest.fixture
def service(session_maker, storage, broadcaster) -> LibraryService:
    """Create a LibraryService on the test database."""
    return LibraryService(session_maker, storage, broadcaster)


async def add_folder_with_items(session_maker, library_id, folder_id="F1", cover_item_id=None, items=()):
    """Insert a folder and (item_id, order_value, is_deleted) members."""
    async with session_maker() as session:
        session.add(Folder(library_id=library_id, folder_id=folder_id, name=folder_id, cover_item_id=cover_item_id))
        for item_id, order_value, is_deleted in items:
            session.add(Item(library_id=library_id, item_id=item_id, name=item_id, ext="jpg", is_deleted=is_deleted))
        await session.flush()
        for item_id, order_value, _ in items:
            session.add(FolderItem(library_id=library_id, folder_id=folder_id, item_id=item_id, order_value=order_value))
        await session.commit()


async def add_folder(session_maker, library_id, folder_id, parent_id=None, **fields):
    async with session_maker() as session:
        session.add(Folder(library_id=library_id, folder_id=folder_id, parent_id=parent_id, name=folder_id, **fields))
        await session.commit()


async def add_item(session_maker, library_id, folder_id, item_id, order_value="0", **fields):
    """Insert a live item and its membership in a folder."""
    async with session_maker() as session:
        fields.setdefault("name", item_id)
        session.add(Item(library_id=library_id, item_id=item_id, ext="jpg", **fields))
        await session.flush()
        session.add(FolderItem(library_id=library_id, folder_id=folder_id, item_id=item_id, order_value=order_value))
        await session.commit()


# =============================================================================
# LibraryService
# =============================================================================


class TestLibraryService:
    """Tests for library management."""

    @pytest.mark.asyncio
    async def test_create_appends_sort_order(self, service):
        """Test that new libraries are placed after existing ones."""
        first = await service.create("One", LocalSourceDescriptor(path="/a"))
        second = await service.create("Two", GoogleDriveSourceDescriptor(folder_id="x"))

        assert (first.sort_order, second.sort_order) == (1, 2)
        assert second.source.kind == "gdrive"
        assert second.last_import_status == ImportStatus.NONE
        assert [lib.name for lib in await service.list()] == ["One", "Two"]

    @pytest.mark.asyncio
    async def test_get_missing(self, service):
        """Test that a missing library raises LibraryNotFound."""
        with pytest.raises(LibraryNotFound):
            await service.get(999)

    @pytest.mark.asyncio
    async def test_changing_source_resets_cursors(self, service, session_maker):
        """Test that pointing a library elsewhere forces a full import."""
        library = await service.create("One", LocalSourceDescriptor(path="/a"))
        await self._set_cursors(session_maker, library.id, 50, 60)

        updated = await service.update_source(library.id, source=LocalSourceDescriptor(path="/b"))

        assert updated.last_imported_folder_mtime == 0
        assert updated.last_imported_item_mtime == 0
        assert updated.source.path == "/b"

    @pytest.mark.asyncio
    async def test_same_source_keeps_cursors(self, service, session_maker):
        """Test that renaming or re-saving the same source keeps cursors."""
        library = await service.create("One", LocalSourceDescriptor(path="/a"))
        await self._set_cursors(session_maker, library.id, 50, 60)

        updated = await service.update_source(
            library.id, source=LocalSourceDescriptor(path="/a"), name="Renamed"
        )

        assert updated.name == "Renamed"
        assert updated.last_imported_item_mtime == 60

    @pytest.mark.asyncio
    async def test_reset_cursors_and_status(self, service, session_maker):
        library = await service.create("One", LocalSourceDescriptor(path="/a"))
        await self._set_cursors(session_maker, library.id, 50, 60)

        await service.reset_cursors(library.id)
        await service.set_import_status(library.id, ImportStatus.FAILED)

        library = await service.get(library.id)
        assert library.last_imported_folder_mtime == 0
        assert library.last_import_status == ImportStatus.FAILED

    @pytest.mark.asyncio
    async def test_delete_cascades_rows_and_storage(self, service, session_maker, storage):
        """Test that deleting a library removes its rows and local copies."""
        library = await service.create("One", LocalSourceDescriptor(path="/a"))
        await add_folder_with_items(session_maker, library.id, items=[("I1", "1", False)])
        asset = storage.path_for(library.id, "images/I1.info/I1.jpg")
        asset.parent.mkdir(parents=True)
        asset.write_bytes(b"x")

        await service.delete(library.id)

        async with session_maker() as session:
            for model in (Folder, Item, FolderItem):
                assert await session.scalar(select(func.count()).select_from(model)) == 0
        assert not storage.library_dir(library.id).exists()

        with pytest.raises(LibraryNotFound):
            await service.delete(library.id)

    @pytest.mark.asyncio
    async def test_update_folder_sort_sets_override(self, service, session_maker, broadcaster):
        """Test that a user sort change is flagged and broadcast."""
        library = await service.create("One", LocalSourceDescriptor(path="/a"))
        await add_folder_with_items(session_maker, library.id)

        async with broadcaster.subscribe() as queue:
            folder = await service.update_folder_sort(library.id, "F1", FolderItemSortType.RATING, False)
            event = queue.get_nowait()

        assert folder.sort_modified is True
        assert folder.sort_type == FolderItemSortType.RATING
        assert folder.sort_ascending is False
        assert event.type == EventType.FOLDER_SORT_CHANGED
        assert event.payload == {"library_id": library.id, "folder_id": "F1"}

    @pytest.mark.asyncio
    async def test_update_folder_sort_missing_folder(self, service):
        library = await service.create("One", LocalSourceDescriptor(path="/a"))

        with pytest.raises(FolderNotFound):
            await service.update_folder_sort(library.id, "nope", FolderItemSortType.TITLE, True)

    @staticmethod
    async def _set_cursors(session_maker, library_id, folder_mtime, item_mtime):
        async with session_maker() as session:
            library = await session.get(Library, library_id)
            library.last_imported_folder_mtime = folder_mtime
            library.last_imported_item_mtime = item_mtime
            await session.commit()


# =============================================================================
# FolderCoverService
# =============================================================================


class TestFolderCoverService:
    """Tests for folder cover resolution."""

    @pytest.fixture
    async def library_id(self, service):
        library = await service.create("One", LocalSourceDescriptor(path="/a"))
        return library.id

    @pytest.fixture
    def covers(self, session_maker, broadcaster):
        return FolderCoverService(session_maker, DerivedValueCache(broadcaster))

    @pytest.mark.asyncio
    async def test_explicit_cover_wins(self, covers, session_maker, library_id):
        """Test that the folder's chosen cover is used when it exists."""
        await add_folder_with_items(
            session_maker, library_id, cover_item_id="B",
            items=[("A", "1", False), ("B", "2", False)],
        )

        cover = await covers.get_cover(library_id, "F1")

        assert cover.item_id == "B"
        assert cover.thumbnail_path == "images/B.info/B_thumbnail.png"

    @pytest.mark.asyncio
    async def test_deleted_cover_falls_back_to_first_item(self, covers, session_maker, library_id):
        """Test that a deleted cover falls back to the first live item by order."""
        await add_folder_with_items(
            session_maker, library_id, cover_item_id="C",
            items=[("A", "2", False), ("B", "1", True), ("C", "0", True)],
        )

        cover = await covers.get_cover(library_id, "F1")

        assert cover.item_id == "A"

    @pytest.mark.asyncio
    async def test_empty_folder(self, covers, session_maker, library_id):
        """Test that a folder without items has an empty cover."""
        await add_folder_with_items(session_maker, library_id)

        cover = await covers.get_cover(library_id, "F1")

        assert cover.is_empty

    @pytest.mark.asyncio
    async def test_cover_cached_until_stale(self, covers, session_maker, library_id):
        """Test that covers are computed once until invalidated."""
        await add_folder_with_items(session_maker, library_id, items=[("A", "1", False)])

        await covers.get_cover(library_id, "F1")
        await covers.get_cover(library_id, "F1")
        assert covers.cache.computations == 1

        await covers.cache.mark_stale_prefix(FOLDER_COVER_PREFIX, CoverImageState)
        await covers.get_cover(library_id, "F1")
        assert covers.cache.computations == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ascending,expected", [(False, "HIGH"), (True, "LOW")])
    async def test_rating_sort_orders_fallback(self, covers, session_maker, library_id, ascending, expected):
        """Test that the fallback cover follows the folder's rating sort."""
        await add_folder(
            session_maker, library_id, "F", sort_type=FolderItemSortType.RATING, sort_ascending=ascending
        )
        await add_item(session_maker, library_id, "F", "LOW", order_value="1", star=1)
        await add_item(session_maker, library_id, "F", "HIGH", order_value="2", star=5)

        cover = await covers.get_cover(library_id, "F")

        assert cover.item_id == expected

    @pytest.mark.asyncio
    async def test_manual_sort_puts_highest_order_value_first(self, covers, session_maker, library_id):
        await add_folder(session_maker, library_id, "F", sort_type=FolderItemSortType.MANUAL)
        await add_item(session_maker, library_id, "F", "A", order_value="1")
        await add_item(session_maker, library_id, "F", "B", order_value="2")

        assert (await covers.get_cover(library_id, "F")).item_id == "B"

    @pytest.mark.asyncio
    async def test_global_sort_change_recomputes_cover(
        self, covers, session_maker, library_id, broadcaster
    ):
        """Test that folders sorted as global follow a change of the global sort."""
        await add_folder(session_maker, library_id, "F")
        await add_item(session_maker, library_id, "F", "OLD", modification_time=100, name_for_sort="a")
        await add_item(session_maker, library_id, "F", "NEW", modification_time=200, name_for_sort="z")
        preferences = PreferencesService(session_maker, broadcaster)

        # Date added, newest first
        assert (await covers.get_cover(library_id, "F")).item_id == "NEW"

        async with broadcaster.subscribe() as queue:
            await preferences.set_global_sort(GlobalSortOption(type=GlobalSortType.TITLE))
            event = queue.get_nowait()
        await covers.cache.handle_event(event)

        assert (await covers.get_cover(library_id, "F")).item_id == "OLD"
        assert covers.cache.computations == 2

    @pytest.mark.asyncio
    async def test_folder_sort_override_wins_over_global(self, covers, session_maker, library_id):
        await add_folder(
            session_maker, library_id, "F", sort_type=FolderItemSortType.TITLE, sort_ascending=False
        )
        await add_item(session_maker, library_id, "F", "A", modification_time=200, name_for_sort="a")
        await add_item(session_maker, library_id, "F", "Z", modification_time=100, name_for_sort="z")

        assert (await covers.get_cover(library_id, "F")).item_id == "Z"

    @pytest.mark.asyncio
    async def test_empty_folder_uses_child_before_grandchild(self, covers, session_maker, library_id):
        """Test that a folder without items borrows the nearest descendant's item."""
        await add_folder(session_maker, library_id, "P")
        await add_folder(session_maker, library_id, "C", parent_id="P")
        await add_folder(session_maker, library_id, "G", parent_id="C")
        await add_item(session_maker, library_id, "G", "DEEP", modification_time=999)
        await add_item(session_maker, library_id, "C", "NEAR", modification_time=1)

        assert (await covers.get_cover(library_id, "P")).item_id == "NEAR"

    @pytest.mark.asyncio
    async def test_grandchild_item_used_when_children_empty(self, covers, session_maker, library_id):
        await add_folder(session_maker, library_id, "P")
        await add_folder(session_maker, library_id, "C", parent_id="P")
        await add_folder(session_maker, library_id, "G", parent_id="C")
        await add_item(session_maker, library_id, "G", "DEEP")

        assert (await covers.get_cover(library_id, "P")).item_id == "DEEP"

    @pytest.mark.asyncio
    async def test_descendants_beyond_grandchildren_ignored(self, covers, session_maker, library_id):
        """Test that the descendant search stops at grandchildren."""
        await add_folder(session_maker, library_id, "P")
        await add_folder(session_maker, library_id, "C", parent_id="P")
        await add_folder(session_maker, library_id, "G", parent_id="C")
        await add_folder(session_maker, library_id, "GG", parent_id="G")
        await add_item(session_maker, library_id, "GG", "TOO_DEEP")

        assert (await covers.get_cover(library_id, "P")).is_empty
