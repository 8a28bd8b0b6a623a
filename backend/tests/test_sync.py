"""Tests for SyncController and AssetDownloader."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from libmirror.core.exceptions import NotFoundError
from libmirror.db.models import ImportStatus
from libmirror.services.asset_downloader import AssetDownloader
from libmirror.services.events import EventBroadcaster, EventType
from libmirror.services.library import LibraryNotFound
from libmirror.services.local_storage import LocalAssetStorage
from libmirror.services.sync import SyncController
from libmirror.sources.base import SourceEntity, atomic_destination
from libmirror.sources.descriptors import LocalSourceDescriptor
from libmirror.sources.factory import SourceContext


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def broadcaster():
    return EventBroadcaster()


@pytest.fixture
async def controller(session_maker, tmp_path, broadcaster):
    """Create a SyncController on the test database."""
    controller = SyncController(
        session_maker=session_maker,
        source_context=SourceContext(),
        storage=LocalAssetStorage(tmp_path / "storage"),
        broadcaster=broadcaster,
    )
    yield controller
    await controller.shutdown()


@pytest.fixture
def simple_library(library_builder):
    library_builder.write_folders([{"id": "F1", "name": "Top"}], modification_time=10)
    library_builder.add_item("A", folders=["F1"], modification_time=100)
    library_builder.write_mtimes({"A": 100})
    return library_builder


async def create_library(controller, path: Path, use_local_storage: bool = False):
    return await controller.libraries.create(
        "Test", LocalSourceDescriptor(path=str(path)), use_local_storage=use_local_storage
    )


# =============================================================================
# SyncController
# =============================================================================


class TestSyncControllerSingleton:
    """Tests for SyncController singleton behavior."""

    def test_get_instance_returns_same_instance(self):
        """Test that get_instance returns the same instance."""
        SyncController.reset_instance()
        instance1 = SyncController.get_instance()
        instance2 = SyncController.get_instance()
        assert instance1 is instance2
        SyncController.reset_instance()

    def test_reset_instance_creates_new_instance(self):
        """Test that reset_instance allows creating a new instance."""
        SyncController.reset_instance()
        instance1 = SyncController.get_instance()
        SyncController.reset_instance()
        instance2 = SyncController.get_instance()
        assert instance1 is not instance2
        SyncController.reset_instance()


class TestSyncSessions:
    """Tests for running sync sessions."""

    @pytest.mark.asyncio
    async def test_successful_sync(self, controller, simple_library, broadcaster):
        """Test that a sync imports the library and records success."""
        library = await create_library(controller, simple_library.root)

        async with broadcaster.subscribe() as queue:
            state = await controller.start_sync(library.id)
            await controller.wait(library.id)

            events = []
            while not queue.empty():
                events.append(queue.get_nowait())

        assert state.status == ImportStatus.SUCCESS
        assert state.is_importing is False
        assert state.stats.items_imported == 1
        assert state.progress == pytest.approx(1.0)

        library = await controller.libraries.get(library.id)
        assert library.last_import_status == ImportStatus.SUCCESS
        assert library.last_imported_item_mtime == 100

        progress = [e for e in events if e.type == EventType.IMPORT_PROGRESS_CHANGED]
        assert progress
        assert progress[-1].payload["is_importing"] is False

    @pytest.mark.asyncio
    async def test_failed_sync_records_failure(self, controller, tmp_path):
        """Test that a missing library root ends the sync as failed."""
        library = await create_library(controller, tmp_path / "missing.library")

        state = await controller.start_sync(library.id)
        await controller.wait(library.id)

        assert state.status == ImportStatus.FAILED
        assert state.error
        library = await controller.libraries.get(library.id)
        assert library.last_import_status == ImportStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, controller, simple_library):
        """Test that a sync cancelled before its first checkpoint writes nothing."""
        library = await create_library(controller, simple_library.root)

        state = await controller.start_sync(library.id)
        assert await controller.cancel_sync(library.id) is True
        await controller.wait(library.id)

        assert state.status == ImportStatus.CANCELLED
        library = await controller.libraries.get(library.id)
        assert library.last_import_status == ImportStatus.CANCELLED
        assert library.last_imported_item_mtime == 0

    @pytest.mark.asyncio
    async def test_new_sync_supersedes_running_one(self, controller, simple_library):
        """Test that starting a sync cancels the running session and replaces it."""
        library = await create_library(controller, simple_library.root)

        first = await controller.start_sync(library.id)
        second = await controller.start_sync(library.id)
        await controller.wait(library.id)
        await asyncio.gather(first.task, return_exceptions=True)

        assert first.status == ImportStatus.CANCELLED
        assert second.status == ImportStatus.SUCCESS
        assert controller.get_state(library.id) is second

    @pytest.mark.asyncio
    async def test_full_sync_resets_cursors(self, controller, simple_library):
        """Test that a full sync reprocesses every item."""
        library = await create_library(controller, simple_library.root)
        await controller.start_sync(library.id)
        await controller.wait(library.id)

        state = await controller.start_sync(library.id, full=True)
        await controller.wait(library.id)

        assert state.stats.items_imported == 1
        assert state.stats.folders_skipped is False

    @pytest.mark.asyncio
    async def test_start_sync_unknown_library(self, controller):
        with pytest.raises(LibraryNotFound):
            await controller.start_sync(12345)

    @pytest.mark.asyncio
    async def test_cancel_without_session(self, controller):
        assert await controller.cancel_sync(1) is False

    @pytest.mark.asyncio
    async def test_local_storage_copies_assets(self, controller, simple_library):
        """Test that libraries with local storage get image copies during sync."""
        library = await create_library(controller, simple_library.root, use_local_storage=True)

        await controller.start_sync(library.id)
        state = await controller.wait(library.id)

        assert state.status == ImportStatus.SUCCESS
        assert controller.storage.exists(library.id, "images/A.info/photo.jpg")

    @pytest.mark.asyncio
    async def test_activate_broadcasts_library_change(self, controller, simple_library, broadcaster):
        """Test that activating a library announces the switch first."""
        library = await create_library(controller, simple_library.root)

        async with broadcaster.subscribe() as queue:
            session = await controller.activate(library.id)
            event = queue.get_nowait()

        assert event.type == EventType.LIBRARY_WILL_CHANGE
        assert session.library_id == library.id
        assert controller.active is session


# =============================================================================
# AssetDownloader
# =============================================================================


class FakeSource:
    """In-memory file tree whose copies wait on a gate."""

    def __init__(self, files: dict[str, bytes]):
        self.files = files
        self.gate = asyncio.Event()
        self.copies = 0

    def root(self) -> GatedEntity:
        return GatedEntity(self, "", True)


class GatedEntity(SourceEntity):
    def __init__(self, source: FakeSource, path: str, is_folder: bool):
        super().__init__(path.rsplit("/", 1)[-1], is_folder)
        self.source = source
        self.path = path

    async def resolve_child(self, name: str, is_folder: bool) -> SourceEntity:
        path = f"{self.path}/{name}" if self.path else name
        if is_folder:
            if not any(key.startswith(f"{path}/") for key in self.source.files):
                raise NotFoundError(path)
        elif path not in self.source.files:
            raise NotFoundError(path)
        return GatedEntity(self.source, path, is_folder)

    async def read(self) -> bytes:
        return self.source.files[self.path]

    async def list(self):
        return []

    async def copy_to(self, dest: Path) -> None:
        self.source.copies += 1
        await self.source.gate.wait()
        async with atomic_destination(dest) as partial:
            partial.write_bytes(self.source.files[self.path])


class TestAssetDownloader:
    """Tests for on-demand asset downloads."""

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_download(self, tmp_path):
        """Test that simultaneous requests for one asset download it once."""
        downloader = AssetDownloader(LocalAssetStorage(tmp_path))
        source = FakeSource({"images/A.info/a.jpg": b"jpg"})
        root = source.root()

        tasks = [
            asyncio.create_task(downloader.fetch(1, root, "images/A.info/a.jpg")) for _ in range(3)
        ]
        for _ in range(100):
            if source.copies:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        assert downloader.in_flight == 1
        source.gate.set()
        paths = await asyncio.gather(*tasks)

        assert len(set(paths)) == 1
        assert paths[0].read_bytes() == b"jpg"
        assert source.copies == 1
        assert downloader.downloads_started == 1
        assert downloader.in_flight == 0

    @pytest.mark.asyncio
    async def test_existing_file_served_without_download(self, tmp_path):
        storage = LocalAssetStorage(tmp_path)
        existing = storage.path_for(1, "images/A.info/a.jpg")
        existing.parent.mkdir(parents=True)
        existing.write_bytes(b"local")
        downloader = AssetDownloader(storage)

        path = await downloader.fetch(1, FakeSource({}).root(), "images/A.info/a.jpg")

        assert path == existing
        assert downloader.downloads_started == 0

    @pytest.mark.asyncio
    async def test_missing_asset_returns_none(self, tmp_path):
        downloader = AssetDownloader(LocalAssetStorage(tmp_path))

        assert await downloader.fetch(1, FakeSource({}).root(), "images/X.info/x.jpg") is None

    @pytest.mark.asyncio
    async def test_path_escape_rejected(self, tmp_path):
        downloader = AssetDownloader(LocalAssetStorage(tmp_path))

        with pytest.raises(ValueError):
            await downloader.fetch(1, FakeSource({}).root(), "../../etc/passwd")
