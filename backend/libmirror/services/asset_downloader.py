"""On-demand download of library assets into local storage.

Libraries that are not fully copied locally still need individual images
when they are viewed. Concurrent requests for the same asset share one
download.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiofiles.os

from libmirror.core.exceptions import NotFoundError
from libmirror.core.logging import get_logger
from libmirror.services.local_storage import LocalAssetStorage
from libmirror.sources.base import SourceEntity

logger = get_logger(__name__)


class AssetDownloader:
    """Fetches assets from a library's source on first access."""

    def __init__(self, storage: LocalAssetStorage | None = None):
        self.storage = storage or LocalAssetStorage()
        self._in_flight: dict[Path, asyncio.Task[Path | None]] = {}
        self.downloads_started = 0

    async def fetch(self, library_id: int, root: SourceEntity, relative_path: str) -> Path | None:
        """Get the local path of an asset, downloading it if needed.

        Args:
            library_id: Library owning the asset.
            root: Root entity of the library's source.
            relative_path: Asset path relative to the library root.

        Returns:
            The local path, or None if the asset does not exist at the source.
        """
        dest = self.storage.path_for(library_id, relative_path)
        if await aiofiles.os.path.isfile(dest):
            return dest

        task = self._in_flight.get(dest)
        if task is None:
            self.downloads_started += 1
            task = asyncio.create_task(self._download(root, relative_path, dest))
            self._in_flight[dest] = task
            task.add_done_callback(lambda _: self._in_flight.pop(dest, None))

        return await asyncio.shield(task)

    async def _download(self, root: SourceEntity, relative_path: str, dest: Path) -> Path | None:
        try:
            entity = await root.resolve(relative_path)
            await entity.copy_to(dest)
        except NotFoundError:
            logger.info("asset_not_found_at_source", path=relative_path)
            return None

        logger.debug("asset_downloaded", path=relative_path, dest=str(dest))
        return dest

    @property
    def in_flight(self) -> int:
        """Number of downloads currently running."""
        return len(self._in_flight)
