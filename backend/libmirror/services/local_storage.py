"""Per-library local copies of images and thumbnails."""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

from libmirror.core.config import settings
from libmirror.core.logging import get_logger

logger = get_logger(__name__)


class LocalAssetStorage:
    """Layout of ``<root>/<library_id>/<relative asset path>``."""

    def __init__(self, root: Path | None = None):
        self.root = root or settings.storage_path

    def library_dir(self, library_id: int) -> Path:
        """Get the storage directory of a library."""
        return self.root / str(library_id)

    def path_for(self, library_id: int, relative_path: str) -> Path:
        """Get the local path of an asset given its library-relative path.

        Raises:
            ValueError: If the relative path escapes the library directory.
        """
        base = self.library_dir(library_id).resolve()
        path = (base / relative_path).resolve()
        if not path.is_relative_to(base):
            raise ValueError(f"Asset path escapes library storage: {relative_path}")
        return path

    def exists(self, library_id: int, relative_path: str) -> bool:
        return self.path_for(library_id, relative_path).is_file()

    async def remove_library(self, library_id: int) -> bool:
        """Delete a library's storage directory.

        Returns:
            True if a directory was removed.
        """
        directory = self.library_dir(library_id)
        if not directory.exists():
            return False
        await asyncio.to_thread(shutil.rmtree, directory)
        logger.info("library_storage_removed", library_id=library_id, path=str(directory))
        return True
