"""Backend-agnostic source entity.

A SourceEntity is a handle on one file or folder inside a storage backend.
The importer only talks to this interface, so a library behaves the same
whether it lives on disk, in Google Drive or in OneDrive.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

import aiofiles.os

from libmirror.core.exceptions import NotFoundError
from libmirror.core.logging import get_logger

logger = get_logger(__name__)

PARTIAL_SUFFIX = ".part"


class SourceEntity(ABC):
    """A file or folder inside a storage backend."""

    def __init__(self, name: str, is_folder: bool):
        self.name = name
        self.is_folder = is_folder

    def __repr__(self) -> str:
        kind = "folder" if self.is_folder else "file"
        return f"<{type(self).__name__} {kind} {self.name!r}>"

    async def resolve(self, path: str, is_folder: bool = False) -> SourceEntity:
        """Resolve a descendant by a '/'-separated relative path.

        Every intermediate segment is looked up as a folder; ``is_folder``
        applies to the last segment only.

        Args:
            path: Relative path such as ``images/abc.info/metadata.json``.
            is_folder: Whether the final segment is a folder.

        Returns:
            The entity for the final segment.

        Raises:
            NotFoundError: If any segment does not exist at its level.
        """
        segments = [segment for segment in path.split("/") if segment]
        entity: SourceEntity = self
        for index, segment in enumerate(segments):
            last = index == len(segments) - 1
            entity = await entity.resolve_child(segment, is_folder if last else True)
        return entity

    async def try_resolve(self, path: str, is_folder: bool = False) -> SourceEntity | None:
        """Resolve a descendant, returning None when it does not exist."""
        try:
            return await self.resolve(path, is_folder)
        except NotFoundError:
            return None

    @abstractmethod
    async def resolve_child(self, name: str, is_folder: bool) -> SourceEntity:
        """Look up a direct child of this folder by name."""

    @abstractmethod
    async def read(self) -> bytes:
        """Return the full contents of this file."""

    @abstractmethod
    async def list(self) -> list[tuple[str, SourceEntity]]:
        """Return every direct child of this folder as (name, entity) pairs."""

    @abstractmethod
    async def copy_to(self, dest: Path) -> None:
        """Copy this file to a local path, replacing any existing file.

        Parent directories are created. Partial output is removed if the
        copy fails or is cancelled.
        """


@asynccontextmanager
async def atomic_destination(dest: Path) -> AsyncGenerator[Path, None]:
    """Yield a temporary path that replaces ``dest`` on success.

    The temporary file is removed on any failure, including cancellation.
    """
    await aiofiles.os.makedirs(dest.parent, exist_ok=True)
    partial = dest.with_name(dest.name + PARTIAL_SUFFIX)
    try:
        yield partial
        await aiofiles.os.replace(partial, dest)
    except BaseException:
        try:
            await aiofiles.os.remove(partial)
        except FileNotFoundError:
            pass
        logger.debug("partial_copy_removed", dest=str(dest))
        raise
