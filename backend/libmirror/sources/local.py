"""Local filesystem source with cloud placeholder support.

Libraries kept in a cloud-synced folder (iCloud Drive in particular) may
contain files whose bytes have not been downloaded yet. Such a file shows
up as a hidden placeholder stub next to where the real file will appear.
Existence checks accept the placeholder and never trigger a download;
reading or copying requests the download and waits for the real file.
"""

from __future__ import annotations

import asyncio
import math
from pathlib import Path
from typing import Awaitable, Callable

import aiofiles
import aiofiles.os

from libmirror.core.config import settings
from libmirror.core.exceptions import MaterializationTimeoutError, NotFoundError, SourceError
from libmirror.core.logging import get_logger
from libmirror.sources.base import SourceEntity, atomic_destination

logger = get_logger(__name__)

COPY_CHUNK_SIZE = 1024 * 1024


class PlaceholderProvider:
    """iCloud Drive placeholder conventions.

    A file ``name`` that is not downloaded is represented by ``.name.icloud``
    in the same directory. Downloads are requested through ``brctl``.
    """

    PREFIX = "."
    SUFFIX = ".icloud"

    def placeholder_path(self, path: Path) -> Path:
        """Get the placeholder path for a real file path."""
        return path.with_name(f"{self.PREFIX}{path.name}{self.SUFFIX}")

    def real_name(self, entry_name: str) -> str | None:
        """Get the real file name for a placeholder entry, or None."""
        if (
            entry_name.startswith(self.PREFIX)
            and entry_name.endswith(self.SUFFIX)
            and len(entry_name) > len(self.PREFIX) + len(self.SUFFIX)
        ):
            return entry_name[len(self.PREFIX):-len(self.SUFFIX)]
        return None

    async def request_download(self, path: Path) -> None:
        """Ask the sync daemon to download ``path``."""
        try:
            process = await asyncio.create_subprocess_exec(
                "brctl",
                "download",
                str(path),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise SourceError(f"Cannot request download of {path}: brctl not available") from e

        _, stderr = await process.communicate()
        if process.returncode != 0:
            raise SourceError(
                f"Download request for {path} failed: {stderr.decode(errors='replace').strip()}"
            )
        logger.debug("placeholder_download_requested", path=str(path))


class LocalSourceEntity(SourceEntity):
    """File or folder on the local filesystem."""

    def __init__(
        self,
        path: Path,
        is_folder: bool = True,
        placeholders: PlaceholderProvider | None = None,
        timeout: float | None = None,
        poll_interval: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(path.name, is_folder)
        self.path = path
        self.placeholders = placeholders or PlaceholderProvider()
        self.timeout = settings.materialization_timeout if timeout is None else timeout
        self.poll_interval = (
            settings.materialization_poll_interval if poll_interval is None else poll_interval
        )
        self._sleep = sleep

    def _child(self, path: Path, is_folder: bool) -> LocalSourceEntity:
        return LocalSourceEntity(
            path,
            is_folder=is_folder,
            placeholders=self.placeholders,
            timeout=self.timeout,
            poll_interval=self.poll_interval,
            sleep=self._sleep,
        )

    # ========== Resolution ==========

    async def resolve_child(self, name: str, is_folder: bool) -> LocalSourceEntity:
        child = self.path / name
        if is_folder:
            if not await aiofiles.os.path.isdir(child):
                raise NotFoundError(f"Folder not found: {child}")
        elif not await self._file_present(child):
            raise NotFoundError(f"File not found: {child}")
        return self._child(child, is_folder)

    async def _file_present(self, path: Path) -> bool:
        if await aiofiles.os.path.isfile(path):
            return True
        return await aiofiles.os.path.exists(self.placeholders.placeholder_path(path))

    # ========== Materialization ==========

    async def ensure_materialized(self, timeout: float | None = None) -> None:
        """Make sure the real file exists locally, downloading it if needed.

        Args:
            timeout: Seconds to wait for a download, defaults to the entity's.

        Raises:
            NotFoundError: If neither the file nor a placeholder exists.
            MaterializationTimeoutError: If the download does not finish in time.
        """
        if await aiofiles.os.path.isfile(self.path):
            return

        placeholder = self.placeholders.placeholder_path(self.path)
        if not await aiofiles.os.path.exists(placeholder):
            raise NotFoundError(f"File not found: {self.path}")

        await self.placeholders.request_download(self.path)

        wait = self.timeout if timeout is None else timeout
        polls = max(1, math.ceil(wait / self.poll_interval))
        for _ in range(polls):
            await self._sleep(self.poll_interval)
            if await aiofiles.os.path.isfile(self.path):
                logger.debug("placeholder_materialized", path=str(self.path))
                return

        raise MaterializationTimeoutError(
            f"Timed out after {wait:.0f}s waiting for {self.path} to download"
        )

    # ========== Operations ==========

    async def read(self) -> bytes:
        await self.ensure_materialized()
        async with aiofiles.open(self.path, "rb") as f:
            return await f.read()

    async def list(self) -> list[tuple[str, SourceEntity]]:
        try:
            entries = await aiofiles.os.listdir(self.path)
        except FileNotFoundError as e:
            raise NotFoundError(f"Folder not found: {self.path}") from e

        children: list[tuple[str, SourceEntity]] = []
        seen: set[str] = set()
        for entry in sorted(entries):
            real = self.placeholders.real_name(entry)
            if real is not None:
                # Placeholder for a file that is not downloaded yet
                if real not in seen:
                    seen.add(real)
                    children.append((real, self._child(self.path / real, False)))
                continue
            if entry in seen:
                continue
            seen.add(entry)
            entry_path = self.path / entry
            is_folder = await aiofiles.os.path.isdir(entry_path)
            children.append((entry, self._child(entry_path, is_folder)))
        return children

    async def copy_to(self, dest: Path) -> None:
        await self.ensure_materialized()
        async with atomic_destination(dest) as partial:
            async with aiofiles.open(self.path, "rb") as src, aiofiles.open(partial, "wb") as out:
                while True:
                    chunk = await src.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    await out.write(chunk)
