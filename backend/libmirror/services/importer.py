"""Incremental metadata importer.

Mirrors a library's folder tree and item metadata into the database.

Phases:
- FolderSync: rebuild folders from ``metadata.json`` when it is newer than
  the stored folder cursor (one transaction)
- ItemSync: import items whose modification time is newer than the item
  cursor, in batches, one transaction per batch
- DeletionSweep: remove items no longer present in the library and settle
  the item cursor (one transaction)

The item cursor is committed together with each batch, so an interrupted
import resumes after the last committed batch.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Awaitable, Callable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from libmirror.core.config import settings
from libmirror.core.logging import get_logger
from libmirror.db.models import Folder, FolderItem, Item, Library
from libmirror.services.cancellation import CancellationToken
from libmirror.services.library import LibraryNotFound
from libmirror.services.local_storage import LocalAssetStorage
from libmirror.services.manifests import (
    SENTINEL_TIMESTAMP,
    FolderManifest,
    FolderNode,
    ItemMetadata,
    ItemTimeManifest,
    name_for_sort,
    parse_folder_manifest,
    parse_item_metadata,
)
from libmirror.sources.base import SourceEntity

logger = get_logger(__name__)

ProgressCallback = Callable[[float], "Awaitable[None] | None"]

FOLDER_MANIFEST = "metadata.json"
ITEM_TIME_MANIFEST = "mtime.json"
IMAGES_DIR = "images"
INFO_SUFFIX = ".info"

# Share of overall progress given to FolderSync
FOLDER_PHASE_WEIGHT = 0.1
# ItemSync reports up to this fraction, leaving the rest to the sweep
ITEM_PHASE_CEILING = 0.95

# Keep IN (...) lists below SQLite's bound-parameter limit
DELETE_CHUNK_SIZE = 500


@dataclass
class ImportStats:
    """Counters for one import run."""

    folders_skipped: bool = False
    folders_upserted: int = 0
    folders_deleted: int = 0
    items_discovered: int = 0
    items_imported: int = 0
    items_deleted: int = 0
    batches_committed: int = 0
    associations_skipped: int = 0


class MetadataImporter:
    """Imports one library's metadata from its source into the database."""

    def __init__(
        self,
        library_id: int,
        root: SourceEntity,
        session_maker: async_sessionmaker[AsyncSession],
        asset_storage: LocalAssetStorage | None = None,
        token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
        batch_size: int | None = None,
    ):
        """Initialize the importer.

        Args:
            library_id: Library whose rows are written.
            root: Root folder entity of the library at its source.
            session_maker: Session factory; each transaction opens its own session.
            asset_storage: When set, images and thumbnails are copied locally.
            token: Cancellation token checked between phases and batches.
            on_progress: Called with overall progress in [0, 1].
            batch_size: Items per batch, defaults to settings.
        """
        self.library_id = library_id
        self.root = root
        self.session_maker = session_maker
        self.asset_storage = asset_storage
        self.token = token or CancellationToken()
        self.on_progress = on_progress
        self.batch_size = batch_size or settings.sync_batch_size
        self.stats = ImportStats()
        self._images: SourceEntity | None = None
        self._progress_offset = 0.0
        self._progress_scale = 1.0

    # ========== Entry Point ==========

    async def import_all(self) -> ImportStats:
        """Run FolderSync then ItemSync.

        Raises:
            SyncCancelledError: If cancelled at a checkpoint.
        """
        self._progress_offset, self._progress_scale = 0.0, FOLDER_PHASE_WEIGHT
        await self.import_folders()
        await self._report(1.0)
        self.token.raise_if_cancelled()

        self._progress_offset, self._progress_scale = FOLDER_PHASE_WEIGHT, 1.0 - FOLDER_PHASE_WEIGHT
        await self.import_items()
        return self.stats

    async def _report(self, fraction: float) -> None:
        if self.on_progress is None:
            return
        result = self.on_progress(self._progress_offset + fraction * self._progress_scale)
        if inspect.isawaitable(result):
            await result

    async def _get_library(self, session: AsyncSession) -> Library:
        library = await session.get(Library, self.library_id)
        if library is None:
            raise LibraryNotFound(self.library_id)
        return library

    # ========== FolderSync ==========

    async def import_folders(self) -> None:
        """Rebuild the folder table from the folder manifest if it changed."""
        manifest = parse_folder_manifest(await self._read(FOLDER_MANIFEST))

        async with self.session_maker() as session:
            library = await self._get_library(session)
            if manifest.modification_time <= library.last_imported_folder_mtime:
                self.stats.folders_skipped = True
                logger.info(
                    "folder_sync_skipped",
                    library_id=self.library_id,
                    manifest_mtime=manifest.modification_time,
                    cursor=library.last_imported_folder_mtime,
                )
                return

            result = await session.execute(
                select(Folder).where(Folder.library_id == self.library_id)
            )
            existing = {folder.folder_id: folder for folder in result.scalars()}
            seen = self._apply_folder_tree(session, manifest, existing)

            removed = [folder_id for folder_id in existing if folder_id not in seen]
            for chunk in _chunks(removed, DELETE_CHUNK_SIZE):
                await session.execute(
                    delete(FolderItem).where(
                        FolderItem.library_id == self.library_id,
                        FolderItem.folder_id.in_(chunk),
                    )
                )
                await session.execute(
                    delete(Folder).where(
                        Folder.library_id == self.library_id,
                        Folder.folder_id.in_(chunk),
                    )
                )

            library.last_imported_folder_mtime = manifest.modification_time
            await session.commit()

        self.stats.folders_upserted = len(seen)
        self.stats.folders_deleted = len(removed)
        logger.info(
            "folder_sync_complete",
            library_id=self.library_id,
            folders=len(seen),
            deleted=len(removed),
            cursor=manifest.modification_time,
        )

    def _apply_folder_tree(
        self,
        session: AsyncSession,
        manifest: FolderManifest,
        existing: dict[str, Folder],
    ) -> set[str]:
        """Upsert folders in depth-first order and return the ids written."""
        seen: set[str] = set()
        manual_order = 0
        stack: list[tuple[FolderNode, str | None]] = [
            (node, None) for node in reversed(manifest.folders)
        ]

        while stack:
            node, parent_id = stack.pop()
            if not node.id:
                # Structural skip: the node and its subtree are ignored
                logger.warning("folder_without_id_skipped", library_id=self.library_id, name=node.name)
                continue
            if node.id in seen:
                logger.warning("duplicate_folder_skipped", library_id=self.library_id, folder_id=node.id)
                continue
            seen.add(node.id)

            folder = existing.get(node.id)
            if folder is None:
                folder = Folder(
                    library_id=self.library_id,
                    folder_id=node.id,
                    sort_type=node.sort_type,
                    sort_ascending=node.sort_ascending,
                    sort_modified=False,
                )
                session.add(folder)
            elif not folder.sort_modified:
                folder.sort_type = node.sort_type
                folder.sort_ascending = node.sort_ascending

            folder.parent_id = parent_id
            folder.name = node.name
            folder.name_for_sort = name_for_sort(node.name)
            folder.modification_time = node.modification_time
            folder.manual_order = manual_order
            folder.cover_item_id = node.cover_id or None
            manual_order += 1

            stack.extend((child, node.id) for child in reversed(node.children))

        return seen

    # ========== ItemSync ==========

    async def import_items(self) -> None:
        """Import changed items in batches, then run the deletion sweep."""
        manifest = ItemTimeManifest.parse(await self._read(ITEM_TIME_MANIFEST))

        async with self.session_maker() as session:
            library = await self._get_library(session)
            cursor = library.last_imported_item_mtime
            result = await session.execute(
                select(Item.item_id).where(Item.library_id == self.library_id)
            )
            known_ids = set(result.scalars())

        resolved = dict(manifest.times)
        if manifest.total != len(resolved):
            await self._merge_discovered_items(resolved, known_ids, manifest.total)

        candidates = sorted(
            (timestamp, item_id) for item_id, timestamp in resolved.items() if timestamp > cursor
        )
        logger.info(
            "item_sync_started",
            library_id=self.library_id,
            cursor=cursor,
            manifest_items=len(resolved),
            candidates=len(candidates),
        )

        processed = 0
        for batch in _chunks(candidates, self.batch_size):
            self.token.raise_if_cancelled()
            end = processed + len(batch)
            next_timestamp = candidates[end][0] if end < len(candidates) else None
            await self._import_batch(batch, next_timestamp)
            processed += len(batch)
            await self._report(processed / len(candidates) * ITEM_PHASE_CEILING)

        if not candidates:
            await self._report(ITEM_PHASE_CEILING)

        await self._sweep_deleted_items(resolved, items_updated=processed > 0)
        await self._report(1.0)

    async def _merge_discovered_items(
        self, resolved: dict[str, int], known_ids: set[str], declared_total: int
    ) -> None:
        """Add items found in the images directory but missing from the manifest.

        Known items get timestamp 0 so they are kept but not re-imported.
        Unknown items get the sentinel so they are imported this pass.
        """
        images = await self._get_images_folder()
        discovered = 0
        for name, entity in await images.list():
            if not entity.is_folder or not name.endswith(INFO_SUFFIX):
                continue
            item_id = name[: -len(INFO_SUFFIX)]
            if not item_id or item_id in resolved:
                continue
            if item_id in known_ids:
                resolved[item_id] = 0
            else:
                resolved[item_id] = SENTINEL_TIMESTAMP
                discovered += 1

        self.stats.items_discovered = discovered
        logger.info(
            "item_discovery_merged",
            library_id=self.library_id,
            declared_total=declared_total,
            resolved=len(resolved),
            new_items=discovered,
        )

    async def _import_batch(self, batch: list[tuple[int, str]], next_timestamp: int | None = None) -> None:
        # Any metadata failure aborts the batch before anything is written
        metadata = await asyncio.gather(
            *(self._fetch_item_metadata(item_id) for _, item_id in batch)
        )

        if self.asset_storage is not None:
            await asyncio.gather(*(self._copy_assets(item) for item in metadata))

        self.token.raise_if_cancelled()

        real_timestamps = [timestamp for timestamp, _ in batch if timestamp != SENTINEL_TIMESTAMP]
        batch_cursor = max(real_timestamps) if real_timestamps else None
        if batch_cursor is not None and batch_cursor == next_timestamp:
            # Items sharing this timestamp are still pending in the next batch
            batch_cursor -= 1
        await self._commit_batch(metadata, batch_cursor)

    async def _fetch_item_metadata(self, item_id: str) -> ItemMetadata:
        images = await self._get_images_folder()
        entity = await images.resolve(f"{item_id}{INFO_SUFFIX}/metadata.json")
        return parse_item_metadata(await entity.read(), item_id)

    async def _copy_assets(self, item: ItemMetadata) -> None:
        """Copy an item's image and, when present, its thumbnail."""
        images = await self._get_images_folder()
        info_dir = f"{item.id}{INFO_SUFFIX}"
        info = await images.resolve(info_dir, is_folder=True)
        relative_dir = f"{IMAGES_DIR}/{info_dir}"

        image = await info.resolve_child(item.image_name, False)
        copies = [
            image.copy_to(self.asset_storage.path_for(self.library_id, f"{relative_dir}/{item.image_name}"))
        ]

        if not item.no_thumbnail:
            thumbnail = await info.try_resolve(item.thumbnail_name)
            if thumbnail is None:
                logger.debug("thumbnail_missing", library_id=self.library_id, item_id=item.id)
            else:
                copies.append(
                    thumbnail.copy_to(
                        self.asset_storage.path_for(
                            self.library_id, f"{relative_dir}/{item.thumbnail_name}"
                        )
                    )
                )

        await asyncio.gather(*copies)

    async def _commit_batch(self, metadata: list[ItemMetadata], batch_cursor: int | None) -> None:
        item_ids = [item.id for item in metadata]

        async with self.session_maker() as session:
            library = await self._get_library(session)

            result = await session.execute(
                select(Folder.folder_id).where(Folder.library_id == self.library_id)
            )
            folder_ids = set(result.scalars())

            result = await session.execute(
                select(Item).where(Item.library_id == self.library_id, Item.item_id.in_(item_ids))
            )
            existing = {item.item_id: item for item in result.scalars()}

            for meta in metadata:
                row = existing.get(meta.id)
                if row is None:
                    row = Item(library_id=self.library_id, item_id=meta.id)
                    session.add(row)
                    existing[meta.id] = row
                _apply_item_metadata(row, meta)

            await session.execute(
                delete(FolderItem).where(
                    FolderItem.library_id == self.library_id,
                    FolderItem.item_id.in_(item_ids),
                )
            )
            # Items must exist before their associations are inserted
            await session.flush()

            for meta in metadata:
                for folder_id in dict.fromkeys(meta.folders):
                    if folder_id not in folder_ids:
                        self.stats.associations_skipped += 1
                        logger.debug(
                            "folder_item_unknown_folder",
                            library_id=self.library_id,
                            item_id=meta.id,
                            folder_id=folder_id,
                        )
                        continue
                    session.add(
                        FolderItem(
                            library_id=self.library_id,
                            folder_id=folder_id,
                            item_id=meta.id,
                            order_value=meta.order.get(folder_id, str(meta.modification_time)),
                        )
                    )

            if batch_cursor is not None and batch_cursor > library.last_imported_item_mtime:
                library.last_imported_item_mtime = batch_cursor

            await session.commit()

        self.stats.items_imported += len(metadata)
        self.stats.batches_committed += 1
        logger.info(
            "item_batch_committed",
            library_id=self.library_id,
            items=len(metadata),
            cursor=batch_cursor,
        )

    # ========== DeletionSweep ==========

    async def _sweep_deleted_items(self, resolved: dict[str, int], items_updated: bool) -> None:
        """Delete items missing from the library and settle the cursor."""
        async with self.session_maker() as session:
            library = await self._get_library(session)
            result = await session.execute(
                select(Item.item_id).where(Item.library_id == self.library_id)
            )
            stored_ids = set(result.scalars())

            if not items_updated and len(stored_ids) == len(resolved):
                return

            missing = [item_id for item_id in stored_ids if item_id not in resolved]
            for chunk in _chunks(missing, DELETE_CHUNK_SIZE):
                await session.execute(
                    delete(FolderItem).where(
                        FolderItem.library_id == self.library_id,
                        FolderItem.item_id.in_(chunk),
                    )
                )
                await session.execute(
                    delete(Item).where(
                        Item.library_id == self.library_id,
                        Item.item_id.in_(chunk),
                    )
                )

            real_timestamps = [ts for ts in resolved.values() if ts != SENTINEL_TIMESTAMP]
            if real_timestamps:
                library.last_imported_item_mtime = max(
                    library.last_imported_item_mtime, max(real_timestamps)
                )

            await session.commit()

        self.stats.items_deleted = len(missing)
        logger.info(
            "deletion_sweep_complete",
            library_id=self.library_id,
            deleted=len(missing),
        )

    # ========== Source Access ==========

    async def _read(self, path: str) -> bytes:
        entity = await self.root.resolve(path)
        return await entity.read()

    async def _get_images_folder(self) -> SourceEntity:
        if self._images is None:
            self._images = await self.root.resolve(IMAGES_DIR, is_folder=True)
        return self._images


def _apply_item_metadata(row: Item, meta: ItemMetadata) -> None:
    row.name = meta.name
    row.name_for_sort = name_for_sort(meta.name)
    row.ext = meta.ext
    row.size = meta.size
    row.btime = meta.btime
    row.mtime = meta.mtime
    row.modification_time = meta.modification_time
    row.last_modified = meta.last_modified
    row.height = meta.height
    row.width = meta.width
    row.duration = meta.duration
    row.is_deleted = meta.is_deleted
    row.no_thumbnail = meta.no_thumbnail
    row.star = meta.star
    row.tags = list(meta.tags)
    row.annotation = meta.annotation


def _chunks(values: list, size: int) -> list[list]:
    return [values[start:start + size] for start in range(0, len(values), size)]
