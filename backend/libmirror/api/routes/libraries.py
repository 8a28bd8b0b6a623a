"""Library, folder and asset API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from libmirror.api.deps import get_folder_cover_service, get_sync_controller
from libmirror.core.exceptions import CredentialError, SourceError
from libmirror.core.logging import get_logger
from libmirror.db import get_db
from libmirror.db.models import Folder, Library
from libmirror.schemas.library import (
    ActivateResponse,
    FolderCoverResponse,
    FolderResponse,
    FolderSortUpdate,
    LibraryCreate,
    LibraryList,
    LibraryResponse,
    LibraryUpdate,
)
from libmirror.services.folder_cover import FolderCoverService
from libmirror.services.library import FolderNotFound, LibraryNotFound
from libmirror.services.sync import SyncController

logger = get_logger(__name__)

router = APIRouter(prefix="/libraries", tags=["libraries"])


# =============================================================================
# Helper Functions
# =============================================================================


async def _get_library_or_404(controller: SyncController, library_id: int) -> Library:
    """Get a library by ID or raise 404."""
    try:
        return await controller.libraries.get(library_id)
    except LibraryNotFound:
        raise HTTPException(status_code=404, detail="Library not found")


# =============================================================================
# Libraries
# =============================================================================


@router.get("", response_model=LibraryList)
async def list_libraries(
    controller: SyncController = Depends(get_sync_controller),
) -> LibraryList:
    """List libraries in display order."""
    libraries = await controller.libraries.list()
    return LibraryList(
        items=[LibraryResponse.model_validate(library) for library in libraries],
        total=len(libraries),
    )


@router.post("", response_model=LibraryResponse, status_code=201)
async def create_library(
    data: LibraryCreate,
    controller: SyncController = Depends(get_sync_controller),
) -> LibraryResponse:
    """Create a library. Its first sync must be started separately."""
    library = await controller.libraries.create(
        name=data.name,
        source=data.source,
        use_local_storage=data.use_local_storage,
    )
    return LibraryResponse.model_validate(library)


@router.get("/{library_id}", response_model=LibraryResponse)
async def get_library(
    library_id: int,
    controller: SyncController = Depends(get_sync_controller),
) -> LibraryResponse:
    """Get a library."""
    return LibraryResponse.model_validate(await _get_library_or_404(controller, library_id))


@router.patch("/{library_id}", response_model=LibraryResponse)
async def update_library(
    library_id: int,
    data: LibraryUpdate,
    controller: SyncController = Depends(get_sync_controller),
) -> LibraryResponse:
    """Update a library. Changing the source resets its sync cursors."""
    try:
        library = await controller.libraries.update_source(
            library_id,
            source=data.source,
            name=data.name,
            use_local_storage=data.use_local_storage,
        )
    except LibraryNotFound:
        raise HTTPException(status_code=404, detail="Library not found")
    return LibraryResponse.model_validate(library)


@router.delete("/{library_id}", status_code=204)
async def delete_library(
    library_id: int,
    controller: SyncController = Depends(get_sync_controller),
) -> None:
    """Delete a library with all mirrored rows and local asset copies."""
    await controller.cancel_sync(library_id)
    await controller.wait(library_id)
    try:
        await controller.libraries.delete(library_id)
    except LibraryNotFound:
        raise HTTPException(status_code=404, detail="Library not found")


@router.post("/{library_id}/activate", response_model=ActivateResponse)
async def activate_library(
    library_id: int,
    controller: SyncController = Depends(get_sync_controller),
) -> ActivateResponse:
    """Make a library the active one."""
    try:
        session = await controller.activate(library_id)
    except LibraryNotFound:
        raise HTTPException(status_code=404, detail="Library not found")
    except CredentialError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return ActivateResponse(library_id=session.library_id, name=session.name)


# =============================================================================
# Folders
# =============================================================================


@router.get("/{library_id}/folders", response_model=list[FolderResponse])
async def list_folders(
    library_id: int,
    parent_id: str | None = None,
    db: AsyncSession = Depends(get_db),
) -> list[FolderResponse]:
    """List folders with the given parent (top-level folders by default)."""
    query = select(Folder).where(Folder.library_id == library_id)
    if parent_id is None:
        query = query.where(Folder.parent_id.is_(None))
    else:
        query = query.where(Folder.parent_id == parent_id)
    result = await db.execute(query.order_by(Folder.manual_order))
    return [FolderResponse.model_validate(folder) for folder in result.scalars()]


@router.patch("/{library_id}/folders/{folder_id}/sort", response_model=FolderResponse)
async def update_folder_sort(
    library_id: int,
    folder_id: str,
    data: FolderSortUpdate,
    controller: SyncController = Depends(get_sync_controller),
) -> FolderResponse:
    """Override a folder's sort preference. Later imports keep the override."""
    try:
        folder = await controller.libraries.update_folder_sort(
            library_id, folder_id, data.sort_type, data.ascending
        )
    except FolderNotFound:
        raise HTTPException(status_code=404, detail="Folder not found")
    return FolderResponse.model_validate(folder)


@router.get("/{library_id}/folders/{folder_id}/cover", response_model=FolderCoverResponse)
async def get_folder_cover(
    library_id: int,
    folder_id: str,
    covers: FolderCoverService = Depends(get_folder_cover_service),
) -> FolderCoverResponse:
    """Get the item representing a folder."""
    cover = await covers.get_cover(library_id, folder_id)
    return FolderCoverResponse(
        folder_id=folder_id,
        item_id=cover.item_id,
        thumbnail_path=cover.thumbnail_path,
    )


# =============================================================================
# Assets
# =============================================================================


@router.get("/{library_id}/assets/{asset_path:path}")
async def get_asset(
    library_id: int,
    asset_path: str,
    controller: SyncController = Depends(get_sync_controller),
) -> FileResponse:
    """Serve an image or thumbnail, downloading it from the source on first access."""
    library = await _get_library_or_404(controller, library_id)
    try:
        root = controller.open_root(library)
        path = await controller.downloader.fetch(library_id, root, asset_path)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid asset path")
    except SourceError as e:
        logger.warning("asset_fetch_failed", library_id=library_id, path=asset_path, error=e.message)
        raise HTTPException(status_code=502, detail=e.message)

    if path is None:
        raise HTTPException(status_code=404, detail="Asset not found")
    return FileResponse(path)
