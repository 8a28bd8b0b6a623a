"""Sync API endpoints."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException

from libmirror.api.deps import get_sync_controller
from libmirror.core.logging import get_logger
from libmirror.schemas.sync import SyncCancelResponse, SyncStartRequest, SyncStatusResponse
from libmirror.services.library import LibraryNotFound
from libmirror.services.sync import SyncController, SyncState

logger = get_logger(__name__)

router = APIRouter(prefix="/libraries/{library_id}/sync", tags=["sync"])


def _state_response(state: SyncState) -> SyncStatusResponse:
    return SyncStatusResponse(
        library_id=state.library_id,
        is_importing=state.is_importing,
        progress=state.progress,
        status=state.status,
        error=state.error,
        started_at=state.started_at,
        finished_at=state.finished_at,
        stats=asdict(state.stats) if state.stats is not None else None,
    )


@router.post("", response_model=SyncStatusResponse, status_code=202)
async def start_sync(
    library_id: int,
    data: SyncStartRequest | None = None,
    controller: SyncController = Depends(get_sync_controller),
) -> SyncStatusResponse:
    """Start a sync, superseding one already running for this library."""
    full = data.full if data is not None else False
    try:
        state = await controller.start_sync(library_id, full=full)
    except LibraryNotFound:
        raise HTTPException(status_code=404, detail="Library not found")
    return _state_response(state)


@router.get("", response_model=SyncStatusResponse)
async def get_sync_status(
    library_id: int,
    controller: SyncController = Depends(get_sync_controller),
) -> SyncStatusResponse:
    """Get the state of the library's sync.

    Without a session in this process, the persisted last status is reported.
    """
    state = controller.get_state(library_id)
    if state is not None:
        return _state_response(state)

    try:
        library = await controller.libraries.get(library_id)
    except LibraryNotFound:
        raise HTTPException(status_code=404, detail="Library not found")
    return SyncStatusResponse(
        library_id=library_id,
        is_importing=False,
        progress=0.0,
        status=library.last_import_status,
    )


@router.delete("", response_model=SyncCancelResponse)
async def cancel_sync(
    library_id: int,
    controller: SyncController = Depends(get_sync_controller),
) -> SyncCancelResponse:
    """Request cancellation; the sync stops at its next checkpoint."""
    cancelled = await controller.cancel_sync(library_id)
    return SyncCancelResponse(library_id=library_id, cancelled=cancelled)
