"""Sync API schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from libmirror.db.models import ImportStatus


class SyncStartRequest(BaseModel):
    """Request body for starting a sync."""

    full: bool = False


class SyncStatusResponse(BaseModel):
    """State of a library's sync."""

    library_id: int
    is_importing: bool
    progress: float
    status: ImportStatus
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    stats: dict[str, Any] | None = None


class SyncCancelResponse(BaseModel):
    """Result of a cancellation request."""

    library_id: int
    cancelled: bool
