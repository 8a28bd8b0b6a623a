"""Library and folder API schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from libmirror.db.models import FolderItemSortType, ImportStatus
from libmirror.sources.descriptors import SourceDescriptor


class LibraryCreate(BaseModel):
    """Request body for creating a library."""

    name: str = Field(..., min_length=1, max_length=255)
    source: SourceDescriptor
    use_local_storage: bool = False


class LibraryUpdate(BaseModel):
    """Request body for updating a library. Omitted fields are unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    source: SourceDescriptor | None = None
    use_local_storage: bool | None = None


class LibraryResponse(BaseModel):
    """Library as returned by the API."""

    id: int
    name: str
    source: SourceDescriptor
    sort_order: int
    use_local_storage: bool
    last_imported_folder_mtime: int
    last_imported_item_mtime: int
    last_import_status: ImportStatus
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class LibraryList(BaseModel):
    """List of libraries."""

    items: list[LibraryResponse]
    total: int


class ActivateResponse(BaseModel):
    """Result of switching the active library."""

    library_id: int
    name: str


class FolderSortUpdate(BaseModel):
    """Request body for overriding a folder's sort preference."""

    sort_type: FolderItemSortType
    ascending: bool = True


class FolderResponse(BaseModel):
    """Folder as returned by the API."""

    library_id: int
    folder_id: str
    parent_id: str | None
    name: str
    manual_order: int
    cover_item_id: str | None
    sort_type: FolderItemSortType
    sort_ascending: bool
    sort_modified: bool

    model_config = {"from_attributes": True}


class FolderCoverResponse(BaseModel):
    """Cover item of a folder; both fields are null for an empty folder."""

    folder_id: str
    item_id: str | None = None
    thumbnail_path: str | None = None
