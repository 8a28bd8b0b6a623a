"""Enum types for database models."""

from __future__ import annotations

import enum


class ImportStatus(str, enum.Enum):
    """Outcome of the most recent import for a library."""

    NONE = "NONE"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class FolderItemSortType(str, enum.Enum):
    """How items inside a folder are ordered.

    GLOBAL defers to the application-wide sort preference.
    """

    GLOBAL = "global"
    MANUAL = "manual"
    DATE_ADDED = "dateAdded"
    TITLE = "title"
    RATING = "rating"


class GlobalSortType(str, enum.Enum):
    """Application-wide item sort, used by folders sorted as GLOBAL."""

    DATE_ADDED = "dateAdded"
    TITLE = "title"
    RATING = "rating"


class SourceKind(str, enum.Enum):
    """Storage backend holding a library."""

    LOCAL = "local"
    GDRIVE = "gdrive"
    ONEDRIVE = "onedrive"
