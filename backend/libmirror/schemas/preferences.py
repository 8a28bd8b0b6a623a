"""Preference API schemas."""

from __future__ import annotations

from pydantic import BaseModel

from libmirror.db.models import GlobalSortType


class GlobalSortUpdate(BaseModel):
    """Request body for changing the global item sort."""

    sort_type: GlobalSortType
    ascending: bool = True


class GlobalSortResponse(BaseModel):
    """The global item sort used by folders sorted as ``global``."""

    sort_type: GlobalSortType
    ascending: bool
