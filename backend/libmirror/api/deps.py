"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import Depends

from libmirror.services.cache import get_derived_value_cache
from libmirror.services.folder_cover import FolderCoverService
from libmirror.services.preferences import PreferencesService
from libmirror.services.sync import SyncController


def get_sync_controller() -> SyncController:
    """Get the process-wide sync controller."""
    return SyncController.get_instance()


def get_folder_cover_service(
    controller: SyncController = Depends(get_sync_controller),
) -> FolderCoverService:
    """Get a folder cover service sharing the controller's database."""
    return FolderCoverService(controller.session_maker, get_derived_value_cache())


def get_preferences_service(
    controller: SyncController = Depends(get_sync_controller),
) -> PreferencesService:
    """Get a preferences service sharing the controller's database and broadcaster."""
    return PreferencesService(controller.session_maker, controller.broadcaster)
