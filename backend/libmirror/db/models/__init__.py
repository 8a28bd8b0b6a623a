"""Database models for libmirror."""

from libmirror.db.models.app_setting import AppSetting
from libmirror.db.models.enums import FolderItemSortType, GlobalSortType, ImportStatus, SourceKind
from libmirror.db.models.folder import Folder
from libmirror.db.models.folder_item import FolderItem
from libmirror.db.models.item import Item
from libmirror.db.models.library import Library

__all__ = [
    "AppSetting",
    "Folder",
    "FolderItem",
    "FolderItemSortType",
    "GlobalSortType",
    "ImportStatus",
    "Item",
    "Library",
    "SourceKind",
]
