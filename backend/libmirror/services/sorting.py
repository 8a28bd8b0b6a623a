"""ORDER BY clauses for items inside a folder."""

from __future__ import annotations

from sqlalchemy import ColumnElement

from libmirror.db.models import Folder, FolderItem, FolderItemSortType, Item
from libmirror.services.preferences import GlobalSortOption


def effective_sort(folder: Folder, global_sort: GlobalSortOption) -> tuple[FolderItemSortType, bool]:
    """Resolve a folder's sort, replacing GLOBAL with the global preference."""
    if folder.sort_type == FolderItemSortType.GLOBAL:
        return FolderItemSortType(global_sort.type.value), global_sort.ascending
    return folder.sort_type, folder.sort_ascending


def folder_item_order_by(sort_type: FolderItemSortType, ascending: bool) -> list[ColumnElement]:
    """Build the ordering for a resolved folder sort.

    Manual order and date added list the highest value first when
    ascending; title and rating list the lowest first. Rating ties go to
    the newest item when ascending. The item id breaks remaining ties.
    """
    if sort_type == FolderItemSortType.GLOBAL:
        raise ValueError("GLOBAL must be resolved with effective_sort first")

    if sort_type == FolderItemSortType.MANUAL:
        column, reversed_ = FolderItem.order_value, True
    elif sort_type == FolderItemSortType.DATE_ADDED:
        column, reversed_ = Item.modification_time, True
    elif sort_type == FolderItemSortType.TITLE:
        column, reversed_ = Item.name_for_sort, False
    else:
        column, reversed_ = Item.star, False

    clauses = [column.asc() if ascending != reversed_ else column.desc()]
    if sort_type == FolderItemSortType.RATING:
        clauses.append(Item.modification_time.desc() if ascending else Item.modification_time.asc())
    clauses.append(Item.item_id.asc())
    return clauses
