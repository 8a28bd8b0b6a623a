"""FolderItem association between folders and items."""

from __future__ import annotations

from sqlalchemy import ForeignKeyConstraint, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from libmirror.db.base import Base


class FolderItem(Base):
    """Membership of an item in a folder, with its manual order value."""

    __tablename__ = "folder_items"

    library_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    folder_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    item_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_value: Mapped[str] = mapped_column(String(64), default="")

    __table_args__ = (
        ForeignKeyConstraint(
            ["library_id", "folder_id"],
            ["folders.library_id", "folders.folder_id"],
            ondelete="CASCADE",
        ),
        ForeignKeyConstraint(
            ["library_id", "item_id"],
            ["items.library_id", "items.item_id"],
            ondelete="CASCADE",
        ),
        Index("ix_folder_items_item", "library_id", "item_id"),
    )
