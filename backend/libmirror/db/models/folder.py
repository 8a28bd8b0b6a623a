"""Folder model mirrored from a library's folder manifest."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import BigInteger, Boolean, Enum, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from libmirror.db.base import Base
from libmirror.db.models.enums import FolderItemSortType

if TYPE_CHECKING:
    from libmirror.db.models.library import Library


class Folder(Base):
    """A folder of a library, keyed by (library_id, folder_id).

    Structural columns are owned by the importer. The sort columns are
    user-editable; once ``sort_modified`` is set the importer leaves them alone.
    """

    __tablename__ = "folders"

    library_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("libraries.id", ondelete="CASCADE"), primary_key=True
    )
    folder_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Self reference by id only; parents can arrive later in the same pass
    parent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    name: Mapped[str] = mapped_column(String(1024), default="")
    name_for_sort: Mapped[str] = mapped_column(String(2048), default="")
    modification_time: Mapped[int] = mapped_column(BigInteger, default=0)
    manual_order: Mapped[int] = mapped_column(
        Integer, default=0, doc="Dense depth-first traversal index"
    )
    cover_item_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Sort preference
    sort_type: Mapped[FolderItemSortType] = mapped_column(
        Enum(FolderItemSortType), default=FolderItemSortType.GLOBAL
    )
    sort_ascending: Mapped[bool] = mapped_column(Boolean, default=True)
    sort_modified: Mapped[bool] = mapped_column(
        Boolean, default=False, doc="User changed the sort; import must not overwrite it"
    )

    library: Mapped[Library] = relationship("Library", back_populates="folders")

    __table_args__ = (
        Index("ix_folders_library_parent", "library_id", "parent_id"),
    )
