"""Item model mirrored from per-item metadata files."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import JSON, BigInteger, Boolean, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from libmirror.db.base import Base

if TYPE_CHECKING:
    from libmirror.db.models.library import Library


class Item(Base):
    """A media item of a library, keyed by (library_id, item_id)."""

    __tablename__ = "items"

    library_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("libraries.id", ondelete="CASCADE"), primary_key=True
    )
    item_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    name: Mapped[str] = mapped_column(String(1024), default="")
    name_for_sort: Mapped[str] = mapped_column(String(2048), default="")
    ext: Mapped[str] = mapped_column(String(32), default="")
    size: Mapped[int] = mapped_column(BigInteger, default=0)

    # Timestamps in milliseconds as written by the library
    btime: Mapped[int] = mapped_column(BigInteger, default=0)
    mtime: Mapped[int] = mapped_column(BigInteger, default=0)
    modification_time: Mapped[int] = mapped_column(BigInteger, default=0)
    last_modified: Mapped[int] = mapped_column(BigInteger, default=0)

    height: Mapped[int] = mapped_column(Integer, default=0)
    width: Mapped[int] = mapped_column(Integer, default=0)
    duration: Mapped[float] = mapped_column(Float, default=0.0)

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    no_thumbnail: Mapped[bool] = mapped_column(Boolean, default=False)
    star: Mapped[int] = mapped_column(Integer, default=0)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    annotation: Mapped[str] = mapped_column(Text, default="")

    library: Mapped[Library] = relationship("Library", back_populates="items")

    __table_args__ = (
        Index("ix_items_library_deleted", "library_id", "is_deleted"),
    )

    @property
    def image_path(self) -> str:
        """Path of the image relative to the library root."""
        return f"images/{self.item_id}.info/{self.name}.{self.ext}"

    @property
    def thumbnail_path(self) -> str:
        """Path of the thumbnail relative to the library root.

        Items without a generated thumbnail use the image itself.
        """
        if self.no_thumbnail:
            return self.image_path
        return f"images/{self.item_id}.info/{self.name}_thumbnail.png"
