"""Library model for a mirrored media library."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from libmirror.db.base import Base
from libmirror.db.models.enums import ImportStatus
from libmirror.sources.descriptors import SourceDescriptor, dump_source_descriptor, parse_source_descriptor

if TYPE_CHECKING:
    from libmirror.db.models.folder import Folder
    from libmirror.db.models.item import Item


class Library(Base):
    """A library selected by the user and mirrored from its source.

    The two cursors are watermarks of the newest folder manifest and the
    newest item modification time that have been committed locally.
    """

    __tablename__ = "libraries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    source_json: Mapped[str] = mapped_column(
        Text, nullable=False, doc="Serialized source descriptor (tagged union)"
    )
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    use_local_storage: Mapped[bool] = mapped_column(
        Boolean, default=False, doc="Copy images and thumbnails into local storage"
    )

    # Sync state
    last_imported_folder_mtime: Mapped[int] = mapped_column(BigInteger, default=0)
    last_imported_item_mtime: Mapped[int] = mapped_column(BigInteger, default=0)
    last_import_status: Mapped[ImportStatus] = mapped_column(
        Enum(ImportStatus), default=ImportStatus.NONE
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    # Rows are removed by ON DELETE CASCADE in the database
    folders: Mapped[list[Folder]] = relationship(
        "Folder", back_populates="library", cascade="all, delete-orphan", passive_deletes=True
    )
    items: Mapped[list[Item]] = relationship(
        "Item", back_populates="library", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def source(self) -> SourceDescriptor:
        """Get the parsed source descriptor."""
        return parse_source_descriptor(self.source_json)

    @source.setter
    def source(self, descriptor: SourceDescriptor) -> None:
        self.source_json = dump_source_descriptor(descriptor)
