"""Source descriptors persisted on a Library.

A descriptor is a tagged union keyed by ``kind``; it names the backend and
the locator of the library root within it.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class LocalSourceDescriptor(BaseModel):
    """Library stored on a local (possibly cloud-synced) filesystem."""

    kind: Literal["local"] = "local"
    path: str = Field(description="Absolute path of the .library directory")


class GoogleDriveSourceDescriptor(BaseModel):
    """Library stored in Google Drive."""

    kind: Literal["gdrive"] = "gdrive"
    folder_id: str = Field(description="Drive file id of the library folder")
    account: str | None = Field(default=None, description="Account email, for display")


class OneDriveSourceDescriptor(BaseModel):
    """Library stored in OneDrive."""

    kind: Literal["onedrive"] = "onedrive"
    item_id: str = Field(description="Drive item id of the library folder")
    account: str | None = Field(default=None, description="Account name, for display")


SourceDescriptor = Annotated[
    Union[LocalSourceDescriptor, GoogleDriveSourceDescriptor, OneDriveSourceDescriptor],
    Field(discriminator="kind"),
]

_descriptor_adapter: TypeAdapter[SourceDescriptor] = TypeAdapter(SourceDescriptor)


def parse_source_descriptor(raw: str | dict) -> SourceDescriptor:
    """Parse a descriptor from its JSON text or a plain dict."""
    if isinstance(raw, dict):
        return _descriptor_adapter.validate_python(raw)
    return _descriptor_adapter.validate_json(raw)


def dump_source_descriptor(descriptor: SourceDescriptor) -> str:
    """Serialize a descriptor to JSON text."""
    return _descriptor_adapter.dump_json(descriptor).decode()
