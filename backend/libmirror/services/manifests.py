"""Library manifest formats and value normalization.

An Eagle library exposes three JSON documents the importer relies on:
``metadata.json`` (folder tree), ``mtime.json`` (item id -> modification
time) and ``images/<id>.info/metadata.json`` (one per item).
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from libmirror.core.exceptions import CorruptManifestError
from libmirror.db.models.enums import FolderItemSortType

# Forces inclusion of newly discovered items without ever becoming a cursor
SENTINEL_TIMESTAMP = 2**63 - 1

# Reserved key in mtime.json holding the declared item count
ITEM_TOTAL_KEY = "all"

SORT_NUMBER_WIDTH = 19
_DIGIT_RUN = re.compile(r"[0-9]+")

ORDER_BY_MAP: dict[str, FolderItemSortType] = {
    "MANUAL": FolderItemSortType.MANUAL,
    "NAME": FolderItemSortType.TITLE,
    "TITLE": FolderItemSortType.TITLE,
    "BTIME": FolderItemSortType.DATE_ADDED,
    "IMPORT": FolderItemSortType.DATE_ADDED,
    "DATE_ADDED": FolderItemSortType.DATE_ADDED,
    "RATING": FolderItemSortType.RATING,
    "STAR": FolderItemSortType.RATING,
}


def name_for_sort(name: str) -> str:
    """Build a natural-sort key by zero-padding every digit run.

    >>> name_for_sort("img2") < name_for_sort("img10")
    True
    """
    return _DIGIT_RUN.sub(lambda m: str(int(m.group())).rjust(SORT_NUMBER_WIDTH, "0"), name)


def map_order_by(order_by: str | None) -> FolderItemSortType:
    """Map a manifest ``orderBy`` directive onto the internal sort vocabulary."""
    if not order_by:
        return FolderItemSortType.GLOBAL
    return ORDER_BY_MAP.get(order_by.upper(), FolderItemSortType.GLOBAL)


class _ManifestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class FolderNode(_ManifestModel):
    """One folder in the manifest tree."""

    id: str | None = None
    name: str = ""
    modification_time: int = Field(default=0, alias="modificationTime")
    children: list[FolderNode] = Field(default_factory=list)
    order_by: str | None = Field(default=None, alias="orderBy")
    sort_increase: bool | None = Field(default=None, alias="sortIncrease")
    cover_id: str | None = Field(default=None, alias="coverId")

    @property
    def sort_type(self) -> FolderItemSortType:
        return map_order_by(self.order_by)

    @property
    def sort_ascending(self) -> bool:
        return True if self.sort_increase is None else self.sort_increase


class FolderManifest(_ManifestModel):
    """Contents of ``metadata.json``."""

    folders: list[FolderNode] = Field(default_factory=list)
    modification_time: int = Field(default=0, alias="modificationTime")


class ItemMetadata(_ManifestModel):
    """Contents of ``images/<id>.info/metadata.json``.

    Every field other than the id is optional in the file and defaults to
    its zero value.
    """

    id: str = ""
    name: str = ""
    size: int = 0
    btime: int = 0
    mtime: int = 0
    ext: str = ""
    is_deleted: bool = Field(default=False, alias="isDeleted")
    modification_time: int = Field(default=0, alias="modificationTime")
    height: int = 0
    width: int = 0
    last_modified: int = Field(default=0, alias="lastModified")
    no_thumbnail: bool = Field(default=False, alias="noThumbnail")
    star: int = 0
    duration: float = 0.0
    folders: list[str] = Field(default_factory=list)
    order: dict[str, str] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    annotation: str = ""

    @field_validator("size", "btime", "mtime", "modification_time", "height", "width",
                     "last_modified", "star", mode="before")
    @classmethod
    def _coerce_int(cls, value: Any) -> Any:
        if value is None:
            return 0
        if isinstance(value, float):
            return int(value)
        return value

    @field_validator("order", mode="before")
    @classmethod
    def _coerce_order(cls, value: Any) -> Any:
        # Order values are written as numbers by some library versions
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value

    @property
    def image_name(self) -> str:
        return f"{self.name}.{self.ext}"

    @property
    def thumbnail_name(self) -> str:
        return f"{self.name}_thumbnail.png"


class ItemTimeManifest(BaseModel):
    """Contents of ``mtime.json``: item modification times plus declared total."""

    times: dict[str, int]
    total: int = 0

    @classmethod
    def parse(cls, raw: bytes) -> ItemTimeManifest:
        """Parse ``mtime.json``.

        Raises:
            CorruptManifestError: If the file is not a JSON object of numbers.
        """
        data = _load_json(raw, "mtime.json")
        if not isinstance(data, dict):
            raise CorruptManifestError("mtime.json is not a JSON object")

        # A missing total counts as 0 so directory discovery still runs
        total = data.pop(ITEM_TOTAL_KEY, 0)
        try:
            times = {str(k): int(v) for k, v in data.items()}
            return cls(times=times, total=int(total))
        except (TypeError, ValueError) as e:
            raise CorruptManifestError(f"mtime.json has a non-numeric value: {e}") from e


def _load_json(raw: bytes, what: str) -> Any:
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptManifestError(f"{what} is not valid JSON: {e}") from e


def parse_folder_manifest(raw: bytes) -> FolderManifest:
    """Parse ``metadata.json``.

    Raises:
        CorruptManifestError: If the document is malformed.
    """
    data = _load_json(raw, "metadata.json")
    try:
        return FolderManifest.model_validate(data)
    except ValidationError as e:
        raise CorruptManifestError(f"metadata.json is malformed: {e}") from e


def parse_item_metadata(raw: bytes, item_id: str) -> ItemMetadata:
    """Parse an item's metadata file.

    The id always comes from the item's directory name so that rows match
    the ids listed in mtime.json.

    Raises:
        CorruptManifestError: If the document is malformed.
    """
    data = _load_json(raw, f"metadata for item {item_id}")
    try:
        metadata = ItemMetadata.model_validate(data)
    except ValidationError as e:
        raise CorruptManifestError(f"Metadata for item {item_id} is malformed: {e}") from e
    metadata.id = item_id
    return metadata
