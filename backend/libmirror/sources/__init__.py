"""Storage backends behind a common SourceEntity interface."""

from libmirror.sources.base import SourceEntity
from libmirror.sources.descriptors import (
    GoogleDriveSourceDescriptor,
    LocalSourceDescriptor,
    OneDriveSourceDescriptor,
    SourceDescriptor,
    dump_source_descriptor,
    parse_source_descriptor,
)

__all__ = [
    "GoogleDriveSourceDescriptor",
    "LocalSourceDescriptor",
    "OneDriveSourceDescriptor",
    "SourceDescriptor",
    "SourceEntity",
    "dump_source_descriptor",
    "parse_source_descriptor",
]
