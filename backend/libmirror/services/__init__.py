"""Business logic services for libmirror."""

from libmirror.services.cache import CoverImageState, DerivedValueCache
from libmirror.services.cancellation import CancellationToken
from libmirror.services.events import EventBroadcaster, EventType
from libmirror.services.importer import ImportStats, MetadataImporter
from libmirror.services.library import LibraryService
from libmirror.services.sync import SyncController

__all__ = [
    "CancellationToken",
    "CoverImageState",
    "DerivedValueCache",
    "EventBroadcaster",
    "EventType",
    "ImportStats",
    "LibraryService",
    "MetadataImporter",
    "SyncController",
]
