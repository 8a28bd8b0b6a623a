"""Cooperative cancellation for sync sessions."""

from __future__ import annotations

from libmirror.core.exceptions import SyncCancelledError


class CancellationToken:
    """Flag checked by the importer at phase and batch boundaries."""

    def __init__(self):
        self._cancelled = False

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Request cancellation; takes effect at the next checkpoint."""
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        """Raise SyncCancelledError if cancellation was requested."""
        if self._cancelled:
            raise SyncCancelledError()
