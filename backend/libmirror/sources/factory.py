"""Build source entities from library descriptors."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from libmirror.core.config import settings
from libmirror.core.exceptions import CredentialError
from libmirror.core.logging import get_logger
from libmirror.sources.base import SourceEntity
from libmirror.sources.credentials import (
    CredentialProvider,
    GoogleOAuthCredentialProvider,
    MicrosoftOAuthCredentialProvider,
)
from libmirror.sources.descriptors import (
    GoogleDriveSourceDescriptor,
    LocalSourceDescriptor,
    OneDriveSourceDescriptor,
    SourceDescriptor,
)
from libmirror.sources.google_drive import GoogleDriveClient, GoogleDriveSourceEntity
from libmirror.sources.local import LocalSourceEntity, PlaceholderProvider
from libmirror.sources.onedrive import OneDriveClient, OneDriveSourceEntity

logger = get_logger(__name__)


@dataclass
class SourceContext:
    """Collaborators needed to open a library's source.

    Clients are created on first use and reused for every library that
    shares the same account.
    """

    google_credentials: GoogleOAuthCredentialProvider | None = None
    onedrive_credentials: CredentialProvider | None = None
    placeholders: PlaceholderProvider | None = None
    google_client: GoogleDriveClient | None = None
    onedrive_client: OneDriveClient | None = None

    def get_google_client(self) -> GoogleDriveClient:
        if self.google_client is None:
            if self.google_credentials is None:
                raise CredentialError("No Google Drive account is configured")
            self.google_client = GoogleDriveClient.from_credentials(self.google_credentials)
        return self.google_client

    def get_onedrive_client(self) -> OneDriveClient:
        if self.onedrive_client is None:
            if self.onedrive_credentials is None:
                raise CredentialError("No OneDrive account is configured")
            self.onedrive_client = OneDriveClient(self.onedrive_credentials)
        return self.onedrive_client

    async def close(self) -> None:
        """Release network clients."""
        if self.onedrive_client is not None:
            await self.onedrive_client.close()


def default_source_context() -> SourceContext:
    """Build a context from tokens configured in the environment."""
    google = None
    if settings.gdrive_refresh_token:
        google = GoogleOAuthCredentialProvider.from_refresh_token(settings.gdrive_refresh_token)

    onedrive = None
    if settings.onedrive_refresh_token:
        onedrive = MicrosoftOAuthCredentialProvider(settings.onedrive_refresh_token)

    return SourceContext(google_credentials=google, onedrive_credentials=onedrive)


def create_source_entity(descriptor: SourceDescriptor, context: SourceContext) -> SourceEntity:
    """Open the root folder of a library.

    Args:
        descriptor: The library's source descriptor.
        context: Credentials and shared clients.

    Returns:
        The root SourceEntity of the library.
    """
    if isinstance(descriptor, LocalSourceDescriptor):
        path = Path(descriptor.path)
        return LocalSourceEntity(path, is_folder=True, placeholders=context.placeholders)

    if isinstance(descriptor, GoogleDriveSourceDescriptor):
        return GoogleDriveSourceEntity(
            context.get_google_client(), descriptor.folder_id, descriptor.folder_id, is_folder=True
        )

    if isinstance(descriptor, OneDriveSourceDescriptor):
        return OneDriveSourceEntity(
            context.get_onedrive_client(), descriptor.item_id, descriptor.item_id, is_folder=True
        )

    raise ValueError(f"Unsupported source descriptor: {descriptor!r}")
