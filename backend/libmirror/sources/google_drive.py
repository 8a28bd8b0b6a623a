"""Google Drive source built on the Drive v3 API.

The googleapiclient is synchronous, so every request is executed with
``asyncio.to_thread``. Each request builds its own service; the underlying
httplib2 transport is not thread-safe. Requests go through the shared Google Drive
limiter and the retry executor; path lookups are memoized in the shared
path cache since Drive has no path-based addressing.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload

from libmirror.core.exceptions import (
    AccessDeniedError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    SourceError,
    TransientTransportError,
    UnauthorizedError,
)
from libmirror.core.logging import get_logger
from libmirror.sources.base import SourceEntity, atomic_destination
from libmirror.sources.credentials import GoogleOAuthCredentialProvider
from libmirror.sources.resilience import (
    PathResolutionCache,
    ResilientExecutor,
    get_gdrive_limiter,
    get_gdrive_path_cache,
)

logger = get_logger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
LIST_PAGE_SIZE = 1000

# 403 reasons that mean "slow down" rather than "not allowed"
RATE_LIMIT_REASONS = ("ratelimitexceeded", "userratelimitexceeded", "quotaexceeded")


def escape_query_value(value: str) -> str:
    """Escape a string for use inside a quoted Drive query literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def map_http_error(error: HttpError, what: str) -> SourceError:
    """Translate a googleapiclient HttpError into the source error taxonomy."""
    status = error.resp.status
    if status == 401:
        return UnauthorizedError(f"Google credential rejected for {what}")
    if status == 403:
        content = error.content.decode(errors="replace") if isinstance(error.content, bytes) else ""
        detail = f"{error} {content}".lower()
        if any(reason in detail for reason in RATE_LIMIT_REASONS):
            return RateLimitedError(f"Google Drive rate limit for {what}")
        return AccessDeniedError(f"Access denied to {what}")
    if status == 404:
        return NotFoundError(f"{what} not found in Google Drive")
    if status == 429:
        retry_after = error.resp.get("retry-after")
        return RateLimitedError(
            f"Google Drive rate limit for {what}",
            retry_after=float(retry_after) if retry_after else None,
        )
    if status >= 500:
        return ServerError(f"Google Drive server error {status} for {what}", status_code=status)
    return SourceError(f"Google API error for {what}: {error}")


class GoogleDriveClient:
    """Drive API access for one account, shared by all of its entities."""

    def __init__(
        self,
        service_factory: Callable[[], Any],
        executor: ResilientExecutor,
        path_cache: PathResolutionCache | None = None,
    ):
        """Initialize the client.

        Args:
            service_factory: Builds a Drive v3 service, called once per request
                inside the worker thread.
            executor: Retry executor, normally with the shared Drive limiter.
            path_cache: Child id cache, defaults to the shared one.
        """
        self.service_factory = service_factory
        self.executor = executor
        self.path_cache = path_cache if path_cache is not None else get_gdrive_path_cache()

    @classmethod
    def from_credentials(cls, credentials: GoogleOAuthCredentialProvider) -> GoogleDriveClient:
        """Build a client for an OAuth account using the shared limiter and cache."""

        def build_service() -> Any:
            return build("drive", "v3", credentials=credentials.credentials, cache_discovery=False)

        executor = ResilientExecutor(limiter=get_gdrive_limiter(), credentials=credentials)
        return cls(build_service, executor)

    async def _execute(self, operation: str, what: str, call: Callable[[Any], Any]) -> Any:
        """Run a blocking Drive call in a thread with limiting and retry.

        ``call`` receives a service built for this attempt only.
        """

        def run() -> Any:
            return call(self.service_factory())

        async def attempt() -> Any:
            try:
                return await asyncio.to_thread(run)
            except HttpError as e:
                raise map_http_error(e, what) from e
            except (TimeoutError, ConnectionError) as e:
                raise TransientTransportError(f"Transport error for {what}: {e}") from e

        return await self.executor.run(operation, attempt)

    async def find_child(self, parent_id: str, name: str, is_folder: bool) -> str:
        """Get the id of a named child of a folder.

        Raises:
            NotFoundError: If the folder has no such child.
        """
        cached = self.path_cache.get(parent_id, name, is_folder)
        if cached is not None:
            return cached

        mime_clause = (
            f"mimeType = '{FOLDER_MIME_TYPE}'" if is_folder else f"mimeType != '{FOLDER_MIME_TYPE}'"
        )
        query = (
            f"'{escape_query_value(parent_id)}' in parents"
            f" and name = '{escape_query_value(name)}'"
            f" and {mime_clause} and trashed = false"
        )
        result = await self._execute(
            "find_child",
            name,
            lambda service: service.files().list(
                q=query,
                fields="files(id)",
                pageSize=1,
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            ).execute(),
        )
        files = result.get("files", [])
        if not files:
            raise NotFoundError(f"{name} not found in Google Drive folder {parent_id}")

        child_id = files[0]["id"]
        self.path_cache.set(parent_id, name, is_folder, child_id)
        return child_id

    async def list_children(self, folder_id: str) -> list[dict[str, Any]]:
        """List every child of a folder, following page tokens."""
        files: list[dict[str, Any]] = []
        page_token: str | None = None
        query = f"'{escape_query_value(folder_id)}' in parents and trashed = false"

        while True:
            token = page_token
            result = await self._execute(
                "list_children",
                f"folder {folder_id}",
                lambda service: service.files().list(
                    q=query,
                    fields="nextPageToken, files(id, name, mimeType)",
                    pageToken=token,
                    pageSize=LIST_PAGE_SIZE,
                    supportsAllDrives=True,
                    includeItemsFromAllDrives=True,
                ).execute(),
            )
            for f in result.get("files", []):
                is_folder = f.get("mimeType") == FOLDER_MIME_TYPE
                self.path_cache.set(folder_id, f["name"], is_folder, f["id"])
                files.append(f)

            page_token = result.get("nextPageToken")
            if not page_token:
                return files

    async def get_media(self, file_id: str, what: str) -> bytes:
        """Download a file's contents into memory."""
        return await self._execute(
            "read_file",
            what,
            lambda service: service.files().get_media(
                fileId=file_id, supportsAllDrives=True
            ).execute(),
        )

    async def download_to(self, file_id: str, dest: Path, what: str) -> None:
        """Stream a file's contents to ``dest``, replacing it on success."""

        def download(service: Any, target: Path) -> None:
            request = service.files().get_media(fileId=file_id, supportsAllDrives=True)
            with open(target, "wb") as f:
                downloader = MediaIoBaseDownload(f, request)
                done = False
                while not done:
                    _, done = downloader.next_chunk()

        async with atomic_destination(dest) as partial:
            await self._execute("copy_file", what, lambda service: download(service, partial))

        logger.debug("gdrive_file_copied", file_id=file_id, dest=str(dest))


class GoogleDriveSourceEntity(SourceEntity):
    """File or folder in Google Drive, addressed by file id."""

    def __init__(self, client: GoogleDriveClient, file_id: str, name: str, is_folder: bool = True):
        super().__init__(name, is_folder)
        self.client = client
        self.file_id = file_id

    async def resolve_child(self, name: str, is_folder: bool) -> GoogleDriveSourceEntity:
        child_id = await self.client.find_child(self.file_id, name, is_folder)
        return GoogleDriveSourceEntity(self.client, child_id, name, is_folder)

    async def read(self) -> bytes:
        return await self.client.get_media(self.file_id, self.name)

    async def list(self) -> list[tuple[str, SourceEntity]]:
        children = await self.client.list_children(self.file_id)
        return [
            (
                f["name"],
                GoogleDriveSourceEntity(
                    self.client, f["id"], f["name"], f.get("mimeType") == FOLDER_MIME_TYPE
                ),
            )
            for f in children
        ]

    async def copy_to(self, dest: Path) -> None:
        await self.client.download_to(self.file_id, dest, self.name)
