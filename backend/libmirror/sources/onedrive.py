"""OneDrive source built on Microsoft Graph v1.0.

Requests are retried through the resilience executor. Graph does not need
the request limiter or the path cache: path-based addressing resolves a
child in a single request.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import aiofiles
import httpx

from libmirror.core.config import settings
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
from libmirror.sources.credentials import CredentialProvider
from libmirror.sources.resilience import ResilientExecutor

logger = get_logger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
CHILDREN_PAGE_SIZE = 200


def raise_for_graph_status(response: httpx.Response, what: str) -> None:
    """Raise the source error matching a Graph error response."""
    status = response.status_code
    if 200 <= status < 300:
        return
    if status == 401:
        raise UnauthorizedError(f"Microsoft credential rejected for {what}")
    if status == 403:
        raise AccessDeniedError(f"Access denied to {what}")
    if status == 404:
        raise NotFoundError(f"{what} not found in OneDrive")
    if status == 429:
        retry_after = response.headers.get("Retry-After")
        raise RateLimitedError(
            f"OneDrive rate limit for {what}",
            retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
        )
    if status >= 500:
        raise ServerError(f"OneDrive server error {status} for {what}", status_code=status)
    raise SourceError(f"OneDrive request for {what} failed with HTTP {status}")


class OneDriveClient:
    """Graph access for one account, shared by all of its entities."""

    def __init__(
        self,
        credentials: CredentialProvider,
        executor: ResilientExecutor | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.credentials = credentials
        self.executor = executor or ResilientExecutor(credentials=credentials)
        self._client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=settings.http_timeout,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _authorized(
        self,
        operation: str,
        what: str,
        send: Callable[[httpx.AsyncClient, dict[str, str]], Awaitable[Any]],
    ) -> Any:
        """Run one Graph exchange per attempt with a fresh bearer token."""
        client = await self._get_client()

        async def attempt() -> Any:
            token = await self.credentials.get_token()
            headers = {"Authorization": f"Bearer {token}"}
            try:
                return await send(client, headers)
            except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as e:
                raise TransientTransportError(f"Transport error for {what}: {e}") from e

        return await self.executor.run(operation, attempt)

    async def get_json(self, operation: str, url: str, what: str) -> dict[str, Any]:
        """GET a Graph resource and decode its JSON body."""

        async def send(client: httpx.AsyncClient, headers: dict[str, str]) -> dict[str, Any]:
            response = await client.get(url, headers=headers)
            raise_for_graph_status(response, what)
            return response.json()

        return await self._authorized(operation, what, send)

    async def find_child(self, parent_id: str, name: str) -> dict[str, Any]:
        """Get a child item of a folder by name."""
        url = f"{GRAPH_BASE_URL}/me/drive/items/{parent_id}:/{quote(name, safe='')}"
        return await self.get_json("find_child", url, name)

    async def list_children(self, item_id: str) -> list[dict[str, Any]]:
        """List every child of a folder, following ``@odata.nextLink``."""
        url: str | None = (
            f"{GRAPH_BASE_URL}/me/drive/items/{item_id}/children"
            f"?$select=id,name,folder&$top={CHILDREN_PAGE_SIZE}"
        )
        children: list[dict[str, Any]] = []
        while url:
            page = await self.get_json("list_children", url, f"folder {item_id}")
            children.extend(page.get("value", []))
            url = page.get("@odata.nextLink")
        return children

    async def get_content(self, item_id: str, what: str) -> bytes:
        """Download an item's contents into memory."""
        url = f"{GRAPH_BASE_URL}/me/drive/items/{item_id}/content"

        async def send(client: httpx.AsyncClient, headers: dict[str, str]) -> bytes:
            response = await client.get(url, headers=headers)
            raise_for_graph_status(response, what)
            return response.content

        return await self._authorized("read_file", what, send)

    async def download_to(self, item_id: str, dest: Path, what: str) -> None:
        """Stream an item's contents to ``dest``, replacing it on success."""
        url = f"{GRAPH_BASE_URL}/me/drive/items/{item_id}/content"

        async with atomic_destination(dest) as partial:

            async def send(client: httpx.AsyncClient, headers: dict[str, str]) -> None:
                async with client.stream("GET", url, headers=headers) as response:
                    raise_for_graph_status(response, what)
                    async with aiofiles.open(partial, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            await f.write(chunk)

            await self._authorized("copy_file", what, send)

        logger.debug("onedrive_file_copied", item_id=item_id, dest=str(dest))


class OneDriveSourceEntity(SourceEntity):
    """File or folder in OneDrive, addressed by drive item id."""

    def __init__(self, client: OneDriveClient, item_id: str, name: str, is_folder: bool = True):
        super().__init__(name, is_folder)
        self.client = client
        self.item_id = item_id

    async def resolve_child(self, name: str, is_folder: bool) -> OneDriveSourceEntity:
        item = await self.client.find_child(self.item_id, name)
        if ("folder" in item) != is_folder:
            kind = "folder" if is_folder else "file"
            raise NotFoundError(f"{name} is not a {kind} in OneDrive folder {self.item_id}")
        return OneDriveSourceEntity(self.client, item["id"], item.get("name", name), is_folder)

    async def read(self) -> bytes:
        return await self.client.get_content(self.item_id, self.name)

    async def list(self) -> list[tuple[str, SourceEntity]]:
        children = await self.client.list_children(self.item_id)
        return [
            (item["name"], OneDriveSourceEntity(self.client, item["id"], item["name"], "folder" in item))
            for item in children
        ]

    async def copy_to(self, dest: Path) -> None:
        await self.client.download_to(self.item_id, dest, self.name)
