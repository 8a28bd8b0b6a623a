"""Tests for the OneDrive source and Microsoft credentials.

Graph is replaced with an httpx.MockTransport.
"""

from __future__ import annotations

import httpx
import pytest

from libmirror.core.exceptions import (
    AccessDeniedError,
    CredentialError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    TransientTransportError,
)
from libmirror.sources.credentials import MicrosoftOAuthCredentialProvider, StaticTokenProvider
from libmirror.sources.onedrive import (
    GRAPH_BASE_URL,
    OneDriveClient,
    OneDriveSourceEntity,
    raise_for_graph_status,
)
from libmirror.sources.resilience import ResilientExecutor


async def no_sleep(delay: float) -> None:
    pass


class GraphStub:
    """Routes requests to canned responses and records them."""

    def __init__(self):
        self.routes: dict[str, list[httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, path: str, *responses: httpx.Response) -> None:
        self.routes.setdefault(path, []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"error": {"code": "itemNotFound"}})
        canned = queue.pop(0) if len(queue) > 1 else queue[0]
        # Fresh copy each time; the last response repeats
        return httpx.Response(canned.status_code, headers=canned.headers, content=canned.content)


@pytest.fixture
def graph() -> GraphStub:
    return GraphStub()


@pytest.fixture
def credentials():
    return StaticTokenProvider("token-1")


@pytest.fixture
def client(graph, credentials) -> OneDriveClient:
    """Create a client talking to the stub."""
    http = httpx.AsyncClient(transport=httpx.MockTransport(graph))
    executor = ResilientExecutor(credentials=credentials, max_retries=5, base_delay=2.0, sleep=no_sleep)
    return OneDriveClient(credentials, executor, http)


ITEMS = "/v1.0/me/drive/items"


class TestRaiseForGraphStatus:
    """Tests for Graph status mapping."""

    @pytest.mark.parametrize(
        "status,expected",
        [(403, AccessDeniedError), (404, NotFoundError), (429, RateLimitedError), (502, ServerError)],
    )
    def test_status_mapping(self, status, expected):
        """Test that error statuses raise the matching source error."""
        with pytest.raises(expected):
            raise_for_graph_status(httpx.Response(status), "item")

    def test_success_passes(self):
        """Test that 2xx responses do not raise."""
        raise_for_graph_status(httpx.Response(200), "item")

    def test_retry_after_header(self):
        """Test that Retry-After is carried on rate limit errors."""
        with pytest.raises(RateLimitedError) as exc_info:
            raise_for_graph_status(httpx.Response(429, headers={"Retry-After": "3"}), "item")
        assert exc_info.value.retry_after == 3.0


class TestOneDriveClient:
    """Tests for OneDriveClient."""

    @pytest.mark.asyncio
    async def test_find_child_uses_path_addressing(self, client, graph):
        """Test that a child is looked up by name in one request with a bearer token."""
        graph.add(f"{ITEMS}/root-id:/images", httpx.Response(200, json={"id": "img", "name": "images", "folder": {}}))

        item = await client.find_child("root-id", "images")

        assert item["id"] == "img"
        assert graph.requests[0].headers["Authorization"] == "Bearer token-1"

    @pytest.mark.asyncio
    async def test_list_children_follows_next_link(self, client, graph):
        """Test that listing follows @odata.nextLink pages."""
        next_link = f"{GRAPH_BASE_URL}/me/drive/items/img/children?$skiptoken=abc"
        graph.add(
            f"{ITEMS}/img/children",
            httpx.Response(200, json={"value": [{"id": "1", "name": "A.info", "folder": {}}], "@odata.nextLink": next_link}),
            httpx.Response(200, json={"value": [{"id": "2", "name": "B.info", "folder": {}}]}),
        )

        children = await client.list_children("img")

        assert [c["id"] for c in children] == ["1", "2"]
        assert len(graph.requests) == 2

    @pytest.mark.asyncio
    async def test_unauthorized_refreshes_and_retries(self, client, graph, credentials):
        """Test that a 401 refreshes the credential before retrying."""
        graph.add(
            f"{ITEMS}/f/content",
            httpx.Response(401),
            httpx.Response(200, content=b"bytes"),
        )

        assert await client.get_content("f", "file") == b"bytes"
        assert credentials.refresh_count == 1
        assert len(graph.requests) == 2

    @pytest.mark.asyncio
    async def test_transport_error_retried(self, credentials):
        """Test that connection failures are retried and eventually surface."""
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise httpx.ConnectError("down", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        executor = ResilientExecutor(credentials=credentials, max_retries=2, base_delay=0.0, sleep=no_sleep)
        client = OneDriveClient(credentials, executor, http)

        with pytest.raises(TransientTransportError):
            await client.get_content("f", "file")
        assert calls == 3

    @pytest.mark.asyncio
    async def test_download_to_streams_file(self, client, graph, tmp_path):
        """Test that downloads land atomically at the destination."""
        graph.add(f"{ITEMS}/f/content", httpx.Response(200, content=b"image-bytes"))
        dest = tmp_path / "a" / "image.jpg"

        await client.download_to("f", dest, "image.jpg")

        assert dest.read_bytes() == b"image-bytes"
        assert not dest.with_name("image.jpg.part").exists()

    @pytest.mark.asyncio
    async def test_failed_download_leaves_nothing(self, client, graph, tmp_path):
        """Test that a missing item leaves no partial file."""
        dest = tmp_path / "a" / "image.jpg"

        with pytest.raises(NotFoundError):
            await client.download_to("missing", dest, "image.jpg")

        assert not dest.exists()
        assert not dest.with_name("image.jpg.part").exists()


class TestOneDriveSourceEntity:
    """Tests for OneDriveSourceEntity."""

    @pytest.mark.asyncio
    async def test_resolve_checks_folder_facet(self, client, graph):
        """Test that a file does not resolve where a folder is expected."""
        graph.add(f"{ITEMS}/root:/mtime.json", httpx.Response(200, json={"id": "m", "name": "mtime.json", "file": {}}))
        root = OneDriveSourceEntity(client, "root", "root")

        entity = await root.resolve("mtime.json")
        assert entity.item_id == "m"

        with pytest.raises(NotFoundError):
            await root.resolve("mtime.json", is_folder=True)

    @pytest.mark.asyncio
    async def test_list(self, client, graph):
        """Test that children are reported with their folder flag."""
        graph.add(
            f"{ITEMS}/img/children",
            httpx.Response(200, json={"value": [
                {"id": "1", "name": "A.info", "folder": {"childCount": 2}},
                {"id": "2", "name": "notes.txt"},
            ]}),
        )
        entity = OneDriveSourceEntity(client, "img", "images")

        children = dict(await entity.list())

        assert children["A.info"].is_folder is True
        assert children["notes.txt"].is_folder is False


class TestMicrosoftCredentials:
    """Tests for the refresh-token grant."""

    @pytest.mark.asyncio
    async def test_refresh_rotates_refresh_token(self):
        """Test that a refresh stores the new access and refresh tokens."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 3600},
            )

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = MicrosoftOAuthCredentialProvider("old-refresh", client_id="app", tenant="common", http_client=http)

        assert await provider.get_token() == "new-access"
        assert provider.refresh_token == "new-refresh"
        assert seen[0].url.path == "/common/oauth2/v2.0/token"
        assert b"grant_type=refresh_token" in seen[0].content

        # A valid token is reused without another request
        assert await provider.get_token() == "new-access"
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_rejected_refresh_raises_credential_error(self):
        """Test that a rejected refresh surfaces as a credential error."""
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(400)))
        provider = MicrosoftOAuthCredentialProvider("refresh", client_id="app", http_client=http)

        with pytest.raises(CredentialError):
            await provider.refresh()

    @pytest.mark.asyncio
    async def test_missing_client_id(self):
        """Test that refreshing without a client id fails."""
        provider = MicrosoftOAuthCredentialProvider("refresh", client_id="")
        provider.client_id = ""

        with pytest.raises(CredentialError):
            await provider.refresh()
