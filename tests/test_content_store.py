"""
Tests for the ContentStoreClient using a mocked IPFS HTTP API.
"""

import httpx
import pytest
import pytest_asyncio

from depin_storage.content_store import DEFAULT_API_URL, ContentStoreClient, _multiaddr_to_url
from depin_storage.errors import ContentStoreConnectionError, ContentStoreError


class FakeNode:
    """Minimal in-memory IPFS API: add, cat, id and version."""

    def __init__(self):
        self.blobs = {}
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        path = request.url.path
        if path == "/api/v0/add":
            body = request.read()
            cid = f"QmFake{len(self.blobs)}"
            self.blobs[cid] = body
            # Progress lines come before the final object
            return httpx.Response(200, text=f'{{"Name":"file","Bytes":1}}\n{{"Name":"file","Hash":"{cid}","Size":"1"}}\n')
        if path == "/api/v0/cat":
            cid = request.url.params["arg"]
            if cid not in self.blobs:
                return httpx.Response(500, text="merkledag: not found")
            return httpx.Response(200, content=b"stored:" + cid.encode())
        if path == "/api/v0/id":
            return httpx.Response(200, json={"ID": "12D3KooW"})
        if path == "/api/v0/version":
            return httpx.Response(200, json={"Version": "0.29.0"})
        return httpx.Response(404)


@pytest.fixture
def node():
    return FakeNode()


@pytest_asyncio.fixture
async def store(node):
    client = ContentStoreClient(api_url="http://ipfs.test:5001/", timeout=5, transport=httpx.MockTransport(node))
    yield client
    await client.close()


def test_multiaddr_conversion():
    assert _multiaddr_to_url("/ip4/10.0.0.2/tcp/5001") == "http://10.0.0.2:5001"
    assert _multiaddr_to_url("/ip6/::1/tcp/5001") == "http://[::1]:5001"
    assert _multiaddr_to_url("/unix/tmp/ipfs.sock") == DEFAULT_API_URL


def test_multiaddr_api_url_is_accepted():
    client = ContentStoreClient(api_url="/dns4/ipfs.local/tcp/5001", timeout=1)
    assert client.api_url == "http://ipfs.local:5001"


@pytest.mark.asyncio
async def test_add_bytes_returns_final_hash(store, node):
    cid = await store.add_bytes(b"ciphertext", filename="report.pdf")

    assert cid == "QmFake0"
    request = node.requests[0]
    assert request.url.params["wrap-with-directory"] == "false"
    assert request.url.params["pin"] == "true"
    assert b"report.pdf" in node.blobs[cid]


@pytest.mark.asyncio
async def test_cat_returns_bytes(store):
    cid = await store.add_bytes(b"payload")

    assert await store.cat(cid) == b"stored:" + cid.encode()


@pytest.mark.asyncio
async def test_cat_unknown_cid_is_rejected(store):
    with pytest.raises(ContentStoreError) as exc_info:
        await store.cat("QmMissing")

    assert "500" in str(exc_info.value)


@pytest.mark.asyncio
async def test_add_without_hash_fails():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text='{"Name":"file"}'))
    async with ContentStoreClient(api_url="http://ipfs.test:5001", timeout=5, transport=transport) as store:
        with pytest.raises(ContentStoreError):
            await store.add_bytes(b"data")


@pytest.mark.asyncio
async def test_is_online(store):
    assert await store.is_online()
    assert (await store.version())["Version"] == "0.29.0"


@pytest.mark.asyncio
async def test_unreachable_node():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with ContentStoreClient(api_url="http://ipfs.test:5001", timeout=5, transport=httpx.MockTransport(handler)) as store:
        assert not await store.is_online()
        with pytest.raises(ContentStoreConnectionError):
            await store.add_bytes(b"data")
