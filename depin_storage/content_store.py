"""
Content store client: add and retrieve opaque blobs by CID on an IPFS node.
"""

import json
import logging
from typing import Any, Dict, Optional

import httpx

from depin_storage.config import get_config_value
from depin_storage.errors import ContentStoreConnectionError, ContentStoreError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://127.0.0.1:5001"


def _multiaddr_to_url(api_url: str) -> str:
    """Convert /ip4/127.0.0.1/tcp/5001 style addresses to an HTTP URL."""
    parts = api_url.split("/")
    if len(parts) >= 5 and parts[1] in ["ip4", "ip6", "dns", "dns4", "dns6"] and parts[3] == "tcp":
        host = f"[{parts[2]}]" if parts[1] == "ip6" else parts[2]
        return f"http://{host}:{parts[4]}"

    logger.warning(f"Unsupported multiaddr format: {api_url}, falling back to {DEFAULT_API_URL}")
    return DEFAULT_API_URL


class ContentStoreClient:
    """
    Asynchronous IPFS HTTP API client using httpx.
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the content store client.

        Args:
            api_url: IPFS API URL or multiaddr (from config if None)
            timeout: Request timeout in seconds (from config if None)
            transport: Optional httpx transport, used in tests
        """
        if api_url is None:
            api_url = get_config_value("ipfs", "api_url", DEFAULT_API_URL)
        if timeout is None:
            timeout = get_config_value("ipfs", "timeout", 30)

        # Handle multiaddr format
        if api_url.startswith("/"):
            api_url = _multiaddr_to_url(api_url)

        self.api_url = api_url.rstrip("/")
        self.timeout = float(timeout)
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 10.0)),
            follow_redirects=True,
            transport=transport,
        )

    async def close(self):
        """Close the httpx client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _post(self, path: str, **kwargs) -> httpx.Response:
        url = f"{self.api_url}/api/v0/{path}"
        try:
            response = await self.client.post(url, **kwargs)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ContentStoreConnectionError(f"Content store at {self.api_url} timed out: {e}")
        except httpx.TransportError as e:
            raise ContentStoreConnectionError(f"Content store at {self.api_url} unreachable: {e}")
        except httpx.HTTPStatusError as e:
            raise ContentStoreError(
                f"Content store rejected {path}: {e.response.status_code} {e.response.text.strip()}"
            )
        return response

    async def add_bytes(self, data: bytes, filename: str = "file") -> str:
        """
        Add bytes to the content store.

        Args:
            data: Bytes to add
            filename: Name to give the file (default: "file")

        Returns:
            str: Content identifier of the stored blob
        """
        # Specify file with name and content type to ensure consistent handling
        files = {"file": (filename, data, "application/octet-stream")}
        # Explicitly set wrap-with-directory=false to prevent wrapping in directory
        response = await self._post("add", params={"wrap-with-directory": "false", "pin": "true"}, files=files)

        # The API may return one JSON object per line; the last one is the file itself
        lines = response.text.strip().splitlines()
        if not lines:
            raise ContentStoreError("Empty response from content store add")
        result: Dict[str, Any] = json.loads(lines[-1])
        cid = result.get("Hash")
        if not cid:
            raise ContentStoreError(f"Content store add returned no hash: {result}")

        logger.debug(f"Added {len(data)} bytes to content store as {cid}")
        return cid

    async def cat(self, cid: str) -> bytes:
        """
        Retrieve content by its CID.

        Args:
            cid: Content Identifier to retrieve

        Returns:
            Content as bytes
        """
        response = await self._post("cat", params={"arg": cid})
        return response.content

    async def version(self) -> Dict[str, Any]:
        """Version information of the connected node."""
        response = await self._post("version")
        return response.json()

    async def is_online(self) -> bool:
        """
        Check whether the node answers.

        Returns:
            True if the node responded to an identity request, False otherwise
        """
        try:
            await self._post("id")
            return True
        except (ContentStoreConnectionError, ContentStoreError) as e:
            logger.debug(f"Content store offline: {e}")
            return False
