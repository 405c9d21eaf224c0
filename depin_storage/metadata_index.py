"""
Metadata index client for the ``providers`` and ``stored_files`` tables.

The index is a PostgREST (Supabase) REST API. It is a queryable copy of what
the ledger records, used for provider discovery and to hold each file's name
and encryption salt.
"""

import datetime
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel

from depin_storage.config import get_config_value
from depin_storage.errors import (
    ConfigurationError,
    DuplicateKeyError,
    IndexConnectionError,
    MetadataIndexError,
)
from depin_storage.utils import utc_now

logger = logging.getLogger(__name__)

PROVIDERS_TABLE = "providers"
FILES_TABLE = "stored_files"
HEARTBEAT_WINDOW = 300  # seconds
UNIQUE_VIOLATION = "23505"


class ProviderRecord(BaseModel):
    """A row of the ``providers`` table. Storage quantities are in allocation units."""

    provider_id: str
    wallet_address: str
    allocated_storage: float = 0.0
    available_storage: float = 0.0
    total_storage: float = 0.0
    price_per_gb: float = 0.0
    is_active: bool = True
    last_updated: Optional[datetime.datetime] = None

    @property
    def used_storage(self) -> float:
        return max(self.allocated_storage - self.available_storage, 0.0)

    def is_live(self, now: datetime.datetime, window: float = HEARTBEAT_WINDOW) -> bool:
        """
        Check whether this provider may be offered to clients.

        Args:
            now: Current time (timezone-aware)
            window: Heartbeat freshness window in seconds

        Returns:
            bool: True if active, fresh, priced and with free capacity
        """
        if not self.is_active or not self.wallet_address or self.last_updated is None:
            return False
        last_updated = self.last_updated
        if last_updated.tzinfo is None:
            last_updated = last_updated.replace(tzinfo=datetime.timezone.utc)
        return (
            last_updated >= now - datetime.timedelta(seconds=window)
            and self.allocated_storage > 0
            and self.available_storage > 0
            and self.price_per_gb > 0
        )


class StoredFileRecord(BaseModel):
    """A row of the ``stored_files`` table. ``file_size`` is in allocation units."""

    cid: str
    provider_id: str
    client_address: str
    file_size: float
    file_name: str
    encryption_salt: str
    created_at: Optional[datetime.datetime] = None


def _isoformat(value: datetime.datetime) -> str:
    return value.astimezone(datetime.timezone.utc).isoformat()


class MetadataIndex:
    """
    Asynchronous client for the metadata index REST API.

    Args:
        url: Base URL of the REST service (from config if None)
        api_key: Service API key sent as ``apikey`` and bearer token (from config if None)
        timeout: Request timeout in seconds (from config if None)
        clock: Callable returning the current UTC time
        heartbeat_window: Seconds a heartbeat keeps a provider live
        transport: Optional httpx transport, used in tests
    """

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], datetime.datetime] = utc_now,
        heartbeat_window: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if url is None:
            url = get_config_value("index", "url")
        if api_key is None:
            api_key = get_config_value("index", "api_key")
        if timeout is None:
            timeout = get_config_value("index", "timeout", 30)
        if heartbeat_window is None:
            heartbeat_window = get_config_value("provider", "heartbeat_window", HEARTBEAT_WINDOW)

        if not url or not api_key:
            raise ConfigurationError(
                "Metadata index URL and API key are required (set SUPABASE_URL and SUPABASE_ANON_KEY)"
            )

        self.url = url.rstrip("/")
        self.clock = clock
        self.heartbeat_window = float(heartbeat_window)
        self._client = httpx.AsyncClient(
            base_url=f"{self.url}/rest/v1",
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(float(timeout), connect=min(float(timeout), 10.0)),
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        try:
            response = await self._client.request(method, f"/{table}", params=params, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise IndexConnectionError(f"Metadata index timed out: {e}")
        except httpx.TransportError as e:
            raise IndexConnectionError(f"Metadata index unreachable: {e}")

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            code = body.get("code") if isinstance(body, dict) else None
            message = body.get("message") if isinstance(body, dict) else None
            detail = message or response.text.strip()
            if response.status_code == 409 or code == UNIQUE_VIOLATION:
                raise DuplicateKeyError(f"Duplicate key in {table}: {detail}")
            raise MetadataIndexError(f"Metadata index {method} {table} failed ({response.status_code}): {detail}")

        if not response.content:
            return None
        return response.json()

    # Providers

    async def upsert_provider(self, record: ProviderRecord) -> ProviderRecord:
        """
        Insert or replace a provider row keyed on ``provider_id``.

        ``last_updated`` is stamped from the clock when the record has none.
        """
        if record.last_updated is None:
            record = record.model_copy(update={"last_updated": self.clock()})
        payload = record.model_dump(mode="json")

        rows = await self._request(
            "POST",
            PROVIDERS_TABLE,
            params={"on_conflict": "provider_id"},
            json=payload,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        logger.debug(f"Upserted provider {record.provider_id}")
        return ProviderRecord(**rows[0]) if rows else record

    async def update_provider_capacity(
        self,
        provider_id: str,
        allocated: float,
        available: float,
        active: bool = True,
        price: Optional[float] = None,
    ) -> None:
        """
        Write the provider's capacity and refresh its heartbeat.

        Args:
            provider_id: Provider primary key
            allocated: Allocated storage in units
            available: Unused storage in units
            active: Whether the provider keeps serving
            price: New price per unit, unchanged if None
        """
        changes: Dict[str, Any] = {
            "allocated_storage": allocated,
            "available_storage": available,
            "total_storage": allocated,
            "is_active": active,
            "last_updated": _isoformat(self.clock()),
        }
        if price is not None:
            changes["price_per_gb"] = price

        await self._request(
            "PATCH",
            PROVIDERS_TABLE,
            params={"provider_id": f"eq.{provider_id}"},
            json=changes,
        )

    async def deactivate_provider(self, provider_id: str) -> None:
        """Mark a provider inactive. Rows are never deleted."""
        await self._request(
            "PATCH",
            PROVIDERS_TABLE,
            params={"provider_id": f"eq.{provider_id}"},
            json={"is_active": False, "last_updated": _isoformat(self.clock())},
        )
        logger.info(f"Deactivated provider {provider_id}")

    async def get_provider(self, provider_id: str) -> Optional[ProviderRecord]:
        rows = await self._request(
            "GET",
            PROVIDERS_TABLE,
            params={"select": "*", "provider_id": f"eq.{provider_id}", "limit": "1"},
        )
        return ProviderRecord(**rows[0]) if rows else None

    async def list_active_providers(self) -> List[ProviderRecord]:
        """
        List providers a client may buy from.

        The server-side filter is re-checked locally so a stale or lenient
        index never hands out a dead provider. Results are ordered by
        freshest heartbeat, then provider id.

        Returns:
            List[ProviderRecord]: Live providers
        """
        now = self.clock()
        cutoff = now - datetime.timedelta(seconds=self.heartbeat_window)
        rows = await self._request(
            "GET",
            PROVIDERS_TABLE,
            params={
                "select": "*",
                "is_active": "eq.true",
                "last_updated": f"gte.{_isoformat(cutoff)}",
                "allocated_storage": "gt.0",
                "available_storage": "gt.0",
                "price_per_gb": "gt.0",
                "order": "last_updated.desc,provider_id.asc",
            },
        )

        providers = [ProviderRecord(**row) for row in rows or []]
        live = [p for p in providers if p.is_live(now, self.heartbeat_window)]
        live.sort(key=lambda p: p.provider_id)
        live.sort(key=lambda p: p.last_updated, reverse=True)
        return live

    # Files

    async def insert_file(self, record: StoredFileRecord) -> None:
        """
        Record a stored file.

        Raises:
            DuplicateKeyError: If the CID is already registered
        """
        await self._request(
            "POST",
            FILES_TABLE,
            json=record.model_dump(mode="json", exclude_none=True),
            headers={"Prefer": "return=minimal"},
        )
        logger.debug(f"Indexed file {record.cid} for provider {record.provider_id}")

    async def get_file(self, cid: str) -> Optional[StoredFileRecord]:
        rows = await self._request(
            "GET",
            FILES_TABLE,
            params={"select": "*", "cid": f"eq.{cid}", "limit": "1"},
        )
        return StoredFileRecord(**rows[0]) if rows else None

    async def list_files_for_provider(self, provider_id: str) -> List[StoredFileRecord]:
        rows = await self._request(
            "GET",
            FILES_TABLE,
            params={"select": "*", "provider_id": f"eq.{provider_id}", "order": "cid.asc"},
        )
        return [StoredFileRecord(**row) for row in rows or []]

    async def list_files_for_client(self, client_address: str) -> List[StoredFileRecord]:
        rows = await self._request(
            "GET",
            FILES_TABLE,
            params={"select": "*", "client_address": f"eq.{client_address}", "order": "cid.asc"},
        )
        return [StoredFileRecord(**row) for row in rows or []]
