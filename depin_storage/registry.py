"""
Process-scoped table of known providers, persisted as a liveness cache.

The cache file maps provider ids to ``{address, storage, price, lastSeen}``
(``lastSeen`` in epoch milliseconds) and lets clients fall back to recently
seen providers when the metadata index is unreachable.
"""

import datetime
import json
import logging
import os
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from depin_storage.config import get_config_value, get_providers_cache_path
from depin_storage.metadata_index import HEARTBEAT_WINDOW, ProviderRecord
from depin_storage.utils import utc_now

logger = logging.getLogger(__name__)


class ProviderEntry(BaseModel):
    """One provider as seen by this process."""

    provider_id: str
    address: str
    storage: float
    price: float
    last_seen: int  # epoch milliseconds

    def to_cache(self) -> Dict[str, object]:
        return {
            "address": self.address,
            "storage": self.storage,
            "price": self.price,
            "lastSeen": self.last_seen,
        }

    def to_record(self) -> ProviderRecord:
        return ProviderRecord(
            provider_id=self.provider_id,
            wallet_address=self.address,
            allocated_storage=self.storage,
            available_storage=self.storage,
            total_storage=self.storage,
            price_per_gb=self.price,
            is_active=True,
            last_updated=datetime.datetime.fromtimestamp(self.last_seen / 1000, tz=datetime.timezone.utc),
        )


def _epoch_ms(value: datetime.datetime) -> int:
    return int(value.timestamp() * 1000)


class ProviderRegistry:
    """
    In-memory provider table mirrored to a JSON file.

    Passed explicitly to whoever needs it; there is no module-level instance.

    Args:
        path: Cache file (from config if None)
        clock: Callable returning the current UTC time
        window: Seconds after which an entry is no longer considered live
    """

    def __init__(
        self,
        path: Optional[str] = None,
        clock: Callable[[], datetime.datetime] = utc_now,
        window: Optional[float] = None,
    ):
        self.path = path or get_providers_cache_path()
        self.clock = clock
        if window is None:
            window = get_config_value("provider", "heartbeat_window", HEARTBEAT_WINDOW)
        self.window = float(window)
        self._entries: Dict[str, ProviderEntry] = {}
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable providers cache {self.path}: {e}")
            return

        for provider_id, raw in (data or {}).items():
            try:
                self._entries[provider_id] = ProviderEntry(
                    provider_id=provider_id,
                    address=raw["address"],
                    storage=float(raw.get("storage", 0)),
                    price=float(raw.get("price", 0)),
                    last_seen=int(raw.get("lastSeen", 0)),
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed cache entry {provider_id}: {e}")

    def _save(self) -> None:
        data = {provider_id: entry.to_cache() for provider_id, entry in self._entries.items()}
        try:
            os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(data, f)
        except OSError as e:
            logger.warning(f"Could not write providers cache {self.path}: {e}")

    def record(self, provider_id: str, address: str, storage: float, price: float) -> ProviderEntry:
        """Add or refresh an entry, stamping it with the current time."""
        entry = ProviderEntry(
            provider_id=provider_id,
            address=address,
            storage=storage,
            price=price,
            last_seen=_epoch_ms(self.clock()),
        )
        self._entries[provider_id] = entry
        self._save()
        return entry

    def record_from_index(self, records: List[ProviderRecord]) -> None:
        """Remember providers returned by the index, keeping their heartbeat time."""
        for record in records:
            last_seen = record.last_updated or self.clock()
            self._entries[record.provider_id] = ProviderEntry(
                provider_id=record.provider_id,
                address=record.wallet_address,
                storage=record.available_storage,
                price=record.price_per_gb,
                last_seen=_epoch_ms(last_seen),
            )
        if records:
            self._save()

    def remove(self, provider_id: str) -> bool:
        """Forget a provider. Returns True if it was known."""
        if self._entries.pop(provider_id, None) is None:
            return False
        self._save()
        return True

    def get(self, provider_id: str) -> Optional[ProviderEntry]:
        return self._entries.get(provider_id)

    def live_entries(self) -> List[ProviderEntry]:
        """
        Entries seen within the window that still offer storage at a price.

        Returns:
            List[ProviderEntry]: Most recently seen first, ties by provider id
        """
        cutoff = _epoch_ms(self.clock()) - int(self.window * 1000)
        live = [
            entry
            for entry in self._entries.values()
            if entry.address and entry.storage > 0 and entry.price > 0 and entry.last_seen >= cutoff
        ]
        return sorted(live, key=lambda entry: (-entry.last_seen, entry.provider_id))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._entries
