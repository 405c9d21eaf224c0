"""
Provider node: registration, the reconciliation loop and shutdown.
"""

import asyncio
import logging
import shutil
import signal
from typing import Optional

from depin_storage.accounting import SizeAccounting
from depin_storage.config import get_config_value
from depin_storage.content_store import ContentStoreClient
from depin_storage.errors import ContentStoreConnectionError, InsufficientCapacityError, StorageError
from depin_storage.ledger import LedgerClient
from depin_storage.metadata_index import MetadataIndex, ProviderRecord
from depin_storage.reconciliation import ReconciliationLoop
from depin_storage.registry import ProviderRegistry
from depin_storage.utils import format_storage_size, provider_id_for_address

logger = logging.getLogger(__name__)


class ProviderNode:
    """
    A storage provider process.

    Args:
        ledger: Ledger client signing as the provider
        index: Metadata index client
        content_store: Content store client backing the offered storage
        registry: Provider registry (from config if None)
        accounting: Size accounting (from config if None)
        price_per_unit: Price in tokens per unit (from config if None)
        storage_path: Directory whose filesystem backs the storage
    """

    def __init__(
        self,
        ledger: LedgerClient,
        index: MetadataIndex,
        content_store: ContentStoreClient,
        registry: Optional[ProviderRegistry] = None,
        accounting: Optional[SizeAccounting] = None,
        price_per_unit: Optional[float] = None,
        storage_path: str = ".",
    ):
        self.ledger = ledger
        self.index = index
        self.content_store = content_store
        self.registry = registry or ProviderRegistry()
        self.accounting = accounting or SizeAccounting.from_config()
        if price_per_unit is None:
            price_per_unit = get_config_value("provider", "price_per_unit", 10)
        self.price = float(price_per_unit)
        self.storage_path = storage_path

        self.provider_id: Optional[str] = None
        self.loop: Optional[ReconciliationLoop] = None
        self._stop_event = asyncio.Event()
        self._shut_down = False

    def free_units(self) -> float:
        """Free space on the storage filesystem, in allocation units."""
        return shutil.disk_usage(self.storage_path).free / self.accounting.bytes_per_unit

    async def start(self, capacity_units: float) -> ProviderRecord:
        """
        Register this account as a provider and run a first reconciliation.

        Args:
            capacity_units: Storage to offer, capped at the free disk space

        Returns:
            ProviderRecord: The record written to the index
        """
        if capacity_units <= 0:
            raise InsufficientCapacityError("Storage amount must be greater than 0", step="start")
        if not await self.content_store.is_online():
            raise ContentStoreConnectionError(
                f"Content store at {self.content_store.api_url} is not running", step="start"
            )

        free = self.free_units()
        verified = min(float(capacity_units), free)
        if verified < capacity_units:
            logger.warning(
                f"Only {format_storage_size(free)} free on disk, offering that instead of "
                f"{format_storage_size(capacity_units)}"
            )
        if verified <= 0:
            raise InsufficientCapacityError("No free disk space to offer", step="start")

        address = self.ledger.address
        self.provider_id = provider_id_for_address(address)

        logger.info(f"Registering provider {self.provider_id} with {format_storage_size(verified)}")
        await self.ledger.register_provider(verified, self.price, step="start")

        record = await self.index.upsert_provider(
            ProviderRecord(
                provider_id=self.provider_id,
                wallet_address=address,
                allocated_storage=verified,
                available_storage=verified,
                total_storage=verified,
                price_per_gb=self.price,
                is_active=True,
            )
        )
        self.registry.record(self.provider_id, address, verified, self.price)

        self.loop = ReconciliationLoop(
            self.ledger,
            self.index,
            self.provider_id,
            allocated_units=verified,
            price_per_unit=self.price,
            registry=self.registry,
            free_capacity=self.free_units,
        )
        await self.loop.reconcile_once()
        return record

    def stop(self) -> None:
        """Ask :meth:`serve` to return."""
        self._stop_event.set()

    async def serve(self) -> None:
        """Run the reconciliation loop until SIGINT or SIGTERM, then shut down."""
        if self.loop is None:
            raise StorageError("Provider has not been started", step="serve")

        event_loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                event_loop.add_signal_handler(sig, self.stop)
            except NotImplementedError:
                # Not supported on this platform; KeyboardInterrupt still ends the loop
                pass

        try:
            await self.loop.run(self._stop_event)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    event_loop.remove_signal_handler(sig)
                except NotImplementedError:
                    pass
            await self.shutdown()

    async def shutdown(self) -> None:
        """Best-effort deactivation. Runs at most once; failures are logged."""
        if self._shut_down or self.provider_id is None:
            return
        self._shut_down = True

        logger.info(f"Deactivating provider {self.provider_id}")
        try:
            await self.index.deactivate_provider(self.provider_id)
        except StorageError as e:
            logger.error(f"Could not deactivate provider {self.provider_id}: {e}")
        self.registry.remove(self.provider_id)
