"""
Provider reconciliation loop.

Two independent timers run for the lifetime of a provider process: one
recomputes used and available capacity from the metadata index and refreshes
the provider's heartbeat, the other claims utilization-based mining rewards.
A failing tick is logged and the next tick tries again.
"""

import asyncio
import logging
from typing import Callable, Optional

from pydantic import BaseModel

from depin_storage.accounting import from_base_units
from depin_storage.config import get_config_value
from depin_storage.ledger import LedgerClient
from depin_storage.metadata_index import MetadataIndex
from depin_storage.registry import ProviderRegistry
from depin_storage.utils import format_storage_size

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 300  # seconds


class CapacitySnapshot(BaseModel):
    """Result of one reconciliation tick, in allocation units."""

    allocated: float
    used: float
    available: float
    file_count: int
    ledger_updated: bool = False


class ReconciliationLoop:
    """
    Keeps a provider's capacity figures and heartbeat current.

    Args:
        ledger: Ledger client signing as the provider
        index: Metadata index client
        provider_id: Provider primary key in the index
        allocated_units: Capacity registered at startup
        price_per_unit: Price in tokens per unit
        registry: Optional provider registry to refresh on each tick
        free_capacity: Callable returning the units local disk can still back
        reconcile_interval: Seconds between capacity ticks (from config if None)
        reward_interval: Seconds between reward claims (from config if None)
    """

    def __init__(
        self,
        ledger: LedgerClient,
        index: MetadataIndex,
        provider_id: str,
        allocated_units: float,
        price_per_unit: float,
        registry: Optional[ProviderRegistry] = None,
        free_capacity: Optional[Callable[[], float]] = None,
        reconcile_interval: Optional[float] = None,
        reward_interval: Optional[float] = None,
    ):
        self.ledger = ledger
        self.index = index
        self.provider_id = provider_id
        self.allocated = float(allocated_units)
        self.price = float(price_per_unit)
        self.registry = registry
        self.free_capacity = free_capacity
        self.reconcile_interval = float(
            reconcile_interval
            if reconcile_interval is not None
            else get_config_value("provider", "reconcile_interval", DEFAULT_INTERVAL)
        )
        self.reward_interval = float(
            reward_interval
            if reward_interval is not None
            else get_config_value("provider", "reward_interval", DEFAULT_INTERVAL)
        )

    async def _correct_allocation(self, used: float) -> bool:
        """
        Shrink the registered capacity when local disk can no longer back it.

        The ledger is updated first; if that fails the exception propagates
        and neither the index nor ``self.allocated`` changes.
        """
        if self.free_capacity is None:
            return False

        backed = self.free_capacity() + used
        if backed >= self.allocated:
            return False

        logger.warning(
            f"Disk can back only {format_storage_size(backed)} of "
            f"{format_storage_size(self.allocated)} allocated, correcting the ledger"
        )
        await self.ledger.register_provider(backed, self.price)
        self.allocated = backed
        return True

    async def reconcile_once(self) -> CapacitySnapshot:
        """
        Recompute capacity from the index and push it back with a fresh heartbeat.

        Returns:
            CapacitySnapshot: The figures written
        """
        files = await self.index.list_files_for_provider(self.provider_id)
        used = sum(f.file_size for f in files)

        ledger_updated = await self._correct_allocation(used)

        if used > self.allocated:
            logger.warning(
                f"Provider {self.provider_id} stores {format_storage_size(used)} "
                f"but only {format_storage_size(self.allocated)} is allocated"
            )
        available = max(self.allocated - used, 0.0)

        await self.index.update_provider_capacity(
            self.provider_id,
            allocated=self.allocated,
            available=available,
            active=True,
            price=self.price,
        )

        if self.registry is not None:
            self.registry.record(self.provider_id, self.ledger.address, available, self.price)

        if used > 0:
            logger.info(
                f"Storage usage: {format_storage_size(used)} used out of "
                f"{format_storage_size(self.allocated)} allocated"
            )
        logger.info(
            f"Storage status: {format_storage_size(available)} available out of "
            f"{format_storage_size(self.allocated)} total"
        )

        return CapacitySnapshot(
            allocated=self.allocated,
            used=used,
            available=available,
            file_count=len(files),
            ledger_updated=ledger_updated,
        )

    async def claim_rewards(self) -> int:
        """
        Trigger reward distribution and report the resulting balance.

        Returns:
            int: Token balance in base units after the claim
        """
        await self.ledger.distribute_mining_rewards()
        balance = await self.ledger.balance_of()
        logger.info(f"Mining rewards claimed! Current balance: {from_base_units(balance)} tokens")
        return balance

    async def _tick_forever(self, name: str, interval: float, tick, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await tick()
            except Exception as e:
                logger.error(f"Error in {name} tick, retrying in {interval:.0f}s: {e}")

    async def run(self, stop_event: asyncio.Event) -> None:
        """
        Run both timers until ``stop_event`` is set.

        Each timer waits a full interval before its first tick.
        """
        await asyncio.gather(
            self._tick_forever("reconcile", self.reconcile_interval, self.reconcile_once, stop_event),
            self._tick_forever("rewards", self.reward_interval, self.claim_rewards, stop_event),
        )
