"""
Provider discovery with a bounded, fixed-delay retry.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from depin_storage.config import get_config_value
from depin_storage.errors import MetadataIndexError, NetworkError, NoProvidersAvailableError
from depin_storage.metadata_index import MetadataIndex, ProviderRecord
from depin_storage.registry import ProviderRegistry

logger = logging.getLogger(__name__)


async def discover_providers(
    index: MetadataIndex,
    registry: Optional[ProviderRegistry] = None,
    max_retries: Optional[int] = None,
    retry_delay: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> List[ProviderRecord]:
    """
    Find providers a client can buy storage from.

    The index is asked up to ``max_retries`` times, waiting ``retry_delay``
    seconds between attempts. When the index stays empty, unreachable or failing,
    live entries from the registry's liveness cache are used instead.

    Args:
        index: Metadata index client
        registry: Optional provider registry, refreshed on success and used as fallback
        max_retries: Attempts against the index (from config if None)
        retry_delay: Seconds between attempts (from config if None)
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        List[ProviderRecord]: Live providers, freshest first

    Raises:
        NoProvidersAvailableError: If no provider is found anywhere
    """
    if max_retries is None:
        max_retries = get_config_value("discovery", "max_retries", 3)
    if retry_delay is None:
        retry_delay = get_config_value("discovery", "retry_delay", 5)

    last_error: Optional[Exception] = None
    for attempt in range(1, max_retries + 1):
        try:
            providers = await index.list_active_providers()
            if providers:
                if registry is not None:
                    registry.record_from_index(providers)
                return providers
            logger.info(f"No active providers found (attempt {attempt}/{max_retries})")
        except (NetworkError, MetadataIndexError) as e:
            last_error = e
            logger.warning(f"Error fetching providers (attempt {attempt}/{max_retries}): {e}")

        if attempt < max_retries:
            await sleep(retry_delay)

    if registry is not None:
        cached = [entry.to_record() for entry in registry.live_entries()]
        if cached:
            logger.info(f"Using {len(cached)} provider(s) from the local liveness cache")
            return cached

    message = "No storage providers available. Please try again later."
    if last_error is not None:
        message = f"{message} Last error: {last_error}"
    raise NoProvidersAvailableError(message, step="resolve_provider")
