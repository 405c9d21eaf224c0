"""
depin-storage - encrypted file storage on a decentralized provider marketplace
"""

from depin_storage.accounting import SizeAccounting
from depin_storage.client import StorageClient
from depin_storage.config import (
    get_all_config,
    get_config_value,
    initialize_from_env,
    load_config,
    reset_config,
    save_config,
    set_config_value,
)
from depin_storage.content_store import ContentStoreClient
from depin_storage.encryption import EncryptionEngine
from depin_storage.keystore import CredentialSession
from depin_storage.ledger import ClientAllocation, FileDetails, LedgerClient
from depin_storage.metadata_index import MetadataIndex, ProviderRecord, StoredFileRecord
from depin_storage.orchestrator import StorageOrchestrator
from depin_storage.provider import ProviderNode
from depin_storage.reconciliation import ReconciliationLoop
from depin_storage.registry import ProviderRegistry
from depin_storage.utils import format_size, format_storage_size

__version__ = "0.1.0"
__all__ = [
    "StorageClient",
    "StorageOrchestrator",
    "LedgerClient",
    "MetadataIndex",
    "ContentStoreClient",
    "EncryptionEngine",
    "CredentialSession",
    "ProviderNode",
    "ReconciliationLoop",
    "ProviderRegistry",
    "SizeAccounting",
    "ProviderRecord",
    "StoredFileRecord",
    "FileDetails",
    "ClientAllocation",
    "get_config_value",
    "set_config_value",
    "load_config",
    "save_config",
    "initialize_from_env",
    "get_all_config",
    "reset_config",
    "format_size",
    "format_storage_size",
]
