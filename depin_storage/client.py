"""
Main client for the DePIN storage marketplace.
"""

from typing import List, Optional, Union

from depin_storage.accounting import SizeAccounting
from depin_storage.content_store import ContentStoreClient
from depin_storage.discovery import discover_providers
from depin_storage.encryption import EncryptionEngine
from depin_storage.keystore import CredentialSession
from depin_storage.ledger import LedgerClient
from depin_storage.metadata_index import MetadataIndex, ProviderRecord
from depin_storage.orchestrator import (
    DownloadResult,
    StorageOrchestrator,
    StorageSummary,
    UploadResult,
)
from depin_storage.provider import ProviderNode
from depin_storage.registry import ProviderRegistry


class StorageClient:
    """
    Main entry point wiring the ledger, index, content store and credential
    together from configuration.

    Every argument left as None is read from the config file.
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        password: Optional[str] = None,
        ledger_url: Optional[str] = None,
        index_url: Optional[str] = None,
        index_api_key: Optional[str] = None,
        ipfs_api_url: Optional[str] = None,
        interactive: bool = True,
    ):
        """
        Initialize the storage client.

        Args:
            secret: Signing secret to use instead of the keystore
            password: Keystore password (prompted for if needed and None)
            ledger_url: WebSocket URL of the ledger node
            index_url: Base URL of the metadata index
            index_api_key: Metadata index API key
            ipfs_api_url: IPFS API URL
            interactive: Whether missing credentials may be prompted for
        """
        self.credentials = CredentialSession(secret=secret, password=password, interactive=interactive)
        self.ledger = LedgerClient(keypair=None, url=ledger_url)
        self.index = MetadataIndex(url=index_url, api_key=index_api_key)
        self.content_store = ContentStoreClient(api_url=ipfs_api_url)
        self.registry = ProviderRegistry()
        self.accounting = SizeAccounting.from_config()
        self._orchestrator: Optional[StorageOrchestrator] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close every underlying connection."""
        await self.content_store.close()
        await self.index.close()
        self.ledger.close()

    def _signing_ledger(self) -> LedgerClient:
        # The keystore is only unlocked when a signed operation needs it
        if self.ledger.keypair is None:
            self.ledger.keypair = self.credentials.keypair
        return self.ledger

    @property
    def orchestrator(self) -> StorageOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = StorageOrchestrator(
                ledger=self._signing_ledger(),
                index=self.index,
                content_store=self.content_store,
                credentials=self.credentials,
                encryption=EncryptionEngine(),
                accounting=self.accounting,
                registry=self.registry,
            )
        return self._orchestrator

    async def list_providers(self) -> List[ProviderRecord]:
        """Live providers, freshest first, with the bounded discovery retry."""
        return await discover_providers(self.index, self.registry)

    async def upload_file(
        self,
        file_path: str,
        provider: Union[ProviderRecord, str, None] = None,
        amount_units: Optional[int] = None,
    ) -> UploadResult:
        return await self.orchestrator.upload(file_path, provider=provider, amount_units=amount_units)

    async def download_file(self, cid: str, output_path: Optional[str] = None) -> DownloadResult:
        return await self.orchestrator.download(cid, output_path)

    async def retry_register(self, cid: str, provider_address: str, size_milli_units: int) -> str:
        return await self.orchestrator.retry_register(cid, provider_address, size_milli_units)

    async def storage_summary(self, provider: Union[ProviderRecord, str]) -> StorageSummary:
        return await self.orchestrator.storage_summary(provider)

    async def balance(self) -> int:
        """Token balance of the current account, in base units."""
        return await self._signing_ledger().balance_of()

    def provider_node(self, storage_path: str = ".") -> ProviderNode:
        """A provider node signing with this client's credential."""
        return ProviderNode(
            ledger=self._signing_ledger(),
            index=self.index,
            content_store=self.content_store,
            registry=self.registry,
            accounting=self.accounting,
            storage_path=storage_path,
        )
