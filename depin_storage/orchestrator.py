"""
Storage transaction orchestrator.

An upload spans three systems that share no transaction: the ledger (payment
and size registration), the content store (ciphertext) and the metadata index
(salt and file name). Each upload and download is therefore a sequence of
named steps. A failure stops the sequence and raises a ``StorageError`` whose
``step`` names the failing step and whose ``progress`` records everything that
already happened. Nothing is rolled back.
"""

import logging
import math
import os
from contextlib import contextmanager
from typing import List, Optional, Union

from pydantic import BaseModel

from depin_storage.accounting import SizeAccounting, from_base_units, purchase_cost
from depin_storage.content_store import ContentStoreClient
from depin_storage.discovery import discover_providers
from depin_storage.encryption import EncryptionEngine
from depin_storage.errors import (
    InsufficientBalanceError,
    InsufficientCapacityError,
    NotFoundError,
    PermissionDeniedError,
    ProviderMismatchError,
    StepFailedError,
    StorageError,
)
from depin_storage.keystore import CredentialSession
from depin_storage.ledger import LedgerClient
from depin_storage.metadata_index import MetadataIndex, ProviderRecord, StoredFileRecord
from depin_storage.registry import ProviderRegistry
from depin_storage.utils import accounts_match, is_valid_cid

logger = logging.getLogger(__name__)

# Upload steps
RESOLVE_PROVIDER = "resolve_provider"
CHECK_BALANCE = "check_balance"
PURCHASE_STORAGE = "purchase_storage"
ENCRYPT = "encrypt"
PUBLISH = "publish"
INDEX_FILE = "index_file"
REGISTER_FILE = "register_file"
UPLOAD_STEPS = (RESOLVE_PROVIDER, CHECK_BALANCE, PURCHASE_STORAGE, ENCRYPT, PUBLISH, INDEX_FILE, REGISTER_FILE)

# Download steps
LOOKUP_FILE = "lookup_file"
VERIFY_OWNERSHIP = "verify_ownership"
FETCH = "fetch"
DECRYPT = "decrypt"
WRITE = "write"
DOWNLOAD_STEPS = (LOOKUP_FILE, VERIFY_OWNERSHIP, FETCH, DECRYPT, WRITE)


class UploadProgress(BaseModel):
    """What an upload has done so far. Attached to any error it raises."""

    completed_steps: List[str] = []
    file_name: Optional[str] = None
    size_bytes: Optional[int] = None
    size_milli_units: Optional[int] = None
    provider_id: Optional[str] = None
    provider_address: Optional[str] = None
    amount_units: Optional[int] = None
    cost: Optional[int] = None
    approve_tx: Optional[str] = None
    purchase_tx: Optional[str] = None
    cid: Optional[str] = None
    salt: Optional[str] = None
    register_tx: Optional[str] = None


class DownloadProgress(BaseModel):
    completed_steps: List[str] = []
    cid: str
    file_name: Optional[str] = None
    output_path: Optional[str] = None


class UploadResult(BaseModel):
    cid: str
    file_name: str
    size_bytes: int
    file_size_units: float
    size_milli_units: int
    provider_id: str
    provider_address: str
    amount_units: int
    cost: int
    salt: str
    purchase_tx: Optional[str] = None
    register_tx: Optional[str] = None


class DownloadResult(BaseModel):
    cid: str
    file_name: str
    output_path: str
    size_bytes: int


class StorageSummary(BaseModel):
    """A client's allocation with one provider, in allocation units."""

    provider_id: str
    provider_address: str
    allocated: float
    used: float
    available: float
    file_count: int
    ledger_used: int = 0
    paid: int = 0


@contextmanager
def _run_step(step: str, progress: BaseModel):
    """
    Run one named step, tagging any error with the step and the progress.

    Errors outside the storage taxonomy are wrapped in StepFailedError.
    """
    try:
        yield
    except StorageError as e:
        if e.step is None:
            e.step = step
        e.progress = progress
        raise
    except Exception as e:
        error = StepFailedError(step, e)
        error.progress = progress
        raise error from e
    else:
        progress.completed_steps.append(step)
        logger.debug(f"Step {step} completed")


class StorageOrchestrator:
    """
    Runs uploads and downloads as named, individually reported steps.

    Args:
        ledger: Ledger client signing as the current account
        index: Metadata index client
        content_store: Content store client
        credentials: Credential holder exposing ``address`` and ``secret``
        encryption: Encryption engine (default cipher and iterations if None)
        accounting: Size accounting (from config if None)
        registry: Optional provider registry used by discovery
    """

    def __init__(
        self,
        ledger: LedgerClient,
        index: MetadataIndex,
        content_store: ContentStoreClient,
        credentials: CredentialSession,
        encryption: Optional[EncryptionEngine] = None,
        accounting: Optional[SizeAccounting] = None,
        registry: Optional[ProviderRegistry] = None,
    ):
        self.ledger = ledger
        self.index = index
        self.content_store = content_store
        self.credentials = credentials
        self.encryption = encryption or EncryptionEngine()
        self.accounting = accounting or SizeAccounting.from_config()
        self.registry = registry

    @property
    def address(self) -> str:
        return self.credentials.address

    async def _resolve_provider(
        self, provider: Union[ProviderRecord, str, None], require_active: bool = True
    ) -> ProviderRecord:
        if isinstance(provider, ProviderRecord):
            return provider
        if provider is None:
            providers = await discover_providers(self.index, self.registry)
            return providers[0]

        record = await self.index.get_provider(provider)
        if record is None:
            raise NotFoundError(f"Provider {provider} is not registered")
        if require_active and not record.is_active:
            raise NotFoundError(f"Provider {provider} is not active")
        return record

    def minimum_units(self, size_bytes: int) -> int:
        """Smallest whole number of units that holds ``size_bytes``."""
        return max(math.ceil(size_bytes / self.accounting.bytes_per_unit), 1)

    async def upload(
        self,
        file_path: str,
        provider: Union[ProviderRecord, str, None] = None,
        amount_units: Optional[int] = None,
        file_name: Optional[str] = None,
    ) -> UploadResult:
        """
        Buy storage, encrypt a file, publish it and register it.

        Args:
            file_path: Local file to upload
            provider: Provider record, provider id, or None to pick the freshest live provider
            amount_units: Whole units to buy (default: the minimum that holds the file)
            file_name: Name recorded in the index (default: the file's basename)

        Returns:
            UploadResult: CID, salt, provider and transaction hashes

        Raises:
            StorageError: Tagged with the failing step and the progress so far
        """
        progress = UploadProgress(file_name=file_name or os.path.basename(file_path))

        with _run_step(RESOLVE_PROVIDER, progress):
            if not os.path.isfile(file_path):
                raise NotFoundError(f"File {file_path} not found")
            size_bytes = os.path.getsize(file_path)
            progress.size_bytes = size_bytes
            progress.size_milli_units = self.accounting.to_milli_units(size_bytes)

            record = await self._resolve_provider(provider)
            progress.provider_id = record.provider_id
            progress.provider_address = record.wallet_address

            if amount_units is None:
                amount_units = self.minimum_units(size_bytes)
            amount_units = int(amount_units)
            if amount_units <= 0:
                raise ValueError("Storage amount must be a positive number of units")
            progress.amount_units = amount_units

            if amount_units > record.available_storage:
                raise InsufficientCapacityError(
                    f"Requested {amount_units} units but provider {record.provider_id} "
                    f"has {record.available_storage} available"
                )
            if not self.accounting.fits(size_bytes, amount_units):
                raise InsufficientCapacityError(
                    f"File of {size_bytes} bytes does not fit in {amount_units} units"
                )

        with _run_step(CHECK_BALANCE, progress):
            cost = purchase_cost(amount_units, record.price_per_gb)
            progress.cost = cost
            balance = await self.ledger.balance_of(self.address)
            if balance < cost:
                raise InsufficientBalanceError(
                    f"Insufficient token balance. Required: {from_base_units(cost)}, "
                    f"available: {from_base_units(balance)}"
                )

        with _run_step(PURCHASE_STORAGE, progress):
            progress.approve_tx = await self.ledger.approve(cost, step=PURCHASE_STORAGE)
            progress.purchase_tx = await self.ledger.purchase_storage(
                record.wallet_address, amount_units, step=PURCHASE_STORAGE
            )
            logger.info(f"Purchased {amount_units} units from provider {record.provider_id}")

        with _run_step(ENCRYPT, progress):
            with open(file_path, "rb") as f:
                data = f.read()
            payload = self.encryption.encrypt(data, self.address, self.credentials.secret)
            progress.salt = payload.salt

        with _run_step(PUBLISH, progress):
            cid = await self.content_store.add_bytes(payload.ciphertext, filename=progress.file_name)
            progress.cid = cid
            logger.info(f"Published {progress.file_name} as {cid}")

        file_size_units = self.accounting.to_units(size_bytes)
        with _run_step(INDEX_FILE, progress):
            await self.index.insert_file(
                StoredFileRecord(
                    cid=cid,
                    provider_id=record.provider_id,
                    client_address=self.address,
                    file_size=file_size_units,
                    file_name=progress.file_name,
                    encryption_salt=payload.salt,
                )
            )

        with _run_step(REGISTER_FILE, progress):
            progress.register_tx = await self.ledger.store_file(
                record.wallet_address, cid, progress.size_milli_units, step=REGISTER_FILE
            )

        return UploadResult(
            cid=cid,
            file_name=progress.file_name,
            size_bytes=size_bytes,
            file_size_units=file_size_units,
            size_milli_units=progress.size_milli_units,
            provider_id=record.provider_id,
            provider_address=record.wallet_address,
            amount_units=amount_units,
            cost=cost,
            salt=payload.salt,
            purchase_tx=progress.purchase_tx,
            register_tx=progress.register_tx,
        )

    async def retry_register(self, cid: str, provider_address: str, size_milli_units: int) -> str:
        """
        Re-run only the ledger registration of an already published file.

        Returns:
            str: Extrinsic hash
        """
        progress = UploadProgress(
            cid=cid,
            provider_address=provider_address,
            size_milli_units=size_milli_units,
            completed_steps=[RESOLVE_PROVIDER, CHECK_BALANCE, PURCHASE_STORAGE, ENCRYPT, PUBLISH, INDEX_FILE],
        )
        with _run_step(REGISTER_FILE, progress):
            if not is_valid_cid(cid):
                raise NotFoundError(f"{cid!r} is not a valid CID")
            progress.register_tx = await self.ledger.store_file(
                provider_address, cid, int(size_milli_units), step=REGISTER_FILE
            )
        return progress.register_tx

    async def download(self, cid: str, output_path: Optional[str] = None) -> DownloadResult:
        """
        Verify ownership of a CID, fetch it, decrypt it and write it out.

        Args:
            cid: Content identifier returned by upload
            output_path: Destination file or directory (default: the indexed file name)

        Returns:
            DownloadResult: Where the plaintext was written
        """
        progress = DownloadProgress(cid=cid)

        with _run_step(LOOKUP_FILE, progress):
            if not is_valid_cid(cid):
                raise NotFoundError(f"{cid!r} is not a valid CID")
            record = await self.index.get_file(cid)
            if record is None:
                raise NotFoundError(f"No file with CID {cid} in the metadata index")
            progress.file_name = record.file_name

        with _run_step(VERIFY_OWNERSHIP, progress):
            details = await self.ledger.get_file_details(cid)
            if not details.exists:
                raise NotFoundError(f"File {cid} is not registered on the ledger")
            if not details.has_provider:
                raise ProviderMismatchError(f"The ledger records no provider for {cid}")
            if not accounts_match(details.owner, self.address):
                raise PermissionDeniedError(f"{self.address} does not own {cid}")

        with _run_step(FETCH, progress):
            ciphertext = await self.content_store.cat(cid)

        with _run_step(DECRYPT, progress):
            plaintext = self.encryption.decrypt(
                ciphertext, self.address, self.credentials.secret, record.encryption_salt
            )

        with _run_step(WRITE, progress):
            # Indexed names are untrusted, only their last component is used
            name = os.path.basename(record.file_name or "")
            destination = output_path
            if not destination or os.path.isdir(destination):
                if name in ("", ".", ".."):
                    raise ValueError(f"Indexed file name {record.file_name!r} is not a usable file name")
                destination = os.path.join(destination, name) if destination else name
            directory = os.path.dirname(os.path.abspath(destination))
            os.makedirs(directory, exist_ok=True)
            with open(destination, "wb") as f:
                f.write(plaintext)
            progress.output_path = destination

        logger.info(f"Downloaded {cid} to {destination}")
        return DownloadResult(
            cid=cid,
            file_name=record.file_name,
            output_path=destination,
            size_bytes=len(plaintext),
        )

    async def storage_summary(self, provider: Union[ProviderRecord, str]) -> StorageSummary:
        """
        Combine the ledger allocation with the files indexed for this client.

        ``used`` and ``available`` are fractional units from the index, so a
        half-unit file on a two-unit allocation leaves 1.5 available.
        """
        record = await self._resolve_provider(provider, require_active=False)
        allocation = await self.ledger.get_client_allocation(record.wallet_address, self.address)
        files = [
            f for f in await self.index.list_files_for_client(self.address)
            if f.provider_id == record.provider_id
        ]
        used = sum(f.file_size for f in files)
        return StorageSummary(
            provider_id=record.provider_id,
            provider_address=record.wallet_address,
            allocated=allocation.allocated,
            used=used,
            available=max(allocation.allocated - used, 0.0),
            file_count=len(files),
            ledger_used=allocation.used,
            paid=allocation.paid,
        )
