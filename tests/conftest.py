"""
Pytest configuration and fixtures for depin-storage tests.

The ledger, metadata index and content store are replaced with in-memory
fakes that keep the same rules as the real systems: allowances and balances
on the ledger, unique CIDs in the index, content addressing in the store.
"""

import datetime
import hashlib
from types import SimpleNamespace
from typing import Dict, List, Optional, Tuple

import base58
import pytest

from depin_storage import config
from depin_storage.accounting import SizeAccounting, purchase_cost, to_base_units
from depin_storage.encryption import EncryptionEngine
from depin_storage.errors import (
    ContentStoreError,
    DuplicateKeyError,
    InsufficientBalanceError,
    InsufficientCapacityError,
    LedgerTransactionError,
)
from depin_storage.ledger import ClientAllocation, FileDetails
from depin_storage.metadata_index import HEARTBEAT_WINDOW, ProviderRecord, StoredFileRecord
from depin_storage.orchestrator import StorageOrchestrator
from depin_storage.registry import ProviderRegistry
from depin_storage.utils import ZERO_ACCOUNT_HEX, normalize_account, provider_id_for_address

ALICE = "0x" + "a1" * 32
BOB = "0x" + "b2" * 32
PROVIDER = "0x" + "c3" * 32
ZERO_ACCOUNT = "0x" + ZERO_ACCOUNT_HEX
BYTES_PER_UNIT = 1024


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the config directory at a temporary path and clear credential env vars."""
    config_dir = tmp_path / "depin"
    monkeypatch.setattr(config, "CONFIG_DIR", str(config_dir))
    monkeypatch.setattr(config, "CONFIG_FILE", str(config_dir / "config.json"))
    for name in ["DEPIN_SECRET", "DEPIN_KEYSTORE_PASSWORD"] + list(config.ENV_OVERRIDES):
        monkeypatch.delenv(name, raising=False)
    return config_dir


class FakeClock:
    """Settable clock returning timezone-aware UTC datetimes."""

    def __init__(self, now: Optional[datetime.datetime] = None):
        self.now = now or datetime.datetime(2024, 5, 1, 12, 0, tzinfo=datetime.timezone.utc)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


class FakeChain:
    """Shared ledger state: token balances plus the marketplace contract."""

    def __init__(self, accounting: SizeAccounting):
        self.accounting = accounting
        self.balances: Dict[str, int] = {}
        self.allowances: Dict[str, int] = {}
        self.providers: Dict[str, Tuple[float, float]] = {}
        self.sold: Dict[str, int] = {}
        self.allocations: Dict[Tuple[str, str], ClientAllocation] = {}
        self.files: Dict[str, FileDetails] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self.failures: Dict[str, Exception] = {}
        self.reward = to_base_units(1)
        self._tx = 0

    def fund(self, address: str, tokens: float) -> None:
        self.balances[normalize_account(address)] = to_base_units(tokens)

    def balance(self, address: str) -> int:
        return self.balances.get(normalize_account(address), 0)

    def mutations(self) -> List[str]:
        return [name for name, _ in self.calls if name not in ("balance_of", "get_file_details", "get_client_allocation")]

    def record(self, name: str, *args) -> str:
        self.calls.append((name, args))
        if name in self.failures:
            raise self.failures[name]
        self._tx += 1
        return f"0x{self._tx:064x}"


class FakeLedger:
    """One account's view of a FakeChain, with the LedgerClient interface."""

    def __init__(self, chain: FakeChain, address: str):
        self.chain = chain
        self._address = address

    @property
    def address(self) -> str:
        return self._address

    def _key(self, address: Optional[str] = None) -> str:
        return normalize_account(address or self._address)

    async def register_provider(self, capacity_units, price_per_unit, step=None):
        tx = self.chain.record("register_provider", capacity_units, price_per_unit)
        self.chain.providers[self._key()] = (float(capacity_units), float(price_per_unit))
        return tx

    async def approve(self, amount_base_units, step=None):
        tx = self.chain.record("approve", amount_base_units)
        self.chain.allowances[self._key()] = int(amount_base_units)
        return tx

    async def purchase_storage(self, provider_address, amount_units, step=None):
        tx = self.chain.record("purchase_storage", provider_address, amount_units)
        provider = self._key(provider_address)
        if provider not in self.chain.providers:
            raise LedgerTransactionError("Provider not registered", step=step, reason="ProviderNotFound")
        capacity, price = self.chain.providers[provider]
        if self.chain.sold.get(provider, 0) + amount_units > capacity:
            raise InsufficientCapacityError("Ledger rejected: InsufficientCapacity", step=step)
        cost = purchase_cost(amount_units, price)
        client = self._key()
        if self.chain.allowances.get(client, 0) < cost or self.chain.balance(client) < cost:
            raise InsufficientBalanceError("Ledger rejected: InsufficientBalance", step=step)

        self.chain.allowances[client] -= cost
        self.chain.balances[client] -= cost
        self.chain.balances[provider] = self.chain.balance(provider) + cost
        self.chain.sold[provider] = self.chain.sold.get(provider, 0) + amount_units
        allocation = self.chain.allocations.setdefault((provider, client), ClientAllocation())
        allocation.allocated += amount_units
        allocation.paid += cost
        return tx

    async def store_file(self, provider_address, cid, size_milli_units, step=None):
        tx = self.chain.record("store_file", provider_address, cid, size_milli_units)
        key = (self._key(provider_address), self._key())
        allocation = self.chain.allocations.get(key)
        units = self.chain.accounting.milli_to_allocation_units(size_milli_units)
        if allocation is None or allocation.used + units > allocation.allocated:
            raise InsufficientCapacityError("Ledger rejected: InsufficientStorage", step=step)
        allocation.used += units
        self.chain.files[cid] = FileDetails(provider=provider_address, owner=self._address, size=size_milli_units)
        return tx

    async def distribute_mining_rewards(self, step=None):
        tx = self.chain.record("distribute_mining_rewards")
        self.chain.balances[self._key()] = self.chain.balance(self._address) + self.chain.reward
        return tx

    async def get_file_details(self, cid):
        self.chain.record("get_file_details", cid)
        return self.chain.files.get(cid, FileDetails(provider=ZERO_ACCOUNT, owner=ZERO_ACCOUNT, size=0))

    async def get_client_allocation(self, provider_address, client_address=None):
        self.chain.record("get_client_allocation", provider_address, client_address)
        return self.chain.allocations.get(
            (self._key(provider_address), self._key(client_address)), ClientAllocation()
        )

    async def balance_of(self, address=None):
        self.chain.record("balance_of", address)
        return self.chain.balance(address or self._address)


class FakeIndex:
    """In-memory metadata index with the MetadataIndex interface."""

    def __init__(self, clock: FakeClock, heartbeat_window: float = HEARTBEAT_WINDOW):
        self.clock = clock
        self.heartbeat_window = heartbeat_window
        self.providers: Dict[str, ProviderRecord] = {}
        self.files: Dict[str, StoredFileRecord] = {}
        self.calls: List[str] = []
        self.failures: Dict[str, Exception] = {}

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]

    async def upsert_provider(self, record):
        self._call("upsert_provider")
        record = record.model_copy(update={"last_updated": record.last_updated or self.clock()})
        self.providers[record.provider_id] = record
        return record

    async def update_provider_capacity(self, provider_id, allocated, available, active=True, price=None):
        self._call("update_provider_capacity")
        changes = {
            "allocated_storage": allocated,
            "available_storage": available,
            "total_storage": allocated,
            "is_active": active,
            "last_updated": self.clock(),
        }
        if price is not None:
            changes["price_per_gb"] = price
        self.providers[provider_id] = self.providers[provider_id].model_copy(update=changes)

    async def deactivate_provider(self, provider_id):
        self._call("deactivate_provider")
        self.providers[provider_id] = self.providers[provider_id].model_copy(
            update={"is_active": False, "last_updated": self.clock()}
        )

    async def get_provider(self, provider_id):
        self._call("get_provider")
        return self.providers.get(provider_id)

    async def list_active_providers(self):
        self._call("list_active_providers")
        now = self.clock()
        live = [p for p in self.providers.values() if p.is_live(now, self.heartbeat_window)]
        return sorted(live, key=lambda p: (-p.last_updated.timestamp(), p.provider_id))

    async def insert_file(self, record):
        self._call("insert_file")
        if record.cid in self.files:
            raise DuplicateKeyError(f"Duplicate key in stored_files: {record.cid}")
        self.files[record.cid] = record

    async def get_file(self, cid):
        self._call("get_file")
        return self.files.get(cid)

    async def list_files_for_provider(self, provider_id):
        self._call("list_files_for_provider")
        return [f for f in self.files.values() if f.provider_id == provider_id]

    async def list_files_for_client(self, client_address):
        self._call("list_files_for_client")
        return [f for f in self.files.values() if f.client_address == client_address]


def fake_cid(data: bytes) -> str:
    """CIDv0 of ``data``: base58 sha2-256 multihash."""
    return base58.b58encode(b"\x12\x20" + hashlib.sha256(data).digest()).decode("ascii")


class FakeContentStore:
    """In-memory content-addressed blob store with the ContentStoreClient interface."""

    api_url = "http://127.0.0.1:5001"

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.calls: List[str] = []
        self.failures: Dict[str, Exception] = {}
        self.online = True

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]

    async def add_bytes(self, data, filename="file"):
        self._call("add_bytes")
        cid = fake_cid(data)
        self.blobs[cid] = data
        return cid

    async def cat(self, cid):
        self._call("cat")
        if cid not in self.blobs:
            raise ContentStoreError(f"Content store rejected cat: 500 block not found {cid}")
        return self.blobs[cid]

    async def is_online(self):
        return self.online

    async def close(self):
        pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def accounting():
    return SizeAccounting(bytes_per_unit=BYTES_PER_UNIT)


@pytest.fixture
def engine():
    return EncryptionEngine(cipher="secretbox", iterations=1000)


@pytest.fixture
def chain(accounting):
    return FakeChain(accounting)


@pytest.fixture
def index(clock):
    return FakeIndex(clock)


@pytest.fixture
def content_store():
    return FakeContentStore()


@pytest.fixture
def registry(tmp_path, clock):
    return ProviderRegistry(path=str(tmp_path / "providers.json"), clock=clock, window=HEARTBEAT_WINDOW)


@pytest.fixture
def provider_record(chain, index, clock):
    """A provider registered with 10 units at 10 tokens per unit, live in the index."""
    chain.providers[normalize_account(PROVIDER)] = (10.0, 10.0)
    record = ProviderRecord(
        provider_id=provider_id_for_address(PROVIDER),
        wallet_address=PROVIDER,
        allocated_storage=10,
        available_storage=10,
        total_storage=10,
        price_per_gb=10,
        is_active=True,
        last_updated=clock(),
    )
    index.providers[record.provider_id] = record
    return record


def make_orchestrator(chain, index, content_store, engine, accounting, address=ALICE, secret="alice secret"):
    return StorageOrchestrator(
        ledger=FakeLedger(chain, address),
        index=index,
        content_store=content_store,
        credentials=SimpleNamespace(address=address, secret=secret),
        encryption=engine,
        accounting=accounting,
    )


@pytest.fixture
def alice(chain, index, content_store, engine, accounting):
    chain.fund(ALICE, 50)
    return make_orchestrator(chain, index, content_store, engine, accounting, ALICE, "alice secret")


@pytest.fixture
def bob(chain, index, content_store, engine, accounting):
    chain.fund(BOB, 50)
    return make_orchestrator(chain, index, content_store, engine, accounting, BOB, "bob secret")


@pytest.fixture
def write_file(tmp_path):
    """Create a file of ``size`` bytes and return its path."""

    def _write(size: int, name: str = "payload.bin") -> str:
        path = tmp_path / name
        path.write_bytes(bytes(i % 251 for i in range(size)))
        return str(path)

    return _write
