"""
Ledger client for the storage marketplace and token contracts.

Both contracts are ink! contracts reached through substrate-interface. Every
mutating message is dry-run first to estimate gas and surface contract
errors, then signed, submitted and awaited until finalized.
"""

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel
from substrateinterface import ContractInstance, Keypair, SubstrateInterface
from substrateinterface.exceptions import (
    ContractReadFailedException,
    SubstrateRequestException,
)
from websocket import WebSocketException

from depin_storage.accounting import to_base_units
from depin_storage.config import get_config_value
from depin_storage.errors import (
    ConfigurationError,
    InsufficientBalanceError,
    InsufficientCapacityError,
    LedgerConnectionError,
    LedgerTransactionError,
)
from depin_storage.utils import ZERO_ACCOUNT_HEX, is_zero_account

logger = logging.getLogger(__name__)

CAPACITY_ERRORS = {"InsufficientCapacity", "InsufficientStorage"}
BALANCE_ERRORS = {"InsufficientBalance", "InsufficientAllowance", "TransferFailed"}


class FileDetails(BaseModel):
    """What the marketplace contract records for a CID. ``size`` is in milli-units."""

    provider: str
    owner: str
    size: int = 0

    @property
    def exists(self) -> bool:
        return not is_zero_account(self.owner)

    @property
    def has_provider(self) -> bool:
        return not is_zero_account(self.provider)


class ClientAllocation(BaseModel):
    """A client's purchased allocation with one provider, in whole units."""

    allocated: int = 0
    used: int = 0
    paid: int = 0
    last_payment_time: int = 0

    @property
    def available(self) -> int:
        return max(self.allocated - self.used, 0)


def _unwrap(value: Any) -> Any:
    """
    Strip the ``{"Ok": ...}`` envelopes ink! wraps message results in.

    Raises:
        LedgerTransactionError: Carrying the contract error name if an ``Err`` is found
    """
    while isinstance(value, dict) and len(value) == 1:
        if "Ok" in value:
            value = value["Ok"]
        elif "Err" in value:
            raise LedgerTransactionError(
                f"Contract returned error: {value['Err']}", reason=_error_name(value["Err"])
            )
        else:
            break
    return value


def _error_name(error: Any) -> str:
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        if "name" in error:
            return str(error["name"])
        if len(error) == 1:
            key, inner = next(iter(error.items()))
            # Custom(String) style errors carry the useful name inside
            return _error_name(inner) if key in ("Custom", "Module") else str(key)
    return str(error)


def _map_contract_error(error: LedgerTransactionError, step: Optional[str]) -> Exception:
    reason = error.reason or ""
    if reason in CAPACITY_ERRORS:
        return InsufficientCapacityError(f"Ledger rejected: {reason}", step=step)
    if reason in BALANCE_ERRORS:
        return InsufficientBalanceError(f"Ledger rejected: {reason}", step=step)
    error.step = step
    return error


class LedgerClient:
    """
    Client for the marketplace and token contracts.

    The connection is opened lazily on first use. Calls are blocking RPC
    round-trips inside async methods, so two coroutines sharing one client
    never interleave on the websocket.
    """

    def __init__(
        self,
        keypair: Optional[Keypair] = None,
        url: Optional[str] = None,
        storage_contract: Optional[str] = None,
        storage_metadata: Optional[str] = None,
        token_contract: Optional[str] = None,
        token_metadata: Optional[str] = None,
        timeout: Optional[float] = None,
        ss58_format: Optional[int] = None,
    ):
        """
        Initialize the ledger client.

        Args:
            keypair: Signing keypair; read-only operations work without one
            url: WebSocket URL of the node (from config if None)
            storage_contract: Marketplace contract address (from config if None)
            storage_metadata: Path to the marketplace contract metadata JSON (from config if None)
            token_contract: Token contract address (from config if None)
            token_metadata: Path to the token contract metadata JSON (from config if None)
            timeout: Websocket timeout in seconds (from config if None)
            ss58_format: Address format (from config if None)
        """
        self.url = url or get_config_value("ledger", "url", "ws://127.0.0.1:9944")
        self.storage_contract_address = storage_contract or get_config_value("ledger", "storage_contract")
        self.storage_metadata = storage_metadata or get_config_value("ledger", "storage_contract_metadata")
        self.token_contract_address = token_contract or get_config_value("ledger", "token_contract")
        self.token_metadata = token_metadata or get_config_value("ledger", "token_contract_metadata")
        self.timeout = float(timeout if timeout is not None else get_config_value("ledger", "timeout", 30))
        self.ss58_format = ss58_format if ss58_format is not None else get_config_value("ledger", "ss58_format", 42)

        self._keypair = keypair
        self._substrate: Optional[SubstrateInterface] = None
        self._contracts: Dict[str, ContractInstance] = {}

    @property
    def keypair(self) -> Optional[Keypair]:
        return self._keypair

    @keypair.setter
    def keypair(self, keypair: Keypair) -> None:
        self._keypair = keypair

    @property
    def address(self) -> str:
        if self._keypair is None:
            raise ConfigurationError("No signing credential loaded")
        return self._keypair.ss58_address

    def connect(self) -> SubstrateInterface:
        """
        Open the websocket connection if it is not open yet.

        Raises:
            LedgerConnectionError: If the node cannot be reached
        """
        if self._substrate is not None:
            return self._substrate

        logger.info(f"Connecting to ledger node at {self.url}")
        try:
            self._substrate = SubstrateInterface(
                url=self.url,
                ss58_format=self.ss58_format,
                ws_options={"timeout": self.timeout},
            )
        except (ConnectionError, OSError, WebSocketException) as e:
            raise LedgerConnectionError(f"Could not connect to ledger node at {self.url}: {e}")
        return self._substrate

    def close(self) -> None:
        if self._substrate is not None:
            self._substrate.close()
            self._substrate = None
            self._contracts = {}

    def _contract(self, name: str) -> ContractInstance:
        if name in self._contracts:
            return self._contracts[name]

        if name == "storage":
            address, metadata = self.storage_contract_address, self.storage_metadata
        else:
            address, metadata = self.token_contract_address, self.token_metadata
        if not address or not metadata:
            raise ConfigurationError(
                f"The {name} contract address and metadata file must be configured"
            )

        self._contracts[name] = ContractInstance.create_from_address(
            contract_address=address,
            metadata_file=metadata,
            substrate=self.connect(),
        )
        return self._contracts[name]

    def _signer(self) -> Keypair:
        if self._keypair is None:
            raise ConfigurationError("A signing credential is required for ledger transactions")
        return self._keypair

    def _read(self, contract: str, method: str, args: Optional[Dict[str, Any]] = None) -> Any:
        """Dry-run a message and return its decoded, unwrapped result."""
        instance = self._contract(contract)
        # Queries need an origin but no signature; use the zero account when no key is loaded
        origin = self._keypair or Keypair(public_key=bytes.fromhex(ZERO_ACCOUNT_HEX), ss58_format=self.ss58_format)
        try:
            result = instance.read(origin, method, args=args or {})
        except (ConnectionError, OSError, WebSocketException) as e:
            raise LedgerConnectionError(f"Ledger unreachable during {method}: {e}")
        except (ContractReadFailedException, SubstrateRequestException) as e:
            raise LedgerTransactionError(f"Query {method} failed: {e}")
        return _unwrap(result.contract_result_data.value)

    def _exec(
        self,
        contract: str,
        method: str,
        args: Dict[str, Any],
        step: Optional[str] = None,
    ) -> str:
        """
        Dry-run, sign and submit a message, waiting for finalization.

        Returns:
            str: Extrinsic hash
        """
        instance = self._contract(contract)
        keypair = self._signer()

        try:
            dry_run = instance.read(keypair, method, args=args)
            _unwrap(dry_run.contract_result_data.value)

            logger.debug(f"Submitting {method} with gas {dry_run.gas_required}")
            receipt = instance.exec(
                keypair,
                method,
                args=args,
                gas_limit=dry_run.gas_required,
                wait_for_finalization=True,
            )
            # Receipt properties fetch the block events over RPC
            if not receipt.is_success:
                raise LedgerTransactionError(
                    f"{method} failed in block: {receipt.error_message}",
                    reason=_error_name(receipt.error_message),
                )
        except LedgerTransactionError as e:
            raise _map_contract_error(e, step)
        except (ConnectionError, OSError, WebSocketException) as e:
            raise LedgerConnectionError(f"Ledger unreachable during {method}: {e}", step=step)
        except (ContractReadFailedException, SubstrateRequestException) as e:
            raise LedgerTransactionError(f"{method} failed: {e}", step=step)

        logger.info(f"{method} finalized in extrinsic {receipt.extrinsic_hash}")
        return receipt.extrinsic_hash

    # Marketplace messages

    async def register_provider(self, capacity_units: float, price_per_unit: float, step: Optional[str] = None) -> str:
        """
        Register (or re-register) this account as a provider.

        Args:
            capacity_units: Storage offered, in allocation units
            price_per_unit: Price in tokens per unit

        Returns:
            str: Extrinsic hash
        """
        return self._exec(
            "storage",
            "register_provider",
            {
                "storage_amount": to_base_units(capacity_units),
                "price_per_gb": to_base_units(price_per_unit),
            },
            step=step,
        )

    async def approve(self, amount_base_units: int, step: Optional[str] = None) -> str:
        """Allow the marketplace contract to spend ``amount_base_units`` tokens."""
        if not self.storage_contract_address:
            raise ConfigurationError("Storage contract address is not configured")
        return self._exec(
            "token",
            "PSP22::approve",
            {"spender": self.storage_contract_address, "value": int(amount_base_units)},
            step=step,
        )

    async def transfer(self, to_address: str, amount_base_units: int, step: Optional[str] = None) -> str:
        return self._exec(
            "token",
            "PSP22::transfer",
            {"to": to_address, "value": int(amount_base_units), "data": []},
            step=step,
        )

    async def purchase_storage(self, provider_address: str, amount_units: int, step: Optional[str] = None) -> str:
        """
        Buy ``amount_units`` of storage from a provider.

        The token allowance must already cover the cost.
        """
        return self._exec(
            "storage",
            "purchase_storage",
            {"provider": provider_address, "storage_amount": int(amount_units)},
            step=step,
        )

    async def store_file(
        self, provider_address: str, cid: str, size_milli_units: int, step: Optional[str] = None
    ) -> str:
        """Record a stored file against the caller's allocation with a provider."""
        return self._exec(
            "storage",
            "store_file",
            {"provider": provider_address, "cid": cid, "file_size": int(size_milli_units)},
            step=step,
        )

    async def distribute_mining_rewards(self, step: Optional[str] = None) -> str:
        return self._exec("storage", "distribute_mining_rewards", {}, step=step)

    # Queries

    async def get_file_details(self, cid: str) -> FileDetails:
        """
        Look up a CID on the ledger.

        Unknown CIDs are not an error: the zero account comes back as owner
        and provider.
        """
        value = self._read("storage", "get_file_details", {"cid": cid})
        if isinstance(value, dict):
            return FileDetails(
                provider=value.get("provider") or "",
                owner=value.get("owner") or "",
                size=int(value.get("size") or value.get("file_size") or 0),
            )
        if isinstance(value, (list, tuple)) and len(value) == 3:
            provider, owner, size = value
            return FileDetails(provider=provider or "", owner=owner or "", size=int(size or 0))
        return FileDetails(provider="", owner="", size=0)

    async def get_client_allocation(self, provider_address: str, client_address: Optional[str] = None) -> ClientAllocation:
        """Allocation of ``client_address`` (default: this account) with a provider."""
        value = self._read(
            "storage",
            "get_client_storage_details",
            {"provider": provider_address, "client": client_address or self.address},
        )
        if isinstance(value, (list, tuple)):
            value = dict(zip(("allocated", "used", "paid", "last_payment_time"), value))
        if not isinstance(value, dict):
            return ClientAllocation()
        return ClientAllocation(
            allocated=int(value.get("allocated") or value.get("allocated_storage") or 0),
            used=int(value.get("used") or value.get("used_storage") or 0),
            paid=int(value.get("paid") or value.get("paid_amount") or 0),
            last_payment_time=int(value.get("last_payment_time") or 0),
        )

    async def balance_of(self, address: Optional[str] = None) -> int:
        """Token balance in base units."""
        value = self._read("token", "PSP22::balance_of", {"owner": address or self.address})
        return int(value or 0)
