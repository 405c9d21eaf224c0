#!/usr/bin/env python3
"""
Command Line Interface handlers for depin-storage.

Each handler renders its result with Rich and returns a process exit code.
"""

import getpass
import json
import os
from typing import Any, Optional

from depin_storage.accounting import from_base_units
from depin_storage.cli_rich import (
    console,
    error,
    info,
    log,
    print_panel,
    print_steps,
    print_table,
    success,
    warning,
)
from depin_storage.client import StorageClient
from depin_storage.config import (
    get_all_config,
    get_config_value,
    reset_config,
    set_config_value,
)
from depin_storage.errors import StorageError
from depin_storage.keystore import (
    PASSWORD_ENV,
    clear_private_key,
    generate_mnemonic,
    get_stored_address,
    keypair_from_secret,
    save_private_key,
)
from depin_storage.orchestrator import (
    DOWNLOAD_STEPS,
    REGISTER_FILE,
    UPLOAD_STEPS,
    DownloadProgress,
    UploadProgress,
)
from depin_storage.utils import format_size, format_storage_size


def create_client(args: Any) -> StorageClient:
    """Create a StorageClient from command line arguments."""
    return StorageClient(
        password=getattr(args, "password", None),
        ledger_url=getattr(args, "ledger_url", None),
        index_url=getattr(args, "index_url", None),
        ipfs_api_url=getattr(args, "api_url", None),
    )


def _report_failure(e: StorageError) -> None:
    error(str(e))
    progress = e.progress
    if isinstance(progress, UploadProgress):
        print_steps(list(UPLOAD_STEPS), progress.completed_steps, e.step)
        if progress.cid and e.step == REGISTER_FILE:
            info(
                "The file is published and indexed. Re-run the registration with:\n"
                f"  depin-storage register-file {progress.cid} "
                f"{progress.provider_address} {progress.size_milli_units}"
            )
        elif progress.cid:
            warning(f"Content {progress.cid} was published but not fully registered")
    elif isinstance(progress, DownloadProgress):
        print_steps(list(DOWNLOAD_STEPS), progress.completed_steps, e.step)


def _prompt_new_password(password: Optional[str]) -> str:
    password = password or os.getenv(PASSWORD_ENV)
    if password:
        return password
    password = getpass.getpass("Enter a password to encrypt the keystore: ")
    if password != getpass.getpass("Confirm password: "):
        raise StorageError("Passwords do not match")
    return password


#
# Provider Handlers
#


async def handle_start_mining(
    client: StorageClient,
    storage: float,
    price: Optional[float] = None,
    storage_path: str = ".",
) -> int:
    """Register as a provider and run the reconciliation loop until interrupted."""
    try:
        node = client.provider_node(storage_path)
        if price is not None:
            node.price = price

        with console.status("[bold blue]Registering provider on the ledger and index..."):
            record = await node.start(storage)

        print_panel(
            "\n".join(
                [
                    f"Provider ID: [bold]{record.provider_id}[/bold]",
                    f"Wallet Address: {record.wallet_address}",
                    f"Allocated Storage: {format_storage_size(record.allocated_storage)}",
                    f"Price per unit: {record.price_per_gb} tokens",
                ]
            ),
            title="Provider service started",
        )
        info("Press Ctrl+C to stop; the provider is deactivated on exit")

        await node.serve()
        success("Provider stopped")
        return 0
    except StorageError as e:
        _report_failure(e)
        return 1


async def handle_providers(client: StorageClient) -> int:
    """List live providers."""
    try:
        providers = await client.list_providers()
    except StorageError as e:
        _report_failure(e)
        return 1

    print_table(
        f"Live providers ({len(providers)})",
        [
            {
                "ID": p.provider_id,
                "Address": p.wallet_address,
                "Available": format_storage_size(p.available_storage),
                "Price/unit": p.price_per_gb,
                "Last seen": p.last_updated.strftime("%Y-%m-%d %H:%M:%S") if p.last_updated else "",
            }
            for p in providers
        ],
        ["ID", "Address", "Available", "Price/unit", "Last seen"],
    )
    return 0


#
# Client Handlers
#


async def handle_upload(
    client: StorageClient,
    file_path: str,
    provider: Optional[str] = None,
    amount: Optional[int] = None,
) -> int:
    """Buy storage, encrypt and store a file."""
    if not os.path.exists(file_path):
        error(f"File {file_path} not found")
        return 1

    try:
        with console.status(f"[bold blue]Uploading {os.path.basename(file_path)}..."):
            result = await client.upload_file(file_path, provider=provider, amount_units=amount)
    except StorageError as e:
        _report_failure(e)
        return 1

    print_panel(
        "\n".join(
            [
                f"CID: [bold yellow]{result.cid}[/bold yellow]",
                f"File: {result.file_name} ({format_size(result.size_bytes)})",
                f"Provider: {result.provider_id} ({result.provider_address})",
                f"Purchased: {result.amount_units} units for {from_base_units(result.cost)} tokens",
                f"Registered size: {result.size_milli_units} milli-units",
            ]
        ),
        title="File uploaded and registered",
    )
    warning("Store this CID safely; it is the only way to retrieve the file")
    return 0


async def handle_download(client: StorageClient, cid: str, output_path: Optional[str] = None) -> int:
    """Verify ownership, fetch and decrypt a file."""
    try:
        with console.status(f"[bold blue]Downloading {cid}..."):
            result = await client.download_file(cid, output_path)
    except StorageError as e:
        _report_failure(e)
        return 1

    success(f"Saved {result.file_name} ({format_size(result.size_bytes)}) to {result.output_path}")
    return 0


async def handle_summary(client: StorageClient, provider: str) -> int:
    """Show the client's allocation with one provider."""
    try:
        summary = await client.storage_summary(provider)
    except StorageError as e:
        _report_failure(e)
        return 1

    print_panel(
        "\n".join(
            [
                f"Provider: {summary.provider_id} ({summary.provider_address})",
                f"Allocated: {format_storage_size(summary.allocated)}",
                f"Used: {format_storage_size(summary.used)} in {summary.file_count} file(s)",
                f"Available: {format_storage_size(summary.available)}",
                f"Paid: {from_base_units(summary.paid)} tokens",
            ]
        ),
        title="Storage summary",
    )
    return 0


async def handle_register_file(client: StorageClient, cid: str, provider_address: str, size: int) -> int:
    """Re-run the ledger registration of a published file."""
    try:
        tx_hash = await client.retry_register(cid, provider_address, size)
    except StorageError as e:
        _report_failure(e)
        return 1

    success(f"Registered {cid} on the ledger in {tx_hash}")
    return 0


async def handle_balance(client: StorageClient) -> int:
    try:
        balance = await client.balance()
    except StorageError as e:
        _report_failure(e)
        return 1

    log(f"Balance: [bold]{from_base_units(balance)}[/bold] tokens")
    return 0


#
# Keystore Handlers
#


def handle_keystore_save(secret: Optional[str] = None, password: Optional[str] = None) -> int:
    """Encrypt and save a wallet secret."""
    try:
        if not secret:
            secret = getpass.getpass("Enter your wallet secret (mnemonic, //URI or 0x seed): ").strip()
        keypair_from_secret(secret)
        address = save_private_key(secret, _prompt_new_password(password))
    except StorageError as e:
        error(str(e))
        return 1

    success(f"Saved encrypted credential for [bold]{address}[/bold]")
    return 0


def handle_keystore_new(password: Optional[str] = None) -> int:
    """Generate a mnemonic, show it once and save it."""
    mnemonic = generate_mnemonic()
    try:
        address = save_private_key(mnemonic, _prompt_new_password(password))
    except StorageError as e:
        error(str(e))
        return 1

    print_panel(f"[bold yellow]{mnemonic}[/bold yellow]", title="New mnemonic")
    warning("Write this mnemonic down. It will not be shown again.")
    success(f"Saved encrypted credential for [bold]{address}[/bold]")
    return 0


def handle_keystore_address() -> int:
    try:
        address = get_stored_address()
    except StorageError as e:
        error(str(e))
        return 1

    if address is None:
        warning("No credential saved. Use 'depin-storage keystore save' or 'keystore new'")
        return 1
    log(f"Address: [bold]{address}[/bold]")
    return 0


def handle_keystore_clear() -> int:
    try:
        removed = clear_private_key()
    except StorageError as e:
        error(str(e))
        return 1

    if removed:
        success("Keystore deleted")
    else:
        info("No keystore to delete")
    return 0


#
# Configuration Handlers
#


def handle_config_get(section: str, key: str) -> int:
    """Handle the config get command"""
    value = get_config_value(section, key)
    log(f"[bold cyan]{section}[/bold cyan].[bold green]{key}[/bold green] = [bold]{value}[/bold]")
    return 0


def handle_config_set(section: str, key: str, value: str) -> int:
    """Handle the config set command"""
    # Numbers, booleans and null are stored as JSON values, anything else as a string
    try:
        parsed = json.loads(value)
    except ValueError:
        parsed = value

    if not set_config_value(section, key, parsed):
        error("Could not save configuration")
        return 1
    success(f"Set [bold cyan]{section}[/bold cyan].[bold green]{key}[/bold green] = [bold]{parsed}[/bold]")
    return 0


def handle_config_list() -> int:
    """Handle the config list command"""
    config_lines = ["Current configuration:"]
    for section, values in get_all_config().items():
        config_lines.append(f"\n[bold cyan]{section}[/bold cyan]")
        for key, value in values.items():
            config_lines.append(f"  [bold green]{key}[/bold green] = [bold]{value}[/bold]")

    print_panel("\n".join(config_lines), title="Configuration")
    return 0


def handle_config_reset() -> int:
    """Handle the config reset command"""
    if not reset_config():
        error("Could not reset configuration")
        return 1
    success("Configuration reset to default values")
    return 0
