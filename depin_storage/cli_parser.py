#!/usr/bin/env python3
"""
Command Line Interface argument parser for depin-storage.

This module defines all available commands, subcommands and their arguments.
"""

import argparse
from typing import List, Optional

from depin_storage.config import get_config_value


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the CLI."""
    from depin_storage.cli_rich import RichHelpAction

    parser = argparse.ArgumentParser(
        prog="depin-storage",
        description="Buy storage from independent providers and store encrypted files on IPFS",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,  # Disable the default help action
        epilog="""
examples:
  # Offer 10 GB of storage as a provider
  depin-storage start-mining --storage 10

  # List live providers
  depin-storage providers

  # Buy 2 units from a provider and upload a file
  depin-storage upload report.pdf --provider 1a2b3c4d --amount 2

  # Download and decrypt a file you own
  depin-storage download QmHash ./report.pdf

  # Re-run the ledger registration of a published file
  depin-storage register-file QmHash 5F...provider 500

  # Save your wallet secret in the encrypted keystore
  depin-storage keystore save
""",
    )

    parser.add_argument(
        "-h", "--help", action=RichHelpAction, help="Show this help message and exit"
    )

    # Optional arguments for all commands
    parser.add_argument(
        "--ledger-url",
        default=None,
        help=f"Ledger node WebSocket URL (default: from config or {get_config_value('ledger', 'url')})",
    )
    parser.add_argument(
        "--api-url",
        default=None,
        help=f"IPFS API URL (default: from config or {get_config_value('ipfs', 'api_url')})",
    )
    parser.add_argument(
        "--index-url",
        default=None,
        help="Metadata index URL (default: from config or SUPABASE_URL)",
    )
    parser.add_argument(
        "--password",
        help="Keystore password (will prompt if required and not provided)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose debug output",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    add_provider_commands(subparsers)
    add_client_commands(subparsers)
    add_keystore_commands(subparsers)
    add_config_commands(subparsers)

    return parser


def add_provider_commands(subparsers):
    """Add provider commands to the parser."""
    mining_parser = subparsers.add_parser(
        "start-mining", help="Register as a storage provider and keep capacity reconciled"
    )
    mining_parser.add_argument(
        "--storage",
        type=float,
        required=True,
        help="Storage to offer, in allocation units (GB)",
    )
    mining_parser.add_argument(
        "--price",
        type=float,
        default=None,
        help="Price in tokens per unit (default: from config)",
    )
    mining_parser.add_argument(
        "--storage-path",
        default=".",
        help="Directory on the filesystem that backs the storage (default: current directory)",
    )

    subparsers.add_parser("providers", help="List live storage providers")


def add_client_commands(subparsers):
    """Add client commands to the parser."""
    upload_parser = subparsers.add_parser(
        "upload", help="Buy storage, encrypt a file and store it with a provider"
    )
    upload_parser.add_argument("file_path", help="Path to the file to upload")
    upload_parser.add_argument(
        "--provider",
        help="Provider id (default: the most recently seen live provider)",
    )
    upload_parser.add_argument(
        "--amount",
        type=int,
        default=None,
        help="Whole units of storage to buy (default: the minimum that holds the file)",
    )

    download_parser = subparsers.add_parser(
        "download", help="Verify ownership, download and decrypt a file"
    )
    download_parser.add_argument("cid", help="CID of the file")
    download_parser.add_argument(
        "output_path", nargs="?", default=None, help="Where to save the file (default: original name)"
    )

    summary_parser = subparsers.add_parser(
        "summary", help="Show your storage allocation with a provider"
    )
    summary_parser.add_argument("provider", help="Provider id")

    register_parser = subparsers.add_parser(
        "register-file", help="Register an already published file on the ledger"
    )
    register_parser.add_argument("cid", help="CID of the published file")
    register_parser.add_argument("provider_address", help="Wallet address of the provider")
    register_parser.add_argument("size", type=int, help="File size in milli-units")

    subparsers.add_parser("balance", help="Show your token balance")


def add_keystore_commands(subparsers):
    """Add credential commands to the parser."""
    keystore_parser = subparsers.add_parser("keystore", help="Manage the encrypted wallet keystore")
    keystore_subparsers = keystore_parser.add_subparsers(
        dest="keystore_action", help="Keystore action"
    )

    save_parser = keystore_subparsers.add_parser(
        "save", help="Encrypt and save a wallet secret (prompted if not given)"
    )
    save_parser.add_argument("--secret", help="Mnemonic, //URI or 0x seed (avoid: shell history)")

    keystore_subparsers.add_parser("new", help="Generate a new mnemonic and save it")
    keystore_subparsers.add_parser("address", help="Show the address of the saved credential")
    keystore_subparsers.add_parser("clear", help="Delete the saved credential")


def add_config_commands(subparsers):
    """Add configuration commands to the parser."""
    config_parser = subparsers.add_parser("config", help="Manage configuration")
    config_subparsers = config_parser.add_subparsers(
        dest="config_action", help="Configuration action"
    )

    get_parser = config_subparsers.add_parser("get", help="Get a configuration value")
    get_parser.add_argument(
        "section",
        help="Configuration section (ledger, ipfs, index, accounting, provider, discovery, keystore)",
    )
    get_parser.add_argument("key", help="Configuration key")

    set_parser = config_subparsers.add_parser("set", help="Set a configuration value")
    set_parser.add_argument("section", help="Configuration section")
    set_parser.add_argument("key", help="Configuration key")
    set_parser.add_argument("value", help="Configuration value")

    config_subparsers.add_parser("list", help="List all configuration values")
    config_subparsers.add_parser("reset", help="Reset configuration to default values")


def get_subparser(command: str) -> argparse.ArgumentParser:
    """Get the subparser for a specific command."""
    parser = create_parser()
    return parser._subparsers._group_actions[0].choices[command]


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = create_parser()
    return parser.parse_args(argv)
