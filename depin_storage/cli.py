#!/usr/bin/env python3
"""
Command Line Interface for depin-storage.

Providers sell storage with ``start-mining``; clients buy it and store
encrypted files with ``upload`` and get them back with ``download``.
"""

import asyncio
import inspect
import sys
from typing import Callable, List, Optional

from depin_storage import cli_handlers
from depin_storage.cli_parser import create_parser, get_subparser, parse_arguments
from depin_storage.cli_rich import TITLE, console, error, print_help_text, setup_logging
from depin_storage.config import initialize_from_env
from depin_storage.errors import StorageError

# Commands that talk to the ledger, the index or the content store
CLIENT_COMMANDS = {
    "start-mining",
    "providers",
    "upload",
    "download",
    "summary",
    "register-file",
    "balance",
}


async def _run_with_client(handler: Callable, args, *handler_args, **handler_kwargs) -> int:
    client = cli_handlers.create_client(args)
    try:
        return await handler(client, *handler_args, **handler_kwargs)
    finally:
        await client.close()


def run_async_handler(handler_func: Callable, *args, **kwargs) -> int:
    """Run a handler, on an event loop if it is a coroutine function."""
    if inspect.iscoroutinefunction(handler_func):
        return asyncio.run(handler_func(*args, **kwargs))
    return handler_func(*args, **kwargs)


def dispatch(args) -> int:
    """Route parsed arguments to their handler and return its exit code."""
    command = args.command

    if command in CLIENT_COMMANDS:
        if command == "start-mining":
            return run_async_handler(
                _run_with_client,
                cli_handlers.handle_start_mining,
                args,
                args.storage,
                price=args.price,
                storage_path=args.storage_path,
            )
        if command == "providers":
            return run_async_handler(_run_with_client, cli_handlers.handle_providers, args)
        if command == "upload":
            return run_async_handler(
                _run_with_client,
                cli_handlers.handle_upload,
                args,
                args.file_path,
                provider=args.provider,
                amount=args.amount,
            )
        if command == "download":
            return run_async_handler(
                _run_with_client, cli_handlers.handle_download, args, args.cid, args.output_path
            )
        if command == "summary":
            return run_async_handler(_run_with_client, cli_handlers.handle_summary, args, args.provider)
        if command == "register-file":
            return run_async_handler(
                _run_with_client,
                cli_handlers.handle_register_file,
                args,
                args.cid,
                args.provider_address,
                args.size,
            )
        return run_async_handler(_run_with_client, cli_handlers.handle_balance, args)

    if command == "keystore":
        action = getattr(args, "keystore_action", None)
        if action == "save":
            return cli_handlers.handle_keystore_save(args.secret, args.password)
        if action == "new":
            return cli_handlers.handle_keystore_new(args.password)
        if action == "address":
            return cli_handlers.handle_keystore_address()
        if action == "clear":
            return cli_handlers.handle_keystore_clear()
        print_help_text(get_subparser("keystore"))
        return 1

    if command == "config":
        action = getattr(args, "config_action", None)
        if action == "get":
            return cli_handlers.handle_config_get(args.section, args.key)
        if action == "set":
            return cli_handlers.handle_config_set(args.section, args.key, args.value)
        if action == "list":
            return cli_handlers.handle_config_list()
        if action == "reset":
            return cli_handlers.handle_config_reset()
        print_help_text(get_subparser("config"))
        return 1

    console.print(TITLE, style="bold cyan")
    print_help_text(create_parser())
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point for the depin-storage command."""
    initialize_from_env()
    args = parse_arguments(argv)
    setup_logging(args.verbose)

    try:
        return dispatch(args)
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        return 1
    except StorageError as e:
        error(str(e))
        return 1
    except Exception as e:
        error(f"Unexpected error: {e}")
        if args.verbose:
            console.print_exception()
        return 1


if __name__ == "__main__":
    sys.exit(main())
