"""
Configuration management for the DePIN storage client.

This module handles loading and saving configuration from the user's home directory,
specifically in ~/.depin/config.json (or $DEPIN_CONFIG_DIR/config.json).
"""

import copy
import json
import logging
import os
from typing import Any, Dict

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Define constants
CONFIG_DIR = os.path.expanduser(os.getenv("DEPIN_CONFIG_DIR", "~/.depin"))
CONFIG_FILE = os.path.join(CONFIG_DIR, "config.json")
DEFAULT_CONFIG = {
    "ledger": {
        "url": "ws://127.0.0.1:9944",
        "storage_contract": None,
        "storage_contract_metadata": None,
        "token_contract": None,
        "token_contract_metadata": None,
        "timeout": 30,
        "ss58_format": 42,
    },
    "ipfs": {
        "api_url": "http://127.0.0.1:5001",
        "timeout": 30,
    },
    "index": {
        "url": None,
        "api_key": None,
        "timeout": 30,
    },
    "accounting": {
        "bytes_per_unit": 1024 * 1024 * 1024,  # 1 GiB
        "size_policy": "ceil_min_one",
    },
    "provider": {
        "price_per_unit": 10,
        "reconcile_interval": 300,
        "reward_interval": 300,
        "heartbeat_window": 300,
        "providers_cache": None,  # Defaults to <config dir>/providers.json
    },
    "discovery": {
        "max_retries": 3,
        "retry_delay": 5,
    },
    "keystore": {
        "path": None,  # Defaults to <config dir>/keystore.json
    },
}

# Environment variable -> (section, key, converter)
ENV_OVERRIDES = {
    "LEDGER_URL": ("ledger", "url", str),
    "STORAGE_CONTRACT_ADDRESS": ("ledger", "storage_contract", str),
    "STORAGE_CONTRACT_METADATA": ("ledger", "storage_contract_metadata", str),
    "TOKEN_CONTRACT_ADDRESS": ("ledger", "token_contract", str),
    "TOKEN_CONTRACT_METADATA": ("ledger", "token_contract_metadata", str),
    "LEDGER_TIMEOUT": ("ledger", "timeout", float),
    "IPFS_API_URL": ("ipfs", "api_url", str),
    "IPFS_TIMEOUT": ("ipfs", "timeout", float),
    "SUPABASE_URL": ("index", "url", str),
    "SUPABASE_ANON_KEY": ("index", "api_key", str),
    "DEPIN_SIZE_POLICY": ("accounting", "size_policy", str),
    "DEPIN_PRICE_PER_UNIT": ("provider", "price_per_unit", float),
    "DEPIN_KEYSTORE_PATH": ("keystore", "path", str),
}


def ensure_config_dir() -> None:
    """Create configuration directory if it doesn't exist."""
    if not os.path.exists(CONFIG_DIR):
        try:
            os.makedirs(CONFIG_DIR, exist_ok=True)
            logger.info(f"Created configuration directory: {CONFIG_DIR}")
        except OSError as e:
            logger.warning(f"Could not create configuration directory: {e}")


def load_config() -> Dict[str, Any]:
    """
    Load configuration from the config file.

    If the file doesn't exist, create it with default values.

    Returns:
        Dict[str, Any]: The configuration dictionary
    """
    ensure_config_dir()

    if not os.path.exists(CONFIG_FILE):
        save_config(DEFAULT_CONFIG)
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        with open(CONFIG_FILE, "r") as f:
            config = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Could not load configuration file, using defaults: {e}")
        return copy.deepcopy(DEFAULT_CONFIG)

    # Ensure all config sections and keys exist (for backward compatibility)
    for section, defaults in DEFAULT_CONFIG.items():
        merged = dict(defaults)
        merged.update(config.get(section) or {})
        config[section] = merged

    return config


def save_config(config: Dict[str, Any]) -> bool:
    """
    Save configuration to the config file.

    Args:
        config: The configuration dictionary to save

    Returns:
        bool: True if save was successful, False otherwise
    """
    ensure_config_dir()

    try:
        with open(CONFIG_FILE, "w") as f:
            json.dump(config, f, indent=2)
        return True
    except OSError as e:
        logger.warning(f"Could not save configuration file: {e}")
        return False


def get_config_value(section: str, key: str, default: Any = None) -> Any:
    """
    Get a configuration value from a specific section.

    Args:
        section: The configuration section
        key: The configuration key
        default: Default value if not found or unset

    Returns:
        Any: The configuration value or default
    """
    value = load_config().get(section, {}).get(key)
    return default if value is None else value


def set_config_value(section: str, key: str, value: Any) -> bool:
    """
    Set a configuration value in a specific section.

    Args:
        section: The configuration section
        key: The configuration key
        value: The value to set

    Returns:
        bool: True if save was successful, False otherwise
    """
    config = load_config()
    config.setdefault(section, {})[key] = value
    return save_config(config)


def get_keystore_path() -> str:
    """Path of the encrypted credential file."""
    return os.path.expanduser(
        get_config_value("keystore", "path", os.path.join(CONFIG_DIR, "keystore.json"))
    )


def get_providers_cache_path() -> str:
    """Path of the local provider liveness cache."""
    return os.path.expanduser(
        get_config_value(
            "provider", "providers_cache", os.path.join(CONFIG_DIR, "providers.json")
        )
    )


def initialize_from_env() -> None:
    """
    Initialize configuration from environment variables.

    Values from a .env file are picked up as well.
    """
    load_dotenv()

    config = load_config()
    changed = False

    for env_name, (section, key, convert) in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if not raw:
            continue
        try:
            config[section][key] = convert(raw)
            changed = True
        except ValueError:
            logger.warning(f"Ignoring invalid value for {env_name}: {raw!r}")

    if changed:
        save_config(config)


def get_all_config() -> Dict[str, Any]:
    """
    Get the complete configuration.

    Returns:
        Dict[str, Any]: The full configuration dictionary
    """
    return load_config()


def reset_config() -> bool:
    """
    Reset configuration to default values.

    Returns:
        bool: True if reset was successful, False otherwise
    """
    return save_config(copy.deepcopy(DEFAULT_CONFIG))
