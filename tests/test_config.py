"""
Tests for configuration loading and environment overrides.
"""

import json
import os

from depin_storage import config


def test_first_load_writes_defaults(isolated_config):
    loaded = config.load_config()

    assert loaded == config.DEFAULT_CONFIG
    assert os.path.exists(config.CONFIG_FILE)


def test_set_and_get_value():
    assert config.set_config_value("index", "url", "https://index.test")

    assert config.get_config_value("index", "url") == "https://index.test"
    assert config.get_config_value("index", "missing", "fallback") == "fallback"


def test_unset_value_returns_default():
    assert config.get_config_value("ledger", "storage_contract", "dflt") == "dflt"


def test_missing_sections_are_merged():
    os.makedirs(config.CONFIG_DIR, exist_ok=True)
    with open(config.CONFIG_FILE, "w") as f:
        json.dump({"ledger": {"url": "ws://custom:9944"}}, f)

    loaded = config.load_config()

    assert loaded["ledger"]["url"] == "ws://custom:9944"
    assert loaded["ledger"]["ss58_format"] == 42
    assert loaded["discovery"]["max_retries"] == 3


def test_corrupt_file_falls_back_to_defaults():
    os.makedirs(config.CONFIG_DIR, exist_ok=True)
    with open(config.CONFIG_FILE, "w") as f:
        f.write("{")

    assert config.load_config() == config.DEFAULT_CONFIG


def test_initialize_from_env(monkeypatch):
    monkeypatch.setenv("SUPABASE_URL", "https://env.index.test")
    monkeypatch.setenv("LEDGER_TIMEOUT", "12.5")
    monkeypatch.setenv("DEPIN_PRICE_PER_UNIT", "not-a-number")

    with monkeypatch.context() as m:
        m.setattr(config, "load_dotenv", lambda: None)
        config.initialize_from_env()

    assert config.get_config_value("index", "url") == "https://env.index.test"
    assert config.get_config_value("ledger", "timeout") == 12.5
    assert config.get_config_value("provider", "price_per_unit") == 10


def test_reset_config():
    config.set_config_value("ipfs", "api_url", "http://elsewhere:5001")

    assert config.reset_config()
    assert config.get_config_value("ipfs", "api_url") == "http://127.0.0.1:5001"


def test_default_paths_live_in_config_dir():
    assert config.get_keystore_path() == os.path.join(config.CONFIG_DIR, "keystore.json")
    assert config.get_providers_cache_path() == os.path.join(config.CONFIG_DIR, "providers.json")
