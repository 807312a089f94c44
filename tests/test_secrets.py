import json
import os
import stat

import pytest

from condexec.errors import InvalidParameter
from condexec.secrets import BinanceCredentials, default_config_path, load_credentials, save_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("BINANCE_API_KEY", "BINANCE_API_SECRET", "BINANCE_CONFIG_PATH"):
        monkeypatch.delenv(name, raising=False)


def test_load_credentials_from_env(monkeypatch):
    """Load credentials from environment variables."""
    monkeypatch.setenv("BINANCE_API_KEY", "test_key")
    monkeypatch.setenv("BINANCE_API_SECRET", "test_secret")

    creds = load_credentials(config_path="/nonexistent/path.json")
    assert creds == BinanceCredentials(api_key="test_key", api_secret="test_secret")


def test_load_credentials_from_config_file(tmp_path):
    """Load credentials from config file."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"api_key": "file_key", "api_secret": "file_secret"}))

    creds = load_credentials(config_path=str(config_file))
    assert creds.api_key == "file_key"
    assert creds.api_secret == "file_secret"


def test_env_overrides_config_file(tmp_path, monkeypatch):
    """Environment variables take precedence over config file."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"api_key": "file_key", "api_secret": "file_secret"}))
    monkeypatch.setenv("BINANCE_API_KEY", "env_key")
    monkeypatch.setenv("BINANCE_API_SECRET", "env_secret")

    creds = load_credentials(config_path=str(config_file))
    assert creds.api_key == "env_key"


def test_config_path_env_var(tmp_path, monkeypatch):
    config_file = tmp_path / "elsewhere.json"
    config_file.write_text(json.dumps({"api_key": "k", "api_secret": "s"}))
    monkeypatch.setenv("BINANCE_CONFIG_PATH", str(config_file))

    assert default_config_path() == str(config_file)
    assert load_credentials() == BinanceCredentials("k", "s")


def test_load_credentials_missing_raises():
    with pytest.raises(InvalidParameter, match="Missing Binance credentials"):
        load_credentials(config_path="/nonexistent/path.json")


def test_half_configured_file_raises(tmp_path):
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"api_key": "only_key"}))
    with pytest.raises(InvalidParameter):
        load_credentials(config_path=str(config_file))


def test_corrupt_config_file_raises(tmp_path):
    config_file = tmp_path / "config.json"
    config_file.write_text("{not json")
    with pytest.raises(InvalidParameter, match="failed to load credentials"):
        load_credentials(config_path=str(config_file))


def test_save_and_load_config(tmp_path):
    """Save config and load it back."""
    config_file = tmp_path / "nested" / "saved.json"
    save_config(config_path=str(config_file), api_key="saved_key", api_secret="saved_secret")

    assert load_credentials(config_path=str(config_file)) == BinanceCredentials("saved_key", "saved_secret")
    if os.name == "posix":
        assert stat.S_IMODE(config_file.stat().st_mode) == 0o600
