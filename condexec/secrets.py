"""Binance API credentials from the environment or a JSON config file.

Lookup order:
1. Environment variables: BINANCE_API_KEY, BINANCE_API_SECRET
2. Config file: BINANCE_CONFIG_PATH if set, else ~/.binance_config.json
"""
import json
import os
from pathlib import Path
from typing import NamedTuple, Optional

from .errors import InvalidParameter


class BinanceCredentials(NamedTuple):
    api_key: str
    api_secret: str


def default_config_path() -> str:
    return os.getenv("BINANCE_CONFIG_PATH") or str(Path.home() / ".binance_config.json")


def load_credentials(config_path: Optional[str] = None) -> BinanceCredentials:
    """Load credentials, preferring the environment over the config file.

    Args:
        config_path: Config file to read instead of the default location

    Raises:
        InvalidParameter: The config file is unreadable or the credentials are incomplete
    """
    api_key = os.getenv("BINANCE_API_KEY")
    api_secret = os.getenv("BINANCE_API_SECRET")
    if api_key and api_secret:
        return BinanceCredentials(api_key=api_key, api_secret=api_secret)

    config_path = config_path or default_config_path()
    config_file = Path(config_path)
    if config_file.exists():
        try:
            with config_file.open("r") as f:
                cfg = json.load(f)
        except (OSError, ValueError) as e:
            raise InvalidParameter(f"failed to load credentials from {config_path}: {e}", cause=e)
        api_key = cfg.get("api_key") or api_key
        api_secret = cfg.get("api_secret") or api_secret

    if not api_key or not api_secret:
        raise InvalidParameter(
            "Missing Binance credentials. Provide via:\n"
            "  - Environment: BINANCE_API_KEY, BINANCE_API_SECRET\n"
            f"  - Config file: {config_path}\n"
            "  - BINANCE_CONFIG_PATH env var to override config location"
        )
    return BinanceCredentials(api_key=api_key, api_secret=api_secret)


def save_config(config_path: str, api_key: str, api_secret: str) -> None:
    """Write credentials as plaintext JSON readable by the owner only."""
    cfg_file = Path(config_path)
    cfg_file.parent.mkdir(parents=True, exist_ok=True)
    with cfg_file.open("w") as f:
        json.dump({"api_key": api_key, "api_secret": api_secret}, f, indent=2)

    try:
        cfg_file.chmod(0o600)
    except OSError:
        pass  # no chmod on Windows
