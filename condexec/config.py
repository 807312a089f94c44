"""Configuration loader for the conditional execution engine.

Supports YAML format with environment variable interpolation.
"""
import os
from dataclasses import asdict, dataclass, field, fields
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict

import yaml

from .errors import InvalidParameter


@dataclass
class VenueConfig:
    """Binance REST endpoints and HTTP settings."""
    base_url: str = "https://fapi.binance.com"
    spot_base_url: str = "https://api.binance.com"
    timeout: int = 10
    max_retries: int = 3
    max_backoff_seconds: float = 60.0
    recv_window: int = 5000


@dataclass
class MonitoringConfig:
    """Monitoring loop cadence."""
    tick_interval: float = 1.0  # seconds between evaluation ticks
    risk_check_interval: float = 30.0  # seconds between liquidation-risk sweeps
    spot_enabled: bool = True
    futures_enabled: bool = True


@dataclass
class CacheTTLConfig:
    """Market data cache lifetimes in seconds."""
    last: float = 1.0
    mark: float = 1.0
    funding: float = 60.0
    volume: float = 1.0


@dataclass
class RetryConfig:
    """Venue read retry policy: delay before attempt n+1 is n * base_delay."""
    max_attempts: int = 3
    base_delay: float = 1.0


@dataclass
class RiskConfig:
    """Pre-trade and monitoring risk limits."""
    max_order_value: Decimal = Decimal("50000")
    max_position_value: Decimal = Decimal("100000")
    max_leverage: int = 20
    min_margin_ratio: Decimal = Decimal("0.05")
    liquidation_buffer: Decimal = Decimal("0.02")  # 2% distance to liquidation
    maintenance_margin_rate: Decimal = Decimal("0.004")
    max_daily_orders: int = 200
    default_leverage: int = 1
    # Fallback prices for MARKET notional checks when the live fetch fails.
    reference_prices: Dict[str, Decimal] = field(default_factory=dict)

    def validate(self) -> None:
        if self.max_order_value <= 0:
            raise InvalidParameter("max_order_value must be greater than 0")
        if self.max_position_value <= 0:
            raise InvalidParameter("max_position_value must be greater than 0")
        if not 1 <= self.max_leverage <= 125:
            raise InvalidParameter(f"max_leverage must be between 1 and 125, got: {self.max_leverage}")
        if not 0 <= self.min_margin_ratio <= 1:
            raise InvalidParameter("min_margin_ratio must be between 0 and 1")
        if not 0 <= self.liquidation_buffer <= 1:
            raise InvalidParameter("liquidation_buffer must be between 0 and 1")
        if self.maintenance_margin_rate < 0:
            raise InvalidParameter("maintenance_margin_rate cannot be negative")
        if self.max_daily_orders <= 0:
            raise InvalidParameter("max_daily_orders must be greater than 0")
        if not 1 <= self.default_leverage <= self.max_leverage:
            raise InvalidParameter("default_leverage must be between 1 and max_leverage")


@dataclass
class RateLimitConfig:
    """Client-side request quotas."""
    orders_per_second: int = 10
    default_per_second: int = 20


@dataclass
class PersistenceConfig:
    """Order store and logging settings."""
    backend: str = "sqlite"  # sqlite | memory
    db_path: str = "condexec.db"
    log_file: str = "condexec.log"
    log_level: str = "INFO"


def _coerce(cls, raw: Dict[str, Any]):
    """Build a section dataclass, converting Decimal-typed fields from YAML scalars."""
    known = {f.name: f for f in fields(cls)}
    unknown = set(raw) - set(known)
    if unknown:
        raise InvalidParameter(f"unknown {cls.__name__} option(s): {sorted(unknown)}")
    values = {}
    for key, value in raw.items():
        if known[key].type in (Decimal, "Decimal") and value is not None:
            value = Decimal(str(value))
        values[key] = value
    return cls(**values)


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


@dataclass
class EngineConfig:
    """Complete engine configuration."""
    venue: VenueConfig = field(default_factory=VenueConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    cache_ttl: CacheTTLConfig = field(default_factory=CacheTTLConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        data = data or {}
        risk_raw = dict(data.get("risk") or {})
        reference_prices = {
            symbol: Decimal(str(price)) for symbol, price in (risk_raw.pop("reference_prices", None) or {}).items()
        }
        risk = _coerce(RiskConfig, risk_raw)
        risk.reference_prices = reference_prices
        risk.validate()

        monitoring = _coerce(MonitoringConfig, data.get("monitoring") or {})
        if monitoring.tick_interval <= 0:
            raise InvalidParameter("tick_interval must be greater than 0")
        retry = _coerce(RetryConfig, data.get("retry") or {})
        if retry.max_attempts < 1:
            raise InvalidParameter("retry.max_attempts must be at least 1")
        if retry.base_delay < 0:
            raise InvalidParameter("retry.base_delay cannot be negative")

        return cls(
            venue=_coerce(VenueConfig, data.get("venue") or {}),
            monitoring=monitoring,
            cache_ttl=_coerce(CacheTTLConfig, data.get("cache_ttl") or {}),
            retry=retry,
            risk=risk,
            rate_limit=_coerce(RateLimitConfig, data.get("rate_limit") or {}),
            persistence=_coerce(PersistenceConfig, data.get("persistence") or {}),
        )

    @classmethod
    def from_yaml(cls, config_path: str) -> "EngineConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            EngineConfig instance

        Example YAML:
            monitoring:
              tick_interval: 1.0
            cache_ttl:
              funding: 60
            risk:
              max_order_value: 10000
              max_leverage: 20
              reference_prices:
                BTCUSDT: 50000
            persistence:
              db_path: "${STATE_DIR}/condexec.db"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        return cls.from_dict(yaml.safe_load(raw) or {})

    def to_dict(self) -> Dict[str, Any]:
        return {name: _plain(asdict(getattr(self, name))) for name in (f.name for f in fields(self))}

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
