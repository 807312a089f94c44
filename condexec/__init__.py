"""
Conditional Execution Engine for Binance spot and USDT-M futures.

Holds trigger-based orders locally and submits them to the venue once their
condition holds:
- Simple and composite (AND/OR) trigger conditions over price, price change,
  volume, mark price, funding rate, unrealized PnL and margin ratio
- Futures stop-loss / take-profit pairs (one fires, the other is cancelled)
- Trailing stops that ratchet behind the best price seen
- Pre-trade risk gate (order value, position value, margin, daily order count)
- Leverage, margin type and position mode management
- Atomic order persistence in SQLite
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    conditions: Trigger condition types and validation
    trigger: Condition evaluation
    order_state: Order records and state machine
    store / persistence_sqlite: Order stores with compare-and-set transitions
    market_data: TTL cache with bounded retry over the venue
    risk: Pre-trade checks and liquidation monitoring
    monitoring: The evaluation loop
    conditional_orders / stop_orders / leverage: Public services
    binance_adapter: Binance REST integration
    event_loop: Engine assembly and async runner

Example:
    >>> from condexec.config import EngineConfig
    >>> from condexec.event_loop import build_engine, build_venues
    >>> from condexec.secrets import load_credentials
    >>>
    >>> config = EngineConfig.from_yaml("config.yaml")
    >>> engine = build_engine(config, build_venues(config, load_credentials()))
"""

__version__ = "0.1.0"
__all__ = [
    "conditions",
    "trigger",
    "order_state",
    "store",
    "persistence_sqlite",
    "db_migrations",
    "market_data",
    "pnl",
    "position_view",
    "risk",
    "leverage",
    "trailing",
    "pairs",
    "executor",
    "monitoring",
    "conditional_orders",
    "stop_orders",
    "venue",
    "venue_models",
    "binance_adapter",
    "rate_limit_policy",
    "config",
    "secrets",
    "event_loop",
]
