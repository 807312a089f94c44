"""Engine assembly and the async runner over in-memory venues."""
import asyncio
from decimal import Decimal

import pytest

from condexec.conditions import Operator, SimpleCondition, TriggerKind
from condexec.config import EngineConfig, MonitoringConfig, PersistenceConfig, RateLimitConfig, RiskConfig
from condexec.event_loop import EngineRunner, PeriodicRiskMonitor, build_engine, build_venues, open_store
from condexec.order_state import Market, OrderStatus
from condexec.persistence_sqlite import SQLiteOrderStore
from condexec.secrets import BinanceCredentials
from condexec.store import InMemoryOrderStore
from condexec.venue import InMemoryVenue
from condexec.venue_models import Position


def make_venue():
    venue = InMemoryVenue()
    venue.last_prices["BTCUSDT"] = Decimal("50000")
    venue.mark_prices["BTCUSDT"] = Decimal("50000")
    return venue


def fast_config(**monitoring):
    config = EngineConfig()
    config.monitoring = MonitoringConfig(tick_interval=0.01, risk_check_interval=0.01, **monitoring)
    config.persistence = PersistenceConfig(backend="memory")
    return config


def test_build_engine_wires_both_markets(clock, sleeps):
    venues = {Market.SPOT: make_venue(), Market.FUTURES: make_venue()}
    engine = build_engine(fast_config(), venues, clock=clock, sleep=sleeps.append)

    assert set(engine.monitors) == {Market.SPOT, Market.FUTURES}
    assert set(engine.risk_gates) == {Market.SPOT, Market.FUTURES}
    assert engine.stop_orders is not None
    assert engine.leverage is not None
    assert isinstance(engine.runner.risk_monitor, PeriodicRiskMonitor)
    assert engine.monitors[Market.SPOT].store is engine.monitors[Market.FUTURES].store


def test_spot_only_engine_has_no_futures_services(clock, sleeps):
    engine = build_engine(fast_config(futures_enabled=False), {Market.SPOT: make_venue(), Market.FUTURES: make_venue()},
                          clock=clock, sleep=sleeps.append)
    assert list(engine.monitors) == [Market.SPOT]
    assert engine.stop_orders is None
    assert engine.runner.risk_monitor is None


def test_build_engine_requires_a_venue(clock):
    with pytest.raises(ValueError):
        build_engine(fast_config(spot_enabled=False), {Market.SPOT: make_venue()}, clock=clock)


def test_open_store_backends(tmp_path):
    assert isinstance(open_store(PersistenceConfig(backend="memory")), InMemoryOrderStore)
    store = open_store(PersistenceConfig(backend="sqlite", db_path=str(tmp_path / "orders.db")))
    assert isinstance(store, SQLiteOrderStore)
    store.close()
    with pytest.raises(ValueError):
        open_store(PersistenceConfig(backend="redis"))


def test_leverage_bound_follows_risk_limit_updates(clock, sleeps):
    engine = build_engine(fast_config(), {Market.FUTURES: make_venue()}, clock=clock, sleep=sleeps.append)
    gate = engine.risk_gates[Market.FUTURES]
    gate.update_limits(RiskConfig(max_leverage=75))
    engine.leverage.set_leverage("BTCUSDT", 75)


def test_risk_monitor_sweep_reports_warnings(clock, sleeps):
    venue = make_venue()
    venue.set_position(Position(symbol="BTCUSDT", position_amt=Decimal("-1"), entry_price=Decimal("50000"), leverage=10))
    venue.mark_prices["BTCUSDT"] = Decimal("54000")
    engine = build_engine(fast_config(), {Market.FUTURES: venue}, clock=clock, sleep=sleeps.append)

    [warning] = engine.runner.risk_monitor.sweep()
    assert warning.position_side == "SHORT"
    assert engine.runner.risk_monitor.sweeps == 1
    assert venue.calls_to("create_order") == []


@pytest.mark.asyncio
async def test_runner_executes_orders_and_stops_cleanly(clock, sleeps):
    store = InMemoryOrderStore()
    venues = {Market.SPOT: make_venue(), Market.FUTURES: make_venue()}
    engine = build_engine(fast_config(), venues, store=store, clock=clock, sleep=sleeps.append)
    order = engine.conditional_orders.create_order(
        "BTCUSDT", "BUY", "MARKET", Decimal("0.1"),
        SimpleCondition(TriggerKind.MARK_PRICE, Operator.GT, Decimal("40000")),
        market=Market.FUTURES,
    )

    assert await engine.runner.start() == 1
    with pytest.raises(RuntimeError):
        await engine.runner.start()

    for _ in range(100):
        if store.get(order.order_id).status is OrderStatus.EXECUTED:
            break
        await asyncio.sleep(0.01)
    await engine.runner.stop()

    assert store.get(order.order_id).status is OrderStatus.EXECUTED
    assert venues[Market.SPOT].calls_to("create_order") == []
    assert engine.runner.risk_monitor.sweeps >= 1
    assert not engine.runner.running
    with pytest.raises(RuntimeError):
        await engine.runner.stop()


class BrokenEngine:
    running = False

    async def start(self):
        raise RuntimeError("store unavailable")


@pytest.mark.asyncio
async def test_runner_rolls_back_when_an_engine_fails_to_start(clock, sleeps):
    engine = build_engine(fast_config(), {Market.SPOT: make_venue()}, clock=clock, sleep=sleeps.append)
    spot = engine.monitors[Market.SPOT]

    runner = EngineRunner([spot, BrokenEngine()])
    with pytest.raises(RuntimeError, match="store unavailable"):
        await runner.start()
    assert not spot.running


def test_build_venues_one_adapter_per_enabled_market():
    config = EngineConfig()
    config.rate_limit = RateLimitConfig(orders_per_second=3, default_per_second=7)
    venues = build_venues(config, BinanceCredentials("key", "secret"))

    assert venues[Market.SPOT].base_url == "https://api.binance.com"
    assert venues[Market.FUTURES].base_url == "https://fapi.binance.com"
    assert venues[Market.SPOT].rate_limiter is not venues[Market.FUTURES].rate_limiter
    assert venues[Market.FUTURES].rate_limiter.quotas["/fapi/v1/order"].requests_per_window == 3
    assert venues[Market.FUTURES].rate_limiter.quotas["default"].requests_per_window == 7

    config.monitoring = MonitoringConfig(spot_enabled=False)
    assert list(build_venues(config, BinanceCredentials("key", "secret"))) == [Market.FUTURES]
