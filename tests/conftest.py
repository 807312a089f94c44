from decimal import Decimal
from types import SimpleNamespace

import pytest

from condexec.config import RiskConfig
from condexec.executor import Executor
from condexec.market_data import MarketDataCache
from condexec.monitoring import MonitoringEngine
from condexec.order_state import Market
from condexec.pairs import PairCoordinator
from condexec.position_view import PositionView
from condexec.risk import RiskGate
from condexec.store import InMemoryOrderStore
from condexec.venue import InMemoryVenue

T0 = 1_700_000_000.0


class FakeClock:
    """Manually advanced unix-seconds clock."""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def venue():
    v = InMemoryVenue()
    v.last_prices["BTCUSDT"] = Decimal("50000")
    v.mark_prices["BTCUSDT"] = Decimal("50000")
    return v


@pytest.fixture
def store():
    return InMemoryOrderStore()


def build_stack(venue, store, clock, sleeps, market=Market.FUTURES, limits=None):
    cache = MarketDataCache(venue, clock=clock, sleep=sleeps.append)
    view = PositionView(cache)
    gate = RiskGate(cache, view, limits or RiskConfig(), clock=clock)
    executor = Executor(venue, gate, cache)
    pairs = PairCoordinator(store, clock=clock)
    engine = MonitoringEngine(store, cache, view, executor, pairs, market=market, tick_interval=0.01, clock=clock)
    return SimpleNamespace(
        venue=venue,
        store=store,
        clock=clock,
        sleeps=sleeps,
        cache=cache,
        view=view,
        gate=gate,
        executor=executor,
        pairs=pairs,
        engine=engine,
    )


@pytest.fixture
def stack(venue, store, clock, sleeps):
    """Futures engine wired over an in-memory venue and store."""
    return build_stack(venue, store, clock, sleeps)


@pytest.fixture
def spot_stack(venue, store, clock, sleeps):
    return build_stack(venue, store, clock, sleeps, market=Market.SPOT)
