"""Engine assembly and the async runner.

``build_engine`` wires one stack per enabled market (venue -> cache -> position
view -> risk gate -> executor -> monitoring engine) around a shared order store
and pair coordinator. ``EngineRunner`` then runs, concurrently:

1. the spot monitoring engine
2. the futures monitoring engine
3. a periodic liquidation-risk sweep over futures positions
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .binance_adapter import BinanceAdapter
from .conditional_orders import ConditionalOrderService
from .config import EngineConfig, PersistenceConfig
from .errors import TradingError
from .executor import Executor
from .leverage import LeverageService
from .logging_setup import logger
from .market_data import MarketDataCache
from .monitoring import MonitoringEngine
from .order_state import Market
from .pairs import PairCoordinator
from .persistence_sqlite import SQLiteOrderStore
from .position_view import PositionView
from .rate_limit_policy import RateLimitManager
from .risk import LiquidationWarning, RiskGate
from .secrets import BinanceCredentials
from .stop_orders import StopOrderService
from .store import ConditionalOrderStore, InMemoryOrderStore
from .trailing import TrailingStopTracker
from .venue import Venue


class PeriodicRiskMonitor:
    """Runs ``risk_gate.monitor_positions`` every ``interval`` seconds."""

    def __init__(self, risk_gate: RiskGate, interval: float = 30.0):
        self.risk_gate = risk_gate
        self.interval = interval
        self.sweeps = 0
        self.last_warnings: List[LiquidationWarning] = []

    def sweep(self) -> List[LiquidationWarning]:
        self.last_warnings = self.risk_gate.monitor_positions()
        self.sweeps += 1
        return self.last_warnings

    async def run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(self.sweep)
            except TradingError as e:
                logger.warning(f"Liquidation risk sweep failed | error={e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass


class EngineRunner:
    """Start and stop the monitoring engines and the risk sweep together."""

    def __init__(self, engines: List[MonitoringEngine], risk_monitor: Optional[PeriodicRiskMonitor] = None):
        self.engines = engines
        self.risk_monitor = risk_monitor
        self._stop_event: Optional[asyncio.Event] = None
        self._risk_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return any(engine.running for engine in self.engines)

    async def start(self) -> int:
        """Start every engine; returns the number of PENDING orders loaded.

        Raises:
            RuntimeError: If the runner is already running
        """
        if self.running:
            raise RuntimeError("engine runner is already running")
        loaded = 0
        started: List[MonitoringEngine] = []
        try:
            for engine in self.engines:
                loaded += await engine.start()
                started.append(engine)
        except Exception:
            for engine in started:
                await engine.stop()
            raise
        self._stop_event = asyncio.Event()
        if self.risk_monitor is not None:
            self._risk_task = asyncio.create_task(self.risk_monitor.run(self._stop_event))
        logger.info(f"Engine runner started | engines={len(self.engines)} pending_orders={loaded}")
        return loaded

    async def stop(self) -> None:
        """Stop everything and wait for in-flight work to finish.

        Raises:
            RuntimeError: If the runner is not running
        """
        if not self.running:
            raise RuntimeError("engine runner is not running")
        self._stop_event.set()
        await asyncio.gather(*(engine.stop() for engine in self.engines if engine.running))
        if self._risk_task is not None:
            await self._risk_task
            self._risk_task = None
        logger.info("Engine runner stopped")

    async def run_forever(self) -> None:
        """Start, then block until cancelled; stops cleanly on cancellation."""
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()


def open_store(persistence: PersistenceConfig) -> ConditionalOrderStore:
    if persistence.backend == "memory":
        return InMemoryOrderStore()
    if persistence.backend == "sqlite":
        return SQLiteOrderStore(persistence.db_path)
    raise ValueError(f"unknown persistence backend: {persistence.backend}")


def build_venues(config: EngineConfig, credentials: BinanceCredentials) -> Dict[Market, Venue]:
    """One Binance adapter per enabled market, each with its own request quotas."""
    venues: Dict[Market, Venue] = {}
    if config.monitoring.spot_enabled:
        venues[Market.SPOT] = BinanceAdapter.from_credentials(
            credentials,
            market=Market.SPOT,
            config=config.venue,
            rate_limiter=RateLimitManager.from_config(config.rate_limit),
        )
    if config.monitoring.futures_enabled:
        venues[Market.FUTURES] = BinanceAdapter.from_credentials(
            credentials,
            market=Market.FUTURES,
            config=config.venue,
            rate_limiter=RateLimitManager.from_config(config.rate_limit),
        )
    return venues


@dataclass
class Engine:
    """Every service of an assembled engine."""
    store: ConditionalOrderStore
    pairs: PairCoordinator
    conditional_orders: ConditionalOrderService
    risk_gates: Dict[Market, RiskGate]
    monitors: Dict[Market, MonitoringEngine]
    runner: EngineRunner
    stop_orders: Optional[StopOrderService] = None
    leverage: Optional[LeverageService] = None
    position_view: Optional[PositionView] = None
    market_data: Dict[Market, MarketDataCache] = field(default_factory=dict)


def build_engine(
    config: EngineConfig,
    venues: Dict[Market, Venue],
    *,
    store: Optional[ConditionalOrderStore] = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> Engine:
    """Assemble the engine for the markets that are both enabled and given a venue."""
    enabled = {
        Market.SPOT: config.monitoring.spot_enabled,
        Market.FUTURES: config.monitoring.futures_enabled,
    }
    markets = [m for m in (Market.SPOT, Market.FUTURES) if enabled[m] and m in venues]
    if not markets:
        raise ValueError("no enabled market has a venue")

    store = store if store is not None else open_store(config.persistence)
    pairs = PairCoordinator(store, clock=clock)
    tracker = TrailingStopTracker()

    caches: Dict[Market, MarketDataCache] = {}
    views: Dict[Market, PositionView] = {}
    gates: Dict[Market, RiskGate] = {}
    monitors: Dict[Market, MonitoringEngine] = {}
    for market in markets:
        cache = MarketDataCache(venues[market], config.cache_ttl, config.retry, clock=clock, sleep=sleep)
        view = PositionView(cache, config.risk.maintenance_margin_rate)
        gate = RiskGate(cache, view, config.risk, clock=clock)
        caches[market], views[market], gates[market] = cache, view, gate
        monitors[market] = MonitoringEngine(
            store,
            cache,
            view,
            Executor(venues[market], gate, cache),
            pairs,
            market=market,
            tick_interval=config.monitoring.tick_interval,
            tracker=tracker,
            clock=clock,
        )

    engine = Engine(
        store=store,
        pairs=pairs,
        conditional_orders=ConditionalOrderService(store, gates, pairs, clock=clock),
        risk_gates=gates,
        monitors=monitors,
        runner=EngineRunner(list(monitors.values())),
        market_data=caches,
    )
    if Market.FUTURES in markets:
        engine.position_view = views[Market.FUTURES]
        engine.stop_orders = StopOrderService(store, caches[Market.FUTURES], pairs, tracker, clock=clock)
        engine.leverage = LeverageService(views[Market.FUTURES], lambda: gates[Market.FUTURES].limits.max_leverage)
        engine.runner.risk_monitor = PeriodicRiskMonitor(gates[Market.FUTURES], config.monitoring.risk_check_interval)
    logger.info(f"Engine assembled | markets={[m.name for m in markets]} backend={config.persistence.backend}")
    return engine
