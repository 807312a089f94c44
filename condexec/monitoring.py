"""
Monitoring engine: the periodic evaluator that drives conditional orders to
execution.

Each tick:
    1. Snapshot PENDING orders for this product family from the store.
    2. For every order inside its time window, read the inputs its condition
       needs (once per order, so AND sees one consistent snapshot), evaluate,
       and for trailing stops ratchet the extremum.
    3. When an order fires:
         CAS PENDING -> TRIGGERED (lose the race -> abandon)
         cancel the pair sibling, if any
         risk gate + venue order
         CAS TRIGGERED -> EXECUTED (venue id attached) or -> FAILED

A transient market-data failure means "no information this tick": the order
is skipped and its status is left alone. A failure on one order never stops
the tick for the others.

Typical Flow:
    >>> engine = MonitoringEngine(store, market_data, position_view, executor, pairs, market=Market.FUTURES)
    >>> await engine.start()      # loads PENDING orders, starts ticking
    >>> ...
    >>> await engine.stop()       # drains the in-flight tick, then returns
"""

import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, Hashable, List, Optional, Tuple

from .conditions import CompositeCondition, SimpleCondition, TriggerKind
from .errors import InvalidTransition, NotFoundError, OrderNotFound, TradingError, VenueTransient
from .executor import Executor
from .logging_setup import logger
from .market_data import MarketDataCache
from .order_state import (
    ConditionalOrder,
    Market,
    OrderRecord,
    OrderStatus,
    PositionSide,
    TrailingStopOrder,
)
from .pairs import PairCoordinator
from .position_view import PositionView
from .store import ConditionalOrderStore
from .trailing import TrailingStopTracker
from .trigger import SatisfiedLeaf, TriggerEvaluator

HUNDRED = Decimal("100")


@dataclass
class TriggerEvent:
    """Structured record of one order firing."""

    order_id: str
    symbol: str
    trigger_time: float
    trigger_value: Decimal
    condition_summary: str
    logic: Optional[str] = None
    satisfied: List[SatisfiedLeaf] = field(default_factory=list)
    outcome: Optional[str] = None
    venue_order_id: Optional[str] = None
    error: Optional[str] = None
    cancelled_sibling: Optional[str] = None

    def to_dict(self) -> dict:
        d = {
            "order_id": self.order_id,
            "symbol": self.symbol,
            "trigger_time": self.trigger_time,
            "trigger_value": str(self.trigger_value),
            "condition_summary": self.condition_summary,
            "outcome": self.outcome,
            "venue_order_id": self.venue_order_id,
            "error": self.error,
            "cancelled_sibling": self.cancelled_sibling,
        }
        if self.logic is not None:
            d["logic"] = self.logic
            d["satisfied"] = [leaf.to_dict() for leaf in self.satisfied]
        return d


class MonitoringEngine:
    """Single cooperative evaluation loop for one product family.

    ``run_once`` is the synchronous tick; ``start``/``stop`` run it on the
    asyncio loop, each tick in a worker thread so that venue I/O never blocks
    the event loop and API callers on other threads contend on the store's
    locks, not on the loop.

    Args:
        store: Order store (authoritative records)
        market_data: Cached venue reads
        position_view: Live position reads for PnL / margin-ratio triggers
        executor: Places fired orders behind the risk gate
        pairs: Cancels pair siblings when a leg fires
        market: Which product family this engine watches
        tick_interval: Seconds between ticks
        on_trigger: Optional callbacks receiving each TriggerEvent
    """

    def __init__(
        self,
        store: ConditionalOrderStore,
        market_data: MarketDataCache,
        position_view: PositionView,
        executor: Executor,
        pairs: PairCoordinator,
        *,
        market: Market = Market.FUTURES,
        tick_interval: float = 1.0,
        evaluator: Optional[TriggerEvaluator] = None,
        tracker: Optional[TrailingStopTracker] = None,
        clock: Callable[[], float] = time.time,
        on_trigger: Optional[List[Callable[[TriggerEvent], None]]] = None,
    ):
        self.store = store
        self.market_data = market_data
        self.position_view = position_view
        self.executor = executor
        self.pairs = pairs
        self.market = market
        self.tick_interval = tick_interval
        self.evaluator = evaluator or TriggerEvaluator()
        self.tracker = tracker or TrailingStopTracker()
        self._clock = clock
        self.listeners: List[Callable[[TriggerEvent], None]] = list(on_trigger or [])
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    # --- lifecycle ---
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> int:
        """Load PENDING orders and start ticking; returns how many were loaded.

        Raises:
            RuntimeError: If the engine is already running
        """
        if self.running:
            raise RuntimeError(f"{self.market.name} monitoring engine is already running")
        pending = await asyncio.to_thread(self.store.list_by_status, OrderStatus.PENDING, self.market)
        trailing = sum(1 for o in pending if isinstance(o, TrailingStopOrder))
        logger.info(
            f"Monitoring engine started | market={self.market.name} pending_orders={len(pending)} "
            f"trailing_stops={trailing} tick_interval={self.tick_interval}"
        )
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        return len(pending)

    async def stop(self) -> None:
        """Signal the loop and wait for the in-flight tick to finish.

        Raises:
            RuntimeError: If the engine is not running
        """
        if not self.running:
            raise RuntimeError(f"{self.market.name} monitoring engine is not running")
        self._stop_event.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                logger.exception(f"Monitoring tick failed | market={self.market.name}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"Monitoring engine stopped | market={self.market.name} ticks={self.ticks}")

    # --- tick ---
    def run_once(self) -> List[TriggerEvent]:
        """Evaluate every PENDING order once; returns the orders that fired."""
        now = self._clock()
        events = []
        for order in self.store.list_by_status(OrderStatus.PENDING, self.market):
            try:
                event = self._process(order, now)
            except Exception:
                logger.exception(f"Order evaluation failed | order_id={order.order_id} symbol={order.symbol}")
                continue
            if event is not None:
                events.append(event)
        self.ticks += 1
        return events

    def _process(self, order: OrderRecord, now: float) -> Optional[TriggerEvent]:
        if order.time_window is not None and not order.time_window.contains(now):
            return None
        if isinstance(order, TrailingStopOrder):
            return self._process_trailing(order, now)
        return self._process_conditional(order, now)

    def _process_conditional(self, order: ConditionalOrder, now: float) -> Optional[TriggerEvent]:
        condition = order.trigger_condition
        try:
            resolve = self._snapshot_inputs(order)
        except VenueTransient as e:
            logger.warning(f"Market data unavailable, skipping order | order_id={order.order_id} symbol={order.symbol} error={e}")
            return None
        except NotFoundError as e:
            logger.debug(f"Trigger input unavailable, skipping order | order_id={order.order_id} error={e}")
            return None

        if not self.evaluator.evaluate_with(condition, resolve):
            return None

        event = TriggerEvent(
            order_id=order.order_id,
            symbol=order.symbol,
            trigger_time=now,
            trigger_value=Decimal("0"),
            condition_summary=condition.summary(),
        )
        if isinstance(condition, CompositeCondition):
            event.logic = condition.logic.name
            event.satisfied = self.evaluator.satisfied_leaves(condition, resolve)
            event.trigger_value = event.satisfied[0].observed_value if event.satisfied else Decimal("0")
        else:
            event.trigger_value = resolve(condition)
        return self._execute(order, event)

    def _process_trailing(self, order: TrailingStopOrder, now: float) -> Optional[TriggerEvent]:
        try:
            price = self._reference_price(order.symbol)
        except VenueTransient as e:
            logger.warning(f"Market data unavailable, skipping trailing stop | order_id={order.order_id} error={e}")
            return None

        def ratchet(current: OrderRecord) -> dict:
            if current.status is not OrderStatus.PENDING:
                return {}
            return self.tracker.ratchet(current, price, now)

        try:
            updated = self.store.modify(order.order_id, ratchet)
        except (InvalidTransition, OrderNotFound) as e:
            logger.debug(f"Trailing stop no longer pending | order_id={order.order_id} error={e}")
            return None
        if updated.status is not OrderStatus.PENDING:
            return None
        if updated.extremum_price != order.extremum_price:
            logger.info(
                f"Trailing stop ratcheted | order_id={order.order_id} price={price} "
                f"extremum={updated.extremum_price} stop={updated.current_stop_price}"
            )

        if not self.tracker.is_triggered(updated, price):
            return None
        event = TriggerEvent(
            order_id=order.order_id,
            symbol=order.symbol,
            trigger_time=now,
            trigger_value=price,
            condition_summary=(
                f"TRAILING_STOP {updated.position_side.name} callback={updated.callback_rate}% "
                f"extremum={updated.extremum_price} stop={updated.current_stop_price}"
            ),
        )
        return self._execute(updated, event)

    # --- inputs ---
    def _reference_price(self, symbol: str) -> Decimal:
        if self.market is Market.FUTURES:
            return self.market_data.get_mark_price(symbol)
        return self.market_data.get_last_price(symbol)

    @staticmethod
    def _source(leaf: SimpleCondition) -> Tuple[Hashable, ...]:
        if leaf.kind in (TriggerKind.PRICE, TriggerKind.LAST_PRICE, TriggerKind.PRICE_CHANGE_PCT):
            return ("last",)
        if leaf.kind is TriggerKind.MARK_PRICE:
            return ("mark",)
        if leaf.kind is TriggerKind.VOLUME:
            return ("volume", leaf.volume_window)
        if leaf.kind is TriggerKind.FUNDING_RATE:
            return ("funding",)
        if leaf.kind is TriggerKind.UNREALIZED_PNL:
            return ("upnl",)
        return ("margin_ratio",)

    def _fetch(self, order: ConditionalOrder, source: Tuple[Hashable, ...]) -> Decimal:
        symbol = order.symbol
        name = source[0]
        if name == "last":
            return self.market_data.get_last_price(symbol)
        if name == "mark":
            return self.market_data.get_mark_price(symbol)
        if name == "volume":
            return self.market_data.get_volume(symbol, source[1])
        if name == "funding":
            return self.market_data.get_funding_rate(symbol)
        side = order.position_side.name if order.position_side in (PositionSide.LONG, PositionSide.SHORT) else None
        if name == "upnl":
            return self.position_view.unrealized_pnl(symbol, side)
        return self.position_view.margin_ratio(symbol, side)

    def _snapshot_inputs(self, order: ConditionalOrder) -> Callable[[SimpleCondition], Decimal]:
        """Fetch every input the condition needs once, up front."""
        raw: Dict[Tuple[Hashable, ...], Decimal] = {}
        for leaf in order.trigger_condition.leaves():
            source = self._source(leaf)
            if source not in raw:
                raw[source] = self._fetch(order, source)

        def resolve(leaf: SimpleCondition) -> Decimal:
            value = raw[self._source(leaf)]
            if leaf.kind is TriggerKind.PRICE_CHANGE_PCT:
                return (value - leaf.base_price) / leaf.base_price * HUNDRED
            return value

        return resolve

    # --- execution protocol ---
    def _execute(self, order: OrderRecord, event: TriggerEvent) -> Optional[TriggerEvent]:
        try:
            triggered = self.store.transition_status(
                order.order_id,
                OrderStatus.PENDING,
                OrderStatus.TRIGGERED,
                triggered_at=event.trigger_time,
                updated_at=event.trigger_time,
            )
        except (InvalidTransition, OrderNotFound) as e:
            logger.info(f"Trigger abandoned, order already advanced | order_id={order.order_id} error={e}")
            return None

        event.cancelled_sibling = self.pairs.resolve_on_fire(order.order_id)
        logger.info(
            f"Order triggered | order_id={order.order_id} symbol={order.symbol} "
            f"trigger_value={event.trigger_value} condition={event.condition_summary}"
        )

        try:
            venue_order = self.executor.place(triggered)
        except Exception as e:
            event.outcome = OrderStatus.FAILED.name
            event.error = str(e)
            self.store.transition_status(
                order.order_id,
                OrderStatus.TRIGGERED,
                OrderStatus.FAILED,
                failure_reason=str(e),
                updated_at=self._clock(),
            )
            if isinstance(e, TradingError):
                logger.error(f"Order execution failed | order_id={order.order_id} error={e}")
            else:
                logger.exception(f"Order execution failed unexpectedly | order_id={order.order_id}")
        else:
            event.outcome = OrderStatus.EXECUTED.name
            event.venue_order_id = venue_order.order_id
            self.store.transition_status(
                order.order_id,
                OrderStatus.TRIGGERED,
                OrderStatus.EXECUTED,
                executed_venue_order_id=venue_order.order_id,
                updated_at=self._clock(),
            )

        self._emit(event)
        return event

    def _emit(self, event: TriggerEvent) -> None:
        logger.bind(event=event.to_dict()).info(
            f"Trigger event | order_id={event.order_id} symbol={event.symbol} trigger_time={event.trigger_time} "
            f"trigger_value={event.trigger_value} outcome={event.outcome}"
        )
        for listener in self.listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Trigger listener failed | order_id={event.order_id}")
