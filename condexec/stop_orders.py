"""
Futures stop-loss, take-profit and trailing-stop orders.

Stop-loss and take-profit legs are ordinary conditional orders on the mark
price with a closing side and ``reduce_only`` set:

    position   stop-loss             take-profit           close side
    LONG       MARK_PRICE <= stop    MARK_PRICE >= target  SELL
    SHORT      MARK_PRICE >= stop    MARK_PRICE <= target  BUY

A stop-loss / take-profit pair is registered with the PairCoordinator so that
at most one of the two legs executes. Trailing stops are separate records
ratcheted by the monitoring engine.
"""

import time
from decimal import Decimal
from typing import Callable, List, Optional

from .conditional_orders import new_order_id, to_decimal
from .conditions import Operator, SimpleCondition, TriggerKind
from .errors import InvalidParameter, OrderNotFound, StopOrderNotFound
from .logging_setup import logger
from .market_data import MarketDataCache
from .order_state import (
    ConditionalOrder,
    Market,
    OrderRecord,
    OrderRole,
    OrderStatus,
    OrderType,
    PositionSide,
    StopOrderPair,
    TrailingStopOrder,
    closing_side,
    parse_enum,
)
from .pairs import PairCoordinator
from .store import ConditionalOrderStore
from .trailing import TrailingStopTracker

STOP_ROLES = frozenset({OrderRole.STOP_LOSS, OrderRole.TAKE_PROFIT, OrderRole.TRAILING_STOP})


class StopOrderService:
    """Creates and manages reduce-only protective orders on futures positions.

    Args:
        store: Order store shared with the monitoring engine
        market_data: Used to read the current mark price
        pairs: Stop-loss / take-profit pair coordinator
        tracker: Trailing stop rules
        clock: Returns unix seconds
    """

    def __init__(
        self,
        store: ConditionalOrderStore,
        market_data: MarketDataCache,
        pairs: PairCoordinator,
        tracker: Optional[TrailingStopTracker] = None,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.market_data = market_data
        self.pairs = pairs
        self.tracker = tracker or TrailingStopTracker()
        self._clock = clock

    @staticmethod
    def _check_common(symbol: str, position_side, quantity):
        symbol = (symbol or "").strip().upper()
        if not symbol:
            raise InvalidParameter("symbol cannot be empty")
        side = parse_enum(PositionSide, position_side, "position side")
        if side is PositionSide.BOTH:
            raise InvalidParameter("position side must be LONG or SHORT")
        qty = to_decimal(quantity, "quantity")
        if qty <= 0:
            raise InvalidParameter("quantity must be greater than 0")
        return symbol, side, qty

    @staticmethod
    def _positive_price(value, what: str) -> Decimal:
        price = to_decimal(value, what)
        if price <= 0:
            raise InvalidParameter(f"{what} must be greater than 0")
        return price

    def _leg(self, role: OrderRole, symbol: str, position_side: PositionSide, quantity: Decimal, price: Decimal) -> ConditionalOrder:
        long = position_side is PositionSide.LONG
        if role is OrderRole.STOP_LOSS:
            operator, prefix = (Operator.LTE if long else Operator.GTE), "FSL"
        else:
            operator, prefix = (Operator.GTE if long else Operator.LTE), "FTP"
        now = self._clock()
        return ConditionalOrder(
            order_id=new_order_id(prefix),
            symbol=symbol,
            side=closing_side(position_side),
            order_type=OrderType.MARKET,
            quantity=quantity,
            trigger_condition=SimpleCondition(TriggerKind.MARK_PRICE, operator, price),
            market=Market.FUTURES,
            position_side=position_side,
            reduce_only=True,
            role=role,
            created_at=now,
            updated_at=now,
        )

    def set_stop_loss(self, symbol: str, position_side, quantity, stop_price) -> ConditionalOrder:
        symbol, side, qty = self._check_common(symbol, position_side, quantity)
        order = self._leg(OrderRole.STOP_LOSS, symbol, side, qty, self._positive_price(stop_price, "stop price"))
        self.store.save(order)
        logger.info(
            f"Stop loss created | order_id={order.order_id} symbol={symbol} position_side={side.name} "
            f"qty={qty} stop_price={stop_price}"
        )
        return order.copy()

    def set_take_profit(self, symbol: str, position_side, quantity, target_price) -> ConditionalOrder:
        symbol, side, qty = self._check_common(symbol, position_side, quantity)
        order = self._leg(OrderRole.TAKE_PROFIT, symbol, side, qty, self._positive_price(target_price, "target price"))
        self.store.save(order)
        logger.info(
            f"Take profit created | order_id={order.order_id} symbol={symbol} position_side={side.name} "
            f"qty={qty} target_price={target_price}"
        )
        return order.copy()

    def set_stop_loss_take_profit(self, symbol: str, position_side, quantity, stop_price, target_price) -> StopOrderPair:
        """Create both legs as a pair; once one executes the other is cancelled.

        The stop must sit on the losing side of the current mark price and the
        target on the winning side, otherwise a leg would fire immediately.

        Raises:
            InvalidParameter: Bad arguments or prices on the wrong side of mark
            VenueTransient: The mark price could not be read
        """
        symbol, side, qty = self._check_common(symbol, position_side, quantity)
        stop = self._positive_price(stop_price, "stop price")
        target = self._positive_price(target_price, "target price")

        mark = self.market_data.get_mark_price(symbol)
        if side is PositionSide.LONG and not stop < mark < target:
            raise InvalidParameter(f"LONG requires stop < mark < target, got stop={stop} mark={mark} target={target}")
        if side is PositionSide.SHORT and not target < mark < stop:
            raise InvalidParameter(f"SHORT requires target < mark < stop, got target={target} mark={mark} stop={stop}")

        stop_loss = self._leg(OrderRole.STOP_LOSS, symbol, side, qty, stop)
        take_profit = self._leg(OrderRole.TAKE_PROFIT, symbol, side, qty, target)
        return self.pairs.create_pair(new_order_id("FPAIR"), stop_loss, take_profit)

    def set_trailing_stop(self, symbol: str, position_side, quantity, callback_rate) -> TrailingStopOrder:
        """Trailing stop seeded from the current mark price."""
        symbol, side, qty = self._check_common(symbol, position_side, quantity)
        rate = to_decimal(callback_rate, "callback rate")
        mark = self.market_data.get_mark_price(symbol)
        extremum, stop = self.tracker.initial_state(mark, rate, side)

        now = self._clock()
        order = TrailingStopOrder(
            order_id=new_order_id("FTS"),
            symbol=symbol,
            position_side=side,
            quantity=qty,
            callback_rate=rate,
            extremum_price=extremum,
            current_stop_price=stop,
            created_at=now,
            updated_at=now,
            last_updated_at=now,
        )
        self.store.save(order)
        logger.info(
            f"Trailing stop created | order_id={order.order_id} symbol={symbol} position_side={side.name} "
            f"qty={qty} callback_rate={rate} extremum={extremum} stop={stop}"
        )
        return order.copy()

    def update_trailing_stop(self, order_id: str, callback_rate) -> TrailingStopOrder:
        """Apply a new callback rate to the extremum seen so far."""
        order = self.get_stop_order(order_id)
        if not isinstance(order, TrailingStopOrder):
            raise InvalidParameter(f"order {order_id} is not a trailing stop")
        rate = to_decimal(callback_rate, "callback rate")
        updated = self.store.modify(
            order_id, lambda current: self.tracker.callback_rate_changes(current, rate, self._clock())
        )
        logger.info(
            f"Trailing stop updated | order_id={order_id} callback_rate={rate} stop={updated.current_stop_price}"
        )
        return updated

    def get_stop_order(self, order_id: str) -> OrderRecord:
        try:
            order = self.store.get(order_id)
        except OrderNotFound:
            raise StopOrderNotFound(f"stop order not found: {order_id}")
        if order.role not in STOP_ROLES:
            raise StopOrderNotFound(f"stop order not found: {order_id}")
        return order

    def cancel_stop_order(self, order_id: str) -> OrderRecord:
        """Cancel a PENDING stop; a paired sibling is cancelled with it."""
        self.get_stop_order(order_id)
        cancelled = self.store.transition_status(
            order_id, OrderStatus.PENDING, OrderStatus.CANCELLED, updated_at=self._clock()
        )
        sibling = self.pairs.resolve_on_cancel(order_id)
        logger.info(f"Stop order cancelled | order_id={order_id} sibling={sibling}")
        return cancelled

    def list_stop_orders(self, symbol: Optional[str] = None) -> List[OrderRecord]:
        """PENDING stop-loss, take-profit and trailing orders."""
        orders = [o for o in self.store.list_by_status(OrderStatus.PENDING, Market.FUTURES) if o.role in STOP_ROLES]
        if symbol:
            orders = [o for o in orders if o.symbol == symbol]
        return sorted(orders, key=lambda o: (o.created_at, o.order_id))
