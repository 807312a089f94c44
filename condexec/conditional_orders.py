"""
Conditional order API: create, cancel, update and query trigger-based orders.

Creation validates the request, checks the trigger condition, and runs the
pre-trade risk gate before anything is stored, so a rejected order leaves no
trace in the store and never reaches the venue. Accepted orders are stored
PENDING and picked up by the monitoring engine on its next tick.

Examples:
    >>> from decimal import Decimal
    >>> from condexec.conditions import SimpleCondition, TriggerKind, Operator
    >>> order = service.create_order(
    ...     symbol="BTCUSDT",
    ...     side="BUY",
    ...     order_type="MARKET",
    ...     quantity=Decimal("0.1"),
    ...     condition=SimpleCondition(TriggerKind.MARK_PRICE, Operator.GT, Decimal("50000")),
    ...     market=Market.FUTURES,
    ... )
    >>> service.cancel_order(order.order_id).status
    <OrderStatus.CANCELLED: 4>
"""

import time
import uuid
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Union

from .conditions import TriggerCondition, validate_condition
from .errors import (
    ConditionalOrderNotFound,
    InvalidParameter,
    InvalidTransition,
    OrderNotFound,
)
from .executor import Executor
from .logging_setup import logger
from .order_state import (
    ConditionalOrder,
    MarginType,
    Market,
    OrderRecord,
    OrderRole,
    OrderStatus,
    OrderType,
    PositionSide,
    Side,
    TimeWindow,
    parse_enum,
)
from .pairs import PairCoordinator
from .risk import RiskGate, check_leverage
from .store import ConditionalOrderStore


def new_order_id(prefix: str) -> str:
    """Opaque id; short enough to double as a venue client order id."""
    return f"{prefix}_{uuid.uuid4().hex[:24]}"


def to_decimal(value, what: str) -> Decimal:
    try:
        return Decimal(str(value))
    except Exception as e:
        raise InvalidParameter(f"{what} must be a number, got: {value!r}", cause=e)


class ConditionalOrderService:
    """Public entry point for conditional orders (spot and futures).

    Args:
        store: Order store shared with the monitoring engines
        risk_gate: One gate for every market, or a gate per market
        pairs: Pair coordinator, so cancelling a paired leg cancels its sibling
        clock: Returns unix seconds
    """

    def __init__(
        self,
        store: ConditionalOrderStore,
        risk_gate: Union[RiskGate, Dict[Market, RiskGate]],
        pairs: Optional[PairCoordinator] = None,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.risk_gate = risk_gate
        self.pairs = pairs
        self._clock = clock

    def _gate(self, market: Market) -> RiskGate:
        if isinstance(self.risk_gate, dict):
            gate = self.risk_gate.get(market)
            if gate is None:
                raise InvalidParameter(f"{market.name} trading is not enabled")
            return gate
        return self.risk_gate

    def create_order(
        self,
        symbol: str,
        side,
        order_type,
        quantity,
        condition: TriggerCondition,
        *,
        price=None,
        market: Market = Market.SPOT,
        position_side=None,
        reduce_only: bool = False,
        leverage: Optional[int] = None,
        margin_type=None,
        time_window: Optional[TimeWindow] = None,
    ) -> ConditionalOrder:
        """Validate, risk-check and store a new PENDING conditional order.

        Raises:
            InvalidParameter: Malformed request
            InvalidTriggerCondition: Malformed condition
            RiskRejection: A pre-trade check failed (nothing is stored)
            VenueTransient: A live input for the risk check could not be read
        """
        market = parse_enum(Market, market, "market")
        order = ConditionalOrder(
            order_id=new_order_id("COND" if market is Market.SPOT else "FCOND"),
            symbol=(symbol or "").strip().upper(),
            side=parse_enum(Side, side, "side"),
            order_type=parse_enum(OrderType, order_type, "order type"),
            quantity=to_decimal(quantity, "quantity"),
            price=to_decimal(price, "price") if price is not None else Decimal("0"),
            trigger_condition=condition,
            market=market,
            position_side=parse_enum(PositionSide, position_side, "position side") if position_side else None,
            reduce_only=bool(reduce_only),
            leverage=leverage,
            margin_type=parse_enum(MarginType, margin_type, "margin type") if margin_type else None,
            time_window=time_window,
        )
        self._validate(order)

        request = Executor.build_request(order)
        self._gate(order.market).validate_order(
            request, market=order.market, leverage=order.leverage, margin_type=order.margin_type
        )

        now = self._clock()
        order.created_at = now
        order.updated_at = now
        self.store.save(order)
        logger.info(
            f"Conditional order created | order_id={order.order_id} symbol={order.symbol} side={order.side.name} "
            f"type={order.order_type.name} qty={order.quantity} price={order.price} condition={condition.summary()}"
        )
        return order.copy()

    def _validate(self, order: ConditionalOrder) -> None:
        if not order.symbol:
            raise InvalidParameter("symbol cannot be empty")
        if order.quantity <= 0:
            raise InvalidParameter("quantity must be greater than 0")
        if order.price < 0:
            raise InvalidParameter("price cannot be negative")
        if order.order_type is OrderType.LIMIT and order.price <= 0:
            raise InvalidParameter("price must be greater than 0 for limit orders")
        if order.market is Market.SPOT and (order.position_side is not None or order.reduce_only):
            raise InvalidParameter("position side and reduce-only apply to futures orders only")
        if order.leverage is not None:
            check_leverage(order.leverage, self._gate(order.market).limits.max_leverage)
        if order.time_window is not None and not order.time_window.is_valid():
            raise InvalidParameter("time window start must not be after its end")
        validate_condition(order.trigger_condition, futures=order.is_futures)

    def _get(self, order_id: str) -> ConditionalOrder:
        try:
            order = self.store.get(order_id)
        except OrderNotFound:
            raise ConditionalOrderNotFound(f"conditional order not found: {order_id}")
        if not isinstance(order, ConditionalOrder) or order.role is not OrderRole.CONDITIONAL:
            raise ConditionalOrderNotFound(f"conditional order not found: {order_id}")
        return order

    def get_order(self, order_id: str) -> ConditionalOrder:
        return self._get(order_id)

    def cancel_order(self, order_id: str) -> ConditionalOrder:
        """PENDING -> CANCELLED.

        Raises:
            ConditionalOrderNotFound: Unknown id
            InvalidTransition: The order is no longer PENDING (already triggered,
                executed, failed or cancelled)
        """
        self._get(order_id)
        cancelled = self.store.transition_status(
            order_id, OrderStatus.PENDING, OrderStatus.CANCELLED, updated_at=self._clock()
        )
        if self.pairs is not None:
            self.pairs.resolve_on_cancel(order_id)
        logger.info(f"Conditional order cancelled | order_id={order_id} symbol={cancelled.symbol}")
        return cancelled

    def update_order(
        self,
        order_id: str,
        *,
        condition: Optional[TriggerCondition] = None,
        quantity=None,
        price=None,
        time_window: Optional[TimeWindow] = None,
    ) -> ConditionalOrder:
        """Change condition, quantity, price or time window of a PENDING order."""
        current = self._get(order_id)
        if current.status is not OrderStatus.PENDING:
            raise InvalidTransition(f"order {order_id} is {current.status.name}; only PENDING orders can be updated")

        changes = {}
        if condition is not None:
            changes["trigger_condition"] = condition
        if quantity is not None:
            changes["quantity"] = to_decimal(quantity, "quantity")
        if price is not None:
            changes["price"] = to_decimal(price, "price")
        if time_window is not None:
            changes["time_window"] = time_window
        if not changes:
            raise InvalidParameter("nothing to update")

        staged = current.copy()
        for key, value in changes.items():
            setattr(staged, key, value)
        self._validate(staged)

        changes["updated_at"] = self._clock()
        updated = self.store.update(order_id, **changes)
        logger.info(f"Conditional order updated | order_id={order_id} fields={sorted(changes)}")
        return updated

    def list_active(self, symbol: Optional[str] = None, market: Optional[Market] = None) -> List[ConditionalOrder]:
        orders = [
            o for o in self.store.list_by_status(OrderStatus.PENDING, market)
            if isinstance(o, ConditionalOrder) and o.role is OrderRole.CONDITIONAL
        ]
        if symbol:
            orders = [o for o in orders if o.symbol == symbol]
        return sorted(orders, key=lambda o: (o.created_at, o.order_id))

    def history(self, start: float, end: float) -> List[OrderRecord]:
        """EXECUTED and CANCELLED orders created within [start, end]."""
        if start < 0 or end < 0:
            raise InvalidParameter("start and end must be non-negative")
        if start > end:
            raise InvalidParameter("start time must be before end time")
        return self.store.history(start, end)
