"""Turns a triggered order into a venue order."""

from .errors import InvalidParameter
from .logging_setup import logger
from .market_data import MarketDataCache
from .order_state import OrderRecord, OrderType, TrailingStopOrder
from .risk import RiskGate
from .venue import Venue
from .venue_models import VenueOrder, VenueOrderRequest


class Executor:
    """Maps orders to venue requests and places them behind the risk gate.

    The engine's order id doubles as the venue client order id, so a create
    retried after a transient failure cannot open a second venue order.
    Non-transient failures (risk rejections, VenuePermanent) are raised to the
    caller without retrying.
    """

    def __init__(self, venue: Venue, risk_gate: RiskGate, market_data: MarketDataCache):
        self.venue = venue
        self.risk_gate = risk_gate
        self.market_data = market_data

    @staticmethod
    def build_request(order: OrderRecord) -> VenueOrderRequest:
        if isinstance(order, TrailingStopOrder):
            # Trailing stops always close at market.
            return VenueOrderRequest(
                symbol=order.symbol,
                side=order.side.name,
                type=OrderType.MARKET.name,
                quantity=order.quantity,
                position_side=order.position_side.name,
                reduce_only=True,
                client_order_id=order.order_id,
            )

        if order.order_type is OrderType.LIMIT and order.price <= 0:
            raise InvalidParameter(f"limit order {order.order_id} has no price")
        request = VenueOrderRequest(
            symbol=order.symbol,
            side=order.side.name,
            type=order.order_type.name,
            quantity=order.quantity,
            price=order.price if order.order_type is OrderType.LIMIT else None,
            time_in_force="GTC" if order.order_type is OrderType.LIMIT else None,
            client_order_id=order.order_id,
        )
        if order.is_futures:
            if order.position_side is not None:
                request.position_side = order.position_side.name
            if order.reduce_only:
                request.reduce_only = True
        return request

    def place(self, order: OrderRecord) -> VenueOrder:
        """Risk-check and submit ``order``; returns the venue acknowledgement.

        Raises:
            RiskRejection: The order failed a pre-trade check; nothing was sent
            VenueTransient: The venue stayed unreachable through all retries
            VenuePermanent: The venue rejected the order
        """
        request = self.build_request(order)
        self.risk_gate.validate_order(
            request,
            market=order.market,
            leverage=order.leverage,
            margin_type=order.margin_type,
        )
        venue_order = self.market_data.with_retry(
            f"create order {order.order_id}", lambda: self.venue.create_order(request)
        )
        self.risk_gate.record_order()
        logger.info(
            f"Venue order placed | order_id={order.order_id} venue_order_id={venue_order.order_id} "
            f"symbol={request.symbol} side={request.side} type={request.type} qty={request.quantity} "
            f"price={request.price} reduce_only={request.reduce_only}"
        )
        return venue_order
