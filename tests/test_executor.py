import json
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests

from condexec.binance_adapter import BinanceAdapter
from condexec.conditions import Operator, SimpleCondition, TriggerKind
from condexec.config import RiskConfig
from condexec.errors import RiskLimitExceeded, VenuePermanent, VenueTransient
from condexec.executor import Executor
from condexec.order_state import (
    ConditionalOrder,
    Market,
    OrderType,
    PositionSide,
    Side,
    TrailingStopOrder,
)

from conftest import build_stack


def binance_response(status, payload):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = status < 400
    resp.headers = {}
    resp.text = json.dumps(payload)
    resp.json.return_value = payload
    return resp


def futures_order(order_type=OrderType.LIMIT, price="49000", **kwargs):
    return ConditionalOrder(
        order_id="FCOND_abc",
        symbol="BTCUSDT",
        side=Side.BUY,
        order_type=order_type,
        quantity=Decimal("0.1"),
        price=Decimal(price),
        trigger_condition=SimpleCondition(TriggerKind.MARK_PRICE, Operator.GT, Decimal("50000")),
        market=Market.FUTURES,
        **kwargs,
    )


def test_build_request_for_futures_limit(stack):
    request = stack.executor.build_request(futures_order(position_side=PositionSide.LONG, reduce_only=True))
    assert request.type == "LIMIT"
    assert request.time_in_force == "GTC"
    assert request.price == Decimal("49000")
    assert request.position_side == "LONG"
    assert request.reduce_only is True
    assert request.client_order_id == "FCOND_abc"


def test_build_request_for_market_drops_price(stack):
    request = stack.executor.build_request(futures_order(OrderType.MARKET, price="0"))
    assert request.price is None
    assert request.time_in_force is None
    assert request.reduce_only is None


def test_build_request_for_trailing_stop_closes_at_market(stack):
    order = TrailingStopOrder(
        order_id="FTS_1",
        symbol="BTCUSDT",
        position_side=PositionSide.SHORT,
        quantity=Decimal("2"),
        callback_rate=Decimal("1"),
        extremum_price=Decimal("100"),
        current_stop_price=Decimal("101"),
    )
    request = stack.executor.build_request(order)
    assert (request.side, request.type, request.reduce_only) == ("BUY", "MARKET", True)
    assert request.position_side == "SHORT"


def test_place_retries_with_same_client_order_id(stack):
    stack.venue.fail("create_order", VenueTransient("timeout"))
    venue_order = stack.executor.place(futures_order())

    attempts = stack.venue.calls_to("create_order")
    assert len(attempts) == 2
    assert {args[0].client_order_id for args in attempts} == {"FCOND_abc"}
    assert list(stack.venue.orders) == [venue_order.order_id]
    assert stack.gate.record_order() == 2


def test_place_does_not_retry_permanent_rejection(stack):
    stack.venue.fail("create_order", VenuePermanent("filter failure", code=-1013))
    with pytest.raises(VenuePermanent):
        stack.executor.place(futures_order())
    assert len(stack.venue.calls_to("create_order")) == 1
    assert stack.gate.record_order() == 1


def test_place_stops_at_risk_gate(venue, store, clock, sleeps):
    s = build_stack(venue, store, clock, sleeps, limits=RiskConfig(max_order_value=Decimal("1000")))
    with pytest.raises(RiskLimitExceeded):
        s.executor.place(futures_order())
    assert venue.calls_to("create_order") == []


@patch("condexec.binance_adapter.requests.Session.request")
def test_timed_out_create_resolves_to_the_venue_order(mock_request, stack):
    mock_request.side_effect = [
        requests.exceptions.ReadTimeout("read timed out"),
        binance_response(400, {"code": -4116, "msg": "ClientOrderId is duplicated."}),
        binance_response(200, {"orderId": 7, "symbol": "BTCUSDT", "status": "NEW", "clientOrderId": "FCOND_abc"}),
    ]
    adapter = BinanceAdapter(api_key="key", api_secret="secret")
    executor = Executor(adapter, stack.gate, stack.cache)

    venue_order = executor.place(futures_order(position_side=PositionSide.LONG, reduce_only=True))

    assert venue_order.order_id == "7"
    assert venue_order.client_order_id == "FCOND_abc"
    creates = [c for c in mock_request.call_args_list if c.args[0] == "POST"]
    assert len(creates) == 2
    assert {c.kwargs["params"]["newClientOrderId"] for c in creates} == {"FCOND_abc"}
    assert stack.sleeps == [1.0]
    assert stack.gate.record_order() == 2
