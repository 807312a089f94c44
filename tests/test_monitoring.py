import asyncio
from decimal import Decimal

import pytest

from condexec.conditional_orders import ConditionalOrderService
from condexec.conditions import CompositeCondition, Logic, Operator, SimpleCondition, TriggerKind
from condexec.config import RiskConfig
from condexec.errors import VenueTransient
from condexec.order_state import Market, OrderStatus, TimeWindow
from condexec.stop_orders import StopOrderService


def mark_gt(threshold):
    return SimpleCondition(TriggerKind.MARK_PRICE, Operator.GT, Decimal(threshold))


def tick_at(stack, mark=None, last=None, symbol="BTCUSDT"):
    stack.clock.advance(2)
    if mark is not None:
        stack.venue.mark_prices[symbol] = Decimal(mark)
    if last is not None:
        stack.venue.last_prices[symbol] = Decimal(last)
    return stack.engine.run_once()


@pytest.fixture
def service(stack):
    return ConditionalOrderService(stack.store, stack.gate, stack.pairs, clock=stack.clock)


@pytest.fixture
def stops(stack):
    return StopOrderService(stack.store, stack.cache, stack.pairs, clock=stack.clock)


def test_mark_price_trigger_fires_once_threshold_crossed(stack, service):
    order = service.create_order("BTCUSDT", "BUY", "MARKET", Decimal("0.1"), mark_gt("50000"), market=Market.FUTURES)

    assert tick_at(stack, mark="49500") == []
    assert tick_at(stack, mark="49999.99") == []
    assert service.get_order(order.order_id).status is OrderStatus.PENDING

    [event] = tick_at(stack, mark="50000.01")
    assert event.trigger_value == Decimal("50000.01")
    assert event.outcome == "EXECUTED"

    done = service.get_order(order.order_id)
    assert done.status is OrderStatus.EXECUTED
    assert done.executed_venue_order_id == event.venue_order_id
    [request] = stack.venue.requests
    assert (request.side, request.type, request.quantity) == ("BUY", "MARKET", Decimal("0.1"))

    assert tick_at(stack, mark="51000") == []
    assert len(stack.venue.requests) == 1


def test_trailing_stop_ratchets_and_fires(stack, stops):
    order = stops.set_trailing_stop("BTCUSDT", "LONG", Decimal("1"), Decimal("2"))
    assert order.current_stop_price == Decimal("49000")

    tick_at(stack, mark="51000")
    assert stack.store.get(order.order_id).current_stop_price == Decimal("49980")

    assert tick_at(stack, mark="50500") == []
    current = stack.store.get(order.order_id)
    assert current.current_stop_price == Decimal("49980")
    assert current.extremum_price == Decimal("51000")

    [event] = tick_at(stack, mark="49979")
    assert event.trigger_value == Decimal("49979")
    [request] = stack.venue.requests
    assert (request.side, request.type, request.reduce_only) == ("SELL", "MARKET", True)
    assert stack.store.get(order.order_id).status is OrderStatus.EXECUTED


def test_composite_and_fires_only_when_every_leaf_holds(spot_stack):
    spot_stack.venue.last_prices["XYZUSDT"] = Decimal("99")
    service = ConditionalOrderService(spot_stack.store, spot_stack.gate, clock=spot_stack.clock)
    condition = CompositeCondition(
        Logic.AND,
        [
            SimpleCondition(TriggerKind.PRICE, Operator.GT, Decimal("100")),
            SimpleCondition(TriggerKind.PRICE_CHANGE_PCT, Operator.GT, Decimal("5"), base_price=Decimal("80")),
        ],
    )
    order = service.create_order("XYZUSDT", "BUY", "MARKET", Decimal("1"), condition)

    assert tick_at(spot_stack, last="99", symbol="XYZUSDT") == []
    assert service.get_order(order.order_id).status is OrderStatus.PENDING

    [event] = tick_at(spot_stack, last="103", symbol="XYZUSDT")
    assert event.logic == "AND"
    assert [leaf.index for leaf in event.satisfied] == [0, 1]
    assert event.satisfied[1].observed_value == Decimal("28.75")
    assert event.trigger_value == Decimal("103")
    assert service.get_order(order.order_id).status is OrderStatus.EXECUTED


def test_composite_reads_each_input_once_per_tick(stack, service):
    condition = CompositeCondition(Logic.AND, [mark_gt("50000"), mark_gt("60000")])
    service.create_order("BTCUSDT", "BUY", "MARKET", Decimal("0.1"), condition, market=Market.FUTURES)
    tick_at(stack, mark="55000")
    assert len(stack.venue.calls_to("get_mark_price")) == 1


def test_transient_market_data_skips_order(stack, service):
    order = service.create_order("BTCUSDT", "BUY", "MARKET", Decimal("0.1"), mark_gt("50000"), market=Market.FUTURES)
    stack.venue.fail("get_mark_price", VenueTransient("timeout"), times=3)

    assert tick_at(stack, mark="51000") == []
    assert service.get_order(order.order_id).status is OrderStatus.PENDING

    [event] = tick_at(stack)
    assert event.outcome == "EXECUTED"


def test_missing_position_skips_pnl_trigger(stack, service):
    pnl_trigger = SimpleCondition(TriggerKind.UNREALIZED_PNL, Operator.GT, Decimal("0"))
    order = service.create_order(
        "BTCUSDT", "SELL", "MARKET", Decimal("0.1"), pnl_trigger, market=Market.FUTURES, reduce_only=True
    )
    assert tick_at(stack) == []
    assert service.get_order(order.order_id).status is OrderStatus.PENDING


def test_time_window_gates_evaluation(stack, service):
    window = TimeWindow(start_at=stack.clock() + 100)
    order = service.create_order(
        "BTCUSDT", "BUY", "MARKET", Decimal("0.1"), mark_gt("40000"), market=Market.FUTURES, time_window=window
    )
    assert tick_at(stack) == []
    assert stack.venue.calls_to("get_mark_price") == []

    stack.clock.advance(100)
    [event] = tick_at(stack)
    assert event.order_id == order.order_id


def test_risk_rejection_at_trigger_time_fails_order(stack, service):
    order = service.create_order("BTCUSDT", "BUY", "MARKET", Decimal("0.1"), mark_gt("50000"), market=Market.FUTURES)
    stack.gate.update_limits(RiskConfig(max_order_value=Decimal("1000")))

    [event] = tick_at(stack, mark="50001")
    assert event.outcome == "FAILED"
    failed = service.get_order(order.order_id)
    assert failed.status is OrderStatus.FAILED
    assert "exceeds maximum limit" in failed.failure_reason
    assert stack.venue.calls_to("create_order") == []


def test_firing_leg_cancels_pair_sibling(stack, stops):
    pair = stops.set_stop_loss_take_profit("BTCUSDT", "LONG", Decimal("1"), Decimal("48000"), Decimal("52000"))

    [event] = tick_at(stack, mark="52500")
    assert event.order_id == pair.take_profit_order_id
    assert event.cancelled_sibling == pair.stop_loss_order_id
    assert stack.store.get(pair.stop_loss_order_id).status is OrderStatus.CANCELLED
    assert stack.store.get(pair.take_profit_order_id).status is OrderStatus.EXECUTED

    assert tick_at(stack, mark="47000") == []
    assert len(stack.venue.requests) == 1


def test_listener_failure_does_not_break_tick(stack, service):
    seen = []

    def broken(event):
        raise ValueError("listener bug")

    stack.engine.listeners.extend([broken, seen.append])
    service.create_order("BTCUSDT", "BUY", "MARKET", Decimal("0.1"), mark_gt("50000"), market=Market.FUTURES)
    tick_at(stack, mark="50001")
    assert [e.outcome for e in seen] == ["EXECUTED"]


def test_spot_engine_ignores_futures_orders(stack, spot_stack, service):
    service.create_order("BTCUSDT", "BUY", "MARKET", Decimal("0.1"), mark_gt("1"), market=Market.FUTURES)
    assert spot_stack.engine.run_once() == []


@pytest.mark.asyncio
async def test_engine_start_stop(stack, service):
    order = service.create_order("BTCUSDT", "BUY", "MARKET", Decimal("0.1"), mark_gt("40000"), market=Market.FUTURES)

    assert await stack.engine.start() == 1
    with pytest.raises(RuntimeError):
        await stack.engine.start()

    for _ in range(100):
        if stack.store.get(order.order_id).status is OrderStatus.EXECUTED:
            break
        await asyncio.sleep(0.01)
    await stack.engine.stop()

    assert stack.store.get(order.order_id).status is OrderStatus.EXECUTED
    assert not stack.engine.running
    assert stack.engine.ticks >= 1
    with pytest.raises(RuntimeError):
        await stack.engine.stop()
