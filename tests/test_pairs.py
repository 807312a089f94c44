from decimal import Decimal

import pytest

from condexec.conditions import Operator, SimpleCondition, TriggerKind
from condexec.errors import InvalidParameter, StopOrderNotFound
from condexec.order_state import (
    ConditionalOrder,
    Market,
    OrderRole,
    OrderStatus,
    OrderType,
    PairStatus,
    PositionSide,
    Side,
)
from condexec.pairs import PairCoordinator


def leg(order_id, role, op, price):
    return ConditionalOrder(
        order_id=order_id,
        symbol="BTCUSDT",
        side=Side.SELL,
        order_type=OrderType.MARKET,
        quantity=Decimal("1"),
        trigger_condition=SimpleCondition(TriggerKind.MARK_PRICE, op, Decimal(price)),
        market=Market.FUTURES,
        position_side=PositionSide.LONG,
        reduce_only=True,
        role=role,
    )


@pytest.fixture
def legs():
    return (
        leg("FSL_1", OrderRole.STOP_LOSS, Operator.LTE, "48000"),
        leg("FTP_1", OrderRole.TAKE_PROFIT, Operator.GTE, "55000"),
    )


def test_create_pair_stores_both_legs(stack, legs):
    pair = stack.pairs.create_pair("FPAIR_1", *legs)
    assert pair.status is PairStatus.ACTIVE
    assert stack.store.exists("FSL_1") and stack.store.exists("FTP_1")
    assert stack.pairs.pair_for("FTP_1").pair_id == "FPAIR_1"
    assert stack.pairs.pair_for("COND_x") is None


def test_fire_cancels_sibling_once(stack, legs):
    stack.pairs.create_pair("FPAIR_1", *legs)
    stack.store.transition_status("FTP_1", OrderStatus.PENDING, OrderStatus.TRIGGERED)

    assert stack.pairs.resolve_on_fire("FTP_1") == "FSL_1"
    assert stack.store.get("FSL_1").status is OrderStatus.CANCELLED
    pair = stack.pairs.get("FPAIR_1")
    assert pair.status is PairStatus.RESOLVED
    assert pair.winning_order_id == "FTP_1"

    assert stack.pairs.resolve_on_fire("FSL_1") is None


def test_sibling_already_advanced_is_left_alone(stack, legs):
    stack.pairs.create_pair("FPAIR_1", *legs)
    stack.store.transition_status("FSL_1", OrderStatus.PENDING, OrderStatus.TRIGGERED)
    stack.store.transition_status("FTP_1", OrderStatus.PENDING, OrderStatus.TRIGGERED)

    assert stack.pairs.resolve_on_fire("FTP_1") is None
    assert stack.store.get("FSL_1").status is OrderStatus.TRIGGERED


def test_user_cancel_cancels_sibling(stack, legs):
    stack.pairs.create_pair("FPAIR_1", *legs)
    stack.store.transition_status("FSL_1", OrderStatus.PENDING, OrderStatus.CANCELLED)
    assert stack.pairs.resolve_on_cancel("FSL_1") == "FTP_1"
    assert stack.pairs.get("FPAIR_1").winning_order_id is None
    assert stack.pairs.list_pairs(active_only=True) == []


def test_cancel_pair(stack, legs):
    stack.pairs.create_pair("FPAIR_1", *legs)
    assert stack.pairs.cancel_pair("FPAIR_1") == ["FSL_1", "FTP_1"]
    assert stack.pairs.cancel_pair("FPAIR_1") == []
    with pytest.raises(StopOrderNotFound):
        stack.pairs.cancel_pair("FPAIR_missing")


def test_failed_creation_rolls_back_saved_leg(stack, legs):
    stop_loss, take_profit = legs
    stack.store.save(take_profit.copy())

    with pytest.raises(InvalidParameter):
        stack.pairs.create_pair("FPAIR_1", stop_loss, take_profit)
    assert not stack.store.exists("FSL_1")
    assert stack.store.list_pairs() == []
    with pytest.raises(StopOrderNotFound):
        stack.pairs.get("FPAIR_1")


def test_pairs_reload_from_store(stack, legs):
    stack.pairs.create_pair("FPAIR_1", *legs)
    reloaded = PairCoordinator(stack.store, clock=stack.clock)
    assert reloaded.pair_for("FSL_1").take_profit_order_id == "FTP_1"
