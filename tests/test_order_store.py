import sqlite3
import threading
from decimal import Decimal
from pathlib import Path

import pytest

from condexec.conditions import Operator, SimpleCondition, TriggerKind
from condexec.db_migrations import (
    MIGRATIONS,
    applied_versions,
    apply_migrations,
    pending_versions,
    rollback_last,
    rollback_migration,
)
from condexec.errors import InvalidParameter, InvalidTransition, OrderNotFound
from condexec.order_state import (
    ConditionalOrder,
    Market,
    OrderStatus,
    OrderType,
    PairStatus,
    PositionSide,
    Side,
    StopOrderPair,
    TimeWindow,
    TrailingStopOrder,
    can_transition,
)
from condexec.persistence_sqlite import SQLiteOrderStore
from condexec.store import InMemoryOrderStore


def make_order(order_id="COND_1", created_at=100.0, market=Market.SPOT, symbol="BTCUSDT"):
    return ConditionalOrder(
        order_id=order_id,
        symbol=symbol,
        side=Side.BUY,
        order_type=OrderType.LIMIT,
        quantity=Decimal("0.5"),
        price=Decimal("49000"),
        trigger_condition=SimpleCondition(TriggerKind.PRICE, Operator.LT, Decimal("49500")),
        market=market,
        time_window=TimeWindow(start_at=50.0, end_at=500.0),
        created_at=created_at,
        updated_at=created_at,
    )


def make_trailing(order_id="FTS_1"):
    return TrailingStopOrder(
        order_id=order_id,
        symbol="BTCUSDT",
        position_side=PositionSide.LONG,
        quantity=Decimal("1"),
        callback_rate=Decimal("2"),
        extremum_price=Decimal("50000"),
        current_stop_price=Decimal("49000.00"),
        created_at=10.0,
    )


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path: Path):
    if request.param == "memory":
        yield InMemoryOrderStore()
    else:
        s = SQLiteOrderStore(tmp_path / "orders.db")
        yield s
        s.close()


def test_state_machine_edges():
    assert can_transition(OrderStatus.PENDING, OrderStatus.TRIGGERED)
    assert can_transition(OrderStatus.PENDING, OrderStatus.CANCELLED)
    assert can_transition(OrderStatus.TRIGGERED, OrderStatus.EXECUTED)
    assert can_transition(OrderStatus.TRIGGERED, OrderStatus.FAILED)
    assert not can_transition(OrderStatus.TRIGGERED, OrderStatus.CANCELLED)
    assert not can_transition(OrderStatus.EXECUTED, OrderStatus.PENDING)
    assert not can_transition(OrderStatus.PENDING, OrderStatus.EXECUTED)


def test_save_and_get_returns_equal_copy(any_store):
    order = make_order()
    any_store.save(order)
    loaded = any_store.get(order.order_id)
    assert loaded == order
    assert loaded is not order

    loaded.quantity = Decimal("99")
    assert any_store.get(order.order_id).quantity == Decimal("0.5")


def test_trailing_stop_is_stored_as_its_own_record_type(any_store):
    any_store.save(make_trailing())
    loaded = any_store.get("FTS_1")
    assert isinstance(loaded, TrailingStopOrder)
    assert loaded.side is Side.SELL
    assert loaded.current_stop_price == Decimal("49000.00")


def test_duplicate_id_rejected(any_store):
    any_store.save(make_order())
    with pytest.raises(InvalidParameter):
        any_store.save(make_order())


def test_save_requires_pending(any_store):
    order = make_order()
    order.status = OrderStatus.EXECUTED
    with pytest.raises(InvalidTransition):
        any_store.save(order)


def test_get_unknown_raises(any_store):
    with pytest.raises(OrderNotFound):
        any_store.get("nope")


def test_transition_is_compare_and_set(any_store):
    any_store.save(make_order())
    any_store.transition_status("COND_1", OrderStatus.PENDING, OrderStatus.TRIGGERED, triggered_at=200.0)

    with pytest.raises(InvalidTransition):
        any_store.transition_status("COND_1", OrderStatus.PENDING, OrderStatus.CANCELLED)

    done = any_store.transition_status(
        "COND_1", OrderStatus.TRIGGERED, OrderStatus.EXECUTED, executed_venue_order_id="v1"
    )
    assert done.status is OrderStatus.EXECUTED
    assert done.triggered_at == 200.0
    assert done.executed_venue_order_id == "v1"


def test_illegal_edge_rejected_even_when_status_matches(any_store):
    any_store.save(make_order())
    with pytest.raises(InvalidTransition):
        any_store.transition_status("COND_1", OrderStatus.PENDING, OrderStatus.EXECUTED)
    assert any_store.get("COND_1").status is OrderStatus.PENDING


def test_transition_rejects_non_transition_fields(any_store):
    any_store.save(make_order())
    with pytest.raises(InvalidParameter):
        any_store.transition_status("COND_1", OrderStatus.PENDING, OrderStatus.CANCELLED, quantity=Decimal("1"))


def test_update_only_while_pending(any_store):
    any_store.save(make_order())
    updated = any_store.update("COND_1", quantity=Decimal("0.75"))
    assert updated.quantity == Decimal("0.75")

    any_store.transition_status("COND_1", OrderStatus.PENDING, OrderStatus.CANCELLED)
    with pytest.raises(InvalidTransition):
        any_store.update("COND_1", quantity=Decimal("1"))


def test_update_cannot_touch_identity(any_store):
    any_store.save(make_order())
    with pytest.raises(InvalidParameter):
        any_store.update("COND_1", order_id="other")
    with pytest.raises(InvalidParameter):
        any_store.update("COND_1", status=OrderStatus.EXECUTED)


def test_modify_applies_changes_from_current_record(any_store):
    any_store.save(make_trailing())

    def bump(current):
        return {"extremum_price": current.extremum_price + 1000}

    any_store.modify("FTS_1", bump)
    assert any_store.modify("FTS_1", bump).extremum_price == Decimal("52000")
    assert any_store.modify("FTS_1", lambda current: {}).extremum_price == Decimal("52000")


def test_status_index_and_market_filter(any_store):
    any_store.save(make_order("A", market=Market.SPOT))
    any_store.save(make_order("B", market=Market.FUTURES))
    any_store.save(make_order("C", market=Market.FUTURES, symbol="ETHUSDT"))
    any_store.transition_status("C", OrderStatus.PENDING, OrderStatus.CANCELLED)

    pending = any_store.list_by_status(OrderStatus.PENDING)
    assert {o.order_id for o in pending} == {"A", "B"}
    futures = any_store.list_by_status(OrderStatus.PENDING, Market.FUTURES)
    assert [o.order_id for o in futures] == ["B"]
    assert [o.order_id for o in any_store.list_by_symbol("ETHUSDT")] == ["C"]
    assert len(any_store.list_all()) == 3


def test_history_keeps_only_executed_and_cancelled_in_range(any_store):
    for oid, created in (("early", 10.0), ("mid", 150.0), ("late", 900.0), ("open", 160.0), ("failed", 170.0)):
        any_store.save(make_order(oid, created_at=created))
    any_store.transition_status("early", OrderStatus.PENDING, OrderStatus.CANCELLED)
    any_store.transition_status("mid", OrderStatus.PENDING, OrderStatus.CANCELLED)
    any_store.transition_status("late", OrderStatus.PENDING, OrderStatus.CANCELLED)
    any_store.transition_status("failed", OrderStatus.PENDING, OrderStatus.TRIGGERED)
    any_store.transition_status("failed", OrderStatus.TRIGGERED, OrderStatus.FAILED, failure_reason="boom")

    assert [o.order_id for o in any_store.history(100.0, 500.0)] == ["mid"]


def test_delete_and_pairs(any_store):
    any_store.save(make_order())
    any_store.delete("COND_1")
    assert not any_store.exists("COND_1")
    with pytest.raises(OrderNotFound):
        any_store.delete("COND_1")

    pair = StopOrderPair(pair_id="FPAIR_1", stop_loss_order_id="SL", take_profit_order_id="TP", symbol="BTCUSDT")
    any_store.save_pair(pair)
    pair.status = PairStatus.RESOLVED
    pair.winning_order_id = "SL"
    any_store.save_pair(pair)
    [loaded] = any_store.list_pairs()
    assert loaded.status is PairStatus.RESOLVED
    assert loaded.winning_order_id == "SL"
    any_store.delete_pair("FPAIR_1")
    assert any_store.list_pairs() == []


def test_concurrent_cas_has_one_winner(any_store):
    any_store.save(make_order())
    wins = []
    losses = []
    barrier = threading.Barrier(8)

    def race(target):
        barrier.wait()
        try:
            any_store.transition_status("COND_1", OrderStatus.PENDING, target)
            wins.append(target)
        except InvalidTransition:
            losses.append(target)

    targets = [OrderStatus.TRIGGERED, OrderStatus.CANCELLED] * 4
    threads = [threading.Thread(target=race, args=(t,)) for t in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(wins) == 1
    assert len(losses) == 7
    assert any_store.get("COND_1").status is wins[0]


def test_sqlite_store_survives_reopen(tmp_path: Path):
    db = tmp_path / "reopen.db"
    s = SQLiteOrderStore(db)
    s.save(make_order())
    s.transition_status("COND_1", OrderStatus.PENDING, OrderStatus.TRIGGERED, triggered_at=1.0)
    s.close()

    reopened = SQLiteOrderStore(db)
    assert reopened.get("COND_1").status is OrderStatus.TRIGGERED
    reopened.close()


def test_sqlite_failed_delete_and_pair_writes_roll_back(tmp_path: Path):
    s = SQLiteOrderStore(tmp_path / "rollback.db")
    s.save(make_order())
    s.conn.execute(
        "CREATE TRIGGER block_delete BEFORE DELETE ON orders BEGIN SELECT RAISE(ABORT, 'delete blocked'); END"
    )
    s.conn.execute(
        "CREATE TRIGGER block_pair_delete BEFORE DELETE ON order_pairs BEGIN SELECT RAISE(ABORT, 'delete blocked'); END"
    )
    s.conn.commit()

    with pytest.raises(sqlite3.DatabaseError):
        s.delete("COND_1")
    assert not s.conn.in_transaction
    s.save(make_order("COND_2"))

    pair = StopOrderPair(pair_id="FPAIR_1", stop_loss_order_id="SL", take_profit_order_id="TP", symbol="BTCUSDT")
    s.save_pair(pair)
    with pytest.raises(sqlite3.DatabaseError):
        s.delete_pair("FPAIR_1")
    assert not s.conn.in_transaction

    unserializable = StopOrderPair(pair_id="FPAIR_2", stop_loss_order_id="SL2", take_profit_order_id="TP2", symbol="BTCUSDT")
    unserializable.created_at = object()
    with pytest.raises(TypeError):
        s.save_pair(unserializable)
    assert not s.conn.in_transaction

    s.transition_status("COND_2", OrderStatus.PENDING, OrderStatus.CANCELLED)
    assert [p.pair_id for p in s.list_pairs()] == ["FPAIR_1"]
    s.close()


def test_apply_migrations_idempotent(tmp_path: Path):
    s = SQLiteOrderStore(tmp_path / "migs.db")
    assert apply_migrations(s.conn) == []
    assert set(MIGRATIONS) == {1, 2, 3}
    s.close()


def test_rollback_last_drops_pairs_table(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "rb.db"))
    assert apply_migrations(conn) == [1, 2, 3]
    assert rollback_last(conn) == 3
    tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    assert "order_pairs" not in tables
    assert "orders" in tables
    assert apply_migrations(conn) == [3]
    conn.close()


def test_pending_and_applied_versions(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "versions.db"))
    assert pending_versions(conn) == [1, 2, 3]
    assert applied_versions(conn) == {}
    apply_migrations(conn)
    assert pending_versions(conn) == []
    assert sorted(applied_versions(conn)) == [1, 2, 3]
    assert rollback_last(conn) == 3
    assert pending_versions(conn) == [3]
    conn.close()


def test_rollback_unknown_version_raises(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "unknown.db"))
    apply_migrations(conn)
    with pytest.raises(InvalidParameter):
        rollback_migration(conn, 99)
    assert pending_versions(conn) == []
    conn.close()


def test_rollback_last_on_empty_database(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "empty.db"))
    assert rollback_last(conn) is None
    conn.close()
