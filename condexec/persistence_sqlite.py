import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import InvalidParameter, InvalidTransition, OrderNotFound
from .order_state import Market, OrderRecord, OrderStatus, StopOrderPair, order_from_dict
from .store import ConditionalOrderStore, apply_transition, apply_update


class SQLiteOrderStore(ConditionalOrderStore):
    """SQLite-backed order store.

    Orders are stored as JSON documents with the columns the engine filters on
    (status, symbol, market, created_at) pulled out for indexing. Every write
    runs in a ``BEGIN IMMEDIATE`` transaction, so the status CAS holds across
    processes sharing the same database file, not only across threads.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.path), timeout=30, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        from .db_migrations import apply_migrations

        apply_migrations(self.conn)

    @staticmethod
    def _load(row) -> OrderRecord:
        return order_from_dict(json.loads(row["value"]))

    def _fetch(self, cur, order_id: str) -> OrderRecord:
        cur.execute("SELECT value FROM orders WHERE order_id = ?", (order_id,))
        row = cur.fetchone()
        if row is None:
            raise OrderNotFound(f"order not found: {order_id}")
        return self._load(row)

    def _write(self, cur, order: OrderRecord) -> None:
        cur.execute(
            "UPDATE orders SET status = ?, value = ?, updated_at = ? WHERE order_id = ?",
            (order.status.name, json.dumps(order.to_dict()), order.updated_at, order.order_id),
        )

    def _select(self, where: str = "", params: tuple = ()) -> List[OrderRecord]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(f"SELECT value FROM orders {where} ORDER BY created_at, order_id", params)
            return [self._load(row) for row in cur.fetchall()]

    # --- Order APIs ---
    def save(self, order: OrderRecord) -> None:
        if order.status is not OrderStatus.PENDING:
            raise InvalidTransition(f"new order {order.order_id} must be PENDING, got {order.status.name}")
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                cur.execute(
                    "INSERT INTO orders(order_id, record_type, symbol, market, status, value, created_at, updated_at) "
                    "VALUES(?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        order.order_id,
                        order.record_type,
                        order.symbol,
                        order.market.name,
                        order.status.name,
                        json.dumps(order.to_dict()),
                        order.created_at,
                        order.updated_at,
                    ),
                )
                self.conn.commit()
            except sqlite3.IntegrityError as e:
                self.conn.rollback()
                raise InvalidParameter(f"order id already exists: {order.order_id}", cause=e)
            except Exception:
                self.conn.rollback()
                raise

    def get(self, order_id: str) -> OrderRecord:
        with self._lock:
            return self._fetch(self.conn.cursor(), order_id)

    def list_by_symbol(self, symbol: str) -> List[OrderRecord]:
        return self._select("WHERE symbol = ?", (symbol,))

    def list_by_status(self, status: OrderStatus, market: Optional[Market] = None) -> List[OrderRecord]:
        if market is None:
            return self._select("WHERE status = ?", (status.name,))
        return self._select("WHERE status = ? AND market = ?", (status.name, market.name))

    def list_all(self) -> List[OrderRecord]:
        return self._select()

    def history(self, start: float, end: float) -> List[OrderRecord]:
        return self._select(
            "WHERE status IN (?, ?) AND created_at >= ? AND created_at <= ?",
            (OrderStatus.EXECUTED.name, OrderStatus.CANCELLED.name, start, end),
        )

    def transition_status(
        self, order_id: str, expected: OrderStatus, new: OrderStatus, **changes: Any
    ) -> OrderRecord:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                order = self._fetch(cur, order_id)
                apply_transition(order, expected, new, changes)
                self._write(cur, order)
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
            return order

    def update(self, order_id: str, **changes: Any) -> OrderRecord:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                order = self._fetch(cur, order_id)
                apply_update(order, changes)
                self._write(cur, order)
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
            return order

    def modify(self, order_id: str, mutate: Callable[[OrderRecord], Dict[str, Any]]) -> OrderRecord:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                order = self._fetch(cur, order_id)
                changes = mutate(self._fetch(cur, order_id))
                if changes:
                    apply_update(order, changes)
                    self._write(cur, order)
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
            return order

    def delete(self, order_id: str) -> None:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                cur.execute("DELETE FROM orders WHERE order_id = ?", (order_id,))
                deleted = cur.rowcount
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
        if not deleted:
            raise OrderNotFound(f"order not found: {order_id}")

    # --- Pair APIs ---
    def save_pair(self, pair: StopOrderPair) -> None:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                cur.execute(
                    "INSERT OR REPLACE INTO order_pairs(pair_id, status, value, updated_at) VALUES(?, ?, ?, ?)",
                    (pair.pair_id, pair.status.name, json.dumps(pair.to_dict()), pair.resolved_at or pair.created_at),
                )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    def delete_pair(self, pair_id: str) -> None:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                cur.execute("DELETE FROM order_pairs WHERE pair_id = ?", (pair_id,))
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    def list_pairs(self) -> List[StopOrderPair]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT value FROM order_pairs")
            return [StopOrderPair.from_dict(json.loads(row["value"])) for row in cur.fetchall()]

    def close(self):
        with self._lock:
            self.conn.close()
