"""
Conditional order store: the only component that mutates order records.

Readers always get copies, so the monitoring engine and API callers can work
on a snapshot while other threads transition the same order. Status changes
go through ``transition_status``, a compare-and-set on the current status that
also enforces the state machine in ``order_state``.
"""

import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Set

from .errors import InvalidParameter, InvalidTransition, OrderNotFound
from .order_state import (
    HISTORY_STATUSES,
    Market,
    OrderRecord,
    OrderStatus,
    StopOrderPair,
    can_transition,
    order_from_dict,
)

# Fields a status transition may set alongside the new status.
TRANSITION_FIELDS = frozenset({"triggered_at", "executed_venue_order_id", "failure_reason", "updated_at"})

# Fields that identify a record and can never be rewritten.
IMMUTABLE_FIELDS = frozenset({"order_id", "status", "created_at", "record_type", "executed_venue_order_id"})


def snapshot(order: OrderRecord) -> OrderRecord:
    """Deep copy of a record."""
    return order_from_dict(order.to_dict())


def apply_transition(
    order: OrderRecord, expected: OrderStatus, new: OrderStatus, changes: Dict[str, Any]
) -> None:
    """Validate and apply a CAS transition to ``order`` in place.

    Raises:
        InvalidTransition: If the edge is illegal, the current status is not
            ``expected``, or a second venue order id would be attached
        InvalidParameter: If ``changes`` names a field transitions cannot set
    """
    if not can_transition(expected, new):
        raise InvalidTransition(f"illegal transition {expected.name} -> {new.name} for order {order.order_id}")
    if order.status is not expected:
        raise InvalidTransition(
            f"order {order.order_id} is {order.status.name}, expected {expected.name} for transition to {new.name}"
        )
    unknown = set(changes) - TRANSITION_FIELDS
    if unknown:
        raise InvalidParameter(f"cannot set {sorted(unknown)} during a status transition")
    venue_id = changes.get("executed_venue_order_id")
    if venue_id is not None and order.executed_venue_order_id not in (None, venue_id):
        raise InvalidTransition(
            f"order {order.order_id} already executed as {order.executed_venue_order_id}"
        )
    for key, value in changes.items():
        setattr(order, key, value)
    order.status = new


def apply_update(order: OrderRecord, changes: Dict[str, Any]) -> None:
    """Apply field changes to a PENDING record in place."""
    if order.status is not OrderStatus.PENDING:
        raise InvalidTransition(f"order {order.order_id} is {order.status.name}; only PENDING orders can be updated")
    forbidden = set(changes) & IMMUTABLE_FIELDS
    if forbidden:
        raise InvalidParameter(f"fields {sorted(forbidden)} cannot be updated")
    for key, value in changes.items():
        if not hasattr(order, key):
            raise InvalidParameter(f"unknown order field: {key}")
        setattr(order, key, value)


class ConditionalOrderStore(ABC):
    """Keyed store of conditional and trailing-stop orders."""

    @abstractmethod
    def save(self, order: OrderRecord) -> None:
        """Insert a new order. New orders must be PENDING and have a fresh id."""

    @abstractmethod
    def get(self, order_id: str) -> OrderRecord:
        """Return a copy of the order.

        Raises:
            OrderNotFound: If no order has this id
        """

    @abstractmethod
    def list_by_symbol(self, symbol: str) -> List[OrderRecord]:
        pass

    @abstractmethod
    def list_by_status(self, status: OrderStatus, market: Optional[Market] = None) -> List[OrderRecord]:
        pass

    @abstractmethod
    def list_all(self) -> List[OrderRecord]:
        pass

    @abstractmethod
    def transition_status(
        self, order_id: str, expected: OrderStatus, new: OrderStatus, **changes: Any
    ) -> OrderRecord:
        """Compare-and-set the status; returns a copy of the updated order."""

    @abstractmethod
    def update(self, order_id: str, **changes: Any) -> OrderRecord:
        """Change fields of a PENDING order; returns a copy of the updated order."""

    @abstractmethod
    def modify(self, order_id: str, mutate: Callable[[OrderRecord], Dict[str, Any]]) -> OrderRecord:
        """Atomic read-modify-write of a PENDING order.

        ``mutate`` receives a copy of the current record and returns the field
        changes to apply (an empty dict leaves the record untouched).
        """

    @abstractmethod
    def delete(self, order_id: str) -> None:
        pass

    @abstractmethod
    def save_pair(self, pair: StopOrderPair) -> None:
        """Insert or replace a stop-loss / take-profit pair."""

    @abstractmethod
    def delete_pair(self, pair_id: str) -> None:
        pass

    @abstractmethod
    def list_pairs(self) -> List[StopOrderPair]:
        pass

    def close(self) -> None:
        """Release backing resources; nothing to do for in-process stores."""

    def exists(self, order_id: str) -> bool:
        try:
            self.get(order_id)
        except OrderNotFound:
            return False
        return True

    def history(self, start: float, end: float) -> List[OrderRecord]:
        """EXECUTED or CANCELLED orders with start <= created_at <= end, oldest first."""
        out = []
        for status in HISTORY_STATUSES:
            out.extend(o for o in self.list_by_status(status) if start <= o.created_at <= end)
        out.sort(key=lambda o: (o.created_at, o.order_id))
        return out


class InMemoryOrderStore(ConditionalOrderStore):
    """Thread-safe in-memory store with a status index."""

    def __init__(self):
        self._lock = threading.RLock()
        self._orders: Dict[str, OrderRecord] = {}
        self._by_status: Dict[OrderStatus, Set[str]] = {s: set() for s in OrderStatus}
        self._pairs: Dict[str, StopOrderPair] = {}

    def save(self, order: OrderRecord) -> None:
        if order.status is not OrderStatus.PENDING:
            raise InvalidTransition(f"new order {order.order_id} must be PENDING, got {order.status.name}")
        with self._lock:
            if order.order_id in self._orders:
                raise InvalidParameter(f"order id already exists: {order.order_id}")
            self._orders[order.order_id] = snapshot(order)
            self._by_status[order.status].add(order.order_id)

    def get(self, order_id: str) -> OrderRecord:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFound(f"order not found: {order_id}")
            return snapshot(order)

    def list_by_symbol(self, symbol: str) -> List[OrderRecord]:
        with self._lock:
            return [snapshot(o) for o in self._orders.values() if o.symbol == symbol]

    def list_by_status(self, status: OrderStatus, market: Optional[Market] = None) -> List[OrderRecord]:
        with self._lock:
            orders = (self._orders[oid] for oid in self._by_status[status])
            return [snapshot(o) for o in orders if market is None or o.market is market]

    def list_all(self) -> List[OrderRecord]:
        with self._lock:
            return [snapshot(o) for o in self._orders.values()]

    def transition_status(
        self, order_id: str, expected: OrderStatus, new: OrderStatus, **changes: Any
    ) -> OrderRecord:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFound(f"order not found: {order_id}")
            apply_transition(order, expected, new, changes)
            self._by_status[expected].discard(order_id)
            self._by_status[new].add(order_id)
            return snapshot(order)

    def update(self, order_id: str, **changes: Any) -> OrderRecord:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFound(f"order not found: {order_id}")
            staged = snapshot(order)
            apply_update(staged, changes)
            self._orders[order_id] = staged
            return snapshot(staged)

    def modify(self, order_id: str, mutate: Callable[[OrderRecord], Dict[str, Any]]) -> OrderRecord:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFound(f"order not found: {order_id}")
            changes = mutate(snapshot(order))
            if not changes:
                return snapshot(order)
            staged = snapshot(order)
            apply_update(staged, changes)
            self._orders[order_id] = staged
            return snapshot(staged)

    def delete(self, order_id: str) -> None:
        with self._lock:
            order = self._orders.pop(order_id, None)
            if order is None:
                raise OrderNotFound(f"order not found: {order_id}")
            self._by_status[order.status].discard(order_id)

    def save_pair(self, pair: StopOrderPair) -> None:
        with self._lock:
            self._pairs[pair.pair_id] = StopOrderPair.from_dict(pair.to_dict())

    def delete_pair(self, pair_id: str) -> None:
        with self._lock:
            self._pairs.pop(pair_id, None)

    def list_pairs(self) -> List[StopOrderPair]:
        with self._lock:
            return [StopOrderPair.from_dict(p.to_dict()) for p in self._pairs.values()]
