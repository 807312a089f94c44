#!/usr/bin/env python
"""Order management CLI over the SQLite order store.

Usage:
    python scripts/order_manager.py --db condexec.db list
    python scripts/order_manager.py --db condexec.db list --all
    python scripts/order_manager.py --db condexec.db show <order_id>
    python scripts/order_manager.py --db condexec.db cancel <order_id>
    python scripts/order_manager.py --db condexec.db history --start 0 --end 1900000000

Cancelling here only flips a PENDING record to CANCELLED (and its pair
sibling, if any). Nothing is sent to the venue: a PENDING order has no venue
order yet.
"""
import argparse
import json
import sys
import time
from pathlib import Path

# Project root on sys.path so `condexec` imports when run as a plain script.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from condexec.errors import InvalidTransition, OrderNotFound
from condexec.order_state import OrderStatus, TrailingStopOrder
from condexec.pairs import PairCoordinator
from condexec.persistence_sqlite import SQLiteOrderStore


def describe(order):
    if isinstance(order, TrailingStopOrder):
        return f"trail {order.callback_rate}% stop={order.current_stop_price}"
    return order.trigger_condition.summary()


def print_orders(orders):
    if not orders:
        print("No orders found")
        return
    print(f"{'Order ID':<36} {'Symbol':<10} {'Side':<5} {'Qty':<10} {'Status':<10} Condition")
    print("-" * 100)
    for order in orders:
        print(
            f"{order.order_id:<36} {order.symbol:<10} {order.side.name:<5} {str(order.quantity):<10} "
            f"{order.status.name:<10} {describe(order)}"
        )
    print(f"\nTotal orders: {len(orders)}")


def list_orders(store, show_all):
    orders = store.list_all() if show_all else store.list_by_status(OrderStatus.PENDING)
    print_orders(sorted(orders, key=lambda o: (o.created_at, o.order_id)))


def show_order(store, order_id):
    try:
        order = store.get(order_id)
    except OrderNotFound:
        print(f"Order not found: {order_id}")
        return 1
    print(json.dumps(order.to_dict(), indent=2, default=str))
    return 0


def cancel_order(store, order_id):
    try:
        store.transition_status(order_id, OrderStatus.PENDING, OrderStatus.CANCELLED, updated_at=time.time())
    except OrderNotFound:
        print(f"Order not found: {order_id}")
        return 1
    except InvalidTransition as e:
        print(f"Cannot cancel {order_id}: {e}")
        return 1
    sibling = PairCoordinator(store).resolve_on_cancel(order_id)
    print(f"Order cancelled: {order_id}")
    if sibling:
        print(f"Pair sibling cancelled: {sibling}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Conditional order management CLI")
    parser.add_argument("--db", required=True, help="Path to SQLite database")
    sub = parser.add_subparsers(dest="cmd")

    list_p = sub.add_parser("list")
    list_p.add_argument("--all", action="store_true", help="Include finished orders")

    show = sub.add_parser("show")
    show.add_argument("order_id")

    cancel = sub.add_parser("cancel")
    cancel.add_argument("order_id")

    history = sub.add_parser("history")
    history.add_argument("--start", type=float, default=0.0, help="Unix seconds")
    history.add_argument("--end", type=float, default=None, help="Unix seconds (default: now)")

    args = parser.parse_args()

    db_path = Path(args.db)
    if not db_path.exists():
        print(f"Database not found: {db_path}")
        sys.exit(1)

    store = SQLiteOrderStore(db_path)
    code = 0
    try:
        if args.cmd == "list":
            list_orders(store, args.all)
        elif args.cmd == "show":
            code = show_order(store, args.order_id)
        elif args.cmd == "cancel":
            code = cancel_order(store, args.order_id)
        elif args.cmd == "history":
            end = args.end if args.end is not None else time.time()
            print_orders(store.history(args.start, end))
        else:
            parser.print_help()
    finally:
        store.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
