"""
Trailing stop ratchet.

LONG stops follow the highest price seen and fire when price falls back to
the stop; SHORT stops follow the lowest price seen and fire when price rises
back to the stop:

    LONG:  stop = extremum * (1 - callback_rate / 100), fire when price <= stop
    SHORT: stop = extremum * (1 + callback_rate / 100), fire when price >= stop

The extremum only ever moves in the favorable direction, and the stop is
recomputed from it on every move, so the stop ratchets and never gives back
ground.

Examples:
    >>> from decimal import Decimal
    >>> from condexec.order_state import PositionSide
    >>> tracker = TrailingStopTracker()
    >>> tracker.stop_price(Decimal("51000"), Decimal("2"), PositionSide.LONG)
    Decimal('49980.00')
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Tuple

from .errors import InvalidParameter
from .order_state import PositionSide, TrailingStopOrder

HUNDRED = Decimal("100")


@dataclass
class TrailingUpdate:
    """Result of observing one price."""

    extremum_price: Decimal
    current_stop_price: Decimal
    changed: bool
    triggered: bool


def validate_callback_rate(callback_rate: Decimal) -> Decimal:
    rate = Decimal(str(callback_rate))
    if not Decimal("0") < rate < HUNDRED:
        raise InvalidParameter(f"callback rate must be between 0 and 100 (exclusive), got: {callback_rate}")
    return rate


class TrailingStopTracker:
    """Stateless ratchet rules; the order store holds the state."""

    @staticmethod
    def stop_price(extremum: Decimal, callback_rate: Decimal, position_side: PositionSide) -> Decimal:
        if position_side is PositionSide.SHORT:
            return extremum * (Decimal(1) + callback_rate / HUNDRED)
        return extremum * (Decimal(1) - callback_rate / HUNDRED)

    def initial_state(self, reference_price: Decimal, callback_rate: Decimal, position_side: PositionSide) -> Tuple[Decimal, Decimal]:
        """(extremum, stop) for a new trailing stop seeded from ``reference_price``."""
        if reference_price <= 0:
            raise InvalidParameter("reference price must be greater than 0")
        rate = validate_callback_rate(callback_rate)
        return reference_price, self.stop_price(reference_price, rate, position_side)

    @staticmethod
    def improves(order: TrailingStopOrder, price: Decimal) -> bool:
        if order.position_side is PositionSide.SHORT:
            return price < order.extremum_price
        return price > order.extremum_price

    @staticmethod
    def is_triggered(order: TrailingStopOrder, price: Decimal) -> bool:
        if order.position_side is PositionSide.SHORT:
            return price >= order.current_stop_price
        return price <= order.current_stop_price

    def ratchet(self, order: TrailingStopOrder, price: Decimal, now: float) -> Dict[str, Any]:
        """Field changes for ``order`` after observing ``price`` (empty if the extremum holds)."""
        if not self.improves(order, price):
            return {}
        return {
            "extremum_price": price,
            "current_stop_price": self.stop_price(price, order.callback_rate, order.position_side),
            "last_updated_at": now,
            "updated_at": now,
        }

    def observe(self, order: TrailingStopOrder, price: Decimal, now: float = 0.0) -> TrailingUpdate:
        """Ratchet ``order`` in place and report whether it fires at ``price``."""
        changes = self.ratchet(order, price, now)
        for key, value in changes.items():
            setattr(order, key, value)
        return TrailingUpdate(
            extremum_price=order.extremum_price,
            current_stop_price=order.current_stop_price,
            changed=bool(changes),
            triggered=self.is_triggered(order, price),
        )

    def callback_rate_changes(self, order: TrailingStopOrder, callback_rate: Decimal, now: float) -> Dict[str, Any]:
        """New rate applied to the current extremum; the extremum is kept."""
        rate = validate_callback_rate(callback_rate)
        return {
            "callback_rate": rate,
            "current_stop_price": self.stop_price(order.extremum_price, rate, order.position_side),
            "updated_at": now,
        }
