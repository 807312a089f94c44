"""
Order records and the conditional-order state machine.

State Transitions:
    PENDING → TRIGGERED → EXECUTED
                        → FAILED
    PENDING → CANCELLED

No other edge exists. EXECUTED, FAILED and CANCELLED are terminal.

Records:
    ConditionalOrder: a venue order waiting on a trigger condition (also used
        for stop-loss and take-profit legs, distinguished by ``role``)
    TrailingStopOrder: a reduce-only close whose stop ratchets behind the
        best price seen (maximum for LONG, minimum for SHORT)
    StopOrderPair: relation between one stop-loss and one take-profit leg

Records are owned by the order store. Everything else works on copies.

Examples:
    >>> can_transition(OrderStatus.PENDING, OrderStatus.TRIGGERED)
    True
    >>> can_transition(OrderStatus.TRIGGERED, OrderStatus.CANCELLED)
    False
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum, auto
from typing import Any, Dict, Optional, Union

from .conditions import TriggerCondition, condition_from_dict
from .errors import InvalidParameter


class Side(Enum):
    """Order side: BUY or SELL."""

    BUY = auto()
    SELL = auto()


class OrderType(Enum):
    MARKET = auto()
    LIMIT = auto()


class PositionSide(Enum):
    LONG = auto()
    SHORT = auto()
    BOTH = auto()  # one-way position mode


class MarginType(Enum):
    ISOLATED = auto()
    CROSSED = auto()


class Market(Enum):
    """Product family an order belongs to."""

    SPOT = auto()
    FUTURES = auto()


class OrderRole(Enum):
    CONDITIONAL = auto()
    STOP_LOSS = auto()
    TAKE_PROFIT = auto()
    TRAILING_STOP = auto()


class OrderStatus(Enum):
    """Conditional order lifecycle states."""

    PENDING = auto()  # Waiting for trigger
    TRIGGERED = auto()  # Trigger fired, venue order being placed
    EXECUTED = auto()  # Venue accepted the order
    CANCELLED = auto()  # Cancelled by user or by a pair sibling
    FAILED = auto()  # Rejected by risk checks or by the venue


class PairStatus(Enum):
    ACTIVE = auto()
    RESOLVED = auto()


ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.TRIGGERED, OrderStatus.CANCELLED}),
    OrderStatus.TRIGGERED: frozenset({OrderStatus.EXECUTED, OrderStatus.FAILED}),
}

TERMINAL_STATUSES = frozenset({OrderStatus.EXECUTED, OrderStatus.CANCELLED, OrderStatus.FAILED})
HISTORY_STATUSES = frozenset({OrderStatus.EXECUTED, OrderStatus.CANCELLED})


def parse_enum(enum_cls, value, what: str):
    """Accept an enum member or its (case-insensitive) name."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls[str(value).upper()]
    except KeyError:
        choices = ", ".join(m.name for m in enum_cls)
        raise InvalidParameter(f"invalid {what}: {value!r} (expected one of {choices})")


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


def closing_side(position_side: PositionSide) -> Side:
    """Side of the order that reduces a position."""
    return Side.BUY if position_side is PositionSide.SHORT else Side.SELL


@dataclass
class TimeWindow:
    """Inclusive evaluation window in unix seconds; either bound may be open."""

    start_at: Optional[float] = None
    end_at: Optional[float] = None

    def contains(self, now: float) -> bool:
        if self.start_at is not None and now < self.start_at:
            return False
        if self.end_at is not None and now > self.end_at:
            return False
        return True

    def is_valid(self) -> bool:
        if self.start_at is not None and self.end_at is not None:
            return self.start_at <= self.end_at
        return True

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {"start_at": self.start_at, "end_at": self.end_at}

    @staticmethod
    def from_dict(d: Optional[Dict[str, Any]]) -> Optional["TimeWindow"]:
        if d is None:
            return None
        return TimeWindow(start_at=d.get("start_at"), end_at=d.get("end_at"))


@dataclass
class ConditionalOrder:
    """A venue order held back until its trigger condition holds.

    Attributes:
        order_id: Engine-assigned identifier, stable for the order's lifetime
        symbol: Instrument, e.g. BTCUSDT
        side: BUY or SELL
        order_type: MARKET or LIMIT
        quantity: Order quantity (> 0)
        trigger_condition: Simple or composite condition tree
        price: Limit price (> 0 for LIMIT, otherwise 0)
        market: SPOT or FUTURES
        position_side: LONG/SHORT/BOTH for futures orders
        reduce_only: Futures close-only flag
        leverage: Leverage used for margin checks (futures)
        margin_type: Margin type used for structural checks (futures)
        role: CONDITIONAL, STOP_LOSS or TAKE_PROFIT
        time_window: Optional evaluation window
        status: Current OrderStatus
        created_at / updated_at / triggered_at: unix seconds
        executed_venue_order_id: Venue id once EXECUTED (attached at most once)
        failure_reason: Error text once FAILED
    """

    order_id: str
    symbol: str
    side: Side
    order_type: OrderType
    quantity: Decimal
    trigger_condition: TriggerCondition
    price: Decimal = Decimal("0")
    market: Market = Market.SPOT
    position_side: Optional[PositionSide] = None
    reduce_only: bool = False
    leverage: Optional[int] = None
    margin_type: Optional[MarginType] = None
    role: OrderRole = OrderRole.CONDITIONAL
    time_window: Optional[TimeWindow] = None
    status: OrderStatus = OrderStatus.PENDING
    created_at: float = 0.0
    updated_at: float = 0.0
    triggered_at: Optional[float] = None
    executed_venue_order_id: Optional[str] = None
    failure_reason: Optional[str] = None

    record_type = "conditional"

    @property
    def is_futures(self) -> bool:
        return self.market is Market.FUTURES

    def copy(self) -> "ConditionalOrder":
        return ConditionalOrder.from_dict(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_type": self.record_type,
            "order_id": self.order_id,
            "symbol": self.symbol,
            "side": self.side.name,
            "order_type": self.order_type.name,
            "quantity": str(self.quantity),
            "price": str(self.price),
            "trigger_condition": self.trigger_condition.to_dict(),
            "market": self.market.name,
            "position_side": self.position_side.name if self.position_side else None,
            "reduce_only": self.reduce_only,
            "leverage": self.leverage,
            "margin_type": self.margin_type.name if self.margin_type else None,
            "role": self.role.name,
            "time_window": self.time_window.to_dict() if self.time_window else None,
            "status": self.status.name,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "triggered_at": self.triggered_at,
            "executed_venue_order_id": self.executed_venue_order_id,
            "failure_reason": self.failure_reason,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ConditionalOrder":
        return ConditionalOrder(
            order_id=d["order_id"],
            symbol=d["symbol"],
            side=Side[d["side"]],
            order_type=OrderType[d["order_type"]],
            quantity=Decimal(str(d["quantity"])),
            price=Decimal(str(d.get("price") or "0")),
            trigger_condition=condition_from_dict(d["trigger_condition"]),
            market=Market[d.get("market", "SPOT")],
            position_side=PositionSide[d["position_side"]] if d.get("position_side") else None,
            reduce_only=bool(d.get("reduce_only", False)),
            leverage=d.get("leverage"),
            margin_type=MarginType[d["margin_type"]] if d.get("margin_type") else None,
            role=OrderRole[d.get("role", "CONDITIONAL")],
            time_window=TimeWindow.from_dict(d.get("time_window")),
            status=OrderStatus[d.get("status", "PENDING")],
            created_at=d.get("created_at", 0.0),
            updated_at=d.get("updated_at", 0.0),
            triggered_at=d.get("triggered_at"),
            executed_venue_order_id=d.get("executed_venue_order_id"),
            failure_reason=d.get("failure_reason"),
        )


@dataclass
class TrailingStopOrder:
    """Reduce-only close that trails the best price seen since creation.

    LONG positions trail the running maximum and close with a SELL; SHORT
    positions trail the running minimum and close with a BUY.

    Attributes:
        callback_rate: Trail distance in percent, 0 < rate < 100
        extremum_price: High-water mark (LONG) or low-water mark (SHORT)
        current_stop_price: extremum * (1 - rate/100) for LONG,
            extremum * (1 + rate/100) for SHORT
        last_updated_at: When the extremum last moved

    Invariants:
        - extremum_price is non-decreasing for LONG, non-increasing for SHORT
        - current_stop_price is always derived from extremum_price
    """

    order_id: str
    symbol: str
    position_side: PositionSide
    quantity: Decimal
    callback_rate: Decimal
    extremum_price: Decimal
    current_stop_price: Decimal
    market: Market = Market.FUTURES
    reduce_only: bool = True
    time_window: Optional[TimeWindow] = None
    status: OrderStatus = OrderStatus.PENDING
    created_at: float = 0.0
    updated_at: float = 0.0
    last_updated_at: float = 0.0
    triggered_at: Optional[float] = None
    executed_venue_order_id: Optional[str] = None
    failure_reason: Optional[str] = None

    record_type = "trailing_stop"
    role = OrderRole.TRAILING_STOP
    order_type = OrderType.MARKET
    price = Decimal("0")
    leverage = None
    margin_type = None

    @property
    def side(self) -> Side:
        return closing_side(self.position_side)

    @property
    def is_futures(self) -> bool:
        return self.market is Market.FUTURES

    def copy(self) -> "TrailingStopOrder":
        return TrailingStopOrder.from_dict(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_type": self.record_type,
            "order_id": self.order_id,
            "symbol": self.symbol,
            "position_side": self.position_side.name,
            "quantity": str(self.quantity),
            "callback_rate": str(self.callback_rate),
            "extremum_price": str(self.extremum_price),
            "current_stop_price": str(self.current_stop_price),
            "market": self.market.name,
            "reduce_only": self.reduce_only,
            "time_window": self.time_window.to_dict() if self.time_window else None,
            "status": self.status.name,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "last_updated_at": self.last_updated_at,
            "triggered_at": self.triggered_at,
            "executed_venue_order_id": self.executed_venue_order_id,
            "failure_reason": self.failure_reason,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "TrailingStopOrder":
        return TrailingStopOrder(
            order_id=d["order_id"],
            symbol=d["symbol"],
            position_side=PositionSide[d["position_side"]],
            quantity=Decimal(str(d["quantity"])),
            callback_rate=Decimal(str(d["callback_rate"])),
            extremum_price=Decimal(str(d["extremum_price"])),
            current_stop_price=Decimal(str(d["current_stop_price"])),
            market=Market[d.get("market", "FUTURES")],
            reduce_only=bool(d.get("reduce_only", True)),
            time_window=TimeWindow.from_dict(d.get("time_window")),
            status=OrderStatus[d.get("status", "PENDING")],
            created_at=d.get("created_at", 0.0),
            updated_at=d.get("updated_at", 0.0),
            last_updated_at=d.get("last_updated_at", 0.0),
            triggered_at=d.get("triggered_at"),
            executed_venue_order_id=d.get("executed_venue_order_id"),
            failure_reason=d.get("failure_reason"),
        )


OrderRecord = Union[ConditionalOrder, TrailingStopOrder]


def order_from_dict(d: Dict[str, Any]) -> OrderRecord:
    """Rebuild either record type from its to_dict() form."""
    if d.get("record_type") == TrailingStopOrder.record_type:
        return TrailingStopOrder.from_dict(d)
    return ConditionalOrder.from_dict(d)


@dataclass
class StopOrderPair:
    """Stop-loss / take-profit relation. Holds ids only, never the orders."""

    pair_id: str
    stop_loss_order_id: str
    take_profit_order_id: str
    symbol: str = ""
    status: PairStatus = PairStatus.ACTIVE
    created_at: float = 0.0
    resolved_at: Optional[float] = None
    winning_order_id: Optional[str] = None

    def sibling_of(self, order_id: str) -> Optional[str]:
        if order_id == self.stop_loss_order_id:
            return self.take_profit_order_id
        if order_id == self.take_profit_order_id:
            return self.stop_loss_order_id
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pair_id": self.pair_id,
            "stop_loss_order_id": self.stop_loss_order_id,
            "take_profit_order_id": self.take_profit_order_id,
            "symbol": self.symbol,
            "status": self.status.name,
            "created_at": self.created_at,
            "resolved_at": self.resolved_at,
            "winning_order_id": self.winning_order_id,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "StopOrderPair":
        return StopOrderPair(
            pair_id=d["pair_id"],
            stop_loss_order_id=d["stop_loss_order_id"],
            take_profit_order_id=d["take_profit_order_id"],
            symbol=d.get("symbol", ""),
            status=PairStatus[d.get("status", "ACTIVE")],
            created_at=d.get("created_at", 0.0),
            resolved_at=d.get("resolved_at"),
            winning_order_id=d.get("winning_order_id"),
        )
