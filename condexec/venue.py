"""
Venue interface consumed by the engine, plus an in-memory double for tests.

Implementations raise ``VenueTransient`` for retriable failures (network,
5xx, rate limits) and ``VenuePermanent`` for everything the venue rejects
outright. All prices and quantities are Decimal.
"""

from abc import ABC, abstractmethod
from collections import defaultdict, deque
from decimal import Decimal
from typing import Any, Deque, Dict, List, Optional, Tuple

from .errors import VenuePermanent
from .venue_models import Balance, FundingRate, Kline, Position, VenueOrder, VenueOrderRequest


class Venue(ABC):
    """Abstract exchange used by the cache, risk gate, executor and services."""

    @abstractmethod
    def get_last_price(self, symbol: str) -> Decimal:
        """Last traded price."""

    @abstractmethod
    def get_mark_price(self, symbol: str) -> Decimal:
        """Derivatives mark price."""

    @abstractmethod
    def get_klines(self, symbol: str, interval: str, limit: int) -> List[Kline]:
        """Most recent ``limit`` candles, oldest first."""

    @abstractmethod
    def get_funding_rate(self, symbol: str) -> FundingRate:
        pass

    @abstractmethod
    def get_funding_rate_history(self, symbol: str, start: Optional[int], end: Optional[int]) -> List[FundingRate]:
        """Funding samples between ``start`` and ``end`` (unix ms, inclusive)."""

    @abstractmethod
    def get_balance(self) -> Balance:
        pass

    @abstractmethod
    def get_positions(self, symbol: str) -> List[Position]:
        pass

    @abstractmethod
    def get_all_positions(self) -> List[Position]:
        pass

    @abstractmethod
    def create_order(self, request: VenueOrderRequest) -> VenueOrder:
        pass

    @abstractmethod
    def cancel_order(self, symbol: str, venue_order_id: str) -> bool:
        pass

    @abstractmethod
    def set_leverage(self, symbol: str, leverage: int) -> None:
        pass

    @abstractmethod
    def set_margin_type(self, symbol: str, margin_type: str) -> None:
        pass

    @abstractmethod
    def set_position_mode(self, dual_side: bool) -> None:
        pass

    @abstractmethod
    def get_position_mode(self) -> bool:
        """True when hedge (dual-side) mode is enabled."""


class InMemoryVenue(Venue):
    """A venue double that records calls and lets tests drive market state.

    Tests set quotes and positions directly, queue failures per method with
    ``fail``, and inspect ``calls`` / ``orders`` afterwards.
    """

    def __init__(self):
        self.last_prices: Dict[str, Decimal] = {}
        self.mark_prices: Dict[str, Decimal] = {}
        self.klines: Dict[str, List[Kline]] = {}
        self.funding_rates: Dict[str, FundingRate] = {}
        self.funding_history: Dict[str, List[FundingRate]] = defaultdict(list)
        self.balance = Balance(balance=Decimal("100000"), available_balance=Decimal("100000"))
        self.positions: Dict[str, List[Position]] = defaultdict(list)
        self.leverage: Dict[str, int] = {}
        self.margin_types: Dict[str, str] = {}
        self.dual_side = False
        self.orders: Dict[str, VenueOrder] = {}
        self.requests: List[VenueOrderRequest] = []
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self._failures: Dict[str, Deque[Exception]] = defaultdict(deque)
        self._by_client_id: Dict[str, str] = {}
        self.next_id = 1

    # --- test helpers ---
    def fail(self, method: str, exc: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls to ``method`` raise ``exc``."""
        for _ in range(times):
            self._failures[method].append(exc)

    def set_position(self, position: Position) -> None:
        self.positions[position.symbol] = [position]

    def calls_to(self, method: str) -> List[Tuple[Any, ...]]:
        return [args for name, args in self.calls if name == method]

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        queue = self._failures.get(method)
        if queue:
            raise queue.popleft()

    def _gen_id(self) -> str:
        oid = f"v{self.next_id}"
        self.next_id += 1
        return oid

    # --- Venue ---
    def get_last_price(self, symbol: str) -> Decimal:
        self._record("get_last_price", symbol)
        if symbol not in self.last_prices:
            raise VenuePermanent(f"invalid symbol: {symbol}", code=-1121)
        return self.last_prices[symbol]

    def get_mark_price(self, symbol: str) -> Decimal:
        self._record("get_mark_price", symbol)
        if symbol not in self.mark_prices:
            raise VenuePermanent(f"invalid symbol: {symbol}", code=-1121)
        return self.mark_prices[symbol]

    def get_klines(self, symbol: str, interval: str, limit: int) -> List[Kline]:
        self._record("get_klines", symbol, interval, limit)
        return list(self.klines.get(symbol, []))[-limit:]

    def get_funding_rate(self, symbol: str) -> FundingRate:
        self._record("get_funding_rate", symbol)
        if symbol not in self.funding_rates:
            raise VenuePermanent(f"invalid symbol: {symbol}", code=-1121)
        return self.funding_rates[symbol]

    def get_funding_rate_history(self, symbol: str, start: Optional[int], end: Optional[int]) -> List[FundingRate]:
        self._record("get_funding_rate_history", symbol, start, end)
        return [
            f for f in self.funding_history.get(symbol, [])
            if (start is None or f.funding_time >= start) and (end is None or f.funding_time <= end)
        ]

    def get_balance(self) -> Balance:
        self._record("get_balance")
        return self.balance

    def get_positions(self, symbol: str) -> List[Position]:
        self._record("get_positions", symbol)
        return list(self.positions.get(symbol, []))

    def get_all_positions(self) -> List[Position]:
        self._record("get_all_positions")
        return [p for positions in self.positions.values() for p in positions]

    def create_order(self, request: VenueOrderRequest) -> VenueOrder:
        self._record("create_order", request)
        if request.client_order_id and request.client_order_id in self._by_client_id:
            return self.orders[self._by_client_id[request.client_order_id]]
        oid = self._gen_id()
        order = VenueOrder(
            order_id=oid,
            symbol=request.symbol,
            side=request.side,
            type=request.type,
            client_order_id=request.client_order_id,
            orig_qty=request.quantity,
            price=request.price or Decimal("0"),
        )
        self.orders[oid] = order
        self.requests.append(request)
        if request.client_order_id:
            self._by_client_id[request.client_order_id] = oid
        return order

    def cancel_order(self, symbol: str, venue_order_id: str) -> bool:
        self._record("cancel_order", symbol, venue_order_id)
        order = self.orders.get(venue_order_id)
        if order is None:
            return False
        self.orders[venue_order_id] = order.model_copy(update={"status": "CANCELED"})
        return True

    def set_leverage(self, symbol: str, leverage: int) -> None:
        self._record("set_leverage", symbol, leverage)
        self.leverage[symbol] = leverage

    def set_margin_type(self, symbol: str, margin_type: str) -> None:
        self._record("set_margin_type", symbol, margin_type)
        self.margin_types[symbol] = margin_type

    def set_position_mode(self, dual_side: bool) -> None:
        self._record("set_position_mode", dual_side)
        self.dual_side = dual_side

    def get_position_mode(self) -> bool:
        self._record("get_position_mode")
        return self.dual_side
