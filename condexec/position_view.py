"""Read-through view of derivatives positions and their derived quantities."""

from decimal import Decimal
from typing import List, Optional

from . import pnl
from .errors import InvalidParameter, PositionNotFound
from .market_data import MarketDataCache
from .venue_models import FundingRate, Position


class PositionView:
    """Positions are always read live (through the retry policy, never cached);
    mark prices come from the market data cache.
    """

    def __init__(self, market_data: MarketDataCache, maintenance_margin_rate: Decimal = pnl.DEFAULT_MAINTENANCE_MARGIN_RATE):
        self.market_data = market_data
        self.venue = market_data.venue
        self.maintenance_margin_rate = maintenance_margin_rate

    def get_positions(self, symbol: str) -> List[Position]:
        """Open positions for ``symbol`` (zero-amount entries dropped)."""
        if not symbol:
            raise InvalidParameter("symbol cannot be empty")
        positions = self.market_data.with_retry(f"positions {symbol}", lambda: self.venue.get_positions(symbol))
        return [p for p in positions if p.is_open]

    def get_all_positions(self) -> List[Position]:
        positions = self.market_data.with_retry("all positions", self.venue.get_all_positions)
        return [p for p in positions if p.is_open]

    def get_position(self, symbol: str, position_side: Optional[str] = None) -> Position:
        for position in self.get_positions(symbol):
            if position_side is None or position.direction == position_side:
                return position
        side = f" {position_side}" if position_side else ""
        raise PositionNotFound(f"no open{side} position for {symbol}")

    def has_open_position(self, symbol: Optional[str] = None) -> bool:
        if symbol is None:
            return bool(self.get_all_positions())
        return bool(self.get_positions(symbol))

    def _matching(self, symbol: str, position_side: Optional[str]) -> List[Position]:
        positions = [p for p in self.get_positions(symbol) if position_side is None or p.direction == position_side]
        if not positions:
            side = f" {position_side}" if position_side else ""
            raise PositionNotFound(f"no open{side} position for {symbol}")
        return positions

    def unrealized_pnl(self, symbol: str, position_side: Optional[str] = None) -> Decimal:
        """Sum of (mark - entry) * amount over matching positions at the live mark price."""
        positions = self._matching(symbol, position_side)
        mark = self.market_data.get_mark_price(symbol)
        return sum((pnl.unrealized_pnl(p.entry_price, mark, p.position_amt) for p in positions), Decimal("0"))

    def margin_ratio(self, symbol: str, position_side: Optional[str] = None) -> Decimal:
        positions = self._matching(symbol, position_side)
        mark = self.market_data.get_mark_price(symbol)
        maintenance = initial = unrealized = Decimal("0")
        for p in positions:
            maintenance += self.maintenance_margin(p, mark)
            initial += self.initial_margin(p)
            unrealized += pnl.unrealized_pnl(p.entry_price, mark, p.position_amt)
        return pnl.margin_ratio(maintenance, initial, unrealized)

    def maintenance_margin(self, position: Position, mark_price: Decimal) -> Decimal:
        if position.maintenance_margin > 0:
            return position.maintenance_margin
        return abs(position.position_amt * mark_price) * self.maintenance_margin_rate

    @staticmethod
    def initial_margin(position: Position) -> Decimal:
        if position.initial_margin > 0:
            return position.initial_margin
        return abs(position.position_amt * position.entry_price) / Decimal(max(position.leverage, 1))

    def liquidation_price(self, position: Position) -> Decimal:
        return pnl.liquidation_price(
            position.entry_price,
            position.leverage,
            position.direction,
            self.maintenance_margin_rate,
        )

    def funding_fee(self, symbol: str) -> Decimal:
        """Fee the open position(s) would book at the current funding rate."""
        positions = self._matching(symbol, None)
        mark = self.market_data.get_mark_price(symbol)
        rate = self.market_data.get_funding_rate(symbol)
        return sum((pnl.funding_fee(p.position_amt, mark, rate) for p in positions), Decimal("0"))

    def funding_history(self, symbol: str, start: Optional[int] = None, end: Optional[int] = None) -> List[FundingRate]:
        """Funding samples with start <= funding_time <= end (unix ms)."""
        if start is not None and end is not None and start > end:
            raise InvalidParameter("start time must be before end time")
        history = self.market_data.get_funding_rate_history(symbol, start, end)
        return [
            f for f in history
            if (start is None or f.funding_time >= start) and (end is None or f.funding_time <= end)
        ]
