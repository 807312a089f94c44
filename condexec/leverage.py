"""Leverage, margin type and position mode changes.

Mode changes are refused while positions are open: margin type per symbol,
position mode (one-way vs hedge) account-wide. The conflict check runs before
any venue write, so a refused change never reaches the venue.
"""

from typing import Callable, Optional

from .errors import InvalidParameter, MarginModeConflict, PositionModeConflict
from .logging_setup import logger
from .order_state import MarginType
from .position_view import PositionView
from .risk import MAX_LEVERAGE, check_leverage, parse_margin_type


class LeverageService:
    """Futures account settings guarded by open-position checks.

    Args:
        position_view: Live position reads
        max_leverage: Upper bound for set_leverage, or a callable returning it
            (pass ``lambda: risk_gate.limits.max_leverage`` to follow limit updates)
    """

    def __init__(self, position_view: PositionView, max_leverage=MAX_LEVERAGE):
        self.position_view = position_view
        self.market_data = position_view.market_data
        self.venue = position_view.venue
        self._max_leverage: Callable[[], int] = max_leverage if callable(max_leverage) else (lambda: max_leverage)

    def set_leverage(self, symbol: str, leverage: int) -> None:
        if not symbol:
            raise InvalidParameter("symbol cannot be empty")
        check_leverage(leverage, self._max_leverage())
        self.market_data.with_retry(f"set leverage {symbol}", lambda: self.venue.set_leverage(symbol, leverage))
        logger.info(f"Leverage set | symbol={symbol} leverage={leverage}")

    def set_margin_type(self, symbol: str, margin_type) -> MarginType:
        """Switch ISOLATED/CROSSED for ``symbol``.

        Raises:
            InvalidParameter: Empty symbol or unknown margin type
            MarginModeConflict: If ``symbol`` has an open position
        """
        if not symbol:
            raise InvalidParameter("symbol cannot be empty")
        parsed = parse_margin_type(margin_type)
        positions = self.position_view.get_positions(symbol)
        if positions:
            amounts = ", ".join(str(p.position_amt) for p in positions)
            logger.warning(f"Margin type change refused | symbol={symbol} margin_type={parsed.name} position_amt={amounts}")
            raise MarginModeConflict(
                f"cannot change margin type for {symbol} while a position is open (position_amt={amounts})"
            )
        self.market_data.with_retry(
            f"set margin type {symbol}", lambda: self.venue.set_margin_type(symbol, parsed.name)
        )
        logger.info(f"Margin type set | symbol={symbol} margin_type={parsed.name}")
        return parsed

    def set_position_mode(self, dual_side: bool) -> None:
        """Switch between one-way (False) and hedge (True) position mode.

        Raises:
            PositionModeConflict: If any position is open on the account
        """
        open_positions = self.position_view.get_all_positions()
        if open_positions:
            symbols = ", ".join(sorted({p.symbol for p in open_positions}))
            logger.warning(f"Position mode change refused | dual_side={dual_side} open_symbols={symbols}")
            raise PositionModeConflict(
                f"cannot change position mode while positions are open ({symbols})"
            )
        self.market_data.with_retry("set position mode", lambda: self.venue.set_position_mode(bool(dual_side)))
        logger.info(f"Position mode set | dual_side={dual_side}")

    def get_position_mode(self) -> bool:
        return self.market_data.with_retry("position mode", self.venue.get_position_mode)

    def get_leverage(self, symbol: str) -> Optional[int]:
        """Leverage of the open position on ``symbol``, if any."""
        positions = self.position_view.get_positions(symbol)
        return positions[0].leverage if positions else None
