"""Typed error hierarchy for the conditional execution engine.

Every error raised by the engine derives from TradingError, which carries a
stable ``error_type`` string, an optional venue error ``code`` and the
underlying ``cause`` (if any). Callers can catch a whole family at once:

    RiskRejection  -- pre-trade rejections (order not saved / moved to FAILED)
    NotFoundError  -- unknown order, stop order, position
    VenueError     -- I/O failures talking to the venue

Examples:
    >>> try:
    ...     raise RiskLimitExceeded("order value 50000 exceeds maximum limit 10000")
    ... except RiskRejection as e:
    ...     print(e.error_type)
    RISK_LIMIT_EXCEEDED
"""
from typing import Optional


class TradingError(Exception):
    """Base class for all engine errors."""

    error_type = "TRADING_ERROR"

    def __init__(self, message: str, code: int = 0, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.cause = cause

    def __str__(self) -> str:
        text = f"[{self.error_type}] {self.message}"
        if self.code:
            text += f" (code: {self.code})"
        if self.cause is not None:
            text += f": {self.cause}"
        return text

    def to_dict(self) -> dict:
        return {
            "type": self.error_type,
            "message": self.message,
            "code": self.code,
            "cause": str(self.cause) if self.cause is not None else None,
        }


class InvalidParameter(TradingError):
    error_type = "INVALID_PARAMETER"


class InvalidTriggerCondition(TradingError):
    error_type = "INVALID_TRIGGER_CONDITION"


class InvalidTransition(TradingError):
    error_type = "INVALID_TRANSITION"


# --- Pre-trade rejections ---
class RiskRejection(TradingError):
    error_type = "RISK_REJECTION"


class InvalidLeverage(RiskRejection):
    error_type = "INVALID_LEVERAGE"


class MarginModeConflict(RiskRejection):
    error_type = "MARGIN_MODE_CONFLICT"


class PositionModeConflict(RiskRejection):
    error_type = "POSITION_MODE_CONFLICT"


class InsufficientMargin(RiskRejection):
    error_type = "INSUFFICIENT_MARGIN"


class RiskLimitExceeded(RiskRejection):
    error_type = "RISK_LIMIT_EXCEEDED"


class MaxPositionExceeded(RiskRejection):
    error_type = "MAX_POSITION_EXCEEDED"


# --- Lookups ---
class NotFoundError(TradingError):
    error_type = "NOT_FOUND"


class OrderNotFound(NotFoundError):
    error_type = "ORDER_NOT_FOUND"


class StopOrderNotFound(NotFoundError):
    error_type = "STOP_ORDER_NOT_FOUND"


class ConditionalOrderNotFound(NotFoundError):
    error_type = "CONDITIONAL_ORDER_NOT_FOUND"


class PositionNotFound(NotFoundError):
    error_type = "POSITION_NOT_FOUND"


# --- Venue I/O ---
class VenueError(TradingError):
    error_type = "VENUE_ERROR"


class VenueTransient(VenueError):
    """Retriable failure: network error, 5xx, rate limit, invalid quote."""

    error_type = "VENUE_TRANSIENT"


class VenuePermanent(VenueError):
    """Non-retriable failure reported by the venue (rejected order, bad symbol)."""

    error_type = "VENUE_PERMANENT"
