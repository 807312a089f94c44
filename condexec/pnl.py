"""
Derivatives position math: unrealized PnL, liquidation price, margin ratio,
funding fees.

All functions are pure and use Decimal. The liquidation model is the
simplified one used across the engine:

    LONG:  entry * (1 - 1/leverage + maintenance_margin_rate)
    SHORT: entry * (1 + 1/leverage - maintenance_margin_rate)

Examples:
    >>> from decimal import Decimal
    >>> liquidation_price(Decimal("50000"), 10, "LONG")
    Decimal('45200.000')
    >>> unrealized_pnl(Decimal("50000"), Decimal("51000"), Decimal("-0.5"))
    Decimal('-500.0')
"""

from dataclasses import dataclass
from decimal import Decimal, getcontext
from typing import Union

from .errors import InvalidLeverage, InvalidParameter

getcontext().prec = 28

DEFAULT_MAINTENANCE_MARGIN_RATE = Decimal("0.004")
INFINITE_RATIO = Decimal("Infinity")


def unrealized_pnl(entry_price: Decimal, mark_price: Decimal, position_amt: Decimal) -> Decimal:
    """(mark - entry) * amount; a negative amount (SHORT) flips the sign."""
    return (mark_price - entry_price) * position_amt


def liquidation_price(
    entry_price: Decimal,
    leverage: int,
    position_side: str,
    maintenance_margin_rate: Decimal = DEFAULT_MAINTENANCE_MARGIN_RATE,
) -> Decimal:
    """Simplified liquidation price for an isolated position.

    Args:
        entry_price: Average entry price
        leverage: 1..125
        position_side: "LONG" or "SHORT"
        maintenance_margin_rate: Maintenance margin as a fraction of notional

    Raises:
        InvalidLeverage: If leverage is outside 1..125
        InvalidParameter: On a non-positive entry price or unknown side
    """
    if entry_price <= 0:
        raise InvalidParameter("entry price must be greater than 0")
    if not 1 <= leverage <= 125:
        raise InvalidLeverage(f"leverage must be between 1 and 125, got: {leverage}")
    inverse = Decimal(1) / Decimal(leverage)
    if position_side == "LONG":
        return entry_price * (Decimal(1) - inverse + maintenance_margin_rate)
    if position_side == "SHORT":
        return entry_price * (Decimal(1) + inverse - maintenance_margin_rate)
    raise InvalidParameter(f"position side must be LONG or SHORT, got: {position_side}")


def margin_ratio(maintenance_margin: Decimal, initial_margin: Decimal, unrealized: Decimal) -> Decimal:
    """maintenance / (initial + unrealized).

    Returns 0 with no initial margin, and Infinity once the margin balance is
    exhausted (denominator <= 0).
    """
    if initial_margin == 0:
        return Decimal("0")
    margin_balance = initial_margin + unrealized
    if margin_balance <= 0:
        return INFINITE_RATIO
    return maintenance_margin / margin_balance


def distance_to_liquidation(mark_price: Decimal, liq_price: Decimal, position_side: str) -> Decimal:
    """Signed fractional distance from mark to liquidation; negative means past it."""
    if mark_price <= 0:
        raise InvalidParameter("mark price must be greater than 0")
    if position_side == "SHORT":
        return (liq_price - mark_price) / mark_price
    return (mark_price - liq_price) / mark_price


def funding_fee(position_amt: Decimal, mark_price: Decimal, funding_rate: Decimal) -> Decimal:
    """Fee credited to the account at a funding settlement.

    notional = |amount * mark|; LONG pays notional * rate (negative fee),
    SHORT receives it. A negative rate reverses the flow.
    """
    notional = abs(position_amt * mark_price)
    if position_amt > 0:
        return -notional * funding_rate
    if position_amt < 0:
        return notional * funding_rate
    return Decimal("0")


@dataclass
class FundingSettlement:
    """Account state after applying one funding payment."""

    fee: Decimal
    balance: Decimal
    cost: Decimal


def apply_funding_settlement(
    balance: Decimal,
    cost: Decimal,
    position_amt: Decimal,
    mark_price: Decimal,
    funding_rate: Union[Decimal, str],
) -> FundingSettlement:
    """balance <- balance + fee; cost <- cost - fee."""
    fee = funding_fee(position_amt, mark_price, Decimal(str(funding_rate)))
    return FundingSettlement(fee=fee, balance=balance + fee, cost=cost - fee)
