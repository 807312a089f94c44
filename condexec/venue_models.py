"""Pydantic models for venue requests and responses.

Venue payloads use camelCase keys and encode numbers as strings; the
``from_venue`` constructors normalize them to snake_case Decimal fields so the
rest of the engine never touches raw JSON.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _dec(data: Dict[str, Any], key: str, default: str = "0") -> Decimal:
    raw = data.get(key)
    if raw is None or raw == "":
        return Decimal(default)
    return Decimal(str(raw))


class Position(BaseModel):
    """An open (or flat) derivatives position.

    ``position_amt`` is signed: negative for SHORT in one-way mode.
    """

    symbol: str
    position_amt: Decimal
    entry_price: Decimal
    mark_price: Decimal = Decimal("0")
    unrealized_profit: Decimal = Decimal("0")
    liquidation_price: Decimal = Decimal("0")
    leverage: int = 1
    margin_type: str = "CROSSED"
    position_side: str = "BOTH"
    isolated_margin: Decimal = Decimal("0")
    initial_margin: Decimal = Decimal("0")
    maintenance_margin: Decimal = Decimal("0")

    @property
    def is_open(self) -> bool:
        return self.position_amt != 0

    @property
    def direction(self) -> str:
        """LONG or SHORT, resolving one-way mode from the sign of the amount."""
        if self.position_side in ("LONG", "SHORT"):
            return self.position_side
        return "SHORT" if self.position_amt < 0 else "LONG"

    @classmethod
    def from_venue(cls, data: Dict[str, Any]) -> "Position":
        margin_type = str(data.get("marginType") or "cross").upper()
        return cls(
            symbol=data["symbol"],
            position_amt=_dec(data, "positionAmt"),
            entry_price=_dec(data, "entryPrice"),
            mark_price=_dec(data, "markPrice"),
            unrealized_profit=_dec(data, "unRealizedProfit"),
            liquidation_price=_dec(data, "liquidationPrice"),
            leverage=int(data.get("leverage") or 1),
            margin_type="ISOLATED" if margin_type == "ISOLATED" else "CROSSED",
            position_side=data.get("positionSide") or "BOTH",
            isolated_margin=_dec(data, "isolatedMargin"),
            initial_margin=_dec(data, "positionInitialMargin", data.get("initialMargin") or "0"),
            maintenance_margin=_dec(data, "maintMargin"),
        )


class Balance(BaseModel):
    asset: str = "USDT"
    balance: Decimal
    available_balance: Decimal
    unrealized_profit: Decimal = Decimal("0")

    @classmethod
    def from_venue(cls, data: Dict[str, Any]) -> "Balance":
        """Parse the futures account summary."""
        return cls(
            asset=data.get("asset") or "USDT",
            balance=_dec(data, "totalWalletBalance", data.get("balance") or "0"),
            available_balance=_dec(data, "availableBalance"),
            unrealized_profit=_dec(data, "totalUnrealizedProfit"),
        )


class Kline(BaseModel):
    """A single candle. Times are unix milliseconds."""

    open_time: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    close_time: int = 0

    @classmethod
    def from_venue(cls, row: List[Any]) -> "Kline":
        return cls(
            open_time=int(row[0]),
            open=Decimal(str(row[1])),
            high=Decimal(str(row[2])),
            low=Decimal(str(row[3])),
            close=Decimal(str(row[4])),
            volume=Decimal(str(row[5])),
            close_time=int(row[6]) if len(row) > 6 else 0,
        )


class FundingRate(BaseModel):
    """Funding rate sample. ``funding_time`` is unix milliseconds."""

    symbol: str
    funding_rate: Decimal
    funding_time: int = 0
    mark_price: Optional[Decimal] = None

    @classmethod
    def from_premium_index(cls, data: Dict[str, Any]) -> "FundingRate":
        return cls(
            symbol=data["symbol"],
            funding_rate=_dec(data, "lastFundingRate"),
            funding_time=int(data.get("nextFundingTime") or 0),
            mark_price=_dec(data, "markPrice"),
        )

    @classmethod
    def from_history(cls, data: Dict[str, Any]) -> "FundingRate":
        return cls(
            symbol=data["symbol"],
            funding_rate=_dec(data, "fundingRate"),
            funding_time=int(data.get("fundingTime") or 0),
            mark_price=_dec(data, "markPrice") if data.get("markPrice") else None,
        )


class VenueOrderRequest(BaseModel):
    """Order as sent to the venue.

    MARKET: {symbol, side, type, quantity, positionSide?, reduceOnly?}
    LIMIT:  the same plus {price, timeInForce="GTC"}
    """

    symbol: str
    side: str
    type: str
    quantity: Decimal
    price: Optional[Decimal] = None
    time_in_force: Optional[str] = None
    position_side: Optional[str] = None
    reduce_only: Optional[bool] = None
    client_order_id: Optional[str] = Field(default=None, max_length=36)

    @property
    def is_limit(self) -> bool:
        return self.type == "LIMIT"

    def to_params(self) -> Dict[str, Any]:
        """Wire form; optional fields are omitted rather than sent empty."""
        params: Dict[str, Any] = {
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "quantity": str(self.quantity),
        }
        if self.is_limit:
            params["price"] = str(self.price)
            params["timeInForce"] = self.time_in_force or "GTC"
        if self.position_side is not None:
            params["positionSide"] = self.position_side
        if self.reduce_only is not None:
            params["reduceOnly"] = "true" if self.reduce_only else "false"
        if self.client_order_id is not None:
            params["newClientOrderId"] = self.client_order_id
        return params


class VenueOrder(BaseModel):
    """Venue acknowledgement of a created order."""

    order_id: str
    symbol: str
    status: str = "NEW"
    side: str = ""
    type: str = ""
    client_order_id: Optional[str] = None
    orig_qty: Decimal = Decimal("0")
    price: Decimal = Decimal("0")

    @classmethod
    def from_venue(cls, data: Dict[str, Any]) -> "VenueOrder":
        return cls(
            order_id=str(data["orderId"]),
            symbol=data["symbol"],
            status=data.get("status") or "NEW",
            side=data.get("side") or "",
            type=data.get("type") or "",
            client_order_id=data.get("clientOrderId"),
            orig_qty=_dec(data, "origQty"),
            price=_dec(data, "price"),
        )
