"""
Pre-trade risk gate and liquidation-risk monitoring.

``validate_order`` runs the checks in a fixed order and raises on the first
failure:

    1. structure     symbol, quantity, LIMIT price, leverage, margin type
    2. order value   qty * price <= max_order_value
    3. position      order value + sum |amt * entry| <= max_position_value
                     (futures only, skipped for reduce-only orders)
    4. margin        order value / leverage <= available balance
                     (futures only, skipped for reduce-only orders)
    5. daily count   orders placed today < max_daily_orders

Liquidation risk is a monitoring-time concern: ``monitor_positions`` reports
positions whose distance to liquidation is below ``liquidation_buffer`` and
never cancels anything.
"""

import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from . import pnl
from .config import RiskConfig
from .errors import (
    InsufficientMargin,
    InvalidLeverage,
    InvalidParameter,
    MaxPositionExceeded,
    RiskLimitExceeded,
    TradingError,
    VenueTransient,
)
from .logging_setup import logger
from .market_data import MarketDataCache
from .order_state import MarginType, Market
from .position_view import PositionView
from .venue_models import Position, VenueOrderRequest

MIN_LEVERAGE = 1
MAX_LEVERAGE = 125


@dataclass
class LiquidationWarning:
    symbol: str
    position_side: str
    mark_price: Decimal
    liquidation_price: Decimal
    distance: Decimal
    buffer: Decimal
    detected_at: float

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "position_side": self.position_side,
            "mark_price": str(self.mark_price),
            "liquidation_price": str(self.liquidation_price),
            "distance": str(self.distance),
            "buffer": str(self.buffer),
            "detected_at": self.detected_at,
        }


@dataclass
class RiskMetrics:
    total_position_value: Decimal = Decimal("0")
    total_unrealized_pnl: Decimal = Decimal("0")
    total_margin_used: Decimal = Decimal("0")
    available_margin: Decimal = Decimal("0")
    margin_ratio: Decimal = Decimal("0")
    leverage_utilization: Decimal = Decimal("0")
    positions_at_risk: int = 0

    def to_dict(self) -> dict:
        return {
            "total_position_value": str(self.total_position_value),
            "total_unrealized_pnl": str(self.total_unrealized_pnl),
            "total_margin_used": str(self.total_margin_used),
            "available_margin": str(self.available_margin),
            "margin_ratio": str(self.margin_ratio),
            "leverage_utilization": str(self.leverage_utilization),
            "positions_at_risk": self.positions_at_risk,
        }


def check_leverage(leverage: int, max_leverage: int = MAX_LEVERAGE) -> None:
    if not isinstance(leverage, int) or not MIN_LEVERAGE <= leverage <= MAX_LEVERAGE:
        raise InvalidLeverage(f"leverage must be between {MIN_LEVERAGE} and {MAX_LEVERAGE}, got: {leverage}")
    if leverage > max_leverage:
        raise InvalidLeverage(f"leverage {leverage} exceeds configured maximum {max_leverage}")


def parse_margin_type(margin_type) -> MarginType:
    if isinstance(margin_type, MarginType):
        return margin_type
    try:
        return MarginType[str(margin_type).upper()]
    except KeyError:
        raise InvalidParameter(f"margin type must be ISOLATED or CROSSED, got: {margin_type}")


class RiskGate:
    """Synchronous pre-trade checks over live positions and quotes."""

    def __init__(
        self,
        market_data: MarketDataCache,
        position_view: PositionView,
        limits: Optional[RiskConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.market_data = market_data
        self.position_view = position_view
        self.venue = market_data.venue
        self._limits = limits or RiskConfig()
        self._limits.validate()
        self._clock = clock
        self._lock = threading.RLock()
        self._order_day: Optional[str] = None
        self._orders_today = 0

    @property
    def limits(self) -> RiskConfig:
        with self._lock:
            return replace(self._limits, reference_prices=dict(self._limits.reference_prices))

    def current_limits(self) -> RiskConfig:
        """Copy of the active limits; mutating it does not affect the gate."""
        return self.limits

    # --- pre-trade ---
    def validate_order(
        self,
        request: VenueOrderRequest,
        *,
        market: Market = Market.FUTURES,
        leverage: Optional[int] = None,
        margin_type=None,
    ) -> Decimal:
        """Run every applicable check; returns the order notional on success.

        Raises:
            InvalidParameter, InvalidLeverage, RiskLimitExceeded,
            MaxPositionExceeded, InsufficientMargin: On the first failed check
            VenueTransient: If a live input cannot be read
        """
        limits = self.limits
        self.check_structure(request, leverage=leverage, margin_type=margin_type, limits=limits)

        notional = self.order_notional(request, limits)
        if notional > limits.max_order_value:
            logger.warning(
                f"Order value exceeds limit | symbol={request.symbol} order_value={notional} max_value={limits.max_order_value}"
            )
            raise RiskLimitExceeded(
                f"order value {notional} exceeds maximum limit {limits.max_order_value}"
            )

        if market is Market.FUTURES and not request.reduce_only:
            positions = self._positions_or_none(request.symbol)
            if positions is not None:
                self._check_position_value(request.symbol, notional, positions, limits)
            effective = self.resolve_leverage(leverage, positions, limits)
            self.check_margin_sufficiency(request.symbol, notional, effective)

        self.check_daily_limit()
        logger.debug(f"Order validated | symbol={request.symbol} order_value={notional}")
        return notional

    def check_structure(self, request: VenueOrderRequest, *, leverage=None, margin_type=None, limits: Optional[RiskConfig] = None) -> None:
        limits = limits or self.limits
        if not request.symbol:
            raise InvalidParameter("symbol cannot be empty")
        if request.quantity is None or request.quantity <= 0:
            raise InvalidParameter("quantity must be greater than 0")
        if request.type not in ("MARKET", "LIMIT"):
            raise InvalidParameter(f"unsupported order type: {request.type}")
        if request.is_limit and (request.price is None or request.price <= 0):
            raise InvalidParameter("price must be greater than 0 for limit orders")
        if leverage is not None:
            check_leverage(leverage, limits.max_leverage)
        if margin_type is not None:
            parse_margin_type(margin_type)

    def order_notional(self, request: VenueOrderRequest, limits: Optional[RiskConfig] = None) -> Decimal:
        """qty * limit price, or qty * a fresh last price for MARKET orders."""
        if request.is_limit:
            return request.quantity * request.price
        limits = limits or self.limits
        try:
            price = self.market_data.get_last_price(request.symbol, force_refresh=True)
        except VenueTransient:
            reference = limits.reference_prices.get(request.symbol)
            if reference is None:
                raise
            logger.warning(f"Using reference price for order validation | symbol={request.symbol} price={reference}")
            price = reference
        return request.quantity * price

    def _positions_or_none(self, symbol: str) -> Optional[List[Position]]:
        try:
            return self.position_view.get_positions(symbol)
        except TradingError as e:
            logger.warning(f"Failed to get positions for risk check | symbol={symbol} error={e}")
            return None

    def _check_position_value(self, symbol: str, notional: Decimal, positions: List[Position], limits: RiskConfig) -> None:
        total = notional + sum((abs(p.position_amt * p.entry_price) for p in positions), Decimal("0"))
        if total > limits.max_position_value:
            logger.warning(
                f"Total position value would exceed limit | symbol={symbol} total_value={total} max_value={limits.max_position_value}"
            )
            raise MaxPositionExceeded(
                f"total position value {total} would exceed maximum limit {limits.max_position_value}"
            )

    def check_max_position_size(self, symbol: str, quantity: Decimal) -> None:
        """Standalone position-value check at the current last price."""
        if quantity <= 0:
            raise InvalidParameter("quantity must be greater than 0")
        limits = self.limits
        notional = quantity * self.market_data.get_last_price(symbol)
        self._check_position_value(symbol, notional, self.position_view.get_positions(symbol), limits)

    @staticmethod
    def resolve_leverage(requested: Optional[int], positions: Optional[List[Position]], limits: RiskConfig) -> int:
        if requested is not None:
            return requested
        for position in positions or []:
            if position.leverage:
                return position.leverage
        return limits.default_leverage

    def check_margin_sufficiency(self, symbol: str, notional: Decimal, leverage: int) -> None:
        check_leverage(leverage)
        required = notional / Decimal(leverage)
        balance = self.market_data.with_retry("balance", self.venue.get_balance)
        if balance.available_balance < required:
            logger.warning(
                f"Insufficient margin | symbol={symbol} required_margin={required} available_balance={balance.available_balance} leverage={leverage}"
            )
            raise InsufficientMargin(
                f"insufficient margin: required {required}, available {balance.available_balance}"
            )

    # --- daily order count ---
    def _today(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).strftime("%Y-%m-%d")

    def check_daily_limit(self) -> None:
        with self._lock:
            today = self._today()
            if self._order_day != today:
                self._order_day, self._orders_today = today, 0
            if self._orders_today >= self._limits.max_daily_orders:
                raise RiskLimitExceeded(
                    f"daily order limit reached: {self._orders_today}/{self._limits.max_daily_orders}"
                )

    def record_order(self) -> int:
        """Count one placed order against today's limit; returns today's count."""
        with self._lock:
            today = self._today()
            if self._order_day != today:
                self._order_day, self._orders_today = today, 0
            self._orders_today += 1
            return self._orders_today

    # --- monitoring ---
    def check_liquidation_risk(self, position: Position, mark_price: Decimal) -> Tuple[bool, Decimal, Decimal]:
        """Returns (at_risk, distance, liquidation_price) for one position."""
        if mark_price <= 0:
            raise InvalidParameter("mark price must be greater than 0")
        limits = self.limits
        liq_price = self.position_view.liquidation_price(position)
        distance = pnl.distance_to_liquidation(mark_price, liq_price, position.direction)
        return distance < limits.liquidation_buffer, distance, liq_price

    def monitor_positions(self) -> List[LiquidationWarning]:
        """Warn about every open position inside the liquidation buffer."""
        warnings = []
        buffer = self.limits.liquidation_buffer
        for position in self.position_view.get_all_positions():
            try:
                mark = self.market_data.get_mark_price(position.symbol)
                at_risk, distance, liq_price = self.check_liquidation_risk(position, mark)
            except TradingError as e:
                logger.warning(f"Liquidation check skipped | symbol={position.symbol} error={e}")
                continue
            if at_risk:
                warning = LiquidationWarning(
                    symbol=position.symbol,
                    position_side=position.direction,
                    mark_price=mark,
                    liquidation_price=liq_price,
                    distance=distance,
                    buffer=buffer,
                    detected_at=self._clock(),
                )
                logger.bind(event=warning.to_dict()).warning(
                    f"Position at liquidation risk | symbol={position.symbol} side={position.direction} "
                    f"mark_price={mark} liquidation_price={liq_price} distance={distance} buffer={buffer}"
                )
                warnings.append(warning)
        return warnings

    def risk_metrics(self) -> RiskMetrics:
        balance = self.market_data.with_retry("balance", self.venue.get_balance)
        metrics = RiskMetrics(available_margin=balance.available_balance)
        for position in self.position_view.get_all_positions():
            metrics.total_position_value += abs(position.position_amt * position.entry_price)
            metrics.total_unrealized_pnl += position.unrealized_profit
            metrics.total_margin_used += self.position_view.initial_margin(position)
            try:
                mark = self.market_data.get_mark_price(position.symbol)
                at_risk, _, _ = self.check_liquidation_risk(position, mark)
            except TradingError as e:
                logger.warning(f"Failed to check liquidation risk for metrics | symbol={position.symbol} error={e}")
                continue
            if at_risk:
                metrics.positions_at_risk += 1

        if metrics.total_margin_used > 0:
            margin_balance = metrics.total_margin_used + metrics.total_unrealized_pnl
            if margin_balance > 0:
                metrics.margin_ratio = metrics.total_margin_used / margin_balance
        if balance.balance > 0:
            metrics.leverage_utilization = metrics.total_position_value / balance.balance
        return metrics

    def update_limits(self, limits: RiskConfig) -> None:
        """Swap in new limits after validating them; the daily counter is kept."""
        if limits is None:
            raise InvalidParameter("limits cannot be None")
        limits.validate()
        with self._lock:
            self._limits = replace(limits, reference_prices=dict(limits.reference_prices))
        logger.info(
            f"Risk limits updated | max_order_value={limits.max_order_value} max_position_value={limits.max_position_value} "
            f"max_leverage={limits.max_leverage} liquidation_buffer={limits.liquidation_buffer}"
        )
