import hashlib
import hmac
import random
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import VenueConfig
from .errors import VenuePermanent, VenueTransient
from .logging_setup import logger
from .order_state import Market
from .rate_limit_policy import RateLimitManager
from .secrets import BinanceCredentials
from .venue import Venue
from .venue_models import Balance, FundingRate, Kline, Position, VenueOrder, VenueOrderRequest

# Venue codes for "already in the requested state".
NO_MARGIN_TYPE_CHANGE = -4046
NO_POSITION_MODE_CHANGE = -4059
UNKNOWN_ORDER = -2011
# Replies to a create whose client order id the venue has already accepted.
DUPLICATE_ORDER_CODES = frozenset([-4116, -2010])

FUTURES_PATHS = {
    "price": "/fapi/v1/ticker/price",
    "klines": "/fapi/v1/klines",
    "order": "/fapi/v1/order",
}
SPOT_PATHS = {
    "price": "/api/v3/ticker/price",
    "klines": "/api/v3/klines",
    "order": "/api/v3/order",
}


class BinanceAdapter(Venue):
    """Binance REST adapter for USDT-M futures or spot.

    Features:
    - HMAC-SHA256 query signing with ``timestamp`` and ``recvWindow``; the key
      travels in the ``X-MBX-APIKEY`` header.
    - urllib3.Retry for 5xx responses on idempotent methods. Order creation is
      not retried at this layer; the caller retries with the same client order id.
    - 429/418 handling: honours ``Retry-After`` and otherwise falls back to
      jittered exponential backoff.
    - Client-side quotas per endpoint via RateLimitManager.

    Errors:
    - network failures, 5xx and rate limits raise VenueTransient
    - any other 4xx raises VenuePermanent carrying the venue error code
    - a create refused as a duplicate client order id returns the existing order

    Notes:
    - One adapter serves one market. Futures-only calls (mark price, funding,
      positions, leverage, margin and position mode) raise VenuePermanent on
      a spot adapter.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        market: Market = Market.FUTURES,
        config: Optional[VenueConfig] = None,
        rate_limiter: Optional[RateLimitManager] = None,
        max_rate_limit_attempts: int = 5,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.market = market
        self.config = config or VenueConfig()
        base_url = self.config.base_url if market is Market.FUTURES else self.config.spot_base_url
        self.base_url = base_url.rstrip("/")
        self.paths = FUTURES_PATHS if market is Market.FUTURES else SPOT_PATHS
        self.rate_limiter = rate_limiter or RateLimitManager()
        self.max_rate_limit_attempts = max_rate_limit_attempts

        self.session = requests.Session()
        retries = Retry(
            total=self.config.max_retries,
            backoff_factor=0.5,
            status_forcelist=(500, 502, 503, 504),
            allowed_methods=frozenset(["GET", "DELETE"]),
            raise_on_status=False,
        )
        self.session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session.mount("http://", HTTPAdapter(max_retries=retries))

    @classmethod
    def from_credentials(cls, credentials: BinanceCredentials, **kwargs) -> "BinanceAdapter":
        """Create an adapter from credentials loaded via the secrets module."""
        return cls(api_key=credentials.api_key, api_secret=credentials.api_secret, **kwargs)

    # --- transport ---
    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        signed = dict(params)
        signed["timestamp"] = int(time.time() * 1000)
        signed["recvWindow"] = self.config.recv_window
        query = urlencode(signed, doseq=True)
        signed["signature"] = hmac.new(
            self.api_secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return signed

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 60.0) -> float:
        """base * 2^attempt capped at max_backoff, with +/-25% jitter."""
        delay = min(base * (2 ** attempt), max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    @staticmethod
    def _retry_after(resp: requests.Response) -> Optional[float]:
        """Seconds from the Retry-After header, if present and numeric."""
        value = resp.headers.get("Retry-After")
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _error_detail(resp: requests.Response):
        try:
            payload = resp.json()
        except ValueError:
            return 0, resp.text
        if isinstance(payload, dict):
            return int(payload.get("code") or 0), payload.get("msg") or resp.text
        return 0, resp.text

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None, *, signed: bool = False, attempt: int = 0) -> Any:
        base_params = dict(params or {})
        headers = {"X-MBX-APIKEY": self.api_key} if self.api_key else {}
        query = self._sign(base_params) if signed else base_params
        url = f"{self.base_url}{path}"

        if not self.rate_limiter.wait_if_needed(path, max_wait=self.config.max_backoff_seconds):
            raise VenueTransient(f"client-side rate limit exhausted for {path}")

        try:
            resp = self.session.request(method, url, headers=headers, params=query, timeout=self.config.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Venue request failed | method={method} path={path} error={e}")
            raise VenueTransient(f"request to {path} failed", cause=e)

        if resp.status_code in (418, 429):
            if attempt + 1 >= self.max_rate_limit_attempts:
                raise VenueTransient(f"rate limited on {path} and max backoff attempts exceeded", code=resp.status_code)
            delay = self._retry_after(resp)
            if delay is None:
                delay = self._jittered_backoff(attempt, base=1.0, max_backoff=self.config.max_backoff_seconds)
            logger.warning(f"Rate limited, backing off | path={path} attempt={attempt + 1} delay={delay:.2f}")
            time.sleep(delay)
            return self._request(method, path, base_params, signed=signed, attempt=attempt + 1)

        if resp.status_code >= 500:
            code, msg = self._error_detail(resp)
            raise VenueTransient(f"{resp.status_code} from {path}: {msg}", code=code)
        if not resp.ok:
            code, msg = self._error_detail(resp)
            raise VenuePermanent(f"{resp.status_code} from {path}: {msg}", code=code)

        if resp.text:
            return resp.json()
        return None

    def _futures_only(self, what: str) -> None:
        if self.market is not Market.FUTURES:
            raise VenuePermanent(f"{what} is only available on the futures market")

    # --- market data ---
    def get_last_price(self, symbol: str) -> Decimal:
        data = self._request("GET", self.paths["price"], {"symbol": symbol})
        return Decimal(str(data["price"]))

    def _premium_index(self, symbol: str) -> Dict[str, Any]:
        self._futures_only("premium index")
        return self._request("GET", "/fapi/v1/premiumIndex", {"symbol": symbol})

    def get_mark_price(self, symbol: str) -> Decimal:
        return Decimal(str(self._premium_index(symbol)["markPrice"]))

    def get_klines(self, symbol: str, interval: str, limit: int) -> List[Kline]:
        rows = self._request("GET", self.paths["klines"], {"symbol": symbol, "interval": interval, "limit": limit})
        return [Kline.from_venue(row) for row in rows or []]

    def get_funding_rate(self, symbol: str) -> FundingRate:
        return FundingRate.from_premium_index(self._premium_index(symbol))

    def get_funding_rate_history(self, symbol: str, start: Optional[int], end: Optional[int]) -> List[FundingRate]:
        self._futures_only("funding history")
        params: Dict[str, Any] = {"symbol": symbol}
        if start is not None:
            params["startTime"] = start
        if end is not None:
            params["endTime"] = end
        rows = self._request("GET", "/fapi/v1/fundingRate", params)
        return [FundingRate.from_history(row) for row in rows or []]

    # --- account ---
    def get_balance(self) -> Balance:
        if self.market is Market.FUTURES:
            return Balance.from_venue(self._request("GET", "/fapi/v2/account", signed=True))
        account = self._request("GET", "/api/v3/account", signed=True)
        for entry in account.get("balances", []):
            if entry.get("asset") == "USDT":
                free, locked = Decimal(str(entry["free"])), Decimal(str(entry["locked"]))
                return Balance(asset="USDT", balance=free + locked, available_balance=free)
        return Balance(asset="USDT", balance=Decimal("0"), available_balance=Decimal("0"))

    def get_positions(self, symbol: str) -> List[Position]:
        self._futures_only("positions")
        rows = self._request("GET", "/fapi/v2/positionRisk", {"symbol": symbol}, signed=True)
        return [Position.from_venue(row) for row in rows or []]

    def get_all_positions(self) -> List[Position]:
        self._futures_only("positions")
        rows = self._request("GET", "/fapi/v2/positionRisk", signed=True)
        return [Position.from_venue(row) for row in rows or []]

    # --- orders ---
    def create_order(self, request: VenueOrderRequest) -> VenueOrder:
        """Place an order; a duplicate client order id returns the order already held.

        A create retried after a timeout may have reached the venue the first
        time. The venue then refuses the retry as a duplicate, and the existing
        order is looked up by client order id instead of reporting a failure.
        """
        try:
            data = self._request("POST", self.paths["order"], request.to_params(), signed=True)
        except VenuePermanent as e:
            if e.code not in DUPLICATE_ORDER_CODES or not request.client_order_id:
                raise
            return self._recover_duplicate(request, e)
        order = VenueOrder.from_venue(data)
        logger.debug(f"Venue order acknowledged | venue_order_id={order.order_id} client_order_id={order.client_order_id}")
        return order

    def get_order_by_client_id(self, symbol: str, client_order_id: str) -> VenueOrder:
        data = self._request(
            "GET", self.paths["order"], {"symbol": symbol, "origClientOrderId": client_order_id}, signed=True
        )
        return VenueOrder.from_venue(data)

    def _recover_duplicate(self, request: VenueOrderRequest, error: VenuePermanent) -> VenueOrder:
        try:
            order = self.get_order_by_client_id(request.symbol, request.client_order_id)
        except VenuePermanent:
            # Spot reuses -2010 for other rejections; no order under this id means a real failure.
            raise error
        logger.warning(
            f"Duplicate create, using existing venue order | client_order_id={request.client_order_id} "
            f"venue_order_id={order.order_id} code={error.code}"
        )
        return order

    def cancel_order(self, symbol: str, venue_order_id: str) -> bool:
        try:
            self._request("DELETE", self.paths["order"], {"symbol": symbol, "orderId": venue_order_id}, signed=True)
            return True
        except VenuePermanent as e:
            if e.code == UNKNOWN_ORDER:
                return False
            raise

    # --- futures settings ---
    def set_leverage(self, symbol: str, leverage: int) -> None:
        self._futures_only("leverage")
        self._request("POST", "/fapi/v1/leverage", {"symbol": symbol, "leverage": leverage}, signed=True)

    def set_margin_type(self, symbol: str, margin_type: str) -> None:
        self._futures_only("margin type")
        try:
            self._request("POST", "/fapi/v1/marginType", {"symbol": symbol, "marginType": margin_type}, signed=True)
        except VenuePermanent as e:
            if e.code != NO_MARGIN_TYPE_CHANGE:
                raise

    def set_position_mode(self, dual_side: bool) -> None:
        self._futures_only("position mode")
        try:
            self._request(
                "POST", "/fapi/v1/positionSide/dual", {"dualSidePosition": "true" if dual_side else "false"}, signed=True
            )
        except VenuePermanent as e:
            if e.code != NO_POSITION_MODE_CHANGE:
                raise

    def get_position_mode(self) -> bool:
        self._futures_only("position mode")
        data = self._request("GET", "/fapi/v1/positionSide/dual", signed=True)
        return bool(data.get("dualSidePosition"))
