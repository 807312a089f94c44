"""
Read-through market data cache over a Venue.

Cached keys and lifetimes (configurable through CacheTTLConfig):
    (symbol, "last")            1 s
    (symbol, "mark")            1 s
    (symbol, "funding")         60 s
    (symbol, "volume", window)  1 s
Klines and funding history are never cached.

Every venue read is retried on VenueTransient up to ``retry.max_attempts``
times, sleeping ``attempt * retry.base_delay`` between attempts (1 s, 2 s, ...).
VenuePermanent propagates immediately. A failed read never populates the
cache, and a non-positive last/mark price counts as a failed read.

Examples:
    >>> from condexec.venue import InMemoryVenue
    >>> venue = InMemoryVenue()
    >>> venue.mark_prices["BTCUSDT"] = Decimal("50000")
    >>> cache = MarketDataCache(venue)
    >>> cache.get_mark_price("BTCUSDT")
    Decimal('50000')
"""

import math
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

from .config import CacheTTLConfig, RetryConfig
from .errors import InvalidParameter, VenuePermanent, VenueTransient
from .logging_setup import logger
from .venue import Venue
from .venue_models import FundingRate, Kline

MAX_KLINE_LIMIT = 1000


@dataclass
class _Entry:
    value: Any
    fetched_at: float


class MarketDataCache:
    """TTL cache with bounded retry; one lock per symbol bucket.

    Args:
        venue: Venue to read through to
        ttl: Cache lifetimes
        retry: Retry policy for venue reads
        clock: Returns unix seconds (injectable for tests)
        sleep: Blocks for the given seconds between retries (injectable for tests)
    """

    def __init__(
        self,
        venue: Venue,
        ttl: Optional[CacheTTLConfig] = None,
        retry: Optional[RetryConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.venue = venue
        self.ttl = ttl or CacheTTLConfig()
        self.retry = retry or RetryConfig()
        self._clock = clock
        self._sleep = sleep
        self._entries: Dict[Tuple[Hashable, ...], _Entry] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # Guards every read and write of _entries; never held across a venue call.
        self._entries_lock = threading.Lock()

    def _symbol_lock(self, symbol: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(symbol)
            if lock is None:
                lock = self._locks[symbol] = threading.Lock()
            return lock

    def with_retry(self, label: str, fetch: Callable[[], Any]) -> Any:
        """Run ``fetch`` under the retry policy.

        Raises:
            VenueTransient: After ``max_attempts`` transient failures
            VenuePermanent: Immediately, without retrying
        """
        attempts = max(1, self.retry.max_attempts)
        last_error: Optional[VenueTransient] = None
        for attempt in range(1, attempts + 1):
            try:
                return fetch()
            except VenuePermanent:
                raise
            except VenueTransient as e:
                last_error = e
                logger.warning(f"Venue read failed | what={label} attempt={attempt}/{attempts} error={e}")
            if attempt < attempts:
                self._sleep(attempt * self.retry.base_delay)
        raise VenueTransient(f"{label} failed after {attempts} attempts", cause=last_error)

    def _cached(self, key: Tuple[Hashable, ...], ttl: float, label: str, fetch: Callable[[], Any], force_refresh: bool = False) -> Any:
        symbol = str(key[0])
        with self._symbol_lock(symbol):
            with self._entries_lock:
                entry = self._entries.get(key)
            if entry is not None and not force_refresh and self._clock() - entry.fetched_at < ttl:
                return entry.value
            value = self.with_retry(label, fetch)
            with self._entries_lock:
                self._entries[key] = _Entry(value=value, fetched_at=self._clock())
            return value

    @staticmethod
    def _positive(kind: str, symbol: str, price: Decimal) -> Decimal:
        if price is None or price <= 0:
            raise VenueTransient(f"invalid {kind} price for {symbol}: {price}")
        return price

    def get_last_price(self, symbol: str, *, force_refresh: bool = False) -> Decimal:
        return self._cached(
            (symbol, "last"),
            self.ttl.last,
            f"last price {symbol}",
            lambda: self._positive("last", symbol, self.venue.get_last_price(symbol)),
            force_refresh=force_refresh,
        )

    def get_mark_price(self, symbol: str, *, force_refresh: bool = False) -> Decimal:
        return self._cached(
            (symbol, "mark"),
            self.ttl.mark,
            f"mark price {symbol}",
            lambda: self._positive("mark", symbol, self.venue.get_mark_price(symbol)),
            force_refresh=force_refresh,
        )

    def get_funding(self, symbol: str) -> FundingRate:
        return self._cached(
            (symbol, "funding"),
            self.ttl.funding,
            f"funding rate {symbol}",
            lambda: self.venue.get_funding_rate(symbol),
        )

    def get_funding_rate(self, symbol: str) -> Decimal:
        return self.get_funding(symbol).funding_rate

    def get_klines(self, symbol: str, interval: str, limit: int) -> List[Kline]:
        return self.with_retry(
            f"klines {symbol} {interval}x{limit}",
            lambda: self.venue.get_klines(symbol, interval, limit),
        )

    def get_funding_rate_history(self, symbol: str, start: Optional[int] = None, end: Optional[int] = None) -> List[FundingRate]:
        return self.with_retry(
            f"funding history {symbol}",
            lambda: self.venue.get_funding_rate_history(symbol, start, end),
        )

    def get_volume(self, symbol: str, window: int) -> Decimal:
        """Sum of 1-minute bar volumes whose open time is within ``window`` seconds of now."""
        if window <= 0:
            raise InvalidParameter("volume window must be greater than 0")

        def fetch() -> Decimal:
            limit = max(1, min(MAX_KLINE_LIMIT, math.ceil(window / 60)))
            bars = self.venue.get_klines(symbol, "1m", limit)
            cutoff_ms = (self._clock() - window) * 1000
            in_window = [bar for bar in bars if bar.open_time >= cutoff_ms]
            if not in_window:
                raise VenueTransient(f"no kline data for {symbol} in the last {window}s")
            return sum((bar.volume for bar in in_window), Decimal("0"))

        return self._cached((symbol, "volume", window), self.ttl.volume, f"volume {symbol} {window}s", fetch)

    def invalidate(self, symbol: Optional[str] = None) -> None:
        """Drop cached entries for one symbol, or everything.

        A single symbol is dropped under its bucket lock, so a refresh already
        in flight for it completes first.
        """
        if symbol is None:
            with self._entries_lock:
                self._entries.clear()
            return
        with self._symbol_lock(symbol), self._entries_lock:
            for key in [k for k in self._entries if k[0] == symbol]:
                del self._entries[key]
