"""Client-side request quotas per venue endpoint, enforced with a sliding window."""
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .config import RateLimitConfig

ORDER_ENDPOINTS = ("/fapi/v1/order", "/api/v3/order")


@dataclass
class RateLimitQuota:
    """Allowed requests per window for one endpoint."""
    requests_per_window: int
    window_seconds: float


@dataclass
class RateLimitState:
    """Request timestamps seen for one endpoint."""
    quota: RateLimitQuota
    request_times: List[float] = field(default_factory=list)

    def _prune(self, now: float) -> None:
        cutoff = now - self.quota.window_seconds
        self.request_times = [t for t in self.request_times if t > cutoff]

    def is_allowed(self, now: float) -> bool:
        self._prune(now)
        return len(self.request_times) < self.quota.requests_per_window

    def record_request(self, now: float) -> None:
        self.request_times.append(now)

    def time_until_allowed(self, now: float) -> float:
        """Seconds until the oldest request in the window expires; 0 if allowed now."""
        if self.is_allowed(now):
            return 0.0
        return max(0.0, min(self.request_times) + self.quota.window_seconds - now)


class RateLimitManager:
    """Per-endpoint quotas shared by every request an adapter makes.

    Endpoints without an explicit quota fall back to the ``default`` entry.
    """

    DEFAULT_QUOTAS = {
        "/fapi/v1/order": RateLimitQuota(requests_per_window=10, window_seconds=1),
        "/api/v3/order": RateLimitQuota(requests_per_window=10, window_seconds=1),
        "default": RateLimitQuota(requests_per_window=20, window_seconds=1),
    }

    def __init__(
        self,
        quotas: Optional[Dict[str, RateLimitQuota]] = None,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.quotas = quotas or dict(self.DEFAULT_QUOTAS)
        self.states: Dict[str, RateLimitState] = {}
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: RateLimitConfig, **kwargs) -> "RateLimitManager":
        quotas = {path: RateLimitQuota(config.orders_per_second, 1) for path in ORDER_ENDPOINTS}
        quotas["default"] = RateLimitQuota(config.default_per_second, 1)
        return cls(quotas, **kwargs)

    def _get_state(self, endpoint: str) -> RateLimitState:
        if endpoint not in self.states:
            quota = self.quotas.get(endpoint, self.quotas["default"])
            self.states[endpoint] = RateLimitState(quota=quota)
        return self.states[endpoint]

    def is_allowed(self, endpoint: str) -> bool:
        with self._lock:
            return self._get_state(endpoint).is_allowed(self._clock())

    def record_request(self, endpoint: str) -> None:
        with self._lock:
            self._get_state(endpoint).record_request(self._clock())

    def time_until_allowed(self, endpoint: str) -> float:
        with self._lock:
            return self._get_state(endpoint).time_until_allowed(self._clock())

    def wait_if_needed(self, endpoint: str, max_wait: float = 60.0) -> bool:
        """Block until ``endpoint`` has capacity, then claim a slot.

        Returns:
            True once a slot was claimed, False if that would take longer than ``max_wait``
        """
        start = self._clock()
        while True:
            with self._lock:
                now = self._clock()
                state = self._get_state(endpoint)
                if state.is_allowed(now):
                    state.record_request(now)
                    return True
                wait_time = state.time_until_allowed(now)
            elapsed = now - start
            if elapsed + wait_time > max_wait:
                return False
            self._sleep(wait_time)
