"""Two-tier rate budget: a token bucket per site plus a global sliding window.

Each site gets a smooth, independent budget from its bucket. The global
limiter bounds what the whole process sends, so many well-behaved site
budgets can't add up to an abusive aggregate rate.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

DEFAULT_CAPACITY = 5.0
DEFAULT_REFILL_RATE = 0.5  # One token every 2 seconds
DEFAULT_MIN_INTERVAL = 2.0

_WINDOW_PAD = 0.1  # Sleep slightly past the moment a timestamp ages out

_UNITS = {
    "s": 1, "sec": 1, "second": 1,
    "m": 60, "min": 60, "minute": 60,
    "h": 3600, "hr": 3600, "hour": 3600,
}


def parse_rate(rate: str) -> tuple[int, float]:
    """
    Parse a rate string into (count, window_seconds).

    Accepts 'N/sec', 'N/min', 'N/hour' and 'N/<k>s' forms:
        parse_rate("60/min")  -> (60, 60.0)
        parse_rate("10/10s")  -> (10, 10.0)
    """
    parts = rate.split("/")
    if len(parts) != 2:
        raise ValueError(f"Invalid rate format: {rate}. Use 'N/min', 'N/hour', 'N/sec'.")

    try:
        count = int(parts[0])
    except ValueError:
        raise ValueError(f"Invalid rate count: {parts[0]!r}") from None
    if count <= 0:
        raise ValueError(f"Rate count must be positive: {rate}")

    unit = parts[1].strip().lower()
    if unit in _UNITS:
        return count, float(_UNITS[unit])

    match = re.fullmatch(r"(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)", unit)
    if match:
        amount = float(match.group(1))
        if amount <= 0:
            raise ValueError(f"Rate window must be positive: {rate}")
        return count, amount * _UNITS[match.group(2)]

    raise ValueError(f"Unknown rate unit: {unit}. Use 'sec', 'min', or 'hour'.")


class TokenBucket:
    """Token bucket for one site.

    Tokens refill continuously at ``refill_rate`` per second up to
    ``capacity``. The bucket starts full.
    """

    def __init__(
        self,
        capacity: float = DEFAULT_CAPACITY,
        refill_rate: float = DEFAULT_REFILL_RATE,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")

        self.capacity = float(capacity)
        self.refill_rate = float(refill_rate)
        self.min_interval = float(min_interval)
        self._clock = clock
        self.tokens = self.capacity
        self.last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def _check(self, n: float) -> None:
        if n <= 0:
            raise ValueError("token count must be positive")
        if n > self.capacity:
            raise ValueError(f"Requested {n} tokens from a bucket of capacity {self.capacity}")

    def try_consume(self, n: float = 1) -> bool:
        """Take ``n`` tokens if available. Leaves the bucket untouched otherwise."""
        self._check(n)
        self._refill()
        if self.tokens >= n:
            self.tokens -= n
            return True
        return False

    def wait_time(self, n: float = 1) -> float:
        """Seconds until ``n`` tokens should be available (0 if they are now)."""
        self._check(n)
        self._refill()
        if self.tokens >= n:
            return 0.0
        needed = (n - self.tokens) / self.refill_rate
        return max(needed, self.min_interval)

    def token_count(self) -> float:
        self._refill()
        return self.tokens

    def reset(self) -> None:
        """Refill to capacity."""
        self.tokens = self.capacity
        self.last_refill = self._clock()


class SiteRateLimiter:
    """Independent token buckets keyed by site (routing key).

    Sites that were never configured get the default parameters the first
    time they are used.
    """

    def __init__(
        self,
        *,
        default_capacity: float = DEFAULT_CAPACITY,
        default_refill_rate: float = DEFAULT_REFILL_RATE,
        default_min_interval: float = DEFAULT_MIN_INTERVAL,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._defaults = (default_capacity, default_refill_rate, default_min_interval)
        self._clock = clock
        self._sleep = sleep
        self._buckets: dict[str, TokenBucket] = {}

    def configure_site(
        self,
        site: str,
        capacity: float = DEFAULT_CAPACITY,
        refill_rate: float = DEFAULT_REFILL_RATE,
        min_interval: float = DEFAULT_MIN_INTERVAL,
    ) -> TokenBucket:
        """Create or replace the bucket for ``site``."""
        bucket = TokenBucket(capacity, refill_rate, min_interval, clock=self._clock)
        self._buckets[site] = bucket
        logger.info(
            "Rate limiter configured for %s: %s tokens, %s/s refill, %ss min interval",
            site, capacity, refill_rate, min_interval,
        )
        return bucket

    def bucket(self, site: str) -> TokenBucket:
        """Get the bucket for ``site``, creating a default one on first use."""
        if site not in self._buckets:
            return self.configure_site(site, *self._defaults)
        return self._buckets[site]

    def try_consume(self, site: str, n: float = 1) -> bool:
        return self.bucket(site).try_consume(n)

    def wait_time(self, site: str, n: float = 1) -> float:
        return self.bucket(site).wait_time(n)

    async def consume(self, site: str, n: float = 1) -> bool:
        """
        Wait until ``n`` tokens are available for ``site``, then take them.

        Returns:
            True if the caller had to wait.
        """
        bucket = self.bucket(site)
        waited = False
        while not bucket.try_consume(n):
            waited = True
            await self._sleep(bucket.wait_time(n))
        return waited

    def token_count(self, site: str) -> float:
        return self.bucket(site).token_count()

    def reset(self, site: str) -> None:
        bucket = self._buckets.get(site)
        if bucket:
            bucket.reset()
            logger.info("Rate limiter reset for %s", site)

    def reset_all(self) -> None:
        for bucket in self._buckets.values():
            bucket.reset()
        logger.info("All rate limiters reset")

    def status(self) -> dict[str, dict[str, float]]:
        """Current tokens and wait time per configured site."""
        return {
            site: {"tokens": bucket.token_count(), "wait_time": bucket.wait_time()}
            for site, bucket in self._buckets.items()
        }

    def __contains__(self, site: object) -> bool:
        return site in self._buckets


class GlobalRateLimiter:
    """Process-wide sliding-window limiter with burst protection.

    Allows at most ``max_requests`` within any trailing ``time_window`` and
    at most ``burst_limit`` within any trailing ``burst_window``.
    """

    def __init__(
        self,
        max_requests: int = 60,
        time_window: float = 60.0,
        burst_limit: int = 10,
        burst_window: float = 10.0,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_requests <= 0 or burst_limit <= 0:
            raise ValueError("max_requests and burst_limit must be positive")
        if time_window <= 0 or burst_window <= 0:
            raise ValueError("time_window and burst_window must be positive")

        self.max_requests = max_requests
        self.time_window = float(time_window)
        self.burst_limit = burst_limit
        self.burst_window = float(burst_window)
        self._clock = clock
        self._sleep = sleep
        self._history: deque[float] = deque()

    @classmethod
    def from_rate(
        cls,
        rate: str = "60/min",
        burst: str = "10/10s",
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> GlobalRateLimiter:
        """
        Build a limiter from rate strings.

        Example:
            GlobalRateLimiter.from_rate("120/min", burst="20/10s")
        """
        max_requests, time_window = parse_rate(rate)
        burst_limit, burst_window = parse_rate(burst)
        return cls(max_requests, time_window, burst_limit, burst_window, clock=clock, sleep=sleep)

    def _prune(self, now: float) -> None:
        horizon = max(self.time_window, self.burst_window)
        while self._history and now - self._history[0] >= horizon:
            self._history.popleft()

    def _count_since(self, now: float, window: float) -> int:
        count = 0
        for ts in reversed(self._history):
            if now - ts >= window:
                break
            count += 1
        return count

    def is_allowed(self) -> bool:
        """True if one more request fits in both windows right now."""
        now = self._clock()
        self._prune(now)
        if self._count_since(now, self.time_window) >= self.max_requests:
            return False
        if self._count_since(now, self.burst_window) >= self.burst_limit:
            return False
        return True

    def record_request(self) -> None:
        self._history.append(self._clock())

    def wait_time(self) -> float:
        """Seconds until a request would be allowed (0 if it is now)."""
        now = self._clock()
        self._prune(now)
        waits = [0.0]
        for window, limit in (
            (self.time_window, self.max_requests),
            (self.burst_window, self.burst_limit),
        ):
            in_window = [ts for ts in self._history if now - ts < window]
            if len(in_window) >= limit:
                # The window frees up once enough of its oldest entries age out
                blocking = in_window[len(in_window) - limit]
                waits.append(window - (now - blocking) + _WINDOW_PAD)
        return max(waits)

    async def wait_for_allowance(self) -> bool:
        """
        Wait until a request is allowed, then record it.

        The final check and the record happen without yielding to the event
        loop, so concurrent callers can't both claim the last slot.

        Returns:
            True if the caller had to wait.
        """
        waited = False
        while not self.is_allowed():
            waited = True
            await self._sleep(self.wait_time())
        self.record_request()
        return waited

    def stats(self) -> dict[str, float]:
        now = self._clock()
        self._prune(now)
        in_window = self._count_since(now, self.time_window)
        return {
            "requests_in_window": in_window,
            "max_requests": self.max_requests,
            "utilization": in_window / self.max_requests,
        }

    def reset(self) -> None:
        self._history.clear()
