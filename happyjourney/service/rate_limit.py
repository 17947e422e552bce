from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Protocol, Tuple

from happyjourney.logging import get_logger

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60
UNKNOWN_CLIENT = "unknown"

# Requests per window, matched on exact path or path prefix + "/"
ROUTE_LIMITS: Dict[str, int] = {
    "/api/auth/send-otp": 3,
    "/api/auth/verify-otp": 5,
    "/api/auth/login": 10,
    "/api/auth/register": 10,
    "/api/votes": 30,
    "/api/auth/logout": 50,
}


class RateLimitStore(Protocol):
    async def hit(
        self, key: str, now: float, window_seconds: int
    ) -> Tuple[int, float]:
        """Count one request for ``key`` and return ``(count, window_started_at)``.

        Starts a fresh window at ``now`` when none exists or the current one
        is at least ``window_seconds`` old.
        """
        ...


class InMemoryRateLimitStore:
    """Process-local fixed-window counters.

    Only correct for a single process: every worker keeps its own map.
    Entries are never evicted; a stale entry is overwritten the next time its
    key is hit.
    """

    def __init__(self) -> None:
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    async def hit(self, key: str, now: float, window_seconds: int) -> Tuple[int, float]:
        with self._lock:
            count, started = self._counters.get(key, (0, now))
            if count == 0 or now - started >= window_seconds:
                count, started = 0, now
            count += 1
            self._counters[key] = (count, started)
            return count, started

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: Optional[int] = None
    count: int = 0
    limit: int = 0


def route_limit(path: str) -> Optional[Tuple[str, int]]:
    """Return ``(route_pattern, limit)`` for a limited path, else ``None``."""
    for pattern, limit in ROUTE_LIMITS.items():
        if path == pattern or path.startswith(pattern + "/"):
            return pattern, limit
    return None


def client_identifier(headers: Mapping[str, str]) -> str:
    # Clients without forwarding headers share one bucket
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return UNKNOWN_CLIENT


class RateLimiter:
    """Fixed-window limiter keyed by ``(client, route pattern)``.

    ``check`` never raises. If the backing store fails the request is
    allowed and the failure is logged.
    """

    def __init__(
        self,
        store: RateLimitStore,
        *,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.window_seconds = window_seconds
        self._clock = clock

    async def check(self, client_id: str, route_pattern: str, limit: int) -> RateLimitDecision:
        now = self._clock()
        key = f"rl:{route_pattern}:{client_id}"
        try:
            count, started = await self.store.hit(key, now, self.window_seconds)
        except Exception as exc:
            logger.error(
                "rate_limit_store_failed",
                route=route_pattern,
                error=str(exc),
            )
            return RateLimitDecision(allowed=True, limit=limit)
        if count <= limit:
            return RateLimitDecision(allowed=True, count=count, limit=limit)
        remaining = math.ceil(started + self.window_seconds - now)
        retry_after = min(max(remaining, 1), self.window_seconds)
        logger.info(
            "rate_limit_exceeded",
            route=route_pattern,
            client=client_id,
            count=count,
            limit=limit,
            retry_after=retry_after,
        )
        return RateLimitDecision(
            allowed=False, retry_after=retry_after, count=count, limit=limit
        )
