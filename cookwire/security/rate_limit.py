"""
Per-client fixed-window rate limiting.

Counters live in process memory; each worker process limits independently.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import HTTPException, Request, Response

WINDOW_SECONDS = 15 * 60
MAX_REQUESTS = 100
RATE_LIMIT_MESSAGE = "Too many requests, try again later"
# Purge expired windows once the table grows past this
_SWEEP_THRESHOLD = 10_000


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int
    window_seconds: int

    def headers(self) -> Dict[str, str]:
        headers = {
            "RateLimit-Policy": f"{self.limit};w={self.window_seconds}",
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_seconds),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.reset_seconds)
        return headers


class RateLimiter:
    """Counts hits per key inside fixed windows."""

    def __init__(
        self,
        max_requests: int = MAX_REQUESTS,
        window_seconds: int = WINDOW_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._windows: Dict[str, list] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> RateLimitResult:
        """Record one request for ``key`` and report whether it is allowed."""
        now = self._clock()
        with self._lock:
            if len(self._windows) > _SWEEP_THRESHOLD:
                self._sweep(now)

            window = self._windows.get(key)
            if window is None or now - window[0] >= self.window_seconds:
                window = [now, 0]
                self._windows[key] = window
            window[1] += 1
            count = window[1]
            reset_at = window[0] + self.window_seconds

        return RateLimitResult(
            allowed=count <= self.max_requests,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_seconds=max(0, math.ceil(reset_at - now)),
            window_seconds=self.window_seconds,
        )

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def _sweep(self, now: float) -> None:
        expired = [k for k, (start, _) in self._windows.items() if now - start >= self.window_seconds]
        for key in expired:
            del self._windows[key]


def client_ip(request: Request, trust_proxy: bool) -> str:
    """Resolve the client address used as the rate-limit key.

    With ``trust_proxy`` the single trusted proxy in front of us appends the
    real peer as the last ``X-Forwarded-For`` hop.
    """
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        hops = [h.strip() for h in forwarded.split(",") if h.strip()]
        if hops:
            return hops[-1]
    if request.client is not None:
        return request.client.host
    return "unknown"


def rate_limit(request: Request, response: Response) -> None:
    """FastAPI dependency enforcing the standard API limit."""
    limiter: RateLimiter = request.app.state.rate_limiter
    settings = request.app.state.settings
    result = limiter.hit(client_ip(request, settings.trust_proxy))
    if not result.allowed:
        raise HTTPException(status_code=429, detail=RATE_LIMIT_MESSAGE, headers=result.headers())
    response.headers.update(result.headers())
