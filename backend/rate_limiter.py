from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable

from fastapi import Request

from backend.errors import RateLimitedError
from backend.observability import client_ip

logger = logging.getLogger(__name__)

AUTH_SCOPE = "auth"
API_SCOPE = "api"

SCOPE_MESSAGES = {
    AUTH_SCOPE: "Too many authentication attempts from this IP, please try again later.",
    API_SCOPE: "Too many requests, please try again later.",
}


class InMemoryRateLimiter:
    """Sliding-window request counter keyed by an arbitrary string."""

    def __init__(self, limit: int, window_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._limit = max(1, int(limit))
        self._window = max(0.1, float(window_seconds))
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and now - hits[0] >= self._window:
                hits.popleft()
            if len(hits) >= self._limit:
                return False
            hits.append(now)
            return True

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


def rate_limit(scope: str) -> Callable[[Request], None]:
    """FastAPI dependency enforcing the limiter registered for ``scope``."""

    def dependency(request: Request) -> None:
        limiters: dict[str, InMemoryRateLimiter] | None = getattr(
            request.app.state, "rate_limiters", None
        )
        if not limiters or scope not in limiters:
            return
        ip = client_ip(request)
        if not limiters[scope].allow(f"{scope}:{ip}"):
            logger.warning(
                "Rate limit exceeded",
                extra={"ip": ip, "path": request.url.path, "method": request.method},
            )
            raise RateLimitedError(SCOPE_MESSAGES.get(scope))

    return dependency
