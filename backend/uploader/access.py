"""Access gate: per-client rate admission and shared-secret authorization.

Rate admission applies to every request and runs first, as HTTP
middleware. Authorization is a route dependency on mutating endpoints
(upload, delete) and runs before the request body is parsed.

Rate-limiter state is process-local and in memory; several processes do
not share counters.
"""
import logging
import math
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Request

from .errors import AuthorizationError, RateLimitError, error_response

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


@dataclass
class RateLimitState:
    """Outcome of one admission check."""
    allowed: bool
    remaining: int
    retry_after: int  # seconds until the current window ends


@dataclass
class _Window:
    started_at: float
    hits: int = 0


class RateLimiter:
    """Fixed-window request counter keyed by client identity.

    Each identity may make ``limit`` requests per ``window_seconds``; the
    counter restarts once the window has elapsed.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._last_prune = clock()

    @property
    def limit(self) -> int:
        return self._limit

    def hit(self, identity: str) -> RateLimitState:
        """Count one request for *identity* and say whether it is admitted."""
        now = self._clock()
        with self._lock:
            self._prune(now)
            window = self._windows.get(identity)
            if window is None or now - window.started_at >= self._window:
                window = _Window(started_at=now)
                self._windows[identity] = window
            retry_after = max(1, math.ceil(window.started_at + self._window - now))
            if window.hits >= self._limit:
                return RateLimitState(allowed=False, remaining=0, retry_after=retry_after)
            window.hits += 1
            return RateLimitState(
                allowed=True,
                remaining=self._limit - window.hits,
                retry_after=retry_after,
            )

    def reset(self, identity: Optional[str] = None) -> None:
        with self._lock:
            if identity is None:
                self._windows.clear()
            else:
                self._windows.pop(identity, None)

    def _prune(self, now: float) -> None:
        # Drop finished windows at most once per window length.
        if now - self._last_prune < self._window:
            return
        stale = [k for k, w in self._windows.items() if now - w.started_at >= self._window]
        for k in stale:
            del self._windows[k]
        self._last_prune = now


def client_identity(request: Request) -> str:
    """Network origin of the caller."""
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def rate_limit_middleware(request: Request, call_next):
    """Reject requests over the per-client allowance with 429."""
    limiter: RateLimiter = request.app.state.context.rate_limiter
    identity = client_identity(request)
    state = limiter.hit(identity)
    if not state.allowed:
        logger.warning("Rate limit exceeded for %s on %s %s", identity, request.method, request.url.path)
        return error_response(
            RateLimitError(),
            headers={"Retry-After": str(state.retry_after)},
        )
    return await call_next(request)


def require_api_key(request: Request) -> None:
    """Dependency: the caller must present the shared secret in ``X-API-Key``."""
    expected = request.app.state.context.config.secrets.auth_token
    supplied = request.headers.get(API_KEY_HEADER)
    if not supplied or not secrets.compare_digest(supplied.encode(), expected.encode()):
        logger.info("Rejected %s %s: bad or missing API key", request.method, request.url.path)
        raise AuthorizationError()
