"""Rate-limiting middleware: weighted sliding window per tenant.

Runs after authentication, so every limited request carries a resolved
identity.  Tenant and customer callers share their tenant's budget;
each platform administrator gets a budget of their own.  Export
requests are weighted more heavily than ordinary reads.  A request that
would exceed the budget is rejected without consuming any of it.

All state is process-local; each replica enforces its own budget.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque

from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from reporting_api.errors import error_response
from reporting_core.tenancy.identity import TenantIdentity

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def limit_key(identity: TenantIdentity) -> str:
    """Counter key for *identity*.

    Administrators all carry the platform sentinel as their tenant value,
    so they are keyed by principal (or by auth method for service tokens).
    """
    if identity.is_platform_admin:
        return f"admin:{identity.principal_id or identity.auth_method.value}"
    return f"tenant:{identity.tenant_id}"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RateLimitConfig(BaseModel):
    """Rate-limiting configuration parameters.

    Attributes:
        enabled: Master toggle.  When ``False`` the middleware becomes a
            no-op pass-through.
        requests_per_minute: Budget per tenant within the sliding window.
        weighted_endpoints: ``(method, path)`` pairs mapped to the number
            of budget units one request consumes.
        exempt_paths: Paths that bypass rate limiting entirely.
    """

    enabled: bool = True
    requests_per_minute: int = 100
    weighted_endpoints: dict[str, int] = {"POST /api/v1/export": 5}
    exempt_paths: set[str] = {"/", "/health", "/ready", "/api/v1", "/api/v1/health"}


# ---------------------------------------------------------------------------
# Sliding window counter
# ---------------------------------------------------------------------------

_WINDOW_SECONDS: float = 60.0
_CLEANUP_INTERVAL_SECONDS: float = 60.0


class SlidingWindowCounter:
    """Asyncio-safe weighted sliding window counter.

    Each key maps to a deque of ``(timestamp, weight)`` entries; entries
    older than ``window_seconds`` are pruned on every access.
    """

    def __init__(self, window_seconds: float = _WINDOW_SECONDS) -> None:
        self._window: float = window_seconds
        self._buckets: dict[str, deque[tuple[float, int]]] = {}
        self._totals: dict[str, int] = {}
        self._lock: asyncio.Lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task[None] | None = None

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Launch the periodic cleanup coroutine (requires a running loop)."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None

    @property
    def running(self) -> bool:
        return self._cleanup_task is not None

    # -- Core API ------------------------------------------------------------

    def _prune(self, key: str, now: float) -> deque[tuple[float, int]] | None:
        bucket = self._buckets.get(key)
        if bucket is None:
            return None
        cutoff = now - self._window
        while bucket and bucket[0][0] <= cutoff:
            _, weight = bucket.popleft()
            self._totals[key] -= weight
        return bucket

    async def acquire(self, key: str, weight: int, limit: int) -> tuple[bool, int]:
        """Consume *weight* units for *key* if that stays within *limit*.

        Returns ``(allowed, used)`` where ``used`` is the window total
        after the call.
        """
        now = time.monotonic()
        async with self._lock:
            bucket = self._prune(key, now)
            used = self._totals.get(key, 0) if bucket is not None else 0
            if used + weight > limit:
                return False, used
            if bucket is None:
                bucket = deque()
                self._buckets[key] = bucket
                self._totals[key] = 0
            bucket.append((now, weight))
            self._totals[key] += weight
            return True, self._totals[key]

    async def count(self, key: str) -> int:
        """Return the units used by *key* in the current window."""
        async with self._lock:
            bucket = self._prune(key, time.monotonic())
            return self._totals.get(key, 0) if bucket is not None else 0

    async def time_until_reset(self, key: str) -> float:
        """Seconds until the oldest entry in *key*'s window expires."""
        now = time.monotonic()
        async with self._lock:
            bucket = self._buckets.get(key)
            if not bucket:
                return 0.0
            return max(bucket[0][0] + self._window - now, 0.0)

    # -- Housekeeping --------------------------------------------------------

    async def _cleanup_loop(self) -> None:
        """Remove keys whose entries have all expired."""
        while True:
            await asyncio.sleep(_CLEANUP_INTERVAL_SECONDS)
            now = time.monotonic()
            async with self._lock:
                stale_keys = [key for key in list(self._buckets) if not self._prune(key, now)]
                for key in stale_keys:
                    del self._buckets[key]
                    del self._totals[key]
            if stale_keys:
                logger.debug("Rate-limit cleanup removed %d stale keys", len(stale_keys))


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-caller request budget with standard rate-limit headers.

    The key is the ``rate_limit_key`` placed on ``request.state`` by the
    authentication middleware, falling back to ``tenant:<tenant_id>``.
    Requests with neither (public paths) are not limited.  Pass *counter*
    to share it with the application lifespan, which stops its cleanup
    task at shutdown.  Responses carry ``X-RateLimit-Limit``,
    ``X-RateLimit-Remaining`` and ``X-RateLimit-Reset``; rejections are
    ``429`` with ``Retry-After``.
    """

    def __init__(
        self,
        app: ASGIApp,
        config: RateLimitConfig | None = None,
        counter: SlidingWindowCounter | None = None,
    ) -> None:
        super().__init__(app)
        self._config: RateLimitConfig = config or RateLimitConfig()
        self._counter: SlidingWindowCounter = counter or SlidingWindowCounter()
        logger.info(
            "RateLimitMiddleware initialised (enabled=%s, rpm=%d)",
            self._config.enabled,
            self._config.requests_per_minute,
        )

    @property
    def counter(self) -> SlidingWindowCounter:
        return self._counter

    def _weight_for(self, request: Request) -> int:
        return self._config.weighted_endpoints.get(f"{request.method} {request.url.path}", 1)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self._config.enabled or request.url.path in self._config.exempt_paths:
            return await call_next(request)

        key: str | None = getattr(request.state, "rate_limit_key", None)
        if not key:
            tenant_id: str | None = getattr(request.state, "tenant_id", None)
            if not tenant_id:
                return await call_next(request)
            key = f"tenant:{tenant_id}"

        self._counter.start()
        limit = self._config.requests_per_minute
        allowed, used = await self._counter.acquire(key, self._weight_for(request), limit)
        reset_int = max(int(await self._counter.time_until_reset(key)) + 1, 1)

        if not allowed:
            logger.warning("Rate limit exceeded: key=%s path=%s used=%d limit=%d", key, request.url.path, used, limit)
            return error_response(
                429,
                detail="Rate limit exceeded. Try again later.",
                headers={
                    "Retry-After": str(reset_int),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(reset_int),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(limit - used, 0))
        response.headers["X-RateLimit-Reset"] = str(reset_int)
        return response
