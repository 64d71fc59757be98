"""
Token bucket rate limiter for the Teams service.

Buckets live in process memory and are created lazily on first use; they are
never expired. Limits are configured per (route, HTTP method) pair.
"""

import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request, Response

from shared.errors import BadRequestError, TooManyRequestsError
from shared.logging import get_logger
from shared.metrics import MetricsCollector


@dataclass(frozen=True)
class RateLimit:
    """Capacity and refill rate (tokens per second) of a bucket."""
    capacity: int
    refill_rate: float


@dataclass(frozen=True)
class ConsumeResult:
    allowed: bool
    remaining: int
    reset_at: float
    limit: int
    retry_after: int

    def headers(self) -> Dict[str, str]:
        reset = datetime.fromtimestamp(self.reset_at, tz=timezone.utc).isoformat()
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining if self.allowed else 0),
            "X-RateLimit-Reset": reset,
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


DEFAULT_LIMITS: Dict[str, RateLimit] = {
    "GET": RateLimit(capacity=2000, refill_rate=200),
    "POST": RateLimit(capacity=500, refill_rate=50),
    "PUT": RateLimit(capacity=200, refill_rate=20),
    "DELETE": RateLimit(capacity=100, refill_rate=10),
}

# Overrides per route template, relative to the API prefix
ROUTE_LIMITS: Dict[str, Dict[str, RateLimit]] = {
    "/signup": {"POST": RateLimit(100, 10)},
    "/login": {"POST": RateLimit(100, 10)},
    "/team/create": {"POST": RateLimit(100, 10)},
    "/team/add-member": {"POST": RateLimit(100, 10)},
    "/project/create": {"POST": RateLimit(100, 10)},
    "/project/update/{project_id}": {"PUT": RateLimit(100, 10)},
    "/restore-collection": {
        "PUT": RateLimit(2000, 200),
        "GET": RateLimit(500, 50),
    },
}


def build_route_limits(prefix: str = "") -> Dict[str, Dict[str, RateLimit]]:
    """Route overrides keyed by full route template."""
    return {f"{prefix}{path}": dict(limits) for path, limits in ROUTE_LIMITS.items()}


class TokenBucket:
    """Continuously refilling token bucket."""

    def __init__(self, capacity: int, refill_rate: float, clock: Callable[[], float] = time.time):
        if capacity <= 0 or refill_rate <= 0:
            raise ValueError("capacity and refill_rate must be positive")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = float(capacity)
        self._clock = clock
        self.last_refill = clock()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def try_consume(self) -> ConsumeResult:
        now = self._clock()
        self._refill(now)

        allowed = self.tokens >= 1
        if allowed:
            self.tokens -= 1

        # time until the bucket is full again, not until the next token
        reset_at = now + (self.capacity - self.tokens) / self.refill_rate
        return ConsumeResult(
            allowed=allowed,
            remaining=math.floor(self.tokens),
            reset_at=reset_at,
            limit=self.capacity,
            retry_after=math.ceil(1 / self.refill_rate),
        )


class RateLimitRegistry:
    """In-memory map of identity key to token bucket.

    The registry is created once per service and injected where needed.
    """

    def __init__(self,
                 route_limits: Optional[Dict[str, Dict[str, RateLimit]]] = None,
                 default_limits: Optional[Dict[str, RateLimit]] = None,
                 clock: Callable[[], float] = time.time):
        self.route_limits = route_limits or {}
        self.default_limits = default_limits or DEFAULT_LIMITS
        self._clock = clock
        self._buckets: Dict[Tuple[str, ...], TokenBucket] = {}
        self.logger = get_logger("teams.rate_limiter")

    def __len__(self) -> int:
        return len(self._buckets)

    def limit_for(self, route: str, method: str) -> RateLimit:
        method = method.upper()
        override = self.route_limits.get(route, {}).get(method)
        if override is not None:
            return override
        return self.default_limits.get(method, self.default_limits["GET"])

    def try_consume(self, identity, capacity: int, refill_rate: float) -> ConsumeResult:
        """Consume one token from the bucket of ``identity``, creating it on first use."""
        key = identity if isinstance(identity, tuple) else (identity,)
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(capacity, refill_rate, clock=self._clock)
            self._buckets[key] = bucket
        return bucket.try_consume()

    def check(self, identity: str, route: str, method: str) -> ConsumeResult:
        """Apply the configured limit of a route and method to ``identity``."""
        limit = self.limit_for(route, method)
        result = self.try_consume((identity, route, method.upper()), limit.capacity, limit.refill_rate)
        if not result.allowed:
            self.logger.warning(
                "Rate limit exceeded",
                identity=identity,
                route=route,
                method=method,
                limit=limit.capacity
            )
        return result

    def evict(self, identity: str) -> int:
        """Drop every bucket of an identity; returns the number removed."""
        keys = [key for key in self._buckets if key[0] == identity]
        for key in keys:
            del self._buckets[key]
        return len(keys)

    def reset(self) -> None:
        """Drop all buckets."""
        self._buckets.clear()


def get_client_identity(request: Request) -> Optional[str]:
    """Identity for rate limiting: client IP, then API key, then forwarded-for."""
    if request.client and request.client.host:
        return request.client.host

    api_key = request.headers.get("X-API-Key")
    if api_key:
        return api_key

    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip() or None

    return None


class RateLimitGuard:
    """FastAPI dependency enforcing the registry limits on a route."""

    def __init__(self, registry: RateLimitRegistry, metrics: Optional[MetricsCollector] = None):
        self.registry = registry
        self.metrics = metrics

    async def __call__(self, request: Request) -> ConsumeResult:
        identity = get_client_identity(request)
        if identity is None:
            raise BadRequestError(
                "Missing identifier for rate limiting!",
                reason="The request carries no client address, API key or forwarded-for header!",
                solution="Send the request with an X-API-Key or X-Forwarded-For header!",
            )

        route = request.scope.get("route")
        route_path = getattr(route, "path", request.url.path)
        result = self.registry.check(identity, route_path, request.method)

        if not result.allowed:
            if self.metrics:
                self.metrics.increment_counter(
                    "rate_limit_rejections_total", route=route_path, method=request.method
                )
            raise TooManyRequestsError(
                reason="The rate limit for this route has been exhausted!",
                solution=f"Retry after {result.retry_after} second(s)!",
                headers=result.headers(),
            )

        # written onto the final response, whatever its status
        request.state.rate_limit = result
        return result


def apply_rate_limit_headers(request: Request, response: Response) -> None:
    """Copy the headers of an allowed rate limit check onto ``response``."""
    result = getattr(request.state, "rate_limit", None)
    if isinstance(result, ConsumeResult):
        response.headers.update(result.headers())
