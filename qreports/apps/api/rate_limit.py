from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable

from fastapi import HTTPException, Request, Response, status
from redis.asyncio import Redis

from qreports.core.config import get_settings
from qreports.domain.identity import CallerIdentity
from qreports.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ROUTE_CLASS_QUERY = "query"
ROUTE_CLASS_GENERAL = "general"

_QUERY_PATHS = frozenset({"/reports/execute"})


@dataclass(frozen=True)
class BucketConfig:
    # Sustained refill rate plus burst capacity.
    rps: float
    burst: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    route_class: str
    retry_after_ms: int
    remaining: float | None = None


_TOKEN_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local burst = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local data = redis.call("HMGET", KEYS[1], "tokens", "ts")
local tokens = tonumber(data[1])
local ts = tonumber(data[2])
if tokens == nil then
  tokens = burst
  ts = now_ms
end
if now_ms < ts then
  ts = now_ms
end
tokens = math.min(burst, tokens + ((now_ms - ts) / 1000.0) * rate)

local allowed = tokens >= cost
local retry = 0
if not allowed then
  if rate <= 0 then
    retry = 1000
  else
    retry = math.ceil(((cost - tokens) / rate) * 1000)
  end
else
  tokens = tokens - cost
end

redis.call("HMSET", KEYS[1], "tokens", tokens, "ts", now_ms)
redis.call("EXPIRE", KEYS[1], ttl)

return {allowed and 1 or 0, tostring(tokens), retry}
"""


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


def route_class_for_path(path: str, method: str) -> str:
    if method.upper() == "POST" and path in _QUERY_PATHS:
        return ROUTE_CLASS_QUERY
    return ROUTE_CLASS_GENERAL


def route_class_for_request(request: Request) -> str:
    return route_class_for_path(request.url.path, request.method)


def _ttl_seconds(rate: float, burst: int) -> int:
    # Expire idle buckets after twice the full-refill window.
    if rate <= 0:
        return max(1, burst)
    return max(1, int(math.ceil((burst / rate) * 2)))


def _bucket_for_route(route_class: str) -> BucketConfig:
    settings = get_settings()
    per_minute = settings.rl_query_per_minute if route_class == ROUTE_CLASS_QUERY else settings.rl_general_per_minute
    return BucketConfig(rps=per_minute / 60.0, burst=max(1, per_minute))


async def _get_redis() -> Redis:
    # Cache Redis connections to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
    return _redis_pool


class RateLimiter:
    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        self._time_provider = time_provider or time.time

    async def check(self, *, subject: str, route_class: str, bucket: BucketConfig, cost: int = 1) -> RateLimitDecision:
        settings = get_settings()
        key = f"{settings.rl_redis_prefix}:user:{subject}:{route_class}"
        now_ms = int(self._time_provider() * 1000)
        redis = await _get_redis()
        result = await redis.eval(
            _TOKEN_BUCKET_LUA,
            1,
            key,
            now_ms,
            bucket.rps,
            bucket.burst,
            cost,
            _ttl_seconds(bucket.rps, bucket.burst),
        )
        return RateLimitDecision(
            allowed=int(result[0]) == 1,
            route_class=route_class,
            retry_after_ms=int(float(result[2])),
            remaining=float(result[1]),
        )


_rate_limiter: RateLimiter | None = None


def _get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: RateLimiter | None) -> None:
    global _rate_limiter
    _rate_limiter = limiter


def reset_rate_limiter_state() -> None:
    # Reset cached Redis connections for deterministic test setup.
    global _rate_limiter, _redis_pool, _redis_loop
    _rate_limiter = None
    _redis_pool = None
    _redis_loop = None


def _throttle_exception(decision: RateLimitDecision) -> HTTPException:
    retry_after_s = max(1, int(math.ceil(decision.retry_after_ms / 1000.0)))
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Rate limit exceeded",
            "route_class": decision.route_class,
            "retry_after_ms": decision.retry_after_ms,
        },
        headers={
            "Retry-After": str(retry_after_s),
            "X-RateLimit-Route-Class": decision.route_class,
        },
    )


def _unavailable_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
    )


async def enforce_rate_limit(*, request: Request, response: Response, caller: CallerIdentity) -> None:
    # Per-user buckets; Redis outages fail open unless configured closed.
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return

    route_class = route_class_for_request(request)
    limiter = _get_rate_limiter()
    try:
        decision = await limiter.check(
            subject=str(caller.user_id),
            route_class=route_class,
            bucket=_bucket_for_route(route_class),
        )
    except Exception as exc:  # noqa: BLE001 - guard against Redis connectivity failures
        if settings.rl_fail_mode.lower() == "closed":
            raise _unavailable_exception() from exc
        response.headers["X-RateLimit-Status"] = "degraded"
        logger.warning("rate_limit_degraded path=%s", request.url.path)
        return

    if decision.remaining is not None:
        response.headers["X-RateLimit-Remaining"] = str(int(decision.remaining))
    if decision.allowed:
        return
    increment_counter(f"rate_limited_{route_class}_total")
    logger.info("rate_limited user_id=%s route_class=%s", caller.user_id, route_class)
    raise _throttle_exception(decision)
