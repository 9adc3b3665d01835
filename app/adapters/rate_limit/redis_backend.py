"""Redis-backed fixed-window rate limiter.

Counters are shared by every gateway worker. Each window gets its own key,
``{prefix}:{tracker_key}:{window_start}``, incremented atomically and expired
once the window is over.

Notes:
- Uses the asyncio client, so a round trip never blocks the event loop.
- Every call is bounded by ``operation_timeout`` on top of the client's
  socket timeouts; a hung server counts as an outage.
- Blocked requests are counted too; the window still resets on schedule.
- Fails open: when Redis is unreachable or too slow the request is allowed
  and the error is logged, so a storage outage never takes the gateway down.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Callable

import redis.asyncio as redis
from redis.exceptions import RedisError

from app.adapters.rate_limit.base import (
    AbstractRateLimiter,
    RateLimitResult,
    resolve_limit,
    validate_consume_args,
    validate_limits,
    window_bounds,
)

logger = logging.getLogger(__name__)


class RedisFixedWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter storing fixed-window counters in Redis."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        limit: int,
        window_seconds: int,
        key_prefix: str = "rate_limit",
        operation_timeout: float | None = 0.5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the Redis rate limiter.

        Args:
            client: asyncio Redis client.
            limit: Maximum number of allowed units per window.
            window_seconds: Size of the fixed window in seconds.
            key_prefix: Namespace for counter keys.
            operation_timeout: Seconds to wait for Redis before failing open
                (None waits for the client's own timeouts only).
            clock: Time source function returning UNIX time in seconds.

        Raises:
            ValueError: If limit, window_seconds or operation_timeout are invalid.
        """
        validate_limits(limit, window_seconds)
        if operation_timeout is not None and operation_timeout <= 0:
            raise ValueError("operation_timeout must be > 0")

        self._client = client
        self._limit = limit
        self._window_seconds = window_seconds
        self._key_prefix = key_prefix
        self._operation_timeout = operation_timeout
        self._clock = clock

    @classmethod
    def from_url(
        cls, url: str, *, operation_timeout: float | None = 0.5, **kwargs
    ) -> "RedisFixedWindowRateLimiter":
        """Build a limiter with a client connected to ``url``.

        The socket timeouts match ``operation_timeout`` so a dead server is
        detected by the client too.
        """
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=operation_timeout,
            socket_connect_timeout=operation_timeout,
        )
        return cls(client, operation_timeout=operation_timeout, **kwargs)

    def _counter_key(self, key: str, window_start: int) -> str:
        return f"{self._key_prefix}:{key}:{window_start}"

    def _build_result(
        self, *, allowed: bool, limit: int, count: int, now: float, reset_at: int
    ) -> RateLimitResult:
        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=int(reset_at),
            retry_after_seconds=None if allowed else max(0, int(math.ceil(reset_at - now))),
        )

    def _fail_open(
        self, *, operation: str, exc: Exception, limit: int, reset_at: int
    ) -> RateLimitResult:
        logger.error(
            "rate_limit.redis.unavailable",
            extra={
                "operation": operation,
                "error_type": type(exc).__name__,
                "error_msg": str(exc),
                "timeout_s": self._operation_timeout,
            },
        )
        return RateLimitResult(
            allowed=True,
            limit=limit,
            remaining=limit,
            reset_at=int(reset_at),
            retry_after_seconds=None,
        )

    async def _increment(self, counter_key: str, cost: int) -> int:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incrby(counter_key, cost)
            pipe.expire(counter_key, self._window_seconds)
            count, _ = await pipe.execute()
        return int(count)

    async def consume(self, key: str, *, cost: int = 1, limit: int | None = None) -> RateLimitResult:
        """Atomically add ``cost`` to the key's counter for the current window.

        Raises:
            ValueError: If key is empty, or cost or limit are invalid.
        """
        validate_consume_args(key, cost)
        limit = resolve_limit(self._limit, limit)

        now = self._clock()
        window_start, reset_at = window_bounds(now, self._window_seconds)
        counter_key = self._counter_key(key, window_start)

        try:
            count = await asyncio.wait_for(
                self._increment(counter_key, cost),
                timeout=self._operation_timeout,
            )
        except (RedisError, asyncio.TimeoutError) as exc:
            return self._fail_open(operation="consume", exc=exc, limit=limit, reset_at=reset_at)

        return self._build_result(
            allowed=count <= limit, limit=limit, count=count, now=now, reset_at=reset_at
        )

    async def peek(self, key: str, *, limit: int | None = None) -> RateLimitResult:
        """Read the key's counter for the current window without changing it."""
        validate_consume_args(key, 1)
        limit = resolve_limit(self._limit, limit)

        now = self._clock()
        window_start, reset_at = window_bounds(now, self._window_seconds)

        try:
            raw = await asyncio.wait_for(
                self._client.get(self._counter_key(key, window_start)),
                timeout=self._operation_timeout,
            )
        except (RedisError, asyncio.TimeoutError) as exc:
            return self._fail_open(operation="peek", exc=exc, limit=limit, reset_at=reset_at)

        count = int(raw) if raw is not None else 0
        # allowed reports whether the next request would pass
        return self._build_result(
            allowed=count < limit, limit=limit, count=count, now=now, reset_at=reset_at
        )
