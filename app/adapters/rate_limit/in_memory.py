"""In-memory fixed-window rate limiter.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state. The critical section never
  awaits, so the coroutines stay safe on the event loop as well.
- Bounded: at most ``max_keys`` keys are tracked at once.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from app.adapters.rate_limit.base import (
    AbstractRateLimiter,
    RateLimitResult,
    resolve_limit,
    validate_consume_args,
    validate_limits,
    window_bounds,
)

logger = logging.getLogger(__name__)


@dataclass
class _WindowState:
    window_start: int
    count: int


class InMemoryFixedWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter using a fixed time window per tracker key.

    Limits requests per key within a fixed window of time (e.g., 100 requests
    per 60 seconds). Windows are aligned to multiples of ``window_seconds``.

    Important:
        This limiter is per-process only. If the gateway runs with multiple
        workers, each worker enforces its own independent limits. Use the
        Redis backend for shared counters.
    """

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
        max_keys: int | None = None,
    ) -> None:
        """Initialize the in-memory rate limiter.

        Args:
            limit: Maximum number of allowed units per window.
            window_seconds: Size of the fixed window in seconds.
            clock: Time source function returning UNIX time in seconds.
            max_keys: Maximum number of tracked keys (None for unbounded).

        Raises:
            ValueError: If limit, window_seconds or max_keys are invalid.
        """
        validate_limits(limit, window_seconds)
        if max_keys is not None and max_keys < 1:
            raise ValueError("max_keys must be >= 1")

        self._limit = limit
        self._window_seconds = window_seconds
        self._clock = clock
        self._max_keys = max_keys
        self._lock = threading.RLock()
        # Ordered by most recent window reset, oldest first
        self._state_by_key: OrderedDict[str, _WindowState] = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._state_by_key)

    def _get_or_reset_state(self, key: str, window_start: int) -> _WindowState:
        """Get the current state for key or reset it when the window changes."""
        state = self._state_by_key.get(key)
        if state is None or state.window_start != window_start:
            state = _WindowState(window_start=window_start, count=0)
            self._state_by_key[key] = state
            self._state_by_key.move_to_end(key)
            self._enforce_capacity_locked(window_start, keep=key)
        return state

    def _enforce_capacity_locked(self, window_start: int, *, keep: str) -> None:
        if self._max_keys is None or len(self._state_by_key) <= self._max_keys:
            return

        stale = [k for k, s in self._state_by_key.items() if s.window_start < window_start]
        for k in stale:
            del self._state_by_key[k]

        evicted = 0
        while len(self._state_by_key) > self._max_keys:
            oldest = next(iter(self._state_by_key))
            if oldest == keep:
                break
            del self._state_by_key[oldest]
            evicted += 1

        logger.debug(
            "rate_limit.memory.purged",
            extra={
                "stale_removed": len(stale),
                "active_evicted": evicted,
                "size": len(self._state_by_key),
            },
        )

    def _build_result(
        self, *, allowed: bool, limit: int, count: int, now: float, reset_at: int
    ) -> RateLimitResult:
        remaining = max(0, limit - count)
        retry_after = None if allowed else max(0, int(math.ceil(reset_at - now)))
        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=remaining,
            reset_at=int(reset_at),
            retry_after_seconds=retry_after,
        )

    async def consume(self, key: str, *, cost: int = 1, limit: int | None = None) -> RateLimitResult:
        """Consume rate limit budget for the provided key.

        Checks the current window usage and records the cost only when the
        request is allowed.

        Args:
            key: Tracker key.
            cost: Units to consume (default 1).
            limit: Budget for this key (defaults to the configured limit).

        Returns:
            RateLimitResult with allowance decision and metadata.

        Raises:
            ValueError: If key is empty, or cost or limit are invalid.
        """
        validate_consume_args(key, cost)
        limit = resolve_limit(self._limit, limit)

        now = self._clock()
        window_start, reset_at = window_bounds(now, self._window_seconds)

        with self._lock:
            state = self._get_or_reset_state(key, window_start)

            if state.count + cost <= limit:
                state.count += cost
                return self._build_result(
                    allowed=True, limit=limit, count=state.count, now=now, reset_at=reset_at
                )

            return self._build_result(
                allowed=False, limit=limit, count=state.count, now=now, reset_at=reset_at
            )

    async def peek(self, key: str, *, limit: int | None = None) -> RateLimitResult:
        """Return the key's current window usage without consuming budget."""
        validate_consume_args(key, 1)
        limit = resolve_limit(self._limit, limit)

        now = self._clock()
        window_start, reset_at = window_bounds(now, self._window_seconds)

        with self._lock:
            state = self._state_by_key.get(key)
            count = state.count if state is not None and state.window_start == window_start else 0

        return self._build_result(
            allowed=count < limit, limit=limit, count=count, now=now, reset_at=reset_at
        )
