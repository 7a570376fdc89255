"""In-memory rate limiting and lockout for authentication endpoints."""

from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

SWEEP_EVERY = 512


@dataclass(frozen=True)
class RateLimitResult:
    ok: bool
    retry_after: int = 0


@dataclass(frozen=True)
class LockoutResult:
    locked: bool
    retry_after: int = 0


def _retry_after(until: float, now: float) -> int:
    return max(1, math.ceil(until - now))


class SlidingWindowRateLimiter:
    """Per-key sliding-window counter.

    All reads and writes for every key happen under one asyncio lock, so a
    burst of concurrent requests cannot under-count.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._events: dict[str, deque[float]] = {}
        self._windows: dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._calls = 0

    async def check(self, key: str, *, window_seconds: float, max_hits: int) -> RateLimitResult:
        """Count one hit for ``key`` and report whether it is within the limit."""
        if max_hits <= 0:
            return RateLimitResult(ok=True)
        async with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            events = self._events.setdefault(key, deque())
            self._windows[key] = window_seconds
            cutoff = now - window_seconds
            while events and events[0] <= cutoff:
                events.popleft()

            if len(events) >= max_hits:
                return RateLimitResult(ok=False, retry_after=_retry_after(events[0] + window_seconds, now))

            events.append(now)
            return RateLimitResult(ok=True)

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._events.pop(key, None)
            self._windows.pop(key, None)

    def _maybe_sweep(self, now: float) -> None:
        self._calls += 1
        if self._calls % SWEEP_EVERY:
            return
        for key in list(self._events):
            events = self._events[key]
            if not events or events[-1] <= now - self._windows.get(key, 0):
                self._events.pop(key, None)
                self._windows.pop(key, None)


@dataclass
class _AttemptState:
    failures: deque[float] = field(default_factory=deque)
    blocked_until: float = 0.0


class LockoutGuard:
    """Tracks consecutive failures per identity+origin key and bans on overflow."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._states: dict[str, _AttemptState] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._calls = 0

    async def check(self, key: str) -> LockoutResult:
        async with self._lock:
            now = self._clock()
            state = self._states.get(key)
            if not state:
                return LockoutResult(locked=False)
            if state.blocked_until > now:
                return LockoutResult(locked=True, retry_after=_retry_after(state.blocked_until, now))
            if state.blocked_until and not state.failures:
                self._states.pop(key, None)
            return LockoutResult(locked=False)

    async def record_failure(
        self,
        key: str,
        *,
        window_seconds: float,
        max_failures: int,
        ban_seconds: float,
    ) -> LockoutResult:
        if max_failures <= 0:
            return LockoutResult(locked=False)
        async with self._lock:
            now = self._clock()
            self._maybe_sweep(now, window_seconds)
            state = self._states.setdefault(key, _AttemptState())
            if state.blocked_until > now:
                return LockoutResult(locked=True, retry_after=_retry_after(state.blocked_until, now))

            cutoff = now - window_seconds
            while state.failures and state.failures[0] <= cutoff:
                state.failures.popleft()

            state.failures.append(now)
            if len(state.failures) >= max_failures:
                state.failures.clear()
                state.blocked_until = now + max(1, ban_seconds)
                return LockoutResult(locked=True, retry_after=_retry_after(state.blocked_until, now))
            return LockoutResult(locked=False)

    async def clear(self, key: str) -> None:
        async with self._lock:
            self._states.pop(key, None)

    def _maybe_sweep(self, now: float, window_seconds: float) -> None:
        self._calls += 1
        if self._calls % SWEEP_EVERY:
            return
        for key in list(self._states):
            state = self._states[key]
            idle = not state.failures or state.failures[-1] <= now - window_seconds
            if state.blocked_until <= now and idle:
                self._states.pop(key, None)
