"""In-memory sliding window rate limiter.

Each key keeps the millisecond timestamps of its admitted requests. A request
is admitted while fewer than ``limit`` timestamps fall inside the trailing
``window_ms``; every timestamp expires on its own, so there is no hard reset
at window boundaries.

The limiter fails open: ``check`` never raises, and an internal fault admits
the request.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MS = 60_000
SWEEP_RETENTION_FACTOR = 15


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    success: bool
    remaining: int
    reset_at: int

    def retry_after_seconds(self, now_ms: int | None = None) -> int:
        """Whole seconds until ``reset_at``, never less than one."""
        now_ms = _now_ms() if now_ms is None else now_ms
        return max(1, math.ceil((self.reset_at - now_ms) / 1000))


@dataclass(frozen=True, slots=True)
class RateLimitRule:
    """Per-action limit declared at the call site."""

    action: str
    limit: int
    window_ms: int

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError(f"limit must be positive for {self.action!r}")
        if self.window_ms < 1:
            raise ValueError(f"window_ms must be positive for {self.action!r}")

    def key_for(self, identity: str) -> str:
        return f"{self.action}:{identity}"


RATE_LIMITS: dict[str, RateLimitRule] = {
    "unfurl": RateLimitRule("unfurl", 30, 60_000),
}


def _admit_on_fault(limit: object, window_ms: object) -> RateLimitResult:
    window = window_ms if isinstance(window_ms, int) and window_ms > 0 else DEFAULT_WINDOW_MS
    remaining = limit - 1 if isinstance(limit, int) and limit > 0 else 0
    return RateLimitResult(success=True, remaining=remaining, reset_at=_now_ms() + window)


class SlidingWindowLimiter:
    """Process-local limiter shared by every request handler.

    Construct one per application, call ``start()`` from inside the event
    loop to run the background sweep and ``await stop()`` on shutdown.
    """

    def __init__(
        self,
        *,
        sweep_interval_s: float = 60.0,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.sweep_interval_s = sweep_interval_s
        self._clock = clock
        self._store: dict[str, list[int]] = {}
        self._lock = threading.Lock()
        self._sweep_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._store)

    def now(self) -> int:
        return self._clock()

    def check(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        """Record and judge one request for ``key``."""
        try:
            return self._check(key, limit, window_ms)
        except Exception:  # noqa: BLE001
            logger.warning("Rate limiter fault for %r, admitting request", key, exc_info=True)
            return _admit_on_fault(limit, window_ms)

    def check_rule(self, rule: RateLimitRule, identity: str) -> RateLimitResult:
        return self.check(rule.key_for(identity), rule.limit, rule.window_ms)

    def _check(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        with self._lock:
            now = self._clock()
            window_start = now - window_ms
            timestamps = [t for t in self._store.get(key, ()) if t > window_start]

            if len(timestamps) >= limit:
                if timestamps:
                    self._store[key] = timestamps
                oldest = timestamps[0] if timestamps else now
                return RateLimitResult(success=False, remaining=0, reset_at=oldest + window_ms)

            timestamps.append(now)
            self._store[key] = timestamps
            return RateLimitResult(
                success=True,
                remaining=limit - len(timestamps),
                reset_at=now + window_ms,
            )

    def sweep(self, now: int | None = None) -> int:
        """Drop stale timestamps and empty keys. Returns the number of keys removed."""
        cutoff_span = int(self.sweep_interval_s * 1000) * SWEEP_RETENTION_FACTOR
        removed = 0
        with self._lock:
            now = self._clock() if now is None else now
            cutoff = now - cutoff_span
            for key in list(self._store):
                kept = [t for t in self._store[key] if t > cutoff]
                if kept:
                    self._store[key] = kept
                else:
                    del self._store[key]
                    removed += 1
        return removed

    def reset(self) -> None:
        """Forget every key."""
        with self._lock:
            self._store.clear()

    def start(self) -> None:
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            try:
                removed = self.sweep()
            except Exception:  # noqa: BLE001
                logger.exception("Rate limit sweep failed")
                continue
            if removed:
                logger.debug("Rate limit sweep removed %d keys", removed)
