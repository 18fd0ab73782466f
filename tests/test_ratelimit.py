"""Tests for the sliding window rate limiter."""

from __future__ import annotations

import asyncio
import threading

import pytest

from linkpeek.ratelimit import (
    RATE_LIMITS,
    RateLimitResult,
    RateLimitRule,
    SlidingWindowLimiter,
)

T0 = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> SlidingWindowLimiter:
    return SlidingWindowLimiter(clock=clock)


class TestCheck:
    def test_admits_under_limit(self, limiter):
        result = limiter.check("test:1", 5, 60_000)
        assert result == RateLimitResult(success=True, remaining=4, reset_at=T0 + 60_000)

    def test_counts_down_then_denies(self, limiter):
        assert limiter.check("test:1", 2, 60_000).remaining == 1
        assert limiter.check("test:1", 2, 60_000).remaining == 0

        denied = limiter.check("test:1", 2, 60_000)
        assert denied == RateLimitResult(success=False, remaining=0, reset_at=T0 + 60_000)

    def test_denied_attempts_are_not_recorded(self, limiter, clock):
        limiter.check("k", 1, 60_000)
        for _ in range(5):
            clock.advance(1_000)
            assert limiter.check("k", 1, 60_000).success is False
        clock.advance(55_001)
        assert limiter.check("k", 1, 60_000).success is True

    def test_reopens_after_window(self, limiter, clock):
        limiter.check("test:1", 2, 60_000)
        limiter.check("test:1", 2, 60_000)
        assert limiter.check("test:1", 2, 60_000).success is False

        clock.advance(60_001)
        result = limiter.check("test:1", 2, 60_000)
        assert result.success is True
        assert result.remaining == 1

    def test_timestamp_exactly_at_window_edge_has_expired(self, limiter, clock):
        limiter.check("edge", 1, 60_000)
        clock.advance(60_000)
        assert limiter.check("edge", 1, 60_000).success is True

    def test_slots_expire_individually(self, limiter, clock):
        assert limiter.check("test:1", 2, 60_000).success is True  # t=0
        clock.advance(30_000)
        assert limiter.check("test:1", 2, 60_000).success is True  # t=30s

        denied = limiter.check("test:1", 2, 60_000)
        assert denied.success is False
        assert denied.reset_at == T0 + 60_000

        clock.advance(30_001)  # t=60.001s, only the first slot has expired
        result = limiter.check("test:1", 2, 60_000)
        assert result.success is True
        assert result.remaining == 0

        denied = limiter.check("test:1", 2, 60_000)
        assert denied.success is False
        assert denied.reset_at == T0 + 30_000 + 60_000

    def test_keys_are_isolated(self, limiter):
        limiter.check("unfurl:user1", 1, 60_000)
        assert limiter.check("unfurl:user1", 1, 60_000).success is False
        assert limiter.check("createShare:user1", 1, 60_000).success is True
        assert limiter.check("unfurl:user2", 1, 60_000).success is True

    def test_large_limit(self, limiter):
        for _ in range(100):
            assert limiter.check("large", 10_000, 60_000).success is True
        assert limiter.check("large", 10_000, 60_000).remaining == 10_000 - 101

    def test_short_window(self, limiter, clock):
        limiter.check("fast", 1, 100)
        assert limiter.check("fast", 1, 100).success is False
        clock.advance(101)
        assert limiter.check("fast", 1, 100).success is True


class TestFailOpen:
    def test_clock_failure_admits(self):
        def broken_clock() -> int:
            raise RuntimeError("clock is gone")

        result = SlidingWindowLimiter(clock=broken_clock).check("k", 5, 60_000)
        assert result.success is True
        assert result.remaining == 4

    def test_bad_arguments_admit(self, limiter):
        result = limiter.check("k", "five", 60_000)  # type: ignore[arg-type]
        assert result.success is True
        assert result.remaining == 0


class TestStore:
    def test_creates_entries_lazily(self, limiter):
        assert len(limiter) == 0
        limiter.check("a", 5, 60_000)
        limiter.check("b", 5, 60_000)
        assert len(limiter) == 2

    def test_reset_clears_entries(self, limiter):
        limiter.check("a", 1, 60_000)
        assert limiter.check("a", 1, 60_000).success is False
        limiter.reset()
        assert len(limiter) == 0
        assert limiter.check("a", 1, 60_000).success is True

    def test_sweep_drops_idle_keys(self, clock):
        limiter = SlidingWindowLimiter(sweep_interval_s=60, clock=clock)
        limiter.check("idle", 5, 60_000)
        clock.advance(10 * 60_000)
        limiter.check("active", 5, 60_000)

        clock.advance(5 * 60_000 - 1)
        assert limiter.sweep() == 0

        clock.advance(1)
        assert limiter.sweep() == 1
        assert len(limiter) == 1
        assert limiter.check("active", 5, 60_000).remaining == 4

    @pytest.mark.asyncio
    async def test_background_sweep_runs_and_stops(self, clock):
        limiter = SlidingWindowLimiter(sweep_interval_s=0.01, clock=clock)
        limiter.check("old", 5, 60_000)
        clock.advance(60_000)

        limiter.start()
        limiter.start()  # idempotent
        for _ in range(100):
            if len(limiter) == 0:
                break
            await asyncio.sleep(0.01)
        await limiter.stop()
        await limiter.stop()

        assert len(limiter) == 0


def test_concurrent_checks_on_one_key_admit_exactly_limit():
    limiter = SlidingWindowLimiter()
    barrier = threading.Barrier(16)
    results: list[bool] = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        ok = limiter.check("race", 3, 60_000).success
        with lock:
            results.append(ok)

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 3


class TestRules:
    def test_declared_limits(self):
        assert RATE_LIMITS == {"unfurl": RateLimitRule("unfurl", 30, 60_000)}

    def test_key_composition(self):
        assert RATE_LIMITS["unfurl"].key_for("user-123") == "unfurl:user-123"

    @pytest.mark.parametrize(("limit", "window_ms"), [(0, 60_000), (5, 0)])
    def test_rejects_nonsense(self, limit, window_ms):
        with pytest.raises(ValueError):
            RateLimitRule("bad", limit, window_ms)

    def test_unfurl_rule_allows_thirty_per_minute(self, limiter):
        rule = RATE_LIMITS["unfurl"]
        for _ in range(30):
            assert limiter.check_rule(rule, "user-123").success is True
        assert limiter.check_rule(rule, "user-123").success is False

    def test_rule_is_per_identity(self, limiter):
        rule = RateLimitRule("signup", 5, 15 * 60_000)
        for _ in range(5):
            assert limiter.check_rule(rule, "10.0.0.1").success is True
        assert limiter.check_rule(rule, "10.0.0.1").success is False
        assert limiter.check_rule(rule, "10.0.0.2").success is True


def test_retry_after_rounds_up():
    result = RateLimitResult(success=False, remaining=0, reset_at=T0 + 1_500)
    assert result.retry_after_seconds(T0) == 2
    assert result.retry_after_seconds(T0 + 1_500) == 1
