# tests/test_rate_limiter.py
"""Tests for dispatch_core/infra/rate_limiter.py: fixed-window limiter and sweep."""
import asyncio

import pytest

from dispatch_core.core.errors import RateLimited
from dispatch_core.infra.clock import ManualClock
from dispatch_core.infra.rate_limiter import InMemoryRateLimiter, run_periodic_sweep


def _limiter(clock, **kwargs):
    kwargs.setdefault("window_seconds", 60)
    kwargs.setdefault("per_token", 3)
    kwargs.setdefault("per_address", 5)
    return InMemoryRateLimiter(clock=clock, **kwargs)


class TestCheck:
    def test_allows_up_to_limit_then_denies(self):
        clock = ManualClock()
        limiter = _limiter(clock)

        decisions = [limiter.check("k", 3) for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions] == [2, 1, 0, 0]

    def test_denial_reports_retry_after(self):
        clock = ManualClock()
        limiter = _limiter(clock)
        for _ in range(3):
            limiter.check("k", 3)

        clock.advance(20)
        denied = limiter.check("k", 3)

        assert not denied.allowed
        assert denied.retry_after == 40
        assert denied.headers()["Retry-After"] == "40"

    def test_new_window_after_reset(self):
        clock = ManualClock()
        limiter = _limiter(clock)
        for _ in range(4):
            limiter.check("k", 3)

        clock.advance(61)
        decision = limiter.check("k", 3)

        assert decision.allowed
        assert decision.remaining == 2

    def test_exactly_at_reset_is_same_window(self):
        clock = ManualClock()
        limiter = _limiter(clock)
        for _ in range(3):
            limiter.check("k", 3)

        clock.advance(60)
        assert not limiter.check("k", 3).allowed

    def test_identifiers_are_independent(self):
        clock = ManualClock()
        limiter = _limiter(clock)
        for _ in range(4):
            limiter.check("a", 3)

        assert limiter.check("b", 3).allowed


class TestCheckRequest:
    def test_token_uses_token_ceiling(self):
        limiter = _limiter(ManualClock())
        results = [limiter.check_request("tok_123", "10.0.0.1").allowed for _ in range(4)]
        assert results == [True, True, True, False]

    def test_address_uses_address_ceiling(self):
        limiter = _limiter(ManualClock())
        results = [limiter.check_request(None, "10.0.0.1").allowed for _ in range(6)]
        assert results == [True] * 5 + [False]

    def test_token_and_address_counted_separately(self):
        limiter = _limiter(ManualClock())
        for _ in range(3):
            limiter.check_request("tok_123", "10.0.0.1")

        # Exhausting the token ceiling leaves the address budget untouched
        assert limiter.check_request(None, "10.0.0.1").allowed

    def test_enforce_raises(self):
        limiter = _limiter(ManualClock())
        for _ in range(3):
            limiter.enforce("tok_123", "10.0.0.1")

        with pytest.raises(RateLimited) as exc_info:
            limiter.enforce("tok_123", "10.0.0.1")
        assert exc_info.value.retry_after == 60
        assert exc_info.value.status_code == 429


class TestUsageAndSweep:
    def test_get_usage_does_not_count(self):
        limiter = _limiter(ManualClock())
        limiter.check("k", 3)

        usage = limiter.get_usage("k", 3)
        usage_again = limiter.get_usage("k", 3)

        assert usage == usage_again
        assert usage["count"] == 1
        assert usage["remaining"] == 2

    def test_sweep_removes_only_stale_windows(self):
        clock = ManualClock()
        limiter = _limiter(clock, grace_seconds=60)
        limiter.check("old", 3)
        clock.advance(100)
        limiter.check("fresh", 3)

        # "old" reset at +60, cutoff now is +100 - 60 = +40: not yet stale
        assert limiter.sweep() == 0

        clock.advance(30)
        assert limiter.sweep() == 1
        assert len(limiter) == 1
        assert limiter.get_usage("fresh", 3)["count"] == 1

    @pytest.mark.asyncio
    async def test_periodic_sweep_runs_until_cancelled(self):
        clock = ManualClock()
        limiter = _limiter(clock, grace_seconds=0)
        limiter.check("k", 3)
        clock.advance(120)

        task = asyncio.create_task(run_periodic_sweep(limiter, 0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(limiter) == 0
