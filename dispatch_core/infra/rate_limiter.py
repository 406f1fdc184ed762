from __future__ import annotations
import asyncio
import math
from dataclasses import dataclass
from threading import Lock
from typing import Optional

from dispatch_core.core.errors import RateLimited
from dispatch_core.core.ports import Clock
from dispatch_core.infra.clock import SystemClock
from dispatch_core.infra.logging_config import get_logger, mask_token

logger = get_logger(__name__)


@dataclass
class _Window:
    count: int
    reset_at: float  # clock.monotonic() seconds


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: Optional[int]  # whole seconds, only set on denial
    reset_in: float

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_in)),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class InMemoryRateLimiter:
    """
    Per-identifier request counter over a time window.

    The first request for an identifier opens a window; requests inside it
    increment the counter and are allowed while ``count <= max_requests``.
    The first request after the window ends starts a fresh one at 1.

    Two independent ceilings: ``per_token`` for authenticated callers
    (keyed on the session token) and ``per_address`` for everyone else
    (keyed on the caller IP).

    ⚠️ NOT horizontally scalable: each process holds its own counters,
    so with N processes the effective limit is N × max_requests.  The goal
    is abuse deterrence, not an exact global quota.
    """

    def __init__(
        self,
        window_seconds: int = 60,
        per_token: int = 100,
        per_address: int = 200,
        grace_seconds: int = 60,
        clock: Clock | None = None,
    ):
        self.window_seconds = window_seconds
        self.per_token = per_token
        self.per_address = per_address
        self.grace_seconds = grace_seconds
        self._clock = clock or SystemClock()
        self._windows: dict[str, _Window] = {}
        self._lock = Lock()

    def check(self, identifier: str, max_requests: int) -> RateLimitDecision:
        """Count one request for ``identifier`` and decide whether to allow it."""
        now = self._clock.monotonic()

        with self._lock:
            window = self._windows.get(identifier)
            if window is None or now > window.reset_at:
                window = _Window(count=1, reset_at=now + self.window_seconds)
                self._windows[identifier] = window
            else:
                window.count += 1
            count = window.count
            reset_in = max(0.0, window.reset_at - now)

        if count > max_requests:
            retry_after = max(1, math.ceil(reset_in))
            logger.warning(
                "Rate limit exceeded for key=%s", mask_token(identifier),
                extra={
                    "key_masked": mask_token(identifier),
                    "count": count,
                    "limit": max_requests,
                    "retry_after": retry_after,
                }
            )
            return RateLimitDecision(False, max_requests, 0, retry_after, reset_in)

        return RateLimitDecision(True, max_requests, max_requests - count, None, reset_in)

    def check_request(self, token: str | None, address: str) -> RateLimitDecision:
        """Pick identifier and ceiling: token if present, else caller address."""
        if token:
            return self.check(f"token:{token}", self.per_token)
        return self.check(f"ip:{address}", self.per_address)

    def enforce(self, token: str | None, address: str) -> RateLimitDecision:
        """``check_request`` that raises ``RateLimited`` on denial."""
        decision = self.check_request(token, address)
        if not decision.allowed:
            raise RateLimited(retry_after=decision.retry_after or 1)
        return decision

    def get_usage(self, identifier: str, max_requests: int) -> dict:
        """Get current usage stats for a key (does not count a request)."""
        now = self._clock.monotonic()
        with self._lock:
            window = self._windows.get(identifier)
            count = window.count if window and now <= window.reset_at else 0
        return {
            "count": count,
            "limit": max_requests,
            "window_seconds": self.window_seconds,
            "remaining": max(0, max_requests - count),
        }

    def sweep(self) -> int:
        """
        Remove windows that ended more than ``grace_seconds`` ago.
        Returns number of keys removed.
        """
        cutoff = self._clock.monotonic() - self.grace_seconds

        with self._lock:
            to_remove = [key for key, w in self._windows.items() if w.reset_at < cutoff]
            for key in to_remove:
                del self._windows[key]

        if to_remove:
            logger.info(f"Rate limiter sweep: removed {len(to_remove)} keys")
        return len(to_remove)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


async def run_periodic_sweep(limiter: InMemoryRateLimiter, interval_seconds: float) -> None:
    """Sweep ``limiter`` every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            limiter.sweep()
        except Exception:
            logger.error("Rate limiter sweep failed", exc_info=True)
