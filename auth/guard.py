"""
auth/guard.py -- Brute-force defense: failed-attempt lockout and request rate limiting.

Lockout state machine, per client identity (network origin):

    Clean --failure--> Accumulating (1..N-1) --Nth failure--> Locked
      ^                      |                                   |
      +------success---------+                                   |
      +-------------------- window elapsed ---------------------+

While Locked, every attempt is rejected with a retry-after hint without
looking at the credentials. After the window the record is cleared and the
next attempt is judged normally. Records that never reach Locked expire on
their own after twice the window (the store's per-key TTL).

The rate limiter is a fixed window counter applied to every request,
independent of authentication outcome.

Both share one rule: every store call carries a deadline, and a timeout or
store error raises AdmissionUnavailable. Callers deny on that -- admission
control fails closed.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from auth.errors import AdmissionUnavailable
from kvstore.store import CounterStore, CounterStoreError, hashed_key

logger = logging.getLogger("warden.guard")
audit = logging.getLogger("warden.audit")

T = TypeVar("T")


@dataclass(frozen=True)
class Admission:
    allowed: bool
    retry_after: int = 0
    failures: int = 0


async def _bounded(op: Awaitable[T], timeout: float, what: str) -> T:
    try:
        return await asyncio.wait_for(op, timeout=timeout)
    except (asyncio.TimeoutError, CounterStoreError, OSError) as exc:
        logger.error("%s unavailable: %s", what, exc.__class__.__name__)
        raise AdmissionUnavailable(what) from exc


class LockoutGuard:
    """Tracks failed authentication attempts per client identity.

    Usage:
        guard = LockoutGuard(store, threshold=5, window_seconds=900)
        admission = await guard.check(client_ip)
        if not admission.allowed: ...          # 429 with admission.retry_after
        await guard.record_failure(client_ip)  # on bad credentials
        await guard.record_success(client_ip)  # on good credentials
    """

    def __init__(
        self,
        store: CounterStore,
        threshold: int = 5,
        window_seconds: int = 900,
        timeout: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.timeout = timeout
        self.clock = clock

    @property
    def _record_ttl(self) -> int:
        return self.window_seconds * 2

    def _retry_after(self, locked_at: float, now: float) -> int:
        return max(1, math.ceil(self.window_seconds - (now - locked_at)))

    async def check(self, identity: str) -> Admission:
        key = hashed_key("lockout", identity)
        now = self.clock()
        count, locked_at = await _bounded(self.store.get_failures(key, now), self.timeout, "lockout check")
        if locked_at is None:
            return Admission(allowed=True, failures=count)
        if now - locked_at < self.window_seconds:
            retry_after = self._retry_after(locked_at, now)
            audit.warning("lockout: attempt rejected identity=%s failures=%d retry_after=%ds",
                          key[-12:], count, retry_after)
            return Admission(allowed=False, retry_after=retry_after, failures=count)
        # Window elapsed -- back to Clean.
        await _bounded(self.store.delete(key), self.timeout, "lockout reset")
        return Admission(allowed=True)

    async def record_failure(self, identity: str) -> Admission:
        key = hashed_key("lockout", identity)
        now = self.clock()
        count, locked_at = await _bounded(
            self.store.record_failure(key, now, self.threshold, self._record_ttl), self.timeout, "lockout record"
        )
        if locked_at is None:
            return Admission(allowed=True, failures=count)
        if count == self.threshold:
            audit.warning("lockout: triggered identity=%s failures=%d window=%ds", key[-12:], count, self.window_seconds)
        return Admission(allowed=False, retry_after=self._retry_after(locked_at, now), failures=count)

    async def record_success(self, identity: str) -> None:
        key = hashed_key("lockout", identity)
        await _bounded(self.store.delete(key), self.timeout, "lockout reset")


class RateLimiter:
    """Fixed-window request admission per client identity."""

    def __init__(
        self,
        store: CounterStore,
        limit: int = 100,
        window_seconds: int = 900,
        timeout: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.timeout = timeout
        self.clock = clock

    async def hit(self, identity: str) -> Admission:
        key = hashed_key("rate", identity)
        count, ttl = await _bounded(
            self.store.hit(key, self.clock(), self.window_seconds), self.timeout, "rate limit"
        )
        if count > self.limit:
            if count == self.limit + 1:
                audit.warning("rate limit exceeded identity=%s limit=%d/%ds", key[-12:], self.limit, self.window_seconds)
            return Admission(allowed=False, retry_after=max(1, ttl), failures=count)
        return Admission(allowed=True, failures=count)


class TokenDenylist:
    """Revoked token ids, keyed by jti, kept until the token would expire anyway."""

    def __init__(self, store: CounterStore, timeout: float = 2.0, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.timeout = timeout
        self.clock = clock

    async def revoke(self, jti: str, ttl: int) -> None:
        await _bounded(self.store.set_flag(f"revoked:{jti}", self.clock(), ttl), self.timeout, "token revoke")

    async def is_revoked(self, jti: str) -> bool:
        return await _bounded(self.store.has_flag(f"revoked:{jti}", self.clock()), self.timeout, "denylist check")
