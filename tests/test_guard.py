"""
tests/test_guard.py -- Unit tests for auth/guard.py (lockout, rate limit, denylist).

All tests drive a fake clock through MemoryCounterStore so window expiry is
deterministic.

Covers:
  - Lockout state machine: Clean -> Accumulating -> Locked -> (window) -> Clean
  - Success resets the counter; retry_after is positive and bounded by the window
  - Concurrent failures are all counted
  - Rate limiter fixed window and retry_after
  - Denylist revoke / expiry
  - Fail closed: store errors and timeouts raise AdmissionUnavailable
"""

from __future__ import annotations

import asyncio

import pytest

from auth.errors import AdmissionUnavailable
from auth.guard import LockoutGuard, RateLimiter, TokenDenylist
from kvstore.store import CounterStoreError, MemoryCounterStore


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class BrokenStore(MemoryCounterStore):
    """Every operation fails the way an unreachable Redis would."""

    async def get_failures(self, key, now):
        raise CounterStoreError("connection refused")

    async def record_failure(self, key, now, threshold, ttl):
        raise CounterStoreError("connection refused")

    async def hit(self, key, now, window):
        raise CounterStoreError("connection refused")

    async def has_flag(self, key, now):
        raise CounterStoreError("connection refused")


class HangingStore(MemoryCounterStore):
    async def get_failures(self, key, now):
        await asyncio.sleep(10)
        return 0, None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def guard(clock: FakeClock) -> LockoutGuard:
    return LockoutGuard(MemoryCounterStore(), threshold=5, window_seconds=900, clock=clock)


class TestLockout:
    @pytest.mark.asyncio
    async def test_clean_identity_allowed(self, guard: LockoutGuard) -> None:
        admission = await guard.check("10.0.0.1")
        assert admission.allowed
        assert admission.failures == 0

    @pytest.mark.asyncio
    async def test_below_threshold_still_allowed(self, guard: LockoutGuard) -> None:
        for _ in range(4):
            await guard.record_failure("10.0.0.1")
        admission = await guard.check("10.0.0.1")
        assert admission.allowed
        assert admission.failures == 4

    @pytest.mark.asyncio
    async def test_locked_after_threshold(self, guard: LockoutGuard) -> None:
        for _ in range(5):
            await guard.record_failure("10.0.0.1")
        admission = await guard.check("10.0.0.1")
        assert not admission.allowed
        assert 0 < admission.retry_after <= 900

    @pytest.mark.asyncio
    async def test_retry_after_counts_down(self, guard: LockoutGuard, clock: FakeClock) -> None:
        for _ in range(5):
            await guard.record_failure("10.0.0.1")
        clock.now += 600
        admission = await guard.check("10.0.0.1")
        assert not admission.allowed
        assert admission.retry_after == 300

    @pytest.mark.asyncio
    async def test_window_elapsed_returns_to_clean(self, guard: LockoutGuard, clock: FakeClock) -> None:
        for _ in range(5):
            await guard.record_failure("10.0.0.1")
        clock.now += 900
        admission = await guard.check("10.0.0.1")
        assert admission.allowed
        # Fully reset: four more failures do not re-lock.
        for _ in range(4):
            await guard.record_failure("10.0.0.1")
        assert (await guard.check("10.0.0.1")).allowed

    @pytest.mark.asyncio
    async def test_success_resets_counter(self, guard: LockoutGuard) -> None:
        for _ in range(4):
            await guard.record_failure("10.0.0.1")
        await guard.record_success("10.0.0.1")
        await guard.record_failure("10.0.0.1")
        assert (await guard.check("10.0.0.1")).failures == 1

    @pytest.mark.asyncio
    async def test_identities_are_independent(self, guard: LockoutGuard) -> None:
        for _ in range(5):
            await guard.record_failure("10.0.0.1")
        assert (await guard.check("10.0.0.2")).allowed

    @pytest.mark.asyncio
    async def test_concurrent_failures_all_counted(self, guard: LockoutGuard) -> None:
        await asyncio.gather(*(guard.record_failure("10.0.0.1") for _ in range(20)))
        admission = await guard.check("10.0.0.1")
        assert admission.failures == 20
        assert not admission.allowed

    @pytest.mark.asyncio
    async def test_unlocked_record_expires_after_twice_window(self, guard: LockoutGuard, clock: FakeClock) -> None:
        for _ in range(3):
            await guard.record_failure("10.0.0.1")
        clock.now += 1800
        assert (await guard.check("10.0.0.1")).failures == 0


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_limit_then_reject(self, clock: FakeClock) -> None:
        limiter = RateLimiter(MemoryCounterStore(), limit=3, window_seconds=60, clock=clock)
        for _ in range(3):
            assert (await limiter.hit("10.0.0.1")).allowed
        admission = await limiter.hit("10.0.0.1")
        assert not admission.allowed
        assert 0 < admission.retry_after <= 60

    @pytest.mark.asyncio
    async def test_window_resets(self, clock: FakeClock) -> None:
        limiter = RateLimiter(MemoryCounterStore(), limit=1, window_seconds=60, clock=clock)
        await limiter.hit("10.0.0.1")
        assert not (await limiter.hit("10.0.0.1")).allowed
        clock.now += 60
        assert (await limiter.hit("10.0.0.1")).allowed


class TestDenylist:
    @pytest.mark.asyncio
    async def test_revoked_until_ttl(self, clock: FakeClock) -> None:
        denylist = TokenDenylist(MemoryCounterStore(), clock=clock)
        await denylist.revoke("jti-1", 120)
        assert await denylist.is_revoked("jti-1")
        assert not await denylist.is_revoked("jti-2")
        clock.now += 120
        assert not await denylist.is_revoked("jti-1")

    @pytest.mark.asyncio
    async def test_zero_ttl_is_noop(self, clock: FakeClock) -> None:
        denylist = TokenDenylist(MemoryCounterStore(), clock=clock)
        await denylist.revoke("jti-1", 0)
        assert not await denylist.is_revoked("jti-1")


class TestFailClosed:
    @pytest.mark.asyncio
    async def test_store_error_on_check(self) -> None:
        guard = LockoutGuard(BrokenStore())
        with pytest.raises(AdmissionUnavailable):
            await guard.check("10.0.0.1")

    @pytest.mark.asyncio
    async def test_store_error_on_record(self) -> None:
        guard = LockoutGuard(BrokenStore())
        with pytest.raises(AdmissionUnavailable):
            await guard.record_failure("10.0.0.1")

    @pytest.mark.asyncio
    async def test_timeout_on_check(self) -> None:
        guard = LockoutGuard(HangingStore(), timeout=0.05)
        with pytest.raises(AdmissionUnavailable):
            await guard.check("10.0.0.1")

    @pytest.mark.asyncio
    async def test_rate_limiter_store_error(self) -> None:
        limiter = RateLimiter(BrokenStore())
        with pytest.raises(AdmissionUnavailable):
            await limiter.hit("10.0.0.1")

    @pytest.mark.asyncio
    async def test_denylist_store_error(self) -> None:
        denylist = TokenDenylist(BrokenStore())
        with pytest.raises(AdmissionUnavailable):
            await denylist.is_revoked("jti-1")
