"""
kvstore/store.py -- Shared counter store for admission control.

Lockout records, rate windows and the token denylist must be visible to every
service instance, and every increment must be a single atomic step so that
concurrent failures from one client are never undercounted. Two backends
implement the same CounterStore protocol:

  RedisCounterStore  -- redis.asyncio; each multi-step operation is one Lua
                        script, so it runs atomically on the server. Per-key
                        expiry is native (EXPIRE).
  MemoryCounterStore -- process-local dict guarded by an asyncio.Lock. Only
                        correct for a single instance; used in development
                        and tests. The lock never spans an await on I/O.

Keys are namespaced and client identities are hashed before use so an
attacker-controlled identity cannot collide with another namespace.

Usage:
    store = build_counter_store(settings.redis_url)
    count, locked_at = await store.record_failure("lockout:abc", now, 5, 1800)
    count, ttl = await store.hit("rate:abc", now, 900)
    await store.close()
"""

from __future__ import annotations

import asyncio
import hashlib
import math
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError


class CounterStoreError(Exception):
    """The backing store failed. Admission checks treat this as 'deny'."""


def hashed_key(namespace: str, identity: str) -> str:
    digest = hashlib.sha256(identity.encode("utf-8")).hexdigest()
    return f"{namespace}:{digest}"


class CounterStore(Protocol):
    async def get_failures(self, key: str, now: float) -> tuple[int, float | None]: ...

    async def record_failure(self, key: str, now: float, threshold: int, ttl: int) -> tuple[int, float | None]: ...

    async def delete(self, key: str) -> None: ...

    async def hit(self, key: str, now: float, window: int) -> tuple[int, int]: ...

    async def set_flag(self, key: str, now: float, ttl: int) -> None: ...

    async def has_flag(self, key: str, now: float) -> bool: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisCounterStore:
    """Counter store backed by Redis.

    record_failure returns (count, locked_at). locked_at is stamped the first
    time count reaches threshold and is never overwritten while the record
    lives, so the lockout window is measured from the Nth failure.
    """

    _FAILURE_SCRIPT = """
local count = redis.call('HINCRBY', KEYS[1], 'count', 1)
local locked_at = redis.call('HGET', KEYS[1], 'locked_at')
if (not locked_at) and count >= tonumber(ARGV[1]) then
  redis.call('HSET', KEYS[1], 'locked_at', ARGV[2])
  locked_at = ARGV[2]
end
redis.call('EXPIRE', KEYS[1], ARGV[3])
return {count, locked_at or ''}
"""

    _HIT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('TTL', KEYS[1])
if count == 1 or ttl < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 2.0) -> None:
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._failure = self.client.register_script(self._FAILURE_SCRIPT)
        self._hit = self.client.register_script(self._HIT_SCRIPT)

    async def get_failures(self, key: str, now: float) -> tuple[int, float | None]:
        try:
            data = await self.client.hgetall(key)
        except RedisError as exc:
            raise CounterStoreError(str(exc)) from exc
        if not data:
            return 0, None
        locked_at = data.get("locked_at")
        return int(data.get("count", 0)), float(locked_at) if locked_at else None

    async def record_failure(self, key: str, now: float, threshold: int, ttl: int) -> tuple[int, float | None]:
        try:
            count, locked_at = await self._failure(keys=[key], args=[threshold, now, ttl])
        except RedisError as exc:
            raise CounterStoreError(str(exc)) from exc
        return int(count), float(locked_at) if locked_at else None

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as exc:
            raise CounterStoreError(str(exc)) from exc

    async def hit(self, key: str, now: float, window: int) -> tuple[int, int]:
        try:
            count, ttl = await self._hit(keys=[key], args=[window])
        except RedisError as exc:
            raise CounterStoreError(str(exc)) from exc
        return int(count), int(ttl)

    async def set_flag(self, key: str, now: float, ttl: int) -> None:
        if ttl <= 0:
            return
        try:
            await self.client.set(key, "1", ex=ttl)
        except RedisError as exc:
            raise CounterStoreError(str(exc)) from exc

    async def has_flag(self, key: str, now: float) -> bool:
        try:
            return bool(await self.client.exists(key))
        except RedisError as exc:
            raise CounterStoreError(str(exc)) from exc

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self.client.aclose()


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------


class MemoryCounterStore:
    """Process-local counter store with the same semantics as RedisCounterStore.

    Expiry is evaluated lazily against the caller-supplied `now`, which keeps
    the store deterministic under a fake clock in tests. Writes also sweep
    every expired entry at most once per SWEEP_INTERVAL so keys that are never
    read again do not accumulate.
    """

    SWEEP_INTERVAL = 60.0

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._failures: dict[str, tuple[int, float | None, float]] = {}  # key -> (count, locked_at, expires_at)
        self._windows: dict[str, tuple[int, float]] = {}  # key -> (count, expires_at)
        self._flags: dict[str, float] = {}  # key -> expires_at
        self._next_sweep = float("-inf")

    def _sweep(self, now: float) -> None:
        # Caller holds the lock.
        if now < self._next_sweep:
            return
        self._failures = {k: v for k, v in self._failures.items() if v[2] > now}
        self._windows = {k: v for k, v in self._windows.items() if v[1] > now}
        self._flags = {k: v for k, v in self._flags.items() if v > now}
        self._next_sweep = now + self.SWEEP_INTERVAL

    async def get_failures(self, key: str, now: float) -> tuple[int, float | None]:
        async with self._lock:
            record = self._failures.get(key)
            if record is None:
                return 0, None
            count, locked_at, expires_at = record
            if expires_at <= now:
                del self._failures[key]
                return 0, None
            return count, locked_at

    async def record_failure(self, key: str, now: float, threshold: int, ttl: int) -> tuple[int, float | None]:
        async with self._lock:
            self._sweep(now)
            count, locked_at, expires_at = self._failures.get(key, (0, None, now + ttl))
            if expires_at <= now:
                count, locked_at = 0, None
            count += 1
            if locked_at is None and count >= threshold:
                locked_at = now
            self._failures[key] = (count, locked_at, now + ttl)
            return count, locked_at

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._failures.pop(key, None)
            self._windows.pop(key, None)
            self._flags.pop(key, None)

    async def hit(self, key: str, now: float, window: int) -> tuple[int, int]:
        async with self._lock:
            self._sweep(now)
            count, expires_at = self._windows.get(key, (0, now + window))
            if expires_at <= now:
                count, expires_at = 0, now + window
            count += 1
            self._windows[key] = (count, expires_at)
            return count, max(1, math.ceil(expires_at - now))

    async def set_flag(self, key: str, now: float, ttl: int) -> None:
        if ttl <= 0:
            return
        async with self._lock:
            self._sweep(now)
            self._flags[key] = now + ttl

    async def has_flag(self, key: str, now: float) -> bool:
        async with self._lock:
            expires_at = self._flags.get(key)
            if expires_at is None:
                return False
            if expires_at <= now:
                del self._flags[key]
                return False
            return True

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        async with self._lock:
            self._failures.clear()
            self._windows.clear()
            self._flags.clear()


def build_counter_store(redis_url: str, socket_timeout: float = 2.0) -> CounterStore:
    """Redis when a URL is configured, otherwise the in-process store."""
    if redis_url:
        return RedisCounterStore(redis_url, socket_timeout=socket_timeout)
    return MemoryCounterStore()
