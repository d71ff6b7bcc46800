"""In-memory rate limiting and progressive slowdown."""

from __future__ import annotations

import logging
import math
import threading
import time
import zlib
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Protocol

from app.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of one counter operation."""

    allowed: bool
    count: int
    limit: Optional[int]
    retry_after: int

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self.count)


class RateLimitStore(Protocol):
    """Keyed sliding-window counters; every method is atomic per key."""

    def allow(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision: ...

    def hit(self, key: str, window_seconds: int) -> RateLimitDecision: ...

    def reset(self, key: Optional[str] = None) -> None: ...


@dataclass
class _Bucket:
    timestamps: Deque[float]
    window_seconds: int

    def idle(self, now: float) -> bool:
        return not self.timestamps or self.timestamps[-1] <= now - self.window_seconds


class InMemoryRateLimitStore:
    """
    Sliding-log store sharded over independent locks, for single-node deployments.

    Keys whose window holds no hits are swept every ``sweep_interval`` seconds.
    """

    def __init__(
        self,
        shards: int = 16,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = 60.0,
    ) -> None:
        self._clock = clock
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(max(1, shards))]
        self._buckets: List[Dict[str, _Bucket]] = [{} for _ in range(max(1, shards))]
        self._sweep_interval = sweep_interval
        self._sweep_lock = threading.Lock()
        self._next_sweep = clock() + sweep_interval

    def __len__(self) -> int:
        return sum(len(buckets) for buckets in self._buckets)

    def _shard(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % len(self._locks)

    def _bucket(self, idx: int, key: str, window_seconds: int) -> _Bucket:
        bucket = self._buckets[idx].get(key)
        if bucket is None:
            bucket = self._buckets[idx][key] = _Bucket(timestamps=deque(), window_seconds=window_seconds)
        bucket.window_seconds = window_seconds
        return bucket

    def _maybe_sweep(self, now: float) -> None:
        # One sweeper at a time; callers never wait on it
        if now < self._next_sweep or not self._sweep_lock.acquire(blocking=False):
            return
        try:
            self._next_sweep = now + self._sweep_interval
            removed = 0
            for lock, buckets in zip(self._locks, self._buckets):
                with lock:
                    idle = [key for key, bucket in buckets.items() if bucket.idle(now)]
                    for key in idle:
                        del buckets[key]
                    removed += len(idle)
            if removed:
                logger.debug(f"Evicted {removed} idle rate limit key(s)")
        finally:
            self._sweep_lock.release()

    @staticmethod
    def _prune(bucket: _Bucket, cutoff: float) -> None:
        while bucket.timestamps and bucket.timestamps[0] <= cutoff:
            bucket.timestamps.popleft()

    @staticmethod
    def _retry_after(bucket: _Bucket, now: float, window_seconds: int) -> int:
        if not bucket.timestamps:
            return 0
        return max(1, math.ceil(bucket.timestamps[0] + window_seconds - now))

    def allow(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        """Record a hit only if the window still has room."""
        self._maybe_sweep(self._clock())
        idx = self._shard(key)
        with self._locks[idx]:
            now = self._clock()
            bucket = self._bucket(idx, key, window_seconds)
            self._prune(bucket, now - window_seconds)

            if len(bucket.timestamps) >= limit:
                return RateLimitDecision(
                    allowed=False,
                    count=len(bucket.timestamps),
                    limit=limit,
                    retry_after=self._retry_after(bucket, now, window_seconds),
                )

            bucket.timestamps.append(now)
            return RateLimitDecision(allowed=True, count=len(bucket.timestamps), limit=limit, retry_after=0)

    def hit(self, key: str, window_seconds: int) -> RateLimitDecision:
        """Always record a hit and return the count inside the window."""
        self._maybe_sweep(self._clock())
        idx = self._shard(key)
        with self._locks[idx]:
            now = self._clock()
            bucket = self._bucket(idx, key, window_seconds)
            self._prune(bucket, now - window_seconds)
            bucket.timestamps.append(now)
            return RateLimitDecision(allowed=True, count=len(bucket.timestamps), limit=None, retry_after=0)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            for lock, buckets in zip(self._locks, self._buckets):
                with lock:
                    buckets.clear()
            return
        idx = self._shard(key)
        with self._locks[idx]:
            self._buckets[idx].pop(key, None)


class RateController:
    """Global and auth-route admission checks plus progressive response delay."""

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        *,
        global_max: int = settings.RATE_LIMIT_GLOBAL_MAX,
        global_window: int = settings.RATE_LIMIT_GLOBAL_WINDOW_SECONDS,
        auth_max: int = settings.RATE_LIMIT_AUTH_MAX,
        auth_window: int = settings.RATE_LIMIT_AUTH_WINDOW_SECONDS,
        speed_after: int = settings.SPEED_LIMIT_AFTER,
        speed_window: int = settings.SPEED_LIMIT_WINDOW_SECONDS,
        speed_step_ms: int = settings.SPEED_LIMIT_DELAY_STEP_MS,
        speed_max_delay_ms: int = settings.SPEED_LIMIT_MAX_DELAY_MS,
    ) -> None:
        self.store: RateLimitStore = store or InMemoryRateLimitStore(shards=settings.RATE_LIMIT_SHARDS)
        self.global_max = global_max
        self.global_window = global_window
        self.auth_max = auth_max
        self.auth_window = auth_window
        self.speed_after = speed_after
        self.speed_window = speed_window
        self.speed_step_ms = speed_step_ms
        self.speed_max_delay_ms = speed_max_delay_ms

    def check_global(self, client: str) -> RateLimitDecision:
        decision = self.store.allow(f"global:{client}", self.global_max, self.global_window)
        if not decision.allowed:
            logger.warning(f"Global rate limit exceeded: {client}")
        return decision

    def check_auth(self, client: str) -> RateLimitDecision:
        decision = self.store.allow(f"auth:{client}", self.auth_max, self.auth_window)
        if not decision.allowed:
            logger.warning(f"Auth rate limit triggered for client: {client}")
        return decision

    def slowdown_delay(self, client: str) -> float:
        """
        Seconds to hold the response for this client.

        Zero until the client passes ``speed_after`` requests in the window,
        then ``step`` per extra request, capped at ``max_delay``.
        """
        count = self.store.hit(f"speed:{client}", self.speed_window).count
        excess = count - self.speed_after
        if excess <= 0:
            return 0.0
        delay_ms = min(self.speed_max_delay_ms, excess * self.speed_step_ms)
        if excess == 1:
            logger.warning(f"Speed limiter active for {client}")
        return delay_ms / 1000.0

    def reset(self) -> None:
        self.store.reset()


rate_controller = RateController()
