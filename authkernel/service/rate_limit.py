from __future__ import annotations

import asyncio
import hashlib
import math
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from authkernel.logging import get_logger

logger = get_logger(__name__)

DEFAULT_EXEMPT_PATHS = ("/health", "/docs")


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    """Fixed-window request counter keyed by client ip, user agent and path.

    The first request of a key opens a window; requests beyond
    ``max_requests`` inside it are rejected until ``window_seconds`` have
    passed since that first request. State is per process.
    """

    def __init__(
        self,
        *,
        window_seconds: int = 900,
        max_requests: int = 5,
        clock: Callable[[], float] = time.time,
        exempt_paths: Iterable[str] = DEFAULT_EXEMPT_PATHS,
        limited_paths: Optional[Iterable[str]] = None,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.clock = clock
        self.exempt_paths = frozenset(exempt_paths)
        self.limited_paths = frozenset(limited_paths or ())
        self._entries: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    @staticmethod
    def client_key(ip: Optional[str], user_agent: Optional[str], path: str) -> str:
        return f"{ip or 'unknown'}:{user_agent or 'unknown'}:{path}"

    def applies_to(self, path: str) -> bool:
        if path in self.exempt_paths:
            return False
        if not self.limited_paths:
            return True
        return path in self.limited_paths

    def _decide(self, count: int, window_start: float, now: float) -> RateLimitDecision:
        reset_at = window_start + self.window_seconds
        if count > self.max_requests:
            return RateLimitDecision(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_at=reset_at,
                retry_after=max(int(math.ceil(reset_at - now)), 1),
            )
        return RateLimitDecision(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests - count,
            reset_at=reset_at,
        )

    async def hit(self, key: str) -> RateLimitDecision:
        now = self.clock()
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None or now - entry[1] > self.window_seconds:
                count, window_start = 1, now
            else:
                count, window_start = entry[0] + 1, entry[1]
            self._entries[key] = (count, window_start)
        decision = self._decide(count, window_start, now)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                key_hash=hashlib.sha256(key.encode()).hexdigest()[:16],
                retry_after=decision.retry_after,
            )
        return decision

    async def sweep(self) -> int:
        """Drop entries whose window has elapsed."""
        now = self.clock()
        async with self._lock:
            stale = [
                key
                for key, (_, window_start) in self._entries.items()
                if now - window_start > self.window_seconds
            ]
            for key in stale:
                self._entries.pop(key, None)
        if stale:
            logger.debug("rate_limit_swept", removed=len(stale))
        return len(stale)

    async def _run_sweeper(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as exc:
                logger.warning("rate_limit_sweep_failed", error=str(exc))

    def start(self, interval: Optional[float] = None) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(
            self._run_sweeper(interval or self.window_seconds)
        )

    async def stop(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def close(self) -> None:
        await self.stop()


class RedisRateLimiter(RateLimiter):
    """Same fixed-window contract with counters shared through Redis.

    A Lua script reads, resets or increments the window atomically and sets
    the key TTL to the end of the window, so no sweeper is needed.
    """

    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local data = redis.call('HMGET', key, 'count', 'start')
local count = tonumber(data[1])
local start = tonumber(data[2])

if count == nil or start == nil or (now - start) > window then
  count = 0
  start = now
end

count = count + 1
redis.call('HSET', key, 'count', count, 'start', tostring(start))
redis.call('PEXPIRE', key, math.max(math.ceil((start + window - now) * 1000), 1))
return {count, tostring(start)}
"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Any = None,
        socket_timeout: float = 5.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if client is None:
            import redis.asyncio as aioredis

            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def _redis_key(key: str) -> str:
        # hashed so ip/user-agent text cannot collide across delimiters
        return f"rate:auth:{hashlib.sha256(key.encode()).hexdigest()}"

    async def hit(self, key: str) -> RateLimitDecision:
        now = self.clock()
        count, window_start = await self._fixed_window(
            keys=[self._redis_key(key)], args=[now, self.window_seconds]
        )
        decision = self._decide(int(count), float(window_start), now)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                backend="redis",
                retry_after=decision.retry_after,
            )
        return decision

    async def sweep(self) -> int:
        return 0

    def start(self, interval: Optional[float] = None) -> None:
        return None

    async def close(self) -> None:
        await self.stop()
        try:
            await self.client.aclose()
        except Exception as exc:
            logger.warning("rate_limit_redis_close_failed", error=str(exc))
