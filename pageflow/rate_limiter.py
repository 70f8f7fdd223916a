"""
Rate Limiter Module

Sliding-window-log admission control shared by every page worker.

Each resource key keeps the timestamps of the requests admitted within the
trailing window. Eviction, the admit-or-deny decision and the insert of the
new timestamp run as one atomic step: a Lua script in Redis, or a lock-guarded
section in the in-memory implementation.

If Redis is unreachable the limiter fails open: the request is admitted and
the degradation is logged.
"""

import asyncio
import bisect
import logging
import os
import re
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit:"


def now_ms() -> int:
    """Current time in milliseconds since epoch."""
    return int(time.time() * 1000)


# =============================================================================
# CONFIGURATION
# =============================================================================

class RateLimitWindow(str, Enum):
    """Length of the sliding window."""
    SECOND = "second"
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"


WINDOW_MS: Dict[str, int] = {
    RateLimitWindow.SECOND.value: 1000,
    RateLimitWindow.MINUTE.value: 60000,
    RateLimitWindow.HOUR.value: 3600000,
    RateLimitWindow.DAY.value: 86400000,
}


def window_to_ms(window) -> int:
    """Window length in ms; unrecognised windows count as one minute."""
    if isinstance(window, RateLimitWindow):
        window = window.value
    return WINDOW_MS.get(str(window).lower(), WINDOW_MS[RateLimitWindow.MINUTE.value])


class RateLimitConfig(BaseModel):
    """Admission policy for one resource key."""
    max_requests: int = Field(..., ge=1)
    window: str = RateLimitWindow.MINUTE.value
    # Advisory only; admission counts requests, not tokens
    max_tokens_per_minute: Optional[int] = Field(None, ge=1)

    @property
    def window_ms(self) -> int:
        return window_to_ms(self.window)


@dataclass
class RateLimitResult:
    """Outcome of an admission check."""
    allowed: bool
    remaining: int
    limit: int
    reset_in_ms: int
    retry_after_ms: int
    current_count: int


# Per-model presets for the extraction service
EXTRACTION_RATE_LIMITS: Dict[str, RateLimitConfig] = {
    "mistral-large-latest": RateLimitConfig(max_requests=30, window="minute", max_tokens_per_minute=500000),
    "mistral-medium-latest": RateLimitConfig(max_requests=30, window="minute", max_tokens_per_minute=500000),
    "mistral-small-latest": RateLimitConfig(max_requests=60, window="minute", max_tokens_per_minute=500000),
    "pixtral-large-latest": RateLimitConfig(max_requests=20, window="minute", max_tokens_per_minute=250000),
    "pixtral-12b-2409": RateLimitConfig(max_requests=60, window="minute", max_tokens_per_minute=500000),
}

DEFAULT_EXTRACTION_RATE_LIMIT = RateLimitConfig(
    max_requests=20, window="minute", max_tokens_per_minute=250000
)


def _env_name(model: str) -> str:
    return "RATE_LIMIT_" + re.sub(r"[^A-Za-z0-9]", "_", model).upper()


def get_extraction_rate_limit(model: str) -> RateLimitConfig:
    """
    Rate limit for an extraction model.

    RATE_LIMIT_<MODEL> (e.g. RATE_LIMIT_MISTRAL_LARGE_LATEST=10) overrides
    max_requests of the preset.
    """
    config = EXTRACTION_RATE_LIMITS.get(model, DEFAULT_EXTRACTION_RATE_LIMIT)
    override = os.getenv(_env_name(model))
    if override:
        try:
            max_requests = int(override)
        except ValueError:
            logger.warning(f"Ignoring non-integer {_env_name(model)}={override!r}")
        else:
            if max_requests >= 1:
                config = config.model_copy(update={"max_requests": max_requests})
    return config


def extraction_rate_limit_key(model: str) -> str:
    return f"extraction:{model}"


# =============================================================================
# LIMITERS
# =============================================================================

class BaseRateLimiter(ABC):
    """Common interface for the Redis and in-memory limiters."""

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock

    @abstractmethod
    async def check_and_consume(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        """Admit-or-deny and, if admitted, record the request."""

    @abstractmethod
    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        """Report the remaining budget without consuming a slot."""

    async def get_status(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        return await self.check(key, config)

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Forget every recorded request for a key."""

    async def close(self) -> None:
        pass

    @staticmethod
    def _fail_open(config: RateLimitConfig) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=config.max_requests,
            limit=config.max_requests,
            reset_in_ms=0,
            retry_after_ms=0,
            current_count=0,
        )

    @staticmethod
    def _consume_result(
        config: RateLimitConfig, allowed: bool, count: int, reset_ms: int
    ) -> RateLimitResult:
        if allowed:
            return RateLimitResult(
                allowed=True,
                remaining=max(0, config.max_requests - count),
                limit=config.max_requests,
                reset_in_ms=config.window_ms,
                retry_after_ms=0,
                current_count=count,
            )
        reset_ms = max(0, reset_ms)
        return RateLimitResult(
            allowed=False,
            remaining=max(0, config.max_requests - count),
            limit=config.max_requests,
            reset_in_ms=reset_ms,
            retry_after_ms=reset_ms,
            current_count=count,
        )

    @staticmethod
    def _status_result(config: RateLimitConfig, count: int, reset_ms: int) -> RateLimitResult:
        allowed = count < config.max_requests
        reset_ms = max(0, reset_ms)
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, config.max_requests - count),
            limit=config.max_requests,
            reset_in_ms=reset_ms,
            retry_after_ms=0 if allowed else reset_ms,
            current_count=count,
        )


# Evict, then admit-or-deny. Returns {allowed, count, reset_ms}.
CONSUME_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count < limit then
    redis.call('ZADD', key, now, member)
    redis.call('PEXPIRE', key, window)
    return {1, count + 1, 0}
end

local reset = 0
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if oldest[2] then
    reset = tonumber(oldest[2]) + window - now
end
return {0, count, reset}
"""

# Evict, then report. Returns {count, reset_ms}.
STATUS_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

local reset = 0
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if oldest[2] then
    reset = tonumber(oldest[2]) + window - now
end
return {count, reset}
"""


class RedisRateLimiter(BaseRateLimiter):
    """
    Distributed sliding-window limiter backed by Redis sorted sets.

    Args:
        client: redis.asyncio client; None disables limiting (fail-open)
        key_prefix: Prefix for every sorted-set key
        clock: Millisecond clock, injectable for tests
    """

    def __init__(
        self,
        client: Optional[Redis],
        key_prefix: str = KEY_PREFIX,
        clock: Callable[[], int] = now_ms,
    ):
        super().__init__(clock)
        self.client = client
        self.key_prefix = key_prefix
        self._consume = client.register_script(CONSUME_SCRIPT) if client is not None else None
        self._status = client.register_script(STATUS_SCRIPT) if client is not None else None
        if client is None:
            logger.warning("Rate limiter has no Redis client; all requests will be admitted")

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def check_and_consume(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        if self._consume is None:
            return self._fail_open(config)

        now = self._clock()
        member = f"{now}-{uuid.uuid4().hex[:12]}"
        try:
            raw = await self._consume(
                keys=[self._key(key)],
                args=[now, config.window_ms, config.max_requests, member],
            )
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Rate limiter unavailable for {key}, failing open: {e}")
            return self._fail_open(config)

        allowed, count, reset_ms = int(raw[0]), int(raw[1]), int(raw[2])
        result = self._consume_result(config, bool(allowed), count, reset_ms)
        if not result.allowed:
            logger.info(
                f"Rate limit hit for {key}: {count}/{config.max_requests}, "
                f"retry after {result.retry_after_ms}ms"
            )
        return result

    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        if self._status is None:
            return self._fail_open(config)

        now = self._clock()
        try:
            raw = await self._status(keys=[self._key(key)], args=[now, config.window_ms])
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Rate limiter unavailable for {key}, failing open: {e}")
            return self._fail_open(config)

        return self._status_result(config, int(raw[0]), int(raw[1]))

    async def reset(self, key: str) -> None:
        if self.client is None:
            return
        try:
            await self.client.delete(self._key(key))
        except (RedisError, OSError) as e:
            logger.warning(f"Failed to reset rate limit for {key}: {e}")

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()


class InMemoryRateLimiter(BaseRateLimiter):
    """Single-process sliding-window limiter."""

    def __init__(self, clock: Callable[[], int] = now_ms):
        super().__init__(clock)
        self._requests: Dict[str, List[int]] = {}
        self._lock = asyncio.Lock()

    def _evict(self, key: str, now: int, window_ms: int) -> List[int]:
        timestamps = self._requests.get(key, [])
        cutoff = bisect.bisect_right(timestamps, now - window_ms)
        if cutoff:
            del timestamps[:cutoff]
        if not timestamps:
            self._requests.pop(key, None)
        return timestamps

    @property
    def tracked_keys(self) -> int:
        """Keys holding at least one request inside their window."""
        return len(self._requests)

    def _reset_ms(self, timestamps: List[int], now: int, window_ms: int) -> int:
        if not timestamps:
            return 0
        return timestamps[0] + window_ms - now

    async def check_and_consume(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        async with self._lock:
            now = self._clock()
            timestamps = self._evict(key, now, config.window_ms)
            count = len(timestamps)
            if count < config.max_requests:
                bisect.insort(timestamps, now)
                self._requests[key] = timestamps
                return self._consume_result(config, True, count + 1, 0)
            reset_ms = self._reset_ms(timestamps, now, config.window_ms)
        logger.info(f"Rate limit hit for {key}: {count}/{config.max_requests}")
        return self._consume_result(config, False, count, reset_ms)

    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        async with self._lock:
            now = self._clock()
            timestamps = self._evict(key, now, config.window_ms)
            return self._status_result(
                config, len(timestamps), self._reset_ms(timestamps, now, config.window_ms)
            )

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._requests.pop(key, None)


def create_redis_client(url: str, socket_timeout: float = 5.0) -> Redis:
    """Build the asyncio Redis client used by the limiter and the job queue."""
    return Redis.from_url(
        url,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
        decode_responses=True,
    )
