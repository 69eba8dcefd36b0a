"""
Admission control: a per-sender sliding-window rate limiter.

The limiter holds no counters itself. Every check is one atomic
increment-and-check against the shared counter store, so any worker can serve
any sender.

The window is approximated the way most hosted limiters do it: two fixed
windows, with the previous window's count weighted by how much of it still
overlaps the sliding window. Denied checks do not increment.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from app.models.pipeline import RateDecision

logger = logging.getLogger(__name__)

KEY_PREFIX = "ratelimit"

# KEYS[1] current window, KEYS[2] previous window
# ARGV[1] limit, ARGV[2] now (ms), ARGV[3] window (ms)
SLIDING_WINDOW_SCRIPT = """
local limit = tonumber(ARGV[1])
local now_ms = tonumber(ARGV[2])
local window_ms = tonumber(ARGV[3])

local current = tonumber(redis.call("GET", KEYS[1]) or "0")
local previous = tonumber(redis.call("GET", KEYS[2]) or "0")
local elapsed = (now_ms % window_ms) / window_ms
local used = math.floor(previous * (1 - elapsed)) + current

if used >= limit then
  return {0, used}
end

current = redis.call("INCR", KEYS[1])
if current == 1 then
  redis.call("PEXPIRE", KEYS[1], window_ms * 2 + 1000)
end
return {1, used + 1}
"""


@dataclass(frozen=True)
class CounterResult:
    allowed: bool
    used: int
    reset_at_ms: int


class CounterStore:
    """Atomic increment-and-check keyed by sender."""

    async def increment(
        self, key: str, limit: int, window_ms: int, now_ms: int
    ) -> CounterResult:
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError


class RedisCounterStore(CounterStore):
    """Counter store backed by Redis; atomicity comes from the Lua script."""

    def __init__(self, client):
        self._client = client
        self._script = client.register_script(SLIDING_WINDOW_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        from redis.asyncio import Redis

        return cls(Redis.from_url(url))

    async def increment(
        self, key: str, limit: int, window_ms: int, now_ms: int
    ) -> CounterResult:
        window_index = now_ms // window_ms
        current_key = f"{key}:{window_index}"
        previous_key = f"{key}:{window_index - 1}"

        allowed, used = await self._script(
            keys=[current_key, previous_key],
            args=[limit, now_ms, window_ms],
        )
        return CounterResult(
            allowed=bool(int(allowed)),
            used=int(used),
            reset_at_ms=(window_index + 1) * window_ms,
        )

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


class RateLimiter:
    """Per-sender admission check with a configurable quota and window."""

    def __init__(
        self,
        store: CounterStore,
        quota: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
        prefix: str = KEY_PREFIX,
    ):
        if quota < 1:
            raise ValueError("quota must be at least 1")
        if window_seconds < 1:
            raise ValueError("window_seconds must be at least 1")
        self._store = store
        self._quota = quota
        self._window_ms = window_seconds * 1000
        self._clock = clock
        self._prefix = prefix

    async def check_admission(self, sender_id: str) -> RateDecision:
        """
        Count this request against the sender's quota.

        Returns the decision with the time the current window resets so a
        denied sender can be told when to retry. Counter store failures
        propagate; admission is never granted blindly.
        """
        now_ms = int(self._clock() * 1000)
        result = await self._store.increment(
            f"{self._prefix}:{sender_id}", self._quota, self._window_ms, now_ms
        )
        decision = RateDecision(
            allowed=result.allowed,
            reset_at=datetime.fromtimestamp(result.reset_at_ms / 1000, tz=timezone.utc),
            limit=self._quota,
            remaining=max(0, self._quota - result.used),
        )
        if not decision.allowed:
            logger.info(
                f"Admission denied ({result.used}/{self._quota}), resets at "
                f"{decision.reset_at.isoformat()}"
            )
        return decision
