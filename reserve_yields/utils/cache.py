from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from reserve_yields.config import CacheConfig
from reserve_yields.errors import is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, BaseException], None]


@dataclass
class CacheEntry:
    value: Any
    stored_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.stored_at < self.ttl


@dataclass
class CacheResult(Generic[T]):
    value: T
    stale: bool = False


class CacheLayer:
    """In-process LRU cache with TTLs, bounded retry and stale fallback."""

    def __init__(
        self,
        config: CacheConfig | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or CacheConfig()
        self.clock = clock
        self.sleep = sleep
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.stale_served = 0
        self.retries = 0

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self.clock()):
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return entry.value

    def get_stale(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        if ttl is None:
            ttl = self.config.live_ttl_s
        self._entries[key] = CacheEntry(value=value, stored_at=self.clock(), ttl=ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self.config.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    async def with_retry(
        self,
        fn: Callable[[], Awaitable[T]],
        max_attempts: int | None = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> T:
        attempts = max_attempts or self.config.retry_max

        def _before_sleep(state) -> None:
            exc = state.outcome.exception()
            self.retries += 1
            logger.warning("Retrying attempt=%d error=%s", state.attempt_number, exc)
            if on_retry is not None:
                on_retry(state.attempt_number, exc)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.config.backoff_base_s, max=self.config.backoff_max_s),
            retry=retry_if_exception(is_transient),
            before_sleep=_before_sleep,
            sleep=self.sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await fn()
        raise RuntimeError("Retry loop exited without result")

    async def fetch(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        ttl: float | None = None,
        max_attempts: int | None = None,
    ) -> CacheResult[T]:
        cached = self.get(key)
        if cached is not None:
            return CacheResult(cached)
        try:
            value = await self.with_retry(fn, max_attempts=max_attempts)
        except Exception as exc:
            stale = self.get_stale(key)
            if stale is None:
                raise
            self.stale_served += 1
            logger.warning("Serving stale cache key=%s error=%s", key, exc)
            return CacheResult(stale, stale=True)
        self.set(key, value, ttl)
        return CacheResult(value)

    def stats(self) -> dict[str, Any]:
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "stale_served": self.stale_served,
            "retries": self.retries,
        }
