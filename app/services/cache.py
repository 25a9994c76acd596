"""Read-through TTL cache shared by the read model and the invalidation layer."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from .. import cache_keys

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class CacheEntry:
    """Cached value with its absolute expiry time."""

    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class CacheService:
    """In-process cache keyed by semantic strings.

    Misses are not deduplicated: two concurrent ``get_or_set`` calls for the
    same missing key each run their factory and the last write wins.
    """

    def __init__(
        self,
        default_ttl_seconds: int = 300,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        # Guards dict mutations only; factories always run outside the lock.
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._sweep_task: asyncio.Task[None] | None = None

    async def start(self, check_period_seconds: float) -> None:
        """Sweep expired entries every ``check_period_seconds``; 0 disables it."""

        if check_period_seconds <= 0 or self._sweep_task is not None:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(check_period_seconds))

    async def stop(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._sweep_task
        self._sweep_task = None

    async def _sweep_loop(self, check_period_seconds: float) -> None:
        while True:
            await asyncio.sleep(check_period_seconds)
            removed = await self.cleanup_expired()
            if removed:
                logger.debug("Swept %d expired cache entries", removed)

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[T]],
        ttl_seconds: int | None = None,
    ) -> T:
        """Return the cached value for ``key`` or compute, store and return it."""

        async with self._lock:
            entry = self._lookup(key)
            if entry is not None:
                self._hits += 1
                return entry.value
            self._misses += 1

        try:
            value = await factory()
        except Exception as exc:
            logger.error("Cache miss and fetch error for key %s: %s", key, exc)
            raise

        await self.set(key, value, ttl_seconds)
        return value

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._lookup(key)
            return entry.value if entry is not None else None

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        async with self._lock:
            self._entries[key] = CacheEntry(
                value=value, expires_at=self._clock() + ttl
            )

    async def invalidate(self, key: str) -> bool:
        """Remove one entry; return whether it was present."""

        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def invalidate_many(self, keys: list[str]) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
            return removed

    async def invalidate_pattern(self, prefix: str) -> int:
        """Remove every entry whose key starts with ``prefix``."""

        if not prefix:
            raise ValueError("Refusing to invalidate with an empty prefix")
        async with self._lock:
            matching = [key for key in self._entries if key.startswith(prefix)]
            for key in matching:
                del self._entries[key]
        if matching:
            logger.debug("Invalidated %d cache keys with prefix %s", len(matching), prefix)
        return len(matching)

    async def invalidate_profile_statistics(self, profile_id: int | str) -> list[str]:
        keys = list(cache_keys.profile_statistics_keys(profile_id))
        await self.invalidate_many(keys)
        return keys

    async def invalidate_profile_shows(
        self, account_id: int | str, profile_id: int | str
    ) -> list[str]:
        """Remove the canonical profile-scoped key set and return the keys targeted.

        Per-show detail keys are unbounded, so they are removed by prefix and
        reported as that prefix.
        """

        keys = [
            cache_keys.profile_shows(profile_id),
            cache_keys.profile_episodes(profile_id),
            cache_keys.profile_unwatched_episodes(profile_id),
            cache_keys.profile_recent_episodes(profile_id),
            cache_keys.profile_upcoming_episodes(profile_id),
            *cache_keys.profile_statistics_keys(profile_id),
        ]
        await self.invalidate_many(keys)
        details_prefix = cache_keys.profile_show_details_prefix(profile_id)
        await self.invalidate_pattern(details_prefix)
        logger.debug(
            "Invalidated show cache for profile %s of account %s", profile_id, account_id
        )
        return [*keys, details_prefix]

    async def invalidate_account(self, account_id: int | str) -> list[str]:
        """Remove the account-scoped aggregate key."""

        key = cache_keys.account_statistics(account_id)
        await self.invalidate(key)
        return [key]

    async def invalidate_account_profiles(self, account_id: int | str) -> list[str]:
        key = cache_keys.account_profiles(account_id)
        await self.invalidate(key)
        return [key]

    async def flush_all(self) -> None:
        async with self._lock:
            self._entries.clear()
        logger.info("Cache completely flushed")

    async def cleanup_expired(self) -> int:
        """Remove expired entries and return how many were dropped."""

        now = self._clock()
        async with self._lock:
            expired = [
                key for key, entry in self._entries.items() if entry.is_expired(now)
            ]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def keys(self) -> list[str]:
        now = self._clock()
        return [key for key, entry in self._entries.items() if not entry.is_expired(now)]

    def get_stats(self) -> dict[str, int]:
        """Return hit/miss counters and entry counts for health checks."""

        now = self._clock()
        total = len(self._entries)
        expired = sum(1 for entry in self._entries.values() if entry.is_expired(now))
        return {
            "hits": self._hits,
            "misses": self._misses,
            "total_entries": total,
            "active_entries": total - expired,
            "expired_entries": expired,
        }

    def _lookup(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        return entry
