"""Maps committed status mutations onto the cache keys they make stale."""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import cache_keys
from ..models import StatusChange
from .cache import CacheService
from .content_graph import ContentGraphStore

logger = logging.getLogger(__name__)


class InvalidationOrchestrator:
    """Invalidates profile and account keys once a write has committed.

    Every method returns the keys (or key prefixes) it targeted. The same keys
    are targeted whether or not the mutation changed anything, so repeating a
    no-op request clears exactly what the first request cleared.
    """

    def __init__(
        self,
        cache: CacheService,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        statistics_enabled: bool = True,
    ) -> None:
        self._cache = cache
        self._session_factory = session_factory
        self._statistics_enabled = statistics_enabled

    async def invalidate_for_changes(
        self,
        account_id: int,
        profile_id: int,
        show_id: int,
        changes: Sequence[StatusChange] = (),
    ) -> list[str]:
        """Invalidate what a watch-status mutation on one show affects."""

        keys = [
            cache_keys.profile_show_details(profile_id, show_id),
            cache_keys.profile_shows(profile_id),
            cache_keys.profile_unwatched_episodes(profile_id),
        ]
        if self._statistics_enabled:
            keys.extend(cache_keys.profile_statistics_keys(profile_id))
            keys.append(cache_keys.account_statistics(account_id))
        removed = await self._cache.invalidate_many(keys)
        logger.debug(
            "Invalidated %d of %d keys for profile %s show %s after %d changes",
            removed,
            len(keys),
            profile_id,
            show_id,
            len(changes),
        )
        return keys

    async def invalidate_profile(self, account_id: int, profile_id: int) -> list[str]:
        """Invalidate a profile's full key set plus its account aggregate."""

        keys = await self._cache.invalidate_profile_shows(account_id, profile_id)
        keys.extend(await self._cache.invalidate_account(account_id))
        return keys

    async def invalidate_account_cache(self, account_id: int) -> list[str]:
        """Invalidate every profile of an account, then the account aggregate once."""

        async with self._session_factory() as session:
            profile_ids = await ContentGraphStore(session).profile_ids_for_account(account_id)

        keys: list[str] = []
        for profile_id in profile_ids:
            keys.extend(await self._cache.invalidate_profile_shows(account_id, profile_id))
        keys.extend(await self._cache.invalidate_account(account_id))
        logger.info(
            "Invalidated cache for account %s across %d profiles", account_id, len(profile_ids)
        )
        return keys

    async def invalidate_show_for_profiles(
        self, show_id: int, profile_ids: Iterable[int]
    ) -> list[str]:
        """Invalidate a show for each profile tracking it, plus its admin views."""

        ids = list(profile_ids)
        async with self._session_factory() as session:
            accounts = await ContentGraphStore(session).account_ids_for_profiles(ids)

        keys = [
            cache_keys.admin_show_details(show_id),
            cache_keys.admin_show_seasons(show_id),
        ]
        await self._cache.invalidate_many(keys)
        await self._cache.invalidate_pattern(cache_keys.admin_shows_pages_prefix())
        keys.append(cache_keys.admin_shows_pages_prefix())

        invalidated_accounts: set[int] = set()
        for profile_id in ids:
            account_id = accounts.get(profile_id)
            if account_id is None:
                logger.warning("Profile %s has no account; skipping invalidation", profile_id)
                continue
            keys.extend(await self._cache.invalidate_profile_shows(account_id, profile_id))
            if account_id not in invalidated_accounts:
                keys.extend(await self._cache.invalidate_account(account_id))
                invalidated_accounts.add(account_id)
        return keys
