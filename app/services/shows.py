"""Cached read paths over shows and a profile's watch statuses."""

from __future__ import annotations

import logging
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import cache_keys
from ..config import Settings
from ..exceptions import DatabaseError, NotFoundError
from ..models import (
    AccountStatistics,
    AdminSeason,
    EpisodeView,
    NextUnwatchedShow,
    ProfileShow,
    ProfileStatistics,
    SeasonView,
    ShowDetails,
    ShowProgress,
    ShowStatistics,
    WatchProgress,
    percent,
)
from ..status import ContentType, WatchStatus
from .cache import CacheService
from .content_graph import ContentGraphStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_IN_PROGRESS = (WatchStatus.WATCHING, WatchStatus.UP_TO_DATE)
_COMPLETE = (WatchStatus.WATCHED, WatchStatus.UP_TO_DATE)


class ShowService:
    """Read model consumed by the HTTP layer.

    Every read goes through ``CacheService.get_or_set``; the keys used here are
    the ones the invalidation orchestrator clears after a mutation.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        cache: CacheService,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._cache = cache

    async def get_shows_for_profile(self, profile_id: int) -> list[ProfileShow]:
        async def _load() -> list[ProfileShow]:
            async with self._store() as store:
                return [
                    self._profile_show(show, status)
                    for show, status, _ in await store.favorite_shows(profile_id)
                ]

        return await self._cache.get_or_set(
            cache_keys.profile_shows(profile_id),
            _load,
            self._settings.show_list_cache_seconds,
        )

    async def get_show_details_for_profile(self, profile_id: int, show_id: int) -> ShowDetails:
        """Return a favorited show with its seasons and episodes."""

        async def _load() -> ShowDetails:
            async with self._store() as store:
                show_status = await store.get_status(profile_id, ContentType.SHOW, show_id)
                show = await store.get_show(show_id)
                if show is None or show_status is None:
                    raise NotFoundError(
                        "Show",
                        show_id,
                        f"Show {show_id} is not in the favorites of profile {profile_id}",
                    )
                seasons = await store.list_seasons(show_id)
                episodes = await store.list_episodes_for_show(show_id)
                season_statuses = await store.get_statuses(
                    profile_id, ContentType.SEASON, [season.id for season in seasons]
                )
                episode_statuses = await store.get_statuses(
                    profile_id, ContentType.EPISODE, [episode.id for episode in episodes]
                )

            by_season: dict[int, list[EpisodeView]] = {season.id: [] for season in seasons}
            for episode in episodes:
                by_season.setdefault(episode.season_id, []).append(
                    self._episode_view(
                        episode, episode_statuses.get(episode.id, WatchStatus.NOT_WATCHED)
                    )
                )
            details = ShowDetails(
                **self._profile_show(show, show_status).model_dump(),
                overview=show.overview,
                seasons=[
                    SeasonView(
                        id=season.id,
                        season_number=season.season_number,
                        name=season.name,
                        release_date=season.release_date,
                        status=season_statuses.get(season.id, WatchStatus.NOT_WATCHED),
                        episodes=by_season.get(season.id, []),
                    )
                    for season in seasons
                ],
            )
            return details

        return await self._cache.get_or_set(
            cache_keys.profile_show_details(profile_id, show_id),
            _load,
            self._settings.show_details_cache_seconds,
        )

    async def get_next_unwatched_episodes(self, profile_id: int) -> list[NextUnwatchedShow]:
        """Shows in progress with their next unwatched episodes, most recent first."""

        limit = self._settings.next_unwatched_limit

        async def _load() -> list[NextUnwatchedShow]:
            results: list[NextUnwatchedShow] = []
            async with self._store() as store:
                favorites = await store.favorite_shows(profile_id)
                activity = await store.latest_episode_activity(profile_id)
                for show, status, updated_at in favorites:
                    if status not in _IN_PROGRESS:
                        continue
                    episodes = await store.list_episodes_for_show(show.id)
                    statuses = await store.get_statuses(
                        profile_id, ContentType.EPISODE, [episode.id for episode in episodes]
                    )
                    upcoming = [
                        self._episode_view(episode, WatchStatus.NOT_WATCHED)
                        for episode in episodes
                        if statuses.get(episode.id, WatchStatus.NOT_WATCHED)
                        is not WatchStatus.WATCHED
                    ][:limit]
                    if not upcoming:
                        continue
                    results.append(
                        NextUnwatchedShow(
                            show_id=show.id,
                            title=show.title,
                            status=status,
                            last_activity=activity.get(show.id, updated_at),
                            episodes=upcoming,
                        )
                    )
            results.sort(key=lambda item: item.last_activity or datetime.min, reverse=True)
            return results

        return await self._cache.get_or_set(
            cache_keys.profile_unwatched_episodes(profile_id),
            _load,
            self._settings.episodes_cache_seconds,
        )

    async def get_profile_show_statistics(self, profile_id: int) -> ShowStatistics:
        async def _load() -> ShowStatistics:
            async with self._store() as store:
                favorites = await store.favorite_shows(profile_id)
            counts = Counter(status for _, status, _ in favorites)
            complete = sum(counts[status] for status in _COMPLETE)
            return ShowStatistics(
                total=len(favorites),
                status_counts={status: counts.get(status, 0) for status in WatchStatus},
                watch_progress=percent(complete, len(favorites)),
            )

        return await self._statistic(
            cache_keys.profile_show_statistics(profile_id),
            _load,
            self._settings.statistics_cache_seconds,
        )

    async def get_profile_watch_progress(self, profile_id: int) -> WatchProgress:
        async def _load() -> WatchProgress:
            shows: list[ShowProgress] = []
            async with self._store() as store:
                for show, status, _ in await store.favorite_shows(profile_id):
                    episodes = await store.list_episodes_for_show(show.id)
                    statuses = await store.get_statuses(
                        profile_id, ContentType.EPISODE, [episode.id for episode in episodes]
                    )
                    watched = sum(
                        1 for value in statuses.values() if value is WatchStatus.WATCHED
                    )
                    shows.append(
                        ShowProgress(
                            show_id=show.id,
                            title=show.title,
                            status=status,
                            total_episodes=len(episodes),
                            watched_episodes=watched,
                            percent_complete=percent(watched, len(episodes)),
                        )
                    )
            total = sum(item.total_episodes for item in shows)
            watched_total = sum(item.watched_episodes for item in shows)
            return WatchProgress(
                total_episodes=total,
                watched_episodes=watched_total,
                overall_progress=percent(watched_total, total),
                shows=shows,
            )

        return await self._statistic(
            cache_keys.profile_watch_progress(profile_id),
            _load,
            self._settings.watch_progress_cache_seconds,
        )

    async def get_profile_statistics(self, profile_id: int) -> ProfileStatistics:
        async def _load() -> ProfileStatistics:
            return ProfileStatistics(
                profile_id=profile_id,
                shows=await self.get_profile_show_statistics(profile_id),
                progress=await self.get_profile_watch_progress(profile_id),
            )

        return await self._statistic(
            cache_keys.profile_statistics(profile_id),
            _load,
            self._settings.statistics_cache_seconds,
        )

    async def get_account_statistics(self, account_id: int) -> AccountStatistics:
        """Aggregate the statistics of every profile owned by an account."""

        async def _load() -> AccountStatistics:
            async with self._store() as store:
                profile_ids = await store.profile_ids_for_account(account_id)
            profiles: dict[int, ShowStatistics] = {}
            counts: Counter[WatchStatus] = Counter()
            total_episodes = 0
            watched_episodes = 0
            for profile_id in profile_ids:
                stats = await self.get_profile_show_statistics(profile_id)
                progress = await self.get_profile_watch_progress(profile_id)
                profiles[profile_id] = stats
                counts.update(stats.status_counts)
                total_episodes += progress.total_episodes
                watched_episodes += progress.watched_episodes
            total_shows = sum(counts.values())
            complete = sum(counts[status] for status in _COMPLETE)
            return AccountStatistics(
                account_id=account_id,
                profile_count=len(profile_ids),
                shows=ShowStatistics(
                    total=total_shows,
                    status_counts={status: counts.get(status, 0) for status in WatchStatus},
                    watch_progress=percent(complete, total_shows),
                ),
                total_episodes=total_episodes,
                watched_episodes=watched_episodes,
                profiles=profiles,
            )

        return await self._statistic(
            cache_keys.account_statistics(account_id),
            _load,
            self._settings.statistics_cache_seconds,
        )

    async def get_admin_show_seasons(self, show_id: int) -> list[AdminSeason]:
        async def _load() -> list[AdminSeason]:
            async with self._store() as store:
                if await store.get_show(show_id) is None:
                    raise NotFoundError("Show", show_id)
                seasons = await store.list_seasons(show_id)
            return [
                AdminSeason(
                    id=season.id,
                    tmdb_id=season.tmdb_id,
                    season_number=season.season_number,
                    name=season.name,
                    release_date=season.release_date,
                    episode_count=season.episode_count,
                )
                for season in seasons
            ]

        return await self._cache.get_or_set(
            cache_keys.admin_show_seasons(show_id),
            _load,
            self._settings.show_details_cache_seconds,
        )

    async def _statistic(
        self, key: str, loader: Callable[[], Awaitable[T]], ttl_seconds: int
    ) -> T:
        if not self._settings.statistics_cache_enabled:
            return await loader()
        return await self._cache.get_or_set(key, loader, ttl_seconds)

    @asynccontextmanager
    async def _store(self) -> AsyncIterator[ContentGraphStore]:
        try:
            async with self._session_factory() as session:
                yield ContentGraphStore(session)
        except SQLAlchemyError as exc:
            logger.error("Read query failed: %s", exc)
            raise DatabaseError(f"Database error: {exc}", exc) from exc

    @staticmethod
    def _profile_show(show, status: WatchStatus) -> ProfileShow:
        return ProfileShow(
            id=show.id,
            tmdb_id=show.tmdb_id,
            title=show.title,
            release_date=show.release_date,
            in_production=show.in_production,
            season_count=show.season_count,
            episode_count=show.episode_count,
            status=status,
        )

    @staticmethod
    def _episode_view(episode, status: WatchStatus) -> EpisodeView:
        return EpisodeView(
            id=episode.id,
            season_id=episode.season_id,
            season_number=episode.season_number,
            episode_number=episode.episode_number,
            title=episode.title,
            air_date=episode.air_date,
            runtime=episode.runtime,
            status=status,
        )

