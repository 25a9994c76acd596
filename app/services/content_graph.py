"""Data access for the show hierarchy and per-profile watch statuses."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db_models import Account, Episode, Profile, Season, Show, WatchStatusRecord
from ..status import ContentType, WatchStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CatalogUpsert:
    """Result of inserting or updating a catalog row."""

    id: int
    created: bool


class ContentGraphStore:
    """Queries against one session; the caller owns the transaction."""

    def __init__(self, session: AsyncSession):
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    # Catalog reads

    async def get_show(self, show_id: int) -> Show | None:
        return await self._session.get(Show, show_id)

    async def get_season(self, season_id: int) -> Season | None:
        return await self._session.get(Season, season_id)

    async def get_episode(self, episode_id: int) -> Episode | None:
        return await self._session.get(Episode, episode_id)

    async def get_show_by_tmdb_id(self, tmdb_id: int) -> Show | None:
        result = await self._session.execute(select(Show).where(Show.tmdb_id == tmdb_id))
        return result.scalar_one_or_none()

    async def resolve_show_id(
        self, content_type: ContentType, content_id: int
    ) -> int | None:
        """Return the id of the show owning a content item, if it exists."""

        if content_type is ContentType.SHOW:
            show = await self.get_show(content_id)
            return show.id if show else None
        if content_type is ContentType.SEASON:
            season = await self.get_season(content_id)
            return season.show_id if season else None
        episode = await self.get_episode(content_id)
        return episode.show_id if episode else None

    async def list_seasons(self, show_id: int) -> list[Season]:
        result = await self._session.execute(
            select(Season)
            .where(Season.show_id == show_id)
            .order_by(Season.season_number, Season.id)
        )
        return list(result.scalars().all())

    async def list_episodes_for_season(self, season_id: int) -> list[Episode]:
        result = await self._session.execute(
            select(Episode)
            .where(Episode.season_id == season_id)
            .order_by(Episode.episode_number, Episode.id)
        )
        return list(result.scalars().all())

    async def list_episodes_for_show(self, show_id: int) -> list[Episode]:
        result = await self._session.execute(
            select(Episode)
            .where(Episode.show_id == show_id)
            .order_by(Episode.season_number, Episode.episode_number, Episode.id)
        )
        return list(result.scalars().all())

    async def list_child_ids(self, parent_type: ContentType, parent_id: int) -> list[int]:
        if parent_type is ContentType.SHOW:
            return [season.id for season in await self.list_seasons(parent_id)]
        if parent_type is ContentType.SEASON:
            return [
                episode.id for episode in await self.list_episodes_for_season(parent_id)
            ]
        return []

    # Watch statuses

    async def _get_record(
        self, profile_id: int, content_type: ContentType, content_id: int
    ) -> WatchStatusRecord | None:
        result = await self._session.execute(
            select(WatchStatusRecord).where(
                WatchStatusRecord.profile_id == profile_id,
                WatchStatusRecord.content_type == content_type.value,
                WatchStatusRecord.content_id == content_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_status(
        self, profile_id: int, content_type: ContentType, content_id: int
    ) -> WatchStatus | None:
        """Return the stored status, or ``None`` when the item is not a favorite."""

        record = await self._get_record(profile_id, content_type, content_id)
        return WatchStatus(record.status) if record else None

    async def get_statuses(
        self, profile_id: int, content_type: ContentType, content_ids: Sequence[int]
    ) -> dict[int, WatchStatus]:
        if not content_ids:
            return {}
        result = await self._session.execute(
            select(WatchStatusRecord.content_id, WatchStatusRecord.status).where(
                WatchStatusRecord.profile_id == profile_id,
                WatchStatusRecord.content_type == content_type.value,
                WatchStatusRecord.content_id.in_(list(content_ids)),
            )
        )
        return {content_id: WatchStatus(status) for content_id, status in result.all()}

    async def set_status(
        self,
        profile_id: int,
        content_type: ContentType,
        content_id: int,
        status: WatchStatus,
    ) -> int:
        """Insert or update a status record and return the affected row count."""

        record = await self._get_record(profile_id, content_type, content_id)
        now = datetime.utcnow()
        if record is None:
            self._session.add(
                WatchStatusRecord(
                    profile_id=profile_id,
                    content_type=content_type.value,
                    content_id=content_id,
                    status=status.value,
                    created_at=now,
                    updated_at=now,
                )
            )
            await self._session.flush()
            return 1
        if record.status == status.value:
            return 0
        record.status = status.value
        record.updated_at = now
        await self._session.flush()
        return 1

    async def get_child_statuses(
        self, parent_type: ContentType, parent_id: int, profile_id: int
    ) -> list[WatchStatus]:
        """Statuses of every catalog child of a parent, defaulting to NOT_WATCHED."""

        child_type = (
            ContentType.SEASON if parent_type is ContentType.SHOW else ContentType.EPISODE
        )
        child_ids = await self.list_child_ids(parent_type, parent_id)
        stored = await self.get_statuses(profile_id, child_type, child_ids)
        return [stored.get(child_id, WatchStatus.NOT_WATCHED) for child_id in child_ids]

    async def add_favorite(
        self,
        profile_id: int,
        content_type: ContentType,
        content_id: int,
        status: WatchStatus = WatchStatus.NOT_WATCHED,
    ) -> bool:
        """Create a status record unless one exists; return whether it was created."""

        if await self._get_record(profile_id, content_type, content_id) is not None:
            return False
        await self.set_status(profile_id, content_type, content_id, status)
        return True

    async def remove_favorites(
        self, profile_id: int, content_type: ContentType, content_ids: Iterable[int]
    ) -> int:
        ids = list(content_ids)
        if not ids:
            return 0
        result = await self._session.execute(
            delete(WatchStatusRecord).where(
                WatchStatusRecord.profile_id == profile_id,
                WatchStatusRecord.content_type == content_type.value,
                WatchStatusRecord.content_id.in_(ids),
            )
        )
        return result.rowcount or 0

    async def profile_ids_for_show(self, show_id: int) -> list[int]:
        result = await self._session.execute(
            select(WatchStatusRecord.profile_id)
            .where(
                WatchStatusRecord.content_type == ContentType.SHOW.value,
                WatchStatusRecord.content_id == show_id,
            )
            .order_by(WatchStatusRecord.profile_id)
        )
        return list(result.scalars().all())

    # Accounts and profiles

    async def get_profile(self, profile_id: int) -> Profile | None:
        return await self._session.get(Profile, profile_id)

    async def profile_ids_for_account(self, account_id: int) -> list[int]:
        result = await self._session.execute(
            select(Profile.id).where(Profile.account_id == account_id).order_by(Profile.id)
        )
        return list(result.scalars().all())

    async def account_ids_for_profiles(self, profile_ids: Iterable[int]) -> dict[int, int]:
        ids = list(profile_ids)
        if not ids:
            return {}
        result = await self._session.execute(
            select(Profile.id, Profile.account_id).where(Profile.id.in_(ids))
        )
        return {profile_id: account_id for profile_id, account_id in result.all()}

    async def create_account(self, name: str, email: str) -> Account:
        account = Account(name=name, email=email)
        self._session.add(account)
        await self._session.flush()
        return account

    async def create_profile(self, account_id: int, name: str) -> Profile:
        profile = Profile(account_id=account_id, name=name)
        self._session.add(profile)
        await self._session.flush()
        return profile

    # Catalog writes

    async def upsert_show(
        self,
        *,
        tmdb_id: int,
        title: str,
        overview: str | None = None,
        release_date: str | None = None,
        in_production: bool = True,
        season_count: int = 0,
        episode_count: int = 0,
    ) -> CatalogUpsert:
        show = await self.get_show_by_tmdb_id(tmdb_id)
        created = show is None
        if show is None:
            show = Show(tmdb_id=tmdb_id, title=title)
            self._session.add(show)
        show.title = title
        show.overview = overview
        show.release_date = release_date
        show.in_production = in_production
        show.season_count = season_count
        show.episode_count = episode_count
        await self._session.flush()
        return CatalogUpsert(id=show.id, created=created)

    async def upsert_season(
        self,
        *,
        show_id: int,
        tmdb_id: int,
        season_number: int,
        name: str | None = None,
        overview: str | None = None,
        release_date: str | None = None,
        episode_count: int = 0,
    ) -> CatalogUpsert:
        result = await self._session.execute(select(Season).where(Season.tmdb_id == tmdb_id))
        season = result.scalar_one_or_none()
        created = season is None
        if season is None:
            season = Season(show_id=show_id, tmdb_id=tmdb_id, season_number=season_number)
            self._session.add(season)
        season.season_number = season_number
        season.name = name
        season.overview = overview
        season.release_date = release_date
        season.episode_count = episode_count
        await self._session.flush()
        return CatalogUpsert(id=season.id, created=created)

    async def upsert_episode(
        self,
        *,
        show_id: int,
        season_id: int,
        tmdb_id: int,
        season_number: int,
        episode_number: int,
        title: str | None = None,
        overview: str | None = None,
        air_date: str | None = None,
        runtime: int | None = None,
    ) -> CatalogUpsert:
        result = await self._session.execute(select(Episode).where(Episode.tmdb_id == tmdb_id))
        episode = result.scalar_one_or_none()
        created = episode is None
        if episode is None:
            episode = Episode(
                show_id=show_id,
                season_id=season_id,
                tmdb_id=tmdb_id,
                season_number=season_number,
                episode_number=episode_number,
            )
            self._session.add(episode)
        episode.season_number = season_number
        episode.episode_number = episode_number
        episode.title = title
        episode.overview = overview
        episode.air_date = air_date
        episode.runtime = runtime
        await self._session.flush()
        return CatalogUpsert(id=episode.id, created=created)

    # Read model queries

    async def favorite_shows(self, profile_id: int) -> list[tuple[Show, WatchStatus, datetime | None]]:
        """Favorited shows with their status and last status update, newest first."""

        result = await self._session.execute(
            select(Show, WatchStatusRecord.status, WatchStatusRecord.updated_at)
            .join(
                WatchStatusRecord,
                (WatchStatusRecord.content_id == Show.id)
                & (WatchStatusRecord.content_type == ContentType.SHOW.value),
            )
            .where(WatchStatusRecord.profile_id == profile_id)
            .order_by(Show.title, Show.id)
        )
        return [
            (show, WatchStatus(status), updated_at)
            for show, status, updated_at in result.all()
        ]

    async def latest_episode_activity(self, profile_id: int) -> dict[int, datetime]:
        """Most recent episode status update per show for a profile."""

        result = await self._session.execute(
            select(Episode.show_id, WatchStatusRecord.updated_at)
            .join(
                WatchStatusRecord,
                (WatchStatusRecord.content_id == Episode.id)
                & (WatchStatusRecord.content_type == ContentType.EPISODE.value),
            )
            .where(WatchStatusRecord.profile_id == profile_id)
        )
        latest: dict[int, datetime] = {}
        for show_id, updated_at in result.all():
            if updated_at is None:
                continue
            current = latest.get(show_id)
            if current is None or updated_at > current:
                latest[show_id] = updated_at
        return latest

    async def tracked_show_ids(self, *, in_production_only: bool = False) -> list[int]:
        """Shows favorited by at least one profile."""

        stmt = (
            select(Show.id)
            .join(
                WatchStatusRecord,
                (WatchStatusRecord.content_id == Show.id)
                & (WatchStatusRecord.content_type == ContentType.SHOW.value),
            )
            .distinct()
            .order_by(Show.id)
        )
        if in_production_only:
            stmt = stmt.where(Show.in_production.is_(True))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
