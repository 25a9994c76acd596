"""Entry points for watch-status mutations.

Each call runs the engine operation (one committed transaction) and only then
invalidates the cache keys the mutation affects.
"""

from __future__ import annotations

import logging

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..exceptions import DatabaseError, IngestionError, NotFoundError
from ..models import StatusUpdateResult
from ..status import ContentType, WatchStatus, parse_content_type
from .content_graph import ContentGraphStore
from .ingestion import ContentIngestionWorker, MetadataProvider
from .invalidation import InvalidationOrchestrator
from .watch_status import WatchStatusEngine, require_identifier

logger = logging.getLogger(__name__)


class TrackingService:
    """Coordinates the engine, the invalidation orchestrator and ingestion."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: WatchStatusEngine,
        orchestrator: InvalidationOrchestrator,
        *,
        provider: MetadataProvider | None = None,
        worker: ContentIngestionWorker | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._orchestrator = orchestrator
        self._provider = provider
        self._worker = worker

    async def update_episode_watch_status(
        self, account_id: int, profile_id: int, episode_id: int, status: WatchStatus | str
    ) -> StatusUpdateResult:
        await self._require_profile(account_id, profile_id)
        changes = await self._engine.update_episode_watch_status(profile_id, episode_id, status)
        show_id = await self._engine.resolve_show_id(ContentType.EPISODE, episode_id)
        keys = await self._orchestrator.invalidate_for_changes(
            account_id, profile_id, show_id, changes
        )
        return StatusUpdateResult.from_changes(changes, keys, show_id)

    async def update_season_watch_status(
        self,
        account_id: int,
        profile_id: int,
        season_id: int,
        status: WatchStatus | str,
        recursive: bool = False,
    ) -> StatusUpdateResult:
        await self._require_profile(account_id, profile_id)
        changes = await self._engine.update_season_watch_status(
            profile_id, season_id, status, recursive
        )
        show_id = await self._engine.resolve_show_id(ContentType.SEASON, season_id)
        keys = await self._orchestrator.invalidate_for_changes(
            account_id, profile_id, show_id, changes
        )
        return StatusUpdateResult.from_changes(changes, keys, show_id)

    async def update_show_watch_status(
        self,
        account_id: int,
        profile_id: int,
        show_id: int,
        status: WatchStatus | str,
        recursive: bool = False,
    ) -> StatusUpdateResult:
        await self._require_profile(account_id, profile_id)
        changes = await self._engine.update_show_watch_status(
            profile_id, show_id, status, recursive
        )
        keys = await self._orchestrator.invalidate_for_changes(
            account_id, profile_id, show_id, changes
        )
        return StatusUpdateResult.from_changes(changes, keys, show_id)

    async def add_content_to_favorites(
        self,
        account_id: int,
        profile_id: int,
        content_type: ContentType | str,
        content_id: int,
        initial_status: WatchStatus | str = WatchStatus.NOT_WATCHED,
    ) -> StatusUpdateResult:
        await self._require_profile(account_id, profile_id)
        content_type = parse_content_type(content_type)
        changes = await self._engine.add_to_favorites(
            profile_id, content_type, content_id, initial_status
        )
        show_id = await self._engine.resolve_show_id(content_type, content_id)
        keys = await self._orchestrator.invalidate_for_changes(
            account_id, profile_id, show_id, changes
        )
        return StatusUpdateResult.from_changes(changes, keys, show_id)

    async def remove_show_from_favorites(
        self, account_id: int, profile_id: int, show_id: int
    ) -> StatusUpdateResult:
        await self._require_profile(account_id, profile_id)
        removed = await self._engine.remove_from_favorites(profile_id, show_id)
        keys = await self._orchestrator.invalidate_for_changes(account_id, profile_id, show_id)
        logger.info(
            "Profile %s removed show %s (%d status records)", profile_id, show_id, removed
        )
        return StatusUpdateResult(
            message=f"Removed show {show_id} from favorites",
            invalidated_keys=keys,
            show_id=show_id,
        )

    async def favorite_show_from_provider(
        self, account_id: int, profile_id: int, tmdb_id: int
    ) -> StatusUpdateResult:
        """Favorite a show by provider id, creating it first when it is unknown.

        A show without stored seasons gets a background load; its seasons and
        episodes are favorited for the profile when the load finishes.
        """

        await self._require_profile(account_id, profile_id)
        tmdb_id = require_identifier(tmdb_id, "tmdb_id")
        show_id, has_seasons = await self._ensure_show(tmdb_id)
        changes = await self._engine.add_to_favorites(profile_id, ContentType.SHOW, show_id)
        keys = await self._orchestrator.invalidate_for_changes(
            account_id, profile_id, show_id, changes
        )
        if not has_seasons and self._worker is not None:
            self._worker.schedule_show_refresh(show_id, notify_profile_ids=(profile_id,))
        return StatusUpdateResult.from_changes(changes, keys, show_id)

    async def reconcile_show_status(
        self, account_id: int, profile_id: int, show_id: int
    ) -> StatusUpdateResult:
        await self._require_profile(account_id, profile_id)
        changes = await self._engine.recompute_show_status(profile_id, show_id)
        keys = await self._orchestrator.invalidate_for_changes(
            account_id, profile_id, show_id, changes
        )
        return StatusUpdateResult.from_changes(changes, keys, show_id)

    async def _require_profile(self, account_id: int, profile_id: int) -> None:
        account_id = require_identifier(account_id, "account_id")
        profile_id = require_identifier(profile_id, "profile_id")
        try:
            async with self._session_factory() as session:
                profile = await ContentGraphStore(session).get_profile(profile_id)
        except SQLAlchemyError as exc:
            raise DatabaseError(f"Database error loading profile {profile_id}: {exc}", exc) from exc
        if profile is None or profile.account_id != account_id:
            raise NotFoundError(
                "Profile",
                profile_id,
                f"Profile {profile_id} not found for account {account_id}",
            )

    async def _ensure_show(self, tmdb_id: int) -> tuple[int, bool]:
        try:
            async with self._session_factory() as session:
                store = ContentGraphStore(session)
                show = await store.get_show_by_tmdb_id(tmdb_id)
                if show is not None:
                    return show.id, bool(await store.list_seasons(show.id))
        except SQLAlchemyError as exc:
            raise DatabaseError(f"Database error loading show {tmdb_id}: {exc}", exc) from exc

        if self._provider is None:
            raise NotFoundError("Show", tmdb_id, f"Show with TMDB id {tmdb_id} not found")
        try:
            remote = await self._provider.fetch_show(tmdb_id)
        except httpx.HTTPError as exc:
            raise IngestionError(f"Failed to fetch show {tmdb_id}: {exc}") from exc

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    stored = await ContentGraphStore(session).upsert_show(
                        tmdb_id=remote.tmdb_id,
                        title=remote.title,
                        overview=remote.overview,
                        release_date=remote.release_date,
                        in_production=remote.in_production,
                        season_count=remote.season_count,
                        episode_count=remote.episode_count,
                    )
        except SQLAlchemyError as exc:
            raise DatabaseError(f"Database error storing show {tmdb_id}: {exc}", exc) from exc
        logger.info("Created show %s from TMDB id %s", stored.id, tmdb_id)
        return stored.id, False
