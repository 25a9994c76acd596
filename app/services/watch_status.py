"""Watch-status propagation engine.

Every public operation runs as a single transaction while holding a lock for
the (profile, show) pair it touches, so sibling updates cannot interleave and a
failure part way through a cascade leaves nothing behind. Cache invalidation is
not done here; callers invalidate after the operation has returned, which is
after the commit.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..exceptions import DatabaseError, NotFoundError, ValidationError
from ..models import StatusChange
from ..status import (
    DIRECT_STATUSES,
    EPISODE_STATUSES,
    RECURSIVE_STATUSES,
    ContentType,
    WatchStatus,
    aggregate_status,
    demote_for_new_content,
    parse_content_type,
    reconcile_status,
    require_status,
)
from .content_graph import ContentGraphStore

logger = logging.getLogger(__name__)


def require_identifier(value: object, name: str) -> int:
    """Return ``value`` as a positive integer id or raise ``ValidationError``."""

    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{name} is required")
    try:
        identifier = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer, got {value!r}") from exc
    if identifier <= 0:
        raise ValidationError(f"{name} must be positive, got {identifier}")
    return identifier


class WatchStatusEngine:
    """Computes and persists derived statuses for one profile at a time."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._locks: dict[tuple[int, int], asyncio.Lock] = {}
        self._lock_users: dict[tuple[int, int], int] = {}

    async def update_episode_watch_status(
        self, profile_id: int, episode_id: int, status: WatchStatus | str
    ) -> list[StatusChange]:
        """Set an episode's status and recompute its season and show."""

        profile_id = require_identifier(profile_id, "profile_id")
        episode_id = require_identifier(episode_id, "episode_id")
        target = require_status(status, EPISODE_STATUSES, context="episode")
        show_id = await self.resolve_show_id(ContentType.EPISODE, episode_id)

        async with self._transaction(profile_id, show_id, "update_episode_watch_status") as store:
            current = await self._require_favorite(
                store, profile_id, ContentType.EPISODE, episode_id
            )
            changes: list[StatusChange] = []
            changed = await self._apply(
                store,
                changes,
                profile_id,
                ContentType.EPISODE,
                episode_id,
                current,
                target,
                reason=f"Episode marked as {target.value}",
            )
            if changed:
                episode = await store.get_episode(episode_id)
                if episode is None:
                    raise NotFoundError("Episode", episode_id)
                await self._propagate_up(
                    store,
                    changes,
                    profile_id,
                    ContentType.SEASON,
                    episode.season_id,
                    reason=f"Episode {episode_id} status changed",
                )
            return changes

    async def update_season_watch_status(
        self,
        profile_id: int,
        season_id: int,
        status: WatchStatus | str,
        recursive: bool = False,
    ) -> list[StatusChange]:
        """Set a season's status, optionally pushing it down to every episode."""

        profile_id = require_identifier(profile_id, "profile_id")
        season_id = require_identifier(season_id, "season_id")
        target = self._require_parent_target(status, recursive, "season")
        show_id = await self.resolve_show_id(ContentType.SEASON, season_id)

        async with self._transaction(profile_id, show_id, "update_season_watch_status") as store:
            current = await self._require_favorite(
                store, profile_id, ContentType.SEASON, season_id
            )
            changes: list[StatusChange] = []
            reason = f"Season {season_id} marked as {target.value}"
            if recursive:
                derived = await self._cascade_down_season(
                    store, changes, profile_id, season_id, target, reason
                )
            else:
                derived = target
            changed = await self._apply(
                store, changes, profile_id, ContentType.SEASON, season_id, current, derived, reason
            )
            if changed:
                await self._propagate_up(
                    store,
                    changes,
                    profile_id,
                    ContentType.SHOW,
                    show_id,
                    reason=f"Season {season_id} status changed",
                )
            return changes

    async def update_show_watch_status(
        self,
        profile_id: int,
        show_id: int,
        status: WatchStatus | str,
        recursive: bool = False,
    ) -> list[StatusChange]:
        """Set a show's status, optionally pushing it through seasons and episodes."""

        profile_id = require_identifier(profile_id, "profile_id")
        show_id = require_identifier(show_id, "show_id")
        target = self._require_parent_target(status, recursive, "show")
        show_id = await self.resolve_show_id(ContentType.SHOW, show_id)

        async with self._transaction(profile_id, show_id, "update_show_watch_status") as store:
            current = await self._require_favorite(store, profile_id, ContentType.SHOW, show_id)
            changes: list[StatusChange] = []
            reason = f"Show {show_id} marked as {target.value}"
            if recursive:
                for season in await store.list_seasons(show_id):
                    season_current = await store.get_status(
                        profile_id, ContentType.SEASON, season.id
                    )
                    season_status = await self._cascade_down_season(
                        store, changes, profile_id, season.id, target, reason
                    )
                    await self._apply(
                        store,
                        changes,
                        profile_id,
                        ContentType.SEASON,
                        season.id,
                        season_current,
                        season_status,
                        reason,
                    )
                derived = aggregate_status(
                    await store.get_child_statuses(ContentType.SHOW, show_id, profile_id)
                )
            else:
                derived = target
            await self._apply(
                store, changes, profile_id, ContentType.SHOW, show_id, current, derived, reason
            )
            return changes

    async def apply_new_content_policy(
        self, profile_id: int, parent_type: ContentType | str, parent_id: int
    ) -> list[StatusChange]:
        """Flag ``WATCHED`` ancestors of newly ingested content as ``UP_TO_DATE``.

        ``parent_type``/``parent_id`` name the immediate parent of the new item: a
        season for a new episode, the show for a new season. Each ancestor is
        checked on its own; anything not currently ``WATCHED`` is left alone.
        """

        profile_id = require_identifier(profile_id, "profile_id")
        parent_id = require_identifier(parent_id, "parent_id")
        level_type = parse_content_type(parent_type)
        if level_type is ContentType.EPISODE:
            raise ValidationError("New content can only be added beneath a season or show")
        show_id = await self.resolve_show_id(level_type, parent_id)

        async with self._transaction(profile_id, show_id, "apply_new_content_policy") as store:
            changes: list[StatusChange] = []
            await self._flag_ancestors(store, changes, profile_id, level_type, parent_id, show_id)
            return changes

    async def track_new_content(
        self,
        profile_id: int,
        parent_type: ContentType | str,
        parent_id: int,
        items: Sequence[tuple[ContentType | str, int]],
    ) -> list[StatusChange]:
        """Favorite newly ingested items and flag their caught-up ancestors.

        Both steps share one transaction, so new unwatched children never sit
        beneath a parent that still claims to be ``WATCHED``.
        """

        profile_id = require_identifier(profile_id, "profile_id")
        parent_id = require_identifier(parent_id, "parent_id")
        level_type = parse_content_type(parent_type)
        if level_type is ContentType.EPISODE:
            raise ValidationError("New content can only be added beneath a season or show")
        new_items = [
            (parse_content_type(content_type), require_identifier(content_id, "content_id"))
            for content_type, content_id in items
        ]
        show_id = await self.resolve_show_id(level_type, parent_id)

        async with self._transaction(profile_id, show_id, "track_new_content") as store:
            changes: list[StatusChange] = []
            for content_type, content_id in new_items:
                owner = await store.resolve_show_id(content_type, content_id)
                if owner is None:
                    raise NotFoundError(content_type.value.capitalize(), content_id)
                if owner != show_id:
                    raise ValidationError(
                        f"{content_type.value.capitalize()} {content_id} does not belong "
                        f"to show {show_id}"
                    )
                await self._add_favorites(
                    store, changes, profile_id, content_type, content_id, show_id,
                    WatchStatus.NOT_WATCHED,
                )
            await self._flag_ancestors(store, changes, profile_id, level_type, parent_id, show_id)
            return changes

    async def recompute_show_status(self, profile_id: int, show_id: int) -> list[StatusChange]:
        """Reconcile stored season and show statuses with their children.

        Seasons without a record for the profile (for example half-ingested
        ones) are skipped, though they still count as unwatched for the show.
        """

        profile_id = require_identifier(profile_id, "profile_id")
        show_id = require_identifier(show_id, "show_id")
        show_id = await self.resolve_show_id(ContentType.SHOW, show_id)

        async with self._transaction(profile_id, show_id, "recompute_show_status") as store:
            show_current = await self._require_favorite(
                store, profile_id, ContentType.SHOW, show_id
            )
            changes: list[StatusChange] = []
            for season in await store.list_seasons(show_id):
                season_current = await store.get_status(profile_id, ContentType.SEASON, season.id)
                if season_current is None:
                    continue
                children = await store.get_child_statuses(
                    ContentType.SEASON, season.id, profile_id
                )
                await self._apply(
                    store,
                    changes,
                    profile_id,
                    ContentType.SEASON,
                    season.id,
                    season_current,
                    reconcile_status(season_current, children),
                    reason="Reconciled with episodes",
                )
            children = await store.get_child_statuses(ContentType.SHOW, show_id, profile_id)
            await self._apply(
                store,
                changes,
                profile_id,
                ContentType.SHOW,
                show_id,
                show_current,
                reconcile_status(show_current, children),
                reason="Reconciled with seasons",
            )
            return changes

    async def add_to_favorites(
        self,
        profile_id: int,
        content_type: ContentType | str,
        content_id: int,
        initial_status: WatchStatus | str = WatchStatus.NOT_WATCHED,
    ) -> list[StatusChange]:
        """Start tracking a content item and, for shows and seasons, its descendants.

        Existing records keep their status.
        """

        profile_id = require_identifier(profile_id, "profile_id")
        content_id = require_identifier(content_id, "content_id")
        content_type = parse_content_type(content_type)
        status = require_status(
            initial_status,
            EPISODE_STATUSES if content_type is ContentType.EPISODE else RECURSIVE_STATUSES,
            context=f"initial {content_type.value}",
        )
        show_id = await self.resolve_show_id(content_type, content_id)

        async with self._transaction(profile_id, show_id, "add_to_favorites") as store:
            changes: list[StatusChange] = []
            await self._add_favorites(
                store, changes, profile_id, content_type, content_id, show_id, status
            )
            return changes

    async def remove_from_favorites(self, profile_id: int, show_id: int) -> int:
        """Stop tracking a show with all of its seasons and episodes."""

        profile_id = require_identifier(profile_id, "profile_id")
        show_id = require_identifier(show_id, "show_id")
        show_id = await self.resolve_show_id(ContentType.SHOW, show_id)

        async with self._transaction(profile_id, show_id, "remove_from_favorites") as store:
            await self._require_favorite(store, profile_id, ContentType.SHOW, show_id)
            seasons = await store.list_seasons(show_id)
            episodes = await store.list_episodes_for_show(show_id)
            removed = await store.remove_favorites(
                profile_id, ContentType.EPISODE, [episode.id for episode in episodes]
            )
            removed += await store.remove_favorites(
                profile_id, ContentType.SEASON, [season.id for season in seasons]
            )
            removed += await store.remove_favorites(profile_id, ContentType.SHOW, [show_id])
            return removed

    @asynccontextmanager
    async def _transaction(
        self, profile_id: int, show_id: int, operation: str
    ) -> AsyncIterator[ContentGraphStore]:
        key = (profile_id, show_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                try:
                    async with self._session_factory() as session:
                        async with session.begin():
                            yield ContentGraphStore(session)
                except SQLAlchemyError as exc:
                    logger.error(
                        "%s failed for profile %s, show %s; rolled back: %s",
                        operation,
                        profile_id,
                        show_id,
                        exc,
                    )
                    raise DatabaseError(f"Database error in {operation}: {exc}", exc) from exc
        finally:
            # Drop the lock once nobody holds or waits for it.
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                self._locks.pop(key, None)

    async def resolve_show_id(self, content_type: ContentType, content_id: int) -> int:
        """Return the show owning a content item or raise ``NotFoundError``."""

        try:
            async with self._session_factory() as session:
                show_id = await ContentGraphStore(session).resolve_show_id(
                    content_type, content_id
                )
        except SQLAlchemyError as exc:
            raise DatabaseError(f"Database error resolving {content_type.value}: {exc}", exc) from exc
        if show_id is None:
            raise NotFoundError(content_type.value.capitalize(), content_id)
        return show_id

    @staticmethod
    def _require_parent_target(
        status: WatchStatus | str, recursive: bool, level: str
    ) -> WatchStatus:
        if recursive:
            return require_status(status, RECURSIVE_STATUSES, context=f"recursive {level}")
        return require_status(status, DIRECT_STATUSES, context=level)

    @staticmethod
    async def _require_favorite(
        store: ContentGraphStore,
        profile_id: int,
        content_type: ContentType,
        content_id: int,
    ) -> WatchStatus:
        current = await store.get_status(profile_id, content_type, content_id)
        if current is None:
            raise NotFoundError(
                content_type.value.capitalize(),
                content_id,
                f"{content_type.value.capitalize()} {content_id} is not in the favorites "
                f"of profile {profile_id}",
            )
        return current

    @staticmethod
    async def _apply(
        store: ContentGraphStore,
        changes: list[StatusChange],
        profile_id: int,
        content_type: ContentType,
        content_id: int,
        current: WatchStatus | None,
        target: WatchStatus,
        reason: str,
    ) -> bool:
        """Persist ``target`` if it differs from ``current`` and record the change."""

        if current is target:
            return False
        await store.set_status(profile_id, content_type, content_id, target)
        changes.append(
            StatusChange(
                entity_type=content_type,
                entity_id=content_id,
                old_status=current,
                new_status=target,
                reason=reason,
            )
        )
        return True

    @staticmethod
    async def _add_favorites(
        store: ContentGraphStore,
        changes: list[StatusChange],
        profile_id: int,
        content_type: ContentType,
        content_id: int,
        show_id: int,
        status: WatchStatus,
    ) -> None:
        """Create records for an item and its descendants; existing ones are kept."""

        items: list[tuple[ContentType, int]] = [(content_type, content_id)]
        if content_type is ContentType.SHOW:
            for season in await store.list_seasons(show_id):
                items.append((ContentType.SEASON, season.id))
            for episode in await store.list_episodes_for_show(show_id):
                items.append((ContentType.EPISODE, episode.id))
        elif content_type is ContentType.SEASON:
            for episode in await store.list_episodes_for_season(content_id):
                items.append((ContentType.EPISODE, episode.id))

        for item_type, item_id in items:
            if await store.add_favorite(profile_id, item_type, item_id, status):
                changes.append(
                    StatusChange(
                        entity_type=item_type,
                        entity_id=item_id,
                        old_status=None,
                        new_status=status,
                        reason="Added to favorites",
                    )
                )

    async def _flag_ancestors(
        self,
        store: ContentGraphStore,
        changes: list[StatusChange],
        profile_id: int,
        level_type: ContentType,
        level_id: int,
        show_id: int,
    ) -> None:
        """Demote each ``WATCHED`` ancestor from ``level_type`` up to the show."""

        flagged = len(changes)
        while True:
            current = await store.get_status(profile_id, level_type, level_id)
            demoted = demote_for_new_content(current) if current else None
            if demoted is not None:
                await self._apply(
                    store,
                    changes,
                    profile_id,
                    level_type,
                    level_id,
                    current,
                    demoted,
                    reason="New content added",
                )
            if level_type is ContentType.SHOW:
                break
            level_type, level_id = ContentType.SHOW, show_id
        if len(changes) > flagged:
            logger.info(
                "New content for profile %s flagged %s",
                profile_id,
                ", ".join(change.describe() for change in changes[flagged:]),
            )

    async def _cascade_down_season(
        self,
        store: ContentGraphStore,
        changes: list[StatusChange],
        profile_id: int,
        season_id: int,
        target: WatchStatus,
        reason: str,
    ) -> WatchStatus:
        """Set every episode of a season to ``target``; return the season aggregate."""

        episodes = await store.list_episodes_for_season(season_id)
        stored = await store.get_statuses(
            profile_id, ContentType.EPISODE, [episode.id for episode in episodes]
        )
        for episode in episodes:
            await self._apply(
                store,
                changes,
                profile_id,
                ContentType.EPISODE,
                episode.id,
                stored.get(episode.id),
                target,
                reason,
            )
        return aggregate_status(target for _ in episodes)

    async def _propagate_up(
        self,
        store: ContentGraphStore,
        changes: list[StatusChange],
        profile_id: int,
        level_type: ContentType,
        level_id: int,
        reason: str,
    ) -> None:
        """Recompute ancestors from their children until one stays unchanged."""

        while True:
            current = await store.get_status(profile_id, level_type, level_id)
            if current is None:
                logger.debug(
                    "%s %s is not tracked for profile %s; stopping propagation",
                    level_type.value,
                    level_id,
                    profile_id,
                )
                return
            children = await store.get_child_statuses(level_type, level_id, profile_id)
            changed = await self._apply(
                store,
                changes,
                profile_id,
                level_type,
                level_id,
                current,
                aggregate_status(children),
                reason,
            )
            if not changed or level_type is ContentType.SHOW:
                return
            season = await store.get_season(level_id)
            if season is None:
                raise NotFoundError("Season", level_id)
            reason = f"Season {level_id} status changed"
            level_type, level_id = ContentType.SHOW, season.show_id
