"""Behaviour of the watch-status propagation engine."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from app.database import Database
from app.exceptions import DatabaseError, NotFoundError, ValidationError
from app.services.content_graph import ContentGraphStore
from app.services.watch_status import WatchStatusEngine
from app.status import ContentType, WatchStatus, aggregate_status

NOT_WATCHED = WatchStatus.NOT_WATCHED
WATCHING = WatchStatus.WATCHING
WATCHED = WatchStatus.WATCHED
UP_TO_DATE = WatchStatus.UP_TO_DATE


async def _setup(database_url, seeding, seasons, profiles=1):
    database = Database(database_url)
    await database.create_all()
    _, profile_ids = await seeding.account(database, profiles)
    show = await seeding.show(database, seasons)
    engine = WatchStatusEngine(database.session_factory)
    await engine.add_to_favorites(profile_ids[0], ContentType.SHOW, show.show_id)
    return database, engine, profile_ids, show


async def _status(database, profile_id, content_type, content_id):
    async with database.session_factory() as session:
        return await ContentGraphStore(session).get_status(profile_id, content_type, content_id)


async def _season_statuses(database, profile_id, show):
    return [
        await _status(database, profile_id, ContentType.SEASON, season_id)
        for season_id in show.season_ids
    ]


def test_episode_update_recomputes_season_and_show(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [3])
        try:
            first = show.episodes(0)[0]
            changes = await engine.update_episode_watch_status(profile_id, first, "WATCHED")

            assert [(c.entity_type, c.entity_id) for c in changes] == [
                (ContentType.EPISODE, first),
                (ContentType.SEASON, show.season_ids[0]),
                (ContentType.SHOW, show.show_id),
            ]
            assert [(c.old_status, c.new_status) for c in changes] == [
                (NOT_WATCHED, WATCHED),
                (NOT_WATCHED, WATCHING),
                (NOT_WATCHED, WATCHING),
            ]
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_season_always_matches_its_episodes(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [4, 2])
        try:
            season_id = show.season_ids[0]
            episodes = show.episodes(0)
            updates = [
                (episodes[2], WATCHED),
                (episodes[0], WATCHED),
                (episodes[2], NOT_WATCHED),
                (episodes[1], WATCHED),
                (episodes[3], WATCHED),
                (episodes[2], WATCHED),
            ]
            for episode_id, status in updates:
                await engine.update_episode_watch_status(profile_id, episode_id, status)
                children = [
                    await _status(database, profile_id, ContentType.EPISODE, child)
                    for child in episodes
                ]
                season = await _status(database, profile_id, ContentType.SEASON, season_id)
                assert season is aggregate_status(children)

            assert await _status(database, profile_id, ContentType.SEASON, season_id) is WATCHED
            assert await _status(database, profile_id, ContentType.SHOW, show.show_id) is WATCHING
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_repeating_an_update_changes_nothing(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [2])
        try:
            episode_id = show.episodes(0)[0]
            first = await engine.update_episode_watch_status(profile_id, episode_id, WATCHED)
            before = await _season_statuses(database, profile_id, show)
            second = await engine.update_episode_watch_status(profile_id, episode_id, WATCHED)

            assert first
            assert second == []
            assert await _season_statuses(database, profile_id, show) == before
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_recursive_season_update_sets_every_episode(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [2, 2])
        try:
            season_id = show.season_ids[0]
            changes = await engine.update_season_watch_status(
                profile_id, season_id, WATCHED, recursive=True
            )

            for episode_id in show.episodes(0):
                assert await _status(database, profile_id, ContentType.EPISODE, episode_id) is WATCHED
            for episode_id in show.episodes(1):
                assert (
                    await _status(database, profile_id, ContentType.EPISODE, episode_id)
                    is NOT_WATCHED
                )
            assert await _season_statuses(database, profile_id, show) == [WATCHED, NOT_WATCHED]
            assert await _status(database, profile_id, ContentType.SHOW, show.show_id) is WATCHING
            assert [c.entity_type for c in changes] == [
                ContentType.EPISODE,
                ContentType.EPISODE,
                ContentType.SEASON,
                ContentType.SHOW,
            ]
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_non_recursive_season_update_leaves_episodes(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [2])
        try:
            changes = await engine.update_season_watch_status(
                profile_id, show.season_ids[0], WATCHING
            )

            assert [c.entity_type for c in changes] == [ContentType.SEASON, ContentType.SHOW]
            for episode_id in show.episodes(0):
                assert (
                    await _status(database, profile_id, ContentType.EPISODE, episode_id)
                    is NOT_WATCHED
                )
            assert await _status(database, profile_id, ContentType.SHOW, show.show_id) is WATCHING
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_recursive_show_round_trip_restores_everything(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [2, 3])
        try:
            await engine.update_show_watch_status(profile_id, show.show_id, WATCHED, recursive=True)
            assert await _status(database, profile_id, ContentType.SHOW, show.show_id) is WATCHED
            assert await _season_statuses(database, profile_id, show) == [WATCHED, WATCHED]

            await engine.update_show_watch_status(
                profile_id, show.show_id, NOT_WATCHED, recursive=True
            )

            assert await _status(database, profile_id, ContentType.SHOW, show.show_id) is NOT_WATCHED
            assert await _season_statuses(database, profile_id, show) == [NOT_WATCHED, NOT_WATCHED]
            for episode_ids in show.episode_ids.values():
                for episode_id in episode_ids:
                    assert (
                        await _status(database, profile_id, ContentType.EPISODE, episode_id)
                        is NOT_WATCHED
                    )
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_new_season_flags_watched_show_until_caught_up(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [2, 2])
        try:
            await engine.update_show_watch_status(profile_id, show.show_id, WATCHED, recursive=True)

            async with database.session() as session:
                store = ContentGraphStore(session)
                season = await store.upsert_season(
                    show_id=show.show_id, tmdb_id=900_003, season_number=3
                )
                episode = await store.upsert_episode(
                    show_id=show.show_id,
                    season_id=season.id,
                    tmdb_id=900_301,
                    season_number=3,
                    episode_number=1,
                )
            await engine.add_to_favorites(profile_id, ContentType.SEASON, season.id)
            changes = await engine.apply_new_content_policy(
                profile_id, ContentType.SHOW, show.show_id
            )

            assert [(c.entity_type, c.old_status, c.new_status) for c in changes] == [
                (ContentType.SHOW, WATCHED, UP_TO_DATE)
            ]
            assert await _season_statuses(database, profile_id, show) == [WATCHED, WATCHED]
            assert await _status(database, profile_id, ContentType.SEASON, season.id) is NOT_WATCHED

            await engine.update_episode_watch_status(profile_id, episode.id, WATCHED)

            assert await _status(database, profile_id, ContentType.SEASON, season.id) is WATCHED
            assert await _status(database, profile_id, ContentType.SHOW, show.show_id) is WATCHED
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_new_episode_flags_season_and_show(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [2])
        try:
            season_id = show.season_ids[0]
            await engine.update_show_watch_status(profile_id, show.show_id, WATCHED, recursive=True)
            async with database.session() as session:
                episode = await ContentGraphStore(session).upsert_episode(
                    show_id=show.show_id,
                    season_id=season_id,
                    tmdb_id=900_103,
                    season_number=1,
                    episode_number=3,
                )
            await engine.add_to_favorites(profile_id, ContentType.EPISODE, episode.id)

            changes = await engine.apply_new_content_policy(
                profile_id, ContentType.SEASON, season_id
            )

            assert [(c.entity_type, c.new_status) for c in changes] == [
                (ContentType.SEASON, UP_TO_DATE),
                (ContentType.SHOW, UP_TO_DATE),
            ]
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_new_content_policy_ignores_unfinished_parents(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [2])
        try:
            await engine.update_episode_watch_status(profile_id, show.episodes(0)[0], WATCHED)

            changes = await engine.apply_new_content_policy(
                profile_id, "season", show.season_ids[0]
            )

            assert changes == []
            assert await _status(database, profile_id, ContentType.SHOW, show.show_id) is WATCHING
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_no_op_write_keeps_up_to_date_marker(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [2])
        try:
            await engine.update_show_watch_status(profile_id, show.show_id, WATCHED, recursive=True)
            await engine.apply_new_content_policy(profile_id, ContentType.SHOW, show.show_id)

            changes = await engine.update_episode_watch_status(
                profile_id, show.episodes(0)[0], WATCHED
            )

            assert changes == []
            assert await _status(database, profile_id, ContentType.SHOW, show.show_id) is UP_TO_DATE
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_invalid_status_is_rejected_before_any_write(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [2])
        try:
            episode_id = show.episodes(0)[0]
            with pytest.raises(ValidationError):
                await engine.update_episode_watch_status(profile_id, episode_id, UP_TO_DATE)
            with pytest.raises(ValidationError):
                await engine.update_episode_watch_status(profile_id, episode_id, "FINISHED")
            with pytest.raises(ValidationError):
                await engine.update_season_watch_status(
                    profile_id, show.season_ids[0], WATCHING, recursive=True
                )
            with pytest.raises(ValidationError):
                await engine.update_show_watch_status(profile_id, show.show_id, UP_TO_DATE)
            with pytest.raises(ValidationError):
                await engine.update_episode_watch_status(None, episode_id, WATCHED)

            assert await _status(database, profile_id, ContentType.EPISODE, episode_id) is NOT_WATCHED
            assert await _status(database, profile_id, ContentType.SHOW, show.show_id) is NOT_WATCHED
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_unknown_or_unfavorited_content_is_not_found(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, profile_ids, show = await _setup(
            database_url, seeding, [1], profiles=2
        )
        try:
            with pytest.raises(NotFoundError):
                await engine.update_episode_watch_status(profile_ids[0], 99_999, WATCHED)
            with pytest.raises(NotFoundError):
                await engine.update_episode_watch_status(
                    profile_ids[1], show.episodes(0)[0], WATCHED
                )
            with pytest.raises(NotFoundError):
                await engine.remove_from_favorites(profile_ids[1], show.show_id)

            assert await _status(database, profile_ids[1], ContentType.SHOW, show.show_id) is None
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_concurrent_sibling_updates_are_not_lost(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [4])
        try:
            await asyncio.gather(
                *(
                    engine.update_episode_watch_status(profile_id, episode_id, WATCHED)
                    for episode_id in show.episodes(0)
                )
            )

            assert await _status(database, profile_id, ContentType.SEASON, show.season_ids[0]) is WATCHED
            assert await _status(database, profile_id, ContentType.SHOW, show.show_id) is WATCHED
            assert engine._locks == {}
            assert engine._lock_users == {}
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_locks_are_dropped_for_every_pair_touched(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, profile_ids, show = await _setup(database_url, seeding, [2], profiles=4)
        *trackers, stranger = profile_ids
        try:
            for profile_id in trackers[1:]:
                await engine.add_to_favorites(profile_id, ContentType.SHOW, show.show_id)
            for profile_id in trackers:
                await engine.update_show_watch_status(
                    profile_id, show.show_id, WATCHED, recursive=True
                )
            with pytest.raises(NotFoundError):
                await engine.update_episode_watch_status(stranger, show.episodes(0)[0], WATCHED)

            assert engine._locks == {}
            assert engine._lock_users == {}
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_failed_cascade_rolls_back_completely(database_url, seeding, monkeypatch) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [2])
        try:
            original = ContentGraphStore.set_status
            calls = 0

            async def flaky_set_status(self, *args, **kwargs):
                nonlocal calls
                calls += 1
                if calls == 2:
                    raise OperationalError("UPDATE watch_statuses", {}, Exception("disk I/O error"))
                return await original(self, *args, **kwargs)

            monkeypatch.setattr(ContentGraphStore, "set_status", flaky_set_status)
            episode_id = show.episodes(0)[0]

            with pytest.raises(DatabaseError):
                await engine.update_episode_watch_status(profile_id, episode_id, WATCHED)

            monkeypatch.setattr(ContentGraphStore, "set_status", original)
            assert await _status(database, profile_id, ContentType.EPISODE, episode_id) is NOT_WATCHED
            assert await _status(database, profile_id, ContentType.SEASON, show.season_ids[0]) is NOT_WATCHED
            assert engine._locks == {}
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_recompute_repairs_drift_and_keeps_marker(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [2, 1])
        try:
            await engine.update_season_watch_status(
                profile_id, show.season_ids[0], WATCHED, recursive=True
            )
            async with database.session() as session:
                await ContentGraphStore(session).set_status(
                    profile_id, ContentType.SEASON, show.season_ids[0], NOT_WATCHED
                )

            changes = await engine.recompute_show_status(profile_id, show.show_id)

            assert [(c.entity_type, c.new_status) for c in changes] == [
                (ContentType.SEASON, WATCHED)
            ]
            assert await _status(database, profile_id, ContentType.SHOW, show.show_id) is WATCHING

            async with database.session() as session:
                await ContentGraphStore(session).set_status(
                    profile_id, ContentType.SHOW, show.show_id, UP_TO_DATE
                )
            assert await engine.recompute_show_status(profile_id, show.show_id) == []
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_favorites_are_added_once_and_removed_together(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, profile_ids, show = await _setup(
            database_url, seeding, [2, 1], profiles=2
        )
        try:
            second = profile_ids[1]
            added = await engine.add_to_favorites(second, "show", show.show_id, "WATCHED")
            again = await engine.add_to_favorites(second, "show", show.show_id)

            assert len(added) == 1 + 2 + 3
            assert again == []
            assert await _status(database, second, ContentType.SHOW, show.show_id) is WATCHED

            removed = await engine.remove_from_favorites(second, show.show_id)

            assert removed == 6
            assert await _status(database, second, ContentType.SHOW, show.show_id) is None
            assert (
                await _status(database, profile_ids[0], ContentType.SHOW, show.show_id)
                is NOT_WATCHED
            )
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_unwatching_one_episode_and_rewatching_it(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [2, 2])
        try:
            await engine.update_show_watch_status(profile_id, show.show_id, WATCHED, recursive=True)
            episode_id = show.episodes(1)[0]

            await engine.update_episode_watch_status(profile_id, episode_id, NOT_WATCHED)

            assert await _season_statuses(database, profile_id, show) == [WATCHED, WATCHING]
            assert await _status(database, profile_id, ContentType.SHOW, show.show_id) is WATCHING

            await engine.update_episode_watch_status(profile_id, episode_id, WATCHED)

            assert await _season_statuses(database, profile_id, show) == [WATCHED, WATCHED]
            assert await _status(database, profile_id, ContentType.SHOW, show.show_id) is WATCHED
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_partly_watching_new_content_moves_show_to_watching(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [1])
        try:
            await engine.update_show_watch_status(profile_id, show.show_id, WATCHED, recursive=True)
            async with database.session() as session:
                store = ContentGraphStore(session)
                season = await store.upsert_season(
                    show_id=show.show_id, tmdb_id=900_002, season_number=2
                )
                episodes = [
                    await store.upsert_episode(
                        show_id=show.show_id,
                        season_id=season.id,
                        tmdb_id=900_200 + number,
                        season_number=2,
                        episode_number=number,
                    )
                    for number in (1, 2)
                ]
            await engine.add_to_favorites(profile_id, ContentType.SEASON, season.id)
            await engine.apply_new_content_policy(profile_id, ContentType.SHOW, show.show_id)

            await engine.update_episode_watch_status(profile_id, episodes[0].id, WATCHED)

            assert await _status(database, profile_id, ContentType.SEASON, season.id) is WATCHING
            assert await _status(database, profile_id, ContentType.SHOW, show.show_id) is WATCHING
        finally:
            await database.dispose()

    asyncio.run(runner())


async def _add_season(database, show, season_number, episode_count):
    async with database.session() as session:
        store = ContentGraphStore(session)
        season = await store.upsert_season(
            show_id=show.show_id, tmdb_id=900_000 + season_number, season_number=season_number
        )
        episode_ids = []
        for number in range(1, episode_count + 1):
            episode = await store.upsert_episode(
                show_id=show.show_id,
                season_id=season.id,
                tmdb_id=900_000 + season_number * 100 + number,
                season_number=season_number,
                episode_number=number,
            )
            episode_ids.append(episode.id)
    return season.id, episode_ids


def test_track_new_content_favorites_and_flags_together(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [1])
        try:
            await engine.update_show_watch_status(profile_id, show.show_id, WATCHED, recursive=True)
            season_id, episode_ids = await _add_season(database, show, 2, 2)

            changes = await engine.track_new_content(
                profile_id, ContentType.SHOW, show.show_id, [(ContentType.SEASON, season_id)]
            )

            assert [(c.entity_type, c.new_status) for c in changes] == [
                (ContentType.SEASON, NOT_WATCHED),
                (ContentType.EPISODE, NOT_WATCHED),
                (ContentType.EPISODE, NOT_WATCHED),
                (ContentType.SHOW, UP_TO_DATE),
            ]
            for episode_id in episode_ids:
                assert await _status(database, profile_id, ContentType.EPISODE, episode_id) is (
                    NOT_WATCHED
                )
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_track_new_content_rolls_back_when_flagging_fails(
    database_url, seeding, monkeypatch
) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [1])
        try:
            await engine.update_show_watch_status(profile_id, show.show_id, WATCHED, recursive=True)
            season_id, episode_ids = await _add_season(database, show, 2, 1)
            original = ContentGraphStore.set_status

            async def failing_flag(self, profile_id, content_type, content_id, status):
                if status is UP_TO_DATE:
                    raise OperationalError("UPDATE watch_statuses", {}, Exception("database is locked"))
                return await original(self, profile_id, content_type, content_id, status)

            monkeypatch.setattr(ContentGraphStore, "set_status", failing_flag)

            with pytest.raises(DatabaseError):
                await engine.track_new_content(
                    profile_id, ContentType.SHOW, show.show_id, [(ContentType.SEASON, season_id)]
                )

            monkeypatch.setattr(ContentGraphStore, "set_status", original)
            assert await _status(database, profile_id, ContentType.SEASON, season_id) is None
            assert await _status(database, profile_id, ContentType.EPISODE, episode_ids[0]) is None
            assert await _status(database, profile_id, ContentType.SHOW, show.show_id) is WATCHED
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_track_new_content_rejects_items_of_another_show(database_url, seeding) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [1])
        try:
            other = await seeding.show(database, [1], tmdb_id=2000, title="Other")

            with pytest.raises(ValidationError):
                await engine.track_new_content(
                    profile_id,
                    ContentType.SHOW,
                    show.show_id,
                    [(ContentType.SEASON, other.season_ids[0])],
                )
            with pytest.raises(ValidationError):
                await engine.track_new_content(
                    profile_id, ContentType.EPISODE, show.episodes(0)[0], []
                )
            assert await _status(database, profile_id, ContentType.SEASON, other.season_ids[0]) is None
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_missing_season_during_propagation_is_not_found(
    database_url, seeding, monkeypatch
) -> None:
    async def runner() -> None:
        database, engine, (profile_id,), show = await _setup(database_url, seeding, [2])
        try:
            async def vanished_season(self, season_id):
                return None

            monkeypatch.setattr(ContentGraphStore, "get_season", vanished_season)
            episode_id = show.episodes(0)[0]

            with pytest.raises(NotFoundError):
                await engine.update_episode_watch_status(profile_id, episode_id, WATCHED)

            assert await _status(database, profile_id, ContentType.EPISODE, episode_id) is NOT_WATCHED
            assert await _status(database, profile_id, ContentType.SEASON, show.season_ids[0]) is NOT_WATCHED
        finally:
            await database.dispose()

    asyncio.run(runner())
