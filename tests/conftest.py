"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace

import pytest


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.database import Database  # noqa: E402
from app.services.content_graph import ContentGraphStore  # noqa: E402


@dataclass
class SeededShow:
    """Ids of a catalog show created for a test."""

    show_id: int
    season_ids: list[int] = field(default_factory=list)
    episode_ids: dict[int, list[int]] = field(default_factory=dict)

    def episodes(self, season_index: int) -> list[int]:
        return self.episode_ids[self.season_ids[season_index]]


async def seed_show(
    database: Database,
    episodes_per_season: list[int],
    *,
    tmdb_id: int = 1000,
    title: str = "Test Show",
) -> SeededShow:
    """Create a show with one season per entry of ``episodes_per_season``."""

    async with database.session() as session:
        store = ContentGraphStore(session)
        show = await store.upsert_show(
            tmdb_id=tmdb_id,
            title=title,
            season_count=len(episodes_per_season),
            episode_count=sum(episodes_per_season),
        )
        seeded = SeededShow(show_id=show.id)
        for season_index, episode_count in enumerate(episodes_per_season, start=1):
            season = await store.upsert_season(
                show_id=show.id,
                tmdb_id=tmdb_id * 100 + season_index,
                season_number=season_index,
                name=f"Season {season_index}",
                episode_count=episode_count,
            )
            seeded.season_ids.append(season.id)
            seeded.episode_ids[season.id] = []
            for episode_number in range(1, episode_count + 1):
                episode = await store.upsert_episode(
                    show_id=show.id,
                    season_id=season.id,
                    tmdb_id=tmdb_id * 10_000 + season_index * 100 + episode_number,
                    season_number=season_index,
                    episode_number=episode_number,
                    title=f"S{season_index}E{episode_number}",
                )
                seeded.episode_ids[season.id].append(episode.id)
    return seeded


async def seed_account(
    database: Database, profile_count: int = 1, *, email: str = "viewer@example.com"
) -> tuple[int, list[int]]:
    """Create an account with ``profile_count`` profiles."""

    async with database.session() as session:
        store = ContentGraphStore(session)
        account = await store.create_account("Viewer", email)
        profile_ids = []
        for index in range(profile_count):
            profile = await store.create_profile(account.id, f"Profile {index + 1}")
            profile_ids.append(profile.id)
    return account.id, profile_ids


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'keepwatching.db'}"


@pytest.fixture
def seeding() -> SimpleNamespace:
    """Async helpers that populate a database with catalog and account rows."""

    return SimpleNamespace(show=seed_show, account=seed_account)
