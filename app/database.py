"""Async engine, session factory and additive schema upgrades."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, NamedTuple

from sqlalchemy import MetaData, inspect, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    metadata = MetaData()


class ColumnUpgrade(NamedTuple):
    """A column added after the first release, with an optional backfill."""

    table: str
    column: str
    ddl: str
    backfill: str | None = None


COLUMN_UPGRADES: tuple[ColumnUpgrade, ...] = (
    ColumnUpgrade(
        "shows",
        "in_production",
        "ALTER TABLE shows ADD COLUMN in_production BOOLEAN DEFAULT 1",
        "UPDATE shows SET in_production = 1 WHERE in_production IS NULL",
    ),
    ColumnUpgrade(
        "seasons",
        "episode_count",
        "ALTER TABLE seasons ADD COLUMN episode_count INTEGER DEFAULT 0",
        "UPDATE seasons SET episode_count = 0 WHERE episode_count IS NULL",
    ),
    ColumnUpgrade(
        "watch_statuses",
        "updated_at",
        "ALTER TABLE watch_statuses ADD COLUMN updated_at DATETIME",
        "UPDATE watch_statuses SET updated_at = created_at WHERE updated_at IS NULL",
    ),
)


def apply_column_upgrades(connection: Connection) -> list[str]:
    """Add any missing upgrade columns and return ``table.column`` for each one."""

    inspector = inspect(connection)
    tables = set(inspector.get_table_names())
    applied: list[str] = []
    for upgrade in COLUMN_UPGRADES:
        if upgrade.table not in tables:
            continue
        columns = {column["name"] for column in inspector.get_columns(upgrade.table)}
        if upgrade.column in columns:
            continue
        connection.execute(text(upgrade.ddl))
        if upgrade.backfill:
            connection.execute(text(upgrade.backfill))
        applied.append(f"{upgrade.table}.{upgrade.column}")
    return applied


class Database:
    """Owns the async engine; services receive ``session_factory``."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create missing tables, then bring older tables up to date."""

        from . import db_models  # noqa: F401  registers the mapped tables

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(apply_column_upgrades)

    async def dispose(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session whose transaction commits when the block exits cleanly."""

        async with self.session_factory() as session:
            async with session.begin():
                yield session
