"""Background loading of seasons and episodes from the metadata provider."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Iterable, Protocol, Sequence, TypeVar

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..exceptions import DatabaseError, IngestionError, NotFoundError, ServiceError
from ..status import ContentType
from .content_graph import ContentGraphStore
from .invalidation import InvalidationOrchestrator
from .watch_status import WatchStatusEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class RemoteShow:
    tmdb_id: int
    title: str
    overview: str | None = None
    release_date: str | None = None
    in_production: bool = True
    season_count: int = 0
    episode_count: int = 0


@dataclass(slots=True)
class RemoteSeason:
    tmdb_id: int
    season_number: int
    name: str | None = None
    overview: str | None = None
    release_date: str | None = None
    episode_count: int = 0


@dataclass(slots=True)
class RemoteEpisode:
    tmdb_id: int
    season_number: int
    episode_number: int
    title: str | None = None
    overview: str | None = None
    air_date: str | None = None
    runtime: int | None = None


class MetadataProvider(Protocol):
    """Source of show, season and episode metadata keyed by provider id."""

    async def fetch_show(self, tmdb_id: int) -> RemoteShow: ...

    async def fetch_seasons(self, tmdb_id: int) -> list[RemoteSeason]: ...

    async def fetch_episodes(self, tmdb_id: int, season_number: int) -> list[RemoteEpisode]: ...


class Notifier(Protocol):
    async def show_updated(
        self, show_id: int, profile_ids: Sequence[int], job: "IngestionJob"
    ) -> None: ...


class LoggingNotifier:
    """Notifier that only records the event in the log."""

    async def show_updated(
        self, show_id: int, profile_ids: Sequence[int], job: "IngestionJob"
    ) -> None:
        logger.info(
            "Show %s updated (%d seasons, %d episodes added); notifying profiles %s",
            show_id,
            job.seasons_added,
            job.episodes_added,
            list(profile_ids),
        )


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class IngestionJob:
    """Handle for one background show load."""

    show_id: int
    notify_profile_ids: tuple[int, ...] = ()
    state: JobState = JobState.PENDING
    error: str | None = None
    seasons_added: int = 0
    episodes_added: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        if self.task is not None and self.task.done():
            return True
        return self.state in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)

    async def wait(self) -> "IngestionJob":
        """Wait for the job to settle without propagating its outcome."""

        if self.task is not None:
            await asyncio.wait({self.task})
        return self

    def cancel(self) -> bool:
        if self.task is None or self.task.done():
            return False
        if self.state is JobState.PENDING:
            self.state = JobState.CANCELLED
        return self.task.cancel()


@dataclass(slots=True)
class _SeasonResult:
    season_id: int
    season_created: bool
    new_episode_ids: list[int]
    profile_ids: list[int]


class ContentIngestionWorker:
    """Runs show loads as explicit, cancellable tasks.

    Steps are paced with a fixed delay so the provider is not flooded. Provider
    failures are retried with backoff; once retries run out the job stops and
    records the error. Seasons committed before the failure are kept.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        provider: MetadataProvider,
        engine: WatchStatusEngine,
        orchestrator: InvalidationOrchestrator,
        notifier: Notifier | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._engine = engine
        self._orchestrator = orchestrator
        self._notifier = notifier or LoggingNotifier()
        self._step_delay = settings.ingestion_step_delay_seconds
        self._retry_limit = settings.ingestion_retry_limit
        self._retry_backoff = settings.ingestion_retry_backoff_seconds
        self._refresh_interval = settings.ingestion_refresh_interval_seconds
        self._jobs: dict[int, IngestionJob] = {}
        self._notifications: set[asyncio.Task[None]] = set()
        self._refresh_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Launch the periodic refresh of in-production shows."""

        if self._refresh_interval <= 0 or self._refresh_task is not None:
            return
        self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        """Cancel the refresh loop and every running job."""

        tasks = [job.task for job in self._jobs.values() if job.task is not None]
        if self._refresh_task is not None:
            tasks.append(self._refresh_task)
        tasks.extend(self._notifications)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._refresh_task = None
        self._jobs.clear()

    def get_job(self, show_id: int) -> IngestionJob | None:
        return self._jobs.get(show_id)

    def schedule_show_refresh(
        self, show_id: int, notify_profile_ids: Iterable[int] = ()
    ) -> IngestionJob:
        """Start loading a show in the background and return its job handle."""

        existing = self._jobs.get(show_id)
        if existing is not None and not existing.done:
            return existing
        job = IngestionJob(show_id=show_id, notify_profile_ids=tuple(notify_profile_ids))
        self._jobs[show_id] = job
        job.task = asyncio.create_task(self._run(job))
        return job

    async def refresh_shows(self, show_ids: Iterable[int]) -> list[IngestionJob]:
        """Refresh several shows one after another."""

        jobs: list[IngestionJob] = []
        for index, show_id in enumerate(show_ids):
            if index:
                await asyncio.sleep(self._step_delay)
            job = self.schedule_show_refresh(show_id)
            await job.wait()
            jobs.append(job)
        return jobs

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_interval)
            try:
                async with self._session_factory() as session:
                    show_ids = await ContentGraphStore(session).tracked_show_ids(
                        in_production_only=True
                    )
                jobs = await self.refresh_shows(show_ids)
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled show refresh failed: %s", exc)
                continue
            failed = sum(1 for job in jobs if job.state is JobState.FAILED)
            logger.info("Scheduled refresh checked %d shows (%d failed)", len(jobs), failed)

    async def _run(self, job: IngestionJob) -> None:
        job.state = JobState.RUNNING
        job.started_at = datetime.utcnow()
        try:
            profile_ids = await self._load_show(job)
        except asyncio.CancelledError:
            job.state = JobState.CANCELLED
            logger.info("Load of show %s cancelled", job.show_id)
            raise
        except ServiceError as exc:
            job.state = JobState.FAILED
            job.error = exc.message
            logger.error("Load of show %s failed: %s", job.show_id, exc.message)
        except Exception as exc:  # pragma: no cover - background safety net
            job.state = JobState.FAILED
            job.error = str(exc)
            logger.exception("Load of show %s failed unexpectedly", job.show_id)
        else:
            job.state = JobState.COMPLETED
            logger.info(
                "Loaded show %s: %d new seasons, %d new episodes",
                job.show_id,
                job.seasons_added,
                job.episodes_added,
            )
            recipients = sorted(set(profile_ids) | set(job.notify_profile_ids))
            if recipients:
                self._notify(job, recipients)
        finally:
            job.finished_at = datetime.utcnow()
            if self._jobs.get(job.show_id) is job:
                self._jobs.pop(job.show_id, None)

    async def _load_show(self, job: IngestionJob) -> list[int]:
        show_id = job.show_id
        try:
            async with self._session_factory() as session:
                show = await ContentGraphStore(session).get_show(show_id)
        except SQLAlchemyError as exc:
            raise DatabaseError(f"Database error loading show {show_id}: {exc}", exc) from exc
        if show is None:
            raise NotFoundError("Show", show_id)
        tmdb_id = show.tmdb_id

        seasons = await self._with_retry(
            lambda: self._provider.fetch_seasons(tmdb_id), f"seasons of show {show_id}"
        )
        touched_profiles: set[int] = set()
        for season in seasons:
            if season.season_number == 0:
                continue
            await asyncio.sleep(self._step_delay)
            episodes = await self._with_retry(
                lambda: self._provider.fetch_episodes(tmdb_id, season.season_number),
                f"episodes of show {show_id} season {season.season_number}",
            )
            result = await self._store_season(show_id, season, episodes)
            if result.season_created:
                job.seasons_added += 1
            job.episodes_added += len(result.new_episode_ids)
            if result.season_created or result.new_episode_ids:
                # Each season commits on its own, so its caches go stale now.
                try:
                    await self._track_new_content(show_id, result)
                finally:
                    await self._orchestrator.invalidate_show_for_profiles(
                        show_id, result.profile_ids
                    )
                touched_profiles.update(result.profile_ids)
        return sorted(touched_profiles)

    async def _store_season(
        self, show_id: int, season: RemoteSeason, episodes: list[RemoteEpisode]
    ) -> _SeasonResult:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    store = ContentGraphStore(session)
                    stored_season = await store.upsert_season(
                        show_id=show_id,
                        tmdb_id=season.tmdb_id,
                        season_number=season.season_number,
                        name=season.name,
                        overview=season.overview,
                        release_date=season.release_date,
                        episode_count=season.episode_count or len(episodes),
                    )
                    new_episode_ids: list[int] = []
                    for episode in episodes:
                        stored_episode = await store.upsert_episode(
                            show_id=show_id,
                            season_id=stored_season.id,
                            tmdb_id=episode.tmdb_id,
                            season_number=season.season_number,
                            episode_number=episode.episode_number,
                            title=episode.title,
                            overview=episode.overview,
                            air_date=episode.air_date,
                            runtime=episode.runtime,
                        )
                        if stored_episode.created:
                            new_episode_ids.append(stored_episode.id)
                    profile_ids = await store.profile_ids_for_show(show_id)
        except SQLAlchemyError as exc:
            raise DatabaseError(
                f"Database error storing season {season.season_number} of show {show_id}: {exc}",
                exc,
            ) from exc
        return _SeasonResult(
            season_id=stored_season.id,
            season_created=stored_season.created,
            new_episode_ids=new_episode_ids,
            profile_ids=profile_ids,
        )

    async def _track_new_content(self, show_id: int, result: _SeasonResult) -> None:
        """Favorite new items for every tracking profile and flag caught-up parents."""

        if result.season_created:
            parent_type, parent_id = ContentType.SHOW, show_id
            items = [(ContentType.SEASON, result.season_id)]
        else:
            parent_type, parent_id = ContentType.SEASON, result.season_id
            items = [(ContentType.EPISODE, episode_id) for episode_id in result.new_episode_ids]
        for profile_id in result.profile_ids:
            await self._engine.track_new_content(profile_id, parent_type, parent_id, items)

    async def _with_retry(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except (httpx.HTTPError, IngestionError) as exc:
                attempt += 1
                if attempt > self._retry_limit:
                    raise IngestionError(
                        f"Failed to fetch {description} after {attempt} attempts: {exc}"
                    ) from exc
                backoff = self._retry_backoff * (min(2 ** (attempt - 1), 5) + (0.1 * attempt))
                logger.info(
                    "Transient error fetching %s (%s). Retrying in %.1fs",
                    description,
                    exc.__class__.__name__,
                    backoff,
                )
                await asyncio.sleep(backoff)

    def _notify(self, job: IngestionJob, profile_ids: list[int]) -> None:
        async def _send() -> None:
            try:
                await self._notifier.show_updated(job.show_id, profile_ids, job)
            except Exception as exc:
                logger.warning("Notification for show %s failed: %s", job.show_id, exc)

        task = asyncio.create_task(_send())
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)
