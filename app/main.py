"""Entry point for the KeepWatching FastAPI service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, TypeVar

import httpx
from fastapi import FastAPI, HTTPException

from .config import settings
from .database import Database
from .exceptions import ServiceError
from .models import (
    AccountStatistics,
    AdminSeason,
    EpisodeStatusRequest,
    FavoriteRequest,
    NextUnwatchedShow,
    ProfileShow,
    ProfileStatistics,
    SeasonStatusRequest,
    ShowDetails,
    ShowStatusRequest,
    StatusUpdateResult,
)
from .services.cache import CacheService
from .services.ingestion import ContentIngestionWorker
from .services.invalidation import InvalidationOrchestrator
from .services.shows import ShowService
from .services.tmdb import TMDBClient
from .services.tracking import TrackingService
from .services.watch_status import WatchStatusEngine

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app: FastAPI

S = TypeVar("S")


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    database = Database(settings.database_url)
    await database.create_all()

    cache = CacheService(settings.cache_ttl_seconds)
    engine = WatchStatusEngine(database.session_factory)
    orchestrator = InvalidationOrchestrator(
        cache,
        database.session_factory,
        statistics_enabled=settings.statistics_cache_enabled,
    )

    provider: TMDBClient | None = None
    worker: ContentIngestionWorker | None = None
    if settings.tmdb_api_key:
        tmdb_http_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                base_url=str(settings.tmdb_api_url),
                timeout=httpx.Timeout(15.0, connect=5.0),
            )
        )
        provider = TMDBClient(settings, tmdb_http_client)
        worker = ContentIngestionWorker(
            settings, database.session_factory, provider, engine, orchestrator
        )
    else:
        logger.warning("TMDB_API_KEY is not set; show ingestion is disabled")

    fastapi_app.state.database = database
    fastapi_app.state.cache = cache
    fastapi_app.state.tracking_service = TrackingService(
        database.session_factory, engine, orchestrator, provider=provider, worker=worker
    )
    fastapi_app.state.show_service = ShowService(settings, database.session_factory, cache)
    fastapi_app.state.ingestion_worker = worker
    await cache.start(settings.cache_check_period_seconds)
    if worker is not None:
        await worker.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        if worker is not None:
            await worker.stop()
        await cache.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Watch-status tracking for shows, seasons and episodes",
        version="1.0.0",
        lifespan=lifespan,
    )
    register_routes(fastapi_app)
    return fastapi_app


def _state_service(fastapi_app: FastAPI, name: str, expected: type[S]) -> S:
    service = getattr(fastapi_app.state, name, None)
    if not isinstance(service, expected):
        raise RuntimeError(f"{expected.__name__} not initialised")
    return service


def _http_error(exc: ServiceError) -> HTTPException:
    if exc.status_code >= 500:
        logger.error("Request failed: %s", exc.message)
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def register_routes(fastapi_app: FastAPI) -> None:
    def tracking() -> TrackingService:
        return _state_service(fastapi_app, "tracking_service", TrackingService)

    def shows() -> ShowService:
        return _state_service(fastapi_app, "show_service", ShowService)

    profile_path = "/accounts/{account_id}/profiles/{profile_id}"

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, Any]:
        payload: dict[str, Any] = {"status": "ok"}
        cache = getattr(fastapi_app.state, "cache", None)
        if isinstance(cache, CacheService):
            payload["cache"] = cache.get_stats()
        return payload

    @fastapi_app.get(profile_path + "/shows")
    async def list_profile_shows(account_id: int, profile_id: int) -> list[ProfileShow]:
        try:
            return await shows().get_shows_for_profile(profile_id)
        except ServiceError as exc:
            raise _http_error(exc) from exc

    @fastapi_app.get(profile_path + "/shows/{show_id}")
    async def show_details(account_id: int, profile_id: int, show_id: int) -> ShowDetails:
        try:
            return await shows().get_show_details_for_profile(profile_id, show_id)
        except ServiceError as exc:
            raise _http_error(exc) from exc

    @fastapi_app.post(profile_path + "/shows/favorites")
    async def add_favorite(
        account_id: int, profile_id: int, payload: FavoriteRequest
    ) -> StatusUpdateResult:
        service = tracking()
        try:
            if payload.tmdb_id is not None:
                return await service.favorite_show_from_provider(
                    account_id, profile_id, payload.tmdb_id
                )
            if payload.content_id is None:
                raise HTTPException(
                    status_code=400, detail="Either content_id or tmdb_id is required"
                )
            return await service.add_content_to_favorites(
                account_id,
                profile_id,
                payload.content_type,
                payload.content_id,
                payload.initial_status,
            )
        except ServiceError as exc:
            raise _http_error(exc) from exc

    @fastapi_app.delete(profile_path + "/shows/favorites/{show_id}")
    async def remove_favorite(
        account_id: int, profile_id: int, show_id: int
    ) -> StatusUpdateResult:
        try:
            return await tracking().remove_show_from_favorites(account_id, profile_id, show_id)
        except ServiceError as exc:
            raise _http_error(exc) from exc

    @fastapi_app.put(profile_path + "/shows/watchstatus")
    async def update_show_status(
        account_id: int, profile_id: int, payload: ShowStatusRequest
    ) -> StatusUpdateResult:
        try:
            return await tracking().update_show_watch_status(
                account_id, profile_id, payload.show_id, payload.status, payload.recursive
            )
        except ServiceError as exc:
            raise _http_error(exc) from exc

    @fastapi_app.put(profile_path + "/seasons/watchstatus")
    async def update_season_status(
        account_id: int, profile_id: int, payload: SeasonStatusRequest
    ) -> StatusUpdateResult:
        try:
            return await tracking().update_season_watch_status(
                account_id, profile_id, payload.season_id, payload.status, payload.recursive
            )
        except ServiceError as exc:
            raise _http_error(exc) from exc

    @fastapi_app.put(profile_path + "/episodes/watchstatus")
    async def update_episode_status(
        account_id: int, profile_id: int, payload: EpisodeStatusRequest
    ) -> StatusUpdateResult:
        try:
            return await tracking().update_episode_watch_status(
                account_id, profile_id, payload.episode_id, payload.status
            )
        except ServiceError as exc:
            raise _http_error(exc) from exc

    @fastapi_app.post(profile_path + "/shows/{show_id}/reconcile")
    async def reconcile_show(
        account_id: int, profile_id: int, show_id: int
    ) -> StatusUpdateResult:
        try:
            return await tracking().reconcile_show_status(account_id, profile_id, show_id)
        except ServiceError as exc:
            raise _http_error(exc) from exc

    @fastapi_app.get(profile_path + "/episodes/next-unwatched")
    async def next_unwatched(account_id: int, profile_id: int) -> list[NextUnwatchedShow]:
        try:
            return await shows().get_next_unwatched_episodes(profile_id)
        except ServiceError as exc:
            raise _http_error(exc) from exc

    @fastapi_app.get(profile_path + "/statistics")
    async def profile_statistics(account_id: int, profile_id: int) -> ProfileStatistics:
        try:
            return await shows().get_profile_statistics(profile_id)
        except ServiceError as exc:
            raise _http_error(exc) from exc

    @fastapi_app.get("/accounts/{account_id}/statistics")
    async def account_statistics(account_id: int) -> AccountStatistics:
        try:
            return await shows().get_account_statistics(account_id)
        except ServiceError as exc:
            raise _http_error(exc) from exc

    @fastapi_app.post("/admin/shows/{show_id}/refresh", status_code=202)
    async def refresh_show(show_id: int) -> dict[str, Any]:
        worker = getattr(fastapi_app.state, "ingestion_worker", None)
        if not isinstance(worker, ContentIngestionWorker):
            raise HTTPException(status_code=503, detail="Show ingestion is not configured")
        job = worker.schedule_show_refresh(show_id)
        return {"show_id": job.show_id, "state": job.state.value}

    @fastapi_app.get("/admin/shows/{show_id}/seasons")
    async def admin_show_seasons(show_id: int) -> list[AdminSeason]:
        try:
            return await shows().get_admin_show_seasons(show_id)
        except ServiceError as exc:
            raise _http_error(exc) from exc


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
