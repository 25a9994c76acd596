"""Metadata provider backed by The Movie Database (TMDB)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..config import Settings
from ..exceptions import IngestionError
from .ingestion import RemoteEpisode, RemoteSeason, RemoteShow

logger = logging.getLogger(__name__)


class TMDBClient:
    """Fetches TV metadata and maps it onto the ingestion dataclasses."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.tmdb_api_key:
            raise ValueError("TMDB API key is required when initialising TMDBClient")
        self._settings = settings
        self._client = http_client

    async def fetch_show(self, tmdb_id: int) -> RemoteShow:
        payload = await self._get(f"/tv/{tmdb_id}")
        return RemoteShow(
            tmdb_id=int(payload.get("id") or tmdb_id),
            title=payload.get("name") or payload.get("original_name") or f"TMDB {tmdb_id}",
            overview=payload.get("overview") or None,
            release_date=payload.get("first_air_date") or None,
            in_production=bool(payload.get("in_production", False)),
            season_count=self._as_int(payload.get("number_of_seasons")),
            episode_count=self._as_int(payload.get("number_of_episodes")),
        )

    async def fetch_seasons(self, tmdb_id: int) -> list[RemoteSeason]:
        payload = await self._get(f"/tv/{tmdb_id}")
        seasons: list[RemoteSeason] = []
        for entry in payload.get("seasons") or []:
            if not isinstance(entry, dict) or entry.get("id") is None:
                continue
            seasons.append(
                RemoteSeason(
                    tmdb_id=int(entry["id"]),
                    season_number=self._as_int(entry.get("season_number")),
                    name=entry.get("name") or None,
                    overview=entry.get("overview") or None,
                    release_date=entry.get("air_date") or None,
                    episode_count=self._as_int(entry.get("episode_count")),
                )
            )
        return seasons

    async def fetch_episodes(self, tmdb_id: int, season_number: int) -> list[RemoteEpisode]:
        payload = await self._get(f"/tv/{tmdb_id}/season/{season_number}")
        episodes: list[RemoteEpisode] = []
        for entry in payload.get("episodes") or []:
            if not isinstance(entry, dict) or entry.get("id") is None:
                continue
            runtime = entry.get("runtime")
            episodes.append(
                RemoteEpisode(
                    tmdb_id=int(entry["id"]),
                    season_number=self._as_int(entry.get("season_number"), season_number),
                    episode_number=self._as_int(entry.get("episode_number")),
                    title=entry.get("name") or None,
                    overview=entry.get("overview") or None,
                    air_date=entry.get("air_date") or None,
                    runtime=int(runtime) if isinstance(runtime, (int, float)) else None,
                )
            )
        return episodes

    async def _get(self, endpoint: str) -> dict[str, Any]:
        params = {"api_key": self._settings.tmdb_api_key, "language": "en-US"}
        response = await self._client.get(endpoint, params=params)
        if response.status_code >= 400:
            logger.warning("TMDB request %s failed: %s", endpoint, response.text)
            response.raise_for_status()
        try:
            data = response.json()
        except ValueError as exc:
            raise IngestionError(f"TMDB returned invalid JSON for {endpoint}") from exc
        if not isinstance(data, dict):
            raise IngestionError(f"Unexpected TMDB payload for {endpoint}")
        return data

    @staticmethod
    def _as_int(value: Any, default: int = 0) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return default
