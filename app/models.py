"""Pydantic models describing status changes and read-model payloads."""

from __future__ import annotations

from collections import Counter
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from .status import ContentType, WatchStatus


class StatusChange(BaseModel):
    """One persisted status transition produced by a cascade."""

    model_config = ConfigDict(frozen=True)

    entity_type: ContentType
    entity_id: int
    old_status: WatchStatus | None
    new_status: WatchStatus
    reason: str = ""
    changed_at: datetime = Field(default_factory=datetime.utcnow)

    def describe(self) -> str:
        previous = self.old_status.value if self.old_status else "untracked"
        return (
            f"{self.entity_type.value} {self.entity_id}: "
            f"{previous} -> {self.new_status.value}"
        )


class StatusUpdateResult(BaseModel):
    """Outcome of a watch-status mutation returned to callers."""

    changes: list[StatusChange] = Field(default_factory=list)
    message: str
    invalidated_keys: list[str] = Field(default_factory=list)
    show_id: int | None = None

    @classmethod
    def from_changes(
        cls,
        changes: list[StatusChange],
        invalidated_keys: list[str],
        show_id: int | None = None,
    ) -> "StatusUpdateResult":
        return cls(
            changes=changes,
            message=format_changes_message(changes),
            invalidated_keys=invalidated_keys,
            show_id=show_id,
        )


def format_changes_message(changes: list[StatusChange]) -> str:
    """Summarise changes as e.g. ``Updated status for 2 episodes, 1 season``."""

    if not changes:
        return "No status changes occurred"
    counts = Counter(change.entity_type.value for change in changes)
    parts = [
        f"{count} {entity_type}{'s' if count > 1 else ''}"
        for entity_type, count in counts.items()
    ]
    return f"Updated status for {', '.join(parts)}"


class EpisodeView(BaseModel):
    id: int
    season_id: int
    season_number: int
    episode_number: int
    title: str | None = None
    air_date: str | None = None
    runtime: int | None = None
    status: WatchStatus


class SeasonView(BaseModel):
    id: int
    season_number: int
    name: str | None = None
    release_date: str | None = None
    status: WatchStatus
    episodes: list[EpisodeView] = Field(default_factory=list)


class ProfileShow(BaseModel):
    """Show summary in a profile's show list."""

    id: int
    tmdb_id: int
    title: str
    release_date: str | None = None
    in_production: bool = True
    season_count: int = 0
    episode_count: int = 0
    status: WatchStatus


class ShowDetails(ProfileShow):
    overview: str | None = None
    seasons: list[SeasonView] = Field(default_factory=list)


class NextUnwatchedShow(BaseModel):
    """A show in progress with the next episodes the profile has not watched."""

    show_id: int
    title: str
    status: WatchStatus
    last_activity: datetime | None = None
    episodes: list[EpisodeView] = Field(default_factory=list)


class ShowStatistics(BaseModel):
    total: int = 0
    status_counts: dict[WatchStatus, int] = Field(default_factory=dict)
    watch_progress: int = 0


class ShowProgress(BaseModel):
    show_id: int
    title: str
    status: WatchStatus
    total_episodes: int
    watched_episodes: int
    percent_complete: int


class WatchProgress(BaseModel):
    total_episodes: int = 0
    watched_episodes: int = 0
    overall_progress: int = 0
    shows: list[ShowProgress] = Field(default_factory=list)


class AccountStatistics(BaseModel):
    account_id: int
    profile_count: int = 0
    shows: ShowStatistics = Field(default_factory=ShowStatistics)
    total_episodes: int = 0
    watched_episodes: int = 0
    profiles: dict[int, ShowStatistics] = Field(default_factory=dict)


class AdminSeason(BaseModel):
    id: int
    tmdb_id: int
    season_number: int
    name: str | None = None
    release_date: str | None = None
    episode_count: int = 0


def percent(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole > 0 else 0


class ProfileStatistics(BaseModel):
    profile_id: int
    shows: ShowStatistics = Field(default_factory=ShowStatistics)
    progress: WatchProgress = Field(default_factory=WatchProgress)


class EpisodeStatusRequest(BaseModel):
    episode_id: int
    status: str


class SeasonStatusRequest(BaseModel):
    season_id: int
    status: str
    recursive: bool = False


class ShowStatusRequest(BaseModel):
    show_id: int
    status: str
    recursive: bool = False


class FavoriteRequest(BaseModel):
    """Favorite stored content by id, or a show by its TMDB id."""

    content_type: str = "show"
    content_id: int | None = None
    tmdb_id: int | None = None
    initial_status: str = "NOT_WATCHED"
