"""Watch status values and the aggregation rules shared by every level."""

from __future__ import annotations

from enum import Enum
from typing import Iterable

from .exceptions import ValidationError


class WatchStatus(str, Enum):
    """Closed set of statuses a watch-status record may hold."""

    NOT_WATCHED = "NOT_WATCHED"
    WATCHING = "WATCHING"
    WATCHED = "WATCHED"
    UP_TO_DATE = "UP_TO_DATE"


class ContentType(str, Enum):
    """Levels of the show hierarchy that carry a watch status."""

    SHOW = "show"
    SEASON = "season"
    EPISODE = "episode"


EPISODE_STATUSES: frozenset[WatchStatus] = frozenset(
    {WatchStatus.NOT_WATCHED, WatchStatus.WATCHED}
)
# Statuses a caller may write directly onto a season or show.
DIRECT_STATUSES: frozenset[WatchStatus] = frozenset(
    {WatchStatus.NOT_WATCHED, WatchStatus.WATCHING, WatchStatus.WATCHED}
)
# Targets accepted when a status is pushed down to every descendant.
RECURSIVE_STATUSES: frozenset[WatchStatus] = EPISODE_STATUSES

_COMPLETE = frozenset({WatchStatus.WATCHED, WatchStatus.UP_TO_DATE})

PARENT_TYPES: dict[ContentType, ContentType] = {
    ContentType.EPISODE: ContentType.SEASON,
    ContentType.SEASON: ContentType.SHOW,
}


def parse_status(value: object) -> WatchStatus:
    """Return the ``WatchStatus`` for ``value`` or raise ``ValidationError``."""

    if isinstance(value, WatchStatus):
        return value
    if isinstance(value, str):
        try:
            return WatchStatus(value.strip().upper())
        except ValueError:
            pass
    raise ValidationError(f"Unrecognized watch status: {value!r}")


def parse_content_type(value: object) -> ContentType:
    if isinstance(value, ContentType):
        return value
    if isinstance(value, str):
        try:
            return ContentType(value.strip().lower())
        except ValueError:
            pass
    raise ValidationError(f"Unrecognized content type: {value!r}")


def require_status(
    value: object, allowed: frozenset[WatchStatus], *, context: str
) -> WatchStatus:
    """Parse ``value`` and ensure it is one of ``allowed``."""

    status = parse_status(value)
    if status not in allowed:
        names = ", ".join(sorted(item.value for item in allowed))
        raise ValidationError(
            f"{status.value} is not a valid {context} status (expected one of {names})"
        )
    return status


def aggregate_status(statuses: Iterable[WatchStatus]) -> WatchStatus:
    """Derive a parent status from its children's statuses.

    ``UP_TO_DATE`` children count as complete, but the result is never
    ``UP_TO_DATE``; that marker is only set by the new-content policy.
    """

    values = list(statuses)
    if not values:
        return WatchStatus.NOT_WATCHED
    if all(status in _COMPLETE for status in values):
        return WatchStatus.WATCHED
    if all(status is WatchStatus.NOT_WATCHED for status in values):
        return WatchStatus.NOT_WATCHED
    return WatchStatus.WATCHING


def reconcile_status(
    current: WatchStatus, children: Iterable[WatchStatus]
) -> WatchStatus:
    """Return the status a reconciliation pass should store for a parent.

    An ``UP_TO_DATE`` marker survives while the children are a mix of watched
    and unwatched content, which is exactly the state new content leaves behind.
    """

    derived = aggregate_status(children)
    if current is WatchStatus.UP_TO_DATE and derived is WatchStatus.WATCHING:
        return current
    return derived


def demote_for_new_content(current: WatchStatus) -> WatchStatus | None:
    """Return ``UP_TO_DATE`` if new content should flag ``current``, else ``None``."""

    if current is WatchStatus.WATCHED:
        return WatchStatus.UP_TO_DATE
    return None
