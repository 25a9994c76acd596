"""Cache key builders.

Keys are plain strings. The text before the first dynamic segment is the
invalidation scope, so the formats below must not change without updating
the prefix helpers at the bottom of this module.
"""

from __future__ import annotations

ACCOUNT = "account"
PROFILE = "profile"
ADMIN = "admin"

Identifier = int | str


def account_profiles(account_id: Identifier) -> str:
    return f"{ACCOUNT}_{account_id}_profiles"


def account_statistics(account_id: Identifier) -> str:
    return f"{ACCOUNT}_{account_id}_statistics"


def profile_shows(profile_id: Identifier) -> str:
    return f"{PROFILE}_{profile_id}_shows"


def profile_show_details(profile_id: Identifier, show_id: Identifier) -> str:
    return f"{PROFILE}_{profile_id}_show_details_{show_id}"


def profile_episodes(profile_id: Identifier) -> str:
    return f"{PROFILE}_{profile_id}_episodes"


def profile_recent_episodes(profile_id: Identifier) -> str:
    return f"{PROFILE}_{profile_id}_recent_episodes"


def profile_upcoming_episodes(profile_id: Identifier) -> str:
    return f"{PROFILE}_{profile_id}_upcoming_episodes"


def profile_unwatched_episodes(profile_id: Identifier) -> str:
    return f"{PROFILE}_{profile_id}_unwatched_episodes"


def profile_statistics(profile_id: Identifier) -> str:
    return f"{PROFILE}_{profile_id}_statistics"


def profile_show_statistics(profile_id: Identifier) -> str:
    return f"{PROFILE}_{profile_id}_show_stats"


def profile_watch_progress(profile_id: Identifier) -> str:
    return f"{PROFILE}_{profile_id}_watch_progress"


def admin_show_seasons(show_id: Identifier) -> str:
    return f"{ADMIN}_show_seasons_{show_id}"


def admin_show_details(show_id: Identifier) -> str:
    return f"{ADMIN}_show_details_{show_id}"


def admin_shows_page(page: int, limit: int) -> str:
    return f"{ADMIN}_shows_{page}_{limit}"


def profile_statistics_keys(profile_id: Identifier) -> tuple[str, ...]:
    """Every statistics key derived from a profile's watch statuses."""

    return (
        profile_statistics(profile_id),
        profile_show_statistics(profile_id),
        profile_watch_progress(profile_id),
    )


# Prefixes used with ``CacheService.invalidate_pattern``. Each one ends on a
# separator so that profile 1 never matches profile 10.


def all_profile_data_prefix(profile_id: Identifier) -> str:
    return f"{PROFILE}_{profile_id}_"


def profile_show_details_prefix(profile_id: Identifier) -> str:
    return f"{PROFILE}_{profile_id}_show_details_"


def all_account_data_prefix(account_id: Identifier) -> str:
    return f"{ACCOUNT}_{account_id}_"


def admin_shows_pages_prefix() -> str:
    return f"{ADMIN}_shows_"
