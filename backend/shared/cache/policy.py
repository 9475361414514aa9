"""
TTL policy for cached upstream data.

Maps a semantic category to a time-to-live and classifies raw match status
codes into the live / completed / upcoming buckets.
"""
from __future__ import annotations

from typing import Mapping, Optional, Union

from shared.models.enums import CacheCategory

DEFAULT_TTLS: dict[CacheCategory, float] = {
    CacheCategory.DEFAULT: 300.0,
    CacheCategory.LIVE: 60.0,
    CacheCategory.UPCOMING: 600.0,
    CacheCategory.COMPLETED: 3600.0,
    CacheCategory.STANDINGS: 3600.0,
    CacheCategory.STATIC_INFO: 86400.0,
}

# Category names used by older callers
CATEGORY_ALIASES: dict[str, CacheCategory] = {
    "live_matches": CacheCategory.LIVE,
    "upcoming_matches": CacheCategory.UPCOMING,
    "completed_matches": CacheCategory.COMPLETED,
    "league_info": CacheCategory.STATIC_INFO,
    "team_info": CacheCategory.STATIC_INFO,
    "player_info": CacheCategory.STATIC_INFO,
    "staticInfo": CacheCategory.STATIC_INFO,
}

LIVE_STATUSES = frozenset({"LIVE", "IN_PLAY", "1H", "2H", "HT", "ET", "P", "BT", "SUSP"})
COMPLETED_STATUSES = frozenset({"FT", "AET", "PEN", "AWD", "WO", "CANC", "ABD", "PST"})


def category_for_status(status: Optional[str]) -> CacheCategory:
    """Classify a raw upstream status code. Unknown and missing codes are upcoming."""
    if not status:
        return CacheCategory.UPCOMING
    code = status.strip().upper()
    if code in LIVE_STATUSES:
        return CacheCategory.LIVE
    if code in COMPLETED_STATUSES:
        return CacheCategory.COMPLETED
    return CacheCategory.UPCOMING


def resolve_category(category: Union[CacheCategory, str, None]) -> CacheCategory:
    """Normalize a category name; anything unrecognised maps to ``default``."""
    if isinstance(category, CacheCategory):
        return category
    if not category:
        return CacheCategory.DEFAULT
    if category in CATEGORY_ALIASES:
        return CATEGORY_ALIASES[category]
    try:
        return CacheCategory(category)
    except ValueError:
        return CacheCategory.DEFAULT


class CachePolicy:
    """Fixed category -> TTL table with ``default`` as the fallback."""

    def __init__(self, ttls: Mapping[Union[CacheCategory, str], float] | None = None) -> None:
        self._ttls: dict[CacheCategory, float] = dict(DEFAULT_TTLS)
        for name, ttl in (ttls or {}).items():
            self._ttls[resolve_category(name)] = float(ttl)

    @classmethod
    def from_settings(cls, settings) -> "CachePolicy":
        return cls(settings.cache_ttls)

    def ttl_for(self, category: Union[CacheCategory, str, None]) -> float:
        """TTL in seconds for a category name."""
        resolved = resolve_category(category)
        return self._ttls.get(resolved, self._ttls[CacheCategory.DEFAULT])

    @staticmethod
    def category_for_status(status: Optional[str]) -> CacheCategory:
        return category_for_status(status)
