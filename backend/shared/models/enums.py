"""Domain enumerations for the Scorefeed worker."""
from __future__ import annotations

from enum import Enum


class CacheCategory(str, Enum):
    """Named TTL bucket for cached upstream data."""
    DEFAULT = "default"
    LIVE = "live"
    UPCOMING = "upcoming"
    COMPLETED = "completed"
    STANDINGS = "standings"
    STATIC_INFO = "static_info"


class PollerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    RESCHEDULED = "rescheduled"
    STOPPED = "stopped"
