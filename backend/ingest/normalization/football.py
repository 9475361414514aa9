"""
API-Football fixtures normalizer.

Maps ``{"response": [{"fixture": ..., "league": ..., "teams": ..., "goals": ...}]}``
to ``NormalizedRecord``s. Fixtures without an id cannot be tracked across
polls and are dropped.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from shared.errors import NormalizationError
from shared.models.domain import NormalizedRecord
from shared.utils.logging import get_logger

logger = get_logger(__name__)


def _safe_int(val: Any) -> int | None:
    if val is None:
        return None
    try:
        return int(val)
    except (ValueError, TypeError):
        return None


def _str_or_none(val: Any) -> Optional[str]:
    if val is None or val == "":
        return None
    return str(val)


def _parse_kickoff(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


def normalize_fixture(item: dict[str, Any]) -> Optional[NormalizedRecord]:
    """Normalize one fixture entry; returns None when it has no fixture id."""
    fixture = item.get("fixture") or {}
    external_id = _str_or_none(fixture.get("id"))
    if external_id is None:
        return None

    status = fixture.get("status") or {}
    league = item.get("league") or {}
    teams = item.get("teams") or {}
    goals = item.get("goals") or {}
    venue = fixture.get("venue") or {}

    return NormalizedRecord(
        external_id=external_id,
        status=_str_or_none(status.get("short")),
        status_long=_str_or_none(status.get("long")),
        elapsed=_safe_int(status.get("elapsed")),
        score_home=_safe_int(goals.get("home")),
        score_away=_safe_int(goals.get("away")),
        league_id=_str_or_none(league.get("id")),
        league_name=_str_or_none(league.get("name")),
        home_team=_str_or_none((teams.get("home") or {}).get("name")),
        away_team=_str_or_none((teams.get("away") or {}).get("name")),
        kickoff=_parse_kickoff(fixture.get("date")),
        extra={
            "season": league.get("season"),
            "round": league.get("round"),
            "country": league.get("country"),
            "referee": fixture.get("referee"),
            "venue": venue.get("name"),
            "score": item.get("score") or {},
        },
    )


def normalize_fixtures(payload: Any) -> list[NormalizedRecord]:
    """
    Normalize a fixtures payload.

    Raises:
        NormalizationError: the payload is not a fixtures document, carries
            provider errors, or a fixture entry is malformed.
    """
    if not isinstance(payload, dict):
        raise NormalizationError(f"expected a JSON object, got {type(payload).__name__}")

    errors = payload.get("errors")
    if errors:
        raise NormalizationError(f"provider reported errors: {errors}")

    entries = payload.get("response")
    if not isinstance(entries, list):
        raise NormalizationError("payload has no 'response' list")

    records: list[NormalizedRecord] = []
    dropped = 0
    for idx, item in enumerate(entries):
        if not isinstance(item, dict):
            raise NormalizationError(f"fixture #{idx} is not an object")
        try:
            record = normalize_fixture(item)
        except (AttributeError, ValueError) as exc:
            raise NormalizationError(f"fixture #{idx} is malformed: {exc}") from exc
        if record is None:
            dropped += 1
            continue
        records.append(record)

    if dropped:
        logger.warning("fixtures_without_id_dropped", count=dropped)
    return records
