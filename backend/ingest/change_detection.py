"""
Per-match change detection across polling cycles.

Keeps the last observed ``NormalizedRecord`` per external id and diffs each
new observation against it on a fixed set of fields. The stored snapshot is
replaced on every observation, changed or not, so the next comparison is
always against the most recent poll.
"""
from __future__ import annotations

from typing import Iterable, Optional, Sequence

from pydantic import ValidationError

from shared.cache.backends import CacheBackend
from shared.cache.policy import category_for_status
from shared.config import Settings
from shared.errors import ChangeDetectionError
from shared.models.domain import ChangeRecord, FieldChange, NormalizedRecord
from shared.models.enums import CacheCategory
from shared.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TRACKED_FIELDS: tuple[str, ...] = ("status", "score_home", "score_away")


class SnapshotStore:
    """
    Last-seen record per external id, on a cache backend.

    Snapshots expire after ``ttl_s``; finished matches use ``completed_ttl_s``
    when set so they stop occupying the backend long after the final whistle.
    """

    def __init__(
        self,
        backend: CacheBackend,
        prefix: str = "match_previous_state:",
        ttl_s: int = 86400,
        completed_ttl_s: Optional[int] = 3600,
    ) -> None:
        self._backend = backend
        self._prefix = prefix
        self._ttl_s = ttl_s
        self._completed_ttl_s = completed_ttl_s

    @classmethod
    def from_settings(cls, backend: CacheBackend, settings: Settings) -> "SnapshotStore":
        return cls(
            backend,
            prefix=settings.snapshot_prefix,
            ttl_s=settings.snapshot_ttl_s,
            completed_ttl_s=settings.snapshot_completed_ttl_s,
        )

    def _key(self, external_id: str) -> str:
        return f"{self._prefix}{external_id}"

    def ttl_for(self, record: NormalizedRecord) -> int:
        if (
            self._completed_ttl_s is not None
            and category_for_status(record.status) is CacheCategory.COMPLETED
        ):
            return self._completed_ttl_s
        return self._ttl_s

    async def load(self, external_id: str) -> Optional[NormalizedRecord]:
        raw = await self._backend.get(self._key(external_id))
        if raw is None:
            return None
        try:
            return NormalizedRecord.model_validate_json(raw)
        except ValidationError:
            logger.warning("snapshot_unreadable", external_id=external_id)
            return None

    async def save(self, record: NormalizedRecord) -> None:
        await self._backend.set(
            self._key(record.external_id), record.model_dump_json(), self.ttl_for(record)
        )


class ChangeDetector:
    """
    Decides whether a new observation of a match is news.

    Args:
        store: Snapshot store shared by every poller.
        tracked_fields: Declared ``NormalizedRecord`` fields to compare.
    """

    def __init__(
        self,
        store: SnapshotStore,
        tracked_fields: Sequence[str] = DEFAULT_TRACKED_FIELDS,
    ) -> None:
        unknown = [f for f in tracked_fields if f not in NormalizedRecord.model_fields]
        if unknown:
            raise ValueError(f"Not NormalizedRecord fields: {', '.join(unknown)}")
        self._store = store
        self._fields = tuple(tracked_fields)

    @property
    def tracked_fields(self) -> tuple[str, ...]:
        return self._fields

    def diff(self, previous: NormalizedRecord, current: NormalizedRecord) -> dict[str, FieldChange]:
        changes: dict[str, FieldChange] = {}
        for name in self._fields:
            before = getattr(previous, name)
            after = getattr(current, name)
            if before != after:
                changes[name] = FieldChange(previous=before, current=after)
        return changes

    async def detect(self, external_id: str, record: NormalizedRecord) -> ChangeRecord:
        """
        Compare ``record`` with the stored snapshot for ``external_id``.

        The first sighting only records a baseline and never reports changes.

        Raises:
            ChangeDetectionError: missing id, or the snapshot store failed.
        """
        if not external_id:
            raise ChangeDetectionError("record has no external id", external_id=external_id)

        try:
            previous = await self._store.load(external_id)
            await self._store.save(record)
        except Exception as exc:
            raise ChangeDetectionError(
                f"snapshot store unavailable: {exc}", external_id=external_id
            ) from exc

        if previous is None:
            return ChangeRecord(external_id=external_id, has_changes=False, record=record)

        changes = self.diff(previous, record)
        if changes:
            logger.info(
                "match_changes_detected",
                external_id=external_id,
                changes={k: v.model_dump(mode="json") for k, v in changes.items()},
            )
        return ChangeRecord(
            external_id=external_id,
            has_changes=bool(changes),
            diff=changes,
            record=record,
        )

    async def detect_batch(
        self, records: Iterable[NormalizedRecord]
    ) -> tuple[list[ChangeRecord], list[str]]:
        """
        Run ``detect`` for each record. A failing record is logged and listed
        in the returned failures; the rest of the batch is still processed.
        """
        results: list[ChangeRecord] = []
        failures: list[str] = []
        for record in records:
            try:
                results.append(await self.detect(record.external_id, record))
            except ChangeDetectionError as exc:
                failures.append(record.external_id)
                logger.warning(
                    "change_detection_failed",
                    external_id=record.external_id,
                    error=str(exc),
                )
        return results, failures
