"""
Existence checks and the recency rule.

A stored organization or product is only overwritten by evidence that is
strictly newer than its last modification.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Mapping

from .extract import ExtractionResult
from .store import EntityKind, EntityStore, entity_snapshot


def to_utc_datetime(value: date | datetime | None) -> datetime | None:
    """Dates become UTC midnight; naive datetimes are read as UTC."""

    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def is_newer(emission_date: date | datetime | None, stored_timestamp: date | datetime | None) -> bool:
    emitted = to_utc_datetime(emission_date)
    stored = to_utc_datetime(stored_timestamp)
    if emitted is None or stored is None:
        return False
    return emitted > stored


@dataclass(frozen=True)
class ExistenceCheck:
    exists: bool
    stored_snapshot: Mapping[str, Any] | None = None
    is_newer: bool = False
    stored_timestamp: datetime | None = None
    stored_version: int | None = None
    entity_id: int | None = None


NOT_FOUND = ExistenceCheck(exists=False)


class ExistenceChecker:
    """Point lookups by natural key; lookup failures propagate to the caller."""

    def __init__(self, store: EntityStore | None = None):
        self.store = store or EntityStore()

    def check(self, kind: EntityKind, key: str | None, emission_date: date | datetime) -> ExistenceCheck:
        if not key:
            return NOT_FOUND
        entity = self.store.get_by_key(kind, key)
        if entity is None:
            return NOT_FOUND
        stored_timestamp = to_utc_datetime(entity.updated_at or entity.created_at)
        return ExistenceCheck(
            exists=True,
            stored_snapshot=entity_snapshot(entity),
            is_newer=is_newer(emission_date, stored_timestamp),
            stored_timestamp=stored_timestamp,
            stored_version=entity.version,
            entity_id=entity.id,
        )

    def check_organization(self, extraction: ExtractionResult) -> ExistenceCheck:
        return self.check(EntityKind.ORGANIZATION, extraction.organization_key, extraction.emission_date)

    def check_product(self, extraction: ExtractionResult) -> ExistenceCheck:
        return self.check(EntityKind.PRODUCT, extraction.product_key, extraction.emission_date)


@dataclass(frozen=True)
class WrittenEntity:
    """A row as it stood right after the running batch wrote it."""

    kind: EntityKind
    key: str
    snapshot: Mapping[str, Any]
    version: int
    entity_id: int

    @classmethod
    def capture(cls, kind: EntityKind, key: str, entity) -> "WrittenEntity":
        return cls(
            kind=EntityKind(kind),
            key=key,
            snapshot=entity_snapshot(entity),
            version=entity.version,
            entity_id=entity.id,
        )


class BatchWriteLedger:
    """
    Organizations and products the running batch has already written.

    Later rows for one of these keys are checked against the batch's own
    write instead of the pre-batch lookup: the expected version is the one
    the batch produced, and the stored timestamp is the emission date the
    batch wrote with. An equal emission date counts as newer here, so rows
    of one upload that share a date apply in file order.
    """

    def __init__(self):
        self._entries: dict[tuple[EntityKind, str], tuple[WrittenEntity, datetime]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, written: WrittenEntity, emission_date: date | datetime) -> None:
        with self._lock:
            self._entries[(written.kind, written.key)] = (written, to_utc_datetime(emission_date))

    def check(self, kind: EntityKind, key: str | None, emission_date: date | datetime) -> ExistenceCheck | None:
        """The check for ``key`` as of this batch's last write, or ``None`` if it wrote nothing there."""
        if not key:
            return None
        with self._lock:
            entry = self._entries.get((EntityKind(kind), key))
        if entry is None:
            return None
        written, written_at = entry
        emitted = to_utc_datetime(emission_date)
        return ExistenceCheck(
            exists=True,
            stored_snapshot=written.snapshot,
            is_newer=emitted is not None and emitted >= written_at,
            stored_timestamp=written_at,
            stored_version=written.version,
            entity_id=written.entity_id,
        )
