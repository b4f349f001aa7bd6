"""
Entity store over the organization and product tables.

All writes go through here so natural-key lookups, optimistic concurrency,
and snapshot serialization live in one place.
"""

from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import Date, DateTime, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from certsync.models import Organization, Product, db

from ..errors import StaleWriteError, StoreError

# Keeps IN clauses under SQLite's bound-parameter limit
BATCH_GET_CHUNK_SIZE = 500

_BOOKKEEPING_COLUMNS = frozenset({"id", "version", "created_at", "updated_at"})


class EntityKind(str, enum.Enum):
    ORGANIZATION = "organization"
    PRODUCT = "product"


_ENTITY_MODELS: dict[EntityKind, tuple[type, str]] = {
    EntityKind.ORGANIZATION: (Organization, "cuit"),
    EntityKind.PRODUCT: (Product, "codificacion"),
}


def model_for(kind: EntityKind) -> type:
    return _ENTITY_MODELS[EntityKind(kind)][0]


def key_attribute(kind: EntityKind) -> str:
    return _ENTITY_MODELS[EntityKind(kind)][1]


def writable_columns(kind: EntityKind) -> tuple[str, ...]:
    model = model_for(kind)
    return tuple(column.name for column in model.__table__.columns if column.name not in _BOOKKEEPING_COLUMNS)


def _serialize(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def entity_snapshot(entity) -> dict[str, Any]:
    """Full JSON-safe copy of every column on ``entity``."""

    return {column.name: _serialize(getattr(entity, column.name)) for column in entity.__table__.columns}


def snapshot_values(kind: EntityKind, data: Mapping[str, Any]) -> dict[str, Any]:
    """Turn a stored snapshot back into column values for the writable columns."""

    model = model_for(kind)
    values: dict[str, Any] = {}
    for column in model.__table__.columns:
        if column.name in _BOOKKEEPING_COLUMNS or column.name not in data:
            continue
        raw = data[column.name]
        if raw is not None and isinstance(raw, str):
            if isinstance(column.type, DateTime):
                raw = datetime.fromisoformat(raw)
            elif isinstance(column.type, Date):
                raw = date.fromisoformat(raw)
        values[column.name] = raw
    return values


class EntityStore:
    """Natural-key access to organizations and products."""

    def __init__(self, session: Session | None = None):
        self.session: Session = session or db.session

    def get_by_key(self, kind: EntityKind, key: str | None):
        if not key:
            return None
        model = model_for(kind)
        column = getattr(model, key_attribute(kind))
        return self.session.execute(select(model).where(column == key)).scalar_one_or_none()

    def get_by_id(self, kind: EntityKind, entity_id: int):
        return self.session.get(model_for(kind), entity_id)

    def batch_get(self, kind: EntityKind, keys: Iterable[str]) -> list:
        model = model_for(kind)
        column = getattr(model, key_attribute(kind))
        unique_keys: Sequence[str] = sorted({key for key in keys if key})
        rows = []
        for start in range(0, len(unique_keys), BATCH_GET_CHUNK_SIZE):
            chunk = unique_keys[start : start + BATCH_GET_CHUNK_SIZE]
            rows.extend(self.session.execute(select(model).where(column.in_(chunk)).order_by(model.id)).scalars())
        return rows

    def all(self, kind: EntityKind) -> list:
        model = model_for(kind)
        return list(self.session.execute(select(model).order_by(model.id)).scalars())

    def insert(self, kind: EntityKind, values: Mapping[str, Any]):
        model = model_for(kind)
        allowed = set(writable_columns(kind))
        entity = model(**{name: value for name, value in values.items() if name in allowed})
        try:
            self.session.add(entity)
            self.session.flush()
        except SQLAlchemyError as exc:
            raise StoreError(
                f"Failed to insert {EntityKind(kind).value} {values.get(key_attribute(kind))}: {exc}",
                entity_type=EntityKind(kind).value,
                key=values.get(key_attribute(kind)),
            ) from exc
        return entity

    def update(
        self,
        kind: EntityKind,
        key: str,
        values: Mapping[str, Any],
        *,
        expected_version: int | None,
    ):
        """
        Compare-and-swap update by natural key.

        The write only lands if the row still carries ``expected_version``;
        otherwise ``StaleWriteError`` is raised and nothing changes.
        """

        kind = EntityKind(kind)
        model = model_for(kind)
        column = getattr(model, key_attribute(kind))
        allowed = set(writable_columns(kind))
        payload = {name: value for name, value in values.items() if name in allowed}
        stmt = update(model).where(column == key)
        if expected_version is not None:
            stmt = stmt.where(model.version == expected_version)
        stmt = (
            stmt.values(**payload, version=model.version + 1, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise StoreError(
                f"Failed to update {kind.value} {key}: {exc}",
                entity_type=kind.value,
                key=key,
            ) from exc
        if result.rowcount != 1:
            raise StaleWriteError(kind.value, key, expected_version)
        entity = self.get_by_key(kind, key)
        self.session.refresh(entity)
        return entity

    def overwrite(self, kind: EntityKind, entity_id: int, values: Mapping[str, Any]):
        """Write ``values`` over the row with primary key ``entity_id``."""

        kind = EntityKind(kind)
        entity = self.get_by_id(kind, entity_id)
        if entity is None:
            raise StoreError(
                f"{kind.value} {entity_id} no longer exists",
                entity_type=kind.value,
                key=str(entity_id),
            )
        allowed = set(writable_columns(kind))
        for name, value in values.items():
            if name in allowed:
                setattr(entity, name, value)
        entity.version = (entity.version or 0) + 1
        entity.updated_at = datetime.now(timezone.utc)
        try:
            self.session.flush()
        except SQLAlchemyError as exc:
            raise StoreError(
                f"Failed to restore {kind.value} {entity_id}: {exc}",
                entity_type=kind.value,
                key=str(entity_id),
            ) from exc
        return entity

    def delete(self, kind: EntityKind, key: str) -> bool:
        entity = self.get_by_key(kind, key)
        if entity is None:
            return False
        try:
            self.session.delete(entity)
            self.session.flush()
        except SQLAlchemyError as exc:
            raise StoreError(
                f"Failed to delete {EntityKind(kind).value} {key}: {exc}",
                entity_type=EntityKind(kind).value,
                key=key,
            ) from exc
        return True
