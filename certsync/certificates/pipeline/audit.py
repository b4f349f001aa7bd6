"""Audit trail helpers shared by every component that writes entities."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from sqlalchemy.orm import Session

from certsync.models import AuditLogEntry, AuditOperation


def _json_safe(values: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if values is None:
        return None
    safe: dict[str, Any] = {}
    for key, value in values.items():
        safe[key] = value.isoformat() if hasattr(value, "isoformat") else value
    return safe


def changed_fields(previous: Mapping[str, Any], new_values: Mapping[str, Any]) -> list[str]:
    """Fields in ``new_values`` whose value differs from ``previous``."""

    previous_safe = _json_safe(previous) or {}
    new_safe = _json_safe(new_values) or {}
    return [name for name, value in new_safe.items() if previous_safe.get(name) != value]


def record_audit(
    session: Session,
    *,
    entity_type: str,
    entity_key: str,
    operation: AuditOperation,
    batch_id: int | None = None,
    fields: Sequence[str] | None = None,
    previous_values: Mapping[str, Any] | None = None,
    new_values: Mapping[str, Any] | None = None,
    performed_by: str | None = None,
    notes: str | None = None,
) -> AuditLogEntry:
    entry = AuditLogEntry(
        entity_type=entity_type,
        entity_key=str(entity_key),
        batch_id=batch_id,
        operation_type=operation,
        changed_fields=list(fields) if fields is not None else None,
        previous_values=_json_safe(previous_values),
        new_values=_json_safe(new_values),
        performed_by=performed_by,
        notes=notes,
    )
    session.add(entry)
    return entry
