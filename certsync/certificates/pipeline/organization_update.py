"""
Interactive bulk update of organizations.

Uploaded organization records are matched against the registry, grouped for
review, and then applied one operation at a time as chosen by the reviewer.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from certsync.models import AuditOperation, DuplicateResolutionStatus, PotentialDuplicate, db

from ..errors import StoreError
from .audit import changed_fields, record_audit
from .extract import ORGANIZATION_FIELDS, clean_value, is_blank, normalize_cuit
from .matching import MatchType, OrganizationMatch, match_organizations
from .store import EntityKind, EntityStore, entity_snapshot
from .undo_service import INSERT_ORGANIZATION, UndoStack

logger = logging.getLogger(__name__)


class OperationKind(str, enum.Enum):
    ADD = "add"
    UPDATE = "update"
    SKIP = "skip"


@dataclass(frozen=True)
class OrganizationOperation:
    """A reviewer's choice for one uploaded record.

    ``target_cuit`` names the stored organization an ``update`` applies to; it
    defaults to the uploaded CUIT and differs when a potential duplicate is
    merged into an existing record.
    """

    kind: OperationKind
    uploaded: Mapping[str, Any]
    target_cuit: str | None = None
    reason: str | None = None


@dataclass
class OperationResult:
    cuit: str | None
    operation: OperationKind
    success: bool
    error: str | None = None
    previous_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None


@dataclass
class OperationReport:
    batch_id: int | None
    results: list[OperationResult] = field(default_factory=list)
    processing_time_ms: int = 0

    def _count(self, kind: OperationKind) -> int:
        return sum(1 for result in self.results if result.success and result.operation is kind)

    @property
    def inserted(self) -> int:
        return self._count(OperationKind.ADD)

    @property
    def updated(self) -> int:
        return self._count(OperationKind.UPDATE)

    @property
    def skipped(self) -> int:
        return self._count(OperationKind.SKIP)

    @property
    def errors(self) -> int:
        return sum(1 for result in self.results if not result.success)

    def summary(self) -> dict[str, int]:
        return {
            "total": len(self.results),
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
        }


@dataclass
class MatchCategories:
    exact_with_changes: list[OrganizationMatch] = field(default_factory=list)
    exact_without_changes: list[OrganizationMatch] = field(default_factory=list)
    potential: list[OrganizationMatch] = field(default_factory=list)
    new: list[OrganizationMatch] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "exact_with_changes": len(self.exact_with_changes),
            "exact_without_changes": len(self.exact_without_changes),
            "potential": len(self.potential),
            "new": len(self.new),
        }


def categorize_matches(matches: Iterable[OrganizationMatch]) -> MatchCategories:
    categories = MatchCategories()
    for match in matches:
        if match.match_type is MatchType.EXACT:
            target = categories.exact_with_changes if match.has_changes else categories.exact_without_changes
            target.append(match)
        elif match.match_type is MatchType.POTENTIAL:
            categories.potential.append(match)
        else:
            categories.new.append(match)
    return categories


def organization_values(record: Mapping[str, Any]) -> dict[str, Any]:
    """Non-blank organization fields from an uploaded record, CUIT as digits."""

    values: dict[str, Any] = {}
    for name in ORGANIZATION_FIELDS:
        value = record.get(name)
        if name == "cuit":
            value = normalize_cuit(value)
        value = clean_value(value)
        if not is_blank(value):
            values[name] = value
    return values


class OrganizationUpdateService:
    def __init__(
        self,
        session: Session | None = None,
        *,
        store: EntityStore | None = None,
        actor: str | None = None,
    ):
        self.session: Session = session or db.session
        self.store = store or EntityStore(self.session)
        self.actor = actor

    def match_uploaded(self, uploaded_records: Iterable[Mapping[str, Any]]) -> list[OrganizationMatch]:
        candidates = [entity_snapshot(organization) for organization in self.store.all(EntityKind.ORGANIZATION)]
        records = [organization_values(record) for record in uploaded_records]
        return match_organizations(records, candidates)

    def categorize_matches(self, matches: Iterable[OrganizationMatch]) -> MatchCategories:
        return categorize_matches(matches)

    def save_potential_duplicates(
        self,
        matches: Iterable[OrganizationMatch],
        *,
        batch_id: int | None = None,
    ) -> list[PotentialDuplicate]:
        """Persist potential matches for later review. Other match types are ignored."""

        saved: list[PotentialDuplicate] = []
        for match in matches:
            if match.match_type is not MatchType.POTENTIAL or match.existing is None:
                continue
            duplicate = PotentialDuplicate(
                batch_id=batch_id,
                existing_organization_cuit=str(match.existing.get("cuit")),
                uploaded_data=dict(match.uploaded),
                confidence_score=match.confidence,
                match_criteria=list(match.match_criteria),
                resolution_status=DuplicateResolutionStatus.PENDING,
            )
            self.session.add(duplicate)
            saved.append(duplicate)
        self.session.commit()
        return saved

    def apply_operations(
        self,
        operations: Sequence[OrganizationOperation],
        *,
        batch_id: int | None = None,
        undo_session_id: str | None = None,
    ) -> OperationReport:
        """
        Apply reviewer operations one by one.

        Each operation commits on its own; a failed one is rolled back and
        reported without stopping the rest.
        """
        started = time.monotonic()
        undo_stack = None
        if undo_session_id:
            undo_stack = UndoStack(undo_session_id, session=self.session, store=self.store)
            undo_stack.ensure_active()

        report = OperationReport(batch_id=batch_id)
        for operation in operations:
            values = organization_values(operation.uploaded)
            cuit = values.get("cuit")
            try:
                if operation.kind is OperationKind.ADD:
                    result = self._add(values, batch_id)
                elif operation.kind is OperationKind.UPDATE:
                    result = self._update(operation.target_cuit or cuit, values, batch_id)
                else:
                    result = self._skip(values, batch_id, operation.reason)
                self.session.commit()
            except (StoreError, SQLAlchemyError, ValueError) as exc:
                self.session.rollback()
                logger.warning(
                    "Organization operation failed",
                    exc_info=True,
                    extra={"certificates_operation": operation.kind.value, "certificates_cuit": cuit},
                )
                result = OperationResult(cuit=cuit, operation=operation.kind, success=False, error=str(exc))
            report.results.append(result)

            if result.success and result.operation is OperationKind.ADD and undo_stack is not None:
                undo_stack.push(
                    INSERT_ORGANIZATION,
                    {"cuit": result.cuit, "organization_id": result.new_values.get("id")},
                    batch_id=batch_id,
                    created_by=self.actor,
                )

        report.processing_time_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Organization bulk update applied",
            extra={"certificates_batch_id": batch_id, **{f"certificates_{k}": v for k, v in report.summary().items()}},
        )
        return report

    def _add(self, values: dict[str, Any], batch_id: int | None) -> OperationResult:
        cuit = values.get("cuit")
        if not cuit:
            raise ValueError("Cannot add an organization without a CUIT")
        entity = self.store.insert(EntityKind.ORGANIZATION, values)
        record_audit(
            self.session,
            entity_type=EntityKind.ORGANIZATION.value,
            entity_key=cuit,
            operation=AuditOperation.INSERT,
            batch_id=batch_id,
            fields=sorted(values),
            new_values=values,
            performed_by=self.actor,
        )
        return OperationResult(
            cuit=cuit,
            operation=OperationKind.ADD,
            success=True,
            new_values={**values, "id": entity.id},
        )

    def _update(self, target_cuit: str | None, values: dict[str, Any], batch_id: int | None) -> OperationResult:
        live = self.store.get_by_key(EntityKind.ORGANIZATION, target_cuit)
        if live is None:
            raise ValueError(f"Organization {target_cuit} not found")
        previous = entity_snapshot(live)
        # The stored CUIT is the identity; an uploaded near-duplicate keeps it
        values = {name: value for name, value in values.items() if name != "cuit"}
        fields = changed_fields(previous, values)
        self.store.update(EntityKind.ORGANIZATION, target_cuit, values, expected_version=live.version)
        record_audit(
            self.session,
            entity_type=EntityKind.ORGANIZATION.value,
            entity_key=target_cuit,
            operation=AuditOperation.UPDATE,
            batch_id=batch_id,
            fields=fields,
            previous_values={name: previous.get(name) for name in fields},
            new_values={name: values[name] for name in fields},
            performed_by=self.actor,
        )
        return OperationResult(
            cuit=target_cuit,
            operation=OperationKind.UPDATE,
            success=True,
            previous_values={name: previous.get(name) for name in fields},
            new_values={name: values[name] for name in fields},
        )

    def _skip(self, values: dict[str, Any], batch_id: int | None, reason: str | None) -> OperationResult:
        cuit = values.get("cuit")
        record_audit(
            self.session,
            entity_type=EntityKind.ORGANIZATION.value,
            entity_key=cuit or "",
            operation=AuditOperation.SKIP,
            batch_id=batch_id,
            new_values=values,
            performed_by=self.actor,
            notes=reason or "Skipped by reviewer",
        )
        return OperationResult(cuit=cuit, operation=OperationKind.SKIP, success=True)
