"""
Applies reconciliation decisions to the organization and product tables.

The mutator never commits: the caller owns the transaction for each row so
a failed write rolls back that row alone.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from sqlalchemy.orm import Session

from certsync.models import AuditOperation, db

from ..errors import MutationNotPermitted
from .audit import changed_fields, record_audit
from .backup_service import MutationPermit
from .decision import Action, ReconciliationDecision
from .existence import ExistenceCheck, WrittenEntity
from .store import EntityKind, EntityStore
from .undo_service import INSERT_ORGANIZATION, INSERT_PRODUCT

_ORGANIZATION_INSERTS = frozenset({Action.INSERT_BOTH, Action.INSERT_ORG_UPDATE_PRODUCT})
_ORGANIZATION_UPDATES = frozenset({Action.UPDATE_BOTH, Action.UPDATE_ORG_INSERT_PRODUCT})
_PRODUCT_INSERTS = frozenset({Action.INSERT_BOTH, Action.UPDATE_ORG_INSERT_PRODUCT})
_PRODUCT_UPDATES = frozenset({Action.UPDATE_BOTH, Action.INSERT_ORG_UPDATE_PRODUCT})


@dataclass
class MutationResult:
    organization_inserted: bool = False
    organization_updated: bool = False
    product_inserted: bool = False
    product_updated: bool = False
    undo_actions: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    written: list[WrittenEntity] = field(default_factory=list)

    @property
    def inserted(self) -> int:
        return int(self.organization_inserted) + int(self.product_inserted)

    @property
    def updated(self) -> int:
        return int(self.organization_updated) + int(self.product_updated)


class CertificateMutator:
    """Writes one decision's inserts and updates plus their audit entries."""

    def __init__(
        self,
        permit: MutationPermit,
        *,
        session: Session | None = None,
        store: EntityStore | None = None,
        actor: str | None = None,
    ):
        if not isinstance(permit, MutationPermit):
            raise MutationNotPermitted("Mutations require a permit from the backup phase")
        self.permit = permit
        self.session: Session = session or db.session
        self.store = store or EntityStore(self.session)
        self.actor = actor

    @property
    def batch_id(self) -> int:
        return self.permit.batch_id

    def apply(self, decision: ReconciliationDecision) -> MutationResult:
        result = MutationResult()
        if not decision.action.is_write:
            return result

        extraction = decision.extraction
        organization = extraction.organization
        if organization is not None:
            if decision.action in _ORGANIZATION_INSERTS:
                self._insert(EntityKind.ORGANIZATION, dict(organization), result)
                result.organization_inserted = True
            elif decision.action in _ORGANIZATION_UPDATES:
                self._update(
                    EntityKind.ORGANIZATION, extraction.organization_key, organization, decision.organization_check, result
                )
                result.organization_updated = True

        product = extraction.product
        # A product fragment without codificacion cannot be keyed
        if product is not None and extraction.product_key:
            values = dict(product)
            if extraction.organization_key:
                values["organization_cuit"] = extraction.organization_key
            if decision.action in _PRODUCT_INSERTS:
                self._insert(EntityKind.PRODUCT, values, result)
                result.product_inserted = True
            elif decision.action in _PRODUCT_UPDATES:
                self._update(EntityKind.PRODUCT, extraction.product_key, values, decision.product_check, result)
                result.product_updated = True

        return result

    def _insert(self, kind: EntityKind, values: dict[str, Any], result: MutationResult) -> None:
        entity = self.store.insert(kind, values)
        key = values.get("cuit") if kind is EntityKind.ORGANIZATION else values.get("codificacion")
        result.written.append(WrittenEntity.capture(kind, key, entity))
        record_audit(
            self.session,
            entity_type=kind.value,
            entity_key=key,
            operation=AuditOperation.INSERT,
            batch_id=self.batch_id,
            fields=sorted(values),
            new_values=values,
            performed_by=self.actor,
        )
        if kind is EntityKind.ORGANIZATION:
            result.undo_actions.append((INSERT_ORGANIZATION, {"cuit": key, "organization_id": entity.id}))
        else:
            result.undo_actions.append((INSERT_PRODUCT, {"codificacion": key, "product_id": entity.id}))

    def _update(
        self,
        kind: EntityKind,
        key: str,
        values: Mapping[str, Any],
        check: ExistenceCheck,
        result: MutationResult,
    ) -> None:
        previous = dict(check.stored_snapshot or {})
        entity = self.store.update(kind, key, values, expected_version=check.stored_version)
        result.written.append(WrittenEntity.capture(kind, key, entity))
        fields = changed_fields(previous, values)
        record_audit(
            self.session,
            entity_type=kind.value,
            entity_key=key,
            operation=AuditOperation.UPDATE,
            batch_id=self.batch_id,
            fields=fields,
            previous_values={name: previous.get(name) for name in fields},
            new_values={name: values[name] for name in fields},
            performed_by=self.actor,
        )
