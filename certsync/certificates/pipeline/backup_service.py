"""
Pre-mutation backups and restores.

A batch may only mutate once ``BackupService`` has handed it a
``MutationPermit``. The permit is issued after the snapshot of every affected
row has been committed, or when the caller explicitly opts out of backups.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from certsync.models import (
    AuditOperation,
    BackupOrganization,
    BackupProduct,
    BackupSnapshot,
    BackupSnapshotStatus,
    RestoreHistory,
    RestoreStatus,
    UploadBatch,
    db,
)

from ..errors import BackupCancelled, BackupError, StoreError
from ..metrics import record_backup, record_restore
from .audit import changed_fields, record_audit
from .decision import ReconciliationDecision
from .store import EntityKind, EntityStore, entity_snapshot, snapshot_values

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_HISTORY_LIMIT = 50
SNAPSHOT_TYPE_BEFORE_PROCESSING = "before_processing"


class CancellationToken:
    """Cooperative cancellation flag shared between the caller and a batch."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class MutationPermit:
    """Proof that the snapshot phase for ``batch_id`` has finished."""

    batch_id: int
    snapshot_id: int | None

    @property
    def backed_up(self) -> bool:
        return self.snapshot_id is not None


@dataclass
class RestoreOutcome:
    snapshot_id: int
    organizations_restored: int = 0
    products_restored: int = 0
    errors: list[str] = field(default_factory=list)
    status: RestoreStatus = RestoreStatus.COMPLETED
    history_id: int | None = None

    @property
    def total_restored(self) -> int:
        return self.organizations_restored + self.products_restored


@dataclass
class SnapshotDetails:
    snapshot: BackupSnapshot
    organizations: Sequence[BackupOrganization]
    products: Sequence[BackupProduct]
    last_restore: RestoreHistory | None


def collect_affected_keys(decisions: Iterable[ReconciliationDecision]) -> tuple[list[str], list[str]]:
    """Natural keys of every stored row a set of decisions may touch."""

    organization_keys: set[str] = set()
    product_keys: set[str] = set()
    for decision in decisions:
        if decision.organization_check.exists and decision.extraction.organization_key:
            organization_keys.add(decision.extraction.organization_key)
        if decision.product_check.exists and decision.extraction.product_key:
            product_keys.add(decision.extraction.product_key)
    return sorted(organization_keys), sorted(product_keys)


def classify_restore(restored: int, errors: Sequence[str]) -> RestoreStatus:
    if not errors:
        return RestoreStatus.COMPLETED
    if restored > 0:
        return RestoreStatus.PARTIAL
    return RestoreStatus.FAILED


class BackupService:
    """Snapshot, restore, and snapshot bookkeeping."""

    def __init__(self, session: Session | None = None, store: EntityStore | None = None):
        self.session: Session = session or db.session
        self.store = store or EntityStore(self.session)

    def _require_batch(self, batch_id: int) -> UploadBatch:
        batch = self.session.get(UploadBatch, batch_id)
        if batch is None:
            raise ValueError(f"Upload batch {batch_id} not found")
        return batch

    def skip_backup(self, batch_id: int) -> MutationPermit:
        """Issue a permit without a snapshot; only for callers that disabled backups."""

        self._require_batch(batch_id)
        record_backup("skipped")
        logger.info("Backup disabled for batch", extra={"certificates_batch_id": batch_id})
        return MutationPermit(batch_id=batch_id, snapshot_id=None)

    def create_snapshot(
        self,
        batch_id: int,
        decisions: Sequence[ReconciliationDecision],
        *,
        created_by: str | None = None,
        description: str | None = None,
        cancellation: CancellationToken | None = None,
    ) -> MutationPermit:
        """
        Copy every affected live row and return a permit to mutate.

        Raises:
            ValueError: If the batch does not exist
            BackupCancelled: If ``cancellation`` fired; counters and status
                are still committed for the rows already copied
            BackupError: If the snapshot could not be written
        """
        batch = self._require_batch(batch_id)
        organization_keys, product_keys = collect_affected_keys(decisions)

        snapshot = BackupSnapshot(
            batch_id=batch_id,
            created_by=created_by,
            snapshot_type=SNAPSHOT_TYPE_BEFORE_PROCESSING,
            status=BackupSnapshotStatus.IN_PROGRESS,
            affected_organization_keys=organization_keys,
            affected_product_keys=product_keys,
            organization_row_count=0,
            product_row_count=0,
            metadata_json={
                "filename": batch.filename,
                "description": description or f"Automatic backup before processing {batch.filename}",
            },
        )
        try:
            self.session.add(snapshot)
            self.session.flush()
            cancelled = self._copy_rows(snapshot, organization_keys, product_keys, cancellation)
            snapshot.status = BackupSnapshotStatus.CANCELLED if cancelled else BackupSnapshotStatus.COMPLETED
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            record_backup("failed")
            logger.error(
                "Backup snapshot failed; batch will not be processed",
                exc_info=True,
                extra={"certificates_batch_id": batch_id},
            )
            raise BackupError(f"Failed to create backup snapshot for batch {batch_id}: {exc}") from exc

        snapshot_id = snapshot.id
        if cancelled:
            record_backup("cancelled")
            logger.warning(
                "Backup snapshot cancelled",
                extra={
                    "certificates_batch_id": batch_id,
                    "certificates_snapshot_id": snapshot_id,
                    "certificates_organizations_copied": snapshot.organization_row_count,
                    "certificates_products_copied": snapshot.product_row_count,
                },
            )
            raise BackupCancelled(f"Backup snapshot {snapshot_id} for batch {batch_id} was cancelled")

        record_backup("completed")
        logger.info(
            "Backup snapshot created",
            extra={
                "certificates_batch_id": batch_id,
                "certificates_snapshot_id": snapshot_id,
                "certificates_organizations_copied": snapshot.organization_row_count,
                "certificates_products_copied": snapshot.product_row_count,
            },
        )
        return MutationPermit(batch_id=batch_id, snapshot_id=snapshot_id)

    def _copy_rows(
        self,
        snapshot: BackupSnapshot,
        organization_keys: Sequence[str],
        product_keys: Sequence[str],
        cancellation: CancellationToken | None,
    ) -> bool:
        """Copy pre-images into the snapshot. Returns True if cancelled part-way."""

        for organization in self.store.batch_get(EntityKind.ORGANIZATION, organization_keys):
            if cancellation is not None and cancellation.cancelled:
                return True
            snapshot.organizations.append(
                BackupOrganization(
                    organization_id=organization.id,
                    cuit=organization.cuit,
                    data_json=entity_snapshot(organization),
                )
            )
            snapshot.organization_row_count += 1

        for product in self.store.batch_get(EntityKind.PRODUCT, product_keys):
            if cancellation is not None and cancellation.cancelled:
                return True
            snapshot.products.append(
                BackupProduct(
                    product_id=product.id,
                    codificacion=product.codificacion,
                    data_json=entity_snapshot(product),
                )
            )
            snapshot.product_row_count += 1

        return cancellation is not None and cancellation.cancelled

    def restore(self, snapshot_id: int, *, restored_by: str | None = None) -> RestoreOutcome:
        """
        Write every pre-image in the snapshot back over its live row.

        Rows are restored independently; a failure is recorded and the
        remaining rows are still attempted.
        """
        snapshot = self.session.get(BackupSnapshot, snapshot_id)
        if snapshot is None:
            raise ValueError(f"Backup snapshot {snapshot_id} not found")

        organization_rows = [(row.organization_id, row.cuit, dict(row.data_json)) for row in snapshot.organizations]
        product_rows = [(row.product_id, row.codificacion, dict(row.data_json)) for row in snapshot.products]
        outcome = RestoreOutcome(snapshot_id=snapshot_id)

        for entity_id, cuit, data in organization_rows:
            try:
                self._restore_row(EntityKind.ORGANIZATION, entity_id, cuit, data, snapshot_id, restored_by)
                self.session.commit()
                outcome.organizations_restored += 1
            except (StoreError, SQLAlchemyError) as exc:
                self.session.rollback()
                outcome.errors.append(f"Organization {cuit}: {exc}")

        for entity_id, codificacion, data in product_rows:
            try:
                self._restore_row(EntityKind.PRODUCT, entity_id, codificacion, data, snapshot_id, restored_by)
                self.session.commit()
                outcome.products_restored += 1
            except (StoreError, SQLAlchemyError) as exc:
                self.session.rollback()
                outcome.errors.append(f"Product {codificacion}: {exc}")

        outcome.status = classify_restore(outcome.total_restored, outcome.errors)
        history = RestoreHistory(
            snapshot_id=snapshot_id,
            restored_by=restored_by,
            organizations_restored=outcome.organizations_restored,
            products_restored=outcome.products_restored,
            status=outcome.status,
            error_log=list(outcome.errors) or None,
        )
        self.session.add(history)
        self.session.commit()
        outcome.history_id = history.id

        record_restore(outcome.status.value)
        log = logger.info if outcome.status is RestoreStatus.COMPLETED else logger.warning
        log(
            "Backup snapshot restored",
            extra={
                "certificates_snapshot_id": snapshot_id,
                "certificates_restore_status": outcome.status.value,
                "certificates_organizations_restored": outcome.organizations_restored,
                "certificates_products_restored": outcome.products_restored,
                "certificates_restore_errors": len(outcome.errors),
            },
        )
        return outcome

    def _restore_row(
        self,
        kind: EntityKind,
        entity_id: int,
        key: str,
        data: dict,
        snapshot_id: int,
        restored_by: str | None,
    ) -> None:
        live = self.store.get_by_id(kind, entity_id)
        if live is None:
            raise StoreError(f"{kind.value} {entity_id} no longer exists", entity_type=kind.value, key=key)
        previous = entity_snapshot(live)
        values = snapshot_values(kind, data)
        self.store.overwrite(kind, entity_id, values)
        record_audit(
            self.session,
            entity_type=kind.value,
            entity_key=key,
            operation=AuditOperation.RESTORE,
            fields=changed_fields(previous, values),
            previous_values={name: previous.get(name) for name in values},
            new_values=values,
            performed_by=restored_by,
            notes=f"Restored from backup snapshot {snapshot_id}",
        )

    def list_snapshots(self, limit: int = DEFAULT_SNAPSHOT_HISTORY_LIMIT) -> list[BackupSnapshot]:
        stmt = (
            select(BackupSnapshot)
            .order_by(BackupSnapshot.created_at.desc(), BackupSnapshot.id.desc())
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())

    def get_snapshot_details(self, snapshot_id: int) -> SnapshotDetails:
        snapshot = self.session.get(BackupSnapshot, snapshot_id)
        if snapshot is None:
            raise ValueError(f"Backup snapshot {snapshot_id} not found")
        last_restore = snapshot.restores[-1] if snapshot.restores else None
        return SnapshotDetails(
            snapshot=snapshot,
            organizations=list(snapshot.organizations),
            products=list(snapshot.products),
            last_restore=last_restore,
        )

    def delete_snapshot(self, snapshot_id: int) -> None:
        """Remove a snapshot and its copies. Live tables are not touched."""

        snapshot = self.session.get(BackupSnapshot, snapshot_id)
        if snapshot is None:
            raise ValueError(f"Backup snapshot {snapshot_id} not found")
        self.session.delete(snapshot)
        self.session.commit()
        logger.info("Backup snapshot deleted", extra={"certificates_snapshot_id": snapshot_id})
