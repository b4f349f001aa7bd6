"""
Batch orchestration: validate, extract, decide, snapshot, mutate, log.

Every input row ends up with exactly one ``ProcessingLogEntry``. Row-level
failures are caught, rolled back, and recorded; only misuse (unknown batch,
unknown or disposed undo session, oversized upload) raises.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from certsync.models import ProcessingLogEntry, ProcessingOutcome, UploadBatch, UploadBatchStatus, db

from ..errors import BackupCancelled, BackupError, StoreError, UndoSessionClosed
from ..metrics import record_batch, record_row_action
from .backup_service import BackupService, CancellationToken, MutationPermit
from .decision import WRITE_ACTIONS, ReconciliationDecider, ReconciliationDecision, SkipReason, rebase_decision
from .existence import BatchWriteLedger
from .extract import ExtractionResult, NormalizedRow, RejectedRecord, extract, validate_rows
from .mutator import CertificateMutator, MutationResult
from .store import EntityKind, EntityStore
from .undo_service import UndoStack

logger = logging.getLogger(__name__)

_WRITE_OUTCOMES = frozenset(ProcessingOutcome(action.value) for action in WRITE_ACTIONS)


@dataclass
class RowOutcome:
    """What happened to one row during the mutation phase."""

    extraction: ExtractionResult
    outcome: ProcessingOutcome
    decision: ReconciliationDecision | None = None
    skip_reason: str | None = None
    mutation: MutationResult | None = None
    error: str | None = None

    @property
    def row_number(self) -> int:
        return self.extraction.row_number


@dataclass
class ProcessingStats:
    batch_id: int
    total_rows: int = 0
    rows_processed: int = 0
    organizations_inserted: int = 0
    organizations_updated: int = 0
    products_inserted: int = 0
    products_updated: int = 0
    skipped: int = 0
    needs_completion: int = 0
    rejected: int = 0
    failed: int = 0
    cancelled: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    backup_snapshot_id: int | None = None
    status: UploadBatchStatus = UploadBatchStatus.PROCESSING
    processing_time_ms: int | None = None

    @property
    def inserted(self) -> int:
        return self.organizations_inserted + self.products_inserted

    @property
    def updated(self) -> int:
        return self.organizations_updated + self.products_updated

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        payload["inserted"] = self.inserted
        payload["updated"] = self.updated
        return payload


def _as_date(value: date | datetime | None) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    return value


def group_by_shared_keys(decisions: Sequence[ReconciliationDecision]) -> list[list[ReconciliationDecision]]:
    """
    Split decisions into groups that share no organization or product key.

    Rows in one group keep their input order; any two rows touching the same
    key, directly or through a chain of rows, land in the same group.
    """
    parent = list(range(len(decisions)))

    def find(index: int) -> int:
        while parent[index] != index:
            parent[index] = parent[parent[index]]
            index = parent[index]
        return index

    owners: dict[tuple[EntityKind, str], int] = {}
    for index, decision in enumerate(decisions):
        extraction = decision.extraction
        for kind, key in (
            (EntityKind.ORGANIZATION, extraction.organization_key),
            (EntityKind.PRODUCT, extraction.product_key),
        ):
            if not key:
                continue
            owner = owners.setdefault((kind, key), index)
            parent[find(index)] = find(owner)

    groups: dict[int, list[ReconciliationDecision]] = {}
    for index, decision in enumerate(decisions):
        groups.setdefault(find(index), []).append(decision)
    return list(groups.values())


class CertificateBatchService:
    """Runs certificate uploads through reconciliation and records the outcome."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        store: EntityStore | None = None,
        max_workers: int = 1,
        actor: str | None = None,
    ):
        self.session: Session = session or db.session
        self.store = store or EntityStore(self.session)
        self.max_workers = max(1, int(max_workers or 1))
        self.actor = actor
        self.backups = BackupService(self.session, self.store)

    def create_batch(self, filename: str, total_rows: int, *, created_by: str | None = None) -> UploadBatch:
        batch = UploadBatch(
            filename=filename,
            total_rows=total_rows,
            created_by=created_by or self.actor,
            status=UploadBatchStatus.PROCESSING,
            started_at=datetime.now(timezone.utc),
        )
        self.session.add(batch)
        self.session.commit()
        return batch

    def log_rejected(self, batch_id: int, rejected: Iterable[RejectedRecord]) -> int:
        count = 0
        for record in rejected:
            self.session.add(
                ProcessingLogEntry(
                    batch_id=batch_id,
                    row_number=record.row_number,
                    action_taken=ProcessingOutcome.REJECTED,
                    skip_reason=record.reason,
                    missing_fields=list(record.missing_fields),
                    raw_data=record.to_json(),
                )
            )
            count += 1
        self.session.commit()
        record_row_action(ProcessingOutcome.REJECTED.value, count)
        return count

    def decide_rows(self, rows: Sequence[NormalizedRow]) -> tuple[list[ReconciliationDecision], list[RowOutcome]]:
        """Extract and decide each row; lookup failures become failed outcomes."""

        decider = ReconciliationDecider(self.store)
        decisions: list[ReconciliationDecision] = []
        failures: list[RowOutcome] = []
        for row in rows:
            extraction = extract(row)
            try:
                decisions.append(decider.decide(extraction))
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.warning(
                    "Existence check failed for certificate row",
                    exc_info=True,
                    extra={"certificates_row_number": row.row_number},
                )
                failures.append(
                    RowOutcome(
                        extraction=extraction,
                        outcome=ProcessingOutcome.FAILED,
                        skip_reason=SkipReason.STORE_ERROR.value,
                        error=str(exc),
                    )
                )
        return decisions, failures

    def ingest_rows(
        self,
        raw_rows: Iterable[Mapping[str, Any]],
        *,
        filename: str,
        created_by: str | None = None,
        create_backup: bool = True,
        undo_session_id: str | None = None,
        cancellation: CancellationToken | None = None,
        max_rows: int | None = None,
    ) -> ProcessingStats:
        """Full pipeline for a freshly parsed upload."""

        summary = validate_rows(raw_rows, max_rows=max_rows)
        batch = self.create_batch(filename, summary.total_rows, created_by=created_by)
        batch_id = batch.id
        self.log_rejected(batch_id, summary.rejected)
        decisions, failures = self.decide_rows(summary.rows)
        return self.process_batch(
            decisions,
            batch_id,
            create_backup,
            cancellation=cancellation,
            undo_session_id=undo_session_id,
            failed_rows=failures,
        )

    def process_batch(
        self,
        decisions: Sequence[ReconciliationDecision],
        batch_id: int,
        create_backup: bool = True,
        *,
        cancellation: CancellationToken | None = None,
        undo_session_id: str | None = None,
        failed_rows: Sequence[RowOutcome] = (),
    ) -> ProcessingStats:
        """
        Snapshot, then mutate, then log and finalize the batch.

        If the snapshot cannot be completed nothing is mutated: every row is
        logged as failed (or cancelled) and the batch is marked failed.
        """
        batch = self.session.get(UploadBatch, batch_id)
        if batch is None:
            raise ValueError(f"Upload batch {batch_id} not found")
        if batch.status is not UploadBatchStatus.PROCESSING:
            raise ValueError(f"Upload batch {batch_id} is already {batch.status.value}")
        undo_stack = self._resolve_undo_stack(undo_session_id)

        started = time.monotonic()
        if batch.started_at is None:
            batch.started_at = datetime.now(timezone.utc)
            self.session.commit()

        ordered = sorted(decisions, key=lambda decision: decision.row_number)
        stats = ProcessingStats(batch_id=batch_id)

        try:
            permit = self._acquire_permit(batch_id, ordered, create_backup, cancellation)
        except BackupError as exc:
            cancelled = isinstance(exc, BackupCancelled)
            outcome = ProcessingOutcome.CANCELLED if cancelled else ProcessingOutcome.FAILED
            reason = SkipReason.CANCELLED if cancelled else SkipReason.BACKUP_FAILED
            outcomes = list(failed_rows) + [
                RowOutcome(
                    extraction=decision.extraction,
                    outcome=outcome,
                    decision=decision,
                    skip_reason=reason.value,
                    error=str(exc),
                )
                for decision in ordered
            ]
            stats.errors.append({"row_number": None, "error": str(exc)})
            self._write_log(batch_id, outcomes, stats)
            return self._finalize(batch_id, stats, started, backup_failed=True)

        stats.backup_snapshot_id = permit.snapshot_id
        outcomes = list(failed_rows) + self._run_mutations(permit, ordered, cancellation)
        self._write_log(batch_id, outcomes, stats)
        undo_failed = False
        if undo_stack is not None:
            try:
                self._push_undo(undo_stack, batch_id, outcomes)
            except (UndoSessionClosed, ValueError, SQLAlchemyError) as exc:
                self.session.rollback()
                undo_failed = True
                logger.warning(
                    "Could not record undo history for certificate batch",
                    exc_info=True,
                    extra={"certificates_batch_id": batch_id, "certificates_undo_session": undo_session_id},
                )
                stats.errors.append({"row_number": None, "error": f"Undo history incomplete: {exc}"})
        if stats.cancelled:
            stats.errors.append(
                {"row_number": None, "error": f"Batch cancelled; {stats.cancelled} rows were not processed"}
            )
        return self._finalize(batch_id, stats, started, undo_failed=undo_failed)

    def _resolve_undo_stack(self, undo_session_id: str | None) -> UndoStack | None:
        if not undo_session_id:
            return None
        stack = UndoStack(undo_session_id, session=self.session, store=self.store)
        # Fail before any mutation if the session is unknown or disposed
        stack.ensure_active()
        return stack

    def _acquire_permit(
        self,
        batch_id: int,
        decisions: Sequence[ReconciliationDecision],
        create_backup: bool,
        cancellation: CancellationToken | None,
    ) -> MutationPermit:
        if not create_backup:
            return self.backups.skip_backup(batch_id)
        return self.backups.create_snapshot(
            batch_id,
            decisions,
            created_by=self.actor,
            cancellation=cancellation,
        )

    def _run_mutations(
        self,
        permit: MutationPermit,
        decisions: Sequence[ReconciliationDecision],
        cancellation: CancellationToken | None,
    ) -> list[RowOutcome]:
        ledger = BatchWriteLedger()
        groups = group_by_shared_keys(decisions)
        if self.max_workers > 1 and len(groups) > 1:
            app = current_app._get_current_object()

            def _worker(group: list[ReconciliationDecision]) -> list[RowOutcome]:
                with app.app_context():
                    try:
                        mutator = CertificateMutator(permit, session=db.session, actor=self.actor)
                        return [self._process_one(mutator, decision, cancellation, ledger) for decision in group]
                    finally:
                        db.session.remove()

            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                outcomes = [outcome for group in executor.map(_worker, groups) for outcome in group]
            # Worker sessions committed on their own connections
            self.session.expire_all()
            return outcomes

        mutator = CertificateMutator(permit, session=self.session, store=self.store, actor=self.actor)
        return [self._process_one(mutator, decision, cancellation, ledger) for decision in decisions]

    def _process_one(
        self,
        mutator: CertificateMutator,
        decision: ReconciliationDecision,
        cancellation: CancellationToken | None,
        ledger: BatchWriteLedger,
    ) -> RowOutcome:
        if cancellation is not None and cancellation.cancelled:
            return RowOutcome(
                extraction=decision.extraction,
                outcome=ProcessingOutcome.CANCELLED,
                decision=decision,
                skip_reason=SkipReason.CANCELLED.value,
            )

        decision = rebase_decision(decision, ledger)
        outcome = ProcessingOutcome(decision.action.value)
        if not decision.action.is_write:
            return RowOutcome(
                extraction=decision.extraction,
                outcome=outcome,
                decision=decision,
                skip_reason=decision.skip_reason.value if decision.skip_reason else None,
            )

        try:
            result = mutator.apply(decision)
            mutator.session.commit()
        except (StoreError, SQLAlchemyError) as exc:
            mutator.session.rollback()
            logger.warning(
                "Certificate row mutation failed",
                exc_info=True,
                extra={
                    "certificates_batch_id": mutator.batch_id,
                    "certificates_row_number": decision.row_number,
                    "certificates_action": decision.action.value,
                },
            )
            return RowOutcome(
                extraction=decision.extraction,
                outcome=ProcessingOutcome.FAILED,
                decision=decision,
                skip_reason=SkipReason.STORE_ERROR.value,
                error=str(exc),
            )
        for written in result.written:
            ledger.record(written, decision.extraction.emission_date)
        return RowOutcome(extraction=decision.extraction, outcome=outcome, decision=decision, mutation=result)

    def _write_log(self, batch_id: int, outcomes: Sequence[RowOutcome], stats: ProcessingStats) -> None:
        for row in sorted(outcomes, key=lambda item: item.row_number):
            extraction = row.extraction
            organization = extraction.organization or {}
            existing_date = None
            missing_fields: list[str] = []
            if row.decision is not None:
                checks = (row.decision.organization_check, row.decision.product_check)
                existing_date = next((check.stored_timestamp for check in checks if check.exists), None)
                missing_fields = list(row.decision.missing_fields)
            self.session.add(
                ProcessingLogEntry(
                    batch_id=batch_id,
                    row_number=row.row_number,
                    action_taken=row.outcome,
                    skip_reason=row.skip_reason,
                    missing_fields=missing_fields,
                    raw_data=extraction.source_row.to_json(),
                    cuit=extraction.organization_key,
                    codificacion=extraction.product_key,
                    razon_social=organization.get("razon_social"),
                    certificate_date=_as_date(extraction.emission_date),
                    existing_date=existing_date,
                    error_message=row.error,
                )
            )
            if row.mutation is not None:
                stats.organizations_inserted += int(row.mutation.organization_inserted)
                stats.organizations_updated += int(row.mutation.organization_updated)
                stats.products_inserted += int(row.mutation.product_inserted)
                stats.products_updated += int(row.mutation.product_updated)
            if row.outcome is ProcessingOutcome.FAILED and row.error and row.skip_reason != SkipReason.BACKUP_FAILED.value:
                stats.errors.append(
                    {
                        "row_number": row.row_number,
                        "error": row.error,
                        "record": extraction.source_row.to_json(),
                    }
                )
            if row.outcome is ProcessingOutcome.CANCELLED:
                stats.cancelled += 1
            record_row_action(row.outcome.value)
        self.session.commit()

    def _push_undo(self, undo_stack: UndoStack, batch_id: int, outcomes: Sequence[RowOutcome]) -> None:
        for row in outcomes:
            if row.mutation is None:
                continue
            for action_type, payload in row.mutation.undo_actions:
                undo_stack.push(action_type, payload, batch_id=batch_id, created_by=self.actor)

    def _finalize(
        self,
        batch_id: int,
        stats: ProcessingStats,
        started: float,
        *,
        backup_failed: bool = False,
        undo_failed: bool = False,
    ) -> ProcessingStats:
        batch = self.session.get(UploadBatch, batch_id)
        counts: dict[ProcessingOutcome, int] = dict(
            self.session.execute(
                select(ProcessingLogEntry.action_taken, func.count(ProcessingLogEntry.id))
                .where(ProcessingLogEntry.batch_id == batch_id)
                .group_by(ProcessingLogEntry.action_taken)
            ).all()
        )

        stats.total_rows = batch.total_rows
        stats.rows_processed = sum(counts.get(outcome, 0) for outcome in _WRITE_OUTCOMES)
        stats.skipped = counts.get(ProcessingOutcome.SKIP, 0)
        stats.needs_completion = counts.get(ProcessingOutcome.NEEDS_COMPLETION, 0)
        stats.rejected = counts.get(ProcessingOutcome.REJECTED, 0)
        stats.failed = counts.get(ProcessingOutcome.FAILED, 0)
        stats.cancelled = counts.get(ProcessingOutcome.CANCELLED, 0)
        stats.processing_time_ms = int((time.monotonic() - started) * 1000)

        if backup_failed:
            stats.status = UploadBatchStatus.FAILED
        elif stats.failed or stats.cancelled or undo_failed:
            stats.status = UploadBatchStatus.COMPLETED_WITH_ERRORS
        else:
            stats.status = UploadBatchStatus.COMPLETED

        batch.status = stats.status
        batch.processed_count = stats.rows_processed
        batch.inserted_count = (batch.inserted_count or 0) + stats.inserted
        batch.updated_count = (batch.updated_count or 0) + stats.updated
        batch.skipped_count = stats.skipped + stats.needs_completion + stats.cancelled
        batch.rejected_count = stats.rejected
        batch.error_count = stats.failed
        batch.error_summary = list(batch.error_summary or []) + stats.errors or None
        batch.completed_at = datetime.now(timezone.utc)
        batch.processing_time_ms = stats.processing_time_ms
        self.session.commit()

        record_batch(status=stats.status.value, duration_seconds=stats.processing_time_ms / 1000)
        log = logger.error if backup_failed else logger.info
        log(
            "Certificate batch finalized",
            extra={
                "certificates_batch_id": batch_id,
                "certificates_status": stats.status.value,
                "certificates_rows_processed": stats.rows_processed,
                "certificates_inserted": stats.inserted,
                "certificates_updated": stats.updated,
                "certificates_skipped": stats.skipped,
                "certificates_needs_completion": stats.needs_completion,
                "certificates_rejected": stats.rejected,
                "certificates_failed": stats.failed,
                "certificates_cancelled": stats.cancelled,
                "certificates_snapshot_id": stats.backup_snapshot_id,
            },
        )
        return stats
