"""Per-batch diagnostics built from the certificate processing log."""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from io import StringIO
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from certsync.models import ProcessingLogEntry, ProcessingOutcome, UploadBatch, db

from ..errors import DiagnosticsIntegrityError
from .decision import WRITE_ACTIONS, SkipReason

logger = logging.getLogger(__name__)

LEADING_FORMULA_CHARACTERS = ("=", "+", "-", "@")

PROCESSED_OUTCOMES = frozenset(ProcessingOutcome(action.value) for action in WRITE_ACTIONS)
SKIPPED_OUTCOMES = frozenset(
    {
        ProcessingOutcome.SKIP,
        ProcessingOutcome.NEEDS_COMPLETION,
        ProcessingOutcome.FAILED,
        ProcessingOutcome.CANCELLED,
    }
)

ACTION_DESCRIPTIONS: dict[str, str] = {
    ProcessingOutcome.INSERT_BOTH.value: "New organizations and products inserted",
    ProcessingOutcome.UPDATE_BOTH.value: "Organizations and products updated",
    ProcessingOutcome.INSERT_ORG_UPDATE_PRODUCT.value: "New organization inserted, product updated",
    ProcessingOutcome.UPDATE_ORG_INSERT_PRODUCT.value: "Organization updated, new product inserted",
    ProcessingOutcome.SKIP.value: "Certificates skipped (not newer than stored data)",
    ProcessingOutcome.NEEDS_COMPLETION.value: "New organizations missing required information",
    ProcessingOutcome.REJECTED.value: "Rows rejected during validation",
    ProcessingOutcome.FAILED.value: "Rows that failed while writing",
    ProcessingOutcome.CANCELLED.value: "Rows not processed because the batch was cancelled",
}

SKIP_REASON_DESCRIPTIONS: dict[str, str] = {
    SkipReason.NOT_NEWER.value: "Stored organization and product are as new or newer",
    SkipReason.ORGANIZATION_NOT_NEWER.value: "Stored organization is as new or newer",
    SkipReason.PRODUCT_NOT_NEWER.value: "Stored product is as new or newer",
    SkipReason.INCOMPLETE_ORGANIZATION.value: "New organization is missing required fields",
    SkipReason.STORE_ERROR.value: "The store rejected the write",
    SkipReason.BACKUP_FAILED.value: "The pre-processing backup failed",
    SkipReason.CANCELLED.value: "The batch was cancelled",
}

UNSPECIFIED_REASON = "unspecified"


@dataclass
class SkippedGroup:
    reason: str
    description: str
    entries: list[ProcessingLogEntry] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class RejectedRecordView:
    row_number: int
    reason: str
    missing_fields: tuple[str, ...]
    raw_data: dict[str, Any]


@dataclass(frozen=True)
class ActionBreakdown:
    action: str
    count: int
    description: str


@dataclass
class DiagnosticReport:
    batch_id: int
    filename: str
    total_in_file: int
    total_processed: int
    total_skipped: int
    total_rejected: int
    skipped_by_reason: list[SkippedGroup] = field(default_factory=list)
    rejected_records: list[RejectedRecordView] = field(default_factory=list)
    action_breakdown: list[ActionBreakdown] = field(default_factory=list)

    @property
    def is_reconciled(self) -> bool:
        return self.total_in_file == self.total_processed + self.total_skipped + self.total_rejected

    def assert_reconciled(self) -> None:
        if not self.is_reconciled:
            raise DiagnosticsIntegrityError(
                f"Batch {self.batch_id}: {self.total_in_file} rows in file but "
                f"{self.total_processed} processed + {self.total_skipped} skipped + "
                f"{self.total_rejected} rejected"
            )

    def summary(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "filename": self.filename,
            "total_in_file": self.total_in_file,
            "total_processed": self.total_processed,
            "total_skipped": self.total_skipped,
            "total_rejected": self.total_rejected,
            "reconciled": self.is_reconciled,
            "skipped_by_reason": [
                {"reason": group.reason, "description": group.description, "count": group.count}
                for group in self.skipped_by_reason
            ],
            "rejected_records": [
                {
                    "row_number": record.row_number,
                    "reason": record.reason,
                    "missing_fields": list(record.missing_fields),
                }
                for record in self.rejected_records
            ],
            "action_breakdown": [
                {"action": item.action, "count": item.count, "description": item.description}
                for item in self.action_breakdown
            ],
        }


def describe_action(action: str) -> str:
    return ACTION_DESCRIPTIONS.get(action, action)


def describe_skip_reason(reason: str) -> str:
    return SKIP_REASON_DESCRIPTIONS.get(reason, reason)


def _sanitize_csv(value: object) -> str:
    if value is None:
        return ""
    text = str(value)
    if text and text[0] in LEADING_FORMULA_CHARACTERS:
        return f"'{text}"
    return text


def _format_date(value) -> str:
    if value is None:
        return ""
    if hasattr(value, "date"):
        value = value.date()
    return value.isoformat()


class CertificateDiagnosticsService:
    """Read-only reporting over ``certificate_processing_log``."""

    def __init__(self, session: Session | None = None):
        self.session: Session = session or db.session

    def _entries(self, batch_id: int, outcome: ProcessingOutcome | None = None) -> list[ProcessingLogEntry]:
        stmt = select(ProcessingLogEntry).where(ProcessingLogEntry.batch_id == batch_id)
        if outcome is not None:
            stmt = stmt.where(ProcessingLogEntry.action_taken == outcome)
        stmt = stmt.order_by(ProcessingLogEntry.row_number.asc(), ProcessingLogEntry.id.asc())
        return list(self.session.execute(stmt).scalars())

    def skipped_for_batch(self, batch_id: int) -> list[ProcessingLogEntry]:
        return self._entries(batch_id, ProcessingOutcome.SKIP)

    def rejected_for_batch(self, batch_id: int) -> list[ProcessingLogEntry]:
        return self._entries(batch_id, ProcessingOutcome.REJECTED)

    def generate_report(self, batch_id: int) -> DiagnosticReport:
        """
        Summarize one batch.

        ``total_in_file`` comes from the batch record; the other totals come
        from the log. A report that does not reconcile is returned as-is and
        logged as an error so callers can decide whether to raise.
        """
        batch = self.session.get(UploadBatch, batch_id)
        if batch is None:
            raise ValueError(f"Upload batch {batch_id} not found")

        entries = self._entries(batch_id)
        groups: dict[str, SkippedGroup] = {}
        rejected: list[RejectedRecordView] = []
        action_counts: dict[str, int] = {}
        processed = skipped = 0

        for entry in entries:
            action = entry.action_taken.value
            action_counts[action] = action_counts.get(action, 0) + 1
            if entry.action_taken in PROCESSED_OUTCOMES:
                processed += 1
            elif entry.action_taken in SKIPPED_OUTCOMES:
                skipped += 1
                reason = entry.skip_reason or UNSPECIFIED_REASON
                group = groups.get(reason)
                if group is None:
                    group = groups[reason] = SkippedGroup(reason=reason, description=describe_skip_reason(reason))
                group.entries.append(entry)
            elif entry.action_taken is ProcessingOutcome.REJECTED:
                rejected.append(
                    RejectedRecordView(
                        row_number=entry.row_number,
                        reason=entry.skip_reason or UNSPECIFIED_REASON,
                        missing_fields=tuple(entry.missing_fields or ()),
                        raw_data=dict(entry.raw_data or {}),
                    )
                )

        report = DiagnosticReport(
            batch_id=batch_id,
            filename=batch.filename,
            total_in_file=batch.total_rows,
            total_processed=processed,
            total_skipped=skipped,
            total_rejected=len(rejected),
            skipped_by_reason=list(groups.values()),
            rejected_records=rejected,
            action_breakdown=[
                ActionBreakdown(action=action, count=count, description=describe_action(action))
                for action, count in action_counts.items()
            ],
        )
        if not report.is_reconciled:
            logger.error(
                "Certificate diagnostics do not reconcile",
                extra={
                    "certificates_batch_id": batch_id,
                    "certificates_total_in_file": report.total_in_file,
                    "certificates_processed": report.total_processed,
                    "certificates_skipped": report.total_skipped,
                    "certificates_rejected": report.total_rejected,
                },
            )
        return report

    def export_report_csv(self, report: DiagnosticReport) -> tuple[str, str]:
        """Render a report as CSV. Returns ``(filename, content)``."""

        buffer = StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["section", "key", "value", "description"])
        writer.writerow(["summary", "filename", _sanitize_csv(report.filename), ""])
        writer.writerow(["summary", "batch_id", report.batch_id, ""])
        writer.writerow(["summary", "total_in_file", report.total_in_file, ""])
        writer.writerow(["summary", "total_processed", report.total_processed, ""])
        writer.writerow(["summary", "total_skipped", report.total_skipped, ""])
        writer.writerow(["summary", "total_rejected", report.total_rejected, ""])
        for item in report.action_breakdown:
            writer.writerow(["action", item.action, item.count, item.description])
        for group in report.skipped_by_reason:
            writer.writerow(["skip_reason", group.reason, group.count, group.description])

        writer.writerow([])
        writer.writerow(
            ["row_number", "outcome", "cuit", "codificacion", "razon_social", "certificate_date", "existing_date", "reason"]
        )
        for group in report.skipped_by_reason:
            for entry in group.entries:
                writer.writerow(
                    [
                        entry.row_number,
                        entry.action_taken.value,
                        _sanitize_csv(entry.cuit),
                        _sanitize_csv(entry.codificacion),
                        _sanitize_csv(entry.razon_social),
                        _format_date(entry.certificate_date),
                        _format_date(entry.existing_date),
                        _sanitize_csv(entry.skip_reason),
                    ]
                )
        for record in report.rejected_records:
            writer.writerow(
                [
                    record.row_number,
                    ProcessingOutcome.REJECTED.value,
                    "",
                    "",
                    "",
                    "",
                    "",
                    _sanitize_csv(f"{record.reason} ({', '.join(record.missing_fields)})" if record.missing_fields else record.reason),
                ]
            )

        filename = f"certificate_diagnostics_batch_{report.batch_id}.csv"
        return filename, buffer.getvalue()
