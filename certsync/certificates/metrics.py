"""Prometheus metrics helpers for certificate processing."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

_rows_counter = Counter(
    "certificates_rows_total",
    "Certificate rows handled, labelled by the action recorded in the processing log.",
    ["action"],
)
_batch_counter = Counter(
    "certificates_batches_total",
    "Certificate batches finalized, labelled by final status.",
    ["status"],
)
_batch_duration = Histogram(
    "certificates_batch_duration_seconds",
    "Wall-clock duration of certificate batch processing.",
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600),
)
_backup_counter = Counter(
    "certificates_backups_total",
    "Pre-mutation snapshot attempts by outcome.",
    ["outcome"],
)
_restore_counter = Counter(
    "certificates_restores_total",
    "Snapshot restores by resulting status.",
    ["status"],
)
_undo_counter = Counter(
    "certificates_undo_operations_total",
    "Undo stack operations by outcome.",
    ["outcome"],
)


def record_row_action(action: str, count: int = 1) -> None:
    """Increment the per-action row counter."""

    if count:
        _rows_counter.labels(action=action).inc(count)


def record_batch(*, status: str, duration_seconds: float) -> None:
    """Capture metrics for a finalized batch."""

    _batch_counter.labels(status=status).inc()
    _batch_duration.observe(duration_seconds)


def record_backup(outcome: Literal["completed", "skipped", "cancelled", "failed"]) -> None:
    _backup_counter.labels(outcome=outcome).inc()


def record_restore(status: str) -> None:
    _restore_counter.labels(status=status).inc()


def record_undo(outcome: Literal["pushed", "pruned", "undone", "rejected"], count: int = 1) -> None:
    if count:
        _undo_counter.labels(outcome=outcome).inc(count)
