"""Celery tasks for certificate uploads."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from certsync.models import db
from certsync.utils.certificates import get_max_rows, get_max_workers, is_backup_enabled

from .pipeline.batch_service import CertificateBatchService


@shared_task(name="certificates.healthcheck", bind=True)
def certificates_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by ``flask certificates worker ping``."""

    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="certificates.process_rows", bind=True)
def process_rows(
    self,
    *,
    rows: list[dict[str, Any]],
    filename: str,
    created_by: str | None = None,
    create_backup: bool | None = None,
    undo_session_id: str | None = None,
) -> dict[str, Any]:
    """
    Run an uploaded sheet through the reconciliation pipeline.

    ``rows`` are header-keyed mappings; date cells may be ISO strings.
    """
    if create_backup is None:
        create_backup = is_backup_enabled()

    service = CertificateBatchService(max_workers=get_max_workers(), actor=created_by)
    try:
        stats = service.ingest_rows(
            rows,
            filename=filename,
            created_by=created_by,
            create_backup=create_backup,
            undo_session_id=undo_session_id,
            max_rows=get_max_rows(),
        )
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception(
            "Certificate upload failed",
            extra={"certificates_filename": filename, "certificates_error": str(exc)},
        )
        raise

    current_app.logger.info(
        "Certificate upload processed",
        extra={
            "certificates_batch_id": stats.batch_id,
            "certificates_task_id": self.request.id,
            "certificates_status": stats.status.value,
        },
    )
    return stats.as_dict()
