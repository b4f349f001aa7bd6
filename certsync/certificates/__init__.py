"""
Certificate upload reconciliation.

``init_certificates`` mounts the ``flask certificates`` command group, prepares
the Celery worker and keeps the resolved feature flags under
``app.extensions['certificates']`` for the CLI and tasks to read.
"""

from __future__ import annotations

from flask import Flask

from certsync.utils.certificates import get_max_workers, is_backup_enabled, is_certificates_enabled

from .celery_app import CERTIFICATES_EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import certificates_cli, get_disabled_certificates_group
from .pipeline import (
    BackupService,
    CertificateBatchService,
    CertificateDiagnosticsService,
    OrganizationUpdateService,
    UndoSessionRegistry,
    UndoStack,
    decide,
)

__all__ = [
    "init_certificates",
    "CERTIFICATES_EXTENSION_KEY",
    "get_celery_app",
    "BackupService",
    "CertificateBatchService",
    "CertificateDiagnosticsService",
    "OrganizationUpdateService",
    "UndoSessionRegistry",
    "UndoStack",
    "decide",
]


def _feature_state(app: Flask) -> dict:
    state = app.extensions.get(CERTIFICATES_EXTENSION_KEY)
    if state is None:
        state = {"celery_app": None}
        app.extensions[CERTIFICATES_EXTENSION_KEY] = state
    state.update(
        enabled=is_certificates_enabled(app),
        backup_enabled=is_backup_enabled(app),
        max_workers=get_max_workers(app),
        worker_enabled=bool(app.config.get("CERTIFICATES_WORKER_ENABLED", False)),
    )
    return state


def _mount_commands(app: Flask, *, enabled: bool) -> None:
    # init_certificates may run more than once against the same app in tests
    app.cli.commands.pop(certificates_cli.name, None)
    app.cli.add_command(certificates_cli if enabled else get_disabled_certificates_group())


def init_certificates(app: Flask) -> None:
    state = _feature_state(app)
    _mount_commands(app, enabled=state["enabled"])

    if not state["enabled"]:
        app.logger.info("Certificates disabled via CERTIFICATES_ENABLED flag; skipping registration.")
        return

    if not state["backup_enabled"]:
        app.logger.warning("CERTIFICATES_BACKUP_ENABLED is false; batches will mutate without a snapshot.")

    ensure_celery_app(app, state)
    app.logger.info(
        "Certificates enabled",
        extra={
            "certificates_max_workers": state["max_workers"],
            "certificates_backup_enabled": state["backup_enabled"],
            "certificates_worker_enabled": state["worker_enabled"],
        },
    )
