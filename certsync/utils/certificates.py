"""
Utility helpers for certificate feature configuration.
"""

from __future__ import annotations

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_certificates_enabled(app=None) -> bool:
    """Return True when the certificate reconciliation feature is enabled."""
    config = _get_config(app)
    return bool(config.get("CERTIFICATES_ENABLED", False))


def is_backup_enabled(app=None) -> bool:
    """Return True when batches snapshot affected rows before mutating."""
    config = _get_config(app)
    return bool(config.get("CERTIFICATES_BACKUP_ENABLED", True))


def get_max_workers(app=None) -> int:
    """Return the size of the mutation worker pool (1 means inline)."""
    config = _get_config(app)
    try:
        return max(1, int(config.get("CERTIFICATES_MAX_WORKERS", 1)))
    except (TypeError, ValueError):
        return 1


def get_max_rows(app=None) -> int:
    config = _get_config(app)
    try:
        return max(1, int(config.get("CERTIFICATES_MAX_ROWS", 10000)))
    except (TypeError, ValueError):
        return 10000


def get_snapshot_history_limit(app=None) -> int:
    config = _get_config(app)
    try:
        return max(1, int(config.get("CERTIFICATES_SNAPSHOT_HISTORY_LIMIT", 50)))
    except (TypeError, ValueError):
        return 50
