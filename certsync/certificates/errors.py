"""Exceptions raised by the certificate reconciliation engine."""

from __future__ import annotations


class CertificateError(Exception):
    """Base class for certificate processing errors."""


class StoreError(CertificateError):
    """An insert, update, or delete against the entity tables failed."""

    def __init__(self, message: str, *, entity_type: str | None = None, key: str | None = None):
        super().__init__(message)
        self.entity_type = entity_type
        self.key = key


class StaleWriteError(StoreError):
    """The stored row changed between the existence check and the write."""

    def __init__(self, entity_type: str, key: str, expected_version: int | None):
        super().__init__(
            f"{entity_type} {key} changed since it was checked (expected version {expected_version})",
            entity_type=entity_type,
            key=key,
        )
        self.expected_version = expected_version


class BackupError(CertificateError):
    """The pre-mutation snapshot could not be completed."""


class BackupCancelled(BackupError):
    """Snapshot creation stopped because the batch was cancelled."""


class MutationNotPermitted(CertificateError):
    """A mutation was attempted without a completed snapshot phase."""


class UndoSessionClosed(CertificateError):
    """An undo session was used after it was disposed."""


class DiagnosticsIntegrityError(CertificateError):
    """A batch's processing log does not account for every input row."""
