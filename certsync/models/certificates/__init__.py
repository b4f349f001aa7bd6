"""
Certificate processing models: batches, processing logs, backups, restores,
audit trail, undo history, and potential duplicates.
"""

from .schema import (
    AuditLogEntry,
    AuditOperation,
    BackupOrganization,
    BackupProduct,
    BackupSnapshot,
    BackupSnapshotStatus,
    DuplicateResolutionStatus,
    PotentialDuplicate,
    ProcessingLogEntry,
    ProcessingOutcome,
    RestoreHistory,
    RestoreStatus,
    UndoEntry,
    UndoSession,
    UploadBatch,
    UploadBatchStatus,
)

__all__ = [
    "AuditLogEntry",
    "AuditOperation",
    "BackupOrganization",
    "BackupProduct",
    "BackupSnapshot",
    "BackupSnapshotStatus",
    "DuplicateResolutionStatus",
    "PotentialDuplicate",
    "ProcessingLogEntry",
    "ProcessingOutcome",
    "RestoreHistory",
    "RestoreStatus",
    "UndoEntry",
    "UndoSession",
    "UploadBatch",
    "UploadBatchStatus",
]
