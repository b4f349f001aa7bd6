# certsync/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .certificates import (
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
from .registry import Organization, Product

__all__ = [
    "db",
    "BaseModel",
    "Organization",
    "Product",
    # Certificate processing models
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
