"""
SQLAlchemy models for certificate upload processing.

Batches, per-row processing logs, pre-mutation backups, restore history,
the entity audit trail, undo sessions, and potential duplicate review.
"""

from __future__ import annotations

import enum
from datetime import date, datetime, timezone

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class UploadBatchStatus(str, enum.Enum):
    """Lifecycle states for an upload batch."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class UploadBatch(BaseModel):
    """A single spreadsheet upload and its aggregate counters."""

    __tablename__ = "upload_batches"

    id: Mapped[int] = mapped_column(primary_key=True)
    filename: Mapped[str] = mapped_column(db.String(255), nullable=False)
    created_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    status: Mapped[UploadBatchStatus] = mapped_column(
        Enum(UploadBatchStatus, name="upload_batch_status_enum"),
        nullable=False,
        default=UploadBatchStatus.PROCESSING,
        index=True,
    )
    processed_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    inserted_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    updated_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rejected_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    processing_time_ms: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    error_summary: Mapped[list | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Row-level store errors collected while processing the batch.",
    )

    log_entries = relationship(
        "ProcessingLogEntry",
        back_populates="batch",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ProcessingLogEntry.row_number",
    )
    backup_snapshots = relationship("BackupSnapshot", back_populates="batch")

    def __repr__(self):
        return f"<UploadBatch {self.id} {self.filename} ({self.status.value})>"


class ProcessingOutcome(str, enum.Enum):
    """Action recorded for a single input row."""

    INSERT_BOTH = "insert_both"
    UPDATE_BOTH = "update_both"
    INSERT_ORG_UPDATE_PRODUCT = "insert_org_update_product"
    UPDATE_ORG_INSERT_PRODUCT = "update_org_insert_product"
    SKIP = "skip"
    NEEDS_COMPLETION = "needs_completion"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProcessingLogEntry(BaseModel):
    """Append-only record of what happened to one input row."""

    __tablename__ = "certificate_processing_log"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(
        ForeignKey("upload_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    row_number: Mapped[int] = mapped_column(db.Integer, nullable=False)
    action_taken: Mapped[ProcessingOutcome] = mapped_column(
        Enum(ProcessingOutcome, name="processing_outcome_enum"),
        nullable=False,
        index=True,
    )
    skip_reason: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    missing_fields: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    raw_data: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    cuit: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    codificacion: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    razon_social: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    certificate_date: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    existing_date: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    batch = relationship("UploadBatch", back_populates="log_entries")

    __table_args__ = (
        Index("idx_processing_log_batch_row", "batch_id", "row_number"),
        Index("idx_processing_log_batch_action", "batch_id", "action_taken"),
    )


class BackupSnapshotStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BackupSnapshot(BaseModel):
    """Pre-mutation copy of every row a batch is about to touch."""

    __tablename__ = "backup_snapshots"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[int | None] = mapped_column(
        ForeignKey("upload_batches.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    snapshot_type: Mapped[str] = mapped_column(db.String(50), nullable=False, default="before_processing")
    status: Mapped[BackupSnapshotStatus] = mapped_column(
        Enum(BackupSnapshotStatus, name="backup_snapshot_status_enum"),
        nullable=False,
        default=BackupSnapshotStatus.IN_PROGRESS,
    )
    affected_organization_keys: Mapped[list] = mapped_column(db.JSON, nullable=False, default=list)
    affected_product_keys: Mapped[list] = mapped_column(db.JSON, nullable=False, default=list)
    organization_row_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    product_row_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    metadata_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Upload filename and operator description.",
    )

    batch = relationship("UploadBatch", back_populates="backup_snapshots")
    organizations = relationship(
        "BackupOrganization",
        back_populates="snapshot",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="BackupOrganization.id",
    )
    products = relationship(
        "BackupProduct",
        back_populates="snapshot",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="BackupProduct.id",
    )
    restores = relationship(
        "RestoreHistory",
        back_populates="snapshot",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RestoreHistory.id",
    )


class BackupOrganization(BaseModel):
    """Full pre-image of one live organization row."""

    __tablename__ = "backup_organizations"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(
        ForeignKey("backup_snapshots.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    cuit: Mapped[str] = mapped_column(db.String(20), nullable=False)
    data_json: Mapped[dict] = mapped_column(db.JSON, nullable=False)

    snapshot = relationship("BackupSnapshot", back_populates="organizations")


class BackupProduct(BaseModel):
    """Full pre-image of one live product row."""

    __tablename__ = "backup_products"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(
        ForeignKey("backup_snapshots.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    codificacion: Mapped[str] = mapped_column(db.String(100), nullable=False)
    data_json: Mapped[dict] = mapped_column(db.JSON, nullable=False)

    snapshot = relationship("BackupSnapshot", back_populates="products")


class RestoreStatus(str, enum.Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class RestoreHistory(BaseModel):
    """Outcome of restoring a snapshot over the live tables."""

    __tablename__ = "restore_history"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(
        ForeignKey("backup_snapshots.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    restored_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    organizations_restored: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    products_restored: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    status: Mapped[RestoreStatus] = mapped_column(
        Enum(RestoreStatus, name="restore_status_enum"),
        nullable=False,
    )
    error_log: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    restored_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    snapshot = relationship("BackupSnapshot", back_populates="restores")


class AuditOperation(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    RESTORE = "RESTORE"
    SKIP = "SKIP"


class AuditLogEntry(BaseModel):
    """Field-level audit trail for organization and product writes."""

    __tablename__ = "entity_audit_log"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    entity_key: Mapped[str] = mapped_column(db.String(100), nullable=False, index=True)
    batch_id: Mapped[int | None] = mapped_column(
        ForeignKey("upload_batches.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    operation_type: Mapped[AuditOperation] = mapped_column(
        Enum(AuditOperation, name="audit_operation_enum"),
        nullable=False,
    )
    changed_fields: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    previous_values: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    new_values: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    performed_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    __table_args__ = (Index("idx_entity_audit_entity", "entity_type", "entity_key"),)


class UndoSession(BaseModel):
    """Lifecycle record for an operator's undo history."""

    __tablename__ = "undo_sessions"

    id: Mapped[str] = mapped_column(db.String(36), primary_key=True)
    created_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    disposed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    entries = relationship(
        "UndoEntry",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_active(self) -> bool:
        return self.disposed_at is None


class UndoEntry(BaseModel):
    """A reversible action recorded against an undo session."""

    __tablename__ = "undo_stack"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("undo_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    batch_id: Mapped[int | None] = mapped_column(
        ForeignKey("upload_batches.id", ondelete="SET NULL"),
        nullable=True,
    )
    action_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    action_payload: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    created_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    is_undone: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    undone_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    session = relationship("UndoSession", back_populates="entries")

    __table_args__ = (Index("idx_undo_stack_session_undone", "session_id", "is_undone"),)


class DuplicateResolutionStatus(str, enum.Enum):
    PENDING = "pending"
    MERGED = "merged"
    DISMISSED = "dismissed"


class PotentialDuplicate(BaseModel):
    """Uploaded organization that fuzzily resembles an existing one."""

    __tablename__ = "potential_duplicates"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[int | None] = mapped_column(
        ForeignKey("upload_batches.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    existing_organization_cuit: Mapped[str] = mapped_column(db.String(20), nullable=False, index=True)
    uploaded_data: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    confidence_score: Mapped[int] = mapped_column(db.Integer, nullable=False)
    match_criteria: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    resolution_status: Mapped[DuplicateResolutionStatus] = mapped_column(
        Enum(DuplicateResolutionStatus, name="duplicate_resolution_status_enum"),
        nullable=False,
        default=DuplicateResolutionStatus.PENDING,
    )
