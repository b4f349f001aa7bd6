"""Reconciliation pipeline: extract, decide, back up, mutate, report."""

from .backup_service import BackupService, CancellationToken, MutationPermit, RestoreOutcome
from .batch_service import CertificateBatchService, ProcessingStats
from .decision import Action, ReconciliationDecider, ReconciliationDecision, SkipReason, decide
from .diagnostics_service import CertificateDiagnosticsService, DiagnosticReport
from .existence import BatchWriteLedger, ExistenceCheck, ExistenceChecker, WrittenEntity
from .extract import ExtractionResult, NormalizedRow, RejectedRecord, extract, validate_rows
from .matching import MatchType, OrganizationMatch, match_organization, match_organizations
from .mutator import CertificateMutator, MutationResult
from .organization_update import OperationKind, OrganizationOperation, OrganizationUpdateService
from .store import EntityKind, EntityStore
from .undo_service import UndoSessionRegistry, UndoStack

__all__ = [
    "Action",
    "BackupService",
    "BatchWriteLedger",
    "CancellationToken",
    "CertificateBatchService",
    "CertificateDiagnosticsService",
    "CertificateMutator",
    "DiagnosticReport",
    "EntityKind",
    "EntityStore",
    "ExistenceCheck",
    "ExistenceChecker",
    "ExtractionResult",
    "MatchType",
    "MutationPermit",
    "MutationResult",
    "NormalizedRow",
    "OperationKind",
    "OrganizationMatch",
    "OrganizationOperation",
    "OrganizationUpdateService",
    "ProcessingStats",
    "ReconciliationDecider",
    "ReconciliationDecision",
    "RejectedRecord",
    "RestoreOutcome",
    "SkipReason",
    "UndoSessionRegistry",
    "UndoStack",
    "WrittenEntity",
    "decide",
    "extract",
    "match_organization",
    "match_organizations",
    "validate_rows",
]
