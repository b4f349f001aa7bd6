import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from certsync.certificates.errors import UndoSessionClosed
from certsync.certificates.pipeline import (
    BackupService,
    CancellationToken,
    CertificateBatchService,
    CertificateDiagnosticsService,
    EntityKind,
    UndoSessionRegistry,
    validate_rows,
)
from certsync.certificates.pipeline.batch_service import group_by_shared_keys
from certsync.certificates.pipeline.extract import RowLimitExceeded
from certsync.models import (
    AuditLogEntry,
    BackupSnapshot,
    Organization,
    ProcessingLogEntry,
    ProcessingOutcome,
    UploadBatch,
    UploadBatchStatus,
    db,
)


def _log(batch_id):
    return db.session.execute(
        select(ProcessingLogEntry)
        .where(ProcessingLogEntry.batch_id == batch_id)
        .order_by(ProcessingLogEntry.row_number)
    ).scalars().all()


@pytest.fixture
def mixed_rows(row_factory):
    return [
        row_factory(email="ventas@acme.com.ar"),
        row_factory(cuit="20-11111111-2", razon_social="Beta SRL", email="beta@example.com", codificacion="PRD-002"),
        row_factory(emission_date="2024-01-01"),
        row_factory(cuit="20-22222222-3", razon_social="Gamma SA", codificacion="PRD-003", email="", contacto=""),
        row_factory(emission_date=""),
    ]


def test_ingest_logs_every_row_once(batch_service, stored_product, mixed_rows, store):
    stats = batch_service.ingest_rows(mixed_rows, filename="certificados.xlsx", created_by="tester")

    assert stats.status is UploadBatchStatus.COMPLETED
    assert stats.total_rows == 5
    assert stats.rows_processed == 2
    assert stats.organizations_inserted == 1
    assert stats.organizations_updated == 1
    assert stats.products_inserted == 1
    assert stats.products_updated == 1
    assert stats.skipped == 1
    assert stats.needs_completion == 1
    assert stats.rejected == 1
    assert stats.errors == []
    assert stats.backup_snapshot_id is not None

    entries = _log(stats.batch_id)
    assert [(entry.row_number, entry.action_taken) for entry in entries] == [
        (2, ProcessingOutcome.UPDATE_BOTH),
        (3, ProcessingOutcome.INSERT_BOTH),
        (4, ProcessingOutcome.SKIP),
        (5, ProcessingOutcome.NEEDS_COMPLETION),
        (6, ProcessingOutcome.REJECTED),
    ]
    assert entries[2].skip_reason == "not_newer"
    assert entries[3].missing_fields == ["email", "contacto"]
    assert entries[0].existing_date is not None

    batch = db.session.get(UploadBatch, stats.batch_id)
    assert batch.inserted_count == 2
    assert batch.updated_count == 2
    assert batch.skipped_count == 2
    assert batch.rejected_count == 1
    assert batch.error_count == 0
    assert batch.completed_at is not None

    assert store.get_by_key(EntityKind.ORGANIZATION, "30712345678").email == "ventas@acme.com.ar"
    assert store.get_by_key(EntityKind.ORGANIZATION, "20222222223") is None

    report = CertificateDiagnosticsService().generate_report(stats.batch_id)
    assert report.is_reconciled


def test_backup_failure_blocks_every_mutation(batch_service, stored_product, mixed_rows, store, monkeypatch):
    def _explode(*args, **kwargs):
        raise OperationalError("INSERT INTO backup_organizations", {}, Exception("disk full"))

    monkeypatch.setattr(BackupService, "_copy_rows", _explode)

    stats = batch_service.ingest_rows(mixed_rows, filename="certificados.xlsx")

    assert stats.status is UploadBatchStatus.FAILED
    assert stats.inserted == 0 and stats.updated == 0
    assert stats.failed == 4
    assert stats.rejected == 1
    assert len(stats.errors) == 1
    assert stats.errors[0]["row_number"] is None

    entries = _log(stats.batch_id)
    assert len(entries) == 5
    assert {entry.skip_reason for entry in entries if entry.action_taken is ProcessingOutcome.FAILED} == {
        "backup_failed"
    }
    assert store.get_by_key(EntityKind.ORGANIZATION, "30712345678").email == "contacto@acme.com.ar"
    assert store.get_by_key(EntityKind.ORGANIZATION, "20111111112") is None
    assert db.session.execute(select(AuditLogEntry)).scalars().all() == []
    assert db.session.get(UploadBatch, stats.batch_id).status is UploadBatchStatus.FAILED


def test_cancelled_before_backup_processes_nothing(batch_service, stored_product, row_factory, store):
    token = CancellationToken()
    token.cancel()

    stats = batch_service.ingest_rows([row_factory(email="ventas@acme.com.ar")], filename="c.xlsx", cancellation=token)

    assert stats.status is UploadBatchStatus.FAILED
    assert stats.cancelled == 1
    assert [entry.action_taken for entry in _log(stats.batch_id)] == [ProcessingOutcome.CANCELLED]
    assert store.get_by_key(EntityKind.ORGANIZATION, "30712345678").version == 1


def test_rerunning_skipped_rows_changes_nothing(batch_service, stored_product, row_factory, store):
    rows = [row_factory(emission_date="2024-01-01")]

    first = batch_service.ingest_rows(rows, filename="c.xlsx", create_backup=False)
    second = batch_service.ingest_rows(rows, filename="c.xlsx", create_backup=False)

    assert first.skipped == second.skipped == 1
    assert first.batch_id != second.batch_id
    assert db.session.execute(select(AuditLogEntry)).scalars().all() == []
    assert db.session.execute(select(BackupSnapshot)).scalars().all() == []
    assert store.get_by_key(EntityKind.ORGANIZATION, "30712345678").version == 1
    assert store.get_by_key(EntityKind.PRODUCT, "PRD-001").version == 1


def test_stale_row_fails_alone(batch_service, stored_product, row_factory, store):
    rows = validate_rows(
        [
            row_factory(email="ventas@acme.com.ar"),
            row_factory(cuit="20-11111111-2", razon_social="Beta SRL", codificacion="PRD-002"),
        ]
    ).rows
    batch = batch_service.create_batch("c.xlsx", len(rows))
    decisions, failures = batch_service.decide_rows(rows)
    assert failures == []
    store.update(EntityKind.PRODUCT, "PRD-001", {"tipo_certificacion": "Otra"}, expected_version=1)
    db.session.commit()

    stats = batch_service.process_batch(decisions, batch.id, create_backup=False)

    assert stats.status is UploadBatchStatus.COMPLETED_WITH_ERRORS
    assert stats.failed == 1
    assert stats.rows_processed == 1
    assert stats.errors[0]["row_number"] == 2
    failed = _log(batch.id)[0]
    assert failed.action_taken is ProcessingOutcome.FAILED
    assert failed.skip_reason == "store_error"
    assert "changed since it was checked" in failed.error_message
    # The organization half of the failed row was rolled back with it
    assert store.get_by_key(EntityKind.ORGANIZATION, "30712345678").email == "contacto@acme.com.ar"
    assert store.get_by_key(EntityKind.PRODUCT, "PRD-002") is not None


def test_cancellation_during_mutation_marks_rows_cancelled(batch_service, row_factory):
    rows = validate_rows([row_factory(), row_factory(cuit="20-11111111-2", codificacion="PRD-002")]).rows
    batch = batch_service.create_batch("c.xlsx", len(rows))
    decisions, _ = batch_service.decide_rows(rows)
    token = CancellationToken()
    token.cancel()

    stats = batch_service.process_batch(decisions, batch.id, create_backup=False, cancellation=token)

    assert stats.cancelled == 2
    assert stats.status is UploadBatchStatus.COMPLETED_WITH_ERRORS
    assert "cancelled" in stats.errors[-1]["error"]
    assert db.session.get(UploadBatch, batch.id).skipped_count == 2
    assert db.session.execute(select(Organization)).scalars().all() == []


def test_inserts_are_pushed_to_the_undo_session(batch_service, row_factory):
    registry = UndoSessionRegistry()
    undo_session = registry.open(created_by="tester")

    stats = batch_service.ingest_rows([row_factory()], filename="c.xlsx", undo_session_id=undo_session.id)

    entries = registry.stack(undo_session.id).list_entries()
    assert [entry.action_type for entry in entries] == ["insert_product", "insert_organization"]
    assert {entry.batch_id for entry in entries} == {stats.batch_id}


def test_disposed_undo_session_fails_before_mutating(batch_service, row_factory):
    registry = UndoSessionRegistry()
    undo_session = registry.open()
    registry.dispose(undo_session.id)

    with pytest.raises(UndoSessionClosed):
        batch_service.ingest_rows([row_factory()], filename="c.xlsx", undo_session_id=undo_session.id)

    assert db.session.execute(select(Organization)).scalars().all() == []


def test_unknown_batch_is_misuse(batch_service):
    with pytest.raises(ValueError):
        batch_service.process_batch([], 999)


def test_oversized_upload_is_refused_before_a_batch_exists(batch_service, row_factory):
    with pytest.raises(RowLimitExceeded):
        batch_service.ingest_rows([row_factory(), row_factory()], filename="c.xlsx", max_rows=1)

    assert db.session.execute(select(UploadBatch)).scalars().all() == []


def test_stats_payload_is_json_friendly(batch_service, row_factory):
    stats = batch_service.ingest_rows([row_factory()], filename="c.xlsx", create_backup=False)

    payload = stats.as_dict()
    assert payload["status"] == "completed"
    assert payload["inserted"] == 2
    assert payload["updated"] == 0


def test_rows_sharing_a_new_organization_insert_it_once(batch_service, row_factory, store):
    stats = batch_service.ingest_rows(
        [row_factory(codificacion="PRD-A"), row_factory(codificacion="PRD-B")],
        filename="c.xlsx",
    )

    assert stats.status is UploadBatchStatus.COMPLETED
    assert stats.failed == 0
    assert stats.organizations_inserted == 1
    assert stats.organizations_updated == 1
    assert stats.products_inserted == 2
    assert [entry.action_taken for entry in _log(stats.batch_id)] == [
        ProcessingOutcome.INSERT_BOTH,
        ProcessingOutcome.UPDATE_ORG_INSERT_PRODUCT,
    ]
    assert len(db.session.execute(select(Organization)).scalars().all()) == 1
    for codificacion in ("PRD-A", "PRD-B"):
        assert store.get_by_key(EntityKind.PRODUCT, codificacion).organization_cuit == "30712345678"
    assert CertificateDiagnosticsService().generate_report(stats.batch_id).is_reconciled


def test_rows_sharing_a_stored_organization_update_it_in_order(batch_service, stored_organization, row_factory, store):
    stats = batch_service.ingest_rows(
        [
            row_factory(codificacion="PRD-A", emission_date="2024-06-01"),
            row_factory(codificacion="PRD-B", emission_date="2024-06-02", email="compras@acme.com.ar"),
        ],
        filename="c.xlsx",
    )

    assert stats.status is UploadBatchStatus.COMPLETED
    assert stats.failed == 0
    assert stats.organizations_updated == 2
    assert stats.products_inserted == 2
    organization = store.get_by_key(EntityKind.ORGANIZATION, "30712345678")
    assert organization.version == 3
    assert organization.email == "compras@acme.com.ar"
    assert store.get_by_key(EntityKind.PRODUCT, "PRD-B") is not None


def test_older_row_after_a_newer_one_for_the_same_organization_is_skipped(
    batch_service, stored_organization, row_factory, store
):
    stats = batch_service.ingest_rows(
        [
            row_factory(codificacion="PRD-A", emission_date="2024-06-02", email="compras@acme.com.ar"),
            row_factory(codificacion="PRD-B", emission_date="2024-06-01", email="viejo@acme.com.ar"),
        ],
        filename="c.xlsx",
    )

    entries = _log(stats.batch_id)
    assert entries[1].action_taken is ProcessingOutcome.SKIP
    assert entries[1].skip_reason == "organization_not_newer"
    assert stats.failed == 0
    assert store.get_by_key(EntityKind.ORGANIZATION, "30712345678").email == "compras@acme.com.ar"
    assert store.get_by_key(EntityKind.PRODUCT, "PRD-B") is None


def test_rows_are_grouped_by_shared_keys(batch_service, row_factory):
    rows = validate_rows(
        [
            row_factory(codificacion="PRD-A"),
            row_factory(cuit="20-11111111-2", codificacion="PRD-B"),
            row_factory(codificacion="PRD-C"),
            row_factory(cuit="20-22222222-3", codificacion="PRD-B"),
            row_factory(cuit="20-33333333-4", codificacion="PRD-D"),
        ]
    ).rows
    decisions, _ = batch_service.decide_rows(rows)

    groups = group_by_shared_keys(decisions)

    assert [[decision.row_number for decision in group] for group in groups] == [[2, 4], [3, 5], [6]]


def test_worker_pool_processes_every_row(app, stored_organization, row_factory, store):
    service = CertificateBatchService(max_workers=3, actor="tester@example.com")
    rows = [
        row_factory(codificacion="PRD-A", emission_date="2024-06-01"),
        row_factory(cuit="20-11111111-2", razon_social="Beta SRL", codificacion="PRD-002"),
        row_factory(codificacion="PRD-B", emission_date="2024-06-02"),
        row_factory(cuit="20-22222222-3", razon_social="Gamma SA", codificacion="PRD-003"),
        row_factory(emission_date=""),
    ]

    stats = service.ingest_rows(rows, filename="c.xlsx")

    assert stats.status is UploadBatchStatus.COMPLETED
    assert stats.failed == 0
    assert stats.rejected == 1
    assert stats.organizations_inserted == 2
    assert stats.organizations_updated == 2
    assert stats.products_inserted == 4
    assert [entry.row_number for entry in _log(stats.batch_id)] == [2, 3, 4, 5, 6]
    assert CertificateDiagnosticsService().generate_report(stats.batch_id).is_reconciled
    for codificacion in ("PRD-A", "PRD-B", "PRD-002", "PRD-003"):
        assert store.get_by_key(EntityKind.PRODUCT, codificacion) is not None
    assert store.get_by_key(EntityKind.ORGANIZATION, "30712345678").version == 3


def test_finalized_batch_cannot_be_processed_again(batch_service, row_factory):
    rows = validate_rows([row_factory()]).rows
    batch = batch_service.create_batch("c.xlsx", len(rows))
    decisions, _ = batch_service.decide_rows(rows)
    batch_service.process_batch(decisions, batch.id, create_backup=False)

    with pytest.raises(ValueError, match="already completed"):
        batch_service.process_batch(decisions, batch.id, create_backup=False)

    assert len(_log(batch.id)) == 1
    assert CertificateDiagnosticsService().generate_report(batch.id).is_reconciled


def test_undo_session_disposed_mid_batch_still_finalizes(batch_service, row_factory, monkeypatch):
    registry = UndoSessionRegistry()
    undo_session = registry.open()
    write_log = CertificateBatchService._write_log

    def _write_then_dispose(self, *args, **kwargs):
        write_log(self, *args, **kwargs)
        registry.dispose(undo_session.id)

    monkeypatch.setattr(CertificateBatchService, "_write_log", _write_then_dispose)

    stats = batch_service.ingest_rows([row_factory()], filename="c.xlsx", undo_session_id=undo_session.id)

    assert stats.status is UploadBatchStatus.COMPLETED_WITH_ERRORS
    assert stats.rows_processed == 1
    assert "Undo history incomplete" in stats.errors[-1]["error"]
    batch = db.session.get(UploadBatch, stats.batch_id)
    assert batch.status is UploadBatchStatus.COMPLETED_WITH_ERRORS
    assert batch.completed_at is not None
