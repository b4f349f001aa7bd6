import csv
import json

import pytest
from sqlalchemy import select

from certsync.certificates.cli import load_rows, normalize_header
from certsync.certificates.pipeline import EntityKind, UndoSessionRegistry
from certsync.models import BackupSnapshot, UploadBatch, db

CSV_HEADER = [
    "CUIT",
    "Razon Social",
    "Direccion",
    "Email",
    "Telefono",
    "Contacto",
    "Codificacion",
    "Titular Responsable",
    "Tipo Certificacion",
    "Fecha Vencimiento",
    "Emission Date",
]


def _write_csv(path, rows):
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle)
        writer.writerow(CSV_HEADER)
        writer.writerows(rows)
    return path


@pytest.fixture
def upload_csv(tmp_path):
    return _write_csv(
        tmp_path / "certificados.csv",
        [
            [
                "30-71234567-8",
                "Acme Electrica SA",
                "Av. Siempre Viva 742",
                "ventas@acme.com.ar",
                "011 4444-5555",
                "Juana Perez",
                "PRD-001",
                "Acme Electrica SA",
                "Marca",
                "2027-05-01",
                "2024-06-01",
            ],
            ["20-11111111-2", "Beta SRL", "", "", "", "", "PRD-002", "Beta SRL", "Marca", "2027-01-01", "2024-06-01"],
            ["20-22222222-3", "Sin Fecha SRL", "", "", "", "", "PRD-003", "", "", "", ""],
        ],
    )


def _latest_batch():
    return db.session.execute(select(UploadBatch).order_by(UploadBatch.id.desc())).scalars().first()


def test_normalize_header():
    assert normalize_header(" Razon Social ") == "razon_social"
    assert normalize_header("Emission-Date") == "emission_date"


def test_load_rows_reads_json(tmp_path):
    path = tmp_path / "upload.json"
    path.write_text(json.dumps([{"CUIT": "30712345678", "Emission Date": "2024-06-01"}]), encoding="utf-8")

    assert load_rows(path) == [{"cuit": "30712345678", "emission_date": "2024-06-01"}]


def test_certificates_group_shows_settings(runner):
    result = runner.invoke(args=["certificates"])

    assert result.exit_code == 0, result.output
    assert "max rows per upload: 10000" in result.output


def test_ingest_inline_reports_stats(runner, stored_product, upload_csv, store):
    result = runner.invoke(
        args=["certificates", "ingest", "--file", str(upload_csv), "--created-by", "ops", "--summary-json"]
    )

    assert result.exit_code == 0, result.output
    assert "finished with status completed" in result.output
    payload = json.loads(result.output[result.output.index("{") :])
    assert payload["updated"] == 2
    assert payload["needs_completion"] == 1
    assert payload["rejected"] == 1
    assert payload["backup_snapshot_id"] is not None
    assert store.get_by_key(EntityKind.ORGANIZATION, "30712345678").email == "ventas@acme.com.ar"
    assert _latest_batch().created_by == "ops"


def test_ingest_without_backup(runner, upload_csv):
    result = runner.invoke(args=["certificates", "ingest", "--file", str(upload_csv), "--no-backup"])

    assert result.exit_code == 0, result.output
    assert db.session.execute(select(BackupSnapshot)).scalars().all() == []


def test_ingest_rejects_unknown_format(runner, tmp_path):
    path = tmp_path / "upload.xlsx"
    path.write_bytes(b"")

    result = runner.invoke(args=["certificates", "ingest", "--file", str(path)])

    assert result.exit_code != 0
    assert "Unsupported upload format" in result.output


def test_ingest_respects_row_limit(app, runner, upload_csv):
    app.config["CERTIFICATES_MAX_ROWS"] = 2

    result = runner.invoke(args=["certificates", "ingest", "--file", str(upload_csv)])

    assert result.exit_code != 0
    assert _latest_batch() is None


def test_report_outputs(runner, stored_product, upload_csv, tmp_path):
    runner.invoke(args=["certificates", "ingest", "--file", str(upload_csv)])
    batch_id = _latest_batch().id
    csv_path = tmp_path / "report.csv"

    text = runner.invoke(args=["certificates", "report", "--batch-id", str(batch_id)])
    as_json = runner.invoke(
        args=["certificates", "report", "--batch-id", str(batch_id), "--json", "--csv", str(csv_path), "--strict"]
    )

    assert text.exit_code == 0, text.output
    assert "rows in file: 3" in text.output
    assert as_json.exit_code == 0, as_json.output
    summary = json.loads(as_json.output)
    assert summary["reconciled"] is True
    assert summary["total_rejected"] == 1
    assert csv_path.read_text(encoding="utf-8").startswith("section,key,value,description")


def test_report_strict_fails_on_mismatch(runner, upload_csv):
    runner.invoke(args=["certificates", "ingest", "--file", str(upload_csv)])
    batch = _latest_batch()
    batch.total_rows = 10
    db.session.commit()

    result = runner.invoke(args=["certificates", "report", "--batch-id", str(batch.id), "--strict"])

    assert result.exit_code != 0
    assert "10 rows in file" in result.output


def test_report_unknown_batch(runner):
    result = runner.invoke(args=["certificates", "report", "--batch-id", "999"])

    assert result.exit_code != 0
    assert "not found" in result.output


def test_snapshot_commands_and_restore(runner, stored_product, upload_csv, store):
    runner.invoke(args=["certificates", "ingest", "--file", str(upload_csv)])
    snapshot_id = db.session.execute(select(BackupSnapshot.id)).scalar_one()

    listed = runner.invoke(args=["certificates", "snapshots", "list"])
    shown = runner.invoke(args=["certificates", "snapshots", "show", "--snapshot-id", str(snapshot_id)])
    restored = runner.invoke(
        args=["certificates", "restore", "--snapshot-id", str(snapshot_id), "--restored-by", "ops"]
    )

    assert listed.exit_code == 0, listed.output
    assert listed.output.startswith(f"{snapshot_id}\t")
    assert shown.exit_code == 0, shown.output
    assert json.loads(shown.output)["organizations"] == ["30712345678"]
    assert restored.exit_code == 0, restored.output
    assert "Restore completed: 1 organizations, 1 products restored" in restored.output
    assert store.get_by_key(EntityKind.ORGANIZATION, "30712345678").email == "contacto@acme.com.ar"

    deleted = runner.invoke(args=["certificates", "snapshots", "delete", "--snapshot-id", str(snapshot_id)], input="y\n")

    assert deleted.exit_code == 0, deleted.output
    assert db.session.get(BackupSnapshot, snapshot_id) is None


def test_snapshot_list_when_empty(runner):
    result = runner.invoke(args=["certificates", "snapshots", "list"])

    assert result.exit_code == 0
    assert "No backup snapshots recorded." in result.output


def test_undo_commands(runner, upload_csv, store):
    opened = runner.invoke(args=["certificates", "undo", "open", "--created-by", "ops"])
    session_id = opened.output.strip()
    runner.invoke(args=["certificates", "ingest", "--file", str(upload_csv), "--undo-session", session_id])

    listed = runner.invoke(args=["certificates", "undo", "list", "--session-id", session_id])
    entry_id = listed.output.splitlines()[0].split("\t")[0]
    applied = runner.invoke(args=["certificates", "undo", "apply", "--session-id", session_id, "--entry-id", entry_id])
    again = runner.invoke(args=["certificates", "undo", "apply", "--session-id", session_id, "--entry-id", entry_id])
    disposed = runner.invoke(args=["certificates", "undo", "dispose", "--session-id", session_id])

    assert opened.exit_code == 0, opened.output
    assert "insert_product" in listed.output
    assert applied.exit_code == 0, applied.output
    assert store.get_by_key(EntityKind.PRODUCT, "PRD-001") is None
    assert again.exit_code != 0
    assert disposed.exit_code == 0, disposed.output
    assert not UndoSessionRegistry().get(session_id).is_active


def test_disabled_certificates_group(app, runner):
    app.config["CERTIFICATES_ENABLED"] = False

    result = runner.invoke(args=["certificates"])

    assert result.exit_code != 0
    assert "CERTIFICATES_ENABLED=false" in result.output
