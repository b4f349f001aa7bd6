import json
from typing import Any, Dict

from flask import Flask

from certsync.certificates import get_celery_app, init_certificates
from certsync.certificates.celery_app import DEFAULT_QUEUE_NAME
from certsync.certificates.pipeline import EntityKind
from certsync.certificates.tasks import process_rows
from certsync.models import UploadBatch, db

EAGER = {"task_always_eager": True, "task_eager_propagates": True}


def build_certificates_app(**overrides) -> Flask:
    """
    Construct a minimal Flask app with certificates enabled for worker tests.
    """
    instance_path_override = overrides.pop("INSTANCE_PATH", None)
    if instance_path_override:
        app = Flask(__name__, instance_path=instance_path_override)
    else:
        app = Flask(__name__)
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        CERTIFICATES_ENABLED=True,
    )
    app.config.update(overrides)
    init_certificates(app)
    return app


def test_celery_defaults_to_sqlite_transport(tmp_path):
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()
    sqlite_path = instance_dir / "custom.sqlite"

    app = build_certificates_app(
        CELERY_SQLITE_PATH=str(sqlite_path),
        CELERY_CONFIG=EAGER,
        INSTANCE_PATH=str(instance_dir),
    )

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1


def test_celery_config_accepts_json_string(tmp_path):
    app = build_certificates_app(
        CELERY_BROKER_URL="memory://",
        CELERY_RESULT_BACKEND="cache+memory://",
        CELERY_CONFIG=json.dumps({"task_always_eager": True}),
        INSTANCE_PATH=str(tmp_path),
    )

    celery_app = get_celery_app(app)
    assert celery_app.conf.task_always_eager is True
    assert celery_app.conf.broker_url == "memory://"


def test_invalid_celery_config_json_is_ignored(tmp_path):
    app = build_certificates_app(
        CELERY_BROKER_URL="memory://",
        CELERY_RESULT_BACKEND="cache+memory://",
        CELERY_CONFIG="{not json",
        INSTANCE_PATH=str(tmp_path),
    )

    celery_app = get_celery_app(app)
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.task_always_eager is False


def test_disabled_certificates_have_no_celery_app(tmp_path):
    app = build_certificates_app(CERTIFICATES_ENABLED=False, INSTANCE_PATH=str(tmp_path))

    assert get_celery_app(app) is None
    result = app.test_cli_runner().invoke(args=["certificates"])
    assert result.exit_code != 0
    assert "unavailable" in result.output


def test_worker_ping_cli(tmp_path):
    app = build_certificates_app(
        CERTIFICATES_WORKER_ENABLED=True,
        CELERY_CONFIG=EAGER,
        INSTANCE_PATH=str(tmp_path),
    )

    runner = app.test_cli_runner()
    result = runner.invoke(args=["certificates", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(monkeypatch, tmp_path):
    app = build_certificates_app(
        CERTIFICATES_WORKER_ENABLED=True,
        CELERY_CONFIG=EAGER,
        INSTANCE_PATH=str(tmp_path),
    )
    celery_app = get_celery_app(app)
    assert celery_app is not None

    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    runner = app.test_cli_runner()
    result = runner.invoke(args=["certificates", "worker", "run", "--concurrency", "2", "--pool", "solo"])

    assert result.exit_code == 0, result.output
    assert calls["argv"] == ["worker", "--loglevel", "info", "-Q", DEFAULT_QUEUE_NAME, "--concurrency", "2", "--pool", "solo"]
    assert app.extensions["certificates"]["worker_enabled"] is True


def test_ingest_can_be_queued(app, runner, tmp_path, monkeypatch):
    celery_app = get_celery_app(app)
    sent: Dict[str, Any] = {}

    class FakeResult:
        id = "task-123"

    def fake_send_task(name, kwargs=None, **options):
        sent["name"] = name
        sent["kwargs"] = kwargs
        return FakeResult()

    monkeypatch.setattr(celery_app, "send_task", fake_send_task)
    upload = tmp_path / "upload.json"
    upload.write_text(json.dumps([{"CUIT": "30712345678", "Emission Date": "2024-06-01"}]), encoding="utf-8")

    result = runner.invoke(args=["certificates", "ingest", "--file", str(upload), "--no-inline", "--no-backup"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {"task_id": "task-123", "status": "queued", "filename": "upload.json"}
    assert sent["name"] == "certificates.process_rows"
    assert sent["kwargs"]["create_backup"] is False
    assert sent["kwargs"]["rows"] == [{"cuit": "30712345678", "emission_date": "2024-06-01"}]


def test_process_rows_task_runs_the_pipeline(app, row_factory, store):
    payload = process_rows.run(rows=[row_factory()], filename="queued.csv", created_by="worker")

    assert payload["status"] == "completed"
    assert payload["inserted"] == 2
    batch = db.session.get(UploadBatch, payload["batch_id"])
    assert batch.filename == "queued.csv"
    assert batch.created_by == "worker"
    assert payload["backup_snapshot_id"] is not None
    assert store.get_by_key(EntityKind.ORGANIZATION, "30712345678") is not None
