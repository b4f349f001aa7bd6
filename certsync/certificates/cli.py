"""
Operator commands for certificate uploads.

Registered on ``app.cli`` as ``flask certificates``.
"""

from __future__ import annotations

import csv
import json
import re
from pathlib import Path
from typing import Any, Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from certsync.utils.certificates import (
    get_max_rows,
    get_max_workers,
    get_snapshot_history_limit,
    is_backup_enabled,
    is_certificates_enabled,
)

from .celery_app import CERTIFICATES_EXTENSION_KEY, DEFAULT_QUEUE_NAME, get_celery_app
from .errors import DiagnosticsIntegrityError, UndoSessionClosed
from .pipeline.backup_service import BackupService
from .pipeline.batch_service import CertificateBatchService, ProcessingStats
from .pipeline.diagnostics_service import CertificateDiagnosticsService
from .pipeline.extract import RowLimitExceeded
from .pipeline.undo_service import UndoSessionRegistry, UndoStack

_HEADER_SEPARATORS = re.compile(r"[\s\-]+")


@click.group(name="certificates", invoke_without_command=True)
@click.pass_context
def certificates_cli(ctx):
    """Certificate upload commands. Shows the active settings when run alone."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_certificates_enabled(app):
        raise click.ClickException(
            "Certificates are disabled via CERTIFICATES_ENABLED=false. Enable them to run certificate commands."
        )
    if ctx.invoked_subcommand is None:
        click.echo("Certificate processing settings:")
        click.echo(f"  backups enabled: {is_backup_enabled(app)}")
        click.echo(f"  max workers: {get_max_workers(app)}")
        click.echo(f"  max rows per upload: {get_max_rows(app)}")


def get_disabled_certificates_group() -> click.Group:
    @click.group(name="certificates", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Certificate commands are unavailable because CERTIFICATES_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Certificates Celery app is unavailable. Ensure CERTIFICATES_ENABLED=true and the "
            "certificates package initialises before running worker commands."
        )
    return celery_app


def normalize_header(name: str) -> str:
    return _HEADER_SEPARATORS.sub("_", str(name).strip().lower())


def load_rows(path: Path) -> list[dict[str, Any]]:
    """Read upload rows from a ``.json`` array or a headed ``.csv`` file."""

    suffix = path.suffix.lower()
    if suffix == ".json":
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
            raise click.ClickException(f"{path} must contain a JSON array of objects.")
        return [{normalize_header(key): value for key, value in item.items()} for item in payload]
    if suffix == ".csv":
        with path.open("r", encoding="utf-8-sig", newline="") as handle:
            reader = csv.DictReader(handle)
            return [
                {normalize_header(key): value for key, value in row.items() if key is not None}
                for row in reader
            ]
    raise click.ClickException(f"Unsupported upload format '{suffix}'. Use .csv or .json.")


def _format_stats(stats: ProcessingStats) -> str:
    lines = [
        f"Batch {stats.batch_id} finished with status {stats.status.value}",
        f"  rows in file: {stats.total_rows}",
        f"  processed: {stats.rows_processed} (inserted {stats.inserted}, updated {stats.updated})",
        f"  skipped: {stats.skipped}",
        f"  needs completion: {stats.needs_completion}",
        f"  rejected: {stats.rejected}",
        f"  failed: {stats.failed}",
        f"  cancelled: {stats.cancelled}",
    ]
    if stats.backup_snapshot_id is not None:
        lines.append(f"  backup snapshot: {stats.backup_snapshot_id}")
    return "\n".join(lines)


@certificates_cli.command("ingest")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Upload to process (.csv or .json).",
)
@click.option("--created-by", default=None, help="Operator recorded on the batch and audit entries.")
@click.option("--backup/--no-backup", default=None, help="Override CERTIFICATES_BACKUP_ENABLED.")
@click.option("--undo-session", "undo_session_id", default=None, help="Undo session to record inserts in.")
@click.option(
    "--inline/--no-inline",
    default=True,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.option("--summary-json", is_flag=True, help="Emit the processing stats as JSON (inline runs only).")
@click.pass_context
def certificates_ingest(
    ctx,
    file_path: Path,
    created_by: Optional[str],
    backup: Optional[bool],
    undo_session_id: Optional[str],
    inline: bool,
    summary_json: bool,
):
    """Reconcile an upload against the registry."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    rows = load_rows(file_path)
    create_backup = is_backup_enabled(app) if backup is None else backup

    if not inline:
        if summary_json:
            raise click.ClickException("--summary-json is only available for --inline runs.")
        celery_app = _resolve_celery(app)
        async_result = celery_app.send_task(
            "certificates.process_rows",
            kwargs={
                "rows": rows,
                "filename": file_path.name,
                "created_by": created_by,
                "create_backup": create_backup,
                "undo_session_id": undo_session_id,
            },
        )
        app.logger.info(
            "Certificate upload queued via CLI",
            extra={"certificates_task_id": async_result.id, "certificates_filename": file_path.name},
        )
        click.echo(json.dumps({"task_id": async_result.id, "status": "queued", "filename": file_path.name}))
        return

    service = CertificateBatchService(max_workers=get_max_workers(app), actor=created_by)
    try:
        stats = service.ingest_rows(
            rows,
            filename=file_path.name,
            created_by=created_by,
            create_backup=create_backup,
            undo_session_id=undo_session_id,
            max_rows=get_max_rows(app),
        )
    except (RowLimitExceeded, UndoSessionClosed, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(_format_stats(stats))
    if summary_json:
        click.echo(json.dumps(stats.as_dict(), indent=2, sort_keys=True, default=str))


@certificates_cli.command("report")
@click.option("--batch-id", required=True, type=int)
@click.option("--json", "as_json", is_flag=True, help="Emit the report as JSON.")
@click.option(
    "--csv",
    "csv_path",
    type=click.Path(path_type=Path, dir_okay=False),
    help="Also write the report to this CSV file.",
)
@click.option("--strict", is_flag=True, help="Exit with an error if the report does not reconcile.")
def certificates_report(batch_id: int, as_json: bool, csv_path: Optional[Path], strict: bool):
    """Diagnostics for one upload batch."""
    service = CertificateDiagnosticsService()
    try:
        report = service.generate_report(batch_id)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    if csv_path is not None:
        _, content = service.export_report_csv(report)
        csv_path.write_text(content, encoding="utf-8")

    if as_json:
        click.echo(json.dumps(report.summary(), indent=2, sort_keys=True))
    else:
        click.echo(f"Batch {report.batch_id} ({report.filename})")
        click.echo(f"  rows in file: {report.total_in_file}")
        click.echo(f"  processed: {report.total_processed}")
        click.echo(f"  skipped: {report.total_skipped}")
        click.echo(f"  rejected: {report.total_rejected}")
        for item in report.action_breakdown:
            click.echo(f"  {item.action}: {item.count} - {item.description}")
        for group in report.skipped_by_reason:
            click.echo(f"  skipped ({group.reason}): {group.count} - {group.description}")

    if strict:
        try:
            report.assert_reconciled()
        except DiagnosticsIntegrityError as exc:
            raise click.ClickException(str(exc)) from exc


@certificates_cli.group(name="snapshots")
def snapshots_group():
    """Inspect and prune backup snapshots."""


@snapshots_group.command("list")
@click.option("--limit", type=int, default=None, help="Defaults to CERTIFICATES_SNAPSHOT_HISTORY_LIMIT.")
@click.pass_context
def snapshots_list(ctx, limit: Optional[int]):
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    snapshots = BackupService().list_snapshots(limit or get_snapshot_history_limit(app))
    if not snapshots:
        click.echo("No backup snapshots recorded.")
        return
    for snapshot in snapshots:
        click.echo(
            f"{snapshot.id}\tbatch={snapshot.batch_id}\tstatus={snapshot.status.value}\t"
            f"organizations={snapshot.organization_row_count}\tproducts={snapshot.product_row_count}\t"
            f"created_at={snapshot.created_at.isoformat() if snapshot.created_at else ''}"
        )


@snapshots_group.command("show")
@click.option("--snapshot-id", required=True, type=int)
def snapshots_show(snapshot_id: int):
    try:
        details = BackupService().get_snapshot_details(snapshot_id)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    snapshot = details.snapshot
    payload = {
        "id": snapshot.id,
        "batch_id": snapshot.batch_id,
        "status": snapshot.status.value,
        "created_by": snapshot.created_by,
        "metadata": snapshot.metadata_json,
        "organizations": [row.cuit for row in details.organizations],
        "products": [row.codificacion for row in details.products],
        "last_restore": (
            {
                "status": details.last_restore.status.value,
                "restored_by": details.last_restore.restored_by,
                "organizations_restored": details.last_restore.organizations_restored,
                "products_restored": details.last_restore.products_restored,
            }
            if details.last_restore
            else None
        ),
    }
    click.echo(json.dumps(payload, indent=2, sort_keys=True))


@snapshots_group.command("delete")
@click.option("--snapshot-id", required=True, type=int)
@click.confirmation_option(prompt="Delete this snapshot? Live data is not affected.")
def snapshots_delete(snapshot_id: int):
    try:
        BackupService().delete_snapshot(snapshot_id)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Deleted backup snapshot {snapshot_id}.")


@certificates_cli.command("restore")
@click.option("--snapshot-id", required=True, type=int)
@click.option("--restored-by", default=None)
def certificates_restore(snapshot_id: int, restored_by: Optional[str]):
    """Write a snapshot's pre-images back over the live rows."""
    try:
        outcome = BackupService().restore(snapshot_id, restored_by=restored_by)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(
        f"Restore {outcome.status.value}: {outcome.organizations_restored} organizations, "
        f"{outcome.products_restored} products restored"
    )
    for error in outcome.errors:
        click.echo(f"  error: {error}", err=True)


@certificates_cli.group(name="undo")
def undo_group():
    """Manage undo sessions."""


@undo_group.command("open")
@click.option("--created-by", default=None)
def undo_open(created_by: Optional[str]):
    undo_session = UndoSessionRegistry().open(created_by)
    click.echo(undo_session.id)


@undo_group.command("list")
@click.option("--session-id", required=True)
def undo_list(session_id: str):
    entries = UndoStack(session_id).list_entries()
    if not entries:
        click.echo("Nothing to undo.")
        return
    for entry in entries:
        click.echo(f"{entry.id}\t{entry.action_type}\t{json.dumps(entry.action_payload, sort_keys=True)}")


@undo_group.command("apply")
@click.option("--session-id", required=True)
@click.option("--entry-id", required=True, type=int)
@click.option("--actor", default=None)
def undo_apply(session_id: str, entry_id: int, actor: Optional[str]):
    if not UndoStack(session_id).undo(entry_id, actor):
        raise click.ClickException(f"Undo entry {entry_id} could not be undone.")
    click.echo(f"Undid entry {entry_id}.")


@undo_group.command("dispose")
@click.option("--session-id", required=True)
def undo_dispose(session_id: str):
    try:
        UndoSessionRegistry().dispose(session_id)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Disposed undo session {session_id}.")


@certificates_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the certificates background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get(CERTIFICATES_EXTENSION_KEY, {})
    if not state.get("worker_enabled") and not app.config.get("CERTIFICATES_WORKER_ENABLED"):
        click.echo(
            "Warning: CERTIFICATES_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """Start the Celery worker in the current process."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    app.extensions.get(CERTIFICATES_EXTENSION_KEY, {})["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    click.echo(f"Starting certificates worker (queues: {queues}, loglevel: {loglevel})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Run the heartbeat task and print its payload."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("certificates.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'certificates.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    click.echo(json.dumps(payload, indent=2))
