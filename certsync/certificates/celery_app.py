"""
Celery wiring for queued certificate batches.

Without explicit broker settings the worker talks to a SQLite file in the
Flask instance folder, so ``flask certificates worker run`` works on a laptop
with nothing else installed.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "certificates"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
CERTIFICATES_EXTENSION_KEY = "certificates"

_WORKER_LOG_FORMAT = "[%(asctime)s: %(levelname)s/%(processName)s] %(message)s"
_TASK_LOG_FORMAT = "[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CeleryTransport:
    broker_url: str
    result_backend: str

    @property
    def is_sqlite(self) -> bool:
        return self.broker_url.startswith("sqla+sqlite")


def _sqlite_store(app: Flask) -> str:
    location = Path(app.config.get("CELERY_SQLITE_PATH") or DEFAULT_SQLITE_FILENAME)
    if not location.is_absolute():
        location = Path(app.instance_path) / location
    location.parent.mkdir(parents=True, exist_ok=True)
    # forward slashes on every platform
    return location.as_posix()


def resolve_transport(app: Flask) -> CeleryTransport:
    """
    Pick broker and result backend URLs.

    Each URL falls back independently to the SQLite store named by
    ``CELERY_SQLITE_PATH`` (relative to the instance folder).
    """
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if not (broker_url and result_backend):
        store = _sqlite_store(app)
        broker_url = broker_url or f"sqla+sqlite:///{store}"
        result_backend = result_backend or f"db+sqlite:///{store}"
    return CeleryTransport(broker_url=broker_url, result_backend=result_backend)


def _overrides(app: Flask) -> dict[str, Any]:
    raw = app.config.get("CELERY_CONFIG")
    if not raw:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            app.logger.warning("Ignoring CELERY_CONFIG: value is not valid JSON.", exc_info=True)
            return {}
    return dict(raw)


def build_worker_conf(app: Flask) -> dict[str, Any]:
    """Celery settings for the certificates queue, with ``CELERY_CONFIG`` applied last."""
    conf: dict[str, Any] = {
        "task_default_queue": DEFAULT_QUEUE_NAME,
        "task_default_exchange": DEFAULT_QUEUE_NAME,
        "task_default_routing_key": DEFAULT_QUEUE_NAME,
        "task_queues": [Queue(DEFAULT_QUEUE_NAME)],
        # one batch in flight per worker process
        "worker_prefetch_multiplier": 1,
        "task_acks_late": True,
        "task_track_started": True,
        "result_extended": True,
        "broker_connection_retry_on_startup": True,
        "task_time_limit": app.config.get("CERTIFICATES_TASK_TIME_LIMIT", 15 * 60),
        "task_soft_time_limit": app.config.get("CERTIFICATES_TASK_SOFT_TIME_LIMIT", 12 * 60),
        "worker_hijack_root_logger": False,
        "worker_log_format": _WORKER_LOG_FORMAT,
        "worker_task_log_format": _TASK_LOG_FORMAT,
    }
    conf.update(_overrides(app))
    return conf


def _bind_to_flask(celery_app: Celery, app: Flask) -> None:
    base_task = celery_app.Task

    class AppContextTask(base_task):  # type: ignore[misc, valid-type]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = AppContextTask  # type: ignore[assignment]


def create_celery_app(app: Flask) -> Celery:
    """Build the Celery application used by ``certificates.*`` tasks."""
    transport = resolve_transport(app)
    celery_app = Celery(
        app.import_name,
        broker=transport.broker_url,
        backend=transport.result_backend,
        include=("certsync.certificates.tasks",),
    )
    celery_app.conf.update(build_worker_conf(app))
    _bind_to_flask(celery_app, app)

    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)

    logger.info(
        "Certificates worker transport configured",
        extra={
            "certificates_celery_broker_url": transport.broker_url,
            "certificates_celery_result_backend": transport.result_backend,
            "certificates_celery_sqlite": transport.is_sqlite,
            "certificates_worker_enabled": app.config.get("CERTIFICATES_WORKER_ENABLED"),
        },
    )
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    if state.get("celery_app") is None:
        state["celery_app"] = create_celery_app(app)
    return state["celery_app"]


def get_celery_app(app: Flask) -> Celery | None:
    """Celery app for ``app``, or ``None`` while certificates are disabled."""
    state = app.extensions.get(CERTIFICATES_EXTENSION_KEY)
    if not state or (state.get("celery_app") is None and not state.get("enabled")):
        return None
    return ensure_celery_app(app, state)
