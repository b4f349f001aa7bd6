# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask
from sqlalchemy import event
from sqlalchemy.engine import Engine

# .env must be loaded before config classes read os.environ
load_dotenv()

from certsync.certificates import init_certificates  # noqa: E402
from certsync.models import db  # noqa: E402
from certsync.utils.logging_config import setup_logging  # noqa: E402
from config import config_for  # noqa: E402
from config.validation import validate_and_exit  # noqa: E402

logger = logging.getLogger(__name__)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def _install_sqlite_pragmas(engine: Engine, *, foreign_keys: bool) -> None:
    """Apply WAL and busy-timeout pragmas to every new SQLite connection."""
    if getattr(engine, "_certsync_pragmas", False):
        return

    statements = SQLITE_PRAGMAS + (("PRAGMA foreign_keys=ON",) if foreign_keys else ())

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - driver hook
        cursor = dbapi_connection.cursor()
        try:
            for statement in statements:
                cursor.execute(statement)
        finally:
            cursor.close()

    engine._certsync_pragmas = True  # type: ignore[attr-defined]


def create_app(flask_env=None) -> Flask:
    flask_env = flask_env or os.environ.get("FLASK_ENV", "development")
    if flask_env == "production":
        validate_and_exit(flask_env)

    flask_app = Flask(__name__)
    flask_app.config.from_object(config_for(flask_env))

    db.init_app(flask_app)
    setup_logging(flask_app)

    testing = flask_app.config.get("TESTING", False)
    with flask_app.app_context():
        if db.engine.url.get_backend_name() == "sqlite":
            _install_sqlite_pragmas(db.engine, foreign_keys=not testing)
        if not testing:
            db.create_all()

    init_certificates(flask_app)
    logger.debug("certsync app created", extra={"flask_env": flask_env})
    return flask_app


app = create_app()
