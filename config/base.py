# config/base.py
import os
import warnings
from pathlib import Path

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})

_DEV_SECRET_KEY = "dev-secret-key-change-in-production"
_SQLITE_CONNECT_ARGS = {"connect_args": {"check_same_thread": False, "timeout": 5}}


def _coerce_bool(value, default=False):
    """Read an environment flag; anything unrecognised keeps ``default``."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    token = str(value).strip().lower()
    if token in _TRUE_VALUES:
        return True
    if token in _FALSE_VALUES:
        return False
    return default


def _coerce_int(value, default, *, minimum=None, maximum=None):
    """
    Read an integer setting, clamped to ``minimum``/``maximum``.

    Blank or non-numeric values fall back to ``default``.
    """
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None:
        number = max(number, minimum)
    if maximum is not None:
        number = min(number, maximum)
    return number


def _env_flag(name, default=False):
    return _coerce_bool(os.environ.get(name), default=default)


def _env_int(name, default, **bounds):
    return _coerce_int(os.environ.get(name), default, **bounds)


def _development_secret_key():
    key = os.environ.get("SECRET_KEY")
    if key:
        return key
    if os.environ.get("FLASK_ENV", "development") == "development":
        warnings.warn(
            "SECRET_KEY not set; using the development placeholder. Set SECRET_KEY before deploying.",
            UserWarning,
        )
    return _DEV_SECRET_KEY


def _instance_sqlite_uri(filename):
    instance_dir = _PROJECT_ROOT / "instance"
    instance_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{(instance_dir / filename).as_posix()}"


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}
    SQLALCHEMY_ECHO = False

    APP_NAME = os.environ.get("APP_NAME", "certsync")

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_NAME = os.environ.get("LOG_FILE_NAME", "certsync.log")
    LOG_FILE_MAX_BYTES = _env_int("LOG_FILE_MAX_BYTES", 10 * 1024 * 1024, minimum=1024)
    LOG_FILE_BACKUP_COUNT = _env_int("LOG_FILE_BACKUP_COUNT", 10, minimum=0)
    ENABLE_FILE_LOGGING = _env_flag("ENABLE_FILE_LOGGING", default=True)
    ENABLE_CONSOLE_LOGGING = _env_flag("ENABLE_CONSOLE_LOGGING", default=True)

    # Certificate reconciliation
    CERTIFICATES_ENABLED = _env_flag("CERTIFICATES_ENABLED", default=True)
    CERTIFICATES_BACKUP_ENABLED = _env_flag("CERTIFICATES_BACKUP_ENABLED", default=True)
    CERTIFICATES_MAX_WORKERS = _env_int("CERTIFICATES_MAX_WORKERS", 1, minimum=1, maximum=32)
    CERTIFICATES_MAX_ROWS = _env_int("CERTIFICATES_MAX_ROWS", 10000, minimum=1)
    CERTIFICATES_SNAPSHOT_HISTORY_LIMIT = _env_int("CERTIFICATES_SNAPSHOT_HISTORY_LIMIT", 50, minimum=1, maximum=500)

    # Background worker
    CERTIFICATES_WORKER_ENABLED = _env_flag("CERTIFICATES_WORKER_ENABLED")
    CERTIFICATES_TASK_TIME_LIMIT = _env_int("CERTIFICATES_TASK_TIME_LIMIT", 15 * 60, minimum=60)
    CERTIFICATES_TASK_SOFT_TIME_LIMIT = _env_int("CERTIFICATES_TASK_SOFT_TIME_LIMIT", 12 * 60, minimum=30)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")


class DevelopmentConfig(Config):
    DEBUG = True
    SECRET_KEY = _development_secret_key()
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _instance_sqlite_uri("certsync_dev.db")
    SQLALCHEMY_ECHO = _env_flag("SQLALCHEMY_ECHO")
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = _SQLITE_CONNECT_ARGS

    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = _SQLITE_CONNECT_ARGS

    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False

    CERTIFICATES_MAX_WORKERS = 1
    CELERY_BROKER_URL = "memory://"
    CELERY_RESULT_BACKEND = "cache+memory://"


class ProductionConfig(Config):
    DEBUG = False
    # Heroku-style URLs still use the removed "postgres" dialect name
    SQLALCHEMY_DATABASE_URI = (os.environ.get("DATABASE_URL") or "").replace("postgres://", "postgresql://", 1) or None

    LOG_FORMAT = "json"
    ENABLE_CONSOLE_LOGGING = False


CONFIG_BY_ENV = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}


def config_for(flask_env):
    """Config class for a ``FLASK_ENV`` value; unknown names get development."""
    return CONFIG_BY_ENV.get(flask_env, DevelopmentConfig)
