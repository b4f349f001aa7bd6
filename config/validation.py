# config/validation.py

"""
Startup checks for production environment variables.

Each check reads ``os.environ`` and yields zero or more human-readable
problems; ``validate_and_exit`` prints them and stops the process.
"""

import os
import sys
from typing import Iterator, List, Optional, Tuple

PLACEHOLDER_SECRETS = frozenset({"your-secret-key", "your_secret_key"})
LOG_FORMATS = ("json", "text")


def _check_secret_key() -> Iterator[str]:
    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key in PLACEHOLDER_SECRETS:
        yield (
            "SECRET_KEY must be set to a non-placeholder value in production. "
            'Generate one with: python -c "import secrets; print(secrets.token_hex(32))"'
        )


def _check_database() -> Iterator[str]:
    if not os.environ.get("DATABASE_URL"):
        yield "DATABASE_URL must point at the production database (PostgreSQL connection string)."


def _check_log_format() -> Iterator[str]:
    log_format = os.environ.get("LOG_FORMAT", "json").lower()
    if log_format not in LOG_FORMATS:
        yield f"LOG_FORMAT must be one of {', '.join(LOG_FORMATS)} (got '{log_format}')"


def _check_worker_transport() -> Iterator[str]:
    if os.environ.get("CERTIFICATES_WORKER_ENABLED", "false").lower() != "true":
        return
    for name in ("CELERY_BROKER_URL", "CELERY_RESULT_BACKEND"):
        if not os.environ.get(name):
            yield f"{name} is required when CERTIFICATES_WORKER_ENABLED=true"


def _check_worker_count() -> Iterator[str]:
    raw = os.environ.get("CERTIFICATES_MAX_WORKERS")
    if raw is None:
        return
    try:
        workers = int(raw)
    except ValueError:
        yield f"CERTIFICATES_MAX_WORKERS must be an integer (got '{raw}')"
        return
    if workers < 1:
        yield "CERTIFICATES_MAX_WORKERS must be at least 1"


PRODUCTION_CHECKS = (
    _check_secret_key,
    _check_database,
    _check_log_format,
    _check_worker_transport,
    _check_worker_count,
)


def validate_environment(flask_env: Optional[str] = None) -> Tuple[bool, List[str]]:
    """
    Run the production checks.

    Args:
        flask_env: environment name; ``FLASK_ENV`` is used when omitted.
            Anything other than ``production`` passes without checks.

    Returns:
        ``(is_valid, errors)``
    """
    flask_env = flask_env or os.environ.get("FLASK_ENV", "development")
    if flask_env != "production":
        return True, []

    errors = [problem for check in PRODUCTION_CHECKS for problem in check()]
    return not errors, errors


def validate_and_exit(flask_env: Optional[str] = None) -> None:
    """Exit with status 1 after listing every problem on stderr."""
    is_valid, errors = validate_environment(flask_env)
    if is_valid:
        return

    rule = "=" * 80
    lines = [rule, "ENVIRONMENT VALIDATION FAILED", rule, ""]
    lines.extend(f"{number}. {error}" for number, error in enumerate(errors, 1))
    lines.extend(["", "Fix the variables above in .env or the process environment.", rule])
    print("\n".join(lines), file=sys.stderr)
    sys.exit(1)
