# conftest.py

import os
from datetime import date, datetime, timezone

import pytest

# app.py builds its module-level app from FLASK_ENV at import time
os.environ["FLASK_ENV"] = "testing"

from app import app as flask_app  # noqa: E402
from certsync.models import Organization, Product, db  # noqa: E402
from certsync.utils.logging_config import setup_logging  # noqa: E402

TEST_SETTINGS = {
    "TESTING": True,
    "SECRET_KEY": "test-secret-key-for-testing-only",
    "ENABLE_FILE_LOGGING": False,
    "ENABLE_CONSOLE_LOGGING": True,
    "LOG_LEVEL": "DEBUG",
    "CERTIFICATES_ENABLED": True,
    "CERTIFICATES_BACKUP_ENABLED": True,
    "CERTIFICATES_MAX_WORKERS": 1,
    "CERTIFICATES_MAX_ROWS": 10000,
    "CERTIFICATES_WORKER_ENABLED": False,
}


@pytest.fixture(scope="function")
def app(tmp_path):
    """The shared app on a fresh in-memory schema with default certificate settings."""
    flask_app.config.update(TEST_SETTINGS, LOG_DIR=str(tmp_path / "logs"))
    setup_logging(flask_app)

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def stored_organization(app):
    """An organization last touched on 2024-03-01."""
    organization = Organization(
        cuit="30712345678",
        razon_social="Acme Electrica SA",
        direccion="Av. Siempre Viva 742",
        email="contacto@acme.com.ar",
        telefono="011 4444-5555",
        contacto="Juana Perez",
    )
    db.session.add(organization)
    db.session.commit()
    organization.updated_at = datetime(2024, 3, 1, tzinfo=timezone.utc)
    db.session.commit()
    return organization


@pytest.fixture
def stored_product(app, stored_organization):
    """A product certified for ``stored_organization``, last touched on 2024-03-01."""
    product = Product(
        codificacion="PRD-001",
        titular_responsable="Acme Electrica SA",
        tipo_certificacion="Marca",
        fecha_vencimiento=date(2026, 3, 1),
        organization_cuit=stored_organization.cuit,
    )
    db.session.add(product)
    db.session.commit()
    product.updated_at = datetime(2024, 3, 1, tzinfo=timezone.utc)
    db.session.commit()
    return product

