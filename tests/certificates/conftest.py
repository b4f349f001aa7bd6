from __future__ import annotations

import pytest

from certsync.certificates.pipeline import CertificateBatchService, EntityStore
from certsync.models import db


@pytest.fixture
def row_factory():
    """Build an upload row (header-keyed, as parsed from the sheet)."""

    def _factory(**overrides):
        row = {
            "cuit": "30-71234567-8",
            "razon_social": "Acme Electrica SA",
            "direccion": "Av. Siempre Viva 742",
            "email": "contacto@acme.com.ar",
            "telefono": "011 4444-5555",
            "contacto": "Juana Perez",
            "codificacion": "PRD-001",
            "titular_responsable": "Acme Electrica SA",
            "tipo_certificacion": "Marca",
            "fecha_vencimiento": "2027-05-01",
            "emission_date": "2024-06-01",
        }
        row.update(overrides)
        return row

    return _factory


@pytest.fixture
def store(app):
    return EntityStore(db.session)


@pytest.fixture
def batch_service(app):
    return CertificateBatchService(actor="tester@example.com")
