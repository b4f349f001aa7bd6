from datetime import date, datetime

import pytest

from certsync.certificates.pipeline.extract import (
    RowLimitExceeded,
    categorize_extractions,
    extract,
    normalize_cuit,
    parse_date_value,
    validate_rows,
)


def test_normalize_cuit_keeps_digits_only():
    assert normalize_cuit("30-71234567-8") == "30712345678"
    assert normalize_cuit(30712345678) == "30712345678"
    assert normalize_cuit(" - ") is None
    assert normalize_cuit(None) is None


@pytest.mark.parametrize(
    "value,expected",
    [
        ("2024-06-01", date(2024, 6, 1)),
        ("01/06/2024", date(2024, 6, 1)),
        ("2024-06-01T10:30:00", datetime(2024, 6, 1, 10, 30)),
        (date(2023, 1, 5), date(2023, 1, 5)),
        ("", None),
    ],
)
def test_parse_date_value(value, expected):
    assert parse_date_value(value) == expected


def test_parse_date_value_rejects_garbage():
    with pytest.raises(ValueError):
        parse_date_value("next tuesday")


def test_validate_rows_rejects_missing_and_malformed_emission_dates(row_factory):
    rows = [
        row_factory(),
        row_factory(emission_date=""),
        row_factory(emission_date="not-a-date"),
        row_factory(fecha_vencimiento="31/31/2024"),
    ]

    summary = validate_rows(rows)

    assert summary.total_rows == 4
    assert [row.row_number for row in summary.rows] == [2]
    assert summary.rows[0].emission_date == date(2024, 6, 1)
    assert summary.rows[0].get("fecha_vencimiento") == date(2027, 5, 1)

    missing, malformed_emission, malformed_expiry = summary.rejected
    assert missing.row_number == 3
    assert missing.missing_fields == ("emission_date",)
    assert missing.reason == "Missing required field: emission_date"
    assert malformed_emission.reason == "Malformed date in field: emission_date"
    assert malformed_expiry.reason == "Malformed date in field: fecha_vencimiento"
    assert malformed_expiry.to_json()["fecha_vencimiento"] == "31/31/2024"


def test_validate_rows_enforces_row_limit(row_factory):
    with pytest.raises(RowLimitExceeded):
        validate_rows([row_factory() for _ in range(3)], max_rows=2)


def test_validated_row_values_are_read_only(row_factory):
    row = validate_rows([row_factory()]).rows[0]
    with pytest.raises(TypeError):
        row.values["cuit"] = "1"  # type: ignore[index]


def test_extract_splits_fragments_and_flags_missing_fields(row_factory):
    row = validate_rows([row_factory(telefono="", contacto=None)]).rows[0]

    extraction = extract(row)

    assert extraction.organization_key == "30712345678"
    assert extraction.product_key == "PRD-001"
    assert extraction.missing_organization_fields == ("telefono", "contacto")
    assert extraction.missing_product_fields == ()
    assert "telefono" not in extraction.organization
    assert not extraction.is_complete


def test_extract_absent_fragment_is_none(row_factory):
    row = validate_rows(
        [
            {
                "codificacion": "PRD-9",
                "titular_responsable": "Someone",
                "tipo_certificacion": "Tipo",
                "fecha_vencimiento": "2026-01-01",
                "emission_date": "2024-01-01",
            }
        ]
    ).rows[0]

    extraction = extract(row)

    assert extraction.organization is None
    assert extraction.organization_key is None
    assert extraction.missing_organization_fields == ()
    assert extraction.product_key == "PRD-9"


def test_categorize_extractions(row_factory):
    rows = validate_rows(
        [
            row_factory(),
            row_factory(email=""),
            row_factory(tipo_certificacion=""),
            {"cuit": "20111111112", "emission_date": "2024-01-01"},
        ]
    ).rows

    categories = categorize_extractions(extract(row) for row in rows)

    assert len(categories.complete) == 1
    assert len(categories.incomplete_organization) == 1
    assert len(categories.incomplete_product) == 1
    assert len(categories.partial) == 1
