"""
Row validation and organization/product extraction.

Upstream parsing hands us rows keyed by lower-snake-case header names. Rows
without a usable ``emission_date`` are rejected here, before any lookup or
decision happens; everything else is split into an organization fragment and
a product fragment.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Sequence

ORGANIZATION_FIELDS: tuple[str, ...] = ("cuit", "razon_social", "direccion", "email", "telefono", "contacto")
PRODUCT_FIELDS: tuple[str, ...] = ("codificacion", "titular_responsable", "tipo_certificacion", "fecha_vencimiento")
EMISSION_DATE_FIELD = "emission_date"
DATE_FIELDS: tuple[str, ...] = (EMISSION_DATE_FIELD, "fecha_vencimiento")

# Spreadsheet row 1 is the header
FIRST_DATA_ROW = 2

_DAY_FIRST_PATTERN = re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})$")


class RowLimitExceeded(ValueError):
    """Raised when an upload carries more rows than a batch may hold."""


def is_blank(value: object | None) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def clean_value(value: object | None) -> Any:
    if isinstance(value, str):
        return value.strip()
    return value


def normalize_cuit(value: object | None) -> str | None:
    """Return the digits of a CUIT, or None when it carries none."""

    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    return digits or None


def parse_date_value(value: object | None) -> date | datetime | None:
    """
    Coerce a cell value into a date.

    Accepts ``date``/``datetime`` instances, ISO-8601 strings, and day-first
    ``dd/mm/yyyy`` strings. Blank values return None; anything else raises
    ``ValueError``.
    """

    if is_blank(value):
        return None
    if isinstance(value, (datetime, date)):
        return value
    text = str(value).strip()
    try:
        if "T" in text or " " in text:
            return datetime.fromisoformat(text.replace("Z", "+00:00"))
        return date.fromisoformat(text)
    except ValueError:
        pass
    match = _DAY_FIRST_PATTERN.match(text)
    if match:
        day, month, year = (int(part) for part in match.groups())
        return date(year, month, day)
    raise ValueError(f"Unrecognized date value: {text!r}")


def _as_date(value: date | datetime | None) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    return value


def _json_safe(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class NormalizedRow:
    """A validated input row; ``values`` is read-only."""

    row_number: int
    values: Mapping[str, Any]
    emission_date: date | datetime

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def to_json(self) -> dict[str, Any]:
        return {key: _json_safe(value) for key, value in self.values.items()}


@dataclass(frozen=True)
class RejectedRecord:
    row_number: int
    reason: str
    raw_data: Mapping[str, Any]
    missing_fields: tuple[str, ...] = ()

    def to_json(self) -> dict[str, Any]:
        return {key: _json_safe(value) for key, value in self.raw_data.items()}


@dataclass
class RowValidationSummary:
    """Valid rows plus rejections, in input order."""

    rows: list[NormalizedRow] = field(default_factory=list)
    rejected: list[RejectedRecord] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return len(self.rows) + len(self.rejected)


def validate_rows(
    raw_rows: Iterable[Mapping[str, Any]],
    *,
    first_row_number: int = FIRST_DATA_ROW,
    max_rows: int | None = None,
) -> RowValidationSummary:
    """Split raw rows into validated rows and rejected records."""

    summary = RowValidationSummary()
    for offset, raw in enumerate(raw_rows):
        if max_rows is not None and offset >= max_rows:
            raise RowLimitExceeded(f"Upload exceeds the maximum of {max_rows} rows per batch.")
        row_number = first_row_number + offset
        raw_copy = dict(raw)

        if is_blank(raw_copy.get(EMISSION_DATE_FIELD)):
            summary.rejected.append(
                RejectedRecord(
                    row_number=row_number,
                    reason=f"Missing required field: {EMISSION_DATE_FIELD}",
                    raw_data=raw_copy,
                    missing_fields=(EMISSION_DATE_FIELD,),
                )
            )
            continue

        values = {key: clean_value(value) for key, value in raw_copy.items()}
        malformed = None
        for date_field in DATE_FIELDS:
            try:
                values[date_field] = parse_date_value(values.get(date_field))
            except ValueError:
                malformed = date_field
                break
        if malformed is not None:
            summary.rejected.append(
                RejectedRecord(
                    row_number=row_number,
                    reason=f"Malformed date in field: {malformed}",
                    raw_data=raw_copy,
                )
            )
            continue

        if values.get("fecha_vencimiento") is not None:
            values["fecha_vencimiento"] = _as_date(values["fecha_vencimiento"])
        summary.rows.append(
            NormalizedRow(
                row_number=row_number,
                values=MappingProxyType(values),
                emission_date=values[EMISSION_DATE_FIELD],
            )
        )
    return summary


@dataclass(frozen=True)
class ExtractionResult:
    organization: Mapping[str, Any] | None
    product: Mapping[str, Any] | None
    source_row: NormalizedRow
    missing_organization_fields: tuple[str, ...] = ()
    missing_product_fields: tuple[str, ...] = ()

    @property
    def row_number(self) -> int:
        return self.source_row.row_number

    @property
    def emission_date(self) -> date | datetime:
        return self.source_row.emission_date

    @property
    def organization_key(self) -> str | None:
        if not self.organization:
            return None
        return self.organization.get("cuit")

    @property
    def product_key(self) -> str | None:
        if not self.product:
            return None
        return self.product.get("codificacion")

    @property
    def is_complete(self) -> bool:
        return (
            self.organization is not None
            and self.product is not None
            and not self.missing_organization_fields
            and not self.missing_product_fields
        )


def _fragment(row: NormalizedRow, field_names: Sequence[str]) -> tuple[dict[str, Any] | None, tuple[str, ...]]:
    fragment: dict[str, Any] = {}
    missing: list[str] = []
    for name in field_names:
        value = row.get(name)
        if name == "cuit":
            value = normalize_cuit(value)
        if is_blank(value):
            missing.append(name)
        else:
            fragment[name] = value
    if not fragment:
        return None, ()
    return fragment, tuple(missing)


def extract(row: NormalizedRow) -> ExtractionResult:
    """Split a validated row into organization and product fragments."""

    organization, missing_org = _fragment(row, ORGANIZATION_FIELDS)
    product, missing_product = _fragment(row, PRODUCT_FIELDS)
    return ExtractionResult(
        organization=MappingProxyType(organization) if organization is not None else None,
        product=MappingProxyType(product) if product is not None else None,
        source_row=row,
        missing_organization_fields=missing_org,
        missing_product_fields=missing_product,
    )


@dataclass
class ExtractionCategories:
    complete: list[ExtractionResult] = field(default_factory=list)
    incomplete_organization: list[ExtractionResult] = field(default_factory=list)
    incomplete_product: list[ExtractionResult] = field(default_factory=list)
    partial: list[ExtractionResult] = field(default_factory=list)


def categorize_extractions(extractions: Iterable[ExtractionResult]) -> ExtractionCategories:
    """
    Bucket extractions for the upload preview.

    ``partial`` holds rows that only carry one side, or where both sides are
    missing fields.
    """

    categories = ExtractionCategories()
    for extraction in extractions:
        if extraction.is_complete:
            categories.complete.append(extraction)
        elif extraction.organization is None or extraction.product is None:
            categories.partial.append(extraction)
        elif extraction.missing_organization_fields and not extraction.missing_product_fields:
            categories.incomplete_organization.append(extraction)
        elif extraction.missing_product_fields and not extraction.missing_organization_fields:
            categories.incomplete_product.append(extraction)
        else:
            categories.partial.append(extraction)
    return categories
