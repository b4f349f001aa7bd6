"""
Fuzzy matching of uploaded organizations against existing ones.

Matching is a pure function over an explicit candidate sequence so callers
decide where candidates come from (the live table, a snapshot, a fixture).
"""

from __future__ import annotations

import enum
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from rapidfuzz.distance import Levenshtein

from .extract import normalize_cuit

EXACT_CONFIDENCE = 100
POTENTIAL_MATCH_THRESHOLD = 70
NAME_SIMILARITY_THRESHOLD = 85.0
EMAIL_MATCH_POINTS = 40
NAME_SIMILARITY_WEIGHT = 0.6
PHONE_MATCH_POINTS = 20

COMPARED_FIELDS: tuple[str, ...] = ("razon_social", "email", "telefono", "direccion", "contacto")


class MatchType(str, enum.Enum):
    EXACT = "exact"
    POTENTIAL = "potential"
    NEW = "new"


@dataclass(frozen=True)
class FieldDifference:
    field: str
    old_value: Any
    new_value: Any


@dataclass(frozen=True)
class OrganizationMatch:
    match_type: MatchType
    uploaded: Mapping[str, Any]
    confidence: int
    existing: Mapping[str, Any] | None = None
    match_criteria: tuple[str, ...] = ()
    differences: tuple[FieldDifference, ...] = field(default_factory=tuple)

    @property
    def has_changes(self) -> bool:
        return bool(self.differences)


def _text(value: object | None) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_name(value: object | None) -> str:
    """Lower-case, strip diacritics and punctuation, collapse whitespace."""

    text = _text(value).lower()
    text = unicodedata.normalize("NFD", text)
    text = "".join(char for char in text if not unicodedata.combining(char))
    text = re.sub(r"[^\w\s]", "", text)
    return re.sub(r"\s+", " ", text).strip()


def name_similarity(first: object | None, second: object | None) -> float:
    """Return 100 * (1 - edit distance / longest length) over normalized names."""

    norm_first = normalize_name(first)
    norm_second = normalize_name(second)
    if norm_first == norm_second:
        return 100.0
    return Levenshtein.normalized_similarity(norm_first, norm_second) * 100.0


def normalize_phone_digits(value: object | None) -> str:
    return re.sub(r"\D", "", _text(value))


def find_differences(existing: Mapping[str, Any], uploaded: Mapping[str, Any]) -> tuple[FieldDifference, ...]:
    # Blank uploaded fields are not changes
    differences = []
    for name in COMPARED_FIELDS:
        old_value = existing.get(name)
        new_value = uploaded.get(name)
        if not _text(new_value):
            continue
        if _text(old_value) != _text(new_value):
            differences.append(FieldDifference(field=name, old_value=old_value or None, new_value=new_value or None))
    return tuple(differences)


def score_candidate(uploaded: Mapping[str, Any], candidate: Mapping[str, Any]) -> tuple[float, tuple[str, ...]]:
    """Weighted similarity score and the criteria that contributed to it."""

    score = 0.0
    criteria: list[str] = []

    uploaded_email = _text(uploaded.get("email")).lower()
    if uploaded_email and uploaded_email == _text(candidate.get("email")).lower():
        score += EMAIL_MATCH_POINTS
        criteria.append("email")

    if normalize_name(uploaded.get("razon_social")) and normalize_name(candidate.get("razon_social")):
        similarity = name_similarity(candidate.get("razon_social"), uploaded.get("razon_social"))
        if similarity >= NAME_SIMILARITY_THRESHOLD:
            score += similarity * NAME_SIMILARITY_WEIGHT
            criteria.append("razon_social")

    uploaded_phone = normalize_phone_digits(uploaded.get("telefono"))
    if uploaded_phone and uploaded_phone == normalize_phone_digits(candidate.get("telefono")):
        score += PHONE_MATCH_POINTS
        criteria.append("telefono")

    return score, tuple(criteria)


def _cuit_sort_key(candidate: Mapping[str, Any]) -> tuple[int, str]:
    digits = normalize_cuit(candidate.get("cuit")) or ""
    return (int(digits) if digits else 0, digits)


def match_organization(
    uploaded: Mapping[str, Any],
    candidates: Sequence[Mapping[str, Any]],
) -> OrganizationMatch:
    """
    Classify ``uploaded`` against ``candidates``.

    An identical CUIT is an exact match. Otherwise the best-scoring candidate
    at or above the threshold is a potential duplicate; ties go to the lowest
    CUIT so results do not depend on candidate order.
    """

    uploaded_cuit = normalize_cuit(uploaded.get("cuit"))
    if uploaded_cuit:
        for candidate in candidates:
            if normalize_cuit(candidate.get("cuit")) == uploaded_cuit:
                return OrganizationMatch(
                    match_type=MatchType.EXACT,
                    uploaded=uploaded,
                    confidence=EXACT_CONFIDENCE,
                    existing=candidate,
                    match_criteria=("cuit",),
                    differences=find_differences(candidate, uploaded),
                )

    best: tuple[float, Mapping[str, Any], tuple[str, ...]] | None = None
    for candidate in sorted(candidates, key=_cuit_sort_key):
        score, criteria = score_candidate(uploaded, candidate)
        if score < POTENTIAL_MATCH_THRESHOLD:
            continue
        if best is None or score > best[0]:
            best = (score, candidate, criteria)

    if best is None:
        return OrganizationMatch(match_type=MatchType.NEW, uploaded=uploaded, confidence=0)

    score, candidate, criteria = best
    return OrganizationMatch(
        match_type=MatchType.POTENTIAL,
        uploaded=uploaded,
        confidence=round(score),
        existing=candidate,
        match_criteria=criteria,
        differences=find_differences(candidate, uploaded),
    )


def match_organizations(
    uploaded_records: Iterable[Mapping[str, Any]],
    candidates: Sequence[Mapping[str, Any]],
) -> list[OrganizationMatch]:
    return [match_organization(record, candidates) for record in uploaded_records]
