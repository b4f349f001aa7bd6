"""
Reconciliation decision table.

``decide_action`` is a total function over ``DecisionSignals``; rules are
evaluated in order and the first match wins:

1. new organization with missing required fields -> needs_completion
2. neither side stored                           -> insert_both
3. both stored and both newer                    -> update_both
4. organization new, product newer               -> insert_org_update_product
5. organization newer, product new               -> update_org_insert_product
6. anything else                                 -> skip

Rule 6 also catches rows where one side is stored-but-stale and the other
side is new; those are skipped with a reason naming the stale side.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from .existence import BatchWriteLedger, ExistenceCheck, ExistenceChecker
from .extract import ExtractionResult
from .store import EntityKind, EntityStore


class Action(str, enum.Enum):
    INSERT_BOTH = "insert_both"
    UPDATE_BOTH = "update_both"
    INSERT_ORG_UPDATE_PRODUCT = "insert_org_update_product"
    UPDATE_ORG_INSERT_PRODUCT = "update_org_insert_product"
    SKIP = "skip"
    NEEDS_COMPLETION = "needs_completion"

    @property
    def is_write(self) -> bool:
        return self in WRITE_ACTIONS


WRITE_ACTIONS = frozenset(
    {
        Action.INSERT_BOTH,
        Action.UPDATE_BOTH,
        Action.INSERT_ORG_UPDATE_PRODUCT,
        Action.UPDATE_ORG_INSERT_PRODUCT,
    }
)


class SkipReason(str, enum.Enum):
    NOT_NEWER = "not_newer"
    ORGANIZATION_NOT_NEWER = "organization_not_newer"
    PRODUCT_NOT_NEWER = "product_not_newer"
    INCOMPLETE_ORGANIZATION = "incomplete_organization"
    STORE_ERROR = "store_error"
    BACKUP_FAILED = "backup_failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class DecisionSignals:
    organization_present: bool
    organization_exists: bool
    organization_is_newer: bool
    product_exists: bool
    product_is_newer: bool
    organization_incomplete: bool

    @classmethod
    def from_checks(
        cls,
        extraction: ExtractionResult,
        organization_check: ExistenceCheck,
        product_check: ExistenceCheck,
    ) -> "DecisionSignals":
        return cls(
            organization_present=extraction.organization is not None,
            organization_exists=organization_check.exists,
            organization_is_newer=organization_check.is_newer,
            product_exists=product_check.exists,
            product_is_newer=product_check.is_newer,
            organization_incomplete=bool(extraction.missing_organization_fields),
        )

    @property
    def is_new_organization(self) -> bool:
        return self.organization_present and not self.organization_exists


def decide_action(signals: DecisionSignals) -> Action:
    if signals.is_new_organization and signals.organization_incomplete:
        return Action.NEEDS_COMPLETION
    if not signals.organization_exists and not signals.product_exists:
        return Action.INSERT_BOTH
    if (
        signals.organization_exists
        and signals.product_exists
        and signals.organization_is_newer
        and signals.product_is_newer
    ):
        return Action.UPDATE_BOTH
    if not signals.organization_exists and signals.product_is_newer:
        return Action.INSERT_ORG_UPDATE_PRODUCT
    if signals.organization_is_newer and not signals.product_exists:
        return Action.UPDATE_ORG_INSERT_PRODUCT
    return Action.SKIP


def skip_reason_for(signals: DecisionSignals, action: Action) -> SkipReason | None:
    if action is Action.NEEDS_COMPLETION:
        return SkipReason.INCOMPLETE_ORGANIZATION
    if action is not Action.SKIP:
        return None
    organization_stale = signals.organization_exists and not signals.organization_is_newer
    product_stale = signals.product_exists and not signals.product_is_newer
    if organization_stale and product_stale:
        return SkipReason.NOT_NEWER
    if organization_stale:
        return SkipReason.ORGANIZATION_NOT_NEWER
    return SkipReason.PRODUCT_NOT_NEWER


@dataclass(frozen=True)
class ReconciliationDecision:
    extraction: ExtractionResult
    organization_check: ExistenceCheck
    product_check: ExistenceCheck
    action: Action
    is_new_organization: bool
    missing_fields: tuple[str, ...] = ()
    skip_reason: SkipReason | None = None

    @property
    def row_number(self) -> int:
        return self.extraction.row_number


def build_decision(
    extraction: ExtractionResult,
    organization_check: ExistenceCheck,
    product_check: ExistenceCheck,
) -> ReconciliationDecision:
    signals = DecisionSignals.from_checks(extraction, organization_check, product_check)
    action = decide_action(signals)
    missing = extraction.missing_organization_fields if action is Action.NEEDS_COMPLETION else ()
    return ReconciliationDecision(
        extraction=extraction,
        organization_check=organization_check,
        product_check=product_check,
        action=action,
        is_new_organization=signals.is_new_organization,
        missing_fields=tuple(missing),
        skip_reason=skip_reason_for(signals, action),
    )


class ReconciliationDecider:
    """Runs both existence checks for an extraction and applies the table."""

    def __init__(self, store: EntityStore | None = None, checker: ExistenceChecker | None = None):
        self.checker = checker or ExistenceChecker(store)

    def decide(self, extraction: ExtractionResult) -> ReconciliationDecision:
        organization_check = self.checker.check_organization(extraction)
        product_check = self.checker.check_product(extraction)
        return build_decision(extraction, organization_check, product_check)


def decide(extraction: ExtractionResult, store: EntityStore | None = None) -> ReconciliationDecision:
    return ReconciliationDecider(store).decide(extraction)


def rebase_decision(decision: ReconciliationDecision, ledger: BatchWriteLedger) -> ReconciliationDecision:
    """
    Re-run the table for ``decision`` against keys the running batch already wrote.

    Decisions are computed before any row is applied, so a later row sharing
    an organization or product with an earlier one would otherwise insert it
    twice or update it with a version the earlier row already bumped.
    """
    extraction = decision.extraction
    organization_check = ledger.check(EntityKind.ORGANIZATION, extraction.organization_key, extraction.emission_date)
    product_check = ledger.check(EntityKind.PRODUCT, extraction.product_key, extraction.emission_date)
    if organization_check is None and product_check is None:
        return decision
    return build_decision(
        extraction,
        organization_check or decision.organization_check,
        product_check or decision.product_check,
    )
