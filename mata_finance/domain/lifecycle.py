"""
Lifecycle rules for transactions.

Pure functions only: the transition table, the OCR amount tolerance rule,
reason and line-item validation, and OCR match / document completeness.
``mata_finance.workflow.transactions`` applies them against the database.

Transition table:

    in_progress           → draft, submitted
    draft                 → submitted
    submitted/resubmitted → approved | rejected | returned_for_revision
    returned_for_revision → resubmitted
    approved, rejected    → (terminal)
"""

from __future__ import annotations

import re
from decimal import Decimal
from typing import Iterable

from mata_finance.domain.errors import InvalidStateTransition, ValidationError
from mata_finance.domain.schema import (
    DecisionOutcome,
    DocumentStatus,
    OcrResult,
    TransactionItemInput,
    TransactionStatus,
    TransactionType,
)

S = TransactionStatus

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    S.IN_PROGRESS: frozenset({S.DRAFT, S.SUBMITTED}),
    S.DRAFT: frozenset({S.SUBMITTED}),
    S.SUBMITTED: frozenset({S.APPROVED, S.REJECTED, S.RETURNED_FOR_REVISION}),
    S.RESUBMITTED: frozenset({S.APPROVED, S.REJECTED, S.RETURNED_FOR_REVISION}),
    S.RETURNED_FOR_REVISION: frozenset({S.RESUBMITTED}),
    S.APPROVED: frozenset(),
    S.REJECTED: frozenset(),
}

OUTCOME_TARGETS = {
    DecisionOutcome.APPROVE: S.APPROVED,
    DecisionOutcome.REJECT: S.REJECTED,
    DecisionOutcome.RETURN: S.RETURNED_FOR_REVISION,
}

MAX_AMOUNT_BY_TYPE = {
    TransactionType.PAYMENT: Decimal("1000000000"),
    TransactionType.EXPENSE: Decimal("50000000"),
    TransactionType.GENERAL: Decimal("100000000"),
}


def sources_for(target: TransactionStatus) -> frozenset[TransactionStatus]:
    """Every status from which ``target`` is reachable in one step."""
    return frozenset(
        source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )


def check_transition(current: TransactionStatus, target: TransactionStatus) -> None:
    """Raise InvalidStateTransition unless ``current → target`` is in the table."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateTransition(current.value, target.value)


# ════════════════════════════════════════════════════════════════
# Input Rules
# ════════════════════════════════════════════════════════════════


def require_reason(reason: str | None, min_length: int) -> str:
    """Return the trimmed reason or raise ValidationError if it is too short."""
    cleaned = (reason or "").strip()
    if len(cleaned) < min_length:
        raise ValidationError(f"Reason must be at least {min_length} characters")
    return cleaned


def validate_amount(amount: Decimal | None, transaction_type: TransactionType) -> None:
    if amount is None:
        return
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    limit = MAX_AMOUNT_BY_TYPE[transaction_type]
    if amount > limit:
        raise ValidationError(
            f"Amount {amount} exceeds the {transaction_type.value} limit of {limit}"
        )


def validate_items(items: Iterable[TransactionItemInput]) -> Decimal:
    """Check each line and return the summed total."""
    total = Decimal("0")
    for index, item in enumerate(items, start=1):
        if not item.description.strip():
            raise ValidationError(f"Item {index}: description is required")
        if item.quantity <= 0:
            raise ValidationError(f"Item {index}: quantity must be greater than zero")
        if item.unit_price < 0:
            raise ValidationError(f"Item {index}: unit price cannot be negative")
        total += item.quantity * item.unit_price
    return total


# ════════════════════════════════════════════════════════════════
# OCR
# ════════════════════════════════════════════════════════════════


def ocr_deviation_percent(amount: Decimal, ocr_amount: Decimal) -> Decimal:
    """Deviation of the entered amount from the OCR amount, in percent of the OCR amount."""
    if ocr_amount == 0:
        return Decimal("0") if amount == 0 else Decimal("Infinity")
    return abs(amount - ocr_amount) / abs(ocr_amount) * 100


def check_ocr_tolerance(
    amount: Decimal | None,
    ocr: OcrResult | None,
    tolerance_percent: float,
) -> None:
    """
    Reject a manual amount that strays too far from the OCR amount.

    A deviation equal to the tolerance passes. Without an OCR amount there
    is nothing to compare against and the check passes.
    """
    if amount is None or ocr is None or ocr.amount is None:
        return
    deviation = ocr_deviation_percent(amount, ocr.amount)
    if deviation > Decimal(str(tolerance_percent)):
        raise ValidationError(
            f"Amount deviates {deviation:.2f}% from the OCR amount "
            f"(max {tolerance_percent}%)"
        )


def _normalise(text: str) -> str:
    return re.sub(r"[^a-z0-9]", "", text.lower())


def ocr_matches(
    ocr: OcrResult | None,
    recipient_name: str,
    amount: Decimal | None,
    tolerance_percent: float,
) -> bool | None:
    """
    Compare an OCR result with the transaction header.

    Returns None when there is nothing to compare, False when the vendor
    or amount conflicts, True otherwise.
    """
    if ocr is None or (ocr.vendor is None and ocr.amount is None):
        return None
    if ocr.vendor and recipient_name:
        vendor, recipient = _normalise(ocr.vendor), _normalise(recipient_name)
        if vendor not in recipient and recipient not in vendor:
            return False
    if ocr.amount is not None and amount is not None:
        if ocr_deviation_percent(amount, ocr.amount) > Decimal(str(tolerance_percent)):
            return False
    return True


def document_status(
    required_categories: Iterable[str],
    documents: Iterable[tuple[str, bool | None]],
) -> DocumentStatus:
    """
    ``complete`` iff every required category has a document whose OCR match
    is not conflicting. ``documents`` yields ``(category, ocr_match)`` pairs.
    """
    usable = {category for category, match in documents if match is not False}
    if all(category in usable for category in required_categories):
        return DocumentStatus.COMPLETE
    return DocumentStatus.INCOMPLETE


def missing_categories(
    required_categories: Iterable[str], attached: Iterable[str]
) -> list[str]:
    present = set(attached)
    return [category for category in required_categories if category not in present]
