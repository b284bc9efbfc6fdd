"""
Tests for the pure lifecycle rules and the draft expiry policy.

Validates:
- Transition table (allowed, terminal and rejected moves)
- OCR tolerance boundary
- Reason and line item validation
- Document completeness
- Draft remaining-time computation
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from mata_finance.domain import draft_expiry
from mata_finance.domain.errors import InvalidStateTransition, ValidationError
from mata_finance.domain.lifecycle import (
    ALLOWED_TRANSITIONS,
    check_ocr_tolerance,
    check_transition,
    document_status,
    ocr_matches,
    require_reason,
    sources_for,
    validate_amount,
    validate_items,
)
from mata_finance.domain.schema import (
    DocumentStatus,
    OcrResult,
    TransactionItemInput,
    TransactionStatus as S,
    TransactionType,
)

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class TestTransitionTable:
    def test_every_status_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(S)

    def test_submit_from_draft_and_in_progress(self):
        check_transition(S.DRAFT, S.SUBMITTED)
        check_transition(S.IN_PROGRESS, S.SUBMITTED)
        assert sources_for(S.SUBMITTED) == {S.DRAFT, S.IN_PROGRESS}

    def test_decisions_only_from_queue_states(self):
        for target in (S.APPROVED, S.REJECTED, S.RETURNED_FOR_REVISION):
            assert sources_for(target) == {S.SUBMITTED, S.RESUBMITTED}

    def test_resubmit_only_after_return(self):
        assert sources_for(S.RESUBMITTED) == {S.RETURNED_FOR_REVISION}

    def test_terminal_states(self):
        assert ALLOWED_TRANSITIONS[S.APPROVED] == frozenset()
        assert ALLOWED_TRANSITIONS[S.REJECTED] == frozenset()

    def test_invalid_transition_names_both_states(self):
        with pytest.raises(InvalidStateTransition) as excinfo:
            check_transition(S.APPROVED, S.REJECTED)
        assert excinfo.value.current == "approved"
        assert excinfo.value.attempted == "rejected"

    def test_draft_cannot_be_approved_directly(self):
        with pytest.raises(InvalidStateTransition):
            check_transition(S.DRAFT, S.APPROVED)


class TestOcrTolerance:
    """Manual amount vs OCR amount, 5% tolerance."""

    def _ocr(self, amount: str) -> OcrResult:
        return OcrResult(vendor="PT Sinar Jaya", amount=Decimal(amount))

    def test_exactly_five_percent_passes(self):
        check_ocr_tolerance(Decimal("105000"), self._ocr("100000"), 5)
        check_ocr_tolerance(Decimal("95000"), self._ocr("100000"), 5)

    def test_just_above_five_percent_fails(self):
        with pytest.raises(ValidationError):
            check_ocr_tolerance(Decimal("105001"), self._ocr("100000"), 5)

    def test_large_deviation_fails(self):
        with pytest.raises(ValidationError):
            check_ocr_tolerance(Decimal("50000"), self._ocr("100000"), 5)

    def test_no_ocr_amount_passes(self):
        check_ocr_tolerance(Decimal("1"), None, 5)
        check_ocr_tolerance(Decimal("1"), OcrResult(vendor="X"), 5)

    def test_ocr_match_vendor_containment(self):
        ocr = OcrResult(vendor="PT. Sinar-Jaya", amount=Decimal("1000"))
        assert ocr_matches(ocr, "pt sinar jaya", Decimal("1000"), 5) is True
        assert ocr_matches(ocr, "CV Maju", Decimal("1000"), 5) is False

    def test_ocr_match_amount_conflict(self):
        ocr = OcrResult(vendor="Sinar", amount=Decimal("1000"))
        assert ocr_matches(ocr, "Sinar", Decimal("1200"), 5) is False

    def test_ocr_match_unknown_without_data(self):
        assert ocr_matches(None, "Sinar", Decimal("1"), 5) is None
        assert ocr_matches(OcrResult(), "Sinar", Decimal("1"), 5) is None


class TestInputRules:
    def test_reason_is_trimmed_before_length_check(self):
        with pytest.raises(ValidationError):
            require_reason("   short    ", 10)
        assert require_reason("  dokumen tidak lengkap ", 10) == "dokumen tidak lengkap"

    def test_missing_reason_fails(self):
        with pytest.raises(ValidationError):
            require_reason(None, 10)

    def test_items_total(self):
        total = validate_items([
            TransactionItemInput(description="Kertas", quantity=Decimal("2"), unit_price=Decimal("150000")),
            TransactionItemInput(description="Tinta", quantity=Decimal("1"), unit_price=Decimal("50000")),
        ])
        assert total == Decimal("350000")

    @pytest.mark.parametrize("item", [
        TransactionItemInput(description=" ", quantity=Decimal("1"), unit_price=Decimal("1")),
        TransactionItemInput(description="A", quantity=Decimal("0"), unit_price=Decimal("1")),
        TransactionItemInput(description="A", quantity=Decimal("1"), unit_price=Decimal("-1")),
    ])
    def test_invalid_items(self, item):
        with pytest.raises(ValidationError):
            validate_items([item])

    def test_amount_limits_by_type(self):
        validate_amount(Decimal("50000000"), TransactionType.EXPENSE)
        with pytest.raises(ValidationError):
            validate_amount(Decimal("50000001"), TransactionType.EXPENSE)
        with pytest.raises(ValidationError):
            validate_amount(Decimal("0"), TransactionType.PAYMENT)


class TestDocumentStatus:
    def test_complete_when_required_category_matches(self):
        assert document_status(["invoice"], [("invoice", True)]) == DocumentStatus.COMPLETE

    def test_unknown_match_is_not_conflicting(self):
        assert document_status(["invoice"], [("invoice", None)]) == DocumentStatus.COMPLETE

    def test_conflicting_match_is_incomplete(self):
        assert document_status(["invoice"], [("invoice", False)]) == DocumentStatus.INCOMPLETE

    def test_missing_category_is_incomplete(self):
        assert document_status(["invoice"], [("receipt", True)]) == DocumentStatus.INCOMPLETE

    def test_nothing_required_is_complete(self):
        assert document_status([], []) == DocumentStatus.COMPLETE


class TestDraftExpiry:
    def test_created_now_has_full_window(self):
        assert draft_expiry.remaining_hours(NOW, NOW) == 24

    def test_created_18_hours_ago(self):
        assert draft_expiry.remaining_hours(NOW - timedelta(hours=18), NOW) == 6

    def test_created_30_hours_ago_is_zero(self):
        assert draft_expiry.remaining_hours(NOW - timedelta(hours=30), NOW) == 0
        assert draft_expiry.is_expired(NOW - timedelta(hours=30), NOW)

    def test_partial_hours_round_up(self):
        assert draft_expiry.remaining_hours(NOW - timedelta(minutes=30), NOW) == 24
        assert draft_expiry.remaining_hours(NOW - timedelta(hours=23, minutes=59), NOW) == 1

    def test_near_deadline_window(self):
        assert draft_expiry.is_near_deadline(NOW - timedelta(hours=18), NOW)
        assert not draft_expiry.is_near_deadline(NOW - timedelta(hours=17), NOW)
        assert not draft_expiry.is_near_deadline(NOW - timedelta(hours=24), NOW)

    def test_naive_datetimes_are_treated_as_utc(self):
        created = (NOW - timedelta(hours=18)).replace(tzinfo=None)
        assert draft_expiry.remaining_hours(created, NOW) == 6
