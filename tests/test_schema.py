"""
Tests for the domain schema — enums, inputs and read models.

Validates:
- Enum values used on the wire and in storage
- Caller context
- Signal payload tagged union
- Input defaults
"""

from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

import pytest
from pydantic import ValidationError as PydanticValidationError

from mata_finance.domain.schema import (
    EDITABLE_STATUSES,
    QUEUE_STATUSES,
    Actor,
    GlobalUrgencySignal,
    PressureMetricSignal,
    Role,
    SoftLabel,
    TransactionDraft,
    TransactionStatus,
    TransactionType,
    signal_payload_adapter,
)


class TestEnums:
    """Verify stored enum values."""

    def test_status_values(self):
        assert {s.value for s in TransactionStatus} == {
            "draft", "in_progress", "submitted", "resubmitted",
            "approved", "rejected", "returned_for_revision",
        }

    def test_editable_and_queue_statuses_are_disjoint(self):
        assert EDITABLE_STATUSES.isdisjoint(QUEUE_STATUSES)
        assert QUEUE_STATUSES == {TransactionStatus.SUBMITTED, TransactionStatus.RESUBMITTED}

    def test_soft_labels(self):
        assert [label.value for label in SoftLabel] == [
            "Revision", "Time-sensitive", "Needs extra care", "Routine",
        ]


class TestActor:
    def test_role_flags(self):
        admin = Actor(user_id=uuid4(), role=Role.ADMIN)
        approver = Actor(user_id=uuid4(), role=Role.APPROVER)
        assert admin.is_admin and not admin.is_approver
        assert approver.is_approver and not approver.is_admin

    def test_actor_is_immutable(self):
        actor = Actor(user_id=uuid4(), role=Role.ADMIN)
        with pytest.raises(AttributeError):
            actor.role = Role.APPROVER


class TestSignalPayloads:
    def test_pressure_metric(self):
        signal = signal_payload_adapter.validate_python({
            "signal_type": "PRESSURE_METRIC",
            "frequency_pattern": "steady",
            "abuse_likelihood": 0.1,
            "stress_calibration": 0.9,
        })
        assert isinstance(signal, PressureMetricSignal)

    def test_global_urgency(self):
        signal = signal_payload_adapter.validate_python({
            "signal_type": "GLOBAL_URGENCY", "active_emergencies": 2, "system_load": "normal",
        })
        assert isinstance(signal, GlobalUrgencySignal)
        assert signal.active_emergencies == 2

    def test_likelihood_out_of_range(self):
        with pytest.raises(PydanticValidationError):
            PressureMetricSignal(frequency_pattern="x", abuse_likelihood=1.5, stress_calibration=0)

    def test_missing_discriminator(self):
        with pytest.raises(PydanticValidationError):
            signal_payload_adapter.validate_python({"active_emergencies": 1})


class TestInputs:
    def test_draft_defaults(self):
        draft = TransactionDraft(amount=Decimal("1000"))
        assert draft.transaction_type == TransactionType.PAYMENT
        assert draft.currency == "IDR"
        assert draft.internal_flags == []
        assert draft.code is None

    def test_draft_rejects_unknown_type(self):
        with pytest.raises(PydanticValidationError):
            TransactionDraft(transaction_type="loan")
