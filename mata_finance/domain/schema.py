"""
Domain Schema — Pydantic models and enumerations for Mata Finance.

These are the canonical shapes that flow between the API boundary, the
workflow services and the persistence layer:

- Enumerations for statuses, roles, outcomes and notice categories
- ``Actor``: the typed caller context resolved once per request
- Input models (drafts, header updates, items, documents, OCR results)
- Tagged System Signal payloads, validated at the boundary
- Read models for the admin views, the approver queue and decision history
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class Role(str, enum.Enum):
    """Closed set of user roles, resolved from the user record."""

    ADMIN = "admin"
    APPROVER = "approver"


class TransactionStatus(str, enum.Enum):
    """Lifecycle states of a transaction."""

    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    RESUBMITTED = "resubmitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED_FOR_REVISION = "returned_for_revision"


EDITABLE_STATUSES = frozenset({
    TransactionStatus.DRAFT,
    TransactionStatus.IN_PROGRESS,
    TransactionStatus.RETURNED_FOR_REVISION,
})

QUEUE_STATUSES = frozenset({
    TransactionStatus.SUBMITTED,
    TransactionStatus.RESUBMITTED,
})


class TransactionType(str, enum.Enum):
    PAYMENT = "payment"
    EXPENSE = "expense"
    GENERAL = "general"


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DecisionOutcome(str, enum.Enum):
    """What an approver can do with a queued transaction."""

    APPROVE = "approve"
    REJECT = "reject"
    RETURN = "return"  # returned for revision


class EmergencyStatus(str, enum.Enum):
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"


class NoticeCategory(str, enum.Enum):
    SPEED_DEVIATION = "speed_deviation"
    EMERGENCY_BIAS = "emergency_bias"
    CLARIFICATION_PATTERN = "clarification_pattern"
    BEHAVIORAL_DRIFT = "behavioral_drift"
    GENERAL = "general"


class SignalType(str, enum.Enum):
    PRESSURE_METRIC = "PRESSURE_METRIC"
    GLOBAL_URGENCY = "GLOBAL_URGENCY"


class ActivityAction(str, enum.Enum):
    """Actions written to the activity log."""

    CREATE_TRANSACTION = "CREATE_TRANSACTION"
    UPDATE_TRANSACTION = "UPDATE_TRANSACTION"
    SET_ITEMS = "SET_ITEMS"
    ATTACH_DOCUMENT = "ATTACH_DOCUMENT"
    SAVE_DRAFT = "SAVE_DRAFT"
    SUBMIT_TRANSACTION = "SUBMIT_TRANSACTION"
    RESUBMIT_TRANSACTION = "RESUBMIT_TRANSACTION"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    RETURN = "RETURN"
    CREATE_REPLACEMENT = "CREATE_REPLACEMENT"
    DECLARE_EMERGENCY = "DECLARE_EMERGENCY"


DECISION_ACTIONS = {
    DecisionOutcome.APPROVE: ActivityAction.APPROVE,
    DecisionOutcome.REJECT: ActivityAction.REJECT,
    DecisionOutcome.RETURN: ActivityAction.RETURN,
}


class SoftLabel(str, enum.Enum):
    """Non-binding queue hints."""

    REVISION = "Revision"
    TIME_SENSITIVE = "Time-sensitive"
    NEEDS_EXTRA_CARE = "Needs extra care"
    ROUTINE = "Routine"


class RelativeTime(str, enum.Enum):
    JUST_NOW = "just_now"
    RECENT = "recent"
    TODAY = "today"
    YESTERDAY = "yesterday"
    THIS_WEEK = "this_week"
    OLDER = "older"


class DocumentStatus(str, enum.Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


class ReplacementState(str, enum.Enum):
    AWAITING_CREATION = "awaiting_creation"
    IN_PROGRESS = "in_progress"


# ════════════════════════════════════════════════════════════════
# Caller Context
# ════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, carried through every service call."""

    user_id: UUID
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_approver(self) -> bool:
        return self.role == Role.APPROVER


# ════════════════════════════════════════════════════════════════
# Inputs
# ════════════════════════════════════════════════════════════════


class OcrResult(BaseModel):
    """Structured OCR extraction for one document."""

    vendor: str | None = None
    amount: Decimal | None = None
    date: str | None = None
    invoice_number: str | None = None


class TransactionItemInput(BaseModel):
    description: str
    quantity: Decimal = Decimal("1")
    unit_price: Decimal


class TransactionDraft(BaseModel):
    """Payload for creating a transaction."""

    transaction_type: TransactionType = TransactionType.PAYMENT
    amount: Decimal | None = None
    currency: str = "IDR"
    description: str = ""
    recipient_name: str = ""
    vendor_ref: str | None = None
    cost_center: str | None = None
    risk_level: RiskLevel = RiskLevel.LOW
    internal_flags: list[str] = Field(default_factory=list)
    items: list[TransactionItemInput] | None = None
    code: str | None = Field(default=None, description="Explicit code; generated when omitted")


class HeaderUpdate(BaseModel):
    """Partial header edit; only provided fields change."""

    transaction_type: TransactionType | None = None
    amount: Decimal | None = None
    currency: str | None = None
    description: str | None = None
    recipient_name: str | None = None
    vendor_ref: str | None = None
    cost_center: str | None = None
    risk_level: RiskLevel | None = None
    internal_flags: list[str] | None = None


class DocumentInput(BaseModel):
    category: str = "invoice"
    file_name: str
    file_path: str
    ocr_result: OcrResult | None = None


# ════════════════════════════════════════════════════════════════
# System Signals (tagged union)
# ════════════════════════════════════════════════════════════════


class PressureMetricSignal(BaseModel):
    signal_type: Literal["PRESSURE_METRIC"] = "PRESSURE_METRIC"
    frequency_pattern: str
    abuse_likelihood: float = Field(ge=0.0, le=1.0)
    stress_calibration: float


class GlobalUrgencySignal(BaseModel):
    signal_type: Literal["GLOBAL_URGENCY"] = "GLOBAL_URGENCY"
    active_emergencies: int = Field(ge=0)
    system_load: str


SystemSignalPayload = Annotated[
    Union[PressureMetricSignal, GlobalUrgencySignal],
    Field(discriminator="signal_type"),
]

signal_payload_adapter: TypeAdapter[SystemSignalPayload] = TypeAdapter(SystemSignalPayload)


# ════════════════════════════════════════════════════════════════
# Read Models
# ════════════════════════════════════════════════════════════════


class ItemView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    description: str
    quantity: Decimal
    unit_price: Decimal
    total: Decimal


class DocumentView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    category: str
    file_name: str
    file_path: str
    ocr_result: OcrResult | None = None
    ocr_match: bool | None = None
    uploaded_at: datetime


class TransactionView(BaseModel):
    """Owner's full view of a transaction."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    transaction_type: TransactionType
    amount: Decimal | None
    currency: str
    status: TransactionStatus
    description: str
    recipient_name: str
    vendor_ref: str | None = None
    cost_center: str | None = None
    risk_level: RiskLevel
    internal_flags: list[str] = Field(default_factory=list)
    ocr_result: OcrResult | None = None
    reject_reason: str | None = None
    revision_note: str | None = None
    revision_count: int = 0
    is_latest: bool
    predecessor_id: UUID | None = None
    successor_id: UUID | None = None
    created_at: datetime
    submitted_at: datetime | None = None
    decided_at: datetime | None = None
    items: list[ItemView] = Field(default_factory=list)
    documents: list[DocumentView] = Field(default_factory=list)


class DraftSummary(BaseModel):
    id: UUID
    code: str
    status: TransactionStatus
    amount: Decimal | None
    recipient_name: str
    created_at: datetime
    remaining_hours: int
    near_deadline: bool
    expired: bool


class ReplacementObligation(BaseModel):
    rejected_id: UUID
    rejected_code: str
    reject_reason: str
    amount: Decimal | None
    rejected_at: datetime | None
    state: ReplacementState
    replacement_id: UUID | None = None


class QueueItem(BaseModel):
    """One row of the approver queue. Scoped to what a single decision needs."""

    id: UUID
    code: str
    transaction_type: TransactionType
    amount: Decimal | None
    currency: str
    nominal_range: str
    recipient_name: str
    description: str
    risk_level: RiskLevel
    status: TransactionStatus
    submitted_at: datetime
    queue_position: int
    relative_time: RelativeTime
    soft_label: SoftLabel
    document_status: DocumentStatus
    is_emergency: bool = False


class EmergencyQueueItem(BaseModel):
    request_id: UUID
    transaction_id: UUID
    code: str
    nominal_range: str
    document_status: DocumentStatus
    relative_time: RelativeTime
    label: str = "Urgent request"
    short_reason: str
    requested_at: datetime


class DecisionRecord(BaseModel):
    """Redacted decision history entry: no amount, vendor or risk."""

    model_config = ConfigDict(extra="forbid")

    id: UUID
    item_type: Literal["new", "revision", "emergency"]
    outcome: Literal["approved", "rejected", "returned"]
    timestamp: datetime
    transaction_mask: str


class RecentTransaction(BaseModel):
    id: UUID
    code: str
    transaction_type: TransactionType
    amount: Decimal | None
    status: TransactionStatus
    created_at: datetime


class AdminSummary(BaseModel):
    """Admin home page counters. Only the caller's own transactions are counted."""

    date: str
    today_count: int
    active_drafts: int
    pending: int
    revisions: int
    status_breakdown: dict[str, int] = Field(default_factory=dict)
    activity_today: dict[str, int] = Field(default_factory=dict)
    recent: list[RecentTransaction] = Field(default_factory=list)


class ApproverStats(BaseModel):
    """Plain counts for an approver. Unadjusted, no workload labels."""

    approved_today: int
    rejected_today: int
    processed_today: int
    processed_this_week: int
    new_in_last_day: int
    pending_count: int


class ActivityView(BaseModel):
    sequence_number: int
    action: str
    actor_role: str
    timestamp: datetime
    details: dict = Field(default_factory=dict)


class NoticeView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    message: str
    category: NoticeCategory
    priority: int
