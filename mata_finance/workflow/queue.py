"""
Queue Projection — the approver's ordered work queue.

Recomputed from live transaction state on every request; nothing about
the queue is stored. Membership is ``submitted`` or ``resubmitted``.
Order is oldest submission first, ties broken by id.

Each item carries only what one reviewer needs for one decision. System
signals, notice exposure and earlier decisions by other approvers never
appear here.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from mata_finance.config import settings
from mata_finance.domain.clock import Clock, ensure_utc, utc_now
from mata_finance.domain.lifecycle import document_status
from mata_finance.domain.schema import (
    QUEUE_STATUSES,
    Actor,
    EmergencyQueueItem,
    EmergencyStatus,
    QueueItem,
    RelativeTime,
    RiskLevel,
    SoftLabel,
    TransactionStatus,
    TransactionType,
)
from mata_finance.governance.permissions import Action, PermissionEngine, permission_engine
from mata_finance.store.database import Database
from mata_finance.store.models import EmergencyRequestDB, TransactionDB

logger = logging.getLogger(__name__)

SHORT_REASON_LENGTH = 100
URGENT_LABEL = "Urgent request"

NOMINAL_RANGES = [
    (Decimal("1000000"), "under_1m"),
    (Decimal("5000000"), "1m_to_5m"),
    (Decimal("10000000"), "5m_to_10m"),
    (Decimal("25000000"), "10m_to_25m"),
    (Decimal("50000000"), "25m_to_50m"),
    (Decimal("100000000"), "50m_to_100m"),
]

RELATIVE_TIME_BUCKETS = [
    (1, RelativeTime.JUST_NOW),
    (6, RelativeTime.RECENT),
    (24, RelativeTime.TODAY),
    (48, RelativeTime.YESTERDAY),
    (168, RelativeTime.THIS_WEEK),
]


class QueueFilters(BaseModel):
    transaction_type: TransactionType | None = None
    risk_level: RiskLevel | None = None
    emergency_only: bool = False
    limit: int | None = None
    offset: int = 0


# ════════════════════════════════════════════════════════════════
# Derived Fields
# ════════════════════════════════════════════════════════════════


def hours_between(start: datetime, end: datetime) -> float:
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / 3600


def relative_time(submitted_at: datetime, now: datetime) -> RelativeTime:
    age = hours_between(submitted_at, now)
    for upper, bucket in RELATIVE_TIME_BUCKETS:
        if age < upper:
            return bucket
    return RelativeTime.OLDER


def nominal_range(amount: Decimal | None) -> str:
    if not amount:
        return "unknown"
    for upper, label in NOMINAL_RANGES:
        if amount < upper:
            return label
    return "over_100m"


def soft_label(
    status: TransactionStatus,
    waiting_hours: float,
    risk_level: RiskLevel,
    flags: list[str],
    time_sensitive_after_hours: float,
) -> SoftLabel:
    """First match wins: revision, time-sensitive, extra care, routine."""
    if status == TransactionStatus.RESUBMITTED:
        return SoftLabel.REVISION
    if waiting_hours >= time_sensitive_after_hours:
        return SoftLabel.TIME_SENSITIVE
    if risk_level == RiskLevel.HIGH or flags:
        return SoftLabel.NEEDS_EXTRA_CARE
    return SoftLabel.ROUTINE


def mask_code(code: str) -> str:
    """TRX-20260105-A1B2C3 → TRX-2026..."""
    return f"{code[:8]}..." if len(code) > 8 else code


# ════════════════════════════════════════════════════════════════
# Projection
# ════════════════════════════════════════════════════════════════


class QueueProjection:
    """Builds the approver queue and the emergency list."""

    def __init__(
        self,
        database: Database,
        clock: Clock = utc_now,
        permissions: PermissionEngine = permission_engine,
        required_documents: dict[str, list[str]] | None = None,
        time_sensitive_after_hours: float | None = None,
    ) -> None:
        self.database = database
        self.clock = clock
        self.permissions = permissions
        self.required_documents = (
            settings.required_documents if required_documents is None else required_documents
        )
        self.time_sensitive_after_hours = (
            settings.time_sensitive_after_hours if time_sensitive_after_hours is None
            else time_sensitive_after_hours
        )

    def get_queue(self, actor: Actor, filters: QueueFilters | None = None) -> list[QueueItem]:
        self.permissions.require(actor, Action.VIEW_QUEUE)
        filters = filters or QueueFilters()
        now = self.clock()

        with self.database.session() as session:
            stmt = (
                select(TransactionDB)
                .options(selectinload(TransactionDB.documents))
                .where(TransactionDB.status.in_([s.value for s in QUEUE_STATUSES]))
            )
            if filters.transaction_type is not None:
                stmt = stmt.where(TransactionDB.transaction_type == filters.transaction_type.value)
            if filters.risk_level is not None:
                stmt = stmt.where(TransactionDB.risk_level == filters.risk_level.value)
            stmt = stmt.order_by(TransactionDB.submitted_at.asc(), TransactionDB.id.asc())
            rows = session.execute(stmt).scalars().all()

            emergency_ids = self._pending_emergency_ids(session, [row.id for row in rows])
            if filters.emergency_only:
                rows = [row for row in rows if row.id in emergency_ids]

            items = [
                self._to_item(row, position, now, row.id in emergency_ids)
                for position, row in enumerate(rows, start=1)
            ]

        end = None if filters.limit is None else filters.offset + filters.limit
        return items[filters.offset:end]

    def get_emergency_queue(self, actor: Actor) -> list[EmergencyQueueItem]:
        """Queued transactions with a pending emergency request, oldest request first."""
        self.permissions.require(actor, Action.VIEW_QUEUE)
        now = self.clock()

        with self.database.session() as session:
            rows = session.execute(
                select(EmergencyRequestDB, TransactionDB)
                .join(TransactionDB, TransactionDB.id == EmergencyRequestDB.transaction_id)
                .options(selectinload(TransactionDB.documents))
                .where(
                    EmergencyRequestDB.status == EmergencyStatus.PENDING.value,
                    TransactionDB.status.in_([s.value for s in QUEUE_STATUSES]),
                )
                .order_by(EmergencyRequestDB.created_at.asc(), EmergencyRequestDB.id.asc())
            ).all()

            return [
                EmergencyQueueItem(
                    request_id=request.id,
                    transaction_id=transaction.id,
                    code=transaction.code,
                    nominal_range=nominal_range(transaction.amount),
                    document_status=self._document_status(transaction),
                    relative_time=relative_time(request.created_at, now),
                    label=URGENT_LABEL,
                    short_reason=request.admin_reason[:SHORT_REASON_LENGTH],
                    requested_at=request.created_at,
                )
                for request, transaction in rows
            ]

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _pending_emergency_ids(session, transaction_ids: list) -> set:
        if not transaction_ids:
            return set()
        return set(
            session.execute(
                select(EmergencyRequestDB.transaction_id).where(
                    EmergencyRequestDB.status == EmergencyStatus.PENDING.value,
                    EmergencyRequestDB.transaction_id.in_(transaction_ids),
                )
            ).scalars().all()
        )

    def _document_status(self, transaction: TransactionDB):
        return document_status(
            self.required_documents.get(transaction.transaction_type, []),
            ((document.category, document.ocr_match) for document in transaction.documents),
        )

    def _to_item(
        self, row: TransactionDB, position: int, now: datetime, is_emergency: bool
    ) -> QueueItem:
        status = TransactionStatus(row.status)
        risk = RiskLevel(row.risk_level)
        return QueueItem(
            id=row.id,
            code=row.code,
            transaction_type=TransactionType(row.transaction_type),
            amount=row.amount,
            currency=row.currency,
            nominal_range=nominal_range(row.amount),
            recipient_name=row.recipient_name,
            description=row.description,
            risk_level=risk,
            status=status,
            submitted_at=row.submitted_at,
            queue_position=position,
            relative_time=relative_time(row.submitted_at, now),
            soft_label=soft_label(
                status,
                hours_between(row.submitted_at, now),
                risk,
                row.internal_flags or [],
                self.time_sensitive_after_hours,
            ),
            document_status=self._document_status(row),
            is_emergency=is_emergency,
        )
