"""
Emergency Requests — an admin's bid for expedited approval.

Only the transaction's own admin may declare one. Declaring is
duplicate-tolerant: while a PENDING request exists for the transaction,
declaring again returns that request. A decision on the transaction
resolves its pending requests (see ``TransactionService.decide``).
"""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from mata_finance.domain.clock import Clock, utc_now
from mata_finance.domain.errors import Forbidden, InvalidStateTransition, NotFound
from mata_finance.domain.schema import (
    Actor,
    ActivityAction,
    EmergencyStatus,
    TransactionStatus,
)
from mata_finance.governance.permissions import Action, PermissionEngine, permission_engine
from mata_finance.store.activity import ActivityLog
from mata_finance.store.database import Database
from mata_finance.store.models import EmergencyRequestDB, TransactionDB

logger = logging.getLogger(__name__)

DEFAULT_EMERGENCY_REASON = "Emergency request without specified reason"

# Statuses in which an emergency can still speed anything up
DECLARABLE_STATUSES = frozenset({
    TransactionStatus.DRAFT,
    TransactionStatus.IN_PROGRESS,
    TransactionStatus.SUBMITTED,
    TransactionStatus.RESUBMITTED,
})


def open_emergency_request(
    session: Session,
    transaction: TransactionDB,
    actor: Actor,
    reason: str | None,
    now: datetime,
) -> tuple[EmergencyRequestDB, bool]:
    """
    Return the pending request for ``transaction``, creating one if needed.

    Returns:
        Tuple of (request, created).
    """
    existing = session.execute(
        select(EmergencyRequestDB)
        .where(
            EmergencyRequestDB.transaction_id == transaction.id,
            EmergencyRequestDB.status == EmergencyStatus.PENDING.value,
        )
        .order_by(EmergencyRequestDB.created_at.asc())
        .limit(1)
    ).scalar_one_or_none()
    if existing is not None:
        return existing, False

    request = EmergencyRequestDB(
        transaction_id=transaction.id,
        admin_id=actor.user_id,
        admin_reason=(reason or "").strip() or DEFAULT_EMERGENCY_REASON,
        status=EmergencyStatus.PENDING.value,
        created_at=now,
        updated_at=now,
    )
    session.add(request)
    session.flush()
    logger.info(
        "Emergency request opened: transaction=%s request=%s",
        transaction.code, request.id,
    )
    return request, True


def resolve_pending_requests(session: Session, transaction_id: UUID, now: datetime) -> int:
    """Mark every pending request on the transaction resolved; returns the count."""
    result = session.execute(
        update(EmergencyRequestDB)
        .where(
            EmergencyRequestDB.transaction_id == transaction_id,
            EmergencyRequestDB.status == EmergencyStatus.PENDING.value,
        )
        .values(status=EmergencyStatus.RESOLVED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


class EmergencyService:
    """Declares emergency requests outside of submission."""

    def __init__(
        self,
        database: Database,
        activity_log: ActivityLog,
        clock: Clock = utc_now,
        permissions: PermissionEngine = permission_engine,
    ) -> None:
        self.database = database
        self.activity_log = activity_log
        self.clock = clock
        self.permissions = permissions

    def declare(self, actor: Actor, transaction_id: UUID, reason: str | None = None) -> UUID:
        """Open (or return the already pending) emergency request for a transaction."""
        self.permissions.require(actor, Action.DECLARE_EMERGENCY)

        with self.database.session() as session:
            transaction = session.get(TransactionDB, transaction_id)
            if transaction is None:
                raise NotFound(f"Transaction {transaction_id} not found")
            if transaction.admin_id != actor.user_id:
                raise Forbidden("Only the transaction's admin may declare an emergency")
            status = TransactionStatus(transaction.status)
            if status not in DECLARABLE_STATUSES:
                raise InvalidStateTransition(
                    status.value, "emergency",
                    f"Cannot declare an emergency on a {status.value} transaction",
                )

            request, created = open_emergency_request(
                session, transaction, actor, reason, self.clock()
            )
            if created:
                self.activity_log.record(
                    session, actor, ActivityAction.DECLARE_EMERGENCY.value,
                    "transaction", transaction.id,
                    {"code": transaction.code, "requestId": str(request.id)},
                )
            return request.id

    def has_pending(self, transaction_id: UUID) -> bool:
        with self.database.session() as session:
            return session.execute(
                select(EmergencyRequestDB.id).where(
                    EmergencyRequestDB.transaction_id == transaction_id,
                    EmergencyRequestDB.status == EmergencyStatus.PENDING.value,
                ).limit(1)
            ).first() is not None
