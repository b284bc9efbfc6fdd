"""
Replacement Workflow — the admin's obligation after a rejection.

A rejected transaction stays rejected. Its admin owes a replacement: a new
draft carrying the same header, items and document references, linked to
the rejected one through ``predecessor_id`` / ``successor_id``.

The obligation counts as *pending* while no replacement exists, and as
*unresolved* until the replacement has actually been submitted.
"""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import aliased

from mata_finance.domain.clock import Clock, utc_now
from mata_finance.domain.errors import InvalidStateTransition, NotFound, ReplacementAlreadyExists
from mata_finance.domain.schema import (
    ActivityAction,
    Actor,
    ReplacementObligation,
    ReplacementState,
    TransactionStatus,
)
from mata_finance.governance.permissions import Action, PermissionEngine, permission_engine
from mata_finance.store.activity import ActivityLog
from mata_finance.store.database import Database
from mata_finance.store.models import TransactionDB, TransactionDocumentDB, TransactionItemDB
from mata_finance.workflow.transactions import generate_code

logger = logging.getLogger(__name__)


class ReplacementService:
    """Lists replacement obligations and creates replacements atomically."""

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

    def get_pending_replacements(self, actor: Actor) -> list[ReplacementObligation]:
        """Rejected transactions of the caller that have no replacement yet."""
        self.permissions.require(actor, Action.CREATE_REPLACEMENT)
        with self.database.session() as session:
            rows = session.execute(
                select(TransactionDB)
                .where(
                    TransactionDB.admin_id == actor.user_id,
                    TransactionDB.status == TransactionStatus.REJECTED.value,
                    TransactionDB.successor_id.is_(None),
                )
                .order_by(TransactionDB.decided_at.asc(), TransactionDB.id)
            ).scalars().all()
            return [self._obligation(row, None) for row in rows]

    def get_unresolved_replacements(self, actor: Actor) -> list[ReplacementObligation]:
        """
        Rejections whose replacement is missing or has never been submitted.

        This is the count persistent indicators should show: creating the
        replacement draft alone does not clear it.
        """
        self.permissions.require(actor, Action.CREATE_REPLACEMENT)
        successor = aliased(TransactionDB)
        with self.database.session() as session:
            rows = session.execute(
                select(TransactionDB, successor)
                .outerjoin(successor, successor.id == TransactionDB.successor_id)
                .where(
                    TransactionDB.admin_id == actor.user_id,
                    TransactionDB.status == TransactionStatus.REJECTED.value,
                    or_(
                        TransactionDB.successor_id.is_(None),
                        and_(
                            successor.id.is_not(None),
                            successor.submitted_at.is_(None),
                        ),
                    ),
                )
                .order_by(TransactionDB.decided_at.asc(), TransactionDB.id)
            ).all()
            return [self._obligation(rejected, replacement) for rejected, replacement in rows]

    def create_replacement(self, actor: Actor, rejected_id: UUID) -> UUID:
        """
        Create a draft replacing ``rejected_id`` and link the two.

        The insert and the linkage update run in one database transaction:
        the linkage is a conditional UPDATE on ``successor_id IS NULL``, and
        if it matches nothing the whole transaction rolls back.

        Raises:
            NotFound: missing, or owned by another admin.
            InvalidStateTransition: the transaction is not rejected.
            ReplacementAlreadyExists: a replacement already exists.
        """
        self.permissions.require(actor, Action.CREATE_REPLACEMENT)
        now = self.clock()

        with self.database.session() as session:
            rejected = session.get(TransactionDB, rejected_id)
            if rejected is None or rejected.admin_id != actor.user_id:
                raise NotFound(f"Transaction {rejected_id} not found")
            if rejected.status != TransactionStatus.REJECTED.value:
                raise InvalidStateTransition(
                    rejected.status, "replacement",
                    f"Only rejected transactions can be replaced (status '{rejected.status}')",
                )
            if rejected.successor_id is not None:
                raise ReplacementAlreadyExists(
                    f"Transaction {rejected.code} already has a replacement"
                )

            replacement = TransactionDB(
                code=generate_code(now),
                admin_id=actor.user_id,
                transaction_type=rejected.transaction_type,
                amount=rejected.amount,
                currency=rejected.currency,
                status=TransactionStatus.DRAFT.value,
                description=rejected.description,
                recipient_name=rejected.recipient_name,
                vendor_ref=rejected.vendor_ref,
                cost_center=rejected.cost_center,
                risk_level=rejected.risk_level,
                internal_flags=list(rejected.internal_flags or []),
                ocr_result=rejected.ocr_result,
                predecessor_id=rejected.id,
                is_latest=True,
                created_at=now,
                clock_started_at=now,
            )
            for item in rejected.items:
                replacement.items.append(TransactionItemDB(
                    position=item.position,
                    description=item.description,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    total=item.total,
                ))
            # Same stored files, new rows
            for document in rejected.documents:
                replacement.documents.append(TransactionDocumentDB(
                    category=document.category,
                    file_name=document.file_name,
                    file_path=document.file_path,
                    ocr_result=document.ocr_result,
                    ocr_match=document.ocr_match,
                    uploaded_at=document.uploaded_at,
                ))
            session.add(replacement)
            session.flush()

            linked = session.execute(
                update(TransactionDB)
                .where(
                    TransactionDB.id == rejected.id,
                    TransactionDB.status == TransactionStatus.REJECTED.value,
                    TransactionDB.successor_id.is_(None),
                )
                .values(successor_id=replacement.id, is_latest=False, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if linked.rowcount != 1:
                logger.warning(
                    "Replacement race lost: rejected=%s replacement=%s rolled back",
                    rejected.code, replacement.code,
                )
                raise ReplacementAlreadyExists(
                    f"Transaction {rejected.code} already has a replacement"
                )

            self.activity_log.record(
                session, actor, ActivityAction.CREATE_REPLACEMENT.value,
                "transaction", replacement.id,
                {"code": replacement.code, "predecessorId": str(rejected.id),
                 "predecessorCode": rejected.code},
            )
            logger.info(
                "Replacement created: rejected=%s replacement=%s",
                rejected.code, replacement.code,
            )
            return replacement.id

    @staticmethod
    def _obligation(
        rejected: TransactionDB, replacement: TransactionDB | None
    ) -> ReplacementObligation:
        return ReplacementObligation(
            rejected_id=rejected.id,
            rejected_code=rejected.code,
            reject_reason=rejected.reject_reason or "",
            amount=rejected.amount,
            rejected_at=rejected.decided_at,
            state=(
                ReplacementState.AWAITING_CREATION if replacement is None
                else ReplacementState.IN_PROGRESS
            ),
            replacement_id=replacement.id if replacement is not None else None,
        )
