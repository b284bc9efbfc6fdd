"""
Transaction Service — the transaction store and its lifecycle transitions.

Admins create and edit their own transactions while the status is
``in_progress``, ``draft`` or ``returned_for_revision``, then submit or
resubmit them. Approvers decide queued transactions. Every status change
is a conditional UPDATE keyed on the status that was read, so of two
approvers racing on the same transaction exactly one wins and the other
gets ``InvalidStateTransition``.

Each mutation writes its activity entry in the same database transaction.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mata_finance.config import settings
from mata_finance.domain import draft_expiry
from mata_finance.domain.clock import Clock, utc_now
from mata_finance.domain.errors import (
    Forbidden,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from mata_finance.domain.lifecycle import (
    OUTCOME_TARGETS,
    check_ocr_tolerance,
    check_transition,
    missing_categories,
    ocr_matches,
    require_reason,
    validate_amount,
    validate_items,
)
from mata_finance.domain.schema import (
    DECISION_ACTIONS,
    EDITABLE_STATUSES,
    QUEUE_STATUSES,
    ActivityAction,
    ActivityView,
    Actor,
    DecisionOutcome,
    DocumentInput,
    DocumentView,
    DraftSummary,
    HeaderUpdate,
    OcrResult,
    TransactionDraft,
    TransactionItemInput,
    TransactionStatus,
    TransactionType,
    TransactionView,
)
from mata_finance.governance.permissions import Action, PermissionEngine, permission_engine
from mata_finance.store.activity import ActivityLog
from mata_finance.store.database import Database
from mata_finance.store.models import (
    TransactionDB,
    TransactionDocumentDB,
    TransactionItemDB,
)
from mata_finance.workflow.emergency import open_emergency_request, resolve_pending_requests

logger = logging.getLogger(__name__)

OCR_MISMATCH_FLAG = "ocr_mismatch"


def generate_code(now: datetime) -> str:
    """TRX-YYYYMMDD-XXXXXX"""
    return f"TRX-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


class TransactionService:
    """
    Admin and approver operations on transactions.

    Usage:
        service = TransactionService(database, ActivityLog(database))
        view = service.create_transaction(admin, TransactionDraft(...))
        service.attach_document(admin, view.id, DocumentInput(...))
        service.submit(admin, view.id)
        service.decide(approver, view.id, DecisionOutcome.APPROVE)
    """

    def __init__(
        self,
        database: Database,
        activity_log: ActivityLog,
        clock: Clock = utc_now,
        permissions: PermissionEngine = permission_engine,
        ocr_tolerance_percent: float | None = None,
        min_reason_length: int | None = None,
        required_documents: dict[str, list[str]] | None = None,
        draft_window_hours: int | None = None,
        near_deadline_hours: int | None = None,
    ) -> None:
        self.database = database
        self.activity_log = activity_log
        self.clock = clock
        self.permissions = permissions
        self.ocr_tolerance_percent = (
            settings.ocr_tolerance_percent if ocr_tolerance_percent is None
            else ocr_tolerance_percent
        )
        self.min_reason_length = (
            settings.min_reason_length if min_reason_length is None else min_reason_length
        )
        self.required_documents = (
            settings.required_documents if required_documents is None else required_documents
        )
        self.draft_window_hours = (
            settings.draft_window_hours if draft_window_hours is None else draft_window_hours
        )
        self.near_deadline_hours = (
            settings.near_deadline_hours if near_deadline_hours is None else near_deadline_hours
        )

    def required_categories(self, transaction_type: TransactionType | str) -> list[str]:
        key = transaction_type.value if isinstance(transaction_type, TransactionType) else transaction_type
        return list(self.required_documents.get(key, []))

    # ════════════════════════════════════════════════════════════
    # Admin: create and edit
    # ════════════════════════════════════════════════════════════

    def create_transaction(self, actor: Actor, draft: TransactionDraft) -> TransactionView:
        """Create a transaction in ``in_progress`` owned by the calling admin."""
        self.permissions.require(actor, Action.CREATE_TRANSACTION)
        now = self.clock()

        amount = draft.amount
        items = draft.items or []
        if items:
            amount = validate_items(items)
        validate_amount(amount, draft.transaction_type)

        code = draft.code or generate_code(now)
        with self.database.session() as session:
            if draft.code and self._code_taken(session, code):
                raise ValidationError(f"Transaction code {code} already exists")
            transaction = TransactionDB(
                code=code,
                admin_id=actor.user_id,
                transaction_type=draft.transaction_type.value,
                amount=amount,
                currency=draft.currency,
                status=TransactionStatus.IN_PROGRESS.value,
                description=draft.description,
                recipient_name=draft.recipient_name,
                vendor_ref=draft.vendor_ref,
                cost_center=draft.cost_center,
                risk_level=draft.risk_level.value,
                internal_flags=sorted(set(draft.internal_flags)),
                is_latest=True,
                created_at=now,
                clock_started_at=now,
            )
            self._replace_items(transaction, items)
            session.add(transaction)
            try:
                session.flush()
            except IntegrityError as exc:
                # Lost a race on the unique code
                raise ValidationError(f"Transaction code {code} already exists") from exc

            self.activity_log.record(
                session, actor, ActivityAction.CREATE_TRANSACTION.value,
                "transaction", transaction.id, {"code": transaction.code},
            )
            logger.info("Transaction created: code=%s admin=%s", transaction.code, actor.user_id)
            return TransactionView.model_validate(transaction)

    def update_header(
        self, actor: Actor, transaction_id: UUID, changes: HeaderUpdate
    ) -> TransactionView:
        """Apply a partial header edit to an editable transaction."""
        self.permissions.require(actor, Action.EDIT_TRANSACTION)

        with self.database.session() as session:
            transaction = self._load_owned(session, actor, transaction_id)
            self._ensure_editable(transaction)

            fields = changes.model_dump(exclude_unset=True, exclude_none=True)
            if "amount" in fields and transaction.items:
                items_total = sum((item.total for item in transaction.items), Decimal("0"))
                if Decimal(fields["amount"]) != items_total:
                    raise ValidationError(
                        f"Amount must equal the sum of items ({items_total})"
                    )

            transaction_type = TransactionType(
                fields.get("transaction_type", transaction.transaction_type)
            )
            validate_amount(fields.get("amount", transaction.amount), transaction_type)

            for name, value in fields.items():
                if name == "internal_flags":
                    value = sorted(set(value))
                elif hasattr(value, "value"):
                    value = value.value
                setattr(transaction, name, value)
            transaction.updated_at = self.clock()
            self._refresh_ocr_matches(transaction)

            self.activity_log.record(
                session, actor, ActivityAction.UPDATE_TRANSACTION.value,
                "transaction", transaction.id,
                {"code": transaction.code, "fields": sorted(fields)},
            )
            return TransactionView.model_validate(transaction)

    def set_items(
        self, actor: Actor, transaction_id: UUID, items: list[TransactionItemInput]
    ) -> TransactionView:
        """Replace the item set; a non-empty set also sets the amount to its total."""
        self.permissions.require(actor, Action.EDIT_TRANSACTION)
        total = validate_items(items)

        with self.database.session() as session:
            transaction = self._load_owned(session, actor, transaction_id)
            self._ensure_editable(transaction)
            if items:
                validate_amount(total, TransactionType(transaction.transaction_type))
                transaction.amount = total

            self._replace_items(transaction, items)
            transaction.updated_at = self.clock()
            self._refresh_ocr_matches(transaction)

            self.activity_log.record(
                session, actor, ActivityAction.SET_ITEMS.value,
                "transaction", transaction.id,
                {"code": transaction.code, "itemCount": len(items)},
            )
            return TransactionView.model_validate(transaction)

    def attach_document(
        self, actor: Actor, transaction_id: UUID, document: DocumentInput
    ) -> DocumentView:
        """Attach evidence; its OCR result is compared with the header on the spot."""
        self.permissions.require(actor, Action.EDIT_TRANSACTION)
        now = self.clock()

        with self.database.session() as session:
            transaction = self._load_owned(session, actor, transaction_id)
            self._ensure_editable(transaction)

            ocr_payload = (
                document.ocr_result.model_dump(mode="json") if document.ocr_result else None
            )
            record = TransactionDocumentDB(
                category=document.category,
                file_name=document.file_name,
                file_path=document.file_path,
                ocr_result=ocr_payload,
                uploaded_at=now,
            )
            transaction.documents.append(record)
            if ocr_payload is not None:
                transaction.ocr_result = ocr_payload
            transaction.updated_at = now
            self._refresh_ocr_matches(transaction)
            session.flush()

            self.activity_log.record(
                session, actor, ActivityAction.ATTACH_DOCUMENT.value,
                "transaction", transaction.id,
                {
                    "code": transaction.code,
                    "documentId": str(record.id),
                    "category": record.category,
                    "ocrMatch": record.ocr_match,
                },
            )
            return DocumentView.model_validate(record)

    def save_draft(self, actor: Actor, transaction_id: UUID) -> TransactionView:
        """Park an in-progress transaction as a draft."""
        self.permissions.require(actor, Action.EDIT_TRANSACTION)

        with self.database.session() as session:
            transaction = self._load_owned(session, actor, transaction_id)
            current = TransactionStatus(transaction.status)
            if current == TransactionStatus.DRAFT:
                return TransactionView.model_validate(transaction)

            self._apply_transition(
                session, transaction, current, TransactionStatus.DRAFT,
                {"updated_at": self.clock()},
            )
            self.activity_log.record(
                session, actor, ActivityAction.SAVE_DRAFT.value,
                "transaction", transaction.id,
                {"code": transaction.code, "previousStatus": current.value,
                 "newStatus": TransactionStatus.DRAFT.value},
            )
            return TransactionView.model_validate(transaction)

    # ════════════════════════════════════════════════════════════
    # Admin: submit and resubmit
    # ════════════════════════════════════════════════════════════

    def submit(
        self,
        actor: Actor,
        transaction_id: UUID,
        emergency: bool = False,
        emergency_reason: str | None = None,
    ) -> TransactionView:
        """
        ``draft``/``in_progress`` → ``submitted``.

        Requires every mandatory document category attached and the amount
        within the OCR tolerance. With ``emergency`` set, an emergency
        request is opened in the same database transaction.

        Raises:
            ValidationError: missing documents, bad amount, OCR deviation.
            InvalidStateTransition: not in a submittable status.
        """
        self.permissions.require(actor, Action.SUBMIT_TRANSACTION)
        now = self.clock()

        with self.database.session() as session:
            transaction = self._load_owned(session, actor, transaction_id)
            current = TransactionStatus(transaction.status)
            check_transition(current, TransactionStatus.SUBMITTED)
            self._check_ready(transaction)

            self._apply_transition(
                session, transaction, current, TransactionStatus.SUBMITTED,
                {"submitted_at": now, "updated_at": now},
            )

            details: dict[str, Any] = {
                "code": transaction.code,
                "previousStatus": current.value,
                "newStatus": TransactionStatus.SUBMITTED.value,
                "emergency": emergency,
            }
            if emergency:
                request, _ = open_emergency_request(
                    session, transaction, actor, emergency_reason, now
                )
                details["emergencyRequestId"] = str(request.id)

            self.activity_log.record(
                session, actor, ActivityAction.SUBMIT_TRANSACTION.value,
                "transaction", transaction.id, details,
            )
            logger.info("Transaction submitted: code=%s emergency=%s", transaction.code, emergency)
            return TransactionView.model_validate(transaction)

    def resubmit(self, actor: Actor, transaction_id: UUID) -> TransactionView:
        """``returned_for_revision`` → ``resubmitted``; submission time and clock restart."""
        self.permissions.require(actor, Action.SUBMIT_TRANSACTION)
        now = self.clock()

        with self.database.session() as session:
            transaction = self._load_owned(session, actor, transaction_id)
            current = TransactionStatus(transaction.status)
            check_transition(current, TransactionStatus.RESUBMITTED)
            self._check_ready(transaction)

            self._apply_transition(
                session, transaction, current, TransactionStatus.RESUBMITTED,
                {"submitted_at": now, "clock_started_at": now, "updated_at": now},
            )
            self.activity_log.record(
                session, actor, ActivityAction.RESUBMIT_TRANSACTION.value,
                "transaction", transaction.id,
                {
                    "code": transaction.code,
                    "previousStatus": current.value,
                    "newStatus": TransactionStatus.RESUBMITTED.value,
                    "revisionCount": transaction.revision_count,
                },
            )
            logger.info(
                "Transaction resubmitted: code=%s revision=%d",
                transaction.code, transaction.revision_count,
            )
            return TransactionView.model_validate(transaction)

    # ════════════════════════════════════════════════════════════
    # Approver: decide
    # ════════════════════════════════════════════════════════════

    def decide(
        self,
        actor: Actor,
        transaction_id: UUID,
        outcome: DecisionOutcome,
        reason: str | None = None,
    ) -> TransactionView:
        """
        Approve, reject or return a queued transaction.

        Reject and return need a reason of at least ``min_reason_length``
        characters. Pending emergency requests on the transaction resolve.

        Raises:
            ValidationError: reason missing or too short.
            InvalidStateTransition: not queued, or another decision won the race.
            NotFound: no such transaction.
        """
        self.permissions.require(actor, Action.DECIDE)
        target = OUTCOME_TARGETS[outcome]
        now = self.clock()

        cleaned_reason = None
        if outcome != DecisionOutcome.APPROVE:
            cleaned_reason = require_reason(reason, self.min_reason_length)

        with self.database.session() as session:
            transaction = session.get(TransactionDB, transaction_id)
            if transaction is None:
                raise NotFound(f"Transaction {transaction_id} not found")
            current = TransactionStatus(transaction.status)
            check_transition(current, target)

            values: dict[str, Any] = {
                "decided_at": now,
                "decided_by": actor.user_id,
                "updated_at": now,
            }
            if outcome == DecisionOutcome.REJECT:
                values["reject_reason"] = cleaned_reason
            elif outcome == DecisionOutcome.RETURN:
                values["revision_note"] = cleaned_reason
                values["revision_count"] = TransactionDB.revision_count + 1
                values["clock_started_at"] = now

            self._apply_transition(session, transaction, current, target, values)
            had_emergency = resolve_pending_requests(session, transaction.id, now) > 0

            self.activity_log.record(
                session, actor, DECISION_ACTIONS[outcome].value,
                "transaction", transaction.id,
                {
                    "code": transaction.code,
                    "previousStatus": current.value,
                    "newStatus": target.value,
                    "isRevision": current == TransactionStatus.RESUBMITTED,
                    "isEmergency": had_emergency,
                    "reason": cleaned_reason,
                },
            )
            logger.info(
                "Transaction decided: code=%s outcome=%s approver=%s",
                transaction.code, outcome.value, actor.user_id,
            )
            return TransactionView.model_validate(transaction)

    # ════════════════════════════════════════════════════════════
    # Reads
    # ════════════════════════════════════════════════════════════

    def get_transaction(self, actor: Actor, transaction_id: UUID) -> TransactionView:
        """
        Owner admins see everything; approvers see queued transactions with
        earlier decision notes stripped. Anyone else gets Forbidden.
        """
        with self.database.session() as session:
            transaction = session.get(TransactionDB, transaction_id)
            if transaction is None:
                raise NotFound(f"Transaction {transaction_id} not found")

            if actor.is_admin:
                if transaction.admin_id != actor.user_id:
                    raise Forbidden("Transaction belongs to another admin")
                return TransactionView.model_validate(transaction)

            self.permissions.require(actor, Action.VIEW_QUEUE)
            if TransactionStatus(transaction.status) not in QUEUE_STATUSES:
                raise Forbidden("Transaction is not in the approval queue")
            view = TransactionView.model_validate(transaction)
            return view.model_copy(update={"revision_note": None, "reject_reason": None})

    def list_my_transactions(
        self,
        actor: Actor,
        statuses: Iterable[TransactionStatus] | None = None,
        latest_only: bool = False,
    ) -> list[TransactionView]:
        self.permissions.require(actor, Action.VIEW_OWN_TRANSACTIONS)
        with self.database.session() as session:
            stmt = select(TransactionDB).where(TransactionDB.admin_id == actor.user_id)
            if statuses is not None:
                stmt = stmt.where(TransactionDB.status.in_([s.value for s in statuses]))
            if latest_only:
                stmt = stmt.where(TransactionDB.is_latest.is_(True))
            stmt = stmt.order_by(TransactionDB.created_at.desc(), TransactionDB.id)
            return [
                TransactionView.model_validate(row)
                for row in session.execute(stmt).scalars().all()
            ]

    def list_drafts(self, actor: Actor) -> list[DraftSummary]:
        """Editable transactions with their remaining editing window."""
        self.permissions.require(actor, Action.VIEW_OWN_TRANSACTIONS)
        now = self.clock()

        with self.database.session() as session:
            rows = session.execute(
                select(TransactionDB)
                .where(
                    TransactionDB.admin_id == actor.user_id,
                    TransactionDB.status.in_([s.value for s in EDITABLE_STATUSES]),
                )
                .order_by(TransactionDB.clock_started_at.asc(), TransactionDB.id)
            ).scalars().all()

            summaries = []
            for row in rows:
                remaining = draft_expiry.remaining_hours(
                    row.clock_started_at, now, self.draft_window_hours
                )
                summaries.append(DraftSummary(
                    id=row.id,
                    code=row.code,
                    status=TransactionStatus(row.status),
                    amount=row.amount,
                    recipient_name=row.recipient_name,
                    created_at=row.created_at,
                    remaining_hours=remaining,
                    near_deadline=0 < remaining <= self.near_deadline_hours,
                    expired=remaining == 0,
                ))
            return summaries

    def get_timeline(self, actor: Actor, transaction_id: UUID) -> list[ActivityView]:
        """Activity for one of the caller's transactions, without actor ids."""
        self.permissions.require(actor, Action.VIEW_OWN_TRANSACTIONS)
        with self.database.session() as session:
            self._load_owned(session, actor, transaction_id)

        return [
            ActivityView(
                sequence_number=entry.sequence_number,
                action=entry.action,
                actor_role=entry.actor_role,
                timestamp=entry.timestamp,
                details=entry.details or {},
            )
            for entry in self.activity_log.get_entity_entries("transaction", transaction_id)
        ]

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _code_taken(session: Session, code: str) -> bool:
        return session.execute(
            select(TransactionDB.id).where(TransactionDB.code == code).limit(1)
        ).first() is not None

    @staticmethod
    def _load_owned(session: Session, actor: Actor, transaction_id: UUID) -> TransactionDB:
        transaction = session.get(TransactionDB, transaction_id)
        if transaction is None:
            raise NotFound(f"Transaction {transaction_id} not found")
        if transaction.admin_id != actor.user_id:
            raise Forbidden("Transaction belongs to another admin")
        return transaction

    @staticmethod
    def _ensure_editable(transaction: TransactionDB) -> None:
        current = TransactionStatus(transaction.status)
        if current not in EDITABLE_STATUSES:
            raise InvalidStateTransition(
                current.value, "edit",
                f"Transaction {transaction.code} is locked in status '{current.value}'",
            )

    def _apply_transition(
        self,
        session: Session,
        transaction: TransactionDB,
        expected: TransactionStatus,
        target: TransactionStatus,
        values: dict[str, Any],
    ) -> None:
        """
        Conditional UPDATE: only moves the row if it is still in ``expected``.

        Zero affected rows means someone else changed it first.
        """
        check_transition(expected, target)
        result = session.execute(
            update(TransactionDB)
            .where(
                TransactionDB.id == transaction.id,
                TransactionDB.status == expected.value,
            )
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.expire(transaction)
            actual = session.get(TransactionDB, transaction.id)
            current = actual.status if actual is not None else "missing"
            logger.warning(
                "Lost transition race: transaction=%s expected=%s actual=%s target=%s",
                transaction.id, expected.value, current, target.value,
            )
            raise InvalidStateTransition(current, target.value)
        session.refresh(transaction)

    def _check_ready(self, transaction: TransactionDB) -> None:
        """Submission checks shared by submit and resubmit."""
        transaction_type = TransactionType(transaction.transaction_type)
        if transaction.amount is None:
            raise ValidationError("Amount is required")
        validate_amount(transaction.amount, transaction_type)
        if not (transaction.recipient_name or "").strip():
            raise ValidationError("Recipient name is required")

        if transaction.items:
            items_total = sum((item.total for item in transaction.items), Decimal("0"))
            if items_total != transaction.amount:
                raise ValidationError(
                    f"Amount {transaction.amount} does not equal the sum of items {items_total}"
                )

        missing = missing_categories(
            self.required_categories(transaction_type),
            (document.category for document in transaction.documents),
        )
        if missing:
            raise ValidationError(f"Missing required documents: {', '.join(missing)}")

        ocr = OcrResult.model_validate(transaction.ocr_result) if transaction.ocr_result else None
        check_ocr_tolerance(transaction.amount, ocr, self.ocr_tolerance_percent)

    @staticmethod
    def _replace_items(transaction: TransactionDB, items: list[TransactionItemInput]) -> None:
        transaction.items.clear()
        for position, item in enumerate(items):
            transaction.items.append(TransactionItemDB(
                position=position,
                description=item.description.strip(),
                quantity=item.quantity,
                unit_price=item.unit_price,
                total=item.quantity * item.unit_price,
            ))

    def _refresh_ocr_matches(self, transaction: TransactionDB) -> None:
        """Recompute each document's OCR match and the ``ocr_mismatch`` flag."""
        mismatch = False
        for document in transaction.documents:
            ocr = OcrResult.model_validate(document.ocr_result) if document.ocr_result else None
            document.ocr_match = ocr_matches(
                ocr, transaction.recipient_name, transaction.amount,
                self.ocr_tolerance_percent,
            )
            mismatch = mismatch or document.ocr_match is False

        flags = set(transaction.internal_flags or [])
        if mismatch:
            flags.add(OCR_MISMATCH_FLAG)
        else:
            flags.discard(OCR_MISMATCH_FLAG)
        transaction.internal_flags = sorted(flags)
