"""Shared builders for database-backed tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from mata_finance.domain.schema import (
    Actor,
    DocumentInput,
    OcrResult,
    Role,
    TransactionDraft,
)
from mata_finance.notices.service import NoticeService, SignalService
from mata_finance.store.activity import ActivityLog
from mata_finance.store.database import Database
from mata_finance.store.models import UserDB
from mata_finance.workflow.decisions import DecisionHistory
from mata_finance.workflow.dashboard import DashboardService
from mata_finance.workflow.emergency import EmergencyService
from mata_finance.workflow.queue import QueueProjection
from mata_finance.workflow.replacement import ReplacementService
from mata_finance.workflow.transactions import TransactionService

BASE_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
REQUIRED_DOCUMENTS = {"payment": ["invoice"]}


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def add_user(database: Database, role: Role, name: str) -> Actor:
    with database.session() as session:
        user = UserDB(name=name, role=role.value, public_alias=name.lower())
        session.add(user)
        session.flush()
        return Actor(user_id=user.id, role=role)


class Workspace:
    """An in-memory store with every service wired to one fake clock."""

    def __init__(self) -> None:
        self.clock = FakeClock()
        self.database = Database("sqlite://")
        self.database.initialize()
        self.activity_log = ActivityLog(self.database, clock=self.clock)
        self.transactions = TransactionService(
            self.database, self.activity_log, clock=self.clock,
            ocr_tolerance_percent=5, min_reason_length=10,
            required_documents=REQUIRED_DOCUMENTS,
            draft_window_hours=24, near_deadline_hours=6,
        )
        self.replacements = ReplacementService(self.database, self.activity_log, clock=self.clock)
        self.queue = QueueProjection(
            self.database, clock=self.clock,
            required_documents=REQUIRED_DOCUMENTS, time_sensitive_after_hours=24,
        )
        self.decisions = DecisionHistory(self.activity_log, clock=self.clock, window_days=60, limit=100)
        self.emergencies = EmergencyService(self.database, self.activity_log, clock=self.clock)
        self.notices = NoticeService(
            self.database, clock=self.clock, exposure_window_days=7, display_limit=2,
        )
        self.signals = SignalService(self.database, clock=self.clock)
        self.dashboard = DashboardService(
            self.database, self.activity_log, clock=self.clock, draft_window_hours=24,
        )

        self.admin = add_user(self.database, Role.ADMIN, "Admin")
        self.other_admin = add_user(self.database, Role.ADMIN, "Other")
        self.approver = add_user(self.database, Role.APPROVER, "Approver")
        self.second_approver = add_user(self.database, Role.APPROVER, "Second")

    def close(self) -> None:
        self.database.dispose()

    def draft(self, amount: str = "25000000", code: str | None = None, **kwargs):
        """Create a payment transaction with an invoice whose OCR agrees."""
        admin = kwargs.pop("admin", self.admin)
        ocr_amount = kwargs.pop("ocr_amount", amount)
        view = self.transactions.create_transaction(admin, TransactionDraft(
            code=code,
            amount=Decimal(amount),
            description=kwargs.pop("description", "Pembayaran vendor"),
            recipient_name=kwargs.pop("recipient_name", "PT Sinar Jaya"),
            **kwargs,
        ))
        self.transactions.attach_document(admin, view.id, DocumentInput(
            category="invoice",
            file_name="invoice.pdf",
            file_path=f"uploads/{view.code}/invoice.pdf",
            ocr_result=OcrResult(vendor="PT Sinar Jaya", amount=Decimal(ocr_amount)),
        ))
        return view

    def submitted(self, amount: str = "25000000", code: str | None = None, **kwargs):
        admin = kwargs.get("admin", self.admin)
        view = self.draft(amount, code, **kwargs)
        return self.transactions.submit(admin, view.id)
