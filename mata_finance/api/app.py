"""
Mata Finance — REST API.

FastAPI application providing:
- Admin transaction workspace (create, edit, documents, submit, resubmit)
- Draft deadlines and per-transaction timeline
- Replacement obligations after rejection
- Approver queue, emergency list and decisions
- Redacted "My Decisions" history
- System notices for approvers (each display recorded as an exposure)
- Dashboard counters for admins and approvers

Core services raise the error taxonomy in ``mata_finance.domain.errors``;
one exception handler here turns each kind into a status code.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text

from mata_finance.api.auth import get_current_actor, require_admin, require_approver
from mata_finance.config import settings
from mata_finance.domain.clock import Clock, utc_now
from mata_finance.domain.errors import (
    Forbidden,
    InvalidStateTransition,
    MataError,
    NotFound,
    ReplacementAlreadyExists,
    ValidationError,
)
from mata_finance.domain.schema import (
    ActivityView,
    Actor,
    DecisionOutcome,
    DocumentInput,
    HeaderUpdate,
    RiskLevel,
    TransactionDraft,
    TransactionItemInput,
    TransactionStatus,
    TransactionType,
)
from mata_finance.governance.permissions import Action, permission_engine
from mata_finance.notices.service import NoticeService, SignalService
from mata_finance.store.activity import ActivityLog
from mata_finance.store.database import Database
from mata_finance.workflow.decisions import DecisionHistory
from mata_finance.workflow.dashboard import DashboardService
from mata_finance.workflow.emergency import EmergencyService
from mata_finance.workflow.queue import QueueFilters, QueueProjection
from mata_finance.workflow.replacement import ReplacementService
from mata_finance.workflow.transactions import TransactionService

logger = logging.getLogger(__name__)


# ── Pydantic request models ────────────────────────────────────


class ItemsRequest(BaseModel):
    items: list[TransactionItemInput]


class SubmitRequest(BaseModel):
    emergency: bool = False
    emergency_reason: str | None = None


class EmergencyDeclareRequest(BaseModel):
    reason: str | None = None


class DecisionRequest(BaseModel):
    outcome: DecisionOutcome
    reason: str | None = None


class AppState:
    """Services shared by every request, wired at startup."""

    def __init__(self) -> None:
        self.database: Database | None = None
        self.activity_log: ActivityLog | None = None
        self.transactions: TransactionService | None = None
        self.replacements: ReplacementService | None = None
        self.queue: QueueProjection | None = None
        self.decisions: DecisionHistory | None = None
        self.emergencies: EmergencyService | None = None
        self.notices: NoticeService | None = None
        self.signals: SignalService | None = None
        self.dashboard: DashboardService | None = None
        self.startup_time: datetime = datetime.now(timezone.utc)

    def configure(self, database: Database, clock: Clock = utc_now) -> None:
        self.database = database
        self.activity_log = ActivityLog(database, clock=clock)
        self.transactions = TransactionService(database, self.activity_log, clock=clock)
        self.replacements = ReplacementService(database, self.activity_log, clock=clock)
        self.queue = QueueProjection(database, clock=clock)
        self.decisions = DecisionHistory(self.activity_log, clock=clock)
        self.emergencies = EmergencyService(database, self.activity_log, clock=clock)
        self.notices = NoticeService(database, clock=clock)
        self.signals = SignalService(database, clock=clock)
        self.dashboard = DashboardService(database, self.activity_log, clock=clock)


state = AppState()


# ── Application lifecycle ──────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup & shutdown: connect the store unless already configured."""
    if state.database is None:
        database = Database(settings.database_url_sync)
        database.initialize()
        state.configure(database)
        logger.info("Mata Finance API connected to transaction store")
    app.state.services = state

    yield

    logger.info("Mata Finance API shut down")


app = FastAPI(
    title="Mata Finance",
    description="Transaction drafting, approval and replacement workflow",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.services = state


# ── Error translation ──────────────────────────────────────────

ERROR_STATUS = {
    ValidationError: 400,
    InvalidStateTransition: 409,
    NotFound: 404,
    ReplacementAlreadyExists: 409,
    Forbidden: 403,
}


@app.exception_handler(MataError)
async def mata_error_handler(request: Request, exc: MataError) -> JSONResponse:
    status_code = ERROR_STATUS.get(type(exc), 400)
    body: dict[str, Any] = {"success": False, "error": exc.code, "message": exc.message}
    if isinstance(exc, InvalidStateTransition):
        body["current"] = exc.current
        body["attempted"] = exc.attempted
    return JSONResponse(status_code=status_code, content=body)


def _ok(data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [d.model_dump(mode="json") if isinstance(d, BaseModel) else d for d in data]
    return {"success": True, "data": data}


# ── Routes: Admin transactions ─────────────────────────────────


@app.post("/api/transactions", status_code=201)
def create_transaction(draft: TransactionDraft, actor: Actor = Depends(require_admin)):
    return _ok(state.transactions.create_transaction(actor, draft))


@app.get("/api/transactions")
def list_transactions(
    status: TransactionStatus | None = None,
    latest_only: bool = False,
    actor: Actor = Depends(require_admin),
):
    statuses = [status] if status is not None else None
    return _ok(state.transactions.list_my_transactions(actor, statuses, latest_only))


@app.get("/api/transactions/drafts")
def list_drafts(actor: Actor = Depends(require_admin)):
    return _ok(state.transactions.list_drafts(actor))


@app.get("/api/transactions/replacements/pending")
def pending_replacements(actor: Actor = Depends(require_admin)):
    return _ok(state.replacements.get_pending_replacements(actor))


@app.get("/api/transactions/replacements/unresolved")
def unresolved_replacements(actor: Actor = Depends(require_admin)):
    obligations = state.replacements.get_unresolved_replacements(actor)
    return {"success": True, "count": len(obligations), "data": _ok(obligations)["data"]}


@app.get("/api/dashboard/summary")
def dashboard_summary(actor: Actor = Depends(require_admin)):
    return _ok(state.dashboard.admin_summary(actor))


@app.get("/api/transactions/{transaction_id}")
def get_transaction(transaction_id: UUID, actor: Actor = Depends(get_current_actor)):
    return _ok(state.transactions.get_transaction(actor, transaction_id))


@app.put("/api/transactions/{transaction_id}/header")
def update_header(
    transaction_id: UUID, changes: HeaderUpdate, actor: Actor = Depends(require_admin)
):
    return _ok(state.transactions.update_header(actor, transaction_id, changes))


@app.put("/api/transactions/{transaction_id}/items")
def set_items(transaction_id: UUID, body: ItemsRequest, actor: Actor = Depends(require_admin)):
    return _ok(state.transactions.set_items(actor, transaction_id, body.items))


@app.post("/api/transactions/{transaction_id}/documents", status_code=201)
def attach_document(
    transaction_id: UUID, document: DocumentInput, actor: Actor = Depends(require_admin)
):
    return _ok(state.transactions.attach_document(actor, transaction_id, document))


@app.put("/api/transactions/{transaction_id}/draft")
def save_draft(transaction_id: UUID, actor: Actor = Depends(require_admin)):
    return _ok(state.transactions.save_draft(actor, transaction_id))


@app.post("/api/transactions/{transaction_id}/submit")
def submit_transaction(
    transaction_id: UUID,
    body: SubmitRequest | None = None,
    actor: Actor = Depends(require_admin),
):
    body = body or SubmitRequest()
    return _ok(state.transactions.submit(
        actor, transaction_id, emergency=body.emergency, emergency_reason=body.emergency_reason,
    ))


@app.post("/api/transactions/{transaction_id}/resubmit")
def resubmit_transaction(transaction_id: UUID, actor: Actor = Depends(require_admin)):
    return _ok(state.transactions.resubmit(actor, transaction_id))


@app.post("/api/transactions/{transaction_id}/emergency", status_code=201)
def declare_emergency(
    transaction_id: UUID,
    body: EmergencyDeclareRequest | None = None,
    actor: Actor = Depends(require_admin),
):
    reason = body.reason if body is not None else None
    request_id = state.emergencies.declare(actor, transaction_id, reason)
    return _ok({"request_id": str(request_id)})


@app.post("/api/transactions/{transaction_id}/replacement", status_code=201)
def create_replacement(transaction_id: UUID, actor: Actor = Depends(require_admin)):
    new_id = state.replacements.create_replacement(actor, transaction_id)
    return _ok({"transaction_id": str(new_id)})


@app.get("/api/transactions/{transaction_id}/timeline")
def transaction_timeline(transaction_id: UUID, actor: Actor = Depends(require_admin)):
    return _ok(state.transactions.get_timeline(actor, transaction_id))


# ── Routes: Approver ───────────────────────────────────────────


@app.get("/api/approval/queue")
def approval_queue(
    transaction_type: TransactionType | None = None,
    risk_level: RiskLevel | None = None,
    emergency_only: bool = False,
    limit: int | None = None,
    offset: int = 0,
    actor: Actor = Depends(require_approver),
):
    filters = QueueFilters(
        transaction_type=transaction_type,
        risk_level=risk_level,
        emergency_only=emergency_only,
        limit=limit,
        offset=offset,
    )
    return _ok(state.queue.get_queue(actor, filters))


@app.get("/api/approval/emergency")
def emergency_queue(actor: Actor = Depends(require_approver)):
    return _ok(state.queue.get_emergency_queue(actor))


@app.get("/api/approval/stats")
def approval_stats(actor: Actor = Depends(require_approver)):
    return _ok(state.dashboard.approver_stats(actor))


@app.post("/api/approval/transactions/{transaction_id}/decision")
def decide(
    transaction_id: UUID, body: DecisionRequest, actor: Actor = Depends(require_approver)
):
    return _ok(state.transactions.decide(actor, transaction_id, body.outcome, body.reason))


@app.get("/api/decisions/mine")
def my_decisions(actor: Actor = Depends(require_approver)):
    return _ok(state.decisions.get_my_decisions(actor))


@app.get("/api/notices")
def notices(actor: Actor = Depends(require_approver)):
    permission_engine.require(actor, Action.VIEW_NOTICES)
    return _ok(state.notices.show_notices(actor.user_id, context="notices_view"))


# ── Routes: Shared ─────────────────────────────────────────────


@app.get("/api/activity")
def my_activity(limit: int = 50, actor: Actor = Depends(get_current_actor)):
    permission_engine.require(actor, Action.VIEW_ACTIVITY)
    entries = state.activity_log.get_actor_entries(actor.user_id, limit=limit)
    return _ok([
        ActivityView(
            sequence_number=entry.sequence_number,
            action=entry.action,
            actor_role=entry.actor_role,
            timestamp=entry.timestamp,
            details=entry.details or {},
        )
        for entry in entries
    ])


@app.get("/health")
def health():
    """Liveness plus a trivial store round trip."""
    database_ok = False
    if state.database is not None:
        with state.database.session() as session:
            database_ok = session.execute(text("SELECT 1")).scalar() == 1
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": database_ok,
        "uptime_seconds": int((datetime.now(timezone.utc) - state.startup_time).total_seconds()),
    }
