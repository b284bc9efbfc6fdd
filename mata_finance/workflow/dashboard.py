"""
Dashboard read models.

Two aggregate views computed on request:

- ``admin_summary``: counters over the caller's own latest transactions
  plus what they logged since the start of the UTC day.
- ``approver_stats``: the approver's own decision counts and the current
  queue size, reported as-is.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import func, select

from mata_finance.config import settings
from mata_finance.domain.clock import Clock, ensure_utc, utc_now
from mata_finance.domain.schema import (
    QUEUE_STATUSES,
    ActivityAction,
    Actor,
    AdminSummary,
    ApproverStats,
    RecentTransaction,
    TransactionStatus,
    TransactionType,
)
from mata_finance.governance.permissions import Action, PermissionEngine, permission_engine
from mata_finance.store.activity import ActivityLog
from mata_finance.store.database import Database
from mata_finance.store.models import TransactionDB

RECENT_LIMIT = 5
WORKING_DRAFT_STATUSES = (TransactionStatus.DRAFT.value, TransactionStatus.IN_PROGRESS.value)
DECIDED_ACTIONS = (ActivityAction.APPROVE.value, ActivityAction.REJECT.value)


def start_of_day(now: datetime) -> datetime:
    return ensure_utc(now).replace(hour=0, minute=0, second=0, microsecond=0)


class DashboardService:
    def __init__(
        self,
        database: Database,
        activity_log: ActivityLog,
        clock: Clock = utc_now,
        permissions: PermissionEngine = permission_engine,
        draft_window_hours: int | None = None,
    ) -> None:
        self.database = database
        self.activity_log = activity_log
        self.clock = clock
        self.permissions = permissions
        self.draft_window_hours = (
            settings.draft_window_hours if draft_window_hours is None else draft_window_hours
        )

    def admin_summary(self, actor: Actor) -> AdminSummary:
        self.permissions.require(actor, Action.VIEW_OWN_TRANSACTIONS)
        now = self.clock()
        today = start_of_day(now)
        window_start = now - timedelta(hours=self.draft_window_hours)
        mine = (TransactionDB.admin_id == actor.user_id, TransactionDB.is_latest.is_(True))

        with self.database.session() as session:
            def count(*conditions) -> int:
                stmt = select(func.count()).select_from(TransactionDB).where(*mine, *conditions)
                return session.execute(stmt).scalar() or 0

            breakdown = dict(session.execute(
                select(TransactionDB.status, func.count())
                .where(*mine)
                .group_by(TransactionDB.status)
            ).all())
            recent = session.execute(
                select(TransactionDB)
                .where(*mine)
                .order_by(TransactionDB.created_at.desc(), TransactionDB.id)
                .limit(RECENT_LIMIT)
            ).scalars().all()

            summary = AdminSummary(
                date=today.date().isoformat(),
                today_count=count(TransactionDB.created_at >= today),
                active_drafts=count(
                    TransactionDB.status.in_(WORKING_DRAFT_STATUSES),
                    TransactionDB.clock_started_at > window_start,
                ),
                pending=count(TransactionDB.status.in_([s.value for s in QUEUE_STATUSES])),
                revisions=count(
                    TransactionDB.status == TransactionStatus.RETURNED_FOR_REVISION.value
                ),
                status_breakdown=breakdown,
                recent=[
                    RecentTransaction(
                        id=row.id,
                        code=row.code,
                        transaction_type=TransactionType(row.transaction_type),
                        amount=row.amount,
                        status=TransactionStatus(row.status),
                        created_at=row.created_at,
                    )
                    for row in recent
                ],
            )

        summary.activity_today = self.activity_log.count_actor_entries(actor.user_id, since=today)
        return summary

    def approver_stats(self, actor: Actor) -> ApproverStats:
        self.permissions.require(actor, Action.VIEW_QUEUE)
        now = self.clock()

        today = self.activity_log.count_actor_entries(
            actor.user_id, actions=DECIDED_ACTIONS, since=start_of_day(now)
        )
        week = self.activity_log.count_actor_entries(
            actor.user_id, actions=DECIDED_ACTIONS, since=now - timedelta(days=7)
        )
        queued = (
            TransactionDB.status.in_([s.value for s in QUEUE_STATUSES]),
            TransactionDB.is_latest.is_(True),
        )
        with self.database.session() as session:
            pending = session.execute(
                select(func.count()).select_from(TransactionDB).where(*queued)
            ).scalar() or 0
            new_in_last_day = session.execute(
                select(func.count()).select_from(TransactionDB).where(
                    *queued, TransactionDB.submitted_at > now - timedelta(hours=24)
                )
            ).scalar() or 0

        approved = today.get(ActivityAction.APPROVE.value, 0)
        rejected = today.get(ActivityAction.REJECT.value, 0)
        return ApproverStats(
            approved_today=approved,
            rejected_today=rejected,
            processed_today=approved + rejected,
            processed_this_week=sum(week.values()),
            new_in_last_day=new_in_last_day,
            pending_count=pending,
        )
