"""
Decision History ("My Decisions") — an approver's own recent decisions.

Built from the activity log, not from transactions, and redacted down to
``DecisionRecord``: what kind of item it was, the outcome, when, and a
masked code. Amount, vendor and risk never leave this module.
"""

from __future__ import annotations

from datetime import timedelta

from mata_finance.config import settings
from mata_finance.domain.clock import Clock, utc_now
from mata_finance.domain.schema import ActivityAction, Actor, DecisionRecord
from mata_finance.governance.permissions import Action, PermissionEngine, permission_engine
from mata_finance.store.activity import ActivityLog
from mata_finance.workflow.queue import mask_code

OUTCOME_BY_ACTION = {
    ActivityAction.APPROVE.value: "approved",
    ActivityAction.REJECT.value: "rejected",
    ActivityAction.RETURN.value: "returned",
}


class DecisionHistory:
    def __init__(
        self,
        activity_log: ActivityLog,
        clock: Clock = utc_now,
        permissions: PermissionEngine = permission_engine,
        window_days: int | None = None,
        limit: int | None = None,
    ) -> None:
        self.activity_log = activity_log
        self.clock = clock
        self.permissions = permissions
        self.window_days = settings.decision_history_days if window_days is None else window_days
        self.limit = settings.decision_history_limit if limit is None else limit

    def get_my_decisions(self, actor: Actor) -> list[DecisionRecord]:
        self.permissions.require(actor, Action.VIEW_DECISIONS)
        since = self.clock() - timedelta(days=self.window_days)

        entries = self.activity_log.get_actor_entries(
            actor.user_id,
            actions=OUTCOME_BY_ACTION.keys(),
            since=since,
            limit=self.limit,
        )
        records = []
        for entry in entries:
            details = entry.details or {}
            if details.get("isEmergency"):
                item_type = "emergency"
            elif details.get("isRevision"):
                item_type = "revision"
            else:
                item_type = "new"
            records.append(DecisionRecord(
                id=entry.id,
                item_type=item_type,
                outcome=OUTCOME_BY_ACTION[entry.action],
                timestamp=entry.timestamp,
                transaction_mask=mask_code(details.get("code", "TRX")),
            ))
        return records
