"""
Role Permissions — what each role may do.

Every workflow operation checks the caller's ``Actor`` here before touching
the store. The role comes from the user record loaded on each request, so
a client cannot widen its own permissions by editing a token claim.

- Admins draft, submit and resubmit transactions, declare emergencies,
  create replacements and read their own activity.
- Approvers read the queue and emergency list, decide, and read their own
  decision history and system notices.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from mata_finance.domain.errors import Forbidden
from mata_finance.domain.schema import Actor, Role

logger = logging.getLogger(__name__)


class Action(str, enum.Enum):
    CREATE_TRANSACTION = "create_transaction"
    EDIT_TRANSACTION = "edit_transaction"
    SUBMIT_TRANSACTION = "submit_transaction"
    VIEW_OWN_TRANSACTIONS = "view_own_transactions"
    DECLARE_EMERGENCY = "declare_emergency"
    CREATE_REPLACEMENT = "create_replacement"
    VIEW_ACTIVITY = "view_activity"
    VIEW_QUEUE = "view_queue"
    DECIDE = "decide"
    VIEW_DECISIONS = "view_decisions"
    VIEW_NOTICES = "view_notices"


class PermissionDecision(str, enum.Enum):
    AUTHORIZED = "authorized"
    FORBIDDEN = "forbidden"


ROLE_PERMISSIONS: dict[Role, frozenset[Action]] = {
    Role.ADMIN: frozenset({
        Action.CREATE_TRANSACTION,
        Action.EDIT_TRANSACTION,
        Action.SUBMIT_TRANSACTION,
        Action.VIEW_OWN_TRANSACTIONS,
        Action.DECLARE_EMERGENCY,
        Action.CREATE_REPLACEMENT,
        Action.VIEW_ACTIVITY,
    }),
    Role.APPROVER: frozenset({
        Action.VIEW_QUEUE,
        Action.DECIDE,
        Action.VIEW_DECISIONS,
        Action.VIEW_NOTICES,
        Action.VIEW_ACTIVITY,
    }),
}


@dataclass
class PermissionCheckResult:
    """Result of checking an action against a role."""

    decision: PermissionDecision
    action: Action
    role: Role
    reason: str

    @property
    def is_allowed(self) -> bool:
        return self.decision == PermissionDecision.AUTHORIZED


class PermissionEngine:
    """Checks role → action grants."""

    def __init__(self, grants: dict[Role, frozenset[Action]] | None = None) -> None:
        self.grants = grants or dict(ROLE_PERMISSIONS)

    def check(self, role: Role, action: Action) -> PermissionCheckResult:
        if action in self.grants.get(role, frozenset()):
            return PermissionCheckResult(
                decision=PermissionDecision.AUTHORIZED,
                action=action,
                role=role,
                reason=f"Role '{role.value}' may {action.value}",
            )
        return PermissionCheckResult(
            decision=PermissionDecision.FORBIDDEN,
            action=action,
            role=role,
            reason=f"Role '{role.value}' may not {action.value}",
        )

    def require(self, actor: Actor, action: Action) -> None:
        """Raise Forbidden unless the actor's role grants ``action``."""
        result = self.check(actor.role, action)
        if not result.is_allowed:
            logger.warning(
                "Permission denied: user=%s role=%s action=%s",
                actor.user_id, actor.role.value, action.value,
            )
            raise Forbidden(result.reason)


# Global permission engine instance
permission_engine = PermissionEngine()
