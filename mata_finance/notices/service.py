"""
System Signals and System Notices.

Signals are append-only metric snapshots written out of band (a posture
calibration job, an operator script). Their payloads are a tagged union
validated on the way in; nothing here returns them to approvers.

Notices are templates shown to approvers. Which categories apply to a
given user is decided by a ``NoticeSelectionPolicy``, an external
collaborator; the default admits every category. On top of the policy
the exposure regulator enforces the rate limit: a user is not shown the
same notice again within ``exposure_window_days``, and at most
``display_limit`` notices are returned per call. Every display is
recorded in ``user_notice_exposures``, which is the audit trail for the
regulation.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select

from mata_finance.config import settings
from mata_finance.domain.clock import Clock, utc_now
from mata_finance.domain.errors import NotFound, ValidationError
from mata_finance.domain.schema import (
    NoticeCategory,
    NoticeView,
    SignalType,
    SystemSignalPayload,
    signal_payload_adapter,
)
from mata_finance.store.database import Database
from mata_finance.store.models import SystemNoticeDB, SystemSignalDB, UserNoticeExposureDB

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════
# Signals
# ════════════════════════════════════════════════════════════════


class SignalService:
    """Append-only store of System Signals."""

    def __init__(self, database: Database, clock: Clock = utc_now) -> None:
        self.database = database
        self.clock = clock

    @staticmethod
    def parse(payload: dict[str, Any]) -> SystemSignalPayload:
        """Validate a raw payload against its ``signal_type`` schema."""
        try:
            return signal_payload_adapter.validate_python(payload)
        except PydanticValidationError as exc:
            raise ValidationError(f"Malformed system signal: {exc.errors()}") from exc

    def record_signal(self, payload: SystemSignalPayload | dict[str, Any]) -> UUID:
        signal = payload if not isinstance(payload, dict) else self.parse(payload)
        with self.database.session() as session:
            row = SystemSignalDB(
                signal_type=signal.signal_type,
                signal_data=signal.model_dump(mode="json", exclude={"signal_type"}),
                created_at=self.clock(),
            )
            session.add(row)
            session.flush()
            logger.info("System signal recorded: type=%s", signal.signal_type)
            return row.id

    def latest_signal(self, signal_type: SignalType) -> SystemSignalPayload | None:
        with self.database.session() as session:
            row = session.execute(
                select(SystemSignalDB)
                .where(SystemSignalDB.signal_type == signal_type.value)
                .order_by(SystemSignalDB.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            if row is None:
                return None
            return self.parse({"signal_type": row.signal_type, **row.signal_data})


# ════════════════════════════════════════════════════════════════
# Notice Selection
# ════════════════════════════════════════════════════════════════


class NoticeSelectionPolicy(ABC):
    """Decides which notice categories currently apply to a user."""

    @abstractmethod
    def categories_for(self, user_id: UUID) -> set[NoticeCategory]:
        ...


class AllCategoriesPolicy(NoticeSelectionPolicy):
    def categories_for(self, user_id: UUID) -> set[NoticeCategory]:
        return set(NoticeCategory)


class FixedCategoriesPolicy(NoticeSelectionPolicy):
    """Same categories for everyone; handy for operators and tests."""

    def __init__(self, categories: set[NoticeCategory]) -> None:
        self.categories = set(categories)

    def categories_for(self, user_id: UUID) -> set[NoticeCategory]:
        return set(self.categories)


# ════════════════════════════════════════════════════════════════
# Notices and Exposure
# ════════════════════════════════════════════════════════════════


class NoticeService:
    def __init__(
        self,
        database: Database,
        clock: Clock = utc_now,
        policy: NoticeSelectionPolicy | None = None,
        exposure_window_days: int | None = None,
        display_limit: int | None = None,
    ) -> None:
        self.database = database
        self.clock = clock
        self.policy = policy or AllCategoriesPolicy()
        self.exposure_window_days = (
            settings.notice_exposure_window_days if exposure_window_days is None
            else exposure_window_days
        )
        self.display_limit = (
            settings.notice_display_limit if display_limit is None else display_limit
        )

    def get_active_notices(self, user_id: UUID) -> list[NoticeView]:
        """Notices the policy admits and the user has not seen within the window."""
        categories = {category.value for category in self.policy.categories_for(user_id)}
        if not categories:
            return []
        window_start = self.clock() - timedelta(days=self.exposure_window_days)

        with self.database.session() as session:
            recently_seen = (
                select(UserNoticeExposureDB.notice_id)
                .where(
                    UserNoticeExposureDB.user_id == user_id,
                    UserNoticeExposureDB.exposed_at >= window_start,
                )
            )
            rows = session.execute(
                select(SystemNoticeDB)
                .where(
                    SystemNoticeDB.is_active.is_(True),
                    SystemNoticeDB.category.in_(sorted(categories)),
                    SystemNoticeDB.id.not_in(recently_seen),
                )
                .order_by(SystemNoticeDB.priority.desc(), SystemNoticeDB.title.asc())
                .limit(self.display_limit)
            ).scalars().all()
            return [NoticeView.model_validate(row) for row in rows]

    def record_exposure(self, user_id: UUID, notice_id: UUID, context: str | None = None) -> UUID:
        with self.database.session() as session:
            if session.get(SystemNoticeDB, notice_id) is None:
                raise NotFound(f"Notice {notice_id} not found")
            exposure = UserNoticeExposureDB(
                user_id=user_id,
                notice_id=notice_id,
                exposed_at=self.clock(),
                context=context,
            )
            session.add(exposure)
            session.flush()
            logger.info(
                "Notice exposure recorded: user=%s notice=%s context=%s",
                user_id, notice_id, context,
            )
            return exposure.id

    def show_notices(self, user_id: UUID, context: str = "notices_view") -> list[NoticeView]:
        """Fetch the active notices and record an exposure for each."""
        notices = self.get_active_notices(user_id)
        for notice in notices:
            self.record_exposure(user_id, notice.id, context)
        return notices

    def exposure_history(self, user_id: UUID, limit: int = 50) -> list[UserNoticeExposureDB]:
        with self.database.session() as session:
            return list(
                session.execute(
                    select(UserNoticeExposureDB)
                    .where(UserNoticeExposureDB.user_id == user_id)
                    .order_by(UserNoticeExposureDB.exposed_at.desc())
                    .limit(limit)
                ).scalars().all()
            )
