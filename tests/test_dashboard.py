"""Tests for the admin summary and approver stats."""

from __future__ import annotations

import pytest

from mata_finance.domain.errors import Forbidden
from mata_finance.domain.schema import DecisionOutcome
from mata_finance.workflow.dashboard import start_of_day

from tests.support import BASE_TIME, Workspace

REASON = "mohon lengkapi lampiran"


class TestAdminSummary:
    def setup_method(self):
        self.ws = Workspace()
        self.dashboard = self.ws.dashboard

    def teardown_method(self):
        self.ws.close()

    def test_empty_summary(self):
        summary = self.dashboard.admin_summary(self.ws.admin)
        assert summary.date == "2026-01-05"
        assert summary.today_count == 0
        assert summary.status_breakdown == {}
        assert summary.recent == []

    def test_counts_own_latest_transactions(self):
        expired = self.ws.draft()
        self.ws.clock.advance(hours=25)
        self.ws.draft()
        self.ws.submitted()
        returned = self.ws.submitted()
        self.ws.transactions.decide(self.ws.approver, returned.id, DecisionOutcome.RETURN, REASON)
        self.ws.draft(admin=self.ws.other_admin)

        summary = self.dashboard.admin_summary(self.ws.admin)
        assert summary.date == "2026-01-06"
        assert summary.today_count == 3
        assert summary.active_drafts == 1
        assert summary.pending == 1
        assert summary.revisions == 1
        assert summary.status_breakdown == {
            "in_progress": 2,
            "submitted": 1,
            "returned_for_revision": 1,
        }
        assert len(summary.recent) == 4
        assert summary.recent[-1].code == expired.code

    def test_recent_is_capped_at_five(self):
        for _ in range(7):
            self.ws.draft()
            self.ws.clock.advance(minutes=1)
        assert len(self.dashboard.admin_summary(self.ws.admin).recent) == 5

    def test_activity_since_start_of_day(self):
        self.ws.draft()
        self.ws.clock.advance(days=1)
        self.ws.submitted()

        activity = self.dashboard.admin_summary(self.ws.admin).activity_today
        assert activity == {
            "CREATE_TRANSACTION": 1,
            "ATTACH_DOCUMENT": 1,
            "SUBMIT_TRANSACTION": 1,
        }

    def test_approvers_are_refused(self):
        with pytest.raises(Forbidden):
            self.dashboard.admin_summary(self.ws.approver)


class TestApproverStats:
    def setup_method(self):
        self.ws = Workspace()
        self.dashboard = self.ws.dashboard

    def teardown_method(self):
        self.ws.close()

    def _decide(self, approver, outcome, reason=None):
        view = self.ws.submitted()
        self.ws.transactions.decide(approver, view.id, outcome, reason)

    def test_counts_own_decisions(self):
        self._decide(self.ws.approver, DecisionOutcome.APPROVE)
        self._decide(self.ws.approver, DecisionOutcome.REJECT, REASON)
        self._decide(self.ws.approver, DecisionOutcome.RETURN, REASON)
        self._decide(self.ws.second_approver, DecisionOutcome.APPROVE)
        self.ws.submitted()

        stats = self.dashboard.approver_stats(self.ws.approver)
        assert stats.approved_today == 1
        assert stats.rejected_today == 1
        assert stats.processed_today == 2
        assert stats.processed_this_week == 2
        assert stats.new_in_last_day == 1
        assert stats.pending_count == 1

    def test_windows_roll_forward(self):
        self._decide(self.ws.approver, DecisionOutcome.APPROVE)
        self.ws.submitted()
        self.ws.clock.advance(days=1)

        stats = self.dashboard.approver_stats(self.ws.approver)
        assert stats.processed_today == 0
        assert stats.processed_this_week == 1
        assert stats.new_in_last_day == 0
        assert stats.pending_count == 1

        self.ws.clock.advance(days=7)
        assert self.dashboard.approver_stats(self.ws.approver).processed_this_week == 0

    def test_pending_count_is_exact(self):
        for _ in range(20):
            self.ws.submitted()
        for _ in range(5):
            assert self.dashboard.approver_stats(self.ws.approver).pending_count == 20

    def test_admins_are_refused(self):
        with pytest.raises(Forbidden):
            self.dashboard.approver_stats(self.ws.admin)


def test_start_of_day_is_utc_midnight():
    assert start_of_day(BASE_TIME).isoformat() == "2026-01-05T00:00:00+00:00"
