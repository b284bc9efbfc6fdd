"""
Tests for System Signals and the notice exposure regulator.

Validates:
- Signal payloads as a tagged union
- Default notice templates
- Priority ordering and display limit
- Per-notice exposure window
- Pluggable category selection
"""

from __future__ import annotations

import uuid

import pytest

from mata_finance.domain.errors import NotFound, ValidationError
from mata_finance.domain.schema import (
    GlobalUrgencySignal,
    NoticeCategory,
    PressureMetricSignal,
    SignalType,
)
from mata_finance.notices.service import FixedCategoriesPolicy, NoticeService

from tests.support import Workspace


class TestSignals:
    def setup_method(self):
        self.ws = Workspace()
        self.signals = self.ws.signals

    def teardown_method(self):
        self.ws.close()

    def test_parse_dispatches_on_signal_type(self):
        signal = self.signals.parse({
            "signal_type": "PRESSURE_METRIC",
            "frequency_pattern": "spiky",
            "abuse_likelihood": 0.2,
            "stress_calibration": 1.1,
        })
        assert isinstance(signal, PressureMetricSignal)

    def test_unknown_signal_type_is_rejected(self):
        with pytest.raises(ValidationError):
            self.signals.parse({"signal_type": "MOOD", "value": 1})

    def test_payload_must_match_its_schema(self):
        with pytest.raises(ValidationError):
            self.signals.parse({"signal_type": "PRESSURE_METRIC", "abuse_likelihood": 3})

    def test_latest_signal_per_type(self):
        self.signals.record_signal({
            "signal_type": "GLOBAL_URGENCY", "active_emergencies": 1, "system_load": "low",
        })
        self.ws.clock.advance(minutes=1)
        self.signals.record_signal(GlobalUrgencySignal(active_emergencies=4, system_load="high"))

        latest = self.signals.latest_signal(SignalType.GLOBAL_URGENCY)
        assert latest.active_emergencies == 4
        assert self.signals.latest_signal(SignalType.PRESSURE_METRIC) is None


class TestNoticeExposure:
    def setup_method(self):
        self.ws = Workspace()
        self.notices = self.ws.notices
        self.user_id = self.ws.approver.user_id

    def teardown_method(self):
        self.ws.close()

    def test_top_notices_by_priority_then_title(self):
        titles = [n.title for n in self.notices.get_active_notices(self.user_id)]
        assert titles == ["Penanganan Permintaan Mendesak", "Pola Kecepatan Persetujuan"]

    def test_reading_does_not_record_exposure(self):
        self.notices.get_active_notices(self.user_id)
        assert self.notices.exposure_history(self.user_id) == []

    def test_shown_notices_are_held_back_for_the_window(self):
        first = [n.title for n in self.notices.show_notices(self.user_id)]
        second = [n.title for n in self.notices.show_notices(self.user_id)]
        third = [n.title for n in self.notices.show_notices(self.user_id)]

        assert first == ["Penanganan Permintaan Mendesak", "Pola Kecepatan Persetujuan"]
        assert second == ["Variansi Pola Keputusan", "Pola Klarifikasi Berulang"]
        assert third == ["Stabilitas Sistem"]
        assert self.notices.show_notices(self.user_id) == []
        assert len(self.notices.exposure_history(self.user_id)) == 5

    def test_notice_returns_after_the_window(self):
        self.notices.show_notices(self.user_id)
        self.ws.clock.advance(days=7)
        assert "Penanganan Permintaan Mendesak" not in [
            n.title for n in self.notices.get_active_notices(self.user_id)
        ]
        self.ws.clock.advance(minutes=1)
        assert [n.title for n in self.notices.get_active_notices(self.user_id)][0] == (
            "Penanganan Permintaan Mendesak"
        )

    def test_exposure_is_per_user(self):
        self.notices.show_notices(self.user_id)
        other = [n.title for n in self.notices.get_active_notices(self.ws.second_approver.user_id)]
        assert other == ["Penanganan Permintaan Mendesak", "Pola Kecepatan Persetujuan"]

    def test_exposure_context_is_recorded(self):
        self.notices.show_notices(self.user_id, context="dashboard")
        assert {e.context for e in self.notices.exposure_history(self.user_id)} == {"dashboard"}

    def test_policy_restricts_categories(self):
        notices = NoticeService(
            self.ws.database, clock=self.ws.clock,
            policy=FixedCategoriesPolicy({NoticeCategory.GENERAL}),
            exposure_window_days=7, display_limit=2,
        )
        assert [n.category for n in notices.get_active_notices(self.user_id)] == [
            NoticeCategory.GENERAL,
        ]

    def test_empty_policy_shows_nothing(self):
        notices = NoticeService(
            self.ws.database, clock=self.ws.clock, policy=FixedCategoriesPolicy(set()),
        )
        assert notices.get_active_notices(self.user_id) == []

    def test_zero_display_limit_shows_nothing(self):
        notices = NoticeService(self.ws.database, clock=self.ws.clock, display_limit=0)
        assert notices.show_notices(self.user_id) == []
        assert notices.exposure_history(self.user_id) == []

    def test_zero_exposure_window_never_holds_back(self):
        notices = NoticeService(
            self.ws.database, clock=self.ws.clock, exposure_window_days=0, display_limit=2,
        )
        first = notices.show_notices(self.user_id)
        self.ws.clock.advance(seconds=1)
        assert notices.show_notices(self.user_id) == first

    def test_unknown_notice_exposure_fails(self):
        with pytest.raises(NotFound):
            self.notices.record_exposure(self.user_id, uuid.uuid4())
