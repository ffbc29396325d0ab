"""
Tests for the suppression policy.

Order of checks: cooldown → max fires → quiet hours → business days.
"""
from datetime import datetime, timedelta

import pytest

from fieldflow.services.automation.suppression import (
    FiringHistory, check_suppression, in_quiet_hours, needs_history,
)


# Wednesday 15:00 UTC
NOW = datetime(2024, 1, 10, 15, 0)
# Saturday 12:00 UTC
SATURDAY = datetime(2024, 1, 13, 12, 0)


class TestCooldown:

    def test_within_cooldown_suppressed(self):
        history = FiringHistory(last_fired_at=NOW - timedelta(minutes=10), fire_count=1)

        reason = check_suppression({"cooldown_minutes": 60}, NOW, history)

        assert reason == f"Cooldown: last fired {(NOW - timedelta(minutes=10)).isoformat()}, cooldown 60m"

    def test_after_cooldown_allowed(self):
        history = FiringHistory(last_fired_at=NOW - timedelta(minutes=61), fire_count=1)
        assert check_suppression({"cooldown_minutes": 60}, NOW, history) is None

    def test_never_fired_allowed(self):
        assert check_suppression({"cooldown_minutes": 60}, NOW, FiringHistory()) is None

    def test_zero_cooldown_disabled(self):
        history = FiringHistory(last_fired_at=NOW, fire_count=1)
        assert check_suppression({"cooldown_minutes": 0}, NOW, history) is None


class TestMaxFires:

    def test_limit_reached(self):
        reason = check_suppression({"max_fires_per_entity": 2}, NOW, FiringHistory(NOW - timedelta(days=1), 2))
        assert reason == "Max fires reached: 2/2"

    def test_below_limit(self):
        assert check_suppression({"max_fires_per_entity": 2}, NOW, FiringHistory(NOW, 1)) is None

    def test_cooldown_checked_first(self):
        history = FiringHistory(last_fired_at=NOW - timedelta(minutes=1), fire_count=5)
        reason = check_suppression({"cooldown_minutes": 30, "max_fires_per_entity": 1}, NOW, history)
        assert reason.startswith("Cooldown:")


class TestQuietHours:

    def test_inside_window(self):
        reason = check_suppression({"quiet_hours_start": "14:00", "quiet_hours_end": "16:00"}, NOW)
        assert reason == "Quiet hours: 14:00 - 16:00"

    def test_outside_window(self):
        assert check_suppression({"quiet_hours_start": "18:00", "quiet_hours_end": "20:00"}, NOW) is None

    def test_window_wrapping_midnight(self):
        assert in_quiet_hours("23:30", "22:00", "06:00") is True
        assert in_quiet_hours("02:00", "22:00", "06:00") is True
        assert in_quiet_hours("05:59", "22:00", "06:00") is True
        assert in_quiet_hours("12:00", "22:00", "06:00") is False

    @pytest.mark.parametrize("hour, minute, suppressed", [
        (23, 30, True),
        (2, 0, True),
        (12, 0, False),
    ])
    def test_overnight_window_through_check_suppression(self, hour, minute, suppressed):
        now = datetime(2024, 1, 10, hour, minute)
        constraints = {"quiet_hours_start": "22:00", "quiet_hours_end": "06:00"}

        reason = check_suppression(constraints, now)

        assert (reason == "Quiet hours: 22:00 - 06:00") is suppressed
        assert (reason is None) is not suppressed

    def test_bounds_inclusive(self):
        assert in_quiet_hours("14:00", "14:00", "16:00") is True
        assert in_quiet_hours("16:00", "14:00", "16:00") is True

    def test_rule_timezone_used(self):
        # 15:00 UTC is 09:00 in Chicago (CST)
        constraints = {"quiet_hours_start": "08:00", "quiet_hours_end": "10:00", "timezone": "America/Chicago"}
        assert check_suppression(constraints, NOW) == "Quiet hours: 08:00 - 10:00"

    def test_default_timezone_used_when_rule_has_none(self):
        constraints = {"quiet_hours_start": "08:00", "quiet_hours_end": "10:00"}
        assert check_suppression(constraints, NOW) is None
        assert check_suppression(constraints, NOW, default_timezone="America/Chicago") is not None

    def test_quiet_hours_before_business_days(self):
        constraints = {"quiet_hours_start": "11:00", "quiet_hours_end": "13:00", "business_days_only": True}
        assert check_suppression(constraints, SATURDAY).startswith("Quiet hours")


class TestBusinessDays:

    def test_weekend_suppressed(self):
        reason = check_suppression({"business_days_only": True}, SATURDAY)
        assert reason == "Business days only: current day is a weekend"

    def test_weekday_allowed(self):
        assert check_suppression({"business_days_only": True}, NOW) is None

    def test_local_day_decides(self):
        # Monday 03:00 UTC is still Sunday evening in Los Angeles
        monday_early = datetime(2024, 1, 15, 3, 0)
        constraints = {"business_days_only": True, "timezone": "America/Los_Angeles"}
        assert check_suppression(constraints, monday_early) is not None
        assert check_suppression({"business_days_only": True}, monday_early) is None


class TestNoConstraints:

    def test_none_and_empty(self):
        assert check_suppression(None, NOW) is None
        assert check_suppression({}, NOW) is None

    def test_needs_history(self):
        assert needs_history(None) is False
        assert needs_history({"business_days_only": True}) is False
        assert needs_history({"cooldown_minutes": 5}) is True
        assert needs_history({"max_fires_per_entity": 3}) is True
