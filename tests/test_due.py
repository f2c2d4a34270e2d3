"""
Tests for due-schedule evaluation and stale-run cleanup.
"""

import pytest
from datetime import datetime, timedelta, timezone


# 2026-01-05 is a Monday; New York is on EST (UTC-5) in January
MONDAY_0901_NEW_YORK = datetime(2026, 1, 5, 14, 1, tzinfo=timezone.utc)


def _schedule(**fields):
    from scanengine.archivist.models import Schedule

    fields.setdefault("id", "sched-1")
    fields.setdefault("owner_id", "user-1")
    fields.setdefault("time_of_day", "09:00")
    fields.setdefault("timezone", "America/New_York")
    return Schedule(**fields)


class TestIsScheduleDue:
    """Tests for is_schedule_due."""

    def test_due_within_tolerance_in_schedule_timezone(self):
        from scanengine.scheduler.due import is_schedule_due

        assert is_schedule_due(_schedule(), MONDAY_0901_NEW_YORK, tolerance_minutes=2) is True

    def test_not_due_before_time_of_day(self):
        from scanengine.scheduler.due import is_schedule_due

        now = MONDAY_0901_NEW_YORK - timedelta(minutes=2)  # 08:59 local
        assert is_schedule_due(_schedule(), now, tolerance_minutes=2) is False

    def test_not_due_past_tolerance(self):
        from scanengine.scheduler.due import is_schedule_due

        now = MONDAY_0901_NEW_YORK + timedelta(minutes=2)  # 09:03 local
        assert is_schedule_due(_schedule(), now, tolerance_minutes=2) is False

    def test_day_filter_uses_sunday_zero(self):
        from scanengine.scheduler.due import is_schedule_due

        assert is_schedule_due(_schedule(days=[1]), MONDAY_0901_NEW_YORK, tolerance_minutes=2) is True
        assert is_schedule_due(_schedule(days=[0, 6]), MONDAY_0901_NEW_YORK, tolerance_minutes=2) is False

    def test_empty_days_means_every_day(self):
        from scanengine.scheduler.due import is_schedule_due

        assert is_schedule_due(_schedule(days=[]), MONDAY_0901_NEW_YORK, tolerance_minutes=2) is True

    def test_midnight_wraparound(self):
        from scanengine.scheduler.due import is_schedule_due

        schedule = _schedule(time_of_day="23:59", timezone="UTC")
        now = datetime(2026, 1, 6, 0, 0, tzinfo=timezone.utc)
        assert is_schedule_due(schedule, now, tolerance_minutes=2) is True

    def test_cooldown_blocks_recent_run(self):
        from scanengine.scheduler.due import is_schedule_due

        recent = _schedule(last_run_at=MONDAY_0901_NEW_YORK - timedelta(minutes=10))
        old = _schedule(last_run_at=MONDAY_0901_NEW_YORK - timedelta(minutes=60))

        assert is_schedule_due(recent, MONDAY_0901_NEW_YORK, tolerance_minutes=2, cooldown_minutes=55) is False
        assert is_schedule_due(old, MONDAY_0901_NEW_YORK, tolerance_minutes=2, cooldown_minutes=55) is True

    def test_naive_last_run_is_treated_as_utc(self):
        from scanengine.scheduler.due import is_schedule_due

        naive = (MONDAY_0901_NEW_YORK - timedelta(minutes=5)).replace(tzinfo=None)
        schedule = _schedule(last_run_at=naive)
        assert is_schedule_due(schedule, MONDAY_0901_NEW_YORK, tolerance_minutes=2, cooldown_minutes=55) is False

    def test_invalid_timezone_falls_back_to_utc(self):
        from scanengine.scheduler.due import is_schedule_due

        schedule = _schedule(timezone="Not/AZone")
        now = datetime(2026, 1, 5, 9, 1, tzinfo=timezone.utc)
        assert is_schedule_due(schedule, now, tolerance_minutes=2) is True

    def test_missing_fields_never_due(self):
        from scanengine.scheduler.due import is_schedule_due

        assert is_schedule_due(_schedule(owner_id=""), MONDAY_0901_NEW_YORK) is False
        assert is_schedule_due(_schedule(time_of_day="9am"), MONDAY_0901_NEW_YORK) is False


class TestParseTimeOfDay:

    def test_parses_and_clamps(self):
        from scanengine.scheduler.due import parse_time_of_day

        assert parse_time_of_day("09:30") == 570
        assert parse_time_of_day("7:05") == 425
        assert parse_time_of_day("25:99") == 23 * 60 + 59
        assert parse_time_of_day("") is None
        assert parse_time_of_day("noon") is None


class TestStaleRunReset:
    """Tests for reset_stale_running_schedules."""

    @pytest.mark.asyncio
    async def test_resets_only_old_running_schedules(self, engine, add_schedule):
        from scanengine.scheduler.stuck_monitor import STALE_RUN_MESSAGE, reset_stale_running_schedules

        now = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
        stuck = add_schedule(last_run_status="running", last_run_at=now - timedelta(minutes=20))
        fresh = add_schedule(last_run_status="running", last_run_at=now - timedelta(minutes=2))
        done = add_schedule(last_run_status="success", last_run_at=now - timedelta(minutes=30))

        reset = await reset_stale_running_schedules(engine.schedules, now=now, threshold_minutes=10)

        assert reset == [stuck.id]
        assert stuck.last_run_status == "error"
        assert stuck.last_run_message == STALE_RUN_MESSAGE
        assert fresh.last_run_status == "running"
        assert done.last_run_status == "success"
