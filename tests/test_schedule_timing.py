from datetime import datetime, timezone

import pytest

from backend.services.autosync.errors import ValidationError
from backend.services.autosync.schedule_timing import (
    compute_initial_next_run_at,
    compute_next_run_at,
    compute_resumed_next_run_at,
    interval_table,
    validate_interval,
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_interval_table_lists_every_allowed_anchor():
    table = interval_table()

    assert table["daily"] == ["12am"]
    assert table["weekly"][0] == "Monday" and table["weekly"][-1] == "Sunday"
    assert table["monthly"] == [str(day) for day in range(1, 29)]


@pytest.mark.parametrize(
    "interval,on",
    [("daily", "12am"), ("weekly", "Friday"), ("monthly", "1"), ("monthly", "28")],
)
def test_validate_interval_accepts_table_members(interval, on):
    assert validate_interval(interval, on) == (interval, on)


@pytest.mark.parametrize(
    "interval,on",
    [
        ("monthly", "29"),
        ("monthly", "30"),
        ("monthly", "31"),
        ("monthly", "0"),
        ("weekly", "friday"),
        ("daily", "1am"),
        ("hourly", "12am"),
        (None, None),
    ],
)
def test_validate_interval_rejects_everything_else(interval, on):
    with pytest.raises(ValidationError):
        validate_interval(interval, on)


def test_initial_run_is_today_when_the_anchor_matches():
    # 2026-10-16 is a Friday.
    now = utc(2026, 10, 16, 15, 30)

    assert compute_initial_next_run_at(now=now, interval="weekly", on="Friday") == utc(2026, 10, 16)
    assert compute_initial_next_run_at(now=now, interval="daily", on="12am") == utc(2026, 10, 16)


def test_initial_run_moves_to_the_next_matching_day():
    now = utc(2026, 10, 17, 9, 0)

    assert compute_initial_next_run_at(now=now, interval="weekly", on="Friday") == utc(2026, 10, 23)
    assert compute_initial_next_run_at(now=now, interval="monthly", on="5") == utc(2026, 11, 5)


def test_next_run_is_strictly_after_the_reference():
    finished = utc(2026, 10, 16, 0, 5)

    assert compute_next_run_at(reference=finished, interval="weekly", on="Friday") == utc(2026, 10, 23)
    assert compute_next_run_at(reference=finished, interval="daily", on="12am") == utc(2026, 10, 17)
    assert compute_next_run_at(reference=utc(2026, 12, 28), interval="monthly", on="28") == utc(2027, 1, 28)


def test_naive_reference_is_treated_as_utc():
    assert compute_next_run_at(reference=datetime(2026, 2, 27, 12), interval="monthly", on="28") == utc(2026, 2, 28)


def test_resumed_schedule_skips_a_fire_point_already_served():
    now = utc(2026, 10, 18, 9, 30)

    assert compute_resumed_next_run_at(
        now=now, interval="daily", on="12am", last_run_at=utc(2026, 10, 18, 0, 0, 5)
    ) == utc(2026, 10, 19)


def test_resumed_schedule_keeps_todays_fire_point_when_not_yet_run():
    now = utc(2026, 10, 18, 9, 30)

    assert compute_resumed_next_run_at(now=now, interval="daily", on="12am") == utc(2026, 10, 18)
    assert compute_resumed_next_run_at(
        now=now, interval="daily", on="12am", last_run_at=utc(2026, 10, 17, 0, 0, 5)
    ) == utc(2026, 10, 18)


def test_resumed_schedule_accepts_naive_last_run():
    # SQLite hands back naive datetimes.
    assert compute_resumed_next_run_at(
        now=utc(2026, 10, 16, 8),
        interval="weekly",
        on="Friday",
        last_run_at=datetime(2026, 10, 16, 0, 1),
    ) == utc(2026, 10, 23)
