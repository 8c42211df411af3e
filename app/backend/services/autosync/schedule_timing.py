"""Schedule timing helpers for auto-sync jobs.

A job schedule is an `(interval, on)` pair:

- `daily`   + `12am`              -> every day at 00:00 UTC
- `weekly`  + `Monday`..`Sunday`  -> that weekday at 00:00 UTC
- `monthly` + `1`..`28`           -> that day-of-month at 00:00 UTC

Days 29-31 are rejected because they do not exist in every month.

All timestamps returned by these helpers are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional, Tuple

from backend.services.autosync.errors import ValidationError


INTERVAL_DAILY = "daily"
INTERVAL_WEEKLY = "weekly"
INTERVAL_MONTHLY = "monthly"

DAILY_SENTINEL = "12am"
WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
MONTH_DAYS = tuple(str(day) for day in range(1, 29))

INTERVAL_VALUES: Dict[str, Tuple[str, ...]] = {
    INTERVAL_MONTHLY: MONTH_DAYS,
    INTERVAL_WEEKLY: WEEKDAYS,
    INTERVAL_DAILY: (DAILY_SENTINEL,),
}

# A monthly schedule on day 28 is the sparsest; two months always cover it.
_MAX_SCAN_DAYS = 62


def interval_table() -> Dict[str, List[str]]:
    """Return the enumerated valid `(interval, on)` map as plain lists."""

    return {interval: list(values) for interval, values in INTERVAL_VALUES.items()}


def validate_interval(interval: Optional[str], on: Optional[str]) -> Tuple[str, str]:
    """Validate a schedule pair against the interval table.

    Args:
        interval: One of daily, weekly, monthly.
        on: Value allowed for that interval.

    Returns:
        Tuple[str, str]: The validated (interval, on) pair.

    Raises:
        ValidationError: If the pair is not in the table.
    """

    allowed = INTERVAL_VALUES.get(str(interval or ""))
    if allowed is None:
        raise ValidationError(f"invalid interval: {interval!r}. Must be one of {', '.join(INTERVAL_VALUES)}")

    if str(on or "") not in allowed:
        raise ValidationError(f"invalid value {on!r} for interval {interval!r}")

    return str(interval), str(on)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def fires_on(interval: str, on: str, day: date) -> bool:
    """Return True when a schedule fires on the given calendar day."""

    if interval == INTERVAL_DAILY:
        return True
    if interval == INTERVAL_WEEKLY:
        return WEEKDAYS[day.weekday()] == on
    if interval == INTERVAL_MONTHLY:
        return day.day == int(on)
    return False


def _fire_points(interval: str, on: str, start_day: date) -> Iterator[datetime]:
    day = start_day
    for _ in range(_MAX_SCAN_DAYS):
        if fires_on(interval, on, day):
            yield datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
        day = day + timedelta(days=1)


def compute_initial_next_run_at(*, now: datetime, interval: str, on: str) -> datetime:
    """Compute `next_run_at` after activation or a schedule change.

    The first fire point at or after the start of the current UTC day is
    returned, so a job activated on a matching day runs the same day.

    Raises:
        ValidationError: If the schedule pair is invalid.
    """

    validate_interval(interval, on)
    today = _as_utc(now).date()
    return next(_fire_points(interval, on, today))


def compute_resumed_next_run_at(
    *,
    now: datetime,
    interval: str,
    on: str,
    last_run_at: Optional[datetime] = None,
) -> datetime:
    """Like `compute_initial_next_run_at`, skipping a fire point already served.

    When the job last ran at or after today's fire point, the next fire point
    after that run is returned instead, so re-activating a job or resending its
    schedule never makes it run twice on the same fire day.
    """

    candidate = compute_initial_next_run_at(now=now, interval=interval, on=on)
    if last_run_at is None or _as_utc(last_run_at) < candidate:
        return candidate
    return compute_next_run_at(reference=max(_as_utc(now), _as_utc(last_run_at)), interval=interval, on=on)


def compute_next_run_at(*, reference: datetime, interval: str, on: str) -> datetime:
    """Compute the next fire point strictly after a reference time.

    Args:
        reference: Usually the finish time of the previous run.
        interval: Schedule interval.
        on: Schedule value.

    Returns:
        datetime: Next run timestamp (UTC).

    Raises:
        ValidationError: If the schedule pair is invalid.
    """

    validate_interval(interval, on)
    reference = _as_utc(reference)
    for candidate in _fire_points(interval, on, reference.date()):
        if candidate > reference:
            return candidate

    raise ValidationError(f"no fire point found for {interval}/{on}")
