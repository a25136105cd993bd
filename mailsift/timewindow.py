"""Collection time windows and run identifiers.

Modes:
- `schedule`: previous day 10:01 to today 10:00, local time.
- `today`: local midnight to now.
- `last-24h`: the 24 hours before now.
- `custom`: the `schedule` window ending on the given date (`YYYY-MM-DD`).

Unknown modes fall back to `schedule` with a warning.
"""

from __future__ import annotations

from datetime import date as date_type, datetime, time, timedelta, timezone

from .models.datatypes import TimeWindow
from .telemetry.logger import log_event

SUPPORTED_MODES = ("schedule", "today", "last-24h", "custom")
DEFAULT_UTC_OFFSET_HOURS = 9

_SCHEDULE_START = time(10, 1)
_SCHEDULE_END = time(10, 0)


def _schedule_window(day: date_type, tz: timezone) -> TimeWindow:
    return TimeWindow(
        start=datetime.combine(day - timedelta(days=1), _SCHEDULE_START, tzinfo=tz),
        end=datetime.combine(day, _SCHEDULE_END, tzinfo=tz),
    )


def calculate_time_window(
    mode: str,
    date: str | None = None,
    *,
    now: datetime | None = None,
    utc_offset_hours: int = DEFAULT_UTC_OFFSET_HOURS,
) -> TimeWindow:
    """Return the collection window for `mode`.

    Raises:
        ValueError: For `custom` without a valid `YYYY-MM-DD` date.
    """

    tz = timezone(timedelta(hours=utc_offset_hours))
    current = (now or datetime.now(timezone.utc)).astimezone(tz)

    if mode == "custom":
        if not date:
            raise ValueError("Mode `custom` requires `--date YYYY-MM-DD`.")
        try:
            target = date_type.fromisoformat(date.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid date `{date}`; expected YYYY-MM-DD.") from exc
        return _schedule_window(target, tz)
    if mode == "today":
        return TimeWindow(start=datetime.combine(current.date(), time(0, 0), tzinfo=tz), end=current)
    if mode == "last-24h":
        return TimeWindow(start=current - timedelta(hours=24), end=current)
    if mode != "schedule":
        log_event("WARNING", "timewindow", "unknown-mode", mode=mode, fallback="schedule")
    return _schedule_window(current.date(), tz)


def generate_run_id(
    now: datetime | None = None, *, utc_offset_hours: int = DEFAULT_UTC_OFFSET_HOURS
) -> str:
    """Return the `YYYYMMDD` run id; runs started on the same local day share it."""

    tz = timezone(timedelta(hours=utc_offset_hours))
    return (now or datetime.now(timezone.utc)).astimezone(tz).strftime("%Y%m%d")
