from __future__ import annotations

import datetime as dt
import logging
from typing import Any

from .durations import hours_from_delta
from .errors import ValidationError
from .models import TimeEntry, parse_activity_type
from .store import TimeEntryStore

logger = logging.getLogger(__name__)


def _to_minute(value: dt.time) -> dt.time:
    return value.replace(second=0, microsecond=0)


def manual_entry_hours(day: dt.date, start_time: dt.time, end_time: dt.time) -> float:
    """Return rounded hours between two times of ``day`` or reject the range."""
    start = dt.datetime.combine(day, _to_minute(start_time))
    end = dt.datetime.combine(day, _to_minute(end_time))
    if end <= start:
        raise ValidationError("end time must be after start time")
    return hours_from_delta(end - start)


def save_manual_entry(
    store: TimeEntryStore,
    user_id: str,
    day: dt.date,
    activity_type: Any,
    start_time: dt.time,
    end_time: dt.time,
) -> TimeEntry:
    activity = parse_activity_type(activity_type)
    total_hours = manual_entry_hours(day, start_time, end_time)
    entry = store.create(
        user_id=user_id,
        day=day,
        activity_type=activity.value,
        start_time=_to_minute(start_time),
        stop_time=_to_minute(end_time),
        total_hours=total_hours,
    )
    logger.info("Manual entry saved for %s on %s: %.2f h", user_id, day.isoformat(), total_hours)
    return entry
