from __future__ import annotations

import calendar
import datetime as dt
from decimal import ROUND_HALF_UP, Decimal
from typing import Tuple, Union

_HUNDREDTH = Decimal("0.01")


def hours_from_seconds(seconds: Union[int, float, Decimal]) -> float:
    """Convert seconds to hours rounded half-up to two decimals.

    This is the only rounding rule used for ``total_hours``; aggregates sum the
    stored values and never recompute them from start and stop times.
    """
    hours = Decimal(str(seconds)) / Decimal(3600)
    return float(hours.quantize(_HUNDREDTH, rounding=ROUND_HALF_UP))


def hours_from_delta(delta: dt.timedelta) -> float:
    return hours_from_seconds(max(delta.total_seconds(), 0))


def round_hours(value: Union[int, float]) -> float:
    return float(Decimal(str(value)).quantize(_HUNDREDTH, rounding=ROUND_HALF_UP))


def format_duration(seconds: int) -> str:
    seconds = max(int(seconds), 0)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_hours(value: Union[int, float, None], digits: int = 2) -> str:
    if value is None:
        return ""
    return f"{value:.{digits}f}"


def week_bounds(day: dt.date) -> Tuple[dt.date, dt.date]:
    start = day - dt.timedelta(days=day.weekday())
    return start, start + dt.timedelta(days=6)


def month_bounds(day: dt.date) -> Tuple[dt.date, dt.date]:
    last = calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=1), day.replace(day=last)
