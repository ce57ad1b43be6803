"""Reporting seasons. A season runs from August 1 to July 31 of the next year."""

from __future__ import annotations

import datetime as dt
import re
from typing import List, Optional, Tuple

SEASON_START_MONTH = 8
_LABEL_PATTERN = re.compile(r"Saison (\d{4})-(\d{2})")


def season_start_year(day: dt.date) -> int:
    return day.year if day.month >= SEASON_START_MONTH else day.year - 1


def _label_for(start_year: int) -> str:
    return f"Saison {start_year}-{(start_year + 1) % 100:02d}"


def _range_for(start_year: int) -> Tuple[dt.date, dt.date]:
    return dt.date(start_year, SEASON_START_MONTH, 1), dt.date(start_year + 1, SEASON_START_MONTH - 1, 31)


def season_label(day: dt.date) -> str:
    return _label_for(season_start_year(day))


def season_dates(label: str, today: Optional[dt.date] = None) -> Tuple[dt.date, dt.date]:
    """Return the first and last day of ``label``.

    Labels that do not look like ``Saison 2025-26`` fall back to the season
    containing ``today``.
    """
    match = _LABEL_PATTERN.search(label or "")
    if not match:
        return _range_for(season_start_year(today or dt.date.today()))
    return _range_for(int(match.group(1)))


def available_seasons(today: Optional[dt.date] = None, start_year: int = 2020) -> List[str]:
    current = season_start_year(today or dt.date.today())
    return [_label_for(year) for year in range(current, start_year - 1, -1)]


def is_date_in_season(day: dt.date, label: str) -> bool:
    start, end = season_dates(label)
    return start <= day <= end
