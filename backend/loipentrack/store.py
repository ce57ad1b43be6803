from __future__ import annotations

import datetime as dt
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import ConflictError, NotFoundError, StoreError
from .models import TimeEntry

logger = logging.getLogger(__name__)


class TimeEntryStore:
    """Insert and single-row update access to ``time_entries``.

    Every database failure is rolled back and raised as :class:`StoreError`
    so callers can keep their in-memory state and let the user retry.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, entry_id: str) -> Optional[TimeEntry]:
        try:
            return self.db.get(TimeEntry, entry_id)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Loading time entry %s failed: %s", entry_id, exc)
            raise StoreError("Time entry could not be loaded") from exc

    def find_running(self, user_id: str, day: dt.date) -> Optional[TimeEntry]:
        try:
            return (
                self.db.query(TimeEntry)
                .filter(
                    TimeEntry.user_id == user_id,
                    TimeEntry.date == day,
                    TimeEntry.stop_time.is_(None),
                )
                .order_by(TimeEntry.start_time.desc())
                .first()
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Looking up running entry for %s failed: %s", user_id, exc)
            raise StoreError("Running time entry could not be loaded") from exc

    def create(
        self,
        *,
        user_id: str,
        day: dt.date,
        activity_type: str,
        start_time: dt.time,
        stop_time: Optional[dt.time] = None,
        total_hours: Optional[float] = None,
    ) -> TimeEntry:
        if (stop_time is None) != (total_hours is None):
            raise ValueError("stop_time and total_hours must be set together")
        entry = TimeEntry(
            user_id=user_id,
            date=day,
            activity_type=activity_type,
            start_time=start_time,
            stop_time=stop_time,
            total_hours=total_hours,
            paused_seconds=0,
        )
        return self._write(entry, "A timer is already running for this user today")

    def complete(self, entry_id: str, stop_time: dt.time, total_hours: float) -> TimeEntry:
        entry = self._require(entry_id)
        entry.mark_completed(stop_time, total_hours)
        return self._write(entry, "Time entry is already completed")

    def checkpoint(
        self,
        entry_id: str,
        paused_seconds: int,
        pause_started_at: Optional[dt.datetime],
    ) -> TimeEntry:
        entry = self._require(entry_id)
        entry.mark_checkpoint(paused_seconds, pause_started_at)
        return self._write(entry, "Time entry is already completed")

    def _require(self, entry_id: str) -> TimeEntry:
        entry = self.get(entry_id)
        if entry is None:
            raise NotFoundError("Time entry not found")
        return entry

    def _write(self, entry: TimeEntry, conflict_detail: str) -> TimeEntry:
        user_id = entry.user_id
        try:
            self.db.add(entry)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            logger.warning("Time entry write rejected for %s: %s", user_id, exc.orig)
            raise ConflictError(conflict_detail) from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Time entry write failed for %s: %s", user_id, exc)
            raise StoreError("Time entry could not be saved") from exc
        self.db.refresh(entry)
        return entry
