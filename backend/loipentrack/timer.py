from __future__ import annotations

import datetime as dt
import enum
import logging
from contextlib import contextmanager
from threading import Lock, RLock
from typing import Any, Dict, Iterator, Optional

from .durations import format_duration, hours_from_delta
from .errors import ConflictError, NotFoundError
from .models import ActivityType, TimeEntry, parse_activity_type
from .store import TimeEntryStore

logger = logging.getLogger(__name__)

_ZERO = dt.timedelta(0)


class TimerState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


class TimerSession:
    """Start/pause/resume/stop lifecycle of one user's work timer.

    All times are naive local wall-clock datetimes passed in by the caller.
    Elapsed time is always derived by subtracting timestamps, never by
    counting ticks. Only ``start`` and ``stop`` write to the store unless
    ``checkpoint_pauses`` is enabled, in which case pause and resume also
    persist the paused bookkeeping so :meth:`restore` can rebuild it.

    A failed store write leaves the session exactly as it was before the
    call, so the same action can be retried.
    """

    def __init__(self, user_id: str, store: TimeEntryStore, *, checkpoint_pauses: bool = False):
        self.user_id = user_id
        self.store = store
        self.checkpoint_pauses = checkpoint_pauses
        self.restored = False
        self._clear()

    def _clear(self) -> None:
        self.state = TimerState.IDLE
        self.entry_id: Optional[str] = None
        self.entry_date: Optional[dt.date] = None
        self.activity_type: Optional[ActivityType] = None
        self.started_at: Optional[dt.datetime] = None
        self.paused_total = _ZERO
        self.pause_started_at: Optional[dt.datetime] = None

    def _load(self, entry: TimeEntry) -> None:
        self.entry_id = entry.id
        self.entry_date = entry.date
        self.activity_type = parse_activity_type(entry.activity_type)
        self.started_at = entry.started_at
        self.paused_total = dt.timedelta(seconds=entry.paused_seconds or 0)
        self.pause_started_at = entry.pause_started_at
        self.state = TimerState.PAUSED if entry.pause_started_at else TimerState.RUNNING

    def _require(self, *states: TimerState) -> None:
        if self.state in states:
            return
        if self.state is TimerState.IDLE:
            raise ConflictError("No timer is running")
        if self.state is TimerState.PAUSED:
            raise ConflictError("Timer is paused")
        raise ConflictError("Timer is already running")

    @property
    def is_active(self) -> bool:
        return self.state is not TimerState.IDLE

    def restore(self, now: dt.datetime) -> Optional[TimeEntry]:
        """Adopt today's running entry from the store, if there is one."""
        if self.is_active:
            self.restored = True
            return None
        entry = self.store.find_running(self.user_id, now.date())
        self.restored = True
        if entry is None:
            return None
        self._load(entry)
        logger.info("Restored %s timer for %s (entry %s)", self.state.value, self.user_id, entry.id)
        return entry

    def start(self, activity_type: Any, now: dt.datetime) -> TimeEntry:
        if self.is_active:
            raise ConflictError("A timer is already running")
        activity = parse_activity_type(activity_type)
        running = self.store.find_running(self.user_id, now.date())
        if running is not None:
            # Started elsewhere; adopt it so it can be paused or stopped here
            self._clear()
            self._load(running)
            self.restored = True
            raise ConflictError("A timer is already running for this user today")
        started = now.replace(microsecond=0)
        entry = self.store.create(
            user_id=self.user_id,
            day=started.date(),
            activity_type=activity.value,
            start_time=started.time(),
        )
        self._clear()
        self._load(entry)
        logger.info("Timer started for %s: %s at %s", self.user_id, activity.value, started.isoformat())
        return entry

    def pause(self, now: dt.datetime) -> None:
        self._require(TimerState.RUNNING)
        if self.checkpoint_pauses:
            self._checkpoint(self.paused_total, now)
        self.pause_started_at = now
        self.state = TimerState.PAUSED
        logger.info("Timer paused for %s", self.user_id)

    def resume(self, now: dt.datetime) -> None:
        self._require(TimerState.PAUSED)
        paused_total = self.paused_total + max(now - self.pause_started_at, _ZERO)
        if self.checkpoint_pauses:
            self._checkpoint(paused_total, None)
        self.paused_total = paused_total
        self.pause_started_at = None
        self.state = TimerState.RUNNING
        logger.info("Timer resumed for %s", self.user_id)

    def stop(self, now: dt.datetime) -> TimeEntry:
        self._require(TimerState.RUNNING, TimerState.PAUSED)
        total_hours = hours_from_delta(self.elapsed(now))
        try:
            entry = self.store.complete(self.entry_id, now.time().replace(microsecond=0), total_hours)
        except (NotFoundError, ConflictError):
            # Entry vanished or was completed elsewhere; nothing left to reconcile
            logger.warning("Active entry %s for %s can no longer be stopped", self.entry_id, self.user_id)
            self._clear()
            raise
        self._clear()
        logger.info("Timer stopped for %s: %.2f h", self.user_id, total_hours)
        return entry

    def elapsed(self, now: dt.datetime) -> dt.timedelta:
        if not self.is_active:
            return _ZERO
        elapsed = now - self.started_at - self.paused_total
        if self.state is TimerState.PAUSED:
            elapsed -= now - self.pause_started_at
        return max(elapsed, _ZERO)

    def elapsed_seconds(self, now: dt.datetime) -> int:
        return int(self.elapsed(now).total_seconds())

    def snapshot(self, now: dt.datetime) -> Dict[str, Any]:
        seconds = self.elapsed_seconds(now)
        return {
            "user_id": self.user_id,
            "state": self.state.value,
            "entry_id": self.entry_id,
            "date": self.entry_date,
            "activity_type": self.activity_type.value if self.activity_type else None,
            "started_at": self.started_at,
            "paused_seconds": int(self.paused_total.total_seconds()),
            "pause_started_at": self.pause_started_at,
            "elapsed_seconds": seconds,
            "elapsed_display": format_duration(seconds),
        }

    def _checkpoint(self, paused_total: dt.timedelta, pause_started_at: Optional[dt.datetime]) -> None:
        try:
            self.store.checkpoint(self.entry_id, int(paused_total.total_seconds()), pause_started_at)
        except (NotFoundError, ConflictError):
            logger.warning("Active entry %s for %s disappeared", self.entry_id, self.user_id)
            self._clear()
            raise


class TimerRegistry:
    """Per-user timer sessions kept for the lifetime of the process."""

    def __init__(self, *, checkpoint_pauses: bool = False):
        self.checkpoint_pauses = checkpoint_pauses
        self._lock = Lock()
        self._sessions: Dict[str, TimerSession] = {}
        self._user_locks: Dict[str, RLock] = {}

    @contextmanager
    def session_for(self, user_id: str, store: TimeEntryStore, now: dt.datetime) -> Iterator[TimerSession]:
        """Yield the user's session bound to ``store``, one operation at a time."""
        with self._lock:
            timer = self._sessions.get(user_id)
            if timer is None:
                timer = TimerSession(user_id, store, checkpoint_pauses=self.checkpoint_pauses)
                self._sessions[user_id] = timer
            user_lock = self._user_locks.setdefault(user_id, RLock())
        with user_lock:
            timer.store = store
            if not timer.is_active:
                timer.restore(now)
            yield timer
