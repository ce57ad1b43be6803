from __future__ import annotations

import datetime as dt
from unittest.mock import Mock

import pytest
from sqlalchemy.orm import Session

from loipentrack.errors import ValidationError
from loipentrack.manual import manual_entry_hours, save_manual_entry
from loipentrack.models import TimeEntry
from loipentrack.store import TimeEntryStore
from loipentrack.timer import TimerSession, TimerState

DAY = dt.date(2025, 1, 10)


def test_end_before_start_is_rejected_without_writing():
    store = Mock(spec=TimeEntryStore)
    with pytest.raises(ValidationError) as excinfo:
        save_manual_entry(store, "anna", DAY, "SetUp", dt.time(14, 0), dt.time(13, 0))
    assert "after start" in excinfo.value.detail
    store.create.assert_not_called()


def test_equal_times_are_rejected():
    with pytest.raises(ValidationError):
        manual_entry_hours(DAY, dt.time(9, 0), dt.time(9, 0))


def test_hours_use_minute_precision():
    assert manual_entry_hours(DAY, dt.time(7, 0, 59), dt.time(8, 30, 1)) == 1.5
    assert manual_entry_hours(DAY, dt.time(7, 0), dt.time(7, 1)) == 0.02


def test_manual_entry_is_persisted_complete(session: Session):
    entry = save_manual_entry(
        TimeEntryStore(session), "anna", DAY, "TearDown", dt.time(7, 0), dt.time(15, 15)
    )
    stored = session.get(TimeEntry, entry.id)
    assert stored.total_hours == 8.25
    assert stored.start_time == dt.time(7, 0)
    assert stored.stop_time == dt.time(15, 15)
    assert stored.activity_type == "TearDown"
    assert not stored.is_running


def test_unknown_activity_is_rejected_before_time_check():
    store = Mock(spec=TimeEntryStore)
    with pytest.raises(ValidationError) as excinfo:
        save_manual_entry(store, "anna", DAY, "Snowmaking", dt.time(14, 0), dt.time(13, 0))
    assert "activity" in excinfo.value.detail.lower()
    store.create.assert_not_called()


def test_manual_entry_does_not_touch_running_timer(session: Session):
    store = TimeEntryStore(session)
    timer = TimerSession("anna", store)
    timer.start("TrailGrooming", dt.datetime.combine(DAY, dt.time(8, 0)))
    save_manual_entry(store, "anna", DAY, "SetUp", dt.time(5, 0), dt.time(6, 0))
    assert timer.state is TimerState.RUNNING
    assert store.find_running("anna", DAY).id == timer.entry_id
    entry = timer.stop(dt.datetime.combine(DAY, dt.time(9, 0)))
    assert entry.total_hours == 1.0
