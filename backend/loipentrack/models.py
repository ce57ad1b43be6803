from __future__ import annotations

import datetime as dt
import enum
import uuid
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

from .errors import ConflictError, ValidationError

Base = declarative_base()


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class ActivityType(str, enum.Enum):
    TRAIL_GROOMING = "TrailGrooming"
    SET_UP = "SetUp"
    TEAR_DOWN = "TearDown"
    MISCELLANEOUS = "Miscellaneous"

    @property
    def label(self) -> str:
        return ACTIVITY_LABELS[self]


ACTIVITY_LABELS = {
    ActivityType.TRAIL_GROOMING: "Loipenpräparation",
    ActivityType.SET_UP: "Aufbau",
    ActivityType.TEAR_DOWN: "Abbau",
    ActivityType.MISCELLANEOUS: "Verschiedenes",
}


def parse_activity_type(value: object) -> ActivityType:
    """Accept the enum value, the member name or the German display label."""
    if isinstance(value, ActivityType):
        return value
    text_value = str(value or "").strip()
    for activity in ActivityType:
        if text_value in (activity.value, activity.name, activity.label):
            return activity
    raise ValidationError(f"Unknown activity type: {text_value or '-'}")


class DieselTank(str, enum.Enum):
    NIDFURN = "Tank Nidfurn"
    HAETZINGEN = "Tank Hätzingen"


def parse_diesel_tank(value: object) -> DieselTank:
    if isinstance(value, DieselTank):
        return value
    text_value = str(value or "").strip()
    for tank in DieselTank:
        if text_value in (tank.value, tank.name):
            return tank
    raise ValidationError(f"Unknown diesel tank: {text_value or '-'}")


class TimeEntry(Base):
    __tablename__ = "time_entries"
    __table_args__ = (
        # One running entry per user and day, also across devices
        Index(
            "ux_time_entries_running",
            "user_id",
            "date",
            unique=True,
            sqlite_where=text("stop_time IS NULL"),
            postgresql_where=text("stop_time IS NULL"),
        ),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    activity_type = Column(String(30), nullable=False, index=True)
    start_time = Column(Time, nullable=False)
    stop_time = Column(Time, nullable=True)
    total_hours = Column(Float, nullable=True)
    paused_seconds = Column(Integer, nullable=False, default=0)
    pause_started_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def is_running(self) -> bool:
        return self.stop_time is None

    @property
    def started_at(self) -> dt.datetime:
        return dt.datetime.combine(self.date, self.start_time)

    def mark_completed(self, stop_time: dt.time, total_hours: float) -> None:
        if self.stop_time is not None or self.total_hours is not None:
            raise ConflictError("Time entry is already completed")
        if total_hours < 0:
            raise ConflictError("Total hours cannot be negative")
        self.stop_time = stop_time
        self.total_hours = total_hours
        self.pause_started_at = None

    def mark_checkpoint(self, paused_seconds: int, pause_started_at: Optional[dt.datetime]) -> None:
        if self.stop_time is not None:
            raise ConflictError("Time entry is already completed")
        self.paused_seconds = paused_seconds
        self.pause_started_at = pause_started_at


class Employee(Base):
    __tablename__ = "employees"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class TrailConfig(Base):
    __tablename__ = "trail_configs"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    has_skating = Column(Boolean, nullable=False, default=True)
    has_classic = Column(Boolean, nullable=False, default=True)
    has_ski_slope = Column(Boolean, nullable=False, default=False)
    sort_order = Column(Integer, nullable=False, default=0, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class AppSetting(Base):
    __tablename__ = "app_settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class DieselEntry(Base):
    __tablename__ = "diesel_entries"

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    tank = Column(String(30), nullable=False, index=True)
    liters = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Expense(Base):
    __tablename__ = "expenses"

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    description = Column(Text, nullable=True)
    amount = Column(Float, nullable=True)
    receipt_filename = Column(String(255), nullable=True)
    time_entry_id = Column(String(32), ForeignKey("time_entries.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class CashEntry(Base):
    """Day-ticket takings handed in by an employee."""

    __tablename__ = "cash_entries"

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    amount = Column(Float, nullable=False)
    description = Column(Text, nullable=True)
    receipt_filename = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class GroomingProtocol(Base):
    __tablename__ = "grooming_protocols"
    __table_args__ = (UniqueConstraint("user_id", "date", name="uq_grooming_protocols_user_date"),)

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    time_entry_id = Column(String(32), ForeignKey("time_entries.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship(
        "GroomingProtocolItem",
        back_populates="protocol",
        cascade="all, delete-orphan",
        order_by="GroomingProtocolItem.id",
    )


class GroomingProtocolItem(Base):
    __tablename__ = "grooming_protocol_items"
    __table_args__ = (UniqueConstraint("protocol_id", "trail_id", "style", name="uq_grooming_item"),)

    id = Column(Integer, primary_key=True)
    protocol_id = Column(String(32), ForeignKey("grooming_protocols.id", ondelete="CASCADE"), nullable=False, index=True)
    trail_id = Column(Integer, ForeignKey("trail_configs.id", ondelete="CASCADE"), nullable=False)
    style = Column(String(20), nullable=False)

    protocol = relationship("GroomingProtocol", back_populates="items")
    trail = relationship("TrailConfig")
