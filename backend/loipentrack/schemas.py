from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional, Union

from typing_extensions import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_serializer


def _serialize_time(value: Optional[dt.time]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(microsecond=0).isoformat()


class TimeEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    user_id: str
    date: dt.date
    activity_type: str
    start_time: dt.time
    stop_time: Optional[dt.time]
    total_hours: Optional[float]

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "date": self.date.isoformat(),
            "activity_type": self.activity_type,
            "start_time": _serialize_time(self.start_time),
            "stop_time": _serialize_time(self.stop_time),
            "total_hours": self.total_hours,
        }


class TimerStartRequest(BaseModel):
    activity_type: str


class TimerStatusResponse(BaseModel):
    user_id: str
    state: Literal["idle", "running", "paused"]
    entry_id: Optional[str] = None
    date: Optional[dt.date] = None
    activity_type: Optional[str] = None
    started_at: Optional[dt.datetime] = None
    paused_seconds: int = 0
    pause_started_at: Optional[dt.datetime] = None
    elapsed_seconds: int = 0
    elapsed_display: str = "00:00:00"


class ManualEntryRequest(BaseModel):
    user_id: str = Field(min_length=1)
    date: dt.date
    activity_type: str
    start_time: dt.time
    end_time: dt.time


class HoursSummaryResponse(BaseModel):
    user_id: str
    week_start: dt.date
    week_end: dt.date
    week_hours: float
    month_start: dt.date
    month_end: dt.date
    month_hours: float


class EmployeeHoursResponse(BaseModel):
    user_id: str
    name: str
    total_hours: float
    entry_count: int


class ActivityTypeResponse(BaseModel):
    value: str
    label: str


class SeasonResponse(BaseModel):
    label: str
    start: dt.date
    end: dt.date


class EmployeeCreateRequest(BaseModel):
    user_id: str
    first_name: str
    last_name: str


class EmployeeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    user_id: str
    first_name: str
    last_name: str


class TaskRequest(BaseModel):
    name: str


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    name: str


class TrailCreateRequest(BaseModel):
    name: str
    has_skating: bool = True
    has_classic: bool = True
    has_ski_slope: bool = False


class TrailUpdateRequest(BaseModel):
    name: Optional[str] = None
    has_skating: Optional[bool] = None
    has_classic: Optional[bool] = None
    has_ski_slope: Optional[bool] = None
    sort_order: Optional[int] = None


class TrailResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    name: str
    has_skating: bool
    has_classic: bool
    has_ski_slope: bool
    sort_order: int
    grooming_options: List[str] = Field(default_factory=list)


class SettingsResponse(BaseModel):
    environment: str
    timezone: str
    block_ips: List[str]
    pause_checkpoints: bool


class SettingsUpdateRequest(BaseModel):
    block_ips: Optional[List[str]] = None
    pause_checkpoints: Optional[bool] = None

    @field_validator("block_ips")
    @classmethod
    def _strip_block_ips(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        return [ip.strip() for ip in value if ip.strip()]


class DieselCreateRequest(BaseModel):
    user_id: str = Field(min_length=1)
    date: dt.date
    tank: str
    liters: Union[float, str]


class DieselUpdateRequest(BaseModel):
    date: Optional[dt.date] = None
    tank: Optional[str] = None
    liters: Optional[Union[float, str]] = None


class DieselEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    user_id: str
    date: dt.date
    tank: str
    liters: float


class ExpenseCreateRequest(BaseModel):
    user_id: str = Field(min_length=1)
    date: dt.date
    description: Optional[str] = None
    amount: Optional[Union[float, str]] = None
    receipt_filename: Optional[str] = None
    time_entry_id: Optional[str] = None


class ExpenseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    user_id: str
    date: dt.date
    description: Optional[str]
    amount: Optional[float]
    receipt_filename: Optional[str]
    time_entry_id: Optional[str]


class CashCreateRequest(BaseModel):
    user_id: str = Field(min_length=1)
    date: dt.date
    amount: Union[float, str]
    description: Optional[str] = None
    receipt_filename: Optional[str] = None


class CashUpdateRequest(BaseModel):
    date: Optional[dt.date] = None
    amount: Optional[Union[float, str]] = None
    description: Optional[str] = None


class CashEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    user_id: str
    date: dt.date
    amount: float
    description: Optional[str]
    receipt_filename: Optional[str]


class GroomingSelection(BaseModel):
    trail_id: int
    style: str


class GroomingProtocolRequest(BaseModel):
    selections: List[GroomingSelection] = Field(default_factory=list)
    time_entry_id: Optional[str] = None


class GroomingItemResponse(BaseModel):
    trail_id: int
    trail_name: str
    style: str


class GroomingProtocolResponse(BaseModel):
    id: str
    user_id: str
    date: dt.date
    time_entry_id: Optional[str] = None
    selections: List[GroomingItemResponse]
    run_count: int


class SeasonSummaryResponse(BaseModel):
    label: str
    start: dt.date
    end: dt.date
    total_hours: float
    diesel_liters: float
    diesel_by_tank: Dict[str, float]
    cash_total: float
    cash_count: int
    expense_total: float
    expense_count: int
    grooming_days: int
    grooming_runs: int
