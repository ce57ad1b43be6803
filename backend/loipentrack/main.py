from __future__ import annotations

import datetime as dt
import logging
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import models, records
from .config import settings
from .database import db_session, engine, get_db
from .errors import LoipenError, NotFoundError
from .manual import save_manual_entry
from .middleware import BlockListMiddleware
from .schemas import (
    ActivityTypeResponse,
    CashCreateRequest,
    CashEntryResponse,
    CashUpdateRequest,
    DieselCreateRequest,
    DieselEntryResponse,
    DieselUpdateRequest,
    EmployeeCreateRequest,
    EmployeeHoursResponse,
    EmployeeResponse,
    ExpenseCreateRequest,
    ExpenseResponse,
    GroomingProtocolRequest,
    GroomingProtocolResponse,
    HoursSummaryResponse,
    ManualEntryRequest,
    SeasonResponse,
    SeasonSummaryResponse,
    SettingsResponse,
    SettingsUpdateRequest,
    TaskRequest,
    TaskResponse,
    TimeEntryResponse,
    TimerStartRequest,
    TimerStatusResponse,
    TrailCreateRequest,
    TrailResponse,
    TrailUpdateRequest,
)
from .seasons import available_seasons, season_dates, season_label
from .services import (
    activity_types,
    create_employee,
    create_task,
    create_trail,
    delete_task,
    delete_trail,
    export_time_entries,
    get_employee,
    grooming_options,
    hours_by_employee,
    hours_summary,
    list_employees,
    list_tasks,
    list_time_entries,
    list_trails,
    recent_entries,
    rename_task,
    update_runtime_settings,
    update_trail,
)
from .state import RuntimeState
from .store import TimeEntryStore

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

LOCAL_TZ = ZoneInfo(settings.timezone)


def get_now() -> dt.datetime:
    """Current local wall-clock time, naive, as the timer expects it."""
    return dt.datetime.now(LOCAL_TZ).replace(tzinfo=None)


models.Base.metadata.create_all(bind=engine)

runtime_state = RuntimeState(settings)
with db_session() as session:
    runtime_state.load_from_db(session)

app = FastAPI(title=settings.app_name)
app.state.runtime_state = runtime_state
app.add_middleware(BlockListMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


@app.exception_handler(LoipenError)
async def loipen_error_handler(request: Request, exc: LoipenError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


def _runtime_state(request: Request) -> RuntimeState:
    return request.app.state.runtime_state


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/activity-types", response_model=list[ActivityTypeResponse])
def read_activity_types() -> list[ActivityTypeResponse]:
    return [ActivityTypeResponse(**item) for item in activity_types()]


# ----------------------------------------------------------------------
# Timer
# ----------------------------------------------------------------------


@app.get("/timer/{user_id}", response_model=TimerStatusResponse)
def timer_status(
    user_id: str,
    request: Request,
    db: Session = Depends(get_db),
    now: dt.datetime = Depends(get_now),
) -> TimerStatusResponse:
    with _runtime_state(request).timers.session_for(user_id, TimeEntryStore(db), now) as timer:
        return TimerStatusResponse(**timer.snapshot(now))


@app.post("/timer/{user_id}/start", response_model=TimeEntryResponse, status_code=status.HTTP_201_CREATED)
def timer_start(
    user_id: str,
    payload: TimerStartRequest,
    request: Request,
    db: Session = Depends(get_db),
    now: dt.datetime = Depends(get_now),
) -> TimeEntryResponse:
    with _runtime_state(request).timers.session_for(user_id, TimeEntryStore(db), now) as timer:
        return timer.start(payload.activity_type, now)


@app.post("/timer/{user_id}/pause", response_model=TimerStatusResponse)
def timer_pause(
    user_id: str,
    request: Request,
    db: Session = Depends(get_db),
    now: dt.datetime = Depends(get_now),
) -> TimerStatusResponse:
    with _runtime_state(request).timers.session_for(user_id, TimeEntryStore(db), now) as timer:
        timer.pause(now)
        return TimerStatusResponse(**timer.snapshot(now))


@app.post("/timer/{user_id}/resume", response_model=TimerStatusResponse)
def timer_resume(
    user_id: str,
    request: Request,
    db: Session = Depends(get_db),
    now: dt.datetime = Depends(get_now),
) -> TimerStatusResponse:
    with _runtime_state(request).timers.session_for(user_id, TimeEntryStore(db), now) as timer:
        timer.resume(now)
        return TimerStatusResponse(**timer.snapshot(now))


@app.post("/timer/{user_id}/stop", response_model=TimeEntryResponse)
def timer_stop(
    user_id: str,
    request: Request,
    db: Session = Depends(get_db),
    now: dt.datetime = Depends(get_now),
) -> TimeEntryResponse:
    with _runtime_state(request).timers.session_for(user_id, TimeEntryStore(db), now) as timer:
        return timer.stop(now)


# ----------------------------------------------------------------------
# Entries and reports
# ----------------------------------------------------------------------


@app.post("/entries/manual", response_model=TimeEntryResponse, status_code=status.HTTP_201_CREATED)
def entries_manual(payload: ManualEntryRequest, db: Session = Depends(get_db)) -> TimeEntryResponse:
    return save_manual_entry(
        TimeEntryStore(db),
        payload.user_id,
        payload.date,
        payload.activity_type,
        payload.start_time,
        payload.end_time,
    )


@app.get("/entries", response_model=list[TimeEntryResponse])
def entries_list(
    from_date: dt.date,
    to_date: dt.date,
    user_id: Optional[str] = None,
    activity_type: Optional[str] = None,
    db: Session = Depends(get_db),
) -> list[TimeEntryResponse]:
    return list_time_entries(db, from_date, to_date, user_id, activity_type)


@app.get("/users/{user_id}/entries/recent", response_model=list[TimeEntryResponse])
def entries_recent(
    user_id: str,
    limit: int = Query(default=settings.recent_entries_limit, ge=1, le=200),
    db: Session = Depends(get_db),
) -> list[TimeEntryResponse]:
    return recent_entries(db, user_id, limit)


@app.get("/users/{user_id}/hours", response_model=HoursSummaryResponse)
def user_hours(
    user_id: str,
    day: Optional[dt.date] = None,
    db: Session = Depends(get_db),
    now: dt.datetime = Depends(get_now),
) -> HoursSummaryResponse:
    return HoursSummaryResponse(**hours_summary(db, user_id, day or now.date()))


@app.get("/reports/hours", response_model=list[EmployeeHoursResponse])
def report_hours(
    from_date: Optional[dt.date] = None,
    to_date: Optional[dt.date] = None,
    season: Optional[str] = None,
    db: Session = Depends(get_db),
    now: dt.datetime = Depends(get_now),
) -> list[EmployeeHoursResponse]:
    if season is not None or from_date is None or to_date is None:
        from_date, to_date = season_dates(season or "", today=now.date())
    return [EmployeeHoursResponse(**row) for row in hours_by_employee(db, from_date, to_date)]


def _attachment(filename: str, content: bytes, media_type: str) -> Response:
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(content, media_type=media_type, headers=headers)


@app.get("/exports/time-entries")
def export_entries(
    from_date: dt.date,
    to_date: dt.date,
    export_format: str = Query(default="csv", alias="format"),
    user_id: Optional[str] = None,
    activity_type: Optional[str] = None,
    db: Session = Depends(get_db),
) -> Response:
    filename, content, media_type = export_time_entries(db, export_format, from_date, to_date, user_id, activity_type)
    return _attachment(filename, content, media_type)


@app.get("/exports/{kind}")
def export_logbook(
    kind: str,
    from_date: dt.date,
    to_date: dt.date,
    export_format: str = Query(default="csv", alias="format"),
    user_id: Optional[str] = None,
    db: Session = Depends(get_db),
) -> Response:
    filename, content, media_type = records.export_records(db, kind, export_format, from_date, to_date, user_id)
    return _attachment(filename, content, media_type)


@app.get("/reports/season", response_model=SeasonSummaryResponse)
def report_season(
    season: Optional[str] = None,
    db: Session = Depends(get_db),
    now: dt.datetime = Depends(get_now),
) -> SeasonSummaryResponse:
    return SeasonSummaryResponse(**records.season_summary(db, season, now.date()))


# ----------------------------------------------------------------------
# Seasons
# ----------------------------------------------------------------------


@app.get("/seasons", response_model=list[SeasonResponse])
def seasons_list(now: dt.datetime = Depends(get_now)) -> list[SeasonResponse]:
    labels = available_seasons(now.date(), settings.first_season_year)
    response = []
    for label in labels:
        start, end = season_dates(label)
        response.append(SeasonResponse(label=label, start=start, end=end))
    return response


@app.get("/seasons/current", response_model=SeasonResponse)
def seasons_current(now: dt.datetime = Depends(get_now)) -> SeasonResponse:
    label = season_label(now.date())
    start, end = season_dates(label)
    return SeasonResponse(label=label, start=start, end=end)


@app.get("/seasons/{label}", response_model=SeasonResponse)
def seasons_read(label: str, now: dt.datetime = Depends(get_now)) -> SeasonResponse:
    start, end = season_dates(label, today=now.date())
    return SeasonResponse(label=season_label(start), start=start, end=end)


# ----------------------------------------------------------------------
# Reference data
# ----------------------------------------------------------------------


@app.get("/employees", response_model=list[EmployeeResponse])
def employees_list(db: Session = Depends(get_db)) -> list[EmployeeResponse]:
    return list_employees(db)


@app.post("/employees", response_model=EmployeeResponse, status_code=status.HTTP_201_CREATED)
def employees_create(payload: EmployeeCreateRequest, db: Session = Depends(get_db)) -> EmployeeResponse:
    return create_employee(db, payload.user_id, payload.first_name, payload.last_name)


@app.get("/employees/{user_id}", response_model=EmployeeResponse)
def employees_read(user_id: str, db: Session = Depends(get_db)) -> EmployeeResponse:
    return get_employee(db, user_id)


@app.get("/tasks", response_model=list[TaskResponse])
def tasks_list(db: Session = Depends(get_db)) -> list[TaskResponse]:
    return list_tasks(db)


@app.post("/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
def tasks_create(payload: TaskRequest, db: Session = Depends(get_db)) -> TaskResponse:
    return create_task(db, payload.name)


@app.patch("/tasks/{task_id}", response_model=TaskResponse)
def tasks_rename(task_id: int, payload: TaskRequest, db: Session = Depends(get_db)) -> TaskResponse:
    return rename_task(db, task_id, payload.name)


@app.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def tasks_delete(task_id: int, db: Session = Depends(get_db)) -> Response:
    delete_task(db, task_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _trail_response(trail: models.TrailConfig) -> TrailResponse:
    response = TrailResponse.model_validate(trail)
    response.grooming_options = grooming_options(trail)
    return response


@app.get("/trails", response_model=list[TrailResponse])
def trails_list(db: Session = Depends(get_db)) -> list[TrailResponse]:
    return [_trail_response(trail) for trail in list_trails(db)]


@app.post("/trails", response_model=TrailResponse, status_code=status.HTTP_201_CREATED)
def trails_create(payload: TrailCreateRequest, db: Session = Depends(get_db)) -> TrailResponse:
    trail = create_trail(db, payload.name, payload.has_skating, payload.has_classic, payload.has_ski_slope)
    return _trail_response(trail)


@app.patch("/trails/{trail_id}", response_model=TrailResponse)
def trails_update(trail_id: int, payload: TrailUpdateRequest, db: Session = Depends(get_db)) -> TrailResponse:
    trail = update_trail(db, trail_id, payload.model_dump(exclude_unset=True))
    return _trail_response(trail)


@app.delete("/trails/{trail_id}", status_code=status.HTTP_204_NO_CONTENT)
def trails_delete(trail_id: int, db: Session = Depends(get_db)) -> Response:
    delete_trail(db, trail_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------
# Logbooks
# ----------------------------------------------------------------------


@app.post("/diesel", response_model=DieselEntryResponse, status_code=status.HTTP_201_CREATED)
def diesel_create(payload: DieselCreateRequest, db: Session = Depends(get_db)) -> DieselEntryResponse:
    return records.create_diesel_entry(db, payload.user_id, payload.date, payload.tank, payload.liters)


@app.get("/diesel", response_model=list[DieselEntryResponse])
def diesel_list(
    from_date: dt.date,
    to_date: dt.date,
    user_id: Optional[str] = None,
    tank: Optional[str] = None,
    db: Session = Depends(get_db),
) -> list[DieselEntryResponse]:
    return records.list_diesel_entries(db, from_date, to_date, user_id, tank)


@app.patch("/diesel/{entry_id}", response_model=DieselEntryResponse)
def diesel_update(entry_id: str, payload: DieselUpdateRequest, db: Session = Depends(get_db)) -> DieselEntryResponse:
    return records.update_diesel_entry(db, entry_id, payload.model_dump(exclude_unset=True))


@app.delete("/diesel/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
def diesel_delete(entry_id: str, db: Session = Depends(get_db)) -> Response:
    records.delete_diesel_entry(db, entry_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/expenses", response_model=ExpenseResponse, status_code=status.HTTP_201_CREATED)
def expenses_create(payload: ExpenseCreateRequest, db: Session = Depends(get_db)) -> ExpenseResponse:
    return records.create_expense(
        db,
        payload.user_id,
        payload.date,
        description=payload.description,
        amount=payload.amount,
        receipt_filename=payload.receipt_filename,
        time_entry_id=payload.time_entry_id,
    )


@app.get("/expenses", response_model=list[ExpenseResponse])
def expenses_list(
    from_date: dt.date,
    to_date: dt.date,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db),
) -> list[ExpenseResponse]:
    return records.list_expenses(db, from_date, to_date, user_id)


@app.delete("/expenses/{expense_id}", status_code=status.HTTP_204_NO_CONTENT)
def expenses_delete(expense_id: str, db: Session = Depends(get_db)) -> Response:
    records.delete_expense(db, expense_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/cash", response_model=CashEntryResponse, status_code=status.HTTP_201_CREATED)
def cash_create(payload: CashCreateRequest, db: Session = Depends(get_db)) -> CashEntryResponse:
    return records.create_cash_entry(
        db,
        payload.user_id,
        payload.date,
        payload.amount,
        description=payload.description,
        receipt_filename=payload.receipt_filename,
    )


@app.get("/cash", response_model=list[CashEntryResponse])
def cash_list(
    from_date: dt.date,
    to_date: dt.date,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db),
) -> list[CashEntryResponse]:
    return records.list_cash_entries(db, from_date, to_date, user_id)


@app.patch("/cash/{entry_id}", response_model=CashEntryResponse)
def cash_update(entry_id: str, payload: CashUpdateRequest, db: Session = Depends(get_db)) -> CashEntryResponse:
    return records.update_cash_entry(db, entry_id, payload.model_dump(exclude_unset=True))


@app.delete("/cash/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
def cash_delete(entry_id: str, db: Session = Depends(get_db)) -> Response:
    records.delete_cash_entry(db, entry_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _protocol_response(protocol: models.GroomingProtocol) -> GroomingProtocolResponse:
    selections = records.protocol_items(protocol)
    return GroomingProtocolResponse(
        id=protocol.id,
        user_id=protocol.user_id,
        date=protocol.date,
        time_entry_id=protocol.time_entry_id,
        selections=selections,
        run_count=len(selections),
    )


@app.get("/grooming-protocols", response_model=list[GroomingProtocolResponse])
def grooming_protocols_list(
    from_date: dt.date,
    to_date: dt.date,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db),
) -> list[GroomingProtocolResponse]:
    return [_protocol_response(protocol) for protocol in records.list_grooming_protocols(db, from_date, to_date, user_id)]


@app.get("/grooming-protocols/{user_id}/{day}", response_model=GroomingProtocolResponse)
def grooming_protocols_read(user_id: str, day: dt.date, db: Session = Depends(get_db)) -> GroomingProtocolResponse:
    protocol = records.get_grooming_protocol(db, user_id, day)
    if protocol is None:
        raise NotFoundError("Grooming protocol not found")
    return _protocol_response(protocol)


@app.put("/grooming-protocols/{user_id}/{day}", response_model=GroomingProtocolResponse)
def grooming_protocols_save(
    user_id: str,
    day: dt.date,
    payload: GroomingProtocolRequest,
    db: Session = Depends(get_db),
) -> GroomingProtocolResponse:
    selections = [(item.trail_id, item.style) for item in payload.selections]
    protocol = records.save_grooming_protocol(db, user_id, day, selections, payload.time_entry_id)
    return _protocol_response(protocol)


@app.delete("/grooming-protocols/{protocol_id}", status_code=status.HTTP_204_NO_CONTENT)
def grooming_protocols_delete(protocol_id: str, db: Session = Depends(get_db)) -> Response:
    records.delete_grooming_protocol(db, protocol_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------
# Settings
# ----------------------------------------------------------------------


def _settings_response(snapshot: dict) -> SettingsResponse:
    return SettingsResponse(
        environment=settings.environment,
        timezone=settings.timezone,
        block_ips=snapshot["block_ips"],
        pause_checkpoints=snapshot["pause_checkpoints"],
    )


@app.get("/settings", response_model=SettingsResponse)
def read_settings(request: Request) -> SettingsResponse:
    return _settings_response(_runtime_state(request).snapshot())


@app.put("/settings", response_model=SettingsResponse)
def write_settings(payload: SettingsUpdateRequest, request: Request, db: Session = Depends(get_db)) -> SettingsResponse:
    updates = payload.model_dump(exclude_unset=True)
    snapshot = update_runtime_settings(db, _runtime_state(request), updates)
    return _settings_response(snapshot)
