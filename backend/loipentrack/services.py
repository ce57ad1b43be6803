from __future__ import annotations

import csv
import datetime as dt
import io
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from openpyxl import Workbook
from sqlalchemy import and_, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .durations import format_hours, month_bounds, round_hours, week_bounds
from .errors import ConflictError, NotFoundError, StoreError, ValidationError
from .models import ActivityType, Employee, GroomingProtocolItem, Task, TimeEntry, TrailConfig, parse_activity_type
from .state import RuntimeState

logger = logging.getLogger(__name__)

UNKNOWN_EMPLOYEE = "Unbekannt"

EXPORT_HEADERS = ["Datum", "Mitarbeiter", "Projekt", "Start", "Stopp", "Stunden"]

EXPORT_MEDIA_TYPES = {
    "csv": "text/csv; charset=utf-8",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


def check_range(start_date: dt.date, end_date: dt.date) -> None:
    if end_date < start_date:
        raise ValidationError("End date must not be before start date")


def employee_names(db: Session) -> Dict[str, str]:
    return {employee.user_id: employee.full_name for employee in db.query(Employee).all()}


def employee_name(names: Dict[str, str], user_id: str) -> str:
    return names.get(user_id, UNKNOWN_EMPLOYEE)


# ----------------------------------------------------------------------
# Time entries
# ----------------------------------------------------------------------


def list_time_entries(
    db: Session,
    start_date: dt.date,
    end_date: dt.date,
    user_id: Optional[str] = None,
    activity_type: Optional[str] = None,
) -> List[TimeEntry]:
    check_range(start_date, end_date)
    query = db.query(TimeEntry).filter(and_(TimeEntry.date >= start_date, TimeEntry.date <= end_date))
    if user_id:
        query = query.filter(TimeEntry.user_id == user_id)
    if activity_type:
        query = query.filter(TimeEntry.activity_type == parse_activity_type(activity_type).value)
    return query.order_by(TimeEntry.date.desc(), TimeEntry.start_time.desc()).all()


def recent_entries(db: Session, user_id: str, limit: int = 20) -> List[TimeEntry]:
    return (
        db.query(TimeEntry)
        .filter(TimeEntry.user_id == user_id)
        .order_by(TimeEntry.date.desc(), TimeEntry.start_time.desc())
        .limit(limit)
        .all()
    )


def _sum_hours(db: Session, start_date: dt.date, end_date: dt.date, user_id: Optional[str] = None) -> float:
    query = db.query(func.coalesce(func.sum(TimeEntry.total_hours), 0.0)).filter(
        and_(TimeEntry.date >= start_date, TimeEntry.date <= end_date)
    )
    if user_id:
        query = query.filter(TimeEntry.user_id == user_id)
    return round_hours(query.scalar() or 0.0)


def hours_summary(db: Session, user_id: str, today: dt.date) -> Dict[str, Any]:
    week_start, week_end = week_bounds(today)
    month_start, month_end = month_bounds(today)
    return {
        "user_id": user_id,
        "week_start": week_start,
        "week_end": week_end,
        "week_hours": _sum_hours(db, week_start, week_end, user_id),
        "month_start": month_start,
        "month_end": month_end,
        "month_hours": _sum_hours(db, month_start, month_end, user_id),
    }


def hours_by_employee(db: Session, start_date: dt.date, end_date: dt.date) -> List[Dict[str, Any]]:
    check_range(start_date, end_date)
    entries = (
        db.query(TimeEntry)
        .filter(and_(TimeEntry.date >= start_date, TimeEntry.date <= end_date))
        .filter(TimeEntry.stop_time.isnot(None))
        .all()
    )
    totals: Dict[str, float] = defaultdict(float)
    counts: Dict[str, int] = defaultdict(int)
    for entry in entries:
        totals[entry.user_id] += entry.total_hours or 0.0
        counts[entry.user_id] += 1
    names = employee_names(db)
    rows = [
        {
            "user_id": user_id,
            "name": employee_name(names, user_id),
            "total_hours": round_hours(hours),
            "entry_count": counts[user_id],
        }
        for user_id, hours in totals.items()
    ]
    rows.sort(key=lambda row: row["total_hours"], reverse=True)
    return rows


# ----------------------------------------------------------------------
# Export
# ----------------------------------------------------------------------


def _export_rows(db: Session, entries: List[TimeEntry]) -> List[List[Any]]:
    names = employee_names(db)
    rows: List[List[Any]] = []
    for entry in entries:
        try:
            project = parse_activity_type(entry.activity_type).label
        except ValidationError:
            project = entry.activity_type
        rows.append(
            [
                entry.date.strftime("%d.%m.%Y"),
                employee_name(names, entry.user_id),
                project,
                entry.start_time.strftime("%H:%M") if entry.start_time else "",
                entry.stop_time.strftime("%H:%M") if entry.stop_time else "",
                entry.total_hours,
            ]
        )
    return rows


def _csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        return format_hours(value)
    return str(value)


def _write_csv(headers: List[str], rows: List[List[Any]]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=";", lineterminator="\n")
    writer.writerow(headers)
    writer.writerows([_csv_value(value) for value in row] for row in rows)
    # BOM so spreadsheet tools pick up the umlauts
    return ("\ufeff" + buffer.getvalue()).encode("utf-8")


def _write_xlsx(sheet_title: str, headers: List[str], rows: List[List[Any]]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_title
    ws.append(headers)
    for row in rows:
        ws.append(row)
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def render_export(
    prefix: str,
    headers: List[str],
    rows: List[List[Any]],
    export_format: str,
    start_date: dt.date,
    end_date: dt.date,
) -> Tuple[str, bytes, str]:
    """Serialize ``rows`` as CSV or XLSX and name the file after the period.

    Float cells are written with two decimals in CSV and kept numeric in XLSX.
    """
    if export_format not in EXPORT_MEDIA_TYPES:
        raise ValidationError("Unsupported export format")
    if not rows:
        raise NotFoundError("No entries found for this period")
    if export_format == "csv":
        payload = _write_csv(headers, rows)
    else:
        payload = _write_xlsx(prefix, headers, rows)
    filename = f"{prefix}_{start_date.isoformat()}_{end_date.isoformat()}.{export_format}"
    logger.info("Exported %d %s rows as %s", len(rows), prefix, export_format)
    return filename, payload, EXPORT_MEDIA_TYPES[export_format]


def export_time_entries(
    db: Session,
    export_format: str,
    start_date: dt.date,
    end_date: dt.date,
    user_id: Optional[str] = None,
    activity_type: Optional[str] = None,
) -> Tuple[str, bytes, str]:
    if export_format not in EXPORT_MEDIA_TYPES:
        raise ValidationError("Unsupported export format")
    entries = list_time_entries(db, start_date, end_date, user_id, activity_type)
    if not entries:
        raise NotFoundError("No time entries found for this period")
    return render_export("Arbeitszeit", EXPORT_HEADERS, _export_rows(db, entries), export_format, start_date, end_date)


# ----------------------------------------------------------------------
# Employees
# ----------------------------------------------------------------------


def list_employees(db: Session) -> List[Employee]:
    return db.query(Employee).order_by(Employee.last_name.asc(), Employee.first_name.asc()).all()


def get_employee(db: Session, user_id: str) -> Employee:
    employee = db.query(Employee).filter(Employee.user_id == user_id).one_or_none()
    if not employee:
        raise NotFoundError("Employee not found")
    return employee


def create_employee(db: Session, user_id: str, first_name: str, last_name: str) -> Employee:
    first_name = first_name.strip()
    last_name = last_name.strip()
    if not user_id.strip() or not first_name or not last_name:
        raise ValidationError("User id, first name and last name are required")
    employee = Employee(user_id=user_id.strip(), first_name=first_name, last_name=last_name)
    db.add(employee)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("Employee already exists") from exc
    db.refresh(employee)
    return employee


# ----------------------------------------------------------------------
# Tasks
# ----------------------------------------------------------------------


def _clean_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Name must not be empty")
    return cleaned


def list_tasks(db: Session) -> List[Task]:
    return db.query(Task).order_by(Task.name.asc()).all()


def _get_task(db: Session, task_id: int) -> Task:
    task = db.get(Task, task_id)
    if not task:
        raise NotFoundError("Task not found")
    return task


def _save_task(db: Session, task: Task) -> Task:
    db.add(task)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("A task with this name already exists") from exc
    db.refresh(task)
    return task


def create_task(db: Session, name: str) -> Task:
    return _save_task(db, Task(name=_clean_name(name)))


def rename_task(db: Session, task_id: int, name: str) -> Task:
    task = _get_task(db, task_id)
    task.name = _clean_name(name)
    return _save_task(db, task)


def delete_task(db: Session, task_id: int) -> None:
    task = _get_task(db, task_id)
    db.delete(task)
    db.commit()


# ----------------------------------------------------------------------
# Trail configuration
# ----------------------------------------------------------------------


def list_trails(db: Session) -> List[TrailConfig]:
    return db.query(TrailConfig).order_by(TrailConfig.sort_order.asc(), TrailConfig.id.asc()).all()


def _get_trail(db: Session, trail_id: int) -> TrailConfig:
    trail = db.get(TrailConfig, trail_id)
    if not trail:
        raise NotFoundError("Trail not found")
    return trail


def create_trail(
    db: Session,
    name: str,
    has_skating: bool = True,
    has_classic: bool = True,
    has_ski_slope: bool = False,
) -> TrailConfig:
    max_order = db.query(func.max(TrailConfig.sort_order)).scalar() or 0
    trail = TrailConfig(
        name=_clean_name(name),
        has_skating=has_skating,
        has_classic=has_classic,
        has_ski_slope=has_ski_slope,
        sort_order=max_order + 1,
    )
    db.add(trail)
    db.commit()
    db.refresh(trail)
    return trail


def update_trail(db: Session, trail_id: int, changes: Dict[str, Any]) -> TrailConfig:
    trail = _get_trail(db, trail_id)
    if "name" in changes and changes["name"] is not None:
        trail.name = _clean_name(changes["name"])
    for flag in ("has_skating", "has_classic", "has_ski_slope"):
        if flag in changes and changes[flag] is not None:
            setattr(trail, flag, bool(changes[flag]))
    if "sort_order" in changes and changes["sort_order"] is not None:
        trail.sort_order = int(changes["sort_order"])
    db.add(trail)
    db.commit()
    db.refresh(trail)
    return trail


def delete_trail(db: Session, trail_id: int) -> None:
    trail = _get_trail(db, trail_id)
    in_use = db.query(GroomingProtocolItem).filter(GroomingProtocolItem.trail_id == trail_id).first()
    if in_use is not None:
        raise ConflictError("Trail is used in grooming protocols")
    db.delete(trail)
    db.commit()


def grooming_options(trail: TrailConfig) -> List[str]:
    """Style keys a grooming protocol row offers for ``trail``."""
    if trail.has_ski_slope and not (trail.has_skating or trail.has_classic):
        return ["groomed"]
    options: List[str] = []
    if trail.has_classic:
        options.append("classic")
    if trail.has_skating:
        options.append("skating")
    if trail.has_ski_slope:
        options.append("ski_slope")
    return options


# ----------------------------------------------------------------------
# Runtime settings
# ----------------------------------------------------------------------


def update_runtime_settings(db: Session, state: RuntimeState, updates: dict) -> dict:
    cleaned = {key: value for key, value in updates.items() if value is not None}
    try:
        state.persist(db, cleaned)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Saving runtime settings failed: %s", exc)
        raise StoreError("Settings could not be saved") from exc
    state.apply(cleaned)
    return state.snapshot()


def activity_types() -> List[Dict[str, str]]:
    return [{"value": activity.value, "label": activity.label} for activity in ActivityType]
