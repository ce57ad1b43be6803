"""Operational logbooks kept next to the work time.

Diesel refuelling, expenses, day-ticket cash takings and daily grooming
protocols. All amounts are validated here; the HTTP layer passes raw values
through so that bad input surfaces as a :class:`ValidationError`.
"""

from __future__ import annotations

import datetime as dt
import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import ConflictError, NotFoundError, ValidationError
from .models import (
    CashEntry,
    DieselEntry,
    DieselTank,
    Expense,
    GroomingProtocol,
    GroomingProtocolItem,
    TimeEntry,
    TrailConfig,
    parse_diesel_tank,
)
from .seasons import season_dates, season_label
from .services import check_range, employee_name, employee_names, grooming_options, render_export

logger = logging.getLogger(__name__)

STYLE_LABELS = {
    "classic": "Klassisch",
    "skating": "Skating",
    "ski_slope": "Skipiste",
    "groomed": "Präpariert",
}

_CENT = Decimal("0.01")


def parse_amount(value: Any, field: str) -> float:
    """Return ``value`` as a positive number with two decimals.

    Accepts numbers and numeric strings, also with a decimal comma.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    text_value = str(value).strip().replace(",", ".")
    try:
        amount = Decimal(text_value)
    except InvalidOperation as exc:
        raise ValidationError(f"{field} must be a number") from exc
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number")
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    rounded = amount.quantize(_CENT, rounding=ROUND_HALF_UP)
    if rounded <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    return float(rounded)


def _clean_text(value: Optional[str]) -> Optional[str]:
    cleaned = (value or "").strip()
    return cleaned or None


def _require_user(user_id: str) -> str:
    cleaned = (user_id or "").strip()
    if not cleaned:
        raise ValidationError("User id is required")
    return cleaned


def _get(db: Session, model, record_id: str, label: str):
    record = db.get(model, record_id)
    if record is None:
        raise NotFoundError(f"{label} not found")
    return record


def _save(db: Session, record):
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def _delete(db: Session, record) -> None:
    db.delete(record)
    db.commit()


def _in_range(query, model, start_date: dt.date, end_date: dt.date, user_id: Optional[str]):
    check_range(start_date, end_date)
    query = query.filter(and_(model.date >= start_date, model.date <= end_date))
    if user_id:
        query = query.filter(model.user_id == user_id)
    return query


def _sum(values: Iterable[Optional[float]]) -> float:
    total = sum((Decimal(str(value)) for value in values if value is not None), Decimal(0))
    return float(total.quantize(_CENT, rounding=ROUND_HALF_UP))


# ----------------------------------------------------------------------
# Diesel
# ----------------------------------------------------------------------


def create_diesel_entry(db: Session, user_id: str, day: dt.date, tank: Any, liters: Any) -> DieselEntry:
    entry = DieselEntry(
        user_id=_require_user(user_id),
        date=day,
        tank=parse_diesel_tank(tank).value,
        liters=parse_amount(liters, "Liters"),
    )
    _save(db, entry)
    logger.info("Diesel entry for %s: %.2f l at %s", entry.user_id, entry.liters, entry.tank)
    return entry


def update_diesel_entry(db: Session, entry_id: str, changes: Dict[str, Any]) -> DieselEntry:
    entry = _get(db, DieselEntry, entry_id, "Diesel entry")
    if changes.get("date") is not None:
        entry.date = changes["date"]
    if changes.get("tank") is not None:
        entry.tank = parse_diesel_tank(changes["tank"]).value
    if changes.get("liters") is not None:
        entry.liters = parse_amount(changes["liters"], "Liters")
    return _save(db, entry)


def delete_diesel_entry(db: Session, entry_id: str) -> None:
    _delete(db, _get(db, DieselEntry, entry_id, "Diesel entry"))


def list_diesel_entries(
    db: Session,
    start_date: dt.date,
    end_date: dt.date,
    user_id: Optional[str] = None,
    tank: Optional[str] = None,
) -> List[DieselEntry]:
    query = _in_range(db.query(DieselEntry), DieselEntry, start_date, end_date, user_id)
    if tank:
        query = query.filter(DieselEntry.tank == parse_diesel_tank(tank).value)
    return query.order_by(DieselEntry.date.desc(), DieselEntry.created_at.desc()).all()


def diesel_totals(entries: Iterable[DieselEntry]) -> Dict[str, Any]:
    entries = list(entries)
    by_tank = {tank.value: _sum(e.liters for e in entries if e.tank == tank.value) for tank in DieselTank}
    return {"total_liters": _sum(e.liters for e in entries), "by_tank": by_tank}


# ----------------------------------------------------------------------
# Expenses
# ----------------------------------------------------------------------


def create_expense(
    db: Session,
    user_id: str,
    day: dt.date,
    description: Optional[str] = None,
    amount: Any = None,
    receipt_filename: Optional[str] = None,
    time_entry_id: Optional[str] = None,
) -> Expense:
    description = _clean_text(description)
    receipt_filename = _clean_text(receipt_filename)
    if description is None and receipt_filename is None:
        raise ValidationError("Description or receipt is required")
    if time_entry_id and db.get(TimeEntry, time_entry_id) is None:
        raise NotFoundError("Time entry not found")
    expense = Expense(
        user_id=_require_user(user_id),
        date=day,
        description=description,
        amount=None if amount in (None, "") else parse_amount(amount, "Amount"),
        receipt_filename=receipt_filename,
        time_entry_id=time_entry_id or None,
    )
    return _save(db, expense)


def delete_expense(db: Session, expense_id: str) -> None:
    _delete(db, _get(db, Expense, expense_id, "Expense"))


def list_expenses(
    db: Session,
    start_date: dt.date,
    end_date: dt.date,
    user_id: Optional[str] = None,
) -> List[Expense]:
    query = _in_range(db.query(Expense), Expense, start_date, end_date, user_id)
    return query.order_by(Expense.date.desc(), Expense.created_at.desc()).all()


# ----------------------------------------------------------------------
# Day-ticket cash
# ----------------------------------------------------------------------


def create_cash_entry(
    db: Session,
    user_id: str,
    day: dt.date,
    amount: Any,
    description: Optional[str] = None,
    receipt_filename: Optional[str] = None,
) -> CashEntry:
    entry = CashEntry(
        user_id=_require_user(user_id),
        date=day,
        amount=parse_amount(amount, "Amount"),
        description=_clean_text(description),
        receipt_filename=_clean_text(receipt_filename),
    )
    _save(db, entry)
    logger.info("Cash entry for %s: CHF %.2f", entry.user_id, entry.amount)
    return entry


def update_cash_entry(db: Session, entry_id: str, changes: Dict[str, Any]) -> CashEntry:
    entry = _get(db, CashEntry, entry_id, "Cash entry")
    if changes.get("date") is not None:
        entry.date = changes["date"]
    if changes.get("amount") is not None:
        entry.amount = parse_amount(changes["amount"], "Amount")
    if "description" in changes:
        entry.description = _clean_text(changes["description"])
    return _save(db, entry)


def delete_cash_entry(db: Session, entry_id: str) -> None:
    _delete(db, _get(db, CashEntry, entry_id, "Cash entry"))


def list_cash_entries(
    db: Session,
    start_date: dt.date,
    end_date: dt.date,
    user_id: Optional[str] = None,
) -> List[CashEntry]:
    query = _in_range(db.query(CashEntry), CashEntry, start_date, end_date, user_id)
    return query.order_by(CashEntry.date.desc(), CashEntry.created_at.desc()).all()


# ----------------------------------------------------------------------
# Grooming protocols
# ----------------------------------------------------------------------


def _validated_selections(db: Session, selections: Iterable[Tuple[int, str]]) -> List[Tuple[int, str]]:
    cleaned: List[Tuple[int, str]] = []
    for trail_id, style in selections:
        trail = db.get(TrailConfig, trail_id)
        if trail is None:
            raise ValidationError(f"Unknown trail: {trail_id}")
        if style not in grooming_options(trail):
            raise ValidationError(f"Style {style} is not offered on {trail.name}")
        if (trail_id, style) not in cleaned:
            cleaned.append((trail_id, style))
    return cleaned


def get_grooming_protocol(db: Session, user_id: str, day: dt.date) -> Optional[GroomingProtocol]:
    return (
        db.query(GroomingProtocol)
        .filter(GroomingProtocol.user_id == user_id, GroomingProtocol.date == day)
        .one_or_none()
    )


def save_grooming_protocol(
    db: Session,
    user_id: str,
    day: dt.date,
    selections: Iterable[Tuple[int, str]],
    time_entry_id: Optional[str] = None,
) -> GroomingProtocol:
    """Create or replace the user's protocol for ``day``."""
    user_id = _require_user(user_id)
    cleaned = _validated_selections(db, selections)
    protocol = get_grooming_protocol(db, user_id, day)
    if protocol is None:
        protocol = GroomingProtocol(user_id=user_id, date=day)
    if time_entry_id is not None:
        protocol.time_entry_id = time_entry_id or None
    existing = {(item.trail_id, item.style): item for item in protocol.items}
    protocol.items = [
        existing.get((trail_id, style)) or GroomingProtocolItem(trail_id=trail_id, style=style)
        for trail_id, style in cleaned
    ]
    db.add(protocol)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("A grooming protocol for this day already exists") from exc
    db.refresh(protocol)
    logger.info("Grooming protocol for %s on %s: %d runs", user_id, day.isoformat(), len(cleaned))
    return protocol


def delete_grooming_protocol(db: Session, protocol_id: str) -> None:
    _delete(db, _get(db, GroomingProtocol, protocol_id, "Grooming protocol"))


def list_grooming_protocols(
    db: Session,
    start_date: dt.date,
    end_date: dt.date,
    user_id: Optional[str] = None,
) -> List[GroomingProtocol]:
    query = _in_range(db.query(GroomingProtocol), GroomingProtocol, start_date, end_date, user_id)
    return query.order_by(GroomingProtocol.date.desc(), GroomingProtocol.user_id.asc()).all()


def protocol_items(protocol: GroomingProtocol) -> List[Dict[str, Any]]:
    return [
        {
            "trail_id": item.trail_id,
            "trail_name": item.trail.name if item.trail else "",
            "style": item.style,
        }
        for item in protocol.items
    ]


# ----------------------------------------------------------------------
# Season summary
# ----------------------------------------------------------------------


def season_summary(db: Session, label: Optional[str], today: dt.date) -> Dict[str, Any]:
    """Totals of every logbook for one season (current season if ``label`` is unknown)."""
    start_date, end_date = season_dates(label or "", today=today)
    hours = (
        db.query(func.coalesce(func.sum(TimeEntry.total_hours), 0.0))
        .filter(and_(TimeEntry.date >= start_date, TimeEntry.date <= end_date))
        .scalar()
    )
    diesel = diesel_totals(list_diesel_entries(db, start_date, end_date))
    cash = list_cash_entries(db, start_date, end_date)
    expenses = list_expenses(db, start_date, end_date)
    protocols = list_grooming_protocols(db, start_date, end_date)
    return {
        "label": season_label(start_date),
        "start": start_date,
        "end": end_date,
        "total_hours": _sum([hours]),
        "diesel_liters": diesel["total_liters"],
        "diesel_by_tank": diesel["by_tank"],
        "cash_total": _sum(entry.amount for entry in cash),
        "cash_count": len(cash),
        "expense_total": _sum(expense.amount for expense in expenses),
        "expense_count": len(expenses),
        "grooming_days": len(protocols),
        "grooming_runs": sum(len(protocol.items) for protocol in protocols),
    }


# ----------------------------------------------------------------------
# Exports
# ----------------------------------------------------------------------


def _diesel_rows(db: Session, start_date, end_date, user_id) -> Tuple[List[str], List[List[Any]]]:
    names = employee_names(db)
    rows = [
        [entry.date.strftime("%d.%m.%Y"), employee_name(names, entry.user_id), entry.tank, entry.liters]
        for entry in list_diesel_entries(db, start_date, end_date, user_id)
    ]
    return ["Datum", "Mitarbeiter", "Tank", "Liter"], rows


def _expense_rows(db: Session, start_date, end_date, user_id) -> Tuple[List[str], List[List[Any]]]:
    names = employee_names(db)
    rows = [
        [
            expense.date.strftime("%d.%m.%Y"),
            employee_name(names, expense.user_id),
            expense.description or "",
            expense.amount,
            expense.receipt_filename or "",
        ]
        for expense in list_expenses(db, start_date, end_date, user_id)
    ]
    return ["Datum", "Mitarbeiter", "Beschreibung", "Betrag", "Dateiname"], rows


def _cash_rows(db: Session, start_date, end_date, user_id) -> Tuple[List[str], List[List[Any]]]:
    names = employee_names(db)
    rows = [
        [
            entry.date.strftime("%d.%m.%Y"),
            employee_name(names, entry.user_id),
            entry.amount,
            entry.description or "",
        ]
        for entry in list_cash_entries(db, start_date, end_date, user_id)
    ]
    return ["Datum", "Mitarbeiter", "Betrag", "Beschreibung"], rows


def _grooming_rows(db: Session, start_date, end_date, user_id) -> Tuple[List[str], List[List[Any]]]:
    names = employee_names(db)
    columns = [
        (trail.id, style, f"{trail.name} {STYLE_LABELS.get(style, style)}")
        for trail in db.query(TrailConfig).order_by(TrailConfig.sort_order.asc(), TrailConfig.id.asc())
        for style in grooming_options(trail)
    ]
    rows = []
    for protocol in list_grooming_protocols(db, start_date, end_date, user_id):
        done = {(item.trail_id, item.style) for item in protocol.items}
        rows.append(
            [protocol.date.strftime("%d.%m.%Y"), employee_name(names, protocol.user_id)]
            + ["Ja" if (trail_id, style) in done else "Nein" for trail_id, style, _ in columns]
        )
    return ["Datum", "Mitarbeiter"] + [header for _, _, header in columns], rows


EXPORTS = {
    "diesel": ("Diesel", _diesel_rows),
    "expenses": ("Spesen", _expense_rows),
    "cash": ("Kasse", _cash_rows),
    "grooming": ("Loipen", _grooming_rows),
}


def export_records(
    db: Session,
    kind: str,
    export_format: str,
    start_date: dt.date,
    end_date: dt.date,
    user_id: Optional[str] = None,
) -> Tuple[str, bytes, str]:
    if kind not in EXPORTS:
        raise NotFoundError(f"Unknown export: {kind}")
    prefix, build_rows = EXPORTS[kind]
    headers, rows = build_rows(db, start_date, end_date, user_id)
    return render_export(prefix, headers, rows, export_format, start_date, end_date)
