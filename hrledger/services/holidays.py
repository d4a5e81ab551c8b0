from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hrledger.errors import ConflictError, NotFoundError, ValidationError
from hrledger.models import AttendanceRecord, AttendanceStatus, Holiday, HolidayType
from hrledger.services.org_day import org_today

logger = logging.getLogger("hrledger.holidays")

RECURRING_YEARS_AHEAD = 2
BULK_CREATE_LIMIT = 20
HOLIDAY_REVERT_NOTE = "Holiday cancelled - reverted to absent"


def _same_day_in_year(day: date, year: int) -> date | None:
    try:
        return day.replace(year=year)
    except ValueError:
        # 29 February has no counterpart in common years.
        return None


def _clean_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Holiday name is required", code="HOLIDAY_NAME_REQUIRED")
    return cleaned


def _row_on(db: Session, day: date) -> Holiday | None:
    return db.scalar(select(Holiday).where(Holiday.day_date == day))


def _place(
    db: Session,
    row: Holiday | None,
    *,
    name: str,
    day: date,
    holiday_type: HolidayType,
    description: str | None,
    is_recurring: bool,
    created_by_id: int | None,
) -> Holiday:
    # A deactivated row keeps its date, so it is reused instead of inserting a duplicate.
    holiday = row if row is not None else Holiday(day_date=day)
    holiday.name = name
    holiday.day_date = day
    holiday.year = day.year
    holiday.holiday_type = holiday_type
    holiday.description = (description or "").strip() or None
    holiday.is_recurring = is_recurring
    holiday.is_active = True
    holiday.created_by_id = created_by_id
    db.add(holiday)
    return holiday


def _revert_day(db: Session, day: date) -> int:
    result = db.execute(
        update(AttendanceRecord)
        .where(
            AttendanceRecord.day_date == day,
            AttendanceRecord.status == AttendanceStatus.HOLIDAY,
        )
        .values(status=AttendanceStatus.ABSENT, note=HOLIDAY_REVERT_NOTE)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def get_holiday(db: Session, holiday_id: int) -> Holiday:
    holiday = db.get(Holiday, holiday_id)
    if holiday is None:
        raise NotFoundError("Holiday not found", code="HOLIDAY_NOT_FOUND")
    return holiday


def create_holiday(
    db: Session,
    *,
    name: str,
    day: date,
    holiday_type: HolidayType = HolidayType.NATIONAL,
    description: str | None = None,
    is_recurring: bool = False,
    created_by_id: int | None = None,
) -> list[Holiday]:
    cleaned_name = _clean_name(name)

    existing = _row_on(db, day)
    if existing is not None and existing.is_active:
        raise ConflictError(
            f"A holiday already exists on this date: {existing.name}",
            code="HOLIDAY_EXISTS",
        )

    fields: dict[str, Any] = {
        "name": cleaned_name,
        "holiday_type": holiday_type,
        "description": description,
        "is_recurring": is_recurring,
        "created_by_id": created_by_id,
    }
    created = [_place(db, existing, day=day, **fields)]
    if is_recurring:
        for offset in range(1, RECURRING_YEARS_AHEAD + 1):
            future_day = _same_day_in_year(day, day.year + offset)
            if future_day is None:
                continue
            future_row = _row_on(db, future_day)
            if future_row is None or not future_row.is_active:
                created.append(_place(db, future_row, day=future_day, **fields))

    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("A holiday already exists on this date", code="HOLIDAY_EXISTS") from exc
    for holiday in created:
        db.refresh(holiday)
    logger.info(
        "holiday_created",
        extra={"holiday_name": cleaned_name, "days": [item.day_date.isoformat() for item in created]},
    )
    return created


def bulk_create_holidays(
    db: Session,
    *,
    items: Iterable[dict[str, Any]],
    created_by_id: int | None = None,
) -> tuple[list[Holiday], list[str]]:
    """Create many one-off holidays; taken dates and nameless entries are skipped, not fatal."""
    entries = list(items)
    if not entries:
        raise ValidationError("At least one holiday is required", code="HOLIDAYS_REQUIRED")
    if len(entries) > BULK_CREATE_LIMIT:
        raise ValidationError(
            f"At most {BULK_CREATE_LIMIT} holidays can be created at once",
            code="BULK_LIMIT_EXCEEDED",
        )

    created: list[Holiday] = []
    skipped_dates: list[str] = []
    seen: set[date] = set()
    for item in entries:
        day: date = item["day_date"]
        name = (item.get("name") or "").strip()
        if not name or day in seen:
            skipped_dates.append(day.isoformat())
            continue
        existing = _row_on(db, day)
        if existing is not None and existing.is_active:
            skipped_dates.append(day.isoformat())
            continue
        seen.add(day)
        created.append(
            _place(
                db,
                existing,
                name=name,
                day=day,
                holiday_type=item.get("holiday_type") or HolidayType.NATIONAL,
                description=item.get("description"),
                is_recurring=False,
                created_by_id=created_by_id,
            )
        )

    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("A holiday already exists on one of these dates", code="HOLIDAY_EXISTS") from exc
    for holiday in created:
        db.refresh(holiday)
    logger.info(
        "holidays_bulk_created",
        extra={"created_count": len(created), "skipped_dates": skipped_dates},
    )
    return created, skipped_dates


def update_holiday(
    db: Session,
    *,
    holiday_id: int,
    name: str | None = None,
    day: date | None = None,
    holiday_type: HolidayType | None = None,
    description: str | None = None,
    is_recurring: bool | None = None,
    is_active: bool | None = None,
    now: datetime | None = None,
) -> tuple[Holiday, int]:
    """Edit a holiday in place. Returns the holiday and how many attendance records fell back to absent."""
    holiday = get_holiday(db, holiday_id)
    today = org_today(now)
    reverted = 0

    if day is not None and day != holiday.day_date:
        other = _row_on(db, day)
        if other is not None and other.is_active:
            raise ConflictError(
                f"Another holiday already exists on this date: {other.name}",
                code="HOLIDAY_EXISTS",
            )
        if other is not None:
            db.delete(other)
            db.flush()
        if holiday.is_active and holiday.day_date >= today:
            reverted += _revert_day(db, holiday.day_date)
        holiday.day_date = day
        holiday.year = day.year

    if name is not None:
        holiday.name = _clean_name(name)
    if holiday_type is not None:
        holiday.holiday_type = holiday_type
    if description is not None:
        holiday.description = description.strip() or None
    if is_recurring is not None:
        holiday.is_recurring = is_recurring

    if is_active is False and holiday.is_active:
        if holiday.day_date >= today:
            reverted += _revert_day(db, holiday.day_date)
        holiday.is_active = False
    elif is_active is True:
        holiday.is_active = True

    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError("A holiday already exists on this date", code="HOLIDAY_EXISTS") from exc
    db.refresh(holiday)
    logger.info(
        "holiday_updated",
        extra={
            "holiday_id": holiday.id,
            "day": holiday.day_date.isoformat(),
            "is_active": holiday.is_active,
            "reverted_records": reverted,
        },
    )
    return holiday, reverted


def list_holidays(
    db: Session,
    *,
    year: int | None = None,
    holiday_type: HolidayType | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict[str, Any]:
    page = max(1, page)
    limit = min(100, max(1, limit))
    stmt = select(Holiday).where(Holiday.is_active.is_(True))
    if year is not None:
        stmt = stmt.where(Holiday.year == year)
    if holiday_type is not None:
        stmt = stmt.where(Holiday.holiday_type == holiday_type)

    total = int(db.scalar(select(func.count()).select_from(stmt.subquery())) or 0)
    holidays = list(
        db.scalars(stmt.order_by(Holiday.day_date.asc()).offset((page - 1) * limit).limit(limit)).all()
    )
    return {
        "count": total,
        "total_pages": (total + limit - 1) // limit,
        "current_page": page,
        "holidays": holidays,
    }


def upcoming_holidays(db: Session, *, limit: int = 5, now: datetime | None = None) -> list[Holiday]:
    today = org_today(now)
    return list(
        db.scalars(
            select(Holiday)
            .where(Holiday.is_active.is_(True), Holiday.day_date >= today)
            .order_by(Holiday.day_date.asc())
            .limit(max(1, min(limit, 50)))
        ).all()
    )


def deactivate_holiday(db: Session, *, holiday_id: int, now: datetime | None = None) -> tuple[Holiday, int]:
    """Soft-delete a holiday; future days already marked holiday fall back to absent.

    The row stays for history and is reused if the date is registered again.
    """
    holiday = get_holiday(db, holiday_id)

    reverted = 0
    if holiday.is_active and holiday.day_date >= org_today(now):
        reverted = _revert_day(db, holiday.day_date)

    holiday.is_active = False
    db.commit()
    db.refresh(holiday)
    logger.info(
        "holiday_deactivated",
        extra={"holiday_id": holiday.id, "day": holiday.day_date.isoformat(), "reverted_records": reverted},
    )
    return holiday, reverted
