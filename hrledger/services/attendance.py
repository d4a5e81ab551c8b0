from __future__ import annotations

import enum
import logging
from collections import defaultdict
from datetime import date, datetime, time
from functools import lru_cache
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from hrledger.errors import ApiError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from hrledger.models import (
    ATTENDED_STATUSES,
    AttendanceRecord,
    AttendanceStatus,
    Department,
    Employee,
    EmployeeRole,
)
from hrledger.services.directory import (
    WORKFORCE_ROLES,
    department_member_ids,
    get_employee,
    is_active_member,
    managed_department,
)
from hrledger.services.org_day import (
    combine_local,
    is_weekend,
    local_time_of,
    month_range,
    normalize_ts,
    org_day_of,
    org_today,
    parse_hhmm,
    working_days_in_month,
)
from hrledger.settings import get_settings

logger = logging.getLogger("hrledger.attendance")

MANUAL_STATUSES: frozenset[AttendanceStatus] = frozenset(
    {
        AttendanceStatus.PRESENT,
        AttendanceStatus.ABSENT,
        AttendanceStatus.LATE,
        AttendanceStatus.HALF_DAY,
        AttendanceStatus.ON_LEAVE,
    }
)
WEEKEND_NOTE = "Weekend attendance"


class AttendanceWriteError(ApiError):
    def __init__(self) -> None:
        super().__init__(
            status_code=503,
            code="ATTENDANCE_WRITE_FAILED",
            message="Attendance record could not be written, please retry.",
        )


class UpsertOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    EXISTED = "existed"
    FAILED = "failed"


@lru_cache
def _late_cutoff() -> time:
    return parse_hhmm(get_settings().late_cutoff_local)


def resolve_checkin_status(check_in: datetime) -> AttendanceStatus:
    if local_time_of(check_in) >= _late_cutoff():
        return AttendanceStatus.LATE
    return AttendanceStatus.PRESENT


def compute_work_hours(check_in: datetime, check_out: datetime) -> float:
    seconds = (normalize_ts(check_out) - normalize_ts(check_in)).total_seconds()
    return max(0.0, round(seconds / 3600, 2))


def apply_checkout_status(status: AttendanceStatus, work_hours: float) -> AttendanceStatus:
    if status in (AttendanceStatus.PRESENT, AttendanceStatus.LATE):
        if work_hours < get_settings().half_day_threshold_hours:
            return AttendanceStatus.HALF_DAY
    return status


def _dialect_insert(db: Session):  # type: ignore[no-untyped-def]
    dialect_name = db.get_bind().dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert
    if dialect_name == "sqlite":
        return sqlite.insert
    return None


def load_record(db: Session, employee_id: int, day: date) -> AttendanceRecord | None:
    return db.scalar(
        select(AttendanceRecord)
        .where(
            AttendanceRecord.employee_id == employee_id,
            AttendanceRecord.day_date == day,
        )
        .execution_options(populate_existing=True)
    )


def _require_record(db: Session, employee_id: int, day: date) -> AttendanceRecord:
    record = load_record(db, employee_id, day)
    if record is None:
        raise AttendanceWriteError()
    return record


def insert_if_absent(db: Session, *, employee_id: int, day: date, **values: Any) -> UpsertOutcome:
    """Create the (employee, day) record unless one already exists.

    A uniqueness collision means another writer got there first and is reported
    as EXISTED. Does not commit.
    """
    values.setdefault("status", AttendanceStatus.ABSENT)
    values.setdefault("work_hours", 0.0)
    values.setdefault("is_manual", False)
    insert_fn = _dialect_insert(db)
    try:
        with db.begin_nested():
            if insert_fn is not None:
                stmt = (
                    insert_fn(AttendanceRecord)
                    .values(employee_id=employee_id, day_date=day, **values)
                    .on_conflict_do_nothing(index_elements=["employee_id", "day_date"])
                )
                result = db.execute(stmt)
                if not result.rowcount:
                    logger.debug(
                        "attendance_record_exists",
                        extra={"employee_id": employee_id, "day": day.isoformat()},
                    )
                    return UpsertOutcome.EXISTED
            else:
                db.add(AttendanceRecord(employee_id=employee_id, day_date=day, **values))
                db.flush()
    except IntegrityError:
        logger.debug(
            "attendance_record_exists",
            extra={"employee_id": employee_id, "day": day.isoformat()},
        )
        return UpsertOutcome.EXISTED
    except SQLAlchemyError:
        logger.exception(
            "attendance_record_insert_failed",
            extra={"employee_id": employee_id, "day": day.isoformat()},
        )
        return UpsertOutcome.FAILED
    return UpsertOutcome.CREATED


def upsert_status(
    db: Session,
    *,
    employee_id: int,
    day: date,
    status: AttendanceStatus,
    note: str | None,
    marked_by_id: int | None = None,
    is_manual: bool = True,
) -> UpsertOutcome:
    """Put a system status (absent, on-leave, holiday) onto the day.

    Records holding a live check-in are never overwritten, and a record that
    already carries the status is left as is. Does not commit.
    """
    values = {
        "status": status,
        "note": note,
        "marked_by_id": marked_by_id,
        "is_manual": is_manual,
        "check_out": None,
        "work_hours": 0.0,
    }
    outcome = insert_if_absent(db, employee_id=employee_id, day=day, **values)
    if outcome is not UpsertOutcome.EXISTED:
        return outcome

    try:
        result = db.execute(
            update(AttendanceRecord)
            .where(
                AttendanceRecord.employee_id == employee_id,
                AttendanceRecord.day_date == day,
                AttendanceRecord.check_in.is_(None),
                AttendanceRecord.status != status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
    except SQLAlchemyError:
        logger.exception(
            "attendance_record_update_failed",
            extra={"employee_id": employee_id, "day": day.isoformat(), "status": status.value},
        )
        return UpsertOutcome.FAILED
    return UpsertOutcome.UPDATED if result.rowcount else UpsertOutcome.EXISTED


def check_in(db: Session, *, employee: Employee, now: datetime | None = None) -> AttendanceRecord:
    now_utc = normalize_ts(now)
    day = org_day_of(now_utc)
    status = resolve_checkin_status(now_utc)
    note = WEEKEND_NOTE if is_weekend(day) else None

    existing = load_record(db, employee.id, day)
    if existing is not None and existing.check_in is not None:
        raise ConflictError("Already checked in today", code="ALREADY_CHECKED_IN")

    if existing is None:
        outcome = insert_if_absent(
            db,
            employee_id=employee.id,
            day=day,
            check_in=now_utc,
            status=status,
            note=note,
        )
        if outcome is UpsertOutcome.FAILED:
            db.rollback()
            raise AttendanceWriteError()
        if outcome is UpsertOutcome.CREATED:
            db.commit()
            return _require_record(db, employee.id, day)

    # A system-created record (absent, on-leave, holiday) is taken over in place.
    result = db.execute(
        update(AttendanceRecord)
        .where(
            AttendanceRecord.employee_id == employee.id,
            AttendanceRecord.day_date == day,
            AttendanceRecord.check_in.is_(None),
        )
        .values(
            check_in=now_utc,
            check_out=None,
            status=status,
            work_hours=0.0,
            note=note,
            is_manual=False,
            marked_by_id=None,
        )
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        db.rollback()
        raise ConflictError("Already checked in today", code="ALREADY_CHECKED_IN")
    db.commit()
    return _require_record(db, employee.id, day)


def check_out(db: Session, *, employee: Employee, now: datetime | None = None) -> AttendanceRecord:
    now_utc = normalize_ts(now)
    day = org_day_of(now_utc)
    record = load_record(db, employee.id, day)
    if record is None or record.check_in is None:
        raise ConflictError("You have not checked in today", code="NOT_CHECKED_IN")
    if record.check_out is not None:
        raise ConflictError("Already checked out today", code="ALREADY_CHECKED_OUT")

    work_hours = compute_work_hours(record.check_in, now_utc)
    status = apply_checkout_status(record.status, work_hours)
    result = db.execute(
        update(AttendanceRecord)
        .where(
            AttendanceRecord.id == record.id,
            AttendanceRecord.check_out.is_(None),
        )
        .values(check_out=now_utc, work_hours=work_hours, status=status)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        db.rollback()
        raise ConflictError("Already checked out today", code="ALREADY_CHECKED_OUT")
    db.commit()
    return _require_record(db, employee.id, day)


def get_today(db: Session, *, employee_id: int, now: datetime | None = None) -> AttendanceRecord | None:
    return load_record(db, employee_id, org_today(now))


def build_summary(records: Iterable[AttendanceRecord], *, year: int, month: int) -> dict[str, Any]:
    counts: dict[AttendanceStatus, int] = defaultdict(int)
    total_hours = 0.0
    for record in records:
        counts[record.status] += 1
        total_hours += float(record.work_hours or 0)

    working_days = working_days_in_month(year, month)
    attended = sum(counts[status] for status in ATTENDED_STATUSES)
    percentage = round(attended / working_days * 100, 2) if working_days else 0.0
    return {
        "present": counts[AttendanceStatus.PRESENT],
        "late": counts[AttendanceStatus.LATE],
        "half_day": counts[AttendanceStatus.HALF_DAY],
        "absent": counts[AttendanceStatus.ABSENT],
        "on_leave": counts[AttendanceStatus.ON_LEAVE],
        "holiday": counts[AttendanceStatus.HOLIDAY],
        "total_work_hours": round(total_hours, 2),
        "working_days": working_days,
        "attendance_percentage": percentage,
    }


def get_month(
    db: Session,
    *,
    employee_id: int,
    year: int,
    month: int,
) -> tuple[list[AttendanceRecord], dict[str, Any]]:
    start, end = month_range(year, month)
    records = list(
        db.scalars(
            select(AttendanceRecord)
            .where(
                AttendanceRecord.employee_id == employee_id,
                AttendanceRecord.day_date >= start,
                AttendanceRecord.day_date <= end,
            )
            .order_by(AttendanceRecord.day_date.desc())
        ).all()
    )
    return records, build_summary(records, year=year, month=month)


def manual_correction(
    db: Session,
    *,
    actor: Employee,
    employee_id: int,
    day: date,
    status: AttendanceStatus,
    check_in_time: str | None = None,
    check_out_time: str | None = None,
    note: str | None = None,
    now: datetime | None = None,
) -> AttendanceRecord:
    if status not in MANUAL_STATUSES:
        raise ValidationError("Invalid status value", code="INVALID_STATUS")
    if day > org_today(now):
        raise ValidationError("Cannot mark attendance for future dates", code="FUTURE_DATE")

    employee = get_employee(db, employee_id)
    if not is_active_member(employee):
        raise ValidationError("Employee is not active", code="EMPLOYEE_INACTIVE")
    if employee.role in (EmployeeRole.ADMIN, EmployeeRole.HR):
        raise ForbiddenError("Cannot mark attendance for admin or HR users")

    values: dict[str, Any] = {
        "status": status,
        "is_manual": True,
        "marked_by_id": actor.id,
        "note": note or None,
    }
    existing = load_record(db, employee_id, day)
    if status in (AttendanceStatus.ABSENT, AttendanceStatus.ON_LEAVE):
        values.update(check_in=None, check_out=None, work_hours=0.0)
    else:
        in_ts = combine_local(day, check_in_time)
        out_ts = combine_local(day, check_out_time)
        if in_ts is not None:
            values["check_in"] = in_ts
        if out_ts is not None:
            values["check_out"] = out_ts
        # A single supplied time is checked against the stored other half.
        effective_in = in_ts or (existing.check_in if existing is not None else None)
        effective_out = out_ts or (existing.check_out if existing is not None else None)
        if effective_in is not None and effective_out is not None:
            if normalize_ts(effective_out) < normalize_ts(effective_in):
                raise ValidationError(
                    "Check-out time must not be before check-in time",
                    code="INVALID_TIME_RANGE",
                )
            values["work_hours"] = compute_work_hours(effective_in, effective_out)

    outcome = insert_if_absent(db, employee_id=employee_id, day=day, **values)
    if outcome is UpsertOutcome.FAILED:
        db.rollback()
        raise AttendanceWriteError()
    if outcome is UpsertOutcome.EXISTED:
        db.execute(
            update(AttendanceRecord)
            .where(
                AttendanceRecord.employee_id == employee_id,
                AttendanceRecord.day_date == day,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
    db.commit()
    record = _require_record(db, employee_id, day)
    logger.info(
        "attendance_manual_correction",
        extra={
            "employee_id": employee_id,
            "day": day.isoformat(),
            "status": status.value,
            "marked_by": actor.id,
        },
    )
    return record


def _paginate(page: int, limit: int) -> tuple[int, int]:
    page = max(1, page)
    limit = min(100, max(1, limit))
    return page, limit


def _date_window(day: date | None, year: int | None, month: int | None, now: datetime | None) -> tuple[date, date]:
    if day is not None:
        return day, day
    today = org_today(now)
    return month_range(year or today.year, month or today.month)


def list_records(
    db: Session,
    *,
    day: date | None = None,
    year: int | None = None,
    month: int | None = None,
    department_id: int | None = None,
    status: AttendanceStatus | None = None,
    employee_id: int | None = None,
    role: EmployeeRole | None = None,
    page: int = 1,
    limit: int = 20,
    now: datetime | None = None,
) -> dict[str, Any]:
    start, end = _date_window(day, year, month, now)
    page, limit = _paginate(page, limit)

    conditions = [AttendanceRecord.day_date >= start, AttendanceRecord.day_date <= end]
    if status is not None:
        conditions.append(AttendanceRecord.status == status)
    if employee_id is not None:
        conditions.append(AttendanceRecord.employee_id == employee_id)
    if department_id is not None:
        conditions.append(Employee.department_id == department_id)

    base = select(AttendanceRecord).join(Employee, Employee.id == AttendanceRecord.employee_id).where(*conditions)

    role_counts_rows = db.execute(
        select(Employee.role, func.count(AttendanceRecord.id))
        .join(Employee, Employee.id == AttendanceRecord.employee_id)
        .where(*conditions)
        .group_by(Employee.role)
    ).all()
    role_counts = {row[0].value: int(row[1]) for row in role_counts_rows}

    if role is not None and role in WORKFORCE_ROLES:
        base = base.where(Employee.role == role)

    total = int(db.scalar(select(func.count()).select_from(base.subquery())) or 0)
    records = list(
        db.scalars(
            base.order_by(AttendanceRecord.day_date.desc(), AttendanceRecord.employee_id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
    )
    return {
        "count": total,
        "total_pages": (total + limit - 1) // limit,
        "current_page": page,
        "records": records,
        "role_counts": role_counts,
    }


def team_records(
    db: Session,
    *,
    manager: Employee,
    day: date | None = None,
    year: int | None = None,
    month: int | None = None,
    status: AttendanceStatus | None = None,
    page: int = 1,
    limit: int = 20,
    now: datetime | None = None,
) -> dict[str, Any]:
    department = managed_department(db, manager.id)
    if department is None:
        raise NotFoundError("You are not assigned as manager of any department", code="DEPARTMENT_NOT_FOUND")

    member_ids = department_member_ids(db, department.id)
    start, end = _date_window(day, year, month, now)
    page, limit = _paginate(page, limit)

    conditions = [
        AttendanceRecord.employee_id.in_(member_ids),
        AttendanceRecord.day_date >= start,
        AttendanceRecord.day_date <= end,
    ]
    if status is not None:
        conditions.append(AttendanceRecord.status == status)

    matching = list(db.scalars(select(AttendanceRecord).where(*conditions)).all())
    page_records = list(
        db.scalars(
            select(AttendanceRecord)
            .where(*conditions)
            .order_by(AttendanceRecord.day_date.desc(), AttendanceRecord.employee_id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
    )
    total_hours = sum(float(item.work_hours or 0) for item in matching)
    return {
        "count": len(matching),
        "total_pages": (len(matching) + limit - 1) // limit,
        "current_page": page,
        "records": page_records,
        "department": {"id": department.id, "name": department.name, "code": department.code},
        "summary": {
            "total": len(member_ids),
            "present": sum(1 for item in matching if item.status == AttendanceStatus.PRESENT),
            "absent": sum(1 for item in matching if item.status == AttendanceStatus.ABSENT),
            "late": sum(1 for item in matching if item.status == AttendanceStatus.LATE),
            "half_day": sum(1 for item in matching if item.status == AttendanceStatus.HALF_DAY),
            "avg_hours": round(total_hours / len(matching), 2) if matching else 0.0,
        },
    }


def employee_month(
    db: Session,
    *,
    viewer: Employee,
    employee_id: int,
    year: int,
    month: int,
) -> tuple[Employee, list[AttendanceRecord], dict[str, Any]]:
    employee = get_employee(db, employee_id)
    if employee.role not in WORKFORCE_ROLES:
        raise ValidationError("Can only view attendance for employees or managers", code="INVALID_EMPLOYEE_ROLE")

    if viewer.role == EmployeeRole.MANAGER:
        department = managed_department(db, viewer.id)
        if department is None or employee.department_id != department.id:
            raise ForbiddenError("Access denied: employee not in your department")

    records, summary = get_month(db, employee_id=employee_id, year=year, month=month)
    return employee, records, summary


def department_summary(db: Session, *, year: int, month: int) -> dict[str, Any]:
    start, end = month_range(year, month)
    rows = db.execute(
        select(AttendanceRecord, Employee.department_id, Department.name, Employee.full_name)
        .join(Employee, Employee.id == AttendanceRecord.employee_id)
        .outerjoin(Department, Department.id == Employee.department_id)
        .where(
            AttendanceRecord.day_date >= start,
            AttendanceRecord.day_date <= end,
        )
    ).all()

    def _bucket() -> dict[str, Any]:
        return {
            "total_records": 0,
            "present": 0,
            "absent": 0,
            "late": 0,
            "half_day": 0,
            "on_leave": 0,
            "total_work_hours": 0.0,
            "employees": set(),
        }

    status_keys = {
        AttendanceStatus.PRESENT: "present",
        AttendanceStatus.ABSENT: "absent",
        AttendanceStatus.LATE: "late",
        AttendanceStatus.HALF_DAY: "half_day",
        AttendanceStatus.ON_LEAVE: "on_leave",
    }
    by_department: dict[int | None, dict[str, Any]] = defaultdict(_bucket)
    department_names: dict[int | None, str | None] = {}
    overall = _bucket()
    hours_by_employee: dict[int, float] = defaultdict(float)
    names_by_employee: dict[int, str] = {}

    for record, department_id, department_name, full_name in rows:
        department_names[department_id] = department_name
        for bucket in (by_department[department_id], overall):
            bucket["total_records"] += 1
            key = status_keys.get(record.status)
            if key is not None:
                bucket[key] += 1
            bucket["total_work_hours"] += float(record.work_hours or 0)
            bucket["employees"].add(record.employee_id)
        hours_by_employee[record.employee_id] += float(record.work_hours or 0)
        names_by_employee[record.employee_id] = full_name

    def _finish(bucket: dict[str, Any]) -> dict[str, Any]:
        attended = bucket["present"] + bucket["late"] + bucket["half_day"]
        total = bucket["total_records"]
        result = {key: value for key, value in bucket.items() if key != "employees"}
        result["total_employees"] = len(bucket["employees"])
        result["total_work_hours"] = round(bucket["total_work_hours"], 2)
        result["attendance_percentage"] = round(attended / total * 100, 2) if total else 0.0
        return result

    departments = [
        {"department_id": department_id, "department_name": department_names.get(department_id), **_finish(bucket)}
        for department_id, bucket in by_department.items()
    ]
    departments.sort(key=lambda item: item["department_name"] or "")

    top = sorted(hours_by_employee.items(), key=lambda item: item[1], reverse=True)[:5]
    return {
        "year": year,
        "month": month,
        "departments": departments,
        "overall": _finish(overall),
        "top_attendees": [
            {"employee_id": employee_id, "full_name": names_by_employee.get(employee_id), "total_work_hours": round(hours, 2)}
            for employee_id, hours in top
        ],
    }
