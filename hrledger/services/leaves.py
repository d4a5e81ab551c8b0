from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from hrledger.errors import ConflictError, ForbiddenError, InsufficientBalanceError, NotFoundError, ValidationError
from hrledger.models import (
    OPEN_LEAVE_STATUSES,
    PAID_LEAVE_TYPES,
    AttendanceRecord,
    AttendanceStatus,
    Department,
    Employee,
    LeaveApplication,
    LeaveStatus,
    LeaveType,
)
from hrledger.services import leave_balances
from hrledger.services.approvals import ensure_can_review, ensure_can_view, pending_scope
from hrledger.services.attendance import AttendanceWriteError, UpsertOutcome, upsert_status
from hrledger.services.org_day import (
    is_working_day,
    iter_days,
    month_range,
    normalize_ts,
    org_today,
    working_days_between,
)

logger = logging.getLogger("hrledger.leaves")

REASON_MIN_LENGTH = 10
REASON_MAX_LENGTH = 500
REJECTION_REASON_MAX_LENGTH = 300
CANCEL_REVERT_NOTE = "Leave cancelled - reverted"


def calculate_leave_days(from_date: date, to_date: date, *, is_half_day: bool = False) -> float:
    if is_half_day:
        return 0.5
    return float(working_days_between(from_date, to_date))


def balance_year(application: LeaveApplication) -> int:
    return application.from_date.year


def _get_application(db: Session, application_id: int) -> LeaveApplication:
    application = db.get(LeaveApplication, application_id, populate_existing=True)
    if application is None:
        raise NotFoundError("Leave application not found", code="LEAVE_NOT_FOUND")
    return application


def _transition(
    db: Session,
    application: LeaveApplication,
    *,
    expected: LeaveStatus,
    target: LeaveStatus,
    **values: Any,
) -> None:
    result = db.execute(
        update(LeaveApplication)
        .where(
            LeaveApplication.id == application.id,
            LeaveApplication.status == expected,
        )
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        db.rollback()
        raise ConflictError(
            "Leave application was changed by another request, reload and retry",
            code="LEAVE_STATE_CHANGED",
        )


def _lock_applicant(db: Session, employee_id: int) -> None:
    # Serializes applications and approvals for one employee.
    db.scalar(select(Employee.id).where(Employee.id == employee_id).with_for_update())


def _overlapping_leave_id(
    db: Session,
    *,
    employee_id: int,
    from_date: date,
    to_date: date,
    statuses: Iterable[LeaveStatus],
    exclude_id: int | None = None,
) -> int | None:
    stmt = select(LeaveApplication.id).where(
        LeaveApplication.employee_id == employee_id,
        LeaveApplication.status.in_(statuses),
        LeaveApplication.from_date <= to_date,
        LeaveApplication.to_date >= from_date,
    )
    if exclude_id is not None:
        stmt = stmt.where(LeaveApplication.id != exclude_id)
    return db.scalar(stmt.limit(1))


def apply_leave(
    db: Session,
    *,
    employee: Employee,
    leave_type: LeaveType,
    from_date: date,
    to_date: date,
    reason: str,
    is_half_day: bool = False,
    now: datetime | None = None,
) -> LeaveApplication:
    cleaned_reason = (reason or "").strip()
    if len(cleaned_reason) < REASON_MIN_LENGTH:
        raise ValidationError(f"Reason must be at least {REASON_MIN_LENGTH} characters", code="REASON_TOO_SHORT")
    if len(cleaned_reason) > REASON_MAX_LENGTH:
        raise ValidationError(f"Reason cannot exceed {REASON_MAX_LENGTH} characters", code="REASON_TOO_LONG")

    today = org_today(now)
    if from_date < today:
        raise ValidationError("From date cannot be in the past", code="LEAVE_START_IN_PAST")
    if to_date < from_date:
        raise ValidationError("To date must be on or after from date", code="INVALID_DATE_RANGE")
    if is_half_day and from_date != to_date:
        raise ValidationError("Half-day leave must start and end on the same date", code="INVALID_HALF_DAY")

    total_days = calculate_leave_days(from_date, to_date, is_half_day=is_half_day)
    if total_days <= 0:
        raise ValidationError("Selected dates may only contain Sundays.", code="NO_WORKING_DAYS")

    _lock_applicant(db, employee.id)
    overlapping_id = _overlapping_leave_id(
        db,
        employee_id=employee.id,
        from_date=from_date,
        to_date=to_date,
        statuses=OPEN_LEAVE_STATUSES,
    )
    if overlapping_id is not None:
        db.rollback()
        raise ConflictError(
            "You already have a leave application overlapping these dates",
            code="LEAVE_OVERLAP",
            details={"leave_id": overlapping_id},
        )

    if leave_type in PAID_LEAVE_TYPES:
        available = leave_balances.available(
            db,
            employee_id=employee.id,
            year=from_date.year,
            leave_type=leave_type,
        )
        if available < total_days:
            db.rollback()
            raise InsufficientBalanceError(leave_type=leave_type.value, requested=total_days, available=available)

    application = LeaveApplication(
        employee_id=employee.id,
        leave_type=leave_type,
        from_date=from_date,
        to_date=to_date,
        total_days=total_days,
        reason=cleaned_reason,
        is_half_day=is_half_day,
        status=LeaveStatus.PENDING,
        applied_at=normalize_ts(now),
    )
    db.add(application)
    db.commit()
    db.refresh(application)
    logger.info(
        "leave_applied",
        extra={
            "leave_id": application.id,
            "employee_id": employee.id,
            "leave_type": leave_type.value,
            "total_days": total_days,
        },
    )
    return application


def propagate_leave(
    db: Session,
    application: LeaveApplication,
    *,
    note: str,
    marked_by_id: int | None,
    days: list[date] | None = None,
) -> dict[UpsertOutcome, int]:
    """Write on-leave onto every working day of the application. Does not commit."""
    counts: dict[UpsertOutcome, int] = defaultdict(int)
    target_days = days if days is not None else list(iter_days(application.from_date, application.to_date))
    for day in target_days:
        if not is_working_day(day):
            continue
        outcome = upsert_status(
            db,
            employee_id=application.employee_id,
            day=day,
            status=AttendanceStatus.ON_LEAVE,
            note=note,
            marked_by_id=marked_by_id,
            is_manual=True,
        )
        counts[outcome] += 1
    return counts


def _revert_leave_days(db: Session, application: LeaveApplication, *, today: date, marked_by_id: int) -> int:
    days = [
        day
        for day in iter_days(max(application.from_date, today), application.to_date)
        if is_working_day(day)
    ]
    if not days:
        return 0
    result = db.execute(
        update(AttendanceRecord)
        .where(
            AttendanceRecord.employee_id == application.employee_id,
            AttendanceRecord.day_date.in_(days),
            AttendanceRecord.status == AttendanceStatus.ON_LEAVE,
        )
        .values(
            status=AttendanceStatus.ABSENT,
            note=CANCEL_REVERT_NOTE,
            is_manual=True,
            marked_by_id=marked_by_id,
            work_hours=0.0,
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def cancel_leave(
    db: Session,
    *,
    employee: Employee,
    application_id: int,
    now: datetime | None = None,
) -> LeaveApplication:
    application = _get_application(db, application_id)
    if application.employee_id != employee.id:
        raise ForbiddenError("You can only cancel your own leave applications")
    if application.status in (LeaveStatus.REJECTED, LeaveStatus.CANCELLED):
        raise ConflictError(
            f"Cannot cancel a leave application that is already {application.status.value}",
            code="LEAVE_NOT_CANCELLABLE",
        )

    today = org_today(now)
    previous_status = application.status
    if previous_status == LeaveStatus.APPROVED and application.from_date <= today:
        raise ConflictError("Cannot cancel an approved leave that has already started", code="LEAVE_ALREADY_STARTED")

    _transition(db, application, expected=previous_status, target=LeaveStatus.CANCELLED)

    reverted_days = 0
    if previous_status == LeaveStatus.APPROVED:
        leave_balances.adjust(
            db,
            employee_id=application.employee_id,
            year=balance_year(application),
            leave_type=application.leave_type,
            used_delta=-float(application.total_days),
        )
        if application.attendance_marked:
            reverted_days = _revert_leave_days(db, application, today=today, marked_by_id=employee.id)

    db.commit()
    logger.info(
        "leave_cancelled",
        extra={
            "leave_id": application.id,
            "employee_id": employee.id,
            "previous_status": previous_status.value,
            "reverted_days": reverted_days,
        },
    )
    return _get_application(db, application_id)


def review_leave(
    db: Session,
    *,
    reviewer: Employee,
    application_id: int,
    action: str,
    rejection_reason: str | None = None,
    now: datetime | None = None,
) -> LeaveApplication:
    if action not in ("approve", "reject"):
        raise ValidationError("Action must be approve or reject", code="INVALID_REVIEW_ACTION")

    application = _get_application(db, application_id)
    if application.status != LeaveStatus.PENDING:
        raise ConflictError(
            f"Leave application is already {application.status.value}",
            code="LEAVE_NOT_PENDING",
        )
    ensure_can_review(db, reviewer=reviewer, application=application)

    reviewed_at = normalize_ts(now)
    if action == "reject":
        cleaned = (rejection_reason or "").strip()
        if not cleaned:
            raise ValidationError("Rejection reason is required", code="REJECTION_REASON_REQUIRED")
        if len(cleaned) > REJECTION_REASON_MAX_LENGTH:
            raise ValidationError(
                f"Rejection reason cannot exceed {REJECTION_REASON_MAX_LENGTH} characters",
                code="REJECTION_REASON_TOO_LONG",
            )
        _transition(
            db,
            application,
            expected=LeaveStatus.PENDING,
            target=LeaveStatus.REJECTED,
            reviewed_by_id=reviewer.id,
            reviewed_at=reviewed_at,
            rejection_reason=cleaned,
        )
        db.commit()
        logger.info(
            "leave_rejected",
            extra={"leave_id": application.id, "reviewer_id": reviewer.id},
        )
        return _get_application(db, application_id)

    _lock_applicant(db, application.employee_id)
    approved_overlap_id = _overlapping_leave_id(
        db,
        employee_id=application.employee_id,
        from_date=application.from_date,
        to_date=application.to_date,
        statuses=(LeaveStatus.APPROVED,),
        exclude_id=application.id,
    )
    if approved_overlap_id is not None:
        db.rollback()
        raise ConflictError(
            "Employee already has an approved leave overlapping these dates",
            code="LEAVE_OVERLAP",
            details={"leave_id": approved_overlap_id},
        )

    _transition(
        db,
        application,
        expected=LeaveStatus.PENDING,
        target=LeaveStatus.APPROVED,
        reviewed_by_id=reviewer.id,
        reviewed_at=reviewed_at,
        attendance_marked=True,
    )
    try:
        leave_balances.try_deduct(
            db,
            employee_id=application.employee_id,
            year=balance_year(application),
            leave_type=application.leave_type,
            amount=float(application.total_days),
        )
    except InsufficientBalanceError:
        db.rollback()
        raise

    counts = propagate_leave(
        db,
        application,
        note=f"Approved leave - {application.leave_type.value}",
        marked_by_id=reviewer.id,
    )
    if counts.get(UpsertOutcome.FAILED):
        db.rollback()
        raise AttendanceWriteError()

    db.commit()
    logger.info(
        "leave_approved",
        extra={
            "leave_id": application.id,
            "reviewer_id": reviewer.id,
            "total_days": application.total_days,
            "propagated": {key.value: value for key, value in counts.items()},
        },
    )
    return _get_application(db, application_id)


def _page_bounds(page: int, limit: int) -> tuple[int, int]:
    return max(1, page), min(100, max(1, limit))


def _paged(db: Session, stmt, *, page: int, limit: int) -> dict[str, Any]:  # type: ignore[no-untyped-def]
    page, limit = _page_bounds(page, limit)
    total = int(db.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0)
    items = list(db.scalars(stmt.offset((page - 1) * limit).limit(limit)).all())
    return {
        "count": total,
        "total_pages": (total + limit - 1) // limit,
        "current_page": page,
        "leaves": items,
    }


def list_my_leaves(
    db: Session,
    *,
    employee: Employee,
    status: LeaveStatus | None = None,
    year: int | None = None,
    page: int = 1,
    limit: int = 10,
    now: datetime | None = None,
) -> dict[str, Any]:
    stmt = select(LeaveApplication).where(LeaveApplication.employee_id == employee.id)
    if status is not None:
        stmt = stmt.where(LeaveApplication.status == status)
    if year is not None:
        stmt = stmt.where(
            LeaveApplication.applied_at >= datetime(year, 1, 1, tzinfo=timezone.utc),
            LeaveApplication.applied_at < datetime(year + 1, 1, 1, tzinfo=timezone.utc),
        )
    result = _paged(db, stmt.order_by(LeaveApplication.applied_at.desc()), page=page, limit=limit)
    result["balance"] = leave_balances.snapshot(db, employee_id=employee.id, year=org_today(now).year)
    db.commit()
    return result


def get_leave(db: Session, *, viewer: Employee, application_id: int) -> LeaveApplication:
    application = _get_application(db, application_id)
    ensure_can_view(db, viewer=viewer, application=application)
    return application


def list_pending(
    db: Session,
    *,
    viewer: Employee,
    department_id: int | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict[str, Any]:
    scope = pending_scope(db, viewer=viewer, department_id=department_id)
    stmt = select(LeaveApplication).where(LeaveApplication.status == LeaveStatus.PENDING)
    if scope is not None:
        stmt = stmt.where(LeaveApplication.employee_id.in_(scope))
    return _paged(
        db,
        stmt.order_by(LeaveApplication.applied_at.asc(), LeaveApplication.id.asc()),
        page=page,
        limit=limit,
    )


def list_all(
    db: Session,
    *,
    status: LeaveStatus | None = None,
    employee_id: int | None = None,
    leave_type: LeaveType | None = None,
    year: int | None = None,
    month: int | None = None,
    department_id: int | None = None,
    page: int = 1,
    limit: int = 15,
) -> dict[str, Any]:
    stmt = select(LeaveApplication)
    if status is not None:
        stmt = stmt.where(LeaveApplication.status == status)
    if employee_id is not None:
        stmt = stmt.where(LeaveApplication.employee_id == employee_id)
    if leave_type is not None:
        stmt = stmt.where(LeaveApplication.leave_type == leave_type)
    if year is not None and month is not None:
        start, end = month_range(year, month)
        stmt = stmt.where(LeaveApplication.from_date >= start, LeaveApplication.from_date <= end)
    elif year is not None:
        stmt = stmt.where(LeaveApplication.from_date >= date(year, 1, 1), LeaveApplication.from_date <= date(year, 12, 31))
    if department_id is not None:
        stmt = stmt.join(Employee, Employee.id == LeaveApplication.employee_id).where(
            Employee.department_id == department_id
        )
    return _paged(db, stmt.order_by(LeaveApplication.applied_at.desc()), page=page, limit=limit)


def leave_stats(
    db: Session,
    *,
    year: int,
    month: int,
    department_id: int | None = None,
) -> dict[str, Any]:
    start, end = month_range(year, month)
    rows = db.execute(
        select(LeaveApplication.status, LeaveApplication.leave_type, Employee.department_id, Department.name)
        .join(Employee, Employee.id == LeaveApplication.employee_id)
        .outerjoin(Department, Department.id == Employee.department_id)
        .where(
            LeaveApplication.from_date <= end,
            LeaveApplication.to_date >= start,
        )
    ).all()
    if department_id is not None:
        rows = [row for row in rows if row[2] == department_id]

    by_status = {item.value: 0 for item in LeaveStatus}
    by_type = {item.value: 0 for item in LeaveType}
    departments: dict[int | None, dict[str, Any]] = {}
    for leave_status, leave_type, row_department_id, department_name in rows:
        by_status[leave_status.value] += 1
        by_type[leave_type.value] += 1
        if department_id is None:
            bucket = departments.setdefault(
                row_department_id,
                {"department_id": row_department_id, "department_name": department_name, "total": 0},
            )
            bucket["total"] += 1
            bucket[leave_status.value] = bucket.get(leave_status.value, 0) + 1

    return {
        "year": year,
        "month": month,
        "total": len(rows),
        "by_status": by_status,
        "by_type": by_type,
        "department_wise": sorted(departments.values(), key=lambda item: item["department_name"] or ""),
    }
