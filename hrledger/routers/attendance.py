from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from hrledger.audit import audit_request
from hrledger.db import get_db
from hrledger.models import AttendanceStatus, Employee, EmployeeRole
from hrledger.schemas import (
    AttendanceListResponse,
    AttendanceMonthResponse,
    AttendanceRecordRead,
    AttendanceSummaryRead,
    AttendanceTodayResponse,
    EmployeeAttendanceResponse,
    EmployeeBrief,
    ManualAttendanceRequest,
    TeamAttendanceResponse,
)
from hrledger.security import require_roles
from hrledger.services import attendance as attendance_service
from hrledger.services.org_day import org_today

router = APIRouter(tags=["attendance"])

require_workforce = require_roles(EmployeeRole.EMPLOYEE, EmployeeRole.MANAGER)
require_manager = require_roles(EmployeeRole.MANAGER)
require_hr_or_admin = require_roles(EmployeeRole.HR, EmployeeRole.ADMIN)
require_attendance_viewer = require_roles(EmployeeRole.HR, EmployeeRole.ADMIN, EmployeeRole.MANAGER)


def _resolve_month(year: int | None, month: int | None) -> tuple[int, int]:
    today = org_today()
    return year or today.year, month or today.month


@router.post("/api/attendance/checkin", response_model=AttendanceRecordRead)
def checkin(
    request: Request,
    employee: Employee = Depends(require_workforce),
    db: Session = Depends(get_db),
) -> AttendanceRecordRead:
    record = attendance_service.check_in(db, employee=employee)
    request.state.employee_id = employee.id
    audit_request(
        db,
        request,
        actor=employee,
        action="ATTENDANCE_CHECKIN",
        entity_type="attendance_record",
        entity_id=record.id,
        details={"day": record.day_date.isoformat(), "status": record.status.value},
    )
    return record


@router.post("/api/attendance/checkout", response_model=AttendanceRecordRead)
def checkout(
    request: Request,
    employee: Employee = Depends(require_workforce),
    db: Session = Depends(get_db),
) -> AttendanceRecordRead:
    record = attendance_service.check_out(db, employee=employee)
    request.state.employee_id = employee.id
    audit_request(
        db,
        request,
        actor=employee,
        action="ATTENDANCE_CHECKOUT",
        entity_type="attendance_record",
        entity_id=record.id,
        details={
            "day": record.day_date.isoformat(),
            "status": record.status.value,
            "work_hours": record.work_hours,
        },
    )
    return record


@router.get("/api/attendance/today", response_model=AttendanceTodayResponse)
def today_status(
    employee: Employee = Depends(require_workforce),
    db: Session = Depends(get_db),
) -> AttendanceTodayResponse:
    record = attendance_service.get_today(db, employee_id=employee.id)
    return AttendanceTodayResponse(
        record=AttendanceRecordRead.model_validate(record) if record is not None else None,
    )


@router.get("/api/attendance/my", response_model=AttendanceMonthResponse)
def my_attendance(
    year: int | None = Query(default=None, ge=1970, le=2200),
    month: int | None = Query(default=None, ge=1, le=12),
    employee: Employee = Depends(require_workforce),
    db: Session = Depends(get_db),
) -> AttendanceMonthResponse:
    year, month = _resolve_month(year, month)
    records, summary = attendance_service.get_month(db, employee_id=employee.id, year=year, month=month)
    return AttendanceMonthResponse(
        year=year,
        month=month,
        records=[AttendanceRecordRead.model_validate(item) for item in records],
        summary=AttendanceSummaryRead(**summary),
    )


@router.get("/api/attendance/team", response_model=TeamAttendanceResponse)
def team_attendance(
    day_date: date | None = Query(default=None),
    year: int | None = Query(default=None, ge=1970, le=2200),
    month: int | None = Query(default=None, ge=1, le=12),
    status: AttendanceStatus | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    manager: Employee = Depends(require_manager),
    db: Session = Depends(get_db),
) -> TeamAttendanceResponse:
    result = attendance_service.team_records(
        db,
        manager=manager,
        day=day_date,
        year=year,
        month=month,
        status=status,
        page=page,
        limit=limit,
    )
    result["records"] = [AttendanceRecordRead.model_validate(item) for item in result["records"]]
    return TeamAttendanceResponse(**result)


@router.get("/api/attendance/summary", dependencies=[Depends(require_hr_or_admin)])
def attendance_summary(
    year: int | None = Query(default=None, ge=1970, le=2200),
    month: int | None = Query(default=None, ge=1, le=12),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    year, month = _resolve_month(year, month)
    return attendance_service.department_summary(db, year=year, month=month)


@router.get("/api/attendance/employee/{employee_id}", response_model=EmployeeAttendanceResponse)
def employee_attendance(
    employee_id: int,
    year: int | None = Query(default=None, ge=1970, le=2200),
    month: int | None = Query(default=None, ge=1, le=12),
    viewer: Employee = Depends(require_attendance_viewer),
    db: Session = Depends(get_db),
) -> EmployeeAttendanceResponse:
    year, month = _resolve_month(year, month)
    employee, records, summary = attendance_service.employee_month(
        db,
        viewer=viewer,
        employee_id=employee_id,
        year=year,
        month=month,
    )
    return EmployeeAttendanceResponse(
        year=year,
        month=month,
        employee=EmployeeBrief.model_validate(employee),
        records=[AttendanceRecordRead.model_validate(item) for item in records],
        summary=AttendanceSummaryRead(**summary),
    )


@router.get(
    "/api/attendance",
    response_model=AttendanceListResponse,
    dependencies=[Depends(require_hr_or_admin)],
)
def list_attendance(
    day_date: date | None = Query(default=None),
    year: int | None = Query(default=None, ge=1970, le=2200),
    month: int | None = Query(default=None, ge=1, le=12),
    department_id: int | None = Query(default=None, ge=1),
    status: AttendanceStatus | None = Query(default=None),
    employee_id: int | None = Query(default=None, ge=1),
    role: EmployeeRole | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
) -> AttendanceListResponse:
    result = attendance_service.list_records(
        db,
        day=day_date,
        year=year,
        month=month,
        department_id=department_id,
        status=status,
        employee_id=employee_id,
        role=role,
        page=page,
        limit=limit,
    )
    result["records"] = [AttendanceRecordRead.model_validate(item) for item in result["records"]]
    return AttendanceListResponse(**result)


@router.post("/api/attendance/manual", response_model=AttendanceRecordRead)
def manual_attendance(
    payload: ManualAttendanceRequest,
    request: Request,
    actor: Employee = Depends(require_hr_or_admin),
    db: Session = Depends(get_db),
) -> AttendanceRecordRead:
    record = attendance_service.manual_correction(
        db,
        actor=actor,
        employee_id=payload.employee_id,
        day=payload.day_date,
        status=payload.status,
        check_in_time=payload.check_in,
        check_out_time=payload.check_out,
        note=payload.note,
    )
    audit_request(
        db,
        request,
        actor=actor,
        action="ATTENDANCE_MANUAL_CORRECTION",
        entity_type="attendance_record",
        entity_id=record.id,
        details={
            "employee_id": payload.employee_id,
            "day": payload.day_date.isoformat(),
            "status": payload.status.value,
        },
    )
    return record
