from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from hrledger.audit import audit_request
from hrledger.db import get_db
from hrledger.models import Employee, EmployeeRole, LeaveStatus, LeaveType
from hrledger.schemas import (
    LeaveApplyRequest,
    LeaveBalanceSnapshot,
    LeaveBalanceUpdateRequest,
    LeaveListResponse,
    LeaveRead,
    LeaveReviewRequest,
    LeaveStatsResponse,
    MyLeavesResponse,
)
from hrledger.security import get_current_employee, require_roles
from hrledger.services import leave_balances
from hrledger.services import leaves as leave_service
from hrledger.services.directory import get_employee
from hrledger.services.org_day import org_today

router = APIRouter(tags=["leaves"])

require_workforce = require_roles(EmployeeRole.EMPLOYEE, EmployeeRole.MANAGER)
require_reviewer = require_roles(EmployeeRole.MANAGER, EmployeeRole.HR, EmployeeRole.ADMIN)
require_hr_or_admin = require_roles(EmployeeRole.HR, EmployeeRole.ADMIN)


def _leave_page(result: dict[str, Any]) -> dict[str, Any]:
    result["leaves"] = [LeaveRead.model_validate(item) for item in result["leaves"]]
    return result


@router.post("/api/leaves/apply", response_model=LeaveRead, status_code=status.HTTP_201_CREATED)
def apply_leave(
    payload: LeaveApplyRequest,
    request: Request,
    employee: Employee = Depends(require_workforce),
    db: Session = Depends(get_db),
) -> LeaveRead:
    application = leave_service.apply_leave(
        db,
        employee=employee,
        leave_type=payload.leave_type,
        from_date=payload.from_date,
        to_date=payload.to_date,
        reason=payload.reason,
        is_half_day=payload.is_half_day,
    )
    audit_request(
        db,
        request,
        actor=employee,
        action="LEAVE_APPLIED",
        entity_type="leave_application",
        entity_id=application.id,
        details={
            "leave_type": application.leave_type.value,
            "from_date": application.from_date.isoformat(),
            "to_date": application.to_date.isoformat(),
            "total_days": application.total_days,
        },
    )
    return application


@router.get("/api/leaves/my", response_model=MyLeavesResponse)
def my_leaves(
    status_filter: LeaveStatus | None = Query(default=None, alias="status"),
    year: int | None = Query(default=None, ge=1970, le=2200),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    employee: Employee = Depends(require_workforce),
    db: Session = Depends(get_db),
) -> MyLeavesResponse:
    result = leave_service.list_my_leaves(
        db,
        employee=employee,
        status=status_filter,
        year=year,
        page=page,
        limit=limit,
    )
    return MyLeavesResponse(**_leave_page(result))


@router.get("/api/leaves/balance", response_model=LeaveBalanceSnapshot)
def leave_balance(
    year: int | None = Query(default=None, ge=1970, le=2200),
    employee_id: int | None = Query(default=None, ge=1),
    employee: Employee = Depends(get_current_employee),
    db: Session = Depends(get_db),
) -> LeaveBalanceSnapshot:
    target_id = employee.id
    # Employees and managers always get their own balance.
    if employee_id is not None and employee.role in (EmployeeRole.HR, EmployeeRole.ADMIN):
        target_id = get_employee(db, employee_id).id
    snapshot = leave_balances.snapshot(db, employee_id=target_id, year=year or org_today().year)
    db.commit()
    return LeaveBalanceSnapshot(**snapshot)


@router.get("/api/leaves/pending", response_model=LeaveListResponse)
def pending_leaves(
    department_id: int | None = Query(default=None, ge=1),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    reviewer: Employee = Depends(require_reviewer),
    db: Session = Depends(get_db),
) -> LeaveListResponse:
    result = leave_service.list_pending(
        db,
        viewer=reviewer,
        department_id=department_id,
        page=page,
        limit=limit,
    )
    return LeaveListResponse(**_leave_page(result))


@router.get(
    "/api/leaves/stats",
    response_model=LeaveStatsResponse,
    dependencies=[Depends(require_hr_or_admin)],
)
def leave_stats(
    year: int | None = Query(default=None, ge=1970, le=2200),
    month: int | None = Query(default=None, ge=1, le=12),
    department_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
) -> LeaveStatsResponse:
    today = org_today()
    result = leave_service.leave_stats(
        db,
        year=year or today.year,
        month=month or today.month,
        department_id=department_id,
    )
    return LeaveStatsResponse(**result)


@router.get(
    "/api/leaves",
    response_model=LeaveListResponse,
    dependencies=[Depends(require_hr_or_admin)],
)
def list_leaves(
    status_filter: LeaveStatus | None = Query(default=None, alias="status"),
    employee_id: int | None = Query(default=None, ge=1),
    leave_type: LeaveType | None = Query(default=None),
    year: int | None = Query(default=None, ge=1970, le=2200),
    month: int | None = Query(default=None, ge=1, le=12),
    department_id: int | None = Query(default=None, ge=1),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=15, ge=1, le=100),
    db: Session = Depends(get_db),
) -> LeaveListResponse:
    result = leave_service.list_all(
        db,
        status=status_filter,
        employee_id=employee_id,
        leave_type=leave_type,
        year=year,
        month=month,
        department_id=department_id,
        page=page,
        limit=limit,
    )
    return LeaveListResponse(**_leave_page(result))


@router.patch("/api/leaves/balance/{employee_id}", response_model=LeaveBalanceSnapshot)
def update_leave_balance(
    employee_id: int,
    payload: LeaveBalanceUpdateRequest,
    request: Request,
    actor: Employee = Depends(require_hr_or_admin),
    db: Session = Depends(get_db),
) -> LeaveBalanceSnapshot:
    get_employee(db, employee_id)
    year = payload.year or org_today().year
    row = leave_balances.set_total(
        db,
        employee_id=employee_id,
        year=year,
        leave_type=payload.leave_type,
        total=payload.total,
    )
    audit_request(
        db,
        request,
        actor=actor,
        action="LEAVE_BALANCE_UPDATED",
        entity_type="leave_balance",
        entity_id=row.id,
        details={
            "employee_id": employee_id,
            "year": year,
            "leave_type": payload.leave_type.value,
            "total": row.total,
            "used": row.used,
        },
    )
    snapshot = leave_balances.snapshot(db, employee_id=employee_id, year=year)
    db.commit()
    return LeaveBalanceSnapshot(**snapshot)


@router.patch("/api/leaves/{leave_id}/review", response_model=LeaveRead)
def review_leave(
    leave_id: int,
    payload: LeaveReviewRequest,
    request: Request,
    reviewer: Employee = Depends(require_reviewer),
    db: Session = Depends(get_db),
) -> LeaveRead:
    application = leave_service.review_leave(
        db,
        reviewer=reviewer,
        application_id=leave_id,
        action=payload.action,
        rejection_reason=payload.rejection_reason,
    )
    audit_request(
        db,
        request,
        actor=reviewer,
        action="LEAVE_APPROVED" if payload.action == "approve" else "LEAVE_REJECTED",
        entity_type="leave_application",
        entity_id=application.id,
        details={
            "employee_id": application.employee_id,
            "leave_type": application.leave_type.value,
            "total_days": application.total_days,
        },
    )
    return application


@router.patch("/api/leaves/{leave_id}/cancel", response_model=LeaveRead)
def cancel_leave(
    leave_id: int,
    request: Request,
    employee: Employee = Depends(require_workforce),
    db: Session = Depends(get_db),
) -> LeaveRead:
    application = leave_service.cancel_leave(db, employee=employee, application_id=leave_id)
    audit_request(
        db,
        request,
        actor=employee,
        action="LEAVE_CANCELLED",
        entity_type="leave_application",
        entity_id=application.id,
        details={"leave_type": application.leave_type.value, "total_days": application.total_days},
    )
    return application


@router.get("/api/leaves/{leave_id}", response_model=LeaveRead)
def get_leave(
    leave_id: int,
    viewer: Employee = Depends(get_current_employee),
    db: Session = Depends(get_db),
) -> LeaveRead:
    return leave_service.get_leave(db, viewer=viewer, application_id=leave_id)
