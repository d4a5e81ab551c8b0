from __future__ import annotations

from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from hrledger.errors import NotFoundError
from hrledger.models import Department, Employee, EmployeeRole, EmploymentStatus, Holiday

WORKFORCE_ROLES: tuple[EmployeeRole, ...] = (EmployeeRole.EMPLOYEE, EmployeeRole.MANAGER)


def get_employee(db: Session, employee_id: int) -> Employee:
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise NotFoundError("Employee not found", code="EMPLOYEE_NOT_FOUND")
    return employee


def is_active_member(employee: Employee) -> bool:
    return bool(employee.is_active) and employee.employment_status == EmploymentStatus.ACTIVE


def active_workforce_ids(db: Session) -> list[int]:
    """Employees the daily jobs are responsible for: active accounts with an active profile."""
    stmt = (
        select(Employee.id)
        .where(
            Employee.role.in_(WORKFORCE_ROLES),
            Employee.is_active.is_(True),
            Employee.employment_status == EmploymentStatus.ACTIVE,
        )
        .order_by(Employee.id.asc())
    )
    return list(db.scalars(stmt).all())


def managed_department(db: Session, manager_id: int) -> Department | None:
    return db.scalar(
        select(Department)
        .where(Department.manager_id == manager_id)
        .order_by(Department.id.asc())
        .limit(1)
    )


def department_member_ids(db: Session, department_id: int, *, active_only: bool = True) -> list[int]:
    stmt = select(Employee.id).where(Employee.department_id == department_id)
    if active_only:
        stmt = stmt.where(Employee.employment_status == EmploymentStatus.ACTIVE)
    return list(db.scalars(stmt.order_by(Employee.id.asc())).all())


def find_holiday(db: Session, day: date) -> Holiday | None:
    return db.scalar(
        select(Holiday).where(
            Holiday.day_date == day,
            Holiday.is_active.is_(True),
        )
    )
