from __future__ import annotations

from sqlalchemy.orm import Session

from hrledger.errors import ForbiddenError
from hrledger.models import Employee, EmployeeRole, EmploymentStatus, LeaveApplication
from hrledger.services.directory import department_member_ids, managed_department

PRIVILEGED_ROLES: tuple[EmployeeRole, ...] = (EmployeeRole.HR, EmployeeRole.ADMIN)


def _applicant_in_department(db: Session, *, applicant_id: int, department_id: int) -> bool:
    applicant = db.get(Employee, applicant_id)
    if applicant is None:
        return False
    return applicant.department_id == department_id and applicant.employment_status == EmploymentStatus.ACTIVE


def ensure_can_review(db: Session, *, reviewer: Employee, application: LeaveApplication) -> None:
    """Raise ForbiddenError unless ``reviewer`` may approve or reject ``application``.

    Department management is read at call time so a manager who was reassigned
    loses authority over the old department immediately.
    """
    if reviewer.role in PRIVILEGED_ROLES:
        return
    if reviewer.role != EmployeeRole.MANAGER:
        raise ForbiddenError("Only managers, HR or admins can review leave applications")
    if application.employee_id == reviewer.id:
        raise ForbiddenError("You cannot review your own leave application", code="SELF_REVIEW_FORBIDDEN")

    department = managed_department(db, reviewer.id)
    if department is None:
        raise ForbiddenError("You are not assigned as manager of any department", code="NO_MANAGED_DEPARTMENT")
    if not _applicant_in_department(db, applicant_id=application.employee_id, department_id=department.id):
        raise ForbiddenError(
            "You can only review leave applications of your department employees",
            code="OUT_OF_DEPARTMENT_SCOPE",
        )


def ensure_can_view(db: Session, *, viewer: Employee, application: LeaveApplication) -> None:
    if viewer.role in PRIVILEGED_ROLES or application.employee_id == viewer.id:
        return
    if viewer.role == EmployeeRole.MANAGER:
        department = managed_department(db, viewer.id)
        if department is not None:
            applicant = db.get(Employee, application.employee_id)
            if applicant is not None and applicant.department_id == department.id:
                return
    raise ForbiddenError("Access denied")


def pending_scope(db: Session, *, viewer: Employee, department_id: int | None) -> list[int] | None:
    """Employee ids whose pending applications ``viewer`` may see, or None for all."""
    if viewer.role == EmployeeRole.MANAGER:
        department = managed_department(db, viewer.id)
        if department is None:
            return []
        return [item for item in department_member_ids(db, department.id) if item != viewer.id]
    if viewer.role in PRIVILEGED_ROLES:
        if department_id is None:
            return None
        return department_member_ids(db, department_id, active_only=False)
    raise ForbiddenError()
