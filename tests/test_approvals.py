from __future__ import annotations

import unittest
from datetime import date

from hrledger.errors import ForbiddenError
from hrledger.models import Employee, EmployeeRole, EmploymentStatus, LeaveApplication, LeaveStatus, LeaveType
from hrledger.services.approvals import ensure_can_review, ensure_can_view, pending_scope
from hrledger.services.leaves import list_pending
from sqlite_support import ist, make_engine, make_session_factory, seed_department, seed_employee, set_manager


class ApprovalScopeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.Session = make_session_factory(self.engine)
        with self.Session() as db:
            engineering = seed_department(db, name="Engineering")
            sales = seed_department(db, name="Sales")
            self.manager = seed_employee(
                db,
                full_name="Nikhil Menon",
                role=EmployeeRole.MANAGER,
                department_id=engineering.id,
            )
            set_manager(db, engineering, self.manager)
            self.unassigned_manager = seed_employee(db, full_name="Tara Das", role=EmployeeRole.MANAGER)
            self.engineer = seed_employee(db, full_name="Asha Rao", department_id=engineering.id)
            self.seller = seed_employee(db, full_name="Vikram Singh", department_id=sales.id)
            self.hr = seed_employee(db, full_name="Meera Iyer", role=EmployeeRole.HR)
            self.engineering_id = engineering.id
            self.sales_id = sales.id

            self.engineer_leave = self._add_leave(db, self.engineer.id, applied_day=3)
            self.seller_leave = self._add_leave(db, self.seller.id, applied_day=1)
            self.manager_leave = self._add_leave(db, self.manager.id, applied_day=2)

    def tearDown(self) -> None:
        self.engine.dispose()

    @staticmethod
    def _add_leave(db, employee_id: int, *, applied_day: int) -> LeaveApplication:  # type: ignore[no-untyped-def]
        application = LeaveApplication(
            employee_id=employee_id,
            leave_type=LeaveType.SICK,
            from_date=date(2026, 3, 10),
            to_date=date(2026, 3, 10),
            total_days=1.0,
            reason="Doctor appointment in the morning",
            status=LeaveStatus.PENDING,
            applied_at=ist(2026, 3, applied_day, 10, 0),
        )
        db.add(application)
        db.commit()
        db.refresh(application)
        return application

    def test_hr_may_review_anyone(self) -> None:
        with self.Session() as db:
            for application in (self.engineer_leave, self.seller_leave, self.manager_leave):
                ensure_can_review(db, reviewer=self.hr, application=application)

    def test_manager_reviews_only_own_department(self) -> None:
        with self.Session() as db:
            ensure_can_review(db, reviewer=self.manager, application=self.engineer_leave)

            with self.assertRaises(ForbiddenError) as ctx:
                ensure_can_review(db, reviewer=self.manager, application=self.seller_leave)
        self.assertEqual(ctx.exception.code, "OUT_OF_DEPARTMENT_SCOPE")

    def test_manager_cannot_review_own_application(self) -> None:
        with self.Session() as db:
            with self.assertRaises(ForbiddenError) as ctx:
                ensure_can_review(db, reviewer=self.manager, application=self.manager_leave)
        self.assertEqual(ctx.exception.code, "SELF_REVIEW_FORBIDDEN")

    def test_manager_without_department_cannot_review(self) -> None:
        with self.Session() as db:
            with self.assertRaises(ForbiddenError) as ctx:
                ensure_can_review(db, reviewer=self.unassigned_manager, application=self.engineer_leave)
        self.assertEqual(ctx.exception.code, "NO_MANAGED_DEPARTMENT")

    def test_employee_role_cannot_review(self) -> None:
        with self.Session() as db:
            with self.assertRaises(ForbiddenError):
                ensure_can_review(db, reviewer=self.seller, application=self.engineer_leave)

    def test_departed_applicant_is_out_of_scope(self) -> None:
        with self.Session() as db:
            engineer = db.get(Employee, self.engineer.id)
            engineer.employment_status = EmploymentStatus.RESIGNED
            db.commit()

        with self.Session() as db:
            with self.assertRaises(ForbiddenError) as ctx:
                ensure_can_review(db, reviewer=self.manager, application=self.engineer_leave)
        self.assertEqual(ctx.exception.code, "OUT_OF_DEPARTMENT_SCOPE")

    def test_view_rules(self) -> None:
        with self.Session() as db:
            ensure_can_view(db, viewer=self.engineer, application=self.engineer_leave)
            ensure_can_view(db, viewer=self.manager, application=self.engineer_leave)
            ensure_can_view(db, viewer=self.hr, application=self.seller_leave)
            with self.assertRaises(ForbiddenError):
                ensure_can_view(db, viewer=self.engineer, application=self.seller_leave)
            with self.assertRaises(ForbiddenError):
                ensure_can_view(db, viewer=self.manager, application=self.seller_leave)

    def test_pending_scope_per_role(self) -> None:
        with self.Session() as db:
            self.assertEqual(pending_scope(db, viewer=self.manager, department_id=None), [self.engineer.id])
            self.assertEqual(pending_scope(db, viewer=self.unassigned_manager, department_id=None), [])
            self.assertIsNone(pending_scope(db, viewer=self.hr, department_id=None))
            self.assertEqual(pending_scope(db, viewer=self.hr, department_id=self.sales_id), [self.seller.id])
            with self.assertRaises(ForbiddenError):
                pending_scope(db, viewer=self.engineer, department_id=None)

    def test_pending_list_is_oldest_first(self) -> None:
        with self.Session() as db:
            everything = list_pending(db, viewer=self.hr)
            team = list_pending(db, viewer=self.manager)

        self.assertEqual(
            [item.id for item in everything["leaves"]],
            [self.seller_leave.id, self.manager_leave.id, self.engineer_leave.id],
        )
        self.assertEqual(everything["count"], 3)
        self.assertEqual([item.id for item in team["leaves"]], [self.engineer_leave.id])


if __name__ == "__main__":
    unittest.main()
