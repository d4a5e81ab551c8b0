from __future__ import annotations

import unittest
from datetime import date, timedelta
from unittest.mock import patch

from fastapi.testclient import TestClient

from hrledger.db import get_db
from hrledger.main import app
from hrledger.models import EmployeeRole
from hrledger.security import create_access_token
from hrledger.services.org_day import is_working_day, org_today
from hrledger.services.reconciliation_trigger import ReconciliationTrigger
from hrledger.settings import Settings
from sqlite_support import (
    make_engine,
    make_session_factory,
    override_get_db,
    seed_department,
    seed_employee,
    set_manager,
)


def _next_working_day(days_ahead: int) -> date:
    day = org_today() + timedelta(days=days_ahead)
    while not is_working_day(day):
        day += timedelta(days=1)
    return day


class EndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.Session = make_session_factory(self.engine)

        settings_patcher = patch("hrledger.security.get_settings", return_value=Settings(jwt_secret="test-secret"))
        settings_patcher.start()
        self.addCleanup(settings_patcher.stop)

        self.trigger = ReconciliationTrigger(session_factory=self.Session)
        trigger_patcher = patch("hrledger.routers.admin.reconciliation_trigger", self.trigger)
        trigger_patcher.start()
        self.addCleanup(trigger_patcher.stop)

        session_patcher = patch("hrledger.main.SessionLocal", self.Session)
        session_patcher.start()
        self.addCleanup(session_patcher.stop)

        app.dependency_overrides[get_db] = override_get_db(self.Session)
        self.addCleanup(app.dependency_overrides.clear)
        self.client = TestClient(app)

        with self.Session() as db:
            department = seed_department(db, name="Engineering")
            self.manager = seed_employee(
                db,
                full_name="Nikhil Menon",
                role=EmployeeRole.MANAGER,
                department_id=department.id,
            )
            set_manager(db, department, self.manager)
            self.employee = seed_employee(db, full_name="Asha Rao", department_id=department.id)
            self.departed = seed_employee(db, full_name="Old Timer", department_id=department.id, is_active=False)
            self.admin = seed_employee(db, full_name="Sys Admin", role=EmployeeRole.ADMIN)

    def tearDown(self) -> None:
        self.engine.dispose()

    def _auth(self, employee) -> dict[str, str]:  # type: ignore[no-untyped-def]
        token, _ = create_access_token(employee_id=employee.id, role=employee.role)
        return {"Authorization": f"Bearer {token}"}

    def _apply(self, from_date: date, to_date: date, leave_type: str = "casual"):  # type: ignore[no-untyped-def]
        return self.client.post(
            "/api/leaves/apply",
            json={
                "leave_type": leave_type,
                "from_date": from_date.isoformat(),
                "to_date": to_date.isoformat(),
                "reason": "Visiting family for a wedding",
            },
            headers=self._auth(self.employee),
        )

    def test_missing_token_is_rejected(self) -> None:
        response = self.client.post("/api/attendance/checkin")

        self.assertEqual(response.status_code, 401)
        body = response.json()
        self.assertEqual(body["error"]["code"], "INVALID_TOKEN")
        self.assertEqual(body["error"]["request_id"], response.headers["X-Request-Id"])

    def test_deactivated_account_is_forbidden(self) -> None:
        response = self.client.get("/api/leaves/balance", headers=self._auth(self.departed))

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "EMPLOYEE_INACTIVE")

    def test_check_in_returns_today_record(self) -> None:
        response = self.client.post("/api/attendance/checkin", headers=self._auth(self.employee))

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["employee_id"], self.employee.id)
        self.assertIn(body["status"], {"present", "late"})

        again = self.client.post("/api/attendance/checkin", headers=self._auth(self.employee))
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["error"]["code"], "ALREADY_CHECKED_IN")

    def test_apply_then_list_and_balance(self) -> None:
        day = _next_working_day(7)

        response = self._apply(day, day)

        self.assertEqual(response.status_code, 201)
        leave = response.json()
        self.assertEqual(leave["status"], "pending")
        self.assertEqual(leave["total_days"], 1.0)

        mine = self.client.get("/api/leaves/my", headers=self._auth(self.employee))
        self.assertEqual(mine.status_code, 200)
        self.assertEqual(mine.json()["count"], 1)
        self.assertEqual(mine.json()["leaves"][0]["id"], leave["id"])

        balance = self.client.get(
            "/api/leaves/balance",
            params={"year": day.year},
            headers=self._auth(self.employee),
        )
        self.assertEqual(balance.status_code, 200)
        self.assertEqual(balance.json()["balances"]["casual"]["remaining"], 12.0)

        pending = self.client.get("/api/leaves/pending", headers=self._auth(self.manager))
        self.assertEqual(pending.status_code, 200)
        self.assertEqual([item["id"] for item in pending.json()["leaves"]], [leave["id"]])

    def test_employee_cannot_review_leave(self) -> None:
        day = _next_working_day(7)
        leave_id = self._apply(day, day).json()["id"]

        response = self.client.patch(
            f"/api/leaves/{leave_id}/review",
            json={"action": "approve"},
            headers=self._auth(self.employee),
        )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

    def test_manager_approves_and_reject_needs_reason(self) -> None:
        day = _next_working_day(7)
        leave_id = self._apply(day, day).json()["id"]

        invalid = self.client.patch(
            f"/api/leaves/{leave_id}/review",
            json={"action": "reject"},
            headers=self._auth(self.manager),
        )
        self.assertEqual(invalid.status_code, 422)
        self.assertEqual(invalid.json()["error"]["code"], "VALIDATION_ERROR")
        self.assertIn("errors", invalid.json()["error"]["details"])

        approved = self.client.patch(
            f"/api/leaves/{leave_id}/review",
            json={"action": "approve"},
            headers=self._auth(self.manager),
        )
        self.assertEqual(approved.status_code, 200)
        self.assertEqual(approved.json()["status"], "approved")
        self.assertEqual(approved.json()["reviewed_by_id"], self.manager.id)

    def test_insufficient_balance_carries_details(self) -> None:
        start = _next_working_day(7)

        response = self._apply(start, start + timedelta(days=20))

        self.assertEqual(response.status_code, 409)
        error = response.json()["error"]
        self.assertEqual(error["code"], "INSUFFICIENT_BALANCE")
        self.assertEqual(error["details"]["leave_type"], "casual")
        self.assertEqual(error["details"]["available"], 12)
        self.assertGreater(error["details"]["requested"], 12)

    def test_admin_triggers_reconciliation(self) -> None:
        forbidden = self.client.post("/api/admin/reconciliation/run", headers=self._auth(self.manager))
        self.assertEqual(forbidden.status_code, 403)

        response = self.client.post(
            "/api/admin/reconciliation/run",
            json={"day_date": "2026-03-02"},
            headers=self._auth(self.admin),
        )

        self.assertEqual(response.status_code, 202)
        body = response.json()
        self.assertEqual(body["status"], "completed")
        self.assertEqual(body["run_day"], "2026-03-02")
        self.assertEqual(body["trigger"], "manual")
        self.assertEqual(body["summary"]["marked_absent"], 2)

        runs = self.client.get("/api/admin/reconciliation/runs", headers=self._auth(self.admin))
        self.assertEqual(runs.status_code, 200)
        self.assertEqual([item["id"] for item in runs.json()], [body["id"]])

    def test_reconciliation_already_running_is_a_conflict(self) -> None:
        self.trigger._lock.acquire()
        try:
            response = self.client.post("/api/admin/reconciliation/run", headers=self._auth(self.admin))
        finally:
            self.trigger._lock.release()

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "RECONCILIATION_IN_PROGRESS")

    def test_health_reports_reconciliation_state(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertIn("issues", body["schema_guard"])
        self.assertIsNone(body["reconciliation"]["last_run"])
        self.assertFalse(body["reconciliation"]["running"])

    def _seed_hr(self):  # type: ignore[no-untyped-def]
        with self.Session() as db:
            return seed_employee(db, full_name="Meera Iyer", role=EmployeeRole.HR)

    def test_balance_of_another_employee_is_for_hr_and_admin_only(self) -> None:
        hr = self._seed_hr()

        as_hr = self.client.get(
            "/api/leaves/balance",
            params={"employee_id": self.employee.id},
            headers=self._auth(hr),
        )
        self.assertEqual(as_hr.status_code, 200)
        self.assertEqual(as_hr.json()["employee_id"], self.employee.id)
        self.assertEqual(as_hr.json()["balances"]["casual"]["total"], 12.0)

        as_employee = self.client.get(
            "/api/leaves/balance",
            params={"employee_id": self.manager.id},
            headers=self._auth(self.employee),
        )
        self.assertEqual(as_employee.status_code, 200)
        self.assertEqual(as_employee.json()["employee_id"], self.employee.id)

        unknown = self.client.get(
            "/api/leaves/balance",
            params={"employee_id": 999},
            headers=self._auth(self.admin),
        )
        self.assertEqual(unknown.status_code, 404)
        self.assertEqual(unknown.json()["error"]["code"], "EMPLOYEE_NOT_FOUND")

    def test_hr_registers_holiday_and_everyone_can_read_it(self) -> None:
        hr = self._seed_hr()
        payload = {"name": "Holi", "day_date": "2030-03-19", "holiday_type": "national"}

        forbidden = self.client.post("/api/admin/holidays", json=payload, headers=self._auth(self.employee))
        self.assertEqual(forbidden.status_code, 403)

        created = self.client.post("/api/admin/holidays", json=payload, headers=self._auth(hr))
        self.assertEqual(created.status_code, 201)
        body = created.json()
        self.assertEqual(len(body), 1)
        self.assertEqual(body[0]["name"], "Holi")
        self.assertTrue(body[0]["is_active"])

        duplicate = self.client.post("/api/admin/holidays", json=payload, headers=self._auth(hr))
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.json()["error"]["code"], "HOLIDAY_EXISTS")

        fetched = self.client.get(f"/api/holidays/{body[0]['id']}", headers=self._auth(self.employee))
        self.assertEqual(fetched.status_code, 200)
        self.assertEqual(fetched.json()["day_date"], "2030-03-19")

        missing = self.client.get("/api/holidays/999", headers=self._auth(self.employee))
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["error"]["code"], "HOLIDAY_NOT_FOUND")

        upcoming = self.client.get("/api/holidays/upcoming", headers=self._auth(self.employee))
        self.assertEqual(upcoming.status_code, 200)
        self.assertEqual([item["id"] for item in upcoming.json()], [body[0]["id"]])

    def test_holiday_bulk_create_update_and_reregistration(self) -> None:
        headers = self._auth(self.admin)
        self.client.post(
            "/api/admin/holidays",
            json={"name": "Holi", "day_date": "2030-03-19"},
            headers=headers,
        )

        bulk = self.client.post(
            "/api/admin/holidays/bulk",
            json={
                "holidays": [
                    {"name": "Holi", "day_date": "2030-03-19"},
                    {"name": "Ugadi", "day_date": "2030-04-03", "holiday_type": "regional"},
                ]
            },
            headers=headers,
        )
        self.assertEqual(bulk.status_code, 201)
        summary = bulk.json()
        self.assertEqual(summary["created"], 1)
        self.assertEqual(summary["skipped"], 1)
        self.assertEqual(summary["skipped_dates"], ["2030-03-19"])
        ugadi_id = summary["holidays"][0]["id"]

        clash = self.client.put(
            f"/api/admin/holidays/{ugadi_id}",
            json={"day_date": "2030-03-19"},
            headers=headers,
        )
        self.assertEqual(clash.status_code, 409)
        self.assertEqual(clash.json()["error"]["code"], "HOLIDAY_EXISTS")

        moved = self.client.put(
            f"/api/admin/holidays/{ugadi_id}",
            json={"name": "Ugadi (observed)", "day_date": "2030-04-04"},
            headers=headers,
        )
        self.assertEqual(moved.status_code, 200)
        self.assertEqual(moved.json()["holiday"]["day_date"], "2030-04-04")
        self.assertEqual(moved.json()["holiday"]["name"], "Ugadi (observed)")
        self.assertEqual(moved.json()["reverted_records"], 0)

        removed = self.client.delete(f"/api/admin/holidays/{ugadi_id}", headers=headers)
        self.assertEqual(removed.status_code, 200)
        self.assertFalse(removed.json()["holiday"]["is_active"])

        again = self.client.post(
            "/api/admin/holidays",
            json={"name": "Ugadi", "day_date": "2030-04-04"},
            headers=headers,
        )
        self.assertEqual(again.status_code, 201)
        self.assertEqual(again.json()[0]["id"], ugadi_id)

        too_many = self.client.post(
            "/api/admin/holidays/bulk",
            json={"holidays": [{"name": f"Day {n}", "day_date": f"2031-01-{n + 1:02d}"} for n in range(21)]},
            headers=headers,
        )
        self.assertEqual(too_many.status_code, 422)
        self.assertEqual(too_many.json()["error"]["code"], "BULK_LIMIT_EXCEEDED")


if __name__ == "__main__":
    unittest.main()
