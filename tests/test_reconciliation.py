from __future__ import annotations

import unittest
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import func, select

from hrledger.models import (
    AttendanceRecord,
    AttendanceStatus,
    AuditLog,
    EmployeeRole,
    Holiday,
    HolidayType,
    LeaveApplication,
    ReconciliationRun,
    ReconciliationRunStatus,
    ReconciliationTriggerSource,
)
from hrledger.services.attendance import check_in, check_out
from hrledger.services.reconciliation import (
    ABSENT_NOTE,
    AUTO_CHECKOUT_NOTE,
    run_daily_reconciliation,
)
from hrledger.services.reconciliation_trigger import (
    STALE_RUN_ERROR,
    ReconciliationInProgressError,
    ReconciliationTrigger,
    has_completed_run,
)
from sqlite_support import (
    ist,
    make_engine,
    make_session_factory,
    record_for,
    seed_approved_leave,
    seed_employee,
    statuses_on,
)

MONDAY = date(2026, 3, 2)
SUNDAY = date(2026, 3, 8)
CLOSE_OF_DAY = ist(2026, 3, 2, 18, 30)


class DailyReconciliationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.Session = make_session_factory(self.engine)
        with self.Session() as db:
            self.forgetful = seed_employee(db, full_name="Asha Rao")
            self.on_leave = seed_employee(db, full_name="Ravi Kumar")
            self.no_show = seed_employee(db, full_name="Kiran Shah")
            self.punctual = seed_employee(db, full_name="Divya Nair")
            self.inactive = seed_employee(db, full_name="Old Timer", is_active=False)
            self.hr = seed_employee(db, full_name="Meera Iyer", role=EmployeeRole.HR)
            self.leave = seed_approved_leave(db, employee_id=self.on_leave.id, from_date=MONDAY, to_date=MONDAY)

    def tearDown(self) -> None:
        self.engine.dispose()

    def _check_in(self, employee, when: datetime) -> None:  # type: ignore[no-untyped-def]
        with self.Session() as db:
            check_in(db, employee=employee, now=when)

    def _check_out(self, employee, when: datetime) -> None:  # type: ignore[no-untyped-def]
        with self.Session() as db:
            check_out(db, employee=employee, now=when)

    def _run(self, *, day: date | None = None, now: datetime = CLOSE_OF_DAY):  # type: ignore[no-untyped-def]
        with self.Session() as db:
            return run_daily_reconciliation(db, day=day, now=now)

    def _statuses(self, day: date = MONDAY) -> dict[int, AttendanceStatus]:
        with self.Session() as db:
            return statuses_on(db, day)

    def _record(self, employee, day: date = MONDAY) -> AttendanceRecord:  # type: ignore[no-untyped-def]
        with self.Session() as db:
            record = record_for(db, employee.id, day)
        self.assertIsNotNone(record)
        return record

    def _add_holiday(self, day: date, name: str = "Holi") -> None:
        with self.Session() as db:
            db.add(Holiday(name=name, day_date=day, holiday_type=HolidayType.NATIONAL, year=day.year, is_active=True))
            db.commit()

    def test_end_of_day_close_out(self) -> None:
        self._check_in(self.forgetful, ist(2026, 3, 2, 9, 45))
        self._check_in(self.punctual, ist(2026, 3, 2, 9, 0))
        self._check_out(self.punctual, ist(2026, 3, 2, 17, 30))

        summary = self._run().to_dict()

        self.assertEqual(summary["auto_checked_out"], 1)
        self.assertEqual(summary["marked_on_leave"], 1)
        self.assertEqual(summary["marked_absent"], 1)
        self.assertEqual(summary["errors"], 0)
        self.assertEqual(
            self._statuses(),
            {
                self.forgetful.id: AttendanceStatus.LATE,
                self.on_leave.id: AttendanceStatus.ON_LEAVE,
                self.no_show.id: AttendanceStatus.ABSENT,
                self.punctual.id: AttendanceStatus.PRESENT,
            },
        )

        forgetful = self._record(self.forgetful)
        self.assertAlmostEqual(forgetful.work_hours, 8.75)
        self.assertEqual(forgetful.note, AUTO_CHECKOUT_NOTE)
        self.assertEqual(self._record(self.no_show).note, ABSENT_NOTE)
        self.assertAlmostEqual(self._record(self.punctual).work_hours, 8.5)
        with self.Session() as db:
            self.assertTrue(db.get(LeaveApplication, self.leave.id).attendance_marked)

    def test_late_afternoon_check_in_is_closed_as_half_day(self) -> None:
        self._check_in(self.forgetful, ist(2026, 3, 2, 15, 0))

        self._run()

        record = self._record(self.forgetful)
        self.assertEqual(record.status, AttendanceStatus.HALF_DAY)
        self.assertAlmostEqual(record.work_hours, 3.5)

    def test_running_twice_changes_nothing(self) -> None:
        self._check_in(self.forgetful, ist(2026, 3, 2, 9, 45))
        self._run()
        first_statuses = self._statuses()
        first_hours = self._record(self.forgetful).work_hours

        second = self._run(now=ist(2026, 3, 2, 19, 30)).to_dict()

        self.assertEqual(second["auto_checked_out"], 0)
        self.assertEqual(second["marked_on_leave"], 0)
        self.assertEqual(second["marked_absent"], 0)
        self.assertEqual(self._statuses(), first_statuses)
        self.assertEqual(self._record(self.forgetful).work_hours, first_hours)
        with self.Session() as db:
            self.assertEqual(db.scalar(select(func.count(AttendanceRecord.id))), 4)

    def test_approved_leave_is_never_marked_absent(self) -> None:
        # On-leave propagation failed, so the day has no on-leave record yet.
        with patch("hrledger.services.reconciliation.run_mark_on_leave", side_effect=RuntimeError("boom")):
            summary = self._run().to_dict()

        self.assertTrue(summary["jobs"]["mark_on_leave"]["crashed"])
        self.assertNotIn(self.on_leave.id, self._statuses())
        self.assertEqual(self._statuses()[self.no_show.id], AttendanceStatus.ABSENT)

    def test_holiday_short_circuits_absence_marking(self) -> None:
        self._add_holiday(MONDAY)
        self._check_in(self.punctual, ist(2026, 3, 2, 9, 0))

        summary = self._run().to_dict()

        self.assertEqual(summary["holiday"], "Holi")
        self.assertEqual(summary["marked_absent"], 0)
        self.assertEqual(summary["jobs"]["mark_absent"]["skipped_reason"], "holiday")
        statuses = self._statuses()
        self.assertEqual(statuses[self.no_show.id], AttendanceStatus.HOLIDAY)
        self.assertEqual(statuses[self.forgetful.id], AttendanceStatus.HOLIDAY)
        self.assertEqual(statuses[self.on_leave.id], AttendanceStatus.HOLIDAY)
        self.assertEqual(statuses[self.punctual.id], AttendanceStatus.PRESENT)
        self.assertNotIn(AttendanceStatus.ABSENT, set(statuses.values()))
        self.assertNotIn(self.inactive.id, statuses)
        self.assertNotIn(self.hr.id, statuses)
        self.assertEqual(self._record(self.no_show).note, "Holiday: Holi")

        again = self._run(now=ist(2026, 3, 2, 20, 0)).to_dict()
        self.assertEqual(again["marked_holiday"], 0)
        self.assertEqual(again["marked_on_leave"], 0)
        self.assertEqual(self._statuses(), statuses)

    def test_inactive_holiday_does_not_short_circuit(self) -> None:
        with self.Session() as db:
            db.add(Holiday(name="Old", day_date=MONDAY, holiday_type=HolidayType.COMPANY, year=2026, is_active=False))
            db.commit()

        summary = self._run().to_dict()

        self.assertIsNone(summary["holiday"])
        self.assertEqual(summary["marked_absent"], 3)

    def test_sunday_marks_nobody_absent(self) -> None:
        summary = self._run(day=SUNDAY, now=ist(2026, 3, 8, 18, 30)).to_dict()

        self.assertEqual(summary["marked_absent"], 0)
        self.assertEqual(summary["jobs"]["mark_absent"]["skipped_reason"], "sunday")
        self.assertEqual(self._statuses(SUNDAY), {})

    def test_backfill_caps_auto_checkout_at_end_of_day(self) -> None:
        self._check_in(self.forgetful, ist(2026, 3, 2, 14, 0))

        self._run(day=MONDAY, now=ist(2026, 3, 3, 10, 0))

        record = self._record(self.forgetful)
        self.assertEqual(record.check_out.replace(tzinfo=timezone.utc), datetime(2026, 3, 2, 18, 29, 59, tzinfo=timezone.utc))
        self.assertAlmostEqual(record.work_hours, 10.0)

    def test_crashing_job_does_not_stop_later_jobs(self) -> None:
        self._check_in(self.forgetful, ist(2026, 3, 2, 9, 0))
        with patch("hrledger.services.reconciliation.run_auto_checkout", side_effect=RuntimeError("boom")):
            summary = self._run().to_dict()

        self.assertTrue(summary["jobs"]["auto_checkout"]["crashed"])
        self.assertEqual(summary["errors"], 1)
        self.assertEqual(summary["marked_absent"], 2)
        self.assertIsNone(self._record(self.forgetful).check_out)


class ReconciliationTriggerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.Session = make_session_factory(self.engine)
        with self.Session() as db:
            self.employee = seed_employee(db, full_name="Asha Rao")
        self.trigger = ReconciliationTrigger(session_factory=self.Session)

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_run_is_recorded_and_audited(self) -> None:
        run = self.trigger.run(now=CLOSE_OF_DAY, trigger=ReconciliationTriggerSource.MANUAL, actor_id="7")

        self.assertEqual(run.status, ReconciliationRunStatus.COMPLETED)
        self.assertEqual(run.run_day, MONDAY)
        self.assertEqual(run.summary["marked_absent"], 1)
        self.assertIsNotNone(run.finished_at)
        with self.Session() as db:
            self.assertTrue(has_completed_run(db, MONDAY))
            audit = db.scalar(select(AuditLog).where(AuditLog.action == "RECONCILIATION_RUN"))
        self.assertIsNotNone(audit)
        self.assertEqual(audit.actor_id, "7")
        self.assertTrue(audit.success)

    def test_schedule_is_due_once_per_day_after_trigger_time(self) -> None:
        self.assertFalse(self.trigger.is_due(ist(2026, 3, 2, 18, 0)))
        self.assertTrue(self.trigger.is_due(ist(2026, 3, 2, 18, 31)))

        self.trigger.run(now=ist(2026, 3, 2, 18, 31), trigger=ReconciliationTriggerSource.SCHEDULE)

        self.assertFalse(self.trigger.is_due(ist(2026, 3, 2, 22, 0)))
        self.assertTrue(self.trigger.is_due(ist(2026, 3, 3, 18, 45)))

    def test_concurrent_run_is_refused(self) -> None:
        self.trigger._lock.acquire()
        try:
            self.assertTrue(self.trigger.running)
            with self.assertRaises(ReconciliationInProgressError):
                self.trigger.run(now=CLOSE_OF_DAY)
        finally:
            self.trigger._lock.release()
        self.assertFalse(self.trigger.running)

    def test_failed_run_is_marked_failed(self) -> None:
        with patch(
            "hrledger.services.reconciliation_trigger.run_daily_reconciliation",
            side_effect=RuntimeError("database went away"),
        ):
            with self.assertRaises(RuntimeError):
                self.trigger.run(now=CLOSE_OF_DAY)

        with self.Session() as db:
            self.assertFalse(has_completed_run(db, MONDAY))
        self.assertTrue(self.trigger.is_due(ist(2026, 3, 2, 19, 0)))
        self.assertFalse(self.trigger.running)

    def _seed_running_row(self, started_at: datetime) -> int:
        with self.Session() as db:
            row = ReconciliationRun(
                run_day=MONDAY,
                trigger=ReconciliationTriggerSource.SCHEDULE,
                status=ReconciliationRunStatus.RUNNING,
                started_at=started_at.astimezone(timezone.utc),
                summary={},
            )
            db.add(row)
            db.commit()
            return row.id

    def test_run_held_by_another_process_is_refused(self) -> None:
        other_id = self._seed_running_row(CLOSE_OF_DAY - timedelta(minutes=10))
        # A fresh trigger has its own thread lock, like a second process would.
        other_process = ReconciliationTrigger(session_factory=self.Session)

        with self.assertRaises(ReconciliationInProgressError):
            other_process.run(now=CLOSE_OF_DAY, trigger=ReconciliationTriggerSource.CLI, actor_id="cli")

        with self.Session() as db:
            runs = list(db.scalars(select(ReconciliationRun)).all())
        self.assertEqual([run.id for run in runs], [other_id])
        self.assertEqual(runs[0].status, ReconciliationRunStatus.RUNNING)
        self.assertFalse(other_process.running)
        with self.Session() as db:
            self.assertIsNone(record_for(db, self.employee.id, MONDAY))

    def test_stale_running_row_is_failed_before_claiming(self) -> None:
        stale_id = self._seed_running_row(CLOSE_OF_DAY - timedelta(hours=3))

        run = self.trigger.run(now=CLOSE_OF_DAY)

        self.assertEqual(run.status, ReconciliationRunStatus.COMPLETED)
        with self.Session() as db:
            stale = db.get(ReconciliationRun, stale_id)
            self.assertEqual(stale.status, ReconciliationRunStatus.FAILED)
            self.assertEqual(stale.error, STALE_RUN_ERROR)
            self.assertIsNotNone(stale.finished_at)


if __name__ == "__main__":
    unittest.main()
