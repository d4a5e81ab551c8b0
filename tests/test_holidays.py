from __future__ import annotations

import unittest
from datetime import date

from hrledger.errors import ConflictError, NotFoundError, ValidationError
from hrledger.models import AttendanceStatus, HolidayType
from hrledger.services.attendance import upsert_status
from hrledger.services.holidays import (
    BULK_CREATE_LIMIT,
    HOLIDAY_REVERT_NOTE,
    bulk_create_holidays,
    create_holiday,
    deactivate_holiday,
    get_holiday,
    list_holidays,
    update_holiday,
    upcoming_holidays,
)
from sqlite_support import ist, make_engine, make_session_factory, record_for, seed_employee

TODAY = ist(2026, 3, 2, 10, 0)


class HolidayCalendarTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.Session = make_session_factory(self.engine)
        with self.Session() as db:
            self.employee = seed_employee(db, full_name="Asha Rao")

    def tearDown(self) -> None:
        self.engine.dispose()

    def _create(self, name: str, day: date, **kwargs):  # type: ignore[no-untyped-def]
        with self.Session() as db:
            return create_holiday(db, name=name, day=day, **kwargs)

    def _mark_holiday(self, day: date) -> None:
        with self.Session() as db:
            upsert_status(
                db,
                employee_id=self.employee.id,
                day=day,
                status=AttendanceStatus.HOLIDAY,
                note="Holiday: test",
                is_manual=False,
            )
            db.commit()

    def test_one_holiday_per_date(self) -> None:
        created = self._create("Holi", date(2026, 3, 4))
        self.assertEqual(len(created), 1)
        self.assertEqual(created[0].year, 2026)

        with self.assertRaises(ConflictError) as ctx:
            self._create("Founders Day", date(2026, 3, 4), holiday_type=HolidayType.COMPANY)
        self.assertEqual(ctx.exception.code, "HOLIDAY_EXISTS")

    def test_blank_name_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self._create("   ", date(2026, 3, 4))
        self.assertEqual(ctx.exception.code, "HOLIDAY_NAME_REQUIRED")

    def test_recurring_holiday_is_copied_into_following_years(self) -> None:
        self._create("Republic Day", date(2028, 1, 26))
        created = self._create("Independence Day", date(2026, 8, 15), is_recurring=True)
        self.assertEqual(
            [item.day_date for item in created],
            [date(2026, 8, 15), date(2027, 8, 15), date(2028, 8, 15)],
        )

        # A future year whose date is already taken is left alone.
        created = self._create("Republic Day", date(2026, 1, 26), is_recurring=True)
        self.assertEqual([item.day_date for item in created], [date(2026, 1, 26), date(2027, 1, 26)])

    def test_leap_day_is_not_carried_into_common_years(self) -> None:
        created = self._create("Leap Day", date(2028, 2, 29), is_recurring=True)
        self.assertEqual([item.day_date for item in created], [date(2028, 2, 29)])

    def test_deactivation_reverts_upcoming_days_only(self) -> None:
        past = self._create("Past", date(2026, 2, 27))[0]
        upcoming = self._create("Upcoming", date(2026, 3, 4))[0]
        self._mark_holiday(date(2026, 2, 27))
        self._mark_holiday(date(2026, 3, 4))

        with self.Session() as db:
            holiday, reverted = deactivate_holiday(db, holiday_id=upcoming.id, now=TODAY)
        self.assertFalse(holiday.is_active)
        self.assertEqual(reverted, 1)
        with self.Session() as db:
            record = record_for(db, self.employee.id, date(2026, 3, 4))
        self.assertEqual(record.status, AttendanceStatus.ABSENT)
        self.assertEqual(record.note, HOLIDAY_REVERT_NOTE)

        with self.Session() as db:
            _, reverted = deactivate_holiday(db, holiday_id=past.id, now=TODAY)
        self.assertEqual(reverted, 0)
        with self.Session() as db:
            self.assertEqual(record_for(db, self.employee.id, date(2026, 2, 27)).status, AttendanceStatus.HOLIDAY)

    def test_unknown_holiday_is_not_found(self) -> None:
        with self.Session() as db:
            with self.assertRaises(NotFoundError):
                deactivate_holiday(db, holiday_id=999, now=TODAY)

    def test_listing_hides_inactive_holidays(self) -> None:
        self._create("Past", date(2026, 2, 27))
        self._create("Holi", date(2026, 3, 4))
        retired = self._create("Retired", date(2026, 3, 5), holiday_type=HolidayType.COMPANY)[0]
        self._create("Diwali", date(2026, 11, 8), holiday_type=HolidayType.NATIONAL)
        self._create("New Year", date(2027, 1, 1))
        with self.Session() as db:
            deactivate_holiday(db, holiday_id=retired.id, now=TODAY)

        with self.Session() as db:
            calendar = list_holidays(db, year=2026)
            national = list_holidays(db, year=2026, holiday_type=HolidayType.NATIONAL, limit=1)
            upcoming = upcoming_holidays(db, limit=2, now=TODAY)

        self.assertEqual(calendar["count"], 3)
        self.assertEqual([item.name for item in calendar["holidays"]], ["Past", "Holi", "Diwali"])
        self.assertEqual(national["count"], 3)
        self.assertEqual(national["total_pages"], 3)
        self.assertEqual(len(national["holidays"]), 1)
        self.assertEqual([item.name for item in upcoming], ["Holi", "Diwali"])

    def test_deactivated_date_can_be_registered_again(self) -> None:
        original = self._create("Holi", date(2026, 3, 4))[0]
        with self.Session() as db:
            deactivate_holiday(db, holiday_id=original.id, now=TODAY)

        again = self._create("Holi (rescheduled)", date(2026, 3, 4), holiday_type=HolidayType.COMPANY)
        self.assertEqual(len(again), 1)
        self.assertEqual(again[0].id, original.id)
        self.assertTrue(again[0].is_active)
        self.assertEqual(again[0].name, "Holi (rescheduled)")
        self.assertEqual(again[0].holiday_type, HolidayType.COMPANY)

    def test_recurring_copy_reuses_deactivated_future_date(self) -> None:
        retired = self._create("Foundation Day", date(2027, 5, 1))[0]
        with self.Session() as db:
            deactivate_holiday(db, holiday_id=retired.id, now=TODAY)

        created = self._create("Labour Day", date(2026, 5, 1), is_recurring=True)
        self.assertEqual(
            [item.day_date for item in created],
            [date(2026, 5, 1), date(2027, 5, 1), date(2028, 5, 1)],
        )
        self.assertEqual(created[1].id, retired.id)
        self.assertTrue(all(item.is_active and item.name == "Labour Day" for item in created))

    def test_bulk_create_skips_taken_repeated_and_nameless_dates(self) -> None:
        self._create("Holi", date(2026, 3, 4))
        items = [
            {"name": "Holi", "day_date": date(2026, 3, 4)},
            {"name": "Ugadi", "day_date": date(2026, 3, 19)},
            {"name": "Ugadi again", "day_date": date(2026, 3, 19)},
            {"name": "  ", "day_date": date(2026, 3, 21)},
            {"name": "Eid", "day_date": date(2026, 3, 20), "holiday_type": HolidayType.NATIONAL},
        ]

        with self.Session() as db:
            created, skipped = bulk_create_holidays(db, items=items)

        self.assertEqual([item.name for item in created], ["Ugadi", "Eid"])
        self.assertEqual(skipped, ["2026-03-04", "2026-03-19", "2026-03-21"])
        self.assertTrue(all(not item.is_recurring for item in created))
        with self.Session() as db:
            self.assertEqual(list_holidays(db, year=2026)["count"], 3)

    def test_bulk_create_bounds(self) -> None:
        with self.Session() as db:
            with self.assertRaises(ValidationError) as ctx:
                bulk_create_holidays(db, items=[])
        self.assertEqual(ctx.exception.code, "HOLIDAYS_REQUIRED")

        too_many = [
            {"name": f"Day {offset}", "day_date": date(2026, 6, 1 + offset)}
            for offset in range(BULK_CREATE_LIMIT + 1)
        ]
        with self.Session() as db:
            with self.assertRaises(ValidationError) as ctx:
                bulk_create_holidays(db, items=too_many)
        self.assertEqual(ctx.exception.code, "BULK_LIMIT_EXCEEDED")
        with self.Session() as db:
            self.assertEqual(list_holidays(db)["count"], 0)

    def test_update_refuses_a_date_taken_by_another_holiday(self) -> None:
        holi = self._create("Holi", date(2026, 3, 4))[0]
        self._create("Founders Day", date(2026, 3, 5))

        with self.Session() as db:
            with self.assertRaises(ConflictError) as ctx:
                update_holiday(db, holiday_id=holi.id, day=date(2026, 3, 5), now=TODAY)
        self.assertEqual(ctx.exception.code, "HOLIDAY_EXISTS")
        with self.Session() as db:
            self.assertEqual(get_holiday(db, holi.id).day_date, date(2026, 3, 4))

    def test_update_moves_holiday_and_reverts_the_old_day(self) -> None:
        holi = self._create("Holi", date(2026, 3, 4))[0]
        retired = self._create("Retired", date(2026, 3, 6))[0]
        with self.Session() as db:
            deactivate_holiday(db, holiday_id=retired.id, now=TODAY)
        self._mark_holiday(date(2026, 3, 4))

        with self.Session() as db:
            holiday, reverted = update_holiday(
                db,
                holiday_id=holi.id,
                name="Holi (observed)",
                day=date(2026, 3, 6),
                description="Moved by circular",
                now=TODAY,
            )

        self.assertEqual(reverted, 1)
        self.assertEqual(holiday.day_date, date(2026, 3, 6))
        self.assertEqual(holiday.year, 2026)
        self.assertEqual(holiday.name, "Holi (observed)")
        self.assertEqual(holiday.description, "Moved by circular")
        with self.Session() as db:
            self.assertEqual(record_for(db, self.employee.id, date(2026, 3, 4)).status, AttendanceStatus.ABSENT)
            with self.assertRaises(NotFoundError):
                get_holiday(db, retired.id)

    def test_update_can_deactivate_and_reactivate(self) -> None:
        holi = self._create("Holi", date(2026, 3, 4))[0]
        self._mark_holiday(date(2026, 3, 4))

        with self.Session() as db:
            holiday, reverted = update_holiday(db, holiday_id=holi.id, is_active=False, now=TODAY)
        self.assertFalse(holiday.is_active)
        self.assertEqual(reverted, 1)

        with self.Session() as db:
            holiday, reverted = update_holiday(db, holiday_id=holi.id, is_active=True, now=TODAY)
        self.assertTrue(holiday.is_active)
        self.assertEqual(reverted, 0)
        with self.Session() as db:
            self.assertEqual([item.id for item in upcoming_holidays(db, now=TODAY)], [holi.id])

    def test_get_holiday_reports_unknown_id(self) -> None:
        holi = self._create("Holi", date(2026, 3, 4))[0]
        with self.Session() as db:
            self.assertEqual(get_holiday(db, holi.id).name, "Holi")
            with self.assertRaises(NotFoundError) as ctx:
                get_holiday(db, 999)
        self.assertEqual(ctx.exception.code, "HOLIDAY_NOT_FOUND")


if __name__ == "__main__":
    unittest.main()
