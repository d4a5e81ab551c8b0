"""Daily close-out of the attendance ledger.

The pipeline runs four jobs for one organizational day, in this order:

1. auto checkout of sessions still open,
2. propagation of approved leave onto the day,
3. holiday marking, which replaces absence marking on a holiday,
4. absence marking for everyone still without a record.

Every write is an idempotent upsert keyed by (employee, day), so running the
pipeline twice for the same day leaves the ledger unchanged. A job that blows
up is logged and counted; the jobs after it still run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hrledger.models import AttendanceRecord, AttendanceStatus, Holiday, LeaveApplication, LeaveStatus
from hrledger.services.attendance import (
    UpsertOutcome,
    apply_checkout_status,
    compute_work_hours,
    insert_if_absent,
    load_record,
    upsert_status,
)
from hrledger.services.directory import active_workforce_ids, find_holiday
from hrledger.services.org_day import day_bounds_utc, is_working_day, normalize_ts, org_day_of

logger = logging.getLogger("hrledger.reconciliation")

AUTO_CHECKOUT_NOTE = "Auto checked out by system"
ABSENT_NOTE = "Auto marked absent - no check-in recorded"


@dataclass(slots=True)
class JobResult:
    name: str
    succeeded: int = 0
    skipped: int = 0
    errors: int = 0
    crashed: bool = False
    skipped_reason: str | None = None

    def count(self, outcome: UpsertOutcome) -> None:
        if outcome in (UpsertOutcome.CREATED, UpsertOutcome.UPDATED):
            self.succeeded += 1
        elif outcome is UpsertOutcome.EXISTED:
            self.skipped += 1
        else:
            self.errors += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "errors": self.errors,
            "crashed": self.crashed,
            "skipped_reason": self.skipped_reason,
        }


@dataclass(slots=True)
class ReconciliationSummary:
    day: date
    started_at: datetime
    finished_at: datetime | None = None
    holiday_name: str | None = None
    jobs: dict[str, JobResult] = field(default_factory=dict)

    def _succeeded(self, name: str) -> int:
        job = self.jobs.get(name)
        return job.succeeded if job is not None else 0

    @property
    def errors(self) -> int:
        return sum(job.errors for job in self.jobs.values())

    @property
    def skipped(self) -> int:
        return sum(job.skipped for job in self.jobs.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "day": self.day.isoformat(),
            "auto_checked_out": self._succeeded("auto_checkout"),
            "marked_on_leave": self._succeeded("mark_on_leave"),
            "marked_holiday": self._succeeded("mark_holiday"),
            "marked_absent": self._succeeded("mark_absent"),
            "skipped": self.skipped,
            "errors": self.errors,
            "holiday": self.holiday_name,
            "jobs": {name: job.to_dict() for name, job in self.jobs.items()},
            "started_at": self.started_at.isoformat(),
            "timestamp": (self.finished_at or self.started_at).isoformat(),
        }


def _checkout_instant(day: date, now: datetime) -> datetime:
    # Backfills close sessions at the last second of their own day.
    _, next_day_start = day_bounds_utc(day)
    return min(now, next_day_start - timedelta(seconds=1))


def run_auto_checkout(db: Session, *, day: date, now: datetime) -> JobResult:
    result = JobResult(name="auto_checkout")
    checkout_at = _checkout_instant(day, now)
    open_records = list(
        db.scalars(
            select(AttendanceRecord)
            .where(
                AttendanceRecord.day_date == day,
                AttendanceRecord.check_in.is_not(None),
                AttendanceRecord.check_out.is_(None),
            )
            .order_by(AttendanceRecord.id.asc())
        ).all()
    )
    for record in open_records:
        try:
            work_hours = compute_work_hours(record.check_in, checkout_at)
            note = f"{record.note} | {AUTO_CHECKOUT_NOTE}" if record.note else AUTO_CHECKOUT_NOTE
            updated = db.execute(
                update(AttendanceRecord)
                .where(
                    AttendanceRecord.id == record.id,
                    AttendanceRecord.check_out.is_(None),
                )
                .values(
                    check_out=checkout_at,
                    work_hours=work_hours,
                    status=apply_checkout_status(record.status, work_hours),
                    note=note,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            result.errors += 1
            logger.exception(
                "auto_checkout_record_failed",
                extra={"record_id": record.id, "employee_id": record.employee_id, "day": day.isoformat()},
            )
            continue
        if updated.rowcount:
            result.succeeded += 1
        else:
            result.skipped += 1
    return result


def run_mark_on_leave(db: Session, *, day: date) -> JobResult:
    result = JobResult(name="mark_on_leave")
    if not is_working_day(day):
        result.skipped_reason = "sunday"
        return result

    applications = list(
        db.scalars(
            select(LeaveApplication)
            .where(
                LeaveApplication.status == LeaveStatus.APPROVED,
                LeaveApplication.from_date <= day,
                LeaveApplication.to_date >= day,
            )
            .order_by(LeaveApplication.id.asc())
        ).all()
    )
    for application in applications:
        try:
            existing = load_record(db, application.employee_id, day)
            if existing is not None and (
                existing.status in (AttendanceStatus.ON_LEAVE, AttendanceStatus.HOLIDAY) or existing.check_in is not None
            ):
                result.skipped += 1
                continue

            outcome = upsert_status(
                db,
                employee_id=application.employee_id,
                day=day,
                status=AttendanceStatus.ON_LEAVE,
                note=f"On approved leave - {application.leave_type.value} leave",
                marked_by_id=None,
                is_manual=True,
            )
            if outcome in (UpsertOutcome.CREATED, UpsertOutcome.UPDATED):
                db.execute(
                    update(LeaveApplication)
                    .where(LeaveApplication.id == application.id)
                    .values(attendance_marked=True)
                    .execution_options(synchronize_session=False)
                )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            result.errors += 1
            logger.exception(
                "mark_on_leave_failed",
                extra={"leave_id": application.id, "employee_id": application.employee_id, "day": day.isoformat()},
            )
            continue
        result.count(outcome)
    return result


def run_mark_holiday(db: Session, *, day: date, holiday: Holiday) -> JobResult:
    result = JobResult(name="mark_holiday")
    note = f"Holiday: {holiday.name}"
    for employee_id in active_workforce_ids(db):
        outcome = upsert_status(
            db,
            employee_id=employee_id,
            day=day,
            status=AttendanceStatus.HOLIDAY,
            note=note,
            marked_by_id=None,
            is_manual=False,
        )
        if outcome is UpsertOutcome.FAILED:
            db.rollback()
        else:
            db.commit()
        result.count(outcome)
    return result


def run_mark_absent(db: Session, *, day: date) -> JobResult:
    result = JobResult(name="mark_absent")
    if not is_working_day(day):
        result.skipped_reason = "sunday"
        return result

    active_ids = set(active_workforce_ids(db))
    recorded_ids = set(db.scalars(select(AttendanceRecord.employee_id).where(AttendanceRecord.day_date == day)).all())
    on_leave_ids = set(
        db.scalars(
            select(LeaveApplication.employee_id).where(
                LeaveApplication.status == LeaveStatus.APPROVED,
                LeaveApplication.from_date <= day,
                LeaveApplication.to_date >= day,
            )
        ).all()
    )
    for employee_id in sorted(active_ids - recorded_ids - on_leave_ids):
        outcome = insert_if_absent(
            db,
            employee_id=employee_id,
            day=day,
            status=AttendanceStatus.ABSENT,
            note=ABSENT_NOTE,
            is_manual=False,
        )
        if outcome is UpsertOutcome.FAILED:
            db.rollback()
        else:
            db.commit()
        result.count(outcome)
    return result


def _run_job(db: Session, name: str, job: Callable[[], JobResult], *, day: date) -> JobResult:
    try:
        result = job()
    except Exception:
        db.rollback()
        logger.exception("reconciliation_job_crashed", extra={"job": name, "day": day.isoformat()})
        result = JobResult(name=name, errors=1, crashed=True)
    logger.info(
        "reconciliation_job_complete",
        extra={"job": name, "day": day.isoformat(), **result.to_dict()},
    )
    return result


def run_daily_reconciliation(
    db: Session,
    *,
    day: date | None = None,
    now: datetime | None = None,
) -> ReconciliationSummary:
    """Close out ``day`` (the organizational day of ``now`` by default)."""
    now_utc = normalize_ts(now)
    target_day = day or org_day_of(now_utc)
    summary = ReconciliationSummary(day=target_day, started_at=now_utc)
    logger.info("reconciliation_started", extra={"day": target_day.isoformat()})

    summary.jobs["auto_checkout"] = _run_job(
        db, "auto_checkout", lambda: run_auto_checkout(db, day=target_day, now=now_utc), day=target_day
    )
    summary.jobs["mark_on_leave"] = _run_job(
        db, "mark_on_leave", lambda: run_mark_on_leave(db, day=target_day), day=target_day
    )

    holiday: Holiday | None = None
    holiday_lookup_failed = False
    try:
        holiday = find_holiday(db, target_day)
    except SQLAlchemyError:
        db.rollback()
        holiday_lookup_failed = True
        logger.exception("reconciliation_holiday_lookup_failed", extra={"day": target_day.isoformat()})

    if holiday is not None:
        summary.holiday_name = holiday.name
        summary.jobs["mark_holiday"] = _run_job(
            db,
            "mark_holiday",
            lambda: run_mark_holiday(db, day=target_day, holiday=holiday),
            day=target_day,
        )
        summary.jobs["mark_absent"] = JobResult(name="mark_absent", skipped_reason="holiday")
    elif holiday_lookup_failed:
        summary.jobs["mark_absent"] = JobResult(name="mark_absent", errors=1, skipped_reason="holiday_lookup_failed")
    else:
        summary.jobs["mark_absent"] = _run_job(
            db, "mark_absent", lambda: run_mark_absent(db, day=target_day), day=target_day
        )

    summary.finished_at = normalize_ts(None)
    logger.info("reconciliation_finished", extra=summary.to_dict())
    return summary
