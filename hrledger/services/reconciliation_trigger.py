from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hrledger.audit import log_audit
from hrledger.db import SessionLocal
from hrledger.errors import ConflictError
from hrledger.models import (
    AuditActorType,
    ReconciliationRun,
    ReconciliationRunStatus,
    ReconciliationTriggerSource,
)
from hrledger.services.org_day import local_time_of, normalize_ts, org_day_of, parse_hhmm
from hrledger.services.reconciliation import run_daily_reconciliation
from hrledger.settings import get_settings

logger = logging.getLogger("hrledger.reconciliation")

STALE_RUN_ERROR = "Abandoned: still running past the stale-run threshold"


class ReconciliationInProgressError(ConflictError):
    def __init__(self) -> None:
        super().__init__("A reconciliation run is already in progress", code="RECONCILIATION_IN_PROGRESS")


def has_completed_run(db: Session, day: date) -> bool:
    run_id = db.scalar(
        select(ReconciliationRun.id)
        .where(
            ReconciliationRun.run_day == day,
            ReconciliationRun.status == ReconciliationRunStatus.COMPLETED,
        )
        .limit(1)
    )
    return run_id is not None


def list_runs(db: Session, *, limit: int = 30) -> list[ReconciliationRun]:
    return list(
        db.scalars(
            select(ReconciliationRun)
            .order_by(ReconciliationRun.started_at.desc(), ReconciliationRun.id.desc())
            .limit(max(1, min(limit, 200)))
        ).all()
    )


class ReconciliationTrigger:
    """Runs the daily pipeline, never more than once at a time.

    A thread lock turns away concurrent calls in this process. Across processes
    the RUNNING row is the claim: the database allows only one, so a second
    worker, CLI run or API replica fails to insert it and is turned away too.
    A RUNNING row older than RECONCILIATION_STALE_RUN_MINUTES is taken to be
    from a crashed process and is marked failed before claiming.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def is_due(self, now: datetime | None = None) -> bool:
        now_utc = normalize_ts(now)
        trigger_time = parse_hhmm(get_settings().reconciliation_trigger_local)
        if local_time_of(now_utc) < trigger_time:
            return False
        with self._session_factory() as db:
            return not has_completed_run(db, org_day_of(now_utc))

    def run(
        self,
        *,
        day: date | None = None,
        now: datetime | None = None,
        trigger: ReconciliationTriggerSource = ReconciliationTriggerSource.MANUAL,
        actor_id: str = "system",
        request_id: str | None = None,
    ) -> ReconciliationRun:
        if not self._lock.acquire(blocking=False):
            logger.warning("reconciliation_skipped_in_progress", extra={"trigger": trigger.value})
            raise ReconciliationInProgressError()
        try:
            return self._run_locked(day=day, now=now, trigger=trigger, actor_id=actor_id, request_id=request_id)
        finally:
            self._lock.release()

    def _fail_stale_runs(self, db: Session, now_utc: datetime) -> None:
        stale_before = now_utc - timedelta(minutes=get_settings().reconciliation_stale_run_minutes)
        stale_runs = db.scalars(
            select(ReconciliationRun)
            .where(
                ReconciliationRun.status == ReconciliationRunStatus.RUNNING,
                ReconciliationRun.started_at < stale_before,
            )
            .with_for_update(skip_locked=True)
        ).all()
        for stale in stale_runs:
            stale.status = ReconciliationRunStatus.FAILED
            stale.error = STALE_RUN_ERROR
            stale.finished_at = now_utc
            logger.warning(
                "reconciliation_stale_run_failed",
                extra={"run_id": stale.id, "run_day": stale.run_day.isoformat()},
            )
        db.commit()

    def _claim(
        self,
        db: Session,
        *,
        target_day: date,
        trigger: ReconciliationTriggerSource,
        now_utc: datetime,
    ) -> int:
        self._fail_stale_runs(db, now_utc)
        run = ReconciliationRun(
            run_day=target_day,
            trigger=trigger,
            status=ReconciliationRunStatus.RUNNING,
            started_at=now_utc,
            summary={},
        )
        db.add(run)
        try:
            db.commit()
        except IntegrityError as exc:
            # Another process holds the single RUNNING slot.
            db.rollback()
            logger.warning("reconciliation_skipped_in_progress", extra={"trigger": trigger.value, "scope": "database"})
            raise ReconciliationInProgressError() from exc
        return run.id

    def _run_locked(
        self,
        *,
        day: date | None,
        now: datetime | None,
        trigger: ReconciliationTriggerSource,
        actor_id: str,
        request_id: str | None,
    ) -> ReconciliationRun:
        now_utc = normalize_ts(now)
        target_day = day or org_day_of(now_utc)
        actor_type = AuditActorType.SYSTEM if trigger == ReconciliationTriggerSource.SCHEDULE else AuditActorType.ADMIN

        with self._session_factory() as db:
            run_id = self._claim(db, target_day=target_day, trigger=trigger, now_utc=now_utc)

            try:
                summary = run_daily_reconciliation(db, day=target_day, now=now_utc)
            except Exception as exc:
                db.rollback()
                failed = db.get(ReconciliationRun, run_id)
                if failed is not None:
                    failed.status = ReconciliationRunStatus.FAILED
                    failed.error = f"{exc.__class__.__name__}: {exc}"[:2000]
                    failed.finished_at = normalize_ts(None)
                    db.commit()
                log_audit(
                    db,
                    actor_type=actor_type,
                    actor_id=actor_id,
                    action="RECONCILIATION_RUN",
                    success=False,
                    entity_type="reconciliation_run",
                    entity_id=str(run_id),
                    details={"day": target_day.isoformat(), "trigger": trigger.value, "error": exc.__class__.__name__},
                    request_id=request_id,
                )
                raise

            completed = db.get(ReconciliationRun, run_id, populate_existing=True)
            if completed is None:
                raise RuntimeError(f"Reconciliation run {run_id} disappeared")
            completed.status = ReconciliationRunStatus.COMPLETED
            completed.summary = summary.to_dict()
            completed.finished_at = summary.finished_at
            db.commit()

            log_audit(
                db,
                actor_type=actor_type,
                actor_id=actor_id,
                action="RECONCILIATION_RUN",
                success=True,
                entity_type="reconciliation_run",
                entity_id=str(run_id),
                details=summary.to_dict(),
                request_id=request_id,
            )
            db.refresh(completed)
            return completed


reconciliation_trigger = ReconciliationTrigger()
