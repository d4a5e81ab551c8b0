from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from hrledger.audit import audit_request
from hrledger.db import get_db
from hrledger.models import Employee, EmployeeRole, HolidayType, ReconciliationTriggerSource
from hrledger.schemas import (
    HolidayBulkCreateRequest,
    HolidayBulkCreateResponse,
    HolidayChangeResponse,
    HolidayCreateRequest,
    HolidayListResponse,
    HolidayRead,
    HolidayUpdateRequest,
    ReconciliationRunRead,
    ReconciliationRunRequest,
)
from hrledger.security import get_current_employee, require_roles
from hrledger.services import holidays as holiday_service
from hrledger.services.reconciliation_trigger import list_runs, reconciliation_trigger

router = APIRouter(tags=["admin"])

require_admin = require_roles(EmployeeRole.ADMIN)
require_hr_or_admin = require_roles(EmployeeRole.HR, EmployeeRole.ADMIN)


@router.post(
    "/api/admin/reconciliation/run",
    response_model=ReconciliationRunRead,
    status_code=status.HTTP_202_ACCEPTED,
)
def run_reconciliation(
    request: Request,
    payload: ReconciliationRunRequest | None = None,
    admin: Employee = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ReconciliationRunRead:
    actor_id = str(admin.id)
    # The pipeline opens its own sessions; release the request connection first.
    db.close()
    run = reconciliation_trigger.run(
        day=payload.day_date if payload is not None else None,
        trigger=ReconciliationTriggerSource.MANUAL,
        actor_id=actor_id,
        request_id=getattr(request.state, "request_id", None),
    )
    return ReconciliationRunRead.model_validate(run)


@router.get(
    "/api/admin/reconciliation/runs",
    response_model=list[ReconciliationRunRead],
    dependencies=[Depends(require_hr_or_admin)],
)
def reconciliation_runs(
    limit: int = Query(default=30, ge=1, le=200),
    db: Session = Depends(get_db),
) -> list[ReconciliationRunRead]:
    return [ReconciliationRunRead.model_validate(item) for item in list_runs(db, limit=limit)]


@router.post(
    "/api/admin/holidays",
    response_model=list[HolidayRead],
    status_code=status.HTTP_201_CREATED,
)
def create_holiday(
    payload: HolidayCreateRequest,
    request: Request,
    actor: Employee = Depends(require_hr_or_admin),
    db: Session = Depends(get_db),
) -> list[HolidayRead]:
    created = holiday_service.create_holiday(
        db,
        name=payload.name,
        day=payload.day_date,
        holiday_type=payload.holiday_type,
        description=payload.description,
        is_recurring=payload.is_recurring,
        created_by_id=actor.id,
    )
    audit_request(
        db,
        request,
        actor=actor,
        action="HOLIDAY_CREATED",
        entity_type="holiday",
        entity_id=created[0].id,
        details={
            "name": created[0].name,
            "days": [item.day_date.isoformat() for item in created],
            "is_recurring": payload.is_recurring,
        },
    )
    return [HolidayRead.model_validate(item) for item in created]


@router.post(
    "/api/admin/holidays/bulk",
    response_model=HolidayBulkCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
def bulk_create_holidays(
    payload: HolidayBulkCreateRequest,
    request: Request,
    actor: Employee = Depends(require_hr_or_admin),
    db: Session = Depends(get_db),
) -> HolidayBulkCreateResponse:
    created, skipped_dates = holiday_service.bulk_create_holidays(
        db,
        items=[item.model_dump() for item in payload.holidays],
        created_by_id=actor.id,
    )
    audit_request(
        db,
        request,
        actor=actor,
        action="HOLIDAYS_BULK_CREATED",
        entity_type="holiday",
        entity_id=None,
        details={
            "days": [item.day_date.isoformat() for item in created],
            "skipped_dates": skipped_dates,
        },
    )
    return HolidayBulkCreateResponse(
        created=len(created),
        skipped=len(skipped_dates),
        skipped_dates=skipped_dates,
        holidays=[HolidayRead.model_validate(item) for item in created],
    )


@router.put("/api/admin/holidays/{holiday_id}", response_model=HolidayChangeResponse)
def update_holiday(
    holiday_id: int,
    payload: HolidayUpdateRequest,
    request: Request,
    actor: Employee = Depends(require_hr_or_admin),
    db: Session = Depends(get_db),
) -> HolidayChangeResponse:
    holiday, reverted = holiday_service.update_holiday(
        db,
        holiday_id=holiday_id,
        name=payload.name,
        day=payload.day_date,
        holiday_type=payload.holiday_type,
        description=payload.description,
        is_recurring=payload.is_recurring,
        is_active=payload.is_active,
    )
    audit_request(
        db,
        request,
        actor=actor,
        action="HOLIDAY_UPDATED",
        entity_type="holiday",
        entity_id=holiday.id,
        details={
            "changes": payload.model_dump(mode="json", exclude_none=True),
            "reverted_records": reverted,
        },
    )
    return HolidayChangeResponse(holiday=HolidayRead.model_validate(holiday), reverted_records=reverted)


@router.delete("/api/admin/holidays/{holiday_id}", response_model=HolidayChangeResponse)
def deactivate_holiday(
    holiday_id: int,
    request: Request,
    actor: Employee = Depends(require_hr_or_admin),
    db: Session = Depends(get_db),
) -> HolidayChangeResponse:
    holiday, reverted = holiday_service.deactivate_holiday(db, holiday_id=holiday_id)
    audit_request(
        db,
        request,
        actor=actor,
        action="HOLIDAY_DEACTIVATED",
        entity_type="holiday",
        entity_id=holiday.id,
        details={"day": holiday.day_date.isoformat(), "reverted_records": reverted},
    )
    return HolidayChangeResponse(holiday=HolidayRead.model_validate(holiday), reverted_records=reverted)


@router.get(
    "/api/holidays",
    response_model=HolidayListResponse,
    dependencies=[Depends(get_current_employee)],
)
def list_holidays(
    year: int | None = Query(default=None, ge=1970, le=2200),
    holiday_type: HolidayType | None = Query(default=None, alias="type"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    db: Session = Depends(get_db),
) -> HolidayListResponse:
    result = holiday_service.list_holidays(db, year=year, holiday_type=holiday_type, page=page, limit=limit)
    result["holidays"] = [HolidayRead.model_validate(item) for item in result["holidays"]]
    return HolidayListResponse(**result)


@router.get(
    "/api/holidays/upcoming",
    response_model=list[HolidayRead],
    dependencies=[Depends(get_current_employee)],
)
def upcoming_holidays(
    limit: int = Query(default=5, ge=1, le=50),
    db: Session = Depends(get_db),
) -> list[HolidayRead]:
    return [HolidayRead.model_validate(item) for item in holiday_service.upcoming_holidays(db, limit=limit)]


@router.get(
    "/api/holidays/{holiday_id}",
    response_model=HolidayRead,
    dependencies=[Depends(get_current_employee)],
)
def get_holiday(holiday_id: int, db: Session = Depends(get_db)) -> HolidayRead:
    return HolidayRead.model_validate(holiday_service.get_holiday(db, holiday_id))
