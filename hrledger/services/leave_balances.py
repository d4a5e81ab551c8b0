"""Per-employee, per-year leave balance ledger.

Rows are only ever changed through single-statement relative updates so that
concurrent approvals and cancellations cannot lose each other's writes, and
``remaining == total - used`` holds after every statement.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hrledger.errors import InsufficientBalanceError, ValidationError
from hrledger.models import PAID_LEAVE_TYPES, LeaveBalance, LeaveType
from hrledger.settings import get_settings

logger = logging.getLogger("hrledger.leave_balances")


def default_allotment(leave_type: LeaveType) -> float:
    settings = get_settings()
    return {
        LeaveType.CASUAL: settings.leave_allotment_casual,
        LeaveType.SICK: settings.leave_allotment_sick,
        LeaveType.ANNUAL: settings.leave_allotment_annual,
        LeaveType.UNPAID: settings.leave_allotment_unpaid,
    }[leave_type]


def _insert_default_row(db: Session, *, employee_id: int, year: int, leave_type: LeaveType) -> None:
    allotment = float(default_allotment(leave_type))
    values = {
        "employee_id": employee_id,
        "year": year,
        "leave_type": leave_type,
        "total": allotment,
        "used": 0.0,
        "remaining": allotment,
    }
    dialect_name = db.get_bind().dialect.name
    if dialect_name in {"postgresql", "sqlite"}:
        insert_fn = postgresql.insert if dialect_name == "postgresql" else sqlite.insert
        db.execute(
            insert_fn(LeaveBalance)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["employee_id", "year", "leave_type"])
        )
        return

    try:
        with db.begin_nested():
            db.add(LeaveBalance(**values))
            db.flush()
    except IntegrityError:
        logger.debug(
            "leave_balance_exists",
            extra={"employee_id": employee_id, "year": year, "leave_type": leave_type.value},
        )


def get_or_create(db: Session, *, employee_id: int, year: int) -> dict[LeaveType, LeaveBalance]:
    """Return the four category rows for the year, creating missing ones with defaults.

    Safe under concurrent first access. Does not commit.
    """
    stmt = (
        select(LeaveBalance)
        .where(LeaveBalance.employee_id == employee_id, LeaveBalance.year == year)
        .execution_options(populate_existing=True)
    )
    rows = {row.leave_type: row for row in db.scalars(stmt).all()}
    missing = [leave_type for leave_type in LeaveType if leave_type not in rows]
    if not missing:
        return rows

    for leave_type in missing:
        _insert_default_row(db, employee_id=employee_id, year=year, leave_type=leave_type)
    return {row.leave_type: row for row in db.scalars(stmt).all()}


def _load_row(db: Session, *, employee_id: int, year: int, leave_type: LeaveType) -> LeaveBalance:
    return get_or_create(db, employee_id=employee_id, year=year)[leave_type]


def adjust(db: Session, *, employee_id: int, year: int, leave_type: LeaveType, used_delta: float) -> None:
    """Move ``used_delta`` days from remaining to used (negative values give days back)."""
    get_or_create(db, employee_id=employee_id, year=year)
    db.execute(
        update(LeaveBalance)
        .where(
            LeaveBalance.employee_id == employee_id,
            LeaveBalance.year == year,
            LeaveBalance.leave_type == leave_type,
        )
        .values(
            used=LeaveBalance.used + used_delta,
            remaining=LeaveBalance.remaining - used_delta,
        )
        .execution_options(synchronize_session=False)
    )
    logger.info(
        "leave_balance_adjusted",
        extra={
            "employee_id": employee_id,
            "year": year,
            "leave_type": leave_type.value,
            "used_delta": used_delta,
        },
    )


def try_deduct(db: Session, *, employee_id: int, year: int, leave_type: LeaveType, amount: float) -> None:
    """Deduct ``amount`` only if the live balance still covers it.

    The sufficiency check and the decrement are one statement, so two approvals
    racing for the last days cannot both succeed.
    """
    get_or_create(db, employee_id=employee_id, year=year)
    conditions = [
        LeaveBalance.employee_id == employee_id,
        LeaveBalance.year == year,
        LeaveBalance.leave_type == leave_type,
    ]
    if leave_type in PAID_LEAVE_TYPES:
        conditions.append(LeaveBalance.remaining >= amount)

    result = db.execute(
        update(LeaveBalance)
        .where(*conditions)
        .values(
            used=LeaveBalance.used + amount,
            remaining=LeaveBalance.remaining - amount,
        )
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        row = _load_row(db, employee_id=employee_id, year=year, leave_type=leave_type)
        raise InsufficientBalanceError(
            leave_type=leave_type.value,
            requested=amount,
            available=float(row.remaining),
        )
    logger.info(
        "leave_balance_deducted",
        extra={"employee_id": employee_id, "year": year, "leave_type": leave_type.value, "amount": amount},
    )


def available(db: Session, *, employee_id: int, year: int, leave_type: LeaveType) -> float:
    return float(_load_row(db, employee_id=employee_id, year=year, leave_type=leave_type).remaining)


def set_total(db: Session, *, employee_id: int, year: int, leave_type: LeaveType, total: float) -> LeaveBalance:
    if total < 0:
        raise ValidationError("Total must be a non-negative number", code="INVALID_BALANCE_TOTAL")

    get_or_create(db, employee_id=employee_id, year=year)
    result = db.execute(
        update(LeaveBalance)
        .where(
            LeaveBalance.employee_id == employee_id,
            LeaveBalance.year == year,
            LeaveBalance.leave_type == leave_type,
            LeaveBalance.used <= total,
        )
        .values(total=total, remaining=total - LeaveBalance.used)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        row = _load_row(db, employee_id=employee_id, year=year, leave_type=leave_type)
        db.rollback()
        raise ValidationError(
            f"Total cannot be less than already used days ({row.used:g})",
            code="INVALID_BALANCE_TOTAL",
            details={"used": float(row.used), "requested_total": total},
        )
    db.commit()
    return _load_row(db, employee_id=employee_id, year=year, leave_type=leave_type)


def snapshot(db: Session, *, employee_id: int, year: int) -> dict[str, Any]:
    rows = get_or_create(db, employee_id=employee_id, year=year)
    return {
        "employee_id": employee_id,
        "year": year,
        "balances": {
            leave_type.value: {
                "total": float(rows[leave_type].total),
                "used": float(rows[leave_type].used),
                "remaining": float(rows[leave_type].remaining),
            }
            for leave_type in LeaveType
        },
    }
