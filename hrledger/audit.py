from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.orm import Session

from hrledger.models import AuditActorType, AuditLog, Employee, EmployeeRole

logger = logging.getLogger("hrledger.audit")

_ROLE_ACTOR_TYPES: dict[EmployeeRole, AuditActorType] = {
    EmployeeRole.EMPLOYEE: AuditActorType.EMPLOYEE,
    EmployeeRole.MANAGER: AuditActorType.MANAGER,
    EmployeeRole.HR: AuditActorType.HR,
    EmployeeRole.ADMIN: AuditActorType.ADMIN,
}


def actor_type_for_role(role: EmployeeRole) -> AuditActorType:
    return _ROLE_ACTOR_TYPES.get(role, AuditActorType.EMPLOYEE)


def client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def audit_request(
    db: Session,
    request: Request,
    *,
    actor: Employee,
    action: str,
    entity_type: str,
    entity_id: str | int | None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> None:
    """Write an audit row for an action an authenticated employee took over HTTP."""
    log_audit(
        db,
        actor_type=actor_type_for_role(actor.role),
        actor_id=str(actor.id),
        action=action,
        success=success,
        entity_type=entity_type,
        entity_id=None if entity_id is None else str(entity_id),
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        details=details,
        request_id=getattr(request.state, "request_id", None),
    )


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> None:
    audit = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        ip=ip,
        user_agent=user_agent,
        success=success,
        details=details or {},
    )
    db.add(audit)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": request_id,
                "action": action,
                "actor_type": actor_type.value,
                "actor_id": actor_id,
                "success": success,
            },
        )
        return

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "action": action,
            "actor_type": actor_type.value,
            "actor_id": actor_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "ip": ip,
            "user_agent": user_agent,
            "success": success,
            "details": details or {},
        },
    )
