from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from hrledger.db import get_db
from hrledger.errors import ApiError
from hrledger.models import Employee, EmployeeRole
from hrledger.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(
    *,
    employee_id: int,
    role: EmployeeRole,
    expires_delta: timedelta | None = None,
) -> tuple[str, int]:
    """Issue a token in the format the API accepts.

    Login lives outside this service; this is used by operational scripts and tests.
    """
    settings = get_settings()
    lifetime = expires_delta or timedelta(minutes=settings.access_token_minutes)
    now = _utcnow()
    claims: dict[str, Any] = {
        "sub": str(employee_id),
        "role": role.value,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + lifetime).timestamp()),
        "jti": str(uuid4()),
        "typ": "access",
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm="HS256")
    return token, int(lifetime.total_seconds())


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    if payload.get("typ") != "access":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token type is invalid.")
    return payload


def get_current_employee(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> Employee:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    payload = decode_token(credentials.credentials)
    try:
        employee_id = int(str(payload.get("sub")))
    except ValueError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.") from exc

    employee = db.get(Employee, employee_id)
    if employee is None:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Account no longer exists.")
    if not employee.is_active:
        raise ApiError(status_code=403, code="EMPLOYEE_INACTIVE", message="Account is deactivated.")

    # Role comes from the directory, not the token, so demotions apply immediately.
    request.state.actor = employee.role.value
    request.state.actor_id = str(employee.id)
    return employee


def require_roles(*roles: EmployeeRole) -> Callable[..., Employee]:
    allowed = frozenset(roles)

    def _dependency(employee: Employee = Depends(get_current_employee)) -> Employee:
        if employee.role not in allowed:
            raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
        return employee

    return _dependency
