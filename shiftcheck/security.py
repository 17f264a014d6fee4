from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from shiftcheck.errors import ApiError
from shiftcheck.models import AuditActorType, Role
from shiftcheck.services.tenancy import role_at_least
from shiftcheck.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    user_id: int
    role: Role
    company_id: int | None = None
    branch_id: int | None = None

    @property
    def is_admin(self) -> bool:
        return role_at_least(self.role, Role.ADMIN_SUCURSAL)

    @property
    def audit_actor_type(self) -> AuditActorType:
        return AuditActorType.ADMIN if self.is_admin else AuditActorType.EMPLOYEE


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token scope is invalid.") from None


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc
    return payload


def principal_from_claims(payload: dict[str, Any]) -> Principal:
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.isdigit():
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")

    try:
        role = Role(payload.get("role"))
    except ValueError:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token role is invalid.") from None

    return Principal(
        user_id=int(subject),
        role=role,
        company_id=_optional_int(payload.get("company_id")),
        branch_id=_optional_int(payload.get("branch_id")),
    )


def get_current_principal(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    principal = principal_from_claims(decode_token(credentials.credentials))
    request.state.actor = principal.audit_actor_type.value.lower()
    request.state.actor_id = str(principal.user_id)
    return principal


def require_roles(minimum: Role) -> Callable[..., Principal]:
    def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not role_at_least(principal.role, minimum):
            raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
        return principal

    return _dependency
