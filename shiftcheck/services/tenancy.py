from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from shiftcheck.errors import forbidden, not_found
from shiftcheck.models import Membership, Role

if TYPE_CHECKING:
    from shiftcheck.security import Principal

ROLE_RANK: dict[Role, int] = {
    Role.EMPLEADO: 1,
    Role.ADMIN_SUCURSAL: 2,
    Role.ADMIN_EMPRESA: 3,
    Role.SUPERADMIN: 4,
}


def role_at_least(role: Role, minimum: Role) -> bool:
    return ROLE_RANK[role] >= ROLE_RANK[minimum]


def ensure_tenant_scope(principal: Principal, company_id: int, branch_id: int | None = None) -> None:
    """Reject callers outside the requested company/branch before anything is read."""
    if principal.role == Role.SUPERADMIN:
        return
    if principal.company_id is None or principal.company_id != company_id:
        raise forbidden("Company is outside of your scope.", code="TENANT_FORBIDDEN")
    if principal.role in {Role.ADMIN_SUCURSAL, Role.EMPLEADO} and branch_id is not None:
        if principal.branch_id is not None and principal.branch_id != branch_id:
            raise forbidden("Branch is outside of your scope.", code="TENANT_FORBIDDEN")


def _membership_query(user_id: int, company_id: int, branch_id: int | None):
    stmt = select(Membership).where(
        Membership.user_id == user_id,
        Membership.company_id == company_id,
        Membership.active.is_(True),
    )
    if branch_id is not None:
        stmt = stmt.where(Membership.branch_id == branch_id)
    return stmt.order_by(Membership.id.asc())


def resolve_membership(
    db: Session,
    *,
    user_id: int,
    company_id: int,
    branch_id: int | None = None,
) -> Membership | None:
    return db.scalar(_membership_query(user_id, company_id, branch_id).limit(1))


def require_membership(
    db: Session,
    *,
    user_id: int,
    company_id: int,
    branch_id: int | None = None,
) -> Membership:
    membership = resolve_membership(db, user_id=user_id, company_id=company_id, branch_id=branch_id)
    if membership is None:
        raise not_found("MEMBERSHIP_NOT_FOUND", "No active membership for this user in the given company/branch.")
    return membership


def lock_membership(
    db: Session,
    *,
    user_id: int,
    company_id: int,
    branch_id: int | None = None,
) -> Membership:
    """Row-lock the membership so concurrent punches for it run one after the other."""
    membership = db.scalar(_membership_query(user_id, company_id, branch_id).limit(1).with_for_update())
    if membership is None:
        raise not_found("MEMBERSHIP_NOT_FOUND", "No active membership for this user in the given company/branch.")
    return membership


def scoped_branch_id(principal: Principal, branch_id: int | None) -> int | None:
    if branch_id is None and principal.role in {Role.ADMIN_SUCURSAL, Role.EMPLEADO}:
        return principal.branch_id
    return branch_id


def ensure_user_visible(db: Session, principal: Principal, user_id: int) -> None:
    """Employees see themselves; admins see users holding a membership inside their scope."""
    if principal.user_id == user_id or principal.role == Role.SUPERADMIN:
        return
    if not role_at_least(principal.role, Role.ADMIN_SUCURSAL) or principal.company_id is None:
        raise forbidden("User is outside of your scope.", code="TENANT_FORBIDDEN")
    membership = resolve_membership(
        db,
        user_id=user_id,
        company_id=principal.company_id,
        branch_id=scoped_branch_id(principal, None),
    )
    if membership is None:
        raise forbidden("User is outside of your scope.", code="TENANT_FORBIDDEN")
