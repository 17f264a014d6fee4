from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

from jose import jwt

from shiftcheck.errors import ApiError
from shiftcheck.models import AuditActorType, Role
from shiftcheck.security import Principal, decode_token, principal_from_claims
from shiftcheck.services.tenancy import ensure_tenant_scope, ensure_user_visible, role_at_least, scoped_branch_id

_TEST_SETTINGS = SimpleNamespace(jwt_secret="unit-test-secret", jwt_issuer="shiftcheck-auth", jwt_audience="shiftcheck")


def _token(**overrides) -> str:
    claims = {
        "sub": "3",
        "role": "EMPLEADO",
        "company_id": 1,
        "branch_id": 2,
        "iss": "shiftcheck-auth",
        "aud": "shiftcheck",
        "exp": int((datetime.now(timezone.utc) + timedelta(hours=1)).timestamp()),
    }
    claims.update(overrides)
    return jwt.encode(claims, "unit-test-secret", algorithm="HS256")


class RoleRankTests(unittest.TestCase):
    def test_roles_are_ordered(self) -> None:
        self.assertTrue(role_at_least(Role.SUPERADMIN, Role.ADMIN_EMPRESA))
        self.assertTrue(role_at_least(Role.ADMIN_SUCURSAL, Role.ADMIN_SUCURSAL))
        self.assertFalse(role_at_least(Role.EMPLEADO, Role.ADMIN_SUCURSAL))

    def test_audit_actor_type_follows_role(self) -> None:
        self.assertEqual(Principal(user_id=1, role=Role.EMPLEADO).audit_actor_type, AuditActorType.EMPLOYEE)
        self.assertEqual(Principal(user_id=1, role=Role.ADMIN_EMPRESA).audit_actor_type, AuditActorType.ADMIN)


class TenantScopeTests(unittest.TestCase):
    def test_superadmin_reaches_any_company(self) -> None:
        ensure_tenant_scope(Principal(user_id=1, role=Role.SUPERADMIN), company_id=99, branch_id=7)

    def test_company_admin_limited_to_own_company(self) -> None:
        admin = Principal(user_id=1, role=Role.ADMIN_EMPRESA, company_id=1)
        ensure_tenant_scope(admin, company_id=1, branch_id=5)

        with self.assertRaises(ApiError) as exc:
            ensure_tenant_scope(admin, company_id=2)

        self.assertEqual(exc.exception.code, "TENANT_FORBIDDEN")

    def test_branch_admin_limited_to_own_branch(self) -> None:
        admin = Principal(user_id=1, role=Role.ADMIN_SUCURSAL, company_id=1, branch_id=2)

        with self.assertRaises(ApiError) as exc:
            ensure_tenant_scope(admin, company_id=1, branch_id=3)

        self.assertEqual(exc.exception.status_code, 403)

    def test_branch_scoped_roles_default_to_their_branch(self) -> None:
        employee = Principal(user_id=3, role=Role.EMPLEADO, company_id=1, branch_id=2)
        company_admin = Principal(user_id=1, role=Role.ADMIN_EMPRESA, company_id=1)

        self.assertEqual(scoped_branch_id(employee, None), 2)
        self.assertIsNone(scoped_branch_id(company_admin, None))
        self.assertEqual(scoped_branch_id(company_admin, 4), 4)

    def test_employee_only_sees_self(self) -> None:
        employee = Principal(user_id=3, role=Role.EMPLEADO, company_id=1, branch_id=2)
        ensure_user_visible(object(), employee, 3)  # type: ignore[arg-type]

        with self.assertRaises(ApiError):
            ensure_user_visible(object(), employee, 4)  # type: ignore[arg-type]

    def test_admin_sees_users_with_membership_in_scope(self) -> None:
        admin = Principal(user_id=1, role=Role.ADMIN_SUCURSAL, company_id=1, branch_id=2)

        with patch("shiftcheck.services.tenancy.resolve_membership", return_value=SimpleNamespace(id=5)) as resolve_mock:
            ensure_user_visible(object(), admin, 3)  # type: ignore[arg-type]

        self.assertEqual(resolve_mock.call_args.kwargs["branch_id"], 2)


class TokenTests(unittest.TestCase):
    def test_valid_token_becomes_principal(self) -> None:
        with patch("shiftcheck.security.get_settings", return_value=_TEST_SETTINGS):
            principal = principal_from_claims(decode_token(_token()))

        self.assertEqual(principal, Principal(user_id=3, role=Role.EMPLEADO, company_id=1, branch_id=2))

    def test_wrong_audience_is_rejected(self) -> None:
        with patch("shiftcheck.security.get_settings", return_value=_TEST_SETTINGS):
            with self.assertRaises(ApiError) as exc:
                decode_token(_token(aud="someone-else"))

        self.assertEqual(exc.exception.status_code, 401)
        self.assertEqual(exc.exception.code, "INVALID_TOKEN")

    def test_expired_token_is_rejected(self) -> None:
        expired = int((datetime.now(timezone.utc) - timedelta(minutes=5)).timestamp())

        with patch("shiftcheck.security.get_settings", return_value=_TEST_SETTINGS):
            with self.assertRaises(ApiError):
                decode_token(_token(exp=expired))

    def test_unknown_role_claim_is_rejected(self) -> None:
        with self.assertRaises(ApiError) as exc:
            principal_from_claims({"sub": "3", "role": "OWNER"})

        self.assertEqual(exc.exception.code, "INVALID_TOKEN")

    def test_non_numeric_subject_is_rejected(self) -> None:
        with self.assertRaises(ApiError):
            principal_from_claims({"sub": "abc", "role": "EMPLEADO"})


if __name__ == "__main__":
    unittest.main()
