"""Tests for requirement trees and their pure evaluation."""

import pytest

from sessionward.service.errors import InvalidRequirementError
from sessionward.service.guard import (
    BYPASS,
    And,
    AuthorizationContext,
    Decision,
    LoginRequirement,
    Mode,
    Or,
    PermissionRequirement,
    RoleRequirement,
    SafeRequirement,
    ServiceEnabledRequirement,
    contains_bypass,
    evaluate,
    validate,
)


def context(roles=(), permissions=(), disabled=(), safe=()):
    return AuthorizationContext(
        account_id="1001",
        roles=frozenset(roles),
        permissions=frozenset(permissions),
        disabled_services=frozenset(disabled),
        safe_services=frozenset(safe),
    )


class TestRoleRequirement:
    def test_and_mode_needs_every_role(self):
        requirement = RoleRequirement("admin", "super-admin")

        assert evaluate(requirement, context(roles={"admin", "super-admin"})).allowed
        decision = evaluate(requirement, context(roles={"admin"}))
        assert decision == Decision.deny("super-admin", "role")

    def test_or_mode_needs_any_role(self):
        requirement = RoleRequirement("admin", "super-admin", mode=Mode.OR)

        assert evaluate(requirement, context(roles={"super-admin"})).allowed
        decision = evaluate(requirement, context(roles={"user"}))
        assert decision.failed_requirement == "admin|super-admin"
        assert decision.failed_kind == "role"

    def test_mode_accepts_string(self):
        assert RoleRequirement("admin", mode="or").mode == Mode.OR


class TestPermissionRequirement:
    def test_permission_and_mode(self):
        requirement = PermissionRequirement("user.add", "user.delete")

        decision = evaluate(requirement, context(permissions={"user.add"}))

        assert decision == Decision.deny("user.delete", "permission")

    def test_or_role_grants_access(self):
        requirement = PermissionRequirement("user.add", or_role="admin")

        assert evaluate(requirement, context(roles={"admin"})).allowed

    def test_or_role_comma_entry_needs_all_roles(self):
        requirement = PermissionRequirement(
            "user.add", or_role=["admin, manager", "staff"]
        )

        assert not evaluate(requirement, context(roles={"admin"})).allowed
        assert evaluate(requirement, context(roles={"admin", "manager"})).allowed
        assert evaluate(requirement, context(roles={"staff"})).allowed

    def test_or_role_failure_reports_permission(self):
        requirement = PermissionRequirement("user.add", or_role="admin")

        decision = evaluate(requirement, context(roles={"user"}))

        assert decision == Decision.deny("user.add", "permission")


class TestServiceAndSafe:
    def test_disabled_service_denies(self):
        requirement = ServiceEnabledRequirement("comment")

        assert evaluate(requirement, context()).allowed
        decision = evaluate(requirement, context(disabled={"comment"}))
        assert decision == Decision.deny("comment", "service")

    def test_safe_requires_open_window(self):
        requirement = SafeRequirement("pay")

        assert evaluate(requirement, context(safe={"pay"})).allowed
        assert evaluate(requirement, context(safe={"other"})) == Decision.deny(
            "pay", "safe"
        )

    def test_login_requirement_always_allows(self):
        assert evaluate(LoginRequirement(), context()).allowed


class TestComposition:
    def test_and_reports_first_failure(self):
        requirement = And(RoleRequirement("admin"), PermissionRequirement("user.add"))

        decision = evaluate(requirement, context(roles={"admin"}))

        assert decision == Decision.deny("user.add", "permission")

    def test_or_allows_when_any_operand_allows(self):
        requirement = Or(RoleRequirement("admin"), PermissionRequirement("user.add"))

        assert evaluate(requirement, context(permissions={"user.add"})).allowed

    def test_or_reports_first_operand_failure(self):
        requirement = Or(RoleRequirement("admin"), PermissionRequirement("user.add"))

        decision = evaluate(requirement, context())

        assert decision == Decision.deny("admin", "role")

    def test_nested_tree(self):
        requirement = And(
            RoleRequirement("admin"),
            Or(PermissionRequirement("user.add"), SafeRequirement()),
        )

        assert evaluate(requirement, context(roles={"admin"}, safe={"important"})).allowed
        assert not evaluate(requirement, context(roles={"admin"})).allowed

    def test_bypass_anywhere_allows(self):
        requirement = And(RoleRequirement("admin"), Or(BYPASS, SafeRequirement()))

        assert contains_bypass(requirement)
        assert evaluate(requirement, context()).allowed


class TestValidation:
    def test_none_requirement_rejected(self):
        with pytest.raises(InvalidRequirementError):
            validate(None)

    def test_non_requirement_rejected(self):
        with pytest.raises(InvalidRequirementError):
            evaluate("admin", context())

    def test_empty_role_list_rejected(self):
        with pytest.raises(InvalidRequirementError):
            RoleRequirement()

    def test_blank_name_rejected(self):
        with pytest.raises(InvalidRequirementError):
            PermissionRequirement("user.add", " ")

    def test_unknown_mode_rejected(self):
        with pytest.raises(InvalidRequirementError):
            RoleRequirement("admin", mode="xor")

    def test_empty_composition_rejected(self):
        with pytest.raises(InvalidRequirementError):
            And()
        with pytest.raises(InvalidRequirementError):
            Or(RoleRequirement("admin"), "user.add")

    def test_invalid_requirement_is_server_error(self):
        with pytest.raises(InvalidRequirementError) as exc_info:
            Or()

        assert exc_info.value.status_code == 500
