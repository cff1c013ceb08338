"""Tests for the static permission source and service disables."""

import pytest

from sessionward.service.permissions import StaticPermissionSource


class TestRolesAndPermissions:
    def test_grants_are_deduplicated(self, permissions):
        permissions.grant_roles("1001", "admin", "user")
        permissions.grant_roles("1001", "admin")

        assert permissions.get_roles("1001") == ["admin", "user"]

    def test_revoke_role(self, permissions):
        permissions.grant_roles("1001", "admin", "user")

        permissions.revoke_role("1001", "admin")
        permissions.revoke_role("1001", "missing")

        assert permissions.get_roles("1001") == ["user"]

    def test_unknown_account_has_nothing(self, permissions):
        assert permissions.get_roles("404") == []
        assert permissions.get_permissions("404") == []
        assert permissions.get_disabled_services("404") == set()

    def test_returned_lists_are_copies(self, permissions):
        permissions.grant_permissions("1001", "user.add")

        permissions.get_permissions("1001").append("user.delete")

        assert permissions.get_permissions("1001") == ["user.add"]


class TestDisable:
    def test_permanent_disable(self, clock, permissions):
        permissions.disable("1001", "comment")
        clock.advance(10 * 365 * 24 * 3600)

        assert permissions.is_disabled("1001", "comment")
        assert permissions.disable_remaining("1001", "comment") == -1

    def test_timed_disable_lapses(self, clock, permissions):
        permissions.disable("1001", ttl_seconds=60)

        assert permissions.is_disabled("1001")
        assert permissions.disable_remaining("1001") == 60

        clock.advance(60)

        assert not permissions.is_disabled("1001")
        assert permissions.disable_remaining("1001") is None

    def test_untie_disable(self, permissions):
        permissions.disable("1001", "comment")

        permissions.untie_disable("1001", "comment")

        assert permissions.get_disabled_services("1001") == set()

    def test_services_are_independent(self, permissions):
        permissions.disable("1001", "comment")

        assert permissions.is_disabled("1001", "comment")
        assert not permissions.is_disabled("1001", "login")

    @pytest.mark.parametrize("ttl", [0, -2])
    def test_invalid_ttl_rejected(self, ttl):
        with pytest.raises(ValueError):
            StaticPermissionSource().disable("1001", ttl_seconds=ttl)
