"""
Flask CLI tests.

Verifies:
- users grant/deny write GRANT/DENY overrides that change effective permissions
- Unknown users and permission codes exit with status 1 and write nothing
- users deactivate revokes sessions
- inventory verify exits 1 on cache drift
"""

import pytest

from printcrm.extensions import db
from printcrm.models import Product, SessionToken, UserPermissionOverride
from printcrm.services import permission_service


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


# ============================================================================
# PERMISSION OVERRIDES
# ============================================================================

class TestPermissionOverrides:

    def test_grant_adds_permission(self, runner, users):
        manager = users["MANAGER"]
        assert not permission_service.user_has_permission(manager, "view_all_deals")

        result = runner.invoke(args=["users", "grant", "manager", "view_all_deals"])

        assert result.exit_code == 0, result.output
        assert "PASS" in result.output
        assert permission_service.user_has_permission(manager, "view_all_deals")
        assert permission_service.can_view_all_deals(manager)

    def test_deny_removes_role_default(self, runner, users):
        manager = users["MANAGER"]
        assert permission_service.can_view_all_clients(manager)

        result = runner.invoke(args=["users", "deny", "manager", "view_all_clients"])

        assert result.exit_code == 0, result.output
        assert not permission_service.can_view_all_clients(manager)

    def test_deny_replaces_earlier_grant(self, runner, users):
        runner.invoke(args=["users", "grant", "operator", "manage_deals"])
        runner.invoke(args=["users", "deny", "operator", "manage_deals"])

        (override,) = db.session.query(UserPermissionOverride).filter_by(user_id=users["OPERATOR"].id).all()
        assert override.override_type == "DENY"
        assert not permission_service.user_has_permission(users["OPERATOR"], "manage_deals")

    def test_unknown_permission_fails(self, runner, users):
        result = runner.invoke(args=["users", "grant", "manager", "fly_planes"])

        assert result.exit_code == 1
        assert "FAIL" in result.output
        assert db.session.query(UserPermissionOverride).count() == 0

    def test_unknown_user_fails(self, runner, users):
        result = runner.invoke(args=["users", "deny", "nobody", "manage_deals"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_permissions_lists_effective_codes(self, runner, users):
        runner.invoke(args=["users", "deny", "manager", "manage_inventory"])

        result = runner.invoke(args=["users", "permissions", "manager"])

        codes = result.output.split()
        assert "manage_deals" in codes
        assert "manage_inventory" not in codes


# ============================================================================
# ACCOUNTS AND LEDGERS
# ============================================================================

class TestMaintenanceCommands:

    def test_deactivate_revokes_sessions(self, runner, users, tokens):
        result = runner.invoke(args=["users", "deactivate", "manager"])

        assert result.exit_code == 0, result.output
        assert users["MANAGER"].is_active is False
        sessions = db.session.query(SessionToken).filter_by(user_id=users["MANAGER"].id).all()
        assert sessions
        assert all(s.is_revoked for s in sessions)

    def test_inventory_verify_reports_drift(self, runner, make_product):
        product = make_product(stock=3)
        assert runner.invoke(args=["inventory", "verify"]).exit_code == 0

        db.session.get(Product, product.id).stock = 9
        db.session.commit()

        assert runner.invoke(args=["inventory", "verify"]).exit_code == 1
