"""
Tests for caseguard.tenancy -- tenant isolation guard.

Covers: scope computation for superadmins and organization members,
refusal of cross-organization requests, in-query filtering, and isolation
across every tenant-scoped listing the engine exposes.
"""

import pytest

from caseguard.errors import NotFoundError, UnauthorizedError
from caseguard.models import Client, Role, StaffUser
from caseguard.tenancy import TenantGuard, TenantScope


def _make_user(role: Role = Role.ADMIN, org_id: str | None = "acme") -> StaffUser:
    return StaffUser(external_id=f"{role.value}-x", role=role, org_id=org_id)


# ---------------------------------------------------------------------------
# 1. Scope computation
# ---------------------------------------------------------------------------

class TestScopeFor:
    def test_superadmin_unrestricted_by_default(self, engine):
        guard = TenantGuard(engine.resolver)
        scope = guard.scope_for(_make_user(Role.SUPERADMIN, None))
        assert scope.unrestricted is True
        assert scope.cross_tenant is True

    def test_superadmin_gets_requested_org(self, engine):
        guard = TenantGuard(engine.resolver)
        scope = guard.scope_for(_make_user(Role.SUPERADMIN, None), "beta")
        assert scope.org_id == "beta"
        assert scope.admits("beta") and not scope.admits("acme")

    def test_member_forced_to_own_org(self, engine):
        guard = TenantGuard(engine.resolver)
        scope = guard.scope_for(_make_user(Role.ADMIN, "acme"))
        assert scope.org_id == "acme"
        assert scope.cross_tenant is False

    def test_member_requesting_own_org_allowed(self, engine):
        guard = TenantGuard(engine.resolver)
        assert guard.scope_for(_make_user(Role.ADMIN, "acme"), "acme").org_id == "acme"

    def test_member_requesting_other_org_refused(self, engine):
        guard = TenantGuard(engine.resolver)
        with pytest.raises(UnauthorizedError):
            guard.scope_for(_make_user(Role.ADMIN, "acme"), "beta")

    def test_permissions_do_not_override_isolation(self, engine, world):
        """Even an admin holding every org-level permission cannot name another org."""
        with pytest.raises(UnauthorizedError):
            engine.scope("acme-admin", "beta")


class TestTenantScope:
    def test_filter_drops_foreign_records(self):
        scope = TenantScope(subject=_make_user(), org_id="acme")
        clients = [
            Client(org_id="acme", first_name="A", last_name="One"),
            Client(org_id="beta", first_name="B", last_name="Two"),
        ]
        assert [c.org_id for c in scope.filter(clients)] == ["acme"]

    def test_require_raises_outside_scope(self):
        scope = TenantScope(subject=_make_user(), org_id="acme")
        scope.require("acme")
        with pytest.raises(UnauthorizedError):
            scope.require("beta")

    def test_org_less_records_hidden_from_members(self):
        scope = TenantScope(subject=_make_user(), org_id="acme")
        assert scope.admits(None) is False

    def test_locate_returns_record_in_scope(self):
        scope = TenantScope(subject=_make_user(), org_id="acme")
        client = Client(org_id="acme", first_name="A", last_name="One")
        assert scope.locate(client, "Client") is client

    def test_locate_missing_and_foreign_fail_alike_for_members(self):
        scope = TenantScope(subject=_make_user(), org_id="acme")
        foreign = Client(org_id="beta", first_name="B", last_name="Two")
        messages = []
        for record in (None, foreign):
            with pytest.raises(UnauthorizedError) as excinfo:
                scope.locate(record, "Client 'c-1'")
            messages.append(str(excinfo.value))
        assert messages[0] == messages[1]

    def test_locate_missing_is_not_found_for_superadmin(self):
        scope = TenantScope(subject=_make_user(Role.SUPERADMIN, None), cross_tenant=True)
        with pytest.raises(NotFoundError):
            scope.locate(None, "Client 'c-1'")

    def test_lookup_missing(self):
        superadmin = TenantScope(subject=_make_user(Role.SUPERADMIN, None), cross_tenant=True)
        assert superadmin.lookup(None, "Client") is None
        member = TenantScope(subject=_make_user(), org_id="acme")
        with pytest.raises(UnauthorizedError):
            member.lookup(None, "Client")


# ---------------------------------------------------------------------------
# 2. Isolation across engine operations
# ---------------------------------------------------------------------------

class TestEngineIsolation:
    def test_lists_never_cross_tenants(self, engine, world, add_client):
        add_client("acme")
        add_client("beta")

        assert all(c.org_id == "acme" for c in engine.list_clients("acme-admin"))
        assert all(u.org_id == "acme" for u in engine.list_users("acme-admin"))
        assert len(engine.list_clients("acme-admin")) == 1

    @pytest.mark.parametrize(
        "call",
        [
            lambda e: e.list_clients("acme-admin", org_id="beta"),
            lambda e: e.list_users("acme-admin", org_id="beta"),
            lambda e: e.list_unassigned_clients("acme-admin", org_id="beta"),
            lambda e: e.get_worker_load("acme-admin", org_id="beta"),
            lambda e: e.bulk_assign("acme-admin", org_id="beta"),
            lambda e: e.list_audit_logs("acme-admin", {"org_id": "beta"}),
            lambda e: e.audit_stats("acme-admin", org_id="beta"),
            lambda e: e.get_org_user_stats("acme-admin", org_id="beta"),
            lambda e: e.list_appointments("acme-admin", org_id="beta"),
            lambda e: e.get_organization("acme-admin", "beta"),
        ],
    )
    def test_naming_another_org_is_unauthorized(self, engine, world, call):
        with pytest.raises(UnauthorizedError):
            call(engine)

    def test_get_foreign_client_unauthorized(self, engine, world, add_client):
        beta_client = add_client("beta")
        with pytest.raises(UnauthorizedError):
            engine.get_client("acme-admin", beta_client)

    def test_get_foreign_user_unauthorized(self, engine, world):
        with pytest.raises(UnauthorizedError):
            engine.get_user("acme-admin", world["beta-admin"])

    def test_members_cannot_see_superadmin(self, engine, world):
        with pytest.raises(UnauthorizedError):
            engine.get_user("acme-admin", world["sa-1"])

    def test_superadmin_sees_everything(self, engine, world, add_client):
        add_client("acme")
        add_client("beta")
        assert {c.org_id for c in engine.list_clients("sa-1")} == {"acme", "beta"}
        assert {c.org_id for c in engine.list_clients("sa-1", org_id="beta")} == {"beta"}

    def test_foreign_client_by_worker_listing_is_empty(self, engine, world, add_client):
        add_client("beta", assigned_worker_id=world["beta-w1"])
        assert engine.list_clients_by_worker("acme-admin", world["beta-w1"]) == []
