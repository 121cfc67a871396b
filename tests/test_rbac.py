"""
Tests for caseguard.rbac -- role registry and permission engine.

Covers: default role permission sets, permission closure across every
role/permission pair, administrative precedence, registry immutability,
subject resolution failures, and the audited role-permission rewrite.
"""

import pytest

from caseguard.audit import AuditAction
from caseguard.errors import UnauthenticatedError, UnauthorizedError, ValidationError
from caseguard.models import Role
from caseguard.rbac import (
    DEFAULT_REGISTRY,
    DEFAULT_ROLE_DEFINITIONS,
    Permission,
    RoleDefinition,
    RoleRegistry,
    can_manage,
    check_permission,
    get_permissions_for_role,
    parse_permissions,
    require_permission,
)


# ---------------------------------------------------------------------------
# 1. Default role sets
# ---------------------------------------------------------------------------

class TestDefaultRoles:
    def test_superadmin_holds_every_permission(self):
        assert DEFAULT_REGISTRY.permissions(Role.SUPERADMIN) == frozenset(Permission)

    def test_client_holds_nothing(self):
        assert DEFAULT_REGISTRY.permissions(Role.CLIENT) == frozenset()

    def test_admin_cannot_manage_organizations(self):
        assert check_permission(Role.ADMIN, Permission.MANAGE_ORGANIZATIONS) is False
        assert check_permission(Role.ADMIN, Permission.MANAGE_ORG_USERS) is True

    def test_team_leader_can_assign_but_not_create_users(self):
        assert check_permission(Role.TEAM_LEADER, Permission.ASSIGN_CLIENTS) is True
        assert check_permission(Role.TEAM_LEADER, Permission.CREATE_USERS) is False

    def test_support_worker_cannot_assign(self):
        assert check_permission(Role.SUPPORT_WORKER, Permission.ASSIGN_CLIENTS) is False
        assert check_permission(Role.SUPPORT_WORKER, Permission.VIEW_CLIENTS) is True

    def test_peer_support_matches_support_worker(self):
        assert DEFAULT_REGISTRY.permissions(Role.PEER_SUPPORT) == DEFAULT_REGISTRY.permissions(
            Role.SUPPORT_WORKER
        )

    def test_levels(self):
        assert [DEFAULT_REGISTRY.level(r) for r in Role] == [0, 1, 2, 3, 3, 4]

    def test_roles_ordered_by_level(self):
        levels = [d.level for d in DEFAULT_REGISTRY.roles()]
        assert levels == sorted(levels)

    def test_level_does_not_grant_permissions(self):
        """A more powerful role is not implicitly granted a weaker role's permissions."""
        registry = DEFAULT_REGISTRY.with_permissions(Role.ADMIN, [Permission.VIEW_USERS])
        assert registry.has_permission(Role.TEAM_LEADER, Permission.ASSIGN_CLIENTS) is True
        assert registry.has_permission(Role.ADMIN, Permission.ASSIGN_CLIENTS) is False


# ---------------------------------------------------------------------------
# 2. Check helpers
# ---------------------------------------------------------------------------

class TestCheckHelpers:
    def test_require_permission_raises_on_denied(self):
        with pytest.raises(UnauthorizedError):
            require_permission(Role.SUPPORT_WORKER, Permission.ASSIGN_CLIENTS)

    def test_require_permission_is_a_permission_error(self):
        with pytest.raises(PermissionError):
            require_permission(Role.CLIENT, Permission.VIEW_CLIENTS)

    def test_require_permission_passes_on_allowed(self):
        require_permission(Role.ADMIN, Permission.VIEW_AUDIT_LOGS)  # should not raise

    def test_get_permissions_returns_all_capabilities(self):
        perms = get_permissions_for_role(Role.TEAM_LEADER)
        assert len(perms) == len(Permission) == 23
        assert perms["assign_clients"] is True
        assert perms["manage_organizations"] is False

    def test_parse_permissions_rejects_unknown(self):
        with pytest.raises(ValidationError):
            parse_permissions(["view_users", "launch_rockets"])

    def test_parse_permissions_accepts_strings(self):
        assert parse_permissions(["view_users"]) == frozenset({Permission.VIEW_USERS})


# ---------------------------------------------------------------------------
# 3. Administrative precedence
# ---------------------------------------------------------------------------

class TestCanManage:
    @pytest.mark.parametrize(
        "actor,target,expected",
        [
            (Role.ADMIN, Role.ADMIN, True),
            (Role.ADMIN, Role.TEAM_LEADER, True),
            (Role.ADMIN, Role.SUPPORT_WORKER, True),
            (Role.TEAM_LEADER, Role.ADMIN, False),
            (Role.SUPPORT_WORKER, Role.PEER_SUPPORT, True),
            (Role.ADMIN, Role.SUPERADMIN, False),
            (Role.SUPERADMIN, Role.SUPERADMIN, True),
            (Role.SUPERADMIN, Role.CLIENT, True),
        ],
    )
    def test_precedence(self, actor, target, expected):
        assert can_manage(actor, target) is expected


# ---------------------------------------------------------------------------
# 4. Registry construction
# ---------------------------------------------------------------------------

class TestRegistryConstruction:
    def test_missing_role_rejected(self):
        definitions = [d for d in DEFAULT_ROLE_DEFINITIONS if d.role != Role.CLIENT]
        with pytest.raises(ValueError, match="client"):
            RoleRegistry(definitions)

    def test_duplicate_role_rejected(self):
        extra = RoleDefinition(role=Role.ADMIN, level=1)
        with pytest.raises(ValueError, match="Duplicate"):
            RoleRegistry([*DEFAULT_ROLE_DEFINITIONS, extra])

    def test_unknown_permission_rejected_at_definition(self):
        with pytest.raises(Exception):
            RoleDefinition(role=Role.ADMIN, level=1, permissions=frozenset({"fly"}))

    def test_with_permissions_leaves_original_untouched(self):
        updated = DEFAULT_REGISTRY.with_permissions(Role.CLIENT, [Permission.VIEW_NOTES])
        assert updated.has_permission(Role.CLIENT, Permission.VIEW_NOTES) is True
        assert DEFAULT_REGISTRY.has_permission(Role.CLIENT, Permission.VIEW_NOTES) is False

    def test_every_role_present(self):
        assert all(role in DEFAULT_REGISTRY for role in Role)
        assert len(DEFAULT_REGISTRY) == len(Role)


# ---------------------------------------------------------------------------
# 5. Permission engine
# ---------------------------------------------------------------------------

class TestPermissionEngine:
    def test_permission_closure_for_every_role(self, engine, world):
        """authorize succeeds iff the permission is in the role's registry set."""
        subjects = {
            Role.SUPERADMIN: "sa-1",
            Role.ADMIN: "acme-admin",
            Role.TEAM_LEADER: "acme-lead",
            Role.SUPPORT_WORKER: "acme-w1",
            Role.PEER_SUPPORT: "acme-w2",
        }
        for role, subject in subjects.items():
            granted = engine.permissions.registry.permissions(role)
            for permission in Permission:
                if permission in granted:
                    assert engine.authorize(subject, permission).role == role
                else:
                    with pytest.raises(UnauthorizedError):
                        engine.authorize(subject, permission)

    def test_unknown_subject_is_unauthenticated(self, engine):
        with pytest.raises(UnauthenticatedError):
            engine.authorize("nobody", Permission.VIEW_USERS)

    def test_unauthenticated_is_unauthorized(self, engine):
        with pytest.raises(UnauthorizedError):
            engine.authorize("", Permission.VIEW_USERS)

    def test_inactive_subject_refused(self, engine, world):
        engine.update_user("acme-admin", world["acme-w1"], {"status": "inactive"})
        with pytest.raises(UnauthorizedError):
            engine.authorize("acme-w1", Permission.VIEW_CLIENTS)

    def test_permissions_for_subject(self, engine, world):
        perms = engine.permissions_for("acme-lead")
        assert perms["assign_clients"] is True
        assert perms["create_users"] is False

    def test_outranks_is_strict(self, engine, world):
        admin = engine.resolver.resolve("acme-admin")
        assert engine.permissions.outranks(admin, Role.TEAM_LEADER) is True
        assert engine.permissions.outranks(admin, Role.ADMIN) is False
        assert engine.permissions.outranks(admin, Role.SUPERADMIN) is False
        assert engine.permissions.can_manage(admin, Role.ADMIN) is True

    def test_superadmin_outranks_everyone(self, engine):
        root = engine.resolver.resolve("sa-1")
        assert all(engine.permissions.outranks(root, role) for role in Role)


class TestRolePermissionUpdate:
    def test_only_superadmin_may_rewrite(self, engine, world):
        with pytest.raises(UnauthorizedError):
            engine.update_role_permissions("acme-admin", Role.TEAM_LEADER, ["view_users"])

    def test_rewrite_takes_effect_and_is_audited(self, engine, world):
        definition = engine.update_role_permissions(
            "sa-1", Role.SUPPORT_WORKER, ["view_users", "view_clients", "assign_clients"]
        )
        assert Permission.ASSIGN_CLIENTS in definition.permissions
        assert engine.authorize("acme-w1", Permission.ASSIGN_CLIENTS).user_id == world["acme-w1"]
        # Peer support keeps its own set.
        with pytest.raises(UnauthorizedError):
            engine.authorize("acme-w2", Permission.ASSIGN_CLIENTS)

        entries = engine.audit_log.query(action=AuditAction.ROLE_PERMISSIONS_UPDATED)
        assert len(entries) == 1
        assert entries[0].entity_id == "support_worker"
        assert entries[0].details["added"] == ["assign_clients"]
        assert "manage_notes" in entries[0].details["removed"]

    def test_unknown_permission_rejected(self, engine, world):
        with pytest.raises(ValidationError):
            engine.update_role_permissions("sa-1", Role.ADMIN, ["view_users", "bogus"])
        assert engine.permissions.registry.has_permission(Role.ADMIN, Permission.CREATE_USERS)

    def test_unknown_role_rejected(self, engine, world):
        with pytest.raises(ValidationError):
            engine.update_role_permissions("sa-1", "janitor", ["view_users"])
