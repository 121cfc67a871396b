"""
Role-Based Access Control (RBAC) for caseguard.

Defines the role registry and the permission engine every protected
operation goes through.

**Roles** (level in brackets, lower = more powerful):

* SUPERADMIN     [0] -- spans all organizations; manages organizations.
* ADMIN          [1] -- full access within their organization.
* TEAM_LEADER    [2] -- client assignment and oversight.
* SUPPORT_WORKER [3] -- limited clinical access; receives assignments.
* PEER_SUPPORT   [3] -- same as support worker.
* CLIENT         [4] -- personal features only; no staff permissions.

Each role's permission set is explicit and complete.  The hierarchy level
never grants permissions; it only decides administrative precedence (who
may manage whom).

The registry is immutable.  The one way to change it at runtime is
``PermissionEngine.update_role_permissions()``, which is superadmin-only,
swaps in a new registry instance and is audited.
"""

from __future__ import annotations

import enum
import logging
from types import MappingProxyType
from typing import TYPE_CHECKING, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from caseguard.audit import AuditAction, AuditRecorder, EntityType
from caseguard.errors import UnauthorizedError, ValidationError
from caseguard.models import Role, StaffUser

if TYPE_CHECKING:
    from caseguard.identity import IdentityResolver

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Permission definitions
# ---------------------------------------------------------------------------

class Permission(str, enum.Enum):
    """Atomic capabilities checked before a protected operation executes."""

    # Organization management (superadmin only)
    MANAGE_ORGANIZATIONS = "manage_organizations"
    VIEW_ALL_ORGANIZATIONS = "view_all_organizations"

    # User management
    MANAGE_ALL_USERS = "manage_all_users"
    MANAGE_ORG_USERS = "manage_org_users"
    VIEW_USERS = "view_users"
    CREATE_USERS = "create_users"

    # Client management
    MANAGE_CLIENTS = "manage_clients"
    VIEW_CLIENTS = "view_clients"
    ASSIGN_CLIENTS = "assign_clients"

    # Clinical data
    MANAGE_NOTES = "manage_notes"
    VIEW_NOTES = "view_notes"

    # Appointments
    MANAGE_APPOINTMENTS = "manage_appointments"
    VIEW_APPOINTMENTS = "view_appointments"

    # Referrals
    MANAGE_REFERRALS = "manage_referrals"
    VIEW_REFERRALS = "view_referrals"
    PROCESS_REFERRALS = "process_referrals"

    # Crisis events
    MANAGE_CRISIS_EVENTS = "manage_crisis_events"
    VIEW_CRISIS_EVENTS = "view_crisis_events"

    # System
    VIEW_AUDIT_LOGS = "view_audit_logs"
    VIEW_SYSTEM_ALERTS = "view_system_alerts"
    MANAGE_SYSTEM_ALERTS = "manage_system_alerts"

    # Reports
    VIEW_REPORTS = "view_reports"
    GENERATE_REPORTS = "generate_reports"


P = Permission

_FRONTLINE_PERMISSIONS = frozenset({
    P.VIEW_USERS,
    P.VIEW_CLIENTS,
    P.MANAGE_NOTES,
    P.VIEW_NOTES,
    P.MANAGE_APPOINTMENTS,
    P.VIEW_APPOINTMENTS,
    P.VIEW_REFERRALS,
    P.MANAGE_CRISIS_EVENTS,
    P.VIEW_CRISIS_EVENTS,
})

_ADMIN_PERMISSIONS = frozenset({
    P.MANAGE_ORG_USERS,
    P.VIEW_USERS,
    P.CREATE_USERS,
    P.MANAGE_CLIENTS,
    P.VIEW_CLIENTS,
    P.ASSIGN_CLIENTS,
    P.MANAGE_NOTES,
    P.VIEW_NOTES,
    P.MANAGE_APPOINTMENTS,
    P.VIEW_APPOINTMENTS,
    P.MANAGE_REFERRALS,
    P.VIEW_REFERRALS,
    P.PROCESS_REFERRALS,
    P.MANAGE_CRISIS_EVENTS,
    P.VIEW_CRISIS_EVENTS,
    P.VIEW_AUDIT_LOGS,
    P.VIEW_SYSTEM_ALERTS,
    P.VIEW_REPORTS,
    P.GENERATE_REPORTS,
})

_TEAM_LEADER_PERMISSIONS = frozenset({
    P.VIEW_USERS,
    P.MANAGE_CLIENTS,
    P.VIEW_CLIENTS,
    P.ASSIGN_CLIENTS,
    P.MANAGE_NOTES,
    P.VIEW_NOTES,
    P.MANAGE_APPOINTMENTS,
    P.VIEW_APPOINTMENTS,
    P.VIEW_REFERRALS,
    P.PROCESS_REFERRALS,
    P.MANAGE_CRISIS_EVENTS,
    P.VIEW_CRISIS_EVENTS,
    P.VIEW_REPORTS,
})


class RoleDefinition(BaseModel):
    """Level and explicit permission set of one role."""

    model_config = ConfigDict(frozen=True)

    role: Role
    level: int = Field(..., ge=0)
    display_name: str = ""
    description: str = ""
    permissions: frozenset[Permission] = Field(default_factory=frozenset)


DEFAULT_ROLE_DEFINITIONS: tuple[RoleDefinition, ...] = (
    RoleDefinition(
        role=Role.SUPERADMIN,
        level=0,
        display_name="SuperAdmin",
        description="System-wide administrator with access to all organizations and settings.",
        permissions=frozenset(Permission),
    ),
    RoleDefinition(
        role=Role.ADMIN,
        level=1,
        display_name="Administrator",
        description="Organization administrator with full access within their organization.",
        permissions=_ADMIN_PERMISSIONS,
    ),
    RoleDefinition(
        role=Role.TEAM_LEADER,
        level=2,
        display_name="Team Leader",
        description="Client assignment and oversight within their organization.",
        permissions=_TEAM_LEADER_PERMISSIONS,
    ),
    RoleDefinition(
        role=Role.SUPPORT_WORKER,
        level=3,
        display_name="Support Worker",
        description="Support worker with limited clinical access.",
        permissions=_FRONTLINE_PERMISSIONS,
    ),
    RoleDefinition(
        role=Role.PEER_SUPPORT,
        level=3,
        display_name="Peer Support",
        description="Peer support with limited clinical access (same as Support Worker).",
        permissions=_FRONTLINE_PERMISSIONS,
    ),
    RoleDefinition(
        role=Role.CLIENT,
        level=4,
        display_name="Client",
        description="Client user with access to personal features only.",
        permissions=frozenset(),
    ),
)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class RoleRegistry:
    """Immutable role -> (level, permissions) table.

    Construction requires a definition for every ``Role`` member, so an
    unknown or missing role is a construction-time error rather than a
    silent ``False`` at check time.
    """

    def __init__(self, definitions: Iterable[RoleDefinition]) -> None:
        table: dict[Role, RoleDefinition] = {}
        for definition in definitions:
            if definition.role in table:
                raise ValueError(f"Duplicate definition for role '{definition.role.value}'")
            table[definition.role] = definition
        missing = [r.value for r in Role if r not in table]
        if missing:
            raise ValueError(f"Role registry is missing definitions for: {missing}")
        self._definitions: Mapping[Role, RoleDefinition] = MappingProxyType(table)

    @classmethod
    def default(cls) -> "RoleRegistry":
        return cls(DEFAULT_ROLE_DEFINITIONS)

    def definition(self, role: Role) -> RoleDefinition:
        return self._definitions[Role(role)]

    def level(self, role: Role) -> int:
        return self.definition(role).level

    def permissions(self, role: Role) -> frozenset[Permission]:
        return self.definition(role).permissions

    def has_permission(self, role: Role, permission: Permission) -> bool:
        return Permission(permission) in self.permissions(role)

    def roles(self) -> list[RoleDefinition]:
        """Role definitions ordered by level (most powerful first)."""
        return sorted(self._definitions.values(), key=lambda d: d.level)

    def with_permissions(
        self, role: Role, permissions: Iterable[Permission]
    ) -> "RoleRegistry":
        """Return a new registry with ``role``'s permission set replaced."""
        role = Role(role)
        updated = self._definitions[role].model_copy(
            update={"permissions": frozenset(Permission(p) for p in permissions)}
        )
        return RoleRegistry(
            updated if d.role == role else d for d in self._definitions.values()
        )

    def __contains__(self, role: object) -> bool:
        return role in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)


DEFAULT_REGISTRY = RoleRegistry.default()


def check_permission(
    role: Role,
    permission: Permission,
    registry: RoleRegistry = DEFAULT_REGISTRY,
) -> bool:
    """Check whether a role has a permission.

    Args:
        role: The actor's role.
        permission: The capability to check (e.g. ``Permission.ASSIGN_CLIENTS``).
        registry: Registry to consult.

    Returns:
        True iff ``permission`` is in the role's explicit permission set.
    """
    return registry.has_permission(role, permission)


def require_permission(
    role: Role,
    permission: Permission,
    registry: RoleRegistry = DEFAULT_REGISTRY,
) -> None:
    """Enforce a permission check; raise if denied.

    Raises:
        UnauthorizedError: If the role is not permitted.
    """
    if not check_permission(role, permission, registry):
        raise UnauthorizedError(
            f"Role '{Role(role).value}' is missing permission '{Permission(permission).value}'."
        )


def get_permissions_for_role(
    role: Role, registry: RoleRegistry = DEFAULT_REGISTRY
) -> dict[str, bool]:
    """Return every permission mapped to whether ``role`` holds it."""
    granted = registry.permissions(role)
    return {p.value: p in granted for p in Permission}


def can_manage(
    actor_role: Role,
    target_role: Role,
    registry: RoleRegistry = DEFAULT_REGISTRY,
) -> bool:
    """Administrative precedence: may ``actor_role`` manage ``target_role``?

    An actor may manage roles at its own level or below.  Superadmin can
    only be managed by superadmin.
    """
    if Role(target_role) == Role.SUPERADMIN:
        return Role(actor_role) == Role.SUPERADMIN
    return registry.level(actor_role) <= registry.level(target_role)


def parse_permissions(values: Iterable[str]) -> frozenset[Permission]:
    """Convert raw strings to ``Permission`` members.

    Raises:
        ValidationError: On any unknown permission name.
    """
    parsed = set()
    for value in values:
        try:
            parsed.add(Permission(value))
        except ValueError:
            raise ValidationError(f"Unknown permission '{value}'") from None
    return frozenset(parsed)


# ---------------------------------------------------------------------------
# Permission engine
# ---------------------------------------------------------------------------

class PermissionEngine:
    """Answers "may subject X perform capability P".

    Resolution failures and non-active subjects fail closed.
    """

    def __init__(
        self,
        registry: RoleRegistry,
        resolver: "IdentityResolver",
        recorder: Optional[AuditRecorder] = None,
    ) -> None:
        self._registry = registry
        self._resolver = resolver
        self._recorder = recorder

    @property
    def registry(self) -> RoleRegistry:
        return self._registry

    def resolve(self, subject_id: str) -> StaffUser:
        """Resolve a subject that is allowed to act at all."""
        user = self._resolver.resolve(subject_id)
        if not user.is_active:
            logger.warning("Denied: subject %s is %s", subject_id, user.status.value)
            raise UnauthorizedError(f"User is {user.status.value}")
        return user

    def authorize(self, subject_id: str, permission: Permission) -> StaffUser:
        """Authorize ``subject_id`` for ``permission``.

        Returns:
            The resolved ``StaffUser`` on success.

        Raises:
            UnauthenticatedError: If the subject cannot be resolved.
            UnauthorizedError: If the subject is not active or lacks the permission.
        """
        user = self.resolve(subject_id)
        self.authorize_user(user, permission)
        return user

    def authorize_user(self, user: StaffUser, permission: Permission) -> None:
        if not self._registry.has_permission(user.role, permission):
            logger.warning(
                "Denied: %s (%s) lacks %s",
                user.external_id, user.role.value, Permission(permission).value,
            )
            raise UnauthorizedError(f"Missing permission '{Permission(permission).value}'")

    def has_permission(self, user: StaffUser, permission: Permission) -> bool:
        return self._registry.has_permission(user.role, permission)

    def is_superadmin(self, user: StaffUser) -> bool:
        return user.role == Role.SUPERADMIN

    def require_superadmin(self, subject_id: str) -> StaffUser:
        user = self.resolve(subject_id)
        if not self.is_superadmin(user):
            logger.warning("Denied: %s is not a superadmin", subject_id)
            raise UnauthorizedError("SuperAdmin access required")
        return user

    def can_manage(self, actor: StaffUser, target_role: Role) -> bool:
        return can_manage(actor.role, target_role, self._registry)

    def outranks(self, actor: StaffUser, target_role: Role) -> bool:
        """Strict precedence.  A superadmin outranks every role, itself included."""
        if self.is_superadmin(actor):
            return True
        return self._registry.level(actor.role) < self._registry.level(target_role)

    def update_role_permissions(
        self,
        subject_id: str,
        role: Role,
        permissions: Iterable[str],
    ) -> RoleDefinition:
        """Rewrite one role's permission set (superadmin only, audited).

        Raises:
            UnauthorizedError: If the subject is not a superadmin.
            ValidationError: On an unknown role or permission name.
        """
        actor = self.require_superadmin(subject_id)
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError(f"Unknown role '{role}'") from None
        parsed = parse_permissions(permissions)

        previous = self._registry.permissions(role)
        self._registry = self._registry.with_permissions(role, parsed)
        logger.info("Role %s permissions rewritten by %s", role.value, actor.external_id)

        if self._recorder is not None:
            self._recorder.record(
                actor_id=actor.external_id,
                action=AuditAction.ROLE_PERMISSIONS_UPDATED,
                entity_type=EntityType.ROLE,
                entity_id=role.value,
                details={
                    "role": role.value,
                    "added": sorted(p.value for p in parsed - previous),
                    "removed": sorted(p.value for p in previous - parsed),
                },
            )
        return self._registry.definition(role)
