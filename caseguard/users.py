"""
Staff user management.

Creation, profile and role updates, soft archival, superadmin bootstrap
and login bookkeeping.  All writes go through the permission engine and the
tenant guard first; administrative precedence decides who may touch whom.

Two invariants are guarded here rather than in the store:

* At least one active superadmin always exists.  Demoting, deactivating or
  archiving the last one raises ``InvariantViolation``.
* An assigned worker is an active, eligible member of the client's
  organization.  Any change that takes a worker out of that set releases
  their clients (each release is audited as ``client_unassigned``).
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Optional

from caseguard.audit import AuditAction, AuditRecorder, EntityType
from caseguard.errors import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from caseguard.models import (
    USER_TRANSITIONS,
    ClientStatus,
    OrgStatus,
    Role,
    StaffUser,
    UserStatus,
    can_transition,
    utcnow,
)
from caseguard.rbac import Permission, PermissionEngine
from caseguard.schemas import PROFILE_FIELDS, NewStaffUser, StaffUserPatch, parse_input
from caseguard.store import CLIENTS, ORGANIZATIONS, USERS, DocumentStore
from caseguard.tenancy import TenantGuard
from caseguard.workload import WorkloadBalancer

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "SYSTEM"


class UserService:
    def __init__(
        self,
        store: DocumentStore,
        permissions: PermissionEngine,
        guard: TenantGuard,
        balancer: WorkloadBalancer,
        recorder: AuditRecorder,
        email_scope: str = "global",
    ) -> None:
        self._store = store
        self._permissions = permissions
        self._guard = guard
        self._balancer = balancer
        self._recorder = recorder
        self._email_scope = email_scope

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get_user(self, subject_id: str, target_id: Optional[str] = None) -> Optional[StaffUser]:
        """Return the subject's own record, or another user's.

        Looking yourself up needs no permission.  Anyone else needs
        ``view_users`` and must be inside the subject's tenant scope.

        Returns:
            The user.  A superadmin gets None for an unknown ``target_id``;
            an organization-scoped subject gets ``UnauthorizedError``, as
            for a user of another organization.
        """
        actor = self._permissions.resolve(subject_id)
        if target_id is None or target_id == actor.user_id:
            return actor

        self._permissions.authorize_user(actor, Permission.VIEW_USERS)
        return self._guard.scope_for(actor).lookup(
            self._store.get(USERS, target_id), f"User '{target_id}'"
        )

    def list_users(
        self,
        subject_id: str,
        org_id: Optional[str] = None,
        role: Optional[Role] = None,
        status: Optional[UserStatus] = None,
        include_deleted: bool = False,
    ) -> list[StaffUser]:
        """Users within scope, newest first.

        Deleted users are left out unless ``include_deleted`` is set or
        ``status`` asks for them explicitly.
        """
        actor = self._permissions.authorize(subject_id, Permission.VIEW_USERS)
        scope = self._guard.scope_for(actor, org_id)

        def wanted(user: StaffUser) -> bool:
            if role is not None and user.role != role:
                return False
            if status is not None:
                return user.status == status
            return include_deleted or user.status != UserStatus.DELETED

        rows = scope.filter(self._store.query(USERS, wanted))
        return sorted(reversed(rows), key=lambda u: u.created_at, reverse=True)

    def get_org_user_stats(self, subject_id: str, org_id: Optional[str] = None) -> dict[str, Any]:
        """Head counts for one organization by status and by role."""
        actor = self._permissions.authorize(subject_id, Permission.VIEW_USERS)
        scope = self._guard.scope_for(actor, org_id)
        if scope.org_id is None:
            raise ValidationError("An organization is required")

        users = self._store.query(
            USERS, lambda u: u.org_id == scope.org_id and u.status != UserStatus.DELETED
        )
        by_status = Counter(u.status.value for u in users)
        return {
            "total": len(users),
            "active": by_status.get(UserStatus.ACTIVE.value, 0),
            "inactive": by_status.get(UserStatus.INACTIVE.value, 0),
            "suspended": by_status.get(UserStatus.SUSPENDED.value, 0),
            "by_role": dict(Counter(u.role.value for u in users)),
        }

    # -----------------------------------------------------------------------
    # Uniqueness and invariants
    # -----------------------------------------------------------------------

    def _check_unique(
        self,
        external_id: Optional[str],
        email: Optional[str],
        org_id: Optional[str],
        exclude_user_id: Optional[str] = None,
    ) -> None:
        def other(user: StaffUser) -> bool:
            return user.user_id != exclude_user_id

        if external_id is not None and self._store.first(
            USERS, lambda u: other(u) and u.external_id == external_id
        ):
            raise ConflictError(f"A user with subject id '{external_id}' already exists")

        if email is None:
            return
        email = email.lower()

        def clash(user: StaffUser) -> bool:
            if not other(user) or user.status == UserStatus.DELETED:
                return False
            if (user.email or "").lower() != email:
                return False
            return self._email_scope == "global" or user.org_id == org_id

        if self._store.first(USERS, clash):
            raise ConflictError("A user with this email already exists")

    def _other_active_superadmins(self, user_id: str) -> int:
        return self._store.count(
            USERS,
            lambda u: u.user_id != user_id
            and u.role == Role.SUPERADMIN
            and u.status == UserStatus.ACTIVE,
        )

    def _protect_last_superadmin(self, target: StaffUser, after: dict[str, Any]) -> None:
        if not (target.role == Role.SUPERADMIN and target.is_active):
            return
        stays_role = after.get("role", target.role) == Role.SUPERADMIN
        stays_active = after.get("status", target.status) == UserStatus.ACTIVE
        if stays_role and stays_active:
            return
        if self._other_active_superadmins(target.user_id) == 0:
            raise InvariantViolation("Cannot remove the last active superadmin")

    def _require_active_org(self, org_id: str) -> None:
        organization = self._store.get(ORGANIZATIONS, org_id)
        if organization is None:
            raise NotFoundError(f"Organization '{org_id}' not found")
        if organization.status != OrgStatus.ACTIVE:
            raise ValidationError(f"Organization '{org_id}' is {organization.status.value}")

    def release_clients(self, actor_id: str, worker: StaffUser, reason: str) -> int:
        """Unassign every non-deleted client held by ``worker``.

        Returns:
            Number of clients released.
        """
        held = self._store.query(
            CLIENTS,
            lambda c: c.assigned_worker_id == worker.user_id
            and c.status != ClientStatus.DELETED,
        )
        for client in held:
            self._store.patch(CLIENTS, client.client_id, {"assigned_worker_id": None})
            self._recorder.record(
                actor_id=actor_id,
                action=AuditAction.CLIENT_UNASSIGNED,
                entity_type=EntityType.CLIENT,
                entity_id=client.client_id,
                details={"worker_id": worker.user_id, "reason": reason},
                org_id=client.org_id,
            )
        if held:
            logger.info("Released %d clients from worker %s (%s)", len(held), worker.user_id, reason)
        return len(held)

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def create_user(self, subject_id: str, request: NewStaffUser | dict) -> str:
        """Create a staff user and return its ``user_id``.

        Non-superadmins always create into their own organization.  Only a
        superadmin may create a superadmin, and nobody may create a role
        above their own.

        Raises:
            UnauthorizedError: Missing ``create_users``, precedence or tenant violation.
            ValidationError: Malformed input or inactive organization.
            NotFoundError: Unknown organization.
            InvariantViolation: The organization is at ``max_users``.
            ConflictError: Duplicate subject id or email.
        """
        request = parse_input(NewStaffUser, request)
        actor = self._permissions.authorize(subject_id, Permission.CREATE_USERS)

        if request.role == Role.SUPERADMIN and not self._permissions.is_superadmin(actor):
            raise UnauthorizedError("Only a superadmin can create a superadmin")
        if not self._permissions.can_manage(actor, request.role):
            raise UnauthorizedError(f"Cannot create a user with role '{request.role.value}'")

        if request.role == Role.SUPERADMIN:
            org_id = request.org_id
        else:
            org_id = self._guard.scope_for(actor, request.org_id).org_id
            if org_id is None:
                raise ValidationError(f"Role '{request.role.value}' requires an organization")
        if org_id is not None:
            self._require_active_org(org_id)

        with self._store.atomic():
            if org_id is not None:
                organization = self._store.require(ORGANIZATIONS, org_id)
                cap = organization.settings.max_users
                if cap is not None:
                    current = self._store.count(
                        USERS, lambda u: u.org_id == org_id and u.status != UserStatus.DELETED
                    )
                    if current >= cap:
                        raise InvariantViolation(
                            f"Organization '{org_id}' has reached its limit of {cap} users"
                        )
            self._check_unique(request.external_id, request.email, org_id)
            user = self._store.insert(USERS, StaffUser(
                org_id=org_id, **request.model_dump(exclude={"org_id"})
            ))

        logger.info("User %s (%s) created in %s by %s",
                    user.user_id, user.role.value, org_id, actor.external_id)
        self._recorder.record(
            actor_id=actor.external_id,
            action=AuditAction.USER_CREATED,
            entity_type=EntityType.USER,
            entity_id=user.user_id,
            details={"role": user.role.value, "email": user.email},
            org_id=org_id,
        )
        return user.user_id

    def update_user(
        self, subject_id: str, target_id: str, patch: StaffUserPatch | dict
    ) -> str:
        """Apply a partial update to a user and return its ``user_id``.

        A user may always edit their own profile fields.  Anything else
        needs ``manage_org_users`` plus precedence over both the target's
        current and new role.  Moving a user between organizations, or
        granting superadmin, is superadmin-only.

        Raises:
            UnauthorizedError: Permission, precedence or tenant violation,
                or a user unknown to the subject's organization.
            NotFoundError: Unknown destination organization, or unknown
                user for a superadmin.
            ValidationError: Malformed input or illegal status transition.
            ConflictError: Email already in use.
            StaleRevisionError: ``expected_revision`` no longer matches.
            InvariantViolation: Would remove the last active superadmin.
        """
        patch = parse_input(StaffUserPatch, patch)
        actor = self._permissions.resolve(subject_id)
        target = self._guard.scope_for(actor).locate(
            self._store.get(USERS, target_id), f"User '{target_id}'"
        )

        changes = patch.changes()
        is_self = target.user_id == actor.user_id
        if not (is_self and set(changes) <= PROFILE_FIELDS):
            self._authorize_admin_change(actor, target, changes)

        if not changes:
            return target_id

        new_status = changes.get("status")
        if new_status is not None and not can_transition(USER_TRANSITIONS, target.status, new_status):
            raise ValidationError(
                f"Cannot change status from {target.status.value} to {UserStatus(new_status).value}"
            )

        with self._store.atomic():
            self._protect_last_superadmin(target, changes)
            if "email" in changes:
                self._check_unique(
                    None, changes["email"], changes.get("org_id", target.org_id), target.user_id
                )
            updated = self._store.patch(
                USERS, target_id, changes, expected_revision=patch.expected_revision
            )
            if not self._balancer.is_eligible(updated, target.org_id):
                self.release_clients(
                    actor.external_id, updated, reason="worker no longer eligible"
                )

        logger.info("User %s updated by %s: %s", target_id, actor.external_id, sorted(changes))
        self._recorder.record(
            actor_id=actor.external_id,
            action=AuditAction.USER_UPDATED,
            entity_type=EntityType.USER,
            entity_id=target_id,
            details={"changed_fields": sorted(changes)},
            org_id=updated.org_id,
        )
        return target_id

    def _authorize_admin_change(
        self, actor: StaffUser, target: StaffUser, changes: dict[str, Any]
    ) -> None:
        self._permissions.authorize_user(actor, Permission.MANAGE_ORG_USERS)
        self._guard.scope_for(actor).require(target.org_id)
        if not self._permissions.can_manage(actor, target.role):
            raise UnauthorizedError(f"Cannot manage a user with role '{target.role.value}'")

        new_role = changes.get("role")
        if new_role is not None:
            if new_role == Role.SUPERADMIN and not self._permissions.is_superadmin(actor):
                raise UnauthorizedError("Only a superadmin can grant superadmin")
            if not self._permissions.can_manage(actor, new_role):
                raise UnauthorizedError(f"Cannot assign role '{Role(new_role).value}'")

        if "org_id" in changes and changes["org_id"] != target.org_id:
            if not self._permissions.is_superadmin(actor):
                raise UnauthorizedError("Only a superadmin can move users between organizations")
            if changes["org_id"] is not None:
                self._require_active_org(changes["org_id"])

    def archive_user(self, subject_id: str, target_id: str) -> dict[str, bool]:
        """Soft-delete a user.  Archiving an already-archived user is a no-op.

        Archival needs strict precedence: an admin can archive a team
        leader but not another admin.  Only a superadmin archives peers.

        Raises:
            UnauthorizedError: Permission, precedence or tenant violation,
                or a user unknown to the subject's organization.
            NotFoundError: Unknown user, for a superadmin.
            InvariantViolation: The target is the last active superadmin.
        """
        actor = self._permissions.authorize(subject_id, Permission.MANAGE_ORG_USERS)
        target = self._guard.scope_for(actor).locate(
            self._store.get(USERS, target_id), f"User '{target_id}'"
        )
        if not self._permissions.outranks(actor, target.role):
            raise UnauthorizedError(f"Cannot archive a user with role '{target.role.value}'")

        if target.status == UserStatus.DELETED:
            return {"success": True}

        with self._store.atomic():
            self._protect_last_superadmin(target, {"status": UserStatus.DELETED})
            archived = self._store.patch(USERS, target_id, {"status": UserStatus.DELETED})
            self.release_clients(actor.external_id, archived, reason="worker archived")
        logger.info("User %s archived by %s", target_id, actor.external_id)
        self._recorder.record(
            actor_id=actor.external_id,
            action=AuditAction.USER_ARCHIVED,
            entity_type=EntityType.USER,
            entity_id=target_id,
            details={"previous_status": target.status.value},
            org_id=target.org_id,
        )
        return {"success": True}

    def bootstrap_superadmin(
        self,
        external_id: str,
        email: str,
        first_name: str,
        last_name: str,
    ) -> str:
        """Create the first superadmin of a fresh installation.

        Raises:
            ConflictError: An active superadmin already exists, or the
                subject id or email is taken.
            ValidationError: Malformed input.
        """
        request = parse_input(NewStaffUser, {
            "external_id": external_id,
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "role": Role.SUPERADMIN,
        })
        with self._store.atomic():
            if self._store.first(
                USERS, lambda u: u.role == Role.SUPERADMIN and u.status == UserStatus.ACTIVE
            ):
                raise ConflictError("A superadmin already exists")
            self._check_unique(request.external_id, request.email, None)
            user = self._store.insert(USERS, StaffUser(**request.model_dump()))

        logger.info("Superadmin %s bootstrapped", user.user_id)
        self._recorder.record(
            actor_id=SYSTEM_ACTOR,
            action=AuditAction.SUPERADMIN_BOOTSTRAPPED,
            entity_type=EntityType.USER,
            entity_id=user.user_id,
            details={"email": user.email},
        )
        return user.user_id

    def record_login(self, subject_id: str) -> StaffUser:
        """Stamp ``last_login`` on the subject's record."""
        user = self._permissions.resolve(subject_id)
        return self._store.patch(USERS, user.user_id, {"last_login": utcnow()})
