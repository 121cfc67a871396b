"""
Organization (tenant) management.

Creating, changing, listing and deleting organizations is platform-level
work reserved to superadmins.  Members of an organization may read their
own organization's record and nothing else.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from caseguard.audit import AuditAction, AuditRecorder, EntityType
from caseguard.errors import ConflictError, InvariantViolation, NotFoundError
from caseguard.models import (
    AppointmentStatus,
    ClientStatus,
    Organization,
    OrgStatus,
    UserStatus,
)
from caseguard.rbac import Permission, PermissionEngine
from caseguard.schemas import NewOrganization, OrganizationPatch, parse_input
from caseguard.store import APPOINTMENTS, CLIENTS, ORGANIZATIONS, USERS, DocumentStore
from caseguard.tenancy import TenantGuard

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "SYSTEM"


class OrganizationService:
    def __init__(
        self,
        store: DocumentStore,
        permissions: PermissionEngine,
        guard: TenantGuard,
        recorder: AuditRecorder,
    ) -> None:
        self._store = store
        self._permissions = permissions
        self._guard = guard
        self._recorder = recorder

    def _insert(self, request: NewOrganization, actor_id: str) -> Organization:
        try:
            organization = self._store.insert(ORGANIZATIONS, Organization(
                created_by=actor_id, **request.model_dump()
            ))
        except ConflictError:
            raise ConflictError(f"Organization '{request.org_id}' already exists") from None
        logger.info("Organization %s created by %s", organization.org_id, actor_id)
        self._recorder.record(
            actor_id=actor_id,
            action=AuditAction.ORGANIZATION_CREATED,
            entity_type=EntityType.ORGANIZATION,
            entity_id=organization.org_id,
            details={"name": organization.name},
        )
        return organization

    def create_organization(self, subject_id: str, request: NewOrganization | dict) -> str:
        """Create a tenant and return its ``org_id`` (the slug).

        Raises:
            UnauthorizedError: The subject lacks ``manage_organizations``.
            ValidationError: Malformed slug or fields.
            ConflictError: The slug is taken.
        """
        request = parse_input(NewOrganization, request)
        actor = self._permissions.authorize(subject_id, Permission.MANAGE_ORGANIZATIONS)
        return self._insert(request, actor.external_id).org_id

    def seed_organization(self, request: NewOrganization | dict) -> Organization:
        """Create an organization at startup, outside any subject's authority.

        An organization that already exists is returned unchanged.
        """
        request = parse_input(NewOrganization, request)
        existing = self._store.get(ORGANIZATIONS, request.org_id)
        if existing is not None:
            return existing
        return self._insert(request, SYSTEM_ACTOR)

    def update_organization(
        self, subject_id: str, org_id: str, patch: OrganizationPatch | dict
    ) -> str:
        """Patch an organization and return its ``org_id``.

        Raises:
            UnauthorizedError: The subject lacks ``manage_organizations``.
            NotFoundError: Unknown organization.
            StaleRevisionError: ``expected_revision`` no longer matches.
        """
        patch = parse_input(OrganizationPatch, patch)
        actor = self._permissions.authorize(subject_id, Permission.MANAGE_ORGANIZATIONS)
        if self._store.get(ORGANIZATIONS, org_id) is None:
            raise NotFoundError(f"Organization '{org_id}' not found")

        changes = patch.changes()
        if not changes:
            return org_id
        self._store.patch(ORGANIZATIONS, org_id, changes, expected_revision=patch.expected_revision)

        logger.info("Organization %s updated by %s: %s", org_id, actor.external_id, sorted(changes))
        self._recorder.record(
            actor_id=actor.external_id,
            action=AuditAction.ORGANIZATION_UPDATED,
            entity_type=EntityType.ORGANIZATION,
            entity_id=org_id,
            details={"changed_fields": sorted(changes)},
            org_id=org_id,
        )
        return org_id

    def get_organization(self, subject_id: str, org_id: str) -> Optional[Organization]:
        """Return one organization, or None if it does not exist.

        Superadmins see any organization; everyone else only their own.
        """
        actor = self._permissions.resolve(subject_id)
        self._guard.scope_for(actor, org_id)
        return self._store.get(ORGANIZATIONS, org_id)

    def list_organizations(
        self, subject_id: str, status: Optional[OrgStatus] = None
    ) -> list[Organization]:
        """All organizations, optionally narrowed by status, newest first."""
        self._permissions.authorize(subject_id, Permission.VIEW_ALL_ORGANIZATIONS)
        rows = self._store.query(
            ORGANIZATIONS, lambda o: status is None or o.status == status
        )
        return sorted(reversed(rows), key=lambda o: o.created_at, reverse=True)

    def delete_organization(self, subject_id: str, org_id: str) -> dict[str, bool]:
        """Physically remove an organization that nothing references any more.

        Raises:
            UnauthorizedError: The subject lacks ``manage_organizations``.
            NotFoundError: Unknown organization.
            InvariantViolation: Users or clients still belong to it.
        """
        actor = self._permissions.authorize(subject_id, Permission.MANAGE_ORGANIZATIONS)
        with self._store.atomic():
            organization = self._store.get(ORGANIZATIONS, org_id)
            if organization is None:
                raise NotFoundError(f"Organization '{org_id}' not found")
            users = self._store.count(USERS, lambda u: u.org_id == org_id)
            clients = self._store.count(CLIENTS, lambda c: c.org_id == org_id)
            if users or clients:
                raise InvariantViolation(
                    f"Cannot delete organization '{organization.name}' because it has "
                    f"{users} user(s) and {clients} client(s). Reassign or remove them first."
                )
            self._store.delete(ORGANIZATIONS, org_id)

        logger.info("Organization %s deleted by %s", org_id, actor.external_id)
        self._recorder.record(
            actor_id=actor.external_id,
            action=AuditAction.ORGANIZATION_DELETED,
            entity_type=EntityType.ORGANIZATION,
            entity_id=org_id,
            details={"name": organization.name},
        )
        return {"success": True}

    def get_organization_stats(self, subject_id: str, org_id: str) -> dict[str, Any]:
        """User, client and appointment counts for one organization."""
        self._permissions.authorize(subject_id, Permission.VIEW_ALL_ORGANIZATIONS)
        if self._store.get(ORGANIZATIONS, org_id) is None:
            raise NotFoundError(f"Organization '{org_id}' not found")

        users = self._store.query(
            USERS, lambda u: u.org_id == org_id and u.status != UserStatus.DELETED
        )
        clients = self._store.query(
            CLIENTS, lambda c: c.org_id == org_id and c.status != ClientStatus.DELETED
        )
        appointments = self._store.query(APPOINTMENTS, lambda a: a.org_id == org_id)
        return {
            "total_users": len(users),
            "active_users": sum(1 for u in users if u.status == UserStatus.ACTIVE),
            "total_clients": len(clients),
            "active_clients": sum(1 for c in clients if c.status == ClientStatus.ACTIVE),
            "unassigned_clients": sum(
                1 for c in clients
                if c.status == ClientStatus.ACTIVE and c.assigned_worker_id is None
            ),
            "total_appointments": len(appointments),
            "scheduled_appointments": sum(
                1 for a in appointments if a.status == AppointmentStatus.SCHEDULED
            ),
        }
