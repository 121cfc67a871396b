"""
Client record management.

Clients are created into the subject's organization (or the one a
superadmin names), optionally with an explicit worker.  Organizations with
``settings.auto_assign`` give a new client the least-loaded eligible worker;
when nobody is eligible the client is simply left unassigned.

Archiving is a soft delete.  Deleted clients drop out of listings unless
asked for and stop counting toward their worker's load.
"""

from __future__ import annotations

import logging
from typing import Optional

from caseguard.assignment import AssignmentManager
from caseguard.audit import AuditAction, AuditRecorder, EntityType
from caseguard.errors import (
    ConflictError,
    NoEligibleWorkersError,
    NotFoundError,
    ValidationError,
)
from caseguard.models import (
    CLIENT_TRANSITIONS,
    Client,
    ClientStatus,
    RiskLevel,
    StaffUser,
    can_transition,
)
from caseguard.rbac import Permission, PermissionEngine
from caseguard.schemas import ClientPatch, NewClient, parse_input
from caseguard.store import CLIENTS, ORGANIZATIONS, DocumentStore
from caseguard.tenancy import TenantGuard
from caseguard.workload import WorkloadBalancer

logger = logging.getLogger(__name__)


class ClientService:
    def __init__(
        self,
        store: DocumentStore,
        permissions: PermissionEngine,
        guard: TenantGuard,
        balancer: WorkloadBalancer,
        assignments: AssignmentManager,
        recorder: AuditRecorder,
        email_scope: str = "organization",
    ) -> None:
        self._store = store
        self._permissions = permissions
        self._guard = guard
        self._balancer = balancer
        self._assignments = assignments
        self._recorder = recorder
        self._email_scope = email_scope

    def _check_email(
        self, email: Optional[str], org_id: str, exclude_client_id: Optional[str] = None
    ) -> None:
        if not email:
            return
        email = email.lower()

        def clash(client: Client) -> bool:
            if client.client_id == exclude_client_id or client.status == ClientStatus.DELETED:
                return False
            if (client.email or "").lower() != email:
                return False
            return self._email_scope == "global" or client.org_id == org_id

        if self._store.first(CLIENTS, clash):
            raise ConflictError("Client with this email already exists in your organization")

    def _load(self, actor: StaffUser, client_id: str) -> Client:
        return self._guard.scope_for(actor).locate(
            self._store.get(CLIENTS, client_id), f"Client '{client_id}'"
        )

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def create_client(self, subject_id: str, request: NewClient | dict) -> str:
        """Create a client and return its ``client_id``.

        Raises:
            UnauthorizedError: Missing ``manage_clients`` or cross-tenant request.
            ValidationError: Malformed input, no organization, or ineligible worker.
            NotFoundError: Unknown organization or worker.
            InvariantViolation: Explicit worker from another organization.
            ConflictError: Email already used by a client of the organization.
            StaleRevisionError: The chosen worker stopped being eligible
                before the client was written.
        """
        request = parse_input(NewClient, request)
        actor = self._permissions.authorize(subject_id, Permission.MANAGE_CLIENTS)
        org_id = self._guard.scope_for(actor, request.org_id).org_id
        if org_id is None:
            raise ValidationError("An organization is required for a client")
        organization = self._store.get(ORGANIZATIONS, org_id)
        if organization is None:
            raise NotFoundError(f"Organization '{org_id}' not found")

        worker_id = request.assigned_worker_id
        auto = False
        if worker_id:
            self._assignments.validate_worker(worker_id, org_id)
        elif organization.settings.auto_assign:
            try:
                worker_id = self._balancer.pick_least_loaded(org_id)
                auto = True
            except NoEligibleWorkersError:
                logger.info("No eligible worker in %s; new client left unassigned", org_id)

        with self._store.atomic():
            self._check_email(request.email, org_id)
            if worker_id:
                self._assignments.require_still_eligible(worker_id, org_id)
            client = self._store.insert(CLIENTS, Client(
                org_id=org_id,
                assigned_worker_id=worker_id,
                **request.model_dump(exclude={"org_id", "assigned_worker_id"}),
            ))

        logger.info("Client %s created in %s by %s", client.client_id, org_id, actor.external_id)
        self._recorder.record(
            actor_id=actor.external_id,
            action=AuditAction.CLIENT_CREATED,
            entity_type=EntityType.CLIENT,
            entity_id=client.client_id,
            details={"risk_level": client.risk_level.value},
            org_id=org_id,
        )
        if worker_id:
            self._recorder.record(
                actor_id=actor.external_id,
                action=AuditAction.CLIENT_ASSIGNED,
                entity_type=EntityType.CLIENT,
                entity_id=client.client_id,
                details={"worker_id": worker_id, "previous_worker_id": None, "auto": auto},
                org_id=org_id,
            )
        return client.client_id

    def update_client(self, subject_id: str, client_id: str, patch: ClientPatch | dict) -> str:
        """Patch a client's profile, status or risk level.

        Assignment changes go through ``AssignmentManager.assign_client``.

        Raises:
            UnauthorizedError: Missing ``manage_clients``, or the client is
                outside the subject's organization or unknown to it.
            NotFoundError: Unknown client, for a superadmin.
            ValidationError: Malformed input, deleted client or illegal transition.
            ConflictError: Email already in use.
            StaleRevisionError: ``expected_revision`` no longer matches.
        """
        patch = parse_input(ClientPatch, patch)
        actor = self._permissions.authorize(subject_id, Permission.MANAGE_CLIENTS)
        client = self._load(actor, client_id)

        changes = patch.changes()
        if not changes:
            return client_id
        if client.status == ClientStatus.DELETED:
            raise ValidationError("Cannot update a deleted client")
        new_status = changes.get("status")
        if new_status is not None and not can_transition(
            CLIENT_TRANSITIONS, client.status, new_status
        ):
            raise ValidationError(
                f"Cannot change status from {client.status.value} to {ClientStatus(new_status).value}"
            )

        with self._store.atomic():
            if "email" in changes:
                self._check_email(changes["email"], client.org_id, client_id)
            self._store.patch(CLIENTS, client_id, changes, expected_revision=patch.expected_revision)

        logger.info("Client %s updated by %s: %s", client_id, actor.external_id, sorted(changes))
        self._recorder.record(
            actor_id=actor.external_id,
            action=AuditAction.CLIENT_UPDATED,
            entity_type=EntityType.CLIENT,
            entity_id=client_id,
            details={"changed_fields": sorted(changes)},
            org_id=client.org_id,
        )
        return client_id

    def archive_client(self, subject_id: str, client_id: str) -> dict[str, bool]:
        """Soft-delete a client.  Repeating the call is a no-op."""
        actor = self._permissions.authorize(subject_id, Permission.MANAGE_CLIENTS)
        client = self._load(actor, client_id)
        if client.status == ClientStatus.DELETED:
            return {"success": True}

        self._store.patch(CLIENTS, client_id, {"status": ClientStatus.DELETED})
        logger.info("Client %s archived by %s", client_id, actor.external_id)
        self._recorder.record(
            actor_id=actor.external_id,
            action=AuditAction.CLIENT_ARCHIVED,
            entity_type=EntityType.CLIENT,
            entity_id=client_id,
            details={"previous_status": client.status.value},
            org_id=client.org_id,
        )
        return {"success": True}

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get_client(self, subject_id: str, client_id: str) -> Optional[Client]:
        """Return a client within scope.

        A superadmin gets None for an unknown id; an organization-scoped
        subject gets ``UnauthorizedError`` for unknown and foreign ids alike.
        """
        actor = self._permissions.authorize(subject_id, Permission.VIEW_CLIENTS)
        return self._guard.scope_for(actor).lookup(
            self._store.get(CLIENTS, client_id), f"Client '{client_id}'"
        )

    def list_clients(
        self,
        subject_id: str,
        org_id: Optional[str] = None,
        status: Optional[ClientStatus] = None,
        risk_level: Optional[RiskLevel] = None,
        include_deleted: bool = False,
        search: Optional[str] = None,
    ) -> list[Client]:
        """Clients within scope, newest first.

        ``search`` is a case-insensitive substring match on name, email
        and phone.
        """
        actor = self._permissions.authorize(subject_id, Permission.VIEW_CLIENTS)
        scope = self._guard.scope_for(actor, org_id)
        needle = search.strip().lower() if search else None

        def wanted(client: Client) -> bool:
            if status is not None:
                if client.status != status:
                    return False
            elif not include_deleted and client.status == ClientStatus.DELETED:
                return False
            if risk_level is not None and client.risk_level != risk_level:
                return False
            if needle:
                haystack = (client.first_name, client.last_name, client.email, client.phone)
                return any(needle in (field or "").lower() for field in haystack)
            return True

        rows = scope.filter(self._store.query(CLIENTS, wanted))
        return sorted(reversed(rows), key=lambda c: c.created_at, reverse=True)

    def list_unassigned_clients(self, subject_id: str, org_id: Optional[str] = None) -> list[Client]:
        """Non-deleted clients with no worker, in creation order."""
        actor = self._permissions.authorize(subject_id, Permission.VIEW_CLIENTS)
        scope = self._guard.scope_for(actor, org_id)
        return scope.filter(self._store.query(
            CLIENTS,
            lambda c: c.assigned_worker_id is None and c.status != ClientStatus.DELETED,
        ))

    def list_clients_by_worker(self, subject_id: str, worker_id: str) -> list[Client]:
        """Non-deleted clients currently held by ``worker_id``, within scope."""
        actor = self._permissions.authorize(subject_id, Permission.VIEW_CLIENTS)
        scope = self._guard.scope_for(actor)
        return scope.filter(self._store.query(
            CLIENTS,
            lambda c: c.assigned_worker_id == worker_id and c.status != ClientStatus.DELETED,
        ))
