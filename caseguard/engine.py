"""
CaseEngine -- the single entry point callers use.

Wires settings, the role registry, the document store, identity resolution,
the permission engine, the tenant guard, the workload balancer, the audit
recorder and the per-entity services, and exposes every operation as a
plain method taking the authenticated subject id first.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from caseguard.assignment import AssignmentManager, AssignmentResult, BulkAssignResult
from caseguard.audit import AuditFilter, AuditLog, AuditLogEntry, AuditRecorder
from caseguard.audit_service import AuditQueryService
from caseguard.clients import ClientService
from caseguard.config import (
    DEFAULT_SETTINGS,
    EngineSettings,
    build_registry,
    load_organizations_from_yaml,
    load_settings_from_yaml,
)
from caseguard.identity import IdentityResolver
from caseguard.models import (
    Appointment,
    Client,
    ClientStatus,
    Organization,
    OrgStatus,
    RiskLevel,
    Role,
    StaffUser,
    UserStatus,
)
from caseguard.organizations import OrganizationService
from caseguard.rbac import (
    Permission,
    PermissionEngine,
    RoleDefinition,
    get_permissions_for_role,
)
from caseguard.schemas import (
    ClientPatch,
    NewAppointment,
    NewClient,
    NewOrganization,
    NewStaffUser,
    OrganizationPatch,
    StaffUserPatch,
)
from caseguard.store import DocumentStore
from caseguard.tenancy import TenantGuard, TenantScope
from caseguard.users import UserService
from caseguard.workload import WorkerLoad, WorkloadBalancer

logger = logging.getLogger(__name__)


class CaseEngine:
    """Facade over the caseguard components.

    Args:
        settings: Engine settings; defaults apply when omitted.
        store: Document store; a fresh in-memory store when omitted.
        audit_log: Audit log; a fresh log when omitted.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        store: Optional[DocumentStore] = None,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        self.settings = settings or DEFAULT_SETTINGS
        self.store = store if store is not None else DocumentStore()
        self.audit_log = audit_log if audit_log is not None else AuditLog()

        self.recorder = AuditRecorder(self.audit_log)
        self.resolver = IdentityResolver(self.store)
        self.permissions = PermissionEngine(
            build_registry(self.settings), self.resolver, self.recorder
        )
        self.guard = TenantGuard(self.resolver)
        self.balancer = WorkloadBalancer(self.store, self.settings.eligible_roles)

        self.assignments = AssignmentManager(
            self.store,
            self.permissions,
            self.guard,
            self.balancer,
            self.recorder,
            serialize_bulk_assign=self.settings.serialize_bulk_assign,
        )
        self.users = UserService(
            self.store,
            self.permissions,
            self.guard,
            self.balancer,
            self.recorder,
            email_scope=self.settings.staff_email_scope,
        )
        self.organizations = OrganizationService(
            self.store, self.permissions, self.guard, self.recorder
        )
        self.clients = ClientService(
            self.store,
            self.permissions,
            self.guard,
            self.balancer,
            self.assignments,
            self.recorder,
            email_scope=self.settings.client_email_scope,
        )
        self.audit = AuditQueryService(
            self.audit_log,
            self.permissions,
            self.guard,
            self.recorder,
            default_limit=self.settings.audit_default_limit,
            max_limit=self.settings.audit_max_limit,
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "CaseEngine":
        """Build an engine from a YAML file and seed its ``organizations``."""
        engine = cls(settings=load_settings_from_yaml(path))
        for organization in load_organizations_from_yaml(path):
            engine.organizations.seed_organization(organization)
        logger.info("Engine loaded from %s", path)
        return engine

    # -----------------------------------------------------------------------
    # Authorization
    # -----------------------------------------------------------------------

    def authorize(self, subject_id: str, permission: Permission) -> StaffUser:
        return self.permissions.authorize(subject_id, permission)

    def permissions_for(self, subject_id: str) -> dict[str, bool]:
        """Every permission mapped to whether the subject currently holds it."""
        user = self.permissions.resolve(subject_id)
        return get_permissions_for_role(user.role, self.permissions.registry)

    def scope(self, subject_id: str, requested_org: Optional[str] = None) -> TenantScope:
        return self.guard.scope(subject_id, requested_org)

    def update_role_permissions(
        self, subject_id: str, role: Role, permissions: Iterable[str]
    ) -> RoleDefinition:
        return self.permissions.update_role_permissions(subject_id, role, permissions)

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    def bootstrap_superadmin(
        self, external_id: str, email: str, first_name: str, last_name: str
    ) -> str:
        return self.users.bootstrap_superadmin(external_id, email, first_name, last_name)

    def get_user(self, subject_id: str, target_id: Optional[str] = None) -> Optional[StaffUser]:
        return self.users.get_user(subject_id, target_id)

    def list_users(
        self,
        subject_id: str,
        org_id: Optional[str] = None,
        role: Optional[Role] = None,
        status: Optional[UserStatus] = None,
        include_deleted: bool = False,
    ) -> list[StaffUser]:
        return self.users.list_users(subject_id, org_id, role, status, include_deleted)

    def create_user(self, subject_id: str, request: NewStaffUser | dict) -> str:
        return self.users.create_user(subject_id, request)

    def update_user(self, subject_id: str, target_id: str, patch: StaffUserPatch | dict) -> str:
        return self.users.update_user(subject_id, target_id, patch)

    def archive_user(self, subject_id: str, target_id: str) -> dict[str, bool]:
        return self.users.archive_user(subject_id, target_id)

    def record_login(self, subject_id: str) -> StaffUser:
        return self.users.record_login(subject_id)

    def get_org_user_stats(self, subject_id: str, org_id: Optional[str] = None) -> dict[str, Any]:
        return self.users.get_org_user_stats(subject_id, org_id)

    # -----------------------------------------------------------------------
    # Organizations
    # -----------------------------------------------------------------------

    def create_organization(self, subject_id: str, request: NewOrganization | dict) -> str:
        return self.organizations.create_organization(subject_id, request)

    def update_organization(
        self, subject_id: str, org_id: str, patch: OrganizationPatch | dict
    ) -> str:
        return self.organizations.update_organization(subject_id, org_id, patch)

    def get_organization(self, subject_id: str, org_id: str) -> Optional[Organization]:
        return self.organizations.get_organization(subject_id, org_id)

    def list_organizations(
        self, subject_id: str, status: Optional[OrgStatus] = None
    ) -> list[Organization]:
        return self.organizations.list_organizations(subject_id, status)

    def delete_organization(self, subject_id: str, org_id: str) -> dict[str, bool]:
        return self.organizations.delete_organization(subject_id, org_id)

    def get_organization_stats(self, subject_id: str, org_id: str) -> dict[str, Any]:
        return self.organizations.get_organization_stats(subject_id, org_id)

    # -----------------------------------------------------------------------
    # Clients and assignment
    # -----------------------------------------------------------------------

    def create_client(self, subject_id: str, request: NewClient | dict) -> str:
        return self.clients.create_client(subject_id, request)

    def update_client(self, subject_id: str, client_id: str, patch: ClientPatch | dict) -> str:
        return self.clients.update_client(subject_id, client_id, patch)

    def archive_client(self, subject_id: str, client_id: str) -> dict[str, bool]:
        return self.clients.archive_client(subject_id, client_id)

    def get_client(self, subject_id: str, client_id: str) -> Optional[Client]:
        return self.clients.get_client(subject_id, client_id)

    def list_clients(
        self,
        subject_id: str,
        org_id: Optional[str] = None,
        status: Optional[ClientStatus] = None,
        risk_level: Optional[RiskLevel] = None,
        include_deleted: bool = False,
        search: Optional[str] = None,
    ) -> list[Client]:
        return self.clients.list_clients(
            subject_id, org_id, status, risk_level, include_deleted, search
        )

    def list_unassigned_clients(self, subject_id: str, org_id: Optional[str] = None) -> list[Client]:
        return self.clients.list_unassigned_clients(subject_id, org_id)

    def list_clients_by_worker(self, subject_id: str, worker_id: str) -> list[Client]:
        return self.clients.list_clients_by_worker(subject_id, worker_id)

    def assign_client(
        self, subject_id: str, client_id: str, worker_id: Optional[str] = None
    ) -> AssignmentResult:
        return self.assignments.assign_client(subject_id, client_id, worker_id)

    def bulk_assign(self, subject_id: str, org_id: Optional[str] = None) -> BulkAssignResult:
        return self.assignments.bulk_assign(subject_id, org_id)

    def get_worker_load(self, subject_id: str, org_id: Optional[str] = None) -> list[WorkerLoad]:
        return self.assignments.get_worker_load(subject_id, org_id)

    # -----------------------------------------------------------------------
    # Appointments
    # -----------------------------------------------------------------------

    def create_appointment(self, subject_id: str, request: NewAppointment | dict) -> Appointment:
        return self.assignments.create_appointment(subject_id, request)

    def list_appointments(
        self,
        subject_id: str,
        appointment_date: Optional[date] = None,
        org_id: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> list[Appointment]:
        return self.assignments.list_appointments(subject_id, appointment_date, org_id, worker_id)

    # -----------------------------------------------------------------------
    # Audit
    # -----------------------------------------------------------------------

    def list_audit_logs(
        self, subject_id: str, audit_filter: AuditFilter | dict | None = None
    ) -> list[AuditLogEntry]:
        return self.audit.list_audit_logs(subject_id, audit_filter)

    def audit_stats(self, subject_id: str, org_id: Optional[str] = None) -> dict[str, Any]:
        return self.audit.audit_stats(subject_id, org_id)

    def export_audit_for_review(
        self,
        subject_id: str,
        org_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        return self.audit.export_for_review(subject_id, org_id, time_start, time_end)

    def verify_audit_chain(self, subject_id: str) -> tuple[bool, Optional[int]]:
        return self.audit.verify_chain(subject_id)
