"""
Assignment manager.

Binds clients (and appointments) to workers:

* ``assign_client()`` -- explicit or least-loaded assignment of one client.
* ``bulk_assign()`` -- balances every unassigned active client of an
  organization across its eligible workers.
* ``create_appointment()`` -- schedules an appointment, auto-picking the
  worker when the organization has ``settings.auto_assign`` enabled.

Every path authorizes, then scopes to the tenant, then validates, before
the first write.  Client writes are compare-and-swap against the revision
that was read, so two concurrent single assignments to the same client can
never both report success for different workers.  The chosen worker is
re-read under the store lock in the same block as the write, so a worker
archived after the eligibility check never receives the client.
"""

from __future__ import annotations

import logging
from contextlib import nullcontext
from datetime import date
from typing import Optional

from pydantic import BaseModel, Field

from caseguard.audit import AuditAction, AuditRecorder, EntityType
from caseguard.errors import (
    InvariantViolation,
    NotFoundError,
    StaleRevisionError,
    ValidationError,
)
from caseguard.models import Appointment, Client, ClientStatus, StaffUser
from caseguard.rbac import Permission, PermissionEngine
from caseguard.schemas import NewAppointment, parse_input
from caseguard.store import APPOINTMENTS, CLIENTS, ORGANIZATIONS, USERS, DocumentStore
from caseguard.tenancy import TenantGuard
from caseguard.workload import WorkerLoad, WorkloadBalancer

logger = logging.getLogger(__name__)


class AssignmentResult(BaseModel):
    success: bool = True
    assigned_worker_id: str
    previous_worker_id: Optional[str] = None
    changed: bool = Field(
        default=True,
        description="False when the client already had this worker (idempotent retry).",
    )


class BulkAssignResult(BaseModel):
    success: bool = True
    assigned_count: int = 0
    message: str = ""
    assignments: list[tuple[str, str]] = Field(
        default_factory=list,
        description="(client_id, worker_id) pairs in processing order.",
    )


class AssignmentManager:
    def __init__(
        self,
        store: DocumentStore,
        permissions: PermissionEngine,
        guard: TenantGuard,
        balancer: WorkloadBalancer,
        recorder: AuditRecorder,
        serialize_bulk_assign: bool = True,
    ) -> None:
        self._store = store
        self._permissions = permissions
        self._guard = guard
        self._balancer = balancer
        self._recorder = recorder
        self._serialize_bulk_assign = serialize_bulk_assign

    # -----------------------------------------------------------------------
    # Worker validation
    # -----------------------------------------------------------------------

    def validate_worker(self, worker_id: str, org_id: str) -> StaffUser:
        """Check that ``worker_id`` may receive assignments in ``org_id``.

        Raises:
            NotFoundError: If no such user exists.
            InvariantViolation: If the worker belongs to another organization.
            ValidationError: If the worker is not active or has an ineligible role.
        """
        worker = self._store.get(USERS, worker_id)
        if worker is None:
            raise NotFoundError(f"Worker '{worker_id}' not found")
        if worker.org_id != org_id:
            raise InvariantViolation("Worker belongs to a different organization")
        if not worker.is_active:
            raise ValidationError(f"Worker is {worker.status.value} and cannot receive assignments")
        if not self._balancer.is_eligible(worker, org_id):
            raise ValidationError(f"Role '{worker.role.value}' cannot receive client assignments")
        return worker

    def require_still_eligible(self, worker_id: str, org_id: str) -> None:
        """Re-read ``worker_id`` at write time and refuse a stale choice.

        Call with ``store.atomic()`` held, together with the write it guards,
        so an archive or re-role of the worker cannot land in between.

        Raises:
            StaleRevisionError: The worker was removed or stopped being
                eligible after it was chosen.
        """
        worker = self._store.get(USERS, worker_id)
        if worker is None or not self._balancer.is_eligible(worker, org_id):
            logger.warning("Worker %s became ineligible before assignment", worker_id)
            raise StaleRevisionError(f"Worker '{worker_id}' is no longer eligible")

    def _holds_eligible_worker(self, client: Client) -> bool:
        if not client.assigned_worker_id:
            return False
        worker = self._store.get(USERS, client.assigned_worker_id)
        return worker is not None and self._balancer.is_eligible(worker, client.org_id)

    # -----------------------------------------------------------------------
    # Single assignment
    # -----------------------------------------------------------------------

    def assign_client(
        self,
        subject_id: str,
        client_id: str,
        worker_id: Optional[str] = None,
    ) -> AssignmentResult:
        """Assign a client to ``worker_id``, or to the least-loaded eligible worker.

        Re-running with the same target is a successful no-op
        (``changed=False``); with no explicit worker, a client that already
        holds an eligible worker is left where it is.

        Raises:
            UnauthorizedError: Missing ``assign_clients``, or the client is
                outside the subject's organization or unknown to it.
            NotFoundError: Unknown worker, or unknown client for a superadmin.
            InvariantViolation: Worker from another organization.
            ValidationError: Deleted client, or inactive/ineligible worker.
            NoEligibleWorkersError: Auto-pick with an empty eligible set.
            StaleRevisionError: The client changed, or the worker stopped
                being eligible, between read and write.
        """
        actor = self._permissions.authorize(subject_id, Permission.ASSIGN_CLIENTS)
        client = self._guard.scope_for(actor).locate(
            self._store.get(CLIENTS, client_id), f"Client '{client_id}'"
        )

        if client.status == ClientStatus.DELETED:
            raise ValidationError("Cannot assign a deleted client")

        if worker_id is None:
            if self._holds_eligible_worker(client):
                return AssignmentResult(
                    assigned_worker_id=client.assigned_worker_id,
                    previous_worker_id=client.assigned_worker_id,
                    changed=False,
                )
            worker_id = self._balancer.pick_least_loaded(client.org_id)
        else:
            self.validate_worker(worker_id, client.org_id)

        previous = client.assigned_worker_id
        if previous == worker_id:
            return AssignmentResult(
                assigned_worker_id=worker_id, previous_worker_id=previous, changed=False
            )

        self._write_assignment(actor, client, worker_id)
        return AssignmentResult(assigned_worker_id=worker_id, previous_worker_id=previous)

    def _write_assignment(
        self, actor: StaffUser, client: Client, worker_id: str, bulk: bool = False
    ) -> Client:
        with self._store.atomic():
            self.require_still_eligible(worker_id, client.org_id)
            updated = self._store.patch(
                CLIENTS,
                client.client_id,
                {"assigned_worker_id": worker_id},
                expected_revision=client.revision,
            )
        logger.info(
            "Client %s assigned to %s by %s%s",
            client.client_id, worker_id, actor.external_id, " (bulk)" if bulk else "",
        )
        details = {"worker_id": worker_id, "previous_worker_id": client.assigned_worker_id}
        if bulk:
            details["bulk"] = True
        self._recorder.record(
            actor_id=actor.external_id,
            action=AuditAction.CLIENT_ASSIGNED,
            entity_type=EntityType.CLIENT,
            entity_id=client.client_id,
            details=details,
            org_id=client.org_id,
        )
        return updated

    # -----------------------------------------------------------------------
    # Bulk assignment
    # -----------------------------------------------------------------------

    def bulk_assign(self, subject_id: str, org_id: Optional[str] = None) -> BulkAssignResult:
        """Distribute every unassigned active client of an organization.

        Clients are processed in creation order, each going to the worker
        that is least loaded at that moment.  Starting from equal loads the
        final spread is at most one.

        Raises:
            UnauthorizedError: Missing ``assign_clients`` or cross-tenant request.
            ValidationError: A superadmin did not name an organization.
            NoEligibleWorkersError: Unassigned clients exist but no worker is
                eligible.  Nothing is written.
        """
        actor = self._permissions.authorize(subject_id, Permission.ASSIGN_CLIENTS)
        scope = self._guard.scope_for(actor, org_id)
        if scope.org_id is None:
            raise ValidationError("An organization is required for bulk assignment")
        target = scope.org_id
        self._store.require(ORGANIZATIONS, target)

        lock = self._store.org_lock(target) if self._serialize_bulk_assign else nullcontext()
        with lock:
            pending = {
                c.client_id: c
                for c in self._store.query(
                    CLIENTS,
                    lambda c: c.org_id == target
                    and c.status == ClientStatus.ACTIVE
                    and c.assigned_worker_id is None,
                )
            }
            if not pending:
                return BulkAssignResult(message="No unassigned clients found")

            def assign(client_id: str, worker_id: str) -> bool:
                try:
                    self._write_assignment(actor, pending[client_id], worker_id, bulk=True)
                except StaleRevisionError:
                    logger.warning(
                        "Bulk assign skipped client %s: modified concurrently", client_id
                    )
                    return False
                return True

            assignments = self._balancer.balance_assign(target, list(pending), assign)

        count = len(assignments)
        logger.info("Bulk assigned %d clients in %s", count, target)
        return BulkAssignResult(
            assigned_count=count,
            message=f"Successfully assigned {count} clients",
            assignments=assignments,
        )

    def get_worker_load(self, subject_id: str, org_id: Optional[str] = None) -> list[WorkerLoad]:
        """Eligible workers of an organization with their current client counts."""
        actor = self._permissions.authorize(subject_id, Permission.VIEW_CLIENTS)
        scope = self._guard.scope_for(actor, org_id)
        if scope.org_id is None:
            raise ValidationError("An organization is required")
        return self._balancer.worker_loads(scope.org_id)

    # -----------------------------------------------------------------------
    # Appointments
    # -----------------------------------------------------------------------

    def create_appointment(
        self, subject_id: str, request: NewAppointment | dict
    ) -> Appointment:
        """Schedule an appointment.

        The organization comes from the request, else the client, else the
        actor.  Without an explicit worker, organizations with
        ``settings.auto_assign`` get the least-loaded eligible worker, and
        the client (if any, and currently unassigned) is assigned to that
        worker too.

        Raises:
            UnauthorizedError: Missing ``manage_appointments``, cross-tenant
                request, or a client unknown to the subject's organization.
            NotFoundError: Unknown worker or organization, or unknown client
                for a superadmin.
            InvariantViolation: Client or worker from another organization.
            ValidationError: No organization could be determined, or the
                client is deleted, or the worker is ineligible.
            NoEligibleWorkersError: Auto-assign found no eligible worker.
            StaleRevisionError: The worker stopped being eligible before
                the appointment was written.
        """
        request = parse_input(NewAppointment, request)
        actor = self._permissions.authorize(subject_id, Permission.MANAGE_APPOINTMENTS)

        client: Optional[Client] = None
        if request.client_id:
            client = self._guard.scope_for(actor).locate(
                self._store.get(CLIENTS, request.client_id), f"Client '{request.client_id}'"
            )

        org_id = request.org_id or (client.org_id if client else None) or actor.org_id
        if not org_id:
            raise ValidationError("An organization is required for an appointment")
        scope = self._guard.scope_for(actor, org_id)
        organization = self._store.require(ORGANIZATIONS, org_id)

        if client is not None:
            scope.require(client.org_id)
            if client.org_id != org_id:
                raise InvariantViolation("Client belongs to a different organization")
            if client.status == ClientStatus.DELETED:
                raise ValidationError("Cannot schedule an appointment for a deleted client")

        worker_id = request.worker_id
        auto_picked = False
        if worker_id:
            self.validate_worker(worker_id, org_id)
        elif organization.settings.auto_assign:
            worker_id = self._balancer.pick_least_loaded(org_id)
            auto_picked = True

        with self._store.atomic():
            if worker_id:
                self.require_still_eligible(worker_id, org_id)
            appointment = self._store.insert(APPOINTMENTS, Appointment(
                org_id=org_id,
                client_id=request.client_id,
                worker_id=worker_id,
                scheduled_by=actor.external_id,
                appointment_date=request.appointment_date,
                appointment_time=request.appointment_time,
                duration_minutes=request.duration_minutes,
                type=request.type,
                status=request.status,
                notes=request.notes,
                meeting_link=request.meeting_link,
            ))
        logger.info("Appointment %s created in %s by %s",
                    appointment.appointment_id, org_id, actor.external_id)

        self._recorder.record(
            actor_id=actor.external_id,
            action=AuditAction.APPOINTMENT_CREATED,
            entity_type=EntityType.APPOINTMENT,
            entity_id=appointment.appointment_id,
            details={
                "worker_id": worker_id,
                "client_id": request.client_id,
                "appointment_date": request.appointment_date.isoformat(),
                "appointment_time": request.appointment_time.isoformat(),
                "type": request.type,
                "auto_assigned": auto_picked,
            },
            org_id=org_id,
        )

        if auto_picked and client is not None and client.assigned_worker_id is None:
            try:
                self._write_assignment(actor, client, worker_id)
            except StaleRevisionError:
                logger.warning(
                    "Client %s changed while scheduling; left its assignment alone",
                    client.client_id,
                )
        return appointment

    def list_appointments(
        self,
        subject_id: str,
        appointment_date: Optional[date] = None,
        org_id: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> list[Appointment]:
        """Appointments visible to the subject, ordered by date then time."""
        actor = self._permissions.authorize(subject_id, Permission.VIEW_APPOINTMENTS)
        scope = self._guard.scope_for(actor, org_id)
        rows = scope.filter(self._store.query(
            APPOINTMENTS,
            lambda a: (appointment_date is None or a.appointment_date == appointment_date)
            and (worker_id is None or a.worker_id == worker_id),
        ))
        return sorted(rows, key=lambda a: (a.appointment_date, a.appointment_time))
