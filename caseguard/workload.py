"""
Workload balancer.

Selects the least-loaded eligible worker in an organization.

* **Eligible set** -- active staff users of the organization whose role is
  one of the eligible roles (support_worker and peer_support by default),
  enumerated in creation order.
* **Load** -- number of clients of the same organization assigned to the
  worker whose status is neither ``inactive`` nor ``deleted``.
* **Tie-break** -- the first worker in enumeration order among those with
  the minimum load.  Deterministic, never random.

``balance_assign()`` is the bulk variant: it walks the clients in input
order and re-reads every load from the store before each choice (greedy
incremental rebalancing).  With equal starting loads the final spread
across workers is at most one.  The re-scan costs O(clients x workers) per
batch; that ceiling is accepted for simplicity.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from pydantic import BaseModel

from caseguard.errors import NoEligibleWorkersError
from caseguard.models import Client, ClientStatus, Role, StaffUser
from caseguard.store import CLIENTS, USERS, DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_ELIGIBLE_ROLES = frozenset({Role.SUPPORT_WORKER, Role.PEER_SUPPORT})

_UNLOADED_STATUSES = frozenset({ClientStatus.INACTIVE, ClientStatus.DELETED})


class WorkerLoad(BaseModel):
    worker_id: str
    name: str
    role: Role
    client_count: int


class WorkloadBalancer:
    def __init__(
        self,
        store: DocumentStore,
        eligible_roles: Iterable[Role] = DEFAULT_ELIGIBLE_ROLES,
    ) -> None:
        self._store = store
        self._eligible_roles = frozenset(Role(r) for r in eligible_roles)

    @property
    def eligible_roles(self) -> frozenset[Role]:
        return self._eligible_roles

    def is_eligible(
        self,
        worker: StaffUser,
        org_id: str,
        eligible_roles: Optional[Iterable[Role]] = None,
    ) -> bool:
        roles = frozenset(eligible_roles) if eligible_roles is not None else self._eligible_roles
        return worker.is_active and worker.org_id == org_id and worker.role in roles

    def eligible_workers(
        self, org_id: str, eligible_roles: Optional[Iterable[Role]] = None
    ) -> list[StaffUser]:
        """Eligible workers of ``org_id`` in creation (enumeration) order."""
        roles = frozenset(eligible_roles) if eligible_roles is not None else self._eligible_roles
        return self._store.query(USERS, lambda u: self.is_eligible(u, org_id, roles))

    def load_of(self, worker_id: str, org_id: str) -> int:
        return self._store.count(CLIENTS, lambda c: _counts_toward(c, worker_id, org_id))

    def compute_loads(
        self, org_id: str, workers: Optional[list[StaffUser]] = None
    ) -> dict[str, int]:
        """Map worker id -> load, preserving enumeration order."""
        if workers is None:
            workers = self.eligible_workers(org_id)
        return {w.user_id: self.load_of(w.user_id, org_id) for w in workers}

    def worker_loads(self, org_id: str) -> list[WorkerLoad]:
        """Eligible workers with their loads, lightest first (stable)."""
        workers = self.eligible_workers(org_id)
        loads = self.compute_loads(org_id, workers)
        rows = [
            WorkerLoad(
                worker_id=w.user_id,
                name=w.display_name,
                role=w.role,
                client_count=loads[w.user_id],
            )
            for w in workers
        ]
        return sorted(rows, key=lambda row: row.client_count)

    def pick_least_loaded(
        self, org_id: str, eligible_roles: Optional[Iterable[Role]] = None
    ) -> str:
        """Return the id of the least-loaded eligible worker.

        Raises:
            NoEligibleWorkersError: If the organization has no eligible worker.
        """
        workers = self.eligible_workers(org_id, eligible_roles)
        if not workers:
            raise NoEligibleWorkersError(f"No eligible workers in organization '{org_id}'")
        loads = self.compute_loads(org_id, workers)
        chosen = _first_minimum(loads)
        logger.debug("Least-loaded worker in %s: %s (loads=%s)", org_id, chosen, loads)
        return chosen

    def balance_assign(
        self,
        org_id: str,
        client_ids: list[str],
        assign: Callable[[str, str], bool],
    ) -> list[tuple[str, str]]:
        """Assign ``client_ids`` one at a time to the currently least-loaded worker.

        Args:
            org_id: Organization being balanced.
            client_ids: Clients in the order they should be processed.
            assign: Callback ``assign(client_id, worker_id)`` performing the
                write.  Returns False when the client was skipped.  The
                eligible set and loads are re-read from the store before
                each call, under the store lock held through the write.

        Returns:
            ``(client_id, worker_id)`` pairs actually written, in processing
            order.  If every worker drops out mid-batch the rest of the
            clients are left unassigned.

        Raises:
            NoEligibleWorkersError: If the organization has no eligible worker.
                Raised before any assignment is made.
        """
        if not self.eligible_workers(org_id):
            raise NoEligibleWorkersError(f"No eligible workers in organization '{org_id}'")

        assignments: list[tuple[str, str]] = []
        for position, client_id in enumerate(client_ids):
            with self._store.atomic():
                workers = self.eligible_workers(org_id)
                if not workers:
                    logger.warning(
                        "No eligible workers left in %s; %d clients left unassigned",
                        org_id, len(client_ids) - position,
                    )
                    break
                worker_id = _first_minimum(self.compute_loads(org_id, workers))
                if assign(client_id, worker_id):
                    assignments.append((client_id, worker_id))
        return assignments


def _counts_toward(client: Client, worker_id: str, org_id: str) -> bool:
    return (
        client.assigned_worker_id == worker_id
        and client.org_id == org_id
        and client.status not in _UNLOADED_STATUSES
    )


def _first_minimum(loads: dict[str, int]) -> str:
    # min() returns the first of equal minima in iteration order.
    return min(loads, key=loads.__getitem__)
