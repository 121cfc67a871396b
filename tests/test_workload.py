"""
Tests for caseguard.workload -- least-loaded worker selection.

Covers: eligibility rules, load definition, deterministic tie-break,
empty eligible sets, load reporting, and the fairness bound of greedy
bulk balancing.
"""

import pytest

from caseguard.errors import NoEligibleWorkersError
from caseguard.models import ClientStatus, Role
from caseguard.store import CLIENTS
from caseguard.workload import WorkloadBalancer


def _set_status(engine, client_id: str, status: ClientStatus) -> None:
    engine.store.patch(CLIENTS, client_id, {"status": status})


# ---------------------------------------------------------------------------
# 1. Eligible set
# ---------------------------------------------------------------------------

class TestEligibility:
    def test_default_eligible_roles(self, engine, world):
        workers = engine.balancer.eligible_workers("acme")
        assert [w.user_id for w in workers] == [world["acme-w1"], world["acme-w2"]]

    def test_admins_and_leads_excluded(self, engine, world):
        ids = {w.user_id for w in engine.balancer.eligible_workers("acme")}
        assert world["acme-admin"] not in ids
        assert world["acme-lead"] not in ids

    def test_other_org_workers_excluded(self, engine, world):
        ids = {w.user_id for w in engine.balancer.eligible_workers("acme")}
        assert world["beta-w1"] not in ids

    def test_inactive_workers_excluded(self, engine, world):
        engine.update_user("acme-admin", world["acme-w1"], {"status": "suspended"})
        assert [w.user_id for w in engine.balancer.eligible_workers("acme")] == [world["acme-w2"]]

    def test_custom_eligible_roles(self, engine, world):
        balancer = WorkloadBalancer(engine.store, [Role.TEAM_LEADER])
        assert [w.user_id for w in balancer.eligible_workers("acme")] == [world["acme-lead"]]

    def test_empty_eligible_set_raises(self, engine, world):
        engine.create_organization("sa-1", {"org_id": "empty", "name": "Empty Org"})
        with pytest.raises(NoEligibleWorkersError):
            engine.balancer.pick_least_loaded("empty")


# ---------------------------------------------------------------------------
# 2. Load definition and selection
# ---------------------------------------------------------------------------

class TestLeastLoaded:
    def test_picks_least_loaded(self, engine, world, add_client):
        for _ in range(3):
            add_client("acme", assigned_worker_id=world["acme-w1"])
        add_client("acme", assigned_worker_id=world["acme-w2"])
        assert engine.balancer.pick_least_loaded("acme") == world["acme-w2"]

    def test_tie_broken_by_creation_order(self, engine, world):
        assert engine.balancer.pick_least_loaded("acme") == world["acme-w1"]

    def test_tie_break_is_deterministic(self, engine, world):
        picks = {engine.balancer.pick_least_loaded("acme") for _ in range(10)}
        assert picks == {world["acme-w1"]}

    def test_inactive_and_deleted_clients_do_not_count(self, engine, world, add_client):
        c1 = add_client("acme", assigned_worker_id=world["acme-w1"])
        c2 = add_client("acme", assigned_worker_id=world["acme-w1"])
        add_client("acme", assigned_worker_id=world["acme-w2"])
        _set_status(engine, c1, ClientStatus.INACTIVE)
        _set_status(engine, c2, ClientStatus.DELETED)

        assert engine.balancer.load_of(world["acme-w1"], "acme") == 0
        assert engine.balancer.pick_least_loaded("acme") == world["acme-w1"]

    def test_discharged_clients_still_count(self, engine, world, add_client):
        c1 = add_client("acme", assigned_worker_id=world["acme-w1"])
        _set_status(engine, c1, ClientStatus.DISCHARGED)
        assert engine.balancer.load_of(world["acme-w1"], "acme") == 1

    def test_restricting_roles_per_call(self, engine, world):
        assert (
            engine.balancer.pick_least_loaded("acme", eligible_roles=[Role.PEER_SUPPORT])
            == world["acme-w2"]
        )


class TestWorkerLoads:
    def test_sorted_by_load_then_creation(self, engine, world, add_client):
        add_client("acme", assigned_worker_id=world["acme-w1"])
        loads = engine.balancer.worker_loads("acme")
        assert [(row.worker_id, row.client_count) for row in loads] == [
            (world["acme-w2"], 0),
            (world["acme-w1"], 1),
        ]
        assert loads[1].role == Role.SUPPORT_WORKER
        assert loads[1].name == "Test Acme-W1"

    def test_compute_loads_preserves_enumeration_order(self, engine, world):
        assert list(engine.balancer.compute_loads("acme")) == [world["acme-w1"], world["acme-w2"]]


# ---------------------------------------------------------------------------
# 3. Greedy balancing
# ---------------------------------------------------------------------------

class TestBalanceAssign:
    def _assign_via_store(self, engine):
        def assign(client_id: str, worker_id: str) -> bool:
            engine.store.patch(CLIENTS, client_id, {"assigned_worker_id": worker_id})
            return True
        return assign

    @pytest.mark.parametrize("n_clients", [1, 2, 5, 7, 12])
    def test_spread_at_most_one(self, engine, world, add_client, n_clients):
        clients = [add_client("acme") for _ in range(n_clients)]
        engine.balancer.balance_assign("acme", clients, self._assign_via_store(engine))

        loads = engine.balancer.compute_loads("acme").values()
        assert max(loads) - min(loads) <= 1
        assert sum(loads) == n_clients

    def test_alternates_from_equal_start(self, engine, world, add_client):
        clients = [add_client("acme") for _ in range(3)]
        pairs = engine.balancer.balance_assign("acme", clients, self._assign_via_store(engine))
        assert [w for _, w in pairs] == [world["acme-w1"], world["acme-w2"], world["acme-w1"]]

    def test_skipped_clients_not_reported(self, engine, world, add_client):
        clients = [add_client("acme") for _ in range(2)]
        pairs = engine.balancer.balance_assign("acme", clients, lambda c, w: False)
        assert pairs == []

    def test_no_workers_raises_before_any_call(self, engine, world, add_client):
        engine.create_organization("sa-1", {"org_id": "empty", "name": "Empty Org"})
        client = add_client("empty")
        calls = []
        with pytest.raises(NoEligibleWorkersError):
            engine.balancer.balance_assign("empty", [client], lambda c, w: calls.append(c))
        assert calls == []
