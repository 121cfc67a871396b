"""
Shared fixtures: an engine seeded with two organizations and their staff.

Subjects (the ids passed as ``subject_id``) are the staff external ids:

* ``sa-1``        superadmin, no organization
* ``acme-admin``  admin of acme
* ``acme-lead``   team leader of acme
* ``acme-w1``     support worker of acme
* ``acme-w2``     peer support of acme
* ``beta-admin``  admin of beta
* ``beta-w1``     support worker of beta

``world`` maps each external id to the engine's ``user_id``.
"""

from __future__ import annotations

import pytest

from caseguard.engine import CaseEngine
from caseguard.models import Role

SUPERADMIN = "sa-1"


@pytest.fixture
def engine() -> CaseEngine:
    eng = CaseEngine()
    eng.bootstrap_superadmin(SUPERADMIN, "root@example.org", "Sam", "Root")
    return eng


@pytest.fixture
def add_staff(engine):
    """Factory: create a staff user as the superadmin and return its user_id."""

    def _add(external_id: str, role: Role, org_id: str | None = None, **extra) -> str:
        payload = {
            "external_id": external_id,
            "email": f"{external_id}@example.org",
            "first_name": "Test",
            "last_name": external_id.title(),
            "role": role,
            "org_id": org_id,
        }
        payload.update(extra)
        return engine.create_user(SUPERADMIN, payload)

    return _add


@pytest.fixture
def add_client(engine):
    """Factory: create a client and return its client_id."""
    counter = {"n": 0}

    def _add(org_id: str, actor: str = SUPERADMIN, **extra) -> str:
        counter["n"] += 1
        payload = {
            "org_id": org_id,
            "first_name": "Client",
            "last_name": f"Number{counter['n']}",
        }
        payload.update(extra)
        return engine.create_client(actor, payload)

    return _add


@pytest.fixture
def world(engine, add_staff) -> dict[str, str]:
    engine.create_organization(SUPERADMIN, {"org_id": "acme", "name": "Acme Community Services"})
    engine.create_organization(SUPERADMIN, {"org_id": "beta", "name": "Beta Outreach"})

    ids = {SUPERADMIN: engine.resolver.resolve(SUPERADMIN).user_id}
    ids["acme-admin"] = add_staff("acme-admin", Role.ADMIN, "acme")
    ids["acme-lead"] = add_staff("acme-lead", Role.TEAM_LEADER, "acme")
    ids["acme-w1"] = add_staff("acme-w1", Role.SUPPORT_WORKER, "acme")
    ids["acme-w2"] = add_staff("acme-w2", Role.PEER_SUPPORT, "acme")
    ids["beta-admin"] = add_staff("beta-admin", Role.ADMIN, "beta")
    ids["beta-w1"] = add_staff("beta-w1", Role.SUPPORT_WORKER, "beta")
    return ids