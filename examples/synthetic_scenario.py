"""
Synthetic Scenario: Two-Organization Caseload Walkthrough
=========================================================

This script walks through a caseguard deployment using entirely synthetic
data.  No real clients, staff, or contact details are used.

Two community organizations share one engine.  Each has its own staff and
clients, and neither can see the other's records.

Steps demonstrated:
  1. Load engine settings and seed organizations from YAML
  2. Bootstrap the platform superadmin
  3. Create organization staff
  4. Intake clients (auto-assigned where the organization enables it)
  5. Bulk-assign the remaining caseload
  6. Schedule an appointment
  7. Show tenant isolation refusing a cross-organization read
  8. Export the audit log for compliance review

Usage:
    pip install -e .
    python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
from pathlib import Path

from caseguard.config import configure_logging
from caseguard.engine import CaseEngine
from caseguard.errors import UnauthorizedError
from caseguard.models import Role


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _staff(external_id: str, role: Role, org_id: str) -> dict:
    return {
        "external_id": external_id,
        "email": f"{external_id}@staff.example",
        "first_name": "Synthetic",
        "last_name": external_id.replace("-", " ").title(),
        "role": role,
        "org_id": org_id,
    }


def main() -> None:
    _banner("caseguard Synthetic Scenario")
    print("All data in this demo is entirely synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Load settings and seed organizations
    # ------------------------------------------------------------------
    _banner("Step 1: Load Engine Settings")

    config_path = Path(__file__).parent / "engine_settings.yaml"
    engine = CaseEngine.from_yaml(config_path)
    configure_logging(engine.settings)
    print(f"Eligible roles: {[r.value for r in engine.settings.eligible_roles]}")

    # ------------------------------------------------------------------
    # Step 2: Bootstrap the superadmin
    # ------------------------------------------------------------------
    _banner("Step 2: Bootstrap Superadmin")

    engine.bootstrap_superadmin("platform-root", "root@platform.example", "Platform", "Root")
    for org in engine.list_organizations("platform-root"):
        print(f"  {org.org_id:<25} auto_assign={org.settings.auto_assign}")

    # ------------------------------------------------------------------
    # Step 3: Staff
    # ------------------------------------------------------------------
    _banner("Step 3: Create Staff")

    engine.create_user("platform-root", _staff("harbour-admin", Role.ADMIN, "harbour-house"))
    engine.create_user("harbour-admin", _staff("harbour-worker-a", Role.SUPPORT_WORKER, "harbour-house"))
    engine.create_user("harbour-admin", _staff("harbour-peer-b", Role.PEER_SUPPORT, "harbour-house"))
    engine.create_user(
        "platform-root", _staff("northside-admin", Role.ADMIN, "northside-peer-network")
    )
    engine.create_user(
        "northside-admin", _staff("northside-peer-a", Role.PEER_SUPPORT, "northside-peer-network")
    )
    for user in engine.list_users("platform-root"):
        print(f"  {user.external_id:<20} {user.role.value:<15} {user.org_id}")

    # ------------------------------------------------------------------
    # Step 4: Client intake
    # ------------------------------------------------------------------
    _banner("Step 4: Client Intake")

    for i in range(3):
        engine.create_client("harbour-admin", {
            "first_name": "Client",
            "last_name": f"Harbour{i}",
            "risk_level": "medium",
        })
    for i in range(4):
        engine.create_client("northside-admin", {"first_name": "Client", "last_name": f"North{i}"})

    harbour_unassigned = engine.list_unassigned_clients("harbour-admin")
    north_unassigned = engine.list_unassigned_clients("northside-admin")
    print(f"harbour-house unassigned after intake: {len(harbour_unassigned)} (auto-assign on)")
    print(f"northside-peer-network unassigned after intake: {len(north_unassigned)}")

    # ------------------------------------------------------------------
    # Step 5: Bulk assignment
    # ------------------------------------------------------------------
    _banner("Step 5: Bulk Assignment")

    result = engine.bulk_assign("northside-admin")
    print(result.message)
    for row in engine.get_worker_load("harbour-admin"):
        print(f"  harbour   {row.name:<30} {row.client_count} clients")
    for row in engine.get_worker_load("northside-admin"):
        print(f"  northside {row.name:<30} {row.client_count} clients")

    # ------------------------------------------------------------------
    # Step 6: Appointment
    # ------------------------------------------------------------------
    _banner("Step 6: Schedule Appointment")

    client = engine.list_clients("harbour-admin")[0]
    appointment = engine.create_appointment("harbour-admin", {
        "client_id": client.client_id,
        "appointment_date": "2026-03-02",
        "appointment_time": "10:30",
        "type": "intake review",
        "duration_minutes": 45,
    })
    print(f"Appointment {appointment.appointment_id}")
    print(f"  client: {client.display_name}  worker: {appointment.worker_id}")

    # ------------------------------------------------------------------
    # Step 7: Tenant isolation
    # ------------------------------------------------------------------
    _banner("Step 7: Tenant Isolation")

    try:
        engine.list_clients("harbour-admin", org_id="northside-peer-network")
    except UnauthorizedError as exc:
        print(f"Refused as expected: {exc.to_dict()}")

    # ------------------------------------------------------------------
    # Step 8: Audit export
    # ------------------------------------------------------------------
    _banner("Step 8: Audit Log Export (Compliance Review)")

    export = engine.export_audit_for_review("harbour-admin")
    print(json.dumps(export["export_metadata"], indent=2))
    valid, broken_at = engine.verify_audit_chain("platform-root")
    print(f"\nFull chain verification: valid={valid}, broken_at={broken_at}")

    _banner("Scenario Complete")
    print("All data was synthetic.")


if __name__ == "__main__":
    main()
