"""
Tests for caseguard.organizations -- tenant lifecycle.
"""

import pytest

from caseguard.audit import AuditAction
from caseguard.errors import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    StaleRevisionError,
    UnauthorizedError,
    ValidationError,
)
from caseguard.models import OrgStatus


class TestCreateOrganization:
    def test_create(self, engine):
        org_id = engine.create_organization(
            "sa-1",
            {"org_id": "harbour-house", "name": "Harbour House", "contact_email": "Info@Harbour.org"},
        )
        org = engine.get_organization("sa-1", org_id)
        assert org.name == "Harbour House"
        assert org.contact_email == "info@harbour.org"
        assert org.status == OrgStatus.ACTIVE
        assert org.created_by == "sa-1"

    def test_audited_without_org_id(self, engine):
        engine.create_organization("sa-1", {"org_id": "acme", "name": "Acme"})
        entry = engine.audit_log.query(action=AuditAction.ORGANIZATION_CREATED)[0]
        assert entry.entity_id == "acme"
        assert entry.org_id is None

    def test_duplicate_slug(self, engine, world):
        with pytest.raises(ConflictError):
            engine.create_organization("sa-1", {"org_id": "acme", "name": "Another Acme"})

    @pytest.mark.parametrize("slug", ["Acme", "acme corp", "acme--corp", "-acme", ""])
    def test_invalid_slug(self, engine, slug):
        with pytest.raises(ValidationError):
            engine.create_organization("sa-1", {"org_id": slug, "name": "Acme"})

    def test_admin_cannot_create(self, engine, world):
        with pytest.raises(UnauthorizedError):
            engine.create_organization("acme-admin", {"org_id": "gamma", "name": "Gamma"})


class TestUpdateOrganization:
    def test_update_fields(self, engine, world):
        engine.update_organization("sa-1", "acme", {"name": "Acme Renamed"})
        org = engine.get_organization("acme-admin", "acme")
        assert org.name == "Acme Renamed"
        assert org.revision == 1

        entry = engine.audit_log.query(action=AuditAction.ORGANIZATION_UPDATED)[-1]
        assert entry.org_id == "acme"
        assert entry.details == {"changed_fields": ["name"]}

    def test_settings_replaced(self, engine, world):
        engine.update_organization("sa-1", "acme", {"settings": {"auto_assign": True, "max_users": 9}})
        settings = engine.get_organization("sa-1", "acme").settings
        assert settings.auto_assign is True
        assert settings.max_users == 9

    def test_stale_revision(self, engine, world):
        engine.update_organization("sa-1", "acme", {"name": "First"})
        with pytest.raises(StaleRevisionError):
            engine.update_organization("sa-1", "acme", {"name": "Second", "expected_revision": 0})

    def test_unknown(self, engine, world):
        with pytest.raises(NotFoundError):
            engine.update_organization("sa-1", "nowhere", {"name": "X"})

    def test_admin_cannot_update_own_org(self, engine, world):
        with pytest.raises(UnauthorizedError):
            engine.update_organization("acme-admin", "acme", {"name": "Mine"})


class TestReadOrganizations:
    def test_member_reads_own(self, engine, world):
        assert engine.get_organization("acme-w1", "acme").org_id == "acme"

    def test_member_cannot_read_other(self, engine, world):
        with pytest.raises(UnauthorizedError):
            engine.get_organization("acme-w1", "beta")

    def test_missing_returns_none(self, engine):
        assert engine.get_organization("sa-1", "nowhere") is None

    def test_list_newest_first(self, engine, world):
        assert [o.org_id for o in engine.list_organizations("sa-1")] == ["beta", "acme"]

    def test_list_by_status(self, engine, world):
        engine.update_organization("sa-1", "beta", {"status": "inactive"})
        rows = engine.list_organizations("sa-1", status=OrgStatus.ACTIVE)
        assert [o.org_id for o in rows] == ["acme"]

    def test_list_superadmin_only(self, engine, world):
        with pytest.raises(UnauthorizedError):
            engine.list_organizations("acme-admin")

    def test_stats(self, engine, world, add_client):
        add_client("acme", assigned_worker_id=world["acme-w1"])
        add_client("acme")
        inactive = add_client("acme")
        engine.update_client("acme-admin", inactive, {"status": "inactive"})
        engine.create_appointment(
            "acme-admin",
            {"appointment_date": "2026-03-02", "appointment_time": "09:00", "type": "intake"},
        )

        stats = engine.get_organization_stats("sa-1", "acme")
        assert stats == {
            "total_users": 4,
            "active_users": 4,
            "total_clients": 3,
            "active_clients": 2,
            "unassigned_clients": 1,
            "total_appointments": 1,
            "scheduled_appointments": 1,
        }


class TestDeleteOrganization:
    def test_delete_empty(self, engine):
        engine.create_organization("sa-1", {"org_id": "gamma", "name": "Gamma"})
        assert engine.delete_organization("sa-1", "gamma") == {"success": True}
        assert engine.get_organization("sa-1", "gamma") is None
        assert engine.audit_log.query(action=AuditAction.ORGANIZATION_DELETED)[0].entity_id == "gamma"

    def test_refused_while_referenced(self, engine, world):
        with pytest.raises(InvariantViolation):
            engine.delete_organization("sa-1", "acme")
        assert engine.get_organization("sa-1", "acme") is not None

    def test_archived_records_still_block(self, engine, world, add_client):
        engine.create_organization("sa-1", {"org_id": "gamma", "name": "Gamma"})
        client_id = add_client("gamma")
        engine.archive_client("sa-1", client_id)
        with pytest.raises(InvariantViolation):
            engine.delete_organization("sa-1", "gamma")

    def test_unknown(self, engine):
        with pytest.raises(NotFoundError):
            engine.delete_organization("sa-1", "nowhere")

    def test_admin_cannot_delete(self, engine, world):
        with pytest.raises(UnauthorizedError):
            engine.delete_organization("acme-admin", "acme")
