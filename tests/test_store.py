"""
Tests for caseguard.store -- in-process transactional document store.
"""

import threading
import time

import pytest

from caseguard.errors import (
    ConflictError,
    NotFoundError,
    StaleRevisionError,
    ValidationError,
)
from caseguard.models import Client, Organization
from caseguard.store import CLIENTS, ORGANIZATIONS, DocumentStore


def _make_client(org_id: str = "acme", **overrides) -> Client:
    fields = {"org_id": org_id, "first_name": "Ada", "last_name": "Lovelace"}
    fields.update(overrides)
    return Client(**fields)


class TestReadsAndInserts:
    def test_insert_then_get(self):
        store = DocumentStore()
        client = store.insert(CLIENTS, _make_client())
        assert store.get(CLIENTS, client.client_id).first_name == "Ada"
        assert len(store) == 1

    def test_get_missing_returns_none(self):
        assert DocumentStore().get(CLIENTS, "missing") is None

    def test_require_missing_raises(self):
        with pytest.raises(NotFoundError):
            DocumentStore().require(CLIENTS, "missing")

    def test_duplicate_key_rejected(self):
        store = DocumentStore()
        store.insert(ORGANIZATIONS, Organization(org_id="acme", name="Acme"))
        with pytest.raises(ConflictError):
            store.insert(ORGANIZATIONS, Organization(org_id="acme", name="Other"))

    def test_reads_return_copies(self):
        """Mutating a returned document must not affect the stored one."""
        store = DocumentStore()
        client = store.insert(CLIENTS, _make_client())
        fetched = store.get(CLIENTS, client.client_id)
        fetched.first_name = "MUTATED"
        assert store.get(CLIENTS, client.client_id).first_name == "Ada"

    def test_query_preserves_insertion_order(self):
        store = DocumentStore()
        ids = [store.insert(CLIENTS, _make_client(last_name=f"N{i}")).client_id for i in range(5)]
        assert [c.client_id for c in store.query(CLIENTS)] == ids

    def test_query_and_count_with_predicate(self):
        store = DocumentStore()
        store.insert(CLIENTS, _make_client(org_id="acme"))
        store.insert(CLIENTS, _make_client(org_id="beta"))
        store.insert(CLIENTS, _make_client(org_id="acme"))
        assert len(store.query(CLIENTS, lambda c: c.org_id == "acme")) == 2
        assert store.count(CLIENTS, lambda c: c.org_id == "beta") == 1
        assert store.first(CLIENTS, lambda c: c.org_id == "gamma") is None

    def test_unknown_table(self):
        with pytest.raises(KeyError):
            DocumentStore().query("widgets")


class TestPatch:
    def test_patch_bumps_revision(self):
        store = DocumentStore()
        client = store.insert(CLIENTS, _make_client())
        updated = store.patch(CLIENTS, client.client_id, {"first_name": "Grace"})
        assert updated.first_name == "Grace"
        assert updated.revision == client.revision + 1
        assert updated.updated_at >= client.updated_at

    def test_compare_and_swap(self):
        store = DocumentStore()
        client = store.insert(CLIENTS, _make_client())
        store.patch(CLIENTS, client.client_id, {"first_name": "Grace"}, expected_revision=0)
        with pytest.raises(StaleRevisionError):
            store.patch(CLIENTS, client.client_id, {"first_name": "Hedy"}, expected_revision=0)
        assert store.get(CLIENTS, client.client_id).first_name == "Grace"

    def test_stale_revision_is_a_conflict(self):
        assert issubclass(StaleRevisionError, ConflictError)

    def test_invalid_patch_rejected_and_not_stored(self):
        store = DocumentStore()
        client = store.insert(CLIENTS, _make_client())
        with pytest.raises(ValidationError):
            store.patch(CLIENTS, client.client_id, {"first_name": ""})
        stored = store.get(CLIENTS, client.client_id)
        assert stored.first_name == "Ada"
        assert stored.revision == 0

    def test_patch_missing_raises(self):
        with pytest.raises(NotFoundError):
            DocumentStore().patch(CLIENTS, "missing", {"first_name": "X"})

    def test_concurrent_cas_only_one_wins(self):
        store = DocumentStore()
        client = store.insert(CLIENTS, _make_client())
        outcomes = []

        def writer(name: str) -> None:
            try:
                store.patch(CLIENTS, client.client_id, {"first_name": name}, expected_revision=0)
                outcomes.append("ok")
            except StaleRevisionError:
                outcomes.append("stale")

        threads = [threading.Thread(target=writer, args=(f"W{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert outcomes.count("ok") == 1
        assert outcomes.count("stale") == 7


class TestDeleteAndLocks:
    def test_delete(self):
        store = DocumentStore()
        store.insert(ORGANIZATIONS, Organization(org_id="acme", name="Acme"))
        store.delete(ORGANIZATIONS, "acme")
        assert store.get(ORGANIZATIONS, "acme") is None
        with pytest.raises(NotFoundError):
            store.delete(ORGANIZATIONS, "acme")

    def test_org_lock_serializes_same_org(self):
        store = DocumentStore()
        events = []

        def hold(tag: str) -> None:
            with store.org_lock("acme"):
                events.append(f"{tag}-in")
                time.sleep(0.05)
                events.append(f"{tag}-out")

        threads = [threading.Thread(target=hold, args=(t,)) for t in ("a", "b")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        # Sections never interleave.
        assert events[0][0] == events[1][0]
        assert events[2][0] == events[3][0]

    def test_org_locks_are_independent(self):
        store = DocumentStore()
        with store.org_lock("acme"):
            acquired = threading.Event()

            def other() -> None:
                with store.org_lock("beta"):
                    acquired.set()

            t = threading.Thread(target=other)
            t.start()
            t.join(timeout=1)
            assert acquired.is_set()
