"""
In-process transactional document store.

Stands in for the platform's document database at the store boundary: every
single-document read, insert and patch is atomic, documents carry a
``revision`` counter, and ``patch()`` can act as a compare-and-swap against
the revision the caller read.  Reads hand out deep copies so callers can
never mutate stored state without going through ``patch()``.

Tables enumerate documents in insertion order.  The workload balancer's
tie-break relies on that order being stable.

``org_lock()`` provides an advisory lock keyed by organization for
operations that must serialize per tenant (bulk assignment).
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, TypeVar

import pydantic
from pydantic import BaseModel

from caseguard.errors import ConflictError, NotFoundError, StaleRevisionError, ValidationError
from caseguard.models import utcnow

logger = logging.getLogger(__name__)

ORGANIZATIONS = "organizations"
USERS = "users"
CLIENTS = "clients"
APPOINTMENTS = "appointments"

_KEY_FIELDS: dict[str, str] = {
    ORGANIZATIONS: "org_id",
    USERS: "user_id",
    CLIENTS: "client_id",
    APPOINTMENTS: "appointment_id",
}

DocT = TypeVar("DocT", bound=BaseModel)


class DocumentStore:
    """Thread-safe in-memory document store with per-document CAS."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, BaseModel]] = {name: {} for name in _KEY_FIELDS}
        self._lock = threading.RLock()
        self._org_locks: dict[str, threading.Lock] = {}

    # -- helpers --

    def _table(self, table: str) -> dict[str, BaseModel]:
        if table not in self._tables:
            raise KeyError(f"Unknown table '{table}'")
        return self._tables[table]

    @staticmethod
    def key_of(table: str, doc: BaseModel) -> str:
        return getattr(doc, _KEY_FIELDS[table])

    # -- reads --

    def get(self, table: str, key: str) -> Optional[BaseModel]:
        """Return a copy of the document, or None."""
        with self._lock:
            doc = self._table(table).get(key)
            return doc.model_copy(deep=True) if doc is not None else None

    def require(self, table: str, key: str) -> BaseModel:
        doc = self.get(table, key)
        if doc is None:
            raise NotFoundError(f"No {table} record with id '{key}'")
        return doc

    def query(
        self,
        table: str,
        predicate: Optional[Callable[[Any], bool]] = None,
    ) -> list[Any]:
        """Return copies of all documents matching ``predicate``, in insertion order."""
        with self._lock:
            docs = list(self._table(table).values())
            return [
                d.model_copy(deep=True)
                for d in docs
                if predicate is None or predicate(d)
            ]

    def first(self, table: str, predicate: Callable[[Any], bool]) -> Optional[Any]:
        with self._lock:
            for doc in self._table(table).values():
                if predicate(doc):
                    return doc.model_copy(deep=True)
        return None

    def count(self, table: str, predicate: Optional[Callable[[Any], bool]] = None) -> int:
        with self._lock:
            return sum(1 for d in self._table(table).values() if predicate is None or predicate(d))

    # -- writes --

    def insert(self, table: str, doc: DocT) -> DocT:
        """Insert a new document.

        Raises:
            ConflictError: If a document with the same key already exists.
        """
        key = self.key_of(table, doc)
        with self._lock:
            rows = self._table(table)
            if key in rows:
                raise ConflictError(f"{table} record '{key}' already exists")
            stored = doc.model_copy(deep=True)
            rows[key] = stored
            logger.debug("Inserted %s/%s", table, key)
            return stored.model_copy(deep=True)

    def patch(
        self,
        table: str,
        key: str,
        changes: dict[str, Any],
        expected_revision: Optional[int] = None,
    ) -> Any:
        """Apply a partial update atomically and bump the revision.

        The merged document is re-validated against its model, so a patch
        can never persist a state the model rejects.

        Args:
            table: Table name.
            key: Document key.
            changes: Field values to overwrite.
            expected_revision: If given, the patch only applies when the
                stored revision still equals it.

        Returns:
            A copy of the updated document.

        Raises:
            NotFoundError: If the document does not exist.
            StaleRevisionError: If ``expected_revision`` does not match.
            ValidationError: If the merged document is invalid.
        """
        with self._lock:
            rows = self._table(table)
            current = rows.get(key)
            if current is None:
                raise NotFoundError(f"No {table} record with id '{key}'")
            if expected_revision is not None and current.revision != expected_revision:
                raise StaleRevisionError(
                    f"{table}/{key} is at revision {current.revision}, "
                    f"expected {expected_revision}"
                )
            merged = current.model_dump()
            merged.update(changes)
            merged["revision"] = current.revision + 1
            if "updated_at" in merged:
                merged["updated_at"] = utcnow()
            try:
                updated = type(current).model_validate(merged)
            except pydantic.ValidationError as exc:
                raise ValidationError(str(exc)) from exc
            rows[key] = updated
            logger.debug("Patched %s/%s -> revision %d", table, key, updated.revision)
            return updated.model_copy(deep=True)

    def delete(self, table: str, key: str) -> None:
        """Physically remove a document.  Only organizations are ever removed."""
        with self._lock:
            rows = self._table(table)
            if key not in rows:
                raise NotFoundError(f"No {table} record with id '{key}'")
            del rows[key]

    # -- advisory locking --

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Hold the store lock so a check-then-write sequence is not interleaved."""
        with self._lock:
            yield

    @contextmanager
    def org_lock(self, org_id: str) -> Iterator[None]:
        """Hold the advisory lock for ``org_id`` for the duration of the block."""
        with self._lock:
            lock = self._org_locks.setdefault(org_id, threading.Lock())
        with lock:
            yield

    def __len__(self) -> int:
        with self._lock:
            return sum(len(t) for t in self._tables.values())
