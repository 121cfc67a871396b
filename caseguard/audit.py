"""
Append-Only, Tamper-Evident Audit Log (Hash-Chained).

Every mutating action in caseguard -- user, client and organization
lifecycle changes, client assignments, appointment scheduling and role
permission rewrites -- is recorded as a structured, append-only audit entry.
Entries are linked via a SHA-256 hash chain: modifying any entry after the
fact is detected by ``AuditLog.verify_chain()``.

**Best-effort recording:**  ``AuditRecorder.record()`` is always invoked
after the primary mutation has committed.  A failure to append is logged and
swallowed; it never rolls back the mutation.  A crash between the two
leaves an unaudited change.  This is a known compliance gap, recorded as an
open decision rather than papered over here.

**Multi-tenant isolation:**  Entries carry the ``org_id`` of the entity they
concern (absent for platform-level actions such as organization creation).
Queries filter on ``org_id`` before returning anything.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
import re
import threading
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Audit vocabulary
# ---------------------------------------------------------------------------

class AuditAction(str, enum.Enum):
    """Every auditable action in the engine."""

    # Users
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    USER_ARCHIVED = "user_archived"
    SUPERADMIN_BOOTSTRAPPED = "superadmin_bootstrapped"

    # Organizations
    ORGANIZATION_CREATED = "organization_created"
    ORGANIZATION_UPDATED = "organization_updated"
    ORGANIZATION_DELETED = "organization_deleted"

    # Clients
    CLIENT_CREATED = "client_created"
    CLIENT_UPDATED = "client_updated"
    CLIENT_ARCHIVED = "client_archived"
    CLIENT_ASSIGNED = "client_assigned"
    CLIENT_UNASSIGNED = "client_unassigned"

    # Appointments
    APPOINTMENT_CREATED = "appointment_created"

    # Roles
    ROLE_PERMISSIONS_UPDATED = "role_permissions_updated"

    # Audit operations
    AUDIT_EXPORTED = "audit_exported"


class EntityType(str, enum.Enum):
    USER = "user"
    ORGANIZATION = "organization"
    CLIENT = "client"
    APPOINTMENT = "appointment"
    ROLE = "role"
    AUDIT = "audit"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditLogEntry(BaseModel):
    """A single audit log entry: who did what to which entity, when."""

    entry_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for this audit entry (UUID).",
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp of the event.",
    )
    actor_id: str = Field(
        ...,
        description="Subject id of the acting user, or 'SYSTEM'.",
    )
    action: AuditAction = Field(..., description="What happened.")
    entity_type: EntityType = Field(..., description="Kind of entity affected.")
    entity_id: str = Field(default="", description="Identifier of the affected entity.")
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Action-specific data; must be JSON-serializable.",
    )
    org_id: Optional[str] = Field(
        default=None,
        description="Organization the entity belongs to, when scoped.",
    )
    previous_hash: str = Field(
        default="",
        description=(
            "SHA-256 hash of the previous entry's canonical representation. "
            "Empty string for the first entry in the chain."
        ),
    )

    @property
    def details_json(self) -> str:
        """The details blob as stored/exported."""
        return json.dumps(self.details, sort_keys=True, default=str)

    def canonical_bytes(self) -> bytes:
        """Return a deterministic byte representation for hashing."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "actor_id": self.actor_id,
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "details": self.details,
            "org_id": self.org_id,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        """Compute the SHA-256 hash of this entry's canonical representation."""
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


class AuditFilter(BaseModel):
    """Filter for audit queries.  ``org_id`` is narrowed by the tenant guard."""

    org_id: Optional[str] = None
    actor_id: Optional[str] = None
    action: Optional[AuditAction] = None
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    time_start: Optional[datetime] = None
    time_end: Optional[datetime] = None
    limit: Optional[int] = Field(default=None, ge=1)


# ---------------------------------------------------------------------------
# PII redaction
# ---------------------------------------------------------------------------

_PII_PATTERNS: dict[str, re.Pattern] = {
    "dob": re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
}

# Keys likely to contain personal data; fully redacted on export.
_PII_KEYS = {
    "first_name", "last_name", "name", "full_name", "email", "phone",
    "phone_number", "address", "date_of_birth", "dob",
    "emergency_contact_name", "emergency_contact_phone",
}


def redact_pii_from_details(details: dict[str, Any]) -> dict[str, Any]:
    """Strip personal data from audit details before export.

    Keys in the PII key list become ``[REDACTED]``; string values have
    email/phone/date-of-birth patterns masked; nested dicts are walked.
    """
    redacted: dict[str, Any] = {}
    for key, value in details.items():
        if key.lower() in _PII_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            redacted_value = value
            for pattern_name, pattern in _PII_PATTERNS.items():
                redacted_value = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", redacted_value)
            redacted[key] = redacted_value
        elif isinstance(value, dict):
            redacted[key] = redact_pii_from_details(value)
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only, hash-chained audit log.

    There are no ``update()`` or ``delete()`` methods.  Appends are
    serialized so the chain stays linear under concurrent callers.
    """

    def __init__(self) -> None:
        self._entries: list[AuditLogEntry] = []
        self._hashes: list[str] = []  # parallel list of computed hashes
        self._lock = threading.Lock()

    def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Append an entry, linking it to the previous entry's hash.

        Returns:
            A copy of the stored entry with ``previous_hash`` populated.
        """
        with self._lock:
            entry = entry.model_copy(deep=True)
            entry.previous_hash = self._hashes[-1] if self._hashes else ""
            self._entries.append(entry)
            self._hashes.append(entry.compute_hash())
            return entry.model_copy(deep=True)

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index of the
            first broken link, or None if the chain is intact.
        """
        with self._lock:
            for i, entry in enumerate(self._entries):
                if i == 0:
                    if entry.previous_hash != "":
                        return (False, 0)
                elif entry.previous_hash != self._entries[i - 1].compute_hash():
                    return (False, i)
                if self._hashes[i] != entry.compute_hash():
                    return (False, i)
        return (True, None)

    def query(
        self,
        org_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        entity_type: Optional[EntityType] = None,
        entity_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AuditLogEntry]:
        """Return copies of matching entries in append order.

        ``org_id=None`` means no organization filter.  Callers outside the
        engine must go through the tenant-scoped audit service instead.
        """
        results = []
        with self._lock:
            entries = list(self._entries)
        for entry in entries:
            if org_id is not None and entry.org_id != org_id:
                continue
            if action is not None and entry.action != action:
                continue
            if entity_type is not None and entry.entity_type != entity_type:
                continue
            if entity_id is not None and entry.entity_id != entity_id:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def stats(self, org_id: Optional[str] = None, now: Optional[datetime] = None) -> dict[str, Any]:
        """Counts by action, entity type and organization."""
        entries = self.query(org_id=org_id)
        now = now or datetime.now(timezone.utc)
        return {
            "total": len(entries),
            "last_24_hours": sum(1 for e in entries if e.timestamp >= now - timedelta(hours=24)),
            "last_7_days": sum(1 for e in entries if e.timestamp >= now - timedelta(days=7)),
            "by_action": dict(Counter(e.action.value for e in entries)),
            "by_entity_type": dict(Counter(e.entity_type.value for e in entries)),
            "by_org": dict(Counter(e.org_id for e in entries if e.org_id)),
        }

    def export_for_review(
        self,
        org_id: str,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable, PII-redacted export for one organization.

        Includes the chain verification result in the bundle.
        """
        entries = self.query(org_id=org_id, time_start=time_start, time_end=time_end)

        redacted_entries = []
        for entry in entries:
            entry_dict = entry.model_dump(mode="json")
            entry_dict["details"] = redact_pii_from_details(entry.details)
            redacted_entries.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "org_id": org_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(redacted_entries),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": redacted_entries,
        }

    @property
    def length(self) -> int:
        """Return the number of entries in the log."""
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------

class AuditRecorder:
    """Best-effort writer in front of an ``AuditLog``.

    ``record()`` never raises: an append failure is logged with its
    traceback and reported as ``None`` so the already-committed primary
    mutation stands.
    """

    def __init__(self, audit_log: AuditLog) -> None:
        self._audit_log = audit_log

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    def record(
        self,
        actor_id: str,
        action: AuditAction,
        entity_type: EntityType,
        entity_id: str = "",
        details: Optional[dict[str, Any]] = None,
        org_id: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        try:
            return self._audit_log.append(AuditLogEntry(
                actor_id=actor_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                details=details or {},
                org_id=org_id,
            ))
        except Exception:
            logger.exception(
                "Audit append failed: actor=%s action=%s %s/%s",
                actor_id, action, entity_type, entity_id,
            )
            return None
