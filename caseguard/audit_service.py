"""
Tenant-scoped read access to the audit log.

``AuditLog`` itself knows nothing about subjects or permissions; this
module is the only way callers outside the engine read it.  Every call
requires ``view_audit_logs`` and is narrowed by the tenant guard, so an
organization admin only ever sees entries stamped with their own
organization.  Platform-level entries (no ``org_id``) are visible to
superadmins alone.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from caseguard.audit import (
    AuditAction,
    AuditFilter,
    AuditLog,
    AuditLogEntry,
    AuditRecorder,
    EntityType,
)
from caseguard.errors import ValidationError
from caseguard.rbac import Permission, PermissionEngine
from caseguard.schemas import parse_input
from caseguard.tenancy import TenantGuard

logger = logging.getLogger(__name__)


class AuditQueryService:
    def __init__(
        self,
        audit_log: AuditLog,
        permissions: PermissionEngine,
        guard: TenantGuard,
        recorder: AuditRecorder,
        default_limit: int = 50,
        max_limit: int = 1000,
    ) -> None:
        self._audit_log = audit_log
        self._permissions = permissions
        self._guard = guard
        self._recorder = recorder
        self._default_limit = default_limit
        self._max_limit = max_limit

    def list_audit_logs(
        self, subject_id: str, audit_filter: AuditFilter | dict | None = None
    ) -> list[AuditLogEntry]:
        """Matching entries, newest first.

        ``limit`` defaults to 50 and is capped at the configured maximum.

        Raises:
            UnauthorizedError: Missing ``view_audit_logs`` or cross-tenant filter.
        """
        audit_filter = parse_input(AuditFilter, audit_filter or {})
        actor = self._permissions.authorize(subject_id, Permission.VIEW_AUDIT_LOGS)
        scope = self._guard.scope_for(actor, audit_filter.org_id)

        entries = self._audit_log.query(
            org_id=scope.org_id,
            action=audit_filter.action,
            entity_type=audit_filter.entity_type,
            entity_id=audit_filter.entity_id,
            actor_id=audit_filter.actor_id,
            time_start=audit_filter.time_start,
            time_end=audit_filter.time_end,
        )
        limit = min(audit_filter.limit or self._default_limit, self._max_limit)
        return list(reversed(entries))[:limit]

    def audit_stats(self, subject_id: str, org_id: Optional[str] = None) -> dict[str, Any]:
        """Counts by action, entity type and organization, plus recent activity."""
        actor = self._permissions.authorize(subject_id, Permission.VIEW_AUDIT_LOGS)
        scope = self._guard.scope_for(actor, org_id)
        return self._audit_log.stats(org_id=scope.org_id)

    def export_for_review(
        self,
        subject_id: str,
        org_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """PII-redacted export of one organization's entries.  The export is itself audited."""
        actor = self._permissions.authorize(subject_id, Permission.VIEW_AUDIT_LOGS)
        scope = self._guard.scope_for(actor, org_id)
        if scope.org_id is None:
            raise ValidationError("An organization is required for an audit export")

        bundle = self._audit_log.export_for_review(
            scope.org_id, time_start=time_start, time_end=time_end
        )
        logger.info(
            "Audit export of %s (%d entries) by %s",
            scope.org_id, bundle["export_metadata"]["entry_count"], actor.external_id,
        )
        self._recorder.record(
            actor_id=actor.external_id,
            action=AuditAction.AUDIT_EXPORTED,
            entity_type=EntityType.AUDIT,
            entity_id=scope.org_id,
            details={"entry_count": bundle["export_metadata"]["entry_count"]},
            org_id=scope.org_id,
        )
        return bundle

    def verify_chain(self, subject_id: str) -> tuple[bool, Optional[int]]:
        """Check the whole hash chain.  Superadmin only, since it spans every tenant."""
        self._permissions.require_superadmin(subject_id)
        return self._audit_log.verify_chain()
