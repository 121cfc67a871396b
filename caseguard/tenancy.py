"""
Tenant isolation guard.

Every query and mutation is narrowed to a ``TenantScope`` before it touches
data.  A superadmin's scope is the organization they explicitly asked for,
or no filter at all.  Everyone else is pinned to their own organization: a
request naming any other organization is refused outright, whatever their
permissions say.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict

from caseguard.errors import NotFoundError, UnauthorizedError
from caseguard.identity import IdentityResolver
from caseguard.models import Role, StaffUser

logger = logging.getLogger(__name__)

T = TypeVar("T")

_OUT_OF_SCOPE = "Cannot access records from a different organization"


class TenantScope(BaseModel):
    """The effective organization filter for one call."""

    model_config = ConfigDict(frozen=True)

    subject: StaffUser
    org_id: Optional[str] = None  # None: unrestricted (superadmin only)
    cross_tenant: bool = False

    @property
    def unrestricted(self) -> bool:
        return self.org_id is None

    def admits(self, org_id: Optional[str]) -> bool:
        """Whether a record belonging to ``org_id`` is visible in this scope."""
        if self.org_id is None:
            return True
        return org_id == self.org_id

    def require(self, org_id: Optional[str]) -> None:
        """Raise ``UnauthorizedError`` if ``org_id`` is outside this scope."""
        if not self.admits(org_id):
            logger.warning(
                "Denied: %s scoped to %s touched %s",
                self.subject.external_id, self.org_id, org_id,
            )
            raise UnauthorizedError(_OUT_OF_SCOPE)

    def locate(self, record: Optional[T], label: str) -> T:
        """Return a looked-up ``record`` if this scope may touch it.

        Only a superadmin learns that an id does not exist.  For everyone
        else a missing id and another organization's id fail identically.

        Raises:
            NotFoundError: ``record`` is None and the subject is a superadmin.
            UnauthorizedError: ``record`` is outside the scope, or is None
                for an organization-scoped subject.
        """
        if record is None:
            if self.cross_tenant:
                raise NotFoundError(f"{label} not found")
            logger.warning("Denied: %s looked up unknown %s", self.subject.external_id, label)
            raise UnauthorizedError(_OUT_OF_SCOPE)
        self.require(record.org_id)
        return record

    def lookup(self, record: Optional[T], label: str) -> Optional[T]:
        """Read-side ``locate``: a superadmin gets None for a missing id."""
        if record is None and self.cross_tenant:
            return None
        return self.locate(record, label)

    def filter(
        self,
        items: Iterable[T],
        org_of: Callable[[T], Optional[str]] = lambda item: item.org_id,
    ) -> list[T]:
        return [item for item in items if self.admits(org_of(item))]


class TenantGuard:
    """Computes the effective organization for a subject."""

    def __init__(self, resolver: IdentityResolver) -> None:
        self._resolver = resolver

    def scope(self, subject_id: str, requested_org: Optional[str] = None) -> TenantScope:
        """Resolve ``subject_id`` and scope it.  See ``scope_for``."""
        return self.scope_for(self._resolver.resolve(subject_id), requested_org)

    def scope_for(self, user: StaffUser, requested_org: Optional[str] = None) -> TenantScope:
        """Scope an already-resolved user.

        Raises:
            UnauthorizedError: If a non-superadmin names another organization,
                or has no organization at all.
        """
        if user.role == Role.SUPERADMIN:
            return TenantScope(subject=user, org_id=requested_org, cross_tenant=True)

        if not user.org_id:
            raise UnauthorizedError("User has no organization")
        if requested_org is not None and requested_org != user.org_id:
            logger.warning(
                "Denied: %s (org %s) requested org %s",
                user.external_id, user.org_id, requested_org,
            )
            raise UnauthorizedError("Cannot access a different organization")
        return TenantScope(subject=user, org_id=user.org_id)
