"""
Identity resolution.

The engine trusts the already-authenticated subject identifier handed to
it by the identity provider and maps it onto a ``StaffUser`` record.
"""

from __future__ import annotations

import logging
from typing import Optional

from caseguard.errors import UnauthenticatedError
from caseguard.models import StaffUser
from caseguard.store import USERS, DocumentStore

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Maps subject ids (``StaffUser.external_id``) to user records."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def find(self, subject_id: Optional[str]) -> Optional[StaffUser]:
        if not subject_id:
            return None
        return self._store.first(USERS, lambda u: u.external_id == subject_id)

    def resolve(self, subject_id: Optional[str]) -> StaffUser:
        """Return the user for ``subject_id``.

        Raises:
            UnauthenticatedError: If the id is blank or matches no user.
        """
        user = self.find(subject_id)
        if user is None:
            logger.warning("Unresolvable subject id %r", subject_id)
            raise UnauthenticatedError("No user matches the authenticated subject")
        return user
