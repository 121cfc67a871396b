"""
Error taxonomy for caseguard.

Every error carries a ``kind`` (stable, machine-readable) and a
``safe_message`` that callers may surface to end users without leaking
internal detail.  Each class also derives from the closest built-in
exception so generic handlers keep working.
"""

from __future__ import annotations


class CaseGuardError(Exception):
    """Base class for all engine errors."""

    kind = "error"
    default_message = "The request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def safe_message(self) -> str:
        return self.default_message

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.safe_message}


class UnauthorizedError(CaseGuardError, PermissionError):
    """Subject lacks the required permission or crossed an organization boundary."""

    kind = "unauthorized"
    default_message = "You are not allowed to perform this action."


class UnauthenticatedError(UnauthorizedError):
    """No resolvable subject identity."""

    kind = "unauthenticated"
    default_message = "Authentication is required."


class NotFoundError(CaseGuardError, LookupError):
    """A referenced user, client, organization or appointment does not exist."""

    kind = "not_found"
    default_message = "The requested record was not found."


class ValidationError(CaseGuardError, ValueError):
    """A field is malformed or out of range."""

    kind = "validation_error"
    default_message = "One or more fields are invalid."

    @property
    def safe_message(self) -> str:
        # Validation messages describe the caller's own input.
        return self.message


class ConflictError(CaseGuardError):
    """Uniqueness violation (duplicate email, slug, external id)."""

    kind = "conflict"
    default_message = "A record with the same identifying value already exists."


class StaleRevisionError(ConflictError):
    """Compare-and-swap failed: the document changed since it was read."""

    kind = "stale_revision"
    default_message = "The record was modified concurrently. Reload and retry."


class InvariantViolation(CaseGuardError):
    """The action would break a system invariant."""

    kind = "invariant_violation"
    default_message = "This action would leave the system in an invalid state."

    @property
    def safe_message(self) -> str:
        return self.message


class NoEligibleWorkersError(CaseGuardError):
    """The workload balancer found no valid assignment target."""

    kind = "no_eligible_workers"
    default_message = "No eligible workers are available in this organization."
