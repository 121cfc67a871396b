"""
Core data models for caseguard.

Organizations are the unit of tenancy; staff users and clients each belong
to exactly one organization (superadmins may float free of one).  Nothing
here is ever physically removed: "deleting" a user or client is a status
transition to ``deleted``, governed by the transition tables below, so
historical references (appointments, audit entries) stay valid.
"""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, time, timezone
from typing import Optional

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """Closed set of platform roles.

    Hierarchy levels (lower = more powerful) live in the role registry:
    superadmin=0, admin=1, team_leader=2, support_worker/peer_support=3,
    client=4.
    """

    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    TEAM_LEADER = "team_leader"
    SUPPORT_WORKER = "support_worker"
    PEER_SUPPORT = "peer_support"
    CLIENT = "client"


class OrgStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class UserStatus(str, enum.Enum):
    """Staff lifecycle states.  ``DELETED`` is a soft, terminal state."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class ClientStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DISCHARGED = "discharged"
    DELETED = "deleted"


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

USER_TRANSITIONS: dict[UserStatus, set[UserStatus]] = {
    UserStatus.ACTIVE: {UserStatus.INACTIVE, UserStatus.SUSPENDED, UserStatus.DELETED},
    UserStatus.INACTIVE: {UserStatus.ACTIVE, UserStatus.SUSPENDED, UserStatus.DELETED},
    UserStatus.SUSPENDED: {UserStatus.ACTIVE, UserStatus.INACTIVE, UserStatus.DELETED},
    UserStatus.DELETED: set(),  # terminal state
}

CLIENT_TRANSITIONS: dict[ClientStatus, set[ClientStatus]] = {
    ClientStatus.ACTIVE: {ClientStatus.INACTIVE, ClientStatus.DISCHARGED, ClientStatus.DELETED},
    ClientStatus.INACTIVE: {ClientStatus.ACTIVE, ClientStatus.DISCHARGED, ClientStatus.DELETED},
    ClientStatus.DISCHARGED: {ClientStatus.ACTIVE, ClientStatus.DELETED},
    ClientStatus.DELETED: set(),  # terminal state
}


def can_transition(
    table: dict[enum.Enum, set[enum.Enum]], current: enum.Enum, target: enum.Enum
) -> bool:
    """Return True if ``current -> target`` is allowed.

    Re-applying the current state is always allowed (a no-op).
    """
    return current == target or target in table.get(current, set())


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

class OrgSettings(BaseModel):
    """Per-organization switches."""

    max_users: Optional[int] = Field(
        default=None,
        ge=1,
        description="Cap on non-deleted staff users. None means unlimited.",
    )
    features: list[str] = Field(
        default_factory=list,
        description="Feature flags enabled for this organization.",
    )
    custom_branding: bool = Field(default=False)
    auto_assign: bool = Field(
        default=False,
        description=(
            "When set, new clients and appointments without an explicit "
            "worker are given the least-loaded eligible worker."
        ),
    )


class Organization(BaseModel):
    """A tenant.  ``org_id`` is the slug and the isolation key."""

    org_id: str = Field(..., min_length=1, description="URL-friendly slug, e.g. 'acme'.")
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None
    status: OrgStatus = OrgStatus.ACTIVE
    settings: OrgSettings = Field(default_factory=OrgSettings)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    created_by: Optional[str] = None
    revision: int = 0


class StaffUser(BaseModel):
    """A platform user.

    ``external_id`` is the subject identifier handed to the engine by the
    identity provider; ``user_id`` is the engine's own key and is what
    other records reference.
    """

    user_id: str = Field(default_factory=new_id)
    external_id: str = Field(..., min_length=1)
    email: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    role: Role
    org_id: Optional[str] = Field(
        default=None,
        description="Owning organization. May be absent only for superadmins.",
    )
    status: UserStatus = UserStatus.ACTIVE
    phone_number: Optional[str] = None
    address: Optional[str] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    last_login: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    revision: int = 0

    @model_validator(mode="after")
    def organization_required(self) -> "StaffUser":
        if self.role != Role.SUPERADMIN and not self.org_id:
            raise ValueError(f"Role '{self.role.value}' requires an organization.")
        return self

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email or self.external_id


class Client(BaseModel):
    """A person receiving services.  At most one assigned worker."""

    client_id: str = Field(default_factory=new_id)
    org_id: str = Field(..., min_length=1)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    pronouns: Optional[str] = None
    primary_language: Optional[str] = None
    status: ClientStatus = ClientStatus.ACTIVE
    risk_level: RiskLevel = RiskLevel.LOW
    assigned_worker_id: Optional[str] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    emergency_contact_relationship: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    revision: int = 0

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Appointment(BaseModel):
    appointment_id: str = Field(default_factory=new_id)
    org_id: str = Field(..., min_length=1)
    client_id: Optional[str] = None
    worker_id: Optional[str] = None
    scheduled_by: str
    appointment_date: date
    appointment_time: time
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    type: str = Field(..., min_length=1)
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    notes: Optional[str] = None
    meeting_link: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    revision: int = 0
