"""
Input schemas (create and patch DTOs) for every mutating operation.

Patch schemas only carry the fields the caller explicitly set:
``changes()`` dumps with ``exclude_unset`` so absent fields never mutate.
Each patch may also carry ``expected_revision`` for compare-and-swap.
"""

from __future__ import annotations

from datetime import date, time
from typing import Any, Optional, TypeVar

import pydantic
from pydantic import BaseModel, Field, field_validator

from caseguard.errors import ValidationError
from caseguard.models import (
    AppointmentStatus,
    ClientStatus,
    OrgSettings,
    OrgStatus,
    RiskLevel,
    Role,
    UserStatus,
)
from caseguard.validation import (
    sanitize_string,
    validate_email,
    validate_phone,
    validate_slug,
)


_NAME_FIELDS = ("first_name", "last_name")
_SHORT_TEXT_FIELDS = (
    "gender",
    "pronouns",
    "primary_language",
    "date_of_birth",
    "emergency_contact_relationship",
)


class _PatchSchema(BaseModel):
    expected_revision: Optional[int] = Field(
        default=None,
        ge=0,
        description="If set, the write only succeeds against this revision.",
    )

    def changes(self) -> dict[str, Any]:
        """Return only the explicitly-set fields, without ``expected_revision``."""
        return self.model_dump(exclude_unset=True, exclude={"expected_revision"})


SchemaT = TypeVar("SchemaT", bound=BaseModel)


def parse_input(schema: type[SchemaT], data: Any) -> SchemaT:
    """Coerce ``data`` (a mapping or an instance) into ``schema``.

    Raises:
        ValidationError: With a field-by-field summary of what was rejected.
    """
    if isinstance(data, schema):
        return data
    try:
        return schema.model_validate(data)
    except pydantic.ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'input'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValidationError(problems) from exc


# ---------------------------------------------------------------------------
# Staff users
# ---------------------------------------------------------------------------

PROFILE_FIELDS = frozenset({
    "first_name",
    "last_name",
    "phone_number",
    "address",
    "emergency_contact_name",
    "emergency_contact_phone",
})
"""Fields a user may change on their own record without ``manage_org_users``."""


class NewStaffUser(BaseModel):
    external_id: str = Field(..., min_length=1, max_length=200)
    email: str
    first_name: str
    last_name: str
    role: Role
    org_id: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None

    @field_validator("first_name", "last_name", "emergency_contact_name", mode="before")
    @classmethod
    def clean_names(cls, v):
        return sanitize_string(v, 100)

    @field_validator("first_name", "last_name")
    @classmethod
    def name_required(cls, v: Optional[str]) -> str:
        if not v:
            raise ValueError("First and last name are required")
        return v

    @field_validator("address", mode="before")
    @classmethod
    def clean_address(cls, v):
        return sanitize_string(v, 500)

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        return validate_email(v)

    @field_validator("phone_number", "emergency_contact_phone")
    @classmethod
    def check_phone(cls, v: Optional[str]) -> Optional[str]:
        return validate_phone(v)


class StaffUserPatch(_PatchSchema):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[Role] = None
    org_id: Optional[str] = None
    status: Optional[UserStatus] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None

    @field_validator("first_name", "last_name", "emergency_contact_name", mode="before")
    @classmethod
    def clean_names(cls, v):
        return sanitize_string(v, 100)

    @field_validator("first_name", "last_name")
    @classmethod
    def name_not_blank(cls, v: Optional[str]) -> str:
        if not v:
            raise ValueError("Names cannot be blank")
        return v

    @field_validator("address", mode="before")
    @classmethod
    def clean_address(cls, v):
        return sanitize_string(v, 500)

    @field_validator("email")
    @classmethod
    def check_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            raise ValueError("Email cannot be cleared")
        return validate_email(v)

    @field_validator("phone_number", "emergency_contact_phone")
    @classmethod
    def check_phone(cls, v: Optional[str]) -> Optional[str]:
        return validate_phone(v)


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

class NewClient(BaseModel):
    first_name: str
    last_name: str
    org_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    pronouns: Optional[str] = None
    primary_language: Optional[str] = None
    risk_level: RiskLevel = RiskLevel.LOW
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    emergency_contact_relationship: Optional[str] = None
    assigned_worker_id: Optional[str] = None

    @field_validator(*_NAME_FIELDS, "emergency_contact_name", mode="before")
    @classmethod
    def clean_names(cls, v):
        return sanitize_string(v, 100)

    @field_validator(*_NAME_FIELDS)
    @classmethod
    def name_required(cls, v: Optional[str]) -> str:
        if not v:
            raise ValueError("First and last name are required")
        return v

    @field_validator(*_SHORT_TEXT_FIELDS, mode="before")
    @classmethod
    def clean_short_text(cls, v):
        return sanitize_string(v, 50)

    @field_validator("address", mode="before")
    @classmethod
    def clean_address(cls, v):
        return sanitize_string(v, 500)

    @field_validator("email", mode="before")
    @classmethod
    def check_email(cls, v):
        return validate_email(sanitize_string(v, 255))

    @field_validator("phone", "emergency_contact_phone", mode="before")
    @classmethod
    def check_phone(cls, v):
        return validate_phone(sanitize_string(v, 40))


class ClientPatch(_PatchSchema):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    pronouns: Optional[str] = None
    primary_language: Optional[str] = None
    status: Optional[ClientStatus] = None
    risk_level: Optional[RiskLevel] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    emergency_contact_relationship: Optional[str] = None

    @field_validator(*_NAME_FIELDS, "emergency_contact_name", mode="before")
    @classmethod
    def clean_names(cls, v):
        return sanitize_string(v, 100)

    @field_validator(*_NAME_FIELDS)
    @classmethod
    def name_not_blank(cls, v: Optional[str]) -> str:
        if not v:
            raise ValueError("Names cannot be blank")
        return v

    @field_validator(*_SHORT_TEXT_FIELDS, mode="before")
    @classmethod
    def clean_short_text(cls, v):
        return sanitize_string(v, 50)

    @field_validator("address", mode="before")
    @classmethod
    def clean_address(cls, v):
        return sanitize_string(v, 500)

    @field_validator("email", mode="before")
    @classmethod
    def check_email(cls, v):
        return validate_email(sanitize_string(v, 255))

    @field_validator("phone", "emergency_contact_phone", mode="before")
    @classmethod
    def check_phone(cls, v):
        return validate_phone(sanitize_string(v, 40))


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------

class NewOrganization(BaseModel):
    org_id: str = Field(..., min_length=1, max_length=100)
    name: str
    description: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None
    status: OrgStatus = OrgStatus.ACTIVE
    settings: OrgSettings = Field(default_factory=OrgSettings)

    @field_validator("org_id")
    @classmethod
    def check_slug(cls, v: str) -> str:
        return validate_slug(v)

    @field_validator("name", mode="before")
    @classmethod
    def clean_name(cls, v):
        cleaned = sanitize_string(v, 100)
        if not cleaned:
            raise ValueError("Organization name is required")
        return cleaned

    @field_validator("description", "address", "website", mode="before")
    @classmethod
    def clean_text(cls, v):
        return sanitize_string(v, 500)

    @field_validator("contact_email")
    @classmethod
    def check_email(cls, v: Optional[str]) -> Optional[str]:
        return validate_email(v)

    @field_validator("contact_phone")
    @classmethod
    def check_phone(cls, v: Optional[str]) -> Optional[str]:
        return validate_phone(v)


class OrganizationPatch(_PatchSchema):
    name: Optional[str] = None
    description: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None
    status: Optional[OrgStatus] = None
    settings: Optional[OrgSettings] = None

    @field_validator("name", mode="before")
    @classmethod
    def clean_name(cls, v):
        cleaned = sanitize_string(v, 100)
        if not cleaned:
            raise ValueError("Organization name cannot be blank")
        return cleaned

    @field_validator("description", "address", "website", mode="before")
    @classmethod
    def clean_text(cls, v):
        return sanitize_string(v, 500)

    @field_validator("contact_email")
    @classmethod
    def check_email(cls, v: Optional[str]) -> Optional[str]:
        return validate_email(v)

    @field_validator("contact_phone")
    @classmethod
    def check_phone(cls, v: Optional[str]) -> Optional[str]:
        return validate_phone(v)


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

class NewAppointment(BaseModel):
    appointment_date: date
    appointment_time: time
    type: str
    org_id: Optional[str] = None
    client_id: Optional[str] = None
    worker_id: Optional[str] = Field(
        default=None,
        description="Explicit worker; when omitted the organization's auto-assign setting applies.",
    )
    duration_minutes: Optional[int] = Field(default=None, gt=0, le=24 * 60)
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    notes: Optional[str] = None
    meeting_link: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def clean_type(cls, v):
        cleaned = sanitize_string(v, 100)
        if not cleaned:
            raise ValueError("Appointment type is required")
        return cleaned

    @field_validator("notes", mode="before")
    @classmethod
    def clean_notes(cls, v):
        return sanitize_string(v, 2000)

    @field_validator("meeting_link", mode="before")
    @classmethod
    def clean_link(cls, v):
        return sanitize_string(v, 500)
