"""
Engine configuration for caseguard.

Settings are structured, validated pydantic objects, loadable from YAML.
They are read once at startup; the role registry is built from them and
handed to the permission engine by reference.

Example YAML structure::

    engine:
      eligible_roles: [support_worker, peer_support]
      serialize_bulk_assign: true
      staff_email_scope: global
      client_email_scope: organization
      log_level: INFO
      role_overrides:
        team_leader: [view_users, view_clients, assign_clients]

    organizations:
      - org_id: "acme"
        name: "Acme Community Services"
        settings:
          auto_assign: true
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from caseguard.models import Role
from caseguard.rbac import Permission, RoleRegistry
from caseguard.schemas import NewOrganization

EmailScope = Literal["global", "organization"]


class EngineSettings(BaseModel):
    """Process-wide engine settings."""

    eligible_roles: list[Role] = Field(
        default_factory=lambda: [Role.SUPPORT_WORKER, Role.PEER_SUPPORT],
        min_length=1,
        description="Roles that may receive client and appointment assignments.",
    )
    serialize_bulk_assign: bool = Field(
        default=True,
        description=(
            "Hold a per-organization advisory lock for the whole of a bulk "
            "assignment.  When off, concurrent bulk runs on one organization "
            "may both read the same load snapshot."
        ),
    )
    staff_email_scope: EmailScope = Field(
        default="global",
        description="Uniqueness scope of staff emails among non-deleted users.",
    )
    client_email_scope: EmailScope = Field(
        default="organization",
        description="Uniqueness scope of client emails among non-deleted clients.",
    )
    audit_default_limit: int = Field(default=50, ge=1)
    audit_max_limit: int = Field(default=1000, ge=1)
    role_overrides: dict[Role, list[Permission]] = Field(
        default_factory=dict,
        description="Replace the default permission set of the named roles.",
    )
    log_level: str = Field(default="INFO")

    @field_validator("eligible_roles")
    @classmethod
    def staff_roles_only(cls, v: list[Role]) -> list[Role]:
        forbidden = {Role.SUPERADMIN, Role.CLIENT}
        bad = [r.value for r in v if r in forbidden]
        if bad:
            raise ValueError(f"eligible_roles cannot include {bad}")
        return list(dict.fromkeys(v))

    @field_validator("log_level")
    @classmethod
    def known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level '{v}'")
        return level

    @model_validator(mode="after")
    def limits_ordered(self) -> "EngineSettings":
        if self.audit_default_limit > self.audit_max_limit:
            raise ValueError(
                f"audit_default_limit ({self.audit_default_limit}) must be <= "
                f"audit_max_limit ({self.audit_max_limit})"
            )
        return self


DEFAULT_SETTINGS = EngineSettings()


def build_registry(settings: EngineSettings) -> RoleRegistry:
    """Build the immutable role registry, applying any configured overrides."""
    registry = RoleRegistry.default()
    for role, permissions in settings.role_overrides.items():
        registry = registry.with_permissions(role, permissions)
    return registry


def configure_logging(settings: EngineSettings) -> logging.Logger:
    """Attach a stream handler to the ``caseguard`` logger at the configured level."""
    logger = logging.getLogger("caseguard")
    logger.setLevel(settings.log_level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
        )
        logger.addHandler(handler)
    return logger


# ---------------------------------------------------------------------------
# YAML loaders
# ---------------------------------------------------------------------------

def _read_yaml(path: str | Path) -> dict:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a mapping at the top level.")
    return raw


def load_settings_from_yaml(path: str | Path) -> EngineSettings:
    """Load ``EngineSettings`` from the ``engine`` key of a YAML file.

    A missing ``engine`` key yields the defaults.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If the settings fail validation.
    """
    raw = _read_yaml(path)
    section = raw.get("engine") or {}
    if not isinstance(section, dict):
        raise ValueError("'engine' must be a mapping of settings.")
    return EngineSettings(**section)


def load_organizations_from_yaml(path: str | Path) -> list[NewOrganization]:
    """Load organization seed definitions from the ``organizations`` key.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If any organization fails validation.
    """
    raw = _read_yaml(path)
    entries = raw.get("organizations") or []
    if not isinstance(entries, list):
        raise ValueError("'organizations' must be a list of organization objects.")

    organizations: list[NewOrganization] = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValueError(f"Organization entry at index {idx} must be a mapping.")
        organizations.append(NewOrganization(**entry))
    return organizations
