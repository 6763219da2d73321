"""
Tenant Policy and Runtime Settings for SafeGate.

Two layers of configuration live here:

* ``TenantPolicy`` -- per-tenant workflow policy: break-glass window, audit
  retention horizon, the endpoints surfaced to callers when a change needs
  approval, and whether emergency access notifies the subject's contacts.
  Policies are held in a ``PolicyRegistry`` keyed by ``tenant_id`` and can be
  loaded from YAML.
* ``Settings`` -- process-level runtime settings read from the environment
  (``SAFEGATE_*``) through pydantic-settings.

**Retention floor:**  ``audit_retention_years`` cannot be configured below
seven years.  Tenants may retain longer but never shorter.
"""

from __future__ import annotations

import copy
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


MIN_AUDIT_RETENTION_YEARS = 7


# ---------------------------------------------------------------------------
# Tenant policy model
# ---------------------------------------------------------------------------

class TenantPolicy(BaseModel):
    """Workflow policy for a single tenant."""

    tenant_id: str = Field(
        ...,
        min_length=1,
        description=(
            "Tenant identifier.  The isolation key for audit queries, "
            "access decisions and policy lookups."
        ),
    )
    tenant_name: str = Field(
        ...,
        min_length=1,
        description="Human-readable name of the tenant.",
    )
    emergency_access_minutes: int = Field(
        default=15,
        ge=5,
        le=15,
        description=(
            "Server-side lifetime of a break-glass grant.  Access expires "
            "automatically after this window."
        ),
    )
    emergency_ui_countdown_seconds: int = Field(
        default=30,
        gt=0,
        description=(
            "Countdown shown by clients before a break-glass grant is "
            "activated.  Cosmetic; the server does not enforce it."
        ),
    )
    audit_retention_years: int = Field(
        default=MIN_AUDIT_RETENTION_YEARS,
        description="Years an audit entry stays in the active store before archival.",
    )
    override_endpoint: str = Field(
        default="/api/health-conflicts/override",
        description="Endpoint returned to callers for an authorized override.",
    )
    request_review_endpoint: str = Field(
        default="/api/clinical-review/request",
        description="Endpoint returned to callers to request clinical review.",
    )
    notify_on_emergency_access: bool = Field(
        default=True,
        description=(
            "Notify the subject's primary emergency contact and provider "
            "when break-glass access is activated."
        ),
    )

    @field_validator("audit_retention_years")
    @classmethod
    def retention_floor(cls, v: int) -> int:
        if v < MIN_AUDIT_RETENTION_YEARS:
            raise ValueError(
                f"audit_retention_years ({v}) must be >= {MIN_AUDIT_RETENTION_YEARS}"
            )
        return v


DEFAULT_POLICY = TenantPolicy(
    tenant_id="default",
    tenant_name="Default Policy (Conservative Defaults)",
)
"""Built-in policy used when a tenant has not registered its own."""


# ---------------------------------------------------------------------------
# Policy registry (multi-tenant)
# ---------------------------------------------------------------------------

class PolicyRegistry:
    """In-memory tenant policy registry.

    Policies are keyed by ``tenant_id`` and returned as deep copies, so a
    caller mutating a retrieved policy cannot affect another tenant or the
    registered original.
    """

    def __init__(self) -> None:
        self._policies: dict[str, TenantPolicy] = {}

    def register(self, policy: TenantPolicy) -> None:
        """Register a new tenant policy.

        Raises:
            ValueError: If ``tenant_id`` is already registered.
        """
        if policy.tenant_id in self._policies:
            raise ValueError(
                f"Policy for tenant_id '{policy.tenant_id}' already registered. "
                "Use update() to modify an existing policy."
            )
        self._policies[policy.tenant_id] = copy.deepcopy(policy)

    def get(self, tenant_id: str) -> TenantPolicy:
        """Retrieve the policy for a tenant.

        Raises:
            KeyError: If no policy is registered for ``tenant_id``.
        """
        if tenant_id not in self._policies:
            raise KeyError(f"No policy registered for tenant_id '{tenant_id}'")
        return copy.deepcopy(self._policies[tenant_id])

    def get_or_default(self, tenant_id: str) -> TenantPolicy:
        """Return the tenant's policy, or the built-in default."""
        if tenant_id in self._policies:
            return copy.deepcopy(self._policies[tenant_id])
        return copy.deepcopy(DEFAULT_POLICY)

    def update(self, policy: TenantPolicy) -> None:
        """Replace an existing tenant policy.

        Raises:
            KeyError: If no policy is registered for the given ``tenant_id``.
        """
        if policy.tenant_id not in self._policies:
            raise KeyError(
                f"Cannot update: no policy registered for tenant_id '{policy.tenant_id}'"
            )
        self._policies[policy.tenant_id] = copy.deepcopy(policy)

    def list_tenants(self) -> list[str]:
        return sorted(self._policies.keys())

    def __len__(self) -> int:
        return len(self._policies)

    def __contains__(self, tenant_id: str) -> bool:
        return tenant_id in self._policies


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_policies_from_yaml(path: str | Path) -> list[TenantPolicy]:
    """Load tenant policies from a YAML file.

    The file must contain a top-level ``policies`` key with a list of policy
    mappings::

        policies:
          - tenant_id: "clinic_alpha"
            tenant_name: "Alpha Family Practice"
            emergency_access_minutes: 10

    Args:
        path: Path to the YAML file.

    Returns:
        List of validated ``TenantPolicy`` instances.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If any policy fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Policy file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "policies" not in raw:
        raise ValueError(
            "YAML file must contain a top-level 'policies' key with a list of policy objects."
        )

    policies_data = raw["policies"]
    if not isinstance(policies_data, list):
        raise ValueError("'policies' must be a list of policy objects.")

    policies: list[TenantPolicy] = []
    for idx, entry in enumerate(policies_data):
        if not isinstance(entry, dict):
            raise ValueError(f"Policy entry at index {idx} must be a mapping.")
        policies.append(TenantPolicy(**entry))
    return policies


# ---------------------------------------------------------------------------
# Runtime settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """Process settings from ``SAFEGATE_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SAFEGATE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Reference data
    catalog_path: Optional[str] = None
    policy_path: Optional[str] = None

    # Audit write channel
    audit_retry_attempts: int = Field(default=3, ge=1)
    audit_retry_wait_seconds: float = Field(default=0.05, ge=0)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
