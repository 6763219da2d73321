"""
Tests for safegate.config -- Tenant Policy and Runtime Settings.

Covers: default policy values, policy validation (break-glass window,
retention floor), registry isolation and deep copies, YAML round-trip, and
environment-driven settings.
"""

import logging
import tempfile
from pathlib import Path

import pydantic
import pytest
import yaml

from safegate.config import (
    DEFAULT_POLICY,
    MIN_AUDIT_RETENTION_YEARS,
    PolicyRegistry,
    Settings,
    TenantPolicy,
    load_policies_from_yaml,
)
from safegate.log import configure_logging


# ---------------------------------------------------------------------------
# 1. Default policy
# ---------------------------------------------------------------------------

class TestDefaultPolicy:
    def test_default_policy_values(self):
        """DEFAULT_POLICY uses the conservative defaults."""
        assert DEFAULT_POLICY.tenant_id == "default"
        assert DEFAULT_POLICY.emergency_access_minutes == 15
        assert DEFAULT_POLICY.emergency_ui_countdown_seconds == 30
        assert DEFAULT_POLICY.audit_retention_years == MIN_AUDIT_RETENTION_YEARS
        assert DEFAULT_POLICY.notify_on_emergency_access is True

    def test_default_endpoints(self):
        assert DEFAULT_POLICY.override_endpoint == "/api/health-conflicts/override"
        assert DEFAULT_POLICY.request_review_endpoint == "/api/clinical-review/request"


# ---------------------------------------------------------------------------
# 2. Tenant policy validation
# ---------------------------------------------------------------------------

class TestTenantPolicyValidation:
    def test_valid_policy_creation(self):
        policy = TenantPolicy(tenant_id="clinic_a", tenant_name="Clinic A", emergency_access_minutes=10)
        assert policy.emergency_access_minutes == 10

    def test_empty_tenant_id_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            TenantPolicy(tenant_id="", tenant_name="Bad Tenant")

    def test_emergency_window_above_fifteen_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            TenantPolicy(tenant_id="t", tenant_name="T", emergency_access_minutes=30)

    def test_emergency_window_below_five_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            TenantPolicy(tenant_id="t", tenant_name="T", emergency_access_minutes=1)

    def test_retention_floor_enforced(self):
        with pytest.raises(pydantic.ValidationError, match="audit_retention_years"):
            TenantPolicy(tenant_id="t", tenant_name="T", audit_retention_years=3)

    def test_longer_retention_allowed(self):
        policy = TenantPolicy(tenant_id="t", tenant_name="T", audit_retention_years=10)
        assert policy.audit_retention_years == 10


# ---------------------------------------------------------------------------
# 3. Policy registry -- multi-tenant isolation
# ---------------------------------------------------------------------------

class TestPolicyRegistry:
    def test_register_and_retrieve(self):
        registry = PolicyRegistry()
        registry.register(TenantPolicy(tenant_id="tenant_a", tenant_name="Tenant A"))
        assert registry.get("tenant_a").tenant_name == "Tenant A"
        assert "tenant_a" in registry
        assert len(registry) == 1

    def test_duplicate_registration_rejected(self):
        registry = PolicyRegistry()
        policy = TenantPolicy(tenant_id="tenant_a", tenant_name="Tenant A")
        registry.register(policy)
        with pytest.raises(ValueError, match="already registered"):
            registry.register(policy)

    def test_get_nonexistent_raises_key_error(self):
        with pytest.raises(KeyError):
            PolicyRegistry().get("nonexistent")

    def test_get_or_default_falls_back(self):
        assert PolicyRegistry().get_or_default("unknown").tenant_id == "default"

    def test_retrieved_policy_is_a_copy(self):
        registry = PolicyRegistry()
        registry.register(TenantPolicy(tenant_id="tenant_a", tenant_name="Tenant A"))
        retrieved = registry.get("tenant_a")
        retrieved.tenant_name = "Mutated"
        assert registry.get("tenant_a").tenant_name == "Tenant A"

    def test_update_replaces_policy(self):
        registry = PolicyRegistry()
        registry.register(TenantPolicy(tenant_id="tenant_a", tenant_name="Tenant A"))
        registry.update(TenantPolicy(tenant_id="tenant_a", tenant_name="Tenant A", emergency_access_minutes=5))
        assert registry.get("tenant_a").emergency_access_minutes == 5

    def test_update_unknown_raises(self):
        with pytest.raises(KeyError):
            PolicyRegistry().update(TenantPolicy(tenant_id="ghost", tenant_name="Ghost"))

    def test_list_tenants_sorted(self):
        registry = PolicyRegistry()
        registry.register(TenantPolicy(tenant_id="b", tenant_name="B"))
        registry.register(TenantPolicy(tenant_id="a", tenant_name="A"))
        assert registry.list_tenants() == ["a", "b"]


# ---------------------------------------------------------------------------
# 4. YAML loading
# ---------------------------------------------------------------------------

class TestYAMLLoading:
    def test_round_trip(self):
        data = {
            "policies": [
                {"tenant_id": "clinic_alpha", "tenant_name": "Alpha", "emergency_access_minutes": 10},
                {"tenant_id": "clinic_beta", "tenant_name": "Beta", "audit_retention_years": 9},
            ]
        }
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "policies.yaml"
            path.write_text(yaml.safe_dump(data))
            policies = load_policies_from_yaml(path)
        assert [p.tenant_id for p in policies] == ["clinic_alpha", "clinic_beta"]
        assert policies[0].emergency_access_minutes == 10
        assert policies[1].audit_retention_years == 9

    def test_missing_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_policies_from_yaml("/nonexistent/policies.yaml")

    def test_missing_policies_key_raises(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "bad.yaml"
            path.write_text("tenants: []\n")
            with pytest.raises(ValueError, match="policies"):
                load_policies_from_yaml(path)

    def test_invalid_policy_in_yaml_rejected(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "bad.yaml"
            path.write_text(yaml.safe_dump({
                "policies": [{"tenant_id": "t", "tenant_name": "T", "audit_retention_years": 1}]
            }))
            with pytest.raises(pydantic.ValidationError):
                load_policies_from_yaml(path)


# ---------------------------------------------------------------------------
# 5. Runtime settings
# ---------------------------------------------------------------------------

class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("SAFEGATE_LOG_LEVEL", raising=False)
        settings = Settings(_env_file=None)
        assert settings.log_level == "INFO"
        assert settings.audit_retry_attempts == 3
        assert settings.catalog_path is None

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("SAFEGATE_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("SAFEGATE_AUDIT_RETRY_ATTEMPTS", "5")
        settings = Settings(_env_file=None)
        assert settings.log_level == "DEBUG"
        assert settings.audit_retry_attempts == 5


# ---------------------------------------------------------------------------
# 6. Logging
# ---------------------------------------------------------------------------

class TestLogging:
    def test_configure_logging_sets_level(self):
        configure_logging("debug", json=False)
        assert logging.getLogger().level == logging.DEBUG
        configure_logging("INFO")
        assert logging.getLogger().level == logging.INFO
