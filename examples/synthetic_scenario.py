"""
Synthetic Scenario: Safety Gate Walkthrough
===========================================

This script demonstrates the SafeGate workflow end to end using entirely
synthetic data.  No real patient data, PHI, or PII is used.

The scenario simulates a family clinic tenant with one synthetic subject
whose health profile is changed through the safety gate.

Steps demonstrated:
  1. Load tenant policies from YAML
  2. Register a synthetic subject
  3. Add an interacting medication (held for approval, then overridden)
  4. Apply a recipe containing an allergen (blocked, override rejected)
  5. Apply a recipe that breaks a dietary restriction (warned, committed)
  6. Record an implausible weight change (warned)
  7. Route an emergency-only family member through break-glass access
  8. Export the audit log for compliance review

DISCLAIMER: This is a synthetic demonstration.  This software is decision
support, not a medical device, and does not replace clinical judgment.

Usage:
    python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
from pathlib import Path

from safegate.config import Settings
from safegate.errors import ConflictBlockedError, EmergencyAccessRequiredError
from safegate.log import configure_logging
from safegate.models import (
    Allergy,
    AllergySeverity,
    BiometricReading,
    DietaryRestriction,
    EmergencyContact,
    FactRecord,
    FamilyPermission,
    HealthcareProvider,
    Medication,
    PermissionLevel,
    Principal,
    RequestContext,
    Role,
    Subject,
)
from safegate.service import RequestResult, SafetyGateService


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _show(result: RequestResult) -> None:
    print(f"Disposition: {result.disposition.value}  committed={result.committed}")
    for conflict in result.conflicts:
        print(f"  - [{conflict.severity.value}] {conflict.description}")
    if result.next_steps:
        print(f"  Next steps: {result.next_steps}")
    if result.remediation:
        print(f"  Remediation: {result.remediation}")


def main() -> None:
    _banner("SafeGate Synthetic Scenario")
    print("DISCLAIMER: All data in this demo is entirely synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Load tenant policies
    # ------------------------------------------------------------------
    _banner("Step 1: Load Tenant Policies")

    settings = Settings(
        _env_file=None,
        policy_path=str(Path(__file__).parent / "tenant_policies.yaml"),
        log_level="WARNING",
        log_json=False,
    )
    configure_logging(settings.log_level, json=settings.log_json)
    service = SafetyGateService.from_settings(settings)
    tenant_id = service.policies.list_tenants()[0]
    print(f"Tenants: {service.policies.list_tenants()}")
    print(f"Catalog version: {service.catalogs.current().version}")

    # ------------------------------------------------------------------
    # Step 2: Register a synthetic subject
    # ------------------------------------------------------------------
    _banner("Step 2: Register Synthetic Subject")

    subject = service.repository.add(Subject(
        subject_id="subject_synthetic_a",
        tenant_id=tenant_id,
        display_name="Synthetic Subject A (not a real person)",
        history=[
            FactRecord(fact=Medication(name="warfarin", dose="5 mg daily", critical=True)),
            FactRecord(fact=Allergy(allergen="peanuts", severity=AllergySeverity.LIFE_THREATENING)),
            FactRecord(fact=DietaryRestriction(kind="vegan")),
            FactRecord(fact=BiometricReading(kind="weight", value=150, unit="lb")),
        ],
        emergency_contacts=[EmergencyContact(name="Synthetic Contact", is_primary=True)],
        providers=[HealthcareProvider(name="Dr. Synthetic", is_primary=True)],
    ))
    me = Principal(actor_id=subject.subject_id, tenant_id=tenant_id)
    advisor = Principal(actor_id="dr_synthetic_001", tenant_id=tenant_id, role=Role.CLINICAL_ADVISOR)
    context = RequestContext(ip_address="203.0.113.10", user_agent="synthetic-demo")
    print(f"Registered: {subject.display_name} ({subject.subject_id})")

    # ------------------------------------------------------------------
    # Step 3: Interacting medication
    # ------------------------------------------------------------------
    _banner("Step 3: Add Aspirin (Interaction With Warfarin)")

    result = service.add_medication(me, subject.subject_id, Medication(name="aspirin"), context)
    _show(result)
    override = service.override(
        result.request_id,
        advisor,
        "Synthetic: cardiology co-managing; INR monitoring arranged.",
        context,
    )
    print(f"Override {override.status} by {override.approver_id}")

    # ------------------------------------------------------------------
    # Step 4: Allergen exposure
    # ------------------------------------------------------------------
    _banner("Step 4: Apply Recipe With Peanut Oil")

    result = service.apply_recipe(me, subject.subject_id, "Stir fry", ["peanut oil", "rice"], context)
    _show(result)
    try:
        service.override(result.request_id, advisor, "Synthetic: attempt to override", context)
    except ConflictBlockedError as exc:
        print(f"Override rejected: {exc}")

    # ------------------------------------------------------------------
    # Step 5: Dietary restriction
    # ------------------------------------------------------------------
    _banner("Step 5: Apply Recipe With Chicken (Vegan Subject)")

    _show(service.apply_recipe(me, subject.subject_id, "Chicken rice", ["chicken", "rice"], context))

    # ------------------------------------------------------------------
    # Step 6: Implausible weight change
    # ------------------------------------------------------------------
    _banner("Step 6: Weight 150 lb -> 200 lb")

    _show(service.update_health_profile(
        me,
        subject.subject_id,
        biometrics=[BiometricReading(kind="weight", value=200, unit="lb")],
        context=context,
    ))

    # ------------------------------------------------------------------
    # Step 7: Emergency-only family member
    # ------------------------------------------------------------------
    _banner("Step 7: Break-Glass Access")

    relative = Principal(
        actor_id="relative_synthetic_b",
        tenant_id=tenant_id,
        family_permissions={
            subject.subject_id: FamilyPermission(
                subject_id=subject.subject_id,
                permission_level=PermissionLevel.EMERGENCY_ONLY,
            ),
        },
    )
    try:
        service.view_subject(relative, subject.subject_id, context)
    except EmergencyAccessRequiredError:
        print("Normal access refused; routed to emergency access.")

    grant = service.request_emergency_access(
        relative, subject.subject_id, "Synthetic: found unresponsive", context
    )
    print(f"Grant {grant.grant_id} expires at {grant.expires_at.isoformat()}")
    summary = service.emergency_summary(relative, subject.subject_id, grant.grant_id, context)
    print(json.dumps(summary.model_dump(mode="json"), indent=2))
    service.end_emergency_access(relative, grant.grant_id, "Synthetic: paramedics on scene")

    # ------------------------------------------------------------------
    # Step 8: Audit export
    # ------------------------------------------------------------------
    _banner("Step 8: Audit Log Export (Compliance Review)")

    auditor = Principal(actor_id="auditor_synthetic", tenant_id=tenant_id, role=Role.AUDITOR)
    export = service.export_audit(auditor)
    print(json.dumps(export["export_metadata"], indent=2))
    valid, broken_at = service.ledger.verify_chain()
    print(f"\nFull chain verification: valid={valid}, broken_at={broken_at}")

    _banner("Scenario Complete")
    print("All data was synthetic. No real patients, PHI, or PII.")


if __name__ == "__main__":
    main()
