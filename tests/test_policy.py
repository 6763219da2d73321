"""
Tests for safegate.policy -- Conflict Policy Engine.

Covers: disposition mapping, idempotence of evaluate, decision payloads,
fail-open and fail-closed handling of unavailable reference data, and
unexpected detector failures routed to manual review.
"""

from __future__ import annotations

from safegate.catalog import DEFAULT_CATALOG, RuleCatalog
from safegate.config import TenantPolicy
from safegate.detectors import DETECTORS, DetectorSpec, build_conflict
from safegate.models import (
    Allergy,
    ConflictType,
    DetectorFamily,
    DietaryRestriction,
    Disposition,
    FactRecord,
    Medication,
    ProposedChange,
    Severity,
    Subject,
)
from safegate.policy import ConflictPolicyEngine, decide, evaluate


def _make_conflict(
    severity: Severity = Severity.MEDIUM,
    requires_approval: bool = False,
    family: DetectorFamily = DetectorFamily.DIETARY,
    term: str = "x",
):
    return build_conflict(
        type=ConflictType.DIETARY_CONFLICT,
        family=family,
        severity=severity,
        description=f"conflict {term}",
        involved=[term],
        affected_fields=[],
        recommendations=[f"recommendation {term}"],
        requires_approval=requires_approval,
    )


def _make_subject(*facts) -> Subject:
    return Subject(
        subject_id="subj_1",
        tenant_id="tenant_a",
        history=[FactRecord(fact=f) for f in facts],
    )


# ---------------------------------------------------------------------------
# 1. Disposition mapping
# ---------------------------------------------------------------------------

class TestEvaluate:
    def test_no_conflicts_allows(self):
        assert evaluate([]) == Disposition.ALLOW

    def test_medium_and_low_warn(self):
        conflicts = [_make_conflict(Severity.MEDIUM), _make_conflict(Severity.LOW, term="y")]
        assert evaluate(conflicts) == Disposition.WARN

    def test_high_requires_approval(self):
        assert evaluate([_make_conflict(Severity.HIGH, True)]) == Disposition.REQUIRE_APPROVAL

    def test_approvable_critical_requires_approval(self):
        assert evaluate([_make_conflict(Severity.CRITICAL, True)]) == Disposition.REQUIRE_APPROVAL

    def test_non_approvable_critical_blocks(self):
        assert evaluate([_make_conflict(Severity.CRITICAL, False)]) == Disposition.BLOCK

    def test_block_dominates(self):
        conflicts = [
            _make_conflict(Severity.HIGH, True, term="a"),
            _make_conflict(Severity.CRITICAL, False, term="b"),
            _make_conflict(Severity.LOW, term="c"),
        ]
        assert evaluate(conflicts) == Disposition.BLOCK

    def test_evaluate_is_idempotent(self):
        conflicts = [_make_conflict(Severity.HIGH, True), _make_conflict(Severity.MEDIUM, term="y")]
        results = {evaluate(list(conflicts)) for _ in range(5)}
        assert results == {Disposition.REQUIRE_APPROVAL}


# ---------------------------------------------------------------------------
# 2. Decision payloads
# ---------------------------------------------------------------------------

class TestDecide:
    def test_require_approval_surfaces_endpoints(self):
        policy = TenantPolicy(
            tenant_id="tenant_a",
            tenant_name="Tenant A",
            override_endpoint="/custom/override",
        )
        decision = decide([_make_conflict(Severity.HIGH, True)], policy)
        assert decision.disposition == Disposition.REQUIRE_APPROVAL
        assert decision.next_steps["override_endpoint"] == "/custom/override"
        assert decision.next_steps["request_review_endpoint"] == "/api/clinical-review/request"
        assert decision.may_proceed is False
        assert decision.overridable is True

    def test_block_carries_remediation(self):
        decision = decide([_make_conflict(Severity.CRITICAL, False, term="peanut")])
        assert decision.disposition == Disposition.BLOCK
        assert decision.overridable is False
        assert "recommendation peanut" in decision.remediation
        assert len(decision.blocking) == 1
        assert decision.next_steps == {}

    def test_warn_lists_warnings(self):
        decision = decide([_make_conflict(Severity.MEDIUM, term="chicken")])
        assert decision.disposition == Disposition.WARN
        assert decision.warnings == ["conflict chicken"]
        assert decision.may_proceed is True


# ---------------------------------------------------------------------------
# 3. Engine failure semantics
# ---------------------------------------------------------------------------

class TestEngineFailureSemantics:
    def test_missing_allergen_data_fails_closed(self):
        catalog = RuleCatalog(version="partial", allergen_synonyms=None)
        subject = _make_subject(Allergy(allergen="peanuts"))
        change = ProposedChange(ingredients=["rice"])
        assessment = ConflictPolicyEngine().assess(change, subject, catalog)
        assert assessment.disposition == Disposition.REQUIRE_APPROVAL
        assert assessment.manual_review is False
        assert any(c.family == DetectorFamily.ALLERGY for c in assessment.conflicts)

    def test_missing_interaction_data_fails_closed(self):
        catalog = RuleCatalog(version="partial", drug_interactions=None)
        subject = _make_subject(Medication(name="warfarin"))
        change = ProposedChange(medications=[Medication(name="aspirin")])
        assessment = ConflictPolicyEngine().assess(change, subject, catalog)
        assert assessment.disposition == Disposition.REQUIRE_APPROVAL

    def test_missing_dietary_data_fails_open(self):
        catalog = RuleCatalog(version="partial", dietary_exclusions=None)
        subject = _make_subject(DietaryRestriction(kind="vegan"))
        change = ProposedChange(ingredients=["chicken"])
        assessment = ConflictPolicyEngine().assess(change, subject, catalog)
        assert assessment.disposition == Disposition.ALLOW
        assert assessment.skipped == [DetectorFamily.DIETARY]

    def test_unexpected_error_routes_to_manual_review(self):
        def broken(proposed, subject, catalog):
            raise RuntimeError("boom")

        detectors = DETECTORS + (DetectorSpec(DetectorFamily.BIOMETRIC, broken, False),)
        change = ProposedChange(ingredients=["rice"])
        assessment = ConflictPolicyEngine(detectors).assess(change, _make_subject(), DEFAULT_CATALOG)
        assert assessment.manual_review is True
        assert assessment.disposition == Disposition.REQUIRE_APPROVAL
        assert assessment.failures[0].family == DetectorFamily.BIOMETRIC
        assert isinstance(assessment.failures[0].cause, RuntimeError)

    def test_catalog_version_recorded(self):
        change = ProposedChange(ingredients=["rice"])
        assessment = ConflictPolicyEngine().assess(change, _make_subject(), DEFAULT_CATALOG)
        assert assessment.catalog_version == DEFAULT_CATALOG.version
        assert assessment.disposition == Disposition.ALLOW
