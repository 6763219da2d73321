"""
Tests for safegate.report -- Decision Report Generator.
"""

from safegate.audit import AuditLedger
from safegate.detectors import build_conflict
from safegate.models import ConflictType, DetectorFamily, Disposition, Principal, Role, Severity
from safegate.report import generate_decision_report
from safegate.review import ReviewQueue


def _make_conflict(severity: Severity, term: str):
    return build_conflict(
        type=ConflictType.DIETARY_CONFLICT,
        family=DetectorFamily.DIETARY,
        severity=severity,
        description=f"{term} conflict",
        involved=[term],
        affected_fields=[],
        recommendations=[],
        requires_approval=severity == Severity.HIGH,
    )


class TestDecisionReport:
    def _open(self, automatic: bool = False):
        queue = ReviewQueue(AuditLedger(retry_wait_seconds=0))
        case = queue.open(
            tenant_id="tenant_a",
            subject_id="subj_1",
            request_id="req_1",
            requested_by="SYSTEM" if automatic else "subj_1",
            disposition=Disposition.REQUIRE_APPROVAL,
            conflicts=[_make_conflict(Severity.MEDIUM, "low"), _make_conflict(Severity.HIGH, "high")],
            reason="second opinion",
            automatic=automatic,
        )
        return queue, case

    def test_report_contains_disclaimer(self):
        _, case = self._open()
        report = generate_decision_report(case).to_dict()
        assert "decision-support" in report["disclaimer"]
        assert report["disposition"] == "REQUIRE_APPROVAL"

    def test_conflicts_sorted_by_severity(self):
        _, case = self._open()
        report = generate_decision_report(case)
        assert [c["severity"] for c in report.conflicts] == ["HIGH", "MEDIUM"]
        assert all(c["overridable"] for c in report.conflicts)

    def test_timeline_follows_transitions(self):
        queue, case = self._open()
        reviewer = Principal(actor_id="dr_review", tenant_id="tenant_a", role=Role.CLINICAL_ADVISOR)
        queue.assign(case.case_id, reviewer)
        queue.approve(case.case_id, reviewer, "ok")
        report = generate_decision_report(case)
        assert [e["state"] for e in report.timeline] == ["PENDING", "IN_REVIEW", "APPROVED"]
        assert report.current_state == "APPROVED"

    def test_automatic_case_explained(self):
        _, case = self._open(automatic=True)
        report = generate_decision_report(case)
        assert any("failed to run" in r for r in report.reasoning_chain)
