"""
Decision Report Generator.

Builds a structured report from a clinical review case: the disposition of
the held change, every conflict with its severity and recommendations, and a
timeline of review transitions.  Reviewers see why the change was held and
who has acted on it so far.

DISCLAIMER: Decision reports are decision-support summaries.  They do not
constitute clinical assessments.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from safegate.review import ReviewCase, ReviewState


class DecisionReport:
    """A structured decision report for clinical review."""

    def __init__(
        self,
        case_id: str,
        request_id: str,
        subject_id: str,
        tenant_id: str,
        disposition: str,
        current_state: str,
        conflicts: list[dict[str, Any]],
        timeline: list[dict[str, str]],
        reasoning_chain: list[str],
        generated_at: str,
    ) -> None:
        self.case_id = case_id
        self.request_id = request_id
        self.subject_id = subject_id
        self.tenant_id = tenant_id
        self.disposition = disposition
        self.current_state = current_state
        self.conflicts = conflicts
        self.timeline = timeline
        self.reasoning_chain = reasoning_chain
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        """Serialize the report to a dictionary."""
        return {
            "report_type": "Decision Report",
            "disclaimer": (
                "This report is a decision-support summary for clinical review. "
                "It does not constitute a clinical assessment."
            ),
            "case_id": self.case_id,
            "request_id": self.request_id,
            "subject_id": self.subject_id,
            "tenant_id": self.tenant_id,
            "disposition": self.disposition,
            "current_state": self.current_state,
            "conflicts": self.conflicts,
            "timeline": self.timeline,
            "reasoning_chain": self.reasoning_chain,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"DecisionReport(case_id={self.case_id}, "
            f"disposition={self.disposition}, state={self.current_state})"
        )


def generate_decision_report(case: ReviewCase) -> DecisionReport:
    """Generate a decision report from a review case.

    Args:
        case: The review case.

    Returns:
        A ``DecisionReport`` ready for the reviewer.
    """
    conflicts = [
        {
            "conflict_id": c.conflict_id,
            "rule_key": c.rule_key,
            "type": c.type.value,
            "severity": c.severity.value,
            "description": c.description,
            "recommendations": list(c.recommendations),
            "requires_approval": c.requires_approval,
            "overridable": not c.hard_block,
        }
        for c in sorted(case.conflicts, key=lambda c: c.severity.rank, reverse=True)
    ]

    return DecisionReport(
        case_id=case.case_id,
        request_id=case.request_id,
        subject_id=case.subject_id,
        tenant_id=case.tenant_id,
        disposition=case.disposition.value,
        current_state=case.state.value,
        conflicts=conflicts,
        timeline=_build_timeline(case),
        reasoning_chain=_build_reasoning(case),
        generated_at=datetime.now(timezone.utc).isoformat(),
    )


def _build_reasoning(case: ReviewCase) -> list[str]:
    reasons = [f"Disposition {case.disposition.value} from {len(case.conflicts)} conflict(s)."]
    if case.automatic:
        reasons.append("A safety check failed to run; the change was routed to review automatically.")
    if case.hard_blocked:
        reasons.append("Contains a critical allergy conflict; this change cannot be approved.")
    if case.reason:
        reasons.append(f"Review requested: {case.reason}")
    return reasons


def _build_timeline(case: ReviewCase) -> list[dict[str, str]]:
    """Build a chronological timeline of review transitions."""
    events: list[dict[str, str]] = [{
        "state": ReviewState.PENDING.value,
        "timestamp": case.created_at.isoformat(),
        "description": f"Review opened by {case.requested_by}.",
    }]
    if case.assigned_at:
        events.append({
            "state": ReviewState.IN_REVIEW.value,
            "timestamp": case.assigned_at.isoformat(),
            "description": f"Assigned to reviewer {case.assigned_reviewer_id or 'unknown'}.",
        })
    if case.decided_at:
        events.append({
            "state": case.state.value,
            "timestamp": case.decided_at.isoformat(),
            "description": f"Decided by {case.assigned_reviewer_id}. Notes: {case.decision_notes}",
        })
    return events
