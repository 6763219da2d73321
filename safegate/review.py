"""
Clinical Review Queue.

Changes held at REQUIRE_APPROVAL, and changes whose safety checks failed to
run, can be sent to clinical review.  Each review case follows an explicit
state machine:

    PENDING -> IN_REVIEW -> APPROVED
                         -> REJECTED

**Human gates enforced in code:**

* States cannot be skipped.
* Only an actor permitted to decide reviews can be assigned, and only the
  assigned reviewer can decide the case.
* Approve and reject both require decision notes.
* A case containing a hard-block (critical allergy) conflict can never be
  approved; it can only be rejected.

**Tenant isolation:**  cases are scoped by ``tenant_id``; a reviewer from
another tenant cannot see or decide them.

Every transition is written to the audit ledger.
"""

from __future__ import annotations

import enum
import threading
import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from safegate.audit import AuditEntry, AuditEventType, AuditLedger
from safegate.errors import ConflictBlockedError, SafeGateError
from safegate.models import AuditAction, Conflict, Disposition, Principal
from safegate.rbac import require_permission

logger = structlog.get_logger(__name__)


class ReviewState(str, enum.Enum):
    PENDING = "PENDING"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


_VALID_TRANSITIONS: dict[ReviewState, set[ReviewState]] = {
    ReviewState.PENDING: {ReviewState.IN_REVIEW},
    ReviewState.IN_REVIEW: {ReviewState.APPROVED, ReviewState.REJECTED},
    ReviewState.APPROVED: set(),  # terminal state
    ReviewState.REJECTED: set(),  # terminal state
}


# ---------------------------------------------------------------------------
# Review case model
# ---------------------------------------------------------------------------

class ReviewCase(BaseModel):
    """Tracks the lifecycle of one clinical review."""

    case_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique case identifier.",
    )
    tenant_id: str = Field(..., description="Tenant that owns this case.")
    subject_id: str = Field(..., description="Subject the held change applies to.")
    request_id: str = Field(..., description="The held request under review.")
    requested_by: str = Field(..., description="Actor (or SYSTEM) that opened the case.")
    reason: str = Field(default="", description="Why review was requested.")
    disposition: Disposition = Field(..., description="Disposition of the held request.")
    conflicts: list[Conflict] = Field(default_factory=list)
    automatic: bool = Field(
        default=False,
        description="True when opened automatically after a safety check failed to run.",
    )
    state: ReviewState = ReviewState.PENDING
    assigned_reviewer_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    assigned_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    decision_notes: str = ""

    @property
    def hard_blocked(self) -> bool:
        return any(c.hard_block for c in self.conflicts)


# ---------------------------------------------------------------------------
# Transition errors
# ---------------------------------------------------------------------------

class InvalidTransitionError(SafeGateError):
    """Raised when a review state transition is not permitted."""
    pass


class UnauthorizedReviewerError(SafeGateError):
    """Raised when an actor other than the assigned reviewer decides a case."""
    pass


# ---------------------------------------------------------------------------
# Review queue
# ---------------------------------------------------------------------------

class ReviewQueue:
    """In-memory clinical review queue with audited transitions."""

    def __init__(self, ledger: AuditLedger) -> None:
        self._ledger = ledger
        self._cases: dict[str, ReviewCase] = {}
        self._lock = threading.Lock()

    # -- helpers --

    def _validate_transition(self, case: ReviewCase, target: ReviewState) -> None:
        allowed = _VALID_TRANSITIONS.get(case.state, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition from {case.state.value} to {target.value}. "
                f"Allowed transitions: {[s.value for s in allowed]}"
            )

    def _emit_audit(
        self,
        event_type: AuditEventType,
        case: ReviewCase,
        actor_id: str,
        actor_role: str,
        justification: str = "",
        metadata: dict | None = None,
    ) -> None:
        self._ledger.record(AuditEntry(
            tenant_id=case.tenant_id,
            actor_id=actor_id,
            actor_role=actor_role,
            subject_id=case.subject_id,
            event_type=event_type,
            action=AuditAction.UPDATE,
            resource="clinical_review",
            resource_id=case.case_id,
            justification=justification,
            conflicts_observed=list(case.conflicts),
            metadata={"request_id": case.request_id, "state": case.state.value, **(metadata or {})},
        ))

    def _decide(
        self,
        case_id: str,
        reviewer: Principal,
        notes: str,
        target: ReviewState,
    ) -> ReviewCase:
        case = self.get(case_id, reviewer.tenant_id)
        self._validate_transition(case, target)
        if case.assigned_reviewer_id != reviewer.actor_id:
            raise UnauthorizedReviewerError(
                f"Reviewer '{reviewer.actor_id}' is not assigned to this case. "
                f"Assigned reviewer: '{case.assigned_reviewer_id}'."
            )
        if not notes.strip():
            raise ValueError("Decision notes are mandatory.")
        return case

    # -- lifecycle operations --

    def open(
        self,
        tenant_id: str,
        subject_id: str,
        request_id: str,
        requested_by: str,
        disposition: Disposition,
        conflicts: list[Conflict],
        reason: str = "",
        actor_role: str = "USER",
        automatic: bool = False,
    ) -> ReviewCase:
        """Open a PENDING review case for a held request."""
        case = ReviewCase(
            tenant_id=tenant_id,
            subject_id=subject_id,
            request_id=request_id,
            requested_by=requested_by,
            reason=reason,
            disposition=disposition,
            conflicts=list(conflicts),
            automatic=automatic,
        )
        with self._lock:
            self._cases[case.case_id] = case

        self._emit_audit(
            AuditEventType.REVIEW_OPENED,
            case,
            actor_id=requested_by,
            actor_role=actor_role,
            justification=reason,
            metadata={"automatic": automatic, "disposition": disposition.value},
        )
        logger.info(
            "review_opened",
            case_id=case.case_id,
            tenant_id=tenant_id,
            request_id=request_id,
            automatic=automatic,
        )
        return case

    def get(self, case_id: str, tenant_id: str) -> ReviewCase:
        """Return a case owned by ``tenant_id``.

        Raises:
            KeyError: If no such case exists for the tenant.
        """
        with self._lock:
            case = self._cases.get(case_id)
        if case is None or case.tenant_id != tenant_id:
            raise KeyError(f"No review case '{case_id}' for tenant '{tenant_id}'")
        return case

    def assign(self, case_id: str, reviewer: Principal) -> ReviewCase:
        """Assign a reviewer.  Transitions PENDING -> IN_REVIEW.

        Raises:
            AccessDeniedError: If the reviewer's role may not decide reviews.
            KeyError: If the case is not visible to the reviewer's tenant.
            InvalidTransitionError: If the case is not PENDING.
        """
        require_permission(reviewer.role, "decide_review")
        case = self.get(case_id, reviewer.tenant_id)
        self._validate_transition(case, ReviewState.IN_REVIEW)

        case.state = ReviewState.IN_REVIEW
        case.assigned_reviewer_id = reviewer.actor_id
        case.assigned_at = datetime.now(timezone.utc)

        self._emit_audit(
            AuditEventType.REVIEW_ASSIGNED,
            case,
            actor_id=reviewer.actor_id,
            actor_role=reviewer.role.value,
            metadata={"reviewer_id": reviewer.actor_id},
        )
        return case

    def approve(self, case_id: str, reviewer: Principal, notes: str) -> ReviewCase:
        """Approve the held change.

        Raises:
            InvalidTransitionError: If the case is not IN_REVIEW.
            UnauthorizedReviewerError: If ``reviewer`` is not the assignee.
            ValueError: If ``notes`` is blank.
            ConflictBlockedError: If the case contains a hard-block conflict.
        """
        case = self._decide(case_id, reviewer, notes, ReviewState.APPROVED)
        if case.hard_blocked:
            raise ConflictBlockedError(
                "Critical allergy conflicts cannot be approved.",
                conflicts=[c for c in case.conflicts if c.hard_block],
            )

        case.state = ReviewState.APPROVED
        case.decided_at = datetime.now(timezone.utc)
        case.decision_notes = notes

        self._emit_audit(
            AuditEventType.REVIEW_APPROVED,
            case,
            actor_id=reviewer.actor_id,
            actor_role=reviewer.role.value,
            justification=notes,
        )
        logger.info("review_approved", case_id=case_id, reviewer_id=reviewer.actor_id)
        return case

    def reject(self, case_id: str, reviewer: Principal, notes: str) -> ReviewCase:
        """Reject the held change.  It is never committed."""
        case = self._decide(case_id, reviewer, notes, ReviewState.REJECTED)

        case.state = ReviewState.REJECTED
        case.decided_at = datetime.now(timezone.utc)
        case.decision_notes = notes

        self._emit_audit(
            AuditEventType.REVIEW_REJECTED,
            case,
            actor_id=reviewer.actor_id,
            actor_role=reviewer.role.value,
            justification=notes,
        )
        logger.info("review_rejected", case_id=case_id, reviewer_id=reviewer.actor_id)
        return case

    def pending(self, tenant_id: str) -> list[ReviewCase]:
        """Open cases (PENDING or IN_REVIEW) for a tenant, oldest first."""
        with self._lock:
            cases = list(self._cases.values())
        return sorted(
            (c for c in cases
             if c.tenant_id == tenant_id
             and c.state in (ReviewState.PENDING, ReviewState.IN_REVIEW)),
            key=lambda c: c.created_at,
        )

    def for_request(self, request_id: str, tenant_id: str) -> Optional[ReviewCase]:
        with self._lock:
            cases = list(self._cases.values())
        for case in cases:
            if case.request_id == request_id and case.tenant_id == tenant_id:
                return case
        return None
