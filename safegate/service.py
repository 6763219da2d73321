"""
SafeGate Service -- Request Entry Points.

Threads every gated operation through the same pipeline:

    access gate -> validation -> conflict detection + policy -> persist -> audit

* ALLOW            -- committed.
* WARN             -- committed when the caller proceeds; the acknowledgment
  is recorded as the ``warnings_acknowledged`` compliance flag.
* REQUIRE_APPROVAL -- held until an authorized override or an approved
  clinical review.
* BLOCK            -- never committed; override attempts are rejected.

The audit entry for an evaluation is written before the result is returned,
including when persistence fails.  The evaluation result is returned as an
explicit ``RequestResult`` value; nothing is attached to shared request
state.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from safegate.access import AccessControlGate, FamilyDirectory
from safegate.audit import AuditEntry, AuditEventType, AuditLedger
from safegate.catalog import DEFAULT_CATALOG, CatalogStore, load_catalog_from_yaml
from safegate.config import PolicyRegistry, Settings, TenantPolicy, get_settings, load_policies_from_yaml
from safegate.emergency import CriticalSummary, EmergencyAccessWorkflow, EmergencyGrant
from safegate.errors import AccessDeniedError, ConflictBlockedError, ValidationError
from safegate.models import (
    AccessScope,
    Allergy,
    AuditAction,
    BiometricReading,
    ChangeKind,
    Conflict,
    DietaryRestriction,
    Disposition,
    Medication,
    Principal,
    ProposedChange,
    RequestContext,
    Role,
    validate_change,
)
from safegate.policy import BLOCK_REMEDIATION, Assessment, ConflictPolicyEngine
from safegate.rbac import require_permission
from safegate.report import DecisionReport, generate_decision_report
from safegate.repository import InMemorySubjectRepository
from safegate.review import ReviewCase, ReviewQueue

logger = structlog.get_logger(__name__)

_CHANGE_RESOURCE = {
    ChangeKind.HEALTH_PROFILE_UPDATE: "health_profile",
    ChangeKind.MEDICATION_ADD: "medications",
    ChangeKind.RECIPE_APPLICATION: "recipe_application",
}

BLOCKED_CHANGE_RETENTION = timedelta(hours=24)
"""How long a blocked change stays referenceable before ``expire_stale`` drops it."""


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------

class RequestResult(BaseModel):
    """Outcome of one gated change request."""

    request_id: str
    subject_id: str
    disposition: Disposition
    conflicts: list[Conflict] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    next_steps: dict[str, str] = Field(
        default_factory=dict,
        description="Override and review endpoints for REQUIRE_APPROVAL.",
    )
    remediation: list[str] = Field(default_factory=list)
    committed: bool = False
    audit_entry_id: str
    review_case_id: Optional[str] = None
    catalog_version: str = ""

    def raise_for_disposition(self) -> None:
        """Raise ``ConflictBlockedError`` if the change was blocked."""
        if self.disposition == Disposition.BLOCK:
            raise ConflictBlockedError(
                "Change blocked by a critical conflict.",
                conflicts=[c for c in self.conflicts if c.hard_block],
                remediation=self.remediation,
            )


class OverrideResult(BaseModel):
    override_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    request_id: str
    status: str = "APPROVED"
    approver_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    audit_entry_id: str


class _HeldChange:
    """A change waiting on an override or clinical review."""

    def __init__(
        self,
        request_id: str,
        tenant_id: str,
        subject_id: str,
        actor_id: str,
        change: ProposedChange,
        disposition: Disposition,
        conflicts: list[Conflict],
        held_at: Optional[datetime] = None,
    ) -> None:
        self.request_id = request_id
        self.tenant_id = tenant_id
        self.subject_id = subject_id
        self.actor_id = actor_id
        self.change = change
        self.disposition = disposition
        self.conflicts = conflicts
        self.held_at = held_at or datetime.now(timezone.utc)

    def reblocked(self, conflicts: list[Conflict]) -> "_HeldChange":
        return _HeldChange(
            request_id=self.request_id,
            tenant_id=self.tenant_id,
            subject_id=self.subject_id,
            actor_id=self.actor_id,
            change=self.change,
            disposition=Disposition.BLOCK,
            conflicts=conflicts,
            held_at=self.held_at,
        )

    @property
    def hard_blocked(self) -> bool:
        return any(c.hard_block for c in self.conflicts)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class SafetyGateService:
    """Entry points for every gated operation on a subject."""

    def __init__(
        self,
        repository: Optional[InMemorySubjectRepository] = None,
        ledger: Optional[AuditLedger] = None,
        catalogs: Optional[CatalogStore] = None,
        policies: Optional[PolicyRegistry] = None,
        directory: Optional[FamilyDirectory] = None,
        engine: Optional[ConflictPolicyEngine] = None,
    ) -> None:
        self.repository = repository if repository is not None else InMemorySubjectRepository()
        self.ledger = ledger if ledger is not None else AuditLedger()
        self.catalogs = catalogs if catalogs is not None else CatalogStore()
        self.policies = policies if policies is not None else PolicyRegistry()
        self.directory = directory
        self.engine = engine if engine is not None else ConflictPolicyEngine()
        self.gate = AccessControlGate(self.ledger, directory)
        self.emergency = EmergencyAccessWorkflow(self.ledger, self.policies, directory)
        self.reviews = ReviewQueue(self.ledger)
        self._held: dict[str, _HeldChange] = {}
        self._held_by_conflict: dict[str, str] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SafetyGateService":
        """Build a service from runtime settings (catalog, policies, audit retry)."""
        settings = settings or get_settings()
        catalog = (
            load_catalog_from_yaml(settings.catalog_path)
            if settings.catalog_path
            else DEFAULT_CATALOG
        )
        policies = PolicyRegistry()
        if settings.policy_path:
            for policy in load_policies_from_yaml(settings.policy_path):
                policies.register(policy)
        ledger = AuditLedger(
            retry_attempts=settings.audit_retry_attempts,
            retry_wait_seconds=settings.audit_retry_wait_seconds,
        )
        return cls(ledger=ledger, catalogs=CatalogStore(catalog), policies=policies)

    # -- change requests ----------------------------------------------------

    def submit_change(
        self,
        principal: Principal,
        subject_id: str,
        change: ProposedChange,
        context: Optional[RequestContext] = None,
        proceed_on_warning: bool = True,
    ) -> RequestResult:
        """Evaluate and, where the policy allows, commit a proposed change.

        Args:
            principal: The authenticated actor.
            subject_id: The subject the change applies to.
            change: The proposed change.
            context: Client request metadata (forensic only).
            proceed_on_warning: Whether the caller proceeds past warnings.

        Returns:
            A ``RequestResult``.  BLOCK is returned, not raised; call
            ``raise_for_disposition()`` to convert it into an exception.

        Raises:
            KeyError: If the subject does not exist.
            AccessDeniedError: If the gate denies the actor.
            EmergencyAccessRequiredError: If the actor may only use
                break-glass access.
            ValidationError: If the change is malformed.
        """
        context = context or RequestContext()
        subject = self.repository.get(subject_id)
        resource = _CHANGE_RESOURCE[change.kind]
        self.gate.require(principal, subject, change.action, resource, context)

        try:
            validate_change(change)
        except ValidationError as exc:
            self.ledger.record(AuditEntry(
                tenant_id=subject.tenant_id,
                actor_id=principal.actor_id,
                actor_role=principal.role.value,
                subject_id=subject_id,
                event_type=AuditEventType.CHANGE_REJECTED,
                action=change.action,
                resource=resource,
                resource_id=subject_id,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                metadata={"reason": "validation_error", "field": exc.field, "message": str(exc)},
            ))
            raise

        policy = self.policies.get_or_default(subject.tenant_id)
        catalog = self.catalogs.current()
        assessment = self.engine.assess(change, subject, catalog, policy)
        decision = assessment.decision
        request_id = str(uuid.uuid4())

        for failure in assessment.failures:
            self.ledger.record(AuditEntry(
                tenant_id=subject.tenant_id,
                actor_id="SYSTEM",
                actor_role=Role.SYSTEM.value,
                subject_id=subject_id,
                event_type=AuditEventType.SYSTEM_ERROR,
                action=change.action,
                resource=resource,
                resource_id=request_id,
                metadata={
                    "detector_family": failure.family.value,
                    "error": repr(failure.cause),
                    "catalog_version": catalog.version,
                },
            ))

        committed = False
        review_case_id: Optional[str] = None
        compliance_flags: list[str] = []
        persist_error: Optional[str] = None
        entry: Optional[AuditEntry] = None
        try:
            if decision.disposition == Disposition.ALLOW:
                self.repository.commit(subject_id, change, principal.actor_id)
                committed = True
            elif decision.disposition == Disposition.WARN and proceed_on_warning:
                compliance_flags.append("warnings_acknowledged")
                self.repository.commit(subject_id, change, principal.actor_id)
                committed = True
            elif decision.disposition in (Disposition.REQUIRE_APPROVAL, Disposition.BLOCK):
                self._hold(_HeldChange(
                    request_id=request_id,
                    tenant_id=subject.tenant_id,
                    subject_id=subject_id,
                    actor_id=principal.actor_id,
                    change=change,
                    disposition=decision.disposition,
                    conflicts=decision.conflicts,
                ))
            if assessment.manual_review:
                compliance_flags.append("manual_review_required")
                case = self.reviews.open(
                    tenant_id=subject.tenant_id,
                    subject_id=subject_id,
                    request_id=request_id,
                    requested_by="SYSTEM",
                    disposition=decision.disposition,
                    conflicts=decision.conflicts,
                    reason="A safety check failed to run.",
                    actor_role=Role.SYSTEM.value,
                    automatic=True,
                )
                review_case_id = case.case_id
        except Exception as exc:
            persist_error = repr(exc)
            raise
        finally:
            entry = self.ledger.record(AuditEntry(
                tenant_id=subject.tenant_id,
                actor_id=principal.actor_id,
                actor_role=principal.role.value,
                subject_id=subject_id,
                event_type=_evaluation_event(decision.disposition, committed),
                action=change.action,
                resource=resource,
                resource_id=request_id,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                compliance_flags=compliance_flags,
                conflicts_observed=decision.conflicts,
                metadata={
                    "request_id": request_id,
                    "change_kind": change.kind.value,
                    "disposition": decision.disposition.value,
                    "committed": committed,
                    "conflict_count": len(decision.conflicts),
                    "catalog_version": catalog.version,
                    "skipped_families": [f.value for f in assessment.skipped],
                    "persist_error": persist_error,
                },
            ))

        logger.info(
            "change_request_completed",
            request_id=request_id,
            subject_id=subject_id,
            disposition=decision.disposition.value,
            committed=committed,
        )
        return RequestResult(
            request_id=request_id,
            subject_id=subject_id,
            disposition=decision.disposition,
            conflicts=decision.conflicts,
            warnings=decision.warnings,
            next_steps=decision.next_steps,
            remediation=decision.remediation,
            committed=committed,
            audit_entry_id=entry.entry_id,
            review_case_id=review_case_id,
            catalog_version=catalog.version,
        )

    def add_medication(
        self,
        principal: Principal,
        subject_id: str,
        medication: Medication,
        context: Optional[RequestContext] = None,
        proceed_on_warning: bool = True,
    ) -> RequestResult:
        change = ProposedChange(
            kind=ChangeKind.MEDICATION_ADD,
            action=AuditAction.CREATE,
            medications=[medication],
        )
        return self.submit_change(principal, subject_id, change, context, proceed_on_warning)

    def apply_recipe(
        self,
        principal: Principal,
        subject_id: str,
        recipe_name: str,
        ingredients: list[str],
        context: Optional[RequestContext] = None,
        proceed_on_warning: bool = True,
    ) -> RequestResult:
        change = ProposedChange(
            kind=ChangeKind.RECIPE_APPLICATION,
            action=AuditAction.UPDATE,
            recipe_name=recipe_name,
            ingredients=ingredients,
        )
        return self.submit_change(principal, subject_id, change, context, proceed_on_warning)

    def update_health_profile(
        self,
        principal: Principal,
        subject_id: str,
        medications: Optional[list[Medication]] = None,
        allergies: Optional[list[Allergy]] = None,
        dietary_restrictions: Optional[list[DietaryRestriction]] = None,
        biometrics: Optional[list[BiometricReading]] = None,
        context: Optional[RequestContext] = None,
        proceed_on_warning: bool = True,
    ) -> RequestResult:
        change = ProposedChange(
            kind=ChangeKind.HEALTH_PROFILE_UPDATE,
            action=AuditAction.UPDATE,
            medications=medications or [],
            allergies=allergies or [],
            dietary_restrictions=dietary_restrictions or [],
            biometrics=biometrics or [],
        )
        return self.submit_change(principal, subject_id, change, context, proceed_on_warning)

    # -- held changes -------------------------------------------------------

    def _hold(self, held: _HeldChange) -> None:
        """Register a held change under its request ID and each conflict ID.

        Raises:
            ValueError: If a conflict ID already references another held change.
        """
        with self._lock:
            for conflict in held.conflicts:
                owner = self._held_by_conflict.get(conflict.conflict_id)
                if owner is not None and owner != held.request_id:
                    raise ValueError(
                        f"Conflict '{conflict.conflict_id}' already references "
                        f"held change '{owner}'"
                    )
            self._held[held.request_id] = held
            for conflict in held.conflicts:
                self._held_by_conflict[conflict.conflict_id] = held.request_id

    def _release(self, request_id: str) -> Optional[_HeldChange]:
        with self._lock:
            held = self._held.pop(request_id, None)
            if held is not None:
                for conflict in held.conflicts:
                    if self._held_by_conflict.get(conflict.conflict_id) == request_id:
                        del self._held_by_conflict[conflict.conflict_id]
        return held

    def _claim(self, held: _HeldChange) -> _HeldChange:
        """Take a held change out of the map.  Only one caller can win.

        Raises:
            KeyError: If the change was already committed or discarded.
        """
        claimed = self._release(held.request_id)
        if claimed is None:
            raise KeyError(f"Held change '{held.request_id}' was already resolved")
        return claimed

    def _find_held(self, reference: str, tenant_id: str) -> _HeldChange:
        with self._lock:
            matches = set()
            if reference in self._held:
                matches.add(reference)
            if reference in self._held_by_conflict:
                matches.add(self._held_by_conflict[reference])
            if len(matches) > 1:
                raise KeyError(f"Reference '{reference}' matches more than one held change")
            held = self._held.get(matches.pop()) if matches else None
        if held is None or held.tenant_id != tenant_id:
            raise KeyError(f"No held change for reference '{reference}'")
        return held

    def _reassess(self, held: _HeldChange) -> Assessment:
        """Evaluate a held change against the subject's current state."""
        subject = self.repository.get(held.subject_id)
        return self.engine.assess(
            held.change,
            subject,
            self.catalogs.current(),
            self.policies.get_or_default(held.tenant_id),
        )

    def held_changes(self, tenant_id: str) -> list[str]:
        """Request IDs of changes waiting on an override or review."""
        with self._lock:
            return [r for r, h in self._held.items() if h.tenant_id == tenant_id]

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Drop blocked changes older than ``BLOCKED_CHANGE_RETENTION``.

        A blocked change with an open review case is kept.  Ended and
        expired break-glass grants are pruned in the same sweep; the ledger
        keeps their audit trail.

        Returns:
            The number of held changes dropped.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - BLOCKED_CHANGE_RETENTION
        with self._lock:
            stale = [
                h for h in self._held.values()
                if h.disposition == Disposition.BLOCK and h.held_at < cutoff
            ]

        dropped = 0
        for held in stale:
            case = self.reviews.for_request(held.request_id, held.tenant_id)
            if case is not None and case.state.value in ("PENDING", "IN_REVIEW"):
                continue
            if self._release(held.request_id) is not None:
                dropped += 1
        pruned = self.emergency.prune_expired(now)
        logger.info("held_changes_expired", dropped=dropped, grants_pruned=pruned)
        return dropped

    def _override_rejected(
        self,
        held: _HeldChange,
        approver: Principal,
        reason: str,
        context: RequestContext,
        cause: str,
    ) -> ConflictBlockedError:
        blocking = [c for c in held.conflicts if c.hard_block] or list(held.conflicts)
        self.ledger.record(AuditEntry(
            tenant_id=held.tenant_id,
            actor_id=approver.actor_id,
            actor_role=approver.role.value,
            subject_id=held.subject_id,
            event_type=AuditEventType.OVERRIDE_REJECTED,
            action=AuditAction.UPDATE,
            resource="conflict_override",
            resource_id=held.request_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            justification=reason,
            conflicts_observed=blocking,
            metadata={"request_id": held.request_id, "reason": cause},
        ))
        logger.warning(
            "override_rejected",
            request_id=held.request_id,
            approver_id=approver.actor_id,
            reason=cause,
        )
        remediation = list(BLOCK_REMEDIATION)
        for conflict in blocking:
            remediation.extend(r for r in conflict.recommendations if r not in remediation)
        return ConflictBlockedError(
            "Critical allergy conflicts cannot be overridden.",
            conflicts=blocking,
            remediation=remediation,
        )

    def override(
        self,
        reference: str,
        approver: Principal,
        reason: str,
        context: Optional[RequestContext] = None,
    ) -> OverrideResult:
        """Approve a held change by request ID or conflict ID and commit it.

        The change is evaluated again against the subject's current state
        before it is committed.

        Raises:
            AccessDeniedError: If the approver's role may not override, or
                the gate denies the approver on the subject.
            ValidationError: If ``reason`` is blank.
            KeyError: If no held change matches in the approver's tenant,
                the reference is ambiguous, or the change was already
                resolved.
            ConflictBlockedError: If the held change contains a hard-block
                conflict, or would now be blocked.  The rejection is audited.
        """
        context = context or RequestContext()
        require_permission(approver.role, "approve_override")
        if not reason.strip():
            raise ValidationError("An override requires a justification.", field="reason")

        held = self._find_held(reference, approver.tenant_id)
        subject = self.repository.get(held.subject_id)
        self.gate.require(approver, subject, AuditAction.UPDATE, "conflict_override", context)

        if held.hard_blocked:
            raise self._override_rejected(held, approver, reason, context, "hard_block")

        held = self._claim(held)
        try:
            current = self._reassess(held)
            if current.disposition != Disposition.BLOCK:
                self.repository.commit(held.subject_id, held.change, approver.actor_id)
        except Exception:
            self._hold(held)
            raise
        if current.disposition == Disposition.BLOCK:
            reblocked = held.reblocked(current.conflicts)
            self._hold(reblocked)
            raise self._override_rejected(reblocked, approver, reason, context, "blocked_on_recheck")

        result_id = str(uuid.uuid4())
        entry = self.ledger.record(AuditEntry(
            tenant_id=held.tenant_id,
            actor_id=approver.actor_id,
            actor_role=approver.role.value,
            subject_id=held.subject_id,
            event_type=AuditEventType.CONFLICT_OVERRIDE,
            action=held.change.action,
            resource="conflict_override",
            resource_id=result_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            justification=reason,
            compliance_flags=["conflict_override", "override_justification_provided"],
            conflicts_observed=held.conflicts,
            metadata={
                "request_id": held.request_id,
                "requested_by": held.actor_id,
                "committed": True,
            },
        ))
        logger.info("override_approved", request_id=held.request_id, approver_id=approver.actor_id)
        return OverrideResult(
            override_id=result_id,
            request_id=held.request_id,
            approver_id=approver.actor_id,
            audit_entry_id=entry.entry_id,
        )

    # -- clinical review ----------------------------------------------------

    def request_review(
        self,
        principal: Principal,
        request_id: str,
        reason: str = "",
        context: Optional[RequestContext] = None,
    ) -> ReviewCase:
        """Send a held change to clinical review.

        Raises:
            AccessDeniedError: If the actor may not request review.
            KeyError: If no held change matches in the actor's tenant.
        """
        require_permission(principal.role, "request_review")
        held = self._find_held(request_id, principal.tenant_id)
        subject = self.repository.get(held.subject_id)
        self.gate.require(principal, subject, AuditAction.VIEW, "clinical_review", context)

        existing = self.reviews.for_request(held.request_id, held.tenant_id)
        if existing is not None and existing.state.value in ("PENDING", "IN_REVIEW"):
            return existing
        return self.reviews.open(
            tenant_id=held.tenant_id,
            subject_id=held.subject_id,
            request_id=held.request_id,
            requested_by=principal.actor_id,
            disposition=held.disposition,
            conflicts=held.conflicts,
            reason=reason,
            actor_role=principal.role.value,
        )

    def assign_review(self, case_id: str, reviewer: Principal) -> ReviewCase:
        return self.reviews.assign(case_id, reviewer)

    def approve_review(self, case_id: str, reviewer: Principal, notes: str) -> ReviewCase:
        """Approve a review case and commit the held change.

        The held change is evaluated again against the subject's current
        state.  If it would now be blocked the case is left undecided.

        Raises:
            KeyError: If the case is not visible to the reviewer's tenant.
            ConflictBlockedError: If the change is, or would now be, blocked.
            Other errors as ``ReviewQueue.approve``.
        """
        case = self.reviews.get(case_id, reviewer.tenant_id)
        held = self._release(case.request_id)
        if held is None:
            case = self.reviews.approve(case_id, reviewer, notes)
            logger.info("review_approved_without_held_change", case_id=case_id)
            return case

        try:
            current = self._reassess(held)
            if current.disposition != Disposition.BLOCK:
                case = self.reviews.approve(case_id, reviewer, notes)
                self.repository.commit(held.subject_id, held.change, reviewer.actor_id)
        except Exception:
            self._hold(held)
            raise
        if current.disposition == Disposition.BLOCK:
            reblocked = held.reblocked(current.conflicts)
            self._hold(reblocked)
            blocking = [c for c in reblocked.conflicts if c.hard_block] or list(reblocked.conflicts)
            self.ledger.record(AuditEntry(
                tenant_id=held.tenant_id,
                actor_id=reviewer.actor_id,
                actor_role=reviewer.role.value,
                subject_id=held.subject_id,
                event_type=AuditEventType.CHANGE_REJECTED,
                action=held.change.action,
                resource="clinical_review",
                resource_id=case_id,
                justification=notes,
                conflicts_observed=blocking,
                metadata={"request_id": held.request_id, "reason": "blocked_on_recheck"},
            ))
            logger.warning("review_approval_blocked", case_id=case_id, request_id=held.request_id)
            raise ConflictBlockedError(
                "The change is now blocked by a critical conflict.",
                conflicts=blocking,
                remediation=list(BLOCK_REMEDIATION),
            )
        return case

    def reject_review(self, case_id: str, reviewer: Principal, notes: str) -> ReviewCase:
        """Reject a review case.  The held change is discarded."""
        case = self.reviews.reject(case_id, reviewer, notes)
        self._release(case.request_id)
        return case

    def review_report(self, case_id: str, principal: Principal) -> DecisionReport:
        require_permission(principal.role, "decide_review")
        return generate_decision_report(self.reviews.get(case_id, principal.tenant_id))

    # -- reads --------------------------------------------------------------

    def view_subject(
        self,
        principal: Principal,
        subject_id: str,
        context: Optional[RequestContext] = None,
    ) -> dict[str, Any]:
        """Return the subject's data filtered to the granted scope.

        Raises:
            AccessDeniedError: If access is denied.
            EmergencyAccessRequiredError: If only break-glass access is
                available to the actor.
        """
        context = context or RequestContext()
        subject = self.repository.get(subject_id)
        grant = self.gate.require(principal, subject, AuditAction.VIEW, "health_profile", context)

        view: dict[str, Any] = {
            "subject_id": subject.subject_id,
            "medications": [m.model_dump(mode="json") for m in subject.active_medications],
            "allergies": [a.model_dump(mode="json") for a in subject.allergies],
            "dietary_restrictions": [d.model_dump(mode="json") for d in subject.dietary_restrictions],
            "weight": _dump_optional(subject.latest_biometric("weight")),
            "height": _dump_optional(subject.latest_biometric("height")),
            "bmi": subject.bmi,
        }
        if grant.scope == AccessScope.ALL:
            view["display_name"] = subject.display_name
            view["emergency_contacts"] = [c.model_dump() for c in subject.emergency_contacts]
            view["providers"] = [p.model_dump() for p in subject.providers]

        self.ledger.record(AuditEntry(
            tenant_id=subject.tenant_id,
            actor_id=principal.actor_id,
            actor_role=principal.role.value,
            subject_id=subject_id,
            event_type=AuditEventType.PHI_ACCESS,
            action=AuditAction.VIEW,
            resource="health_profile",
            resource_id=subject_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            metadata={
                "mode": grant.mode.value if grant.mode else None,
                "scope": grant.scope.value if grant.scope else None,
                "fields": sorted(view.keys()),
            },
        ))
        return view

    # -- break-glass --------------------------------------------------------

    def request_emergency_access(
        self,
        principal: Principal,
        subject_id: str,
        reason: str,
        context: Optional[RequestContext] = None,
        now: Optional[datetime] = None,
    ) -> EmergencyGrant:
        subject = self.repository.get(subject_id)
        return self.emergency.activate(principal, subject, reason, context, now)

    def emergency_summary(
        self,
        principal: Principal,
        subject_id: str,
        grant_id: str,
        context: Optional[RequestContext] = None,
        now: Optional[datetime] = None,
    ) -> CriticalSummary:
        subject = self.repository.get(subject_id)
        return self.emergency.critical_summary(grant_id, principal, subject, context, now)

    def end_emergency_access(
        self,
        principal: Principal,
        grant_id: str,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> EmergencyGrant:
        return self.emergency.end(grant_id, principal, notes, now)

    # -- audit --------------------------------------------------------------

    def query_audit(self, principal: Principal, **filters: Any) -> list[AuditEntry]:
        """Query the principal's own tenant.  Filters as ``AuditLedger.query``."""
        require_permission(principal.role, "query_audit")
        return self.ledger.query(principal.tenant_id, **filters)

    def export_audit(
        self,
        principal: Principal,
        tenant_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Export a compliance bundle for the principal's tenant.

        Raises:
            AccessDeniedError: If the role may not export, or ``tenant_id``
                names another tenant.
        """
        require_permission(principal.role, "export_audit")
        tenant_id = tenant_id or principal.tenant_id
        if tenant_id != principal.tenant_id:
            raise AccessDeniedError(
                f"Actor in tenant '{principal.tenant_id}' cannot export tenant '{tenant_id}'."
            )

        bundle = self.ledger.export_for_review(tenant_id, subject_id, time_start, time_end)
        self.ledger.record(AuditEntry(
            tenant_id=tenant_id,
            actor_id=principal.actor_id,
            actor_role=principal.role.value,
            subject_id=subject_id or "",
            event_type=AuditEventType.AUDIT_EXPORTED,
            action=AuditAction.VIEW,
            resource="audit_log",
            metadata={
                "entry_count": bundle["export_metadata"]["entry_count"],
                "emergency_log_count": bundle["export_metadata"]["emergency_log_count"],
            },
        ))
        return bundle

    def archive_audit(
        self,
        now: Optional[datetime] = None,
        principal: Optional[Principal] = None,
    ) -> int:
        """Run the archival sweep using each tenant's retention horizon.

        Scheduled jobs call this without a principal.  An interactive caller
        must hold the ``archive_audit`` permission.
        """
        if principal is not None:
            require_permission(principal.role, "archive_audit")
        total = 0
        for tenant_id in sorted(self.ledger.store.tenants()):
            policy = self.policies.get_or_default(tenant_id)
            total += self.ledger.archive_expired(
                now=now,
                retention_years=policy.audit_retention_years,
                tenant_id=tenant_id,
            )
        return total

    # -- policy management --------------------------------------------------

    def register_policy(self, principal: Principal, policy: TenantPolicy) -> None:
        self._manage_policy(principal, policy, AuditEventType.POLICY_REGISTERED)

    def update_policy(self, principal: Principal, policy: TenantPolicy) -> None:
        self._manage_policy(principal, policy, AuditEventType.POLICY_UPDATED)

    def _manage_policy(
        self,
        principal: Principal,
        policy: TenantPolicy,
        event_type: AuditEventType,
    ) -> None:
        require_permission(principal.role, "manage_policy")
        if policy.tenant_id != principal.tenant_id:
            raise AccessDeniedError(
                f"Actor in tenant '{principal.tenant_id}' cannot manage "
                f"policy for tenant '{policy.tenant_id}'."
            )
        if event_type == AuditEventType.POLICY_REGISTERED:
            self.policies.register(policy)
        else:
            self.policies.update(policy)
        self.ledger.record(AuditEntry(
            tenant_id=policy.tenant_id,
            actor_id=principal.actor_id,
            actor_role=principal.role.value,
            event_type=event_type,
            action=AuditAction.UPDATE,
            resource="tenant_policy",
            resource_id=policy.tenant_id,
            metadata=policy.model_dump(mode="json"),
        ))


def _evaluation_event(disposition: Disposition, committed: bool) -> AuditEventType:
    if disposition == Disposition.BLOCK:
        return AuditEventType.CHANGE_REJECTED
    if disposition == Disposition.WARN and committed:
        return AuditEventType.WARNING_ACKNOWLEDGED
    return AuditEventType.CHANGE_EVALUATED


def _dump_optional(model: Optional[BaseModel]) -> Optional[dict[str, Any]]:
    return model.model_dump(mode="json") if model is not None else None
