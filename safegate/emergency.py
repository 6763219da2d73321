"""
Emergency (Break-Glass) Access Workflow.

A bounded override for emergencies.  An eligible actor states a mandatory
reason and receives a time-boxed grant restricted to the subject's critical
information:

* severe and life-threatening allergies,
* active critical medications,
* emergency contacts and healthcare providers.

The full clinical record is never exposed through this path.

**Eligibility:**  family members holding an EMERGENCY_ONLY permission, and
actors with a clinical role.  The tenant must match.

**Expiry is server-side.**  The grant expires ``emergency_access_minutes``
after activation (tenant policy, 5 to 15 minutes).  The UI countdown shown
before activation is cosmetic and is reported only so clients can render it.

Every activation writes a dedicated ``EmergencyAccessLog`` that is visible to
compliance review immediately, plus an audit entry flagged
``emergency_access``, ``break_glass`` and ``critical_care``.  If the
break-glass log cannot be written, no grant is issued.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from safegate.access import FamilyDirectory
from safegate.audit import AuditEntry, AuditEventType, AuditLedger, EmergencyAccessLog
from safegate.config import PolicyRegistry
from safegate.errors import AccessDeniedError, ValidationError
from safegate.models import (
    CLINICAL_ROLES,
    AccessScope,
    Allergy,
    AllergySeverity,
    AuditAction,
    EmergencyContact,
    HealthcareProvider,
    Medication,
    PermissionLevel,
    Principal,
    RequestContext,
    Subject,
)
from safegate.notify import notify_emergency_access

logger = structlog.get_logger(__name__)

EMERGENCY_COMPLIANCE_FLAGS = ["emergency_access", "break_glass", "critical_care"]

GRANT_RETENTION = timedelta(hours=24)
"""How long an ended or expired grant is kept in memory."""

CRITICAL_DATA_CATEGORIES = [
    "allergies",
    "critical_medications",
    "emergency_contacts",
    "providers",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EmergencyGrant(BaseModel):
    """A time-boxed break-glass grant."""

    model_config = ConfigDict(frozen=True)

    grant_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    actor_id: str
    subject_id: str
    reason: str
    granted_at: datetime
    expires_at: datetime
    scope: AccessScope = AccessScope.CRITICAL_INFO_ONLY
    ui_countdown_seconds: int = Field(
        default=30,
        description="Client countdown before activation.  Not enforced server-side.",
    )
    ended_at: Optional[datetime] = None
    end_notes: str = ""

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or _utcnow()
        return self.ended_at is None and now < self.expires_at

    def remaining_seconds(self, now: Optional[datetime] = None) -> int:
        if not self.is_active(now):
            return 0
        return int((self.expires_at - (now or _utcnow())).total_seconds())


class CriticalSummary(BaseModel):
    """The only view of a subject available under break-glass access."""

    subject_id: str
    grant_id: str
    severe_allergies: list[Allergy] = Field(default_factory=list)
    critical_medications: list[Medication] = Field(default_factory=list)
    emergency_contacts: list[EmergencyContact] = Field(default_factory=list)
    providers: list[HealthcareProvider] = Field(default_factory=list)
    expires_at: datetime


class EmergencyAccessWorkflow:
    """Issues, serves and ends break-glass grants."""

    def __init__(
        self,
        ledger: AuditLedger,
        policies: Optional[PolicyRegistry] = None,
        directory: Optional[FamilyDirectory] = None,
    ) -> None:
        self._ledger = ledger
        self._policies = policies if policies is not None else PolicyRegistry()
        self._directory = directory
        self._grants: dict[str, EmergencyGrant] = {}
        self._lock = threading.Lock()

    # -- helpers --

    def _is_eligible(self, principal: Principal, subject: Subject) -> bool:
        if principal.role in CLINICAL_ROLES:
            return True
        if self._directory is not None:
            permission = self._directory.lookup(principal.actor_id, subject.subject_id)
        else:
            permission = principal.family_permissions.get(subject.subject_id)
        return (
            permission is not None
            and permission.permission_level == PermissionLevel.EMERGENCY_ONLY
        )

    def _deny(
        self,
        principal: Principal,
        subject: Subject,
        reason: str,
        context: RequestContext,
    ) -> AccessDeniedError:
        self._ledger.record(AuditEntry(
            tenant_id=principal.tenant_id,
            actor_id=principal.actor_id,
            actor_role=principal.role.value,
            subject_id=subject.subject_id,
            event_type=AuditEventType.ACCESS_DENIED,
            action=AuditAction.VIEW,
            resource="emergency_access",
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            compliance_flags=["emergency_access"],
            metadata={
                "reason": reason,
                "attempted_action": "emergency_access",
                "target_tenant": subject.tenant_id,
            },
        ))
        logger.warning(
            "emergency_access_denied",
            actor_id=principal.actor_id,
            subject_id=subject.subject_id,
            reason=reason,
        )
        return AccessDeniedError(f"Emergency access denied: {reason}")

    def _get_grant(self, grant_id: str, principal: Principal) -> EmergencyGrant:
        with self._lock:
            grant = self._grants.get(grant_id)
        if (
            grant is None
            or grant.actor_id != principal.actor_id
            or grant.tenant_id != principal.tenant_id
        ):
            raise AccessDeniedError(f"No emergency grant '{grant_id}' for this actor.")
        return grant

    # -- operations --

    def activate(
        self,
        principal: Principal,
        subject: Subject,
        reason: str,
        context: Optional[RequestContext] = None,
        now: Optional[datetime] = None,
    ) -> EmergencyGrant:
        """Activate break-glass access for ``principal`` on ``subject``.

        Args:
            principal: The requesting actor.
            subject: The subject whose critical information is needed.
            reason: Mandatory free-text justification.
            context: Client request metadata (forensic only).
            now: Activation time; defaults to the current UTC time.

        Returns:
            The issued ``EmergencyGrant``.

        Raises:
            ValidationError: If ``reason`` is blank.
            AccessDeniedError: If the tenant differs or the actor is not
                eligible for emergency access.
            AuditWriteError: If the break-glass log cannot be written.
        """
        context = context or RequestContext()
        now = now or _utcnow()

        if not reason.strip():
            raise ValidationError("A reason is required for emergency access.", field="reason")
        if principal.tenant_id != subject.tenant_id:
            raise self._deny(principal, subject, "cross_tenant", context)
        if not self._is_eligible(principal, subject):
            raise self._deny(principal, subject, "not_eligible_for_emergency_access", context)

        policy = self._policies.get_or_default(subject.tenant_id)
        grant = EmergencyGrant(
            tenant_id=subject.tenant_id,
            actor_id=principal.actor_id,
            subject_id=subject.subject_id,
            reason=reason.strip(),
            granted_at=now,
            expires_at=now + timedelta(minutes=policy.emergency_access_minutes),
            ui_countdown_seconds=policy.emergency_ui_countdown_seconds,
        )

        self._ledger.record_emergency(EmergencyAccessLog(
            grant_id=grant.grant_id,
            tenant_id=grant.tenant_id,
            actor_id=grant.actor_id,
            subject_id=grant.subject_id,
            reason=grant.reason,
            granted_at=grant.granted_at,
            expires_at=grant.expires_at,
            scope=grant.scope,
            data_categories=list(CRITICAL_DATA_CATEGORIES),
        ))
        with self._lock:
            self._grants[grant.grant_id] = grant

        self._ledger.record(AuditEntry(
            tenant_id=grant.tenant_id,
            actor_id=principal.actor_id,
            actor_role=principal.role.value,
            subject_id=subject.subject_id,
            event_type=AuditEventType.EMERGENCY_ACCESS_GRANTED,
            action=AuditAction.VIEW,
            resource="emergency_access",
            resource_id=grant.grant_id,
            timestamp=now,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            justification=grant.reason,
            compliance_flags=list(EMERGENCY_COMPLIANCE_FLAGS),
            metadata={
                "scope": grant.scope.value,
                "expires_at": grant.expires_at.isoformat(),
                "window_minutes": policy.emergency_access_minutes,
                "ui_countdown_seconds": grant.ui_countdown_seconds,
                "data_categories": list(CRITICAL_DATA_CATEGORIES),
            },
        ))
        logger.warning(
            "emergency_access_granted",
            grant_id=grant.grant_id,
            actor_id=principal.actor_id,
            subject_id=subject.subject_id,
            tenant_id=grant.tenant_id,
            expires_at=grant.expires_at.isoformat(),
        )

        if policy.notify_on_emergency_access:
            notify_emergency_access(subject, principal.actor_id, grant.grant_id, self._ledger)
        return grant

    def critical_summary(
        self,
        grant_id: str,
        principal: Principal,
        subject: Subject,
        context: Optional[RequestContext] = None,
        now: Optional[datetime] = None,
    ) -> CriticalSummary:
        """Return the critical-information view under an active grant.

        Raises:
            AccessDeniedError: If the grant is unknown, belongs to another
                actor or subject, has expired, or has ended.
        """
        context = context or RequestContext()
        now = now or _utcnow()
        grant = self._get_grant(grant_id, principal)
        if grant.subject_id != subject.subject_id:
            raise AccessDeniedError("Emergency grant does not cover this subject.")
        if not grant.is_active(now):
            logger.info("emergency_grant_inactive", grant_id=grant_id, actor_id=principal.actor_id)
            raise AccessDeniedError("Emergency access has expired or ended.")

        summary = CriticalSummary(
            subject_id=subject.subject_id,
            grant_id=grant.grant_id,
            severe_allergies=[
                a for a in subject.allergies
                if a.severity in (AllergySeverity.SEVERE, AllergySeverity.LIFE_THREATENING)
            ],
            critical_medications=[m for m in subject.active_medications if m.critical],
            emergency_contacts=list(subject.emergency_contacts),
            providers=list(subject.providers),
            expires_at=grant.expires_at,
        )

        self._ledger.record(AuditEntry(
            tenant_id=grant.tenant_id,
            actor_id=principal.actor_id,
            actor_role=principal.role.value,
            subject_id=subject.subject_id,
            event_type=AuditEventType.PHI_ACCESS,
            action=AuditAction.VIEW,
            resource="critical_summary",
            resource_id=grant.grant_id,
            timestamp=now,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            justification=grant.reason,
            compliance_flags=list(EMERGENCY_COMPLIANCE_FLAGS),
            metadata={
                "data_categories": list(CRITICAL_DATA_CATEGORIES),
                "allergy_count": len(summary.severe_allergies),
                "medication_count": len(summary.critical_medications),
                "remaining_seconds": grant.remaining_seconds(now),
            },
        ))
        return summary

    def end(
        self,
        grant_id: str,
        principal: Principal,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> EmergencyGrant:
        """End a grant before it expires.

        Raises:
            AccessDeniedError: If the grant is unknown or belongs to another actor.
        """
        now = now or _utcnow()
        grant = self._get_grant(grant_id, principal)
        if grant.ended_at is not None:
            return grant

        ended = grant.model_copy(update={"ended_at": now, "end_notes": notes})
        with self._lock:
            self._grants[grant_id] = ended

        self._ledger.record(AuditEntry(
            tenant_id=grant.tenant_id,
            actor_id=principal.actor_id,
            actor_role=principal.role.value,
            subject_id=grant.subject_id,
            event_type=AuditEventType.EMERGENCY_ACCESS_ENDED,
            action=AuditAction.UPDATE,
            resource="emergency_access",
            resource_id=grant_id,
            timestamp=now,
            justification=notes,
            compliance_flags=["emergency_access", "break_glass"],
            metadata={
                "duration_seconds": int((now - grant.granted_at).total_seconds()),
                "expired_before_end": now >= grant.expires_at,
            },
        ))
        logger.info("emergency_access_ended", grant_id=grant_id, actor_id=principal.actor_id)
        return ended

    def active_grants(self, tenant_id: str, now: Optional[datetime] = None) -> list[EmergencyGrant]:
        with self._lock:
            grants = list(self._grants.values())
        return [g for g in grants if g.tenant_id == tenant_id and g.is_active(now)]

    def grants_since(self, tenant_id: str, since: datetime) -> list[EmergencyGrant]:
        """Grants for a tenant issued at or after ``since``, oldest first.

        Only grants not yet removed by ``prune_expired`` are returned.
        """
        with self._lock:
            grants = list(self._grants.values())
        return sorted(
            (g for g in grants if g.tenant_id == tenant_id and g.granted_at >= since),
            key=lambda g: g.granted_at,
        )

    def prune_expired(
        self,
        now: Optional[datetime] = None,
        keep_for: timedelta = GRANT_RETENTION,
    ) -> int:
        """Forget grants that ended or expired more than ``keep_for`` ago.

        The ledger's break-glass log remains the permanent record.  Returns
        the number of grants dropped.
        """
        now = now or _utcnow()
        cutoff = now - keep_for
        with self._lock:
            stale = [
                grant_id for grant_id, g in self._grants.items()
                if (g.ended_at or g.expires_at) < cutoff
            ]
            for grant_id in stale:
                del self._grants[grant_id]
        if stale:
            logger.info("emergency_grants_pruned", count=len(stale))
        return len(stale)
