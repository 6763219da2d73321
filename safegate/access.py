"""
Access Control Gate -- Who May Touch a Subject's Health Data.

Resolves, per request, whether an actor may act on a subject:

1. Tenant mismatch        -> DENIED.  Family and role fields are not read.
2. Actor is the subject   -> GRANTED (NORMAL, ALL).
3. Family permission:
   * FULL                 -> GRANTED (FAMILY_DELEGATED, ALL).
   * LIMITED / VIEW_ONLY  -> GRANTED (FAMILY_DELEGATED, HEALTH_DATA_ONLY) if
     ``can_view_health_data``, otherwise DENIED.  This scope is read-only.
4. Clinical role          -> GRANTED (CLINICAL_ROLE, ALL).
5. EMERGENCY_ONLY family  -> EMERGENCY_ROUTED.  The gate itself never grants
   break-glass access; the emergency workflow does.
6. Otherwise              -> DENIED.

Every outcome is written to the audit ledger.  Denials carry the attempted
action and reason because repeated denials are a security signal.

Request metadata (IP, user agent) is recorded for forensics only and never
influences the decision.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Optional

import structlog

from safegate.audit import AuditEntry, AuditEventType, AuditLedger
from safegate.errors import AccessDeniedError, EmergencyAccessRequiredError
from safegate.models import (
    CLINICAL_ROLES,
    AccessGrant,
    AccessMode,
    AccessOutcome,
    AccessScope,
    AuditAction,
    FamilyPermission,
    PermissionLevel,
    Principal,
    RequestContext,
    Subject,
)

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Family directory
# ---------------------------------------------------------------------------

class FamilyDirectory:
    """Authoritative family-permission store with a per-actor read cache.

    ``grant`` and ``revoke`` invalidate the actor's cached permissions before
    returning, so no lookup can observe a revoked permission.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._permissions: dict[tuple[str, str], FamilyPermission] = {}
        self._cache: dict[str, dict[str, FamilyPermission]] = {}

    def grant(self, actor_id: str, permission: FamilyPermission) -> None:
        with self._lock:
            self._permissions[(actor_id, permission.subject_id)] = permission
            self._cache.pop(actor_id, None)
        logger.info(
            "family_permission_granted",
            actor_id=actor_id,
            subject_id=permission.subject_id,
            permission_level=permission.permission_level.value,
        )

    def revoke(self, actor_id: str, subject_id: str) -> bool:
        with self._lock:
            removed = self._permissions.pop((actor_id, subject_id), None)
            self._cache.pop(actor_id, None)
        logger.info(
            "family_permission_revoked",
            actor_id=actor_id,
            subject_id=subject_id,
            existed=removed is not None,
        )
        return removed is not None

    def lookup(self, actor_id: str, subject_id: str) -> Optional[FamilyPermission]:
        with self._lock:
            cached = self._cache.get(actor_id)
            if cached is None:
                cached = {
                    subject: permission
                    for (actor, subject), permission in self._permissions.items()
                    if actor == actor_id
                }
                self._cache[actor_id] = cached
            return cached.get(subject_id)


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

_OUTCOME_EVENT = {
    AccessOutcome.GRANTED: AuditEventType.ACCESS_GRANTED,
    AccessOutcome.DENIED: AuditEventType.ACCESS_DENIED,
    AccessOutcome.EMERGENCY_ROUTED: AuditEventType.EMERGENCY_ROUTED,
}


class AccessControlGate:
    """Per-request access decision with a full audit trail.

    Family permissions are read from the ``FamilyDirectory`` when one is
    configured, otherwise from the principal supplied by the identity
    provider.
    """

    def __init__(self, ledger: AuditLedger, directory: Optional[FamilyDirectory] = None) -> None:
        self._ledger = ledger
        self._directory = directory

    def check(
        self,
        principal: Principal,
        subject: Subject,
        action: AuditAction = AuditAction.VIEW,
        resource: str = "health_profile",
        context: Optional[RequestContext] = None,
    ) -> AccessGrant:
        """Resolve and audit the actor's access to ``subject``.

        Args:
            principal: The authenticated actor.
            subject: The subject being accessed.
            action: The attempted action.
            resource: The resource kind being accessed.
            context: Client request metadata (forensic only).

        Returns:
            The resolved ``AccessGrant``.
        """
        context = context or RequestContext()
        path: list[str] = []
        grant = self._resolve(principal, subject, action, path)

        log = logger.warning if grant.outcome == AccessOutcome.DENIED else logger.info
        log(
            "access_decision",
            actor_id=principal.actor_id,
            subject_id=subject.subject_id,
            tenant_id=principal.tenant_id,
            action=action.value,
            outcome=grant.outcome.value,
            reason=grant.reason,
            path=path,
        )

        self._ledger.record(AuditEntry(
            tenant_id=principal.tenant_id,
            actor_id=principal.actor_id,
            actor_role=principal.role.value,
            subject_id=subject.subject_id,
            event_type=_OUTCOME_EVENT[grant.outcome],
            action=action,
            resource=resource,
            resource_id=subject.subject_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            metadata={
                "outcome": grant.outcome.value,
                "mode": grant.mode.value if grant.mode else None,
                "scope": grant.scope.value if grant.scope else None,
                "reason": grant.reason,
                "attempted_action": action.value,
                "target_tenant": subject.tenant_id,
                "path": path,
                "session_id": context.session_id,
            },
        ))
        return grant

    def require(
        self,
        principal: Principal,
        subject: Subject,
        action: AuditAction = AuditAction.VIEW,
        resource: str = "health_profile",
        context: Optional[RequestContext] = None,
    ) -> AccessGrant:
        """Like ``check`` but raises unless access is granted.

        Raises:
            EmergencyAccessRequiredError: If the actor was routed to the
                break-glass workflow.
            AccessDeniedError: If access was denied.
        """
        grant = self.check(principal, subject, action, resource, context)
        if grant.outcome == AccessOutcome.EMERGENCY_ROUTED:
            raise EmergencyAccessRequiredError(
                "Access to this subject requires emergency (break-glass) access.",
                grant=grant,
            )
        if not grant.granted:
            raise AccessDeniedError(f"Access denied: {grant.reason}", grant=grant)
        return grant

    def denial_count(
        self,
        tenant_id: str,
        actor_id: str,
        since: Optional[datetime] = None,
    ) -> int:
        """Number of audited denials for an actor within a tenant."""
        return len(self._ledger.query(
            tenant_id,
            event_type=AuditEventType.ACCESS_DENIED,
            actor_id=actor_id,
            time_start=since,
        ))

    # -- State machine ------------------------------------------------------

    def _resolve(
        self,
        principal: Principal,
        subject: Subject,
        action: AuditAction,
        path: list[str],
    ) -> AccessGrant:
        path.append("tenant_check")
        if principal.tenant_id != subject.tenant_id:
            return AccessGrant(outcome=AccessOutcome.DENIED, reason="cross_tenant")

        path.append("self_check")
        if principal.actor_id == subject.subject_id:
            return AccessGrant(
                outcome=AccessOutcome.GRANTED,
                mode=AccessMode.NORMAL,
                scope=AccessScope.ALL,
                reason="self",
            )

        path.append("family_check")
        permission = self._permission_for(principal, subject.subject_id)
        if permission is not None:
            level = permission.permission_level
            if level == PermissionLevel.FULL:
                return AccessGrant(
                    outcome=AccessOutcome.GRANTED,
                    mode=AccessMode.FAMILY_DELEGATED,
                    scope=AccessScope.ALL,
                    reason="family_full",
                )
            if level in (PermissionLevel.LIMITED, PermissionLevel.VIEW_ONLY):
                if not permission.can_view_health_data:
                    return AccessGrant(
                        outcome=AccessOutcome.DENIED,
                        reason="family_health_data_not_permitted",
                    )
                if action != AuditAction.VIEW:
                    return AccessGrant(
                        outcome=AccessOutcome.DENIED,
                        reason="family_scope_read_only",
                    )
                return AccessGrant(
                    outcome=AccessOutcome.GRANTED,
                    mode=AccessMode.FAMILY_DELEGATED,
                    scope=AccessScope.HEALTH_DATA_ONLY,
                    reason=f"family_{level.value.lower()}",
                )

        path.append("role_check")
        if principal.role in CLINICAL_ROLES:
            return AccessGrant(
                outcome=AccessOutcome.GRANTED,
                mode=AccessMode.CLINICAL_ROLE,
                scope=AccessScope.ALL,
                reason=f"role_{principal.role.value.lower()}",
            )

        path.append("emergency_check")
        if permission is not None and permission.permission_level == PermissionLevel.EMERGENCY_ONLY:
            return AccessGrant(
                outcome=AccessOutcome.EMERGENCY_ROUTED,
                mode=AccessMode.EMERGENCY_OVERRIDE,
                scope=AccessScope.CRITICAL_INFO_ONLY,
                reason="emergency_only_permission",
            )

        return AccessGrant(outcome=AccessOutcome.DENIED, reason="no_relationship")

    def _permission_for(self, principal: Principal, subject_id: str) -> Optional[FamilyPermission]:
        if self._directory is not None:
            return self._directory.lookup(principal.actor_id, subject_id)
        return principal.family_permissions.get(subject_id)
