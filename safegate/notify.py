"""
Emergency Notifications -- Break-Glass Contact Stubs.

When break-glass access is activated on a subject, the subject's primary
emergency contact and primary healthcare provider are notified.  These are
**integration stubs**: they define the interface and write an audit entry
for every attempt, but make no external calls.  A deployment wires them to
its own SMS, e-mail or paging integration.

Contact details are never written to the audit metadata; only the contact
kind and whether a recipient existed.
"""

from __future__ import annotations

from typing import Optional

import structlog

from safegate.audit import AuditEntry, AuditEventType, AuditLedger
from safegate.models import AuditAction, EmergencyContact, HealthcareProvider, Subject

logger = structlog.get_logger(__name__)


class NotificationResult:
    """Result of one notification attempt."""

    def __init__(self, recipient_kind: str, delivered: bool, message: str) -> None:
        self.recipient_kind = recipient_kind
        self.delivered = delivered
        self.message = message

    def __repr__(self) -> str:
        return (
            f"NotificationResult(recipient_kind='{self.recipient_kind}', "
            f"delivered={self.delivered})"
        )


def _primary(items: list) -> Optional[object]:
    for item in items:
        if item.is_primary:
            return item
    return items[0] if items else None


def notify_emergency_access(
    subject: Subject,
    actor_id: str,
    grant_id: str,
    ledger: AuditLedger,
) -> list[NotificationResult]:
    """Notify the subject's primary contact and provider of a break-glass grant.

    Args:
        subject: The subject whose data was accessed.
        actor_id: The actor holding the break-glass grant.
        grant_id: The grant that triggered the notification.
        ledger: Audit ledger for recording each attempt.

    Returns:
        One ``NotificationResult`` per recipient kind.
    """
    results = [
        _notify("emergency_contact", _primary(subject.emergency_contacts)),
        _notify("healthcare_provider", _primary(subject.providers)),
    ]

    for result in results:
        ledger.record(AuditEntry(
            tenant_id=subject.tenant_id,
            actor_id="SYSTEM",
            actor_role="SYSTEM",
            subject_id=subject.subject_id,
            event_type=AuditEventType.EMERGENCY_NOTIFICATION,
            action=AuditAction.CREATE,
            resource="emergency_access",
            resource_id=grant_id,
            compliance_flags=["emergency_access", "break_glass"],
            metadata={
                "recipient_kind": result.recipient_kind,
                "delivered": result.delivered,
                "accessed_by": actor_id,
                "message": result.message,
            },
        ))
        logger.info(
            "emergency_notification",
            subject_id=subject.subject_id,
            grant_id=grant_id,
            recipient_kind=result.recipient_kind,
            delivered=result.delivered,
        )
    return results


def _notify(
    recipient_kind: str,
    recipient: Optional[EmergencyContact | HealthcareProvider],
) -> NotificationResult:
    """Stub: deliver a single notification.  No external calls are made."""
    if recipient is None:
        return NotificationResult(
            recipient_kind=recipient_kind,
            delivered=False,
            message=f"No {recipient_kind.replace('_', ' ')} on file.",
        )
    return NotificationResult(
        recipient_kind=recipient_kind,
        delivered=True,
        message=(
            f"[STUB] Emergency access notification queued for "
            f"{recipient_kind.replace('_', ' ')}."
        ),
    )
