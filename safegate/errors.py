"""
Error taxonomy for SafeGate.

Each error class maps to one failure category of the safety pipeline and
carries enough structure for the caller to render an actionable response:

* ``ValidationError``      -- malformed proposed change; rejected before any
  detector runs.
* ``CatalogLookupError``   -- reference data unavailable; handled by the
  policy engine (fail-open or fail-closed per detector family).
* ``AccessDeniedError``    -- terminal DENIED state of the access gate.
* ``EmergencyAccessRequiredError`` -- the gate routed the actor to the
  break-glass workflow instead of granting or denying directly.
* ``ConflictBlockedError`` -- BLOCK disposition; carries the conflict list
  and remediation guidance.
* ``AuditWriteError``      -- audit store failure; recovered internally by
  the ledger and never surfaced as a reason to skip safety logic.
* ``DetectorError``        -- unexpected detector failure; the request is
  routed to manual clinical review, never auto-approved.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from safegate.models import AccessGrant, Conflict, DetectorFamily


class SafeGateError(Exception):
    """Base class for all SafeGate errors."""
    pass


class ValidationError(SafeGateError):
    """Raised when a proposed change is malformed."""

    def __init__(self, message: str, field: str = "") -> None:
        super().__init__(message)
        self.field = field


class CatalogLookupError(SafeGateError):
    """Raised when a rule catalog section is unavailable."""

    def __init__(self, section: str) -> None:
        super().__init__(f"Rule catalog section '{section}' is unavailable.")
        self.section = section


class AccessDeniedError(SafeGateError):
    """Raised when the access gate denies a request."""

    def __init__(self, message: str, grant: Optional["AccessGrant"] = None) -> None:
        super().__init__(message)
        self.grant = grant


class EmergencyAccessRequiredError(AccessDeniedError):
    """Raised when the actor may only reach the subject via break-glass access."""
    pass


class ConflictBlockedError(SafeGateError):
    """Raised when a request or override hits a non-overridable conflict."""

    def __init__(
        self,
        message: str,
        conflicts: list["Conflict"] | None = None,
        remediation: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.conflicts = conflicts or []
        self.remediation = remediation or []


class AuditWriteError(SafeGateError):
    """Raised by the audit store path when an entry cannot be persisted."""
    pass


class DetectorError(SafeGateError):
    """Wraps an unexpected exception raised inside a conflict detector."""

    def __init__(self, family: "DetectorFamily", cause: BaseException) -> None:
        super().__init__(f"Detector '{family.value}' failed: {cause!r}")
        self.family = family
        self.cause = cause
