"""
Conflict Policy Engine -- Single Disposition per Proposed Change.

Maps the conflicts reported by the detectors to exactly one disposition:

* BLOCK            -- any CRITICAL conflict that is not approvable (allergy
  exposure).  Unconditional; there is no override path.
* REQUIRE_APPROVAL -- any HIGH conflict, or a CRITICAL conflict that is
  approvable.  Held until an authorized override or clinical review.
* WARN             -- only MEDIUM / LOW conflicts.  The change goes through
  and the warnings are attached for the caller to render.
* ALLOW            -- no conflicts.

``evaluate`` is a pure function of the conflict list.

**Failure semantics:**  missing reference data fails *closed* for the
allergy and medication-interaction families (treated as REQUIRE_APPROVAL)
and *open* for the food, dietary and biometric families.  Any unexpected
detector error is converted into an approval-required conflict and flags the
request for manual clinical review; a failed check is never auto-approved.
"""

from __future__ import annotations

from typing import Optional

import structlog

from safegate.catalog import RuleCatalog
from safegate.config import DEFAULT_POLICY, TenantPolicy
from safegate.detectors import DETECTORS, DetectorSpec, build_conflict
from safegate.errors import CatalogLookupError, DetectorError
from safegate.models import (
    Conflict,
    ConflictType,
    DetectorFamily,
    Disposition,
    ProposedChange,
    Severity,
    Subject,
)

logger = structlog.get_logger(__name__)


def evaluate(conflicts: list[Conflict]) -> Disposition:
    """Return the disposition for a list of conflicts.

    Args:
        conflicts: Conflicts reported by the detectors for one change.

    Returns:
        The single ``Disposition`` for the change.
    """
    if any(c.hard_block for c in conflicts):
        return Disposition.BLOCK
    if any(
        c.severity == Severity.HIGH
        or (c.severity == Severity.CRITICAL and c.requires_approval)
        for c in conflicts
    ):
        return Disposition.REQUIRE_APPROVAL
    if conflicts:
        return Disposition.WARN
    return Disposition.ALLOW


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------

BLOCK_REMEDIATION = [
    "Remove or substitute the conflicting ingredient or medication.",
    "Consult the subject's healthcare provider before proceeding.",
]


class PolicyDecision:
    """Disposition plus everything the caller needs to act on it.

    * ``blocking``    -- the conflicts that drove a REQUIRE_APPROVAL or
      BLOCK disposition.
    * ``warnings``    -- descriptions of MEDIUM / LOW conflicts.
    * ``next_steps``  -- override and review endpoints (REQUIRE_APPROVAL).
    * ``remediation`` -- guidance for a BLOCK.
    """

    def __init__(
        self,
        disposition: Disposition,
        conflicts: list[Conflict],
        blocking: list[Conflict],
        warnings: list[str],
        next_steps: Optional[dict[str, str]] = None,
        remediation: Optional[list[str]] = None,
    ) -> None:
        self.disposition = disposition
        self.conflicts = conflicts
        self.blocking = blocking
        self.warnings = warnings
        self.next_steps = next_steps or {}
        self.remediation = remediation or []

    @property
    def may_proceed(self) -> bool:
        """Whether the change may be committed without approval."""
        return self.disposition in (Disposition.ALLOW, Disposition.WARN)

    @property
    def overridable(self) -> bool:
        """False when any conflict is a hard block."""
        return not any(c.hard_block for c in self.conflicts)

    def __repr__(self) -> str:
        return (
            f"PolicyDecision(disposition={self.disposition.value}, "
            f"conflicts={len(self.conflicts)})"
        )


def decide(conflicts: list[Conflict], policy: TenantPolicy = DEFAULT_POLICY) -> PolicyDecision:
    """Evaluate conflicts and assemble the caller-facing decision."""
    disposition = evaluate(conflicts)
    warnings = [
        c.description for c in conflicts
        if c.severity in (Severity.MEDIUM, Severity.LOW)
    ]

    if disposition == Disposition.BLOCK:
        blocking = [c for c in conflicts if c.hard_block]
        remediation = list(BLOCK_REMEDIATION)
        for conflict in blocking:
            remediation.extend(r for r in conflict.recommendations if r not in remediation)
        return PolicyDecision(disposition, conflicts, blocking, warnings, remediation=remediation)

    if disposition == Disposition.REQUIRE_APPROVAL:
        blocking = [
            c for c in conflicts
            if c.severity.rank >= Severity.HIGH.rank
        ]
        next_steps = {
            "override_endpoint": policy.override_endpoint,
            "request_review_endpoint": policy.request_review_endpoint,
        }
        return PolicyDecision(disposition, conflicts, blocking, warnings, next_steps=next_steps)

    return PolicyDecision(disposition, conflicts, [], warnings)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

_FAMILY_CONFLICT_TYPE = {
    DetectorFamily.MEDICATION: ConflictType.MEDICATION_INTERACTION,
    DetectorFamily.FOOD: ConflictType.MEDICATION_INTERACTION,
    DetectorFamily.ALLERGY: ConflictType.ALLERGY_CONFLICT,
    DetectorFamily.DIETARY: ConflictType.DIETARY_CONFLICT,
    DetectorFamily.BIOMETRIC: ConflictType.BIOMETRIC_ANOMALY,
}


class Assessment:
    """Result of running every detector and the policy for one change.

    ``failures`` holds unexpected detector errors.  When it is non-empty,
    ``manual_review`` is True and the change must be queued for clinical
    review.  ``skipped`` lists fail-open families whose reference data was
    unavailable.
    """

    def __init__(
        self,
        decision: PolicyDecision,
        failures: list[DetectorError],
        skipped: list[DetectorFamily],
        catalog_version: str,
    ) -> None:
        self.decision = decision
        self.failures = failures
        self.skipped = skipped
        self.catalog_version = catalog_version

    @property
    def manual_review(self) -> bool:
        return bool(self.failures)

    @property
    def disposition(self) -> Disposition:
        return self.decision.disposition

    @property
    def conflicts(self) -> list[Conflict]:
        return self.decision.conflicts

    def __repr__(self) -> str:
        return (
            f"Assessment(disposition={self.disposition.value}, "
            f"failures={len(self.failures)}, skipped={[f.value for f in self.skipped]})"
        )


class ConflictPolicyEngine:
    """Runs the detectors and applies the failure semantics of each family."""

    def __init__(self, detectors: tuple[DetectorSpec, ...] = DETECTORS) -> None:
        self._detectors = detectors

    def assess(
        self,
        proposed: ProposedChange,
        subject: Subject,
        catalog: RuleCatalog,
        policy: TenantPolicy = DEFAULT_POLICY,
    ) -> Assessment:
        """Detect conflicts for ``proposed`` and decide its disposition.

        Args:
            proposed: The validated proposed change.
            subject: The subject's current clinical state.
            catalog: The rule catalog to evaluate against.
            policy: The subject's tenant policy.

        Returns:
            An ``Assessment``.  Never raises for detector failures.
        """
        conflicts: list[Conflict] = []
        failures: list[DetectorError] = []
        skipped: list[DetectorFamily] = []

        for spec in self._detectors:
            try:
                conflicts.extend(spec.detect(proposed, subject, catalog))
            except CatalogLookupError as exc:
                if not spec.fail_closed:
                    logger.warning(
                        "catalog_unavailable_fail_open",
                        family=spec.family.value,
                        section=exc.section,
                        catalog_version=catalog.version,
                    )
                    skipped.append(spec.family)
                    continue
                logger.warning(
                    "catalog_unavailable_fail_closed",
                    family=spec.family.value,
                    section=exc.section,
                    catalog_version=catalog.version,
                )
                conflicts.append(_unverified_conflict(
                    spec.family,
                    f"Reference data for {spec.family.value.lower()} checks is unavailable; "
                    "the change cannot be verified automatically.",
                    "catalog_unavailable",
                ))
            except Exception as exc:
                failure = DetectorError(spec.family, exc)
                logger.error(
                    "detector_failed",
                    family=spec.family.value,
                    error=repr(exc),
                    catalog_version=catalog.version,
                )
                failures.append(failure)
                conflicts.append(_unverified_conflict(
                    spec.family,
                    f"The {spec.family.value.lower()} safety check failed to run; "
                    "manual clinical review is required.",
                    "detector_error",
                ))

        decision = decide(conflicts, policy)
        logger.info(
            "change_assessed",
            subject_id=subject.subject_id,
            disposition=decision.disposition.value,
            conflict_count=len(conflicts),
            failure_count=len(failures),
            catalog_version=catalog.version,
        )
        return Assessment(decision, failures, skipped, catalog.version)


def _unverified_conflict(family: DetectorFamily, description: str, cause: str) -> Conflict:
    return build_conflict(
        type=_FAMILY_CONFLICT_TYPE[family],
        family=family,
        severity=Severity.HIGH,
        description=description,
        involved=[cause, family.value.lower()],
        affected_fields=[],
        recommendations=["Request clinical review before applying this change"],
        requires_approval=True,
    )
