"""
Conflict Detectors -- Pure Clinical Safety Checks.

Each detector is a pure function::

    detect(proposed, subject, catalog) -> list[Conflict]

Detectors perform no I/O and hold no state.  Given the same inputs they
return the same conflicts with the same ``rule_key`` values, so historical
decisions can be replayed during an audit.

Detector families:

* MEDICATION -- drug-drug interactions over active + proposed medications.
* FOOD       -- drug-food interactions for proposed ingredients.
* ALLERGY    -- allergen synonym exposure in proposed ingredients or
  medications.  Always CRITICAL and never approvable.
* DIETARY    -- dietary-restriction exclusions.  MEDIUM, overridable.
* BIOMETRIC  -- implausible weight change against the last recorded weight.

Detectors only report.  The policy engine alone decides the disposition.
"""

from __future__ import annotations

import itertools
import uuid
from typing import Callable, NamedTuple

import structlog

from safegate.catalog import RuleCatalog, contains_term, term_variants
from safegate.models import (
    Conflict,
    ConflictType,
    DetectorFamily,
    ProposedChange,
    Severity,
    Subject,
    compute_bmi,
    normalize_term,
)

logger = structlog.get_logger(__name__)

_CONFLICT_NAMESPACE = uuid.UUID("5b0c3a52-3c1e-4d59-9a8e-2f3f1c6c7e10")


def build_conflict(
    type: ConflictType,
    family: DetectorFamily,
    severity: Severity,
    description: str,
    involved: list[str],
    affected_fields: list[str],
    recommendations: list[str],
    requires_approval: bool,
) -> Conflict:
    """Create a conflict with a fresh ID and a ``rule_key`` derived from what it is about."""
    key = "|".join([type.value, family.value, *involved])
    return Conflict(
        rule_key=str(uuid.uuid5(_CONFLICT_NAMESPACE, key)),
        type=type,
        family=family,
        severity=severity,
        description=description,
        involved=involved,
        affected_fields=affected_fields,
        recommendations=recommendations,
        requires_approval=requires_approval,
    )


def _requires_approval(severity: Severity) -> bool:
    return severity.rank >= Severity.HIGH.rank


# ---------------------------------------------------------------------------
# Medication -- medication
# ---------------------------------------------------------------------------

def detect_medication_interactions(
    proposed: ProposedChange,
    subject: Subject,
    catalog: RuleCatalog,
) -> list[Conflict]:
    """Check every unordered pair of active + proposed medications.

    Only runs when the change proposes at least one active medication.
    Discontinuations in the change remove the medication from the set.
    """
    if not proposed.new_medications:
        return []

    names: dict[str, str] = {}
    for med in [*subject.active_medications, *proposed.new_medications]:
        names.setdefault(normalize_term(med.name), med.name.strip())
    for med in proposed.medications:
        if not med.active:
            names.pop(normalize_term(med.name), None)

    conflicts: list[Conflict] = []
    for a, b in itertools.combinations(sorted(names), 2):
        interaction = catalog.lookup_interaction(a, b)
        if interaction is None:
            continue
        conflicts.append(build_conflict(
            type=ConflictType.MEDICATION_INTERACTION,
            family=DetectorFamily.MEDICATION,
            severity=interaction.severity,
            description=(
                f"Potential interaction between {names[a]} and {names[b]}. "
                f"{interaction.description}"
            ).strip(),
            involved=[a, b],
            affected_fields=["medications"],
            recommendations=[interaction.management],
            requires_approval=_requires_approval(interaction.severity),
        ))
    return conflicts


# ---------------------------------------------------------------------------
# Medication -- food
# ---------------------------------------------------------------------------

def detect_food_interactions(
    proposed: ProposedChange,
    subject: Subject,
    catalog: RuleCatalog,
) -> list[Conflict]:
    """Match proposed ingredients against each medication's food entries.

    Matching is a whole-word test against the first token of the catalog's
    food item.  Severity is at least MEDIUM; these conflicts never block on
    their own.
    """
    if not proposed.ingredients:
        return []

    medications: dict[str, str] = {}
    for med in [*subject.active_medications, *proposed.new_medications]:
        medications.setdefault(normalize_term(med.name), med.name.strip())

    conflicts: list[Conflict] = []
    for med_key in sorted(medications):
        for entry in catalog.food_interactions_for(med_key):
            token = entry.food_token
            if not token:
                continue
            for ingredient in proposed.ingredients:
                ingredient_key = normalize_term(ingredient)
                if not contains_term(ingredient_key, token):
                    continue
                severity = entry.severity
                if severity.rank < Severity.MEDIUM.rank:
                    severity = Severity.MEDIUM
                conflicts.append(build_conflict(
                    type=ConflictType.MEDICATION_INTERACTION,
                    family=DetectorFamily.FOOD,
                    severity=severity,
                    description=(
                        f"{ingredient.strip()} may interact with {medications[med_key]}. "
                        f"{entry.clinical_effect}"
                    ).strip(),
                    involved=[med_key, ingredient_key],
                    affected_fields=["ingredients", "medications"],
                    recommendations=list(entry.recommendations)
                    or ["Review timing of medication relative to this food"],
                    requires_approval=_requires_approval(severity),
                ))
    return conflicts


# ---------------------------------------------------------------------------
# Allergy -- ingredient
# ---------------------------------------------------------------------------

def detect_allergy_conflicts(
    proposed: ProposedChange,
    subject: Subject,
    catalog: RuleCatalog,
) -> list[Conflict]:
    """Flag any proposed ingredient or medication containing an allergen synonym.

    Every finding is CRITICAL with ``requires_approval=False``: allergy
    exposure can be blocked but never approved.
    """
    exposures = [*proposed.ingredients, *(m.name for m in proposed.new_medications)]
    if not exposures:
        return []

    allergens: dict[str, str] = {}
    for allergy in [*subject.allergies, *proposed.allergies]:
        allergens.setdefault(normalize_term(allergy.allergen), allergy.allergen.strip())

    conflicts: list[Conflict] = []
    for allergen_key in sorted(allergens):
        synonyms = catalog.synonyms_for(allergen_key)
        for item in exposures:
            item_key = normalize_term(item)
            if not any(contains_term(item_key, s) for s in synonyms):
                continue
            conflicts.append(build_conflict(
                type=ConflictType.ALLERGY_CONFLICT,
                family=DetectorFamily.ALLERGY,
                severity=Severity.CRITICAL,
                description=(
                    f"{item.strip()} conflicts with {allergens[allergen_key]} allergy."
                ),
                involved=[allergen_key, item_key],
                affected_fields=["ingredients", "allergies"],
                recommendations=["Remove ingredient or substitute with a safe alternative"],
                requires_approval=False,
            ))
    return conflicts


# ---------------------------------------------------------------------------
# Dietary restriction
# ---------------------------------------------------------------------------

def detect_dietary_conflicts(
    proposed: ProposedChange,
    subject: Subject,
    catalog: RuleCatalog,
) -> list[Conflict]:
    """Flag ingredients excluded by the subject's dietary restrictions.

    Unknown restriction kinds are skipped.
    """
    if not proposed.ingredients:
        return []

    restrictions: dict[str, str] = {}
    for restriction in [*subject.dietary_restrictions, *proposed.dietary_restrictions]:
        restrictions.setdefault(normalize_term(restriction.kind), restriction.kind.strip())

    conflicts: list[Conflict] = []
    for kind_key in sorted(restrictions):
        excluded = catalog.exclusions_for(kind_key)
        if excluded is None:
            logger.warning("dietary_restriction_unknown", restriction=kind_key)
            continue
        terms: set[str] = set()
        for item in excluded:
            terms |= term_variants(item)
        for ingredient in proposed.ingredients:
            ingredient_key = normalize_term(ingredient)
            if not any(contains_term(ingredient_key, t) for t in terms):
                continue
            label = restrictions[kind_key]
            conflicts.append(build_conflict(
                type=ConflictType.DIETARY_CONFLICT,
                family=DetectorFamily.DIETARY,
                severity=Severity.MEDIUM,
                description=(
                    f"{ingredient.strip()} conflicts with {label} dietary restriction."
                ),
                involved=[kind_key, ingredient_key],
                affected_fields=["dietary_restrictions", "ingredients"],
                recommendations=[f"Consider a {label}-friendly alternative for {ingredient.strip()}"],
                requires_approval=False,
            ))
    return conflicts


# ---------------------------------------------------------------------------
# Biometric plausibility
# ---------------------------------------------------------------------------

def detect_biometric_anomalies(
    proposed: ProposedChange,
    subject: Subject,
    catalog: RuleCatalog,
) -> list[Conflict]:
    """Flag a new weight that differs too much from the last recorded weight.

    A heuristic smell-test, not a diagnosis.
    """
    previous = subject.latest_biometric("weight")
    if previous is None:
        return []

    height = next(
        (r for r in proposed.biometrics if normalize_term(r.kind) == "height"),
        None,
    ) or subject.latest_biometric("height")

    threshold = catalog.weight_change_threshold_pct
    previous_kg = previous.normalized_value()

    conflicts: list[Conflict] = []
    for reading in proposed.biometrics:
        if normalize_term(reading.kind) != "weight":
            continue
        new_kg = reading.normalized_value()
        change_pct = abs(new_kg - previous_kg) / previous_kg * 100.0
        if change_pct <= threshold:
            continue
        description = (
            f"Significant weight change detected: {change_pct:.1f}% "
            f"({previous.value:g} {previous.unit} -> {reading.value:g} {reading.unit})."
        )
        if height is not None:
            description += f" Resulting BMI {compute_bmi(new_kg, height.normalized_value())}."
        conflicts.append(build_conflict(
            type=ConflictType.BIOMETRIC_ANOMALY,
            family=DetectorFamily.BIOMETRIC,
            severity=Severity.MEDIUM,
            description=description,
            involved=["weight", f"{previous_kg:.3f}", f"{new_kg:.3f}"],
            affected_fields=["weight", "bmi"],
            recommendations=[
                "Verify weight measurement accuracy",
                "Consider clinical review of the change",
            ],
            requires_approval=False,
        ))
    return conflicts


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

Detector = Callable[[ProposedChange, Subject, RuleCatalog], list[Conflict]]


class DetectorSpec(NamedTuple):
    family: DetectorFamily
    detect: Detector
    fail_closed: bool


DETECTORS: tuple[DetectorSpec, ...] = (
    DetectorSpec(DetectorFamily.MEDICATION, detect_medication_interactions, True),
    DetectorSpec(DetectorFamily.FOOD, detect_food_interactions, False),
    DetectorSpec(DetectorFamily.ALLERGY, detect_allergy_conflicts, True),
    DetectorSpec(DetectorFamily.DIETARY, detect_dietary_conflicts, False),
    DetectorSpec(DetectorFamily.BIOMETRIC, detect_biometric_anomalies, False),
)
"""Detectors in evaluation order.  ``fail_closed`` families treat missing
reference data as requiring approval; the others proceed without it."""


def detect_all(
    proposed: ProposedChange,
    subject: Subject,
    catalog: RuleCatalog,
) -> list[Conflict]:
    """Run every detector and concatenate the results.  Errors propagate."""
    conflicts: list[Conflict] = []
    for spec in DETECTORS:
        conflicts.extend(spec.detect(proposed, subject, catalog))
    return conflicts
