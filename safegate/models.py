"""
Core data models for SafeGate.

Clinical facts are immutable once recorded.  A subject's current clinical
state is never edited in place: new ``FactRecord`` entries are appended to the
subject's history and supersede older records with the same key.  This keeps
every historical value available for audit replay.

``ProposedChange``, ``Conflict`` and ``AccessGrant`` are request-scoped
values.  They exist only for the duration of one evaluation and are either
returned to the caller or embedded in an audit entry.
"""

from __future__ import annotations

import enum
import re
import uuid
from datetime import datetime, timezone
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from safegate.errors import ValidationError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Severity(str, enum.Enum):
    """Conflict severity, ordered LOW < MEDIUM < HIGH < CRITICAL."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class ConflictType(str, enum.Enum):
    MEDICATION_INTERACTION = "MEDICATION_INTERACTION"
    ALLERGY_CONFLICT = "ALLERGY_CONFLICT"
    DIETARY_CONFLICT = "DIETARY_CONFLICT"
    BIOMETRIC_ANOMALY = "BIOMETRIC_ANOMALY"


class DetectorFamily(str, enum.Enum):
    """Detector families.  The family decides fail-open vs fail-closed."""

    MEDICATION = "MEDICATION"
    FOOD = "FOOD"
    ALLERGY = "ALLERGY"
    DIETARY = "DIETARY"
    BIOMETRIC = "BIOMETRIC"


class Disposition(str, enum.Enum):
    """Single policy outcome for one proposed change.

    * ``ALLOW``            -- no conflicts; commit.
    * ``WARN``             -- commit allowed; warnings must be shown.
    * ``REQUIRE_APPROVAL`` -- held until an authorized override or review.
    * ``BLOCK``            -- never committed; no override path.
    """

    ALLOW = "ALLOW"
    WARN = "WARN"
    REQUIRE_APPROVAL = "REQUIRE_APPROVAL"
    BLOCK = "BLOCK"


class AuditAction(str, enum.Enum):
    VIEW = "view"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Role(str, enum.Enum):
    """Actor roles supplied by the identity provider."""

    USER = "USER"
    CLINICAL_ADVISOR = "CLINICAL_ADVISOR"
    SUPER_ADMIN = "SUPER_ADMIN"
    AUDITOR = "AUDITOR"
    SYSTEM = "SYSTEM"


CLINICAL_ROLES = frozenset({Role.CLINICAL_ADVISOR, Role.SUPER_ADMIN})


class PermissionLevel(str, enum.Enum):
    """A family member's permission level toward another member's data."""

    FULL = "FULL"
    LIMITED = "LIMITED"
    VIEW_ONLY = "VIEW_ONLY"
    EMERGENCY_ONLY = "EMERGENCY_ONLY"


class AccessMode(str, enum.Enum):
    NORMAL = "NORMAL"
    FAMILY_DELEGATED = "FAMILY_DELEGATED"
    CLINICAL_ROLE = "CLINICAL_ROLE"
    EMERGENCY_OVERRIDE = "EMERGENCY_OVERRIDE"


class AccessScope(str, enum.Enum):
    ALL = "ALL"
    HEALTH_DATA_ONLY = "HEALTH_DATA_ONLY"
    CRITICAL_INFO_ONLY = "CRITICAL_INFO_ONLY"


class AccessOutcome(str, enum.Enum):
    GRANTED = "GRANTED"
    DENIED = "DENIED"
    EMERGENCY_ROUTED = "EMERGENCY_ROUTED"


class AllergySeverity(str, enum.Enum):
    MILD = "MILD"
    MODERATE = "MODERATE"
    SEVERE = "SEVERE"
    LIFE_THREATENING = "LIFE_THREATENING"


class ChangeKind(str, enum.Enum):
    """Request entry points that produce a proposed change."""

    HEALTH_PROFILE_UPDATE = "HEALTH_PROFILE_UPDATE"
    MEDICATION_ADD = "MEDICATION_ADD"
    RECIPE_APPLICATION = "RECIPE_APPLICATION"


# ---------------------------------------------------------------------------
# Name normalization
# ---------------------------------------------------------------------------

_WHITESPACE = re.compile(r"\s+")


def normalize_term(value: str) -> str:
    """Lower-case, trim, and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", value.strip().lower())


# ---------------------------------------------------------------------------
# Clinical facts
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Medication(BaseModel):
    """A medication on (or proposed for) the subject's active list."""

    model_config = ConfigDict(frozen=True)

    fact_type: Literal["medication"] = "medication"
    name: str = Field(..., description="Medication name (generic preferred).")
    dose: str = Field(default="", description="Free-text dose, e.g. '5 mg daily'.")
    active_since: datetime = Field(default_factory=_utcnow)
    active: bool = Field(
        default=True,
        description="False records a discontinuation that supersedes the active record.",
    )
    critical: bool = Field(
        default=False,
        description="Critical medications are included in the break-glass summary.",
    )

    @property
    def key(self) -> tuple[str, str]:
        return ("medication", normalize_term(self.name))


class Allergy(BaseModel):
    model_config = ConfigDict(frozen=True)

    fact_type: Literal["allergy"] = "allergy"
    allergen: str
    severity: AllergySeverity = AllergySeverity.MODERATE
    reactions: list[str] = Field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return ("allergy", normalize_term(self.allergen))


class DietaryRestriction(BaseModel):
    model_config = ConfigDict(frozen=True)

    fact_type: Literal["dietary"] = "dietary"
    kind: str = Field(..., description="Restriction kind, e.g. 'vegan', 'low-sodium'.")
    strictness: str = Field(default="strict", description="'strict' or 'preference'.")

    @property
    def key(self) -> tuple[str, str]:
        return ("dietary", normalize_term(self.kind))


KG_PER_LB = 0.45359237
CM_PER_INCH = 2.54

_WEIGHT_UNITS = {"kg": 1.0, "lb": KG_PER_LB, "lbs": KG_PER_LB}
_HEIGHT_UNITS = {"cm": 1.0, "m": 100.0, "in": CM_PER_INCH}


class BiometricReading(BaseModel):
    """A biometric measurement.  Weight and height are unit-normalized."""

    model_config = ConfigDict(frozen=True)

    fact_type: Literal["biometric"] = "biometric"
    kind: str = Field(..., description="'weight', 'height', or another metric name.")
    value: float
    unit: str = ""
    taken_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return ("biometric", normalize_term(self.kind))

    def normalized_value(self) -> float:
        """Weight in kilograms, height in centimetres, anything else as-is."""
        unit = normalize_term(self.unit)
        kind = normalize_term(self.kind)
        if kind == "weight":
            return self.value * _WEIGHT_UNITS[unit]
        if kind == "height":
            return self.value * _HEIGHT_UNITS[unit]
        return self.value


ClinicalFact = Union[Medication, Allergy, DietaryRestriction, BiometricReading]


class FactRecord(BaseModel):
    """One append-only entry in a subject's clinical history."""

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    fact: ClinicalFact = Field(..., discriminator="fact_type")
    recorded_at: datetime = Field(default_factory=_utcnow)
    recorded_by: str = Field(default="SYSTEM")


# ---------------------------------------------------------------------------
# Subject
# ---------------------------------------------------------------------------

class EmergencyContact(BaseModel):
    name: str
    relationship: str = ""
    phone: str = ""
    is_primary: bool = False


class HealthcareProvider(BaseModel):
    name: str
    specialty: str = ""
    phone: str = ""
    is_primary: bool = False


class Subject(BaseModel):
    """The patient/user whose clinical state is evaluated.

    ``history`` is append-only.  The current state properties are derived
    views: the latest record per fact key wins.
    """

    subject_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str = Field(..., description="Owning tenant (isolation key).")
    display_name: str = Field(default="", description="Synthetic label only.")
    history: list[FactRecord] = Field(default_factory=list)
    emergency_contacts: list[EmergencyContact] = Field(default_factory=list)
    providers: list[HealthcareProvider] = Field(default_factory=list)

    def _current(self, fact_type: str) -> list[ClinicalFact]:
        latest: dict[tuple[str, str], FactRecord] = {}
        for record in self.history:
            if record.fact.fact_type != fact_type:
                continue
            key = record.fact.key
            held = latest.get(key)
            if held is None or _record_order(record) >= _record_order(held):
                latest[key] = record
        return [r.fact for r in latest.values()]

    @property
    def active_medications(self) -> list[Medication]:
        return [m for m in self._current("medication") if m.active]

    @property
    def allergies(self) -> list[Allergy]:
        return self._current("allergy")

    @property
    def dietary_restrictions(self) -> list[DietaryRestriction]:
        return self._current("dietary")

    def latest_biometric(self, kind: str) -> Optional[BiometricReading]:
        wanted = normalize_term(kind)
        for reading in self._current("biometric"):
            if normalize_term(reading.kind) == wanted:
                return reading
        return None

    @property
    def bmi(self) -> Optional[float]:
        weight = self.latest_biometric("weight")
        height = self.latest_biometric("height")
        if weight is None or height is None:
            return None
        return compute_bmi(weight.normalized_value(), height.normalized_value())


def _record_order(record: FactRecord) -> tuple[datetime, datetime]:
    # Biometrics are ordered by when they were taken, other facts by when
    # they were recorded.
    if isinstance(record.fact, BiometricReading):
        return (record.fact.taken_at, record.recorded_at)
    return (record.recorded_at, record.recorded_at)


def compute_bmi(weight_kg: float, height_cm: float) -> float:
    height_m = height_cm / 100.0
    return round(weight_kg / (height_m * height_m), 1)


# ---------------------------------------------------------------------------
# Proposed change
# ---------------------------------------------------------------------------

class ProposedChange(BaseModel):
    """An incoming mutation under evaluation.  Transient."""

    kind: ChangeKind = ChangeKind.HEALTH_PROFILE_UPDATE
    action: AuditAction = AuditAction.UPDATE
    medications: list[Medication] = Field(default_factory=list)
    allergies: list[Allergy] = Field(default_factory=list)
    dietary_restrictions: list[DietaryRestriction] = Field(default_factory=list)
    biometrics: list[BiometricReading] = Field(default_factory=list)
    ingredients: list[str] = Field(
        default_factory=list,
        description="Ingredients being applied to the subject, e.g. via a recipe.",
    )
    recipe_name: str = ""

    def facts(self) -> list[ClinicalFact]:
        return [
            *self.medications,
            *self.allergies,
            *self.dietary_restrictions,
            *self.biometrics,
        ]

    @property
    def new_medications(self) -> list[Medication]:
        return [m for m in self.medications if m.active]


def validate_change(change: ProposedChange) -> None:
    """Reject malformed changes before any detector runs.

    Raises:
        ValidationError: If the change is empty or any item is malformed.
    """
    if not change.facts() and not change.ingredients:
        raise ValidationError("Proposed change contains no facts or ingredients.")
    if change.kind == ChangeKind.RECIPE_APPLICATION and not change.ingredients:
        raise ValidationError("Recipe application requires ingredients.", field="ingredients")
    for med in change.medications:
        if not med.name.strip():
            raise ValidationError("Medication name must not be blank.", field="medications")
    for allergy in change.allergies:
        if not allergy.allergen.strip():
            raise ValidationError("Allergen must not be blank.", field="allergies")
    for restriction in change.dietary_restrictions:
        if not restriction.kind.strip():
            raise ValidationError("Dietary restriction kind must not be blank.", field="dietary_restrictions")
    for ingredient in change.ingredients:
        if not ingredient.strip():
            raise ValidationError("Ingredient names must not be blank.", field="ingredients")
    for reading in change.biometrics:
        if reading.value <= 0:
            raise ValidationError(
                f"Biometric '{reading.kind}' must be positive, got {reading.value}.",
                field="biometrics",
            )
        kind = normalize_term(reading.kind)
        unit = normalize_term(reading.unit)
        if kind == "weight" and unit not in _WEIGHT_UNITS:
            raise ValidationError(f"Unknown weight unit '{reading.unit}'.", field="biometrics")
        if kind == "height" and unit not in _HEIGHT_UNITS:
            raise ValidationError(f"Unknown height unit '{reading.unit}'.", field="biometrics")


# ---------------------------------------------------------------------------
# Conflict
# ---------------------------------------------------------------------------

class Conflict(BaseModel):
    """A typed detector finding.  Never persisted on its own."""

    model_config = ConfigDict(frozen=True)

    conflict_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique per finding; used to reference a held change.",
    )
    rule_key: str = Field(
        default="",
        description="Stable key of what the finding is about; equal for equal findings.",
    )
    type: ConflictType
    family: DetectorFamily
    severity: Severity
    description: str
    affected_fields: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    requires_approval: bool = False
    involved: list[str] = Field(
        default_factory=list,
        description="Normalized terms that produced the finding (drug names, ingredient, allergen).",
    )

    @property
    def hard_block(self) -> bool:
        """Critical and not approvable: the one non-overridable class."""
        return self.severity == Severity.CRITICAL and not self.requires_approval


# ---------------------------------------------------------------------------
# Principal and access
# ---------------------------------------------------------------------------

class FamilyPermission(BaseModel):
    """The actor's permission level toward one subject in the same family."""

    subject_id: str
    permission_level: PermissionLevel
    can_view_health_data: bool = False


class Principal(BaseModel):
    """An already-authenticated actor supplied by the identity provider."""

    actor_id: str
    tenant_id: str
    role: Role = Role.USER
    family_permissions: dict[str, FamilyPermission] = Field(default_factory=dict)


class RequestContext(BaseModel):
    """Client-supplied request metadata.  Forensic only; never used for access decisions."""

    ip_address: str = "unknown"
    user_agent: str = "unknown"
    session_id: str = ""


class AccessGrant(BaseModel):
    """Resolved outcome of the access gate for one request."""

    model_config = ConfigDict(frozen=True)

    outcome: AccessOutcome
    mode: Optional[AccessMode] = None
    scope: Optional[AccessScope] = None
    reason: str = ""

    @property
    def granted(self) -> bool:
        return self.outcome == AccessOutcome.GRANTED
