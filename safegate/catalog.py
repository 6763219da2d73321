"""
Rule Catalogs -- Versioned Clinical Reference Data.

The catalog holds the static reference data the conflict detectors consult:
drug-drug interaction pairs, drug-food interactions, allergen synonym sets,
dietary-restriction exclusion lists, and the biometric plausibility
threshold.  It contains no logic beyond lookups.

The catalog is an injected, versioned object.  Detectors receive it as an
argument; there are no module-level mutable interaction tables.  A
``CatalogStore`` holds the current version and swaps it atomically so a new
catalog can be loaded without restarting the service.

Any section may be ``None``, meaning the reference data is unavailable (for
example, a failed load).  Lookups against an unavailable section raise
``CatalogLookupError`` so the policy engine can apply its fail-open or
fail-closed rule for that detector family.

**Known simplification:** allergen and ingredient matching is free-text
(normalized whole-word matching plus synonym sets), not a canonical ingredient
ontology keyed by stable IDs.
"""

from __future__ import annotations

import re
import threading
from pathlib import Path
from typing import Optional

import structlog
import yaml
from pydantic import BaseModel, Field, field_validator

from safegate.errors import CatalogLookupError
from safegate.models import Severity, normalize_term

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Severity taxonomy
# ---------------------------------------------------------------------------

# Clinical interaction vocabulary -> internal severity.
SEVERITY_ALIASES: dict[str, Severity] = {
    "minor": Severity.LOW,
    "low": Severity.LOW,
    "moderate": Severity.MEDIUM,
    "medium": Severity.MEDIUM,
    "major": Severity.HIGH,
    "high": Severity.HIGH,
    "contraindicated": Severity.CRITICAL,
    "critical": Severity.CRITICAL,
}


def _coerce_severity(value: object) -> object:
    if isinstance(value, str):
        mapped = SEVERITY_ALIASES.get(value.strip().lower())
        if mapped is not None:
            return mapped
    return value


# ---------------------------------------------------------------------------
# Catalog entries
# ---------------------------------------------------------------------------

class DrugInteraction(BaseModel):
    drug_a: str
    drug_b: str
    severity: Severity
    description: str = ""
    management: str = "Consult healthcare provider before combining these medications."

    @field_validator("severity", mode="before")
    @classmethod
    def coerce_severity(cls, v: object) -> object:
        return _coerce_severity(v)

    @property
    def pair(self) -> frozenset[str]:
        return frozenset({normalize_term(self.drug_a), normalize_term(self.drug_b)})


class FoodInteraction(BaseModel):
    medication: str
    food_item: str = Field(
        ...,
        description="Free-text food description; only its first token is matched.",
    )
    severity: Severity = Severity.MEDIUM
    clinical_effect: str = ""
    recommendations: list[str] = Field(default_factory=list)

    @field_validator("severity", mode="before")
    @classmethod
    def coerce_severity(cls, v: object) -> object:
        return _coerce_severity(v)

    @property
    def food_token(self) -> str:
        return normalize_term(self.food_item).split(" ")[0]


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

def term_variants(term: str) -> set[str]:
    variants = {term}
    if len(term) > 4 and term.endswith("ies"):
        variants.add(term[:-3] + "y")
    elif len(term) > 4 and term.endswith("es"):
        variants.add(term[:-2])
        variants.add(term[:-1])
    elif len(term) > 3 and term.endswith("s") and not term.endswith("ss"):
        variants.add(term[:-1])
    return variants


def contains_term(text: str, term: str) -> bool:
    """Whether ``term`` occurs in ``text`` as a whole word or phrase.

    A trailing plural ``s``/``es`` is allowed, so "peanut" matches "peanuts"
    but "nut" does not match "nutmeg" or "coconut".
    """
    return re.search(rf"\b{re.escape(term)}(?:e?s)?\b", text) is not None


class RuleCatalog(BaseModel):
    """Versioned reference data consumed by the conflict detectors."""

    version: str = Field(..., min_length=1)
    drug_interactions: Optional[list[DrugInteraction]] = Field(default_factory=list)
    food_interactions: Optional[list[FoodInteraction]] = Field(default_factory=list)
    allergen_synonyms: Optional[dict[str, list[str]]] = Field(default_factory=dict)
    dietary_exclusions: Optional[dict[str, list[str]]] = Field(default_factory=dict)
    weight_change_threshold_pct: float = Field(
        default=20.0,
        gt=0,
        description="Percent change from the last recorded weight that is flagged as implausible.",
    )

    def lookup_interaction(self, drug_a: str, drug_b: str) -> Optional[DrugInteraction]:
        """Bidirectional, case-insensitive drug pair lookup."""
        if self.drug_interactions is None:
            raise CatalogLookupError("drug_interactions")
        wanted = frozenset({normalize_term(drug_a), normalize_term(drug_b)})
        for interaction in self.drug_interactions:
            if interaction.pair == wanted:
                return interaction
        return None

    def food_interactions_for(self, medication: str) -> list[FoodInteraction]:
        if self.food_interactions is None:
            raise CatalogLookupError("food_interactions")
        name = normalize_term(medication)
        return [f for f in self.food_interactions if normalize_term(f.medication) == name]

    def synonyms_for(self, allergen: str) -> set[str]:
        """Expand an allergen into the set of ingredient terms that contain it.

        Unknown allergens fall back to the allergen term itself.
        """
        if self.allergen_synonyms is None:
            raise CatalogLookupError("allergen_synonyms")
        name = normalize_term(allergen)
        terms = {name}
        for synonym in self.allergen_synonyms.get(name, []):
            terms.add(normalize_term(synonym))
        expanded: set[str] = set()
        for term in terms:
            expanded |= term_variants(term)
        return expanded

    def exclusions_for(self, kind: str) -> Optional[list[str]]:
        """Excluded ingredient terms for a restriction, or ``None`` if unknown."""
        if self.dietary_exclusions is None:
            raise CatalogLookupError("dietary_exclusions")
        items = self.dietary_exclusions.get(normalize_term(kind))
        if items is None:
            return None
        return [normalize_term(i) for i in items]


# ---------------------------------------------------------------------------
# Default catalog
# ---------------------------------------------------------------------------

DEFAULT_CATALOG = RuleCatalog(
    version="2024.1-default",
    drug_interactions=[
        DrugInteraction(drug_a="warfarin", drug_b="aspirin", severity="major",
                        description="Additive anticoagulant effects; increased bleeding risk.",
                        management="Monitor INR closely; consider dose adjustment."),
        DrugInteraction(drug_a="warfarin", drug_b="ibuprofen", severity="major",
                        description="NSAID with anticoagulant; increased bleeding risk."),
        DrugInteraction(drug_a="warfarin", drug_b="vitamin k", severity="moderate",
                        description="Vitamin K antagonizes warfarin anticoagulation."),
        DrugInteraction(drug_a="metformin", drug_b="alcohol", severity="moderate",
                        description="Increased risk of lactic acidosis."),
        DrugInteraction(drug_a="metformin", drug_b="contrast dye", severity="major",
                        description="Iodinated contrast may precipitate lactic acidosis."),
        DrugInteraction(drug_a="lisinopril", drug_b="potassium", severity="moderate",
                        description="Risk of hyperkalemia."),
        DrugInteraction(drug_a="lisinopril", drug_b="lithium", severity="major",
                        description="ACE inhibitors raise lithium levels."),
        DrugInteraction(drug_a="simvastatin", drug_b="cyclosporine", severity="major",
                        description="Increased statin exposure; myopathy risk."),
        DrugInteraction(drug_a="simvastatin", drug_b="clarithromycin", severity="contraindicated",
                        description="CYP3A4 inhibition; severe myopathy and rhabdomyolysis risk.",
                        management="Contraindicated: use an alternative statin or antibiotic."),
        DrugInteraction(drug_a="digoxin", drug_b="quinidine", severity="major",
                        description="Quinidine raises digoxin levels."),
        DrugInteraction(drug_a="digoxin", drug_b="verapamil", severity="major",
                        description="Verapamil raises digoxin levels; bradycardia risk."),
    ],
    food_interactions=[
        FoodInteraction(medication="warfarin", food_item="spinach (vitamin K)", severity="moderate",
                        clinical_effect="Decreased anticoagulation effectiveness.",
                        recommendations=["Maintain consistent vitamin K intake",
                                         "Monitor INR after dietary changes"]),
        FoodInteraction(medication="warfarin", food_item="kale (vitamin K)", severity="moderate",
                        clinical_effect="Decreased anticoagulation effectiveness.",
                        recommendations=["Maintain consistent vitamin K intake"]),
        FoodInteraction(medication="warfarin", food_item="broccoli (vitamin K)", severity="moderate",
                        clinical_effect="Decreased anticoagulation effectiveness.",
                        recommendations=["Maintain consistent vitamin K intake"]),
        FoodInteraction(medication="levothyroxine", food_item="coffee", severity="moderate",
                        clinical_effect="Reduced thyroid hormone absorption.",
                        recommendations=["Take medication 4 hours before or after"]),
        FoodInteraction(medication="levothyroxine", food_item="soy products", severity="moderate",
                        clinical_effect="Reduced thyroid hormone absorption.",
                        recommendations=["Separate dosing from soy intake"]),
        FoodInteraction(medication="lisinopril", food_item="banana (potassium)", severity="moderate",
                        clinical_effect="Risk of hyperkalemia.",
                        recommendations=["Monitor potassium levels"]),
        FoodInteraction(medication="simvastatin", food_item="grapefruit", severity="major",
                        clinical_effect="CYP3A4 inhibition raises statin levels.",
                        recommendations=["Avoid grapefruit and grapefruit juice"]),
        FoodInteraction(medication="metformin", food_item="alcohol", severity="moderate",
                        clinical_effect="Increased risk of lactic acidosis.",
                        recommendations=["Limit alcohol intake"]),
    ],
    allergen_synonyms={
        "nuts": ["peanuts", "almonds", "walnuts", "cashews", "pistachios", "pecans", "hazelnuts"],
        "tree nuts": ["almonds", "walnuts", "cashews", "pistachios", "pecans", "hazelnuts"],
        "peanuts": ["peanut", "groundnut", "arachis"],
        "dairy": ["milk", "cheese", "butter", "yogurt", "cream", "lactose", "whey", "casein"],
        "gluten": ["wheat", "barley", "rye", "oats", "semolina", "spelt"],
        "shellfish": ["shrimp", "crab", "lobster", "clams", "mussels", "oysters", "scallops", "prawns"],
        "fish": ["salmon", "tuna", "cod", "anchovies", "tilapia", "halibut"],
        "eggs": ["egg", "mayonnaise", "albumin", "meringue"],
        "soy": ["soy", "soybean", "tofu", "edamame", "tempeh"],
        "sesame": ["sesame", "tahini"],
    },
    dietary_exclusions={
        "vegetarian": ["beef", "pork", "chicken", "fish", "meat", "gelatin"],
        "vegan": ["beef", "pork", "chicken", "fish", "meat", "dairy", "milk", "cheese",
                  "butter", "eggs", "honey", "gelatin"],
        "kosher": ["pork", "shellfish", "shrimp", "lobster"],
        "halal": ["pork", "alcohol", "gelatin"],
        "low-sodium": ["salt", "soy sauce", "processed"],
        "diabetic": ["sugar", "syrup", "high-carb"],
    },
)
"""Built-in reference catalog.

Simplified reference data; production deployments should load a curated
catalog from a clinical drug-interaction database.
"""


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_catalog_from_yaml(path: str | Path) -> RuleCatalog:
    """Load a rule catalog from a YAML file.

    Example YAML structure::

        catalog:
          version: "2024.2"
          drug_interactions:
            - {drug_a: warfarin, drug_b: aspirin, severity: major}
          allergen_synonyms:
            peanuts: [peanut, groundnut]

    Args:
        path: Path to the YAML file.

    Returns:
        A validated ``RuleCatalog``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If any entry fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Catalog file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "catalog" not in raw:
        raise ValueError("YAML file must contain a top-level 'catalog' mapping.")
    if not isinstance(raw["catalog"], dict):
        raise ValueError("'catalog' must be a mapping.")

    return RuleCatalog(**raw["catalog"])


# ---------------------------------------------------------------------------
# Catalog store (hot reload)
# ---------------------------------------------------------------------------

class CatalogStore:
    """Holds the current catalog version and swaps it atomically.

    Readers call ``current()`` once per request and pass the returned object
    through the evaluation, so a swap mid-request never mixes versions.
    """

    def __init__(self, catalog: RuleCatalog = DEFAULT_CATALOG) -> None:
        self._catalog = catalog
        self._lock = threading.Lock()

    def current(self) -> RuleCatalog:
        return self._catalog

    def swap(self, catalog: RuleCatalog) -> RuleCatalog:
        """Install a new catalog and return the previous one.

        Raises:
            ValueError: If the new catalog carries the current version.
        """
        with self._lock:
            previous = self._catalog
            if catalog.version == previous.version:
                raise ValueError(
                    f"Catalog version '{catalog.version}' is already loaded."
                )
            self._catalog = catalog
        logger.info(
            "catalog_swapped",
            previous_version=previous.version,
            version=catalog.version,
        )
        return previous

    def reload_from_yaml(self, path: str | Path) -> RuleCatalog:
        return self.swap(load_catalog_from_yaml(path))
