"""
Tests for safegate.catalog -- Versioned Clinical Reference Data.

Covers: bidirectional and case-insensitive drug lookup, severity aliases,
allergen synonym expansion, dietary exclusions, unavailable sections, YAML
loading, and atomic catalog swaps.
"""

from __future__ import annotations

import os
import tempfile

import pydantic
import pytest

from safegate.catalog import (
    DEFAULT_CATALOG,
    CatalogStore,
    DrugInteraction,
    FoodInteraction,
    RuleCatalog,
    load_catalog_from_yaml,
    term_variants,
)
from safegate.errors import CatalogLookupError
from safegate.models import Severity


def _write_yaml(content: str) -> str:
    f = tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False)
    f.write(content)
    f.close()
    return f.name


# ---------------------------------------------------------------------------
# 1. Drug interaction lookup
# ---------------------------------------------------------------------------

class TestDrugInteractionLookup:
    def test_lookup_is_bidirectional(self):
        forward = DEFAULT_CATALOG.lookup_interaction("warfarin", "aspirin")
        backward = DEFAULT_CATALOG.lookup_interaction("aspirin", "warfarin")
        assert forward is not None
        assert forward == backward

    def test_lookup_is_case_insensitive(self):
        interaction = DEFAULT_CATALOG.lookup_interaction("  WARFARIN ", "Aspirin")
        assert interaction is not None
        assert interaction.severity == Severity.HIGH

    def test_unknown_pair_returns_none(self):
        assert DEFAULT_CATALOG.lookup_interaction("warfarin", "acetaminophen") is None

    def test_severity_aliases_are_mapped(self):
        interaction = DrugInteraction(drug_a="a", drug_b="b", severity="contraindicated")
        assert interaction.severity == Severity.CRITICAL
        assert DrugInteraction(drug_a="a", drug_b="b", severity="minor").severity == Severity.LOW
        assert DrugInteraction(drug_a="a", drug_b="b", severity="Moderate").severity == Severity.MEDIUM

    def test_unknown_severity_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            DrugInteraction(drug_a="a", drug_b="b", severity="catastrophic")

    def test_unavailable_section_raises(self):
        catalog = RuleCatalog(version="broken", drug_interactions=None)
        with pytest.raises(CatalogLookupError) as exc_info:
            catalog.lookup_interaction("warfarin", "aspirin")
        assert exc_info.value.section == "drug_interactions"


# ---------------------------------------------------------------------------
# 2. Food, allergen and dietary sections
# ---------------------------------------------------------------------------

class TestReferenceSections:
    def test_food_token_is_first_word(self):
        entry = FoodInteraction(medication="warfarin", food_item="Spinach (vitamin K)")
        assert entry.food_token == "spinach"

    def test_food_interactions_for_medication(self):
        entries = DEFAULT_CATALOG.food_interactions_for("Warfarin")
        assert {e.food_token for e in entries} == {"spinach", "kale", "broccoli"}

    def test_allergen_synonyms_include_singular(self):
        terms = DEFAULT_CATALOG.synonyms_for("Peanuts")
        assert "peanut" in terms
        assert "groundnut" in terms

    def test_unknown_allergen_falls_back_to_itself(self):
        assert DEFAULT_CATALOG.synonyms_for("kiwi") == {"kiwi"}

    def test_exclusions_for_known_restriction(self):
        excluded = DEFAULT_CATALOG.exclusions_for("VEGAN")
        assert "chicken" in excluded

    def test_exclusions_for_unknown_restriction_is_none(self):
        assert DEFAULT_CATALOG.exclusions_for("paleo") is None

    def test_missing_allergen_section_raises(self):
        catalog = RuleCatalog(version="broken", allergen_synonyms=None)
        with pytest.raises(CatalogLookupError):
            catalog.synonyms_for("peanuts")

    def test_term_variants(self):
        assert term_variants("berries") == {"berries", "berry"}
        assert term_variants("eggs") == {"eggs", "egg"}
        assert term_variants("glass") == {"glass"}


# ---------------------------------------------------------------------------
# 3. YAML loading
# ---------------------------------------------------------------------------

class TestYAMLLoading:
    def test_load_valid_catalog(self):
        path = _write_yaml(
            "catalog:\n"
            "  version: '2024.2'\n"
            "  drug_interactions:\n"
            "    - {drug_a: warfarin, drug_b: aspirin, severity: major}\n"
            "  allergen_synonyms:\n"
            "    peanuts: [peanut, groundnut]\n"
        )
        try:
            catalog = load_catalog_from_yaml(path)
            assert catalog.version == "2024.2"
            assert catalog.lookup_interaction("aspirin", "warfarin").severity == Severity.HIGH
            assert "groundnut" in catalog.synonyms_for("peanuts")
        finally:
            os.unlink(path)

    def test_missing_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_catalog_from_yaml("/nonexistent/catalog.yaml")

    def test_missing_top_level_key_raises(self):
        path = _write_yaml("version: '1'\n")
        try:
            with pytest.raises(ValueError, match="catalog"):
                load_catalog_from_yaml(path)
        finally:
            os.unlink(path)

    def test_null_section_is_unavailable(self):
        path = _write_yaml("catalog:\n  version: '3'\n  dietary_exclusions: null\n")
        try:
            catalog = load_catalog_from_yaml(path)
            with pytest.raises(CatalogLookupError):
                catalog.exclusions_for("vegan")
        finally:
            os.unlink(path)


# ---------------------------------------------------------------------------
# 4. Catalog store
# ---------------------------------------------------------------------------

class TestCatalogStore:
    def test_default_is_builtin_catalog(self):
        assert CatalogStore().current().version == DEFAULT_CATALOG.version

    def test_swap_installs_new_version(self):
        store = CatalogStore()
        previous = store.swap(RuleCatalog(version="2025.1"))
        assert previous.version == DEFAULT_CATALOG.version
        assert store.current().version == "2025.1"

    def test_swap_same_version_rejected(self):
        store = CatalogStore()
        with pytest.raises(ValueError, match="already loaded"):
            store.swap(RuleCatalog(version=DEFAULT_CATALOG.version))

    def test_reload_from_yaml(self):
        path = _write_yaml("catalog:\n  version: 'hot-reload'\n")
        try:
            store = CatalogStore()
            store.reload_from_yaml(path)
            assert store.current().version == "hot-reload"
        finally:
            os.unlink(path)
