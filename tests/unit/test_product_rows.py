"""
Unit tests for product-ingredient row building, lookup and merge
"""

import pytest

from ingestion.product_rows import (
    IngredientLookup,
    build_product_rows,
    dedupe_product_rows,
    merge_with_stored,
    normalize_amount_and_unit,
    normalize_unit_label,
    overflow_fields,
    payload_summary,
    unit_kind,
)
from schemas.product import ActiveIngredient, LabelFacts, ProprietaryBlend
from store.memory_store import InMemoryReferenceStore


def build(facts, source_id="101"):
    return build_product_rows("dsld", source_id, source_id, facts, parse_confidence=0.9)


class TestUnits:
    """Test unit label normalization"""

    def test_unit_labels(self):
        assert normalize_unit_label("Milligrams") == "mg"
        assert normalize_unit_label("µg") == "mcg"
        assert normalize_unit_label("mcg DFE") == "mcg"
        assert normalize_unit_label(" IU ") == "iu"
        assert normalize_unit_label("Gram(s)") == "g"
        assert normalize_unit_label("") is None

    def test_cfu_scaling(self):
        """Count words in CFU units scale the amount"""
        assert normalize_amount_and_unit(2, "Billion CFU") == (2e9, "cfu")
        assert normalize_amount_and_unit(5, "CFU") == (5, "cfu")
        assert normalize_amount_and_unit(None, "Billion CFU") == (None, "cfu")

    def test_missing_unit(self):
        assert normalize_amount_and_unit(5, None) == (5, None)
        assert normalize_amount_and_unit(5, "  ") == (5, None)

    def test_unit_kind(self):
        assert unit_kind("mg") == "mass"
        assert unit_kind("cfu") == "cfu"
        assert unit_kind("tablet") is None
        assert unit_kind(None) is None


class TestBuildRows:
    """Test row building from label facts"""

    def test_row_order_and_shapes(self):
        """Actives, then blends, then inactive rows"""
        rows = build(LabelFacts(
            actives=[ActiveIngredient(name="Zinc Gluconate", amount=15, unit="mg")],
            proprietary_blends=[ProprietaryBlend(name="Energy Blend", total_amount=250, unit="mg")],
            inactive=["Cellulose"],
        ))

        # Assertions
        assert [row.name_raw for row in rows] == ["Zinc Gluconate", "Energy Blend", "Cellulose"]
        assert rows[0].amount == 15.0
        assert rows[0].unit_kind == "mass"
        assert rows[0].amount_unknown is False
        assert rows[0].name_key == "zinc gluconate"
        assert rows[0].parse_confidence == 0.9
        assert rows[1].is_proprietary_blend is True
        assert rows[1].is_active is True
        assert rows[2].is_active is False
        assert rows[2].amount is None
        assert rows[2].unit is None
        assert rows[2].unit_raw is None
        assert rows[2].amount_unknown is True

    def test_unknown_amount(self):
        rows = build(LabelFacts(actives=[ActiveIngredient(name="Vitamin C", unit="mg")]))

        assert rows[0].amount is None
        assert rows[0].unit == "mg"
        assert rows[0].amount_unknown is True


class TestDedupe:
    """Test dedupe on (source, source_id, name_raw)"""

    def test_duplicates_fill_gaps(self):
        rows = build(LabelFacts(
            actives=[ActiveIngredient(name="Zinc"), ActiveIngredient(name="Zinc", amount=10, unit="mg")],
            inactive=["Zinc"],
        ))

        deduped = dedupe_product_rows(rows)

        # Assertions
        assert len(deduped) == 1
        assert deduped[0].amount == 10.0
        assert deduped[0].unit == "mg"
        assert deduped[0].unit_kind == "mass"
        assert deduped[0].amount_unknown is False
        assert deduped[0].is_active is True

    def test_active_duplicate_wins_over_inactive(self):
        rows = build(LabelFacts(
            actives=[ActiveIngredient(name="Cellulose", amount=100, unit="mg")],
            inactive=["Cellulose"],
        ))
        rows = list(reversed(rows))

        deduped = dedupe_product_rows(rows)

        assert len(deduped) == 1
        assert deduped[0].is_active is True
        assert deduped[0].amount == 100.0

    def test_distinct_names_are_kept(self):
        rows = build(LabelFacts(inactive=["Cellulose", "Silica"]))

        assert len(dedupe_product_rows(rows)) == 2


class TestIngredientLookup:
    """Test ingredient resolution and hydration"""

    @pytest.fixture
    def lookup_store(self, reference_tables):
        store = InMemoryReferenceStore(reference_tables)
        store.seed("ingredient_unit_conversions", [
            {"ingredient_id": "ing-zinc", "from_unit": "mcg", "to_unit": "mg", "factor": 0.001,
             "created_at": "2024-01-01T00:00:00Z"},
        ])
        return store

    @pytest.mark.asyncio
    async def test_resolve_by_name_and_synonym(self, lookup_store):
        lookup = IngredientLookup(lookup_store)

        by_name = await lookup.resolve("zinc")
        by_synonym = await lookup.resolve("Magnesium (as Malate)")

        # Assertions
        assert by_name.id == "ing-zinc"
        assert by_name.base_unit == "mg"
        assert by_synonym.id == "ing-mag"
        assert await lookup.resolve("   ") is None

    @pytest.mark.asyncio
    async def test_misses_are_memoized(self, lookup_store):
        """A name without a match is looked up once per run"""
        lookup = IngredientLookup(lookup_store)

        assert await lookup.resolve("Mystery extract") is None
        calls = len(lookup_store.calls)
        assert await lookup.resolve("mystery  EXTRACT") is None

        assert len(lookup_store.calls) == calls

    @pytest.mark.asyncio
    async def test_wildcard_characters_in_names_match_literally(self, lookup_store):
        """A label name holding "*" must not match other ingredients by prefix"""
        lookup_store.seed("ingredients", [{"id": "ing-b12", "name": "Vitamin B*12", "unit": "mcg"}])
        lookup = IngredientLookup(lookup_store)

        # Assertions
        assert await lookup.resolve("Zin*") is None
        assert await lookup.resolve("Vitamin C*") is None
        assert (await lookup.resolve("vitamin b*12")).id == "ing-b12"

    @pytest.mark.asyncio
    async def test_hydrate(self, lookup_store):
        """Base-unit amounts are copied, other units converted when a factor exists"""
        rows = build(LabelFacts(
            actives=[
                ActiveIngredient(name="Zinc Gluconate", amount=15000, unit="mcg"),
                ActiveIngredient(name="Vitamin C", amount=500, unit="mg"),
                ActiveIngredient(name="Magnesium", amount=2, unit="g"),
                ActiveIngredient(name="Mystery extract", amount=1, unit="mg"),
            ],
        ))

        zinc, vitamin_c, magnesium, mystery = await IngredientLookup(lookup_store).hydrate(rows)

        # Assertions
        assert zinc.ingredient_id == "ing-zinc"
        assert zinc.amount_normalized == pytest.approx(15.0)
        assert zinc.unit_normalized == "mg"
        assert vitamin_c.ingredient_id == "ing-vitc"
        assert vitamin_c.amount_normalized == 500.0
        assert magnesium.ingredient_id == "ing-mag"
        assert magnesium.amount_normalized is None
        assert mystery.ingredient_id is None


class TestMergeWithStored:
    """Test overlaying built rows on stored rows"""

    def test_stored_ids_and_forms_are_kept(self):
        built = build(LabelFacts(actives=[ActiveIngredient(name="Zinc Gluconate", amount=15, unit="mg")]))
        stored = [built[0].copy(update={"id": 5, "ingredient_id": "ing-zinc", "form_raw": "gluconate"})]

        merged, changed = merge_with_stored(built, stored)

        # Assertions
        assert merged[0].id == 5
        assert merged[0].ingredient_id == "ing-zinc"
        assert merged[0].form_raw == "gluconate"
        assert changed == []

    def test_changed_and_new_rows(self):
        stored = build(LabelFacts(actives=[ActiveIngredient(name="Zinc", amount=15, unit="mg")]))
        built = build(LabelFacts(actives=[
            ActiveIngredient(name="Zinc", amount=20, unit="mg"),
            ActiveIngredient(name="Copper", amount=1, unit="mg"),
        ]))

        merged, changed = merge_with_stored(built, stored)

        assert len(merged) == 2
        assert [row.name_raw for row in changed] == ["Zinc", "Copper"]


class TestFailurePayloads:
    """Test journal payload helpers"""

    def test_payload_summary(self):
        row = build(LabelFacts(actives=[ActiveIngredient(name="Zinc", amount=15, unit="mg")]))[0]

        summary = payload_summary(row, 2.0).dict(by_alias=True)

        assert summary["nameKey"] == "zinc"
        assert summary["unitKind"] == "mass"
        assert summary["dailyMultiplier"] == 2.0
        assert summary["basis"] == "label_serving"

    def test_overflow_fields(self):
        rows = build(LabelFacts(actives=[ActiveIngredient(name="Zinc", amount=15, unit="x" * 65)]))

        assert overflow_fields(rows) == ["unit"]
