"""
Unit tests for the per-source label facts adapters
"""

import pytest

from ingestion.adapters import (
    DsldAdapter,
    LnhpdAdapter,
    extract_lnhpd_actives,
    get_adapter,
    normalize_string_list,
    pick_name,
    score_form_fields,
)


class TestFieldPickers:
    """Test the field-name tolerant pickers"""

    def test_pick_name_falls_back_to_any_name_key(self):
        assert pick_name({"ingredient_name": " Zinc "}, ["ingredient_name"]) == "Zinc"
        assert pick_name({"common_name_en": "Zinc"}, ["ingredient_name"]) == "Zinc"
        assert pick_name({"quantity": 10}, ["ingredient_name"]) is None

    def test_normalize_string_list(self):
        """Lists are cleaned, strings are split on ';' and bullets"""
        assert normalize_string_list([" Cellulose ", "", 3, "Silica"]) == ["Cellulose", "Silica"]
        assert normalize_string_list("Cellulose; Silica • Rice flour") == ["Cellulose", "Silica", "Rice flour"]
        assert normalize_string_list(None) == []


class TestDsldAdapter:
    """Test DSLD identity and facts parsing"""

    def test_identity(self):
        adapter = DsldAdapter()

        assert adapter.identity({"dsld_label_id": 101}) == ("101", "101")

    def test_record_id_rejects_non_positive(self):
        adapter = DsldAdapter()

        assert adapter.record_id({"dsld_label_id": 0}) is None
        assert adapter.record_id({"dsld_label_id": "abc"}) is None
        assert adapter.record_id({"dsld_label_id": "42"}) == 42

    def test_label_facts(self):
        """Test actives, proprietary blends and inactive ingredients"""
        facts = DsldAdapter().label_facts({
            "actives": [
                {"name": " Zinc Gluconate ", "amount": "15", "unit": "mg"},
                {"name": "", "amount": 5, "unit": "mg"},
                "not a record",
            ],
            "proprietaryBlends": [
                {"name": "Energy Blend", "totalAmount": "250", "unit": "mg", "ingredients": "Caffeine; Green tea"},
            ],
            "inactive": "Cellulose; Silica",
        })

        # Assertions
        assert [(a.name, a.amount, a.unit) for a in facts.actives] == [("Zinc Gluconate", 15.0, "mg")]
        assert facts.proprietary_blends[0].total_amount == 250.0
        assert facts.proprietary_blends[0].ingredients == ["Caffeine", "Green tea"]
        assert facts.inactive == ["Cellulose", "Silica"]

    def test_label_facts_requires_object(self):
        adapter = DsldAdapter()

        assert adapter.label_facts(None) is None
        assert adapter.label_facts(["actives"]) is None
        assert adapter.label_facts({}).is_empty

    @pytest.mark.asyncio
    async def test_fetch_for_replay(self, store):
        record = await DsldAdapter().fetch_for_replay(store, "102", None)

        assert record["dsld_label_id"] == 102

    @pytest.mark.asyncio
    async def test_fetch_for_replay_missing(self, store):
        adapter = DsldAdapter()

        assert await adapter.fetch_for_replay(store, "999", None) is None
        assert await adapter.fetch_for_replay(store, "", None) is None


class TestLnhpdAdapter:
    """Test LNHPD identity, ingredient dedupe and form sub-fields"""

    def test_identity_prefers_npn(self):
        adapter = LnhpdAdapter()

        # Assertions
        assert adapter.identity({"lnhpd_id": 201, "npn": " 80012345 "}) == ("80012345", "201")
        assert adapter.identity({"lnhpd_id": 201, "npn": ""}) == ("201", "201")
        assert adapter.identity({"lnhpd_id": 201}) == ("201", "201")

    def test_duplicate_ingredients_merge(self):
        """The richest form fields and the first known amount win"""
        actives = extract_lnhpd_actives([
            {"ingredient_name": "Zinc", "proper_name": "Zinc gluconate"},
            {"medicinal_ingredient_name": "zinc", "quantity": "10", "quantity_unit": "mg",
             "source_material": "Zinc gluconate", "proper_name": "Zinc gluconate"},
            {"ingredient_name": "ZINC", "quantity": 25, "quantity_unit": "mg"},
        ])

        # Assertions
        assert len(actives) == 1
        assert actives[0].name == "Zinc"
        assert actives[0].amount == 10.0
        assert actives[0].unit == "mg"
        assert actives[0].form_fields["source_material"] == "Zinc gluconate"

    def test_ratio_fields(self):
        actives = extract_lnhpd_actives([
            {"ingredient_name": "Ashwagandha", "ratio_numerator": 4, "ratio_denominator": "1",
             "extract_type_desc": "Dry extract"},
        ])
        fields = actives[0].form_fields

        assert fields["ratio_numerator"] == 4
        assert fields["ratio_denominator"] == "1"
        assert fields["extract_type"] == "Dry extract"
        # extract_type 2, ingredient_name 1, ratio pair 2
        assert score_form_fields(fields) == 5

    def test_label_facts(self, lnhpd_records):
        facts = LnhpdAdapter().label_facts(dict(
            lnhpd_records[0]["facts_json"],
            nonMedicinalIngredients=[
                {"ingredient_name": "Magnesium stearate"},
                {"name": "magnesium stearate"},
                {"nonmedicinal_ingredient_name": "Silica"},
            ],
        ))

        # Assertions
        assert [(a.name, a.amount, a.unit) for a in facts.actives] == [("Zinc", 10.0, "mg")]
        assert facts.actives[0].form_fields["proper_name"] == "Zinc gluconate"
        assert facts.inactive == ["Magnesium stearate", "Silica"]

    def test_non_list_payloads(self):
        facts = LnhpdAdapter().label_facts({"medicinalIngredients": "Zinc"})

        assert facts.actives == []
        assert facts.inactive == []

    @pytest.mark.asyncio
    async def test_fetch_for_replay_by_canonical_id(self, store):
        record = await LnhpdAdapter().fetch_for_replay(store, "80012345", "201")

        assert record["lnhpd_id"] == 201

    @pytest.mark.asyncio
    async def test_fetch_for_replay_falls_back_to_npn(self, store):
        """Without a canonical id the NPN is tried as an lnhpd id, then as an NPN"""
        record = await LnhpdAdapter().fetch_for_replay(store, "80012345", None)

        assert record["lnhpd_id"] == 201


class TestGetAdapter:
    def test_known_sources(self):
        assert isinstance(get_adapter("dsld"), DsldAdapter)
        assert isinstance(get_adapter("lnhpd"), LnhpdAdapter)

    def test_unknown_source(self):
        with pytest.raises(ValueError):
            get_adapter("ocr")
