"""
Unit tests for the v4 score engine
"""

import pytest

from core.exceptions import NetworkError, ReferenceDataError
from schemas.product import ProductIngredientRow
from scoring.dataset_cache import DatasetCache
from scoring.engine import (
    V4_SCORE_VERSION,
    ScoreEngine,
    build_inputs_hash,
    resolve_daily_multiplier,
)
from store.memory_store import InMemoryReferenceStore

ZINC_ROW = {
    "source": "dsld",
    "source_id": "101",
    "canonical_source_id": "101",
    "ingredient_id": "ing-zinc",
    "name_raw": "Zinc Gluconate",
    "form_raw": "gluconate",
    "amount": 15,
    "unit": "mg",
    "amount_normalized": 15,
    "unit_normalized": "mg",
    "unit_kind": "mass",
    "amount_unknown": False,
    "basis": "label_serving",
    "is_active": True,
    "is_proprietary_blend": False,
    "parse_confidence": 0.9,
}


@pytest.fixture
def engine_store(reference_tables, lnhpd_records):
    store = InMemoryReferenceStore(reference_tables)
    store.seed("lnhpd_facts", lnhpd_records)
    store.seed("product_ingredients", [
        ZINC_ROW,
        dict(ZINC_ROW, name_raw="Cellulose", ingredient_id=None, form_raw=None, amount=None, unit=None,
             amount_normalized=None, unit_normalized=None, unit_kind=None, amount_unknown=True, is_active=False),
        dict(ZINC_ROW, source="lnhpd", source_id="80012345", canonical_source_id="201", parse_confidence=0.95),
        dict(ZINC_ROW, source_id="103", canonical_source_id="103", name_raw="Rice flour", ingredient_id=None,
             is_active=False),
    ])
    return store


def zinc_row(**overrides):
    return ProductIngredientRow(**dict(ZINC_ROW, **overrides))


class TestInputsHash:
    """Test the idempotence hash"""

    def test_order_independent(self):
        """Test the hash ignores row order"""
        rows = [zinc_row(), zinc_row(name_raw="Magnesium", ingredient_id="ing-mag")]

        assert build_inputs_hash(rows, 1.0, "default_no_dosing_info", "v1") == build_inputs_hash(
            list(reversed(rows)), 1.0, "default_no_dosing_info", "v1"
        )

    def test_integral_floats_match_ints(self):
        rows = [zinc_row()]

        assert build_inputs_hash(rows, 2.0, "lnhpd_dose", "v1") == build_inputs_hash(rows, 2, "lnhpd_dose", "v1")

    def test_inputs_change_hash(self):
        """Form text, multiplier and dataset version all feed the hash"""
        base = build_inputs_hash([zinc_row()], 1.0, "default_no_dosing_info", "v1")

        # Assertions
        assert len(base) == 64
        assert build_inputs_hash([zinc_row(form_raw=None)], 1.0, "default_no_dosing_info", "v1") != base
        assert build_inputs_hash([zinc_row()], 2.0, "lnhpd_dose", "v1") != base
        assert build_inputs_hash([zinc_row()], 1.0, "default_no_dosing_info", "v2") != base


class TestResolveDailyMultiplier:
    """Test per-source multiplier resolution"""

    def test_non_lnhpd_uses_default(self):
        multiplier = resolve_daily_multiplier("dsld", "101", {"doses": []})

        assert multiplier.multiplier == 1.0
        assert multiplier.source == "default_no_dosing_info"

    def test_lnhpd_without_canonical_id(self):
        multiplier = resolve_daily_multiplier("lnhpd", None, None)

        assert multiplier.source == "default_missing_canonical"
        assert multiplier.penalty_reason == "missing_canonical_id"

    def test_lnhpd_without_facts(self):
        multiplier = resolve_daily_multiplier("lnhpd", "201", None)

        assert multiplier.penalty_reason == "missing_facts"
        assert multiplier.lnhpd_id_used_for_dose_lookup == "201"


class TestScoreEngine:
    """Test the uncached and cached engine paths"""

    @pytest.mark.asyncio
    async def test_compute_bundle(self, engine_store):
        """Test a single-ingredient product with verified evidence and form"""
        engine = ScoreEngine(engine_store)

        result = await engine.compute("dsld", "101")
        bundle = result.bundle

        # Assertions
        assert result.source_id_for_write == "101"
        assert bundle["pillars"] == {"effectiveness": 100.0, "safety": 80.0, "integrity": 100.0}
        assert bundle["confidence"] == 0.9
        assert bundle["overallScore"] == pytest.approx(89.71, abs=0.01)
        assert bundle["confidenceLabel"] == "high"
        assert bundle["bestFitGoals"] == [{"goal": "immune", "label": "Immune", "score": 85}]
        assert bundle["flags"] == []
        assert [h["code"] for h in bundle["highlights"]] == [
            "FULL_DISCLOSURE", "FOCUSED_FORMULA", "HIGH_PARSE_CONFIDENCE",
        ]

    @pytest.mark.asyncio
    async def test_provenance_and_explain(self, engine_store):
        engine = ScoreEngine(engine_store)

        result = await engine.compute("dsld", "101")
        provenance = result.bundle["provenance"]
        explain = result.bundle["explain"]

        # Assertions
        assert provenance["scoreVersion"] == V4_SCORE_VERSION
        assert provenance["inputsHash"] == result.inputs_hash
        assert provenance["datasetVersion"] == "2024-06-01"
        assert provenance["computedAt"].endswith("Z")
        assert explain["coverage"] == {
            "activeCount": 1, "knownDoseCount": 1, "coverageRatio": 1.0, "proprietaryBlendCount": 0,
        }
        assert explain["evidence"]["formCoverageRatio"] == 1.0
        assert explain["evidence"]["formSignals"][0]["formKey"] == "gluconate"
        assert explain["evidence"]["audit"]["verifiedEvidence"][0]["refIds"] == ["ref-zinc-1"]
        assert explain["evidence"]["citations"]["evidenceReferenceIds"] == ["ref-zinc-1"]
        assert explain["assumptions"]["datasetVersion"] == "2024-06-01"
        assert "lnhpdIdUsedForDoseLookup" not in explain["assumptions"]

    @pytest.mark.asyncio
    async def test_score_row(self, engine_store):
        result = await ScoreEngine(engine_store).compute("dsld", "101")

        score_row = result.to_score_row("dsld")

        assert score_row["source_id"] == "101"
        assert score_row["score_version"] == V4_SCORE_VERSION
        assert score_row["inputs_hash"] == result.inputs_hash
        assert score_row["overall_score"] == result.overall_score

    @pytest.mark.asyncio
    async def test_lnhpd_reads_by_canonical_id(self, engine_store):
        """LNHPD rows are found by canonical id and written under the NPN"""
        result = await ScoreEngine(engine_store).compute("lnhpd", "201")
        assumptions = result.bundle["explain"]["assumptions"]

        # Assertions
        assert result.source_id_for_write == "80012345"
        assert result.canonical_source_id == "201"
        assert assumptions["dailyMultiplier"] == 2.0
        assert assumptions["dailyMultiplierSource"] == "lnhpd_dose"
        assert assumptions["lnhpdIdUsedForDoseLookup"] == "201"
        assert assumptions["doseRowsFound"] == 1

    @pytest.mark.asyncio
    async def test_no_rows_or_no_active_rows(self, engine_store):
        engine = ScoreEngine(engine_store)

        assert await engine.compute("dsld", "999") is None
        assert await engine.compute("dsld", "103") is None

    @pytest.mark.asyncio
    async def test_cached_matches_uncached(self, engine_store):
        """Test both paths give the same hash and scores"""
        engine = ScoreEngine(engine_store)
        uncached = await engine.compute("dsld", "101")
        lookup = await engine.fetch_product_rows("dsld", "101")
        multiplier = await engine.fetch_daily_multiplier("dsld", lookup.canonical_source_id)
        cache = await DatasetCache.load(engine_store)

        cached = engine.compute_cached(lookup.rows, "dsld", "101", lookup.canonical_source_id, multiplier, cache)

        # Assertions
        assert cached.inputs_hash == uncached.inputs_hash
        assert cached.bundle["overallScore"] == uncached.bundle["overallScore"]
        assert cached.bundle["pillars"] == uncached.bundle["pillars"]
        assert cached.bundle["explain"] == uncached.bundle["explain"]
        assert await engine.compute_inputs_hash("dsld", "101") == uncached.inputs_hash

    @pytest.mark.asyncio
    async def test_cached_without_active_rows(self, engine_store):
        engine = ScoreEngine(engine_store)
        cache = await DatasetCache.load(engine_store)
        multiplier = resolve_daily_multiplier("dsld", "103", None)

        assert engine.compute_cached([zinc_row(is_active=False)], "dsld", "103", "103", multiplier, cache) is None

    @pytest.mark.asyncio
    async def test_reference_read_failure(self, engine_store):
        engine_store.inject_failure("select", "scoring_dataset_state", NetworkError("gateway timeout", status=504))

        with pytest.raises(ReferenceDataError):
            await ScoreEngine(engine_store).fetch_dataset_version()


class TestDatasetCache:
    """Test reference snapshot loading and slicing"""

    @pytest.mark.asyncio
    async def test_load_and_slice(self, reference_tables):
        cache = await DatasetCache.load(InMemoryReferenceStore(reference_tables))

        data = cache.for_ingredients(["ing-zinc"])

        # Assertions
        assert cache.dataset_version == "2024-06-01"
        assert set(cache.ingredient_meta) == {"ing-mag", "ing-vitc", "ing-zinc"}
        assert list(data.ingredient_meta) == ["ing-zinc"]
        assert [row.id for row in data.forms] == ["form-zn-gluc"]
        assert [row.id for row in data.evidence] == ["ev-zn-immune"]
        assert [row.id for row in data.aliases] == ["alias-malate"]
        assert data.evidence_citations == {"ev-zn-immune": ["ref-zinc-1"]}

    @pytest.mark.asyncio
    async def test_restricted_load(self, reference_tables):
        cache = await DatasetCache.load(InMemoryReferenceStore(reference_tables), ["ing-mag"])

        assert set(cache.ingredient_meta) == {"ing-mag"}
        assert [row.form_key for row in cache.forms] == ["citrate", "oxide"]
        assert cache.taxonomy().global_aliases == {"malate": "l_threonate"}

    @pytest.mark.asyncio
    async def test_load_failure(self, reference_tables):
        store = InMemoryReferenceStore(reference_tables)
        store.inject_failure("select", "ingredient_forms", NetworkError("fetch failed", status=503))

        with pytest.raises(ReferenceDataError) as exc_info:
            await DatasetCache.load(store)

        assert exc_info.value.context["table_name"] == "ingredient_forms"
