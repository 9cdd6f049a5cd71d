"""
Unit tests for the form resolver
"""

import pytest

from core.exceptions import ConditionalUpdateError, ReferenceDataError, NetworkError
from forms.aliases import builtin_form_aliases, merge_form_aliases, seed_builtin_aliases
from forms.resolver import FormResolver, Resolution, TaxonomyView, Verdict, apply_verdict
from scoring.dataset_cache import DatasetCache
from schemas.ingredient import IngredientFormAliasRow, IngredientFormRow
from store.memory_store import InMemoryReferenceStore


def form(ingredient_id, form_key):
    return IngredientFormRow(id=f"{ingredient_id}-{form_key}", ingredient_id=ingredient_id, form_key=form_key)


def alias(alias_text, form_key, ingredient_id=None, alias_id=None):
    return IngredientFormAliasRow(
        id=alias_id or f"{alias_text}-{form_key}-{ingredient_id or 'global'}",
        alias_text=alias_text,
        form_key=form_key,
        ingredient_id=ingredient_id,
    )


@pytest.fixture
def resolver():
    taxonomy = TaxonomyView.from_rows(
        [
            form("ing-mag", "citrate"),
            form("ing-mag", "Oxide"),
            form("ing-mag", "glycinate"),
            form("ing-zinc", "gluconate"),
        ],
        [
            alias("chelate", "glycinate", ingredient_id="ing-mag"),
            alias("malate", "l_threonate"),
            alias("bisglycinate", "glycinate"),
        ],
    )
    return FormResolver(taxonomy)


class TestTaxonomyView:
    """Test taxonomy snapshot construction"""

    def test_form_keys_are_lowercased(self, resolver):
        """Test form keys are normalized when indexed"""
        assert resolver.taxonomy.known_forms("ing-mag") == {"citrate", "oxide", "glycinate"}
        assert resolver.taxonomy.known_forms(None) == set()
        assert resolver.taxonomy.known_forms("ing-unknown") == set()

    def test_first_alias_wins(self):
        """Test the first alias seen for a normalized text is kept"""
        view = TaxonomyView.from_rows([], [alias("Malate", "malate"), alias("malate", "l_threonate")])

        assert view.global_aliases == {"malate": "malate"}

    def test_scoped_alias_precedes_global(self):
        view = TaxonomyView.from_rows(
            [],
            [alias("chelate", "bisglycinate"), alias("chelate", "glycinate", ingredient_id="ing-mag")],
        )

        assert view.alias_target("chelate", "ing-mag") == "glycinate"
        assert view.alias_target("chelate", "ing-zinc") == "bisglycinate"
        assert view.alias_target("", "ing-mag") is None

    def test_recognized_form_keys(self, resolver):
        keys = resolver.taxonomy.recognized_form_keys

        assert {"citrate", "oxide", "gluconate", "l_threonate", "glycinate"} <= keys

    @pytest.mark.asyncio
    async def test_load_reads_store(self, reference_tables):
        """Test loading forms and aliases for a set of ingredients"""
        store = InMemoryReferenceStore(reference_tables)

        view = await TaxonomyView.load(store, ["ing-zinc", "ing-mag", None])

        # Assertions
        assert view.known_forms("ing-zinc") == {"gluconate"}
        assert view.known_forms("ing-mag") == {"citrate", "oxide"}
        assert view.global_aliases == {"malate": "l_threonate"}

    @pytest.mark.asyncio
    async def test_load_failure_raises_reference_data_error(self, reference_tables):
        store = InMemoryReferenceStore(reference_tables)
        store.inject_failure("select", "ingredient_forms", NetworkError("fetch failed", status=503))

        with pytest.raises(ReferenceDataError):
            await TaxonomyView.load(store, ["ing-zinc"])


class TestFormResolver:
    """Test verdict classification and its precedence"""

    def test_no_tokens(self, resolver):
        assert resolver.resolve([], "ing-mag").reason == Resolution.NO_TOKENS

    def test_no_known_forms(self, resolver):
        """Ingredients without known forms never map"""
        assert resolver.resolve(["gluconate"], "ing-unknown").reason == Resolution.NO_MAP_TO_FORM_KEY
        assert resolver.resolve(["gluconate"], None).reason == Resolution.NO_MAP_TO_FORM_KEY

    def test_no_token_maps(self, resolver):
        assert resolver.resolve(["powder"], "ing-mag").reason == Resolution.NO_MAP_TO_FORM_KEY

    def test_direct_form_match_is_writable(self, resolver):
        """Test a token equal to a known form key"""
        verdict = resolver.resolve(["citrate"], "ing-mag")

        # Assertions
        assert verdict.reason == Resolution.WRITABLE
        assert verdict.writable
        assert verdict.form_text == "citrate"
        assert verdict.form_keys == ["citrate"]

    def test_scoped_alias_is_writable(self, resolver):
        verdict = resolver.resolve(["chelate"], "ing-mag")

        assert verdict.reason == Resolution.WRITABLE
        assert verdict.form_keys == ["glycinate"]
        assert verdict.form_text == "chelate"

    def test_tokens_reaching_same_key_join(self, resolver):
        """Several tokens mapping to one key write all mapped tokens"""
        verdict = resolver.resolve(["chelate", "powder", "glycinate"], "ing-mag")

        assert verdict.reason == Resolution.WRITABLE
        assert verdict.mapped_tokens == ["chelate", "glycinate"]
        assert verdict.form_text == "chelate glycinate"

    def test_taxonomy_conflict(self, resolver):
        """An alias pointing outside the ingredient's forms is a conflict"""
        verdict = resolver.resolve(["malate"], "ing-mag")

        # Assertions
        assert verdict.reason == Resolution.TAXONOMY_CONFLICT
        assert verdict.conflict_keys == ["l_threonate"]
        assert verdict.form_text is None
        assert not verdict.writable

    def test_conflict_precedes_ambiguity(self, resolver):
        verdict = resolver.resolve(["citrate", "malate"], "ing-mag")

        assert verdict.reason == Resolution.TAXONOMY_CONFLICT

    def test_ambiguous_tokens(self, resolver):
        verdict = resolver.resolve(["citrate", "oxide"], "ing-mag")

        assert verdict.reason == Resolution.AMBIGUOUS_TOKENS
        assert verdict.form_keys == ["citrate", "oxide"]

    def test_already_nonempty(self, resolver):
        """A non-empty form_raw is never overwritten"""
        verdict = resolver.resolve(["citrate"], "ing-mag", form_raw="Magnesium citrate")

        assert verdict.reason == Resolution.ALREADY_NONEMPTY
        assert resolver.resolve(["citrate"], "ing-mag", form_raw="   ").reason == Resolution.WRITABLE

    def test_deterministic(self, resolver):
        first = resolver.resolve(["chelate", "citrate"], "ing-mag")
        second = resolver.resolve(["chelate", "citrate"], "ing-mag")

        assert first == second


class TestApplyVerdict:
    """Test the conditional form_raw write"""

    @pytest.mark.asyncio
    async def test_writes_when_empty(self):
        """Test the write lands on an empty form_raw"""
        store = InMemoryReferenceStore({"product_ingredients": [{"id": 7, "form_raw": None}]})
        verdict = Verdict(Resolution.WRITABLE, form_text="gluconate", form_keys=["gluconate"])

        affected = await apply_verdict(store, 7, verdict)

        # Assertions
        assert affected == 1
        assert store.rows("product_ingredients")[0]["form_raw"] == "gluconate"

    @pytest.mark.asyncio
    async def test_conditional_update_error_when_filled(self):
        store = InMemoryReferenceStore({"product_ingredients": [{"id": 7, "form_raw": "oxide"}]})
        verdict = Verdict(Resolution.WRITABLE, form_text="gluconate", form_keys=["gluconate"])

        with pytest.raises(ConditionalUpdateError):
            await apply_verdict(store, 7, verdict)

        assert store.rows("product_ingredients")[0]["form_raw"] == "oxide"

    @pytest.mark.asyncio
    async def test_rejects_non_writable(self):
        store = InMemoryReferenceStore({"product_ingredients": [{"id": 7, "form_raw": None}]})

        with pytest.raises(ValueError):
            await apply_verdict(store, 7, Verdict(Resolution.TAXONOMY_CONFLICT))

        assert store.count_calls("update") == 0


class TestFormAliases:
    """Test builtin alias seeds and merging"""

    def test_seeds_are_global_and_derived(self):
        seeds = builtin_form_aliases()
        by_norm = {row.norm: row for row in seeds}

        # Assertions
        assert by_norm["threonate"].form_key == "l_threonate"
        assert by_norm["gluconate"].form_key == "gluconate"
        assert all(row.is_global for row in seeds)
        assert {row.audit_status for row in seeds} == {"derived"}

    def test_database_row_overrides_seed(self):
        """A database alias with the same key replaces the seed"""
        db_row = IngredientFormAliasRow(
            id="db-gluconate", alias_text="Gluconate", form_key="gluconate", audit_status="verified"
        )
        baseline = merge_form_aliases([])

        merged = merge_form_aliases([db_row])
        gluconate = [row for row in merged if row.norm == "gluconate" and row.form_key == "gluconate"]

        # Assertions
        assert len(merged) == len(baseline)
        assert len(gluconate) == 1
        assert gluconate[0].id == "db-gluconate"
        assert gluconate[0].audit_status == "verified"

    def test_scoped_database_row_is_added(self):
        merged = merge_form_aliases([alias("gluconate", "gluconate", ingredient_id="ing-zinc")])

        assert len(merged) == len(merge_form_aliases([])) + 1
        assert merged[-1].ingredient_id == "ing-zinc"


class TestSeedBuiltinAliases:
    """Test writing builtin seeds into the alias table"""

    @pytest.mark.asyncio
    async def test_writes_missing_seeds_once(self, reference_tables):
        reference_tables["ingredient_form_aliases"].append(
            {"id": "alias-citrate", "alias_text": "Citrate", "alias_norm": "citrate", "form_key": "citrate",
             "ingredient_id": None, "confidence": 0.9, "audit_status": "verified", "source": "import"}
        )
        store = InMemoryReferenceStore(reference_tables)
        pairs = {f"{row.norm}:{row.form_key}" for row in builtin_form_aliases()}

        summary = await seed_builtin_aliases(store)

        # Assertions
        assert summary["existing"] == 2
        assert summary["missing"] == len(pairs) - 1
        assert summary["inserted"] == len(pairs) - 1
        rows = {row["id"]: row for row in store.rows("ingredient_form_aliases")}
        assert rows["alias-citrate"]["audit_status"] == "verified"
        assert rows["alias-malate"]["form_key"] == "l_threonate"
        seeded = [row for row in rows.values() if row["source"] == "seed"]
        assert {row["audit_status"] for row in seeded} == {"derived"}
        assert all(row["ingredient_id"] is None for row in seeded)
        assert "citrate:citrate" not in {f"{row['alias_norm']}:{row['form_key']}" for row in seeded}
        assert "malate:malate" in {f"{row['alias_norm']}:{row['form_key']}" for row in seeded}

        again = await seed_builtin_aliases(store)
        assert again["missing"] == 0
        assert again["inserted"] == 0

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, reference_tables):
        store = InMemoryReferenceStore(reference_tables)

        summary = await seed_builtin_aliases(store, dry_run=True)

        # Assertions
        assert summary["dryRun"] is True
        assert summary["missing"] > 0
        assert summary["inserted"] == 0
        assert store.count_calls("upsert") == 0

    @pytest.mark.asyncio
    async def test_seeded_alias_resolves_through_dataset_cache(self, reference_tables):
        """A seed only reaches the resolver once it is written to the table"""
        store = InMemoryReferenceStore(reference_tables)
        before = FormResolver((await DatasetCache.load(store)).taxonomy())
        assert before.resolve(["tri-citrate"], "ing-mag").reason == Resolution.NO_MAP_TO_FORM_KEY

        await seed_builtin_aliases(store)
        verdict = FormResolver((await DatasetCache.load(store)).taxonomy()).resolve(["tri-citrate"], "ing-mag")

        # Assertions
        assert verdict.reason == Resolution.WRITABLE
        assert verdict.form_keys == ["citrate"]

    @pytest.mark.asyncio
    async def test_read_failure_raises_reference_data_error(self, reference_tables):
        store = InMemoryReferenceStore(reference_tables)
        store.inject_failure("select", "ingredient_form_aliases", NetworkError("fetch failed", status=503))

        with pytest.raises(ReferenceDataError):
            await seed_builtin_aliases(store)
