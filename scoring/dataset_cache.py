"""
Reference-data snapshot for score computation.

DatasetCache holds everything the score engine reads besides the product's
own rows: ingredient metadata, evidence, forms, aliases, citations and the
dataset version tag. A batch run loads it once and passes it explicitly to
every cached score call; the uncached path loads a snapshot restricted to one
product's ingredients. Both paths slice it through ``for_ingredients`` so
they see the same rows in the same order.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from core.exceptions import ReferenceDataError, StoreError
from forms.resolver import TaxonomyView
from schemas.ingredient import IngredientEvidenceRow, IngredientFormAliasRow, IngredientFormRow, IngredientMeta
from store.base import Order, ReferenceStore, eq, in_

logger = logging.getLogger(__name__)

DATASET_VERSION_KEY = "ingredient_dataset"

META_COLUMNS = ["id", "unit", "rda_adult", "ul_adult", "goals"]
EVIDENCE_COLUMNS = [
    "id", "ingredient_id", "goal", "min_effective_dose", "optimal_dose_range", "evidence_grade", "audit_status",
]
FORM_COLUMNS = [
    "id", "ingredient_id", "form_key", "form_label", "relative_factor", "confidence", "evidence_grade", "audit_status",
]
ALIAS_COLUMNS = [
    "id", "alias_text", "alias_norm", "form_key", "ingredient_id", "confidence", "audit_status", "source",
]


@dataclass
class ReferenceData:
    """Reference rows for one product's ingredients"""
    ingredient_meta: Dict[str, IngredientMeta] = field(default_factory=dict)
    evidence: List[IngredientEvidenceRow] = field(default_factory=list)
    forms: List[IngredientFormRow] = field(default_factory=list)
    aliases: List[IngredientFormAliasRow] = field(default_factory=list)
    evidence_citations: Dict[str, List[str]] = field(default_factory=dict)
    form_citations: Dict[str, List[str]] = field(default_factory=dict)
    dataset_version: Optional[str] = None


def map_citations(rows: Sequence[Dict[str, Any]], key: str) -> Dict[str, List[str]]:
    """Group citation ids by evidence/form id, unique and in first-seen order."""
    output: Dict[str, List[str]] = {}
    for row in rows:
        owner = row.get(key)
        citation = row.get("citation_id")
        if not owner or not citation:
            continue
        bucket = output.setdefault(str(owner), [])
        if citation not in bucket:
            bucket.append(citation)
    return output


def _group(rows, attribute: str) -> Dict[str, list]:
    grouped: Dict[str, list] = {}
    for row in rows:
        owner = getattr(row, attribute)
        if owner:
            grouped.setdefault(owner, []).append(row)
    return grouped


class DatasetCache:
    """
    Read-only reference snapshot.

    Responsibilities:
    - Load reference tables once (optionally restricted to ingredient ids)
    - Serve per-product ReferenceData slices in a stable order
    - Expose the form taxonomy view used by the resolver
    """

    def __init__(
        self,
        ingredient_meta: Dict[str, IngredientMeta],
        evidence: List[IngredientEvidenceRow],
        forms: List[IngredientFormRow],
        aliases: List[IngredientFormAliasRow],
        evidence_citations: Dict[str, List[str]],
        form_citations: Dict[str, List[str]],
        dataset_version: Optional[str] = None,
    ):
        self.ingredient_meta = ingredient_meta
        self.evidence = evidence
        self.forms = forms
        self.aliases = aliases
        self.evidence_citations = evidence_citations
        self.form_citations = form_citations
        self.dataset_version = dataset_version

        self.evidence_by_ingredient = _group(evidence, "ingredient_id")
        self.forms_by_ingredient = _group(forms, "ingredient_id")
        self.global_aliases = [alias for alias in aliases if alias.is_global]
        self.aliases_by_ingredient = _group([alias for alias in aliases if not alias.is_global], "ingredient_id")

    @classmethod
    async def load(
        cls,
        store: ReferenceStore,
        ingredient_ids: Optional[Sequence[str]] = None,
    ) -> "DatasetCache":
        """
        Read the reference tables.

        Args:
            store: Reference store client
            ingredient_ids: Restrict meta, evidence, forms and scoped aliases to
                these ingredients (global aliases are always loaded). None
                loads every row.

        Raises:
            ReferenceDataError: If any table read fails
        """
        ids = None if ingredient_ids is None else sorted({str(i) for i in ingredient_ids if i})
        table = "scoring_dataset_state"
        try:
            state = await store.select_one(table, ["version"], [eq("key", DATASET_VERSION_KEY)])
            version = state.get("version") if state else None
            dataset_version = version.strip() if isinstance(version, str) and version.strip() else None

            by_id = [Order("id")]
            if ids is None:
                table = "ingredients"
                meta_rows = await store.select_all(table, META_COLUMNS, order=by_id)
                table = "ingredient_evidence"
                evidence_rows = await store.select_all(table, EVIDENCE_COLUMNS, order=by_id)
                table = "ingredient_forms"
                form_rows = await store.select_all(table, FORM_COLUMNS, order=by_id)
                table = "ingredient_form_aliases"
                alias_rows = await store.select_all(table, ALIAS_COLUMNS, order=by_id)
                table = "ingredient_evidence_citations"
                evidence_citation_rows = await store.select_all(table, ["evidence_id", "citation_id"], order=by_id)
                table = "ingredient_form_citations"
                form_citation_rows = await store.select_all(table, ["form_id", "citation_id"], order=by_id)
            else:
                meta_rows, evidence_rows, form_rows, evidence_citation_rows, form_citation_rows = [], [], [], [], []
                if ids:
                    table = "ingredients"
                    meta_rows = await store.select_all(table, META_COLUMNS, [in_("id", ids)], by_id)
                    table = "ingredient_evidence"
                    evidence_rows = await store.select_all(table, EVIDENCE_COLUMNS, [in_("ingredient_id", ids)], by_id)
                    table = "ingredient_forms"
                    form_rows = await store.select_all(table, FORM_COLUMNS, [in_("ingredient_id", ids)], by_id)
                table = "ingredient_form_aliases"
                alias_rows = await store.select_all(table, ALIAS_COLUMNS, order=by_id)
                alias_rows = [row for row in alias_rows if not row.get("ingredient_id") or str(row["ingredient_id"]) in ids]
                evidence_ids = [row["id"] for row in evidence_rows]
                form_ids = [row["id"] for row in form_rows]
                if evidence_ids:
                    table = "ingredient_evidence_citations"
                    evidence_citation_rows = await store.select_all(
                        table, ["evidence_id", "citation_id"], [in_("evidence_id", evidence_ids)], by_id
                    )
                if form_ids:
                    table = "ingredient_form_citations"
                    form_citation_rows = await store.select_all(
                        table, ["form_id", "citation_id"], [in_("form_id", form_ids)], by_id
                    )
        except StoreError as e:
            raise ReferenceDataError(
                f"Failed to read reference data from {table}",
                context={"table_name": table, "ingredient_count": None if ids is None else len(ids)},
                original_exception=e,
            )

        cache = cls(
            ingredient_meta={str(row["id"]): IngredientMeta(**row) for row in meta_rows if row.get("id")},
            evidence=[IngredientEvidenceRow(**row) for row in evidence_rows],
            forms=[IngredientFormRow(**row) for row in form_rows],
            aliases=[IngredientFormAliasRow(**row) for row in alias_rows],
            evidence_citations=map_citations(evidence_citation_rows, "evidence_id"),
            form_citations=map_citations(form_citation_rows, "form_id"),
            dataset_version=dataset_version,
        )
        if ids is None:
            logger.info(
                f"Loaded dataset cache: {len(cache.ingredient_meta)} ingredients, "
                f"{len(cache.evidence)} evidence rows, {len(cache.forms)} forms, "
                f"{len(cache.aliases)} aliases (version={dataset_version})"
            )
        return cache

    def for_ingredients(self, ingredient_ids: Sequence[str]) -> ReferenceData:
        """Slice the snapshot for one product (ids in first-seen row order)."""
        data = ReferenceData(
            aliases=list(self.global_aliases),
            evidence_citations=self.evidence_citations,
            form_citations=self.form_citations,
            dataset_version=self.dataset_version,
        )
        for ingredient_id in ingredient_ids:
            meta = self.ingredient_meta.get(ingredient_id)
            if meta is not None:
                data.ingredient_meta[ingredient_id] = meta
            data.evidence.extend(self.evidence_by_ingredient.get(ingredient_id, []))
            data.forms.extend(self.forms_by_ingredient.get(ingredient_id, []))
            data.aliases.extend(self.aliases_by_ingredient.get(ingredient_id, []))
        return data

    def taxonomy(self) -> TaxonomyView:
        return TaxonomyView.from_rows(self.forms, self.aliases)
