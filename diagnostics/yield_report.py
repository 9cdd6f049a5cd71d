"""
Form-raw yield report.

Dry-runs the token extractor and the form resolver over a product sample
and reports how many empty form_raw values a backfill could fill, which
rows are already filled, and why the rest are blocked.
"""

from collections import Counter
from typing import Any, Dict, List, Optional, Sequence
import logging

from core.text import to_number
from forms.resolver import FormResolver, Resolution, TaxonomyView
from forms.tokens import PROVENANCE_BUCKETS, extract_form_tokens
from ingestion.adapters import SourceAdapter, get_adapter
from schemas.product import ProductIngredientRow
from store.base import ReferenceStore, in_
from diagnostics.sampling import chunked, load_product_rows, ratio, sample_source_ids, top_counts

logger = logging.getLogger(__name__)

PREVIEW_LIMIT = 50


async def load_form_fields(
    store: ReferenceStore,
    adapter: SourceAdapter,
    canonical_ids: Sequence[str],
) -> Dict[str, Dict[str, Dict[str, Any]]]:
    """{canonical_source_id: {active name: form_fields}} read from the facts table"""
    numeric_ids = sorted({int(value) for value in (to_number(i) for i in canonical_ids) if value})
    fields: Dict[str, Dict[str, Dict[str, Any]]] = {}
    for chunk in chunked(numeric_ids):
        records = await store.select_all(adapter.table, adapter.columns, [in_(adapter.id_column, list(chunk))])
        for record in records:
            facts = adapter.label_facts(record.get("facts_json"))
            if facts is None:
                continue
            _, canonical = adapter.identity(record)
            fields[canonical] = {active.name: active.form_fields for active in facts.actives}
    return fields


async def load_ingredient_names(store: ReferenceStore, ingredient_ids: Sequence[str]) -> Dict[str, str]:
    names: Dict[str, str] = {}
    for chunk in chunked(list(ingredient_ids)):
        for row in await store.select_all("ingredients", ["id", "name"], [in_("id", list(chunk))]):
            if row.get("name"):
                names[str(row["id"])] = row["name"]
    return names


def _preview(row: ProductIngredientRow, tokens: List[str], reason: Resolution, form_text: Optional[str]):
    return {
        "sourceId": row.source_id,
        "canonicalSourceId": row.canonical_source_id,
        "ingredientId": row.ingredient_id,
        "nameRaw": row.name_raw,
        "tokens": tokens,
        "reason": reason.value,
        "formText": form_text,
    }


async def yield_report(
    store: ReferenceStore,
    source: str,
    source_ids: Optional[Sequence[str]] = None,
    limit: int = 1000,
    id_column: str = "source_id",
) -> Dict[str, Any]:
    """
    Estimate form_raw backfill yield over a sample.

    Only active rows with an ingredient id count ("resolved rows"). Every
    resolved row gets a resolver verdict; writable verdicts on empty rows
    and already_nonempty verdicts (a filled row whose tokens would resolve
    cleanly) are the two candidate buckets, everything else is blocked.
    """
    adapter = get_adapter(source)
    ids = list(source_ids) if source_ids is not None else await sample_source_ids(store, source, limit, id_column)
    rows = [
        row for row in await load_product_rows(store, source, ids, id_column)
        if row.is_active and row.ingredient_id
    ]
    ingredient_ids = sorted({row.ingredient_id for row in rows})
    resolver = FormResolver(await TaxonomyView.load(store, ingredient_ids))
    names = await load_ingredient_names(store, ingredient_ids)
    form_fields = await load_form_fields(
        store, adapter, sorted({row.canonical_source_id for row in rows if row.canonical_source_id})
    )

    counts = {
        "resolvedRows": len(rows),
        "missingFormRawRows": 0,
        "candidateFormRawRows": 0,
        "candidateWritableEmptyRows": 0,
        "candidateWritableAlreadyFilledRows": 0,
    }
    blocked: Counter = Counter()
    token_sources = {bucket: 0 for bucket in PROVENANCE_BUCKETS}
    excluded: Counter = Counter()
    preview: List[Dict[str, Any]] = []

    for row in rows:
        if not row.has_form:
            counts["missingFormRawRows"] += 1

        fields = form_fields.get(row.canonical_source_id or "", {}).get(row.name_raw)
        extraction = extract_form_tokens(row.name_raw, names.get(row.ingredient_id), fields)
        if extraction.excluded_reason:
            excluded[extraction.excluded_reason] += 1
        if extraction.tokens:
            for bucket in extraction.sources():
                token_sources[bucket] += 1
            if not row.has_form:
                counts["candidateFormRawRows"] += 1

        verdict = resolver.resolve(extraction.tokens, row.ingredient_id, row.form_raw)
        if verdict.reason == Resolution.WRITABLE:
            counts["candidateWritableEmptyRows"] += 1
        elif verdict.reason == Resolution.ALREADY_NONEMPTY:
            counts["candidateWritableAlreadyFilledRows"] += 1
        else:
            blocked[verdict.reason.value] += 1

        if not row.has_form and len(preview) < PREVIEW_LIMIT:
            preview.append(_preview(row, extraction.tokens, verdict.reason, verdict.form_text))

    resolved = counts["resolvedRows"]
    logger.info(
        f"Yield report {source}: {counts['candidateWritableEmptyRows']} writable of "
        f"{counts['missingFormRawRows']} empty form_raw rows"
    )
    return {
        "source": source,
        "sampleSize": len(ids),
        **counts,
        "ratios": {
            "missingFormRaw": ratio(counts["missingFormRawRows"], resolved),
            "candidateFormRaw": ratio(counts["candidateFormRawRows"], resolved),
            "candidateWritableEmpty": ratio(counts["candidateWritableEmptyRows"], resolved),
            "candidateWritableAlreadyFilled": ratio(counts["candidateWritableAlreadyFilledRows"], resolved),
        },
        "blockedByReason": top_counts(dict(blocked), len(blocked), label="reason"),
        "candidateTokenSources": token_sources,
        "excludedByGuard": dict(excluded),
        "previewRows": preview,
    }
