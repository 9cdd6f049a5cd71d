"""
Form coverage report over stored v4 scores.

Samples the most recent product_scores rows of a source, counts products
whose explain payload reports zero form coverage, and breaks their active
rows down by why no form was credited.
"""

from collections import Counter
from typing import Any, Dict, List, Optional
import logging

from core.text import normalize_text, to_number
from models.base import AuditStatus
from scoring.dataset_cache import DatasetCache
from scoring.engine import V4_SCORE_VERSION
from store.base import Order, ReferenceStore, eq
from diagnostics.sampling import load_product_rows, ratio, top_counts
from diagnostics.taxonomy import (
    MATCHED,
    TAXONOMY_MISMATCH,
    aliases_for,
    check_candidate,
    forms_for,
    qualifier_text,
)

logger = logging.getLogger(__name__)

TOP_TOKENS = 30

REASON_KEYS = [
    "activeRows",
    "ingredientIdMissing",
    "ingredientFormsMissingAny",
    "ingredientFormsMissingVerified",
    "formRawMissing",
    "taxonomyMismatch",
    "formRawNoMatch",
    "matched",
]


def form_coverage_ratio(explain_json: Any) -> Optional[float]:
    """explain.evidence.formCoverageRatio as a number, None when absent"""
    if not isinstance(explain_json, dict):
        return None
    evidence = explain_json.get("evidence")
    if not isinstance(evidence, dict):
        return None
    return to_number(evidence.get("formCoverageRatio"))


async def coverage_report(
    store: ReferenceStore,
    source: str,
    limit: int = 500,
) -> Dict[str, Any]:
    scores = await store.select(
        "product_scores",
        ["source_id", "explain_json", "computed_at"],
        [eq("source", source), eq("score_version", V4_SCORE_VERSION)],
        [Order("computed_at", ascending=False)],
        limit=limit,
    )
    zero_ids: List[str] = []
    for score in scores:
        value = form_coverage_ratio(score.get("explain_json"))
        if value is not None and value <= 0:
            zero_ids.append(str(score["source_id"]))

    breakdown = {key: 0 for key in REASON_KEYS}
    tokens: Counter = Counter()

    if zero_ids:
        rows = [row for row in await load_product_rows(store, source, zero_ids) if row.is_active]
        cache = await DatasetCache.load(store, sorted({row.ingredient_id for row in rows if row.ingredient_id}))
        breakdown["activeRows"] = len(rows)

        for row in rows:
            if not row.ingredient_id:
                breakdown["ingredientIdMissing"] += 1
                continue
            forms = forms_for(cache, row.ingredient_id)
            if not forms:
                breakdown["ingredientFormsMissingAny"] += 1
            if not any(form.audit_status == AuditStatus.VERIFIED.value for form in forms):
                breakdown["ingredientFormsMissingVerified"] += 1
            if not row.has_form:
                breakdown["formRawMissing"] += 1

            candidate = row.form_raw if row.has_form else row.name_raw
            check = check_candidate(candidate, forms, aliases_for(cache, row.ingredient_id))
            if check.status == MATCHED:
                breakdown["matched"] += 1
                continue

            token = normalize_text(row.form_raw) if row.has_form else qualifier_text(row.name_raw)
            if token:
                tokens[token] += 1
            if check.status == TAXONOMY_MISMATCH:
                breakdown["taxonomyMismatch"] += 1
            elif row.has_form and forms:
                breakdown["formRawNoMatch"] += 1

    active = breakdown["activeRows"]
    reason_breakdown: Dict[str, Any] = dict(breakdown)
    for key in REASON_KEYS[1:]:
        reason_breakdown[f"{key}Ratio"] = ratio(breakdown[key], active)

    logger.info(f"Coverage report {source}: {len(zero_ids)}/{len(scores)} products with zero form coverage")
    return {
        "source": source,
        "sampleSize": len(scores),
        "zeroCoverageCount": len(zero_ids),
        "zeroCoverageRatio": ratio(len(zero_ids), len(scores)),
        "reasonBreakdown": reason_breakdown,
        "topTokens": top_counts(dict(tokens), TOP_TOKENS),
    }
