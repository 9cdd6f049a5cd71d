"""
Taxonomy checks over stored form text.

This module provides:
- Loose candidate matching against a form (key / label words) and an alias
- check_candidate: matched, taxonomy_mismatch or no_match for one row
- taxonomy_report: mismatch counts and ratios over a product sample

A taxonomy mismatch is a candidate that no form of the ingredient matches
while some alias does, and every alias it matches points at a form key the
ingredient does not have.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import logging
import re

from core.text import normalize_text
from schemas.ingredient import IngredientFormAliasRow, IngredientFormRow
from schemas.product import ProductIngredientRow
from scoring.dataset_cache import DatasetCache
from store.base import ReferenceStore
from diagnostics.sampling import load_product_rows, ratio, sample_source_ids, top_counts

logger = logging.getLogger(__name__)

MATCHED = "matched"
TAXONOMY_MISMATCH = "taxonomy_mismatch"
NO_MATCH = "no_match"
NO_CANDIDATE = "no_candidate"

MAX_EXAMPLES = 200

_PAREN_QUALIFIER = re.compile(r"\((?:as|from)\s+([^)]+)\)", re.IGNORECASE)
_TRAILING_QUALIFIER = re.compile(r"\b(?:as|from)\s+([a-z0-9][a-z0-9\s\-/+]+)$", re.IGNORECASE)


def qualifier_text(name_raw: Optional[str]) -> Optional[str]:
    """"Magnesium (as citrate)" -> "citrate"; None without an as/from qualifier."""
    text = (name_raw or "").strip()
    if not text:
        return None
    match = _PAREN_QUALIFIER.search(text) or _TRAILING_QUALIFIER.search(text)
    if not match:
        return None
    return normalize_text(match.group(1)) or None


def form_matches_candidate(candidate: str, form: IngredientFormRow) -> bool:
    words = set(candidate.split())
    key = normalize_text(form.form_key)
    if key and key in candidate:
        return True
    key_words = key.split()
    if key_words and all(word in words for word in key_words):
        return True
    label_words = normalize_text(form.form_label).split()
    return any(word in words for word in label_words)


def alias_matches_candidate(candidate: str, alias: IngredientFormAliasRow) -> bool:
    alias_norm = normalize_text(alias.norm)
    if not alias_norm:
        return False
    if alias_norm in candidate:
        return True
    words = set(candidate.split())
    return any(word in words for word in alias_norm.split())


@dataclass
class RowCheck:
    status: str
    candidate: str = ""
    alias_form_keys: List[str] = field(default_factory=list)


def check_candidate(
    candidate_text: Optional[str],
    forms: Sequence[IngredientFormRow],
    aliases: Sequence[IngredientFormAliasRow],
) -> RowCheck:
    candidate = normalize_text(candidate_text)
    if not candidate:
        return RowCheck(NO_CANDIDATE)
    if any(form_matches_candidate(candidate, form) for form in forms):
        return RowCheck(MATCHED, candidate)

    alias_keys: List[str] = []
    for alias in aliases:
        key = alias.form_key.strip().lower()
        if alias_matches_candidate(candidate, alias) and key not in alias_keys:
            alias_keys.append(key)
    known = {form.form_key.strip().lower() for form in forms}
    if any(key in known for key in alias_keys):
        return RowCheck(MATCHED, candidate, alias_keys)
    if alias_keys:
        return RowCheck(TAXONOMY_MISMATCH, candidate, alias_keys)
    return RowCheck(NO_MATCH, candidate)


def forms_for(cache: DatasetCache, ingredient_id: str) -> List[IngredientFormRow]:
    return cache.forms_by_ingredient.get(ingredient_id, [])


def aliases_for(cache: DatasetCache, ingredient_id: str) -> List[IngredientFormAliasRow]:
    return list(cache.global_aliases) + cache.aliases_by_ingredient.get(ingredient_id, [])


def _mismatch_tokens(candidate: str) -> List[str]:
    return [word for word in candidate.split() if len(word) > 1 and not word.isdigit()]


def _example(source: str, row: ProductIngredientRow, check: RowCheck, origin: str,
             forms: Sequence[IngredientFormRow]) -> Dict[str, Any]:
    return {
        "source": source,
        "sourceId": row.source_id,
        "canonicalSourceId": row.canonical_source_id,
        "ingredientId": row.ingredient_id,
        "nameRaw": row.name_raw,
        "formRaw": row.form_raw,
        "candidate": check.candidate,
        "candidateSource": origin,
        "aliasFormKeys": check.alias_form_keys,
        "formsAvailable": [{"formKey": form.form_key, "formLabel": form.form_label} for form in forms],
    }


async def taxonomy_report(
    store: ReferenceStore,
    source: str,
    source_ids: Optional[Sequence[str]] = None,
    limit: int = 1000,
    id_column: str = "source_id",
    top_n: int = 50,
) -> Dict[str, Any]:
    """
    Count taxonomy mismatches over the active rows of a product sample.

    Rows with stored form text are checked on that text; rows without it on
    the label's as/from qualifier.
    """
    ids = list(source_ids) if source_ids is not None else await sample_source_ids(store, source, limit, id_column)
    rows = [row for row in await load_product_rows(store, source, ids, id_column) if row.is_active]
    ingredient_ids = sorted({row.ingredient_id for row in rows if row.ingredient_id})
    cache = await DatasetCache.load(store, ingredient_ids)

    counts = {
        "activeRows": len(rows),
        "ingredientIdMissing": 0,
        "ingredientFormsMissing": 0,
        "formRawMissing": 0,
        "taxonomyMismatch": 0,
        "formRawNoMatch": 0,
        "matched": 0,
    }
    token_counts: Counter = Counter()
    key_counts: Counter = Counter()
    examples: List[Dict[str, Any]] = []

    for row in rows:
        if not row.ingredient_id:
            counts["ingredientIdMissing"] += 1
            continue
        forms = forms_for(cache, row.ingredient_id)
        if not forms:
            counts["ingredientFormsMissing"] += 1
        if not row.has_form:
            counts["formRawMissing"] += 1

        if row.has_form:
            text, origin = row.form_raw.strip(), "form_raw"
        else:
            text, origin = qualifier_text(row.name_raw), "name_raw"
        check = check_candidate(text, forms, aliases_for(cache, row.ingredient_id))

        if check.status == MATCHED:
            counts["matched"] += 1
        elif check.status == TAXONOMY_MISMATCH:
            counts["taxonomyMismatch"] += 1
            token_counts.update(_mismatch_tokens(check.candidate))
            key_counts.update(check.alias_form_keys)
            if len(examples) < MAX_EXAMPLES:
                examples.append(_example(source, row, check, origin, forms))
        elif row.has_form and forms:
            counts["formRawNoMatch"] += 1

    resolved = counts["activeRows"] - counts["ingredientIdMissing"]
    logger.info(
        f"Taxonomy report {source}: {counts['taxonomyMismatch']} mismatches over {resolved} resolved rows"
    )
    return {
        "source": source,
        "sampleSize": len(ids),
        "activeRows": counts["activeRows"],
        "resolvedRows": resolved,
        "counts": counts,
        "ratios": {
            "ingredientIdMissing": ratio(counts["ingredientIdMissing"], counts["activeRows"]),
            "taxonomyMismatchAmongResolved": ratio(counts["taxonomyMismatch"], resolved),
            "taxonomyMismatchAmongActive": ratio(counts["taxonomyMismatch"], counts["activeRows"]),
            "formRawMissingAmongResolved": ratio(counts["formRawMissing"], resolved),
            "formRawNoMatchAmongResolved": ratio(counts["formRawNoMatch"], resolved),
        },
        "topMismatchedFormKeys": top_counts(dict(key_counts), top_n, label="formKey"),
        "topTokens": top_counts(dict(token_counts), top_n),
        "examples": examples,
    }
