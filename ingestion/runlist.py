"""
Runlist builder for form_raw retrofits.

A runlist is a journal-shaped JSONL file (one FailureEntry line per
product) that the orchestrator replays with force. Three cohorts:

- formraw-missing: active resolved rows whose form_raw is empty
- taxonomy-mismatch: stored form_raw that only matches aliases pointing
  outside the ingredient's forms
- zero-coverage: v4 scores reporting zero form coverage that still have a
  resolved row with an empty form_raw
"""

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence
import json
import logging
import os

from core.exceptions import JournalError
from diagnostics.coverage import form_coverage_ratio
from diagnostics.sampling import load_product_rows
from diagnostics.taxonomy import TAXONOMY_MISMATCH, aliases_for, check_candidate, forms_for
from ingestion.checkpoint import write_json_atomic
from schemas.journal import FailureEntry
from scoring.dataset_cache import DatasetCache
from scoring.engine import V4_SCORE_VERSION
from store.base import Filter, Order, ReferenceStore, eq, gt, is_empty, not_null

logger = logging.getLogger(__name__)

COHORT_STAGES = {
    "formraw-missing": "form_raw_retrofit",
    "taxonomy-mismatch": "taxonomy_mismatch_retrofit",
    "zero-coverage": "form_raw_zero_coverage",
}

PAGE_SIZE = 1000


@dataclass
class Runlist:
    cohort: str
    source: str
    entries: List[FailureEntry] = field(default_factory=list)

    def __post_init__(self):
        self._seen = {entry.source_id for entry in self.entries}

    @property
    def source_ids(self) -> List[str]:
        return [entry.source_id for entry in self.entries]

    def add(self, source_id: str, canonical_source_id: Optional[str]) -> bool:
        """Append one product; False when it is already listed."""
        if source_id in self._seen:
            return False
        self._seen.add(source_id)
        self.entries.append(FailureEntry(
            source=self.source,
            source_id=source_id,
            canonical_source_id=canonical_source_id,
            stage=COHORT_STAGES[self.cohort],
        ))
        return True


async def _pages(
    store: ReferenceStore,
    table: str,
    columns: Sequence[str],
    filters: List[Filter],
    cursor_column: str = "source_id",
    start_after: Optional[str] = None,
) -> AsyncIterator[List[Dict[str, Any]]]:
    """Keyset pages ordered by ``cursor_column`` after ``start_after``"""
    cursor = start_after
    while True:
        page_filters = list(filters)
        if cursor is not None:
            page_filters.append(gt(cursor_column, cursor))
        page = await store.select(table, list(columns), page_filters, [Order(cursor_column)], limit=PAGE_SIZE)
        if not page:
            return
        yield page
        cursor = page[-1].get(cursor_column)
        if len(page) < PAGE_SIZE or cursor is None:
            return


def _resolved_filters(source: str) -> List[Filter]:
    return [eq("source", source), eq("is_active", True), not_null("ingredient_id")]


async def build_formraw_missing(
    store: ReferenceStore,
    source: str,
    limit: Optional[int] = None,
    start_after: Optional[str] = None,
) -> Runlist:
    runlist = Runlist("formraw-missing", source)
    filters = _resolved_filters(source) + [is_empty("form_raw")]
    async for page in _pages(store, "product_ingredients", ["source_id", "canonical_source_id"],
                             filters, start_after=start_after):
        for row in page:
            runlist.add(str(row["source_id"]), row.get("canonical_source_id"))
            if limit and len(runlist.entries) >= limit:
                return runlist
    return runlist


async def build_taxonomy_mismatch(
    store: ReferenceStore,
    source: str,
    limit: Optional[int] = None,
    start_after: Optional[str] = None,
    examples_path: Optional[str] = None,
) -> Runlist:
    """
    Products with a taxonomy-mismatched form_raw.

    With ``examples_path`` (a taxonomy report or a JSONL of its examples)
    the cohort is read from the file instead of scanning the store.
    """
    runlist = Runlist("taxonomy-mismatch", source)
    if examples_path:
        for example in load_mismatch_examples(examples_path):
            if example.get("source", source) == source and example.get("sourceId"):
                runlist.add(str(example["sourceId"]), example.get("canonicalSourceId"))
                if limit and len(runlist.entries) >= limit:
                    break
        return runlist

    filters = _resolved_filters(source) + [not_null("form_raw")]
    columns = ["source_id", "canonical_source_id", "ingredient_id", "form_raw"]
    async for page in _pages(store, "product_ingredients", columns, filters, start_after=start_after):
        rows = [row for row in page if isinstance(row.get("form_raw"), str) and row["form_raw"].strip()]
        cache = await DatasetCache.load(store, sorted({str(row["ingredient_id"]) for row in rows}))
        for row in rows:
            ingredient_id = str(row["ingredient_id"])
            check = check_candidate(
                row["form_raw"], forms_for(cache, ingredient_id), aliases_for(cache, ingredient_id)
            )
            if check.status != TAXONOMY_MISMATCH:
                continue
            runlist.add(str(row["source_id"]), row.get("canonical_source_id"))
            if limit and len(runlist.entries) >= limit:
                return runlist
    return runlist


async def build_zero_coverage(
    store: ReferenceStore,
    source: str,
    limit: Optional[int] = None,
    start_after: Optional[str] = None,
) -> Runlist:
    runlist = Runlist("zero-coverage", source)
    filters = [eq("source", source), eq("score_version", V4_SCORE_VERSION)]
    columns = ["source_id", "canonical_source_id", "explain_json"]
    async for page in _pages(store, "product_scores", columns, filters, start_after=start_after):
        zero = {}
        for score in page:
            value = form_coverage_ratio(score.get("explain_json"))
            if value is not None and value <= 0:
                zero[str(score["source_id"])] = score.get("canonical_source_id")
        if not zero:
            continue

        rows = await load_product_rows(store, source, sorted(zero))
        fillable = {row.source_id for row in rows if row.is_active and row.ingredient_id and not row.has_form}
        for source_id in sorted(fillable):
            runlist.add(source_id, zero[source_id])
            if limit and len(runlist.entries) >= limit:
                return runlist
    return runlist


def load_mismatch_examples(path: str) -> List[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as handle:
        text = handle.read()
    try:
        document = json.loads(text)
    except ValueError:
        document = None
    if isinstance(document, dict):
        document = document.get("examples", [])
    if isinstance(document, list):
        return [example for example in document if isinstance(example, dict)]

    examples = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            example = json.loads(line)
        except ValueError:
            continue
        if isinstance(example, dict):
            examples.append(example)
    return examples


def write_runlist(
    runlist: Runlist,
    output: str,
    source_ids_output: Optional[str] = None,
    summary_output: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Write the runlist JSONL, the source id list and the summary document.

    Raises:
        JournalError: If the runlist file cannot be written
    """
    source_ids_output = source_ids_output or f"{os.path.splitext(output)[0]}-source-ids.json"
    try:
        directory = os.path.dirname(output)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(output, "w", encoding="utf-8") as handle:
            for entry in runlist.entries:
                handle.write(json.dumps(entry.to_line()) + "\n")
    except OSError as e:
        raise JournalError(
            f"Failed to write runlist: {output}",
            context={"path": output, "cohort": runlist.cohort},
            original_exception=e,
        )

    source_ids = sorted(set(runlist.source_ids))
    write_json_atomic(source_ids_output, source_ids)
    summary = {
        "cohort": runlist.cohort,
        "source": runlist.source,
        "stage": COHORT_STAGES[runlist.cohort],
        "runlistOutput": output,
        "totalRunlistLines": len(runlist.entries),
        "uniqueSourceIds": len(source_ids),
        "sourceIdsOutput": source_ids_output,
    }
    if summary_output:
        write_json_atomic(summary_output, summary)
    logger.info(f"Wrote {runlist.cohort} runlist: {len(runlist.entries)} lines to {output}")
    return summary


BUILDERS = {
    "formraw-missing": build_formraw_missing,
    "taxonomy-mismatch": build_taxonomy_mismatch,
    "zero-coverage": build_zero_coverage,
}
