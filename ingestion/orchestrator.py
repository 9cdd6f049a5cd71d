# ============================================================================
# File: ingestion/orchestrator.py
# Description: Resumable v4 score backfill over harvested label facts
# ============================================================================
"""
Backfill Orchestrator - label facts -> product ingredients -> v4 scores.

This module provides:
- Ascending, checkpointed pagination over one source's facts table
- A bounded worker pool per page (asyncio semaphore, order preserved)
- A staged per-item pipeline whose failures are journaled, never raised
- Dry run, force and skip switches
- Replay of a failure journal
- Cached vs uncached score comparison

Per-item pipeline:
1. Adapter -> LabelFacts
2. Build, dedupe and hydrate product-ingredient rows
3. Merge with stored rows, upsert only the changed ones
4. Fetch stored rows, resolve empty form_raw values, refetch after writes
5. Daily multiplier + inputs hash, skip when the stored score is current
6. Compute (cached path) and upsert the score
"""

from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence
import asyncio
import enum
import logging
import time

from core.config import settings
from core.exceptions import (
    ConditionalUpdateError,
    ScoreComputationError,
    SetupError,
    StoreError,
    error_meta,
)
from forms.resolver import FormResolver, apply_verdict
from forms.tokens import extract_form_tokens
from ingestion.adapters import ADAPTERS, SourceAdapter, get_adapter
from ingestion.checkpoint import CheckpointFile, write_json_atomic
from ingestion.journal import FailureJournal, dedupe_entries
from ingestion.product_rows import (
    IngredientLookup,
    build_product_rows,
    dedupe_product_rows,
    merge_with_stored,
    overflow_fields,
    payload_summary,
)
from schemas.journal import CheckpointEntry, FailureEntry
from schemas.product import PRODUCT_INGREDIENT_COLUMNS, LabelFacts, ProductIngredientRow
from schemas.score import CompareResult, DailyMultiplier, ScoreResult
from scoring.dataset_cache import DatasetCache
from scoring.engine import V4_SCORE_VERSION, ProductRows, ScoreEngine, build_inputs_hash, resolve_daily_multiplier
from store.base import Order, ReferenceStore, eq, gt, gte, lte

logger = logging.getLogger(__name__)

STAGE_INGREDIENT_UPSERT = "product_ingredients_upsert"
STAGE_FORM_RAW_UPDATE = "form_raw_update"
STAGE_INGREDIENT_FETCH = "product_ingredients_fetch"
STAGE_COMPUTE = "compute_score"
STAGE_SCORE_UPSERT = "product_scores_upsert"
STAGE_RETRY_FETCH = "retry_fetch"
STAGE_PROCESS = "process_record"

INGREDIENT_CONFLICT_KEY = ["source", "source_id", "name_raw"]
SCORE_CONFLICT_KEY = ["source", "source_id"]

MAX_PAYLOAD_ROWS = 20
COMPARE_SAMPLE_FACTOR = 20


# ============================================================================
# Options, outcomes and stats
# ============================================================================

@dataclass
class BackfillOptions:
    """One batch run over one source"""
    source: str
    batch_size: int = 100
    concurrency: int = 2
    start_id: int = 0
    end_id: Optional[int] = None
    limit: Optional[int] = None
    time_budget_seconds: float = 0
    dry_run: bool = False
    force: bool = False
    skip_ingredients: bool = False
    skip_scores: bool = False
    resume: bool = False

    @classmethod
    def from_settings(cls, source: str, **overrides) -> "BackfillOptions":
        values = {
            "batch_size": settings.BACKFILL_BATCH_SIZE,
            "concurrency": settings.BACKFILL_CONCURRENCY,
            "time_budget_seconds": settings.BACKFILL_TIME_BUDGET_SECONDS,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(source=source, **values)

    def validate(self) -> None:
        """
        Raises:
            SetupError: On an unknown source or an impossible range
        """
        problems = []
        if self.source not in ADAPTERS:
            problems.append(f"unknown source {self.source!r}")
        if self.batch_size < 1:
            problems.append("batch size must be at least 1")
        if self.concurrency < 1:
            problems.append("concurrency must be at least 1")
        if self.start_id < 0:
            problems.append("start id must not be negative")
        if self.end_id is not None and self.end_id < self.start_id:
            problems.append("end id is below start id")
        if self.limit is not None and self.limit < 1:
            problems.append("limit must be at least 1")
        if problems:
            raise SetupError("Invalid backfill options: " + "; ".join(problems), context=asdict(self))


@dataclass
class ItemOptions:
    dry_run: bool = False
    force: bool = False
    skip_ingredients: bool = False
    skip_scores: bool = False


class Outcome(str, enum.Enum):
    WRITTEN = "written"
    SKIPPED_EXISTING = "skipped_existing"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ItemResult:
    """What one worker did with one record. Failures are journaled by the coordinator."""
    source: str
    source_id: str
    canonical_source_id: Optional[str] = None
    outcome: Outcome = Outcome.SKIPPED
    skip_reason: Optional[str] = None
    failures: List[FailureEntry] = field(default_factory=list)
    resolver: Counter = field(default_factory=Counter)
    ingredient_rows_written: int = 0
    form_raw_written: int = 0
    scores_written: int = 0
    would_write_ingredients: int = 0
    would_write_form_raw: int = 0
    would_write_scores: int = 0

    def fail(self, entry: FailureEntry) -> "ItemResult":
        self.failures.append(entry)
        self.outcome = Outcome.FAILED
        return self

    def skip(self, reason: str, outcome: Outcome = Outcome.SKIPPED) -> "ItemResult":
        self.outcome = outcome
        self.skip_reason = reason
        return self


# Stage -> per-stage failure counter on BackfillStats
STAGE_COUNTERS = {
    STAGE_INGREDIENT_UPSERT: "ingredient_upsert_failed",
    STAGE_FORM_RAW_UPDATE: "form_raw_update_failed",
    STAGE_INGREDIENT_FETCH: "compute_score_failed",
    STAGE_COMPUTE: "compute_score_failed",
    STAGE_SCORE_UPSERT: "score_upsert_failed",
    STAGE_RETRY_FETCH: "retry_fetch_failed",
}


@dataclass
class BackfillStats:
    processed: int = 0
    scores: int = 0
    skipped: int = 0
    skipped_existing: int = 0
    failed: int = 0
    ingredient_rows_written: int = 0
    form_raw_written: int = 0
    ingredient_upsert_failed: int = 0
    form_raw_update_failed: int = 0
    compute_score_failed: int = 0
    score_upsert_failed: int = 0
    retry_fetch_failed: int = 0
    would_write_ingredients: int = 0
    would_write_form_raw: int = 0
    would_write_scores: int = 0
    resolver: Counter = field(default_factory=Counter)

    def fold(self, result: ItemResult) -> None:
        self.processed += 1
        if result.outcome == Outcome.FAILED:
            self.failed += 1
        elif result.outcome == Outcome.SKIPPED_EXISTING:
            self.skipped_existing += 1
        elif result.outcome == Outcome.SKIPPED:
            self.skipped += 1
        self.scores += result.scores_written
        self.ingredient_rows_written += result.ingredient_rows_written
        self.form_raw_written += result.form_raw_written
        self.would_write_ingredients += result.would_write_ingredients
        self.would_write_form_raw += result.would_write_form_raw
        self.would_write_scores += result.would_write_scores
        self.resolver.update(result.resolver)
        for entry in result.failures:
            counter = STAGE_COUNTERS.get(entry.stage)
            if counter:
                setattr(self, counter, getattr(self, counter) + 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "scores": self.scores,
            "skipped": self.skipped,
            "skippedExisting": self.skipped_existing,
            "failed": self.failed,
            "ingredientRowsWritten": self.ingredient_rows_written,
            "formRawWritten": self.form_raw_written,
            "ingredientUpsertFailed": self.ingredient_upsert_failed,
            "formRawUpdateFailed": self.form_raw_update_failed,
            "computeScoreFailed": self.compute_score_failed,
            "scoreUpsertFailed": self.score_upsert_failed,
            "retryFetchFailed": self.retry_fetch_failed,
            "wouldWriteIngredients": self.would_write_ingredients,
            "wouldWriteFormRaw": self.would_write_form_raw,
            "wouldWriteScores": self.would_write_scores,
            "resolver": dict(sorted(self.resolver.items())),
        }


def failure_entry(
    source: str,
    source_id: str,
    canonical_source_id: Optional[str],
    stage: str,
    error: Optional[BaseException] = None,
    message: Optional[str] = None,
    rows: Sequence[ProductIngredientRow] = (),
    daily_multiplier: Optional[float] = None,
) -> FailureEntry:
    """Journal line for a failed stage; store errors contribute status/code/details/hint/rayId."""
    meta = error_meta(error) if error is not None else {}
    summaries = [payload_summary(row, daily_multiplier) for row in list(rows)[:MAX_PAYLOAD_ROWS]]
    return FailureEntry(
        source=source,
        source_id=source_id,
        canonical_source_id=canonical_source_id,
        stage=stage,
        status=meta.get("status"),
        ray_id=meta.get("rayId"),
        message=message or meta.get("message"),
        error_code=meta.get("code"),
        error_details=meta.get("details"),
        error_hint=meta.get("hint"),
        payload_summary=summaries or None,
        overflow_fields=overflow_fields(list(rows)) or None,
    )


def compare_bundles(source_id: str, baseline: Optional[ScoreResult], cached: Optional[ScoreResult]) -> CompareResult:
    """Compare inputsHash, overall score, confidence and pillars of two computations."""
    if baseline is None or cached is None:
        matched = baseline is None and cached is None
        return CompareResult(source_id=source_id, matched=matched, mismatches=[] if matched else ["presence"])
    mismatches = []
    if baseline.inputs_hash != cached.inputs_hash:
        mismatches.append("inputsHash")
    if baseline.overall_score != cached.overall_score:
        mismatches.append("overallScore")
    if baseline.confidence != cached.confidence:
        mismatches.append("confidence")
    for pillar in sorted(set(baseline.pillars) | set(cached.pillars)):
        if baseline.pillars.get(pillar) != cached.pillars.get(pillar):
            mismatches.append(f"pillars.{pillar}")
    return CompareResult(source_id=source_id, matched=not mismatches, mismatches=mismatches)


# ============================================================================
# Orchestrator
# ============================================================================

class BackfillOrchestrator:
    """
    Backfill Orchestrator

    Responsibilities:
    - Page through one source's facts in ascending id order
    - Run the per-item pipeline on a bounded worker pool
    - Fold outcomes and append journal lines from the coordinator only
    - Advance the checkpoint after every page
    - Replay journals and compare cached vs uncached scores
    """

    def __init__(
        self,
        store: ReferenceStore,
        journal: FailureJournal,
        checkpoints: Optional[CheckpointFile] = None,
        engine: Optional[ScoreEngine] = None,
        summary_path: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.journal = journal
        self.checkpoints = checkpoints
        self.engine = engine or ScoreEngine(store)
        self.summary_path = summary_path
        self.clock = clock
        self.lookup: Optional[IngredientLookup] = None
        self.resolver: Optional[FormResolver] = None

    async def dataset_cache(self) -> DatasetCache:
        """Load the per-run reference snapshot. Failures abort the run."""
        cache = await DatasetCache.load(self.store)
        self.lookup = IngredientLookup(self.store)
        self.resolver = FormResolver(cache.taxonomy())
        return cache

    # ------------------------------------------------------------------
    # Per-item pipeline
    # ------------------------------------------------------------------

    async def process_record(
        self,
        adapter: SourceAdapter,
        record: Dict[str, Any],
        options: ItemOptions,
        cache: DatasetCache,
    ) -> ItemResult:
        """
        Run the full pipeline for one facts record.

        Stage failures are recorded on the returned ItemResult; nothing is
        raised for data or store problems.
        """
        if self.lookup is None or self.resolver is None:
            self.lookup = IngredientLookup(self.store)
            self.resolver = FormResolver(cache.taxonomy())

        record_id = adapter.record_id(record)
        if record_id is None:
            raw_id = record.get(adapter.id_column)
            return ItemResult(adapter.source, str(raw_id)).skip("invalid_record_id")

        source = adapter.source
        source_id, canonical_source_id = adapter.identity(record)
        result = ItemResult(source, source_id, canonical_source_id)
        facts_json = record.get("facts_json")
        facts = adapter.label_facts(facts_json)
        if facts is None or facts.is_empty:
            return result.skip("empty_facts")

        daily_multiplier = resolve_daily_multiplier(source, canonical_source_id, facts_json)

        # --------------------------------------------------
        # PHASE 1: PRODUCT INGREDIENT ROWS
        # --------------------------------------------------
        merged: Optional[List[ProductIngredientRow]] = None
        if not options.skip_ingredients:
            merged = await self._upsert_ingredients(result, adapter, facts, daily_multiplier, options)
            if merged is None:
                return result

        # --------------------------------------------------
        # PHASE 2: STORED ROWS + FORM RESOLUTION
        # --------------------------------------------------
        if options.dry_run and merged is not None:
            rows = merged
            source_id_for_write = source_id
        else:
            lookup = await self._fetch_rows(result, daily_multiplier)
            if lookup is None:
                return result
            rows, source_id_for_write = lookup.rows, lookup.source_id_for_write

        if not options.skip_ingredients:
            rows, refetch = await self._resolve_forms(result, rows, facts, options)
            if refetch:
                lookup = await self._fetch_rows(result, daily_multiplier)
                if lookup is None:
                    return result
                rows, source_id_for_write = lookup.rows, lookup.source_id_for_write

        if options.skip_scores:
            return result.skip("scores_disabled")

        # --------------------------------------------------
        # PHASE 3: IDEMPOTENCE CHECK
        # --------------------------------------------------
        inputs_hash = build_inputs_hash(rows, daily_multiplier.multiplier, daily_multiplier.source,
                                        cache.dataset_version)
        if not options.force and await self._score_is_current(source, source_id_for_write, inputs_hash):
            return result.skip("inputs_unchanged", Outcome.SKIPPED_EXISTING)

        # --------------------------------------------------
        # PHASE 4: COMPUTE
        # --------------------------------------------------
        try:
            score = self.engine.compute_cached(
                rows, source, source_id, canonical_source_id, daily_multiplier, cache, source_id_for_write
            )
        except Exception as e:
            error = ScoreComputationError(
                "Score computation failed",
                context={"source": source, "source_id": source_id},
                original_exception=e,
            )
            logger.error(f"Compute failed for {source}:{source_id}: {e}", extra={"error_context": error.to_dict()})
            active = [row for row in rows if row.is_active]
            return result.fail(failure_entry(source, source_id, canonical_source_id, STAGE_COMPUTE, error,
                                             rows=active, daily_multiplier=daily_multiplier.multiplier))

        if score is None:
            return result.skip("no_active_rows")

        # --------------------------------------------------
        # PHASE 5: SCORE UPSERT
        # --------------------------------------------------
        if options.dry_run:
            result.would_write_scores += 1
            result.outcome = Outcome.WRITTEN
            return result

        try:
            await self.store.upsert("product_scores", [score.to_score_row(source)], SCORE_CONFLICT_KEY)
        except Exception as e:
            logger.error(f"Score upsert failed for {source}:{source_id_for_write}: {e}")
            active = [row for row in rows if row.is_active]
            return result.fail(failure_entry(source, source_id_for_write, canonical_source_id, STAGE_SCORE_UPSERT, e,
                                             rows=active, daily_multiplier=daily_multiplier.multiplier))

        result.scores_written += 1
        result.outcome = Outcome.WRITTEN
        return result

    async def _upsert_ingredients(
        self,
        result: ItemResult,
        adapter: SourceAdapter,
        facts: LabelFacts,
        daily_multiplier: DailyMultiplier,
        options: ItemOptions,
    ) -> Optional[List[ProductIngredientRow]]:
        """Build, hydrate, merge and upsert. Returns the merged rows, None on failure."""
        rows = dedupe_product_rows(build_product_rows(
            result.source,
            result.source_id,
            result.canonical_source_id,
            facts,
            parse_confidence=adapter.parse_confidence,
        ))
        try:
            rows = await self.lookup.hydrate(rows)
            stored_data = await self.store.select(
                "product_ingredients",
                PRODUCT_INGREDIENT_COLUMNS,
                [eq("source", result.source), eq("source_id", result.source_id)],
                [Order("id")],
            )
            stored = [ProductIngredientRow(**row) for row in stored_data]
            merged, changed = merge_with_stored(rows, stored)
            if changed:
                if options.dry_run:
                    result.would_write_ingredients += len(changed)
                else:
                    await self.store.upsert(
                        "product_ingredients", [row.to_store() for row in changed], INGREDIENT_CONFLICT_KEY
                    )
                    result.ingredient_rows_written += len(changed)
            return merged
        except Exception as e:
            logger.error(
                f"Ingredient upsert failed for {result.source}:{result.source_id}: {e}",
                extra={"error_context": error_meta(e)},
            )
            result.fail(failure_entry(result.source, result.source_id, result.canonical_source_id,
                                      STAGE_INGREDIENT_UPSERT, e, rows=rows,
                                      daily_multiplier=daily_multiplier.multiplier))
            return None

    async def _fetch_rows(self, result: ItemResult, daily_multiplier: DailyMultiplier) -> Optional[ProductRows]:
        try:
            lookup = await self.engine.fetch_product_rows(result.source, result.source_id)
        except Exception as e:
            logger.error(f"Ingredient fetch failed for {result.source}:{result.source_id}: {e}")
            result.fail(failure_entry(result.source, result.source_id, result.canonical_source_id,
                                      STAGE_INGREDIENT_FETCH, e, daily_multiplier=daily_multiplier.multiplier))
            return None
        if lookup is None:
            result.fail(failure_entry(result.source, result.source_id, result.canonical_source_id,
                                      STAGE_INGREDIENT_FETCH, message="product_ingredients not found",
                                      daily_multiplier=daily_multiplier.multiplier))
            return None
        return lookup

    async def _resolve_forms(
        self,
        result: ItemResult,
        rows: List[ProductIngredientRow],
        facts: LabelFacts,
        options: ItemOptions,
    ):
        """
        Resolve empty form_raw values on active rows with an ingredient id.

        Returns (rows, refetch). In dry run the writable form text is applied
        to the returned rows in memory instead of the store.
        """
        form_fields = {active.name: active.form_fields for active in facts.actives}
        resolved = []
        refetch = False
        for row in rows:
            if not row.is_active or not row.ingredient_id or row.has_form:
                resolved.append(row)
                continue

            ref = await self.lookup.resolve(row.name_raw)
            ingredient_name = ref.name if ref and ref.id == row.ingredient_id else None
            extraction = extract_form_tokens(row.name_raw, ingredient_name, form_fields.get(row.name_raw))
            verdict = self.resolver.resolve(extraction.tokens, row.ingredient_id, row.form_raw)
            result.resolver[verdict.reason.value] += 1
            if not verdict.writable:
                resolved.append(row)
                continue

            if options.dry_run or row.id is None:
                result.would_write_form_raw += 1
                resolved.append(row.copy(update={"form_raw": verdict.form_text}))
                continue

            try:
                await apply_verdict(self.store, row.id, verdict)
                result.form_raw_written += 1
            except (ConditionalUpdateError, StoreError) as e:
                logger.warning(f"form_raw update failed for product ingredient {row.id}: {e}")
                entry = failure_entry(result.source, result.source_id, result.canonical_source_id,
                                      STAGE_FORM_RAW_UPDATE, e, rows=[row])
                result.failures.append(entry)
            refetch = True
            resolved.append(row)
        return resolved, refetch

    async def _score_is_current(self, source: str, source_id: str, inputs_hash: str) -> bool:
        try:
            existing = await self.store.select_one(
                "product_scores",
                ["score_version", "inputs_hash"],
                [eq("source", source), eq("source_id", source_id)],
            )
        except StoreError as e:
            logger.warning(f"Could not read existing score for {source}:{source_id}, recomputing: {e}")
            return False
        return bool(
            existing
            and existing.get("score_version") == V4_SCORE_VERSION
            and existing.get("inputs_hash") == inputs_hash
        )

    async def _run_items(self, items: Sequence[Any], work, concurrency: int) -> List[ItemResult]:
        semaphore = asyncio.Semaphore(concurrency)

        async def worker(item):
            async with semaphore:
                return await work(item)

        return list(await asyncio.gather(*(worker(item) for item in items)))

    def _guarded(self, adapter: SourceAdapter, options: ItemOptions, cache: DatasetCache):
        async def work(record: Dict[str, Any]) -> ItemResult:
            try:
                return await self.process_record(adapter, record, options, cache)
            except Exception as e:
                logger.exception(f"Unexpected error processing {adapter.source} record {record.get(adapter.id_column)}")
                source_id = str(record.get(adapter.id_column))
                return ItemResult(adapter.source, source_id).fail(
                    failure_entry(adapter.source, source_id, None, STAGE_PROCESS, e)
                )
        return work

    def _fold(self, stats: BackfillStats, results: Sequence[ItemResult]) -> None:
        entries = []
        for item in results:
            stats.fold(item)
            entries.extend(item.failures)
        self.journal.append(entries)

    def _budget_spent(self, started: float, budget: float) -> bool:
        return bool(budget and budget > 0 and self.clock() - started >= budget)

    def _elapsed_ms(self, started: float) -> int:
        return int(round((self.clock() - started) * 1000))

    def write_summary(self, summary: Dict[str, Any]) -> None:
        if self.summary_path:
            write_json_atomic(self.summary_path, summary)

    # ------------------------------------------------------------------
    # Batch mode
    # ------------------------------------------------------------------

    async def run_batch(self, options: BackfillOptions) -> Dict[str, Any]:
        """
        Backfill one source in ascending id order.

        Returns:
            Summary document (mode "batch") with counters, journal line
            count, lastId / nextStart, stoppedBy and elapsedMs

        Raises:
            SetupError: On invalid options
            ReferenceDataError: If the dataset cache cannot be loaded
            StoreError: If a page read fails after retries
        """
        options.validate()
        adapter = get_adapter(options.source)
        started = self.clock()

        start_id = options.start_id
        if options.resume and self.checkpoints is not None:
            checkpoint = self.checkpoints.read(adapter.source)
            if checkpoint is not None and checkpoint.next_start:
                start_id = max(start_id, checkpoint.next_start)
                logger.info(f"Resuming {adapter.source} from checkpoint nextStart={start_id}")

        cache = await self.dataset_cache()
        item_options = ItemOptions(
            dry_run=options.dry_run,
            force=options.force,
            skip_ingredients=options.skip_ingredients,
            skip_scores=options.skip_scores,
        )
        work = self._guarded(adapter, item_options, cache)
        stats = BackfillStats()
        last_id: Optional[int] = None
        next_start = start_id
        stopped_by = "exhausted"

        logger.info(
            f"Starting {adapter.source} backfill: start={start_id} end={options.end_id} "
            f"limit={options.limit} batch={options.batch_size} concurrency={options.concurrency} "
            f"dryRun={options.dry_run} force={options.force}"
        )

        while True:
            if options.limit is not None and stats.processed >= options.limit:
                stopped_by = "limit"
                break
            if self._budget_spent(started, options.time_budget_seconds):
                stopped_by = "time_budget"
                logger.warning(f"Time budget of {options.time_budget_seconds}s spent; no new pages dispatched")
                break

            page_size = options.batch_size
            if options.limit is not None:
                page_size = min(page_size, options.limit - stats.processed)

            filters = []
            if last_id is not None:
                filters.append(gt(adapter.id_column, last_id))
            elif start_id > 0:
                filters.append(gte(adapter.id_column, start_id))
            if options.end_id is not None:
                filters.append(lte(adapter.id_column, options.end_id))

            try:
                page = await self.store.select(
                    adapter.table, adapter.columns, filters, [Order(adapter.id_column)], limit=page_size
                )
            except StoreError as e:
                logger.error(
                    f"Page read failed for {adapter.table} after lastId={last_id}: {e}",
                    extra={"error_context": e.to_dict()},
                )
                raise

            if not page:
                break

            results = await self._run_items(page, work, options.concurrency)
            self._fold(stats, results)

            last_id = int(page[-1][adapter.id_column])
            next_start = last_id + 1
            if not options.dry_run and self.checkpoints is not None:
                self.checkpoints.write(adapter.source, CheckpointEntry(
                    score_version=V4_SCORE_VERSION,
                    start_id=start_id,
                    end_id=options.end_id,
                    last_id=last_id,
                    next_start=next_start,
                    stats=stats.to_dict(),
                ))
            logger.info(
                f"{adapter.source} page done: lastId={last_id} processed={stats.processed} "
                f"scores={stats.scores} skippedExisting={stats.skipped_existing} failed={stats.failed}"
            )

            if len(page) < page_size:
                break
            if options.end_id is not None and last_id >= options.end_id:
                stopped_by = "end_id"
                break

        summary = {
            "mode": "batch",
            "source": adapter.source,
            "scoreVersion": V4_SCORE_VERSION,
            "startId": start_id,
            "endId": options.end_id,
            "limit": options.limit,
            "dryRun": options.dry_run,
            **stats.to_dict(),
            "failuresFile": self.journal.path,
            "failuresLines": self.journal.line_count,
            "lastId": last_id,
            "nextStart": next_start,
            "stoppedBy": stopped_by,
            "elapsedMs": self._elapsed_ms(started),
        }
        self.write_summary(summary)
        logger.info(
            f"Backfill {adapter.source} finished ({stopped_by}): processed={stats.processed} "
            f"scores={stats.scores} skipped={stats.skipped} skippedExisting={stats.skipped_existing} "
            f"failed={stats.failed}"
        )
        return summary

    # ------------------------------------------------------------------
    # Failure replay
    # ------------------------------------------------------------------

    async def replay(self, failures_input: str, concurrency: int = 2, batch_size: int = 100) -> Dict[str, Any]:
        """
        Reprocess every (source, sourceId) in a failure journal.

        Records are refetched from their facts table and reprocessed with
        force set and dry run disabled. A record that no longer exists is
        journaled with stage ``retry_fetch``.
        """
        started = self.clock()
        entries = dedupe_entries(FailureJournal.load(failures_input))
        logger.info(f"Replaying {len(entries)} unique failures from {failures_input}")

        cache = await self.dataset_cache()
        item_options = ItemOptions(force=True)
        stats = BackfillStats()

        async def work(entry: FailureEntry) -> ItemResult:
            try:
                adapter = get_adapter(entry.source)
                record = await adapter.fetch_for_replay(self.store, entry.source_id, entry.canonical_source_id)
            except Exception as e:
                logger.error(f"Replay fetch failed for {entry.source}:{entry.source_id}: {e}")
                return ItemResult(entry.source, entry.source_id, entry.canonical_source_id).fail(
                    failure_entry(entry.source, entry.source_id, entry.canonical_source_id, STAGE_RETRY_FETCH, e)
                )
            if record is None:
                return ItemResult(entry.source, entry.source_id, entry.canonical_source_id).fail(
                    failure_entry(entry.source, entry.source_id, entry.canonical_source_id, STAGE_RETRY_FETCH,
                                  message="source record not found")
                )
            return await self._guarded(adapter, item_options, cache)(record)

        for offset in range(0, len(entries), max(batch_size, 1)):
            chunk = entries[offset:offset + batch_size]
            results = await self._run_items(chunk, work, max(concurrency, 1))
            self._fold(stats, results)

        summary = {
            "mode": "failures-input",
            "failuresInput": failures_input,
            "scoreVersion": V4_SCORE_VERSION,
            **stats.to_dict(),
            "failuresFile": self.journal.path,
            "failuresLines": self.journal.line_count,
            "elapsedMs": self._elapsed_ms(started),
        }
        self.write_summary(summary)
        logger.info(
            f"Replay finished: processed={stats.processed} scores={stats.scores} failed={stats.failed}"
        )
        return summary

    # ------------------------------------------------------------------
    # Cache equivalence
    # ------------------------------------------------------------------

    async def compare_cached(self, source: str, limit: int = 25) -> List[CompareResult]:
        """
        Score a sample of products through both engine paths.

        Raises:
            ScoreComputationError: If any product differs between the paths
        """
        sample = await self.store.select(
            "product_ingredients",
            ["source_id"],
            [eq("source", source)],
            [Order("source_id")],
            limit=limit * COMPARE_SAMPLE_FACTOR,
        )
        source_ids: List[str] = []
        for row in sample:
            source_id = str(row["source_id"])
            if source_id not in source_ids:
                source_ids.append(source_id)
            if len(source_ids) >= limit:
                break

        cache = await DatasetCache.load(self.store)
        results = []
        for source_id in source_ids:
            baseline = await self.engine.compute(source, source_id)
            lookup = await self.engine.fetch_product_rows(source, source_id)
            cached = None
            if lookup is not None:
                daily_multiplier = await self.engine.fetch_daily_multiplier(source, lookup.canonical_source_id)
                cached = self.engine.compute_cached(
                    lookup.rows, source, source_id, lookup.canonical_source_id, daily_multiplier, cache,
                    lookup.source_id_for_write,
                )
            results.append(compare_bundles(source_id, baseline, cached))

        mismatched = [result for result in results if not result.matched]
        logger.info(f"Compared {len(results)} {source} products: {len(mismatched)} mismatches")
        if mismatched:
            raise ScoreComputationError(
                f"Cached and uncached scores differ for {len(mismatched)} products",
                context={
                    "source": source,
                    "mismatches": {result.source_id: result.mismatches for result in mismatched},
                },
            )
        return results
