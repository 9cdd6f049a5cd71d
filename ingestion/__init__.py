"""
Backfill pipeline for product ingredients and v4 scores.

This package contains every component of the label-facts backfill:

Modules:
    adapters: Per-source label-facts adapters (DSLD, LNHPD)
    product_rows: Product-ingredient row builder, ingredient lookup and merge
    orchestrator: Paged, bounded-concurrency backfill and failure replay
    journal: Append-only JSONL failure journal
    checkpoint: Atomic per-source checkpoint and summary files
    runlist: Journal-shaped runlists for form_raw retrofits
    scheduler: Chunked DSLD / LNHPD driver on APScheduler

Architecture:
    Each record goes through the same phases:

    1. Ingredients - build, hydrate and upsert changed product_ingredients rows
    2. Forms - resolve empty form_raw values with a guarded update
    3. Idempotence - skip when the stored inputs hash is current
    4. Compute / Write - score with the shared dataset cache and upsert

    A failing phase is journaled and the batch moves on; only setup errors
    and page reads abort a run.

Usage:
    from ingestion.orchestrator import BackfillOptions, BackfillOrchestrator
    from ingestion.journal import FailureJournal

Example:
    orchestrator = BackfillOrchestrator(store, FailureJournal("output/failures.jsonl"))
    summary = await orchestrator.run_batch(BackfillOptions(source="lnhpd", limit=500))

    print(f"Wrote {summary['scores']} scores, {summary['failed']} failures")
"""

__all__ = [
    "adapters",
    "product_rows",
    "orchestrator",
    "journal",
    "checkpoint",
    "runlist",
    "scheduler",
]
