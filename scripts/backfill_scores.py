"""
Backfill product ingredients and v4 scores for one source.

Examples:
    python scripts/backfill_scores.py --source lnhpd --limit 500 --resume
    python scripts/backfill_scores.py --source dsld --failures-input output/failures.jsonl
    python scripts/backfill_scores.py --source dsld --compare-cached --compare-limit 25
"""

import argparse
import asyncio
import json
import logging
import os
import sys

# Add current directory to path to allow imports from core, ingestion, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.exceptions import PipelineError, SetupError
from core.logging import setup_logging
from ingestion.adapters import ADAPTERS
from ingestion.checkpoint import CheckpointFile
from ingestion.journal import FailureJournal
from ingestion.orchestrator import BackfillOptions, BackfillOrchestrator
from store import create_store

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Backfill product ingredients and v4 scores")
    parser.add_argument("--source", required=True, choices=sorted(ADAPTERS))
    parser.add_argument("--batch", type=int, default=settings.BACKFILL_BATCH_SIZE)
    parser.add_argument("--concurrency", type=int, default=settings.BACKFILL_CONCURRENCY)

    start = parser.add_mutually_exclusive_group()
    start.add_argument("--start-id", type=int, default=None, help="First source id to process (inclusive)")
    start.add_argument("--start-after", type=int, default=None, help="Last source id already processed")
    parser.add_argument("--end-id", type=int, default=None)
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--resume", action="store_true", help="Start from the checkpoint's nextStart")
    parser.add_argument("--time-budget-seconds", type=float, default=settings.BACKFILL_TIME_BUDGET_SECONDS)

    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--force", action="store_true", help="Recompute even when the inputs hash is unchanged")
    parser.add_argument("--skip-ingredients", action="store_true")
    parser.add_argument("--skip-scores", action="store_true")

    parser.add_argument("--failures-file", default=settings.BACKFILL_FAILURES_FILE)
    parser.add_argument("--failures-input", default=None, help="Replay this failure journal instead of paging")
    parser.add_argument("--checkpoint-file", default=settings.BACKFILL_CHECKPOINT_FILE)
    parser.add_argument("--summary-json", default=settings.BACKFILL_SUMMARY_JSON)

    parser.add_argument("--compare-cached", action="store_true")
    parser.add_argument("--compare-limit", type=int, default=25)
    parser.add_argument("--log-level", default=None)
    return parser


def options_from_args(args: argparse.Namespace) -> BackfillOptions:
    start_id = args.start_id
    if args.start_after is not None:
        start_id = args.start_after + 1
    return BackfillOptions.from_settings(
        args.source,
        batch_size=args.batch,
        concurrency=args.concurrency,
        start_id=start_id,
        end_id=args.end_id,
        limit=args.limit,
        time_budget_seconds=args.time_budget_seconds,
        dry_run=args.dry_run,
        force=args.force,
        skip_ingredients=args.skip_ingredients,
        skip_scores=args.skip_scores,
        resume=args.resume,
    )


async def run(args: argparse.Namespace) -> int:
    store = create_store()
    try:
        orchestrator = BackfillOrchestrator(
            store,
            FailureJournal(args.failures_file),
            checkpoints=CheckpointFile(args.checkpoint_file) if args.checkpoint_file else None,
            summary_path=args.summary_json,
        )

        if args.compare_cached:
            results = await orchestrator.compare_cached(args.source, limit=args.compare_limit)
            logger.info(f"Cached and uncached scores match for {len(results)} {args.source} products")
            return 0

        if args.failures_input:
            summary = await orchestrator.replay(
                args.failures_input, concurrency=args.concurrency, batch_size=args.batch
            )
        else:
            summary = await orchestrator.run_batch(options_from_args(args))

        print(json.dumps(summary, indent=2))
        return 0
    finally:
        await store.close()


def main() -> int:
    args = build_parser().parse_args()
    setup_logging(args.log_level)
    try:
        return asyncio.run(run(args))
    except SetupError as e:
        logger.error(f"Backfill setup failed: {e}", extra={"error_context": e.to_dict()})
        return 1
    except PipelineError as e:
        logger.error(f"Backfill aborted: {e}", extra={"error_context": e.to_dict()})
        return 1


if __name__ == "__main__":
    sys.exit(main())
