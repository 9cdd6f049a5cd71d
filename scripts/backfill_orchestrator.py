"""
Chunked DSLD / LNHPD backfill driver.

Runs bounded backfill chunks per source, resuming from checkpoints, and
replays the failures journal after any chunk that added to it. Without
--interval-minutes cycles run back to back until every source is done; with
it, one cycle fires per interval on APScheduler.
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
from ingestion.scheduler import MODES, BackfillScheduler, SchedulerConfig
from store import create_store

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Alternate DSLD and LNHPD backfill chunks")
    parser.add_argument("--mode", choices=sorted(MODES), default="alternate")
    parser.add_argument("--out-dir", default="output/backfill-orchestrator")
    parser.add_argument("--dsld-start", type=int, default=1)
    parser.add_argument("--lnhpd-start", type=int, default=1)
    parser.add_argument("--dsld-end", type=int, default=None)
    parser.add_argument("--lnhpd-end", type=int, default=None)
    parser.add_argument("--dsld-limit", type=int, default=500, help="Records per DSLD chunk")
    parser.add_argument("--lnhpd-limit", type=int, default=1000, help="Records per LNHPD chunk")
    parser.add_argument("--batch", type=int, default=settings.BACKFILL_BATCH_SIZE)
    parser.add_argument("--concurrency", type=int, default=settings.BACKFILL_CONCURRENCY)
    parser.add_argument("--time-budget-seconds", type=float, default=720)
    parser.add_argument("--max-cycles", type=int, default=None)
    parser.add_argument("--max-runs", type=int, default=None)
    parser.add_argument("--force", action="store_true")
    parser.add_argument("--interval-minutes", type=float, default=None)
    parser.add_argument("--log-level", default=None)
    return parser


async def run(args: argparse.Namespace) -> int:
    config = SchedulerConfig(
        mode=args.mode,
        out_dir=args.out_dir,
        dsld_start=args.dsld_start,
        lnhpd_start=args.lnhpd_start,
        dsld_end=args.dsld_end,
        lnhpd_end=args.lnhpd_end,
        dsld_limit=args.dsld_limit,
        lnhpd_limit=args.lnhpd_limit,
        batch_size=args.batch,
        concurrency=args.concurrency,
        time_budget_seconds=args.time_budget_seconds,
        max_cycles=args.max_cycles,
        max_runs=args.max_runs,
        force=args.force,
        interval_minutes=args.interval_minutes,
    )
    store = create_store()
    try:
        scheduler = BackfillScheduler(store, config)
        if config.interval_minutes:
            report = await scheduler.run_scheduled()
        else:
            report = await scheduler.run_until_done()
    finally:
        await store.close()

    print(json.dumps(report, indent=2))
    return 0


def main() -> int:
    args = build_parser().parse_args()
    setup_logging(args.log_level)
    try:
        return asyncio.run(run(args))
    except SetupError as e:
        logger.error(f"Orchestrator setup failed: {e}", extra={"error_context": e.to_dict()})
        return 1
    except PipelineError as e:
        logger.error(f"Orchestrator aborted: {e}", extra={"error_context": e.to_dict()})
        return 1


if __name__ == "__main__":
    sys.exit(main())
