"""
Build a form_raw retrofit runlist.

Writes a journal-shaped JSONL that backfill_scores.py --failures-input
replays with force, plus the cohort's source id list and a summary.

Example:
    python scripts/build_runlist.py --source lnhpd --cohort formraw-missing \
        --output output/runlists/lnhpd-formraw.jsonl --summary-json output/runlists/lnhpd-formraw-summary.json
"""

import argparse
import asyncio
import json
import logging
import os
import sys

# Add current directory to path to allow imports from core, ingestion, etc.
sys.path.append(os.getcwd())

from core.exceptions import PipelineError, SetupError
from core.logging import setup_logging
from ingestion.adapters import ADAPTERS
from ingestion.runlist import BUILDERS, build_taxonomy_mismatch, write_runlist
from store import create_store

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Build a form_raw retrofit runlist")
    parser.add_argument("--source", required=True, choices=sorted(ADAPTERS))
    parser.add_argument("--cohort", required=True, choices=sorted(BUILDERS))
    parser.add_argument("--output", required=True, help="Runlist JSONL path")
    parser.add_argument("--source-ids-output", default=None)
    parser.add_argument("--summary-json", default=None)
    parser.add_argument("--limit", type=int, default=None, help="Maximum products in the runlist")
    parser.add_argument("--start-after", default=None, help="Skip source ids up to and including this one")
    parser.add_argument("--mismatch-examples", default=None,
                        help="Taxonomy report (or JSONL of its examples) for the taxonomy-mismatch cohort")
    parser.add_argument("--log-level", default=None)
    return parser


async def run(args: argparse.Namespace) -> int:
    if args.mismatch_examples and args.cohort != "taxonomy-mismatch":
        raise SetupError("--mismatch-examples only applies to the taxonomy-mismatch cohort",
                         context={"cohort": args.cohort})

    store = create_store()
    try:
        if args.cohort == "taxonomy-mismatch":
            runlist = await build_taxonomy_mismatch(
                store, args.source, args.limit, args.start_after, examples_path=args.mismatch_examples
            )
        else:
            runlist = await BUILDERS[args.cohort](store, args.source, args.limit, args.start_after)
    finally:
        await store.close()

    summary = write_runlist(runlist, args.output, args.source_ids_output, args.summary_json)
    print(json.dumps(summary, indent=2))
    return 0


def main() -> int:
    args = build_parser().parse_args()
    setup_logging(args.log_level)
    try:
        return asyncio.run(run(args))
    except SetupError as e:
        logger.error(f"Runlist setup failed: {e}", extra={"error_context": e.to_dict()})
        return 1
    except PipelineError as e:
        logger.error(f"Runlist build failed: {e}", extra={"error_context": e.to_dict()})
        return 1


if __name__ == "__main__":
    sys.exit(main())
