"""
Form coverage diagnostics.

Subcommands:
    coverage  Zero form-coverage breakdown over recent v4 scores
    taxonomy  Taxonomy mismatches over stored form_raw values
    yield     Extractor + resolver dry run (what a form_raw backfill would fill)

Example:
    python scripts/diagnose_forms.py coverage --source lnhpd --limit 500 --output output/coverage-before.json
"""

import argparse
import asyncio
import json
import logging
import os
import sys

# Add current directory to path to allow imports from core, diagnostics, etc.
sys.path.append(os.getcwd())

from core.exceptions import PipelineError, SetupError
from core.logging import setup_logging
from diagnostics.coverage import coverage_report
from diagnostics.sampling import ID_COLUMNS, load_source_ids_file
from diagnostics.taxonomy import taxonomy_report
from diagnostics.yield_report import yield_report
from ingestion.adapters import ADAPTERS
from ingestion.checkpoint import write_json_atomic
from store import create_store

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Form coverage diagnostics")
    parser.add_argument("report", choices=["coverage", "taxonomy", "yield"])
    parser.add_argument("--source", action="append", choices=sorted(ADAPTERS),
                        help="Repeat for several sources (default: all)")
    parser.add_argument("--limit", type=int, default=1000, help="Sample size per source")
    parser.add_argument("--source-ids-file", default=None,
                        help="JSON array, {sourceIds: [...]} or runlist JSONL restricting the sample")
    parser.add_argument("--id-column", choices=ID_COLUMNS, default="source_id")
    parser.add_argument("--output", default=None, help="Write the report JSON here")
    parser.add_argument("--log-level", default=None)
    return parser


async def run(args: argparse.Namespace) -> int:
    sources = args.source or sorted(ADAPTERS)
    source_ids = load_source_ids_file(args.source_ids_file) if args.source_ids_file else None
    if args.report == "coverage" and source_ids is not None:
        raise SetupError("coverage samples recent scores; --source-ids-file is not supported")

    store = create_store()
    try:
        reports = []
        for source in sources:
            if args.report == "coverage":
                reports.append(await coverage_report(store, source, limit=args.limit))
            elif args.report == "taxonomy":
                reports.append(await taxonomy_report(store, source, source_ids, args.limit, args.id_column))
            else:
                reports.append(await yield_report(store, source, source_ids, args.limit, args.id_column))
    finally:
        await store.close()

    document = reports[0] if len(reports) == 1 else reports
    if args.output:
        write_json_atomic(args.output, document)
        logger.info(f"Wrote {args.report} report to {args.output}")
    print(json.dumps(document, indent=2))
    return 0


def main() -> int:
    args = build_parser().parse_args()
    setup_logging(args.log_level)
    try:
        return asyncio.run(run(args))
    except SetupError as e:
        logger.error(f"Diagnostics setup failed: {e}", extra={"error_context": e.to_dict()})
        return 1
    except PipelineError as e:
        logger.error(f"Diagnostics failed: {e}", extra={"error_context": e.to_dict()})
        return 1


if __name__ == "__main__":
    sys.exit(main())
