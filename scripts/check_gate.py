"""
Release gate for a form_raw backfill.

Exits 0 when every gate passes, 2 when any gate fails, 1 on bad inputs.

Example:
    python scripts/check_gate.py \
        --before output/coverage-before.json --after output/coverage-after.json \
        --taxonomy-before output/taxonomy-before.json --taxonomy-after output/taxonomy-after.json \
        --runlist output/runlists/lnhpd-formraw.jsonl \
        --runlist-summary output/runlists/lnhpd-formraw-summary.json \
        --summary-dir output/backfill --output output/gate.json
"""

import argparse
import json
import logging
import os
import sys

# Add current directory to path to allow imports from core, diagnostics, etc.
sys.path.append(os.getcwd())

from core.exceptions import PipelineError
from core.logging import setup_logging
from diagnostics.gate import build_gate_inputs, evaluate_gate
from ingestion.checkpoint import write_json_atomic

logger = logging.getLogger(__name__)

EXIT_GATE_FAILED = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Check the form_raw backfill release gate")
    parser.add_argument("--before", required=True, help="Coverage report before the backfill")
    parser.add_argument("--after", required=True, help="Coverage report after the backfill")
    parser.add_argument("--taxonomy-before", default=None)
    parser.add_argument("--taxonomy-after", required=True)
    parser.add_argument("--runlist", required=True)
    parser.add_argument("--runlist-summary", required=True)
    parser.add_argument("--cohort-ids", default=None,
                        help="Cohort source ids (default: the runlist summary's sourceIdsOutput)")
    parser.add_argument("--summary-dir", default=None, help="Directory of *_summary.json backfill summaries")
    parser.add_argument("--output", default=None)
    parser.add_argument("--log-level", default=None)
    return parser


def main() -> int:
    args = build_parser().parse_args()
    setup_logging(args.log_level)
    try:
        inputs = build_gate_inputs(
            before_path=args.before,
            after_path=args.after,
            taxonomy_after_path=args.taxonomy_after,
            runlist_summary_path=args.runlist_summary,
            runlist_path=args.runlist,
            taxonomy_before_path=args.taxonomy_before,
            cohort_ids_path=args.cohort_ids,
            summary_dir=args.summary_dir,
        )
        report = evaluate_gate(inputs)
        if args.output:
            write_json_atomic(args.output, report)
    except (OSError, ValueError) as e:
        logger.error(f"Gate inputs unreadable: {e}")
        return 1
    except PipelineError as e:
        logger.error(f"Gate check failed: {e}", extra={"error_context": e.to_dict()})
        return 1

    print(json.dumps(report, indent=2))
    return 0 if report["gates"]["pass"] else EXIT_GATE_FAILED


if __name__ == "__main__":
    sys.exit(main())
