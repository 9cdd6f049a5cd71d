"""
Seed builtin form aliases into ingredient_form_aliases.

Only seeds whose (normalized alias, form key) pair has no global alias row
yet are written, as derived rows with source "seed". Safe to re-run.
"""

import argparse
import asyncio
import json
import logging
import os
import sys

# Add current directory to path to allow imports from core, forms, etc.
sys.path.append(os.getcwd())

from core.exceptions import PipelineError, SetupError
from core.logging import setup_logging
from forms.aliases import seed_builtin_aliases
from store import create_store

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Write missing builtin form aliases")
    parser.add_argument("--dry-run", action="store_true", help="Count missing seeds without writing")
    parser.add_argument("--log-level", default=None)
    return parser


async def run(args: argparse.Namespace) -> int:
    store = create_store()
    try:
        summary = await seed_builtin_aliases(store, dry_run=args.dry_run)
    finally:
        await store.close()

    print(json.dumps(summary, indent=2))
    return 0


def main() -> int:
    args = build_parser().parse_args()
    setup_logging(args.log_level)
    try:
        return asyncio.run(run(args))
    except SetupError as e:
        logger.error(f"Alias seeding setup failed: {e}", extra={"error_context": e.to_dict()})
        return 1
    except PipelineError as e:
        logger.error(f"Alias seeding failed: {e}", extra={"error_context": e.to_dict()})
        return 1


if __name__ == "__main__":
    sys.exit(main())
