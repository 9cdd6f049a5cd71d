"""
Release gate for a form_raw backfill.

Compares before/after coverage and taxonomy reports, checks the runlist
that drove the backfill and the backfill summaries, and returns a pass /
fail document with the reasons for failure.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import glob
import json
import logging
import os

from core.text import to_number
from diagnostics.sampling import load_source_ids_file

logger = logging.getLogger(__name__)

MAX_TAXONOMY_MISMATCH = 0.08
MIN_MISMATCH_DELTA = 0.2
MIN_ZERO_COVERAGE_DELTA = 0.1
MIN_FORM_RAW_MISSING_DELTA = 0.2
MIN_UNIQUE_SOURCE_IDS = 200


@dataclass
class GateInputs:
    before: Any
    after: Any
    taxonomy_before: Optional[Dict[str, Any]]
    taxonomy_after: Optional[Dict[str, Any]]
    runlist_summary: Dict[str, Any]
    runlist_source_ids: List[str]
    cohort_source_ids: List[str]
    failures: int = 0


def ratio_delta(before: Optional[float], after: Optional[float]) -> Optional[float]:
    """Relative improvement (before - after) / before; None when undefined."""
    if before is None or after is None or before == 0:
        return None
    return round((before - after) / before, 4)


def _coverage_counts(document: Any) -> Dict[str, float]:
    """zeroCoverageCount and taxonomyMismatch of one report or summed over a list."""
    reports = document if isinstance(document, list) else [document or {}]
    zero = 0.0
    mismatch = 0.0
    for report in reports:
        zero += to_number(report.get("zeroCoverageCount")) or 0
        mismatch += to_number((report.get("reasonBreakdown") or {}).get("taxonomyMismatch")) or 0
    return {"zeroCoverageCount": zero, "taxonomyMismatch": mismatch}


def _taxonomy_ratio(document: Optional[Dict[str, Any]], key: str) -> Optional[float]:
    if not document:
        return None
    return to_number((document.get("ratios") or {}).get(key))


def evaluate_gate(inputs: GateInputs) -> Dict[str, Any]:
    before = _coverage_counts(inputs.before)
    after = _coverage_counts(inputs.after)

    mismatch_after = _taxonomy_ratio(inputs.taxonomy_after, "taxonomyMismatchAmongResolved")
    missing_before = _taxonomy_ratio(inputs.taxonomy_before, "formRawMissingAmongResolved")
    missing_after = _taxonomy_ratio(inputs.taxonomy_after, "formRawMissingAmongResolved")

    deltas = {
        "taxonomyMismatch": ratio_delta(before["taxonomyMismatch"], after["taxonomyMismatch"]),
        "zeroCoverage": ratio_delta(before["zeroCoverageCount"], after["zeroCoverageCount"]),
        "formRawMissing": ratio_delta(missing_before, missing_after),
    }
    improvement = (
        (deltas["taxonomyMismatch"] or 0) >= MIN_MISMATCH_DELTA
        or (deltas["zeroCoverage"] or 0) >= MIN_ZERO_COVERAGE_DELTA
        or (deltas["formRawMissing"] or 0) >= MIN_FORM_RAW_MISSING_DELTA
    )

    runlist_lines = int(to_number(inputs.runlist_summary.get("totalRunlistLines")) or 0)
    unique_ids = int(to_number(inputs.runlist_summary.get("uniqueSourceIds")) or 0)
    cohort = set(inputs.cohort_source_ids)
    out_of_scope = sorted({source_id for source_id in inputs.runlist_source_ids if source_id not in cohort})

    gates = {
        "failuresOk": inputs.failures == 0,
        "taxonomyMismatchOk": mismatch_after is not None and mismatch_after <= MAX_TAXONOMY_MISMATCH,
        "improvementOk": improvement,
        "runlistLinesOk": runlist_lines > 0,
        "uniqueSourceIdsOk": unique_ids >= MIN_UNIQUE_SOURCE_IDS,
        "runlistSubsetOk": not out_of_scope,
    }
    reason_for = {
        "failuresOk": "failures_nonzero",
        "taxonomyMismatchOk": "taxonomy_mismatch_threshold",
        "improvementOk": "no_required_improvement",
        "runlistLinesOk": "empty_runlist",
        "uniqueSourceIdsOk": "insufficient_unique_source_ids",
        "runlistSubsetOk": "runlist_out_of_scope",
    }
    reasons = [reason_for[name] for name, ok in gates.items() if not ok]

    if reasons:
        logger.warning(f"Release gate failed: {', '.join(reasons)}")
    else:
        logger.info("Release gate passed")

    return {
        "before": before,
        "after": after,
        "deltas": deltas,
        "taxonomy": {
            "mismatchAmongResolvedAfter": mismatch_after,
            "formRawMissingAmongResolvedBefore": missing_before,
            "formRawMissingAmongResolvedAfter": missing_after,
        },
        "runlist": {
            "totalRunlistLines": runlist_lines,
            "uniqueSourceIds": unique_ids,
            "cohortSize": len(cohort),
            "outOfScopeCount": len(out_of_scope),
            "outOfScopeSample": out_of_scope[:20],
        },
        "backfill": {"failures": inputs.failures},
        "gates": {**gates, "pass": not reasons, "reasons": reasons},
    }


# ============================================================================
# File inputs
# ============================================================================

def load_json(path: Optional[str]) -> Optional[Any]:
    if not path:
        return None
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def sum_summary_failures(summary_dir: Optional[str]) -> int:
    """Sum the ``failed`` counter of every *_summary.json in a directory."""
    if not summary_dir:
        return 0
    total = 0
    for path in sorted(glob.glob(os.path.join(summary_dir, "*_summary.json"))):
        document = load_json(path) or {}
        total += int(to_number(document.get("failed")) or 0)
    return total


def build_gate_inputs(
    before_path: str,
    after_path: str,
    taxonomy_after_path: str,
    runlist_summary_path: str,
    runlist_path: str,
    taxonomy_before_path: Optional[str] = None,
    cohort_ids_path: Optional[str] = None,
    summary_dir: Optional[str] = None,
) -> GateInputs:
    runlist_summary = load_json(runlist_summary_path) or {}
    cohort_path = cohort_ids_path or runlist_summary.get("sourceIdsOutput")
    return GateInputs(
        before=load_json(before_path),
        after=load_json(after_path),
        taxonomy_before=load_json(taxonomy_before_path),
        taxonomy_after=load_json(taxonomy_after_path),
        runlist_summary=runlist_summary,
        runlist_source_ids=load_source_ids_file(runlist_path),
        cohort_source_ids=load_source_ids_file(cohort_path) if cohort_path else [],
        failures=sum_summary_failures(summary_dir),
    )

