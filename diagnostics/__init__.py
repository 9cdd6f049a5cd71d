"""
Form-coverage diagnostics and the backfill release gate.

Modules:
    sampling: Product samples, id files and shared counters
    taxonomy: Candidate / form / alias matching and the taxonomy report
    coverage: Zero form-coverage breakdown over stored v4 scores
    yield_report: Extractor + resolver dry run over a sample
    gate: Before/after release gate for a form_raw backfill

Usage:
    from diagnostics import coverage_report, taxonomy_report, yield_report

    report = await coverage_report(store, "lnhpd", limit=500)
"""

from diagnostics.coverage import coverage_report
from diagnostics.gate import GateInputs, build_gate_inputs, evaluate_gate
from diagnostics.taxonomy import check_candidate, taxonomy_report
from diagnostics.yield_report import yield_report

__all__ = [
    "coverage_report",
    "taxonomy_report",
    "yield_report",
    "check_candidate",
    "GateInputs",
    "build_gate_inputs",
    "evaluate_gate",
]
