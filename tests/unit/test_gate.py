"""
Unit tests for the form_raw backfill release gate
"""

import json

import pytest

from diagnostics.gate import GateInputs, build_gate_inputs, evaluate_gate, ratio_delta, sum_summary_failures


def passing_inputs(**overrides):
    values = dict(
        before={"zeroCoverageCount": 100, "reasonBreakdown": {"taxonomyMismatch": 50}},
        after=[
            {"zeroCoverageCount": 40, "reasonBreakdown": {"taxonomyMismatch": 10}},
            {"zeroCoverageCount": 20},
        ],
        taxonomy_before={"ratios": {"formRawMissingAmongResolved": 0.6}},
        taxonomy_after={"ratios": {"taxonomyMismatchAmongResolved": 0.05, "formRawMissingAmongResolved": 0.3}},
        runlist_summary={"totalRunlistLines": 250, "uniqueSourceIds": 240},
        runlist_source_ids=["1", "2"],
        cohort_source_ids=["1", "2", "3"],
        failures=0,
    )
    values.update(overrides)
    return GateInputs(**values)


class TestRatioDelta:
    def test_relative_improvement(self):
        assert ratio_delta(0.5, 0.1) == 0.8
        assert ratio_delta(10, 12) == -0.2

    def test_undefined(self):
        assert ratio_delta(0, 0.1) is None
        assert ratio_delta(None, 0.1) is None
        assert ratio_delta(0.5, None) is None


class TestEvaluateGate:
    """Test gate decisions and failure reasons"""

    def test_pass(self):
        """Test coverage reports summed over a list and all gates passing"""
        result = evaluate_gate(passing_inputs())

        # Assertions
        assert result["before"] == {"zeroCoverageCount": 100, "taxonomyMismatch": 50}
        assert result["after"] == {"zeroCoverageCount": 60, "taxonomyMismatch": 10}
        assert result["deltas"] == {"taxonomyMismatch": 0.8, "zeroCoverage": 0.4, "formRawMissing": 0.5}
        assert result["runlist"]["cohortSize"] == 3
        assert result["runlist"]["outOfScopeCount"] == 0
        assert result["gates"]["pass"] is True
        assert result["gates"]["reasons"] == []

    def test_fail_reasons_in_gate_order(self):
        result = evaluate_gate(passing_inputs(
            after={"zeroCoverageCount": 100, "reasonBreakdown": {"taxonomyMismatch": 50}},
            taxonomy_before=None,
            taxonomy_after={"ratios": {"taxonomyMismatchAmongResolved": 0.1}},
            runlist_summary={"totalRunlistLines": 10, "uniqueSourceIds": 10},
            runlist_source_ids=["1", "9"],
            failures=2,
        ))

        # Assertions
        assert result["gates"]["pass"] is False
        assert result["gates"]["reasons"] == [
            "failures_nonzero",
            "taxonomy_mismatch_threshold",
            "no_required_improvement",
            "insufficient_unique_source_ids",
            "runlist_out_of_scope",
        ]
        assert result["runlist"]["outOfScopeSample"] == ["9"]
        assert result["deltas"]["formRawMissing"] is None

    def test_one_improvement_is_enough(self):
        """Only the form_raw missing ratio improved"""
        result = evaluate_gate(passing_inputs(
            after={"zeroCoverageCount": 100, "reasonBreakdown": {"taxonomyMismatch": 50}},
        ))

        assert result["gates"]["improvementOk"] is True
        assert result["gates"]["pass"] is True

    def test_missing_taxonomy_after_fails(self):
        result = evaluate_gate(passing_inputs(taxonomy_after=None))

        assert result["taxonomy"]["mismatchAmongResolvedAfter"] is None
        assert "taxonomy_mismatch_threshold" in result["gates"]["reasons"]

    def test_empty_runlist(self):
        result = evaluate_gate(passing_inputs(runlist_summary={}))

        assert result["gates"]["reasons"] == ["empty_runlist", "insufficient_unique_source_ids"]


class TestGateInputs:
    """Test reading gate inputs from files"""

    def test_build_from_files(self, tmp_path):
        (tmp_path / "before.json").write_text(json.dumps({"zeroCoverageCount": 10}))
        (tmp_path / "after.json").write_text(json.dumps({"zeroCoverageCount": 5}))
        (tmp_path / "taxonomy-after.json").write_text(json.dumps({"ratios": {"taxonomyMismatchAmongResolved": 0}}))
        cohort_path = tmp_path / "cohort.json"
        cohort_path.write_text(json.dumps(["101", "102", "103"]))
        (tmp_path / "runlist-summary.json").write_text(json.dumps({
            "totalRunlistLines": 2, "uniqueSourceIds": 2, "sourceIdsOutput": str(cohort_path),
        }))
        (tmp_path / "runlist.jsonl").write_text('{"sourceId": "101"}\n{"sourceId": "102"}\n')
        summaries = tmp_path / "summaries"
        summaries.mkdir()
        (summaries / "dsld_summary.json").write_text(json.dumps({"failed": 1}))
        (summaries / "lnhpd_summary.json").write_text(json.dumps({"failed": 2}))
        (summaries / "notes.json").write_text(json.dumps({"failed": 5}))

        inputs = build_gate_inputs(
            str(tmp_path / "before.json"),
            str(tmp_path / "after.json"),
            str(tmp_path / "taxonomy-after.json"),
            str(tmp_path / "runlist-summary.json"),
            str(tmp_path / "runlist.jsonl"),
            summary_dir=str(summaries),
        )

        # Assertions
        assert inputs.before == {"zeroCoverageCount": 10}
        assert inputs.taxonomy_before is None
        assert inputs.runlist_source_ids == ["101", "102"]
        assert inputs.cohort_source_ids == ["101", "102", "103"]
        assert inputs.failures == 3

    def test_sum_summary_failures_without_directory(self):
        assert sum_summary_failures(None) == 0

    def test_missing_input_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            build_gate_inputs(
                str(tmp_path / "missing.json"),
                str(tmp_path / "missing.json"),
                str(tmp_path / "missing.json"),
                str(tmp_path / "missing.json"),
                str(tmp_path / "missing.jsonl"),
            )
