"""
Pytest configuration and fixtures
"""

import pytest
from unittest.mock import AsyncMock

from core.retry import RetryPolicy
from ingestion.checkpoint import CheckpointFile
from ingestion.journal import FailureJournal
from ingestion.orchestrator import BackfillOrchestrator
from scoring.engine import V4_SCORE_VERSION
from store.memory_store import InMemoryReferenceStore

DATASET_VERSION = "2024-06-01"


@pytest.fixture
def reference_tables():
    """Reference data: zinc, magnesium and vitamin C with forms, one global alias and evidence"""
    return {
        "scoring_dataset_state": [
            {"key": "ingredient_dataset", "version": DATASET_VERSION},
        ],
        "ingredients": [
            {"id": "ing-mag", "name": "Magnesium", "unit": "mg", "rda_adult": 400, "ul_adult": 350,
             "goals": ["sleep_stress"]},
            {"id": "ing-vitc", "name": "Vitamin C", "unit": "mg", "rda_adult": 90, "ul_adult": 2000,
             "goals": ["immune"]},
            {"id": "ing-zinc", "name": "Zinc", "unit": "mg", "rda_adult": 11, "ul_adult": 40,
             "goals": ["immune"]},
        ],
        "ingredient_synonyms": [
            {"ingredient_id": "ing-zinc", "synonym": "Zinc Gluconate"},
            {"ingredient_id": "ing-mag", "synonym": "Magnesium (as Malate)"},
            {"ingredient_id": "ing-vitc", "synonym": "Vitamin C 500 mg"},
        ],
        "ingredient_forms": [
            {"id": "form-mg-cit", "ingredient_id": "ing-mag", "form_key": "citrate",
             "form_label": "Magnesium Citrate", "relative_factor": 1.1, "confidence": 0.8,
             "evidence_grade": "b", "audit_status": "verified"},
            {"id": "form-mg-ox", "ingredient_id": "ing-mag", "form_key": "oxide",
             "form_label": "Magnesium Oxide", "relative_factor": 0.8, "confidence": 0.7,
             "evidence_grade": "c", "audit_status": "derived"},
            {"id": "form-zn-gluc", "ingredient_id": "ing-zinc", "form_key": "gluconate",
             "form_label": "Zinc Gluconate", "relative_factor": 1.0, "confidence": 0.8,
             "evidence_grade": "b", "audit_status": "verified"},
        ],
        "ingredient_form_aliases": [
            {"id": "alias-malate", "alias_text": "malate", "alias_norm": "malate", "form_key": "l_threonate",
             "ingredient_id": None, "confidence": 0.7, "audit_status": "derived", "source": "import"},
        ],
        "ingredient_evidence": [
            {"id": "ev-zn-immune", "ingredient_id": "ing-zinc", "goal": "immune", "min_effective_dose": 8,
             "optimal_dose_range": "[8,25]", "evidence_grade": "b", "audit_status": "verified"},
            {"id": "ev-vitc-immune", "ingredient_id": "ing-vitc", "goal": "immune", "min_effective_dose": 100,
             "optimal_dose_range": "[200,1000]", "evidence_grade": "a", "audit_status": "pending"},
        ],
        "ingredient_evidence_citations": [
            {"id": 1, "evidence_id": "ev-zn-immune", "citation_id": "ref-zinc-1"},
        ],
    }


@pytest.fixture
def dsld_records():
    """
    101: zinc resolves to a writable form, magnesium hits a taxonomy conflict
    102: vitamin C without form text
    103: inactive ingredients only
    """
    return [
        {
            "dsld_label_id": 101,
            "facts_json": {
                "actives": [
                    {"name": "Zinc Gluconate", "amount": 15, "unit": "mg"},
                    {"name": "Magnesium (as Malate)", "amount": 100, "unit": "mg"},
                ],
                "inactive": ["Cellulose"],
            },
        },
        {
            "dsld_label_id": 102,
            "facts_json": {"actives": [{"name": "Vitamin C 500 mg", "amount": 500, "unit": "mg"}]},
        },
        {
            "dsld_label_id": 103,
            "facts_json": {"inactive": ["Rice flour"]},
        },
    ]


@pytest.fixture
def lnhpd_records():
    return [
        {
            "lnhpd_id": 201,
            "npn": "80012345",
            "is_on_market": True,
            "facts_json": {
                "medicinalIngredients": [
                    {"ingredient_name": "Zinc", "proper_name": "Zinc gluconate", "quantity": 10,
                     "quantity_unit": "mg"},
                ],
                "nonMedicinalIngredients": [{"ingredient_name": "Magnesium stearate"}],
                "doses": [
                    {"population_type_desc": "Adults", "frequency": 2, "uom_type_desc_frequency": "Daily",
                     "quantity_dose": 1},
                ],
            },
        },
    ]


@pytest.fixture
def store(reference_tables, dsld_records, lnhpd_records):
    """In-memory reference store seeded with reference data and label facts"""
    memory = InMemoryReferenceStore(reference_tables)
    memory.seed("dsld_label_facts", dsld_records)
    memory.seed("lnhpd_facts", lnhpd_records)
    return memory


@pytest.fixture
def failures_path(tmp_path):
    return str(tmp_path / "failures.jsonl")


@pytest.fixture
def checkpoint_path(tmp_path):
    return str(tmp_path / "checkpoints.json")


@pytest.fixture
def orchestrator(store, failures_path, checkpoint_path):
    """Orchestrator over the seeded store with a journal and checkpoint file under tmp_path"""
    return BackfillOrchestrator(
        store,
        FailureJournal(failures_path),
        checkpoints=CheckpointFile(checkpoint_path),
    )


@pytest.fixture
def fast_retry():
    """Retry policy that never sleeps and adds no jitter"""
    return RetryPolicy(max_attempts=3, sleep=AsyncMock(), random_fn=lambda: 0.0)


def product_row(source_id, name_raw, ingredient_id=None, form_raw=None, is_active=True, source="dsld"):
    return {
        "source": source,
        "source_id": source_id,
        "canonical_source_id": source_id,
        "ingredient_id": ingredient_id,
        "name_raw": name_raw,
        "form_raw": form_raw,
        "amount": None,
        "unit": None,
        "amount_unknown": True,
        "basis": "label_serving",
        "is_active": is_active,
        "is_proprietary_blend": False,
        "parse_confidence": 0.9,
    }


def score_row(source_id, form_coverage_ratio, computed_at, score_version=V4_SCORE_VERSION, source="dsld"):
    explain = None if form_coverage_ratio is None else {"evidence": {"formCoverageRatio": form_coverage_ratio}}
    return {
        "source": source,
        "source_id": source_id,
        "canonical_source_id": source_id,
        "score_version": score_version,
        "explain_json": explain,
        "computed_at": computed_at,
    }


@pytest.fixture
def diagnostics_store(store):
    """
    Stored products for the diagnostic reports and runlists:
    101 zinc without form text and magnesium with a mismatched "malate",
    102 vitamin C without forms, 103 unresolved, 104 a matched magnesium
    citrate, 105 zinc with an unknown "picolinate". 102 and 105 score zero
    form coverage.
    """
    store.seed("product_ingredients", [
        product_row("101", "Zinc Gluconate", "ing-zinc"),
        product_row("101", "Magnesium (as Malate)", "ing-mag", form_raw="malate"),
        product_row("102", "Vitamin C 500 mg", "ing-vitc"),
        product_row("102", "Cellulose", is_active=False),
        product_row("103", "Mystery blend"),
        product_row("104", "Magnesium Citrate", "ing-mag", form_raw="citrate"),
        product_row("105", "Zinc Picolinate", "ing-zinc", form_raw="picolinate"),
    ])
    store.seed("product_scores", [
        score_row("101", 0.5, "2024-06-02T00:00:00Z"),
        score_row("102", 0, "2024-06-03T00:00:00Z"),
        score_row("103", 0, "2024-06-04T00:00:00Z", score_version="v3.2.0"),
        score_row("104", None, "2024-06-05T00:00:00Z"),
        score_row("105", 0.0, "2024-06-06T00:00:00Z"),
    ])
    return store
