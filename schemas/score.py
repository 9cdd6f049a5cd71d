"""
Pydantic schemas for daily multipliers and computed score results
"""

from pydantic import BaseModel
from typing import Optional, List, Dict, Any


class DailyMultiplier(BaseModel):
    """
    Factor turning a per-serving dose into a per-day exposure.

    ``source`` is always set (default_no_dosing_info, lnhpd_dose, ...) so the
    explanation payload can say where the multiplier came from.
    """
    multiplier: float = 1.0
    source: str = "default_no_dosing_info"
    reliability: str = "default"  # reliable | default | unreliable
    lnhpd_id_used_for_dose_lookup: Optional[str] = None
    dose_rows_found: Optional[int] = None
    selected_dose_pop: Optional[str] = None
    frequency_unit: Optional[str] = None
    penalty_reason: Optional[str] = None


class ScoreFlag(BaseModel):
    code: str
    message: str
    severity: str  # info | warning | risk


class ScoreHighlight(BaseModel):
    code: str
    message: str


class GoalFit(BaseModel):
    goal: str
    label: str
    score: int


class ScoreResult(BaseModel):
    """
    Output of one score computation.

    ``bundle`` is the camelCase document persisted/served to clients:
    overallScore, pillars, confidence, confidenceLabel, bestFitGoals, flags,
    highlights, provenance and explain.
    """
    bundle: Dict[str, Any]
    inputs_hash: str
    source_id_for_write: str
    canonical_source_id: Optional[str] = None

    @property
    def overall_score(self) -> float:
        return self.bundle["overallScore"]

    @property
    def pillars(self) -> Dict[str, float]:
        return self.bundle["pillars"]

    @property
    def confidence(self) -> float:
        return self.bundle["confidence"]

    def to_score_row(self, source: str) -> Dict[str, Any]:
        """Row for the product_scores upsert keyed on (source, source_id)"""
        provenance = self.bundle["provenance"]
        return {
            "source": source,
            "source_id": self.source_id_for_write,
            "canonical_source_id": self.canonical_source_id,
            "score_version": provenance["scoreVersion"],
            "overall_score": self.bundle["overallScore"],
            "effectiveness_score": self.pillars["effectiveness"],
            "safety_score": self.pillars["safety"],
            "integrity_score": self.pillars["integrity"],
            "confidence": self.bundle["confidence"],
            "confidence_label": self.bundle.get("confidenceLabel"),
            "best_fit_goals": self.bundle["bestFitGoals"],
            "flags_json": self.bundle["flags"],
            "highlights_json": self.bundle["highlights"],
            "explain_json": self.bundle["explain"],
            "inputs_hash": self.inputs_hash,
            "computed_at": provenance["computedAt"],
        }


class CompareResult(BaseModel):
    """Cached vs uncached comparison for one product"""
    source_id: str
    matched: bool
    mismatches: List[str] = []
