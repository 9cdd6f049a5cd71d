"""
Deterministic v4 product scoring.

Modules:
    dataset_cache: Read-only reference snapshot shared by a run
    dosing: Daily multipliers, dose adequacy and UL warnings
    matching: Best verified form for a row's text
    goals: Best-fit goal ranking
    engine: Score bundle, inputs hash and the ScoreEngine entry points
"""

from scoring.dataset_cache import DatasetCache, ReferenceData
from scoring.engine import V4_SCORE_VERSION, ScoreEngine, build_inputs_hash

__all__ = [
    "DatasetCache",
    "ReferenceData",
    "ScoreEngine",
    "V4_SCORE_VERSION",
    "build_inputs_hash",
]
