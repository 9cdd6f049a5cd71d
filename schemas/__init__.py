"""
Pydantic schemas shared by the store clients, resolver, score engine and backfill.

Modules:
    ingredient: Reference data rows (meta, forms, aliases, evidence)
    product: Label facts and product ingredient rows
    score: Daily multiplier and score results
    journal: Failure journal lines and checkpoint entries
"""

from schemas.ingredient import IngredientMeta, IngredientFormRow, IngredientFormAliasRow, IngredientEvidenceRow
from schemas.product import LabelFacts, ActiveIngredient, ProprietaryBlend, ProductIngredientRow
from schemas.score import DailyMultiplier, ScoreResult
from schemas.journal import FailureEntry, PayloadSummary, CheckpointEntry

__all__ = [
    "IngredientMeta",
    "IngredientFormRow",
    "IngredientFormAliasRow",
    "IngredientEvidenceRow",
    "LabelFacts",
    "ActiveIngredient",
    "ProprietaryBlend",
    "ProductIngredientRow",
    "DailyMultiplier",
    "ScoreResult",
    "FailureEntry",
    "PayloadSummary",
    "CheckpointEntry",
]
