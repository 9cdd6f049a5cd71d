"""
Pydantic schemas for ingredient reference data rows
"""

from pydantic import BaseModel, validator
from typing import Optional, List

from core.text import normalize_text


class IngredientMeta(BaseModel):
    """Scoring metadata of one ingredient"""
    id: str
    unit: Optional[str] = None
    rda_adult: Optional[float] = None
    ul_adult: Optional[float] = None
    goals: Optional[List[str]] = None

    @validator("goals", pre=True)
    def ensure_goal_list(cls, v):
        """Non-list goal payloads are treated as missing"""
        if isinstance(v, list):
            return [str(goal) for goal in v]
        return None

    class Config:
        from_attributes = True
        extra = "ignore"


class IngredientFormRow(BaseModel):
    id: str
    ingredient_id: str
    form_key: str
    form_label: str = ""
    relative_factor: Optional[float] = None
    confidence: Optional[float] = None
    evidence_grade: Optional[str] = None
    audit_status: Optional[str] = None

    @validator("form_label", pre=True)
    def default_label(cls, v):
        return v or ""

    class Config:
        from_attributes = True
        extra = "ignore"


class IngredientFormAliasRow(BaseModel):
    """
    Alias row. A missing alias_norm is derived from alias_text so that rows
    written by older import jobs still participate in matching.
    """
    id: str
    alias_text: str
    alias_norm: str = ""
    form_key: str
    ingredient_id: Optional[str] = None
    confidence: Optional[float] = None
    audit_status: Optional[str] = None
    source: Optional[str] = None

    @property
    def norm(self) -> str:
        return self.alias_norm or normalize_text(self.alias_text)

    @property
    def is_global(self) -> bool:
        return not self.ingredient_id

    class Config:
        from_attributes = True
        extra = "ignore"


class IngredientEvidenceRow(BaseModel):
    id: str
    ingredient_id: str
    goal: str
    min_effective_dose: Optional[float] = None
    optimal_dose_range: Optional[str] = None
    evidence_grade: Optional[str] = None
    audit_status: Optional[str] = None

    class Config:
        from_attributes = True
        extra = "ignore"
