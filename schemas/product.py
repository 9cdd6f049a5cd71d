"""
Pydantic schemas for label facts and product ingredient rows with validation
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any

from core.text import normalize_name_key
from models.base import Basis

# Columns read back from product_ingredients for scoring and hashing
PRODUCT_INGREDIENT_COLUMNS = [
    "id",
    "source",
    "source_id",
    "canonical_source_id",
    "ingredient_id",
    "name_raw",
    "name_key",
    "form_raw",
    "amount",
    "unit",
    "unit_raw",
    "amount_normalized",
    "unit_normalized",
    "unit_kind",
    "amount_unknown",
    "basis",
    "is_active",
    "is_proprietary_blend",
    "parse_confidence",
]


# ============================================================================
# Label Facts (adapter output)
# ============================================================================

class ActiveIngredient(BaseModel):
    name: str
    amount: Optional[float] = None
    unit: Optional[str] = None
    # Structured form fields (LNHPD); free text the token extractor reads
    form_fields: Dict[str, Any] = Field(default_factory=dict)


class ProprietaryBlend(BaseModel):
    name: str
    total_amount: Optional[float] = None
    unit: Optional[str] = None
    ingredients: Optional[List[str]] = None


class LabelFacts(BaseModel):
    """
    Source-independent label facts produced by a per-source adapter.

    Ensures:
    - Names are stripped, empty names dropped
    - inactive is always a list of strings
    """
    actives: List[ActiveIngredient] = Field(default_factory=list)
    inactive: List[str] = Field(default_factory=list)
    proprietary_blends: List[ProprietaryBlend] = Field(default_factory=list)

    @validator("inactive", pre=True)
    def clean_inactive(cls, v):
        """Accept a list or a ';'-separated string"""
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(";")
        return [str(item).strip() for item in v if item and str(item).strip()]

    @property
    def is_empty(self) -> bool:
        return not (self.actives or self.inactive or self.proprietary_blends)


# ============================================================================
# Product Ingredient Rows
# ============================================================================

class ProductIngredientRow(BaseModel):
    """Row shape of product_ingredients shared by the builder, resolver and engine"""

    id: Optional[int] = None
    source: str
    source_id: str
    canonical_source_id: Optional[str] = None
    ingredient_id: Optional[str] = None
    name_raw: str
    name_key: Optional[str] = None
    form_raw: Optional[str] = None
    amount: Optional[float] = None
    unit: Optional[str] = None
    unit_raw: Optional[str] = None
    amount_normalized: Optional[float] = None
    unit_normalized: Optional[str] = None
    unit_kind: Optional[str] = None
    amount_unknown: bool = True
    basis: str = Basis.LABEL_SERVING.value
    is_active: bool = True
    is_proprietary_blend: bool = False
    parse_confidence: Optional[float] = None

    @validator("source_id", "canonical_source_id", "ingredient_id", pre=True)
    def stringify_ids(cls, v):
        """Ids arrive as ints from some stores"""
        if v is None:
            return None
        return str(v)

    @validator("amount_unknown", "is_active", pre=True)
    def null_means_true(cls, v):
        return True if v is None else bool(v)

    @validator("is_proprietary_blend", pre=True)
    def null_means_false(cls, v):
        return bool(v)

    @property
    def key(self) -> str:
        """Normalized name key, derived from name_raw when the column is empty"""
        return self.name_key or normalize_name_key(self.name_raw)

    @property
    def has_form(self) -> bool:
        return bool(self.form_raw and self.form_raw.strip())

    def to_store(self) -> Dict[str, Any]:
        """Column dict for upserts (store-generated id omitted)"""
        data = self.dict(exclude={"id"})
        data["name_key"] = self.key
        return data

    class Config:
        from_attributes = True
        extra = "ignore"
