"""
Pydantic schemas for failure journal lines and checkpoint documents
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime


class PayloadSummary(BaseModel):
    """Minimal row snapshot attached to a failure for offline diagnosis"""
    ingredient_id: Optional[str] = Field(None, alias="ingredientId")
    name_key: Optional[str] = Field(None, alias="nameKey")
    unit: Optional[str] = None
    amount: Optional[float] = None
    amount_normalized: Optional[float] = Field(None, alias="amountNormalized")
    basis: Optional[str] = None
    unit_kind: Optional[str] = Field(None, alias="unitKind")
    daily_multiplier: Optional[float] = Field(None, alias="dailyMultiplier")

    class Config:
        populate_by_name = True


class FailureEntry(BaseModel):
    """
    One append-only journal line describing a failed unit of work.

    Serialized with camelCase keys; unknown keys in older journals are ignored.
    """
    timestamp: str = Field(default_factory=lambda: datetime.utcnow().isoformat() + "Z")
    source: str
    source_id: str = Field(..., alias="sourceId")
    canonical_source_id: Optional[str] = Field(None, alias="canonicalSourceId")
    stage: str
    status: Optional[int] = None
    ray_id: Optional[str] = Field(None, alias="rayId")
    message: Optional[str] = None
    error_code: Optional[str] = Field(None, alias="errorCode")
    error_details: Optional[str] = Field(None, alias="errorDetails")
    error_hint: Optional[str] = Field(None, alias="errorHint")
    payload_summary: Optional[List[PayloadSummary]] = Field(None, alias="payloadSummary")
    overflow_fields: Optional[List[str]] = Field(None, alias="overflowFields")

    class Config:
        populate_by_name = True
        extra = "ignore"

    @validator("payload_summary", pre=True)
    def wrap_single_summary(cls, v):
        """Older lines carry one summary object instead of a list"""
        if isinstance(v, dict):
            return [v]
        return v

    @validator("overflow_fields", pre=True)
    def overflow_names(cls, v):
        if isinstance(v, dict):
            return sorted(v)
        return v

    @validator("source_id", "canonical_source_id", pre=True)
    def stringify_ids(cls, v):
        return None if v is None else str(v)

    def to_line(self) -> Dict[str, Any]:
        return self.dict(by_alias=True)


class CheckpointEntry(BaseModel):
    """Per-source cursor state"""
    score_version: str = Field(..., alias="scoreVersion")
    start_id: int = Field(0, alias="startId")
    end_id: Optional[int] = Field(None, alias="endId")
    last_id: Optional[int] = Field(None, alias="lastId")
    next_start: Optional[int] = Field(None, alias="nextStart")
    updated_at: str = Field(default_factory=lambda: datetime.utcnow().isoformat() + "Z", alias="updatedAt")
    stats: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True
        extra = "ignore"
