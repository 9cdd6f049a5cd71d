from sqlalchemy import Column, String, Integer, Float, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
import uuid
from models.base import Base, AuditStatus


def _uuid() -> str:
    return str(uuid.uuid4())


class Ingredient(Base):
    """
    Canonical substance entity.

    Created by the ingredient-resolution step upstream of this pipeline and
    immutable once referenced by scores. The scoring metadata (base unit,
    RDA, UL and goal tags) is read by the score engine.
    """
    __tablename__ = "ingredients"

    id = Column(String(64), primary_key=True, default=_uuid)
    name = Column(String(500), nullable=False, index=True)
    canonical_key = Column(String(500), nullable=False, unique=True)

    # Scoring metadata
    unit = Column(String(32), nullable=True)
    rda_adult = Column(Float, nullable=True)
    ul_adult = Column(Float, nullable=True)
    goals = Column(JSONB, nullable=True)  # Array of goal ids

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class IngredientSynonym(Base):
    """Alternative names used to resolve label text to an ingredient"""
    __tablename__ = "ingredient_synonyms"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ingredient_id = Column(String(64), ForeignKey("ingredients.id"), nullable=False, index=True)
    synonym = Column(String(500), nullable=False, index=True)


class IngredientUnitConversion(Base):
    """Per-ingredient unit conversion factors (e.g. iu -> mcg for vitamin D)"""
    __tablename__ = "ingredient_unit_conversions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ingredient_id = Column(String(64), ForeignKey("ingredients.id"), nullable=False)
    from_unit = Column(String(32), nullable=False)
    to_unit = Column(String(32), nullable=False)
    factor = Column(Float, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_unit_conversion_lookup", "ingredient_id", "from_unit", "to_unit"),
    )


class IngredientForm(Base):
    """
    A recognized chemical/physical form of an ingredient (citrate, root, liposomal).

    Form keys are normalized tokens, unique per ingredient. Only ``verified``
    forms contribute potency (relative_factor) to scoring.
    """
    __tablename__ = "ingredient_forms"

    id = Column(String(64), primary_key=True, default=_uuid)
    ingredient_id = Column(String(64), ForeignKey("ingredients.id"), nullable=False, index=True)
    form_key = Column(String(200), nullable=False)
    form_label = Column(String(500), nullable=False)
    audit_status = Column(String(32), nullable=False, default=AuditStatus.DERIVED.value)
    confidence = Column(Float, nullable=True)
    relative_factor = Column(Float, nullable=True)
    evidence_grade = Column(String(32), nullable=True)

    __table_args__ = (
        Index("idx_ingredient_form_key", "ingredient_id", "form_key", unique=True),
    )


class IngredientFormAlias(Base):
    """
    Text pattern that resolves to a form key.

    A null ingredient_id makes the alias global; global aliases are only
    consulted when no ingredient-scoped alias matches.
    """
    __tablename__ = "ingredient_form_aliases"

    id = Column(String(64), primary_key=True, default=_uuid)
    alias_text = Column(String(500), nullable=False)
    alias_norm = Column(String(500), nullable=False, index=True)
    form_key = Column(String(200), nullable=False)
    ingredient_id = Column(String(64), ForeignKey("ingredients.id"), nullable=True, index=True)
    confidence = Column(Float, nullable=True)
    audit_status = Column(String(32), nullable=True, default=AuditStatus.DERIVED.value)
    source = Column(String(100), nullable=True)


class IngredientEvidence(Base):
    """Goal-level dosing evidence for an ingredient"""
    __tablename__ = "ingredient_evidence"

    id = Column(String(64), primary_key=True, default=_uuid)
    ingredient_id = Column(String(64), ForeignKey("ingredients.id"), nullable=False, index=True)
    goal = Column(String(100), nullable=False)
    min_effective_dose = Column(Float, nullable=True)
    optimal_dose_range = Column(Text, nullable=True)  # numrange text, e.g. "[100,400]"
    evidence_grade = Column(String(32), nullable=True)
    audit_status = Column(String(32), nullable=True)


class IngredientEvidenceCitation(Base):
    __tablename__ = "ingredient_evidence_citations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    evidence_id = Column(String(64), ForeignKey("ingredient_evidence.id"), nullable=False, index=True)
    citation_id = Column(String(64), nullable=False)


class IngredientFormCitation(Base):
    __tablename__ = "ingredient_form_citations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    form_id = Column(String(64), ForeignKey("ingredient_forms.id"), nullable=False, index=True)
    citation_id = Column(String(64), nullable=False)


class ScoringDatasetState(Base):
    """Version tags of reference datasets; key "ingredient_dataset" feeds the inputs hash"""
    __tablename__ = "scoring_dataset_state"

    key = Column(String(100), primary_key=True)
    version = Column(String(100), nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
