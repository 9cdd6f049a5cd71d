from sqlalchemy import Column, String, BigInteger, Boolean, Float, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
from models.base import Base, Basis


class ProductIngredient(Base):
    """
    One ingredient occurrence inside one source product record.

    Mutation rules:
    - Created/refreshed by the backfill ingredient upsert
    - form_raw is filled only by the form resolver, and only while empty
    - Rows are never deleted by the pipeline
    """
    __tablename__ = "product_ingredients"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    # Source tracking
    source = Column(String(32), nullable=False)
    source_id = Column(String(100), nullable=False)
    canonical_source_id = Column(String(100), nullable=True, index=True)

    # Identity
    ingredient_id = Column(String(64), nullable=True, index=True)
    name_raw = Column(Text, nullable=False)
    name_key = Column(Text, nullable=True)
    form_raw = Column(Text, nullable=True)  # Empty means "not yet resolved"

    # Amounts
    amount = Column(Float, nullable=True)
    unit = Column(String(64), nullable=True)
    unit_raw = Column(String(200), nullable=True)
    amount_normalized = Column(Float, nullable=True)
    unit_normalized = Column(String(64), nullable=True)
    unit_kind = Column(String(32), nullable=True)
    amount_unknown = Column(Boolean, nullable=False, default=True)

    # Flags
    basis = Column(String(32), nullable=False, default=Basis.LABEL_SERVING.value)
    is_active = Column(Boolean, nullable=False, default=True)
    is_proprietary_blend = Column(Boolean, nullable=False, default=False)
    parse_confidence = Column(Float, nullable=True)

    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_product_ingredient_upsert", "source", "source_id", "name_raw", unique=True),
        Index("idx_product_ingredient_source", "source", "source_id"),
    )


class ProductScore(Base):
    """
    Computed v4 score bundle for one (source, source_id) pair.

    Recomputation is skipped when score_version and inputs_hash both match
    the stored row, unless a force flag is set.
    """
    __tablename__ = "product_scores"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    source = Column(String(32), nullable=False)
    source_id = Column(String(100), nullable=False)
    canonical_source_id = Column(String(100), nullable=True)
    score_version = Column(String(50), nullable=False)

    overall_score = Column(Float, nullable=False)
    effectiveness_score = Column(Float, nullable=False)
    safety_score = Column(Float, nullable=False)
    integrity_score = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    confidence_label = Column(String(16), nullable=True)

    best_fit_goals = Column(JSONB, nullable=True)
    flags_json = Column(JSONB, nullable=True)
    highlights_json = Column(JSONB, nullable=True)
    explain_json = Column(JSONB, nullable=True)

    inputs_hash = Column(String(64), nullable=False)
    computed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_product_scores_source", "source", "source_id", unique=True),
    )
