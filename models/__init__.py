"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class and shared enums (ScoreSource, AuditStatus, Basis)
    ingredient: Ingredient reference data (forms, aliases, evidence, citations,
        synonyms, unit conversions, dataset version state)
    product: Product ingredient occurrences and computed product scores
    label_facts: Raw DSLD / LNHPD label facts consumed by the backfill

Database Schema:
    All models inherit from the Base declarative class and use
    PostgreSQL-specific features like JSONB for nested payloads.
    Importing this package registers every table on Base.metadata, which
    the SQL reference store and Alembic both rely on.

Usage:
    from models import Base, ProductIngredient, ProductScore
    from models.base import ScoreSource

Relationships:
    - Ingredient → IngredientForm / IngredientFormAlias / IngredientEvidence (one-to-many)
    - IngredientEvidence → IngredientEvidenceCitation (one-to-many)
    - IngredientForm → IngredientFormCitation (one-to-many)
    - ProductIngredient / ProductScore keyed by (source, source_id)
"""

from models.base import Base, ScoreSource, AuditStatus, Basis
from models.ingredient import (
    Ingredient,
    IngredientSynonym,
    IngredientUnitConversion,
    IngredientForm,
    IngredientFormAlias,
    IngredientEvidence,
    IngredientEvidenceCitation,
    IngredientFormCitation,
    ScoringDatasetState,
)
from models.product import ProductIngredient, ProductScore
from models.label_facts import DsldLabelFacts, LnhpdFacts

__all__ = [
    "Base",
    "ScoreSource",
    "AuditStatus",
    "Basis",
    "Ingredient",
    "IngredientSynonym",
    "IngredientUnitConversion",
    "IngredientForm",
    "IngredientFormAlias",
    "IngredientEvidence",
    "IngredientEvidenceCitation",
    "IngredientFormCitation",
    "ScoringDatasetState",
    "ProductIngredient",
    "ProductScore",
    "DsldLabelFacts",
    "LnhpdFacts",
]
