"""
Product-ingredient rows from label facts.

This module provides:
- Unit label normalization (mcg/mg/g/iu/ml/cfu/...) with CFU count scaling
- Row building for actives, proprietary blends and inactive ingredients
- Dedupe on (source, source_id, name_raw)
- IngredientLookup: ingredient id by name or synonym, and base-unit conversion
- Merge with stored rows (stored ingredient_id and form_raw are kept)
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import logging

from core.text import normalize_name_key, to_number
from models.base import Basis
from schemas.journal import PayloadSummary
from schemas.product import LabelFacts, ProductIngredientRow
from store.base import Order, ReferenceStore, eq, escape_pattern, ilike

logger = logging.getLogger(__name__)

CFU_SCALES = [("trillion", 1_000_000_000_000), ("billion", 1_000_000_000), ("million", 1_000_000)]

UNIT_KINDS = {
    "mcg": "mass",
    "mg": "mass",
    "g": "mass",
    "ml": "volume",
    "iu": "iu",
    "cfu": "cfu",
    "kcal": "energy",
    "cal": "energy",
    "%": "percent",
}

# String column widths on product_ingredients
COLUMN_LIMITS = {
    "source_id": 100,
    "canonical_source_id": 100,
    "ingredient_id": 64,
    "unit": 64,
    "unit_raw": 200,
    "unit_normalized": 64,
    "unit_kind": 32,
    "basis": 32,
}

# Columns compared when deciding whether a stored row needs rewriting
COMPARED_COLUMNS = [
    "canonical_source_id", "ingredient_id", "name_key", "form_raw", "amount", "unit", "unit_raw",
    "amount_normalized", "unit_normalized", "unit_kind", "amount_unknown", "basis", "is_active",
    "is_proprietary_blend", "parse_confidence",
]


# ============================================================================
# Units
# ============================================================================

def normalize_unit_label(unit_raw: Optional[str]) -> Optional[str]:
    if not unit_raw:
        return None
    unit = unit_raw.strip().lower()
    if not unit:
        return None
    if unit.startswith(("mcg", "ug", "µg", "μg", "microgram")):
        return "mcg"
    if unit.startswith(("mg", "milligram")):
        return "mg"
    if unit.startswith(("g", "gram")):
        return "g"
    if unit.startswith(("iu", "i.u")):
        return "iu"
    if unit.startswith(("ml", "milliliter", "millilitre")):
        return "ml"
    if "cfu" in unit or "ufc" in unit:
        return "cfu"
    if unit.startswith("kcal"):
        return "kcal"
    if unit.startswith("cal"):
        return "cal"
    if unit.startswith("%") or "percent" in unit:
        return "%"
    return unit


def parse_cfu_multiplier(unit_lower: str) -> Optional[int]:
    if "cfu" not in unit_lower and "ufc" not in unit_lower:
        return None
    for word, scale in CFU_SCALES:
        if word in unit_lower:
            return scale
    return 1


def normalize_amount_and_unit(amount: Optional[float], unit_raw: Optional[str]) -> Tuple[Optional[float], Optional[str]]:
    """"2 Billion CFU" becomes (2e9, "cfu"); other units only get their label normalized."""
    if not unit_raw or not unit_raw.strip():
        return amount, None
    unit = normalize_unit_label(unit_raw) or unit_raw.strip()
    if amount is None:
        return None, unit
    scale = parse_cfu_multiplier(unit_raw.strip().lower())
    if scale:
        return amount * scale, "cfu"
    return amount, unit


def unit_kind(unit: Optional[str]) -> Optional[str]:
    return UNIT_KINDS.get(unit) if unit else None


# ============================================================================
# Building and dedupe
# ============================================================================

def _row(
    source: str,
    source_id: str,
    canonical_source_id: Optional[str],
    name: str,
    amount: Optional[float],
    unit_raw: Optional[str],
    basis: str,
    parse_confidence: Optional[float],
    is_active: bool = True,
    is_proprietary_blend: bool = False,
) -> ProductIngredientRow:
    normalized_amount, unit = normalize_amount_and_unit(amount, unit_raw) if is_active else (None, None)
    return ProductIngredientRow(
        source=source,
        source_id=source_id,
        canonical_source_id=canonical_source_id,
        name_raw=name,
        name_key=normalize_name_key(name),
        amount=normalized_amount,
        unit=unit,
        unit_raw=unit_raw if is_active else None,
        unit_kind=unit_kind(unit),
        amount_unknown=normalized_amount is None,
        basis=basis,
        is_active=is_active,
        is_proprietary_blend=is_proprietary_blend,
        parse_confidence=parse_confidence,
    )


def build_product_rows(
    source: str,
    source_id: str,
    canonical_source_id: Optional[str],
    facts: LabelFacts,
    parse_confidence: Optional[float] = None,
    basis: str = Basis.LABEL_SERVING.value,
) -> List[ProductIngredientRow]:
    """Actives, then proprietary blends (active, blend-flagged), then inactive rows."""
    rows = []
    for active in facts.actives:
        if active.name:
            rows.append(_row(source, source_id, canonical_source_id, active.name, active.amount, active.unit,
                             basis, parse_confidence))
    for blend in facts.proprietary_blends:
        if blend.name:
            rows.append(_row(source, source_id, canonical_source_id, blend.name, blend.total_amount, blend.unit,
                             basis, parse_confidence, is_proprietary_blend=True))
    for name in facts.inactive:
        if name:
            rows.append(_row(source, source_id, canonical_source_id, name, None, None,
                             basis, parse_confidence, is_active=False))
    return rows


def dedupe_product_rows(rows: List[ProductIngredientRow]) -> List[ProductIngredientRow]:
    """
    Collapse rows sharing (source, source_id, name_raw).

    The first occurrence is kept; later duplicates only fill its gaps. A
    duplicate that is active or blend-flagged makes the kept row so.
    """
    merged: Dict[Tuple[str, str, str], ProductIngredientRow] = {}
    for row in rows:
        key = (row.source, row.source_id, row.name_raw)
        existing = merged.get(key)
        if existing is None:
            merged[key] = row.copy()
            continue

        update: Dict[str, Any] = {
            "canonical_source_id": existing.canonical_source_id or row.canonical_source_id,
            "ingredient_id": existing.ingredient_id or row.ingredient_id,
            "form_raw": existing.form_raw if existing.form_raw is not None else row.form_raw,
            "is_active": existing.is_active or row.is_active,
            "is_proprietary_blend": existing.is_proprietary_blend or row.is_proprietary_blend,
            "amount_normalized": existing.amount_normalized
            if existing.amount_normalized is not None else row.amount_normalized,
            "unit_normalized": existing.unit_normalized or row.unit_normalized,
        }
        if existing.amount is None and row.amount is not None:
            update.update(amount=row.amount, unit=row.unit, unit_raw=row.unit_raw, unit_kind=row.unit_kind)
        else:
            update.update(
                unit=existing.unit or row.unit,
                unit_raw=existing.unit_raw or row.unit_raw,
                unit_kind=existing.unit_kind or row.unit_kind,
            )
        amount = update.get("amount", existing.amount)
        update["amount_unknown"] = amount is None
        confidences = [c for c in (existing.parse_confidence, row.parse_confidence) if c is not None]
        update["parse_confidence"] = max(confidences) if confidences else None
        merged[key] = existing.copy(update=update)
    return list(merged.values())


# ============================================================================
# Ingredient lookup and hydration
# ============================================================================

@dataclass
class IngredientRef:
    id: str
    name: Optional[str]
    base_unit: Optional[str]


class IngredientLookup:
    """
    Resolve ingredient ids by exact (case-insensitive) name, then by synonym.

    Results, including misses, are memoized for the lifetime of the lookup
    (one backfill run). Store errors propagate to the caller.
    """

    def __init__(self, store: ReferenceStore):
        self.store = store
        self._ingredients: Dict[str, Optional[IngredientRef]] = {}
        self._conversions: Dict[Tuple[str, str, str], Optional[float]] = {}

    @staticmethod
    def _ref(record: Optional[Dict[str, Any]]) -> Optional[IngredientRef]:
        if not record or not record.get("id"):
            return None
        return IngredientRef(id=str(record["id"]), name=record.get("name"), base_unit=record.get("unit"))

    async def resolve(self, name: str) -> Optional[IngredientRef]:
        key = normalize_name_key(name)
        if not key:
            return None
        if key in self._ingredients:
            return self._ingredients[key]

        columns = ["id", "name", "unit"]
        pattern = escape_pattern(name)
        ref = self._ref(await self.store.select_one("ingredients", columns, [ilike("name", pattern)], [Order("id")]))
        if ref is None:
            synonym = await self.store.select_one(
                "ingredient_synonyms", ["ingredient_id"], [ilike("synonym", pattern)], [Order("ingredient_id")]
            )
            if synonym and synonym.get("ingredient_id"):
                ref = self._ref(
                    await self.store.select_one("ingredients", columns, [eq("id", synonym["ingredient_id"])])
                )
        self._ingredients[key] = ref
        return ref

    async def conversion_factor(self, ingredient_id: str, from_unit: str, to_unit: str) -> Optional[float]:
        key = (ingredient_id, from_unit, to_unit)
        if key in self._conversions:
            return self._conversions[key]
        record = await self.store.select_one(
            "ingredient_unit_conversions",
            ["factor"],
            [eq("ingredient_id", ingredient_id), eq("from_unit", from_unit), eq("to_unit", to_unit)],
            [Order("created_at", ascending=False)],
        )
        factor = to_number(record.get("factor")) if record else None
        self._conversions[key] = factor
        return factor

    async def hydrate(self, rows: List[ProductIngredientRow]) -> List[ProductIngredientRow]:
        """Fill ingredient_id and, where a base unit applies, the normalized amount."""
        hydrated = []
        for row in rows:
            ref = await self.resolve(row.name_raw)
            update: Dict[str, Any] = {"ingredient_id": ref.id if ref else None}
            if ref and ref.base_unit and row.amount is not None and row.unit:
                if row.unit == ref.base_unit:
                    update.update(amount_normalized=row.amount, unit_normalized=ref.base_unit)
                else:
                    factor = await self.conversion_factor(ref.id, row.unit, ref.base_unit)
                    if factor is not None:
                        update.update(amount_normalized=row.amount * factor, unit_normalized=ref.base_unit)
            hydrated.append(row.copy(update=update))
        return hydrated


# ============================================================================
# Merge with stored rows
# ============================================================================

def merge_with_stored(
    rows: List[ProductIngredientRow],
    stored: List[ProductIngredientRow],
) -> Tuple[List[ProductIngredientRow], List[ProductIngredientRow]]:
    """
    Overlay freshly built rows on the stored ones.

    Stored ``ingredient_id`` and ``form_raw`` values are kept. Returns
    (merged rows, rows that differ from storage and need an upsert).
    """
    stored_by_name = {row.name_raw: row for row in stored}
    merged = []
    changed = []
    for row in rows:
        current = stored_by_name.get(row.name_raw)
        if current is None:
            merged.append(row)
            changed.append(row)
            continue
        candidate = row.copy(update={
            "id": current.id,
            "ingredient_id": current.ingredient_id or row.ingredient_id,
            "form_raw": current.form_raw if current.has_form else row.form_raw,
        })
        merged.append(candidate)
        if any(getattr(candidate, column) != getattr(current, column) for column in COMPARED_COLUMNS):
            changed.append(candidate)
    return merged, changed


# ============================================================================
# Failure payloads
# ============================================================================

def payload_summary(row: ProductIngredientRow, daily_multiplier: Optional[float] = None) -> PayloadSummary:
    return PayloadSummary(
        ingredient_id=row.ingredient_id,
        name_key=row.key,
        unit=row.unit,
        amount=row.amount,
        amount_normalized=row.amount_normalized,
        basis=row.basis,
        unit_kind=row.unit_kind,
        daily_multiplier=daily_multiplier,
    )


def overflow_fields(rows: List[ProductIngredientRow]) -> List[str]:
    """String columns whose value is wider than the column allows."""
    names = set()
    for row in rows:
        for column, limit in COLUMN_LIMITS.items():
            value = getattr(row, column)
            if isinstance(value, str) and len(value) > limit:
                names.add(column)
    return sorted(names)
