"""
Per-source adapters: harvested facts records -> LabelFacts.

Each adapter isolates one source's field-name variants and identity rules:
- DSLD: ``dsld_label_facts`` keyed by ``dsld_label_id``; sourceId is the label id
- LNHPD: ``lnhpd_facts`` keyed by ``lnhpd_id``; sourceId is the NPN when
  present, the canonical id is always the lnhpd id
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import re

from core.text import normalize_name_key, to_number
from models.base import ScoreSource
from schemas.product import ActiveIngredient, LabelFacts, ProprietaryBlend
from store.base import ReferenceStore, eq

logger = logging.getLogger(__name__)

_LIST_SPLIT = re.compile(r";|•")


# ============================================================================
# Field pickers
# ============================================================================

def pick_string(record: Dict[str, Any], keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def pick_name(record: Dict[str, Any], keys: Sequence[str]) -> Optional[str]:
    """Preferred keys first, then any string field whose key mentions "name"."""
    direct = pick_string(record, keys)
    if direct:
        return direct
    for key, value in record.items():
        if "name" in key.lower() and isinstance(value, str) and value.strip():
            return value.strip()
    return None


def pick_number(record: Dict[str, Any], keys: Sequence[str]) -> Optional[float]:
    for key in keys:
        value = to_number(record.get(key))
        if value is not None:
            return value
    return None


def pick_scalar(record: Dict[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
    return None


def normalize_string_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]
    if isinstance(value, str):
        return [item.strip() for item in _LIST_SPLIT.split(value) if item.strip()]
    return []


# ============================================================================
# Adapter base
# ============================================================================

class SourceAdapter(ABC):
    """
    Abstract per-source adapter.

    Responsibilities:
    - Name the facts table, its id column and the columns to read
    - Derive (sourceId, canonicalSourceId) for a record
    - Turn a record's facts_json into LabelFacts
    - Refetch a record for failure replay
    """

    source: str
    table: str
    id_column: str
    columns: List[str]
    parse_confidence: float

    def record_id(self, record: Dict[str, Any]) -> Optional[int]:
        value = to_number(record.get(self.id_column))
        if value is None or value <= 0:
            return None
        return int(value)

    @abstractmethod
    def identity(self, record: Dict[str, Any]) -> Tuple[str, str]:
        """Return (source_id, canonical_source_id)"""
        pass

    @abstractmethod
    def label_facts(self, facts_json: Any) -> Optional[LabelFacts]:
        """Parse facts_json; None when it is not a document"""
        pass

    @abstractmethod
    async def fetch_for_replay(
        self,
        store: ReferenceStore,
        source_id: str,
        canonical_source_id: Optional[str],
    ) -> Optional[Dict[str, Any]]:
        pass

    async def _fetch_by(self, store: ReferenceStore, column: str, value: Any) -> Optional[Dict[str, Any]]:
        return await store.select_one(self.table, self.columns, [eq(column, value)])


class DsldAdapter(SourceAdapter):
    """DSLD label facts: actives / inactive / proprietaryBlends"""

    source = ScoreSource.DSLD.value
    table = "dsld_label_facts"
    id_column = "dsld_label_id"
    columns = ["dsld_label_id", "facts_json"]
    parse_confidence = 0.9

    def identity(self, record: Dict[str, Any]) -> Tuple[str, str]:
        label_id = str(self.record_id(record))
        return label_id, label_id

    def label_facts(self, facts_json: Any) -> Optional[LabelFacts]:
        if not isinstance(facts_json, dict):
            return None

        actives = []
        for item in facts_json.get("actives") or []:
            if not isinstance(item, dict):
                continue
            name = item.get("name").strip() if isinstance(item.get("name"), str) else ""
            if not name:
                continue
            unit = item.get("unit").strip() if isinstance(item.get("unit"), str) else None
            actives.append(ActiveIngredient(name=name, amount=to_number(item.get("amount")), unit=unit or None))

        blends = []
        for item in facts_json.get("proprietaryBlends") or []:
            if not isinstance(item, dict):
                continue
            name = item.get("name").strip() if isinstance(item.get("name"), str) else ""
            if not name:
                continue
            unit = item.get("unit").strip() if isinstance(item.get("unit"), str) else None
            ingredients = normalize_string_list(item.get("ingredients"))
            blends.append(
                ProprietaryBlend(
                    name=name,
                    total_amount=to_number(item.get("totalAmount")),
                    unit=unit or None,
                    ingredients=ingredients or None,
                )
            )

        return LabelFacts(
            actives=actives,
            inactive=normalize_string_list(facts_json.get("inactive")),
            proprietary_blends=blends,
        )

    async def fetch_for_replay(self, store, source_id, canonical_source_id):
        label_id = to_number(canonical_source_id or source_id)
        if not label_id:
            return None
        return await self._fetch_by(store, self.id_column, int(label_id))


# ============================================================================
# LNHPD
# ============================================================================

LNHPD_MEDICINAL_NAME_KEYS = [
    "medicinal_ingredient_name",
    "ingredient_name",
    "medicinal_ingredient_name_en",
    "ingredient_name_en",
    "proper_name",
    "substance_name",
    "name",
]
LNHPD_NON_MEDICINAL_NAME_KEYS = [
    "nonmedicinal_ingredient_name",
    "non_medicinal_ingredient_name",
    "ingredient_name",
    "name",
]
LNHPD_AMOUNT_KEYS = [
    "quantity", "quantity_value", "quantity_amount", "strength", "strength_value", "amount", "dose", "dosage",
]
LNHPD_UNIT_KEYS = [
    "quantity_unit", "quantity_unit_of_measure", "unit", "unit_of_measure", "strength_unit", "dose_unit",
    "dosage_unit",
]

# Structured form sub-fields read by the token extractor
LNHPD_FORM_FIELD_KEYS: Dict[str, List[str]] = {
    "source_material": ["source_material", "source_material_desc", "source_material_name", "source_material_en"],
    "proper_name": ["proper_name"],
    "extract_type": ["extract_type_desc", "extract_type", "extract_type_en"],
    "ratio_numerator": ["ratio_numerator", "ratio_numerator_value"],
    "ratio_denominator": ["ratio_denominator", "ratio_denominator_value"],
    "potency_constituent": ["potency_constituent", "potency_constituent_desc"],
    "potency_amount": ["potency_amount", "potency_amount_value"],
    "potency_unit": ["potency_unit", "potency_unit_of_measure", "potency_uom"],
    "dried_herb_equivalent": ["dried_herb_equivalent", "dried_herb_equivalent_value"],
    "ingredient_name": [
        "ingredient_name", "ingredient_name_en", "medicinal_ingredient_name", "medicinal_ingredient_name_en",
    ],
}
SCALAR_FORM_FIELDS = {
    "ratio_numerator", "ratio_denominator", "potency_amount", "dried_herb_equivalent",
}

# Richer sub-field sets win when the same ingredient appears twice
FORM_FIELD_WEIGHTS = {
    "source_material": 3,
    "proper_name": 2,
    "extract_type": 2,
    "potency_constituent": 2,
    "potency_amount": 1,
    "potency_unit": 1,
    "dried_herb_equivalent": 1,
    "ingredient_name": 1,
}


def extract_form_fields(record: Dict[str, Any]) -> Dict[str, Any]:
    fields = {}
    for name, keys in LNHPD_FORM_FIELD_KEYS.items():
        value = pick_scalar(record, keys) if name in SCALAR_FORM_FIELDS else pick_string(record, keys)
        if value is not None:
            fields[name] = value
    return fields


def score_form_fields(fields: Dict[str, Any]) -> int:
    score = sum(weight for name, weight in FORM_FIELD_WEIGHTS.items() if fields.get(name) is not None)
    if fields.get("ratio_numerator") is not None and fields.get("ratio_denominator") is not None:
        score += 2
    return score


def extract_lnhpd_actives(payload: Any) -> List[ActiveIngredient]:
    """Medicinal ingredients, deduped by name key (first amount wins, richest form fields win)."""
    if not isinstance(payload, list):
        return []
    by_key: Dict[str, ActiveIngredient] = {}
    for record in payload:
        if not isinstance(record, dict):
            continue
        name = pick_name(record, LNHPD_MEDICINAL_NAME_KEYS)
        key = normalize_name_key(name)
        if not key:
            continue
        candidate = ActiveIngredient(
            name=name,
            amount=pick_number(record, LNHPD_AMOUNT_KEYS),
            unit=pick_string(record, LNHPD_UNIT_KEYS),
            form_fields=extract_form_fields(record),
        )
        existing = by_key.get(key)
        if existing is None:
            by_key[key] = candidate
            continue
        if score_form_fields(candidate.form_fields) > score_form_fields(existing.form_fields):
            existing.form_fields = candidate.form_fields
        if existing.amount is None and candidate.amount is not None:
            existing.amount = candidate.amount
            existing.unit = candidate.unit
        elif not existing.unit and candidate.unit:
            existing.unit = candidate.unit
    return list(by_key.values())


def extract_text_list(payload: Any, name_keys: Sequence[str]) -> List[str]:
    if not isinstance(payload, list):
        return []
    seen = set()
    names = []
    for record in payload:
        if not isinstance(record, dict):
            continue
        name = pick_name(record, name_keys)
        key = normalize_name_key(name)
        if not key or key in seen:
            continue
        seen.add(key)
        names.append(name)
    return names


class LnhpdAdapter(SourceAdapter):
    """LNHPD product facts: medicinalIngredients / nonMedicinalIngredients"""

    source = ScoreSource.LNHPD.value
    table = "lnhpd_facts"
    id_column = "lnhpd_id"
    columns = ["lnhpd_id", "npn", "facts_json"]
    parse_confidence = 0.95

    def identity(self, record: Dict[str, Any]) -> Tuple[str, str]:
        lnhpd_id = str(self.record_id(record))
        npn = record.get("npn")
        source_id = npn.strip() if isinstance(npn, str) and npn.strip() else lnhpd_id
        return source_id, lnhpd_id

    def label_facts(self, facts_json: Any) -> Optional[LabelFacts]:
        if not isinstance(facts_json, dict):
            return None
        return LabelFacts(
            actives=extract_lnhpd_actives(facts_json.get("medicinalIngredients")),
            inactive=extract_text_list(facts_json.get("nonMedicinalIngredients"), LNHPD_NON_MEDICINAL_NAME_KEYS),
        )

    async def fetch_for_replay(self, store, source_id, canonical_source_id):
        lnhpd_id = to_number(canonical_source_id or source_id)
        if lnhpd_id:
            record = await self._fetch_by(store, self.id_column, int(lnhpd_id))
            if record:
                return record
        if source_id:
            return await self._fetch_by(store, "npn", source_id)
        return None


ADAPTERS = {
    ScoreSource.DSLD.value: DsldAdapter,
    ScoreSource.LNHPD.value: LnhpdAdapter,
}


def get_adapter(source: str) -> SourceAdapter:
    try:
        return ADAPTERS[source]()
    except KeyError:
        raise ValueError(f"No adapter for source: {source}")
