"""
Dose math for the v4 score engine.

This module provides:
- Daily multiplier derivation from LNHPD dose records (adult selection,
  frequency x quantity, weekly conversion) with a recorded source tag
- Evidence grade weights and the piecewise dose-adequacy scale
- Upper-limit (UL) warnings on per-day adult exposure
"""

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from core.text import clamp, to_number
from models.base import AuditStatus, Basis
from schemas.ingredient import IngredientMeta
from schemas.product import ProductIngredientRow
from schemas.score import DailyMultiplier

DEFAULT_DAILY_MULTIPLIER = 1.0

# Daily multiplier source tags
SOURCE_DEFAULT = "default_no_dosing_info"
SOURCE_DEFAULT_MISSING = "default_missing_canonical"
SOURCE_DEFAULT_INVALID = "default_invalid_fields"
SOURCE_DEFAULT_NON_ADULT = "default_non_adult"
SOURCE_LNHPD = "lnhpd_dose"
SOURCE_LNHPD_WEEKLY = "lnhpd_weekly_dose"
SOURCE_NON_DAILY = "non_daily_frequency_unit"

# Confidence penalties keyed by multiplier source
DEFAULT_CONFIDENCE_PENALTY = 0.95
NON_DAILY_CONFIDENCE_PENALTY = 0.92
WEEKLY_CONFIDENCE_PENALTY = 0.93

RECOGNIZED_UNITS = {"mcg", "ug", "mg", "g", "iu", "ml", "cfu"}
DOSE_UNIT_KINDS = {"mass", "volume", "iu", "cfu"}

UL_HIGH_RATIO = 1.2
UL_MODERATE_RATIO = 1.0

_RANGE = re.compile(r"^[\[\(]([^,]*),([^)\]]*)[\)\]]$")


# ============================================================================
# Small predicates
# ============================================================================

def is_verified_audit(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == AuditStatus.VERIFIED.value


def is_recognized_unit(unit: Optional[str], unit_kind: Optional[str] = None) -> bool:
    """A unit kind, when present, decides; otherwise the unit text is checked."""
    if unit_kind:
        return unit_kind in DOSE_UNIT_KINDS
    if not unit:
        return False
    return unit.strip().lower() in RECOGNIZED_UNITS


def resolve_grade_weight(grade: Optional[str]) -> float:
    normalized = (grade or "").strip().lower()
    if normalized in ("a", "strong", "high"):
        return 1.0
    if normalized in ("b", "moderate", "medium"):
        return 0.85
    if normalized in ("c", "weak", "low"):
        return 0.7
    if normalized in ("d", "none"):
        return 0.5
    return 0.75


def resolve_evidence_weight(grade: Optional[str], audit_status: Optional[str]) -> float:
    """Unverified evidence carries no weight."""
    return resolve_grade_weight(grade) if is_verified_audit(audit_status) else 0.0


def parse_numeric_range(value: Optional[str]) -> Dict[str, Optional[float]]:
    """Parse interval text such as ``[100,400]`` or ``(50,)``; open ends are None."""
    if not value:
        return {"min": None, "max": None}
    match = _RANGE.match(value.strip())
    if not match:
        return {"min": None, "max": None}
    low = to_number(match.group(1).strip()) if match.group(1).strip() else None
    high = to_number(match.group(2).strip()) if match.group(2).strip() else None
    return {"min": low, "max": high}


def compute_dose_adequacy(
    amount: Optional[float],
    unit_matches: bool,
    min_dose: Optional[float],
    optimal_range: Dict[str, Optional[float]],
    evidence_weight: float,
) -> float:
    """
    Piecewise adequacy of a per-day amount against one evidence row.

    Returns a value in [0, 1], already scaled by the evidence weight.
    """
    if amount is None or not unit_matches:
        return clamp(0.25 * evidence_weight, 0, 1)
    threshold = min_dose if min_dose is not None else optimal_range.get("min")
    if not threshold or threshold <= 0:
        return clamp(0.5 * evidence_weight, 0, 1)

    low, high = optimal_range.get("min"), optimal_range.get("max")
    if amount < threshold * 0.5:
        base = 0.2
    elif amount < threshold:
        base = 0.4
    elif low is not None and high is not None:
        if low <= amount <= high:
            base = 1.0
        elif high < amount <= high * 1.5:
            base = 0.7
        else:
            base = 0.4
    elif amount <= threshold * 2:
        base = 0.9
    elif amount <= threshold * 3:
        base = 0.7
    else:
        base = 0.5
    return clamp(base * evidence_weight, 0, 1)


# ============================================================================
# Daily multiplier
# ============================================================================

def default_daily_multiplier() -> DailyMultiplier:
    return DailyMultiplier(multiplier=DEFAULT_DAILY_MULTIPLIER, source=SOURCE_DEFAULT, reliability="default")


def confidence_penalty(daily_multiplier: DailyMultiplier) -> float:
    if daily_multiplier.source == SOURCE_LNHPD:
        return 1.0
    if daily_multiplier.source == SOURCE_LNHPD_WEEKLY:
        return WEEKLY_CONFIDENCE_PENALTY
    if daily_multiplier.source == SOURCE_NON_DAILY:
        return NON_DAILY_CONFIDENCE_PENALTY
    return DEFAULT_CONFIDENCE_PENALTY


def _pick_number(record: Mapping[str, Any], keys: Iterable[str]) -> Optional[float]:
    for key in keys:
        if key not in record:
            continue
        value = to_number(record[key])
        if value is not None:
            return value
    return None


def _pick_string(record: Mapping[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _average(low: Optional[float], high: Optional[float]) -> Optional[float]:
    if low is None and high is None:
        return None
    if low is not None and high is not None:
        return (low + high) / 2
    return low if low is not None else high


def _positive(value: Optional[float]) -> Optional[float]:
    return value if value is not None and value > 0 else None


def _age_unit(value: Optional[str]) -> Optional[str]:
    normalized = (value or "").strip().lower()
    if not normalized:
        return None
    for unit in ("year", "month", "week", "day"):
        if unit in normalized:
            return f"{unit}s"
    return normalized


def _population(record: Mapping[str, Any]) -> Optional[str]:
    return _pick_string(record, ("population_type_desc", "population_type", "population_desc"))


def _is_adult_population(record: Mapping[str, Any]) -> bool:
    population = _population(record)
    return bool(population and "adult" in population.lower())


def _is_adult_by_age(record: Mapping[str, Any]) -> bool:
    if _is_adult_population(record):
        return True
    age_min = _pick_number(record, ("age_minimum", "age_min", "age"))
    if age_min is None or age_min < 18:
        return False
    unit = _age_unit(_pick_string(record, ("uom_type_desc_age", "age_unit", "age_unit_of_measure")))
    return unit is None or unit == "years"


def _resolved_dose(record: Mapping[str, Any]):
    frequency = _positive(_pick_number(record, ("frequency", "frequency_value"))) or _positive(
        _average(
            _pick_number(record, ("frequency_minimum", "frequency_min")),
            _pick_number(record, ("frequency_maximum", "frequency_max")),
        )
    )
    quantity = _positive(
        _pick_number(record, ("quantity_dose", "quantity", "dose", "dosage", "quantity_value", "dose_value"))
    ) or _positive(
        _average(
            _pick_number(record, ("quantity_dose_minimum", "quantity_minimum", "dose_minimum", "quantity_min", "dose_min")),
            _pick_number(record, ("quantity_dose_maximum", "quantity_maximum", "dose_maximum", "quantity_max", "dose_max")),
        )
    )
    return frequency, quantity


def compute_daily_multiplier_from_lnhpd_facts(facts_json: Mapping[str, Any]) -> DailyMultiplier:
    """
    Derive the per-day multiplier from an LNHPD facts document.

    The adult dose record is preferred by population text, then by minimum
    age >= 18 years. Daily frequency units give frequency x quantity; weekly
    units are divided by 7 and marked unreliable.
    """
    doses_raw = facts_json.get("doses")
    if isinstance(doses_raw, list):
        doses = doses_raw
    else:
        doses = [doses_raw] if doses_raw else []
    records = [entry for entry in doses if isinstance(entry, dict)]
    rows_found = len(records)
    if not rows_found:
        return DailyMultiplier(
            source=SOURCE_DEFAULT,
            reliability="default",
            dose_rows_found=0,
            penalty_reason="missing_dose_rows",
        )

    selected = next((r for r in records if _is_adult_population(r)), None)
    if selected is None:
        selected = next((r for r in records if _is_adult_by_age(r)), None)
    selected_pop = _population(selected) if selected is not None else _population(records[0])
    if selected is None:
        return DailyMultiplier(
            source=SOURCE_DEFAULT_NON_ADULT,
            reliability="default",
            dose_rows_found=rows_found,
            selected_dose_pop=selected_pop,
            penalty_reason="non_adult_population",
        )

    frequency_unit = _pick_string(selected, ("uom_type_desc_frequency", "frequency_unit", "frequency_unit_of_measure"))
    unit_text = (frequency_unit or "").lower()
    common = {"dose_rows_found": rows_found, "selected_dose_pop": selected_pop, "frequency_unit": frequency_unit}

    is_weekly = "week" in unit_text
    is_daily = "day" in unit_text or "daily" in unit_text
    if not is_weekly and not is_daily:
        return DailyMultiplier(
            source=SOURCE_NON_DAILY,
            reliability="unreliable",
            penalty_reason="non_daily_frequency_unit",
            **common,
        )

    frequency, quantity = _resolved_dose(selected)
    if frequency is None or quantity is None:
        return DailyMultiplier(
            source=SOURCE_DEFAULT_INVALID,
            reliability="unreliable",
            penalty_reason="invalid_dose_fields",
            **common,
        )
    if is_weekly:
        return DailyMultiplier(
            multiplier=frequency * quantity / 7,
            source=SOURCE_LNHPD_WEEKLY,
            reliability="unreliable",
            penalty_reason="weekly_converted",
            **common,
        )
    return DailyMultiplier(
        multiplier=frequency * quantity,
        source=SOURCE_LNHPD,
        reliability="reliable",
        **common,
    )


def row_multiplier(row: ProductIngredientRow, daily_multiplier: DailyMultiplier) -> float:
    """Only per-serving amounts are scaled to per-day."""
    return daily_multiplier.multiplier if row.basis == Basis.LABEL_SERVING.value else 1.0


# ============================================================================
# Upper limits
# ============================================================================

def compute_ul_warnings(
    rows: Iterable[ProductIngredientRow],
    ingredient_meta: Mapping[str, IngredientMeta],
    daily_multiplier: DailyMultiplier,
) -> Dict[str, Any]:
    """
    Compare per-day adult amounts with each ingredient's UL.

    A ratio >= 1.2 is ``high``; >= 1.0 is ``moderate``. Rows whose unit
    differs from the ingredient's base unit are not compared.
    """
    high: List[str] = []
    moderate: List[str] = []
    for row in rows:
        if not row.ingredient_id or not row.is_active:
            continue
        meta = ingredient_meta.get(row.ingredient_id)
        if meta is None or not meta.ul_adult or meta.ul_adult <= 0:
            continue
        unit = row.unit_normalized or row.unit
        amount = row.amount_normalized if row.amount_normalized is not None else row.amount
        if not unit or amount is None or not meta.unit or unit != meta.unit:
            continue
        ratio = amount * row_multiplier(row, daily_multiplier) / meta.ul_adult
        if ratio >= UL_HIGH_RATIO:
            high.append(row.name_raw)
        elif ratio >= UL_MODERATE_RATIO:
            moderate.append(row.name_raw)
    return {
        "high": high,
        "moderate": moderate,
        "basis": "per_day_adult",
        "dailyMultiplierUsed": daily_multiplier.multiplier,
        "dailyMultiplierSource": daily_multiplier.source,
    }
