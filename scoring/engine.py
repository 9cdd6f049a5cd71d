"""
Score Engine (v4) - deterministic, hashable product score bundles.

This module provides:
- The inputs hash (idempotence key together with V4_SCORE_VERSION)
- Pillar metrics: effectiveness, safety, integrity and confidence
- Flags, highlights, best-fit goals and the explain payload
- ScoreEngine with an uncached path (reads every input from the store) and
  a cached path (reads reference data from an explicit DatasetCache)

Both paths return None when a product has no active ingredient rows.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from core.exceptions import ReferenceDataError, StoreError
from core.text import clamp, round_half_up
from forms.aliases import merge_form_aliases
from models.base import Basis, ScoreSource
from schemas.ingredient import IngredientEvidenceRow, IngredientFormAliasRow, IngredientFormRow, IngredientMeta
from schemas.product import PRODUCT_INGREDIENT_COLUMNS, ProductIngredientRow
from schemas.score import DailyMultiplier, ScoreResult
from scoring.dataset_cache import DATASET_VERSION_KEY, DatasetCache, ReferenceData
from scoring.dosing import (
    SOURCE_DEFAULT_MISSING,
    compute_daily_multiplier_from_lnhpd_facts,
    compute_dose_adequacy,
    compute_ul_warnings,
    confidence_penalty,
    default_daily_multiplier,
    is_recognized_unit,
    is_verified_audit,
    parse_numeric_range,
    resolve_evidence_weight,
    row_multiplier,
)
from scoring.goals import normalize_goal_id, resolve_best_fit_goals
from scoring.matching import FormMatch, select_best_form_match
from store.base import Order, ReferenceStore, eq

logger = logging.getLogger(__name__)

V4_SCORE_VERSION = "v4.0.0-alpha.3"

MAX_AUDIT_ITEMS = 25
MAX_FORM_SIGNALS = 20
ASSUMPTION_NOTES = "Scores use label-derived doses when available; unknown doses reduce confidence."


def round_score(value: float) -> float:
    return round_half_up(value, 2)


# ============================================================================
# Inputs hash
# ============================================================================

def _canonical_number(value: Any) -> Any:
    """Integral floats serialize as ints so store round-trips keep the hash."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def build_inputs_hash(
    rows: Sequence[ProductIngredientRow],
    daily_multiplier: Optional[float] = None,
    daily_multiplier_source: Optional[str] = None,
    dataset_version: Optional[str] = None,
) -> str:
    """
    sha256 over the scoring projection of the rows and the multiplier context.

    Rows are sorted by (nameKey, nameRaw, ingredientId, basis, form) so the
    hash does not depend on store read order.
    """
    projected = [
        {
            "nameRaw": row.name_raw,
            "nameKey": row.key,
            "ingredientId": row.ingredient_id,
            "amount": _canonical_number(row.amount),
            "unit": row.unit,
            "amountNormalized": _canonical_number(row.amount_normalized),
            "unitNormalized": row.unit_normalized,
            "unitKind": row.unit_kind,
            "amountUnknown": row.amount_unknown,
            "parseConfidence": _canonical_number(row.parse_confidence),
            "active": row.is_active,
            "proprietaryBlend": row.is_proprietary_blend,
            "basis": row.basis,
            "form": row.form_raw,
        }
        for row in rows
    ]
    projected.sort(
        key=lambda item: (
            item["nameKey"],
            item["nameRaw"],
            str(item["ingredientId"] or ""),
            str(item["basis"] or ""),
            str(item["form"] or ""),
        )
    )
    payload = {
        "rows": projected,
        "context": {
            "dailyMultiplier": _canonical_number(daily_multiplier),
            "dailyMultiplierSource": daily_multiplier_source,
            "datasetVersion": dataset_version,
        },
    }
    encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


# ============================================================================
# Metrics
# ============================================================================

@dataclass
class ScoreMetrics:
    effectiveness: float
    safety_base: float
    integrity_base: float
    confidence: float
    coverage: float
    active_count: int
    known_dose_count: int
    proprietary_blend_count: int
    avg_parse_confidence: float
    match_ratio: float
    unit_ok_ratio: float
    form_coverage_ratio: float
    unknown_unit_count: int
    unknown_unit_ratio: float
    evidence_coverage: float
    evidence_available_ratio: float
    dose_adequacy_avg: float
    dose_adequacy_raw_avg: float
    goal_dose_adequacy: Dict[str, float] = field(default_factory=dict)
    goal_dose_adequacy_raw: Dict[str, float] = field(default_factory=dict)
    form_signals: List[Dict[str, Any]] = field(default_factory=list)
    used_evidence_ids: List[str] = field(default_factory=list)
    used_form_ids: List[str] = field(default_factory=list)


def compute_confidence(
    coverage: float,
    avg_parse_confidence: float,
    match_ratio: float,
    unit_ok_ratio: float,
    canonical_source_id: Optional[str],
    form_coverage_ratio: float,
) -> float:
    identity = 0.75 if canonical_source_id else 0.55
    weighted = (
        0.05
        + 0.25 * coverage
        + 0.2 * avg_parse_confidence
        + 0.2 * match_ratio
        + 0.15 * unit_ok_ratio
        + 0.12 * identity
        + 0.08 * form_coverage_ratio
    )
    return clamp(weighted, 0.1, 0.95)


def _ratio(count: int, total: int) -> float:
    return count / total if total else 0.0


def _top3_mean(values: List[float]) -> float:
    top = sorted(values, reverse=True)[:3]
    return sum(top) / len(top) if top else 0.0


def compute_scores(
    rows: Sequence[ProductIngredientRow],
    canonical_source_id: Optional[str],
    ingredient_meta: Mapping[str, IngredientMeta],
    evidence_rows: Sequence[IngredientEvidenceRow],
    form_rows: Sequence[IngredientFormRow],
    form_aliases: Sequence[IngredientFormAliasRow],
    daily_multiplier: DailyMultiplier,
) -> ScoreMetrics:
    """
    Pure pillar computation over one product's rows.

    ``evidence_rows`` and ``form_rows`` should already be limited to
    verified rows; unverified rows carry zero weight regardless.
    """
    active = [row for row in rows if row.is_active]
    active_count = len(active)

    def meta_unit(row: ProductIngredientRow) -> Optional[str]:
        meta = ingredient_meta.get(row.ingredient_id) if row.ingredient_id else None
        return meta.unit if meta else None

    def unit_ok(row: ProductIngredientRow) -> bool:
        unit = row.unit_normalized or row.unit
        if not is_recognized_unit(unit, row.unit_kind):
            return False
        if not row.ingredient_id:
            return True
        expected = meta_unit(row)
        if not expected:
            return True
        return bool(unit and unit == expected)

    known_dose_count = sum(1 for row in active if row.amount is not None and not row.amount_unknown and unit_ok(row))
    blend_count = sum(1 for row in active if row.is_proprietary_blend)
    coverage = _ratio(known_dose_count, active_count)
    match_ratio = _ratio(sum(1 for row in active if row.ingredient_id), active_count)
    unit_ok_count = sum(1 for row in active if unit_ok(row))
    unit_ok_ratio = _ratio(unit_ok_count, active_count)
    unknown_unit_count = active_count - unit_ok_count
    unknown_unit_ratio = _ratio(unknown_unit_count, active_count)

    parse_values = [row.parse_confidence for row in rows if row.parse_confidence is not None]
    avg_parse = sum(parse_values) / len(parse_values) if parse_values else 0.5

    # ------------------------------------------------------------------
    # Form matching (index-aligned with active rows)
    # ------------------------------------------------------------------
    forms_by_ingredient: Dict[str, List[IngredientFormRow]] = {}
    for form in form_rows:
        if form.ingredient_id:
            forms_by_ingredient.setdefault(form.ingredient_id, []).append(form)
    global_aliases = [alias for alias in form_aliases if alias.is_global]
    scoped_aliases: Dict[str, List[IngredientFormAliasRow]] = {}
    for alias in form_aliases:
        if not alias.is_global:
            scoped_aliases.setdefault(alias.ingredient_id, []).append(alias)

    form_signals: List[Dict[str, Any]] = []
    used_form_ids: List[str] = []
    form_matches: List[Optional[FormMatch]] = []
    for row in active:
        forms = forms_by_ingredient.get(row.ingredient_id, []) if row.ingredient_id else []
        if not forms:
            form_matches.append(None)
            continue
        aliases = global_aliases + scoped_aliases.get(row.ingredient_id, [])
        candidate = row.form_raw or row.name_raw
        match = select_best_form_match(candidate, forms, aliases)
        if match is None and row.form_raw and row.name_raw and row.name_raw != row.form_raw:
            candidate = row.name_raw
            match = select_best_form_match(candidate, forms, aliases)
        form_matches.append(match)
        if match is None:
            continue
        if match.form.id not in used_form_ids:
            used_form_ids.append(match.form.id)
        form_signals.append({
            "ingredientId": row.ingredient_id,
            "ingredientName": row.name_raw,
            "candidateText": candidate,
            "formId": match.form.id,
            "formKey": match.form.form_key,
            "formLabel": match.form.form_label,
            "matchScore": round_score(match.match_score),
            "effectiveFactor": round_score(match.effective_factor),
            "confidence": match.form.confidence,
            "evidenceGrade": match.form.evidence_grade,
            "auditStatus": match.form.audit_status,
            "aliasText": match.alias.alias_text if match.alias else None,
            "aliasSource": match.alias.source if match.alias else None,
            "aliasConfidence": match.alias.confidence if match.alias else None,
        })
    form_coverage_ratio = _ratio(sum(1 for match in form_matches if match), active_count)

    base_confidence = compute_confidence(
        coverage, avg_parse, match_ratio, unit_ok_ratio, canonical_source_id, form_coverage_ratio
    )
    confidence = clamp(base_confidence * confidence_penalty(daily_multiplier), 0.1, 0.95)

    # ------------------------------------------------------------------
    # Evidence and dose adequacy
    # ------------------------------------------------------------------
    evidence_by_ingredient: Dict[str, List[IngredientEvidenceRow]] = {}
    for entry in evidence_rows:
        if entry.ingredient_id:
            evidence_by_ingredient.setdefault(entry.ingredient_id, []).append(entry)

    available_ids: List[str] = []
    eligible_ids: List[str] = []
    used_evidence_ids: List[str] = []
    best_adjusted: Dict[str, Dict[str, Any]] = {}
    best_raw: Dict[str, Dict[str, Any]] = {}

    for row, match in zip(active, form_matches):
        if not row.ingredient_id:
            continue
        entries = evidence_by_ingredient.get(row.ingredient_id)
        if not entries:
            continue
        if row.ingredient_id not in available_ids:
            available_ids.append(row.ingredient_id)
        meta = ingredient_meta.get(row.ingredient_id)
        expected_unit = meta.unit if meta else None
        if row.amount_unknown:
            amount = None
        else:
            amount = row.amount_normalized if row.amount_normalized is not None else row.amount
        unit = row.unit_normalized or row.unit
        unit_matches = bool(expected_unit and unit and unit == expected_unit)
        daily_amount = None if amount is None else amount * row_multiplier(row, daily_multiplier)
        dose_eligible = daily_amount is not None and unit_matches
        goal_set = {normalize_goal_id(goal) for goal in (meta.goals or [])} - {""} if meta else set()
        form_factor = match.effective_factor if match else 1.0
        adjusted_amount = None if daily_amount is None else daily_amount * form_factor

        for entry in entries:
            goal_id = normalize_goal_id(entry.goal)
            if not goal_id or (goal_set and goal_id not in goal_set):
                continue
            weight = resolve_evidence_weight(entry.evidence_grade, entry.audit_status)
            if weight <= 0 or not dose_eligible:
                continue
            optimal = parse_numeric_range(entry.optimal_dose_range)
            raw_adequacy = compute_dose_adequacy(daily_amount, unit_matches, entry.min_effective_dose, optimal, weight)
            adequacy = compute_dose_adequacy(adjusted_amount, unit_matches, entry.min_effective_dose, optimal, weight)
            key = f"{row.ingredient_id}:{goal_id}"
            if key not in best_adjusted or adequacy > best_adjusted[key]["score"]:
                best_adjusted[key] = {"goal": goal_id, "score": adequacy}
            if key not in best_raw or raw_adequacy > best_raw[key]["score"]:
                best_raw[key] = {"goal": goal_id, "score": raw_adequacy}
            if entry.id and entry.id not in used_evidence_ids:
                used_evidence_ids.append(entry.id)
            if row.ingredient_id not in eligible_ids:
                eligible_ids.append(row.ingredient_id)

    def goal_averages(best: Dict[str, Dict[str, Any]]) -> Dict[str, float]:
        buckets: Dict[str, List[float]] = {}
        for item in best.values():
            buckets.setdefault(item["goal"], []).append(item["score"])
        return {goal: sum(scores) / len(scores) for goal, scores in buckets.items()}

    goal_adequacy = goal_averages(best_adjusted)
    goal_adequacy_raw = goal_averages(best_raw)
    dose_adequacy_avg = _top3_mean(list(goal_adequacy.values()))
    dose_adequacy_raw_avg = _top3_mean(list(goal_adequacy_raw.values()))
    evidence_coverage = _ratio(len(eligible_ids), active_count)
    evidence_available_ratio = _ratio(len(available_ids), active_count)

    metrics = ScoreMetrics(
        effectiveness=20.0,
        safety_base=60.0,
        integrity_base=25.0,
        confidence=clamp(confidence * 0.6, 0.1, 0.6),
        coverage=coverage,
        active_count=active_count,
        known_dose_count=known_dose_count,
        proprietary_blend_count=blend_count,
        avg_parse_confidence=avg_parse,
        match_ratio=match_ratio,
        unit_ok_ratio=unit_ok_ratio,
        form_coverage_ratio=form_coverage_ratio,
        unknown_unit_count=unknown_unit_count,
        unknown_unit_ratio=unknown_unit_ratio,
        evidence_coverage=evidence_coverage,
        evidence_available_ratio=evidence_available_ratio,
        dose_adequacy_avg=dose_adequacy_avg,
        dose_adequacy_raw_avg=dose_adequacy_raw_avg,
        goal_dose_adequacy=goal_adequacy,
        goal_dose_adequacy_raw=goal_adequacy_raw,
        form_signals=form_signals,
        used_evidence_ids=used_evidence_ids,
        used_form_ids=used_form_ids,
    )
    if active_count == 0:
        return metrics

    # ------------------------------------------------------------------
    # Pillars
    # ------------------------------------------------------------------
    focus_bonus = 8 if active_count <= 3 and coverage > 0.6 else 0
    kitchen_sink_penalty = 15 if active_count >= 10 and coverage < 0.4 else 0
    proprietary_penalty = 12 if blend_count > 0 else 0
    base_effectiveness = 40 + 30 * coverage + focus_bonus - kitchen_sink_penalty - proprietary_penalty
    evidence_boost = 30 * dose_adequacy_avg + 10 * evidence_coverage if evidence_coverage > 0 else 0

    metrics.effectiveness = clamp(base_effectiveness + evidence_boost, 0, 100)
    metrics.safety_base = 80 - (1 - coverage) * 25 - blend_count * 8
    metrics.integrity_base = clamp(
        25
        + 35 * coverage
        + 22 * match_ratio
        + 18 * unit_ok_ratio
        + 10 * form_coverage_ratio
        - blend_count * 12
        - unknown_unit_ratio * 25,
        0,
        100,
    )
    metrics.confidence = confidence
    return metrics


# ============================================================================
# Flags, highlights and labels
# ============================================================================

def build_flags(metrics: ScoreMetrics, ul_warnings: Dict[str, Any]) -> List[Dict[str, str]]:
    flags = []
    coverage, active_count = metrics.coverage, metrics.active_count
    if metrics.proprietary_blend_count > 0:
        flags.append({
            "code": "PROPRIETARY_BLEND",
            "message": "Includes proprietary blend(s) with undisclosed doses.",
            "severity": "warning",
        })
    if coverage < 0.4 and active_count > 0:
        flags.append({
            "code": "MISSING_DOSE_INFO",
            "message": "Most active ingredients do not list a clear dose.",
            "severity": "warning",
        })
    elif coverage < 0.6 and active_count > 0:
        flags.append({
            "code": "LOW_LABEL_TRANSPARENCY",
            "message": "Dose coverage is limited; label transparency is reduced.",
            "severity": "warning",
        })
    if active_count >= 10 and coverage < 0.4:
        flags.append({
            "code": "KITCHEN_SINK",
            "message": "Many ingredients with limited dosing detail.",
            "severity": "warning",
        })
    if metrics.avg_parse_confidence < 0.5:
        flags.append({
            "code": "LOW_PARSE_CONFIDENCE",
            "message": "Parsing confidence is low; verify label details.",
            "severity": "info",
        })
    if ul_warnings["high"]:
        flags.append({
            "code": "UL_EXCEEDED",
            "message": f"Dose exceeds upper limit for {', '.join(ul_warnings['high'])}.",
            "severity": "risk",
        })
    elif ul_warnings["moderate"]:
        flags.append({
            "code": "UL_NEAR_LIMIT",
            "message": f"Dose near upper limit for {', '.join(ul_warnings['moderate'])}.",
            "severity": "warning",
        })
    return flags


def build_highlights(metrics: ScoreMetrics) -> List[Dict[str, str]]:
    highlights = []
    if metrics.coverage >= 0.8 and metrics.proprietary_blend_count == 0:
        highlights.append({"code": "FULL_DISCLOSURE", "message": "Clear label disclosure with most doses listed."})
    if 0 < metrics.active_count <= 3 and metrics.coverage >= 0.6:
        highlights.append({"code": "FOCUSED_FORMULA", "message": "Focused formula with a small set of actives."})
    if metrics.avg_parse_confidence >= 0.8:
        highlights.append({"code": "HIGH_PARSE_CONFIDENCE", "message": "High parsing confidence from label data."})
    return highlights


def confidence_label(confidence: float, form_coverage_ratio: float, dataset_version: Optional[str]) -> str:
    if confidence >= 0.75 and form_coverage_ratio >= 0.5 and dataset_version:
        return "high"
    if confidence < 0.5:
        return "low"
    return "medium"


def _capped(items: List[Dict[str, Any]]):
    return items[:MAX_AUDIT_ITEMS], max(0, len(items) - MAX_AUDIT_ITEMS)


def _citation_map(ids: Sequence[str], citations: Mapping[str, List[str]]) -> Dict[str, List[str]]:
    return {item_id: list(citations.get(item_id, [])) for item_id in ids}


def _unique(values) -> List[str]:
    seen: List[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


# ============================================================================
# Bundle
# ============================================================================

def build_bundle(
    rows: Sequence[ProductIngredientRow],
    source: str,
    source_id: str,
    source_id_for_write: str,
    canonical_source_id: Optional[str],
    daily_multiplier: DailyMultiplier,
    reference: ReferenceData,
) -> ScoreResult:
    """Assemble the full score bundle from rows and a reference-data slice."""
    inputs_hash = build_inputs_hash(
        rows, daily_multiplier.multiplier, daily_multiplier.source, reference.dataset_version
    )
    aliases = merge_form_aliases(reference.aliases)
    verified_evidence = [row for row in reference.evidence if is_verified_audit(row.audit_status)]
    pending_evidence = [row for row in reference.evidence if not is_verified_audit(row.audit_status)]
    verified_forms = [row for row in reference.forms if is_verified_audit(row.audit_status)]
    pending_forms = [row for row in reference.forms if not is_verified_audit(row.audit_status)]

    active_ids = {row.ingredient_id for row in rows if row.is_active and row.ingredient_id}
    ingredient_names: Dict[str, str] = {}
    for row in rows:
        if row.is_active and row.ingredient_id:
            ingredient_names.setdefault(row.ingredient_id, row.name_raw)

    evidence_available = {row.ingredient_id for row in reference.evidence if row.ingredient_id in active_ids}
    total_available_ratio = _ratio(len(evidence_available), len(active_ids))

    ul_warnings = compute_ul_warnings(rows, reference.ingredient_meta, daily_multiplier)
    metrics = compute_scores(
        rows,
        canonical_source_id,
        reference.ingredient_meta,
        verified_evidence,
        verified_forms,
        aliases,
        daily_multiplier,
    )

    ranked_signals = sorted(metrics.form_signals, key=lambda signal: signal["matchScore"], reverse=True)
    form_signals = ranked_signals[:MAX_FORM_SIGNALS]

    pending_evidence_ids = _unique(row.id for row in pending_evidence if row.ingredient_id in active_ids)
    pending_form_ids = _unique(row.id for row in pending_forms if row.ingredient_id in active_ids)
    evidence_citations = _citation_map(metrics.used_evidence_ids, reference.evidence_citations)
    form_citations = _citation_map(metrics.used_form_ids, reference.form_citations)
    pending_evidence_citations = _citation_map(pending_evidence_ids, reference.evidence_citations)
    pending_form_citations = _citation_map(pending_form_ids, reference.form_citations)

    verified_by_id = {row.id: row for row in verified_evidence}
    verified_evidence_items = []
    for evidence_id in metrics.used_evidence_ids:
        row = verified_by_id.get(evidence_id)
        if row is None:
            continue
        verified_evidence_items.append({
            "ingredientId": row.ingredient_id,
            "ingredientName": ingredient_names.get(row.ingredient_id, row.ingredient_id),
            "goal": row.goal,
            "evidenceGrade": row.evidence_grade,
            "auditStatus": row.audit_status,
            "minEffectiveDose": row.min_effective_dose,
            "optimalDoseRange": row.optimal_dose_range,
            "refIds": evidence_citations.get(evidence_id, []),
        })
    skipped_evidence_items = [
        {
            "ingredientId": row.ingredient_id,
            "ingredientName": ingredient_names.get(row.ingredient_id, row.ingredient_id),
            "goal": row.goal,
            "evidenceGrade": row.evidence_grade,
            "auditStatus": row.audit_status,
            "reason": "audit_status_not_verified",
            "refIds": pending_evidence_citations.get(row.id, []),
        }
        for row in pending_evidence
        if row.ingredient_id in active_ids
    ]
    verified_form_items = [
        {
            "ingredientId": signal["ingredientId"],
            "ingredientName": signal["ingredientName"],
            "formKey": signal["formKey"],
            "formLabel": signal["formLabel"],
            "effectiveFactor": signal["effectiveFactor"],
            "evidenceGrade": signal["evidenceGrade"],
            "auditStatus": signal["auditStatus"],
            "refIds": form_citations.get(signal["formId"], []),
        }
        for signal in metrics.form_signals
    ]
    skipped_form_items = [
        {
            "ingredientId": row.ingredient_id,
            "ingredientName": ingredient_names.get(row.ingredient_id, row.ingredient_id),
            "formKey": row.form_key,
            "formLabel": row.form_label,
            "evidenceGrade": row.evidence_grade,
            "auditStatus": row.audit_status,
            "reason": "audit_status_not_verified",
            "refIds": pending_form_citations.get(row.id, []),
        }
        for row in pending_forms
        if row.ingredient_id in active_ids
    ]
    verified_evidence_items, truncated_verified_evidence = _capped(verified_evidence_items)
    skipped_evidence_items, truncated_skipped_evidence = _capped(skipped_evidence_items)
    verified_form_items, truncated_verified_forms = _capped(verified_form_items)
    skipped_form_items, truncated_skipped_forms = _capped(skipped_form_items)

    safety = clamp(
        metrics.safety_base - len(ul_warnings["high"]) * 15 - len(ul_warnings["moderate"]) * 8, 0, 100
    )
    integrity = clamp(metrics.integrity_base, 0, 100)
    raw_overall = 0.4 * metrics.effectiveness + 0.3 * safety + 0.3 * integrity
    display_overall = metrics.confidence * raw_overall + (1 - metrics.confidence) * 50
    basis = rows[0].basis if rows and rows[0].basis else Basis.LABEL_SERVING.value

    assumptions: Dict[str, Any] = {
        "basis": basis,
        "doseBasis": "per_day_adult",
        "dailyMultiplier": daily_multiplier.multiplier,
        "dailyMultiplierSource": daily_multiplier.source,
        "dailyMultiplierReliability": daily_multiplier.reliability,
    }
    if source == ScoreSource.LNHPD.value:
        assumptions.update({
            "lnhpdIdUsedForDoseLookup": daily_multiplier.lnhpd_id_used_for_dose_lookup,
            "doseRowsFound": daily_multiplier.dose_rows_found,
            "selectedDosePop": daily_multiplier.selected_dose_pop,
            "doseFrequencyUnit": daily_multiplier.frequency_unit,
            "dailyMultiplierPenaltyReason": daily_multiplier.penalty_reason,
        })
    assumptions["datasetVersion"] = reference.dataset_version
    assumptions["notes"] = ASSUMPTION_NOTES

    bundle = {
        "overallScore": round_score(display_overall),
        "pillars": {
            "effectiveness": round_score(metrics.effectiveness),
            "safety": round_score(safety),
            "integrity": round_score(integrity),
        },
        "confidence": round_score(metrics.confidence),
        "confidenceLabel": confidence_label(
            metrics.confidence, metrics.form_coverage_ratio, reference.dataset_version
        ),
        "bestFitGoals": resolve_best_fit_goals(rows, metrics.goal_dose_adequacy),
        "flags": build_flags(metrics, ul_warnings),
        "highlights": build_highlights(metrics),
        "provenance": {
            "source": source,
            "sourceId": source_id,
            "canonicalSourceId": canonical_source_id,
            "scoreVersion": V4_SCORE_VERSION,
            "computedAt": datetime.utcnow().isoformat(timespec="milliseconds") + "Z",
            "inputsHash": inputs_hash,
            "datasetVersion": reference.dataset_version,
            "extractedAt": None,
        },
        "explain": {
            "coverage": {
                "activeCount": metrics.active_count,
                "knownDoseCount": metrics.known_dose_count,
                "coverageRatio": round_score(metrics.coverage),
                "proprietaryBlendCount": metrics.proprietary_blend_count,
            },
            "parseConfidence": round_score(metrics.avg_parse_confidence),
            "matchRatio": round_score(metrics.match_ratio),
            "unitOkRatio": round_score(metrics.unit_ok_ratio),
            "unknownUnitCount": metrics.unknown_unit_count,
            "evidence": {
                "coverageRatio": round_score(metrics.evidence_coverage),
                "availableRatio": round_score(metrics.evidence_available_ratio),
                "verifiedAvailableRatio": round_score(metrics.evidence_available_ratio),
                "totalAvailableRatio": round_score(total_available_ratio),
                "doseAdequacy": round_score(metrics.dose_adequacy_raw_avg),
                "formAdjustedDoseAdequacy": round_score(metrics.dose_adequacy_avg),
                "formCoverageRatio": round_score(metrics.form_coverage_ratio),
                "formSignals": form_signals,
                "formSignalsTruncatedCount": max(0, len(ranked_signals) - len(form_signals)),
                "goals": {goal: round_score(value) for goal, value in metrics.goal_dose_adequacy.items()},
                "audit": {
                    "verifiedEvidenceCount": sum(1 for row in verified_evidence if row.ingredient_id in active_ids),
                    "pendingEvidenceCount": sum(1 for row in pending_evidence if row.ingredient_id in active_ids),
                    "verifiedFormCount": sum(1 for row in verified_forms if row.ingredient_id in active_ids),
                    "pendingFormCount": sum(1 for row in pending_forms if row.ingredient_id in active_ids),
                    "verifiedEvidence": verified_evidence_items,
                    "skippedEvidence": skipped_evidence_items,
                    "verifiedForms": verified_form_items,
                    "skippedForms": skipped_form_items,
                    "truncated": {
                        "verifiedEvidence": truncated_verified_evidence,
                        "skippedEvidence": truncated_skipped_evidence,
                        "verifiedForms": truncated_verified_forms,
                        "skippedForms": truncated_skipped_forms,
                    },
                },
                "citations": {
                    "evidence": evidence_citations,
                    "forms": form_citations,
                    "evidenceReferenceIds": _unique(ref for refs in evidence_citations.values() for ref in refs),
                    "formReferenceIds": _unique(ref for refs in form_citations.values() for ref in refs),
                },
            },
            "ulWarnings": ul_warnings,
            "assumptions": assumptions,
        },
    }
    return ScoreResult(
        bundle=bundle,
        inputs_hash=inputs_hash,
        source_id_for_write=source_id_for_write,
        canonical_source_id=canonical_source_id,
    )


# ============================================================================
# Engine
# ============================================================================

def resolve_daily_multiplier(
    source: str,
    canonical_source_id: Optional[str],
    facts_json: Optional[Mapping[str, Any]],
) -> DailyMultiplier:
    """
    Daily multiplier for one product.

    Only LNHPD products carry dose records; everything else uses the
    default. ``facts_json`` is the product's LNHPD facts document, if any.
    """
    if source != ScoreSource.LNHPD.value:
        return default_daily_multiplier()
    if not canonical_source_id:
        return DailyMultiplier(
            source=SOURCE_DEFAULT_MISSING,
            reliability="default",
            dose_rows_found=0,
            penalty_reason="missing_canonical_id",
        )
    if not isinstance(facts_json, Mapping):
        result = default_daily_multiplier()
        result.dose_rows_found = 0
        result.penalty_reason = "missing_facts"
    else:
        result = compute_daily_multiplier_from_lnhpd_facts(facts_json)
    result.lnhpd_id_used_for_dose_lookup = canonical_source_id
    return result


@dataclass
class ProductRows:
    rows: List[ProductIngredientRow]
    source_id_for_write: str
    canonical_source_id: Optional[str]

    @property
    def ingredient_ids(self) -> List[str]:
        return _unique(row.ingredient_id for row in self.rows if row.ingredient_id)

    @property
    def has_active(self) -> bool:
        return any(row.is_active for row in self.rows)


class ScoreEngine:
    """
    v4 score engine bound to a reference store.

    Responsibilities:
    - Read a product's stored ingredient rows (by source id, then canonical id)
    - Resolve the daily multiplier and dataset version
    - Compute bundles through the uncached or the cached path
    """

    def __init__(self, store: ReferenceStore):
        self.store = store

    async def fetch_product_rows(self, source: str, source_id: str) -> Optional[ProductRows]:
        for column in ("source_id", "canonical_source_id"):
            try:
                data = await self.store.select(
                    "product_ingredients",
                    PRODUCT_INGREDIENT_COLUMNS,
                    [eq("source", source), eq(column, str(source_id))],
                    [Order("id")],
                )
            except StoreError as e:
                raise ReferenceDataError(
                    "Failed to read product ingredients",
                    context={"source": source, "source_id": source_id, "table_name": "product_ingredients"},
                    original_exception=e,
                )
            if data:
                rows = [ProductIngredientRow(**row) for row in data]
                return ProductRows(
                    rows=rows,
                    source_id_for_write=rows[0].source_id or str(source_id),
                    canonical_source_id=rows[0].canonical_source_id,
                )
        return None

    async def fetch_lnhpd_facts(self, lnhpd_id: str) -> Optional[Dict[str, Any]]:
        try:
            record = await self.store.select_one(
                "lnhpd_facts",
                ["facts_json"],
                [eq("lnhpd_id", lnhpd_id), eq("is_on_market", True)],
            )
        except StoreError as e:
            raise ReferenceDataError(
                "Failed to read LNHPD facts",
                context={"lnhpd_id": lnhpd_id, "table_name": "lnhpd_facts"},
                original_exception=e,
            )
        facts = record.get("facts_json") if record else None
        return facts if isinstance(facts, dict) else None

    async def fetch_daily_multiplier(self, source: str, canonical_source_id: Optional[str]) -> DailyMultiplier:
        if source != ScoreSource.LNHPD.value or not canonical_source_id:
            return resolve_daily_multiplier(source, canonical_source_id, None)
        facts = await self.fetch_lnhpd_facts(canonical_source_id)
        return resolve_daily_multiplier(source, canonical_source_id, facts)

    async def fetch_dataset_version(self) -> Optional[str]:
        try:
            state = await self.store.select_one("scoring_dataset_state", ["version"], [eq("key", DATASET_VERSION_KEY)])
        except StoreError as e:
            raise ReferenceDataError(
                "Failed to read dataset version",
                context={"table_name": "scoring_dataset_state"},
                original_exception=e,
            )
        version = state.get("version") if state else None
        return version.strip() if isinstance(version, str) and version.strip() else None

    async def compute(self, source: str, source_id: str) -> Optional[ScoreResult]:
        """
        Uncached path: every input is read from the store.

        Raises:
            ReferenceDataError: On any reference read failure
        """
        lookup = await self.fetch_product_rows(source, source_id)
        if lookup is None or not lookup.has_active:
            return None
        daily_multiplier = await self.fetch_daily_multiplier(source, lookup.canonical_source_id)
        snapshot = await DatasetCache.load(self.store, lookup.ingredient_ids)
        return build_bundle(
            lookup.rows,
            source,
            str(source_id),
            lookup.source_id_for_write,
            lookup.canonical_source_id,
            daily_multiplier,
            snapshot.for_ingredients(lookup.ingredient_ids),
        )

    def compute_cached(
        self,
        rows: Sequence[ProductIngredientRow],
        source: str,
        source_id: str,
        canonical_source_id: Optional[str],
        daily_multiplier: DailyMultiplier,
        cache: DatasetCache,
        source_id_for_write: Optional[str] = None,
    ) -> Optional[ScoreResult]:
        """Cached path: reference data comes from ``cache``; no store reads."""
        if not any(row.is_active for row in rows):
            return None
        ingredient_ids = _unique(row.ingredient_id for row in rows if row.ingredient_id)
        return build_bundle(
            list(rows),
            source,
            str(source_id),
            source_id_for_write or str(source_id),
            canonical_source_id,
            daily_multiplier,
            cache.for_ingredients(ingredient_ids),
        )

    async def compute_inputs_hash(self, source: str, source_id: str) -> Optional[str]:
        lookup = await self.fetch_product_rows(source, source_id)
        if lookup is None:
            return None
        daily_multiplier = await self.fetch_daily_multiplier(source, lookup.canonical_source_id)
        dataset_version = await self.fetch_dataset_version()
        return build_inputs_hash(lookup.rows, daily_multiplier.multiplier, daily_multiplier.source, dataset_version)
