"""
Form matching for scoring: pick the best verified form for a row's text.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Set

from core.text import clamp, normalize_text
from schemas.ingredient import IngredientFormAliasRow, IngredientFormRow
from scoring.dosing import is_verified_audit, resolve_evidence_weight, resolve_grade_weight

FORM_ALPHA = 0.85
DEFAULT_FORM_CONFIDENCE = 0.5
DEFAULT_ALIAS_CONFIDENCE = 0.6
UNVERIFIED_ALIAS_WEIGHT = 0.8


@dataclass
class FormMatch:
    form: IngredientFormRow
    match_score: float
    effective_factor: float
    alias: Optional[IngredientFormAliasRow] = None


def compute_effective_form_factor(form: IngredientFormRow) -> float:
    """
    Potency multiplier of a verified form, damped by confidence and grade.

    Strong/moderate grades allow [0.7, 1.4]; weaker grades [0.75, 1.25].
    """
    if not is_verified_audit(form.audit_status):
        return 1.0
    relative = form.relative_factor if form.relative_factor is not None else 1.0
    confidence = form.confidence if form.confidence is not None else DEFAULT_FORM_CONFIDENCE
    grade_weight = resolve_grade_weight(form.evidence_grade)
    raw = 1 + (relative - 1) * clamp(confidence, 0, 1) * grade_weight * FORM_ALPHA
    if grade_weight >= 0.85:
        return clamp(raw, 0.7, 1.4)
    return clamp(raw, 0.75, 1.25)


def _tokens(text: str) -> List[str]:
    return [token for token in text.split() if token]


def compute_alias_match_score(candidate: str, candidate_tokens: Set[str], alias: IngredientFormAliasRow) -> float:
    alias_norm = normalize_text(alias.alias_norm or alias.alias_text)
    if not alias_norm:
        return 0.0
    if candidate == alias_norm:
        return 1.0
    if alias_norm in candidate:
        return 0.9
    alias_tokens = _tokens(alias_norm)
    if alias_tokens and all(token in candidate_tokens for token in alias_tokens):
        return 0.8
    if any(token in candidate_tokens for token in alias_tokens):
        return 0.6
    return 0.0


def _base_score(candidate: str, candidate_tokens: Set[str], form: IngredientFormRow) -> float:
    key = normalize_text(form.form_key)
    key_tokens = _tokens(key)
    label_tokens = _tokens(normalize_text(form.form_label))
    if key and key in candidate:
        return 1.0
    if key_tokens and all(token in candidate_tokens for token in key_tokens):
        return 0.9
    if label_tokens and all(token in candidate_tokens for token in label_tokens):
        return 0.8
    if any(token in candidate_tokens for token in label_tokens):
        return 0.6
    return 0.0


def select_best_form_match(
    candidate_text: Optional[str],
    forms: Sequence[IngredientFormRow],
    aliases: Optional[Iterable[IngredientFormAliasRow]] = None,
) -> Optional[FormMatch]:
    """
    Score every form against the candidate text and keep the best.

    The first form with a non-zero base score becomes the initial best even
    when its evidence weight zeroes the match score; later forms replace it
    only with a strictly higher score.
    """
    if not candidate_text or not forms:
        return None
    candidate = normalize_text(candidate_text)
    if not candidate:
        return None
    candidate_tokens = set(_tokens(candidate))
    alias_list = list(aliases or [])

    best: Optional[FormMatch] = None
    for form in forms:
        score = _base_score(candidate, candidate_tokens, form)
        matched_alias = None
        for alias in alias_list:
            if alias.form_key != form.form_key:
                continue
            alias_score = compute_alias_match_score(candidate, candidate_tokens, alias)
            if not alias_score:
                continue
            confidence = clamp(alias.confidence if alias.confidence is not None else DEFAULT_ALIAS_CONFIDENCE, 0, 1)
            weight = 1.0 if is_verified_audit(alias.audit_status) else UNVERIFIED_ALIAS_WEIGHT
            weighted = alias_score * confidence * weight
            if weighted > score:
                score = weighted
                matched_alias = alias
        if not score:
            continue

        form_confidence = form.confidence if form.confidence is not None else DEFAULT_FORM_CONFIDENCE
        match_score = score * clamp(form_confidence, 0, 1) * resolve_evidence_weight(form.evidence_grade, form.audit_status)
        if best is None or match_score > best.match_score:
            best = FormMatch(
                form=form,
                match_score=match_score,
                effective_factor=compute_effective_form_factor(form),
                alias=matched_alias,
            )
    return best
