"""
Best-fit goal ranking.

Goals come from per-goal dose adequacy of resolved ingredients; active rows
without an ingredient id fall back to keyword matching at reduced weight.
"""

from typing import Dict, List, Mapping, Sequence

from core.text import clamp, normalize_name_key, round_half_up
from schemas.product import ProductIngredientRow

GOAL_DEFINITIONS = [
    {
        "id": "sleep_stress",
        "label": "Sleep / Stress",
        "keywords": [
            "melatonin", "theanine", "l theanine", "magnesium", "glycine",
            "valerian", "gaba", "ashwagandha", "chamomile", "passionflower",
        ],
    },
    {
        "id": "energy_performance",
        "label": "Energy / Performance",
        "keywords": [
            "caffeine", "green tea", "coq10", "coenzyme q10", "b12",
            "niacin", "riboflavin", "creatine", "beta alanine",
        ],
    },
    {
        "id": "gut_probiotic",
        "label": "Gut / Probiotic",
        "keywords": [
            "probiotic", "lactobacillus", "bifidobacterium", "inulin",
            "prebiotic", "fiber", "digestive enzyme",
        ],
    },
    {
        "id": "immune",
        "label": "Immune",
        "keywords": ["vitamin c", "vitamin d", "zinc", "elderberry", "echinacea", "quercetin"],
    },
    {
        "id": "heart_lipids",
        "label": "Heart / Lipids",
        "keywords": ["omega 3", "fish oil", "epa", "dha", "coq10", "magnesium"],
    },
    {
        "id": "brain_focus",
        "label": "Brain / Focus",
        "keywords": ["dha", "omega 3", "bacopa", "ginkgo", "phosphatidylserine", "theanine"],
    },
    {
        "id": "joint",
        "label": "Joint",
        "keywords": ["glucosamine", "chondroitin", "msm", "turmeric", "curcumin", "collagen"],
    },
    {
        "id": "beauty",
        "label": "Beauty",
        "keywords": ["collagen", "biotin", "hyaluronic", "vitamin e", "vitamin c"],
    },
    {
        "id": "blood_sugar",
        "label": "Blood Sugar",
        "keywords": ["berberine", "chromium", "alpha lipoic", "cinnamon", "gymnema"],
    },
    {
        "id": "weight",
        "label": "Weight",
        "keywords": ["green tea", "garcinia", "glucomannan", "cla", "caffeine"],
    },
    {
        "id": "mens_health",
        "label": "Men's Health",
        "keywords": ["saw palmetto", "zinc", "tongkat", "maca"],
    },
    {
        "id": "womens_health",
        "label": "Women's Health",
        "keywords": ["iron", "folate", "folic acid", "maca", "evening primrose"],
    },
]

GOAL_LABELS = {goal["id"]: goal["label"] for goal in GOAL_DEFINITIONS}

KEYWORD_FALLBACK_WEIGHT = 0.6
KNOWN_DOSE_KEYWORD_SCORE = 26
UNKNOWN_DOSE_KEYWORD_SCORE = 18
MAX_GOALS = 3


def normalize_goal_id(value) -> str:
    return str(value or "").strip().lower()


def format_goal_label(goal_id: str) -> str:
    label = GOAL_LABELS.get(goal_id)
    if label:
        return label
    return " ".join(part[:1].upper() + part[1:] for part in goal_id.replace("_", " ").split())


def _round_int(value: float) -> int:
    return int(round_half_up(value, 0))


def _top(scores: List[Dict]) -> List[Dict]:
    ranked = [goal for goal in scores if goal["score"] > 0]
    ranked.sort(key=lambda goal: goal["score"], reverse=True)
    return ranked[:MAX_GOALS]


def resolve_goal_matches(rows: Sequence[ProductIngredientRow]) -> List[Dict]:
    """Keyword match of active row names against the goal table."""
    active = [row for row in rows if row.is_active]
    if not active:
        return []
    results = []
    for goal in GOAL_DEFINITIONS:
        keywords = [normalize_name_key(keyword) for keyword in goal["keywords"]]
        score = 0
        for row in active:
            name_key = normalize_name_key(row.name_raw)
            if not name_key or not any(keyword in name_key for keyword in keywords):
                continue
            score += UNKNOWN_DOSE_KEYWORD_SCORE if row.amount_unknown else KNOWN_DOSE_KEYWORD_SCORE
        results.append({"goal": goal["id"], "label": goal["label"], "score": _round_int(clamp(score, 0, 100))})
    return _top(results)


def resolve_best_fit_goals(
    rows: Sequence[ProductIngredientRow],
    goal_dose_adequacy: Mapping[str, float],
) -> List[Dict]:
    merged: Dict[str, int] = {}
    for goal, score in goal_dose_adequacy.items():
        goal_id = normalize_goal_id(goal)
        if goal_id:
            merged[goal_id] = _round_int(clamp(score, 0, 1) * 100)

    fallback_rows = [row for row in rows if row.is_active and not row.ingredient_id]
    for fit in resolve_goal_matches(fallback_rows):
        goal_id = normalize_goal_id(fit["goal"])
        scaled = _round_int(fit["score"] * KEYWORD_FALLBACK_WEIGHT)
        merged[goal_id] = scaled if goal_id not in merged else max(merged[goal_id], scaled)

    return _top([
        {"goal": goal_id, "label": format_goal_label(goal_id), "score": _round_int(clamp(score, 0, 100))}
        for goal_id, score in merged.items()
    ])
