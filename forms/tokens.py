"""
Form token extraction from raw ingredient label text.

This module provides:
- Explicit hint extraction: "(as X)" / "(from X)" qualifiers, trailing
  "as X" / "from X" clauses and a fixed lexicon of salts, delivery forms and
  plant parts
- Structured-field extraction for LNHPD sub-fields (source material, extract
  type, ratio, potency, dried-herb equivalent)
- Canonicalization (rewrites, dedupe, dosage-token cleanup)
- The exclusion classifier used by the guardrail and by diagnostics
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.text import normalize_text, to_number

# ============================================================================
# Lexicon
# ============================================================================

SALT_RULES: List[Tuple[str, str]] = [
    ("citrate", r"\bcitrate\b"),
    ("oxide", r"\boxide\b"),
    ("gluconate", r"\bgluconate\b"),
    ("sulfate", r"\bsulphate\b|\bsulfate\b"),
    ("picolinate", r"\bpicolinate\b"),
    ("bisglycinate", r"\bbisglycinate\b"),
    ("glycinate", r"\bglycinate\b"),
    ("chelate", r"\bchelated?\b"),
    ("chloride", r"\bchloride\b"),
    ("hydrochloride", r"\bhydrochloride\b|\bhcl\b"),
    ("malate", r"\bmalate\b"),
    ("threonate", r"\bthreonate\b"),
    ("phosphate", r"\bphosphate\b"),
    ("methyl", r"\bmethyl\b"),
    ("hydroxy", r"\bhydroxy\b"),
    ("adenosyl", r"\badenosyl\b"),
    ("cyano", r"\bcyano\b"),
]

DELIVERY_RULES: List[Tuple[str, str]] = [
    ("liposomal", r"\bliposomal\b"),
    ("phytosome", r"\bphytosome\b"),
    ("enteric", r"\benteric\b"),
    ("ubiquinol", r"\bubiquinol\b"),
    ("ubiquinone", r"\bubiquinone\b|\bubidecarenone\b"),
    ("coq10", r"\bcoq10\b|\bcoenzyme q10\b"),
]

PLANT_PART_RULES: List[Tuple[str, str]] = [
    ("root", r"\broots?\b"),
    ("rhizome", r"\brhizomes?\b"),
    ("leaf", r"\bleaf\b|\bleaves\b"),
    ("seed", r"\bseeds?\b"),
    ("bark", r"\bbark\b"),
    ("flower", r"\bflowers?\b"),
    ("fruit", r"\bfruits?\b"),
    ("berry", r"\bberry\b|\bberries\b"),
    ("stem", r"\bstems?\b"),
    ("aerial", r"\baerial parts?\b|\baerial\b"),
    ("herb", r"\bherb\b"),
    ("whole plant", r"\bwhole plant\b"),
    ("peel", r"\bpeel\b"),
    ("resin", r"\bresin\b"),
    ("extract", r"\bextracts?\b"),
    ("standardized", r"\bstandardi[sz]ed\b"),
    ("powder", r"\bpowder(?:ed)?\b"),
    ("fresh", r"\bfresh\b"),
    ("dry", r"\bdry\b|\bdried\b"),
]

LEXICON: List[Tuple[str, "re.Pattern[str]"]] = [
    (token, re.compile(pattern)) for token, pattern in SALT_RULES + DELIVERY_RULES + PLANT_PART_RULES
]
PLANT_PART_LEXICON: List[Tuple[str, "re.Pattern[str]"]] = [
    (token, re.compile(pattern)) for token, pattern in PLANT_PART_RULES
]

RAW_HINT_RULES: List[Tuple[str, "re.Pattern[str]"]] = [
    ("paren", re.compile(r"\(.*\)")),
    ("as", re.compile(r"\bas\b", re.IGNORECASE)),
]

PAREN_QUALIFIER = re.compile(r"\(\s*(?:as|from)\s+([^)]*)\)", re.IGNORECASE)
TRAILING_QUALIFIER = re.compile(r"\b(?:as|from)\s+([^()]+)$", re.IGNORECASE)

QUALIFIER_STOPWORDS = {"and", "of", "the", "with", "as", "from", "mg", "mcg", "ug", "iu", "ml", "cfu"}

# ============================================================================
# Canonicalization
# ============================================================================

TOKEN_REWRITES: Dict[str, List[str]] = {
    "rhizome": ["root"],
    "tuber": ["root"],
    "bulb": ["root"],
    "seeds": ["seed"],
    "aerial": ["whole", "plant"],
    "herb": ["whole", "plant"],
    "standardized": ["std"],
    "standardised": ["std"],
    "tincture": ["extract"],
    "fluidextract": ["extract"],
    "powdered": ["powder"],
    "hydrochloride": ["hcl"],
}

# Ratio ("5:1") and percentage ("95%") tokens are kept verbatim
LITERAL_TOKEN = re.compile(r"^\d+(?:\.\d+)?(?::\d+(?:\.\d+)?|%)$")
DOSAGE_TOKEN = re.compile(r"^\d+(?:mg|mcg|g|iu|ml|cfu)$")

# ============================================================================
# Exclusion classifier
# ============================================================================

EXCLUSION_PATTERNS: List[Tuple[str, List["re.Pattern[str]"]]] = [
    ("solvent", [re.compile(r"\b(ethyl alcohol|ethanol|aqua|water|purified water|glycerin|glycerine)\b")]),
    ("animal_tissue", [re.compile(r"\b(rabbit|porcine|sus scrofa|oryctolagus cuniculus)\b")]),
    (
        "homeopathic",
        [
            re.compile(
                r"\b(homeopathic|homeopathy|natrum muriaticum|kali muriaticum|apis mellifica|"
                r"mercurius corrosivus|bryonia|belladonna|drosera|cantharis|pulsatilla|orchitinum|"
                r"sarsaparilla|absinthium|aethusa|ruta|causticum|aesculus|caryophyllus|histaminum|"
                r"pneumococcinum|bromum|colocynthis|graphites|arnica|ipecacuanha|cinnabaris|"
                r"lupulinum|syphilinum|camphora)\b"
            ),
            re.compile(r"\b\d+(?:\.\d+)?[xXcCdD]\b"),
        ],
    ),
    ("dosage_form", [re.compile(r"\b(capsule|capsules|tablet|tablets|softgel|softgels)\b")]),
    (
        "enzyme",
        [re.compile(r"\b(lipase|amylase|protease|lactase|cellulase|galactosidase|bromelain|papain|enzyme|enzymes)\b")],
    ),
    (
        "non_scoring_nutrient",
        [
            re.compile(
                r"^(calorie|calories|total fat|saturated fat|trans fat|cholesterol|total carbohydrates?|"
                r"dietary fiber|total sugars|added sugars|sugars|protein)\b"
            )
        ],
    ),
]

# Reasons that suppress token emission for an occurrence
GUARD_REASONS = ("solvent", "animal_tissue", "homeopathic")

PROVENANCE_BUCKETS = ("name_fields", "proper_name", "source_material", "structured")


@dataclass
class TokenExtraction:
    """Extractor output for one ingredient occurrence."""
    tokens: List[str] = field(default_factory=list)
    provenance: Dict[str, List[str]] = field(default_factory=dict)
    hints: List[str] = field(default_factory=list)
    excluded_reason: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.tokens

    def sources(self) -> List[str]:
        """Provenance buckets that contributed at least one token."""
        return [bucket for bucket in PROVENANCE_BUCKETS if self.provenance.get(bucket)]


def _is_valid_token(token: str) -> bool:
    if not token or len(token) <= 1:
        return False
    return not token.isdigit()


def canonicalize_tokens(tokens: Iterable[str]) -> List[str]:
    """
    Normalize, rewrite and dedupe raw tokens.

    Multi-word tokens are split; rewrites may expand one word into several
    ("herb" -> "whole", "plant"). ``and`` and dosage tokens such as ``500mg``
    are dropped. Order is first-seen.
    """
    output: List[str] = []
    seen = set()

    def append(token: str) -> None:
        if token in seen or not _is_valid_token(token):
            return
        if token == "and" or DOSAGE_TOKEN.match(token):
            return
        seen.add(token)
        output.append(token)

    for raw in tokens:
        if raw is None:
            continue
        text = str(raw).strip().lower()
        if LITERAL_TOKEN.match(text):
            append(text)
            continue
        for part in normalize_text(text).split():
            for rewritten in TOKEN_REWRITES.get(part, [part]):
                append(normalize_text(rewritten))
    return output


def classify_exclusion(text: Optional[str]) -> Optional[str]:
    """Return the first exclusion reason matching ``text``, or None."""
    normalized = normalize_text(text)
    if not normalized:
        return None
    for reason, patterns in EXCLUSION_PATTERNS:
        if any(pattern.search(normalized) for pattern in patterns):
            return reason
    return None


def collect_raw_hints(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return [marker for marker, pattern in RAW_HINT_RULES if pattern.search(text)]


def _lexicon_hits(normalized: str, lexicon) -> List[str]:
    hits = []
    for token, pattern in lexicon:
        match = pattern.search(normalized)
        if match:
            hits.append((match.start(), token))
    hits.sort(key=lambda item: item[0])
    return [token for _, token in hits]


def _qualifier_texts(text: str) -> Tuple[str, List[str]]:
    """Split raw text into its head and its "(as X)" / "as X" qualifier texts."""
    qualifiers = [match.group(1) for match in PAREN_QUALIFIER.finditer(text)]
    head = PAREN_QUALIFIER.sub(" ", text)
    trailing = TRAILING_QUALIFIER.search(head)
    if trailing:
        qualifiers.append(trailing.group(1))
        head = head[:trailing.start()]
    return head, qualifiers


def extract_hint_tokens(text: Optional[str], name_words: Iterable[str] = ()) -> List[str]:
    """
    Explicit form hints from one free-text field.

    Qualifier words that repeat the ingredient's own name (or the text ahead
    of the qualifier) are dropped.
    """
    if not text or not text.strip():
        return []
    head, qualifiers = _qualifier_texts(text)
    skip = set(name_words) | set(normalize_text(head).split()) | QUALIFIER_STOPWORDS
    tokens: List[str] = []
    for qualifier in qualifiers:
        tokens.extend(word for word in normalize_text(qualifier).split() if word not in skip)
    tokens.extend(_lexicon_hits(normalize_text(text), LEXICON))
    return tokens


def _format_number(value: float) -> str:
    return f"{value:g}"


def _structured_tokens(form_fields: Dict[str, Any], name_words: Iterable[str]) -> List[str]:
    tokens: List[str] = []

    extract_type = normalize_text(form_fields.get("extract_type"))
    if extract_type:
        if "fresh" in extract_type.split():
            tokens.append("fresh")
        if re.search(r"\b(dry|dried)\b", extract_type):
            tokens.append("dry")

    numerator = to_number(form_fields.get("ratio_numerator"))
    denominator = to_number(form_fields.get("ratio_denominator"))
    if numerator is not None and denominator is not None and numerator > 0 and denominator > 0:
        tokens.append("extract")
        tokens.append(f"{_format_number(numerator)}:{_format_number(denominator)}")

    constituent = normalize_text(form_fields.get("potency_constituent"))
    if constituent:
        skip = set(name_words) | QUALIFIER_STOPWORDS
        tokens.extend(word for word in constituent.split() if word not in skip)
        unit = str(form_fields.get("potency_unit") or "").strip().lower()
        amount = to_number(form_fields.get("potency_amount"))
        if amount is not None and (unit.startswith("%") or "percent" in unit):
            tokens.append(f"{_format_number(amount)}%")

    if form_fields.get("dried_herb_equivalent") not in (None, ""):
        tokens.append("dhe")
    return tokens


def extract_form_tokens(
    name_raw: Optional[str],
    ingredient_name: Optional[str] = None,
    form_fields: Optional[Dict[str, Any]] = None,
) -> TokenExtraction:
    """
    Extract canonical form tokens for one ingredient occurrence.

    Args:
        name_raw: Raw ingredient text from the label
        ingredient_name: Resolved ingredient display name (qualifier words
            repeating it are dropped)
        form_fields: Optional structured sub-fields (source_material,
            proper_name, extract_type, ratio_numerator, ratio_denominator,
            potency_constituent, potency_amount, potency_unit,
            dried_herb_equivalent)

    Returns:
        TokenExtraction with ordered unique tokens and per-field provenance.
        When the source material hits a guard pattern, no tokens are emitted
        and ``excluded_reason`` names the guard.
    """
    form_fields = form_fields or {}
    result = TokenExtraction(hints=collect_raw_hints(name_raw))

    source_material = form_fields.get("source_material")
    reason = classify_exclusion(source_material)
    if reason in GUARD_REASONS:
        result.excluded_reason = reason
        return result

    name_words = set(normalize_text(ingredient_name).split())
    raw_by_bucket = {
        "name_fields": extract_hint_tokens(name_raw, name_words),
        "proper_name": extract_hint_tokens(form_fields.get("proper_name"), name_words),
        "source_material": _lexicon_hits(normalize_text(source_material), PLANT_PART_LEXICON),
        "structured": _structured_tokens(form_fields, name_words),
    }

    combined: List[str] = []
    for bucket in PROVENANCE_BUCKETS:
        canonical = canonicalize_tokens(raw_by_bucket[bucket])
        if canonical:
            result.provenance[bucket] = canonical
        combined.extend(raw_by_bucket[bucket])
    result.tokens = canonicalize_tokens(combined)
    return result
