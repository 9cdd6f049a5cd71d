"""
Ingredient form extraction and resolution.

Modules:
    tokens: Form token extraction from raw label text and LNHPD sub-fields
    resolver: Token to form-key classification and the guarded form_raw write
    aliases: Builtin alias seeds merged under database aliases
"""

from forms.tokens import TokenExtraction, extract_form_tokens, canonicalize_tokens, classify_exclusion
from forms.resolver import FormResolver, Resolution, TaxonomyView, Verdict, apply_verdict
from forms.aliases import builtin_form_aliases, merge_form_aliases

__all__ = [
    "TokenExtraction",
    "extract_form_tokens",
    "canonicalize_tokens",
    "classify_exclusion",
    "FormResolver",
    "Resolution",
    "TaxonomyView",
    "Verdict",
    "apply_verdict",
    "builtin_form_aliases",
    "merge_form_aliases",
]
