"""
Form Resolver - maps extracted form tokens to canonical form keys.

This module provides:
- TaxonomyView: known form keys per ingredient plus scoped and global alias maps
- FormResolver: the fixed-precedence classification of one occurrence
- apply_verdict: the conditional ``form_raw`` write (only while still empty)

Classification precedence:
    no_tokens > no_map_to_form_key > taxonomy_conflict > ambiguous_tokens
    > already_nonempty > writable
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set

from core.exceptions import ConditionalUpdateError, ReferenceDataError, StoreError
from core.text import normalize_text
from schemas.ingredient import IngredientFormAliasRow, IngredientFormRow
from store.base import ReferenceStore, eq, in_, is_empty, is_null

logger = logging.getLogger(__name__)


class Resolution(str, enum.Enum):
    """Resolver verdict reason codes"""
    NO_TOKENS = "no_tokens"
    NO_MAP_TO_FORM_KEY = "no_map_to_form_key"
    TAXONOMY_CONFLICT = "taxonomy_conflict"
    AMBIGUOUS_TOKENS = "ambiguous_tokens"
    ALREADY_NONEMPTY = "already_nonempty"
    WRITABLE = "writable"


@dataclass
class Verdict:
    reason: Resolution
    form_text: Optional[str] = None
    form_keys: List[str] = field(default_factory=list)
    mapped_tokens: List[str] = field(default_factory=list)
    conflict_keys: List[str] = field(default_factory=list)

    @property
    def writable(self) -> bool:
        return self.reason == Resolution.WRITABLE


def _normalize_form_key(value: Optional[str]) -> str:
    return (value or "").strip().lower()


@dataclass
class TaxonomyView:
    """
    Read-only snapshot of the alias & taxonomy tables.

    Within each alias map the first alias seen for a normalized text wins.
    """
    forms_by_ingredient: Dict[str, Set[str]] = field(default_factory=dict)
    scoped_aliases: Dict[str, Dict[str, str]] = field(default_factory=dict)
    global_aliases: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_rows(
        cls,
        forms: Iterable[IngredientFormRow],
        aliases: Iterable[IngredientFormAliasRow],
    ) -> "TaxonomyView":
        view = cls()
        for form in forms:
            key = _normalize_form_key(form.form_key)
            if key:
                view.forms_by_ingredient.setdefault(form.ingredient_id, set()).add(key)
        for alias in aliases:
            norm = alias.norm
            form_key = _normalize_form_key(alias.form_key)
            if not norm or not form_key:
                continue
            if alias.is_global:
                view.global_aliases.setdefault(norm, form_key)
            else:
                view.scoped_aliases.setdefault(alias.ingredient_id, {}).setdefault(norm, form_key)
        return view

    @classmethod
    async def load(cls, store: ReferenceStore, ingredient_ids: Sequence[str]) -> "TaxonomyView":
        """Read forms, scoped aliases and global aliases for the given ingredients."""
        ids = sorted({str(i) for i in ingredient_ids if i})
        try:
            form_rows = await store.select_all("ingredient_forms", filters=[in_("ingredient_id", ids)]) if ids else []
            scoped_rows = (
                await store.select_all("ingredient_form_aliases", filters=[in_("ingredient_id", ids)]) if ids else []
            )
            global_rows = await store.select_all("ingredient_form_aliases", filters=[is_null("ingredient_id")])
        except StoreError as e:
            raise ReferenceDataError(
                "Failed to load form taxonomy",
                context={"ingredient_count": len(ids)},
                original_exception=e,
            )
        return cls.from_rows(
            [IngredientFormRow(**row) for row in form_rows],
            [IngredientFormAliasRow(**row) for row in global_rows + scoped_rows],
        )

    def known_forms(self, ingredient_id: Optional[str]) -> Set[str]:
        if not ingredient_id:
            return set()
        return self.forms_by_ingredient.get(ingredient_id, set())

    def alias_target(self, token: str, ingredient_id: Optional[str]) -> Optional[str]:
        norm = normalize_text(token)
        if not norm:
            return None
        scoped = self.scoped_aliases.get(ingredient_id or "", {})
        if norm in scoped:
            return scoped[norm]
        return self.global_aliases.get(norm)

    @property
    def recognized_form_keys(self) -> Set[str]:
        keys: Set[str] = set()
        for forms in self.forms_by_ingredient.values():
            keys.update(forms)
        keys.update(self.global_aliases.values())
        for scoped in self.scoped_aliases.values():
            keys.update(scoped.values())
        return keys


class FormResolver:
    """
    Classify one product-ingredient occurrence.

    Ensures:
    - Same tokens and same taxonomy always give the same verdict
    - An alias pointing outside the ingredient's known forms never writes
    - Tokens reaching two or more form keys never write
    """

    def __init__(self, taxonomy: TaxonomyView):
        self.taxonomy = taxonomy

    def map_token(self, token: str, ingredient_id: Optional[str]) -> Optional[str]:
        known = self.taxonomy.known_forms(ingredient_id)
        if known and token in known:
            return token
        return self.taxonomy.alias_target(token, ingredient_id)

    def resolve(
        self,
        tokens: Sequence[str],
        ingredient_id: Optional[str],
        form_raw: Optional[str] = None,
    ) -> Verdict:
        if not tokens:
            return Verdict(Resolution.NO_TOKENS)

        known = self.taxonomy.known_forms(ingredient_id)
        if not known:
            return Verdict(Resolution.NO_MAP_TO_FORM_KEY)

        mapped_tokens: List[str] = []
        form_keys: List[str] = []
        for token in tokens:
            key = self.map_token(token, ingredient_id)
            if not key:
                continue
            mapped_tokens.append(token)
            if key not in form_keys:
                form_keys.append(key)

        if not form_keys:
            return Verdict(Resolution.NO_MAP_TO_FORM_KEY)

        conflicts = [key for key in form_keys if key not in known]
        if conflicts:
            return Verdict(
                Resolution.TAXONOMY_CONFLICT,
                form_keys=form_keys,
                mapped_tokens=mapped_tokens,
                conflict_keys=conflicts,
            )

        if len(form_keys) > 1:
            return Verdict(Resolution.AMBIGUOUS_TOKENS, form_keys=form_keys, mapped_tokens=mapped_tokens)

        if form_raw and form_raw.strip():
            return Verdict(Resolution.ALREADY_NONEMPTY, form_keys=form_keys, mapped_tokens=mapped_tokens)

        return Verdict(
            Resolution.WRITABLE,
            form_text=" ".join(mapped_tokens),
            form_keys=form_keys,
            mapped_tokens=mapped_tokens,
        )


async def apply_verdict(store: ReferenceStore, product_ingredient_id: int, verdict: Verdict) -> int:
    """
    Write a writable verdict's form text, guarded on ``form_raw`` still being empty.

    Raises:
        ValueError: If the verdict is not writable
        ConditionalUpdateError: If zero rows were affected
    """
    if not verdict.writable:
        raise ValueError(f"Verdict {verdict.reason.value} is not writable")
    affected = await store.update(
        "product_ingredients",
        {"form_raw": verdict.form_text},
        [eq("id", product_ingredient_id), is_empty("form_raw")],
    )
    if affected == 0:
        raise ConditionalUpdateError(
            "form_raw changed before the resolver write",
            context={"product_ingredient_id": product_ingredient_id, "form_text": verdict.form_text},
        )
    logger.debug(f"Resolved form_raw={verdict.form_text!r} for product ingredient {product_ingredient_id}")
    return affected
