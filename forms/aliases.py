"""
Builtin form alias seeds and alias merging.

The seeds cover common salt, vitamer, delivery and branded-ingredient names.
They are global (no ingredient scope), carry audit status ``derived`` and are
always overridden by a database alias with the same (alias, scope, form key).
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Tuple

from core.exceptions import ReferenceDataError, StoreError
from core.text import normalize_text
from models.base import AuditStatus
from schemas.ingredient import IngredientFormAliasRow
from store.base import ReferenceStore, is_null

logger = logging.getLogger(__name__)

# (alias text, form key, confidence)
BUILTIN_FORM_ALIAS_SEEDS: List[Tuple[str, str, float]] = [
    # Mineral salts and chelates
    ("glycinate", "glycinate", 0.7),
    ("bisglycinate", "bisglycinate", 0.8),
    ("bi-glycinate", "bisglycinate", 0.7),
    ("di-glycinate", "bisglycinate", 0.7),
    ("diglycinate", "bisglycinate", 0.7),
    ("chelate", "bisglycinate", 0.6),
    ("chelated", "bisglycinate", 0.6),
    ("amino acid chelate", "bisglycinate", 0.6),
    ("citrate", "citrate", 0.7),
    ("tri-citrate", "citrate", 0.7),
    ("citrate malate", "citrate_malate", 0.7),
    ("malate", "malate", 0.7),
    ("picolinate", "picolinate", 0.7),
    ("gluconate", "gluconate", 0.7),
    ("sulfate", "sulfate", 0.7),
    ("sulphate", "sulfate", 0.7),
    ("chloride", "chloride", 0.7),
    ("carbonate", "carbonate", 0.7),
    ("nitrate", "nitrate", 0.7),
    ("phosphate", "phosphate", 0.7),
    ("threonate", "l_threonate", 0.7),
    ("l-threonate", "l_threonate", 0.7),
    ("magtein", "l_threonate", 0.8),
    ("hcl", "hcl", 0.7),
    ("hydrochloride", "hcl", 0.7),
] + [
    (alias, alias.replace(" ", "_"), 0.8)
    for alias in (
        "ferrous fumarate",
        "ferrous sulfate",
        "ferrous gluconate",
        "manganese bisglycinate",
        "manganese gluconate",
        "manganese sulfate",
        "copper bisglycinate",
        "copper gluconate",
        "copper sulfate",
        "potassium chloride",
        "potassium citrate",
        "potassium gluconate",
        "potassium iodide",
        "sodium iodide",
        "sodium ascorbate",
        "calcium ascorbate",
        "calcium pantothenate",
        "calcium fructoborate",
        "boron citrate",
        "selenium yeast",
    )
] + [
    # Vitamers
    ("selenomethionine", "selenomethionine", 0.8),
    ("selenite", "selenite", 0.8),
    ("molybdenum chelate", "molybdenum_chelate", 0.8),
    ("sodium molybdate", "sodium_molybdate", 0.8),
    ("methylfolate", "methylfolate", 0.8),
    ("5-mthf", "5_mthf", 0.8),
    ("5 mthf", "5_mthf", 0.8),
    ("folic acid", "folic_acid", 0.8),
    ("folinic acid", "folinic_acid", 0.8),
    ("cyanocobalamin", "cyanocobalamin", 0.8),
    ("methylcobalamin", "methylcobalamin", 0.8),
    ("adenosylcobalamin", "adenosylcobalamin", 0.8),
    ("hydroxocobalamin", "hydroxocobalamin", 0.8),
    ("p5p", "p5p", 0.8),
    ("pyridoxine hcl", "pyridoxine_hcl", 0.8),
    ("thiamine hcl", "thiamine_hcl", 0.8),
    ("thiamine mononitrate", "thiamine_mononitrate", 0.8),
    ("riboflavin 5 phosphate", "riboflavin_5_phosphate", 0.8),
    ("riboflavin-5-phosphate", "riboflavin_5_phosphate", 0.8),
    ("niacinamide", "niacinamide", 0.8),
    ("nicotinic acid", "nicotinic_acid", 0.8),
    ("nicotinamide riboside", "nicotinamide_riboside", 0.8),
    ("inositol hexanicotinate", "inositol_hexanicotinate", 0.8),
    ("d3", "d3_cholecalciferol", 0.7),
    ("cholecalciferol", "d3_cholecalciferol", 0.8),
    ("d2", "d2_ergocalciferol", 0.7),
    ("ergocalciferol", "d2_ergocalciferol", 0.8),
    ("retinyl palmitate", "retinyl_palmitate", 0.8),
    ("retinyl acetate", "retinyl_acetate", 0.8),
    ("beta carotene", "beta_carotene", 0.8),
    # Lipid forms
    ("ethyl ester", "ethyl_ester", 0.8),
    ("triglyceride", "triglyceride", 0.8),
    ("rTG", "triglyceride", 0.7),
    ("rtg", "triglyceride", 0.7),
    ("re-esterified triglyceride", "triglyceride", 0.7),
    ("reesterified triglyceride", "triglyceride", 0.7),
    ("phospholipid", "phospholipid", 0.8),
    ("phospholipid complex", "phospholipid", 0.7),
    ("free fatty acid", "free_fatty_acid", 0.7),
    ("free acid", "free_acid", 0.7),
    # Delivery systems
    ("liposomal", "liposomal", 0.8),
    ("liposome", "liposomal", 0.7),
    ("phytosome", "phytosome", 0.8),
    ("micellar", "micellar", 0.8),
    ("micellized", "micellized", 0.8),
    ("microencapsulated", "microencapsulated", 0.7),
    ("micronized", "micronized", 0.7),
    ("emulsified", "emulsified", 0.7),
    ("beadlet", "beadlet", 0.7),
    ("delayed release", "delayed_release", 0.7),
    ("sustained release", "sustained_release", 0.7),
    ("slow release", "slow_release", 0.7),
    ("enteric", "enteric", 0.7),
    ("buffered", "buffered", 0.7),
    ("with piperine", "with_piperine", 0.7),
    ("bioperine", "with_piperine", 0.7),
    # Branded ingredients
    ("meriva", "phytosome", 0.7),
    ("quercefit", "phytosome", 0.7),
    ("curqfen", "phytosome", 0.6),
    ("bcm-95", "essential_oils_complex", 0.6),
    ("cavacurmin", "micellar", 0.6),
    ("longvida", "solid_lipid_particles", 0.7),
    ("slcp", "solid_lipid_particles", 0.7),
    ("theracurmin", "micellar", 0.7),
    ("novasol", "micellar", 0.7),
    ("emiq", "emiq", 0.8),
    ("isoquercetin", "isoquercetin", 0.8),
    ("suntheanine", "suntheanine", 0.8),
    ("pharmagaba", "pharmaGABA", 0.8),
    ("sensoril", "sensoril", 0.8),
    ("ksm-66", "branded", 0.6),
    ("traacs", "branded", 0.6),
    ("albion", "branded", 0.6),
    ("optizinc", "branded", 0.6),
    ("carnoSyn", "carnoSyn", 0.8),
    ("carnosyn", "carnoSyn", 0.8),
    ("egb 761", "egb761", 0.8),
    ("shr-5", "shr5", 0.8),
    ("shr5", "shr5", 0.8),
    ("silexan", "silexan", 0.8),
    ("optiMSM", "optims_msm", 0.8),
    ("optimsm", "optims_msm", 0.8),
]

_SEED_ID_CHARS = re.compile(r"[^a-z0-9]+")


def _seed_id(alias: str, form_key: str) -> str:
    return f"seed_{_SEED_ID_CHARS.sub('_', alias.lower())}_{form_key}"


def builtin_form_aliases() -> List[IngredientFormAliasRow]:
    """Seed aliases as global, derived alias rows."""
    return [
        IngredientFormAliasRow(
            id=_seed_id(alias, form_key),
            alias_text=alias,
            alias_norm=normalize_text(alias),
            form_key=form_key,
            ingredient_id=None,
            confidence=confidence,
            audit_status=AuditStatus.DERIVED.value,
            source="seed",
        )
        for alias, form_key, confidence in BUILTIN_FORM_ALIAS_SEEDS
    ]


def merge_form_aliases(db_aliases: Iterable[IngredientFormAliasRow]) -> List[IngredientFormAliasRow]:
    """
    Merge database aliases over the builtin seeds.

    Rows are keyed by (normalized alias, scope, form key); a database row
    replaces the seed with the same key. Seeds keep their leading position.
    """
    merged: Dict[str, IngredientFormAliasRow] = {}
    for row in builtin_form_aliases():
        merged[f"{row.norm}:{row.ingredient_id or 'global'}:{row.form_key}"] = row
    for row in db_aliases:
        if not row.alias_norm:
            row = row.copy(update={"alias_norm": normalize_text(row.alias_text)})
        merged[f"{row.norm}:{row.ingredient_id or 'global'}:{row.form_key}"] = row
    return list(merged.values())


async def seed_builtin_aliases(store: ReferenceStore, dry_run: bool = False) -> Dict[str, Any]:
    """
    Write builtin seeds missing from ``ingredient_form_aliases``.

    A seed is missing when no global alias row has the same normalized alias
    and form key. Existing rows are never touched, so repeated runs only add
    seeds introduced since the last run.
    """
    try:
        rows = await store.select_all("ingredient_form_aliases", filters=[is_null("ingredient_id")])
    except StoreError as e:
        raise ReferenceDataError("Failed to read global form aliases", original_exception=e)

    existing = {f"{alias.norm}:{alias.form_key}" for alias in (IngredientFormAliasRow(**row) for row in rows)}
    missing: Dict[str, IngredientFormAliasRow] = {}
    for seed in builtin_form_aliases():
        key = f"{seed.norm}:{seed.form_key}"
        if key not in existing:
            missing.setdefault(key, seed)

    summary = {
        "seeds": len(BUILTIN_FORM_ALIAS_SEEDS),
        "existing": len(existing),
        "missing": len(missing),
        "inserted": 0,
        "dryRun": dry_run,
    }
    if dry_run or not missing:
        return summary

    summary["inserted"] = await store.upsert(
        "ingredient_form_aliases",
        [row.dict() for row in missing.values()],
        conflict_key=("id",),
    )
    logger.info(f"Seeded {summary['inserted']} builtin form aliases ({len(existing)} already present)")
    return summary
