"""
Shared reads for the diagnostic reports.

All reports work on a sample of products: either explicit source ids (a
runlist or id file) or the first ``limit`` distinct source ids of a source.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence
import json
import logging

from schemas.product import PRODUCT_INGREDIENT_COLUMNS, ProductIngredientRow
from store.base import Order, ReferenceStore, eq, gt, in_

logger = logging.getLogger(__name__)

CHUNK_SIZE = 200
PAGE_SIZE = 1000
ID_COLUMNS = ("source_id", "canonical_source_id")


def ratio(count: int, total: int) -> float:
    """count / total rounded to 4 decimals; 0 when total is 0."""
    return round(count / total, 4) if total else 0.0


def chunked(items: Sequence[Any], size: int = CHUNK_SIZE) -> Iterable[Sequence[Any]]:
    for offset in range(0, len(items), size):
        yield items[offset:offset + size]


def load_source_ids_file(path: str) -> List[str]:
    """
    Read source ids from a JSON array, a ``{"sourceIds": [...]}`` document,
    or a JSONL runlist (one ``{"sourceId": ...}`` per line).
    """
    with open(path, "r", encoding="utf-8") as handle:
        text = handle.read()
    try:
        document = json.loads(text)
    except ValueError:
        document = None

    if isinstance(document, dict):
        document = document.get("sourceIds", [])
    if isinstance(document, list):
        values = document
    else:
        values = []
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except ValueError:
                continue
            if isinstance(entry, dict):
                values.append(entry.get("sourceId"))

    ids: List[str] = []
    for value in values:
        if value is None or value == "":
            continue
        text_id = str(value)
        if text_id not in ids:
            ids.append(text_id)
    return ids


async def sample_source_ids(
    store: ReferenceStore,
    source: str,
    limit: int,
    id_column: str = "source_id",
) -> List[str]:
    """First ``limit`` distinct ids of ``source`` in product_ingredients, ascending."""
    ids: List[str] = []
    cursor: Optional[str] = None
    while len(ids) < limit:
        filters = [eq("source", source)]
        if cursor is not None:
            filters.append(gt(id_column, cursor))
        page = await store.select(
            "product_ingredients", [id_column], filters, [Order(id_column)], limit=PAGE_SIZE
        )
        if not page:
            break
        for row in page:
            value = row.get(id_column)
            if value is not None and str(value) not in ids:
                ids.append(str(value))
                if len(ids) >= limit:
                    break
        cursor = page[-1].get(id_column)
        if len(page) < PAGE_SIZE or cursor is None:
            break
    return ids


async def load_product_rows(
    store: ReferenceStore,
    source: str,
    source_ids: Sequence[str],
    id_column: str = "source_id",
) -> List[ProductIngredientRow]:
    rows: List[ProductIngredientRow] = []
    for chunk in chunked(list(source_ids)):
        data = await store.select_all(
            "product_ingredients",
            PRODUCT_INGREDIENT_COLUMNS,
            [eq("source", source), in_(id_column, chunk)],
            [Order("id")],
        )
        rows.extend(ProductIngredientRow(**row) for row in data)
    logger.debug(f"Loaded {len(rows)} product ingredient rows for {len(source_ids)} {source} products")
    return rows


def top_counts(counts: Dict[str, int], limit: int, label: str = "token") -> List[Dict[str, Any]]:
    """Highest counts first; ties in key order."""
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [{label: key, "count": count} for key, count in ranked[:limit]]
