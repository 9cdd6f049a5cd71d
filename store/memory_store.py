"""
In-memory reference store.

Implements the same filter/upsert/update semantics as the remote stores so
that the resolver, score engine and orchestrator can run without a database.
Failures can be injected per (operation, table) to exercise error paths.
"""

import copy
import re
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from store.base import Filter, Order, ReferenceStore, pattern_segments

logger = logging.getLogger(__name__)

AUTO_ID_TABLES = ("product_ingredients", "product_scores")


def _same(a: Any, b: Any) -> bool:
    if a == b:
        return True
    if a is None or b is None:
        return False
    return str(a) == str(b)


def _comparable(a: Any, b: Any) -> Tuple[Any, Any]:
    if isinstance(a, (int, float)) and not isinstance(b, (int, float)):
        try:
            return a, float(b)
        except (TypeError, ValueError):
            return str(a), str(b)
    return a, b


def _ilike(value: str, pattern: str) -> bool:
    """Only unescaped ``*`` is a wildcard; everything else matches literally."""
    regex = ".*".join(re.escape(part.lower()) for part in pattern_segments(pattern))
    return re.fullmatch(regex, value.lower(), re.DOTALL) is not None


def _matches(row: Dict[str, Any], flt: Filter) -> bool:
    value = row.get(flt.column)
    if flt.op == "eq":
        return _same(value, flt.value)
    if flt.op == "neq":
        return not _same(value, flt.value)
    if flt.op == "in":
        return any(_same(value, candidate) for candidate in flt.value)
    if flt.op == "is_null":
        return value is None
    if flt.op == "not_null":
        return value is not None
    if flt.op == "is_empty":
        return value is None or value == ""
    if flt.op == "ilike":
        if value is None:
            return False
        return _ilike(str(value), str(flt.value))
    if value is None:
        return False
    left, right = _comparable(value, flt.value)
    if flt.op == "gt":
        return left > right
    if flt.op == "gte":
        return left >= right
    if flt.op == "lt":
        return left < right
    if flt.op == "lte":
        return left <= right
    raise ValueError(f"Unsupported filter op: {flt.op}")


class InMemoryReferenceStore(ReferenceStore):
    """Dict-of-lists store. Rows are deep-copied in and out."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            name: [copy.deepcopy(row) for row in rows] for name, rows in (tables or {}).items()
        }
        self._next_ids: Dict[str, int] = {}
        self._failures: List[Dict[str, Any]] = []
        self.calls: List[Tuple[str, str]] = []

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def seed(self, table: str, rows: Sequence[Dict[str, Any]]) -> None:
        bucket = self.tables.setdefault(table, [])
        for row in rows:
            bucket.append(self._with_id(table, copy.deepcopy(row)))

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(row) for row in self.tables.get(table, [])]

    def inject_failure(self, operation: str, table: str, error: Exception, times: int = 1, when=None) -> None:
        """Raise ``error`` on the next ``times`` matching calls (``when(payload)`` narrows the match)."""
        self._failures.append({"operation": operation, "table": table, "error": error, "times": times, "when": when})

    def _maybe_fail(self, operation: str, table: str, payload: Any = None) -> None:
        for failure in self._failures:
            if failure["times"] <= 0:
                continue
            if failure["operation"] != operation or failure["table"] != table:
                continue
            if failure["when"] is not None and not failure["when"](payload):
                continue
            failure["times"] -= 1
            raise failure["error"]

    def _with_id(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        if table in AUTO_ID_TABLES and row.get("id") is None:
            existing = [r.get("id") or 0 for r in self.tables.get(table, [])]
            next_id = max([self._next_ids.get(table, 0)] + existing) + 1
            self._next_ids[table] = next_id
            row["id"] = next_id
        return row

    # ------------------------------------------------------------------
    # ReferenceStore
    # ------------------------------------------------------------------

    async def select(
        self,
        table: str,
        columns: Optional[Sequence[str]] = None,
        filters: Optional[Sequence[Filter]] = None,
        order: Optional[Sequence[Order]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        self.calls.append(("select", table))
        self._maybe_fail("select", table, filters)
        matched = [row for row in self.tables.get(table, []) if all(_matches(row, f) for f in filters or [])]
        for item in reversed(list(order or [])):
            matched.sort(
                key=lambda row: (row.get(item.column) is None, row.get(item.column)),
                reverse=not item.ascending,
            )
        window = matched[offset:offset + limit] if limit is not None else matched[offset:]
        if columns:
            return [{column: copy.deepcopy(row.get(column)) for column in columns} for row in window]
        return [copy.deepcopy(row) for row in window]

    async def upsert(
        self,
        table: str,
        rows: Sequence[Dict[str, Any]],
        conflict_key: Sequence[str],
    ) -> int:
        self.calls.append(("upsert", table))
        self._maybe_fail("upsert", table, rows)
        bucket = self.tables.setdefault(table, [])
        written = 0
        for row in rows:
            existing = next(
                (current for current in bucket if all(_same(current.get(k), row.get(k)) for k in conflict_key)),
                None,
            )
            if existing is not None:
                existing.update(copy.deepcopy(row))
            else:
                bucket.append(self._with_id(table, copy.deepcopy(dict(row))))
            written += 1
        return written

    async def update(
        self,
        table: str,
        patch: Dict[str, Any],
        filters: Sequence[Filter],
    ) -> int:
        self.calls.append(("update", table))
        self._maybe_fail("update", table, patch)
        affected = 0
        for row in self.tables.get(table, []):
            if all(_matches(row, f) for f in filters):
                row.update(copy.deepcopy(patch))
                affected += 1
        return affected

    def count_calls(self, operation: str, table: Optional[str] = None) -> int:
        return sum(1 for op, name in self.calls if op == operation and (table is None or name == table))
