"""
Reference store collaborator interface.

Every component talks to the relational store through this narrow surface:
- select(table, columns, filters, order, limit, offset)
- upsert(table, rows, conflict_key) -> rows written
- update(table, patch, filters) -> rows affected

Implementations:
- RestReferenceStore: PostgREST over httpx
- SqlReferenceStore: SQLAlchemy async (PostgreSQL)
- InMemoryReferenceStore: tests and dry local runs
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Filter:
    """One column predicate. ``op`` is one of the FILTER_OPS keys."""
    column: str
    op: str
    value: Any = None


FILTER_OPS = ("eq", "neq", "gt", "gte", "lt", "lte", "in", "ilike", "is_null", "not_null", "is_empty")


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, "neq", value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, "gt", value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def lt(column: str, value: Any) -> Filter:
    return Filter(column, "lt", value)


def lte(column: str, value: Any) -> Filter:
    return Filter(column, "lte", value)


def in_(column: str, values: Sequence[Any]) -> Filter:
    return Filter(column, "in", list(values))


def ilike(column: str, pattern: str) -> Filter:
    """Case-insensitive match; ``*`` is the wildcard and ``\\`` escapes the next character."""
    return Filter(column, "ilike", pattern)


def escape_pattern(text: str) -> str:
    """Pattern matching ``text`` literally (case-insensitively) under ilike."""
    return text.replace("\\", "\\\\").replace("*", "\\*")


def pattern_segments(pattern: str) -> List[str]:
    """
    Split an ilike pattern into its literal segments.

    Segments are separated by unescaped ``*``; escapes are resolved, so
    ``"a\\*b*c"`` gives ``["a*b", "c"]``. A trailing lone backslash is literal.
    """
    segments: List[str] = []
    current: List[str] = []
    escaped = False
    for ch in pattern:
        if escaped:
            current.append(ch)
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == "*":
            segments.append("".join(current))
            current = []
        else:
            current.append(ch)
    if escaped:
        current.append("\\")
    segments.append("".join(current))
    return segments


def is_null(column: str) -> Filter:
    return Filter(column, "is_null")


def not_null(column: str) -> Filter:
    return Filter(column, "not_null")


def is_empty(column: str) -> Filter:
    """NULL or empty string."""
    return Filter(column, "is_empty")


@dataclass(frozen=True)
class Order:
    column: str
    ascending: bool = True


class ReferenceStore(ABC):
    """
    Abstract reference store.

    Responsibilities:
    - Filtered, ordered, paginated reads
    - Batch upserts with conflict-key semantics
    - Guarded updates that report affected row counts
    - Raising core.exceptions.StoreError subclasses on failure
    """

    @abstractmethod
    async def select(
        self,
        table: str,
        columns: Optional[Sequence[str]] = None,
        filters: Optional[Sequence[Filter]] = None,
        order: Optional[Sequence[Order]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Return matching rows as plain dicts."""
        pass

    @abstractmethod
    async def upsert(
        self,
        table: str,
        rows: Sequence[Dict[str, Any]],
        conflict_key: Sequence[str],
    ) -> int:
        """Insert or merge rows on ``conflict_key``; return rows written."""
        pass

    @abstractmethod
    async def update(
        self,
        table: str,
        patch: Dict[str, Any],
        filters: Sequence[Filter],
    ) -> int:
        """Apply ``patch`` to rows matching ``filters``; return rows affected."""
        pass

    async def select_one(
        self,
        table: str,
        columns: Optional[Sequence[str]] = None,
        filters: Optional[Sequence[Filter]] = None,
        order: Optional[Sequence[Order]] = None,
    ) -> Optional[Dict[str, Any]]:
        rows = await self.select(table, columns, filters, order, limit=1)
        return rows[0] if rows else None

    async def select_all(
        self,
        table: str,
        columns: Optional[Sequence[str]] = None,
        filters: Optional[Sequence[Filter]] = None,
        order: Optional[Sequence[Order]] = None,
        page_size: int = 1000,
    ) -> List[Dict[str, Any]]:
        """Read every matching row, page by page (stores cap single responses)."""
        rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            page = await self.select(table, columns, filters, order, limit=page_size, offset=offset)
            rows.extend(page)
            if len(page) < page_size:
                break
            offset += page_size
        logger.debug(f"Read {len(rows)} rows from {table}")
        return rows

    async def close(self) -> None:
        """Release network resources (no-op by default)."""
        return None
