"""
SQLAlchemy async reference store (direct PostgreSQL access).

Load and read data with the same contract as the REST store:
- Tables resolved from the registered ORM metadata
- Upserts via PostgreSQL INSERT ... ON CONFLICT DO UPDATE (idempotency)
- One short transaction per call; no multi-row transactions across calls
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import DateTime, Table, and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
import logging

import models  # noqa: F401  (registers every table on Base.metadata)
from core.exceptions import ConstraintViolationError, NetworkError, StoreError
from core.retry import RetryPolicy
from models.base import Base
from store.base import Filter, Order, ReferenceStore, pattern_segments

logger = logging.getLogger(__name__)


def _like_literal(text: str) -> str:
    """Escape LIKE metacharacters (backslash is the PostgreSQL default escape)."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _sqlstate(error: DBAPIError) -> Optional[str]:
    orig = getattr(error, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


class SqlReferenceStore(ReferenceStore):
    """
    Reference store backed by an async SQLAlchemy session factory.

    Ensures:
    - Filters translate to SQL predicates with REST-store semantics
    - Driver errors surface as StoreError subclasses
    - Transient connection errors are retried by the injected policy
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        retry_policy: Optional[RetryPolicy] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        self.session_maker = session_maker
        self.retry_policy = retry_policy or RetryPolicy()
        self.engine = engine

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    def _table(self, name: str) -> Table:
        table = Base.metadata.tables.get(name)
        if table is None:
            raise StoreError(f"Unknown table {name}", context={"table_name": name})
        return table

    def _clause(self, table: Table, flt: Filter):
        column = table.c[flt.column]
        if flt.op == "eq":
            return column == flt.value
        if flt.op == "neq":
            return column != flt.value
        if flt.op == "gt":
            return column > flt.value
        if flt.op == "gte":
            return column >= flt.value
        if flt.op == "lt":
            return column < flt.value
        if flt.op == "lte":
            return column <= flt.value
        if flt.op == "in":
            return column.in_(list(flt.value))
        if flt.op == "ilike":
            return column.ilike("%".join(_like_literal(part) for part in pattern_segments(str(flt.value))))
        if flt.op == "is_null":
            return column.is_(None)
        if flt.op == "not_null":
            return column.is_not(None)
        if flt.op == "is_empty":
            return or_(column.is_(None), column == "")
        raise ValueError(f"Unsupported filter op: {flt.op}")

    def _coerce(self, table: Table, row: Dict[str, Any]) -> Dict[str, Any]:
        """ISO timestamps from JSON payloads become datetimes for DateTime columns."""
        coerced = {}
        for key, value in row.items():
            if key not in table.c:
                continue
            if isinstance(value, str) and isinstance(table.c[key].type, DateTime):
                value = datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)
            coerced[key] = value
        return coerced

    def _wrap(self, error: SQLAlchemyError, table: str, operation: str) -> StoreError:
        context = {"table_name": table, "operation": operation}
        if isinstance(error, IntegrityError):
            return ConstraintViolationError(
                "Constraint violation", context=context, original_exception=error, code=_sqlstate(error)
            )
        if isinstance(error, OperationalError) or (isinstance(error, DBAPIError) and error.connection_invalidated):
            return NetworkError(
                "Database connection error", context=context, original_exception=error, code=_sqlstate(error)
            )
        code = _sqlstate(error) if isinstance(error, DBAPIError) else None
        return StoreError("Database error", context=context, original_exception=error, code=code)

    async def _run(self, table: str, operation: str, work):
        async def attempt():
            async with self.session_maker() as session:
                try:
                    result = await work(session)
                    await session.commit()
                    return result
                except SQLAlchemyError as e:
                    await session.rollback()
                    raise self._wrap(e, table, operation)

        return await self.retry_policy.run(attempt, label=f"{operation} {table}")

    async def select(
        self,
        table: str,
        columns: Optional[Sequence[str]] = None,
        filters: Optional[Sequence[Filter]] = None,
        order: Optional[Sequence[Order]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        tbl = self._table(table)
        cols = [tbl.c[name] for name in columns] if columns else list(tbl.c)
        stmt = select(*cols)
        if filters:
            stmt = stmt.where(and_(*(self._clause(tbl, f) for f in filters)))
        for item in order or []:
            column = tbl.c[item.column]
            stmt = stmt.order_by(column.asc() if item.ascending else column.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)

        async def work(session):
            result = await session.execute(stmt)
            return [dict(row) for row in result.mappings().all()]

        return await self._run(table, "select", work)

    async def upsert(
        self,
        table: str,
        rows: Sequence[Dict[str, Any]],
        conflict_key: Sequence[str],
    ) -> int:
        if not rows:
            return 0
        tbl = self._table(table)
        values = [self._coerce(tbl, row) for row in rows]
        stmt = insert(tbl).values(values)
        update_columns = {key for row in values for key in row} - set(conflict_key)
        if update_columns:
            stmt = stmt.on_conflict_do_update(
                index_elements=list(conflict_key),
                set_={name: stmt.excluded[name] for name in sorted(update_columns)},
            )
        else:
            # Key-only rows have nothing to merge
            stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_key))

        async def work(session):
            await session.execute(stmt)
            return len(values)

        written = await self._run(table, "upsert", work)
        logger.debug(f"Upserted {written} rows into {table}")
        return written

    async def update(
        self,
        table: str,
        patch: Dict[str, Any],
        filters: Sequence[Filter],
    ) -> int:
        if not filters:
            raise ValueError("Refusing to UPDATE without filters")
        tbl = self._table(table)
        stmt = (
            update(tbl)
            .where(and_(*(self._clause(tbl, f) for f in filters)))
            .values(**self._coerce(tbl, patch))
        )

        async def work(session):
            result = await session.execute(stmt)
            return result.rowcount or 0

        return await self._run(table, "update", work)
