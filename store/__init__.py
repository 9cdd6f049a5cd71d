"""
Reference store clients.

Usage:
    from store import create_store
    store = create_store()            # STORE_BACKEND from settings
    rows = await store.select("ingredients", ["id", "unit"], [in_("id", ids)])
"""

from core.config import settings
from core.exceptions import SetupError
from core.retry import RetryPolicy
from store.base import ReferenceStore, Filter, Order, eq, neq, gt, gte, lt, lte, in_, ilike, is_null, not_null, is_empty
from store.memory_store import InMemoryReferenceStore


def create_store(backend: str = None, retry_policy: RetryPolicy = None) -> ReferenceStore:
    """Build the configured store client with the settings-derived retry policy."""
    backend = (backend or settings.STORE_BACKEND).lower()
    policy = retry_policy or RetryPolicy.from_settings()
    if backend == "rest":
        from store.rest_store import RestReferenceStore
        return RestReferenceStore.from_settings(retry_policy=policy)
    if backend == "sql":
        from core.database import create_engine, create_session_maker
        from store.sql_store import SqlReferenceStore
        engine = create_engine()
        return SqlReferenceStore(create_session_maker(engine), retry_policy=policy, engine=engine)
    if backend == "memory":
        return InMemoryReferenceStore()
    raise SetupError(f"Unknown store backend: {backend}", context={"backend": backend})


__all__ = [
    "ReferenceStore",
    "InMemoryReferenceStore",
    "Filter",
    "Order",
    "create_store",
    "eq",
    "neq",
    "gt",
    "gte",
    "lt",
    "lte",
    "in_",
    "ilike",
    "is_null",
    "not_null",
    "is_empty",
]
