"""
PostgREST reference store client (Supabase REST API) built on httpx.

This module provides:
- Filter encoding to PostgREST query syntax (eq., in.(...), is.null, or=(...))
- Upserts with on_conflict + ``Prefer: resolution=merge-duplicates``
- Guarded PATCH updates returning the affected row count
- Error classification into the core.exceptions store hierarchy, with the
  cf-ray trace id captured for the failure journal
- Every request wrapped in the injected RetryPolicy
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from core.config import settings
from core.exceptions import (
    AuthenticationError,
    ConstraintViolationError,
    NetworkError,
    RateLimitError,
    SetupError,
    StoreError,
)
from core.retry import RetryPolicy
from store.base import Filter, Order, ReferenceStore, pattern_segments

logger = logging.getLogger(__name__)

CONSTRAINT_CODES = {"23505", "23503", "23502", "23514"}
_RESERVED = set(',()":')


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _encode_list_item(value: Any) -> str:
    text = _encode_value(value)
    if isinstance(value, str) and (any(ch in _RESERVED for ch in text) or " " in text):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def _rest_like_literal(text: str) -> str:
    """
    Escape LIKE metacharacters for a PostgREST ilike value.

    PostgREST turns every ``*`` into ``%``, so a literal ``*`` can only be sent
    as the single-character wildcard ``_``.
    """
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped.replace("*", "_")


def encode_filter(flt: Filter) -> Tuple[str, str]:
    """Translate one Filter into a PostgREST (param, value) pair."""
    if flt.op == "ilike":
        return flt.column, "ilike." + "*".join(_rest_like_literal(part) for part in pattern_segments(str(flt.value)))
    if flt.op in ("eq", "neq", "gt", "gte", "lt", "lte"):
        return flt.column, f"{flt.op}.{_encode_value(flt.value)}"
    if flt.op == "in":
        items = ",".join(_encode_list_item(v) for v in flt.value)
        return flt.column, f"in.({items})"
    if flt.op == "is_null":
        return flt.column, "is.null"
    if flt.op == "not_null":
        return flt.column, "not.is.null"
    if flt.op == "is_empty":
        return "or", f"({flt.column}.is.null,{flt.column}.eq.)"
    raise ValueError(f"Unsupported filter op: {flt.op}")


def encode_order(order: Sequence[Order]) -> str:
    return ",".join(f"{o.column}.{'asc' if o.ascending else 'desc'}" for o in order)


class RestReferenceStore(ReferenceStore):
    """
    Reference store backed by a PostgREST endpoint.

    Args:
        base_url: Project URL (``/rest/v1`` is appended when missing)
        api_key: Service role key, sent as ``apikey`` and bearer token
        retry_policy: Policy wrapped around every request
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url or not api_key:
            raise SetupError(
                "REST store requires a base URL and API key",
                context={"base_url": base_url or None, "api_key_set": bool(api_key)},
            )
        rest_url = base_url.rstrip("/")
        if not rest_url.endswith("/rest/v1"):
            rest_url = f"{rest_url}/rest/v1"
        self.base_url = rest_url
        self.retry_policy = retry_policy or RetryPolicy()
        self.client = httpx.AsyncClient(
            base_url=rest_url,
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, retry_policy: Optional[RetryPolicy] = None) -> "RestReferenceStore":
        return cls(
            base_url=settings.SUPABASE_URL,
            api_key=settings.SUPABASE_SERVICE_ROLE_KEY,
            retry_policy=retry_policy or RetryPolicy.from_settings(),
            timeout=settings.STORE_TIMEOUT_SECONDS,
        )

    async def close(self) -> None:
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _raise_for_response(self, response: httpx.Response, table: str, operation: str) -> None:
        if response.status_code < 400:
            return
        ray_id = response.headers.get("cf-ray")
        try:
            body = response.json()
        except (json.JSONDecodeError, ValueError):
            body = {"message": response.text[:500]}
        if not isinstance(body, dict):
            body = {"message": str(body)[:500]}
        code = body.get("code")
        message = body.get("message") or f"HTTP {response.status_code}"
        kwargs = {
            "context": {"table_name": table, "operation": operation},
            "status": response.status_code,
            "code": code,
            "details": body.get("details"),
            "hint": body.get("hint"),
            "ray_id": ray_id,
        }
        status = response.status_code
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                message,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                **kwargs,
            )
        if status in (401, 403):
            raise AuthenticationError(message, **kwargs)
        if status >= 500:
            raise NetworkError(message, **kwargs)
        if status == 409 or code in CONSTRAINT_CODES:
            raise ConstraintViolationError(message, **kwargs)
        raise StoreError(message, **kwargs)

    async def _request(
        self,
        method: str,
        table: str,
        operation: str,
        params: List[Tuple[str, str]],
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
    ) -> httpx.Response:
        async def attempt() -> httpx.Response:
            try:
                response = await self.client.request(
                    method,
                    f"/{table}",
                    params=params,
                    headers=headers,
                    content=json.dumps(body, default=str) if body is not None else None,
                )
            except httpx.TimeoutException as e:
                raise NetworkError(
                    f"Request timeout on {table}",
                    context={"table_name": table, "operation": operation},
                    original_exception=e,
                )
            except httpx.TransportError as e:
                raise NetworkError(
                    f"Network error on {table}: {e}",
                    context={"table_name": table, "operation": operation},
                    original_exception=e,
                )
            self._raise_for_response(response, table, operation)
            return response

        return await self.retry_policy.run(attempt, label=f"{operation} {table}")

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
        params: List[Tuple[str, str]] = [("select", ",".join(columns) if columns else "*")]
        params.extend(encode_filter(f) for f in filters or [])
        if order:
            params.append(("order", encode_order(order)))
        if limit is not None:
            params.append(("limit", str(limit)))
        if offset:
            params.append(("offset", str(offset)))
        response = await self._request("GET", table, "select", params)
        data = response.json()
        return data if isinstance(data, list) else []

    async def upsert(
        self,
        table: str,
        rows: Sequence[Dict[str, Any]],
        conflict_key: Sequence[str],
    ) -> int:
        if not rows:
            return 0
        await self._request(
            "POST",
            table,
            "upsert",
            params=[("on_conflict", ",".join(conflict_key))],
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
            body=list(rows),
        )
        return len(rows)

    async def update(
        self,
        table: str,
        patch: Dict[str, Any],
        filters: Sequence[Filter],
    ) -> int:
        if not filters:
            raise ValueError("Refusing to PATCH without filters")
        params = [encode_filter(f) for f in filters]
        response = await self._request(
            "PATCH",
            table,
            "update",
            params=params,
            headers={"Prefer": "return=representation"},
            body=patch,
        )
        data = response.json()
        return len(data) if isinstance(data, list) else 0
