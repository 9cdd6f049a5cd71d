"""
Unit tests for the PostgREST reference store client
"""

import json

import httpx
import pytest
from unittest.mock import call

from core.exceptions import (
    AuthenticationError,
    ConstraintViolationError,
    NetworkError,
    RateLimitError,
    SetupError,
    StoreError,
)
from core.retry import RetryPolicy
from store.base import Order, eq, escape_pattern, gt, ilike, in_, is_empty, is_null, not_null
from store.rest_store import RestReferenceStore, encode_filter


class RecordingHandler:
    """MockTransport handler that records requests and replays canned responses"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)


def make_store(handler, retry_policy):
    return RestReferenceStore(
        "https://example.supabase.co",
        "service-key",
        retry_policy=retry_policy,
        transport=httpx.MockTransport(handler),
    )


class TestEncodeFilter:
    """Test PostgREST filter encoding"""

    def test_comparisons(self):
        assert encode_filter(eq("source", "dsld")) == ("source", "eq.dsld")
        assert encode_filter(eq("is_on_market", True)) == ("is_on_market", "eq.true")
        assert encode_filter(gt("dsld_label_id", 100)) == ("dsld_label_id", "gt.100")
        assert encode_filter(ilike("name", "zinc*")) == ("name", "ilike.zinc*")
        assert encode_filter(ilike("name", escape_pattern("50% Zinc_B*"))) == ("name", "ilike.50\\% Zinc\\_B_")

    def test_in_list_quotes_reserved_characters(self):
        """Values containing spaces or reserved characters are quoted"""
        flt = in_("name_raw", ["Zinc", "Magnesium (as Malate)", 'say "hi"', 42])

        assert encode_filter(flt) == ("name_raw", 'in.(Zinc,"Magnesium (as Malate)","say \\"hi\\"",42)')

    def test_null_and_empty(self):
        assert encode_filter(is_null("ingredient_id")) == ("ingredient_id", "is.null")
        assert encode_filter(not_null("ingredient_id")) == ("ingredient_id", "not.is.null")
        assert encode_filter(is_empty("form_raw")) == ("or", "(form_raw.is.null,form_raw.eq.)")


class TestRestReferenceStore:
    """Test requests and error mapping of the REST store"""

    def test_requires_url_and_key(self):
        with pytest.raises(SetupError):
            RestReferenceStore("https://example.supabase.co", "")

    @pytest.mark.asyncio
    async def test_select_request(self, fast_retry):
        """Test query params, headers and path of a select"""
        handler = RecordingHandler(httpx.Response(200, json=[{"id": 1, "form_raw": None}]))
        store = make_store(handler, fast_retry)

        rows = await store.select(
            "product_ingredients",
            ["id", "form_raw"],
            [eq("source", "dsld"), in_("source_id", ["101", "102"]), is_empty("form_raw")],
            [Order("id")],
            limit=50,
            offset=100,
        )
        await store.close()
        request = handler.requests[0]

        # Assertions
        assert rows == [{"id": 1, "form_raw": None}]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/product_ingredients"
        assert request.url.params.multi_items() == [
            ("select", "id,form_raw"),
            ("source", "eq.dsld"),
            ("source_id", "in.(101,102)"),
            ("or", "(form_raw.is.null,form_raw.eq.)"),
            ("order", "id.asc"),
            ("limit", "50"),
            ("offset", "100"),
        ]
        assert request.headers["apikey"] == "service-key"
        assert request.headers["Authorization"] == "Bearer service-key"

    @pytest.mark.asyncio
    async def test_select_defaults(self, fast_retry):
        handler = RecordingHandler(httpx.Response(200, json=[]))
        store = make_store(handler, fast_retry)

        await store.select("ingredients", order=[Order("id", ascending=False)], limit=1)
        await store.close()

        assert handler.requests[0].url.params.multi_items() == [
            ("select", "*"),
            ("order", "id.desc"),
            ("limit", "1"),
        ]

    @pytest.mark.asyncio
    async def test_upsert_request(self, fast_retry):
        """Test on_conflict, Prefer header and JSON body of an upsert"""
        handler = RecordingHandler(httpx.Response(201))
        store = make_store(handler, fast_retry)
        rows = [{"source": "dsld", "source_id": "101"}, {"source": "dsld", "source_id": "102"}]

        written = await store.upsert("product_scores", rows, ["source", "source_id"])
        await store.close()
        request = handler.requests[0]

        # Assertions
        assert written == 2
        assert request.method == "POST"
        assert request.url.params["on_conflict"] == "source,source_id"
        assert request.headers["Prefer"] == "resolution=merge-duplicates,return=minimal"
        assert json.loads(request.content) == rows

    @pytest.mark.asyncio
    async def test_empty_upsert_sends_nothing(self, fast_retry):
        handler = RecordingHandler(httpx.Response(201))
        store = make_store(handler, fast_retry)

        assert await store.upsert("product_scores", [], ["source", "source_id"]) == 0
        await store.close()

        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_update_returns_affected_rows(self, fast_retry):
        handler = RecordingHandler(httpx.Response(200, json=[{"id": 7, "form_raw": "gluconate"}]))
        store = make_store(handler, fast_retry)

        affected = await store.update("product_ingredients", {"form_raw": "gluconate"},
                                      [eq("id", 7), is_empty("form_raw")])
        await store.close()
        request = handler.requests[0]

        # Assertions
        assert affected == 1
        assert request.method == "PATCH"
        assert request.headers["Prefer"] == "return=representation"
        assert json.loads(request.content) == {"form_raw": "gluconate"}

    @pytest.mark.asyncio
    async def test_update_requires_filters(self, fast_retry):
        store = make_store(RecordingHandler(httpx.Response(200, json=[])), fast_retry)

        with pytest.raises(ValueError):
            await store.update("product_ingredients", {"form_raw": "x"}, [])
        await store.close()

    @pytest.mark.asyncio
    async def test_retries_gateway_errors(self, fast_retry):
        """Test a 503 is retried and the next success returned"""
        handler = RecordingHandler(
            httpx.Response(503, json={"message": "upstream unavailable"}),
            httpx.Response(200, json=[{"id": 1}]),
        )
        store = make_store(handler, fast_retry)

        rows = await store.select("ingredients")
        await store.close()

        # Assertions
        assert rows == [{"id": 1}]
        assert len(handler.requests) == 2
        assert fast_retry.sleep.await_args_list == [call(0.25)]

    @pytest.mark.asyncio
    async def test_exhausted_retries_keep_ray_id(self, fast_retry):
        handler = RecordingHandler(
            httpx.Response(503, json={"message": "upstream unavailable"}, headers={"cf-ray": "ray-9"})
        )
        store = make_store(handler, fast_retry)

        with pytest.raises(NetworkError) as exc_info:
            await store.select("ingredients")
        await store.close()

        # Assertions
        assert len(handler.requests) == 3
        assert exc_info.value.status == 503
        assert exc_info.value.ray_id == "ray-9"
        assert exc_info.value.context["table_name"] == "ingredients"

    @pytest.mark.asyncio
    async def test_constraint_violation_is_not_retried(self, fast_retry):
        handler = RecordingHandler(
            httpx.Response(409, json={"code": "23505", "message": "duplicate key value", "details": "Key exists"})
        )
        store = make_store(handler, fast_retry)

        with pytest.raises(ConstraintViolationError) as exc_info:
            await store.upsert("product_scores", [{"source": "dsld"}], ["source", "source_id"])
        await store.close()

        # Assertions
        assert len(handler.requests) == 1
        assert exc_info.value.code == "23505"
        assert exc_info.value.details == "Key exists"

    @pytest.mark.asyncio
    async def test_authentication_error(self, fast_retry):
        store = make_store(RecordingHandler(httpx.Response(401, json={"message": "Invalid API key"})), fast_retry)

        with pytest.raises(AuthenticationError):
            await store.select("ingredients")
        await store.close()

    @pytest.mark.asyncio
    async def test_bad_request_is_plain_store_error(self, fast_retry):
        handler = RecordingHandler(httpx.Response(400, json={"code": "PGRST100", "message": "bad filter"}))
        store = make_store(handler, fast_retry)

        with pytest.raises(StoreError) as exc_info:
            await store.select("ingredients")
        await store.close()

        assert type(exc_info.value) is StoreError
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_uses_retry_after(self, fast_retry):
        """Retry-After raises the backoff delay"""
        handler = RecordingHandler(httpx.Response(429, text="Too Many Requests", headers={"Retry-After": "2"}))
        store = make_store(handler, fast_retry)

        with pytest.raises(RateLimitError) as exc_info:
            await store.select("ingredients")
        await store.close()

        # Assertions
        assert exc_info.value.retry_after == 2.0
        assert fast_retry.sleep.await_args_list == [call(2.0), call(2.0)]

    @pytest.mark.asyncio
    async def test_transport_error_becomes_network_error(self):
        handler = RecordingHandler(httpx.ConnectError("connection refused"))
        store = make_store(handler, RetryPolicy(max_attempts=1))

        with pytest.raises(NetworkError) as exc_info:
            await store.select("ingredients")
        await store.close()

        assert isinstance(exc_info.value.original_exception, httpx.ConnectError)
