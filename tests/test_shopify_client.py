"""
Tests for the Shopify Admin API client: pagination, error classification
and GraphQL location parsing.
"""
from __future__ import annotations

import httpx
import pytest

from app.services.shopify_client import (
    AuthenticationError,
    MalformedResponseError,
    RateLimitedError,
    RemoteError,
    ShopifyClient,
    gid_to_id,
)
from tests.shopify_fake import SHOP, FakeShopify, make_order


def _client(handler) -> ShopifyClient:
    return ShopifyClient(SHOP, "shpat_secret_value", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_lists_open_orders_across_link_pages():
    fake = FakeShopify(
        [make_order(i) for i in range(1, 8)]
        + [make_order(i, fulfillment_status="partial") for i in range(20, 23)]
        + [make_order(99, fulfillment_status="fulfilled")],
        page_size=3,
    )

    async with fake.client() as client:
        ids = await client.list_open_order_ids()

    assert ids == [str(i) for i in range(1, 8)] + ["20", "21", "22"]
    listing_calls = [r for r in fake.requests if r.url.path.endswith("/orders.json")]
    assert len(listing_calls) == 4                  # three unshipped pages, one partial
    assert listing_calls[0].headers["X-Shopify-Access-Token"] == "shpat_test"
    assert listing_calls[0].url.params["status"] == "open"


@pytest.mark.asyncio
async def test_counts_open_orders():
    fake = FakeShopify([make_order(1), make_order(2, fulfillment_status="partial")])

    async with fake.client() as client:
        assert await client.count_open_orders("unshipped") == 1
        assert await client.count_open_orders("partial") == 1


@pytest.mark.asyncio
async def test_fetch_missing_order_returns_none(fake_shopify):
    async with fake_shopify.client() as client:
        assert await client.fetch_order("424242") is None
        assert (await client.fetch_order("1001"))["name"] == "#1001"


@pytest.mark.asyncio
async def test_fetch_by_number_strips_hash(fake_shopify):
    async with fake_shopify.client() as client:
        order = await client.fetch_order_by_number("#1002")
        none = await client.fetch_order_by_number("5555")

    assert order["id"] == 1002
    assert none is None
    assert fake_shopify.requests[0].url.params["name"] == "1002"


@pytest.mark.asyncio
async def test_429_raises_rate_limited_with_retry_after():
    def handler(request):
        return httpx.Response(429, headers={"Retry-After": "2.0"})

    async with _client(handler) as client:
        with pytest.raises(RateLimitedError) as exc_info:
            await client.fetch_order("1")

    assert exc_info.value.retry_after == 2.0
    assert isinstance(exc_info.value, RemoteError)


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_rejected_token_is_authentication_error(status):
    async with _client(lambda r: httpx.Response(status)) as client:
        with pytest.raises(AuthenticationError) as exc_info:
            await client.count_open_orders("unshipped")

    assert "shpat_secret_value" not in str(exc_info.value)


@pytest.mark.asyncio
async def test_server_error_is_remote_error():
    async with _client(lambda r: httpx.Response(502, text="bad gateway")) as client:
        with pytest.raises(RemoteError):
            await client.fetch_order("1")


@pytest.mark.asyncio
async def test_transport_failure_is_remote_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(RemoteError):
            await client.list_open_order_ids()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>maintenance</html>"),
        httpx.Response(200, json={"orders": "nope"}),
        httpx.Response(200, json={"something": []}),
    ],
)
async def test_malformed_listing(response):
    async with _client(lambda r: response) as client:
        with pytest.raises(MalformedResponseError):
            await client.list_open_order_ids()


@pytest.mark.asyncio
async def test_non_integer_count_is_malformed():
    async with _client(lambda r: httpx.Response(200, json={"count": "12"})) as client:
        with pytest.raises(MalformedResponseError):
            await client.count_open_orders("partial")


@pytest.mark.asyncio
async def test_client_requires_context_manager():
    with pytest.raises(RuntimeError):
        await _client(lambda r: httpx.Response(200)).fetch_order("1")


def test_repr_hides_token():
    assert "shpat_secret_value" not in repr(_client(lambda r: httpx.Response(200)))


# ── GraphQL ──────────────────────────────────────────────────────────────────

def _graphql(order):
    return lambda r: httpx.Response(200, json={"data": {"order": order}})


@pytest.mark.asyncio
async def test_assigned_location_wins_over_inventory_level():
    order = {
        "fulfillmentOrders": {
            "edges": [
                {
                    "node": {
                        "assignedLocation": {
                            "location": {"id": "gid://shopify/Location/11", "name": "Main"}
                        },
                        "lineItems": {
                            "edges": [{"node": {"lineItem": {"id": "gid://shopify/LineItem/1"}}}]
                        },
                    }
                }
            ]
        },
        "lineItems": {
            "edges": [
                {
                    "node": {
                        "id": "gid://shopify/LineItem/1",
                        "variant": {"inventoryItem": {"inventoryLevels": {"edges": [
                            {"node": {"location": {"id": "gid://shopify/Location/22",
                                                   "name": "Overflow"}}}
                        ]}}},
                    }
                },
                {
                    "node": {
                        "id": "gid://shopify/LineItem/2",
                        "variant": {"inventoryItem": {"inventoryLevels": {"edges": [
                            {"node": {"location": {"id": "gid://shopify/Location/22",
                                                   "name": "Overflow"}}}
                        ]}}},
                    }
                },
                {"node": {"id": "gid://shopify/LineItem/3", "variant": None}},
            ]
        },
    }

    async with _client(_graphql(order)) as client:
        locations = await client.fetch_line_item_locations("1001")

    assert locations == {"1": ("11", "Main"), "2": ("22", "Overflow")}


@pytest.mark.asyncio
async def test_missing_order_has_no_locations():
    async with _client(_graphql(None)) as client:
        assert await client.fetch_line_item_locations("1") == {}


@pytest.mark.asyncio
async def test_throttled_graphql_is_rate_limited():
    body = {"errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]}
    async with _client(lambda r: httpx.Response(200, json=body)) as client:
        with pytest.raises(RateLimitedError):
            await client.fetch_line_item_locations("1")


@pytest.mark.asyncio
async def test_other_graphql_errors_are_malformed():
    body = {"errors": [{"message": "Field 'x' doesn't exist"}]}
    async with _client(lambda r: httpx.Response(200, json=body)) as client:
        with pytest.raises(MalformedResponseError):
            await client.fetch_line_item_locations("1")


def test_gid_to_id():
    assert gid_to_id("gid://shopify/LineItem/123") == "123"
    assert gid_to_id(None) is None
