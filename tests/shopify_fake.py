"""
In-memory Shopify Admin API for tests, served through httpx.MockTransport.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import httpx

from app.services.shopify_client import ShopifyClient

SHOP = "test-shop.myshopify.com"
API = "/admin/api/2023-07"


def make_order(
    order_id: int,
    skus: List[Optional[str]] = ("HD-1",),
    fulfillment_status: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    return {
        "id": order_id,
        "name": f"#{order_id}",
        "email": f"rider{order_id}@example.com",
        "fulfillment_status": fulfillment_status,
        "created_at": "2024-03-01T10:00:00Z",
        "customer": {"first_name": "Rider", "last_name": str(order_id)},
        "line_items": [
            {
                "id": order_id * 100 + n,
                "sku": sku,
                "title": f"Part {sku or 'custom'}",
                "quantity": 1,
                "price": "19.99",
                "product_id": 9000 + n,
                "variant_id": 8000 + n,
            }
            for n, sku in enumerate(skus)
        ],
        **extra,
    }


class FakeShopify:
    """
    In-memory Shopify Admin API. Fault injection:

      flaky[order_id] = n   first n detail fetches answer HTTP 500
      broken              order ids whose detail fetch always answers 500
      order_status        order id -> HTTP status answered for its detail fetch
      missing             order ids listed as open but answering 404
      status_code         answer every request with this status
      counts              override the count endpoint per fulfillment status
    """

    def __init__(self, orders: List[Dict[str, Any]] = (), page_size: int = 250) -> None:
        self.orders: Dict[str, Dict[str, Any]] = {str(o["id"]): o for o in orders}
        self.page_size = page_size
        self.flaky: Dict[str, int] = {}
        self.broken: set = set()
        self.order_status: Dict[str, int] = {}
        self.missing: set = set()
        self.status_code: Optional[int] = None
        self.counts: Dict[str, int] = {}
        self.locations: Dict[str, Dict[str, Tuple[str, str]]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, *orders: Dict[str, Any]) -> None:
        for o in orders:
            self.orders[str(o["id"])] = o

    def _open(self, fulfillment_status: str) -> List[Dict[str, Any]]:
        wanted = None if fulfillment_status == "unshipped" else fulfillment_status
        return [
            o for o in self.orders.values()
            if o.get("fulfillment_status") == wanted and not o.get("cancelled_at")
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code is not None:
            return httpx.Response(self.status_code, json={"errors": "forced"})

        path = request.url.path.removeprefix(API)
        params = {k: v[0] for k, v in parse_qs(urlparse(str(request.url)).query).items()}

        if path == "/orders/count.json":
            fs = params["fulfillment_status"]
            count = self.counts.get(fs, len(self._open(fs)))
            return httpx.Response(200, json={"count": count})

        if path == "/orders.json" and "name" in params:
            hits = [o for o in self.orders.values() if o["name"] == f"#{params['name']}"]
            return httpx.Response(200, json={"orders": hits})

        if path == "/orders.json":
            fs = params["fulfillment_status"]
            limit = int(params.get("limit", self.page_size))
            offset = int(params.get("page_info", 0))
            listing = self._open(fs) + [
                {"id": int(i)} for i in sorted(self.missing) if fs == "unshipped"
            ]
            page = listing[offset:offset + limit]
            headers = {}
            if offset + limit < len(listing):
                nxt = (
                    f"https://{SHOP}{API}/orders.json?limit={limit}"
                    f"&page_info={offset + limit}&fulfillment_status={fs}"
                )
                headers["Link"] = f'<{nxt}>; rel="next"'
            return httpx.Response(
                200, json={"orders": [{"id": o["id"]} for o in page]}, headers=headers
            )

        if path.startswith("/orders/") and path.endswith(".json"):
            order_id = path[len("/orders/"):-len(".json")]
            if order_id in self.broken:
                return httpx.Response(500, text="boom")
            if order_id in self.order_status:
                return httpx.Response(self.order_status[order_id])
            if self.flaky.get(order_id, 0) > 0:
                self.flaky[order_id] -= 1
                return httpx.Response(500, text="transient")
            if order_id in self.missing or order_id not in self.orders:
                return httpx.Response(404, json={"errors": "Not Found"})
            return httpx.Response(200, json={"order": self.orders[order_id]})

        if path == "/graphql.json":
            gid = json.loads(request.content)["variables"]["id"]
            order_id = gid.rsplit("/", 1)[-1]
            return httpx.Response(200, json=self._graphql_order(order_id))

        return httpx.Response(404, json={"errors": "Not Found"})

    def _graphql_order(self, order_id: str) -> Dict[str, Any]:
        locs = self.locations.get(order_id, {})
        edges = [
            {
                "node": {
                    "assignedLocation": {
                        "location": {"id": f"gid://shopify/Location/{loc_id}", "name": name}
                    },
                    "lineItems": {
                        "edges": [
                            {"node": {"lineItem": {"id": f"gid://shopify/LineItem/{li}"}}}
                        ]
                    },
                }
            }
            for li, (loc_id, name) in locs.items()
        ]
        return {
            "data": {
                "order": {
                    "fulfillmentOrders": {"edges": edges},
                    "lineItems": {"edges": []},
                }
            }
        }

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self, token: str = "shpat_test") -> ShopifyClient:
        return ShopifyClient(
            SHOP, token, page_size=self.page_size, transport=self.transport()
        )

    def client_factory(self):
        return lambda token: self.client(token)
