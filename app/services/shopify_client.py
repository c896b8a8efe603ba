"""
Thin Shopify Admin API client (no SDK dependency).

REST for order listing/detail/counts, GraphQL for line-item locations.
Authenticates with the ``X-Shopify-Access-Token`` header; the token is never
logged or included in error messages.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.config import get_settings

logger = logging.getLogger(__name__)

OPEN_FULFILLMENT_STATUSES = ("unshipped", "partial")

_LOCATIONS_QUERY = """
query orderLocations($id: ID!) {
  order(id: $id) {
    fulfillmentOrders(first: 10) {
      edges {
        node {
          assignedLocation { location { id name } }
          lineItems(first: 100) { edges { node { lineItem { id } } } }
        }
      }
    }
    lineItems(first: 100) {
      edges {
        node {
          id
          variant {
            inventoryItem {
              inventoryLevels(first: 1) { edges { node { location { id name } } } }
            }
          }
        }
      }
    }
  }
}
"""


# ── Errors ───────────────────────────────────────────────────────────────────

class RemoteError(Exception):
    """Transient remote failure (network, 5xx, throttling). Retriable."""


class RateLimitedError(RemoteError):
    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class MalformedResponseError(RemoteError):
    """Payload could not be parsed or has the wrong shape."""


class AuthenticationError(Exception):
    """Credential rejected (401/403). Fatal to a run."""


# ── Helpers ──────────────────────────────────────────────────────────────────

def gid_to_id(gid: Optional[str]) -> Optional[str]:
    """'gid://shopify/LineItem/123' -> '123'."""
    if not gid:
        return None
    return str(gid).rsplit("/", 1)[-1]


def _retry_after(resp: httpx.Response) -> float | None:
    raw = resp.headers.get("Retry-After")
    try:
        return float(raw) if raw else None
    except ValueError:
        return None


# ── Client ───────────────────────────────────────────────────────────────────

class ShopifyClient:
    """
    Use as an async context manager so one connection pool serves a whole run::

        async with ShopifyClient.from_settings(token) as client:
            ids = await client.list_open_order_ids()
    """

    def __init__(
        self,
        shop_domain: str,
        token: str,
        api_version: str = "2023-07",
        timeout: float = 30.0,
        page_size: int = 250,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        domain = shop_domain.strip().removeprefix("https://").rstrip("/")
        self.base_url = f"https://{domain}/admin/api/{api_version}"
        self.page_size = page_size
        self._token = token
        self._timeout = httpx.Timeout(timeout)
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls, token: str, transport: httpx.AsyncBaseTransport | None = None
    ) -> "ShopifyClient":
        s = get_settings()
        return cls(
            shop_domain=s.shopify_shop_domain,
            token=token,
            api_version=s.shopify_api_version,
            timeout=s.remote_timeout_seconds,
            page_size=s.remote_page_size,
            transport=transport,
        )

    def __repr__(self) -> str:
        return f"ShopifyClient({self.base_url!r})"

    async def __aenter__(self) -> "ShopifyClient":
        self._http = httpx.AsyncClient(
            headers={
                "X-Shopify-Access-Token": self._token,
                "Content-Type": "application/json",
            },
            timeout=self._timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # ── Transport ────────────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        allow_404: bool = False,
    ) -> Optional[httpx.Response]:
        if self._http is None:
            raise RuntimeError("ShopifyClient must be used inside 'async with'")
        if not url.startswith("http"):
            url = f"{self.base_url}/{url}"
        try:
            resp = await self._http.request(method, url, params=params, json=json)
        except httpx.TransportError as exc:
            raise RemoteError(f"{method} {url} failed: {exc.__class__.__name__}") from exc

        logger.debug("Shopify %s %s -> %d", method, url, resp.status_code)

        if resp.status_code == 429:
            raise RateLimitedError(
                f"Rate limited on {method} {url}", retry_after=_retry_after(resp)
            )
        if resp.status_code in (401, 403):
            raise AuthenticationError(
                f"Shopify rejected the access token (HTTP {resp.status_code})"
            )
        if resp.status_code == 404 and allow_404:
            return None
        if not resp.is_success:
            logger.error(
                "Shopify API error %s %s status=%d body=%s",
                method, url, resp.status_code, resp.text[:300],
            )
            raise RemoteError(f"{method} {url} returned HTTP {resp.status_code}")
        return resp

    @staticmethod
    def _body(resp: httpx.Response, key: str) -> Any:
        try:
            data = resp.json()
        except ValueError as exc:
            raise MalformedResponseError(
                f"Unparseable JSON from {resp.request.url}"
            ) from exc
        if not isinstance(data, dict) or key not in data:
            raise MalformedResponseError(
                f"Response from {resp.request.url} has no {key!r} field"
            )
        return data[key]

    # ── REST ─────────────────────────────────────────────────────────────────

    async def list_open_order_ids(self) -> List[str]:
        """
        Ids of all open orders that are unshipped or partially shipped,
        following Link-header pagination. Order of first appearance is kept.
        """
        seen: Dict[str, None] = {}
        for fulfillment_status in OPEN_FULFILLMENT_STATUSES:
            url: Optional[str] = "orders.json"
            params: Optional[Dict[str, Any]] = {
                "status": "open",
                "fulfillment_status": fulfillment_status,
                "fields": "id",
                "limit": self.page_size,
            }
            while url:
                resp = await self._request("GET", url, params=params)
                orders = self._body(resp, "orders")
                if not isinstance(orders, list):
                    raise MalformedResponseError("'orders' is not a list")
                for o in orders:
                    if not isinstance(o, dict) or "id" not in o:
                        raise MalformedResponseError("order entry without id")
                    seen.setdefault(str(o["id"]), None)
                url = resp.links.get("next", {}).get("url")
                params = None  # next URL already carries page_info + limit
        return list(seen)

    async def fetch_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        """Full order incl. line items, or None if it no longer exists."""
        resp = await self._request("GET", f"orders/{order_id}.json", allow_404=True)
        if resp is None:
            return None
        order = self._body(resp, "order")
        if not isinstance(order, dict):
            raise MalformedResponseError(f"order {order_id} is not an object")
        return order

    async def fetch_order_by_number(self, number: str) -> Optional[Dict[str, Any]]:
        name = str(number).strip().lstrip("#")
        resp = await self._request(
            "GET", "orders.json", params={"name": name, "status": "any"}
        )
        orders = self._body(resp, "orders")
        if not isinstance(orders, list):
            raise MalformedResponseError("'orders' is not a list")
        return orders[0] if orders else None

    async def count_open_orders(self, fulfillment_status: str) -> int:
        resp = await self._request(
            "GET",
            "orders/count.json",
            params={"status": "open", "fulfillment_status": fulfillment_status},
        )
        count = self._body(resp, "count")
        if not isinstance(count, int):
            raise MalformedResponseError(f"count is not an integer: {count!r}")
        return count

    # ── GraphQL ──────────────────────────────────────────────────────────────

    async def fetch_line_item_locations(
        self, order_id: str
    ) -> Dict[str, Tuple[Optional[str], Optional[str]]]:
        """
        line_item_id -> (location_id, location_name).

        The fulfillment order's assigned location wins; items not covered by
        any fulfillment order fall back to the first inventory level location.
        """
        resp = await self._request(
            "POST",
            "graphql.json",
            json={
                "query": _LOCATIONS_QUERY,
                "variables": {"id": f"gid://shopify/Order/{order_id}"},
            },
        )
        try:
            data = resp.json()
        except ValueError as exc:
            raise MalformedResponseError("Unparseable GraphQL response") from exc

        errors = data.get("errors") if isinstance(data, dict) else None
        if errors:
            codes = {
                (e.get("extensions") or {}).get("code")
                for e in errors
                if isinstance(e, dict)
            }
            if "THROTTLED" in codes:
                raise RateLimitedError("GraphQL query throttled")
            raise MalformedResponseError(f"GraphQL errors: {errors!r:.300}")

        try:
            order = data["data"]["order"]
        except (KeyError, TypeError) as exc:
            raise MalformedResponseError("GraphQL response without data.order") from exc
        if order is None:
            return {}

        result: Dict[str, Tuple[Optional[str], Optional[str]]] = {}
        try:
            for fo in order["fulfillmentOrders"]["edges"]:
                node = fo["node"]
                loc = (node.get("assignedLocation") or {}).get("location") or {}
                for li in node["lineItems"]["edges"]:
                    li_id = gid_to_id(li["node"]["lineItem"]["id"])
                    if li_id and li_id not in result and loc:
                        result[li_id] = (gid_to_id(loc.get("id")), loc.get("name"))

            for edge in order["lineItems"]["edges"]:
                node = edge["node"]
                li_id = gid_to_id(node["id"])
                if not li_id or li_id in result:
                    continue
                levels = (
                    ((node.get("variant") or {}).get("inventoryItem") or {})
                    .get("inventoryLevels", {})
                    .get("edges", [])
                )
                if levels:
                    loc = levels[0]["node"]["location"]
                    result[li_id] = (gid_to_id(loc.get("id")), loc.get("name"))
        except (KeyError, TypeError, IndexError) as exc:
            raise MalformedResponseError("Unexpected GraphQL order shape") from exc
        return result
