"""
Sync targets that mirror remote orders into the local store.

OrderImportTarget      – one remote order per item; upserts the order and
                         replaces its line items wholesale.
LocationAssignTarget   – one local order per item; fills line-item
                         fulfilment locations from the GraphQL API.

Items of a batch run concurrently, but every local write goes through a
shared asyncio.Lock with its own session, so writes never interleave.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models import Order, OrderLineItem, SyncFailure
from app.services.shopify_client import MalformedResponseError, ShopifyClient

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]

_STATUS_MAP = {
    None: "unfulfilled",
    "": "unfulfilled",
    "unfulfilled": "unfulfilled",
    "unshipped": "unfulfilled",
    "partial": "partially_fulfilled",
    "partially_fulfilled": "partially_fulfilled",
    "fulfilled": "fulfilled",
}


# ── Payload mapping ──────────────────────────────────────────────────────────

def map_order_status(fulfillment_status: Optional[str]) -> str:
    return _STATUS_MAP.get((fulfillment_status or "").lower(), "unfulfilled")


def normalize_sku(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    sku = str(raw).strip()
    return sku or None


def _parse_ts(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None


def _customer(payload: Dict[str, Any]) -> Dict[str, Optional[str]]:
    cust = payload.get("customer") or {}
    addr = payload.get("shipping_address") or {}
    name = " ".join(
        p for p in (cust.get("first_name"), cust.get("last_name")) if p
    ) or addr.get("name")
    return {
        "customer_name": name or None,
        "customer_email": payload.get("email") or cust.get("email"),
        "customer_phone": payload.get("phone") or cust.get("phone") or addr.get("phone"),
    }


def _line_items(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    raw_items = payload.get("line_items") or []
    if not isinstance(raw_items, list):
        raise MalformedResponseError(f"order {payload.get('id')}: line_items is not a list")
    items = []
    for li in raw_items:
        try:
            items.append(
                {
                    "shopify_line_item_id": str(li["id"]),
                    "sku": normalize_sku(li.get("sku")),
                    "title": li.get("title") or li.get("name") or "Unknown Product",
                    "quantity": int(li.get("quantity") or 1),
                    "price": Decimal(str(li.get("price") or "0")),
                    "product_id": str(li["product_id"]) if li.get("product_id") else None,
                    "variant_id": str(li["variant_id"]) if li.get("variant_id") else None,
                }
            )
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            raise MalformedResponseError(
                f"order {payload.get('id')}: bad line item {li!r:.200}"
            ) from exc
    if not items:
        items.append(
            {
                "shopify_line_item_id": f"default-{payload['id']}",
                "sku": None,
                "title": "Default Product",
                "quantity": 1,
                "price": Decimal("0"),
                "product_id": None,
                "variant_id": None,
            }
        )
    return items


def _fingerprint(status: str, items: Iterable[Any]) -> tuple:
    return (
        status,
        tuple(
            sorted(
                (i.shopify_line_item_id, i.sku, i.title, i.quantity, Decimal(i.price))
                for i in items
            )
        ),
    )


# ── Local writes ─────────────────────────────────────────────────────────────

async def upsert_order(session: AsyncSession, payload: Dict[str, Any]) -> bool:
    """
    Insert or refresh one order from a remote payload. Customer fields are
    only written on insert. Returns True if anything changed.
    """
    if not isinstance(payload, dict) or "id" not in payload:
        raise MalformedResponseError("order payload without id")
    shopify_id = str(payload["id"])
    number = payload.get("name") or f"#{payload.get('order_number', shopify_id)}"
    status = map_order_status(payload.get("fulfillment_status"))
    items = _line_items(payload)

    order = (
        await session.execute(
            select(Order)
            .where(Order.shopify_order_id == shopify_id)
            .options(selectinload(Order.line_items))
        )
    ).scalar_one_or_none()

    if order is None:
        order = Order(
            shopify_order_id=shopify_id,
            shopify_order_number=str(number),
            status=status,
            note=payload.get("note"),
            shipping_address=payload.get("shipping_address"),
            items_count=len(items),
            created_at=_parse_ts(payload.get("created_at")),
            line_items=[OrderLineItem(**i) for i in items],
            **_customer(payload),
        )
        session.add(order)
        await session.flush()
        logger.debug("Imported order %s (%s)", shopify_id, number)
        return True

    before = _fingerprint(order.status, order.line_items)
    was_archived = order.archived_at is not None

    # keep locations already assigned to surviving line items
    locations = {
        li.shopify_line_item_id: (li.location_id, li.location_name)
        for li in order.line_items
    }
    new_items = []
    for i in items:
        li = OrderLineItem(**i)
        li.location_id, li.location_name = locations.get(
            li.shopify_line_item_id, (None, None)
        )
        new_items.append(li)

    order.line_items = new_items
    order.status = status
    order.note = payload.get("note")
    order.shipping_address = payload.get("shipping_address")
    order.items_count = len(new_items)
    order.archived_at = None
    order.imported_at = datetime.now(timezone.utc)
    await session.flush()

    changed = was_archived or before != _fingerprint(status, new_items)
    logger.debug("Refreshed order %s (changed=%s)", shopify_id, changed)
    return changed


async def archive_order(session: AsyncSession, shopify_order_id: str) -> bool:
    result = await session.execute(
        update(Order)
        .where(Order.shopify_order_id == shopify_order_id, Order.archived_at.is_(None))
        .values(archived_at=datetime.now(timezone.utc))
    )
    return bool(result.rowcount)


async def archive_missing(session: AsyncSession, open_ids: Iterable[str]) -> int:
    """Archive local orders that are no longer in the open remote listing."""
    open_ids = set(open_ids)
    local = (
        await session.execute(
            select(Order.shopify_order_id).where(Order.archived_at.is_(None))
        )
    ).scalars().all()
    gone = [oid for oid in local if oid not in open_ids]
    if gone:
        await session.execute(
            update(Order)
            .where(Order.shopify_order_id.in_(gone))
            .values(archived_at=datetime.now(timezone.utc))
        )
        logger.info("Archived %d orders no longer open remotely", len(gone))
    return len(gone)


async def delete_all_orders(session: AsyncSession) -> int:
    """
    Destructive: remove every mirrored order and line item. The progress
    ledger and the stock extract are not touched.
    """
    count = (await session.execute(select(func.count()).select_from(Order))).scalar_one()
    await session.execute(delete(OrderLineItem))
    await session.execute(delete(Order))
    logger.warning("Deleted all %d mirrored orders", count)
    return count


async def record_dead_letters(
    session: AsyncSession,
    run_id: str,
    target: str,
    failed_ids: Iterable[str],
    error: str = "failed after retry",
) -> int:
    n = 0
    for item_id in failed_ids:
        session.add(SyncFailure(run_id=run_id, target=target, item_id=item_id, error=error))
        n += 1
    if n:
        await session.flush()
    return n


# ── Targets ──────────────────────────────────────────────────────────────────

class _LockedWrites:
    def __init__(
        self, session_factory: SessionFactory, write_lock: Optional[asyncio.Lock]
    ) -> None:
        self._session_factory = session_factory
        self._lock = write_lock or asyncio.Lock()

    async def _write(self, fn, *args) -> Any:
        async with self._lock:
            async with self._session_factory() as session:
                try:
                    result = await fn(session, *args)
                    await session.commit()
                    return result
                except Exception:
                    await session.rollback()
                    raise


class OrderImportTarget(_LockedWrites):
    """
    Import every open order (or just *order_ids*). After ``item_ids`` the
    full remote listing is kept in ``listed_ids`` for archiving.
    """

    name = "orders"

    def __init__(
        self,
        client: ShopifyClient,
        session_factory: SessionFactory,
        write_lock: Optional[asyncio.Lock] = None,
        order_ids: Optional[List[str]] = None,
    ) -> None:
        super().__init__(session_factory, write_lock)
        self.client = client
        self._order_ids = order_ids
        self.listed_ids: Optional[List[str]] = None

    async def item_ids(self) -> List[str]:
        if self._order_ids is not None:
            return list(self._order_ids)
        self.listed_ids = await self.client.list_open_order_ids()
        return list(self.listed_ids)

    async def process(self, item_id: str) -> bool:
        payload = await self.client.fetch_order(item_id)
        if payload is None:
            logger.info("Order %s no longer exists remotely – archiving", item_id)
            return await self._write(archive_order, item_id)
        return await self._write(upsert_order, payload)


async def _apply_locations(
    session: AsyncSession, order_id: str, locations: Dict[str, tuple]
) -> bool:
    items = (
        await session.execute(
            select(OrderLineItem)
            .join(Order, Order.id == OrderLineItem.order_id)
            .where(Order.shopify_order_id == order_id)
        )
    ).scalars().all()
    changed = False
    for li in items:
        loc = locations.get(li.shopify_line_item_id)
        if loc and (li.location_id, li.location_name) != loc:
            li.location_id, li.location_name = loc
            changed = True
    return changed


class LocationAssignTarget(_LockedWrites):
    """Assign fulfilment locations to line items of local orders."""

    name = "locations"

    def __init__(
        self,
        client: ShopifyClient,
        session_factory: SessionFactory,
        write_lock: Optional[asyncio.Lock] = None,
        only_missing: bool = True,
    ) -> None:
        super().__init__(session_factory, write_lock)
        self.client = client
        self.only_missing = only_missing

    async def item_ids(self) -> List[str]:
        q = (
            select(Order.shopify_order_id)
            .join(OrderLineItem, OrderLineItem.order_id == Order.id)
            .where(Order.archived_at.is_(None))
            .distinct()
        )
        if self.only_missing:
            q = q.where(OrderLineItem.location_id.is_(None))
        async with self._session_factory() as session:
            return list((await session.execute(q)).scalars().all())

    async def process(self, item_id: str) -> bool:
        locations = await self.client.fetch_line_item_locations(item_id)
        if not locations:
            return False
        return await self._write(_apply_locations, item_id, locations)


async def import_single_order(
    client: ShopifyClient, session: AsyncSession, number: str
) -> Optional[str]:
    """Import one order by its number (e.g. '#1001'). Returns its remote id."""
    payload = await client.fetch_order_by_number(number)
    if payload is None:
        return None
    await upsert_order(session, payload)
    return str(payload["id"])
