"""
Progress merge engine.

Combines three independently updated data sets into one fulfilment state per
line item:

  - mirrored order line items (written by the sync pipeline)
  - the progress ledger, keyed by (remote order id, SKU)
  - the local stock extract, joined by SKU value

``merge_progress`` is pure and read-only. The only writer of the ledger is
``record_progress``, which upserts one record per key and never appends
history.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models import Order, ProgressRecord
from app.services.stock import StockInfo, StockMatch, load_stock

logger = logging.getLogger(__name__)


class UnknownStage(ValueError):
    pass


class InvalidStageTransition(ValueError):
    pass


# ── Stages ───────────────────────────────────────────────────────────────────

class Stage(str, Enum):
    TO_PICK = "To Pick"
    PICKING = "Picking"
    PICKED = "Picked"
    TO_ORDER = "To Order"
    ORDERED = "Ordered"
    TO_DISPATCH = "To Dispatch"
    FULFILLED = "Fulfilled"

    @classmethod
    def parse(cls, text: Union[str, "Stage", None]) -> "Stage":
        """
        Normalise a stage string at the boundary. Case, whitespace, '_' and
        '-' are ignored, so 'to_order', 'TO ORDER' and 'To Order' are equal.
        """
        if isinstance(text, Stage):
            return text
        wanted = re.sub(r"[\s_\-]+", "", text or "").lower()
        if wanted:
            for stage in cls:
                if stage.value.replace(" ", "").lower() == wanted:
                    return stage
        raise UnknownStage(f"Unknown progress stage: {text!r}")


DEFAULT_STAGE = Stage.TO_PICK

ALLOWED_TRANSITIONS: Dict[Stage, frozenset] = {
    Stage.TO_PICK: frozenset({Stage.PICKING, Stage.PICKED, Stage.TO_ORDER}),
    Stage.PICKING: frozenset({Stage.PICKED}),
    Stage.PICKED: frozenset({Stage.TO_ORDER, Stage.TO_DISPATCH}),
    Stage.TO_ORDER: frozenset({Stage.ORDERED}),
    Stage.ORDERED: frozenset({Stage.PICKED}),
    Stage.TO_DISPATCH: frozenset({Stage.FULFILLED}),
    Stage.FULFILLED: frozenset(),
}


def check_transition(current: Stage, new: Stage) -> None:
    """
    Raise InvalidStageTransition unless *current* -> *new* is allowed.
    Any stage short of Fulfilled may be cleared back to To Pick.
    """
    if new == current or new in ALLOWED_TRANSITIONS[current]:
        return
    if new == DEFAULT_STAGE and current != Stage.FULFILLED:
        return
    raise InvalidStageTransition(
        f"Cannot move from {current.value!r} to {new.value!r}"
    )


# ── Keys ─────────────────────────────────────────────────────────────────────

class NoSku(Enum):
    NO_SKU = "No SKU"


NO_SKU = NoSku.NO_SKU

SkuKey = Union[str, NoSku]


def sku_key(raw: Optional[str]) -> SkuKey:
    """Ledger key for a line-item SKU. Blank and 'No SKU' map to NO_SKU."""
    if raw is None:
        return NO_SKU
    stripped = raw.strip()
    if not stripped or stripped.lower() == NO_SKU.value.lower():
        return NO_SKU
    return stripped


def storage_sku(key: SkuKey) -> str:
    return key.value if isinstance(key, NoSku) else key


class ProgressKey(NamedTuple):
    order_id: str
    sku: SkuKey


# ── Merge inputs / outputs ───────────────────────────────────────────────────

@dataclass(frozen=True)
class LedgerEntry:
    order_id: str
    sku: SkuKey
    stage: Stage
    notes: Optional[str] = None
    quantity_required: Optional[int] = None
    quantity_picked: int = 0
    is_partial: bool = False
    hd_orderlinecombo: Optional[str] = None
    dealer_po_number: Optional[str] = None

    @property
    def key(self) -> ProgressKey:
        return ProgressKey(self.order_id, self.sku)

    @classmethod
    def from_record(cls, r: ProgressRecord) -> "LedgerEntry":
        return cls(
            order_id=r.shopify_order_id,
            sku=sku_key(r.sku),
            stage=Stage.parse(r.stage),
            notes=r.notes,
            quantity_required=r.quantity_required,
            quantity_picked=r.quantity_picked or 0,
            is_partial=bool(r.is_partial),
            hd_orderlinecombo=r.hd_orderlinecombo,
            dealer_po_number=r.dealer_po_number,
        )


@dataclass(frozen=True)
class ItemInput:
    """One mirrored line item; ``order_id`` is the remote order id."""
    order_id: str
    line_item_id: str
    sku: Optional[str]
    title: str = "Unknown Product"
    quantity: int = 1
    price: Optional[Decimal] = None
    location_id: Optional[str] = None
    location_name: Optional[str] = None


@dataclass
class ResolvedItem:
    order_id: str
    line_item_id: str
    sku: SkuKey
    title: str
    quantity: int
    price: Optional[Decimal]
    location_id: Optional[str]
    location_name: Optional[str]
    stage: Stage
    notes: Optional[str]
    quantity_required: int
    quantity_picked: int
    is_partial: bool
    hd_orderlinecombo: Optional[str] = None
    dealer_po_number: Optional[str] = None
    stock: Optional[StockInfo] = None
    is_placeholder: bool = False

    @property
    def key(self) -> ProgressKey:
        return ProgressKey(self.order_id, self.sku)

    @property
    def in_stock(self) -> bool:
        return self.stock is not None

    @property
    def is_picked(self) -> bool:
        return self.quantity_picked >= self.quantity_required


@dataclass
class MergeResult:
    items: List[ResolvedItem] = field(default_factory=list)

    @property
    def placeholders(self) -> List[ResolvedItem]:
        return [i for i in self.items if i.is_placeholder]

    def by_order(self) -> Dict[str, List[ResolvedItem]]:
        grouped: Dict[str, List[ResolvedItem]] = {}
        for item in self.items:
            grouped.setdefault(item.order_id, []).append(item)
        return grouped


def _resolve(
    item: ItemInput, entry: Optional[LedgerEntry], stock: Optional[StockInfo]
) -> ResolvedItem:
    key = sku_key(item.sku)
    if entry is None:
        stage, notes, picked, required = DEFAULT_STAGE, None, 0, item.quantity
        is_partial = False
        combo = po = None
    else:
        stage, notes, picked = entry.stage, entry.notes, entry.quantity_picked
        required = (
            entry.quantity_required
            if entry.quantity_required is not None
            else item.quantity
        )
        is_partial = entry.is_partial
        combo, po = entry.hd_orderlinecombo, entry.dealer_po_number
    return ResolvedItem(
        order_id=item.order_id,
        line_item_id=item.line_item_id,
        sku=key,
        title=item.title,
        quantity=item.quantity,
        price=item.price,
        location_id=item.location_id,
        location_name=item.location_name,
        stage=stage,
        notes=notes,
        quantity_required=required,
        quantity_picked=picked,
        is_partial=is_partial,
        hd_orderlinecombo=combo,
        dealer_po_number=po,
        stock=stock,
    )


def _placeholder(entry: LedgerEntry) -> ResolvedItem:
    return ResolvedItem(
        order_id=entry.order_id,
        line_item_id=f"no-sku-{entry.order_id}",
        sku=NO_SKU,
        title="No SKU Item",
        quantity=1,
        price=None,
        location_id=None,
        location_name=None,
        stage=entry.stage,
        notes=entry.notes,
        quantity_required=(
            entry.quantity_required if entry.quantity_required is not None else 1
        ),
        quantity_picked=entry.quantity_picked,
        is_partial=entry.is_partial,
        hd_orderlinecombo=entry.hd_orderlinecombo,
        dealer_po_number=entry.dealer_po_number,
        stock=None,
        is_placeholder=True,
    )


def merge_progress(
    items: Iterable[ItemInput],
    ledger: Iterable[LedgerEntry],
    stock: Optional[Mapping[str, Union[StockInfo, StockMatch]]] = None,
    order_ids: Optional[Iterable[str]] = None,
) -> MergeResult:
    """
    Resolve every line item to exactly one stage.

    A NO_SKU ledger entry for an order in the cohort that has no physical
    blank-SKU item yields one placeholder item so the entry stays visible.
    The cohort is *order_ids* when given, otherwise the orders seen in *items*.
    """
    items = list(items)
    by_key: Dict[ProgressKey, LedgerEntry] = {e.key: e for e in ledger}
    stock = stock or {}

    result = MergeResult()
    cohort: Dict[str, None] = dict.fromkeys(order_ids or ())
    has_blank: set = set()

    for item in items:
        cohort.setdefault(item.order_id, None)
        key = ProgressKey(item.order_id, sku_key(item.sku))
        if key.sku is NO_SKU:
            has_blank.add(item.order_id)
            info = None
        else:
            hit = stock.get(key.sku)
            info = hit.best if isinstance(hit, StockMatch) else hit
        result.items.append(_resolve(item, by_key.get(key), info))

    for order_id in cohort:
        if order_id in has_blank:
            continue
        entry = by_key.get(ProgressKey(order_id, NO_SKU))
        if entry is not None:
            result.items.append(_placeholder(entry))
    return result


def is_order_complete(
    items: Iterable[ResolvedItem], stage: Optional[Stage] = None
) -> bool:
    """
    True iff every item has picked >= required and, when *stage* is given,
    at least one item sits in that stage. An order without items is never
    complete.
    """
    items = list(items)
    if not items:
        return False
    if stage is not None and not any(i.stage == stage for i in items):
        return False
    return all(i.is_picked for i in items)


# ── Ledger writes ────────────────────────────────────────────────────────────

async def get_progress(
    session: AsyncSession, order_id: str, sku: Optional[str]
) -> Optional[ProgressRecord]:
    key = sku_key(sku)
    return (
        await session.execute(
            select(ProgressRecord).where(
                ProgressRecord.shopify_order_id == order_id,
                ProgressRecord.sku == storage_sku(key),
            )
        )
    ).scalar_one_or_none()


async def record_progress(
    session: AsyncSession,
    order_id: str,
    sku: Optional[str],
    stage: Union[str, Stage],
    notes: Optional[str] = None,
    quantity_required: Optional[int] = None,
    quantity_picked: Optional[int] = None,
    order_number: Optional[str] = None,
    hd_orderlinecombo: Optional[str] = None,
    dealer_po_number: Optional[str] = None,
) -> ProgressRecord:
    """
    Move one (order, SKU) to *stage*, replacing its ledger record.

    Notes and correlation ids are replaced as given; a quantity left as None
    keeps its previous value.
    """
    new_stage = Stage.parse(stage)
    record = await get_progress(session, order_id, sku)
    current = Stage.parse(record.stage) if record is not None else DEFAULT_STAGE
    check_transition(current, new_stage)

    if record is None:
        record = ProgressRecord(
            shopify_order_id=order_id,
            sku=storage_sku(sku_key(sku)),
            quantity_picked=0,
        )
        session.add(record)

    if quantity_required is not None:
        record.quantity_required = quantity_required
    if quantity_picked is not None:
        record.quantity_picked = quantity_picked
    record.stage = new_stage.value
    record.notes = notes
    record.hd_orderlinecombo = hd_orderlinecombo
    record.dealer_po_number = dealer_po_number
    if order_number is not None:
        record.shopify_order_number = order_number
    required = record.quantity_required
    picked = record.quantity_picked or 0
    record.is_partial = required is not None and 0 < picked < required

    await session.flush()
    logger.info(
        "Progress recorded: order=%s sku=%s %s -> %s",
        order_id, record.sku, current.value, new_stage.value,
    )
    return record


# ── Reports ──────────────────────────────────────────────────────────────────

@dataclass
class OrderReport:
    order_id: str
    order_number: str
    customer_name: Optional[str]
    customer_email: Optional[str]
    status: str
    created_at: Optional[datetime]
    items: List[ResolvedItem]
    is_complete: bool


async def _load_cohort(session: AsyncSession) -> tuple[List[Order], MergeResult]:
    orders = (
        await session.execute(
            select(Order)
            .where(Order.archived_at.is_(None))
            .options(selectinload(Order.line_items))
            .order_by(Order.created_at, Order.shopify_order_number)
        )
    ).scalars().all()
    order_ids = [o.shopify_order_id for o in orders]

    items = [
        ItemInput(
            order_id=o.shopify_order_id,
            line_item_id=li.shopify_line_item_id,
            sku=li.sku,
            title=li.title,
            quantity=li.quantity,
            price=li.price,
            location_id=li.location_id,
            location_name=li.location_name,
        )
        for o in orders
        for li in o.line_items
    ]

    ledger: List[LedgerEntry] = []
    if order_ids:
        records = (
            await session.execute(
                select(ProgressRecord).where(ProgressRecord.shopify_order_id.in_(order_ids))
            )
        ).scalars().all()
        for r in records:
            try:
                ledger.append(LedgerEntry.from_record(r))
            except UnknownStage:
                logger.warning(
                    "Ignoring progress record %s with unknown stage %r", r.id, r.stage
                )

    stock = await load_stock(session, [i.sku for i in items])
    return list(orders), merge_progress(items, ledger, stock, order_ids=order_ids)


async def build_stage_report(
    session: AsyncSession,
    stage: Union[str, Stage],
    location_id: Optional[str] = None,
) -> List[OrderReport]:
    """
    Orders with at least one item in *stage*. When *location_id* is given,
    only items fulfilled from that location count; placeholders always count.
    """
    stage = Stage.parse(stage)
    orders, merged = await _load_cohort(session)
    grouped = merged.by_order()

    reports: List[OrderReport] = []
    for o in orders:
        items = grouped.get(o.shopify_order_id, [])
        if location_id is not None:
            items = [
                i for i in items if i.is_placeholder or i.location_id == location_id
            ]
        if not any(i.stage == stage for i in items):
            continue
        reports.append(
            OrderReport(
                order_id=o.shopify_order_id,
                order_number=o.shopify_order_number,
                customer_name=o.customer_name,
                customer_email=o.customer_email,
                status=o.status,
                created_at=o.created_at,
                items=items,
                is_complete=is_order_complete(items, stage),
            )
        )
    return reports


async def stage_summary(session: AsyncSession) -> Dict[str, Dict[str, int]]:
    """Per-stage item and order counts over all non-archived orders."""
    _, merged = await _load_cohort(session)
    summary = {s.value: {"items": 0, "orders": 0} for s in Stage}
    seen: Dict[Stage, set] = {s: set() for s in Stage}
    for item in merged.items:
        summary[item.stage.value]["items"] += 1
        seen[item.stage].add(item.order_id)
    for s in Stage:
        summary[s.value]["orders"] = len(seen[s])
    return summary
