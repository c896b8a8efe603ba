"""
Stock lookup: join line-item SKUs to the local inventory extract.

The join is by value (SKU == part number), never by foreign key. An exact
part-number hit always wins; otherwise a "close" hit compares both sides with
case, spaces and hyphens removed, so ``hd-12345 a`` finds ``HD12345A``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import StockRecord

logger = logging.getLogger(__name__)


def normalize_part_no(value: Optional[str]) -> str:
    if not value:
        return ""
    return value.upper().replace(" ", "").replace("-", "")


@dataclass(frozen=True)
class StockInfo:
    part_no: str
    quantity: int
    bin_location: Optional[str] = None
    cost: Optional[Decimal] = None
    description: Optional[str] = None

    @classmethod
    def from_record(cls, r: StockRecord) -> "StockInfo":
        return cls(
            part_no=r.part_no,
            quantity=r.stock_quantity,
            bin_location=r.bin_location,
            cost=r.cost,
            description=r.description,
        )


@dataclass
class StockMatch:
    sku: str
    exact: Optional[StockInfo] = None
    close: List[StockInfo] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.exact is not None or bool(self.close)

    @property
    def is_exact(self) -> bool:
        return self.exact is not None

    @property
    def multiple(self) -> bool:
        """More than one close candidate and no exact hit: ambiguous."""
        return self.exact is None and len(self.close) > 1

    @property
    def best(self) -> Optional[StockInfo]:
        if self.exact is not None:
            return self.exact
        if len(self.close) == 1:
            return self.close[0]
        return None


def lookup_stock(
    skus: Iterable[Optional[str]], records: Iterable[StockInfo]
) -> Dict[str, StockMatch]:
    """Pure join of SKUs against a stock snapshot. Blank SKUs are skipped."""
    by_part: Dict[str, StockInfo] = {}
    by_norm: Dict[str, List[StockInfo]] = {}
    for rec in records:
        by_part[rec.part_no] = rec
        by_norm.setdefault(normalize_part_no(rec.part_no), []).append(rec)

    result: Dict[str, StockMatch] = {}
    for sku in skus:
        if not sku or not sku.strip() or sku in result:
            continue
        exact = by_part.get(sku)
        close = [] if exact else list(by_norm.get(normalize_part_no(sku), []))
        result[sku] = StockMatch(sku=sku, exact=exact, close=close)
    return result


async def load_stock(
    session: AsyncSession, skus: Iterable[Optional[str]]
) -> Dict[str, StockMatch]:
    """Fetch candidate stock rows for *skus* and classify each match."""
    wanted = sorted({s.strip() for s in skus if s and s.strip()})
    if not wanted:
        return {}
    normalized = sorted({normalize_part_no(s) for s in wanted})
    norm_col = func.upper(
        func.replace(func.replace(StockRecord.part_no, " ", ""), "-", "")
    )
    rows = (
        await session.execute(
            select(StockRecord).where(
                or_(StockRecord.part_no.in_(wanted), norm_col.in_(normalized))
            )
        )
    ).scalars().all()
    logger.debug("Stock lookup: %d SKUs -> %d candidate rows", len(wanted), len(rows))
    return lookup_stock(wanted, [StockInfo.from_record(r) for r in rows])


async def find_stock(session: AsyncSession, sku: str) -> StockMatch:
    matches = await load_stock(session, [sku])
    return matches.get(sku.strip(), StockMatch(sku=sku.strip()))
