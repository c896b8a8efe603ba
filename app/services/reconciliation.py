"""
Count-based verification of a sync run.

Expected counts come from the remote count endpoint, captured before any
destructive step. Actual counts come from the local mirror afterwards.
A mismatch is a result, not an exception.
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Order, OrderLineItem
from app.services.settings_store import (
    EXPECTED_ORDER_COUNTS,
    IMPORTED_ORDER_COUNTS,
    set_json,
)
from app.services.shopify_client import ShopifyClient

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


@dataclass(frozen=True)
class ExpectedCounts:
    unfulfilled: int
    partially_fulfilled: int

    @property
    def expected(self) -> int:
        return self.unfulfilled + self.partially_fulfilled

    def as_dict(self) -> dict:
        return {**asdict(self), "expected": self.expected}


@dataclass(frozen=True)
class ActualCounts:
    imported: int
    unfulfilled: int
    partially_fulfilled: int
    line_items: int

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class VerificationResult:
    expected: ExpectedCounts
    actual: ActualCounts
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def mismatch(self) -> bool:
        return self.actual.imported != self.expected.expected

    def as_dict(self) -> dict:
        return {
            "expected": self.expected.as_dict(),
            "actual": self.actual.as_dict(),
            "mismatch": self.mismatch,
            "checked_at": self.checked_at.isoformat(),
        }


async def fetch_expected_counts(client: ShopifyClient) -> ExpectedCounts:
    unfulfilled = await client.count_open_orders("unshipped")
    partial = await client.count_open_orders("partial")
    logger.info("Remote expects %d unfulfilled + %d partial orders", unfulfilled, partial)
    return ExpectedCounts(unfulfilled=unfulfilled, partially_fulfilled=partial)


async def count_local(session: AsyncSession) -> ActualCounts:
    rows = (
        await session.execute(
            select(Order.status, func.count())
            .where(Order.archived_at.is_(None))
            .group_by(Order.status)
        )
    ).all()
    by_status = {status: n for status, n in rows}
    line_items = (
        await session.execute(
            select(func.count())
            .select_from(OrderLineItem)
            .join(Order, Order.id == OrderLineItem.order_id)
            .where(Order.archived_at.is_(None))
        )
    ).scalar_one()
    return ActualCounts(
        imported=sum(by_status.values()),
        unfulfilled=by_status.get("unfulfilled", 0),
        partially_fulfilled=by_status.get("partially_fulfilled", 0),
        line_items=line_items,
    )


async def save_expected(session: AsyncSession, expected: ExpectedCounts) -> None:
    await set_json(
        session,
        EXPECTED_ORDER_COUNTS,
        {**expected.as_dict(), "fetched_at": datetime.now(timezone.utc).isoformat()},
    )


async def verify(
    session_factory: SessionFactory, expected: ExpectedCounts
) -> Optional[VerificationResult]:
    """
    Compare local counts with *expected*. A local store error skips this
    verification pass and returns None.
    """
    try:
        async with session_factory() as session:
            actual = await count_local(session)
            await set_json(session, IMPORTED_ORDER_COUNTS, actual.as_dict())
            await session.commit()
    except SQLAlchemyError as exc:
        logger.warning("Verification skipped – local count failed: %s", exc)
        return None

    result = VerificationResult(expected=expected, actual=actual)
    if result.mismatch:
        logger.warning(
            "Count mismatch: expected %d orders, found %d",
            expected.expected, actual.imported,
        )
    else:
        logger.info("Verification passed: %d orders", actual.imported)
    return result


class VerificationPoller:
    """Verify at most once per *min_interval* seconds; sooner polls get the cached result."""

    def __init__(
        self,
        session_factory: SessionFactory,
        min_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self.min_interval = min_interval
        self._clock = clock
        self._last_at: Optional[float] = None
        self._last: Optional[VerificationResult] = None
        self.checks = 0

    async def poll(self, expected: ExpectedCounts) -> Optional[VerificationResult]:
        now = self._clock()
        if self._last_at is not None and now - self._last_at < self.min_interval:
            return self._last
        self._last_at = now
        self.checks += 1
        self._last = await verify(self._session_factory, expected)
        return self._last
