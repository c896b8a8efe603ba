"""
Tests for count-based verification.
"""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from app.services import settings_store
from app.services.importer import archive_order, upsert_order
from app.services.reconciliation import (
    ExpectedCounts,
    VerificationPoller,
    count_local,
    fetch_expected_counts,
    verify,
)
from tests.shopify_fake import FakeShopify, make_order


async def _seed(session_factory, unfulfilled: int, partial: int) -> None:
    async with session_factory() as session:
        for i in range(unfulfilled):
            await upsert_order(session, make_order(100 + i))
        for i in range(partial):
            await upsert_order(session, make_order(200 + i, fulfillment_status="partial"))
        await session.commit()


@pytest.mark.asyncio
async def test_expected_counts_from_remote():
    fake = FakeShopify(
        [make_order(1), make_order(2), make_order(3, fulfillment_status="partial")]
    )

    async with fake.client() as client:
        expected = await fetch_expected_counts(client)

    assert expected == ExpectedCounts(unfulfilled=2, partially_fulfilled=1)
    assert expected.expected == 3


@pytest.mark.asyncio
async def test_count_local_excludes_archived(session_factory):
    await _seed(session_factory, 3, 2)
    async with session_factory() as session:
        await archive_order(session, "100")
        await session.commit()
        actual = await count_local(session)

    assert actual.imported == 4
    assert actual.unfulfilled == 2
    assert actual.partially_fulfilled == 2
    assert actual.line_items == 4


@pytest.mark.asyncio
async def test_clean_import_verifies(session_factory):
    await _seed(session_factory, 3, 2)

    result = await verify(session_factory, ExpectedCounts(3, 2))

    assert result is not None
    assert not result.mismatch
    async with session_factory() as session:
        snapshot = await settings_store.get_json(session, settings_store.IMPORTED_ORDER_COUNTS)
    assert snapshot["imported"] == 5


@pytest.mark.asyncio
async def test_truncated_import_is_a_mismatch(session_factory):
    await _seed(session_factory, 3, 0)

    result = await verify(session_factory, ExpectedCounts(3, 2))

    assert result.mismatch
    assert result.as_dict()["expected"]["expected"] == 5
    assert result.as_dict()["actual"]["imported"] == 3


@pytest.mark.asyncio
async def test_local_store_error_skips_verification():
    broken = MagicMock(side_effect=OperationalError("SELECT 1", {}, Exception("db down")))

    assert await verify(broken, ExpectedCounts(1, 0)) is None


@pytest.mark.asyncio
async def test_poller_respects_minimum_interval(session_factory):
    await _seed(session_factory, 1, 0)
    now = [100.0]
    poller = VerificationPoller(session_factory, min_interval=5.0, clock=lambda: now[0])

    first = await poller.poll(ExpectedCounts(1, 0))
    now[0] = 103.0
    cached = await poller.poll(ExpectedCounts(1, 0))
    now[0] = 106.0
    fresh = await poller.poll(ExpectedCounts(1, 0))

    assert poller.checks == 2
    assert cached is first
    assert fresh is not first
