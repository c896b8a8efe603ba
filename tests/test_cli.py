"""
Tests for the sync CLI commands.
"""
from __future__ import annotations

import json
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.services import settings_store
from app.services.importer import upsert_order
from app.services.refresh import RefreshResult, WorkflowState
from app.services.sync_status import SyncStatus, acquire, read_status
from cli import sync_orders
from tests.shopify_fake import make_order


def _result(outcome: str, imported: int = 0) -> RefreshResult:
    state = WorkflowState.BACKGROUND if outcome == "in_progress" else WorkflowState.SUCCESS
    return RefreshResult(outcome=outcome, state=state, run_id="run-1", imported=imported)


@pytest.mark.asyncio
async def test_run_resumes_until_terminal(capsys):
    workflow = MagicMock()
    workflow.incremental_sync = AsyncMock(return_value=_result("in_progress", 5))
    workflow.resume = AsyncMock(
        side_effect=[_result("in_progress", 10), _result("success", 12)]
    )

    with patch.object(sync_orders, "RefreshWorkflow", return_value=workflow):
        code = await sync_orders.cmd_run("import")

    assert code == 0
    assert workflow.resume.await_count == 2
    assert json.loads(capsys.readouterr().out)["imported"] == 12


@pytest.mark.asyncio
async def test_failed_run_exits_non_zero():
    workflow = MagicMock()
    workflow.complete_refresh = AsyncMock(return_value=_result("failed"))

    with patch.object(sync_orders, "RefreshWorkflow", return_value=workflow):
        assert await sync_orders.cmd_run("complete-refresh") == 1


@pytest.mark.asyncio
async def test_verify_exit_codes(session_factory, capsys):
    with patch.object(sync_orders, "AsyncSessionLocal", session_factory):
        assert await sync_orders.cmd_verify() == 1

        async with session_factory() as session:
            await settings_store.set_json(
                session,
                settings_store.EXPECTED_ORDER_COUNTS,
                {"unfulfilled": 2, "partially_fulfilled": 0},
            )
            await upsert_order(session, make_order(1))
            await session.commit()
        assert await sync_orders.cmd_verify() == 2

        async with session_factory() as session:
            await upsert_order(session, make_order(2))
            await session.commit()
        assert await sync_orders.cmd_verify() == 0


@pytest.mark.asyncio
async def test_status_and_force_unlock(session_factory, capsys):
    async with session_factory() as session:
        await acquire(session, "run-a")
        await session.commit()

    with patch.object(sync_orders, "AsyncSessionLocal", session_factory):
        assert await sync_orders.cmd_status() == 0
        status = json.loads(capsys.readouterr().out)
        assert status["status"] == "importing"
        assert status["resumable"] is False

        assert await sync_orders.cmd_unlock(force=True) == 0

    async with session_factory() as session:
        assert (await read_status(session)).status == SyncStatus.ERROR


def test_action_is_required():
    with patch.object(sys, "argv", ["sync_orders"]):
        with pytest.raises(SystemExit) as exc_info:
            sync_orders.main()
    assert exc_info.value.code == 2
