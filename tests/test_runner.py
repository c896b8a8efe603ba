"""
Tests for the in-process run registry and the auto-sync tick.
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.services import runner, settings_store
from app.services.refresh import RefreshResult, WorkflowState
from app.services.sync_status import SyncAlreadyRunning


@pytest.fixture(autouse=True)
def reset_registry():
    runner._active = None
    runner._last_result = None
    yield
    runner._active = None
    runner._last_result = None


def _result(outcome: str = "success") -> RefreshResult:
    return RefreshResult(outcome=outcome, state=WorkflowState.SUCCESS, run_id="run-1")


def _blocking_workflow(release: asyncio.Event) -> MagicMock:
    workflow = MagicMock()

    async def incremental_sync():
        await release.wait()
        return _result()

    workflow.incremental_sync = incremental_sync
    return workflow


@pytest.mark.asyncio
async def test_auto_sync_disabled_does_nothing(session_factory):
    factory = MagicMock()

    result = await runner.run_auto_sync_once(factory, session_factory)

    assert result is None
    factory.assert_not_called()
    async with session_factory() as session:
        assert await settings_store.get_setting(session, settings_store.LAST_CRON_RUN) is None


@pytest.mark.asyncio
async def test_auto_sync_enabled_runs_incremental_sync(session_factory):
    async with session_factory() as session:
        await settings_store.set_flag(session, settings_store.AUTO_IMPORT_ENABLED, True)
        await session.commit()
    workflow = MagicMock()
    workflow.incremental_sync = AsyncMock(return_value=_result())

    result = await runner.run_auto_sync_once(lambda: workflow, session_factory)

    assert result.outcome == "success"
    assert runner.last_result() is result
    async with session_factory() as session:
        assert await settings_store.get_setting(session, settings_store.LAST_CRON_RUN)


@pytest.mark.asyncio
async def test_auto_sync_skips_when_flag_held_elsewhere(session_factory):
    async with session_factory() as session:
        await settings_store.set_flag(session, settings_store.AUTO_IMPORT_ENABLED, True)
        await session.commit()
    workflow = MagicMock()
    workflow.incremental_sync = AsyncMock(side_effect=SyncAlreadyRunning(MagicMock()))

    assert await runner.run_auto_sync_once(lambda: workflow, session_factory) is None
    async with session_factory() as session:
        assert await settings_store.get_setting(session, settings_store.LAST_CRON_RUN)


@pytest.mark.asyncio
async def test_second_start_is_refused_while_active():
    release = asyncio.Event()
    workflow = _blocking_workflow(release)

    active = runner.start("import", workflow_factory=lambda: workflow)
    assert runner.current() is active

    with pytest.raises(runner.RunInProgress):
        runner.start("complete-refresh", workflow_factory=lambda: workflow)

    release.set()
    result = await active.task
    assert result.outcome == "success"
    assert runner.current() is None
    assert runner.last_result() is result


@pytest.mark.asyncio
async def test_request_pause_reaches_active_pipeline():
    assert not runner.request_pause()

    release = asyncio.Event()
    workflow = _blocking_workflow(release)
    active = runner.start("import", workflow_factory=lambda: workflow)

    assert runner.request_pause()
    workflow.pipeline.request_pause.assert_called_once_with()

    release.set()
    await active.task


def test_unknown_kind_rejected():
    with pytest.raises(ValueError):
        runner.start("everything")
