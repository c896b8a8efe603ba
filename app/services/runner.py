"""
In-process run registry and the auto-sync worker.

At most one workflow runs per process; the persisted status flag remains the
cross-process authority. Runs started over HTTP execute as background tasks
so the request returns immediately; progress is read from the status flag
or streamed from ``events``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from app.config import get_settings
from app.database import AsyncSessionLocal
from app.services import settings_store
from app.services.continuation import ContinuationToken
from app.services.events import AuditLog, EventStream
from app.services.refresh import RefreshResult, RefreshWorkflow
from app.services.sync_status import SyncAlreadyRunning

logger = logging.getLogger(__name__)
settings = get_settings()

KINDS = ("import", "complete-refresh", "recover", "resume", "locations")


class RunInProgress(Exception):
    pass


@dataclass
class ActiveRun:
    kind: str
    workflow: RefreshWorkflow
    task: asyncio.Task
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def done(self) -> bool:
        return self.task.done()


# ── Process-wide singletons ──────────────────────────────────────────────────

events = EventStream()
audit = AuditLog(settings.audit_log_max_entries)

_active: Optional[ActiveRun] = None
_last_result: Optional[RefreshResult] = None

WorkflowFactory = Callable[[], RefreshWorkflow]


def _default_workflow() -> RefreshWorkflow:
    return RefreshWorkflow(AsyncSessionLocal, audit=audit, events=events)


def _operation(
    workflow: RefreshWorkflow, kind: str, token: Optional[ContinuationToken]
) -> Awaitable[RefreshResult]:
    if kind == "import":
        return workflow.incremental_sync()
    if kind == "complete-refresh":
        return workflow.complete_refresh()
    if kind == "recover":
        return workflow.recover()
    if kind == "resume":
        return workflow.resume(token)
    if kind == "locations":
        return workflow.sync_locations()
    raise ValueError(f"Unknown run kind {kind!r}")


async def _track(coro: Awaitable[RefreshResult]) -> RefreshResult:
    global _last_result
    try:
        result = await coro
    except Exception as exc:
        audit.append(f"Run could not start: {exc}")
        logger.warning("Sync run did not start: %s", exc)
        raise
    _last_result = result
    return result


def start(
    kind: str,
    token: Optional[ContinuationToken] = None,
    workflow_factory: WorkflowFactory = _default_workflow,
) -> ActiveRun:
    """Start *kind* as a background task. Raises RunInProgress if one is active."""
    global _active
    if kind not in KINDS:
        raise ValueError(f"Unknown run kind {kind!r}")
    if _active is not None and not _active.done:
        raise RunInProgress(f"A {_active.kind} run is already in progress")
    workflow = workflow_factory()
    task = asyncio.create_task(
        _track(_operation(workflow, kind, token)), name=f"sync-{kind}"
    )
    task.add_done_callback(_log_task_exit)
    _active = ActiveRun(kind=kind, workflow=workflow, task=task)
    logger.info("Started %s run", kind)
    return _active


def _log_task_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        logger.warning("Sync task %s was cancelled", task.get_name())
    elif task.exception() is not None:
        logger.error("Sync task %s raised: %s", task.get_name(), task.exception())


def current() -> Optional[ActiveRun]:
    return _active if _active is not None and not _active.done else None


def last_result() -> Optional[RefreshResult]:
    return _last_result


def request_pause() -> bool:
    """Ask the active run to stop at its next batch boundary."""
    run = current()
    if run is None:
        return False
    run.workflow.pipeline.request_pause()
    audit.append(f"Pause requested for {run.kind} run")
    return True


# ── Auto sync ────────────────────────────────────────────────────────────────

async def run_auto_sync_once(
    workflow_factory: WorkflowFactory = _default_workflow,
    session_factory=AsyncSessionLocal,
) -> Optional[RefreshResult]:
    """One auto-sync tick: incremental sync if enabled and nothing else runs."""
    async with session_factory() as session:
        enabled = await settings_store.get_flag(session, settings_store.AUTO_IMPORT_ENABLED)
    if not enabled:
        return None
    if current() is not None:
        logger.info("Auto sync skipped – a run is active in this process")
        return None

    result: Optional[RefreshResult] = None
    try:
        result = await _track(workflow_factory().incremental_sync())
    except SyncAlreadyRunning as exc:
        logger.info("Auto sync skipped – %s", exc)
    finally:
        async with session_factory() as session:
            await settings_store.set_setting(
                session, settings_store.LAST_CRON_RUN,
                datetime.now(timezone.utc).isoformat(),
            )
            await session.commit()
    return result


async def auto_sync_worker() -> None:
    """
    Runs as a long-lived background task.
    Triggers an incremental sync every ``auto_sync_interval_seconds``.
    """
    logger.info("Auto sync worker started (interval %ds)", settings.auto_sync_interval_seconds)
    while True:
        await asyncio.sleep(settings.auto_sync_interval_seconds)
        try:
            await run_auto_sync_once()
        except Exception as exc:
            logger.exception("Unexpected error in auto sync worker: %s", exc)
