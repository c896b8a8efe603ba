"""
Synchronisation endpoints.

POST /sync/import              incremental import of open orders
POST /sync/locations           assign line-item locations
POST /sync/complete-refresh    delete + re-import + verify
POST /sync/recover             re-import without delete (recovery mode only)
POST /sync/pause               stop the active run at the next batch boundary
POST /sync/resume              continue a background run
POST /sync/unlock              reset a stale status flag
GET  /sync/status
GET  /sync/verify
GET  /sync/events              server-sent progress events
POST /sync/orders/{number}     import a single order
"""
from __future__ import annotations

import json
import logging
from typing import Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import get_db
from app.deps import get_client_factory, get_session_factory
from app.schemas import (
    PauseResponse,
    ResumeRequest,
    RunStarted,
    SingleImportResult,
    StatusResponse,
    UnlockResponse,
    VerifyResponse,
)
from app.services import runner, settings_store
from app.services.continuation import ContinuationToken
from app.services.importer import import_single_order
from app.services.reconciliation import ExpectedCounts, VerificationPoller
from app.services.refresh import WorkflowState
from app.services.shopify_client import AuthenticationError, RemoteError
from app.services.sync_status import SyncStatus, read_status, unlock_stale

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])

_pollers: Dict[int, VerificationPoller] = {}


async def _start(
    kind: str, db: AsyncSession, token: Optional[ContinuationToken] = None
) -> RunStarted:
    flag = await read_status(db)
    parked = (
        token is not None
        and flag.status == SyncStatus.BACKGROUND
        and flag.run_id == token.run_id
    )
    if flag.running and not parked:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Sync {flag.run_id} is already {flag.status.value}",
        )
    try:
        run = runner.start(kind, token)
    except runner.RunInProgress as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return RunStarted(kind=run.kind, started_at=run.started_at)


@router.post("/import", response_model=RunStarted, status_code=status.HTTP_202_ACCEPTED)
async def start_import(db: AsyncSession = Depends(get_db)) -> RunStarted:
    return await _start("import", db)


@router.post("/locations", response_model=RunStarted, status_code=status.HTTP_202_ACCEPTED)
async def start_locations(db: AsyncSession = Depends(get_db)) -> RunStarted:
    return await _start("locations", db)


@router.post(
    "/complete-refresh", response_model=RunStarted, status_code=status.HTTP_202_ACCEPTED
)
async def start_complete_refresh(db: AsyncSession = Depends(get_db)) -> RunStarted:
    return await _start("complete-refresh", db)


@router.post("/recover", response_model=RunStarted, status_code=status.HTTP_202_ACCEPTED)
async def start_recover(db: AsyncSession = Depends(get_db)) -> RunStarted:
    state = await settings_store.get_json(db, settings_store.REFRESH_WORKFLOW_STATE) or {}
    if state.get("state") != WorkflowState.RECOVERY_MODE.value:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Recovery is only available after a diverged complete refresh",
        )
    return await _start("recover", db)


@router.post("/resume", response_model=RunStarted, status_code=status.HTTP_202_ACCEPTED)
async def resume(
    body: Optional[ResumeRequest] = Body(default=None),
    db: AsyncSession = Depends(get_db),
) -> RunStarted:
    raw = body.continuation_token if body else None
    raw = raw or await settings_store.get_setting(db, settings_store.CONTINUATION_TOKEN)
    if not raw:
        raise HTTPException(status_code=404, detail="No continuation token to resume from")
    try:
        token = ContinuationToken.from_json(raw)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return await _start("resume", db, token)


@router.post("/pause", response_model=PauseResponse)
async def pause() -> PauseResponse:
    return PauseResponse(pause_requested=runner.request_pause())


@router.post("/unlock", response_model=UnlockResponse)
async def unlock(
    force: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
) -> UnlockResponse:
    if force and runner.current() is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A run is active in this process; pause it instead",
        )
    return UnlockResponse(unlocked=await unlock_stale(db, force=force))


@router.get("/status", response_model=StatusResponse)
async def sync_status(db: AsyncSession = Depends(get_db)) -> StatusResponse:
    flag = await read_status(db)
    active = runner.current()
    last = runner.last_result()
    return StatusResponse(
        status=flag.status.value,
        run_id=flag.run_id,
        updated_at=flag.updated_at,
        message=flag.message,
        stale=flag.stale,
        active_run=active.kind if active else None,
        last_result=last.as_dict() if last else None,
    )


@router.get("/verify", response_model=VerifyResponse)
async def verify_counts(
    db: AsyncSession = Depends(get_db),
    session_factory=Depends(get_session_factory),
) -> VerifyResponse:
    snapshot = await settings_store.get_json(db, settings_store.EXPECTED_ORDER_COUNTS)
    if not snapshot:
        raise HTTPException(status_code=404, detail="No expected counts captured yet")
    expected = ExpectedCounts(
        unfulfilled=int(snapshot.get("unfulfilled", 0)),
        partially_fulfilled=int(snapshot.get("partially_fulfilled", 0)),
    )
    poller = _pollers.get(id(session_factory))
    if poller is None:
        poller = VerificationPoller(
            session_factory, min_interval=get_settings().verify_min_interval_seconds
        )
        _pollers[id(session_factory)] = poller
    result = await poller.poll(expected)
    if result is None:
        return VerifyResponse(skipped=True, expected=expected.as_dict())
    return VerifyResponse(
        skipped=False,
        mismatch=result.mismatch,
        expected=result.expected.as_dict(),
        actual=result.actual.as_dict(),
        checked_at=result.checked_at,
    )


@router.get("/events")
async def stream_events() -> StreamingResponse:
    async def gen():
        async for event in runner.events.subscribe():
            yield f"event: {event.phase}\ndata: {json.dumps(event.as_dict())}\n\n"

    return StreamingResponse(gen(), media_type="text/event-stream")


@router.post("/orders/{number}", response_model=SingleImportResult)
async def import_order(
    number: str,
    db: AsyncSession = Depends(get_db),
    client_factory=Depends(get_client_factory),
) -> SingleImportResult:
    token = await settings_store.load_token(db)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No Shopify access token configured",
        )
    try:
        async with client_factory(token) as client:
            order_id = await import_single_order(client, db, number)
    except AuthenticationError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    except RemoteError as exc:
        logger.warning("Single order import %s failed: %s", number, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    if order_id is None:
        raise HTTPException(status_code=404, detail=f"Order {number!r} not found")
    return SingleImportResult(order_number=number, shopify_order_id=order_id, imported=True)
