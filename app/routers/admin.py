"""
Admin / operational endpoints.

GET  /admin/health
GET  /admin/token
PUT  /admin/token
GET  /admin/auto-sync
PUT  /admin/auto-sync
GET  /admin/stock/{sku}
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.crypto import mask
from app.database import get_db
from app.schemas import (
    AutoSyncSetting,
    AutoSyncStatus,
    HealthResponse,
    StockMatchOut,
    TokenStatus,
    TokenUpdate,
)
from app.services import settings_store
from app.services.stock import find_stock

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse)
async def health(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    try:
        await db.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        db_status = "error"
    return HealthResponse(status="ok", db=db_status)


@router.get("/token", response_model=TokenStatus)
async def token_status(db: AsyncSession = Depends(get_db)) -> TokenStatus:
    token = await settings_store.load_token(db)
    return TokenStatus(configured=bool(token), hint=mask(token))


@router.put("/token", response_model=TokenStatus)
async def update_token(
    body: TokenUpdate, db: AsyncSession = Depends(get_db)
) -> TokenStatus:
    """Store the access token encrypted. The response never echoes it."""
    try:
        await settings_store.store_token(db, body.token)
    except RuntimeError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        )
    return TokenStatus(configured=True, hint=mask(body.token.strip()))


@router.get("/auto-sync", response_model=AutoSyncStatus)
async def get_auto_sync(db: AsyncSession = Depends(get_db)) -> AutoSyncStatus:
    return AutoSyncStatus(
        enabled=await settings_store.get_flag(db, settings_store.AUTO_IMPORT_ENABLED),
        interval_seconds=settings.auto_sync_interval_seconds,
        last_cron_run=await settings_store.get_setting(db, settings_store.LAST_CRON_RUN),
    )


@router.put("/auto-sync", response_model=AutoSyncStatus)
async def set_auto_sync(
    body: AutoSyncSetting, db: AsyncSession = Depends(get_db)
) -> AutoSyncStatus:
    await settings_store.set_flag(db, settings_store.AUTO_IMPORT_ENABLED, body.enabled)
    logger.info("Auto sync %s", "enabled" if body.enabled else "disabled")
    return AutoSyncStatus(
        enabled=body.enabled,
        interval_seconds=settings.auto_sync_interval_seconds,
        last_cron_run=await settings_store.get_setting(db, settings_store.LAST_CRON_RUN),
    )


@router.get("/stock/{sku}", response_model=StockMatchOut)
async def get_sku_stock(sku: str, db: AsyncSession = Depends(get_db)) -> StockMatchOut:
    match = await find_stock(db, sku)
    best = match.best
    return StockMatchOut(
        sku=match.sku,
        found=match.found,
        exact=match.is_exact,
        multiple=match.multiple,
        part_no=best.part_no if best else None,
        quantity=best.quantity if best else None,
        bin_location=best.bin_location if best else None,
        cost=best.cost if best else None,
        candidates=[c.part_no for c in match.close],
    )
