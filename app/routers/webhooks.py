"""
Shopify webhook receivers.

POST /webhooks/shopify/orders    (orders/create, orders/updated, orders/cancelled, ...)
"""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.deps import verify_shopify_webhook
from app.schemas import ShopifyOrderPayload
from app.services.importer import archive_order, upsert_order
from app.services.shopify_client import MalformedResponseError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/shopify", tags=["webhooks"])


@router.post("/orders", status_code=status.HTTP_204_NO_CONTENT)
async def order_event(
    body: bytes = Depends(verify_shopify_webhook),
    db: AsyncSession = Depends(get_db),
) -> None:
    """
    Mirror one order event. Open orders are upserted; fulfilled, cancelled
    or closed orders are archived. Re-delivering the same event is safe.
    """
    try:
        raw = json.loads(body)
        payload = ShopifyOrderPayload.model_validate(raw)
    except (ValueError, ValidationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid order payload: {exc}",
        )

    order_id = str(payload.id)
    if payload.is_closed:
        archived = await archive_order(db, order_id)
        logger.info("Webhook: order %s closed (archived=%s)", order_id, archived)
        return

    try:
        changed = await upsert_order(db, raw)
    except MalformedResponseError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        )
    logger.info("Webhook: order %s upserted (changed=%s)", order_id, changed)
