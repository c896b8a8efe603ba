"""
Fulfilment progress endpoints.

GET /orders/report?stage=Picked[&location_id=...]
GET /orders/summary
PUT /progress
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas import OrderReportOut, ProgressRow, ProgressUpdate, ReportItem
from app.services.progress import (
    InvalidStageTransition,
    OrderReport,
    ResolvedItem,
    UnknownStage,
    build_stage_report,
    record_progress,
    stage_summary,
    storage_sku,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["progress"])


def _item_out(i: ResolvedItem) -> ReportItem:
    return ReportItem(
        line_item_id=i.line_item_id,
        sku=storage_sku(i.sku),
        title=i.title,
        quantity=i.quantity,
        price=i.price,
        location_id=i.location_id,
        location_name=i.location_name,
        stage=i.stage.value,
        notes=i.notes,
        quantity_required=i.quantity_required,
        quantity_picked=i.quantity_picked,
        is_partial=i.is_partial,
        hd_orderlinecombo=i.hd_orderlinecombo,
        dealer_po_number=i.dealer_po_number,
        in_stock=i.in_stock,
        stock_quantity=i.stock.quantity if i.stock else None,
        bin_location=i.stock.bin_location if i.stock else None,
        cost=i.stock.cost if i.stock else None,
        is_placeholder=i.is_placeholder,
    )


def _report_out(r: OrderReport) -> OrderReportOut:
    return OrderReportOut(
        order_id=r.order_id,
        order_number=r.order_number,
        customer_name=r.customer_name,
        customer_email=r.customer_email,
        status=r.status,
        created_at=r.created_at,
        is_complete=r.is_complete,
        items=[_item_out(i) for i in r.items],
    )


@router.get("/orders/report", response_model=List[OrderReportOut])
async def stage_report(
    stage: str = Query(..., description="e.g. 'To Pick', 'picked', 'to_order'"),
    location_id: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> List[OrderReportOut]:
    try:
        reports = await build_stage_report(db, stage, location_id=location_id)
    except UnknownStage as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return [_report_out(r) for r in reports]


@router.get("/orders/summary", response_model=Dict[str, Dict[str, int]])
async def summary(db: AsyncSession = Depends(get_db)) -> Dict[str, Dict[str, int]]:
    return await stage_summary(db)


@router.put("/progress", response_model=ProgressRow)
async def update_progress(
    body: ProgressUpdate, db: AsyncSession = Depends(get_db)
) -> ProgressRow:
    try:
        record = await record_progress(
            db,
            order_id=body.order_id,
            sku=body.sku,
            stage=body.stage,
            notes=body.notes,
            quantity_required=body.quantity_required,
            quantity_picked=body.quantity_picked,
            order_number=body.order_number,
            hd_orderlinecombo=body.hd_orderlinecombo,
            dealer_po_number=body.dealer_po_number,
        )
    except (UnknownStage, InvalidStageTransition) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    except IntegrityError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Progress for this item was updated concurrently; retry",
        )
    return ProgressRow.model_validate(record)
