"""
Pydantic schemas for request/response validation.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ── Webhook payloads ─────────────────────────────────────────────────────────

class ShopifyOrderPayload(BaseModel):
    """Shopify orders/* webhook body. Unknown fields are kept for the importer."""
    id: Union[int, str]
    name: Optional[str] = None
    fulfillment_status: Optional[str] = None
    cancelled_at: Optional[str] = None
    closed_at: Optional[str] = None
    line_items: List[Dict[str, Any]] = []

    model_config = ConfigDict(extra="allow")

    @property
    def is_closed(self) -> bool:
        return bool(
            self.cancelled_at
            or self.closed_at
            or (self.fulfillment_status or "").lower() == "fulfilled"
        )


# ── Admin ────────────────────────────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str = "ok"
    db: str = "ok"


class TokenUpdate(BaseModel):
    token: str = Field(..., min_length=1)


class TokenStatus(BaseModel):
    configured: bool
    hint: str = ""


class AutoSyncSetting(BaseModel):
    enabled: bool


class AutoSyncStatus(BaseModel):
    enabled: bool
    interval_seconds: int
    last_cron_run: Optional[str] = None


class StockMatchOut(BaseModel):
    sku: str
    found: bool
    exact: bool
    multiple: bool
    part_no: Optional[str] = None
    quantity: Optional[int] = None
    bin_location: Optional[str] = None
    cost: Optional[Decimal] = None
    candidates: List[str] = []


# ── Sync ─────────────────────────────────────────────────────────────────────

class StatusResponse(BaseModel):
    status: str
    run_id: Optional[str] = None
    updated_at: datetime
    message: str = ""
    stale: bool = False
    active_run: Optional[str] = None
    last_result: Optional[Dict[str, Any]] = None


class RunStarted(BaseModel):
    kind: str
    started_at: datetime


class ResumeRequest(BaseModel):
    continuation_token: Optional[str] = None


class UnlockResponse(BaseModel):
    unlocked: bool


class PauseResponse(BaseModel):
    pause_requested: bool


class VerifyResponse(BaseModel):
    skipped: bool = False
    mismatch: Optional[bool] = None
    expected: Optional[Dict[str, int]] = None
    actual: Optional[Dict[str, int]] = None
    checked_at: Optional[datetime] = None


class SingleImportResult(BaseModel):
    order_number: str
    shopify_order_id: Optional[str] = None
    imported: bool


# ── Progress ─────────────────────────────────────────────────────────────────

class ProgressUpdate(BaseModel):
    order_id: str = Field(..., min_length=1)
    sku: Optional[str] = None
    stage: str
    notes: Optional[str] = None
    quantity_required: Optional[int] = Field(default=None, ge=0)
    quantity_picked: Optional[int] = Field(default=None, ge=0)
    order_number: Optional[str] = None
    hd_orderlinecombo: Optional[str] = None
    dealer_po_number: Optional[str] = None

    @model_validator(mode="after")
    def _picked_within_required(self) -> "ProgressUpdate":
        if (
            self.quantity_required is not None
            and self.quantity_picked is not None
            and self.quantity_picked > self.quantity_required
        ):
            raise ValueError("quantity_picked cannot exceed quantity_required")
        return self


class ProgressRow(BaseModel):
    shopify_order_id: str
    sku: str
    stage: str
    notes: Optional[str] = None
    quantity_required: Optional[int] = None
    quantity_picked: int = 0
    is_partial: bool = False
    hd_orderlinecombo: Optional[str] = None
    dealer_po_number: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ReportItem(BaseModel):
    line_item_id: str
    sku: str
    title: str
    quantity: int
    price: Optional[Decimal] = None
    location_id: Optional[str] = None
    location_name: Optional[str] = None
    stage: str
    notes: Optional[str] = None
    quantity_required: int
    quantity_picked: int
    is_partial: bool
    hd_orderlinecombo: Optional[str] = None
    dealer_po_number: Optional[str] = None
    in_stock: bool
    stock_quantity: Optional[int] = None
    bin_location: Optional[str] = None
    cost: Optional[Decimal] = None
    is_placeholder: bool = False


class OrderReportOut(BaseModel):
    order_id: str
    order_number: str
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None
    is_complete: bool
    items: List[ReportItem]
