"""
FastAPI dependency utilities: webhook signature verification, session and
client factories.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging

from fastapi import Header, HTTPException, Request, status

from app.config import get_settings
from app.database import AsyncSessionLocal
from app.services.shopify_client import ShopifyClient

logger = logging.getLogger(__name__)
settings = get_settings()


async def verify_shopify_webhook(
    request: Request,
    x_shopify_hmac_sha256: str | None = Header(default=None),
) -> bytes:
    """
    Verify a Shopify webhook via its base64 HMAC-SHA256 of the raw body.
    Returns the raw request body so routers don't need to re-read it.
    """
    body = await request.body()

    if not settings.shopify_webhook_secret:
        logger.warning("No SHOPIFY_WEBHOOK_SECRET configured – accepting all webhooks!")
        return body

    if not x_shopify_hmac_sha256:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Shopify-Hmac-Sha256 header",
        )

    expected = hmac.new(
        key=settings.shopify_webhook_secret.encode(),
        msg=body,
        digestmod=hashlib.sha256,
    ).digest()

    try:
        provided = base64.b64decode(x_shopify_hmac_sha256, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Malformed signature header",
        )

    if not hmac.compare_digest(expected, provided):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Webhook signature mismatch",
        )

    return body


def get_session_factory():
    """Session factory for work that outlives one request (runs, verification)."""
    return AsyncSessionLocal


def get_client_factory():
    return ShopifyClient.from_settings
