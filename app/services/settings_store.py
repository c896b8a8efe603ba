"""
Settings keyspace: string key -> string value rows in ``app_settings``.

Every cross-invocation piece of shared state (status flag, continuation
token, count snapshots, auto-sync toggle, stored credential) lives here.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.crypto import decrypt, encrypt
from app.models import AppSetting

logger = logging.getLogger(__name__)

# ── Keys ─────────────────────────────────────────────────────────────────────

SHOPIFY_TOKEN = "shopify_token"
LAST_SYNC_TIME = "last_sync_time"
IMPORT_STATUS = "shopify_import_status"
AUTO_IMPORT_ENABLED = "auto_import_enabled"
EXPECTED_ORDER_COUNTS = "expected_order_counts"
IMPORTED_ORDER_COUNTS = "imported_order_counts"
CONTINUATION_TOKEN = "sync_continuation_token"
REFRESH_WORKFLOW_STATE = "refresh_workflow_state"
LAST_CRON_RUN = "last_cron_run"


# ── Raw access ───────────────────────────────────────────────────────────────

async def get_setting(session: AsyncSession, key: str) -> Optional[str]:
    row = await session.get(AppSetting, key)
    return row.value if row else None


async def set_setting(session: AsyncSession, key: str, value: Optional[str]) -> None:
    """Last-write-wins upsert of one key."""
    row = await session.get(AppSetting, key)
    now = datetime.now(timezone.utc)
    if row is None:
        session.add(AppSetting(key=key, value=value, updated_at=now))
    else:
        row.value = value
        row.updated_at = now
    await session.flush()


async def delete_setting(session: AsyncSession, key: str) -> None:
    await session.execute(delete(AppSetting).where(AppSetting.key == key))


async def get_json(session: AsyncSession, key: str) -> Any:
    raw = await get_setting(session, key)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Setting %s holds invalid JSON – ignoring", key)
        return None


async def set_json(session: AsyncSession, key: str, value: Any) -> None:
    await set_setting(session, key, json.dumps(value, default=str))


async def get_flag(session: AsyncSession, key: str) -> bool:
    return (await get_setting(session, key) or "").strip().lower() == "true"


async def set_flag(session: AsyncSession, key: str, enabled: bool) -> None:
    await set_setting(session, key, "true" if enabled else "false")


# ── Credential ───────────────────────────────────────────────────────────────

async def store_token(session: AsyncSession, token: str) -> None:
    """Persist the access token Fernet-encrypted. The plaintext is never logged."""
    await set_setting(session, SHOPIFY_TOKEN, encrypt(token.strip()))
    logger.info("Shopify access token updated")


async def load_token(session: AsyncSession) -> Optional[str]:
    """
    Decrypted access token, or the SHOPIFY_ACCESS_TOKEN env fallback.
    Returns None when neither is configured.
    """
    stored = await get_setting(session, SHOPIFY_TOKEN)
    if stored:
        return decrypt(stored)
    fallback = get_settings().shopify_access_token
    return fallback.strip() if fallback else None
