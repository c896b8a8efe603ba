"""
Persisted "is a sync running" flag.

Single source of truth, stored as JSON under ``shopify_import_status`` so any
process can poll it:

    {"status": "importing", "run_id": "...", "holder": "...",
     "updated_at": "...", "message": "..."}

Rules:
  - A run must ``acquire`` the flag before its first batch. Every invocation
    acquires under its own ``holder`` id.
  - ``importing`` means some invocation is executing now; nobody else may
    acquire it, not even an invocation of the same run.
  - ``background`` means the run is parked with a continuation token. Only
    the same run may acquire it, which moves it back to ``importing``.
  - Within one invocation the status only moves forward:
    importing -> background -> idle | error.
  - A non-terminal record whose ``updated_at`` is older than the staleness
    timeout reads as ``error``; ``unlock_stale`` makes that explicit.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models import AppSetting
from app.services.settings_store import IMPORT_STATUS, set_json

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    IDLE = "idle"
    IMPORTING = "importing"
    BACKGROUND = "background"
    ERROR = "error"


TERMINAL = frozenset({SyncStatus.IDLE, SyncStatus.ERROR})

_RANK = {
    SyncStatus.IMPORTING: 0,
    SyncStatus.BACKGROUND: 1,
    SyncStatus.IDLE: 2,
    SyncStatus.ERROR: 2,
}


@dataclass(frozen=True)
class StatusRecord:
    status: SyncStatus
    run_id: Optional[str]
    updated_at: datetime
    message: str = ""
    stale: bool = False
    holder: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.status not in TERMINAL

    def as_dict(self) -> dict:
        return {
            "status": self.status.value,
            "run_id": self.run_id,
            "holder": self.holder,
            "updated_at": self.updated_at.isoformat(),
            "message": self.message,
        }


class SyncAlreadyRunning(Exception):
    def __init__(self, record: StatusRecord) -> None:
        super().__init__(
            f"Sync {record.run_id} is already {record.status.value} "
            f"(last update {record.updated_at.isoformat()})"
        )
        self.record = record


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _stale_after(stale_after: Optional[float]) -> timedelta:
    if stale_after is None:
        stale_after = get_settings().sync_status_stale_after_seconds
    return timedelta(seconds=stale_after)


async def _load(session: AsyncSession) -> StatusRecord:
    row = (
        await session.execute(
            select(AppSetting).where(AppSetting.key == IMPORT_STATUS).with_for_update()
        )
    ).scalar_one_or_none()
    if row is None or not row.value:
        return StatusRecord(SyncStatus.IDLE, None, datetime.fromtimestamp(0, timezone.utc))

    try:
        data = json.loads(row.value)
    except ValueError:
        data = row.value
    if isinstance(data, str):
        # bare status string without run metadata
        data = {"status": data}
    try:
        status = SyncStatus(str(data.get("status", "idle")).lower())
    except ValueError:
        logger.warning("Unknown sync status %r – treating as error", data.get("status"))
        status = SyncStatus.ERROR
    raw_ts = data.get("updated_at")
    try:
        updated_at = _aware(datetime.fromisoformat(raw_ts)) if raw_ts else _aware(row.updated_at)
    except ValueError:
        updated_at = _aware(row.updated_at)
    return StatusRecord(
        status, data.get("run_id"), updated_at, data.get("message") or "",
        holder=data.get("holder"),
    )


async def _write(session: AsyncSession, record: StatusRecord) -> StatusRecord:
    await set_json(session, IMPORT_STATUS, record.as_dict())
    return record


async def read_status(
    session: AsyncSession,
    stale_after: Optional[float] = None,
    now: Optional[datetime] = None,
) -> StatusRecord:
    record = await _load(session)
    now = now or _utcnow()
    if record.running and now - record.updated_at > _stale_after(stale_after):
        return replace(
            record,
            status=SyncStatus.ERROR,
            stale=True,
            message=f"Stale {record.status.value} status (no update since "
                    f"{record.updated_at.isoformat()})",
        )
    return record


async def acquire(
    session: AsyncSession,
    run_id: str,
    status: SyncStatus = SyncStatus.IMPORTING,
    message: str = "",
    holder: Optional[str] = None,
    stale_after: Optional[float] = None,
    now: Optional[datetime] = None,
) -> StatusRecord:
    """
    Take the flag for *run_id* on behalf of the invocation *holder*.

    Succeeds when the flag is terminal or stale, when it is parked in
    ``background`` by the same run (a resume), or when *holder* already
    holds it. Anything else raises SyncAlreadyRunning, including a second
    invocation of the same run while the first is still importing.
    """
    now = now or _utcnow()
    current = await read_status(session, stale_after=stale_after, now=now)
    if current.stale:
        logger.warning("Taking over stale sync flag from run %s", current.run_id)
    elif current.running:
        resuming = current.status == SyncStatus.BACKGROUND and current.run_id == run_id
        same_holder = current.run_id == run_id and current.holder == holder
        if not (resuming or same_holder):
            raise SyncAlreadyRunning(current)
    logger.info("Sync flag acquired by %s (%s)", run_id, status.value)
    return await _write(session, StatusRecord(status, run_id, now, message, holder=holder))


async def set_status(
    session: AsyncSession,
    run_id: str,
    status: SyncStatus,
    message: str = "",
    holder: Optional[str] = None,
    now: Optional[datetime] = None,
) -> StatusRecord:
    """
    Move the flag for *run_id*. A lower-ranked status for the same run is
    ignored. A flag held live by another run, or importing under another
    holder of the same run, raises SyncAlreadyRunning.
    """
    now = now or _utcnow()
    current = await read_status(session, now=now)
    if current.run_id == run_id:
        if (
            current.status == SyncStatus.IMPORTING
            and holder is not None
            and current.holder not in (None, holder)
        ):
            raise SyncAlreadyRunning(current)
        if _RANK[status] < _RANK[current.status]:
            logger.debug(
                "Ignoring status regression %s -> %s for run %s",
                current.status.value, status.value, run_id,
            )
            return current
    elif current.running:
        raise SyncAlreadyRunning(current)
    if holder is None and current.run_id == run_id:
        holder = current.holder
    return await _write(session, StatusRecord(status, run_id, now, message, holder=holder))


async def heartbeat(
    session: AsyncSession, run_id: str, message: Optional[str] = None,
    holder: Optional[str] = None, now: Optional[datetime] = None,
) -> bool:
    """Refresh ``updated_at`` if *run_id* (and *holder*) still holds a running flag."""
    current = await _load(session)
    if current.run_id != run_id or not current.running:
        return False
    if holder is not None and current.holder not in (None, holder):
        return False
    await _write(
        session,
        replace(
            current,
            updated_at=now or _utcnow(),
            message=current.message if message is None else message,
        ),
    )
    return True


async def unlock_stale(
    session: AsyncSession,
    stale_after: Optional[float] = None,
    force: bool = False,
    now: Optional[datetime] = None,
) -> bool:
    """
    Reset a stale running flag to ``error``. With *force* any running flag is
    reset. Returns True when the flag was changed.
    """
    now = now or _utcnow()
    raw = await _load(session)
    if not raw.running:
        return False
    current = await read_status(session, stale_after=stale_after, now=now)
    if not (current.stale or force):
        return False
    logger.warning("Unlocking sync flag held by run %s", raw.run_id)
    await _write(
        session,
        StatusRecord(
            SyncStatus.ERROR, raw.run_id, now,
            f"Unlocked {raw.status.value} status (last update {raw.updated_at.isoformat()})",
        ),
    )
    return True
