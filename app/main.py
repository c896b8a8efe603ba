"""
HD Order Sync Service – FastAPI entry point.
"""
from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from app.routers import admin, progress, sync, webhooks
from app.services import runner

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s – %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(
    title="HD Order Sync",
    version="1.0.0",
    description="Shopify order mirror, fulfilment progress and resumable batch sync.",
)

# ── Middleware ────────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(admin.router)
app.include_router(sync.router)
app.include_router(progress.router)
app.include_router(webhooks.router)


# ── Startup / shutdown ────────────────────────────────────────────────────────

_background: set[asyncio.Task] = set()


@app.on_event("startup")
async def _startup() -> None:
    await _create_tables()

    logger.info("Starting auto sync worker …")
    task = asyncio.create_task(runner.auto_sync_worker(), name="auto-sync-worker")
    _background.add(task)
    logger.info("HD order sync service ready.")


@app.on_event("shutdown")
async def _shutdown() -> None:
    active = runner.current()
    if active is not None:
        logger.info("Pausing active %s run before shutdown …", active.kind)
        runner.request_pause()
        try:
            await asyncio.wait_for(asyncio.shield(active.task), timeout=30)
        except asyncio.TimeoutError:
            logger.warning("Active run did not reach a batch boundary within 30 s")
        except Exception as exc:
            logger.warning("Active run ended with error during shutdown: %s", exc)
    runner.events.close()
    for task in _background:
        task.cancel()


# ── Bootstrap helpers ─────────────────────────────────────────────────────────

async def _create_tables() -> None:
    """Create missing tables. Existing tables are left untouched."""
    from app.database import engine
    from app.models import Base

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as exc:
        logger.warning("Table bootstrap skipped (database unreachable?): %s", exc)
