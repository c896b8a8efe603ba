"""
Resumable, rate-limited batch synchronisation pipeline.

Architecture:
  - A SyncTarget supplies item ids and processes one id at a time.
  - Ids are walked in a stable total order, in fixed-size batches. Every item
    of a batch is dispatched concurrently and the batch is joined before the
    next one starts; a fixed delay separates batches.
  - Per-item failures go to a retry queue. After the last primary batch the
    queue is retried once, sequentially, with a longer delay per item.
  - Pause, batch limits and the time budget are honoured only at batch
    boundaries; the returned ContinuationToken resumes exactly there.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from app.services.continuation import ContinuationToken
from app.services.events import AuditLog, EventStream, ProgressEvent
from app.services.shopify_client import AuthenticationError, RemoteError

logger = logging.getLogger(__name__)


class FatalSyncError(Exception):
    """Aborts the whole run; the status flag ends as 'error'."""


class InvariantViolation(FatalSyncError):
    pass


_FATAL = (FatalSyncError, AuthenticationError)
_EXPECTED = (RemoteError, SQLAlchemyError)


class SyncTarget(Protocol):
    name: str

    async def item_ids(self) -> List[str]:
        ...

    async def process(self, item_id: str) -> bool:
        """Sync one item. True if anything changed; raise on failure."""
        ...


def order_key(item_id: str) -> Tuple[int, Union[int, str]]:
    """Numeric ids sort numerically and before any non-numeric id."""
    return (0, int(item_id)) if item_id.isdigit() else (1, item_id)


@dataclass
class BatchStats:
    requests: int = 0
    successes: int = 0
    failures: int = 0
    retry_queue: List[str] = field(default_factory=list)
    batch_sizes: List[int] = field(default_factory=list)
    retry_attempts: int = 0


@dataclass
class SyncOutcome:
    token: ContinuationToken
    stats: BatchStats
    paused: bool = False
    failed_ids: List[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.token.completed


OnBatch = Callable[[ContinuationToken], Awaitable[None]]


class BatchPipeline:
    def __init__(
        self,
        batch_size: int = 5,
        batch_delay: float = 0.5,
        retry_delay: float = 2.0,
        max_batches: int = 0,
        time_budget: float = 0.0,
        audit: Optional[AuditLog] = None,
        events: Optional[EventStream] = None,
        on_batch: Optional[OnBatch] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.retry_delay = retry_delay
        self.max_batches = max_batches
        self.time_budget = time_budget
        self.audit = audit if audit is not None else AuditLog()
        self.events = events if events is not None else EventStream()
        self.on_batch = on_batch
        self._clock = clock
        self._pause_requested = False

    @classmethod
    def from_settings(cls, **kwargs) -> "BatchPipeline":
        s = get_settings()
        kwargs.setdefault("batch_size", s.sync_batch_size)
        kwargs.setdefault("batch_delay", s.sync_batch_delay_seconds)
        kwargs.setdefault("retry_delay", s.sync_retry_delay_seconds)
        kwargs.setdefault("max_batches", s.sync_max_batches_per_invocation)
        kwargs.setdefault("time_budget", s.sync_invocation_budget_seconds)
        kwargs.setdefault("audit", AuditLog(s.audit_log_max_entries))
        return cls(**kwargs)

    # ── Control ──────────────────────────────────────────────────────────────

    def request_pause(self) -> None:
        """Stop before the next batch. An in-flight batch always completes."""
        self._pause_requested = True

    @property
    def pause_requested(self) -> bool:
        return self._pause_requested

    def _should_stop(self, batches_run: int, started: float) -> Optional[str]:
        if self._pause_requested:
            return "pause requested"
        if self.max_batches and batches_run >= self.max_batches:
            return f"batch limit of {self.max_batches} reached"
        if self.time_budget and self._clock() - started >= self.time_budget:
            return "invocation time budget used"
        return None

    def _emit(self, phase: str, token: ContinuationToken, message: str) -> None:
        self.events.publish(
            ProgressEvent(
                phase=phase,
                processed=token.fetched,
                total=token.total,
                message=message,
                failed=len(token.retry_queue) + token.failed,
            )
        )

    # ── Run ──────────────────────────────────────────────────────────────────

    async def _attempt(
        self, target: SyncTarget, item_id: str
    ) -> Union[bool, BaseException]:
        try:
            return await target.process(item_id)
        except _FATAL as exc:
            return exc
        except _EXPECTED as exc:
            logger.warning("%s item %s failed: %s", target.name, item_id, exc)
            return exc
        except Exception as exc:
            logger.exception("Unexpected error syncing %s item %s", target.name, item_id)
            return exc

    async def run(
        self,
        target: SyncTarget,
        token: Optional[ContinuationToken] = None,
    ) -> SyncOutcome:
        """
        Process *target* from *token* (or from the start). Returns a completed
        outcome, or a paused one whose token resumes at the next batch.
        """
        stats = BatchStats()
        if token is None:
            token = ContinuationToken(run_id=str(uuid.uuid4()), target=target.name)
        elif token.target != target.name:
            raise ValueError(
                f"Token belongs to target {token.target!r}, not {target.name!r}"
            )
        if token.completed:
            return SyncOutcome(token=token, stats=stats)

        try:
            ids = sorted(set(await target.item_ids()), key=order_key)
        except _EXPECTED as exc:
            self.audit.append(f"Could not list {target.name} items: {exc}")
            raise FatalSyncError(f"Could not list {target.name} items: {exc}") from exc

        if token.total is None:
            token.total = len(ids)
        if token.cursor is not None:
            after = order_key(token.cursor)
            ids = [i for i in ids if order_key(i) > after]
        self.audit.append(
            f"{target.name}: {len(ids)} items to process"
            + (f" (resuming after {token.cursor})" if token.cursor else "")
        )

        started = self._clock()
        batches_run = 0

        for offset in range(0, len(ids), self.batch_size):
            reason = self._should_stop(batches_run, started)
            if reason:
                return self._stop(token, stats, reason)

            batch = ids[offset:offset + self.batch_size]
            results = await asyncio.gather(
                *(self._attempt(target, item_id) for item_id in batch)
            )

            fatal: Optional[BaseException] = None
            for item_id, result in zip(batch, results):
                stats.requests += 1
                if isinstance(result, _FATAL):
                    fatal = fatal or result
                elif isinstance(result, BaseException):
                    stats.failures += 1
                    stats.retry_queue.append(item_id)
                    token.retry_queue.append(item_id)
                    self.audit.append(f"Failed {target.name} item {item_id}: {result}")
                else:
                    stats.successes += 1
                    token.fetched += 1
                    if result:
                        token.updated += 1

            token.cursor = batch[-1]
            token.page += 1
            batches_run += 1
            stats.batch_sizes.append(len(batch))

            if fatal is not None:
                self.audit.append(f"Fatal error in batch {token.page}: {fatal}")
                logger.error("%s run %s aborted: %s", target.name, token.run_id, fatal)
                raise fatal

            logger.info(
                "%s batch %d joined: %d items, %d queued for retry",
                target.name, token.page, len(batch), len(token.retry_queue),
            )
            if self.on_batch is not None:
                await self.on_batch(token)
            self._emit(
                "import", token,
                f"Batch {token.page}: {token.fetched} of {token.total} done",
            )
            if offset + self.batch_size < len(ids):
                await asyncio.sleep(self.batch_delay)

        if not token.retry_done:
            if token.retry_queue:
                reason = self._should_stop(batches_run, started)
                if reason:
                    return self._stop(token, stats, reason)
            failed_ids = await self._retry(target, token, stats)
        else:
            failed_ids = []

        token.completed = True
        self.audit.append(
            f"{target.name} finished: {token.fetched} synced, "
            f"{token.updated} updated, {token.failed} failed"
        )
        self._emit("done", token, "Synchronisation complete")
        logger.info(
            "%s run %s complete: fetched=%d updated=%d failed=%d",
            target.name, token.run_id, token.fetched, token.updated, token.failed,
        )
        return SyncOutcome(token=token, stats=stats, failed_ids=failed_ids)

    async def _retry(
        self, target: SyncTarget, token: ContinuationToken, stats: BatchStats
    ) -> List[str]:
        """One sequential pass over the retry queue."""
        failed_ids: List[str] = []
        queue = list(token.retry_queue)
        if queue:
            self.audit.append(f"Retrying {len(queue)} failed items sequentially")
            self._emit("retry", token, f"Retrying {len(queue)} failed items")

        for item_id in queue:
            await asyncio.sleep(self.retry_delay)
            stats.requests += 1
            stats.retry_attempts += 1
            result = await self._attempt(target, item_id)
            if isinstance(result, _FATAL):
                self.audit.append(f"Fatal error during retry: {result}")
                raise result
            token.retry_queue.remove(item_id)
            if isinstance(result, BaseException):
                stats.failures += 1
                failed_ids.append(item_id)
                self.audit.append(f"Retry failed for {target.name} item {item_id}: {result}")
            else:
                stats.successes += 1
                token.fetched += 1
                if result:
                    token.updated += 1

        token.failed = len(failed_ids)
        token.retry_done = True
        if self.on_batch is not None:
            await self.on_batch(token)
        return failed_ids

    def _stop(
        self, token: ContinuationToken, stats: BatchStats, reason: str
    ) -> SyncOutcome:
        self._pause_requested = False
        self.audit.append(f"Stopped after batch {token.page}: {reason}")
        self._emit("paused", token, f"Paused after batch {token.page}: {reason}")
        logger.info("Run %s paused after batch %d (%s)", token.run_id, token.page, reason)
        return SyncOutcome(token=token, stats=stats, paused=True)
