"""
Structured progress events and the bounded audit log.

The pipeline publishes ``ProgressEvent``s; any number of consumers (the SSE
endpoint, the CLI, tests) iterate over ``EventStream.subscribe()``. A slow
subscriber loses its oldest events rather than stalling the pipeline.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Deque, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    phase: str          # e.g. "import", "retry", "verify", "paused", "done"
    processed: int      # items synced successfully
    total: Optional[int]
    message: str
    failed: int = 0     # queued for retry or given up on
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> dict:
        d = asdict(self)
        d["at"] = self.at.isoformat()
        return d


class EventStream:
    def __init__(self, max_queued: int = 100) -> None:
        self._max_queued = max_queued
        self._subscribers: Set[asyncio.Queue] = set()
        self._closed = False

    def publish(self, event: ProgressEvent) -> None:
        for q in list(self._subscribers):
            if q.full():
                q.get_nowait()
            q.put_nowait(event)

    def close(self) -> None:
        """End every subscription once queued events are drained."""
        self._closed = True
        for q in list(self._subscribers):
            if q.full():
                q.get_nowait()
            q.put_nowait(None)

    async def subscribe(self) -> AsyncIterator[ProgressEvent]:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._max_queued)
        if self._closed:
            return
        self._subscribers.add(q)
        try:
            while True:
                event = await q.get()
                if event is None:
                    return
                yield event
        finally:
            self._subscribers.discard(q)


class AuditLog:
    """Append-only, timestamped, oldest entries dropped past *max_entries*."""

    def __init__(self, max_entries: int = 500) -> None:
        self._entries: Deque[str] = deque(maxlen=max_entries)

    def append(self, message: str) -> None:
        stamp = datetime.now(timezone.utc).strftime("%H:%M:%S")
        self._entries.append(f"[{stamp}] {message}")

    def entries(self) -> List[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
