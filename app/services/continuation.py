"""
Continuation token: the serialisable resume state of one batch run.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ContinuationToken:
    run_id: str
    target: str
    cursor: Optional[str] = None        # last processed id in the target's total order
    page: int = 0                       # primary batches completed
    fetched: int = 0
    updated: int = 0
    failed: int = 0
    retry_queue: List[str] = field(default_factory=list)
    total: Optional[int] = None
    started_at: str = field(default_factory=_now_iso)
    completed: bool = False
    retry_done: bool = False

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "ContinuationToken":
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise ValueError("Continuation token is not valid JSON") from exc
        if not isinstance(data, dict):
            raise ValueError("Continuation token must be a JSON object")
        try:
            return cls(
                run_id=str(data["run_id"]),
                target=str(data["target"]),
                cursor=data.get("cursor"),
                page=int(data.get("page", 0)),
                fetched=int(data.get("fetched", 0)),
                updated=int(data.get("updated", 0)),
                failed=int(data.get("failed", 0)),
                retry_queue=[str(i) for i in data.get("retry_queue", [])],
                total=data.get("total"),
                started_at=data.get("started_at") or _now_iso(),
                completed=bool(data.get("completed", False)),
                retry_done=bool(data.get("retry_done", False)),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Continuation token is missing fields: {exc}") from exc
