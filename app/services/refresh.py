"""
Refresh workflow: one state machine for every way the local mirror is synced.

  complete_refresh   expected counts -> delete all -> import -> verify
  incremental_sync   import (no delete) -> archive closed orders -> verify
  resume             continue a paused/background import from its token
  recover            only from RecoveryMode: import again, never delete
  sync_locations     fill line-item locations (no verification)

All state changes go through ``transition``. The persisted status flag is
acquired before the first batch and always ends as idle or error, except
when a run is deliberately left in background with a continuation token.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.services import settings_store
from app.services.continuation import ContinuationToken
from app.services.events import AuditLog, EventStream, ProgressEvent
from app.services.importer import (
    LocationAssignTarget,
    OrderImportTarget,
    archive_missing,
    delete_all_orders,
    record_dead_letters,
)
from app.services.pipeline import BatchPipeline, FatalSyncError, InvariantViolation
from app.services.reconciliation import (
    ExpectedCounts,
    VerificationResult,
    fetch_expected_counts,
    save_expected,
    verify,
)
from app.services.shopify_client import AuthenticationError, RemoteError, ShopifyClient
from app.services.sync_status import SyncStatus, acquire, heartbeat, set_status

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]
ClientFactory = Callable[[str], ShopifyClient]


# ── State machine ────────────────────────────────────────────────────────────

class WorkflowState(str, Enum):
    IDLE = "idle"
    DELETING = "deleting"
    IMPORTING = "importing"
    BACKGROUND = "background"
    VERIFYING = "verifying"
    RECOVERY_MODE = "recovery_mode"
    SUCCESS = "success"
    ERROR = "error"


class WorkflowEvent(str, Enum):
    START_REFRESH = "start_refresh"
    START_SYNC = "start_sync"
    START_RECOVERY = "start_recovery"
    DELETED = "deleted"
    PAUSED = "paused"
    RESUME = "resume"
    IMPORTED = "imported"
    VERIFIED = "verified"
    MISMATCH = "mismatch"
    VERIFY_SKIPPED = "verify_skipped"
    FAILED = "failed"
    RESET = "reset"


class InvalidWorkflowTransition(Exception):
    pass


S, E = WorkflowState, WorkflowEvent
_AT_REST = (S.IDLE, S.SUCCESS, S.ERROR, S.RECOVERY_MODE)

_TRANSITIONS: Dict[tuple, WorkflowState] = {
    **{(s, E.START_REFRESH): S.DELETING for s in _AT_REST},
    **{(s, E.START_SYNC): S.IMPORTING for s in _AT_REST},
    (S.RECOVERY_MODE, E.START_RECOVERY): S.IMPORTING,
    (S.DELETING, E.DELETED): S.IMPORTING,
    (S.IMPORTING, E.PAUSED): S.BACKGROUND,
    (S.BACKGROUND, E.RESUME): S.IMPORTING,
    (S.IMPORTING, E.RESUME): S.IMPORTING,
    (S.ERROR, E.RESUME): S.IMPORTING,
    (S.IMPORTING, E.IMPORTED): S.VERIFYING,
    (S.VERIFYING, E.VERIFIED): S.SUCCESS,
    (S.VERIFYING, E.VERIFY_SKIPPED): S.SUCCESS,
    (S.VERIFYING, E.MISMATCH): S.SUCCESS,
    **{(s, E.RESET): S.IDLE for s in _AT_REST},
}


def transition(
    state: WorkflowState, event: WorkflowEvent, after_delete: bool = False
) -> WorkflowState:
    """
    Next state for *event*. *after_delete* marks a run whose local orders were
    already deleted: a mismatch or failure then leads to RecoveryMode.
    """
    if event == E.FAILED:
        if after_delete and state in (S.IMPORTING, S.BACKGROUND, S.VERIFYING, S.RECOVERY_MODE):
            return S.RECOVERY_MODE
        return S.ERROR
    if event == E.MISMATCH and state == S.VERIFYING and after_delete:
        return S.RECOVERY_MODE
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidWorkflowTransition(
            f"Event {event.value!r} is not valid in state {state.value!r}"
        ) from None


# ── Result ───────────────────────────────────────────────────────────────────

@dataclass
class RefreshResult:
    outcome: str            # success | success_with_mismatch | failed | in_progress
    state: WorkflowState
    run_id: str
    imported: int = 0
    archived: int = 0
    cleaned: int = 0
    failed: int = 0
    continuation_token: Optional[str] = None
    verification: Optional[VerificationResult] = None
    audit_log: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome,
            "state": self.state.value,
            "run_id": self.run_id,
            "imported": self.imported,
            "archived": self.archived,
            "cleaned": self.cleaned,
            "failed": self.failed,
            "continuation_token": self.continuation_token,
            "verification": self.verification.as_dict() if self.verification else None,
            "audit_log": self.audit_log,
            "error": self.error,
        }


_RUN_ERRORS = (FatalSyncError, AuthenticationError, RemoteError, SQLAlchemyError)


# ── Workflow ─────────────────────────────────────────────────────────────────

class RefreshWorkflow:
    def __init__(
        self,
        session_factory: SessionFactory,
        client_factory: ClientFactory = ShopifyClient.from_settings,
        pipeline: Optional[BatchPipeline] = None,
        audit: Optional[AuditLog] = None,
        events: Optional[EventStream] = None,
    ) -> None:
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.audit = audit if audit is not None else AuditLog(
            get_settings().audit_log_max_entries
        )
        self.events = events if events is not None else EventStream()
        if pipeline is None:
            pipeline = BatchPipeline.from_settings(audit=self.audit, events=self.events)
        else:
            pipeline.audit, pipeline.events = self.audit, self.events
        pipeline.on_batch = self._on_batch
        self.pipeline = pipeline

        self.state = WorkflowState.IDLE
        self.run_id: Optional[str] = None
        self.holder: Optional[str] = None
        self.mode: Optional[str] = None
        self.after_delete = False
        self.expected: Optional[ExpectedCounts] = None

    # ── Persistence helpers ──────────────────────────────────────────────────

    async def _load_state(self) -> Dict[str, Any]:
        async with self.session_factory() as session:
            data = await settings_store.get_json(session, settings_store.REFRESH_WORKFLOW_STATE)
        data = data or {}
        try:
            self.state = WorkflowState(data.get("state", "idle"))
        except ValueError:
            self.state = WorkflowState.IDLE
        self.after_delete = bool(data.get("after_delete", False))
        self.mode = data.get("mode")
        exp = data.get("expected")
        self.expected = (
            ExpectedCounts(exp["unfulfilled"], exp["partially_fulfilled"]) if exp else None
        )
        return data

    def _state_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "run_id": self.run_id,
            "mode": self.mode,
            "after_delete": self.after_delete,
            "expected": self.expected.as_dict() if self.expected else None,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

    async def _save(self, session: AsyncSession) -> None:
        await settings_store.set_json(
            session, settings_store.REFRESH_WORKFLOW_STATE, self._state_dict()
        )

    async def _move(self, event: WorkflowEvent, session: Optional[AsyncSession] = None) -> None:
        new = transition(self.state, event, self.after_delete)
        logger.info("Workflow %s --%s--> %s", self.state.value, event.value, new.value)
        self.state = new
        if session is not None:
            await self._save(session)
        else:
            async with self.session_factory() as s:
                await self._save(s)
                await s.commit()

    async def _on_batch(self, token: ContinuationToken) -> None:
        """Heartbeat the status flag and persist the token after each batch."""
        async with self.session_factory() as session:
            await heartbeat(
                session, token.run_id,
                message=f"Batch {token.page}: {token.fetched}/{token.total}",
                holder=self.holder,
            )
            await settings_store.set_setting(
                session, settings_store.CONTINUATION_TOKEN, token.to_json()
            )
            await session.commit()

    async def load_token(self) -> Optional[ContinuationToken]:
        async with self.session_factory() as session:
            raw = await settings_store.get_setting(session, settings_store.CONTINUATION_TOKEN)
        return ContinuationToken.from_json(raw) if raw else None

    async def _credential(self) -> str:
        async with self.session_factory() as session:
            token = await settings_store.load_token(session)
        if not token:
            raise InvariantViolation("No Shopify access token configured")
        return token

    def _publish(self, phase: str, message: str) -> None:
        self.audit.append(message)
        self.events.publish(ProgressEvent(phase=phase, processed=0, total=None, message=message))

    # ── Shared run skeleton ──────────────────────────────────────────────────

    async def _guarded(
        self,
        run_id: str,
        body: Callable[[], Awaitable[RefreshResult]],
        track_state: bool = True,
    ) -> RefreshResult:
        """Run *body* with the flag held; any exit leaves it idle/background/error."""
        settled = False
        try:
            result = await body()
            settled = True
            return result
        except _RUN_ERRORS as exc:
            result = await self._fail(run_id, exc, track_state)
            settled = True
            return result
        finally:
            if not settled:
                logger.error("Run %s ended unexpectedly – marking status error", run_id)
                self.audit.append(f"Run {run_id} ended unexpectedly")
                async with self.session_factory() as session:
                    await set_status(
                        session, run_id, SyncStatus.ERROR, "Run ended unexpectedly",
                        holder=self.holder,
                    )
                    await session.commit()

    async def _start(self, run_id: str, message: str) -> None:
        holder = str(uuid.uuid4())
        async with self.session_factory() as session:
            await acquire(session, run_id, SyncStatus.IMPORTING, message, holder=holder)
            await session.commit()
        self.run_id, self.holder = run_id, holder
        self._publish("start", message)

    def _settle_abandoned(self) -> None:
        """A persisted mid-run state left behind by a dead run is settled first."""
        if self.state in _AT_REST:
            return
        settled = S.RECOVERY_MODE if self.after_delete else S.ERROR
        self.audit.append(
            f"Previous run left the workflow in {self.state.value}; treating it as {settled.value}"
        )
        self.state = settled

    async def _fail(
        self, run_id: str, exc: BaseException, track_state: bool = True
    ) -> RefreshResult:
        message = f"{exc.__class__.__name__}: {exc}"
        self.audit.append(f"Run failed – {message}")
        logger.error("Sync run %s failed: %s", run_id, message)
        async with self.session_factory() as session:
            await set_status(session, run_id, SyncStatus.ERROR, message, holder=self.holder)
            if track_state:
                self.state = transition(self.state, E.FAILED, self.after_delete)
                await self._save(session)
            await session.commit()
        token = await self.load_token()
        self.events.publish(ProgressEvent("error", 0, None, message))
        return RefreshResult(
            outcome="failed",
            state=self.state if track_state else S.ERROR,
            run_id=run_id,
            imported=token.fetched if token and token.run_id == run_id else 0,
            failed=token.failed if token and token.run_id == run_id else 0,
            audit_log=self.audit.entries(),
            error=message,
        )

    async def _import_and_verify(
        self,
        client: ShopifyClient,
        run_id: str,
        token: Optional[ContinuationToken],
        cleaned: int = 0,
    ) -> RefreshResult:
        target = OrderImportTarget(client, self.session_factory)
        if token is None:
            token = ContinuationToken(run_id=run_id, target=target.name)
        outcome = await self.pipeline.run(target, token)

        if outcome.failed_ids:
            async with self.session_factory() as session:
                await record_dead_letters(session, run_id, target.name, outcome.failed_ids)
                await session.commit()

        if outcome.paused:
            return await self._background(run_id, outcome.token, cleaned)

        await self._move(E.IMPORTED)
        archived = 0
        if self.mode == "incremental" and target.listed_ids is not None:
            async with self.session_factory() as session:
                archived = await archive_missing(session, target.listed_ids)
                await session.commit()
            if archived:
                self.audit.append(f"Archived {archived} orders no longer open remotely")

        verification: Optional[VerificationResult] = None
        if self.expected is not None:
            self._publish("verify", "Verifying order counts")
            verification = await verify(self.session_factory, self.expected)

        if verification is None:
            self.audit.append("Verification skipped")
            await self._move(E.VERIFY_SKIPPED)
            result_outcome = "success"
        elif verification.mismatch:
            self.audit.append(
                f"Count mismatch: expected {verification.expected.expected}, "
                f"found {verification.actual.imported}"
            )
            await self._move(E.MISMATCH)
            result_outcome = "success_with_mismatch"
        else:
            self.audit.append(f"Verified {verification.actual.imported} orders")
            await self._move(E.VERIFIED)
            result_outcome = "success"

        if self.state == S.RECOVERY_MODE:
            self.audit.append("Entering recovery mode – run recover to re-import without deleting")

        async with self.session_factory() as session:
            await settings_store.delete_setting(session, settings_store.CONTINUATION_TOKEN)
            await settings_store.set_setting(
                session, settings_store.LAST_SYNC_TIME,
                datetime.now(timezone.utc).isoformat(),
            )
            await set_status(
                session, run_id, SyncStatus.IDLE,
                f"{result_outcome}: {outcome.token.fetched} orders synced",
                holder=self.holder,
            )
            await session.commit()

        return RefreshResult(
            outcome=result_outcome,
            state=self.state,
            run_id=run_id,
            imported=outcome.token.fetched,
            archived=archived,
            cleaned=cleaned,
            failed=outcome.token.failed,
            verification=verification,
            audit_log=self.audit.entries(),
        )

    async def _background(
        self, run_id: str, token: ContinuationToken, cleaned: int = 0
    ) -> RefreshResult:
        async with self.session_factory() as session:
            self.state = transition(self.state, E.PAUSED, self.after_delete)
            await self._save(session)
            await settings_store.set_setting(
                session, settings_store.CONTINUATION_TOKEN, token.to_json()
            )
            await set_status(
                session, run_id, SyncStatus.BACKGROUND,
                f"Paused after batch {token.page} ({token.fetched}/{token.total})",
                holder=self.holder,
            )
            await session.commit()
        self.audit.append(f"Continuing in background from batch {token.page}")
        return RefreshResult(
            outcome="in_progress",
            state=self.state,
            run_id=run_id,
            imported=token.fetched,
            cleaned=cleaned,
            failed=token.failed,
            continuation_token=token.to_json(),
            audit_log=self.audit.entries(),
        )

    # ── Operations ───────────────────────────────────────────────────────────

    async def complete_refresh(self) -> RefreshResult:
        """Delete the local mirror and re-import everything, then verify."""
        await self._load_state()
        self._settle_abandoned()
        run_id = str(uuid.uuid4())
        await self._start(run_id, "Complete refresh started")
        self.mode = "complete"
        self.after_delete = self.state == S.RECOVERY_MODE

        async def body() -> RefreshResult:
            credential = await self._credential()
            async with self.client_factory(credential) as client:
                try:
                    expected = await fetch_expected_counts(client)
                except RemoteError as exc:
                    raise InvariantViolation(
                        f"Cannot capture expected counts, remote unreachable: {exc}"
                    ) from exc
                if expected.expected == 0:
                    raise InvariantViolation(
                        "Remote reports zero open orders – refusing to delete the local mirror"
                    )
                self.expected = expected
                self.audit.append(
                    f"Expecting {expected.expected} orders "
                    f"({expected.unfulfilled} unfulfilled, {expected.partially_fulfilled} partial)"
                )

                async with self.session_factory() as session:
                    await save_expected(session, expected)
                    await self._move(E.START_REFRESH, session)
                    await session.commit()

                self._publish("delete", "Deleting local orders")
                async with self.session_factory() as session:
                    cleaned = await delete_all_orders(session)
                    self.after_delete = True
                    await self._move(E.DELETED, session)
                    await session.commit()
                self.audit.append(f"Deleted {cleaned} local orders")

                return await self._import_and_verify(client, run_id, None, cleaned)

        return await self._guarded(run_id, body)

    async def incremental_sync(self) -> RefreshResult:
        """Import open orders without deleting; a count mismatch is only a warning."""
        await self._load_state()
        self._settle_abandoned()
        run_id = str(uuid.uuid4())
        await self._start(run_id, "Incremental sync started")
        self.mode, self.after_delete = "incremental", False

        async def body() -> RefreshResult:
            credential = await self._credential()
            async with self.client_factory(credential) as client:
                try:
                    self.expected = await fetch_expected_counts(client)
                    async with self.session_factory() as session:
                        await save_expected(session, self.expected)
                        await session.commit()
                except RemoteError as exc:
                    self.expected = None
                    self.audit.append(f"Could not fetch expected counts: {exc}")
                await self._move(E.START_SYNC)
                return await self._import_and_verify(client, run_id, None)

        return await self._guarded(run_id, body)

    async def recover(self) -> RefreshResult:
        """Retry the import after a diverged complete refresh. Never deletes."""
        await self._load_state()
        if self.state != S.RECOVERY_MODE:
            raise InvalidWorkflowTransition(
                f"Recovery is only possible from recovery_mode, not {self.state.value!r}"
            )
        run_id = str(uuid.uuid4())
        await self._start(run_id, "Recovery import started")
        self.mode = "recovery"

        async def body() -> RefreshResult:
            credential = await self._credential()
            async with self.client_factory(credential) as client:
                if self.expected is None:
                    self.expected = await fetch_expected_counts(client)
                await self._move(E.START_RECOVERY)
                return await self._import_and_verify(client, run_id, None)

        return await self._guarded(run_id, body)

    async def resume(self, token: Optional[ContinuationToken] = None) -> RefreshResult:
        """Continue a background run from *token* (or the persisted one)."""
        await self._load_state()
        token = token or await self.load_token()
        if token is None:
            raise InvariantViolation("No continuation token to resume from")
        if token.target == LocationAssignTarget.name:
            return await self.sync_locations(token)
        if self.state not in (S.BACKGROUND, S.IMPORTING, S.ERROR):
            raise InvalidWorkflowTransition(
                f"Nothing to resume in state {self.state.value!r}"
            )

        run_id = token.run_id
        await self._start(run_id, f"Resuming run {run_id} after batch {token.page}")

        async def body() -> RefreshResult:
            credential = await self._credential()
            async with self.client_factory(credential) as client:
                await self._move(E.RESUME)
                return await self._import_and_verify(client, run_id, token)

        return await self._guarded(run_id, body)

    async def sync_locations(self, token: Optional[ContinuationToken] = None) -> RefreshResult:
        """Assign fulfilment locations. Does not touch the refresh workflow state."""
        run_id = token.run_id if token else str(uuid.uuid4())
        await self._start(run_id, "Location assignment started")

        async def body() -> RefreshResult:
            credential = await self._credential()
            async with self.client_factory(credential) as client:
                target = LocationAssignTarget(client, self.session_factory)
                outcome = await self.pipeline.run(
                    target, token or ContinuationToken(run_id=run_id, target=target.name)
                )
            if outcome.failed_ids:
                async with self.session_factory() as session:
                    await record_dead_letters(session, run_id, target.name, outcome.failed_ids)
                    await session.commit()
            async with self.session_factory() as session:
                if outcome.paused:
                    await settings_store.set_setting(
                        session, settings_store.CONTINUATION_TOKEN, outcome.token.to_json()
                    )
                    await set_status(
                        session, run_id, SyncStatus.BACKGROUND, "Locations paused",
                        holder=self.holder,
                    )
                else:
                    await settings_store.delete_setting(session, settings_store.CONTINUATION_TOKEN)
                    await set_status(
                        session, run_id, SyncStatus.IDLE,
                        f"Locations updated for {outcome.token.updated} orders",
                        holder=self.holder,
                    )
                await session.commit()
            return RefreshResult(
                outcome="in_progress" if outcome.paused else "success",
                state=S.BACKGROUND if outcome.paused else S.SUCCESS,
                run_id=run_id,
                imported=outcome.token.updated,
                failed=outcome.token.failed,
                continuation_token=outcome.token.to_json() if outcome.paused else None,
                audit_log=self.audit.entries(),
            )

        return await self._guarded(run_id, body, track_state=False)
