"""
Tests for the resumable batch pipeline: batch shape, retry queue, pause and
resume at batch boundaries, fatal aborts.
"""
from __future__ import annotations

import asyncio
from typing import Dict, List
from unittest.mock import AsyncMock, patch

import pytest

from app.services.continuation import ContinuationToken
from app.services.events import AuditLog, EventStream
from app.services.pipeline import BatchPipeline, FatalSyncError, order_key
from app.services.shopify_client import AuthenticationError, RateLimitedError, RemoteError


class FakeTarget:
    """Records every call; fails items on demand."""

    name = "fake"

    def __init__(
        self,
        n: int = 23,
        fail_once=(),
        fail_always=(),
        fatal=(),
        listing_error: bool = False,
    ) -> None:
        self.ids = [str(i) for i in range(1, n + 1)]
        self.fail_once = set(fail_once)
        self.fail_always = set(fail_always)
        self.fatal = set(fatal)
        self.listing_error = listing_error
        self.calls: List[str] = []
        self.synced: Dict[str, int] = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_process = None

    async def item_ids(self) -> List[str]:
        if self.listing_error:
            raise RemoteError("listing unavailable")
        return list(reversed(self.ids))          # unordered on purpose

    async def process(self, item_id: str) -> bool:
        self.calls.append(item_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if self.on_process is not None:
                self.on_process(item_id)
            if item_id in self.fatal:
                raise AuthenticationError("token revoked")
            if item_id in self.fail_always:
                raise RemoteError(f"item {item_id} unavailable")
            if item_id in self.fail_once:
                self.fail_once.discard(item_id)
                raise RateLimitedError("429")
            self.synced[item_id] = self.synced.get(item_id, 0) + 1
            return True
        finally:
            self.in_flight -= 1


def _pipeline(**kwargs) -> BatchPipeline:
    kwargs.setdefault("batch_size", 5)
    kwargs.setdefault("batch_delay", 0)
    kwargs.setdefault("retry_delay", 0)
    return BatchPipeline(**kwargs)


def test_order_key_sorts_numeric_ids_numerically():
    ids = ["10", "9", "abc", "100", "2"]
    assert sorted(ids, key=order_key) == ["2", "9", "10", "100", "abc"]


@pytest.mark.asyncio
async def test_batches_of_five_with_failures_in_third_batch():
    target = FakeTarget(23, fail_once={"12", "14"})

    outcome = await _pipeline().run(target)

    assert outcome.stats.batch_sizes == [5, 5, 5, 5, 3]
    assert outcome.stats.retry_attempts == 2
    assert outcome.stats.failures == 2
    assert outcome.stats.requests == 25
    assert target.calls[-2:] == ["12", "14"]            # retried after all batches
    assert target.max_in_flight <= 5
    assert outcome.completed
    assert outcome.token.fetched == 23
    assert outcome.token.failed == 0
    assert outcome.failed_ids == []
    assert set(target.synced) == set(target.ids)


@pytest.mark.asyncio
async def test_delays_between_batches_and_before_each_retry():
    target = FakeTarget(12, fail_once={"2", "3"})
    pipeline = _pipeline(batch_delay=0.5, retry_delay=2.0)

    with patch("app.services.pipeline.asyncio.sleep", new_callable=AsyncMock) as sleep:
        await pipeline.run(target)

    delays = [c.args[0] for c in sleep.await_args_list if c.args[0]]
    assert delays == [0.5, 0.5, 2.0, 2.0]


@pytest.mark.asyncio
async def test_retry_is_sequential():
    target = FakeTarget(10, fail_once={"1", "2", "3", "4", "5"})
    seen_in_retry: List[int] = []

    def watch(item_id):
        if target.calls.count(item_id) == 2:
            seen_in_retry.append(target.in_flight)

    target.on_process = watch
    await _pipeline().run(target)

    assert seen_in_retry == [1, 1, 1, 1, 1]


@pytest.mark.asyncio
async def test_items_still_failing_after_retry_are_reported():
    target = FakeTarget(8, fail_always={"3"})
    audit = AuditLog()

    outcome = await _pipeline(audit=audit).run(target)

    assert outcome.completed
    assert outcome.failed_ids == ["3"]
    assert outcome.token.failed == 1
    assert outcome.token.retry_queue == []
    assert outcome.token.fetched == 7
    assert any("Retry failed" in e and "item 3" in e for e in audit.entries())


@pytest.mark.asyncio
async def test_batch_size_does_not_change_end_state():
    results = []
    for size in (1, 3, 5, 50):
        target = FakeTarget(23, fail_once={"12", "14"})
        outcome = await _pipeline(batch_size=size).run(target)
        results.append((set(target.synced), outcome.token.fetched, outcome.token.failed))

    assert all(r == results[0] for r in results)


@pytest.mark.asyncio
async def test_max_batches_pauses_and_token_resumes_at_boundary():
    target = FakeTarget(23, fail_once={"7"})

    first = await _pipeline(max_batches=2).run(target)

    assert first.paused and not first.completed
    assert first.token.page == 2
    assert first.token.cursor == "10"
    assert first.token.retry_queue == ["7"]

    # the token survives serialisation between invocations
    token = ContinuationToken.from_json(first.token.to_json())
    second = await _pipeline().run(target, token)

    assert second.completed
    assert second.stats.batch_sizes == [5, 5, 3]
    assert second.token.fetched == 23
    assert set(target.synced) == set(target.ids)
    assert all(n == 1 for n in target.synced.values())


@pytest.mark.asyncio
async def test_paused_then_resumed_equals_uninterrupted():
    straight = FakeTarget(17, fail_once={"4", "16"})
    await _pipeline().run(straight)

    stepped = FakeTarget(17, fail_once={"4", "16"})
    token = None
    while True:
        outcome = await _pipeline(max_batches=1).run(stepped, token)
        token = outcome.token
        if outcome.completed:
            break

    assert stepped.synced == straight.synced
    assert token.fetched == 17


@pytest.mark.asyncio
async def test_pause_request_stops_after_in_flight_batch():
    target = FakeTarget(20)
    pipeline = _pipeline()
    target.on_process = lambda item_id: item_id == "7" and pipeline.request_pause()

    outcome = await pipeline.run(target)

    assert outcome.paused
    assert outcome.token.page == 2
    assert sorted(target.synced, key=order_key) == [str(i) for i in range(1, 11)]
    assert not pipeline.pause_requested          # the request is consumed


@pytest.mark.asyncio
async def test_time_budget_pauses_run():
    ticks = iter([0.0, 1.0, 5.0, 11.0, 20.0])
    target = FakeTarget(20)

    outcome = await _pipeline(time_budget=10.0, clock=lambda: next(ticks)).run(target)

    assert outcome.paused
    assert outcome.token.page == 2


@pytest.mark.asyncio
async def test_completed_token_is_a_no_op():
    target = FakeTarget(6)
    done = await _pipeline().run(target)
    calls = len(target.calls)

    again = await _pipeline().run(target, done.token)

    assert again.completed
    assert len(target.calls) == calls
    assert again.token == done.token


@pytest.mark.asyncio
async def test_fatal_error_aborts_after_batch_joins():
    target = FakeTarget(15, fatal={"7"})
    seen: List[int] = []

    async def on_batch(token):
        seen.append(token.page)

    with pytest.raises(AuthenticationError):
        await _pipeline(on_batch=on_batch).run(target)

    assert set(target.calls) == {str(i) for i in range(1, 11)}     # batch 2 joined
    assert seen == [1]
    assert "11" not in target.calls


@pytest.mark.asyncio
async def test_listing_failure_is_fatal():
    with pytest.raises(FatalSyncError):
        await _pipeline().run(FakeTarget(listing_error=True))


@pytest.mark.asyncio
async def test_token_for_another_target_rejected():
    token = ContinuationToken(run_id="r1", target="locations")
    with pytest.raises(ValueError):
        await _pipeline().run(FakeTarget(3), token)


@pytest.mark.asyncio
async def test_progress_events_per_batch():
    class RecordingStream(EventStream):
        def __init__(self):
            super().__init__()
            self.published = []

        def publish(self, event):
            self.published.append(event)

    stream = RecordingStream()
    await _pipeline(events=stream).run(FakeTarget(12, fail_once={"1"}))

    phases = [e.phase for e in stream.published]
    assert phases == ["import", "import", "import", "retry", "done"]
    assert stream.published[0].total == 12
    assert stream.published[-1].processed == 12


@pytest.mark.asyncio
async def test_progress_events_count_failures_apart_from_synced():
    class RecordingStream(EventStream):
        def __init__(self):
            super().__init__()
            self.published = []

        def publish(self, event):
            self.published.append(event)

    stream = RecordingStream()
    await _pipeline(events=stream).run(
        FakeTarget(12, fail_once={"7"}, fail_always={"2"})
    )

    counts = [(e.phase, e.processed, e.failed) for e in stream.published]
    assert counts == [
        ("import", 4, 1),
        ("import", 8, 2),
        ("import", 10, 2),
        ("retry", 10, 2),
        ("done", 11, 1),
    ]
    assert all(e.processed + e.failed <= e.total for e in stream.published)
