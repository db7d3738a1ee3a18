from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from taskboard.services.errors import (
    TaskConflictError,
    TaskGoneError,
    TaskInputError,
    TaskNotFoundError,
    TaskValidationError,
)
from taskboard.services.lifecycle import TaskLifecycle
from taskboard.services.store import InMemoryTaskStore

ZIP_SCHEMA = {
    "type": "array",
    "items": {"type": "object", "properties": {"zip": {"type": "string"}}, "required": ["zip"]},
}


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class YieldingStore(InMemoryTaskStore):
    """Yields to the event loop after each read so concurrent actions interleave."""

    def __init__(self) -> None:
        super().__init__()
        self.lost_writes = 0

    async def get(self, task_id: str) -> dict[str, Any] | None:
        task = await super().get(task_id)
        await asyncio.sleep(0)
        return task

    async def update_where(self, *args: Any, **kwargs: Any) -> dict[str, Any] | None:
        updated = await super().update_where(*args, **kwargs)
        if updated is None:
            self.lost_writes += 1
        return updated


class InterleavingStore(InMemoryTaskStore):
    """Runs a one-shot hook right after the next read, before the caller writes."""

    def __init__(self) -> None:
        super().__init__()
        self.after_get: Callable[[], Awaitable[None]] | None = None

    async def get(self, task_id: str) -> dict[str, Any] | None:
        task = await super().get(task_id)
        hook, self.after_get = self.after_get, None
        if hook is not None:
            await hook()
        return task


def _lifecycle(clock: FakeClock, *, max_attempts: int = 3) -> TaskLifecycle:
    return TaskLifecycle(InMemoryTaskStore(), default_timeout_minutes=60, max_attempts=max_attempts, clock=clock)


def test_create_fills_defaults() -> None:
    lifecycle = _lifecycle(FakeClock())

    task = asyncio.run(lifecycle.create({"title": "Summarize", "tags": ["nlp"]}, posted_by_default="ab_12345..."))

    assert task["status"] == "open"
    assert task["posted_by"] == "ab_12345..."
    assert task["timeout_minutes"] == 60
    assert task["attempts"] == 0
    assert task["max_attempts"] == 3
    assert task["claimed_by"] is None


def test_create_rejects_bad_input() -> None:
    lifecycle = _lifecycle(FakeClock())

    with pytest.raises(TaskInputError):
        asyncio.run(lifecycle.create({"title": "  "}, posted_by_default="p"))
    with pytest.raises(TaskInputError):
        asyncio.run(lifecycle.create({"title": "t", "timeout_minutes": 0}, posted_by_default="p"))
    with pytest.raises(TaskInputError):
        asyncio.run(
            lifecycle.create({"title": "t", "callback_url": "https://10.0.0.5/hook"}, posted_by_default="p")
        )
    with pytest.raises(TaskValidationError):
        asyncio.run(lifecycle.create({"title": "t", "output_schema": {"title": "x"}}, posted_by_default="p"))


def test_concurrent_claims_have_one_winner() -> None:
    lifecycle = _lifecycle(FakeClock())

    async def run():
        task = await lifecycle.create({"title": "race"}, posted_by_default="p")
        return await asyncio.gather(
            lifecycle.claim(task["id"], claimant="agent-a"),
            lifecycle.claim(task["id"], claimant="agent-b"),
            return_exceptions=True,
        )

    results = asyncio.run(run())

    winners = [result for result in results if isinstance(result, dict)]
    losers = [result for result in results if isinstance(result, TaskConflictError)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert winners[0]["attempts"] == 1
    assert losers[0].status == "claimed"


def test_interleaved_claims_lose_on_the_conditional_write() -> None:
    store = YieldingStore()
    lifecycle = TaskLifecycle(store, clock=FakeClock())

    async def run():
        task = await lifecycle.create({"title": "race"}, posted_by_default="p")
        return await asyncio.gather(
            lifecycle.claim(task["id"], claimant="agent-a"),
            lifecycle.claim(task["id"], claimant="agent-b"),
            return_exceptions=True,
        )

    results = asyncio.run(run())

    winners = [result for result in results if isinstance(result, dict)]
    losers = [result for result in results if isinstance(result, TaskConflictError)]
    assert len(winners) == 1
    assert winners[0]["claimed_by"] == "agent-a"
    assert len(losers) == 1
    assert losers[0].status == "claimed"
    assert store.lost_writes == 1


def test_expired_claim_reopens_and_can_be_claimed_again() -> None:
    clock = FakeClock()
    lifecycle = _lifecycle(clock)

    async def run():
        task = await lifecycle.create({"title": "slow", "timeout_minutes": 1}, posted_by_default="p")
        claimed = await lifecycle.claim(task["id"], claimant="agent-a")
        clock.advance(minutes=1, seconds=1)
        reopened = await lifecycle.get(task["id"])
        reclaimed = await lifecycle.claim(task["id"], claimant="agent-b")
        return claimed, reopened, reclaimed

    claimed, reopened, reclaimed = asyncio.run(run())

    assert claimed["expires_at"] == claimed["claimed_at"] + timedelta(minutes=1)
    assert reopened["status"] == "open"
    assert reopened["claimed_by"] is None
    assert reopened["attempts"] == 1
    assert reclaimed["claimed_by"] == "agent-b"
    assert reclaimed["attempts"] == 2


def test_claim_expiring_on_last_attempt_fails_the_task() -> None:
    clock = FakeClock()
    lifecycle = _lifecycle(clock, max_attempts=1)

    async def run():
        task = await lifecycle.create({"title": "once", "timeout_minutes": 1}, posted_by_default="p")
        await lifecycle.claim(task["id"], claimant="agent-a")
        clock.advance(minutes=2)
        swept = await lifecycle.sweep()
        return task["id"], swept, await lifecycle.get(task["id"])

    task_id, swept, task = asyncio.run(run())

    assert swept == 1
    assert task["status"] == "failed"
    with pytest.raises(TaskGoneError) as exc_info:
        asyncio.run(lifecycle.claim(task_id, claimant="agent-b"))
    assert exc_info.value.attempts == 1
    assert exc_info.value.max_attempts == 1


def test_claim_on_non_open_task_conflicts() -> None:
    lifecycle = _lifecycle(FakeClock())

    async def run():
        task = await lifecycle.create({"title": "t"}, posted_by_default="p")
        await lifecycle.claim(task["id"], claimant="agent-a")
        await lifecycle.deliver(task["id"], result={"ok": True}, result_url=None)
        await lifecycle.claim(task["id"], claimant="agent-b")

    with pytest.raises(TaskConflictError) as exc_info:
        asyncio.run(run())
    assert exc_info.value.status == "delivered"


def test_unknown_task_is_not_found() -> None:
    lifecycle = _lifecycle(FakeClock())
    with pytest.raises(TaskNotFoundError):
        asyncio.run(lifecycle.claim("missing", claimant="agent-a"))


def test_schema_violation_keeps_task_claimed() -> None:
    lifecycle = _lifecycle(FakeClock())

    async def run():
        task = await lifecycle.create({"title": "zips", "output_schema": ZIP_SCHEMA}, posted_by_default="p")
        await lifecycle.claim(task["id"], claimant="agent-a")
        with pytest.raises(TaskValidationError) as exc_info:
            await lifecycle.deliver(task["id"], result=[{"zip": 1}], result_url=None)
        still_claimed = await lifecycle.get(task["id"])
        delivered = await lifecycle.deliver(task["id"], result=[{"zip": "90210"}], result_url=None)
        return exc_info.value, still_claimed, delivered

    error, still_claimed, delivered = asyncio.run(run())

    assert error.errors == ["/0/zip 1 is not of type 'string'"]
    assert error.expected_schema == ZIP_SCHEMA
    assert still_claimed["status"] == "claimed"
    assert still_claimed["result"] is None
    assert delivered["status"] == "delivered"
    assert delivered["expires_at"] is None
    assert delivered["result"] == [{"zip": "90210"}]


def test_deliver_requires_result_or_url() -> None:
    lifecycle = _lifecycle(FakeClock())

    async def run():
        task = await lifecycle.create({"title": "t"}, posted_by_default="p")
        await lifecycle.claim(task["id"], claimant="agent-a")
        await lifecycle.deliver(task["id"], result=None, result_url=None)

    with pytest.raises(TaskInputError):
        asyncio.run(run())


def test_deliver_with_url_only_skips_schema() -> None:
    lifecycle = _lifecycle(FakeClock())

    async def run():
        task = await lifecycle.create({"title": "t", "output_schema": ZIP_SCHEMA}, posted_by_default="p")
        await lifecycle.claim(task["id"], claimant="agent-a")
        return await lifecycle.deliver(task["id"], result=None, result_url="https://files.example.com/zips.json")

    delivered = asyncio.run(run())
    assert delivered["status"] == "delivered"
    assert delivered["result_url"] == "https://files.example.com/zips.json"


def test_reject_reopens_without_refunding_attempts() -> None:
    lifecycle = _lifecycle(FakeClock())

    async def run():
        task = await lifecycle.create({"title": "t"}, posted_by_default="p")
        await lifecycle.claim(task["id"], claimant="agent-a")
        await lifecycle.deliver(task["id"], result={"v": 1}, result_url=None)
        return await lifecycle.reject(task["id"])

    rejected = asyncio.run(run())

    assert rejected["status"] == "open"
    assert rejected["attempts"] == 1
    assert rejected["claimed_by"] is None
    assert rejected["result"] is None
    assert rejected["delivered_at"] is None


def test_reject_on_last_attempt_fails_and_further_claims_are_gone() -> None:
    lifecycle = _lifecycle(FakeClock(), max_attempts=2)

    async def run():
        task = await lifecycle.create({"title": "t"}, posted_by_default="p")
        for agent in ("agent-a", "agent-b"):
            await lifecycle.claim(task["id"], claimant=agent)
            await lifecycle.deliver(task["id"], result={"agent": agent}, result_url=None)
            last = await lifecycle.reject(task["id"])
        return task["id"], last

    task_id, last = asyncio.run(run())

    assert last["status"] == "failed"
    assert last["attempts"] == 2
    with pytest.raises(TaskGoneError):
        asyncio.run(lifecycle.claim(task_id, claimant="agent-c"))


def test_complete_requires_delivery() -> None:
    lifecycle = _lifecycle(FakeClock())

    async def run():
        task = await lifecycle.create({"title": "t"}, posted_by_default="p")
        await lifecycle.claim(task["id"], claimant="agent-a")
        with pytest.raises(TaskConflictError) as exc_info:
            await lifecycle.complete(task["id"])
        await lifecycle.deliver(task["id"], result={"v": 1}, result_url=None)
        completed = await lifecycle.complete(task["id"])
        with pytest.raises(TaskConflictError):
            await lifecycle.reject(task["id"])
        return exc_info.value, completed

    error, completed = asyncio.run(run())

    assert error.status == "claimed"
    assert completed["status"] == "completed"
    assert completed["result"] == {"v": 1}


def test_poster_result_waits_for_terminal_status() -> None:
    lifecycle = _lifecycle(FakeClock())

    async def run():
        task = await lifecycle.create({"title": "t"}, posted_by_default="p")
        before = await lifecycle.poster_result(task["id"])
        await lifecycle.claim(task["id"], claimant="agent-a")
        during = await lifecycle.poster_result(task["id"])
        await lifecycle.deliver(task["id"], result={"v": 1}, result_url=None)
        after = await lifecycle.poster_result(task["id"])
        return before, during, after

    before, during, after = asyncio.run(run())

    assert before is None
    assert during is None
    assert after["status"] == "delivered"


def test_find_next_returns_oldest_matching_open_task() -> None:
    clock = FakeClock()
    lifecycle = _lifecycle(clock)

    async def run():
        first = await lifecycle.create({"title": "a", "tags": ["echo"]}, posted_by_default="p")
        clock.advance(seconds=1)
        await lifecycle.create({"title": "b", "tags": ["echo"]}, posted_by_default="p")
        await lifecycle.create({"title": "human", "tags": ["echo"], "requires_human": True}, posted_by_default="p")
        await lifecycle.create({"title": "c", "tags": ["other"]}, posted_by_default="p")
        found = await lifecycle.find_next(tags=["echo", "missing"], requires_human=False)
        nothing = await lifecycle.find_next(tags=["missing"], requires_human=None)
        return first, found, nothing

    first, found, nothing = asyncio.run(run())

    assert found["id"] == first["id"]
    assert nothing is None


def test_find_next_sees_tasks_reopened_by_expiry() -> None:
    clock = FakeClock()
    lifecycle = _lifecycle(clock)

    async def run():
        task = await lifecycle.create({"title": "t", "timeout_minutes": 5}, posted_by_default="p")
        await lifecycle.claim(task["id"], claimant="agent-a")
        hidden = await lifecycle.find_next(tags=None, requires_human=None)
        clock.advance(minutes=6)
        visible = await lifecycle.find_next(tags=None, requires_human=None)
        return task["id"], hidden, visible

    task_id, hidden, visible = asyncio.run(run())

    assert hidden is None
    assert visible["id"] == task_id


def test_list_tasks_validates_status() -> None:
    lifecycle = _lifecycle(FakeClock())
    with pytest.raises(TaskInputError):
        asyncio.run(lifecycle.list_tasks(status="bogus", tags=None, requires_human=None, limit=10, offset=0))


def test_list_tasks_pages_newest_first() -> None:
    clock = FakeClock()
    lifecycle = _lifecycle(clock)

    async def run():
        for title in ("one", "two", "three"):
            await lifecycle.create({"title": title}, posted_by_default="p")
            clock.advance(seconds=1)
        return await lifecycle.list_tasks(status="open", tags=None, requires_human=None, limit=2, offset=0)

    rows, total = asyncio.run(run())

    assert total == 3
    assert [row["title"] for row in rows] == ["three", "two"]


def test_reject_from_a_stale_read_does_not_reopen_a_newer_delivery() -> None:
    store = InterleavingStore()
    lifecycle = TaskLifecycle(store, max_attempts=2, clock=FakeClock())

    async def run():
        task = await lifecycle.create({"title": "t"}, posted_by_default="p")
        task_id = task["id"]
        await lifecycle.claim(task_id, claimant="agent-a")
        await lifecycle.deliver(task_id, result={"v": 1}, result_url=None)

        async def another_round() -> None:
            await store.update_where(
                task_id,
                "delivered",
                {
                    "status": "open",
                    "claimed_by": None,
                    "claimed_at": None,
                    "expires_at": None,
                    "delivered_at": None,
                    "result": None,
                    "result_url": None,
                },
            )
            await lifecycle.claim(task_id, claimant="agent-b")
            await lifecycle.deliver(task_id, result={"v": 2}, result_url=None)

        store.after_get = another_round
        with pytest.raises(TaskConflictError) as exc_info:
            await lifecycle.reject(task_id)
        current = await store.get(task_id)
        final = await lifecycle.reject(task_id)
        return exc_info.value, current, final

    error, current, final = asyncio.run(run())

    assert error.status == "delivered"
    assert current["status"] == "delivered"
    assert current["attempts"] == 2
    assert current["result"] == {"v": 2}
    assert final["status"] == "failed"
