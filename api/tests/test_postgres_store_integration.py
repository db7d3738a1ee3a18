from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from taskboard.services.errors import TaskConflictError
from taskboard.services.lifecycle import TaskLifecycle
from taskboard.services.repository import PostgresTaskStore

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("TB_DATABASE_URL")
    if not url:
        pytest.skip("integration tests require TB_DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    asyncio.run(_reset(database_url))


async def _reset(database_url: str) -> None:
    connection = await asyncpg.connect(database_url)
    try:
        await connection.execute(SCHEMA_PATH.read_text())
        await connection.execute("truncate table tasks, api_keys")
    finally:
        await connection.close()


def _with_store(database_url: str, body: Callable[[PostgresTaskStore], Awaitable[T]]) -> T:
    async def run() -> T:
        store = PostgresTaskStore(database_url, min_pool_size=1, max_pool_size=4)
        try:
            return await body(store)
        finally:
            await store.close()

    return asyncio.run(run())


def test_round_trips_json_and_array_columns(database_url: str) -> None:
    async def body(store: PostgresTaskStore) -> tuple[dict[str, Any], dict[str, Any] | None]:
        lifecycle = TaskLifecycle(store)
        created = await lifecycle.create(
            {"title": "t", "input": {"rows": [1, 2]}, "output_schema": {"type": "object"}, "tags": ["a", "b"]},
            posted_by_default="ab_12345...",
        )
        return created, await store.get(created["id"])

    created, fetched = _with_store(database_url, body)

    assert fetched == created
    assert fetched["input"] == {"rows": [1, 2]}
    assert fetched["tags"] == ["a", "b"]


def test_concurrent_claims_have_one_winner(database_url: str) -> None:
    async def body(store: PostgresTaskStore) -> list[Any]:
        lifecycle = TaskLifecycle(store)
        task = await lifecycle.create({"title": "race"}, posted_by_default="p")
        return await asyncio.gather(
            *(lifecycle.claim(task["id"], claimant=f"agent-{index}") for index in range(4)),
            return_exceptions=True,
        )

    results = _with_store(database_url, body)

    assert len([result for result in results if isinstance(result, dict)]) == 1
    assert len([result for result in results if isinstance(result, TaskConflictError)]) == 3


def test_sweep_releases_expired_claims(database_url: str) -> None:
    now = datetime.now(timezone.utc)

    async def body(store: PostgresTaskStore) -> tuple[int, dict[str, Any] | None, dict[str, Any] | None]:
        base = {"title": "t", "posted_by": "p", "timeout_minutes": 1, "max_attempts": 2}
        claimed = {"status": "claimed", "claimed_by": "a", "claimed_at": now - timedelta(minutes=5)}
        retry = await store.insert({**base, **claimed, "attempts": 1, "expires_at": now - timedelta(minutes=4)})
        spent = await store.insert({**base, **claimed, "attempts": 2, "expires_at": now - timedelta(minutes=4)})
        swept = await store.sweep_expired(now)
        return swept, await store.get(retry["id"]), await store.get(spent["id"])

    swept, retry, spent = _with_store(database_url, body)

    assert swept == 2
    assert retry["status"] == "open"
    assert retry["expires_at"] is None
    assert spent["status"] == "failed"


def test_revoked_keys_are_not_found(database_url: str) -> None:
    async def body(store: PostgresTaskStore) -> tuple[Any, Any]:
        await store.insert_api_key(key_hash="live", email=None, ip_address="127.0.0.1")
        await store.insert_api_key(key_hash="dead", email=None, ip_address="127.0.0.1")
        connection = await asyncpg.connect(database_url)
        try:
            await connection.execute("update api_keys set revoked_at = now() where key_hash = 'dead'")
        finally:
            await connection.close()
        return await store.get_api_key_by_hash("live"), await store.get_api_key_by_hash("dead")

    live, dead = _with_store(database_url, body)

    assert live["key_hash"] == "live"
    assert dead is None


def test_invalid_ids_are_treated_as_missing(database_url: str) -> None:
    assert _with_store(database_url, lambda store: store.get("not-a-uuid")) is None
