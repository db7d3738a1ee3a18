from __future__ import annotations

import copy
import itertools
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

from taskboard.services.expiry import expiry_patch

TASK_STATUSES = ("open", "claimed", "delivered", "completed", "failed", "disputed", "expired")
TASK_FIELDS = (
    "id",
    "title",
    "description",
    "input",
    "output_schema",
    "tags",
    "requires_human",
    "posted_by",
    "budget_cents",
    "callback_url",
    "timeout_minutes",
    "status",
    "claimed_by",
    "claimed_at",
    "expires_at",
    "delivered_at",
    "result",
    "result_url",
    "attempts",
    "max_attempts",
    "created_at",
    "updated_at",
)
UPDATABLE_FIELDS = frozenset(TASK_FIELDS) - {"id", "created_at"}


class TaskStore(Protocol):
    async def get(self, task_id: str) -> dict[str, Any] | None: ...

    async def insert(self, fields: dict[str, Any]) -> dict[str, Any]: ...

    async def update_where(
        self,
        task_id: str,
        expected_status: str,
        patch: dict[str, Any],
        *,
        expected_attempts: int | None = None,
    ) -> dict[str, Any] | None: ...

    async def list_tasks(
        self,
        *,
        status: str | None,
        tags: list[str] | None,
        requires_human: bool | None,
        limit: int,
        offset: int,
    ) -> tuple[list[dict[str, Any]], int]: ...

    async def find_open(self, *, tags: list[str] | None, requires_human: bool | None) -> dict[str, Any] | None: ...

    async def sweep_expired(self, now: datetime) -> int: ...

    async def insert_api_key(self, *, key_hash: str, email: str | None, ip_address: str | None) -> dict[str, Any]: ...

    async def get_api_key_by_hash(self, key_hash: str) -> dict[str, Any] | None: ...

    async def close(self) -> None: ...


def _matches(task: dict[str, Any], *, tags: list[str] | None, requires_human: bool | None) -> bool:
    if tags and not set(tags) & set(task.get("tags") or []):
        return False
    if requires_human is not None and bool(task.get("requires_human")) != requires_human:
        return False
    return True


class InMemoryTaskStore:
    """Process-local store used when no database is configured.

    Every conditional write runs its check and its write without yielding to
    the event loop, so concurrent coroutines observe a single winner.
    """

    def __init__(self) -> None:
        self.tasks: dict[str, dict[str, Any]] = {}
        self.api_keys: dict[str, dict[str, Any]] = {}
        self._order: dict[str, int] = {}
        self._sequence = itertools.count()

    async def get(self, task_id: str) -> dict[str, Any] | None:
        task = self.tasks.get(task_id)
        return copy.deepcopy(task) if task is not None else None

    async def insert(self, fields: dict[str, Any]) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        task: dict[str, Any] = {field: None for field in TASK_FIELDS}
        task.update(
            {
                "tags": [],
                "requires_human": False,
                "budget_cents": 0,
                "status": "open",
                "attempts": 0,
                "created_at": now,
                "updated_at": now,
            }
        )
        task.update(copy.deepcopy(fields))
        task["id"] = str(uuid4())
        self.tasks[task["id"]] = task
        self._order[task["id"]] = next(self._sequence)
        return copy.deepcopy(task)

    async def update_where(
        self,
        task_id: str,
        expected_status: str,
        patch: dict[str, Any],
        *,
        expected_attempts: int | None = None,
    ) -> dict[str, Any] | None:
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown task fields: {sorted(unknown)}")

        task = self.tasks.get(task_id)
        if task is None or task["status"] != expected_status:
            return None
        if expected_attempts is not None and task["attempts"] != expected_attempts:
            return None

        task.update(copy.deepcopy(patch))
        if "updated_at" not in patch:
            task["updated_at"] = datetime.now(timezone.utc)
        return copy.deepcopy(task)

    async def list_tasks(
        self,
        *,
        status: str | None,
        tags: list[str] | None,
        requires_human: bool | None,
        limit: int,
        offset: int,
    ) -> tuple[list[dict[str, Any]], int]:
        rows = [
            task
            for task in self.tasks.values()
            if (status is None or task["status"] == status)
            and _matches(task, tags=tags, requires_human=requires_human)
        ]
        rows.sort(key=lambda task: (task["created_at"], self._order[task["id"]]), reverse=True)
        page = rows[offset : offset + limit]
        return [copy.deepcopy(task) for task in page], len(rows)

    async def find_open(self, *, tags: list[str] | None, requires_human: bool | None) -> dict[str, Any] | None:
        candidates = [
            task
            for task in self.tasks.values()
            if task["status"] == "open" and _matches(task, tags=tags, requires_human=requires_human)
        ]
        if not candidates:
            return None
        oldest = min(candidates, key=lambda task: (task["created_at"], self._order[task["id"]]))
        return copy.deepcopy(oldest)

    async def sweep_expired(self, now: datetime) -> int:
        expired = 0
        for task in self.tasks.values():
            patch = expiry_patch(task, now)
            if patch is None:
                continue
            task.update(patch)
            expired += 1
        return expired

    async def insert_api_key(self, *, key_hash: str, email: str | None, ip_address: str | None) -> dict[str, Any]:
        record = {
            "id": str(uuid4()),
            "key_hash": key_hash,
            "email": email,
            "ip_address": ip_address,
            "created_at": datetime.now(timezone.utc),
        }
        self.api_keys[key_hash] = record
        return dict(record)

    async def get_api_key_by_hash(self, key_hash: str) -> dict[str, Any] | None:
        record = self.api_keys.get(key_hash)
        return dict(record) if record is not None else None

    async def close(self) -> None:
        return None
