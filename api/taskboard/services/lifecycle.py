from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends
from opentelemetry import trace

from taskboard.core.config import Settings, get_settings
from taskboard.services import schema_gate
from taskboard.services.errors import (
    TaskConflictError,
    TaskGoneError,
    TaskInputError,
    TaskNotFoundError,
    TaskValidationError,
)
from taskboard.services.expiry import expire_if_due
from taskboard.services.repository import get_repository
from taskboard.services.sanitize import sanitize_result, sanitize_task_input
from taskboard.services.store import TASK_STATUSES, TaskStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Statuses at which a poster waiting on a result stops waiting.
POSTER_TERMINAL_STATUSES = frozenset({"delivered", "completed", "failed", "expired", "disputed"})
CLAIM_FIELDS_CLEARED = {"claimed_by": None, "claimed_at": None, "expires_at": None}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskLifecycle:
    """State machine for tasks: open -> claimed -> delivered -> completed/failed.

    Every transition is one conditional store write keyed on the status the
    transition starts from. A write that matches nothing means another actor
    moved the task first, and the caller gets a conflict naming the status
    it actually found. Claims past their deadline are released before any
    action looks at a task.
    """

    def __init__(
        self,
        store: TaskStore,
        *,
        default_timeout_minutes: int = 60,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.default_timeout_minutes = default_timeout_minutes
        self.max_attempts = max(1, max_attempts)
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    async def create(self, payload: dict[str, Any], *, posted_by_default: str) -> dict[str, Any]:
        clean = sanitize_task_input(payload)
        now = self.now()
        fields = {
            **clean,
            "posted_by": clean["posted_by"] or posted_by_default,
            "timeout_minutes": clean["timeout_minutes"] or self.default_timeout_minutes,
            "status": "open",
            "attempts": 0,
            "max_attempts": self.max_attempts,
            "created_at": now,
            "updated_at": now,
        }
        task = await self.store.insert(fields)
        logger.info(
            "task created task_id=%s posted_by=%s tags=%s has_output_schema=%s",
            task["id"],
            task["posted_by"],
            ",".join(task["tags"]),
            task["output_schema"] is not None,
        )
        return task

    async def get(self, task_id: str) -> dict[str, Any]:
        task = await self.store.get(task_id)
        if task is None:
            raise TaskNotFoundError("Task not found")
        return await expire_if_due(self.store, task, self.now())

    async def sweep(self) -> int:
        expired = await self.store.sweep_expired(self.now())
        if expired:
            logger.info("expired stale claims count=%s", expired)
        return expired

    async def list_tasks(
        self,
        *,
        status: str | None,
        tags: list[str] | None,
        requires_human: bool | None,
        limit: int,
        offset: int,
    ) -> tuple[list[dict[str, Any]], int]:
        if status is not None and status not in TASK_STATUSES:
            raise TaskInputError(f"status must be one of: all, {', '.join(TASK_STATUSES)}")
        await self.sweep()
        return await self.store.list_tasks(
            status=status,
            tags=tags,
            requires_human=requires_human,
            limit=limit,
            offset=offset,
        )

    async def claim(self, task_id: str, *, claimant: str) -> dict[str, Any]:
        with tracer.start_as_current_span("tasks.claim") as span:
            span.set_attribute("task.id", task_id)
            task = await self.get(task_id)
            status = task["status"]
            attempts = task["attempts"]

            if status == "failed" and attempts >= task["max_attempts"]:
                raise self._gone(task)
            if status != "open":
                raise TaskConflictError(f"Task is {status}, not open", status=status)

            if attempts >= task["max_attempts"]:
                failed = await self.store.update_where(
                    task_id,
                    "open",
                    {"status": "failed", "updated_at": self.now()},
                    expected_attempts=attempts,
                )
                if failed is None:
                    raise await self._lost_race(task_id, expected="open")
                logger.info("task failed on claim task_id=%s attempts=%s", task_id, attempts)
                raise self._gone(failed)

            now = self.now()
            claimed = await self.store.update_where(
                task_id,
                "open",
                {
                    "status": "claimed",
                    "claimed_by": claimant,
                    "claimed_at": now,
                    "expires_at": now + timedelta(minutes=task["timeout_minutes"]),
                    "attempts": attempts + 1,
                    "updated_at": now,
                },
                expected_attempts=attempts,
            )
            if claimed is None:
                raise await self._lost_race(task_id, expected="open")

            span.set_attribute("task.attempts", claimed["attempts"])
            logger.info(
                "task claimed task_id=%s claimed_by=%s attempt=%s/%s expires_at=%s",
                task_id,
                claimant,
                claimed["attempts"],
                claimed["max_attempts"],
                claimed["expires_at"].isoformat(),
            )
            return claimed

    async def deliver(self, task_id: str, *, result: Any, result_url: str | None) -> dict[str, Any]:
        sanitize_result(result, result_url)
        with tracer.start_as_current_span("tasks.deliver") as span:
            span.set_attribute("task.id", task_id)
            task = await self.get(task_id)
            if task["status"] != "claimed":
                raise TaskConflictError(f"Task is {task['status']}, not claimed", status=task["status"])

            output_schema = task.get("output_schema")
            if output_schema and result is not None:
                errors = schema_gate.validate(output_schema, result)
                if errors:
                    logger.info("delivery rejected by output_schema task_id=%s errors=%s", task_id, len(errors))
                    raise TaskValidationError(
                        "Result does not match the required output_schema",
                        errors=errors,
                        expected_schema=output_schema,
                    )

            now = self.now()
            delivered = await self.store.update_where(
                task_id,
                "claimed",
                {
                    "status": "delivered",
                    "result": result,
                    "result_url": result_url or None,
                    "delivered_at": now,
                    "expires_at": None,
                    "updated_at": now,
                },
                expected_attempts=task["attempts"],
            )
            if delivered is None:
                raise await self._lost_race(task_id, expected="claimed")

            logger.info("task delivered task_id=%s claimed_by=%s", task_id, delivered["claimed_by"])
            return delivered

    async def complete(self, task_id: str) -> dict[str, Any]:
        with tracer.start_as_current_span("tasks.complete") as span:
            span.set_attribute("task.id", task_id)
            task = await self.get(task_id)
            if task["status"] != "delivered":
                raise TaskConflictError(f"Task is {task['status']}, not delivered", status=task["status"])

            completed = await self.store.update_where(
                task_id,
                "delivered",
                {"status": "completed", "updated_at": self.now()},
                expected_attempts=task["attempts"],
            )
            if completed is None:
                raise await self._lost_race(task_id, expected="delivered")

            logger.info("task completed task_id=%s claimed_by=%s", task_id, completed["claimed_by"])
            return completed

    async def reject(self, task_id: str) -> dict[str, Any]:
        with tracer.start_as_current_span("tasks.reject") as span:
            span.set_attribute("task.id", task_id)
            task = await self.get(task_id)
            if task["status"] != "delivered":
                raise TaskConflictError(
                    f"Task is {task['status']}, can only reject delivered tasks",
                    status=task["status"],
                )

            # attempts was spent at claim time; a rejection never refunds it.
            next_status = "failed" if task["attempts"] >= task["max_attempts"] else "open"
            rejected = await self.store.update_where(
                task_id,
                "delivered",
                {
                    "status": next_status,
                    **CLAIM_FIELDS_CLEARED,
                    "delivered_at": None,
                    "result": None,
                    "result_url": None,
                    "updated_at": self.now(),
                },
                expected_attempts=task["attempts"],
            )
            if rejected is None:
                raise await self._lost_race(task_id, expected="delivered")

            logger.info(
                "task rejected task_id=%s attempts=%s/%s next_status=%s",
                task_id,
                rejected["attempts"],
                rejected["max_attempts"],
                next_status,
            )
            return rejected

    async def find_next(self, *, tags: list[str] | None, requires_human: bool | None) -> dict[str, Any] | None:
        """Single lookup for the oldest open task matching the filters."""
        await self.sweep()
        return await self.store.find_open(tags=tags, requires_human=requires_human)

    async def poster_result(self, task_id: str) -> dict[str, Any] | None:
        """Single lookup returning the task once the poster can stop waiting."""
        task = await self.get(task_id)
        if task["status"] in POSTER_TERMINAL_STATUSES:
            return task
        return None

    async def _lost_race(self, task_id: str, *, expected: str) -> TaskConflictError:
        current = await self.get(task_id)
        logger.info(
            "conditional update lost race task_id=%s expected=%s current=%s",
            task_id,
            expected,
            current["status"],
        )
        if current["status"] == expected:
            message = f"Task changed while the request was in flight and is {expected} again"
        else:
            message = f"Task is {current['status']}, not {expected}"
        return TaskConflictError(message, status=current["status"])

    @staticmethod
    def _gone(task: dict[str, Any]) -> TaskGoneError:
        return TaskGoneError(
            f"Task has used all {task['max_attempts']} attempts and can no longer be claimed",
            status=task["status"],
            attempts=task["attempts"],
            max_attempts=task["max_attempts"],
        )


def get_lifecycle(
    repository: TaskStore = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> TaskLifecycle:
    return TaskLifecycle(
        repository,
        default_timeout_minutes=settings.task_default_timeout_minutes,
        max_attempts=settings.task_max_attempts,
    )
