from __future__ import annotations

import json
from datetime import datetime
from functools import lru_cache
from typing import Any
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]

from taskboard.core.config import get_settings
from taskboard.services.store import UPDATABLE_FIELDS, InMemoryTaskStore, TaskStore


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


JSON_COLUMNS = frozenset({"input", "output_schema", "result"})
COLUMN_CASTS = {
    "input": "::jsonb",
    "output_schema": "::jsonb",
    "result": "::jsonb",
    "tags": "::text[]",
}
TASK_SELECT = """
  id::text as id,
  title,
  description,
  input,
  output_schema,
  tags,
  requires_human,
  posted_by,
  budget_cents,
  callback_url,
  timeout_minutes,
  status,
  claimed_by,
  claimed_at,
  expires_at,
  delivered_at,
  result,
  result_url,
  attempts,
  max_attempts,
  created_at,
  updated_at
"""


class PostgresTaskStore:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get(self, task_id: str) -> dict[str, Any] | None:
        if not self._is_uuid(task_id):
            return None
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {TASK_SELECT} from tasks where id = $1::uuid", task_id)
        return self._task_row_to_dict(row) if row else None

    async def insert(self, fields: dict[str, Any]) -> dict[str, Any]:
        columns: list[str] = []
        placeholders: list[str] = []
        values: list[Any] = []
        for column, value in fields.items():
            self._check_column(column)
            values.append(self._encode(column, value))
            columns.append(column)
            placeholders.append(f"${len(values)}{COLUMN_CASTS.get(column, '')}")

        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into tasks ({", ".join(columns)})
            values ({", ".join(placeholders)})
            returning {TASK_SELECT}
            """,
            *values,
        )
        return self._task_row_to_dict(row)

    async def update_where(
        self,
        task_id: str,
        expected_status: str,
        patch: dict[str, Any],
        *,
        expected_attempts: int | None = None,
    ) -> dict[str, Any] | None:
        if not self._is_uuid(task_id):
            return None

        values: list[Any] = [task_id, expected_status]
        assignments: list[str] = []
        for column, value in patch.items():
            self._check_column(column)
            values.append(self._encode(column, value))
            assignments.append(f"{column} = ${len(values)}{COLUMN_CASTS.get(column, '')}")
        if "updated_at" not in patch:
            assignments.append("updated_at = now()")

        conditions = "id = $1::uuid and status = $2"
        if expected_attempts is not None:
            values.append(expected_attempts)
            conditions += f" and attempts = ${len(values)}"

        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update tasks
            set {", ".join(assignments)}
            where {conditions}
            returning {TASK_SELECT}
            """,
            *values,
        )
        return self._task_row_to_dict(row) if row else None

    async def list_tasks(
        self,
        *,
        status: str | None,
        tags: list[str] | None,
        requires_human: bool | None,
        limit: int,
        offset: int,
    ) -> tuple[list[dict[str, Any]], int]:
        conditions, values = self._filter_clause(status=status, tags=tags, requires_human=requires_human)
        where = f"where {' and '.join(conditions)}" if conditions else ""

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            total = await conn.fetchval(f"select count(*) from tasks {where}", *values)
            rows = await conn.fetch(
                f"""
                select {TASK_SELECT}
                from tasks
                {where}
                order by created_at desc, id desc
                limit ${len(values) + 1} offset ${len(values) + 2}
                """,
                *values,
                limit,
                offset,
            )
        return [self._task_row_to_dict(row) for row in rows], int(total or 0)

    async def find_open(self, *, tags: list[str] | None, requires_human: bool | None) -> dict[str, Any] | None:
        conditions, values = self._filter_clause(status="open", tags=tags, requires_human=requires_human)
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {TASK_SELECT}
            from tasks
            where {" and ".join(conditions)}
            order by created_at asc, id asc
            limit 1
            """,
            *values,
        )
        return self._task_row_to_dict(row) if row else None

    async def sweep_expired(self, now: datetime) -> int:
        pool = await self._get_pool()
        outcome = await pool.execute(
            """
            update tasks
            set
              status = case when attempts >= max_attempts then 'failed' else 'open' end,
              claimed_by = null,
              claimed_at = null,
              expires_at = null,
              updated_at = $1
            where status = 'claimed'
              and expires_at is not null
              and expires_at <= $1
            """,
            now,
        )
        # asyncpg reports the command tag, e.g. "UPDATE 3".
        return int(outcome.rsplit(" ", maxsplit=1)[-1])

    async def insert_api_key(self, *, key_hash: str, email: str | None, ip_address: str | None) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into api_keys (key_hash, email, ip_address)
            values ($1, $2, $3)
            returning id::text as id, key_hash, email, ip_address, created_at
            """,
            key_hash,
            email,
            ip_address,
        )
        return dict(row)

    async def get_api_key_by_hash(self, key_hash: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id::text as id, key_hash, email, ip_address, created_at
            from api_keys
            where key_hash = $1
              and revoked_at is null
            """,
            key_hash,
        )
        return dict(row) if row else None

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("TB_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _filter_clause(
        *,
        status: str | None,
        tags: list[str] | None,
        requires_human: bool | None,
    ) -> tuple[list[str], list[Any]]:
        conditions: list[str] = []
        values: list[Any] = []
        if status is not None:
            values.append(status)
            conditions.append(f"status = ${len(values)}")
        if tags:
            values.append(tags)
            conditions.append(f"tags && ${len(values)}::text[]")
        if requires_human is not None:
            values.append(requires_human)
            conditions.append(f"requires_human = ${len(values)}")
        return conditions, values

    @staticmethod
    def _check_column(column: str) -> None:
        if column not in UPDATABLE_FIELDS:
            raise RepositoryError(f"unknown task column: {column}")

    @staticmethod
    def _encode(column: str, value: Any) -> Any:
        if column in JSON_COLUMNS and value is not None:
            return json.dumps(value)
        return value

    @staticmethod
    def _is_uuid(value: str) -> bool:
        try:
            UUID(value)
        except (TypeError, ValueError):
            return False
        return True

    @staticmethod
    def _decode_json(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None
        return value

    def _task_row_to_dict(self, row: asyncpg.Record) -> dict[str, Any]:
        task = dict(row)
        for column in JSON_COLUMNS:
            task[column] = self._decode_json(task[column])
        task["tags"] = list(task["tags"] or [])
        task["requires_human"] = bool(task["requires_human"])
        return task


@lru_cache
def get_repository() -> TaskStore:
    settings = get_settings()
    if not settings.database_url:
        return InMemoryTaskStore()
    return PostgresTaskStore(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
