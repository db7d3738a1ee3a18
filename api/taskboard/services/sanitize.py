from __future__ import annotations

import json
from typing import Any

from taskboard.core.urls import callback_url_error, result_url_error
from taskboard.services.errors import TaskInputError, TaskValidationError
from taskboard.services.schema_gate import SCHEMA_KEYWORDS, is_well_formed

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 5000
MAX_TAGS = 10
MAX_TAG_LENGTH = 50
MAX_JSON_SIZE = 50_000
MAX_RESULT_SIZE = MAX_JSON_SIZE * 2
MIN_TIMEOUT_MINUTES = 1
MAX_TIMEOUT_MINUTES = 1440


def json_size(value: Any) -> int:
    """Length of the compact JSON encoding, matching what is stored."""
    return len(json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str))


def sanitize_task_input(payload: dict[str, Any]) -> dict[str, Any]:
    title = payload.get("title")
    if not isinstance(title, str) or not title.strip():
        raise TaskInputError("title is required")
    if len(title) > MAX_TITLE_LENGTH:
        raise TaskInputError(f"title must be under {MAX_TITLE_LENGTH} characters")

    description = payload.get("description")
    if description is not None and not isinstance(description, str):
        raise TaskInputError("description must be a string")
    if description is not None and len(description) > MAX_DESCRIPTION_LENGTH:
        raise TaskInputError(f"description must be under {MAX_DESCRIPTION_LENGTH} characters")

    tags = payload.get("tags") or []
    if not isinstance(tags, list):
        raise TaskInputError("tags must be a list of strings")
    if len(tags) > MAX_TAGS:
        raise TaskInputError(f"max {MAX_TAGS} tags")
    for tag in tags:
        if not isinstance(tag, str) or len(tag) > MAX_TAG_LENGTH:
            raise TaskInputError(f"each tag must be a string under {MAX_TAG_LENGTH} chars")

    task_input = payload.get("input")
    if task_input is not None and json_size(task_input) > MAX_JSON_SIZE:
        raise TaskInputError(f"input must be under {MAX_JSON_SIZE // 1000}KB")

    output_schema = payload.get("output_schema")
    if output_schema is not None:
        if json_size(output_schema) > MAX_JSON_SIZE:
            raise TaskInputError(f"output_schema must be under {MAX_JSON_SIZE // 1000}KB")
        if not is_well_formed(output_schema):
            raise TaskValidationError(
                "output_schema is not a valid JSON Schema",
                errors=[f"output_schema must declare one of: {', '.join(SCHEMA_KEYWORDS)}"],
                expected_schema=output_schema,
            )

    callback_url = payload.get("callback_url")
    if callback_url is not None and not isinstance(callback_url, str):
        raise TaskInputError("callback_url must be a string")
    if callback_url:
        reason = callback_url_error(callback_url)
        if reason:
            raise TaskInputError(reason)

    timeout_minutes = payload.get("timeout_minutes")
    if timeout_minutes is not None and not _is_int(timeout_minutes):
        raise TaskInputError("timeout_minutes must be an integer")
    if timeout_minutes is not None and not MIN_TIMEOUT_MINUTES <= timeout_minutes <= MAX_TIMEOUT_MINUTES:
        raise TaskInputError(
            f"timeout_minutes must be between {MIN_TIMEOUT_MINUTES} and {MAX_TIMEOUT_MINUTES}",
        )

    budget_cents = payload.get("budget_cents")
    if budget_cents is not None and not _is_int(budget_cents):
        raise TaskInputError("budget_cents must be an integer")
    if budget_cents is not None and budget_cents < 0:
        raise TaskInputError("budget_cents must not be negative")

    requires_human = payload.get("requires_human")
    if requires_human is not None and not isinstance(requires_human, bool):
        raise TaskInputError("requires_human must be a boolean")

    posted_by = payload.get("posted_by")
    if posted_by is not None and not isinstance(posted_by, str):
        raise TaskInputError("posted_by must be a string")

    return {
        "title": title,
        "description": description or None,
        "input": task_input,
        "output_schema": output_schema,
        "tags": list(tags),
        "requires_human": bool(requires_human),
        "posted_by": (posted_by or "").strip() or None,
        "budget_cents": budget_cents or 0,
        "callback_url": callback_url or None,
        "timeout_minutes": timeout_minutes,
    }


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def sanitize_result(result: Any, result_url: str | None) -> None:
    if result is None and not result_url:
        raise TaskInputError("Must provide result (object) or result_url (string) or both")
    if result is not None and json_size(result) > MAX_RESULT_SIZE:
        raise TaskInputError(f"result must be under {MAX_RESULT_SIZE // 1000}KB")
    if result_url:
        reason = result_url_error(result_url)
        if reason:
            raise TaskInputError(reason)
