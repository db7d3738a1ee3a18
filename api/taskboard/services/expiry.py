from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from taskboard.services.store import TaskStore

logger = logging.getLogger(__name__)


def claim_expired(task: dict[str, Any], now: datetime) -> bool:
    if task.get("status") != "claimed":
        return False
    expires_at = task.get("expires_at")
    if expires_at is None:
        return False
    return expires_at <= now


def expiry_patch(task: dict[str, Any], now: datetime) -> dict[str, Any] | None:
    """Patch that releases an expired claim, or None when the claim is still live.

    The task reopens while attempts remain and fails permanently otherwise.
    Sweeps and lazy reads both go through this rule.
    """
    if not claim_expired(task, now):
        return None
    next_status = "failed" if task["attempts"] >= task["max_attempts"] else "open"
    return {
        "status": next_status,
        "claimed_by": None,
        "claimed_at": None,
        "expires_at": None,
        "updated_at": now,
    }


def maybe_expire(task: dict[str, Any], now: datetime) -> dict[str, Any] | None:
    patch = expiry_patch(task, now)
    if patch is None:
        return None
    return {**task, **patch}


async def expire_if_due(store: TaskStore, task: dict[str, Any], now: datetime) -> dict[str, Any]:
    """Apply lazy expiry and return the task as it stands afterwards."""
    patch = expiry_patch(task, now)
    if patch is None:
        return task

    # attempts pins the claim this snapshot saw; a newer claim has a higher count.
    updated = await store.update_where(task["id"], "claimed", patch, expected_attempts=task["attempts"])
    if updated is not None:
        logger.info(
            "claim expired task_id=%s claimed_by=%s attempts=%s/%s next_status=%s",
            task["id"],
            task.get("claimed_by"),
            task["attempts"],
            task["max_attempts"],
            updated["status"],
        )
        return updated

    # Someone else moved the task first; carry on with what they left behind.
    logger.debug("lazy expiry lost race task_id=%s", task["id"])
    fresh = await store.get(task["id"])
    return fresh if fresh is not None else task
