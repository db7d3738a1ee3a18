from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

TaskStatus = Literal["open", "claimed", "delivered", "completed", "failed", "disputed", "expired"]


class TaskOut(BaseModel):
    id: str
    title: str
    description: str | None = None
    input: Any = None
    output_schema: dict[str, Any] | None = None
    tags: list[str] = Field(default_factory=list)
    requires_human: bool = False
    posted_by: str
    budget_cents: int = 0
    callback_url: str | None = None
    timeout_minutes: int
    status: TaskStatus
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    expires_at: datetime | None = None
    delivered_at: datetime | None = None
    result: Any = None
    result_url: str | None = None
    attempts: int
    max_attempts: int
    created_at: datetime
    updated_at: datetime


class TaskCreateRequest(BaseModel):
    """Loosely typed so field checks answer 400 from sanitize_task_input."""

    title: Any = None
    description: Any = None
    input: Any = None
    output_schema: Any = None
    tags: Any = None
    requires_human: Any = False
    posted_by: Any = None
    budget_cents: Any = None
    callback_url: Any = None
    timeout_minutes: Any = None


class ClaimRequest(BaseModel):
    agent_id: str | None = None


class DeliverRequest(BaseModel):
    result: Any = None
    result_url: str | None = None


class RejectRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class RejectOut(TaskOut):
    rejection_reason: str | None = None
    message: str


class TaskListOut(BaseModel):
    tasks: list[TaskOut]
    total: int
    limit: int
    offset: int


class NextTaskOut(BaseModel):
    task: TaskOut | None = None
    retry: bool


class TaskResultOut(BaseModel):
    status: str
    result: Any = None
    result_url: str | None = None
    task: TaskOut | None = None
    retry: bool
