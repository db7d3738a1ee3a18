from fastapi import APIRouter, Depends, HTTPException, Query, status

from taskboard.core.auth import Principal
from taskboard.core.config import Settings, get_settings
from taskboard.core.rate_limit import POLL, READ, TASK_ACTION, TASK_CREATE, RateLimiter, get_rate_limiter
from taskboard.core.security import enforce_rate_limit, get_api_principal, get_client_address
from taskboard.schemas.tasks import (
    ClaimRequest,
    DeliverRequest,
    NextTaskOut,
    RejectOut,
    RejectRequest,
    TaskCreateRequest,
    TaskListOut,
    TaskOut,
    TaskResultOut,
)
from taskboard.services.errors import (
    TaskBoardError,
    TaskConflictError,
    TaskGoneError,
    TaskInputError,
    TaskNotFoundError,
    TaskValidationError,
)
from taskboard.services.lifecycle import TaskLifecycle, get_lifecycle
from taskboard.services.long_poll import poll_deadline, wait_for
from taskboard.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.post("", response_model=TaskOut, status_code=status.HTTP_201_CREATED)
async def create_task(
    payload: TaskCreateRequest,
    principal: Principal = Depends(get_api_principal),
    lifecycle: TaskLifecycle = Depends(get_lifecycle),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> TaskOut:
    enforce_rate_limit(limiter, TASK_CREATE, principal.api_key)

    try:
        task = await lifecycle.create(payload.model_dump(), posted_by_default=principal.display_name)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except TaskBoardError as exc:
        raise _http_error(exc) from exc

    return TaskOut(**task)


@router.get("", response_model=TaskListOut)
async def list_tasks(
    lifecycle: TaskLifecycle = Depends(get_lifecycle),
    limiter: RateLimiter = Depends(get_rate_limiter),
    address: str = Depends(get_client_address),
    task_status: str = Query(default="open", alias="status"),
    tags: str | None = Query(default=None),
    requires_human: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> TaskListOut:
    enforce_rate_limit(limiter, READ, address)

    try:
        rows, total = await lifecycle.list_tasks(
            status=None if task_status == "all" else task_status,
            tags=_split_tags(tags),
            requires_human=requires_human,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except TaskBoardError as exc:
        raise _http_error(exc) from exc

    return TaskListOut(tasks=[TaskOut(**row) for row in rows], total=total, limit=limit, offset=offset)


@router.get("/next", response_model=NextTaskOut)
async def next_task(
    principal: Principal = Depends(get_api_principal),
    lifecycle: TaskLifecycle = Depends(get_lifecycle),
    limiter: RateLimiter = Depends(get_rate_limiter),
    settings: Settings = Depends(get_settings),
    address: str = Depends(get_client_address),
    skills: str | None = Query(default=None),
    requires_human: bool | None = Query(default=None),
    timeout: float | None = Query(default=None),
) -> NextTaskOut:
    enforce_rate_limit(limiter, POLL, address)

    tags = _split_tags(skills)
    deadline = poll_deadline(
        timeout,
        default_seconds=settings.long_poll_default_seconds,
        max_seconds=settings.long_poll_max_seconds,
    )

    async def lookup():
        return await lifecycle.find_next(tags=tags, requires_human=requires_human)

    try:
        outcome = await wait_for(
            lookup,
            deadline,
            interval_seconds=settings.long_poll_interval_seconds,
            name="next_task",
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if outcome.value is None:
        return NextTaskOut(task=None, retry=True)
    return NextTaskOut(task=TaskOut(**outcome.value), retry=False)


@router.get("/{task_id}", response_model=TaskOut)
async def get_task(
    task_id: str,
    lifecycle: TaskLifecycle = Depends(get_lifecycle),
    limiter: RateLimiter = Depends(get_rate_limiter),
    address: str = Depends(get_client_address),
) -> TaskOut:
    enforce_rate_limit(limiter, READ, address)

    try:
        task = await lifecycle.get(task_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except TaskBoardError as exc:
        raise _http_error(exc) from exc

    return TaskOut(**task)


@router.post("/{task_id}/claim", response_model=TaskOut)
async def claim_task(
    task_id: str,
    payload: ClaimRequest | None = None,
    principal: Principal = Depends(get_api_principal),
    lifecycle: TaskLifecycle = Depends(get_lifecycle),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> TaskOut:
    enforce_rate_limit(limiter, TASK_ACTION, principal.api_key)

    claimant = principal.identity(payload.agent_id if payload else None)
    try:
        task = await lifecycle.claim(task_id, claimant=claimant)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except TaskBoardError as exc:
        raise _http_error(exc) from exc

    return TaskOut(**task)


@router.post("/{task_id}/deliver", response_model=TaskOut)
async def deliver_task(
    task_id: str,
    payload: DeliverRequest,
    principal: Principal = Depends(get_api_principal),
    lifecycle: TaskLifecycle = Depends(get_lifecycle),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> TaskOut:
    enforce_rate_limit(limiter, TASK_ACTION, principal.api_key)

    try:
        task = await lifecycle.deliver(task_id, result=payload.result, result_url=payload.result_url)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except TaskBoardError as exc:
        raise _http_error(exc) from exc

    return TaskOut(**task)


@router.post("/{task_id}/complete", response_model=TaskOut)
async def complete_task(
    task_id: str,
    principal: Principal = Depends(get_api_principal),
    lifecycle: TaskLifecycle = Depends(get_lifecycle),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> TaskOut:
    enforce_rate_limit(limiter, TASK_ACTION, principal.api_key)

    try:
        task = await lifecycle.complete(task_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except TaskBoardError as exc:
        raise _http_error(exc) from exc

    return TaskOut(**task)


@router.post("/{task_id}/reject", response_model=RejectOut)
async def reject_task(
    task_id: str,
    payload: RejectRequest | None = None,
    principal: Principal = Depends(get_api_principal),
    lifecycle: TaskLifecycle = Depends(get_lifecycle),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> RejectOut:
    enforce_rate_limit(limiter, TASK_ACTION, principal.api_key)

    try:
        task = await lifecycle.reject(task_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except TaskBoardError as exc:
        raise _http_error(exc) from exc

    message = (
        "Task failed: max attempts reached"
        if task["status"] == "failed"
        else "Task reopened for another agent"
    )
    return RejectOut(**task, rejection_reason=payload.reason if payload else None, message=message)


@router.get("/{task_id}/result", response_model=TaskResultOut)
async def wait_for_result(
    task_id: str,
    principal: Principal = Depends(get_api_principal),
    lifecycle: TaskLifecycle = Depends(get_lifecycle),
    limiter: RateLimiter = Depends(get_rate_limiter),
    settings: Settings = Depends(get_settings),
    address: str = Depends(get_client_address),
    timeout: float | None = Query(default=None),
) -> TaskResultOut:
    enforce_rate_limit(limiter, POLL, address)

    deadline = poll_deadline(
        timeout,
        default_seconds=settings.long_poll_default_seconds,
        max_seconds=settings.long_poll_max_seconds,
    )

    async def lookup():
        return await lifecycle.poster_result(task_id)

    try:
        outcome = await wait_for(
            lookup,
            deadline,
            interval_seconds=settings.long_poll_interval_seconds,
            name="wait_for_result",
        )
        latest = outcome.value if outcome.value is not None else await lifecycle.get(task_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except TaskBoardError as exc:
        raise _http_error(exc) from exc

    if outcome.retry:
        return TaskResultOut(status=latest["status"], retry=True)
    return TaskResultOut(
        status=latest["status"],
        result=latest["result"],
        result_url=latest["result_url"],
        task=TaskOut(**latest),
        retry=False,
    )


def _split_tags(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    tags = [chunk.strip() for chunk in raw.split(",") if chunk.strip()]
    return tags or None


def _http_error(exc: TaskBoardError) -> HTTPException:
    if isinstance(exc, TaskNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, TaskGoneError):
        return HTTPException(
            status_code=status.HTTP_410_GONE,
            detail={
                "error": str(exc),
                "status": exc.status,
                "attempts": exc.attempts,
                "max_attempts": exc.max_attempts,
            },
        )
    if isinstance(exc, TaskConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": str(exc), "status": exc.status},
        )
    if isinstance(exc, TaskValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail={
                "error": str(exc),
                "validation_errors": exc.errors,
                "expected_schema": exc.expected_schema,
            },
        )
    if isinstance(exc, TaskInputError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
