import hmac
import logging

from fastapi import Depends, Header, HTTPException, Request, status

from taskboard.core.auth import Principal, hash_api_key
from taskboard.core.config import Settings, get_settings
from taskboard.core.rate_limit import RateLimiter
from taskboard.services.repository import RepositoryUnavailableError, get_repository

logger = logging.getLogger(__name__)


async def get_api_principal(
    repository=Depends(get_repository),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> Principal:
    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Valid X-API-Key header required")

    key_hash = hash_api_key(x_api_key)
    try:
        record = await repository.get_api_key_by_hash(key_hash)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if not record or not hmac.compare_digest(record["key_hash"], key_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Valid X-API-Key header required")

    return Principal(key_id=record["id"], api_key=x_api_key)


def get_client_address(request: Request, settings: Settings = Depends(get_settings)) -> str:
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",", maxsplit=1)[0].strip()
            if first_hop:
                return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def enforce_rate_limit(limiter: RateLimiter, policy_name: str, subject: str) -> None:
    decision = limiter.hit(policy_name, subject)
    if decision.allowed:
        return

    retry_after = decision.retry_after_seconds
    logger.info("rate limited policy=%s retry_after_s=%s", policy_name, retry_after)
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail=f"Rate limited. Retry in {retry_after}s.",
        headers={"Retry-After": str(retry_after)},
    )
