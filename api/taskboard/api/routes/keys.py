import logging

from fastapi import APIRouter, Depends, HTTPException, status

from taskboard.core.auth import generate_api_key, hash_api_key
from taskboard.core.rate_limit import KEY_CREATE, RateLimiter, get_rate_limiter
from taskboard.core.security import enforce_rate_limit, get_client_address
from taskboard.schemas.keys import KeyCreated, KeyCreateRequest
from taskboard.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", response_model=KeyCreated, status_code=status.HTTP_201_CREATED)
async def create_key(
    payload: KeyCreateRequest | None = None,
    repository=Depends(get_repository),
    limiter: RateLimiter = Depends(get_rate_limiter),
    address: str = Depends(get_client_address),
) -> KeyCreated:
    enforce_rate_limit(limiter, KEY_CREATE, address)

    api_key = generate_api_key()
    try:
        record = await repository.insert_api_key(
            key_hash=hash_api_key(api_key),
            email=payload.email if payload else None,
            ip_address=address,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    logger.info("api key issued key_id=%s", record["id"])
    return KeyCreated(id=record["id"], key=api_key)
