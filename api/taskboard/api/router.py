from fastapi import APIRouter

from taskboard.api.routes import health, keys, tasks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(keys.router, prefix="/keys", tags=["keys"])
api_router.include_router(tasks.router, prefix="/tasks", tags=["tasks"])
