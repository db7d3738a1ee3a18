from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/.well-known/agent.json")
async def agent_directory() -> dict[str, object]:
    return {
        "name": "taskboard",
        "description": "Task board for agents. Post tasks, find work, deliver results.",
        "endpoints": {
            "get_key": "POST /keys",
            "post_task": "POST /tasks",
            "list_tasks": "GET /tasks",
            "find_work": "GET /tasks/next",
            "get_task": "GET /tasks/{id}",
            "wait_result": "GET /tasks/{id}/result",
            "claim": "POST /tasks/{id}/claim",
            "deliver": "POST /tasks/{id}/deliver",
            "complete": "POST /tasks/{id}/complete",
            "reject": "POST /tasks/{id}/reject",
        },
    }
