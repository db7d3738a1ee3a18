from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from taskboard.core.telemetry import configure_logging
from taskboard_worker.core.config import Settings, get_settings
from taskboard_worker.core.telemetry import setup_worker_telemetry, shutdown_worker_telemetry
from taskboard_worker.jobs.executor import execute_task
from taskboard_worker.services.task_client import TaskBoardClient, TaskBoardClientError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

LOST_CLAIM_STATUSES = {409, 410}
INVALID_DELIVERY_STATUSES = {400, 422}


def parse_skills(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    skills = [chunk.strip() for chunk in raw.split(",") if chunk.strip()]
    return skills or None


async def process_next(client: TaskBoardClient, settings: Settings) -> str:
    """Run one find, claim, execute, deliver cycle and report how it ended."""
    task = await client.next_task(
        skills=parse_skills(settings.skills),
        requires_human=settings.requires_human,
        timeout=settings.long_poll_timeout_seconds,
    )
    if task is None:
        return "idle"

    with tracer.start_as_current_span("worker.process_task") as task_span:
        task_span.set_attribute("task.id", task["id"])
        try:
            claimed = await client.claim(task["id"], agent_id=settings.agent_id)
        except TaskBoardClientError as exc:
            if exc.status_code in LOST_CLAIM_STATUSES:
                logger.info("claim lost task_id=%s status=%s", task["id"], exc.status_code)
                return "lost"
            raise

        result = await execute_task(claimed)
        try:
            await client.deliver(claimed["id"], result=result)
        except TaskBoardClientError as exc:
            if exc.status_code in INVALID_DELIVERY_STATUSES:
                errors = exc.detail.get("validation_errors") if isinstance(exc.detail, dict) else exc.detail
                logger.warning("delivery rejected task_id=%s validation_errors=%s", claimed["id"], errors)
                return "invalid"
            if exc.status_code in LOST_CLAIM_STATUSES:
                logger.info("delivery lost task_id=%s status=%s", claimed["id"], exc.status_code)
                return "lost"
            raise

        logger.info("task delivered task_id=%s attempts=%s", claimed["id"], claimed.get("attempts"))
        return "delivered"


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    client = TaskBoardClient(
        base_url=settings.api_base_url,
        api_key=settings.api_key,
        timeout_seconds=settings.request_timeout_seconds,
    )

    backoff = settings.backoff_base_seconds
    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    await process_next(client, settings)
                backoff = settings.backoff_base_seconds
            except Exception as exc:  # pragma: no cover - loop robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
