from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from opentelemetry import trace

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class PollOutcome(Generic[T]):
    value: T | None
    retry: bool
    attempts: int


def poll_deadline(
    timeout_seconds: float | None,
    *,
    default_seconds: float,
    max_seconds: float,
    clock: Callable[[], float] = time.monotonic,
) -> float:
    """Absolute deadline for a long poll, with the requested wait clamped to [0, max_seconds]."""
    requested = default_seconds if timeout_seconds is None else timeout_seconds
    return clock() + min(max(0.0, requested), max_seconds)


async def wait_for(
    lookup: Callable[[], Awaitable[T | None]],
    deadline: float,
    *,
    interval_seconds: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    name: str = "lookup",
) -> PollOutcome[T]:
    """Run lookup on a fixed cadence until it yields a value or the deadline is near.

    The lookup always runs at least once. The loop never sleeps past the
    deadline: when one more interval would cross it, the call returns with
    ``retry=True`` so the caller reconnects instead of assuming absence.
    Errors raised by lookup propagate unchanged.
    """
    attempts = 0
    with tracer.start_as_current_span("tasks.long_poll") as span:
        span.set_attribute("long_poll.name", name)
        while True:
            attempts += 1
            value = await lookup()
            if value is not None:
                span.set_attribute("long_poll.attempts", attempts)
                span.set_attribute("long_poll.found", True)
                return PollOutcome(value=value, retry=False, attempts=attempts)

            if clock() + interval_seconds >= deadline:
                break
            await sleep(interval_seconds)

        span.set_attribute("long_poll.attempts", attempts)
        span.set_attribute("long_poll.found", False)
    logger.debug("long poll timed out name=%s attempts=%s", name, attempts)
    return PollOutcome(value=None, retry=True, attempts=attempts)
