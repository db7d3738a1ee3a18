from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

from taskboard.core.config import Settings, get_settings

KEY_CREATE = "keycreate"
TASK_CREATE = "task"
TASK_ACTION = "action"
READ = "read"
POLL = "poll"


@dataclass(slots=True)
class RateLimitEntry:
    count: int
    reset_at_ms: float


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    name: str
    limit: int
    window_ms: int


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int

    @property
    def retry_after_seconds(self) -> int:
        return math.ceil(self.retry_after_ms / 1000)


class CounterStore(Protocol):
    def get(self, key: str) -> RateLimitEntry | None: ...

    def set(self, key: str, entry: RateLimitEntry) -> None: ...

    def prune(self, now_ms: float) -> None: ...


class InMemoryCounterStore:
    """Process-local counters; state is lost on restart and limits fail open."""

    def __init__(self, max_entries: int = 100_000) -> None:
        self.max_entries = max_entries
        self._entries: dict[str, RateLimitEntry] = {}

    def get(self, key: str) -> RateLimitEntry | None:
        return self._entries.get(key)

    def set(self, key: str, entry: RateLimitEntry) -> None:
        self._entries[key] = entry

    def prune(self, now_ms: float) -> None:
        if len(self._entries) < self.max_entries:
            return
        for key in [key for key, entry in self._entries.items() if now_ms > entry.reset_at_ms]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class RateLimiter:
    def __init__(
        self,
        policies: dict[str, RateLimitPolicy],
        store: CounterStore | None = None,
        *,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policies = policies
        self.store = store if store is not None else InMemoryCounterStore()
        self.enabled = enabled
        self._clock = clock

    def check(self, key: str, limit: int, window_ms: int) -> RateLimitDecision:
        """Count one action for key; never raises, callers inspect ``allowed``."""
        now_ms = self._clock() * 1000.0
        entry = self.store.get(key)

        if entry is None or now_ms > entry.reset_at_ms:
            self.store.prune(now_ms)
            self.store.set(key, RateLimitEntry(count=1, reset_at_ms=now_ms + window_ms))
            return RateLimitDecision(allowed=True, retry_after_ms=0)

        entry.count += 1
        if entry.count > limit:
            return RateLimitDecision(allowed=False, retry_after_ms=max(0, int(entry.reset_at_ms - now_ms)))
        return RateLimitDecision(allowed=True, retry_after_ms=0)

    def hit(self, policy_name: str, subject: str) -> RateLimitDecision:
        if not self.enabled:
            return RateLimitDecision(allowed=True, retry_after_ms=0)
        policy = self.policies[policy_name]
        return self.check(f"{policy.name}:{subject}", policy.limit, policy.window_ms)


def build_policies(settings: Settings) -> dict[str, RateLimitPolicy]:
    pairs = {
        KEY_CREATE: (settings.rate_limit_key_create, settings.rate_limit_key_create_window_seconds),
        TASK_CREATE: (settings.rate_limit_task_create, settings.rate_limit_task_create_window_seconds),
        TASK_ACTION: (settings.rate_limit_task_action, settings.rate_limit_task_action_window_seconds),
        READ: (settings.rate_limit_read, settings.rate_limit_read_window_seconds),
        POLL: (settings.rate_limit_poll, settings.rate_limit_poll_window_seconds),
    }
    return {
        name: RateLimitPolicy(name=name, limit=limit, window_ms=window_seconds * 1000)
        for name, (limit, window_seconds) in pairs.items()
    }


@lru_cache
def get_rate_limiter() -> RateLimiter:
    settings = get_settings()
    return RateLimiter(build_policies(settings), enabled=settings.rate_limit_enabled)
