from __future__ import annotations

from typing import Any, Callable


def echo(task: dict[str, Any]) -> Any:
    task_input = task.get("input")
    if task_input is None:
        # A delivery needs a non-null result.
        return {"echo": task.get("title")}
    return task_input


def uppercase(task: dict[str, Any]) -> Any:
    return _upper(echo(task))


HANDLERS: dict[str, Callable[[dict[str, Any]], Any]] = {
    "echo": echo,
    "uppercase": uppercase,
}


async def execute_task(task: dict[str, Any]) -> Any:
    """Run the first built-in handler matching one of the task's tags."""
    for tag in task.get("tags") or []:
        handler = HANDLERS.get(tag)
        if handler is not None:
            return handler(task)
    return echo(task)


def _upper(value: Any) -> Any:
    if isinstance(value, str):
        return value.upper()
    if isinstance(value, dict):
        return {key: _upper(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_upper(item) for item in value]
    return value
