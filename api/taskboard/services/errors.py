from typing import Any


class TaskBoardError(Exception):
    """Base error for task lifecycle operations."""


class TaskNotFoundError(TaskBoardError):
    """Raised when the requested task does not exist."""


class TaskConflictError(TaskBoardError):
    """Raised when a task is not in the state an action requires."""

    def __init__(self, message: str, *, status: str) -> None:
        super().__init__(message)
        self.status = status


class TaskGoneError(TaskBoardError):
    """Raised when a task has exhausted its attempts and can never be claimed again."""

    def __init__(self, message: str, *, status: str, attempts: int, max_attempts: int) -> None:
        super().__init__(message)
        self.status = status
        self.attempts = attempts
        self.max_attempts = max_attempts


class TaskValidationError(TaskBoardError):
    """Raised when a schema declaration or a delivered result fails validation."""

    def __init__(self, message: str, *, errors: list[str], expected_schema: Any = None) -> None:
        super().__init__(message)
        self.errors = errors
        self.expected_schema = expected_schema


class TaskInputError(TaskBoardError):
    """Raised when request fields are missing, oversized or unsafe."""
