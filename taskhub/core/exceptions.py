from enum import Enum
from typing import Any


class ValidationCode(str, Enum):
    SELF_PARENT = "SELF_PARENT"
    DEPTH_EXCEEDED = "DEPTH_EXCEEDED"
    CIRCULAR_REFERENCE = "CIRCULAR_REFERENCE"
    CROSS_OWNER = "CROSS_OWNER"
    MISSING_DEFAULT_LOCALE_NAME = "MISSING_DEFAULT_LOCALE_NAME"
    UNSUPPORTED_LOCALE = "UNSUPPORTED_LOCALE"
    NOT_A_SUBTASK = "NOT_A_SUBTASK"


class TaskDomainError(Exception):
    """Base class for errors returned to the caller of a task operation."""

    code: str = "DOMAIN_ERROR"
    http_status: int = 422

    def __init__(self, message: str, *, code: str | None = None, **context: Any):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "context": self.context}


class TaskValidationError(TaskDomainError):
    """Hierarchy or locale invariant violation. User-correctable."""

    http_status = 422

    def __init__(self, code: ValidationCode, message: str, **context: Any):
        super().__init__(message, code=code.value, **context)
        self.validation_code = code


class TaskNotFoundError(TaskDomainError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, task_id: int | None = None, message: str | None = None):
        if message is None:
            message = (
                f"Task with id {task_id} not found" if task_id else "Task not found"
            )
        super().__init__(message, task_id=task_id)


class PersistenceError(TaskDomainError):
    """Storage or transaction failure. Never retried by the service."""

    code = "PERSISTENCE_ERROR"
    http_status = 503


class StoreTimeoutError(PersistenceError):
    code = "TIMEOUT"
    http_status = 504


class CacheUnavailable(Exception):
    """Raised inside the cache layer only; callers see a miss."""

    def __init__(self, op: str, key: str):
        super().__init__(f"cache {op} failed for {key}")
        self.op = op
        self.key = key


class BroadcastFailure(Exception):
    """Raised inside the broadcaster only; logged and dropped."""

    def __init__(self, channel: str, event: str):
        super().__init__(f"publish of {event} to {channel} failed")
        self.channel = channel
        self.event = event
