# errors.py — Domain error taxonomy for TaskFlow
"""
Canonical exceptions raised by the core (permissions, workflow, store).

Routers never translate these by hand: main.py registers one handler for
TaskFlowError and renders {"detail", "code", "retryable"} with the
class-level HTTP status. Codes follow TF-{DOMAIN}-{NUMBER}.

Retry semantics:
    Unauthorized, InvalidTransition  -> deterministic, surfaced immediately
    ConflictingWrite, RateLimited    -> retried inside the state machine,
                                        surfaced only once attempts run out
"""
from typing import Optional


class TaskFlowError(Exception):
    """Base class for every error the core surfaces to callers."""

    code = "TF-SYS-000"
    http_status = 500
    retryable = False

    def __init__(self, message: str, details: Optional[dict] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {
            "detail": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }
        if self.details:
            body["details"] = self.details
        return body


class Unauthorized(TaskFlowError):
    """A permission predicate denied the action."""

    code = "TF-AUTH-003"
    http_status = 403

    def __init__(self, action: str, resource: str = "task", resource_id: Optional[str] = None) -> None:
        self.action = action
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"Not allowed to {action} this {resource}")


class NotFound(TaskFlowError):
    code = "TF-DB-002"
    http_status = 404

    def __init__(self, resource: str, resource_id: Optional[str] = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found")


class ValidationFailed(TaskFlowError):
    """Well-formed input that breaks a business rule."""

    code = "TF-VAL-001"
    http_status = 422


class InvalidTransition(TaskFlowError):
    """Target column does not exist on the task's project."""

    code = "TF-WF-001"
    http_status = 422

    def __init__(self, status: str, valid_columns: list) -> None:
        self.status = status
        self.valid_columns = list(valid_columns)
        super().__init__(
            f"Status '{status}' is not a column of this board",
            details={"valid_columns": self.valid_columns},
        )


class ColumnInUse(TaskFlowError):
    code = "TF-WF-002"
    http_status = 409

    def __init__(self, column_id: str, task_count: int) -> None:
        self.column_id = column_id
        self.task_count = task_count
        super().__init__(
            f"Column '{column_id}' still holds {task_count} task(s); move them first",
            details={"column_id": column_id, "task_count": task_count},
        )


class ProtectedColumn(TaskFlowError):
    """Default columns can never be removed."""

    code = "TF-WF-003"
    http_status = 400

    def __init__(self, column_id: str) -> None:
        self.column_id = column_id
        super().__init__(f"Cannot delete default column '{column_id}'")


class ConflictingWrite(TaskFlowError):
    """Optimistic version check failed on every attempt."""

    code = "TF-DB-005"
    http_status = 409
    retryable = True

    def __init__(self, resource_id: str, attempts: int = 1, retry_after: float = 0.0) -> None:
        self.resource_id = resource_id
        self.attempts = attempts
        self.retry_after = retry_after
        super().__init__(
            "The task was changed by someone else; reload the task and try again",
            details={"attempts": attempts},
        )


class RateLimited(TaskFlowError):
    """Store back-pressure signal."""

    code = "TF-DB-006"
    http_status = 429
    retryable = True

    def __init__(self, message: str = "Store is busy; reload the task and try again",
                 retry_after: float = 1.0, attempts: int = 1) -> None:
        self.retry_after = retry_after
        self.attempts = attempts
        super().__init__(message, details={"attempts": attempts})
