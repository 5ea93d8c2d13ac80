from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TaskRequestError(Exception):
    code: str
    message: str
    status_code: int = 400

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def detail(self) -> dict:
        return {"code": self.code, "message": self.message}


@dataclass(frozen=True)
class TaskValidationError(TaskRequestError):
    status_code: int = 400


@dataclass(frozen=True)
class TaskAuthorizationError(TaskRequestError):
    code: str = "unauthorized"
    message: str = "Unauthorized"
    status_code: int = 401


@dataclass(frozen=True)
class InsufficientCreditsError(TaskRequestError):
    code: str = "insufficient_credits"
    message: str = "Insufficient credits"
    status_code: int = 400
    required: int = 0
    available: int = 0

    def detail(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "required": self.required,
            "available": self.available,
        }


@dataclass(frozen=True)
class TaskDispatchError(TaskRequestError):
    code: str = "dispatch_failed"
    message: str = "Failed to dispatch generation request"
    status_code: int = 502
    task_id: int | None = None

    def detail(self) -> dict:
        return {"code": self.code, "message": self.message, "task_id": self.task_id}


@dataclass(frozen=True)
class TaskNotFoundError(TaskRequestError):
    code: str = "task_not_found"
    message: str = "Task not found"
    status_code: int = 404


@dataclass(frozen=True)
class MigrationNotAllowedError(TaskRequestError):
    code: str = "migration_not_allowed"
    message: str = "Task is not eligible for migration"
    status_code: int = 409
