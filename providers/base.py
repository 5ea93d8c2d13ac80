from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol


class ProviderVariant(str, Enum):
    OFFICIAL = "official"
    AGGREGATOR = "aggregator"


class TaskType(str, Enum):
    TEXT_TO_VIDEO = "t2v"
    IMAGE_TO_VIDEO = "i2v"


class UnifiedStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


TERMINAL_STATUSES = frozenset({UnifiedStatus.COMPLETED, UnifiedStatus.FAILED})
NON_TERMINAL_STATUSES = frozenset(
    {UnifiedStatus.PENDING, UnifiedStatus.QUEUED, UnifiedStatus.PROCESSING}
)
_STATUS_RANK = {
    UnifiedStatus.PENDING: 0,
    UnifiedStatus.QUEUED: 1,
    UnifiedStatus.PROCESSING: 2,
    UnifiedStatus.COMPLETED: 3,
    UnifiedStatus.FAILED: 3,
}


def can_transition(current: UnifiedStatus, new: UnifiedStatus) -> bool:
    """Forward-only check: terminal rows never move, others never go backwards."""
    if current.is_terminal:
        return False
    return new.rank >= current.rank


@dataclass(frozen=True)
class ProviderError(Exception):
    code: str
    message: str
    provider: str
    retryable: bool = False

    def __str__(self) -> str:
        return f"{self.code}({self.provider}): {self.message}"


@dataclass(frozen=True)
class ProviderUnavailable(ProviderError):
    retryable: bool = True


@dataclass(frozen=True)
class InputImage:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class GenerationRequest:
    task_type: TaskType
    prompt: str
    endpoint_path: str
    negative_prompt: str = ""
    cfg: float = 0.5
    aspect_ratio: str = "1:1"
    duration: str = "5s"
    high_quality: bool = False
    camera_control: dict[str, Any] | None = None
    input_image: InputImage | None = None


@dataclass(frozen=True)
class SubmitResult:
    external_task_id: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PollResult:
    external_task_id: str
    status: UnifiedStatus | None
    result_url: str | None = None
    thumbnail_url: str | None = None
    error_message: str | None = None
    provider_status: Any = None


class ProviderAdapter(Protocol):
    variant: ProviderVariant

    def submit(self, request: GenerationRequest) -> SubmitResult: ...

    def poll(
        self,
        external_task_id: str,
        *,
        task_type: TaskType = TaskType.TEXT_TO_VIDEO,
    ) -> PollResult: ...

    def parse_callback(self, payload: dict[str, Any]) -> PollResult: ...


def extract_external_task_id(payload: Any, *, provider: str) -> str:
    """Find the provider task id in a submit response.

    Providers disagree on where the id lives; the known shapes are tried in
    order: ``data.task.id``, ``data.task_id``, ``task.id``, ``task_id``, ``id``.
    """
    if not isinstance(payload, dict):
        raise ProviderError(
            code="invalid_response",
            message="submit response is not a JSON object",
            provider=provider,
        )

    data = payload.get("data")
    candidates: list[Any] = []
    if isinstance(data, dict):
        task = data.get("task")
        if isinstance(task, dict):
            candidates.append(task.get("id"))
        candidates.append(data.get("task_id"))
    task = payload.get("task")
    if isinstance(task, dict):
        candidates.append(task.get("id"))
    candidates.append(payload.get("task_id"))
    candidates.append(payload.get("id"))

    for value in candidates:
        if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
            return str(value).strip()

    raise ProviderError(
        code="missing_task_id",
        message="no task id found in submit response",
        provider=provider,
    )
