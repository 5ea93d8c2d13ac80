from __future__ import annotations

import logging
from typing import Any

import httpx

from .base import (
    GenerationRequest,
    PollResult,
    ProviderError,
    ProviderUnavailable,
    ProviderVariant,
    SubmitResult,
    TaskType,
    UnifiedStatus,
    extract_external_task_id,
)
from .config import ProviderConfig
from .http import send_json

logger = logging.getLogger(__name__)

STATUS_MAP = {
    99: UnifiedStatus.COMPLETED,
    0: UnifiedStatus.QUEUED,
    5: UnifiedStatus.QUEUED,
    1: UnifiedStatus.PROCESSING,
    2: UnifiedStatus.PROCESSING,
    10: UnifiedStatus.PROCESSING,
    -1: UnifiedStatus.FAILED,
}


def _provider_code(data: dict[str, Any], task_type: TaskType) -> Any:
    task = data.get("task") if isinstance(data.get("task"), dict) else {}
    if task_type is TaskType.IMAGE_TO_VIDEO:
        first, second = task.get("status"), data.get("status")
    else:
        first, second = data.get("status"), task.get("status")
    return first if first is not None else second


def translate_response(
    payload: dict[str, Any],
    external_task_id: str,
    task_type: TaskType = TaskType.TEXT_TO_VIDEO,
) -> PollResult:
    """Map a fetch response onto the unified vocabulary.

    Only the first entry of ``works`` is kept when the provider returns
    several candidate outputs.
    """
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    code = _provider_code(data, task_type)
    status = STATUS_MAP.get(code)
    if status is None:
        logger.info("unknown aggregator status %r for task %s", code, external_task_id)

    result_url = None
    thumbnail_url = None
    error_message = None
    if status is UnifiedStatus.COMPLETED:
        works = data.get("works") or []
        if works and isinstance(works[0], dict):
            work = works[0]
            result_url = (work.get("resource") or {}).get("resource")
            thumbnail_url = (work.get("cover") or {}).get("resource")
        else:
            logger.warning("aggregator task %s completed without works", external_task_id)
    elif status is UnifiedStatus.FAILED:
        error_message = data.get("message") or "generation failed"

    return PollResult(
        external_task_id=external_task_id,
        status=status,
        result_url=result_url,
        thumbnail_url=thumbnail_url,
        error_message=error_message,
        provider_status=code,
    )


class AggregatorAdapter:
    """302.ai proxy: static bearer key, one URL per tier, fetch-by-id polling."""

    variant = ProviderVariant.AGGREGATOR

    def __init__(self, config: ProviderConfig, client: httpx.Client | None = None) -> None:
        if not config.aggregator_enabled:
            raise RuntimeError("API_302_KEY is not set")
        self.config = config
        self.client = client or httpx.Client(timeout=config.timeout_s)

    def _auth(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.aggregator_api_key}"}

    def _url(self, path: str) -> str:
        return f"{self.config.aggregator_base_url}{path}"

    def submit(self, request: GenerationRequest) -> SubmitResult:
        url = self._url(request.endpoint_path)
        cfg = f"{request.cfg:g}"
        if request.task_type is TaskType.IMAGE_TO_VIDEO:
            image = request.input_image
            if image is None:
                raise ProviderError(
                    code="missing_input_image",
                    message="image-to-video requires an input image",
                    provider=self.variant.value,
                )
            form = {"prompt": request.prompt, "cfg": cfg}
            if request.negative_prompt:
                form["negative_prompt"] = request.negative_prompt
            if request.aspect_ratio:
                form["aspect_ratio"] = request.aspect_ratio
            logger.info("submitting img2video to %s", url)
            payload = send_json(
                self.client,
                "POST",
                url,
                provider=self.variant.value,
                headers=self._auth(),
                data=form,
                files={"input_image": (image.filename, image.content, image.content_type)},
            )
        else:
            body = {
                "prompt": request.prompt,
                "negative_prompt": request.negative_prompt or "",
                "cfg": request.cfg,
                "aspect_ratio": request.aspect_ratio,
            }
            if request.camera_control:
                body["camera_control"] = request.camera_control
            logger.info("submitting txt2video to %s", url)
            payload = send_json(
                self.client,
                "POST",
                url,
                provider=self.variant.value,
                headers={**self._auth(), "Content-Type": "application/json"},
                json=body,
            )

        external_task_id = extract_external_task_id(payload, provider=self.variant.value)
        return SubmitResult(external_task_id=external_task_id, raw=payload)

    def poll(
        self,
        external_task_id: str,
        *,
        task_type: TaskType = TaskType.TEXT_TO_VIDEO,
    ) -> PollResult:
        url = self._url(f"/klingai/task/{external_task_id}/fetch")
        payload = send_json(
            self.client,
            "GET",
            url,
            provider=self.variant.value,
            headers={**self._auth(), "Content-Type": "application/json"},
        )
        if payload.get("result", 1) != 1:
            reported = payload.get("status")
            message = str(payload.get("error") or payload.get("message") or "provider returned an error")
            if isinstance(reported, int) and reported >= 400:
                raise ProviderUnavailable(
                    code=f"api_{reported}",
                    message=message,
                    provider=self.variant.value,
                )
            logger.warning("aggregator fetch for %s returned an error: %s", external_task_id, message)
            return PollResult(external_task_id=external_task_id, status=None)
        return translate_response(payload, external_task_id, task_type)

    def parse_callback(self, payload: dict[str, Any]) -> PollResult:
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        task = data.get("task") if isinstance(data.get("task"), dict) else {}
        external_task_id = task.get("id") or payload.get("task_id") or payload.get("id")
        if not external_task_id:
            raise ProviderError(
                code="missing_task_id",
                message="callback payload has no task id",
                provider=self.variant.value,
            )
        return translate_response(payload, str(external_task_id))
