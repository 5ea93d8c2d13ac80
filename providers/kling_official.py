from __future__ import annotations

import logging
import time
from typing import Any

import httpx
from jose import jwt

from .base import (
    GenerationRequest,
    PollResult,
    ProviderError,
    ProviderVariant,
    SubmitResult,
    TaskType,
    UnifiedStatus,
    extract_external_task_id,
)
from .config import ProviderConfig
from .http import send_json

logger = logging.getLogger(__name__)

TOKEN_TTL_S = 1800
TOKEN_NOT_BEFORE_SKEW_S = 5

STATUS_MAP = {
    "succeed": UnifiedStatus.COMPLETED,
    "failed": UnifiedStatus.FAILED,
    "submitted": UnifiedStatus.QUEUED,
    "processing": UnifiedStatus.PROCESSING,
}

LIST_PATHS = {
    TaskType.TEXT_TO_VIDEO: "/v1/videos/text2video",
    TaskType.IMAGE_TO_VIDEO: "/v1/videos/image2video",
}


def encode_token(access_key_id: str, access_key_secret: str, *, now: float | None = None) -> str:
    issued = int(now if now is not None else time.time())
    claims = {
        "iss": access_key_id,
        "exp": issued + TOKEN_TTL_S,
        "nbf": issued - TOKEN_NOT_BEFORE_SKEW_S,
    }
    return jwt.encode(claims, access_key_secret, algorithm="HS256", headers={"typ": "JWT"})


def translate_item(item: dict[str, Any]) -> PollResult:
    provider_status = item.get("task_status")
    status = STATUS_MAP.get(provider_status)
    result_url = None
    error_message = None
    if status is UnifiedStatus.COMPLETED:
        videos = (item.get("task_result") or {}).get("videos") or []
        if videos and isinstance(videos[0], dict):
            result_url = videos[0].get("url")
    elif status is UnifiedStatus.FAILED:
        error_message = item.get("task_status_msg") or "generation failed"
    return PollResult(
        external_task_id=str(item.get("task_id", "")),
        status=status,
        result_url=result_url,
        thumbnail_url=None,
        error_message=error_message,
        provider_status=provider_status,
    )


class OfficialKlingAdapter:
    """Direct Kling API: signed short-lived token, list-and-scan polling."""

    variant = ProviderVariant.OFFICIAL

    def __init__(self, config: ProviderConfig, client: httpx.Client | None = None) -> None:
        if not config.official_enabled:
            raise RuntimeError("Missing Kling API credentials")
        self.config = config
        self.client = client or httpx.Client(timeout=config.timeout_s)

    def _headers(self) -> dict[str, str]:
        token = encode_token(
            self.config.official_access_key_id,
            self.config.official_access_key_secret,
        )
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        return f"{self.config.official_base_url}{path}"

    def submit(self, request: GenerationRequest) -> SubmitResult:
        if request.task_type is not TaskType.TEXT_TO_VIDEO:
            raise ProviderError(
                code="unsupported_task_type",
                message=f"official adapter does not accept {request.task_type.value}",
                provider=self.variant.value,
            )

        body: dict[str, Any] = {
            "model_name": "kling-v1",
            "prompt": request.prompt,
            "negative_prompt": request.negative_prompt or "",
            "cfg_scale": request.cfg,
            "aspect_ratio": request.aspect_ratio,
            "mode": "pro" if request.high_quality else "std",
            "duration": request.duration.rstrip("s"),
        }
        if request.camera_control:
            body["camera_control"] = request.camera_control
        if self.config.callback_url:
            body["callback_url"] = self.config.callback_url

        url = self._url(request.endpoint_path)
        logger.info("submitting text2video to %s", url)
        payload = send_json(
            self.client,
            "POST",
            url,
            provider=self.variant.value,
            headers=self._headers(),
            json=body,
        )
        self._check_code(payload)
        external_task_id = extract_external_task_id(payload, provider=self.variant.value)
        return SubmitResult(external_task_id=external_task_id, raw=payload)

    def poll(
        self,
        external_task_id: str,
        *,
        task_type: TaskType = TaskType.TEXT_TO_VIDEO,
    ) -> PollResult:
        # No single-task lookup exists: walk the recent-task listing.
        url = self._url(LIST_PATHS[task_type])
        page_size = self.config.official_page_size
        for page in range(1, self.config.official_max_pages + 1):
            payload = send_json(
                self.client,
                "GET",
                url,
                provider=self.variant.value,
                headers=self._headers(),
                params={"pageNum": page, "pageSize": page_size},
            )
            self._check_code(payload)
            items = payload.get("data") or []
            if not isinstance(items, list):
                raise ProviderError(
                    code="invalid_response",
                    message="task listing is not a list",
                    provider=self.variant.value,
                )
            for item in items:
                if isinstance(item, dict) and item.get("task_id") == external_task_id:
                    return translate_item(item)
            if len(items) < page_size:
                break

        logger.info("task %s not found in official listing", external_task_id)
        return PollResult(external_task_id=external_task_id, status=None)

    def parse_callback(self, payload: dict[str, Any]) -> PollResult:
        item = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        if not item.get("task_id"):
            raise ProviderError(
                code="missing_task_id",
                message="callback payload has no task_id",
                provider=self.variant.value,
            )
        return translate_item(item)

    def _check_code(self, payload: dict[str, Any]) -> None:
        code = payload.get("code", 0)
        if code not in (0, None):
            raise ProviderError(
                code=f"api_{code}",
                message=str(payload.get("message") or "provider rejected the request"),
                provider=self.variant.value,
            )
