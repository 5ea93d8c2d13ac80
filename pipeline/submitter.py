from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Mapping

from pipeline.errors import (
    InsufficientCreditsError,
    TaskAuthorizationError,
    TaskDispatchError,
    TaskRequestError,
    TaskValidationError,
)
from pipeline.store import StoreError, TaskStore
from providers.base import (
    GenerationRequest,
    InputImage,
    ProviderAdapter,
    ProviderError,
    ProviderVariant,
    TaskType,
    UnifiedStatus,
)
from providers.config import ProviderConfig
from providers.tiers import Tier, resolve_tier

logger = logging.getLogger(__name__)

SUPPORTED_MODELS = ("kling",)
ASPECT_RATIOS = ("1:1", "16:9", "9:16")
MAX_IMAGE_BYTES = 10 * 1024 * 1024
DEFAULT_CFG = 0.5


@dataclass(frozen=True)
class SubmitParams:
    prompt: str | None = None
    negative_prompt: str = ""
    aspect_ratio: str = "1:1"
    cfg: float = DEFAULT_CFG
    high_quality: bool = False
    duration: str = "5s"
    model: str = "kling"
    provider: ProviderVariant | None = None
    camera_type: str | None = None
    camera_value: float | None = None
    input_image: InputImage | None = None


@dataclass(frozen=True)
class SubmitOutcome:
    task_id: int
    external_task_id: str
    status: str
    status_id: int
    credits: int
    provider: str


def _camera_control(params: SubmitParams) -> dict[str, Any] | None:
    if not params.camera_type:
        return None
    config = {"horizontal": params.camera_value if params.camera_value is not None else 1}
    return {"type": params.camera_type, "config": config}


class TaskSubmitter:
    """Create a task definition, dispatch it, and record the initial status row."""

    def __init__(
        self,
        store: TaskStore,
        adapters: Mapping[ProviderVariant, ProviderAdapter],
        config: ProviderConfig,
        *,
        deduct_credits: bool = True,
    ) -> None:
        self.store = store
        self.adapters = adapters
        self.config = config
        self.deduct_credits = deduct_credits

    def submit(self, user_id: str | None, task_type: TaskType, params: SubmitParams) -> SubmitOutcome:
        if not user_id:
            raise TaskAuthorizationError()

        prompt = self._validate(task_type, params)
        tier, adapter = self._select(task_type, params)

        if task_type is TaskType.IMAGE_TO_VIDEO:
            available = self.store.get_credit_balance(user_id)
            if available < tier.credits:
                logger.info(
                    "insufficient credits for user %s: required=%s available=%s",
                    user_id,
                    tier.credits,
                    available,
                )
                raise InsufficientCreditsError(required=tier.credits, available=available)

        api_endpoint = f"{self.config.base_url_for(tier.variant)}{tier.endpoint_path}"
        try:
            definition = self.store.create_definition(
                user_id=user_id,
                task_type=task_type.value,
                model=params.model,
                high_quality=params.high_quality,
                credits=tier.credits,
                prompt=prompt,
                negative_prompt=params.negative_prompt or "",
                aspect_ratio=params.aspect_ratio,
                cfg=params.cfg,
                camera_type=params.camera_type,
                camera_value=str(params.camera_value) if params.camera_value is not None else None,
                start_img_path=params.input_image.filename if params.input_image else None,
                additional_params={
                    "duration": tier.duration,
                    "api_endpoint": api_endpoint,
                    "provider": tier.variant.value,
                },
            )
        except StoreError as exc:
            logger.error("failed to create task definition for user %s: %s", user_id, exc)
            raise TaskRequestError(
                code="task_create_failed",
                message="Failed to create task record",
                status_code=500,
            ) from exc
        logger.info("task definition %s created (%s, %s)", definition.id, task_type.value, tier.variant.value)

        request = GenerationRequest(
            task_type=task_type,
            prompt=prompt,
            endpoint_path=tier.endpoint_path,
            negative_prompt=params.negative_prompt or "",
            cfg=params.cfg,
            aspect_ratio=params.aspect_ratio,
            duration=tier.duration,
            high_quality=params.high_quality,
            camera_control=_camera_control(params),
            input_image=params.input_image,
        )
        try:
            submitted = adapter.submit(request)
        except ProviderError as exc:
            # The definition row stays behind without a status row.
            logger.error("dispatch of task %s to %s failed: %s", definition.id, tier.variant.value, exc)
            raise TaskDispatchError(message=exc.message, task_id=definition.id) from exc
        logger.info("task %s dispatched as %s", definition.id, submitted.external_task_id)

        try:
            status_row = self.store.create_status(
                task_id=definition.id,
                external_task_id=submitted.external_task_id,
                status=UnifiedStatus.PENDING,
            )
        except StoreError as exc:
            logger.error("failed to record status for task %s: %s", definition.id, exc)
            raise TaskRequestError(
                code="status_create_failed",
                message="Failed to create task status record",
                status_code=500,
            ) from exc

        if self.deduct_credits:
            try:
                self.store.deduct_credits(definition.id, tier.credits)
            except StoreError as exc:
                logger.error("credit deduction for task %s failed: %s", definition.id, exc)
            else:
                logger.info("deducted %s credits for task %s", tier.credits, definition.id)

        return SubmitOutcome(
            task_id=definition.id,
            external_task_id=submitted.external_task_id,
            status=status_row.status,
            status_id=status_row.id,
            credits=tier.credits,
            provider=tier.variant.value,
        )

    def _validate(self, task_type: TaskType, params: SubmitParams) -> str:
        prompt = (params.prompt or "").strip()
        if not prompt:
            raise TaskValidationError(code="prompt_required", message="prompt is required")
        if task_type is TaskType.IMAGE_TO_VIDEO:
            image = params.input_image
            if image is None or not image.content:
                raise TaskValidationError(code="input_image_required", message="input_image is required")
            if len(image.content) > MAX_IMAGE_BYTES:
                raise TaskValidationError(
                    code="input_image_too_large",
                    message="Image size must not exceed 10MB",
                )
            if not image.content_type.startswith("image/"):
                raise TaskValidationError(
                    code="input_image_invalid",
                    message="input_image must be an image",
                )
        if params.model not in SUPPORTED_MODELS:
            raise TaskValidationError(code="unsupported_model", message=f"Unsupported model: {params.model}")
        if params.aspect_ratio not in ASPECT_RATIOS:
            raise TaskValidationError(
                code="invalid_aspect_ratio",
                message=f"aspect_ratio must be one of {', '.join(ASPECT_RATIOS)}",
            )
        if not 0.0 <= params.cfg <= 1.0:
            raise TaskValidationError(code="invalid_cfg", message="cfg must be between 0 and 1")
        if params.camera_value is not None and not -10 <= params.camera_value <= 10:
            raise TaskValidationError(
                code="invalid_camera_value",
                message="camera_value must be between -10 and 10",
            )
        return prompt

    def _select(self, task_type: TaskType, params: SubmitParams) -> tuple[Tier, ProviderAdapter]:
        if params.provider is not None:
            order = [params.provider]
        else:
            preferred = self.config.preferred_variant
            order = [preferred] + [v for v in ProviderVariant if v is not preferred]

        offered = False
        for variant in order:
            tier = resolve_tier(task_type, params.high_quality, params.duration, variant=variant)
            if tier is None:
                continue
            offered = True
            adapter = self.adapters.get(variant)
            if adapter is not None:
                return tier, adapter

        if not offered:
            raise TaskValidationError(
                code="unsupported_tier",
                message=(
                    f"No {'high quality' if params.high_quality else 'standard'} "
                    f"{params.duration} tier for {task_type.value}"
                ),
            )
        raise TaskRequestError(
            code="provider_not_configured",
            message="Video generation service is not configured",
            status_code=503,
        )
