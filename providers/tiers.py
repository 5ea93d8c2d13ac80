from __future__ import annotations

from dataclasses import dataclass

from .base import ProviderVariant, TaskType


@dataclass(frozen=True)
class Tier:
    variant: ProviderVariant
    task_type: TaskType
    high_quality: bool
    duration: str
    endpoint_path: str
    credits: int


_TIERS: tuple[Tier, ...] = (
    Tier(ProviderVariant.OFFICIAL, TaskType.TEXT_TO_VIDEO, False, "5s", "/v1/videos/text2video", 1),
    Tier(ProviderVariant.AGGREGATOR, TaskType.TEXT_TO_VIDEO, False, "5s", "/klingai/m2v_16_txt2video_5s", 1),
    Tier(ProviderVariant.AGGREGATOR, TaskType.TEXT_TO_VIDEO, True, "5s", "/klingai/m2v_16_txt2video_hq_5s", 2),
    Tier(ProviderVariant.AGGREGATOR, TaskType.IMAGE_TO_VIDEO, False, "5s", "/klingai/m2v_16_img2video_5s", 2),
    Tier(ProviderVariant.AGGREGATOR, TaskType.IMAGE_TO_VIDEO, True, "10s", "/klingai/m2v_16_img2video_hq_10s", 6),
)

TIERS: dict[tuple[ProviderVariant, TaskType, bool, str], Tier] = {
    (tier.variant, tier.task_type, tier.high_quality, tier.duration): tier for tier in _TIERS
}


def resolve_tier(
    task_type: TaskType,
    high_quality: bool,
    duration: str,
    *,
    variant: ProviderVariant | None = None,
    preferred: ProviderVariant = ProviderVariant.AGGREGATOR,
) -> Tier | None:
    """Look up the endpoint and price for a generation tier.

    An explicit ``variant`` must offer the tier. Without one, ``preferred`` is
    tried first and the remaining variant second.
    """
    if variant is not None:
        return TIERS.get((variant, task_type, high_quality, duration))
    order = [preferred] + [v for v in ProviderVariant if v is not preferred]
    for candidate in order:
        tier = TIERS.get((candidate, task_type, high_quality, duration))
        if tier is not None:
            return tier
    return None


def required_credits(task_type: TaskType, high_quality: bool, duration: str) -> int | None:
    tier = resolve_tier(task_type, high_quality, duration)
    return tier.credits if tier else None
