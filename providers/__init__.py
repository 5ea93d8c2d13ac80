from __future__ import annotations

from typing import Any, Mapping

import httpx

from .aggregator import AggregatorAdapter
from .base import (
    GenerationRequest,
    InputImage,
    PollResult,
    ProviderAdapter,
    ProviderError,
    ProviderUnavailable,
    ProviderVariant,
    SubmitResult,
    TaskType,
    UnifiedStatus,
    can_transition,
    extract_external_task_id,
)
from .config import ProviderConfig, load_provider_config
from .kling_official import OfficialKlingAdapter
from .tiers import Tier, resolve_tier


def build_adapters(
    config: ProviderConfig,
    client: httpx.Client | None = None,
) -> dict[ProviderVariant, ProviderAdapter]:
    """Instantiate every variant whose credentials are configured."""
    adapters: dict[ProviderVariant, ProviderAdapter] = {}
    if config.official_enabled:
        adapters[ProviderVariant.OFFICIAL] = OfficialKlingAdapter(config, client)
    if config.aggregator_enabled:
        adapters[ProviderVariant.AGGREGATOR] = AggregatorAdapter(config, client)
    return adapters


def resolve_variant(
    additional_params: Mapping[str, Any] | None,
    config: ProviderConfig,
) -> ProviderVariant | None:
    """Read the variant tag stamped on a task definition.

    Rows written before the tag existed only carry ``api_endpoint``; those are
    matched against the configured base URLs.
    """
    params = additional_params or {}
    tag = params.get("provider")
    if tag:
        try:
            return ProviderVariant(str(tag))
        except ValueError:
            return None
    endpoint = str(params.get("api_endpoint") or "")
    if not endpoint:
        return None
    for variant in ProviderVariant:
        if endpoint.startswith(config.base_url_for(variant)):
            return variant
    return None


__all__ = [
    "AggregatorAdapter",
    "GenerationRequest",
    "InputImage",
    "OfficialKlingAdapter",
    "PollResult",
    "ProviderAdapter",
    "ProviderConfig",
    "ProviderError",
    "ProviderUnavailable",
    "ProviderVariant",
    "SubmitResult",
    "TaskType",
    "Tier",
    "UnifiedStatus",
    "build_adapters",
    "can_transition",
    "extract_external_task_id",
    "load_provider_config",
    "resolve_tier",
    "resolve_variant",
]
