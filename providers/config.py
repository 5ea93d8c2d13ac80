from __future__ import annotations

from dataclasses import dataclass
import os

from .base import ProviderVariant


@dataclass(frozen=True)
class ProviderConfig:
    official_base_url: str = "https://api.klingai.com"
    official_access_key_id: str = ""
    official_access_key_secret: str = ""
    aggregator_base_url: str = "https://api.302.ai"
    aggregator_api_key: str = ""
    timeout_s: float = 30.0
    official_page_size: int = 100
    official_max_pages: int = 5
    callback_url: str | None = None
    preferred_variant: ProviderVariant = ProviderVariant.AGGREGATOR

    @property
    def official_enabled(self) -> bool:
        return bool(self.official_access_key_id and self.official_access_key_secret)

    @property
    def aggregator_enabled(self) -> bool:
        return bool(self.aggregator_api_key)

    def base_url_for(self, variant: ProviderVariant) -> str:
        if variant is ProviderVariant.OFFICIAL:
            return self.official_base_url
        return self.aggregator_base_url


def load_provider_config() -> ProviderConfig:
    preferred = os.getenv("PREFERRED_PROVIDER", ProviderVariant.AGGREGATOR.value).strip().lower()
    try:
        preferred_variant = ProviderVariant(preferred)
    except ValueError as exc:
        raise RuntimeError(f"Unsupported PREFERRED_PROVIDER: {preferred}") from exc
    callback_url = os.getenv("PROVIDER_CALLBACK_URL", "").strip() or None
    return ProviderConfig(
        official_base_url=os.getenv("KLING_BASE_URL", "https://api.klingai.com").strip().rstrip("/"),
        official_access_key_id=os.getenv("KLING_ACCESS_KEY_ID", "").strip(),
        official_access_key_secret=os.getenv("KLING_ACCESS_KEY_SECRET", "").strip(),
        aggregator_base_url=os.getenv("API_302_BASE_URL", "https://api.302.ai").strip().rstrip("/"),
        aggregator_api_key=os.getenv("API_302_KEY", "").strip(),
        timeout_s=float(os.getenv("PROVIDER_TIMEOUT_S", "30")),
        official_page_size=int(os.getenv("KLING_LIST_PAGE_SIZE", "100")),
        official_max_pages=int(os.getenv("KLING_LIST_MAX_PAGES", "5")),
        callback_url=callback_url,
        preferred_variant=preferred_variant,
    )
